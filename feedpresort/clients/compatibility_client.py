"""
Compatibility service client.

Returns a compatibility summary (score + readiness) between the viewer and
each suggested profile. The feed treats this as optional enrichment: when
the service is slow or down, suggestion cards are served without it.

Request body:
  { "viewerUserId": "...", "userIds": ["...", ...] }

Response:
  { "results": [{ "userId", "score", "status": "READY" | "INSUFFICIENT_DATA" }] }
"""
import logging
from typing import Optional

import httpx

from feedpresort.config import settings
from feedpresort.schemas import CompatibilityOut

logger = logging.getLogger(__name__)


class CompatibilityClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self._base_url = base_url or settings.compatibility_service_url
        self._timeout = timeout or settings.compatibility_timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self._http = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def get_compatibility_map(
        self, viewer_user_id: str, user_ids: list[str]
    ) -> dict[str, CompatibilityOut]:
        """
        Raises on transport / HTTP errors; the hydrator decides how to
        degrade.
        """
        if not user_ids:
            return {}
        if self._http is None:
            raise RuntimeError("Compatibility client not started")

        resp = await self._http.post(
            "/compatibility",
            json={"viewerUserId": viewer_user_id, "userIds": list(user_ids)},
        )
        resp.raise_for_status()
        results: list[dict] = resp.json().get("results", [])
        summaries: dict[str, CompatibilityOut] = {}
        for entry in results:
            user_id = entry.get("userId")
            if not user_id:
                continue
            status = entry.get("status")
            if status not in ("READY", "INSUFFICIENT_DATA"):
                status = "INSUFFICIENT_DATA"
            summaries[user_id] = CompatibilityOut(score=entry.get("score"), status=status)
        return summaries


# Singleton
compatibility_client = CompatibilityClient()
