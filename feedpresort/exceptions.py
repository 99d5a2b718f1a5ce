"""Exceptions raised inside the feed pipeline and the segment store."""


class FeedPresortError(Exception):
    """Base class for feed pipeline errors."""


class SegmentError(FeedPresortError):
    pass


class ThinSegmentError(SegmentError):
    """Segment 0 holds fewer items than a usable first page needs."""

    def __init__(self, user_id: str, item_count: int, required: int) -> None:
        super().__init__(
            f"segment 0 for user {user_id} has {item_count} items, needs {required}"
        )
        self.user_id = user_id
        self.item_count = item_count
        self.required = required


class SegmentDecodeError(SegmentError):
    """Stored segment payload does not match the current item schema."""
