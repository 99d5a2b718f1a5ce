"""
Candidate deduplication.

First occurrence wins everywhere: the candidate lists arrive in source
order (or already ranked), so the earlier copy is the one worth keeping.
"""
import logging

from feedpresort.feed.types import CandidateSet, DedupeStats, iter_leaves

logger = logging.getLogger(__name__)


def dedupe_candidates(candidates: CandidateSet) -> tuple[CandidateSet, DedupeStats]:
    """
    Drop duplicate posts / suggestions / questions by identity key, and any
    suggestion whose user already authored a kept post.
    """
    stats = DedupeStats()

    posts = []
    seen_post_ids: set[str] = set()
    post_actor_ids: set[str] = set()
    for post in candidates.posts:
        if post.id in seen_post_ids:
            stats.post_duplicates += 1
            continue
        seen_post_ids.add(post.id)
        post_actor_ids.add(post.actor_id)
        posts.append(post)

    suggestions = []
    seen_user_ids: set[str] = set()
    for suggestion in candidates.suggestions:
        if suggestion.user_id in post_actor_ids:
            stats.cross_source_removed += 1
            continue
        if suggestion.user_id in seen_user_ids:
            stats.suggestion_duplicates += 1
            continue
        seen_user_ids.add(suggestion.user_id)
        suggestions.append(suggestion)

    questions = []
    seen_question_ids: set[str] = set()
    for question in candidates.questions:
        if question.id in seen_question_ids:
            stats.question_duplicates += 1
            continue
        seen_question_ids.add(question.id)
        questions.append(question)

    deduped = CandidateSet(
        posts=posts,
        suggestions=suggestions,
        questions=questions,
        next_cursor_id=candidates.next_cursor_id,
    )
    return deduped, stats


def dedupe_feed_items(items: list) -> tuple[list, int]:
    """
    Safety net over a ranked list: drop any top-level item or grid whose
    leaf keys were already emitted. Returns the kept items and the number
    of dropped entries.
    """
    seen: set[str] = set()
    kept = []
    duplicates = 0
    for item in items:
        keys = [leaf.key for leaf in iter_leaves([item])]
        if not keys or any(key in seen for key in keys):
            duplicates += 1
            continue
        seen.update(keys)
        kept.append(item)
    if duplicates:
        logger.info("Dropped %d duplicate ranked items", duplicates)
    return kept, duplicates
