"""Client-side evaluation of text that lives on a joined entity."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .models import ContentItem

logger = logging.getLogger(__name__)

DEFAULT_YIELD_EVERY = 500


def _contains(haystack: str, needle: str) -> bool:
    return bool(haystack) and needle in haystack.casefold()


def matched_natively(
    item: ContentItem, needle: str, *, use_primary_flag: bool = True
) -> bool:
    """Return whether ``item`` satisfied the native half of the text predicate.

    ``matched_primary`` was computed by the store for the query's own text, so
    it only answers for that text; any other needle is checked on the body.
    """

    if use_primary_flag and item.matched_primary is not None:
        return item.matched_primary
    return _contains(item.body, needle)


def matched_joined(item: ContentItem, needle: str) -> bool:
    if item.joined is None:
        return False
    return _contains(item.joined.title, needle) or _contains(
        item.joined.description, needle
    )


def matches(item: ContentItem, text: str, *, use_primary_flag: bool = True) -> bool:
    """Return whether ``item`` satisfies the combined text predicate for ``text``."""

    needle = text.strip().casefold()
    if not needle:
        return True
    return matched_natively(
        item, needle, use_primary_flag=use_primary_flag
    ) or matched_joined(item, needle)


def apply_secondary_predicate(
    batch: Sequence[ContentItem],
    text: str,
    *,
    use_primary_flag: bool = True,
) -> list[ContentItem]:
    """Narrow an already fetched ``batch`` to the items matching ``text``.

    Pass ``use_primary_flag=False`` when ``text`` is not the text the primary
    query flagged rows against.
    """

    needle = text.strip().casefold()
    if not needle:
        return list(batch)

    kept: list[ContentItem] = []
    via_join = 0
    for item in batch:
        if matched_natively(item, needle, use_primary_flag=use_primary_flag):
            kept.append(item)
        elif matched_joined(item, needle):
            kept.append(item)
            via_join += 1

    logger.debug(
        "Secondary predicate kept %d/%d items (%d via joined entity)",
        len(kept),
        len(batch),
        via_join,
    )
    return kept


async def apply_secondary_predicate_async(
    batch: Sequence[ContentItem],
    text: str,
    yield_every: int = DEFAULT_YIELD_EVERY,
    *,
    use_primary_flag: bool = True,
) -> list[ContentItem]:
    """Like :func:`apply_secondary_predicate` but yields to the loop on large batches."""

    if yield_every <= 0 or len(batch) <= yield_every:
        return apply_secondary_predicate(
            batch, text, use_primary_flag=use_primary_flag
        )

    kept: list[ContentItem] = []
    for start in range(0, len(batch), yield_every):
        kept.extend(
            apply_secondary_predicate(
                batch[start : start + yield_every],
                text,
                use_primary_flag=use_primary_flag,
            )
        )
        await asyncio.sleep(0)
    return kept


__all__ = [
    "apply_secondary_predicate",
    "apply_secondary_predicate_async",
    "matched_joined",
    "matched_natively",
    "matches",
]
