from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog


K = TypeVar("K")
V = TypeVar("V")

logger = structlog.get_logger(__name__)


async def limit_filter(
    candidates: Sequence[K],
    fetch: Callable[[list[K]], Awaitable[Sequence[V | None]]],
    *,
    limit: int | None = None,
    offset: int = 0,
    non_null: bool = False,
) -> list[V | None]:
    """Fetch candidates window by window until *limit* results are accepted.

    Lookups through a filtered or soft-deleted table (or a cache tier) may
    drop candidates silently, so one call for the first *limit* keys can
    come back short. Each step fetches the next ``limit``-sized window,
    strips ``None`` results when *non_null* is set and, if the window came
    back short, continues after it asking only for what is still missing.

    Args:
        candidates: Keys in priority order.
        fetch: ``async (keys) -> results`` aligned with its input.
        limit: Number of results wanted; falsy means every remaining candidate.
        offset: Index of the first candidate to consider.
        non_null: Drop ``None`` results.

    Returns:
        Accepted results in candidate order, at most *limit* of them.

    Example:
        >>> await limit_filter(ids, Product.get_id_loader().load_many, limit=20, non_null=True)
    """
    remaining = len(candidates) - offset
    if remaining <= 0:
        return []

    if not limit or limit >= remaining:
        window = list(candidates[offset:])
        return _accept(await fetch(window), non_null)

    window = list(candidates[offset : offset + limit])
    accepted = _accept(await fetch(window), non_null)
    if len(accepted) >= limit:
        return accepted

    logger.debug(
        "limit_filter.short_window", offset=offset, limit=limit, accepted=len(accepted)
    )
    rest = await limit_filter(
        candidates,
        fetch,
        limit=limit - len(accepted),
        offset=offset + len(window),
        non_null=non_null,
    )

    return accepted + rest


def _accept(results: Sequence[Any], non_null: bool) -> list[Any]:
    if non_null:
        return [result for result in results if result is not None]

    return list(results)
