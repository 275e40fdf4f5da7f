"""Winner selection for reverse auctions: the lowest active offer wins."""

from __future__ import annotations

from typing import Iterable

from auction_closer.models import Bid


def effective_bids(bids: Iterable[Bid]) -> list[Bid]:
    """Reduce bids to one per bidder: the active record updated last.

    Ties on ``updated_at`` resolve to the later ``created_at`` and then the
    higher id, so the outcome does not depend on input order.
    """
    latest: dict[str, Bid] = {}
    for bid in bids:
        if not bid.is_active:
            continue
        current = latest.get(bid.user_id)
        if current is None or _recency_key(bid) > _recency_key(current):
            latest[bid.user_id] = bid
    return sorted(latest.values(), key=_ranking_key)


def select_winner(bids: Iterable[Bid]) -> Bid | None:
    """Return the lowest active bid, earliest-created on ties, or None."""
    candidates = [bid for bid in bids if bid.is_active]
    if not candidates:
        return None
    return min(candidates, key=_ranking_key)


def _ranking_key(bid: Bid) -> tuple:
    return (bid.amount, bid.created_at, bid.id)


def _recency_key(bid: Bid) -> tuple:
    return (bid.updated_at, bid.created_at, bid.id)
