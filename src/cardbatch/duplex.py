"""Mapping of producer page numbers to card sides."""

from __future__ import annotations

from .models import CardAddress, Side


def map_page(sequence: int, duplex: bool) -> CardAddress:
    """Return the card and side a 1-based page number belongs to.

    Duplex feeds interleave sides: front 1, back 1, front 2, back 2, ...
    """

    if sequence < 1:
        raise ValueError(f"page sequence must be >= 1, got {sequence}")
    if not duplex:
        return CardAddress(card_number=sequence, side=Side.FRONT)
    card_number = (sequence + 1) // 2
    side = Side.FRONT if sequence % 2 == 1 else Side.BACK
    return CardAddress(card_number=card_number, side=side)
