"""Dealt-value capability.

The engine asks a dealer for plaintext card values at formation time,
encrypts them immediately and drops the plaintext.  Cards are treys integer
encodings so an authorised owner can pretty-print what they reveal.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Protocol

from treys import Card, Deck

from .errors import InvalidConfiguration

__all__ = ["DeckDealer", "Dealer", "format_cards"]


class Dealer(Protocol):
    def deal(self, scope: str, participants: Sequence[str], hand_size: int) -> dict[str, list[int]]: ...


class DeckDealer:
    """Deals from a freshly shuffled 52-card deck per session.

    With a ``seed`` the shuffle is reproducible per scope, which the tests and
    ``cipherpot simulate --seed`` rely on.  Without one the shuffle draws from
    the system RNG.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._seed = seed

    def deal(self, scope: str, participants: Sequence[str], hand_size: int) -> dict[str, list[int]]:
        needed = len(participants) * hand_size
        deck = list(Deck.GetFullDeck())
        if needed > len(deck):
            raise InvalidConfiguration(f"cannot deal {needed} cards from a {len(deck)}-card deck")
        self._rng(scope).shuffle(deck)
        hands: dict[str, list[int]] = {}
        for seat, participant in enumerate(participants):
            hands[participant] = deck[seat * hand_size : (seat + 1) * hand_size]
        return hands

    def _rng(self, scope: str) -> random.Random:
        if self._seed is None:
            return random.Random()
        return random.Random(f"{self._seed}:{scope}")


def format_cards(cards: Sequence[int]) -> str:
    """Render treys card ints as rank+suit tokens, e.g. ``"As Kd"``."""

    return " ".join(Card.int_to_str(card) for card in cards)
