"""Card and Deck representation for a standard 52-card French deck."""

from __future__ import annotations

import random
from enum import Enum
from typing import Any, Iterable, Optional


class Suit(str, Enum):
    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class Rank(str, Enum):
    ACE = "A"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"
    SIX = "6"
    SEVEN = "7"
    EIGHT = "8"
    NINE = "9"
    TEN = "10"
    JACK = "J"
    QUEEN = "Q"
    KING = "K"


SUIT_LETTERS = {
    Suit.HEARTS: "h",
    Suit.DIAMONDS: "d",
    Suit.CLUBS: "c",
    Suit.SPADES: "s",
}


class Card:
    """Immutable playing card. Two cards are equal when rank and suit match."""

    __slots__ = ("_rank", "_suit")

    def __init__(self, rank: Rank, suit: Suit) -> None:
        object.__setattr__(self, "_rank", Rank(rank))
        object.__setattr__(self, "_suit", Suit(suit))

    @property
    def rank(self) -> Rank:
        return self._rank

    @property
    def suit(self) -> Suit:
        return self._suit

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Card is immutable")

    def __repr__(self) -> str:
        return f"{self._rank.value}{SUIT_LETTERS[self._suit]}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Card):
            return NotImplemented
        return self._rank == other._rank and self._suit == other._suit

    def __hash__(self) -> int:
        return hash((self._rank, self._suit))

    def to_dict(self) -> dict:
        return {"rank": self._rank.value, "suit": self._suit.value}

    @classmethod
    def from_dict(cls, data: dict) -> Card:
        return cls(Rank(data["rank"]), Suit(data["suit"]))

    @classmethod
    def from_str(cls, s: str) -> Card:
        """Parse 'Ah', '10s', 'qd' etc."""
        rank_part = s[:-1].upper()
        suit_char = s[-1].lower()
        suit_map = {v: k for k, v in SUIT_LETTERS.items()}
        return cls(Rank(rank_part), suit_map[suit_char])


class Deck:
    """Standard 52-card deck. The top of the deck is the end of the list.

    The shuffle is driven by ``rng`` so callers can pass a seeded
    ``random.Random`` and get a reproducible order.
    """

    def __init__(
        self, rng: Optional[random.Random] = None, shuffle: bool = True
    ) -> None:
        self._rng = rng if rng is not None else random.Random()
        self._cards: list[Card] = []
        self.initialize()
        if shuffle:
            self.shuffle()

    def initialize(self) -> None:
        """Reset to all 52 cards in canonical order (suit by suit, A..K)."""
        self._cards = [Card(rank, suit) for suit in Suit for rank in Rank]

    def shuffle(self) -> None:
        """Fisher-Yates shuffle in place; every permutation is equally likely."""
        cards = self._cards
        for i in range(len(cards) - 1, 0, -1):
            j = self._rng.randrange(i + 1)
            cards[i], cards[j] = cards[j], cards[i]

    def draw(self, n: int = 1) -> list[Card]:
        """Remove up to ``n`` cards from the top.

        Returns fewer than ``n`` (possibly none) when the deck runs short.
        """
        if n <= 0 or not self._cards:
            return []
        n = min(n, len(self._cards))
        drawn = self._cards[-n:]
        del self._cards[-n:]
        drawn.reverse()
        return drawn

    @property
    def remaining(self) -> int:
        return len(self._cards)

    @property
    def cards(self) -> list[Card]:
        return list(self._cards)

    @classmethod
    def from_cards(
        cls, cards: Iterable[Card], rng: Optional[random.Random] = None
    ) -> Deck:
        """Build a shuffled deck out of an arbitrary set of cards."""
        deck = cls(rng=rng, shuffle=False)
        deck._cards = list(cards)
        deck.shuffle()
        return deck

    def to_dict(self) -> dict:
        return {"cards": [c.to_dict() for c in self._cards]}

    @classmethod
    def from_dict(cls, data: dict, rng: Optional[random.Random] = None) -> Deck:
        """Restore a deck without reshuffling it."""
        deck = cls(rng=rng, shuffle=False)
        deck._cards = [Card.from_dict(c) for c in data["cards"]]
        return deck
