"""Trentuno hand scoring.

A hand is worth the best single-suit total it holds: aces count 11,
face cards 10 and numerals their face value.  A player keeps three cards
between turns, so only the three highest cards of a suit ever count and
the best possible hand (A-K-Q of one suit) is worth 31.
"""

from __future__ import annotations

from typing import Sequence

from trentuno.cards import Card, Rank, Suit

MAX_SCORE = 31

# Cards of one suit that count towards a hand's score.
CARDS_PER_SUIT_SCORED = 3

CARD_VALUES = {
    Rank.ACE: 11,
    Rank.TWO: 2,
    Rank.THREE: 3,
    Rank.FOUR: 4,
    Rank.FIVE: 5,
    Rank.SIX: 6,
    Rank.SEVEN: 7,
    Rank.EIGHT: 8,
    Rank.NINE: 9,
    Rank.TEN: 10,
    Rank.JACK: 10,
    Rank.QUEEN: 10,
    Rank.KING: 10,
}


def card_value(card: Card) -> int:
    return CARD_VALUES[card.rank]


def suit_totals(hand: Sequence[Card]) -> dict[Suit, int]:
    """Return the scoring total of every suit (0 for suits not held)."""
    by_suit: dict[Suit, list[int]] = {suit: [] for suit in Suit}
    for card in hand:
        by_suit[card.suit].append(card_value(card))

    return {
        suit: sum(sorted(values, reverse=True)[:CARDS_PER_SUIT_SCORED])
        for suit, values in by_suit.items()
    }


def hand_score(hand: Sequence[Card]) -> int:
    """Best same-suit total in the hand, 0 for an empty hand."""
    if not hand:
        return 0
    return max(suit_totals(hand).values())


def determine_winners(values: dict[str, int]) -> list[str]:
    """Given {player_id: value}, return every player_id tied at the maximum."""
    if not values:
        return []

    best = max(values.values())
    return [pid for pid, value in values.items() if value == best]
