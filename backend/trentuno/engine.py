"""Core game engine for Trentuno (31).

Manages the authoritative room state: dealing, the two-phase draw/discard
turn, knocking, the instant 31 declaration, pot payouts, dealer rotation
and game-over detection.

Gameplay failures never raise out of the public methods.  Every action
returns a dict: ``{"success": True, ..., "state": snapshot}`` on success or
``{"success": False, "error": message, "kind": ActionError}`` on rejection,
and a rejected action leaves the engine untouched.
"""

from __future__ import annotations

import logging
import random
from enum import Enum
from typing import Any, Optional

from trentuno.cards import Card, Deck
from trentuno.scoring import MAX_SCORE, determine_winners, hand_score

logger = logging.getLogger(__name__)

HAND_SIZE = 3
MIN_PLAYERS = 2
MAX_PLAYERS = 5
DEFAULT_COINS_PER_PLAYER = 3

KNOCK_PAYOUT = 1
DECLARE_31_PAYOUT = 2


class RoundPhase(str, Enum):
    IDLE = "idle"  # no round dealt yet
    DEALING = "dealing"
    AWAITING_DRAW = "awaiting_draw"
    AWAITING_DISCARD = "awaiting_discard"
    ENDED = "ended"


class DrawSource(str, Enum):
    DECK = "deck"
    DISCARD = "discard"


class RoundEndReason(str, Enum):
    KNOCK_COMPLETE = "knock-complete"
    DECLARED_31 = "31-declared"


class ActionError(str, Enum):
    TURN_VIOLATION = "turn_violation"
    PHASE_VIOLATION = "phase_violation"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    INVALID_SELECTOR = "invalid_selector"
    RULE_VIOLATION = "rule_violation"
    MEMBERSHIP = "membership"


class ActionRejected(Exception):
    """Raised internally when an action fails validation."""

    def __init__(self, kind: ActionError, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def to_result(self) -> dict[str, Any]:
        return {"success": False, "error": str(self), "kind": self.kind.value}


class PlayerState:
    """A seated player. Coins persist across rounds; the hand does not."""

    def __init__(self, player_id: str, name: str, coins: int = 0) -> None:
        self.player_id = player_id
        self.name = name
        self.coins = coins
        self.hand: list[Card] = []
        self.has_drawn: bool = False
        # Hash of the secret that authorizes this player; never in snapshots
        self.token_hash: Optional[str] = None

    @property
    def score(self) -> int:
        return hand_score(self.hand)

    def reset_for_new_round(self) -> None:
        self.hand = []
        self.has_drawn = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "player_id": self.player_id,
            "name": self.name,
            "hand": [c.to_dict() for c in self.hand],
            "score": self.score,
            "coins": self.coins,
            "has_drawn": self.has_drawn,
        }


class GameEngine:
    """Manages a single Trentuno room."""

    def __init__(
        self,
        game_code: str,
        players: list[dict[str, Any]] | None = None,
        coins_per_player: int = DEFAULT_COINS_PER_PLAYER,
        max_players: int = MAX_PLAYERS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.game_code = game_code
        self.coins_per_player = coins_per_player
        self.max_players = max_players
        self._rng = rng if rng is not None else random.Random()

        # Membership, in join order; player_order is frozen at start_game
        self.players: dict[str, PlayerState] = {}
        for p in players or []:
            self.players[p["id"]] = PlayerState(p["id"], p["name"])
        self.player_order: list[str] = []

        self.started: bool = False
        self.pot: int = 0
        self.dealer_idx: int = 0
        self.round_number: int = 0

        # Current round
        self.phase: RoundPhase = RoundPhase.IDLE
        self.deck: Optional[Deck] = None
        self.discard_pile: list[Card] = []
        self.current_idx: int = 0
        self.knocker: Optional[str] = None
        self.knock_turns_remaining: int = 0
        self.winner_31: Optional[str] = None

        self.last_round_result: Optional[dict[str, Any]] = None
        self.game_over: bool = False
        self.final_winners: list[dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def round_active(self) -> bool:
        return self.phase in (RoundPhase.AWAITING_DRAW, RoundPhase.AWAITING_DISCARD)

    @property
    def current_player_id(self) -> Optional[str]:
        if not self.round_active or not self.player_order:
            return None
        return self.player_order[self.current_idx]

    def _find_player(self, player_id: str) -> Optional[PlayerState]:
        return self.players.get(player_id)

    def _seated(self) -> list[PlayerState]:
        return [self.players[pid] for pid in self.player_order]

    def get_valid_actions(self, player_id: str) -> list[str]:
        """Names of the actions the given player may take right now."""
        if player_id != self.current_player_id:
            return []

        player = self.players[player_id]
        if player.has_drawn:
            return ["discard"]

        actions = []
        if self.deck is not None and (self.deck.remaining > 0 or len(self.discard_pile) > 1):
            actions.append("draw_deck")
        if self.discard_pile:
            actions.append("draw_discard")
        if self.knocker is None:
            actions.append("knock")
        if player.score == MAX_SCORE:
            actions.append("declare_31")
        return actions

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def _ok(self, **extra: Any) -> dict[str, Any]:
        return {"success": True, **extra, "state": self.get_game_state()}

    def _rejected(self, exc: ActionRejected) -> dict[str, Any]:
        logger.debug(
            "Room %s rejected action (%s): %s", self.game_code, exc.kind.value, exc
        )
        return exc.to_result()

    def _require_turn(self, player_id: str) -> PlayerState:
        if not self.round_active:
            raise ActionRejected(ActionError.TURN_VIOLATION, "No active round")
        if player_id not in self.players:
            raise ActionRejected(ActionError.TURN_VIOLATION, "Player not in this room")
        if self.current_player_id != player_id:
            raise ActionRejected(ActionError.TURN_VIOLATION, "Not your turn")
        return self.players[player_id]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_player(
        self, player_id: str, name: str, token_hash: Optional[str] = None
    ) -> dict[str, Any]:
        if self.started:
            return self._rejected(
                ActionRejected(ActionError.MEMBERSHIP, "Game already started")
            )
        if player_id in self.players:
            return self._rejected(
                ActionRejected(ActionError.MEMBERSHIP, "Player already in room")
            )
        if len(self.players) >= self.max_players:
            return self._rejected(
                ActionRejected(
                    ActionError.MEMBERSHIP,
                    f"Room is full (max {self.max_players} players)",
                )
            )

        player = PlayerState(player_id, name)
        player.token_hash = token_hash
        self.players[player_id] = player
        return self._ok()

    def remove_player(self, player_id: str) -> dict[str, Any]:
        """Drop a player; during a round the turn pointer is re-indexed."""
        player = self.players.pop(player_id, None)
        if player is None:
            return self._rejected(
                ActionRejected(ActionError.MEMBERSHIP, "Player not found")
            )

        round_end = None
        if player_id in self.player_order:
            round_end = self._remove_from_rotation(player)

        if round_end is not None:
            return self._ok(round_end=round_end)
        return self._ok()

    def _remove_from_rotation(self, player: PlayerState) -> Optional[dict[str, Any]]:
        idx = self.player_order.index(player.player_id)
        was_active = self.round_active
        was_current = was_active and idx == self.current_idx

        # Seats current_idx .. current_idx + knock_turns_remaining - 1 still
        # owe their final turn after a knock.
        owed_final_turn = False
        if was_active and self.knocker is not None:
            offset = (idx - self.current_idx) % len(self.player_order)
            owed_final_turn = offset < self.knock_turns_remaining

        if was_active:
            # Keep every card in play: the hand goes under the discard pile
            self.discard_pile[:0] = player.hand
        player.reset_for_new_round()

        del self.player_order[idx]
        n = len(self.player_order)
        if idx < self.current_idx:
            self.current_idx -= 1
        if idx < self.dealer_idx:
            self.dealer_idx -= 1
        if self.current_idx >= n:
            self.current_idx = 0
        if self.dealer_idx >= n:
            self.dealer_idx = 0

        if not was_active:
            return None

        if n < MIN_PLAYERS:
            logger.info(
                "Room %s round %d abandoned: not enough players",
                self.game_code,
                self.round_number,
            )
            self.phase = RoundPhase.ENDED
            for p in self._seated():
                p.has_drawn = False
            return None

        if was_current:
            # The next seat starts a fresh turn
            for p in self._seated():
                p.has_drawn = False
            self.phase = RoundPhase.AWAITING_DRAW

        if owed_final_turn:
            self.knock_turns_remaining -= 1
            if self.knock_turns_remaining <= 0:
                return self._end_round(RoundEndReason.KNOCK_COMPLETE)
        return None

    # ------------------------------------------------------------------
    # Game / Round Lifecycle
    # ------------------------------------------------------------------

    def start_game(self) -> dict[str, Any]:
        """Freeze the seating order, fill the pot and deal round 1."""
        if self.started:
            return self._rejected(
                ActionRejected(ActionError.MEMBERSHIP, "Game already started")
            )
        if len(self.players) < MIN_PLAYERS:
            return self._rejected(
                ActionRejected(
                    ActionError.MEMBERSHIP,
                    f"Need at least {MIN_PLAYERS} players to start",
                )
            )

        self.started = True
        self.player_order = list(self.players)
        self.pot = self.coins_per_player * len(self.player_order)
        logger.info(
            "Room %s game started: %d players, pot=%d",
            self.game_code,
            len(self.player_order),
            self.pot,
        )
        return self.start_round()

    def start_round(self) -> dict[str, Any]:
        """Deal a new round. Valid only between rounds while the pot lasts."""
        try:
            self._check_can_start_round()
        except ActionRejected as exc:
            return self._rejected(exc)

        self.round_number += 1
        self.phase = RoundPhase.DEALING

        n = len(self.player_order)
        if self.round_number > 1:
            self.dealer_idx = (self.dealer_idx + 1) % n
        elif self.dealer_idx >= n:
            self.dealer_idx = 0

        self.knocker = None
        self.knock_turns_remaining = 0
        self.winner_31 = None
        self.last_round_result = None

        for p in self._seated():
            p.reset_for_new_round()

        self.deck = Deck(rng=self._rng)
        # Deal starting with the seat after the dealer
        for offset in range(1, n + 1):
            p = self.players[self.player_order[(self.dealer_idx + offset) % n]]
            p.hand = self.deck.draw(HAND_SIZE)
        self.discard_pile = self.deck.draw(1)

        self.current_idx = (self.dealer_idx + 1) % n
        self.phase = RoundPhase.AWAITING_DRAW

        logger.info(
            "Room %s round %d dealt: dealer=%s first=%s",
            self.game_code,
            self.round_number,
            self.player_order[self.dealer_idx],
            self.current_player_id,
        )
        return self._ok()

    def _check_can_start_round(self) -> None:
        if not self.started:
            raise ActionRejected(ActionError.MEMBERSHIP, "Game has not started")
        if self.round_active:
            raise ActionRejected(ActionError.PHASE_VIOLATION, "Round already in progress")
        if self.game_over or self.pot <= 0:
            raise ActionRejected(ActionError.RULE_VIOLATION, "Game is over")
        if len(self.player_order) < MIN_PLAYERS:
            raise ActionRejected(
                ActionError.MEMBERSHIP, f"Need at least {MIN_PLAYERS} players"
            )

    # ------------------------------------------------------------------
    # Action Processing
    # ------------------------------------------------------------------

    def draw_card(self, player_id: str, source: str) -> dict[str, Any]:
        """Draw phase: take the deck top or the discard top into the hand."""
        try:
            card = self._do_draw(player_id, source)
        except ActionRejected as exc:
            return self._rejected(exc)
        return self._ok(drawn_card=card.to_dict(), source=DrawSource(source).value)

    def discard_card(self, player_id: str, position: int) -> dict[str, Any]:
        """Discard phase: put hand[position] on the pile and pass the turn."""
        try:
            card, round_end = self._do_discard(player_id, position)
        except ActionRejected as exc:
            return self._rejected(exc)
        if round_end is not None:
            return self._ok(discarded_card=card.to_dict(), round_end=round_end)
        return self._ok(discarded_card=card.to_dict())

    def knock(self, player_id: str) -> dict[str, Any]:
        """Close the round: everyone else gets exactly one more turn."""
        try:
            round_end = self._do_knock(player_id)
        except ActionRejected as exc:
            return self._rejected(exc)
        if round_end is not None:
            return self._ok(round_end=round_end)
        return self._ok()

    def declare_31(self, player_id: str) -> dict[str, Any]:
        """Claim an instant win with a hand worth exactly 31."""
        try:
            round_end = self._do_declare_31(player_id)
        except ActionRejected as exc:
            return self._rejected(exc)
        return self._ok(round_end=round_end)

    def _do_draw(self, player_id: str, source: str) -> Card:
        player = self._require_turn(player_id)
        if player.has_drawn:
            raise ActionRejected(ActionError.PHASE_VIOLATION, "Already drew this turn")
        try:
            src = DrawSource(source)
        except ValueError:
            raise ActionRejected(
                ActionError.INVALID_SELECTOR, f"Unknown draw source: {source}"
            ) from None

        if src is DrawSource.DISCARD:
            if not self.discard_pile:
                raise ActionRejected(
                    ActionError.RESOURCE_EXHAUSTED, "Discard pile is empty"
                )
            card = self.discard_pile.pop()
        else:
            if self.deck.remaining == 0:
                self._recycle_discard_pile()
            drawn = self.deck.draw(1)
            if not drawn:
                raise ActionRejected(
                    ActionError.RESOURCE_EXHAUSTED, "No cards left to draw"
                )
            card = drawn[0]

        player.hand.append(card)
        player.has_drawn = True
        self.phase = RoundPhase.AWAITING_DISCARD
        return card

    def _do_discard(
        self, player_id: str, position: int
    ) -> tuple[Card, Optional[dict[str, Any]]]:
        player = self._require_turn(player_id)
        if not player.has_drawn:
            raise ActionRejected(
                ActionError.PHASE_VIOLATION, "Must draw before discarding"
            )
        if (
            not isinstance(position, int)
            or isinstance(position, bool)
            or not 0 <= position < len(player.hand)
        ):
            raise ActionRejected(
                ActionError.INVALID_SELECTOR, f"Invalid card position: {position}"
            )

        card = player.hand.pop(position)
        self.discard_pile.append(card)
        player.has_drawn = False
        self.phase = RoundPhase.AWAITING_DRAW
        return card, self._advance_turn()

    def _do_knock(self, player_id: str) -> Optional[dict[str, Any]]:
        player = self._require_turn(player_id)
        if player.has_drawn:
            raise ActionRejected(
                ActionError.PHASE_VIOLATION, "Can only knock before drawing"
            )
        if self.knocker is not None:
            raise ActionRejected(
                ActionError.RULE_VIOLATION, "Someone already knocked this round"
            )

        self.knocker = player_id
        self.knock_turns_remaining = len(self.player_order)
        logger.info(
            "Room %s round %d: %s knocked",
            self.game_code,
            self.round_number,
            player.name,
        )
        return self._advance_turn()

    def _do_declare_31(self, player_id: str) -> dict[str, Any]:
        player = self._require_turn(player_id)
        if player.has_drawn:
            raise ActionRejected(
                ActionError.PHASE_VIOLATION, "Can only declare 31 before drawing"
            )
        if player.score != MAX_SCORE:
            raise ActionRejected(
                ActionError.RULE_VIOLATION,
                f"Hand scores {player.score}, not {MAX_SCORE}",
            )

        self.winner_31 = player_id
        logger.info(
            "Room %s round %d: %s declared 31",
            self.game_code,
            self.round_number,
            player.name,
        )
        return self._end_round(RoundEndReason.DECLARED_31)

    def _advance_turn(self) -> Optional[dict[str, Any]]:
        """Pass the turn to the next seat; counts down a pending knock."""
        self.current_idx = (self.current_idx + 1) % len(self.player_order)
        if self.knocker is not None:
            self.knock_turns_remaining -= 1
            if self.knock_turns_remaining <= 0:
                return self._end_round(RoundEndReason.KNOCK_COMPLETE)
        return None

    def _recycle_discard_pile(self) -> None:
        """Shuffle all but the top discard back into a fresh deck."""
        if len(self.discard_pile) <= 1:
            return

        top_card = self.discard_pile[-1]
        self.deck = Deck.from_cards(self.discard_pile[:-1], rng=self._rng)
        self.discard_pile = [top_card]
        logger.debug(
            "Room %s recycled discard pile into %d-card deck",
            self.game_code,
            self.deck.remaining,
        )

    # ------------------------------------------------------------------
    # Round Resolution & Payout
    # ------------------------------------------------------------------

    def _end_round(self, reason: RoundEndReason) -> dict[str, Any]:
        """Score the round, pay the winners out of the pot, detect game over."""
        self.phase = RoundPhase.ENDED
        seated = self._seated()
        for p in seated:
            p.has_drawn = False

        if reason is RoundEndReason.DECLARED_31:
            winners = [self.winner_31]
            payout = DECLARE_31_PAYOUT
        else:
            winners = determine_winners({p.player_id: p.score for p in seated})
            payout = KNOCK_PAYOUT

        coins_needed = len(winners) * payout
        if self.pot < coins_needed:
            # Winners are always paid in full
            logger.info(
                "Room %s pot topped up from %d to %d",
                self.game_code,
                self.pot,
                coins_needed,
            )
            self.pot = coins_needed

        for pid in winners:
            self.pot -= payout
            self.players[pid].coins += payout

        result: dict[str, Any] = {
            "reason": reason.value,
            "round_number": self.round_number,
            "players": {
                p.player_id: {
                    "name": p.name,
                    "hand": [c.to_dict() for c in p.hand],
                    "score": p.score,
                    "coins": p.coins,
                }
                for p in seated
            },
            "winners": winners,
            "coins_awarded": payout,
            "pot_remaining": self.pot,
            "game_over": False,
        }

        if self.pot <= 0:
            self.game_over = True
            self.final_winners = self._build_final_winners()
            result["game_over"] = True
            result["final_winners"] = self.final_winners
            logger.info(
                "Room %s game over: %s",
                self.game_code,
                ", ".join(w["name"] for w in self.final_winners),
            )

        logger.info(
            "Room %s round %d ended (%s): winners=%s pot=%d",
            self.game_code,
            self.round_number,
            reason.value,
            winners,
            self.pot,
        )
        self.last_round_result = result
        return result

    def _build_final_winners(self) -> list[dict[str, Any]]:
        """Everyone tied at the highest coin total."""
        seated = self._seated()
        coin_winners = set(determine_winners({p.player_id: p.coins for p in seated}))
        return [
            {"player_id": p.player_id, "name": p.name, "coins": p.coins}
            for p in seated
            if p.player_id in coin_winners
        ]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_game_state(self) -> dict[str, Any]:
        """Full room snapshot; hands are not filtered here."""
        current = self.current_player_id
        knocker = self._find_player(self.knocker) if self.knocker else None
        dealer = (
            self.player_order[self.dealer_idx]
            if self.started and self.player_order
            else None
        )

        return {
            "game_code": self.game_code,
            "started": self.started,
            "round_active": self.round_active,
            "phase": self.phase.value,
            "round_number": self.round_number,
            "current_player": current,
            "current_player_has_drawn": (
                self.players[current].has_drawn if current else False
            ),
            "top_discard": self.discard_pile[-1].to_dict() if self.discard_pile else None,
            "discard_count": len(self.discard_pile),
            "deck_count": self.deck.remaining if self.deck else 0,
            "pot": self.pot,
            "dealer": dealer,
            "knocker": self.knocker,
            "knocker_name": knocker.name if knocker else None,
            "knock_turns_remaining": self.knock_turns_remaining,
            "player_order": list(self.player_order),
            "players": {pid: p.to_dict() for pid, p in self.players.items()},
            "last_round_result": self.last_round_result,
            "game_over": self.game_over,
            "final_winners": self.final_winners,
        }

    # ------------------------------------------------------------------
    # Serialization (for Redis persistence)
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize full engine state for Redis storage."""
        return {
            "game_code": self.game_code,
            "coins_per_player": self.coins_per_player,
            "max_players": self.max_players,
            "players": [
                {
                    "player_id": p.player_id,
                    "name": p.name,
                    "coins": p.coins,
                    "hand": [c.to_dict() for c in p.hand],
                    "has_drawn": p.has_drawn,
                    "token_hash": p.token_hash,
                }
                for p in self.players.values()
            ],
            "player_order": self.player_order,
            "started": self.started,
            "pot": self.pot,
            "dealer_idx": self.dealer_idx,
            "round_number": self.round_number,
            "phase": self.phase.value,
            "deck": self.deck.to_dict() if self.deck else None,
            "discard_pile": [c.to_dict() for c in self.discard_pile],
            "current_idx": self.current_idx,
            "knocker": self.knocker,
            "knock_turns_remaining": self.knock_turns_remaining,
            "winner_31": self.winner_31,
            "last_round_result": self.last_round_result,
            "game_over": self.game_over,
            "final_winners": self.final_winners,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], rng: Optional[random.Random] = None
    ) -> GameEngine:
        """Restore engine state from Redis."""
        engine = cls(
            data["game_code"],
            coins_per_player=data.get("coins_per_player", DEFAULT_COINS_PER_PLAYER),
            max_players=data.get("max_players", MAX_PLAYERS),
            rng=rng,
        )
        for p in data["players"]:
            ps = PlayerState(p["player_id"], p["name"], p["coins"])
            ps.hand = [Card.from_dict(c) for c in p["hand"]]
            ps.has_drawn = p["has_drawn"]
            ps.token_hash = p.get("token_hash")
            engine.players[ps.player_id] = ps

        engine.player_order = list(data["player_order"])
        engine.started = data["started"]
        engine.pot = data["pot"]
        engine.dealer_idx = data["dealer_idx"]
        engine.round_number = data["round_number"]
        engine.phase = RoundPhase(data["phase"])
        deck_data = data.get("deck")
        engine.deck = Deck.from_dict(deck_data, rng=engine._rng) if deck_data else None
        engine.discard_pile = [Card.from_dict(c) for c in data["discard_pile"]]
        engine.current_idx = data["current_idx"]
        engine.knocker = data.get("knocker")
        engine.knock_turns_remaining = data.get("knock_turns_remaining", 0)
        engine.winner_31 = data.get("winner_31")
        engine.last_round_result = data.get("last_round_result")
        engine.game_over = data.get("game_over", False)
        engine.final_winners = data.get("final_winners", [])
        return engine
