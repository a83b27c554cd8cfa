"""Tests for GameEngine serialization (to_dict / from_dict roundtrip)."""

import json
import random

from trentuno.cards import Card
from trentuno.engine import GameEngine, RoundPhase


def _make_engine(n_players=3, **kwargs) -> GameEngine:
    players = [{"id": f"p{i}", "name": f"Player{i}"} for i in range(n_players)]
    return GameEngine(
        game_code="TEST01",
        players=players,
        rng=random.Random(kwargs.pop("seed", 7)),
        **kwargs,
    )


def _roundtrip(engine: GameEngine) -> GameEngine:
    # Redis stores JSON, so go through a real encode/decode
    return GameEngine.from_dict(json.loads(json.dumps(engine.to_dict())))


def _play_turn(engine: GameEngine) -> dict:
    pid = engine.current_player_id
    engine.draw_card(pid, "deck")
    return engine.discard_card(pid, 0)


class TestEngineSerialization:
    def test_roundtrip_lobby(self):
        e = _make_engine(3, coins_per_player=5, max_players=4)
        e2 = _roundtrip(e)
        assert e2.game_code == "TEST01"
        assert list(e2.players) == ["p0", "p1", "p2"]
        assert e2.coins_per_player == 5
        assert e2.max_players == 4
        assert not e2.started
        assert e2.phase == RoundPhase.IDLE
        assert e2.deck is None

    def test_roundtrip_during_round(self):
        e = _make_engine(3)
        e.start_game()
        e2 = _roundtrip(e)
        assert e2.round_active
        assert e2.round_number == 1
        assert e2.phase == e.phase
        assert e2.pot == e.pot
        assert e2.player_order == e.player_order
        assert e2.current_player_id == e.current_player_id
        assert e2.dealer_idx == e.dealer_idx

    def test_roundtrip_preserves_hands(self):
        e = _make_engine(3)
        e.start_game()
        e2 = _roundtrip(e)
        for pid in e.player_order:
            assert e2.players[pid].hand == e.players[pid].hand

    def test_roundtrip_preserves_deck_order(self):
        e = _make_engine(2)
        e.start_game()
        e2 = _roundtrip(e)
        assert e2.deck.cards == e.deck.cards
        assert e2.discard_pile == e.discard_pile

    def test_roundtrip_mid_turn(self):
        e = _make_engine(3)
        e.start_game()
        e.draw_card("p1", "deck")
        e2 = _roundtrip(e)
        assert e2.phase == RoundPhase.AWAITING_DISCARD
        assert e2.players["p1"].has_drawn
        assert len(e2.players["p1"].hand) == 4

    def test_roundtrip_preserves_knock(self):
        e = _make_engine(3)
        e.start_game()
        e.knock("p1")
        e2 = _roundtrip(e)
        assert e2.knocker == "p1"
        assert e2.knock_turns_remaining == 2

    def test_roundtrip_preserves_round_result(self):
        e = _make_engine(2)
        e.start_game()
        e.players["p1"].hand = [Card.from_str(c) for c in ("Ah", "Kh", "Qh")]
        e.declare_31("p1")
        e2 = _roundtrip(e)
        assert e2.phase == RoundPhase.ENDED
        assert e2.winner_31 == "p1"
        assert e2.players["p1"].coins == 2
        assert e2.last_round_result == e.last_round_result

    def test_roundtrip_preserves_game_over(self):
        e = _make_engine(2)
        e.start_game()
        e.pot = 1
        e.knock("p1")
        _play_turn(e)
        assert e.game_over

        e2 = _roundtrip(e)
        assert e2.game_over is True
        assert e2.final_winners == e.final_winners
        assert not e2.start_round()["success"]

    def test_restored_engine_can_continue_turns(self):
        e = _make_engine(3)
        e.start_game()
        e2 = _roundtrip(e)

        _play_turn(e2)
        assert e2.current_player_id == "p2"
        e2.knock("p2")
        _play_turn(e2)
        result = _play_turn(e2)
        assert result["round_end"]["reason"] == "knock-complete"

    def test_restored_engine_can_deal_next_round(self):
        e = _make_engine(3)
        e.start_game()
        e.knock("p1")
        _play_turn(e)
        _play_turn(e)

        e2 = _roundtrip(e)
        assert e2.start_round()["success"]
        assert e2.round_number == 2
        assert e2.dealer_idx == 1

    def test_snapshot_matches_after_restore(self):
        e = _make_engine(4)
        e.start_game()
        _play_turn(e)
        assert _roundtrip(e).get_game_state() == e.get_game_state()

    def test_to_dict_has_all_fields(self):
        e = _make_engine(3)
        e.start_game()
        data = e.to_dict()
        expected_keys = [
            "game_code", "coins_per_player", "max_players", "players",
            "player_order", "started", "pot", "dealer_idx", "round_number",
            "phase", "deck", "discard_pile", "current_idx", "knocker",
            "knock_turns_remaining", "winner_31", "last_round_result",
            "game_over", "final_winners",
        ]
        for key in expected_keys:
            assert key in data, f"Missing serialization key: {key}"

    def test_token_hash_persisted_but_not_in_snapshot(self):
        e = _make_engine(2)
        e.add_player("p9", "Late", "abc123hash")
        e2 = _roundtrip(e)
        assert e2.players["p9"].token_hash == "abc123hash"
        assert e2.players["p0"].token_hash is None
        assert "token_hash" not in e2.get_game_state()["players"]["p9"]
