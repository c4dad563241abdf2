"""Tests for the game engine."""

import json
import logging

import pytest
import pytest_asyncio

from cardroom.db.repository import RevisionConflict
from cardroom.game.deck import generate_deck, sort_by_rank, sort_by_suit
from cardroom.game.engine import GameEngine
from cardroom.game.errors import (
    EMPTY_RESOURCE,
    INSUFFICIENT_CARDS,
    INVALID_ARGUMENT,
    INVALID_STATE,
    NOT_FOUND,
    STORE_ERROR,
)
from cardroom.game.integrity import validate_room_integrity
from cardroom.game.models import RoomSettings, card_ids
from cardroom.utils.crypto import create_rng

from tests.conftest import room_node

CODE = "1234"
PLAYERS = ["alice", "bob", "carol"]


def _room(engine, db):
    return engine.decode(CODE, db.get(f"rooms/{CODE}"))


@pytest.fixture
def waiting(db):
    db.seed(f"rooms/{CODE}", room_node(PLAYERS))


@pytest_asyncio.fixture
async def started(engine, db, waiting):
    result = await engine.start_game(CODE, PLAYERS, 5)
    assert result.success
    return result.room


class TestStartGame:
    @pytest.mark.asyncio
    async def test_deal_correctness(self, engine, db, waiting):
        result = await engine.start_game(CODE, PLAYERS, 5)
        assert result.success
        assert result.value == 52
        game = _room(engine, db).game_data
        assert len(game.deck) == 37
        for p in PLAYERS:
            assert len(game.hand(p)) == 5
            assert len(set(card_ids(game.hand(p)))) == 5
        assert len({c.id for c in game.all_cards()}) == 52
        assert game.piles == []
        assert game.discard_pile == []
        assert game.last_played is None

    @pytest.mark.asyncio
    async def test_marks_started_and_stamps(self, engine, db, clock, waiting):
        clock.advance(5000)
        await engine.start_game(CODE, PLAYERS, 5)
        room = _room(engine, db)
        assert room.started
        assert room.last_active == clock.now
        assert room.last_updated == clock.now
        assert room.settings.deal_count == 5

    @pytest.mark.asyncio
    async def test_deals_in_player_order(self, db, store, resources, waiting):
        first = GameEngine(store, resources=resources, rng=create_rng(3))
        await first.start_game(CODE, PLAYERS, 2)
        game = _room(first, db).game_data
        # Replaying the same seed reproduces the pre-deal deck
        deck = generate_deck(RoomSettings(deal_count=2), resources, create_rng(3))
        assert card_ids(game.hand("alice")) == card_ids(deck[0:2])
        assert card_ids(game.hand("bob")) == card_ids(deck[2:4])
        assert card_ids(game.hand("carol")) == card_ids(deck[4:6])
        assert card_ids(game.deck) == card_ids(deck[6:])

    @pytest.mark.asyncio
    async def test_num_decks_override_keeps_room_settings(self, engine, db, waiting):
        before = db.get(f"rooms/{CODE}/settings")
        result = await engine.start_game(CODE, PLAYERS, 3, num_decks=2)
        assert result.value == 104
        assert db.get(f"rooms/{CODE}/settings") == before
        room = _room(engine, db)
        assert room.settings.num_decks == 1
        assert room.settings.deal_count == 5
        assert len(room.game_data.all_cards()) == 104
        assert validate_room_integrity(room, expected_total=result.value) == []

    @pytest.mark.asyncio
    async def test_jokers_from_room_settings(self, engine, db):
        db.seed(f"rooms/{CODE}", room_node(PLAYERS, settings=RoomSettings(include_jokers=True)))
        result = await engine.start_game(CODE, PLAYERS, 5)
        assert result.value == 54

    @pytest.mark.asyncio
    async def test_insufficient_cards(self, engine, db, waiting):
        result = await engine.start_game(CODE, PLAYERS, 18)
        assert not result.success
        assert result.kind == INSUFFICIENT_CARDS
        assert not _room(engine, db).started

    @pytest.mark.asyncio
    async def test_already_started(self, engine, started):
        result = await engine.start_game(CODE, PLAYERS, 5)
        assert result.kind == INVALID_STATE

    @pytest.mark.asyncio
    async def test_restart_redeals(self, engine, db, started):
        before = set(card_ids(started.game_data.all_cards()))
        result = await engine.restart_game(CODE, PLAYERS, 7)
        assert result.success
        game = _room(engine, db).game_data
        assert len(game.hand("alice")) == 7
        assert len(game.deck) == 52 - 21
        assert not before & set(card_ids(game.all_cards()))

    @pytest.mark.asyncio
    async def test_missing_room(self, engine):
        result = await engine.start_game("9999", PLAYERS, 5)
        assert result.kind == NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_players(self, engine, waiting):
        assert (await engine.start_game(CODE, [], 5)).kind == INVALID_ARGUMENT
        assert (await engine.start_game(CODE, ["a", "a"], 5)).kind == INVALID_ARGUMENT
        assert (await engine.start_game(CODE, PLAYERS, -1)).kind == INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_logs_event(self, engine, waiting, caplog):
        with caplog.at_level(logging.INFO, logger="cardroom.engine"):
            await engine.start_game(CODE, PLAYERS, 5)
        events = [json.loads(r.message) for r in caplog.records if r.message.startswith("{")]
        assert events[-1]["event"] == "start_game"
        assert events[-1]["deck_remaining"] == 37


class TestPlayCards:
    @pytest.mark.asyncio
    async def test_creates_pile(self, engine, db, started):
        hand = started.game_data.hand("alice")
        result = await engine.play_cards(CODE, "alice", hand[:2])
        assert result.success
        game = _room(engine, db).game_data
        assert card_ids(game.piles[-1]) == card_ids(hand[:2])
        assert card_ids(game.hand("alice")) == card_ids(hand[2:])
        assert game.last_played.player == "alice"
        assert card_ids(game.last_played.hand) == card_ids(hand[:2])

    @pytest.mark.asyncio
    async def test_piles_accumulate(self, engine, db, started):
        await engine.play_cards(CODE, "alice", started.game_data.hand("alice")[:1])
        await engine.play_cards(CODE, "bob", started.game_data.hand("bob")[:3])
        game = _room(engine, db).game_data
        assert [len(p) for p in game.piles] == [1, 3]
        assert game.last_played.player == "bob"

    @pytest.mark.asyncio
    async def test_empty_selection(self, engine, started):
        result = await engine.play_cards(CODE, "alice", [])
        assert result.kind == INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_card_not_in_hand(self, engine, db, started):
        bobs = started.game_data.hand("bob")[:1]
        result = await engine.play_cards(CODE, "alice", bobs)
        assert result.kind == INVALID_STATE
        assert _room(engine, db).game_data.piles == []

    @pytest.mark.asyncio
    async def test_not_started(self, engine, waiting):
        result = await engine.play_cards(CODE, "alice", ["x"])
        assert result.kind == INVALID_STATE


class TestDiscardCards:
    @pytest.mark.asyncio
    async def test_appends_to_discard(self, engine, db, started):
        hand = started.game_data.hand("alice")
        await engine.discard_cards(CODE, "alice", hand[:1])
        await engine.discard_cards(CODE, "alice", hand[1:3])
        game = _room(engine, db).game_data
        assert card_ids(game.discard_pile) == card_ids(hand[:3])
        assert len(game.hand("alice")) == 2

    @pytest.mark.asyncio
    async def test_empty_selection(self, engine, started):
        assert (await engine.discard_cards(CODE, "alice", [])).kind == INVALID_ARGUMENT


class TestRecall:
    @pytest.mark.asyncio
    async def test_recall_returns_cards(self, engine, db, started):
        hand = started.game_data.hand("alice")
        await engine.play_cards(CODE, "alice", hand[:2])
        result = await engine.recall_last_pile(CODE, "alice")
        assert result.success
        game = _room(engine, db).game_data
        assert sorted(card_ids(game.hand("alice"))) == sorted(card_ids(hand))
        assert game.piles == []
        assert game.last_played is None

    @pytest.mark.asyncio
    async def test_recall_after_other_play_fails(self, engine, db, started):
        await engine.play_cards(CODE, "alice", started.game_data.hand("alice")[:2])
        await engine.play_cards(CODE, "bob", started.game_data.hand("bob")[:1])
        result = await engine.recall_last_pile(CODE, "alice")
        assert result.kind == INVALID_STATE
        assert len(_room(engine, db).game_data.piles) == 2

    @pytest.mark.asyncio
    async def test_recall_when_top_pile_changed(self, engine, db, started):
        await engine.play_cards(CODE, "alice", started.game_data.hand("alice")[:2])
        await engine.shuffle_deck(CODE)
        result = await engine.recall_last_pile(CODE, "alice")
        assert result.kind == INVALID_STATE

    @pytest.mark.asyncio
    async def test_nothing_to_recall(self, engine, started):
        assert (await engine.recall_last_pile(CODE, "alice")).kind == INVALID_STATE


class TestDraw:
    @pytest.mark.asyncio
    async def test_draws_front_card(self, engine, db, started):
        top = started.game_data.deck[0]
        result = await engine.draw_card(CODE, "bob")
        assert result.value == top
        game = _room(engine, db).game_data
        assert game.hand("bob")[-1] == top
        assert len(game.deck) == 36

    @pytest.mark.asyncio
    async def test_empty_deck(self, engine, db, waiting):
        await engine.start_game(CODE, ["alice", "bob"], 26)
        result = await engine.draw_card(CODE, "alice")
        assert result.kind == EMPTY_RESOURCE

    @pytest.mark.asyncio
    async def test_draw_from_discard(self, engine, db, started):
        hand = started.game_data.hand("alice")
        await engine.discard_cards(CODE, "alice", hand[:2])
        result = await engine.draw_from_discard(CODE, "bob")
        assert result.value == hand[1]
        game = _room(engine, db).game_data
        assert card_ids(game.discard_pile) == [hand[0].id]
        assert game.hand("bob")[-1] == hand[1]

    @pytest.mark.asyncio
    async def test_draw_from_empty_discard(self, engine, started):
        assert (await engine.draw_from_discard(CODE, "bob")).kind == EMPTY_RESOURCE


class TestShuffle:
    @pytest.mark.asyncio
    async def test_piles_return_to_deck(self, engine, db, started):
        await engine.play_cards(CODE, "alice", started.game_data.hand("alice")[:3])
        await engine.play_cards(CODE, "bob", started.game_data.hand("bob")[:2])
        result = await engine.shuffle_deck(CODE)
        assert result.value == 5
        game = _room(engine, db).game_data
        assert game.piles == []
        assert len(game.deck) == 42
        assert len(game.all_cards()) == 52

    @pytest.mark.asyncio
    async def test_no_piles(self, engine, started):
        assert (await engine.shuffle_deck(CODE)).kind == INVALID_STATE


class TestDeal:
    @pytest.mark.asyncio
    async def test_appends_to_hands(self, engine, db, started):
        deck = started.game_data.deck
        result = await engine.deal_deck(CODE, ["bob", "alice"], 2)
        assert result.success
        game = _room(engine, db).game_data
        assert card_ids(game.hand("bob")[5:]) == card_ids(deck[0:2])
        assert card_ids(game.hand("alice")[5:]) == card_ids(deck[2:4])
        assert len(game.hand("carol")) == 5
        assert len(game.deck) == 33

    @pytest.mark.asyncio
    async def test_insufficient(self, engine, started):
        result = await engine.deal_deck(CODE, PLAYERS, 13)
        assert result.kind == INSUFFICIENT_CARDS
        assert "max is 12" in result.error

    @pytest.mark.asyncio
    async def test_non_positive_count(self, engine, started):
        assert (await engine.deal_deck(CODE, PLAYERS, 0)).kind == INVALID_ARGUMENT


class TestMoveCards:
    @pytest.mark.asyncio
    async def test_moves_between_hands(self, engine, db, started):
        moving = started.game_data.hand("alice")[:2]
        result = await engine.move_cards(CODE, "alice", "carol", moving)
        assert result.success
        game = _room(engine, db).game_data
        assert len(game.hand("alice")) == 3
        assert card_ids(game.hand("carol")[-2:]) == card_ids(moving)

    @pytest.mark.asyncio
    async def test_to_self(self, engine, started):
        cards = started.game_data.hand("alice")[:1]
        assert (await engine.move_cards(CODE, "alice", "alice", cards)).kind == INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_card_not_in_hand(self, engine, started):
        cards = started.game_data.hand("bob")[:1]
        assert (await engine.move_cards(CODE, "alice", "carol", cards)).kind == INVALID_STATE


class TestHandOrder:
    @pytest.mark.asyncio
    async def test_sync_hand(self, engine, db, started):
        order = list(reversed(card_ids(started.game_data.hand("alice"))))
        result = await engine.sync_hand(CODE, "alice", order)
        assert result.success
        assert card_ids(_room(engine, db).game_data.hand("alice")) == order

    @pytest.mark.asyncio
    async def test_sync_hand_rejects_other_cards(self, engine, started):
        order = card_ids(started.game_data.hand("alice"))[:4] + ["foreign"]
        assert (await engine.sync_hand(CODE, "alice", order)).kind == INVALID_STATE

    @pytest.mark.asyncio
    async def test_sort_hand(self, engine, db, started):
        await engine.sort_hand(CODE, "alice", "suit")
        hand = _room(engine, db).game_data.hand("alice")
        assert card_ids(hand) == card_ids(sort_by_suit(hand))
        await engine.sort_hand(CODE, "alice", "rank")
        hand = _room(engine, db).game_data.hand("alice")
        assert card_ids(hand) == card_ids(sort_by_rank(hand))

    @pytest.mark.asyncio
    async def test_unknown_sort(self, engine, started):
        assert (await engine.sort_hand(CODE, "alice", "colour")).kind == INVALID_ARGUMENT


class TestFailures:
    @pytest.mark.asyncio
    async def test_store_failure_leaves_room_unchanged(self, engine, db, started):
        before = db.get(f"rooms/{CODE}")
        db.fail_writes = True
        result = await engine.draw_card(CODE, "alice")
        assert result.kind == STORE_ERROR
        assert db.get(f"rooms/{CODE}") == before

    @pytest.mark.asyncio
    async def test_timeout(self, db, store, waiting):
        db.latency = 0.05
        slow = GameEngine(store, operation_timeout=0.01)
        result = await slow.start_game(CODE, PLAYERS, 5)
        assert result.kind == STORE_ERROR
        assert "timeout" in result.error

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, engine, store, started, monkeypatch):
        calls = []

        async def always_conflict(path, values, expected_revision=None):
            calls.append(expected_revision)
            raise RevisionConflict("changed")

        monkeypatch.setattr(store, "update", always_conflict)
        result = await engine.draw_card(CODE, "alice")
        assert result.kind == STORE_ERROR
        assert len(calls) == 3
        assert all(calls)

    @pytest.mark.asyncio
    async def test_malformed_room(self, engine, db):
        db.seed(f"rooms/{CODE}", ["not", "a", "room"])
        assert (await engine.draw_card(CODE, "alice")).kind == INVALID_STATE
