"""Multiple client sessions sharing one in-memory database."""

import asyncio

import pytest
import pytest_asyncio

from cardroom.client.state import SCREEN_HOME, SCREEN_ROOM
from cardroom.game.errors import CRITICAL, TRANSIENT

from tests.conftest import make_session

FAST = {"debounce_seconds": 0.01, "notice_seconds": 0.05}


async def settle(*sessions, rounds: int = 3):
    """Let debounced snapshots and follow-up writes run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0.03)
        for session in sessions:
            await session.wait_idle()


@pytest_asyncio.fixture
async def table(db):
    """Alice hosts, Bob and Carol joined."""
    alice = make_session(db, "alice", seed=1, **FAST)
    bob = make_session(db, "bob", seed=2, **FAST)
    carol = make_session(db, "carol", seed=3, **FAST)
    assert await alice.create_room("alice")
    code = alice.state.room_code
    assert await bob.join_room(code, "bob")
    assert await carol.join_room(code, "carol")
    await settle(alice, bob, carol)
    yield alice, bob, carol
    for session in (alice, bob, carol):
        await session.close()


class TestRoomEntry:
    @pytest.mark.asyncio
    async def test_everyone_sees_everyone(self, table):
        alice, bob, carol = table
        for session in table:
            assert session.state.screen == SCREEN_ROOM
            assert session.state.players == ("alice", "bob", "carol")
            assert session.state.host == "alice"
        assert alice.state.is_host
        assert not bob.state.is_host
        assert alice.state.success_message.startswith("Room ")

    @pytest.mark.asyncio
    async def test_full_room_rejected(self, db, table):
        alice, _, _ = table
        dave = make_session(db, "dave", **FAST)
        assert await dave.join_room(alice.state.room_code, "dave")
        eve = make_session(db, "eve", **FAST)
        assert not await eve.join_room(alice.state.room_code, "eve")
        assert eve.state.notice.severity == CRITICAL
        assert eve.state.screen == SCREEN_HOME
        await dave.close()
        await eve.close()

    @pytest.mark.asyncio
    async def test_missing_room_is_critical(self, db):
        bob = make_session(db, "bob", **FAST)
        assert not await bob.join_room("4321", "bob")
        assert bob.state.notice.severity == CRITICAL
        await bob.close()

    @pytest.mark.asyncio
    async def test_created_deal_count_is_used(self, db):
        host = make_session(db, "host", **FAST)
        assert await host.create_room("host", num_decks=2, deal_count=3)
        code = host.state.room_code
        assert db.get(f"rooms/{code}/settings") == {
            "numDecks": 2,
            "includeJokers": False,
            "dealCount": 3,
        }
        await settle(host)
        result = await host.start_game()
        assert result.success
        await settle(host)
        assert len(host.state.my_hand) == 3
        assert host.state.deck_size == 104 - 3
        await host.close()

    @pytest.mark.asyncio
    async def test_ready_toggle_visible_to_others(self, table):
        alice, bob, _ = table
        await bob.toggle_ready()
        await settle(*table)
        assert alice.state.ready["bob"] is True


class TestGameplay:
    @pytest.mark.asyncio
    async def test_start_and_play(self, table):
        alice, bob, carol = table
        result = await alice.start_game()
        assert result.success
        await settle(*table)

        for session in table:
            assert session.state.game_started
            assert len(session.state.my_hand) == 5
            assert session.state.deck_size == 37
        assert bob.state.other_players_hand_sizes == {"alice": 5, "carol": 5}

        for c in alice.state.my_hand[:2]:
            alice.toggle_selection(c.id)
        played = await alice.play_selected()
        assert played.success
        await settle(*table)

        assert alice.state.selected == frozenset()
        assert alice.state.can_recall
        assert not bob.state.can_recall
        assert len(bob.state.table) == 1
        assert bob.state.other_players_hand_sizes["alice"] == 3

        assert (await alice.recall()).success
        await settle(*table)
        assert not alice.state.can_recall
        assert len(alice.state.my_hand) == 5
        assert carol.state.table == ()

    @pytest.mark.asyncio
    async def test_only_host_starts(self, table):
        _, bob, _ = table
        result = await bob.start_game()
        assert not result.success
        assert bob.state.notice.severity == TRANSIENT
        assert not bob.state.game_started

    @pytest.mark.asyncio
    async def test_empty_selection_rejected_locally(self, db, table):
        alice, _, _ = table
        await alice.start_game()
        await settle(*table)
        writes = db.write_count
        assert await alice.play_selected() is None
        assert alice.state.notice.message == "No cards selected to play!"
        assert db.write_count == writes

    @pytest.mark.asyncio
    async def test_failed_write_keeps_state_and_notice_expires(self, db, table):
        alice, bob, _ = table
        await alice.start_game()
        await settle(*table)
        hand = bob.state.my_hand
        db.fail_writes = True
        result = await bob.draw()
        assert not result.success
        assert bob.state.my_hand == hand
        assert bob.state.notice.severity == TRANSIENT
        assert not bob.state.busy
        await asyncio.sleep(0.1)
        assert bob.state.notice is None

    @pytest.mark.asyncio
    async def test_deal_move_and_sort(self, table):
        alice, bob, carol = table
        await alice.start_game()
        await settle(*table)
        assert (await bob.deal(2)).success
        await settle(*table)
        assert len(carol.state.my_hand) == 7

        carol.toggle_selection(carol.state.my_hand[0].id)
        assert (await carol.move_selected_to("bob")).success
        await settle(*table)
        assert len(bob.state.my_hand) == 8
        assert carol.state.other_players_hand_sizes["bob"] == 8

        assert (await bob.sort_by_suit()).success
        await settle(*table)
        suits = [c.suit for c in bob.state.my_hand]
        order = ["Spades", "Hearts", "Clubs", "Diamonds"]
        assert suits == sorted(suits, key=order.index)

        reordered = [c.id for c in reversed(bob.state.my_hand)]
        assert (await bob.reorder_hand(reordered)).success
        await settle(*table)
        assert [c.id for c in bob.state.my_hand] == reordered


class TestPresence:
    @pytest.mark.asyncio
    async def test_host_drop_migrates_to_next_player(self, db, table):
        alice, bob, carol = table
        db.disconnect("alice")
        await settle(bob, carol)

        assert db.get(f"rooms/{bob.state.room_code}/host") == "bob"
        assert bob.state.is_host
        assert bob.state.show_new_host_dialog
        assert not carol.state.show_new_host_dialog
        assert carol.state.players == ("bob", "carol")
        assert not alice.state.is_connected

        bob.acknowledge_new_host()
        assert not bob.state.show_new_host_dialog

    @pytest.mark.asyncio
    async def test_reconnect_rejoins(self, db, table):
        alice, bob, carol = table
        db.disconnect("bob")
        await settle(alice, carol)
        assert alice.state.players == ("alice", "carol")

        db.reconnect("bob")
        await settle(*table)
        assert bob.state.is_connected
        assert "bob" in alice.state.players
        assert bob.state.screen == SCREEN_ROOM

        # Presence is registered again after the rejoin
        db.disconnect("bob")
        await settle(alice, carol)
        assert "bob" not in alice.state.players

    @pytest.mark.asyncio
    async def test_reconnect_after_seat_taken(self, db, table):
        alice, _, _ = table
        code = alice.state.room_code
        dave = make_session(db, "dave", **FAST)
        eve = make_session(db, "eve", **FAST)
        assert await dave.join_room(code, "dave")
        db.disconnect("dave")
        assert await eve.join_room(code, "eve")

        db.reconnect("dave")
        await settle(*table, dave, eve)
        assert dave.state.screen == SCREEN_HOME
        assert dave.state.notice.severity == CRITICAL
        assert "filled up" in dave.state.notice.message
        assert alice.state.players == ("alice", "bob", "carol", "eve")
        await dave.close()
        await eve.close()

    @pytest.mark.asyncio
    async def test_reconnect_to_deleted_room(self, db, table):
        alice, bob, _ = table
        db.disconnect("bob")
        assert await alice.exit_game()
        db.reconnect("bob")
        await settle(bob)
        assert bob.state.screen == SCREEN_HOME
        assert bob.state.room_code == ""
        assert bob.state.notice.severity == CRITICAL


class TestExit:
    @pytest.mark.asyncio
    async def test_host_exit_closes_room_for_everyone(self, db, table):
        alice, bob, carol = table
        code = alice.state.room_code
        assert await alice.exit_game()
        await settle(*table)
        assert db.get(f"rooms/{code}") is None
        assert alice.state.screen == SCREEN_HOME
        for session in (bob, carol):
            assert session.state.screen == SCREEN_HOME
            assert session.state.notice.severity == CRITICAL
            assert "no longer exists" in session.state.notice.message

    @pytest.mark.asyncio
    async def test_guest_leave_keeps_room(self, db, table):
        alice, bob, _ = table
        assert await bob.leave_room()
        await settle(*table)
        assert bob.state.screen == SCREEN_HOME
        assert alice.state.players == ("alice", "carol")
        # Leaving cancels the on-disconnect removal
        writes = db.write_count
        db.disconnect("bob")
        assert db.write_count == writes

    @pytest.mark.asyncio
    async def test_sync_error_is_critical(self, db, table):
        alice, _, _ = table
        db.cancel_listeners(f"rooms/{alice.state.room_code}")
        assert alice.state.notice.severity == CRITICAL
        assert alice.state.notice.message.startswith("Database sync error")


class TestDebounce:
    @pytest.mark.asyncio
    async def test_rapid_changes_reconciled_once(self, db):
        alice = make_session(db, "alice", notice_seconds=0.05)
        assert await alice.create_room("alice")
        await asyncio.sleep(0.3)
        code = alice.state.room_code
        passes = alice.reconcile_count

        db.seed(f"rooms/{code}/players/bob", {"ready": False})
        await asyncio.sleep(0.05)
        db.seed(f"rooms/{code}/players/carol", {"ready": False})
        await asyncio.sleep(0.3)

        assert alice.reconcile_count == passes + 1
        assert alice.state.players == ("alice", "bob", "carol")
        await alice.wait_idle()
        await alice.close()
