import asyncio
import gc
import random

import pytest
import pytest_asyncio

import database
import game
from app.database import AsyncSessionMaker, Base, data_engine
from app.services import events as ev
from app.services.auth import create_user
from app.services.events import EventBus
from app.services.rooms import (
    ConcurrentUpdateError,
    NotRoomHostError,
    NotRoomMemberError,
    RoomNotFoundError,
    RoomService,
    RoomStore,
)
from game import PhaseError, TurnError
from models import BetRank, GameEvent, GamePhase, Team


@pytest_asyncio.fixture(autouse=True)
async def prepare_db():
    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest_asyncio.fixture
async def users():
    result = []
    for name in ["Ann", "Bob", "Cid", "Dee"]:
        async with AsyncSessionMaker() as session:
            result.append(await create_user(session, name))
    return result


def drain(queue: asyncio.Queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


async def seated_room(service: RoomService, users):
    room = await service.create_room("Table", users[0])
    for user in users[1:]:
        room = await service.join(room.id, user)
    for user, team in zip(users, [Team.A, Team.B, Team.A, Team.B]):
        room = await service.select_team(room.id, user.id, team)
    return room


@pytest.mark.asyncio
async def test_store_rejects_stale_version():
    store = RoomStore()
    state = game.add_player(game.new_game(), "host", "Host")
    room = await store.create("Table", "host", state)

    joined = game.add_player(state, "guest", "Guest")
    version = await store.save(room.id, joined, room.version)
    assert version == room.version + 1

    with pytest.raises(ConcurrentUpdateError):
        await store.save(room.id, state, room.version)

    loaded = await store.load(room.id)
    assert loaded.version == version
    assert set(loaded.state.players) == {"host", "guest"}


@pytest.mark.asyncio
async def test_store_lists_only_active_rooms():
    store = RoomStore()
    state = game.add_player(game.new_game(), "host", "Host")
    kept = await store.create("Kept", "host", state)
    emptied = await store.create("Emptied", "host", state)
    await store.save(emptied.id, game.remove_player(state, "host"), emptied.version)

    summaries = await store.list_rooms()
    assert [s.room_id for s in summaries] == [kept.id]
    assert summaries[0].players == 1
    assert summaries[0].players_max == 4


@pytest.mark.asyncio
async def test_unknown_room_raises(users):
    service = RoomService(RoomStore(), EventBus())
    with pytest.raises(RoomNotFoundError):
        await service.join("missing", users[0])


@pytest.mark.asyncio
async def test_join_and_team_selection_emit_events(users):
    bus = EventBus()
    service = RoomService(RoomStore(), bus, rng=random.Random(1))
    room = await service.create_room("Table", users[0])
    queue = bus.subscribe(room.id)

    for user in users[1:]:
        room = await service.join(room.id, user)
    assert room.state.phase == GamePhase.TEAM_SELECTION
    types = [e.type for e in drain(queue)]
    assert types.count(ev.PLAYER_JOINED) == 3
    assert types[-1] == ev.GAME_STATE_UPDATED

    for user, team in zip(users, [Team.A, Team.B, Team.A, Team.B]):
        room = await service.select_team(room.id, user.id, team)
    assert room.state.phase == GamePhase.BETS
    types = [e.type for e in drain(queue)]
    assert types.count(ev.TEAM_SELECTED) == 4
    assert ev.BETTING_PHASE_STARTED in types


@pytest.mark.asyncio
async def test_rejected_action_leaves_room_untouched(users):
    bus = EventBus()
    service = RoomService(RoomStore(), bus, rng=random.Random(2))
    room = await seated_room(service, users)
    queue = bus.subscribe(room.id)

    waiting = next(pid for pid in room.state.turn_order if pid != room.state.current_turn)
    with pytest.raises(TurnError):
        await service.place_bet(room.id, waiting, BetRank.EIGHT, False)
    with pytest.raises(PhaseError):
        await service.select_team(room.id, users[0].id, Team.B)

    after = await service.get(room.id)
    assert after.version == room.version
    assert after.state == room.state
    assert drain(queue) == []


@pytest.mark.asyncio
async def test_concurrent_bets_are_serialized(users):
    service = RoomService(RoomStore(), EventBus(), rng=random.Random(3))
    room = await seated_room(service, users)
    current = room.state.current_turn

    results = await asyncio.gather(
        service.place_bet(room.id, current, BetRank.SEVEN, True),
        service.place_bet(room.id, current, BetRank.EIGHT, True),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], TurnError)

    after = await service.get(room.id)
    assert len(after.state.bets) == 1
    assert after.version == room.version + 1


@pytest.mark.asyncio
async def test_host_only_actions(users):
    service = RoomService(RoomStore(), EventBus(), rng=random.Random(4))
    room = await service.create_room("Table", users[0])
    for user in users[1:]:
        await service.join(room.id, user)

    with pytest.raises(NotRoomHostError):
        await service.force_start(room.id, users[1])
    room = await service.force_start(room.id, users[0])
    assert room.state.phase == GamePhase.BETS

    room = await service.reset(room.id, users[0])
    assert room.state.phase == GamePhase.TEAM_SELECTION


async def play_round(service: RoomService, room):
    room = await service.place_bet(room.id, room.state.current_turn, BetRank.SEVEN, True)
    while room.state.phase == GamePhase.BETS:
        room = await service.place_bet(room.id, room.state.current_turn, BetRank.SKIP, False)
    while room.state.phase == GamePhase.CARDS:
        pid = room.state.current_turn
        card = game.legal_cards(room.state, pid)[0]
        room = await service.play_card(room.id, pid, card.id)
    return room


@pytest.mark.asyncio
async def test_finished_game_is_recorded(users):
    bus = EventBus()
    service = RoomService(RoomStore(), bus, target_score=1, rng=random.Random(5))
    room = await seated_room(service, users)
    queue = bus.subscribe(room.id)

    await play_round(service, room)
    room = await service.score_round(room.id, users[2])
    assert room.state.phase == GamePhase.GAME_END

    types = [e.type for e in drain(queue)]
    assert ev.BETTING_COMPLETE in types
    assert types.count(ev.TRICK_COMPLETE) == 8
    assert ev.ROUND_COMPLETE in types
    assert ev.ROUND_SCORING_COMPLETE in types

    winner = game.get_winning_team(room.state)
    board = await database.get_leaderboard()
    assert len(board) == 4
    winners = {row["playerId"] for row in board if row["wins"] == 1}
    assert winners == set(game.team_members(room.state, winner))

    stats = await database.get_player_stats(users[0].id)
    assert stats["totalMatches"] == 1
    history = await database.get_player_history(users[0].id)
    assert len(history) == 1
    assert history[0]["roomId"] == room.id
    assert history[0]["totalRounds"] == 1


@pytest.mark.asyncio
async def test_failed_match_write_keeps_round_open(users, monkeypatch):
    service = RoomService(RoomStore(), EventBus(), target_score=1, rng=random.Random(6))
    room = await play_round(service, await seated_room(service, users))
    assert room.state.phase == GamePhase.TRICK_SCORING

    async def broken_record(session, room_id, state):
        raise RuntimeError("disk full")

    monkeypatch.setattr(database, "record_match", broken_record)
    with pytest.raises(RuntimeError):
        await service.score_round(room.id, users[0])

    stored = await service.get(room.id)
    assert stored.state.phase == GamePhase.TRICK_SCORING
    assert stored.version == room.version
    assert await database.get_leaderboard() == []

    monkeypatch.undo()
    room = await service.score_round(room.id, users[0])
    assert room.state.phase == GamePhase.GAME_END
    assert len(await database.get_leaderboard()) == 4


@pytest.mark.asyncio
async def test_outsiders_cannot_view_or_score(users):
    async with AsyncSessionMaker() as session:
        outsider = await create_user(session, "Eve")
    service = RoomService(RoomStore(), EventBus(), rng=random.Random(7))
    room = await play_round(service, await seated_room(service, users))

    with pytest.raises(NotRoomMemberError):
        await service.view(room.id, outsider)
    with pytest.raises(NotRoomMemberError):
        await service.score_round(room.id, outsider)

    stored = await service.view(room.id, users[1])
    assert stored.state.phase == GamePhase.TRICK_SCORING
    assert stored.version == room.version


@pytest.mark.asyncio
async def test_room_locks_are_released_after_actions(users):
    service = RoomService(RoomStore(), EventBus(), rng=random.Random(8))
    room = await seated_room(service, users)
    await service.place_bet(room.id, room.state.current_turn, BetRank.SEVEN, False)
    gc.collect()
    assert room.id not in service._locks
    assert len(service._locks) == 0


def test_event_bus_drops_for_full_queue():
    bus = EventBus(queue_size=1)
    slow = bus.subscribe("r1")
    fast = bus.subscribe("r1")
    bus.subscribe("r2")

    assert bus.emit("r1", ev.HEARTBEAT) == 2
    fast.get_nowait()
    assert bus.emit("r1", ev.ROOM_UPDATED, {"reset": True}) == 1
    assert slow.get_nowait().type == ev.HEARTBEAT
    assert fast.get_nowait().data == {"reset": True}

    bus.unsubscribe("r1", slow)
    bus.unsubscribe("r1", fast)
    assert bus.listener_count("r1") == 0
    assert bus.listener_count("r2") == 1


def test_event_serializes_as_sse_frame():
    frame = GameEvent(type=ev.BET_PLACED, room_id="r1", data={"playerId": "p1"}).to_sse()
    assert frame.startswith("data: {")
    assert frame.endswith("\n\n")
    assert '"roomId":"r1"' in frame
