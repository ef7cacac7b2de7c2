from __future__ import annotations

import asyncio
import logging
import random
import uuid
import weakref
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import database
import game
from app.database import AsyncSessionMaker
from app.models import Room, RoomMember, User
from app.services import events as ev
from app.services.events import EventBus
from models import BetRank, GamePhase, GameState, RoomSummary, Team

logger = logging.getLogger(__name__)


class RoomNotFoundError(LookupError):
    pass


class ConcurrentUpdateError(RuntimeError):
    pass


class NotRoomHostError(PermissionError):
    pass


class NotRoomMemberError(PermissionError):
    pass


def _require_member(state: GameState, user_id: str) -> None:
    if user_id not in state.players:
        raise NotRoomMemberError("Only players at this table can do that")


@dataclass
class StoredRoom:
    id: str
    name: str
    host_id: str
    state: GameState
    version: int
    is_active: bool = True


class RoomStore:
    """Persists one JSON game-state document per room.

    ``save`` is a compare-and-swap on the row version, so a writer holding a
    stale snapshot fails instead of overwriting a newer state.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] = AsyncSessionMaker):
        self.session_maker = session_maker

    @staticmethod
    def _to_stored(room: Room) -> StoredRoom:
        return StoredRoom(
            id=room.id,
            name=room.name,
            host_id=room.host_id,
            state=GameState.from_storage(room.state),
            version=room.version,
            is_active=room.is_active,
        )

    async def create(self, name: str, host_id: str, state: GameState) -> StoredRoom:
        room_id = uuid.uuid4().hex[:8]
        async with self.session_maker() as session:
            room = Room(id=room_id, name=name, host_id=host_id, state=state.to_storage(), version=1)
            session.add(room)
            for player_id in state.players:
                session.add(RoomMember(room_id=room_id, user_id=player_id))
            await session.commit()
        logger.info("Created room %s (%s) for host %s", room_id, name, host_id)
        return StoredRoom(id=room_id, name=name, host_id=host_id, state=state, version=1)

    async def load(self, room_id: str) -> Optional[StoredRoom]:
        async with self.session_maker() as session:
            room = await session.get(Room, room_id)
            if room is None:
                return None
            return self._to_stored(room)

    async def save(
        self, room_id: str, state: GameState, expected_version: int, *, record_match: bool = False
    ) -> int:
        """Write ``state`` if the row is still at ``expected_version``.

        With ``record_match`` the finished game is written in the same
        transaction, so the room never reaches the game end without its match.
        """
        new_version = expected_version + 1
        async with self.session_maker() as session:
            result = await session.execute(
                update(Room)
                .where(Room.id == room_id, Room.version == expected_version)
                .values(
                    state=state.to_storage(),
                    version=new_version,
                    is_active=bool(state.players),
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ConcurrentUpdateError(f"Room {room_id} changed since version {expected_version}")

            rows = await session.execute(select(RoomMember.user_id).where(RoomMember.room_id == room_id))
            members = set(rows.scalars())
            wanted = set(state.players)
            for user_id in wanted - members:
                session.add(RoomMember(room_id=room_id, user_id=user_id))
            gone = members - wanted
            if gone:
                await session.execute(
                    delete(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id.in_(gone))
                )
            if record_match:
                await database.record_match(session, room_id, state)
            await session.commit()
        return new_version

    async def list_rooms(self) -> List[RoomSummary]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Room).where(Room.is_active.is_(True)).order_by(desc(Room.created_at))
            )
            rooms = result.scalars().all()
        summaries = []
        for room in rooms:
            state = GameState.from_storage(room.state)
            summaries.append(
                RoomSummary(
                    room_id=room.id,
                    name=room.name,
                    host_id=room.host_id,
                    players=len(state.players),
                    players_max=game.MAX_PLAYERS,
                    phase=state.phase,
                )
            )
        return summaries


Action = Callable[[GameState], GameState]


class RoomService:
    """Runs player actions against stored rooms.

    Actions on one room are serialized by a per-room lock; the engine call,
    the save and the notification happen in that order, and a rejected
    action leaves the stored state untouched.
    """

    def __init__(
        self,
        store: RoomStore,
        events: EventBus,
        *,
        target_score: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.events = events
        self.target_score = target_score
        self.rng = rng or random.Random()
        # a lock lives only while some action on its room holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def get(self, room_id: str) -> StoredRoom:
        room = await self.store.load(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    async def view(self, room_id: str, user: User) -> StoredRoom:
        """Load a room for one of its players."""
        room = await self.get(room_id)
        _require_member(room.state, user.id)
        return room

    async def _apply(self, room_id: str, action: Action) -> Tuple[StoredRoom, GameState]:
        async with self._lock(room_id):
            room = await self.get(room_id)
            new_state = action(room.state)
            if new_state is room.state:
                return room, room.state
            finished = new_state.phase == GamePhase.GAME_END and room.state.phase != GamePhase.GAME_END
            version = await self.store.save(room_id, new_state, room.version, record_match=finished)
        return replace(room, state=new_state, version=version), room.state

    def _announce(
        self,
        room: StoredRoom,
        before: GameState,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        after = room.state
        if after is before:
            return
        self.events.emit(room.id, event_type, data)
        if after.last_trick is not None and after.last_trick != before.last_trick:
            self.events.emit(
                room.id,
                ev.TRICK_COMPLETE,
                {"winner": after.last_trick.winner_id, "points": after.last_trick.points},
            )
        if after.phase != before.phase:
            if after.phase == GamePhase.BETS and before.phase in (GamePhase.WAITING, GamePhase.TEAM_SELECTION):
                self.events.emit(
                    room.id,
                    ev.BETTING_PHASE_STARTED,
                    {"turnOrder": after.turn_order, "currentTurn": after.current_turn},
                )
            elif after.phase == GamePhase.CARDS:
                highest = after.highest_bet
                self.events.emit(
                    room.id,
                    ev.BETTING_COMPLETE,
                    {
                        "highestBet": highest.value if highest else None,
                        "highestBetter": highest.player_id if highest else None,
                        "trump": highest.trump if highest else None,
                    },
                )
            elif after.phase == GamePhase.TRICK_SCORING:
                self.events.emit(room.id, ev.ROUND_COMPLETE, {"round": after.round})
        self.events.emit(
            room.id,
            ev.GAME_STATE_UPDATED,
            {"phase": after.phase.value, "round": after.round, "version": room.version},
        )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    async def create_room(self, name: str, host: User) -> StoredRoom:
        state = game.add_player(game.new_game(self.target_score), host.id, host.name)
        room = await self.store.create(name, host.id, state)
        self.events.emit(room.id, ev.ROOM_UPDATED, {"roomName": name, "created": True})
        return room

    async def list_rooms(self) -> List[RoomSummary]:
        return await self.store.list_rooms()

    async def join(self, room_id: str, user: User) -> StoredRoom:
        room, before = await self._apply(room_id, lambda s: game.add_player(s, user.id, user.name))
        self._announce(room, before, ev.PLAYER_JOINED, {"playerId": user.id, "playerName": user.name})
        return room

    async def leave(self, room_id: str, user: User) -> StoredRoom:
        room, before = await self._apply(room_id, lambda s: game.remove_player(s, user.id))
        self._announce(room, before, ev.PLAYER_LEFT, {"playerId": user.id, "playerName": user.name})
        return room

    # ------------------------------------------------------------------
    # Game actions
    # ------------------------------------------------------------------
    async def select_team(self, room_id: str, player_id: str, team: Team) -> StoredRoom:
        room, before = await self._apply(
            room_id, lambda s: game.select_team(s, player_id, team, self.rng)
        )
        self._announce(
            room,
            before,
            ev.TEAM_SELECTED,
            {"playerId": player_id, "team": Team(team).value, "teamsBalanced": game.teams_balanced(room.state)},
        )
        return room

    async def set_ready(self, room_id: str, player_id: str, ready: bool) -> StoredRoom:
        room, before = await self._apply(room_id, lambda s: game.set_player_ready(s, player_id, ready))
        all_ready = bool(room.state.players) and all(p.is_ready for p in room.state.players.values())
        self._announce(room, before, ev.PLAYER_READY_CHANGED, {"playerId": player_id, "ready": ready, "allReady": all_ready})
        return room

    async def place_bet(self, room_id: str, player_id: str, rank: BetRank, trump: bool) -> StoredRoom:
        room, before = await self._apply(
            room_id, lambda s: game.place_bet(s, player_id, rank, trump, self.rng)
        )
        state = room.state
        self._announce(
            room,
            before,
            ev.BET_PLACED,
            {
                "playerId": player_id,
                "betValue": BetRank(rank).value,
                "trump": trump,
                "betsRemaining": len(state.turn_order) - len(state.bets) if state.phase == GamePhase.BETS else 0,
                "currentTurn": state.current_turn,
            },
        )
        return room

    async def play_card(self, room_id: str, player_id: str, card_id: str) -> StoredRoom:
        room, before = await self._apply(room_id, lambda s: game.play_card(s, player_id, card_id, self.rng))
        self._announce(
            room,
            before,
            ev.CARD_PLAYED,
            {"playerId": player_id, "card": card_id, "cardsInTrick": len(room.state.played_cards)},
        )
        return room

    async def score_round(self, room_id: str, user: User) -> StoredRoom:
        def _score(state: GameState) -> GameState:
            _require_member(state, user.id)
            return game.process_round_end(state, self.rng)

        room, before = await self._apply(room_id, _score)
        state = room.state
        result = state.last_round
        self._announce(
            room,
            before,
            ev.ROUND_SCORING_COMPLETE,
            {
                "round": before.round,
                "newRound": state.round,
                "scores": dict(state.scores),
                "roundResult": result.model_dump(mode="json", by_alias=True) if result else None,
            },
        )
        return room

    async def force_start(self, room_id: str, user: User) -> StoredRoom:
        await self._require_host(room_id, user)
        room, before = await self._apply(room_id, lambda s: game.force_start(s, self.rng))
        self._announce(room, before, ev.ROOM_UPDATED, {"forceStarted": True})
        return room

    async def reset(self, room_id: str, user: User) -> StoredRoom:
        await self._require_host(room_id, user)
        room, before = await self._apply(room_id, game.reset_game)
        self._announce(room, before, ev.ROOM_UPDATED, {"reset": True})
        return room

    async def _require_host(self, room_id: str, user: User) -> None:
        room = await self.get(room_id)
        if room.host_id != user.id:
            raise NotRoomHostError("Only the room host can do that")
