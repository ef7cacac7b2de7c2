from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

import database
from app.api.auth import router as auth_router
from app.database import init_db
from app.models import User
from app.services import events as ev
from app.services.auth import get_current_user
from app.services.events import EventBus
from app.services.rooms import (
    ConcurrentUpdateError,
    NotRoomHostError,
    NotRoomMemberError,
    RoomNotFoundError,
    RoomService,
    RoomStore,
    StoredRoom,
)
from app.settings import settings
from game import GameError, player_view
from models import BetRequest, GameEvent, GameView, PlayCardRequest, ReadyRequest, TeamRequest

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ALLOWED_ORIGINS = settings.allowed_origins()

app = FastAPI(title="Bonhomme")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

logger.info("CORS allow_origins: %s", ALLOWED_ORIGINS)

app.include_router(auth_router)

app.state.events = EventBus(queue_size=settings.event_queue_size)
app.state.rooms = RoomService(
    RoomStore(),
    app.state.events,
    target_score=settings.target_score,
)


@app.on_event("startup")
async def _prepare_db() -> None:
    await init_db()


# ---------- dependencies ----------
def get_event_bus(request: Request) -> EventBus:
    return request.app.state.events


def get_room_service(request: Request) -> RoomService:
    return request.app.state.rooms


async def _run(action) -> StoredRoom:
    """Await a room action, mapping domain errors onto HTTP errors."""
    try:
        return await action
    except RoomNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="room_not_found")
    except (NotRoomHostError, NotRoomMemberError) as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except ConcurrentUpdateError:
        logger.warning("Lost update rejected for concurrent action")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="state_changed")
    except GameError as exc:
        code = status.HTTP_400_BAD_REQUEST if exc.kind == "rule" else status.HTTP_409_CONFLICT
        raise HTTPException(
            status_code=code,
            detail={"kind": exc.kind, "rule": exc.rule, "error": str(exc)},
        )


def _view(room: StoredRoom, viewer_id: Optional[str]) -> dict:
    view: GameView = player_view(
        room.state, viewer_id, room_id=room.id, room_name=room.name, version=room.version
    )
    return view.model_dump(mode="json", by_alias=True)


# ---------- rooms ----------
@app.get("/api/rooms")
async def rooms(service: RoomService = Depends(get_room_service)):
    return [r.model_dump(mode="json", by_alias=True) for r in await service.list_rooms()]


@app.post("/api/rooms")
async def create_room(
    room_name: str = Form(...),
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    if not room_name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="room_name_required")
    room = await service.create_room(room_name.strip(), user)
    return {"room_id": room.id}


@app.post("/api/rooms/{room_id}/join")
async def join_room(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.join(room_id, user))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/leave")
async def leave_room(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    await _run(service.leave(room_id, user))
    return {"ok": True}


@app.get("/api/rooms/{room_id}/state")
async def room_state(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.view(room_id, user))
    return _view(room, user.id)


# ---------- game actions ----------
@app.post("/api/rooms/{room_id}/team")
async def select_team(
    room_id: str,
    req: TeamRequest,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.select_team(room_id, user.id, req.team))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/ready")
async def set_ready(
    room_id: str,
    req: ReadyRequest,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.set_ready(room_id, user.id, req.ready))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/bet")
async def place_bet(
    room_id: str,
    req: BetRequest,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.place_bet(room_id, user.id, req.bet, req.trump))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/play")
async def play_card(
    room_id: str,
    req: PlayCardRequest,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.play_card(room_id, user.id, req.card_id))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/score")
async def score_round(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.score_round(room_id, user))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/force-start")
async def force_start(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.force_start(room_id, user))
    return _view(room, user.id)


@app.post("/api/rooms/{room_id}/reset")
async def reset_room(
    room_id: str,
    user: User = Depends(get_current_user),
    service: RoomService = Depends(get_room_service),
):
    room = await _run(service.reset(room_id, user))
    return _view(room, user.id)


# ---------- server-sent events ----------
async def event_stream(
    request: Request, bus: EventBus, room_id: str, heartbeat_sec: float
) -> AsyncIterator[str]:
    queue = bus.subscribe(room_id)
    try:
        yield GameEvent(type=ev.CONNECTED, room_id=room_id).to_sse()
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                yield GameEvent(type=ev.HEARTBEAT, room_id=room_id).to_sse()
                continue
            yield event.to_sse()
    finally:
        bus.unsubscribe(room_id, queue)


@app.get("/api/events/{room_id}")
async def room_events(
    room_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    bus: EventBus = Depends(get_event_bus),
    service: RoomService = Depends(get_room_service),
):
    await _run(service.view(room_id, user))
    return StreamingResponse(
        event_stream(request, bus, room_id, settings.heartbeat_interval_sec),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------- statistics ----------
@app.get("/api/leaderboard")
async def leaderboard(limit: int = 50):
    return await database.get_leaderboard(limit)


@app.get("/api/players/{player_id}/stats")
async def player_stats(player_id: str):
    stats = await database.get_player_stats(player_id)
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="player_not_found")
    return stats


@app.get("/api/players/{player_id}/history")
async def player_history(player_id: str, limit: int = 20):
    return await database.get_player_history(limit=limit, player_id=player_id)
