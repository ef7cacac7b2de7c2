"""
Match history and player statistics.

Finished games are written once, when a room reaches the game-end phase;
the leaderboard and per-player queries read from the same tables.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Float, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import AsyncSessionMaker
from app.models import Match, MatchParticipant, PlayerStats, User
from game import get_winning_team, team_score
from models import GameState, Team

logger = logging.getLogger(__name__)

async_session_maker = AsyncSessionMaker


async def record_match(session: AsyncSession, room_id: str, state: GameState) -> Match:
    """Add a finished game and its stats updates to ``session`` without committing."""
    winning_team = get_winning_team(state)
    match = Match(
        room_id=room_id,
        finished_at=datetime.utcnow(),
        winning_team=winning_team.value if winning_team else None,
        total_rounds=state.round - 1,
    )
    session.add(match)
    await session.flush()

    for player_id, player in state.players.items():
        team = player.team or Team.A
        is_winner = winning_team is not None and team == winning_team
        session.add(
            MatchParticipant(
                match_id=match.match_id,
                player_id=player_id,
                team=team.value,
                final_score=team_score(state, team),
                is_winner=is_winner,
            )
        )

        stats = await session.get(PlayerStats, player_id)
        if stats is None:
            stats = PlayerStats(player_id=player_id, total_matches=0, wins=0, losses=0, total_points=0)
            session.add(stats)
        stats.total_matches += 1
        stats.total_points += state.scores.get(player_id, 0)
        if is_winner:
            stats.wins += 1
        else:
            stats.losses += 1

    logger.info(
        "Recording match %s for room %s (winner=%s, rounds=%s)",
        match.match_id,
        room_id,
        match.winning_team,
        match.total_rounds,
    )
    return match


def _win_rate():
    return (func.cast(PlayerStats.wins, Float) / func.nullif(PlayerStats.total_matches, 0) * 100).label("win_rate")


async def get_leaderboard(limit: int = 50) -> List[Dict]:
    """Top players by wins, then by accumulated points."""
    async with async_session_maker() as session:
        query = (
            select(
                User.id,
                User.name,
                PlayerStats.total_matches,
                PlayerStats.wins,
                PlayerStats.losses,
                PlayerStats.total_points,
                _win_rate(),
            )
            .join(PlayerStats, User.id == PlayerStats.player_id)
            .where(PlayerStats.total_matches > 0)
            .order_by(desc(PlayerStats.wins), desc(PlayerStats.total_points))
            .limit(limit)
        )
        rows = (await session.execute(query)).all()

    return [
        {
            "rank": idx + 1,
            "playerId": row.id,
            "name": row.name,
            "totalMatches": row.total_matches,
            "wins": row.wins,
            "losses": row.losses,
            "totalPoints": row.total_points,
            "winRate": round(row.win_rate, 1) if row.win_rate else 0,
        }
        for idx, row in enumerate(rows)
    ]


async def get_player_stats(player_id: str) -> Optional[Dict]:
    async with async_session_maker() as session:
        query = (
            select(
                User.id,
                User.name,
                PlayerStats.total_matches,
                PlayerStats.wins,
                PlayerStats.losses,
                PlayerStats.total_points,
                _win_rate(),
            )
            .join(PlayerStats, User.id == PlayerStats.player_id)
            .where(User.id == player_id)
        )
        row = (await session.execute(query)).first()

    if not row:
        return None
    return {
        "playerId": row.id,
        "name": row.name,
        "totalMatches": row.total_matches,
        "wins": row.wins,
        "losses": row.losses,
        "totalPoints": row.total_points,
        "winRate": round(row.win_rate, 1) if row.win_rate else 0,
    }


async def get_player_history(player_id: str, limit: int = 20) -> List[Dict]:
    async with async_session_maker() as session:
        query = (
            select(
                Match.match_id,
                Match.room_id,
                Match.finished_at,
                Match.winning_team,
                Match.total_rounds,
                MatchParticipant.team,
                MatchParticipant.final_score,
                MatchParticipant.is_winner,
            )
            .join(MatchParticipant, Match.match_id == MatchParticipant.match_id)
            .where(MatchParticipant.player_id == player_id)
            .order_by(desc(Match.finished_at))
            .limit(limit)
        )
        rows = (await session.execute(query)).all()

    return [
        {
            "matchId": row.match_id,
            "roomId": row.room_id,
            "finishedAt": row.finished_at.isoformat(),
            "winningTeam": row.winning_team,
            "totalRounds": row.total_rounds,
            "team": row.team,
            "finalScore": row.final_score,
            "isWinner": row.is_winner,
        }
        for row in rows
    ]
