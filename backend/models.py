from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GamePhase(str, Enum):
    WAITING = "waiting"
    TEAM_SELECTION = "team_selection"
    BETS = "bets"
    CARDS = "cards"
    TRICK_SCORING = "trick_scoring"
    ROUND_END = "round_end"
    GAME_END = "game_end"


class CardColor(str, Enum):
    RED = "red"
    BLUE = "blue"
    GREEN = "green"
    BROWN = "brown"


class Team(str, Enum):
    A = "A"
    B = "B"


class BetRank(str, Enum):
    SKIP = "skip"
    SEVEN = "seven"
    EIGHT = "eight"
    NINE = "nine"
    TEN = "ten"
    ELEVEN = "eleven"
    TWELVE = "twelve"


BET_ORDER: List[BetRank] = list(BetRank)

BET_VALUES: Dict[BetRank, int] = {
    BetRank.SKIP: 0,
    BetRank.SEVEN: 7,
    BetRank.EIGHT: 8,
    BetRank.NINE: 9,
    BetRank.TEN: 10,
    BetRank.ELEVEN: 11,
    BetRank.TWELVE: 12,
}


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Card(_Model):
    id: str
    color: CardColor
    value: int = Field(ge=0, le=7)
    player_id: Optional[str] = None
    play_order: int = 0
    trick_number: int = 0

    @classmethod
    def of(cls, color: CardColor | str, value: int) -> "Card":
        color = CardColor(color)
        return cls(id=card_id(color, value), color=color, value=value)

    def __str__(self) -> str:
        return self.id


def card_id(color: CardColor | str, value: int) -> str:
    return f"{CardColor(color).value}-{value}"


class Player(_Model):
    id: str
    name: str
    team: Optional[Team] = None
    seat_position: Optional[int] = Field(default=None, ge=0, le=3)
    is_ready: bool = False


class Bet(_Model):
    player_id: str
    bet_value: BetRank
    value: int
    trump: bool = False

    @property
    def rank(self) -> int:
        return BET_ORDER.index(self.bet_value)

    @property
    def is_skip(self) -> bool:
        return self.bet_value == BetRank.SKIP


class TrickResult(_Model):
    winner_id: str
    winning_card: Card
    points: int
    cards: List[Card]


class RoundResult(_Model):
    round: int
    team_a_score: int
    team_b_score: int
    betting_team: Team
    betting_team_won: bool
    highest_bet: Bet


class GameState(_Model):
    """Snapshot of one room's game.

    Engine operations never mutate a snapshot; they return a new one built
    with ``model_copy(update=...)``.
    """

    phase: GamePhase = GamePhase.WAITING
    round: int = Field(default=1, ge=1)
    current_turn: Optional[str] = None
    dealer: Optional[str] = None
    starter: Optional[str] = None
    trump: Optional[CardColor] = None
    highest_bet: Optional[Bet] = None
    players: Dict[str, Player] = Field(default_factory=dict)
    bets: Dict[str, Bet] = Field(default_factory=dict)
    played_cards: Dict[str, Card] = Field(default_factory=dict)
    player_hands: Dict[str, List[Card]] = Field(default_factory=dict)
    won_tricks: Dict[str, int] = Field(default_factory=dict)
    scores: Dict[str, int] = Field(default_factory=dict)
    turn_order: List[str] = Field(default_factory=list)
    last_trick: Optional[TrickResult] = None
    last_round: Optional[RoundResult] = None
    target_score: Optional[int] = None

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_storage(cls, data: Dict[str, Any]) -> "GameState":
        return cls.model_validate(data)


# ---------- API payloads ----------

class BetRequest(BaseModel):
    bet: BetRank
    trump: bool = False


class PlayCardRequest(BaseModel):
    card_id: str = Field(alias="cardId")

    model_config = ConfigDict(populate_by_name=True)


class TeamRequest(BaseModel):
    team: Team


class ReadyRequest(BaseModel):
    ready: bool = True


class PublicPlayer(_Model):
    id: str
    name: str
    team: Optional[Team] = None
    seat_position: Optional[int] = None
    is_ready: bool = False
    hand_count: int = 0
    won_tricks: int = 0
    score: int = 0


class GameView(_Model):
    room_id: str
    room_name: str
    version: int
    phase: GamePhase
    round: int
    current_turn: Optional[str] = None
    dealer: Optional[str] = None
    starter: Optional[str] = None
    trump: Optional[CardColor] = None
    highest_bet: Optional[Bet] = None
    players: List[PublicPlayer] = Field(default_factory=list)
    me: Optional[PublicPlayer] = None
    hand: Optional[List[Card]] = None
    bets: Dict[str, Bet] = Field(default_factory=dict)
    trick: List[Card] = Field(default_factory=list)
    turn_order: List[str] = Field(default_factory=list)
    team_scores: Dict[str, int] = Field(default_factory=dict)
    legal_card_ids: List[str] = Field(default_factory=list)
    legal_bets: List[BetRank] = Field(default_factory=list)
    last_trick: Optional[TrickResult] = None
    last_round: Optional[RoundResult] = None
    winning_team: Optional[Team] = None


class RoomSummary(_Model):
    room_id: str
    name: str
    host_id: str
    players: int
    players_max: int
    phase: GamePhase


class GameEvent(_Model):
    type: str
    room_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(by_alias=True)}\n\n"
