"""Rule engine for the Bonhomme trick-taking game.

Every public operation takes a :class:`GameState` snapshot and returns a new
one, or raises a :class:`GameError` before anything is built. Nothing in this
module touches storage or the event bus.
"""
from __future__ import annotations

import logging
import random
from typing import Dict, Iterable, List, Optional, Sequence

from models import (
    BET_ORDER,
    BET_VALUES,
    Bet,
    BetRank,
    Card,
    CardColor,
    GamePhase,
    GameState,
    GameView,
    Player,
    PublicPlayer,
    RoundResult,
    Team,
    TrickResult,
)

logger = logging.getLogger(__name__)

CARD_COLORS: List[CardColor] = [CardColor.RED, CardColor.BLUE, CardColor.GREEN, CardColor.BROWN]
CARD_VALUES: List[int] = list(range(8))
CARDS_PER_PLAYER = 8
MAX_PLAYERS = 4
TEAM_SIZE = 2
MIN_BET_VALUE = 7

BASE_TRICK_POINTS = 1
RED_BONHOMME_POINTS = 5    # red 0
BROWN_BONHOMME_POINTS = -3  # brown 0

TRUMP_MULTIPLIER = 1
NO_TRUMP_MULTIPLIER = 2


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------
class GameError(ValueError):
    kind = "rule"

    def __init__(self, message: str, rule: str = "invalid_action"):
        super().__init__(message)
        self.rule = rule


class PhaseError(GameError):
    kind = "phase"


class TurnError(GameError):
    kind = "turn"


class RuleError(GameError):
    kind = "rule"


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _require_phase(state: GameState, *phases: GamePhase) -> None:
    if state.phase not in phases:
        expected = ", ".join(p.value for p in phases)
        raise PhaseError(
            f"Action not allowed during {state.phase.value} phase (expected {expected})",
            rule="wrong_phase",
        )


def _require_player(state: GameState, player_id: str) -> Player:
    player = state.players.get(player_id)
    if player is None:
        raise RuleError("Player does not exist", rule="unknown_player")
    return player


def _require_turn(state: GameState, player_id: str) -> None:
    if state.current_turn != player_id:
        raise TurnError("Not your turn", rule="not_your_turn")


def next_player(state: GameState, player_id: str) -> str:
    order = state.turn_order
    idx = order.index(player_id)
    return order[(idx + 1) % len(order)]


def other_team(team: Team) -> Team:
    return Team.B if team == Team.A else Team.A


def team_members(state: GameState, team: Team) -> List[str]:
    return [pid for pid, player in state.players.items() if player.team == team]


def team_of(state: GameState, player_id: str) -> Optional[Team]:
    player = state.players.get(player_id)
    return player.team if player else None


# ----------------------------------------------------------------------
# Lobby
# ----------------------------------------------------------------------
def new_game(target_score: Optional[int] = None) -> GameState:
    return GameState(target_score=target_score)


def add_player(state: GameState, player_id: str, name: str) -> GameState:
    if player_id in state.players:
        return state
    if len(state.players) >= MAX_PLAYERS:
        raise RuleError("Room full", rule="room_full")
    _require_phase(state, GamePhase.WAITING)
    players = {**state.players, player_id: Player(id=player_id, name=name)}
    phase = GamePhase.TEAM_SELECTION if len(players) == MAX_PLAYERS else GamePhase.WAITING
    return state.model_copy(update={"players": players, "phase": phase})


def remove_player(state: GameState, player_id: str) -> GameState:
    _require_player(state, player_id)
    _require_phase(state, GamePhase.WAITING, GamePhase.TEAM_SELECTION)
    # teams are picked again once the table refills
    players = {
        pid: p.model_copy(update={"team": None, "seat_position": None})
        for pid, p in state.players.items()
        if pid != player_id
    }
    scores = {pid: s for pid, s in state.scores.items() if pid != player_id}
    return state.model_copy(
        update={"players": players, "scores": scores, "phase": GamePhase.WAITING}
    )


def set_player_ready(state: GameState, player_id: str, ready: bool) -> GameState:
    player = _require_player(state, player_id)
    players = {**state.players, player_id: player.model_copy(update={"is_ready": ready})}
    return state.model_copy(update={"players": players})


# ----------------------------------------------------------------------
# Teams & seats
# ----------------------------------------------------------------------
def can_join_team(state: GameState, player_id: str, team: Team) -> bool:
    try:
        _check_team(state, player_id, Team(team))
    except GameError:
        return False
    return True


def _check_team(state: GameState, player_id: str, team: Team) -> Player:
    _require_phase(state, GamePhase.TEAM_SELECTION)
    player = _require_player(state, player_id)
    if player.team != team and len(team_members(state, team)) >= TEAM_SIZE:
        raise RuleError(f"Team {team.value} is full", rule="team_full")
    return player


def teams_balanced(state: GameState) -> bool:
    return (
        len(team_members(state, Team.A)) == TEAM_SIZE
        and len(team_members(state, Team.B)) == TEAM_SIZE
    )


def select_team(
    state: GameState, player_id: str, team: Team, rng: Optional[random.Random] = None
) -> GameState:
    team = Team(team)
    player = _check_team(state, player_id, team)
    if player.team == team:
        return state
    players = {**state.players, player_id: player.model_copy(update={"team": team})}
    new_state = state.model_copy(update={"players": players})
    if teams_balanced(new_state):
        return _seat_players(new_state, rng)
    return new_state


def _seat_players(state: GameState, rng: Optional[random.Random]) -> GameState:
    team_a = team_members(state, Team.A)
    team_b = team_members(state, Team.B)
    seating = [team_a[0], team_b[0], team_a[1], team_b[1]]
    players = dict(state.players)
    for seat, pid in enumerate(seating):
        players[pid] = players[pid].model_copy(update={"seat_position": seat})

    rng = rng or random.Random()
    dealer = rng.choice(seating)
    starter = seating[(seating.index(dealer) + 1) % len(seating)]
    logger.debug("Teams balanced: seating=%s dealer=%s starter=%s", seating, dealer, starter)
    return state.model_copy(
        update={
            "players": players,
            "turn_order": seating,
            "dealer": dealer,
            "starter": starter,
            "current_turn": starter,
            "phase": GamePhase.BETS,
            "bets": {},
            "highest_bet": None,
            "trump": None,
            "won_tricks": {pid: 0 for pid in seating},
        }
    )


def force_start(state: GameState, rng: Optional[random.Random] = None) -> GameState:
    """Skip team selection: alternate teams by join order and open betting."""
    _require_phase(state, GamePhase.WAITING, GamePhase.TEAM_SELECTION)
    if len(state.players) != MAX_PLAYERS:
        raise RuleError("Need exactly 4 players to start", rule="not_enough_players")
    players = {
        pid: player.model_copy(
            update={"team": Team.A if idx % 2 == 0 else Team.B, "is_ready": True}
        )
        for idx, (pid, player) in enumerate(state.players.items())
    }
    return _seat_players(state.model_copy(update={"players": players}), rng)


def reset_game(state: GameState) -> GameState:
    players = {
        pid: player.model_copy(update={"team": None, "seat_position": None, "is_ready": False})
        for pid, player in state.players.items()
    }
    phase = GamePhase.TEAM_SELECTION if len(players) == MAX_PLAYERS else GamePhase.WAITING
    return GameState(players=players, phase=phase, target_score=state.target_score)


# ----------------------------------------------------------------------
# Betting
# ----------------------------------------------------------------------
def _outranks(bet: Bet, current: Bet) -> bool:
    if bet.rank != current.rank:
        return bet.rank > current.rank
    # equal rank: no-trump beats trump
    return current.trump and not bet.trump


def get_highest_bet(bets: Iterable[Bet]) -> Optional[Bet]:
    highest: Optional[Bet] = None
    for bet in bets:
        if bet.is_skip:
            continue
        if highest is None or _outranks(bet, highest):
            highest = bet
    return highest


def make_bet(player_id: str, rank: BetRank, trump: bool = False) -> Bet:
    rank = BetRank(rank)
    return Bet(
        player_id=player_id,
        bet_value=rank,
        value=BET_VALUES[rank],
        trump=trump and rank != BetRank.SKIP,
    )


def _check_bet(state: GameState, bet: Bet) -> None:
    _require_phase(state, GamePhase.BETS)
    _require_player(state, bet.player_id)
    _require_turn(state, bet.player_id)
    if bet.player_id in state.bets:
        raise RuleError("You have already placed a bet", rule="already_bet")

    if bet.is_skip:
        last_to_act = len(state.bets) == len(state.turn_order) - 1
        if last_to_act and all(b.is_skip for b in state.bets.values()):
            raise RuleError("Everyone else skipped, you must bid", rule="must_bid")
        return

    if bet.value < MIN_BET_VALUE:
        raise RuleError(f"Minimum bid is {MIN_BET_VALUE}", rule="bet_too_low")
    highest = get_highest_bet(state.bets.values())
    if highest is not None and not _outranks(bet, highest):
        label = f"{highest.bet_value.value}{' trump' if highest.trump else ''}"
        raise RuleError(f"Bet must outrank the current {label}", rule="bet_too_low")


def is_valid_bet(state: GameState, player_id: str, rank: BetRank, trump: bool = False) -> bool:
    try:
        _check_bet(state, make_bet(player_id, rank, trump))
    except GameError:
        return False
    return True


def legal_bets(state: GameState, player_id: str) -> List[BetRank]:
    return [
        rank
        for rank in BET_ORDER
        if is_valid_bet(state, player_id, rank, False) or is_valid_bet(state, player_id, rank, True)
    ]


def place_bet(
    state: GameState,
    player_id: str,
    rank: BetRank,
    trump: bool = False,
    rng: Optional[random.Random] = None,
) -> GameState:
    bet = make_bet(player_id, rank, trump)
    _check_bet(state, bet)

    bets = {**state.bets, player_id: bet}
    highest = get_highest_bet(bets.values())
    update = {
        "bets": bets,
        "highest_bet": highest,
        "current_turn": next_player(state, player_id),
    }
    if len(bets) < len(state.turn_order):
        return state.model_copy(update=update)

    # forced-bid rule guarantees a contract here
    update.update(
        {
            "current_turn": highest.player_id,
            "starter": highest.player_id,
            "trump": None,
            "phase": GamePhase.CARDS,
        }
    )
    new_state = state.model_copy(update=update)
    if not any(state.player_hands.get(pid) for pid in state.turn_order):
        new_state = deal_cards(new_state, rng)
    logger.debug(
        "Betting closed: %s bid %s (trump=%s)", highest.player_id, highest.bet_value.value, highest.trump
    )
    return new_state


# ----------------------------------------------------------------------
# Dealing
# ----------------------------------------------------------------------
def create_deck() -> List[Card]:
    return [Card.of(color, value) for color in CARD_COLORS for value in CARD_VALUES]


def shuffle_deck(deck: Sequence[Card], rng: Optional[random.Random] = None) -> List[Card]:
    shuffled = list(deck)
    (rng or random.Random()).shuffle(shuffled)
    return shuffled


def deal_cards(state: GameState, rng: Optional[random.Random] = None) -> GameState:
    order = state.turn_order or list(state.players)
    if len(order) != MAX_PLAYERS:
        raise RuleError("Need exactly 4 seated players to deal", rule="not_enough_players")
    deck = shuffle_deck(create_deck(), rng)
    hands: Dict[str, List[Card]] = {}
    for idx, pid in enumerate(order):
        chunk = deck[idx * CARDS_PER_PLAYER:(idx + 1) * CARDS_PER_PLAYER]
        hands[pid] = [card.model_copy(update={"player_id": pid}) for card in chunk]
    return state.model_copy(
        update={
            "player_hands": hands,
            "played_cards": {},
            "won_tricks": {pid: 0 for pid in order},
        }
    )


# ----------------------------------------------------------------------
# Card play
# ----------------------------------------------------------------------
def _card_key(card: Card | str) -> str:
    return card if isinstance(card, str) else card.id


def led_card(state: GameState) -> Optional[Card]:
    if not state.played_cards:
        return None
    return min(state.played_cards.values(), key=lambda c: c.play_order)


def _check_play(state: GameState, player_id: str, card: Card | str) -> Card:
    _require_phase(state, GamePhase.CARDS)
    _require_player(state, player_id)
    _require_turn(state, player_id)
    if player_id in state.played_cards:
        raise RuleError("You already played in this trick", rule="already_played")

    hand = state.player_hands.get(player_id, [])
    key = _card_key(card)
    owned = next((c for c in hand if c.id == key), None)
    if owned is None:
        raise RuleError("You do not have this card", rule="card_not_in_hand")

    lead = led_card(state)
    if lead is None or owned.color == lead.color:
        return owned
    # trump may always be played
    if state.trump is not None and owned.color == state.trump:
        return owned
    if any(c.color == lead.color for c in hand):
        raise RuleError(
            f"Must follow suit ({lead.color.value}) or play trump", rule="must_follow_suit"
        )
    return owned


def can_play_card(state: GameState, player_id: str, card: Card | str) -> bool:
    try:
        _check_play(state, player_id, card)
    except GameError:
        return False
    return True


def legal_cards(state: GameState, player_id: str) -> List[Card]:
    return [c for c in state.player_hands.get(player_id, []) if can_play_card(state, player_id, c)]


def play_card(
    state: GameState, player_id: str, card: Card | str, rng: Optional[random.Random] = None
) -> GameState:
    owned = _check_play(state, player_id, card)
    hand = state.player_hands[player_id]
    lead = led_card(state)
    trick_number = lead.trick_number if lead else CARDS_PER_PLAYER - len(hand) + 1
    played = owned.model_copy(
        update={
            "player_id": player_id,
            "play_order": len(state.played_cards) + 1,
            "trick_number": max(trick_number, 1),
        }
    )
    update = {
        "player_hands": {**state.player_hands, player_id: [c for c in hand if c.id != owned.id]},
        "played_cards": {**state.played_cards, player_id: played},
        "current_turn": next_player(state, player_id),
    }
    if lead is None and state.trump is None and state.highest_bet and state.highest_bet.trump:
        update["trump"] = owned.color

    new_state = state.model_copy(update=update)
    if is_trick_complete(new_state):
        new_state = complete_trick(new_state)
    return new_state


# ----------------------------------------------------------------------
# Tricks
# ----------------------------------------------------------------------
def is_trick_complete(state: GameState) -> bool:
    return bool(state.players) and len(state.played_cards) == len(state.players)


def _beats(card: Card, best: Card, led_color: CardColor, trump: Optional[CardColor]) -> bool:
    card_trump = trump is not None and card.color == trump
    best_trump = trump is not None and best.color == trump
    if card_trump and not best_trump:
        return True
    if card_trump and best_trump:
        return card.value > best.value
    if best_trump:
        return False
    return card.color == led_color and best.color == led_color and card.value > best.value


def get_winning_card(cards: Iterable[Card], trump: Optional[CardColor] = None) -> Card:
    ordered = sorted(cards, key=lambda c: c.play_order)
    if not ordered:
        raise RuleError("Cannot determine the winner of an empty trick", rule="empty_trick")
    lead = ordered[0]
    best = lead
    for card in ordered[1:]:
        if _beats(card, best, lead.color, trump):
            best = card
    return best


def get_trick_winner(cards: Iterable[Card], trump: Optional[CardColor] = None) -> Optional[str]:
    return get_winning_card(cards, trump).player_id


def trick_points(cards: Iterable[Card]) -> int:
    points = BASE_TRICK_POINTS
    for card in cards:
        if card.value != 0:
            continue
        if card.color == CardColor.RED:
            points += RED_BONHOMME_POINTS
        elif card.color == CardColor.BROWN:
            points += BROWN_BONHOMME_POINTS
    return points


def complete_trick(state: GameState) -> GameState:
    if not is_trick_complete(state):
        raise RuleError("Trick is not complete", rule="trick_incomplete")
    cards = sorted(
        (card.model_copy(update={"player_id": pid}) for pid, card in state.played_cards.items()),
        key=lambda c: c.play_order,
    )
    winning = get_winning_card(cards, state.trump)
    winner = winning.player_id
    points = trick_points(cards)

    update = {
        "won_tricks": {**state.won_tricks, winner: state.won_tricks.get(winner, 0) + points},
        "played_cards": {},
        "current_turn": winner,
        "starter": winner,
        "last_trick": TrickResult(winner_id=winner, winning_card=winning, points=points, cards=cards),
    }
    if all(not state.player_hands.get(pid) for pid in state.players):
        update["phase"] = GamePhase.TRICK_SCORING
    return state.model_copy(update=update)


# ----------------------------------------------------------------------
# Scoring
# ----------------------------------------------------------------------
def team_tricks(state: GameState, team: Team) -> int:
    return sum(state.won_tricks.get(pid, 0) for pid in team_members(state, team))


def calculate_round_scores(state: GameState) -> RoundResult:
    highest = state.highest_bet
    if highest is None:
        raise RuleError("No contract was placed this round", rule="no_contract")
    betting_team = team_of(state, highest.player_id)
    if betting_team is None:
        raise RuleError("Betting player has no team", rule="no_team")

    betting_total = team_tricks(state, betting_team)
    defending_total = team_tricks(state, other_team(betting_team))
    multiplier = TRUMP_MULTIPLIER if highest.trump else NO_TRUMP_MULTIPLIER

    made = betting_total >= highest.value
    if made:
        betting_score = (betting_total - highest.value) * multiplier
    else:
        betting_score = -betting_total * multiplier
    # defenders always keep their raw points
    defending_score = defending_total

    a_bets = betting_team == Team.A
    return RoundResult(
        round=state.round,
        team_a_score=betting_score if a_bets else defending_score,
        team_b_score=defending_score if a_bets else betting_score,
        betting_team=betting_team,
        betting_team_won=made,
        highest_bet=highest,
    )


def team_score(state: GameState, team: Team) -> int:
    # every member carries the team's cumulative score
    members = team_members(state, team)
    if not members:
        return 0
    return state.scores.get(members[0], 0)


def is_game_complete(state: GameState) -> bool:
    if state.target_score is None:
        return False
    return any(team_score(state, team) >= state.target_score for team in Team)


def get_winning_team(state: GameState) -> Optional[Team]:
    if not is_game_complete(state):
        return None
    a_score = team_score(state, Team.A)
    b_score = team_score(state, Team.B)
    if a_score == b_score:
        return None
    return Team.A if a_score > b_score else Team.B


def process_round_end(state: GameState, rng: Optional[random.Random] = None) -> GameState:
    _require_phase(state, GamePhase.TRICK_SCORING)
    result = calculate_round_scores(state)

    scores = dict(state.scores)
    for pid, player in state.players.items():
        if player.team == Team.A:
            scores[pid] = scores.get(pid, 0) + result.team_a_score
        elif player.team == Team.B:
            scores[pid] = scores.get(pid, 0) + result.team_b_score

    order = state.turn_order
    dealer = next_player(state, state.dealer) if state.dealer in order else order[0]
    starter = order[(order.index(dealer) + 1) % len(order)]

    new_state = state.model_copy(
        update={
            "scores": scores,
            "round": state.round + 1,
            "bets": {},
            "played_cards": {},
            "player_hands": {},
            "won_tricks": {pid: 0 for pid in order},
            "highest_bet": None,
            "trump": None,
            "last_trick": None,
            "last_round": result,
            "dealer": dealer,
            "starter": starter,
            "current_turn": starter,
            "phase": GamePhase.BETS,
        }
    )
    if is_game_complete(new_state):
        logger.debug("Game complete after round %s: scores=%s", state.round, scores)
        return new_state.model_copy(update={"phase": GamePhase.GAME_END, "current_turn": None})
    return deal_cards(new_state, rng)


# ----------------------------------------------------------------------
# Consistency & projection
# ----------------------------------------------------------------------
def validate_state(state: GameState) -> List[str]:
    errors: List[str] = []
    count = len(state.players)
    if count > MAX_PLAYERS:
        errors.append(f"Invalid player count: {count}")

    seated_phases = (GamePhase.BETS, GamePhase.CARDS, GamePhase.TRICK_SCORING, GamePhase.ROUND_END)
    if state.phase in seated_phases:
        if not teams_balanced(state):
            errors.append("Teams must have exactly 2 players each")
        if len(state.turn_order) != MAX_PLAYERS or len(set(state.turn_order)) != MAX_PLAYERS:
            errors.append(f"Turn order must hold 4 distinct players: {state.turn_order}")
        for label, pid in (("Current turn", state.current_turn), ("Dealer", state.dealer), ("Starter", state.starter)):
            if pid not in state.players:
                errors.append(f"{label} player {pid} does not exist")

    if len(state.bets) > count:
        errors.append(f"Too many bets: {len(state.bets)} for {count} players")
    for pid in state.bets:
        if pid not in state.players:
            errors.append(f"Bet exists for non-existent player: {pid}")
    if len(state.played_cards) > count:
        errors.append(f"Too many played cards: {len(state.played_cards)} for {count} players")
    for pid in state.played_cards:
        if pid not in state.players:
            errors.append(f"Card played by non-existent player: {pid}")

    seen: set[str] = set()
    for pid, hand in state.player_hands.items():
        for card in hand:
            if card.id in seen:
                errors.append(f"Card {card.id} held twice")
            seen.add(card.id)
    for card in state.played_cards.values():
        if card.id in seen:
            errors.append(f"Card {card.id} is both played and held")
        seen.add(card.id)
    return errors


def player_view(
    state: GameState,
    viewer_id: Optional[str],
    *,
    room_id: str,
    room_name: str,
    version: int,
) -> GameView:
    def _public(player: Player) -> PublicPlayer:
        return PublicPlayer(
            id=player.id,
            name=player.name,
            team=player.team,
            seat_position=player.seat_position,
            is_ready=player.is_ready,
            hand_count=len(state.player_hands.get(player.id, [])),
            won_tricks=state.won_tricks.get(player.id, 0),
            score=state.scores.get(player.id, 0),
        )

    players = sorted(
        (_public(p) for p in state.players.values()),
        key=lambda p: (p.seat_position is None, p.seat_position or 0),
    )
    me = next((p for p in players if p.id == viewer_id), None)
    hand = state.player_hands.get(viewer_id, []) if me else None
    legal_ids = [c.id for c in legal_cards(state, viewer_id)] if me else []
    bets = legal_bets(state, viewer_id) if me and state.phase == GamePhase.BETS else []

    return GameView(
        room_id=room_id,
        room_name=room_name,
        version=version,
        phase=state.phase,
        round=state.round,
        current_turn=state.current_turn,
        dealer=state.dealer,
        starter=state.starter,
        trump=state.trump,
        highest_bet=state.highest_bet,
        players=players,
        me=me,
        hand=list(hand) if hand is not None else None,
        bets=dict(state.bets),
        trick=sorted(state.played_cards.values(), key=lambda c: c.play_order),
        turn_order=list(state.turn_order),
        team_scores={team.value: team_score(state, team) for team in Team},
        legal_card_ids=legal_ids,
        legal_bets=bets,
        last_trick=state.last_trick,
        last_round=state.last_round,
        winning_team=get_winning_team(state),
    )
