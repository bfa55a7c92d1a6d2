from dataclasses import dataclass
from enum import Enum
from typing import List, Literal, Optional, Union
import math
import time

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for JSON payloads: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        frozen=True,
        extra='ignore',
    )

    def to_dict(self):
        return self.model_dump(by_alias=True, exclude_none=True)


# ---- Game entities ----

class Identity(WireModel):
    id: str
    display_name: str = Field(min_length=2, max_length=20)


class Question(WireModel):
    id: str
    problem_text: str
    difficulty: Literal['easy', 'medium', 'hard']
    created_at: Optional[str] = None


class WinnerInfo(WireModel):
    user_id: Optional[str] = None
    display_name: str
    submission_time_ms: Optional[Union[int, float]] = None


class RoundState(WireModel):
    is_active: bool
    participant_count: int = Field(default=0, ge=0)
    winner: Optional[WinnerInfo] = None

    @model_validator(mode='after')
    def _winner_closes_round(self):
        if self.winner is not None and self.is_active:
            raise ValueError('a round with a winner cannot be active')
        return self


class SubmissionOutcome(WireModel):
    is_correct: bool
    is_winner: bool
    time_taken_ms: Union[int, float] = 0
    submission_time_ms: Optional[Union[int, float]] = None
    user_id: Optional[str] = None
    error_reason: Optional[str] = None

    @model_validator(mode='after')
    def _winner_is_correct(self):
        if self.is_winner and not self.is_correct:
            raise ValueError('a winning submission must be correct')
        return self


# ---- Server -> client events ----

class JoinedSuccessfully(WireModel):
    user_id: str
    display_name: str
    participant_count: int = Field(default=0, ge=0)


class NewQuestion(WireModel):
    question: Question
    round_state: RoundState


class AnnouncedWinner(WireModel):
    user_id: Optional[str] = None
    display_name: str
    time_taken_ms: Optional[Union[int, float]] = None


class WinnerAnnounced(WireModel):
    winner: AnnouncedWinner
    correct_answer: Optional[Union[int, float]] = None


class ParticipantChange(WireModel):
    display_name: Optional[str] = None
    participant_count: int = Field(ge=0)


class ServerError(WireModel):
    message: str = 'Unknown server error'


# ---- Client -> server events ----

class JoinGame(WireModel):
    display_name: str
    user_id: Optional[str] = None


class SubmitAnswer(WireModel):
    answer_value: float
    client_timestamp: int


class Ping(WireModel):
    client_timestamp: int


# ---- Fallback request path ----

class CurrentQuestion(WireModel):
    question: Optional[Question] = None
    is_active: bool = False
    participant_count: int = Field(default=0, ge=0)
    winner: Optional[WinnerInfo] = None


class FallbackSubmission(WireModel):
    answer_value: float
    display_name: str
    user_id: Optional[str] = None


class LeaderboardEntry(WireModel):
    display_name: str
    high_score: int = 0
    games_won: int = 0


class Leaderboard(WireModel):
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    total: int = 0


class CreateUser(WireModel):
    display_name: str = Field(min_length=2, max_length=20)
    email: Optional[str] = None


class CreatedUser(WireModel):
    user_id: str
    display_name: str
    email: Optional[str] = None
    message: str = ''


class GameStats(WireModel):
    connected_users: int = 0
    is_game_active: bool = False
    has_active_question: bool = False
    current_winner: Optional[str] = None
    participant_count: int = 0


class Health(WireModel):
    status: str
    timestamp_iso: Optional[str] = None
    uptime_seconds: Optional[float] = None


# ---- Local state ----

class GamePhase(str, Enum):
    IDLE = 'idle'
    JOINED_WAITING = 'joined_waiting'
    QUESTION_ACTIVE = 'question_active'
    ROUND_CONCLUDED = 'round_concluded'


@dataclass(frozen=True)
class GameSnapshot:
    """Read-only view of the synchronizer state handed to renderers."""

    phase: GamePhase = GamePhase.IDLE
    identity: Optional[Identity] = None
    question: Optional[Question] = None
    round_state: Optional[RoundState] = None
    outcome: Optional[SubmissionOutcome] = None
    submission_in_flight: bool = False
    submission_started_at: Optional[float] = None
    participant_count: int = 0
    correct_answer: Optional[Union[int, float]] = None
    question_started_at: Optional[float] = None

    @property
    def is_joined(self) -> bool:
        return self.phase is not GamePhase.IDLE

    @property
    def can_submit(self) -> bool:
        return (
            self.question is not None
            and self.round_state is not None
            and self.round_state.is_active
            and not self.submission_in_flight
        )

    def elapsed_seconds(self, now: Optional[float] = None) -> Optional[int]:
        """Whole seconds since the current question arrived (display only)."""
        if self.question_started_at is None:
            return None
        now = time.monotonic() if now is None else now
        return max(0, math.floor(now - self.question_started_at))
