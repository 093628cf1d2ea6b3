"""Wire and storage models for games, questions, participants and reports."""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from config import config


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_option(value: str) -> str:
    """Canonical form for choice comparison: trimmed, inner whitespace collapsed.

    Case is preserved, so "Paris" and "paris" are different options.
    """
    return " ".join(value.split())


# ============================================================================
# STATES
# ============================================================================


class GameStatus:
    """Game flow states"""

    WAITING = "waiting"
    STARTED = "started"
    PAUSED = "paused"
    ENDED = "ended"

    ALL = (WAITING, STARTED, PAUSED, ENDED)


class ParticipantStatus:
    ACTIVE = "active"
    ELIMINATED = "eliminated"
    DISCONNECTED = "disconnected"


class DeviceClass:
    DESKTOP = "desktop"
    MOBILE = "mobile"


class Severity:
    INFO = "info"  # observed and logged, never penalized
    SOFT = "soft"
    SERIOUS = "serious"


class Reason:
    """Closed taxonomy of cheat report reason codes."""

    TAB_SWITCH = "tab_switch"
    EXTENDED_SWITCH = "extended_switch"
    BACK_NAVIGATION = "back_navigation"
    DEVTOOLS_TIMING = "devtools_timing"
    DEVTOOLS_DIMENSION = "devtools_dimension"
    CLIPBOARD = "clipboard"
    CONTEXT_MENU = "context_menu"
    TEXT_SELECTION = "text_selection"
    SHORTCUT_KEY = "shortcut_key"
    RAPID_CLICKING = "rapid_clicking"
    APP_BACKGROUND = "app_background"
    RAPID_TOUCH = "rapid_touch"
    MULTI_TOUCH = "multi_touch"
    LONG_TOUCH = "long_touch"
    APP_CLOSURE = "app_closure"


# ============================================================================
# QUESTIONS
# ============================================================================


class Keyword(BaseModel):
    text: str = Field(min_length=1)
    weight: float = 1.0  # stored for authoring tools, not used in scoring


class QuestionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    gameId: str = ""
    orderIndex: int = 0
    text: str = Field(min_length=1)
    points: int = Field(config.DEFAULT_POINTS, gt=0)
    timeLimit: int = Field(config.DEFAULT_TIME_LIMIT, gt=0)
    hint: Optional[str] = None
    hintPenalty: int = Field(config.DEFAULT_HINT_PENALTY, ge=0)


class _ChoiceQuestion(QuestionBase):
    options: List[str] = Field(min_length=2)
    correctAnswers: List[str] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_answers(self):
        normalized = [normalize_option(o) for o in self.options]
        if any(not o for o in normalized):
            raise ValueError("Options must not be blank")
        if len(set(normalized)) != len(normalized):
            raise ValueError("Options must be unique")
        for answer in self.correctAnswers:
            if normalize_option(answer) not in normalized:
                raise ValueError(f"Correct answer {answer!r} is not one of the options")
        if len({normalize_option(a) for a in self.correctAnswers}) != len(self.correctAnswers):
            raise ValueError("Correct answers must be unique")
        return self


class SingleChoiceQuestion(_ChoiceQuestion):
    type: Literal["single_choice"] = "single_choice"
    correctAnswers: List[str] = Field(min_length=1, max_length=1)


class MultiChoiceQuestion(_ChoiceQuestion):
    type: Literal["multi_choice"] = "multi_choice"


class ShortAnswerQuestion(QuestionBase):
    type: Literal["short_answer"] = "short_answer"
    keywords: List[Keyword] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_keywords(self):
        if not any(k.text.strip() for k in self.keywords):
            raise ValueError("At least one non-blank keyword is required")
        return self


Question = Annotated[
    Union[SingleChoiceQuestion, MultiChoiceQuestion, ShortAnswerQuestion],
    Field(discriminator="type"),
]
question_adapter = TypeAdapter(Question)

_ANSWER_FIELDS = {"correctAnswers", "keywords"}


def public_question(question: QuestionBase) -> Dict[str, Any]:
    """Question payload safe to send to participants."""
    return question.model_dump(exclude=_ANSWER_FIELDS)


def correct_answer_of(question: QuestionBase) -> Any:
    if isinstance(question, ShortAnswerQuestion):
        return [k.text for k in question.keywords]
    if isinstance(question, SingleChoiceQuestion):
        return question.correctAnswers[0]
    return list(question.correctAnswers)


# ============================================================================
# RECORDS
# ============================================================================


class Response(BaseModel):
    """Submission record, one per (participant, question); never mutated."""

    model_config = ConfigDict(extra="ignore")

    participantId: str
    questionId: str
    gameId: str
    answer: Any = None
    correct: bool
    elapsedSeconds: float = Field(allow_inf_nan=False)
    pointsAwarded: int
    hintUsed: bool = False
    autoSubmitted: bool = False
    idempotencyKey: str
    submittedAt: str = Field(default_factory=utcnow_iso)


class Participant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    name: str
    gameId: str
    deviceClass: Literal["desktop", "mobile"] = DeviceClass.DESKTOP
    status: Literal["active", "eliminated", "disconnected"] = ParticipantStatus.ACTIVE
    score: int = 0
    violationCount: int = 0
    joinedAt: str = Field(default_factory=utcnow_iso)
    lastSeenAt: str = Field(default_factory=utcnow_iso)
    hintsUsed: List[str] = []
    answers: List[Response] = []

    def response_for(self, question_id: str) -> Optional[Response]:
        return next((r for r in self.answers if r.questionId == question_id), None)

    @property
    def total_time(self) -> float:
        return round(sum(r.elapsedSeconds for r in self.answers), 2)


class CheatReport(BaseModel):
    """Append-only log entry for one classified suspicious signal."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    participantId: str
    gameId: str
    reason: str
    detail: str = ""
    deviceClass: Literal["desktop", "mobile"]
    severity: Literal["info", "soft", "serious"]
    penalized: bool
    timestamp: str = Field(default_factory=utcnow_iso)


class Game(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    joinCode: str
    title: str
    status: Literal["waiting", "started", "paused", "ended"] = GameStatus.WAITING
    currentQuestionId: Optional[str] = None
    revealedQuestionId: Optional[str] = None
    createdAt: str = Field(default_factory=utcnow_iso)
    updatedAt: str = Field(default_factory=utcnow_iso)


# ============================================================================
# STORE OUTCOMES
# ============================================================================


class StoreError:
    """Error codes returned (not raised) by the transactional store operations."""

    ALREADY_SUBMITTED = "already_submitted"
    ALREADY_ELIMINATED = "already_eliminated"
    GAME_ENDED = "game_ended"
    NOT_FOUND = "not_found"


class ViolationOutcome(BaseModel):
    violationCount: int = 0
    score: int = 0
    status: str = ParticipantStatus.ACTIVE
    pointsDelta: int = 0
    message: Optional[str] = None
    error: Optional[str] = None


class SubmitOutcome(BaseModel):
    pointsAwarded: int = 0
    score: int = 0
    response: Optional[Response] = None
    error: Optional[str] = None


# ============================================================================
# REQUEST / RESPONSE BODIES
# ============================================================================


class GameCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    questions: List[Question] = []


class GameUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class ParticipantJoin(BaseModel):
    name: str
    joinCode: str
    viewportWidth: Optional[int] = None
    touchPoints: int = 0
    userAgent: str = ""


class AnswerSubmit(BaseModel):
    participantId: str
    questionId: str
    answer: Any = None
    elapsedSeconds: float = Field(ge=0, allow_inf_nan=False)
    hintUsed: bool = False


class HintRequest(BaseModel):
    participantId: str
    questionId: str


class SignalReport(BaseModel):
    participantId: str
    kind: str
    detail: str = ""
    value: Optional[float] = None


class SubmissionResult(BaseModel):
    accepted: bool
    correct: bool
    pointsAwarded: int
    alreadySubmitted: bool = False
    score: Optional[int] = None


class SignalResult(BaseModel):
    reported: bool
    penalized: bool = False
    reason: Optional[str] = None
    severity: Optional[str] = None
    violationCount: Optional[int] = None
    score: Optional[int] = None
    status: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class HintResult(BaseModel):
    hint: str
    hintPenalty: int


class LeaderboardEntry(BaseModel):
    name: str
    score: int
    totalTime: float
    rank: int
    status: str = ParticipantStatus.ACTIVE
    participantId: str = ""


class AdminLogin(BaseModel):
    username: str
    password: str
