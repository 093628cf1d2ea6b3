"""Answer scoring.

Functions:
- is_correct: correctness per question kind.
- time_factor: share of the point value kept for the remaining time.
- score: points for one submission, including the hint penalty.
- validate_answer: local shape checks run before anything is persisted.
- rank_participants: leaderboard order and shared ranks for ties.

Everything here is pure so the submission path can retry safely.
"""

import math
from typing import Any, Dict, List

from pydantic import BaseModel

from errors import AnswerValidationError
from models import (
    MultiChoiceQuestion,
    Participant,
    QuestionBase,
    ShortAnswerQuestion,
    SingleChoiceQuestion,
    normalize_option,
)

MIN_TIME_FACTOR = 0.1
MAX_SHORT_ANSWER_LENGTH = 500


class ScoreResult(BaseModel):
    correct: bool
    points: int
    timeFactor: float


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (2.5 -> 3, not 2)."""
    return int(math.floor(value + 0.5))


def time_factor(time_limit: int, elapsed_seconds: float) -> float:
    if time_limit <= 0:
        return 1.0
    elapsed = min(max(float(elapsed_seconds), 0.0), float(time_limit))
    remaining = time_limit - elapsed
    return max(MIN_TIME_FACTOR, remaining / time_limit)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


def is_correct(question: QuestionBase, answer: Any) -> bool:
    if isinstance(question, SingleChoiceQuestion):
        if not isinstance(answer, str):
            return False
        return normalize_option(answer) == normalize_option(question.correctAnswers[0])

    if isinstance(question, MultiChoiceQuestion):
        if not _is_str_list(answer):
            return False
        submitted = [normalize_option(a) for a in answer]
        expected = {normalize_option(c) for c in question.correctAnswers}
        # a repeated option changes the cardinality and makes the answer wrong
        return len(submitted) == len(expected) and set(submitted) == expected

    if isinstance(question, ShortAnswerQuestion):
        if not isinstance(answer, str):
            return False
        text = answer.lower()
        keywords = [k.text.strip().lower() for k in question.keywords]
        return any(k in text for k in keywords if k)

    return False


def score(
    question: QuestionBase, answer: Any, elapsed_seconds: float, hint_used: bool = False
) -> ScoreResult:
    """Score a submission.

    A correct answer earns ``round(points * max(0.1, remaining / timeLimit))``,
    minus ``hintPenalty`` (floored at 0) when a hint was revealed. Wrong or
    empty answers earn 0 whatever the timing or hint usage.
    """
    factor = time_factor(question.timeLimit, elapsed_seconds)
    if not is_correct(question, answer):
        return ScoreResult(correct=False, points=0, timeFactor=factor)

    points = round_half_up(question.points * factor)
    if hint_used:
        points = max(0, points - question.hintPenalty)
    return ScoreResult(correct=True, points=points, timeFactor=factor)


def is_empty_answer(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple)):
        return len(answer) == 0
    return False


def validate_answer(question: QuestionBase, answer: Any, allow_empty: bool = False) -> None:
    """Raise AnswerValidationError when ``answer`` does not fit ``question``.

    Empty answers are only acceptable on the auto-submit path, where the
    timer ran out before the participant picked anything.
    """
    if is_empty_answer(answer):
        if allow_empty:
            return
        raise AnswerValidationError("Answer is required")

    if isinstance(question, ShortAnswerQuestion):
        if not isinstance(answer, str):
            raise AnswerValidationError("Short answer must be text")
        if len(answer) > MAX_SHORT_ANSWER_LENGTH:
            raise AnswerValidationError(
                f"Answer too long (max {MAX_SHORT_ANSWER_LENGTH} characters)"
            )
        return

    options = {normalize_option(o) for o in question.options}
    if isinstance(question, SingleChoiceQuestion):
        if not isinstance(answer, str):
            raise AnswerValidationError("Single-choice answer must be one option")
        chosen: List[str] = [answer]
    else:
        if not _is_str_list(answer):
            raise AnswerValidationError("Multi-choice answer must be a list of options")
        chosen = list(answer)

    unknown = [c for c in chosen if normalize_option(c) not in options]
    if unknown:
        raise AnswerValidationError(f"Not an option: {unknown[0]!r}")


def rank_participants(participants: List[Participant]) -> List[Dict[str, Any]]:
    """Leaderboard rows ordered by score desc, then total answer time asc.

    Identical score and total time share a rank; join order breaks the tie
    for display only.
    """
    ordered = sorted(participants, key=lambda p: (-p.score, p.total_time, p.joinedAt))
    rows = []
    prev_key = None
    prev_rank = 0
    for idx, p in enumerate(ordered):
        key = (p.score, p.total_time)
        rank = prev_rank if key == prev_key else idx + 1
        prev_key, prev_rank = key, rank
        rows.append(
            {
                "name": p.name,
                "score": p.score,
                "totalTime": p.total_time,
                "rank": rank,
                "status": p.status,
                "participantId": p.id,
            }
        )
    return rows
