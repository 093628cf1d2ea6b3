"""Orchestrates answer submissions, hints and suspicious-signal reports.

The coordinator owns the ordering of every participant-facing write:

1. an existing Response for the question is returned as is
2. local validation (nothing is persisted on failure)
3. terminal-state checks (eliminated, game not running, question not live,
   server clock expired)
4. pure scoring against the later of client and server elapsed time
5. one atomic store call
6. realtime events

Submissions are retried on transport errors because the store refuses a
second Response for the same (participant, question); violations are never
retried since each call is a new strike.
"""

import asyncio
import hashlib
import logging
import math
from typing import Any, Optional

import orjson

from errors import AnswerValidationError, NotFound, StoreUnavailable, SubmissionRejected
from models import (
    CheatReport,
    GameStatus,
    HintResult,
    ParticipantStatus,
    Response,
    Severity,
    SignalResult,
    StoreError,
    SubmissionResult,
)
from realtime import GameEvents
from scoring import score, validate_answer
from session import GameSessions
from store import GameStore
from suspicion import Signal

logger = logging.getLogger(__name__)


def idempotency_key(participant_id: str, question_id: str, answer: Any) -> str:
    """Stable key for a submission: same participant, question and answer give the same key."""
    payload = f"{participant_id}:{question_id}:".encode() + orjson.dumps(
        answer, option=orjson.OPT_SORT_KEYS
    )
    return hashlib.sha256(payload).hexdigest()


class SubmissionCoordinator:
    def __init__(
        self,
        store: GameStore,
        sessions: GameSessions,
        events: GameEvents,
        retries: int = 2,
        retry_delay_sec: float = 0.2,
        cache=None,
    ):
        self.store = store
        self.sessions = sessions
        self.events = events
        self.retries = retries
        self.retry_delay_sec = retry_delay_sec
        self.cache = cache

    async def _load(self, participant_id: str, question_id: Optional[str] = None):
        participant = await self.store.get_participant(participant_id)
        if participant is None:
            raise NotFound("Participant not found")
        question = None
        if question_id is not None:
            question = await self.store.get_question(question_id)
            if question is None or question.gameId != participant.gameId:
                raise NotFound("Question not found")
        return participant, question

    async def _require_live_question(self, game_id: str, question_id: str):
        game = await self.store.get_game(game_id)
        if game is None:
            raise NotFound("Game not found")
        if game.status != GameStatus.STARTED:
            raise SubmissionRejected(f"Not accepted: game is {game.status}")
        if game.currentQuestionId != question_id:
            raise SubmissionRejected("Not accepted: question is not active")
        if game.revealedQuestionId == question_id:
            raise SubmissionRejected("Not accepted: answer already revealed")
        return game

    async def _invalidate_leaderboard(self, game_id: str):
        if self.cache:
            await self.cache.invalidate_leaderboard(game_id)

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def submit(
        self,
        participant_id: str,
        question_id: str,
        answer: Any,
        elapsed_seconds: float,
        hint_used: bool = False,
        auto: bool = False,
    ) -> SubmissionResult:
        participant, question = await self._load(participant_id, question_id)

        existing = participant.response_for(question_id)
        if existing is not None:
            return SubmissionResult(
                accepted=True,
                correct=existing.correct,
                pointsAwarded=existing.pointsAwarded,
                alreadySubmitted=True,
                score=participant.score,
            )

        validate_answer(question, answer, allow_empty=auto)
        try:
            elapsed_seconds = float(elapsed_seconds)
        except (TypeError, ValueError):
            raise AnswerValidationError("elapsedSeconds must be a number")
        if not math.isfinite(elapsed_seconds):
            raise AnswerValidationError("elapsedSeconds must be a finite number")

        if participant.status == ParticipantStatus.ELIMINATED:
            raise SubmissionRejected("Not accepted: participant eliminated")
        await self._require_live_question(participant.gameId, question_id)

        if not auto:
            # the server clock is authoritative once the question has one
            clock = self.sessions.clock_for(participant.gameId, question_id)
            if clock is not None:
                if clock.expired:
                    raise SubmissionRejected("Not accepted: time is up")
                elapsed_seconds = max(elapsed_seconds, question.timeLimit - clock.remaining_exact)

        hint_used = hint_used or question_id in participant.hintsUsed
        result = score(question, answer, elapsed_seconds, hint_used)
        response = Response(
            participantId=participant_id,
            questionId=question_id,
            gameId=participant.gameId,
            answer=answer,
            correct=result.correct,
            elapsedSeconds=min(max(elapsed_seconds, 0.0), float(question.timeLimit)),
            pointsAwarded=result.points,
            hintUsed=hint_used,
            autoSubmitted=auto,
            idempotencyKey=idempotency_key(participant_id, question_id, answer),
        )

        outcome = await self._persist(response)

        if outcome.error == StoreError.ALREADY_SUBMITTED:
            first = outcome.response
            return SubmissionResult(
                accepted=True,
                correct=first.correct if first else result.correct,
                pointsAwarded=outcome.pointsAwarded,
                alreadySubmitted=True,
                score=outcome.score,
            )
        if outcome.error == StoreError.NOT_FOUND:
            raise NotFound("Participant not found")
        if outcome.error == StoreError.ALREADY_ELIMINATED:
            raise SubmissionRejected("Not accepted: participant eliminated")
        if outcome.error == StoreError.GAME_ENDED:
            raise SubmissionRejected("Not accepted: game is ended")

        logger.info(
            f"✓ Answer {participant_id[:8]} q={question_id[:8]} correct={result.correct} "
            f"+{result.points}{' (auto)' if auto else ''}"
        )
        if result.points:
            await self.events.score_updated(
                participant.gameId, participant_id, outcome.score, result.points
            )
        await self._invalidate_leaderboard(participant.gameId)

        return SubmissionResult(
            accepted=True,
            correct=result.correct,
            pointsAwarded=result.points,
            score=outcome.score,
        )

    async def _persist(self, response: Response):
        attempt = 0
        while True:
            try:
                return await self.store.submit_answer(response)
            except StoreUnavailable as e:
                if attempt >= self.retries:
                    logger.error(f"✗ Submission failed after {attempt + 1} attempts: {e}")
                    raise
                attempt += 1
                logger.warning(f"Submission retry {attempt}/{self.retries}: {e}")
                await asyncio.sleep(self.retry_delay_sec * attempt)

    async def save_draft(self, participant_id: str, question_id: str, answer: Any) -> None:
        participant, _ = await self._load(participant_id)
        self.sessions.player(participant).set_draft(question_id, answer)

    async def auto_submit_pending(self, game_id: str, question_id: str) -> int:
        """Submit the last draft (or nothing) for everyone still unanswered when time runs out."""
        question = await self.store.get_question(question_id)
        if question is None:
            return 0

        pending = [
            p
            for p in await self.store.list_participants(game_id)
            if p.status != ParticipantStatus.ELIMINATED and p.response_for(question_id) is None
        ]

        async def _one(participant):
            session = self.sessions.get_player(participant.id)
            draft = session.draft_for(question_id) if session else None
            try:
                validate_answer(question, draft, allow_empty=True)
            except AnswerValidationError:
                draft = None
            return await self.submit(
                participant.id, question_id, draft, question.timeLimit, auto=True
            )

        results = await asyncio.gather(*[_one(p) for p in pending], return_exceptions=True)
        submitted = 0
        for participant, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(f"Auto-submit failed for {participant.id}: {result}")
            elif not result.alreadySubmitted:
                submitted += 1

        logger.info(f"⏱ Auto-submitted {submitted}/{len(pending)} for question {question_id[:8]}")
        return submitted

    # ------------------------------------------------------------------
    # Hints
    # ------------------------------------------------------------------

    async def request_hint(self, participant_id: str, question_id: str) -> HintResult:
        participant, question = await self._load(participant_id, question_id)
        if not question.hint:
            raise NotFound("No hint for this question")
        if participant.status == ParticipantStatus.ELIMINATED:
            raise SubmissionRejected("Not accepted: participant eliminated")
        if participant.response_for(question_id) is not None:
            raise SubmissionRejected("Not accepted: question already answered")
        await self._require_live_question(participant.gameId, question_id)

        await self.store.mark_hint_used(participant_id, question_id)
        return HintResult(hint=question.hint, hintPenalty=question.hintPenalty)

    # ------------------------------------------------------------------
    # Suspicious signals
    # ------------------------------------------------------------------

    async def report_signal(self, participant_id: str, signal: Signal) -> SignalResult:
        participant, _ = await self._load(participant_id)
        game = await self.store.get_game(participant.gameId)
        if game is None or game.status != GameStatus.STARTED:
            return SignalResult(reported=False, status=participant.status)

        detection = self.sessions.player(participant).detector.observe(signal)
        if detection is None:
            return SignalResult(reported=False, status=participant.status)

        outcome = None
        if detection.penalized:
            outcome = await self.store.evaluate_violation(
                participant_id,
                participant.gameId,
                detection.reason,
                participant.deviceClass,
                detection.severity,
                detection.detail,
            )
        accepted = outcome is not None and outcome.error is None

        if not accepted:
            # accepted strikes are logged by the store together with the penalty
            await self.store.append_cheat_report(
                CheatReport(
                    participantId=participant_id,
                    gameId=participant.gameId,
                    reason=detection.reason,
                    detail=detection.detail,
                    deviceClass=participant.deviceClass,
                    severity=detection.severity,
                    penalized=False,
                )
            )
            if detection.severity != Severity.INFO:
                logger.info(
                    f"Violation not applied for {participant_id[:8]} ({detection.reason}): "
                    f"{outcome.error if outcome else 'not penalized'}"
                )
            return SignalResult(
                reported=True,
                penalized=False,
                reason=detection.reason,
                severity=detection.severity,
                violationCount=outcome.violationCount if outcome else participant.violationCount,
                score=outcome.score if outcome else participant.score,
                status=outcome.status if outcome else participant.status,
                error=outcome.error if outcome else None,
            )

        logger.warning(
            f"⚠ Violation {outcome.violationCount} for {participant_id[:8]}: "
            f"{detection.reason} ({participant.deviceClass}/{detection.severity})"
        )
        if outcome.status == ParticipantStatus.ELIMINATED:
            await self.events.eliminated(participant.gameId, participant_id, outcome.message)
        else:
            await self.events.violation_warning(
                participant_id,
                outcome.message,
                detection.severity,
                detection.reason,
                outcome.violationCount,
                outcome.score,
            )
        if outcome.pointsDelta:
            await self.events.score_updated(
                participant.gameId, participant_id, outcome.score, outcome.pointsDelta
            )
        await self._invalidate_leaderboard(participant.gameId)

        return SignalResult(
            reported=True,
            penalized=True,
            reason=detection.reason,
            severity=detection.severity,
            violationCount=outcome.violationCount,
            score=outcome.score,
            status=outcome.status,
            message=outcome.message,
        )
