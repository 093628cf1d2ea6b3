"""In-process session state: one PlayerSession per participant, one QuestionClock per game."""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from models import Participant
from realtime import GameEvents
from suspicion import SuspicionDetector, policy_for

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[str, str], Awaitable[Any]]


def _epoch(iso_timestamp: str) -> float:
    try:
        return datetime.fromisoformat(iso_timestamp).timestamp()
    except ValueError:
        return time.time()


@dataclass(slots=True)
class PlayerSession:
    participant_id: str
    game_id: str
    device_class: str
    detector: SuspicionDetector
    draft_question_id: Optional[str] = None
    draft_answer: Any = None

    def set_draft(self, question_id: str, answer: Any) -> None:
        self.draft_question_id = question_id
        self.draft_answer = answer

    def draft_for(self, question_id: str) -> Any:
        return self.draft_answer if self.draft_question_id == question_id else None

    def new_question(self) -> None:
        self.detector.reset()
        self.draft_question_id = None
        self.draft_answer = None


class QuestionClock:
    """Counts down one question, broadcasting the remaining seconds every tick.

    At zero it stops by itself and awaits ``on_expire(game_id, question_id)``.
    """

    def __init__(
        self,
        game_id: str,
        question_id: str,
        time_limit: float,
        events: GameEvents,
        on_expire: Optional[ExpireCallback] = None,
        tick_sec: float = 1.0,
    ):
        self.game_id = game_id
        self.question_id = question_id
        self.time_limit = time_limit
        self.events = events
        self.on_expire = on_expire
        self.tick_sec = tick_sec
        self.started_at = time.monotonic()
        self.expired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def remaining_exact(self) -> float:
        return max(0.0, self.time_limit - (time.monotonic() - self.started_at))

    @property
    def remaining(self) -> int:
        return math.ceil(self.remaining_exact)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "QuestionClock":
        self.started_at = time.monotonic()
        self._task = asyncio.create_task(self._run())
        return self

    async def _run(self):
        try:
            while True:
                left = self.remaining_exact
                await self.events.time_sync(self.game_id, self.question_id, math.ceil(left))
                if left <= 0:
                    break
                await asyncio.sleep(min(self.tick_sec, left))

            self.expired = True
            logger.info(f"⏱ Time up: game {self.game_id} question {self.question_id}")
            if self.on_expire:
                await self.on_expire(self.game_id, self.question_id)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Question clock error for {self.game_id}: {e}")

    def cancel(self) -> None:
        # auto-submit already under way must finish
        if self._task and not self.expired:
            self._task.cancel()

    async def wait(self) -> None:
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)


class GameSessions:
    """Registry of live player sessions and question clocks."""

    def __init__(
        self,
        events: GameEvents,
        grace_period_sec: float = 3.0,
        disabled_signals: Iterable[str] = (),
        tick_sec: float = 1.0,
    ):
        self.events = events
        self.grace_period_sec = grace_period_sec
        self.disabled_signals = frozenset(disabled_signals)
        self.tick_sec = tick_sec
        self.players: Dict[str, PlayerSession] = {}
        self.clocks: Dict[str, QuestionClock] = {}
        self._paused: Dict[str, Tuple[str, float]] = {}

    def player(self, participant: Participant) -> PlayerSession:
        session = self.players.get(participant.id)
        if session is None:
            detector = SuspicionDetector(
                policy_for(participant.deviceClass, self.disabled_signals),
                joined_at=_epoch(participant.joinedAt),
                grace_period_sec=self.grace_period_sec,
            )
            session = PlayerSession(
                participant_id=participant.id,
                game_id=participant.gameId,
                device_class=participant.deviceClass,
                detector=detector,
            )
            self.players[participant.id] = session
        return session

    def get_player(self, participant_id: str) -> Optional[PlayerSession]:
        return self.players.get(participant_id)

    def players_in(self, game_id: str) -> List[PlayerSession]:
        return [s for s in self.players.values() if s.game_id == game_id]

    def start_question(
        self,
        game_id: str,
        question_id: str,
        time_limit: float,
        on_expire: Optional[ExpireCallback] = None,
    ) -> QuestionClock:
        """Cancel the running clock, reset every detector and start a new countdown."""
        self.stop_clock(game_id)
        for session in self.players_in(game_id):
            session.new_question()

        clock = QuestionClock(
            game_id, question_id, time_limit, self.events, on_expire, self.tick_sec
        ).start()
        self.clocks[game_id] = clock
        return clock

    def clock_for(self, game_id: str, question_id: str) -> Optional[QuestionClock]:
        clock = self.clocks.get(game_id)
        return clock if clock is not None and clock.question_id == question_id else None

    def stop_clock(self, game_id: str) -> Optional[QuestionClock]:
        """Stop the countdown for good, including one held by a pause."""
        self._paused.pop(game_id, None)
        clock = self.clocks.pop(game_id, None)
        if clock:
            clock.cancel()
        return clock

    def pause(self, game_id: str) -> None:
        clock = self.stop_clock(game_id)
        if clock and not clock.expired:
            self._paused[game_id] = (clock.question_id, clock.remaining_exact)

    def resume(self, game_id: str, on_expire: Optional[ExpireCallback] = None) -> Optional[QuestionClock]:
        """Restart a paused countdown with the time that was left."""
        paused = self._paused.pop(game_id, None)
        if paused is None:
            return None
        question_id, left = paused
        clock = QuestionClock(
            game_id, question_id, left, self.events, on_expire, self.tick_sec
        ).start()
        self.clocks[game_id] = clock
        return clock

    def remaining(self, game_id: str) -> Optional[int]:
        clock = self.clocks.get(game_id)
        if clock:
            return clock.remaining
        paused = self._paused.get(game_id)
        return math.ceil(paused[1]) if paused else None

    def drop_game(self, game_id: str) -> None:
        self.stop_clock(game_id)
        for participant_id in [s.participant_id for s in self.players_in(game_id)]:
            self.players.pop(participant_id, None)

    def shutdown(self) -> None:
        for game_id in list(self.clocks):
            self.stop_clock(game_id)
