"""Persistence for games, questions, participants, responses and cheat reports.

Two operations are transactional boundaries and must stay atomic per
participant:

- ``evaluate_violation``: increment the violation counter, apply the strike
  penalty, decide elimination and record the penalized CheatReport in one
  step, so two concurrent reports can never both be judged "strike 2" and
  every strike has its report.
- ``submit_answer``: append the Response and add its points in one step,
  refusing a second Response for the same (participant, question).

Both return an outcome carrying an ``error`` code instead of raising for
expected refusals (already submitted, already eliminated, game ended).
Transport failures raise ``StoreUnavailable``.
"""

import asyncio
import functools
import logging
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from elimination import EliminationPolicy, Standing
from errors import StoreUnavailable
from models import (
    CheatReport,
    Game,
    GameStatus,
    Participant,
    ParticipantStatus,
    QuestionBase,
    Response,
    StoreError,
    SubmitOutcome,
    ViolationOutcome,
    question_adapter,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


class GameStore:
    """Interface shared by the Mongo and in-memory backends."""

    def __init__(self, policy: Optional[EliminationPolicy] = None, allow_negative_score: bool = False):
        self.policy = policy or EliminationPolicy()
        self.allow_negative_score = allow_negative_score

    def _floor(self, score: int) -> int:
        return score if self.allow_negative_score else max(0, score)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    # Games
    async def create_game(self, game: Game) -> Game:
        raise NotImplementedError

    async def get_game(self, game_id: str) -> Optional[Game]:
        raise NotImplementedError

    async def get_game_by_code(self, join_code: str) -> Optional[Game]:
        raise NotImplementedError

    async def list_games(self, status: Optional[str] = None, limit: int = 100, skip: int = 0) -> List[Game]:
        raise NotImplementedError

    async def update_game(self, game_id: str, **fields) -> Optional[Game]:
        raise NotImplementedError

    async def delete_game(self, game_id: str) -> bool:
        raise NotImplementedError

    # Questions
    async def add_question(self, question: QuestionBase) -> QuestionBase:
        raise NotImplementedError

    async def replace_question(self, question: QuestionBase) -> bool:
        raise NotImplementedError

    async def delete_question(self, game_id: str, question_id: str) -> bool:
        raise NotImplementedError

    async def get_question(self, question_id: str) -> Optional[QuestionBase]:
        raise NotImplementedError

    async def list_questions(self, game_id: str) -> List[QuestionBase]:
        raise NotImplementedError

    # Participants
    async def add_participant(self, participant: Participant) -> Participant:
        raise NotImplementedError

    async def get_participant(self, participant_id: str) -> Optional[Participant]:
        raise NotImplementedError

    async def list_participants(self, game_id: str) -> List[Participant]:
        raise NotImplementedError

    async def count_participants(self, game_id: str, name: Optional[str] = None) -> int:
        raise NotImplementedError

    async def touch_participant(self, participant_id: str) -> None:
        raise NotImplementedError

    async def mark_hint_used(self, participant_id: str, question_id: str) -> Optional[Participant]:
        raise NotImplementedError

    async def set_participant_status(self, participant_id: str, status: str) -> Optional[Participant]:
        """Change status unless the participant is already eliminated."""
        raise NotImplementedError

    # Cheat reports
    async def append_cheat_report(self, report: CheatReport) -> CheatReport:
        raise NotImplementedError

    async def list_cheat_reports(
        self, game_id: str, participant_id: Optional[str] = None
    ) -> List[CheatReport]:
        raise NotImplementedError

    # Transactional boundaries
    async def evaluate_violation(
        self,
        participant_id: str,
        game_id: str,
        reason: str,
        device_class: str,
        severity: str,
        detail: str = "",
    ) -> ViolationOutcome:
        """Apply one strike and record its penalized CheatReport in the same step."""
        raise NotImplementedError

    async def submit_answer(self, response: Response) -> SubmitOutcome:
        raise NotImplementedError


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================


class MemoryGameStore(GameStore):
    """Process-local store; a single asyncio.Lock serializes every write."""

    def __init__(self, policy: Optional[EliminationPolicy] = None, allow_negative_score: bool = False):
        super().__init__(policy, allow_negative_score)
        self._lock = asyncio.Lock()
        self._games: Dict[str, Game] = {}
        self._questions: Dict[str, QuestionBase] = {}
        self._participants: Dict[str, Participant] = {}
        self._cheat_reports: List[CheatReport] = []

    async def create_game(self, game):
        async with self._lock:
            self._games[game.id] = game.model_copy(deep=True)
        return game

    async def get_game(self, game_id):
        game = self._games.get(game_id)
        return game.model_copy(deep=True) if game else None

    async def get_game_by_code(self, join_code):
        for game in self._games.values():
            if game.joinCode == join_code:
                return game.model_copy(deep=True)
        return None

    async def list_games(self, status=None, limit=100, skip=0):
        games = [g for g in self._games.values() if status is None or g.status == status]
        games.sort(key=lambda g: g.createdAt, reverse=True)
        return [g.model_copy(deep=True) for g in games[skip : skip + limit]]

    async def update_game(self, game_id, **fields):
        async with self._lock:
            game = self._games.get(game_id)
            if game is None:
                return None
            updated = game.model_copy(update={**fields, "updatedAt": utcnow_iso()})
            self._games[game_id] = updated
            return updated.model_copy(deep=True)

    async def delete_game(self, game_id):
        async with self._lock:
            if self._games.pop(game_id, None) is None:
                return False
            self._questions = {k: q for k, q in self._questions.items() if q.gameId != game_id}
            self._participants = {
                k: p for k, p in self._participants.items() if p.gameId != game_id
            }
            self._cheat_reports = [r for r in self._cheat_reports if r.gameId != game_id]
            return True

    async def add_question(self, question):
        async with self._lock:
            self._questions[question.id] = question.model_copy(deep=True)
        return question

    async def replace_question(self, question):
        async with self._lock:
            if question.id not in self._questions:
                return False
            self._questions[question.id] = question.model_copy(deep=True)
            return True

    async def delete_question(self, game_id, question_id):
        async with self._lock:
            question = self._questions.get(question_id)
            if question is None or question.gameId != game_id:
                return False
            del self._questions[question_id]
            return True

    async def get_question(self, question_id):
        question = self._questions.get(question_id)
        return question.model_copy(deep=True) if question else None

    async def list_questions(self, game_id):
        questions = [q for q in self._questions.values() if q.gameId == game_id]
        questions.sort(key=lambda q: q.orderIndex)
        return [q.model_copy(deep=True) for q in questions]

    async def add_participant(self, participant):
        async with self._lock:
            self._participants[participant.id] = participant.model_copy(deep=True)
        return participant

    async def get_participant(self, participant_id):
        participant = self._participants.get(participant_id)
        return participant.model_copy(deep=True) if participant else None

    async def list_participants(self, game_id):
        return [
            p.model_copy(deep=True) for p in self._participants.values() if p.gameId == game_id
        ]

    async def count_participants(self, game_id, name=None):
        return sum(
            1
            for p in self._participants.values()
            if p.gameId == game_id and (name is None or p.name == name)
        )

    async def touch_participant(self, participant_id):
        async with self._lock:
            participant = self._participants.get(participant_id)
            if participant is not None:
                participant.lastSeenAt = utcnow_iso()

    async def mark_hint_used(self, participant_id, question_id):
        async with self._lock:
            participant = self._participants.get(participant_id)
            if participant is None:
                return None
            if question_id not in participant.hintsUsed:
                participant.hintsUsed.append(question_id)
            return participant.model_copy(deep=True)

    async def set_participant_status(self, participant_id, status):
        async with self._lock:
            participant = self._participants.get(participant_id)
            if participant is None:
                return None
            if participant.status != ParticipantStatus.ELIMINATED:
                participant.status = status
            return participant.model_copy(deep=True)

    async def append_cheat_report(self, report):
        async with self._lock:
            self._cheat_reports.append(report.model_copy(deep=True))
        return report

    async def list_cheat_reports(self, game_id, participant_id=None):
        return [
            r.model_copy(deep=True)
            for r in self._cheat_reports
            if r.gameId == game_id and (participant_id is None or r.participantId == participant_id)
        ]

    async def evaluate_violation(
        self, participant_id, game_id, reason, device_class, severity, detail=""
    ):
        async with self._lock:
            participant = self._participants.get(participant_id)
            game = self._games.get(game_id)
            if participant is None or game is None or participant.gameId != game_id:
                return ViolationOutcome(error=StoreError.NOT_FOUND)

            current = ViolationOutcome(
                violationCount=participant.violationCount,
                score=participant.score,
                status=participant.status,
            )
            if game.status == GameStatus.ENDED:
                current.error = StoreError.GAME_ENDED
                return current

            transition = self.policy.apply(
                Standing(violationCount=participant.violationCount, status=participant.status),
                device_class,
                severity,
            )
            if transition is None:
                current.error = StoreError.ALREADY_ELIMINATED
                return current

            new_score = self._floor(participant.score + transition.pointsDelta)
            applied = new_score - participant.score
            participant.score = new_score
            participant.violationCount = transition.violationCount
            participant.status = transition.status
            participant.lastSeenAt = utcnow_iso()
            self._cheat_reports.append(
                CheatReport(
                    participantId=participant_id,
                    gameId=game_id,
                    reason=reason,
                    detail=detail,
                    deviceClass=device_class,
                    severity=severity,
                    penalized=True,
                )
            )

            return ViolationOutcome(
                violationCount=participant.violationCount,
                score=participant.score,
                status=participant.status,
                pointsDelta=applied,
                message=transition.message,
            )

    async def submit_answer(self, response):
        async with self._lock:
            participant = self._participants.get(response.participantId)
            game = self._games.get(response.gameId)
            if participant is None or game is None or participant.gameId != response.gameId:
                return SubmitOutcome(error=StoreError.NOT_FOUND)

            existing = participant.response_for(response.questionId)
            if existing is not None:
                return SubmitOutcome(
                    pointsAwarded=existing.pointsAwarded,
                    score=participant.score,
                    response=existing.model_copy(deep=True),
                    error=StoreError.ALREADY_SUBMITTED,
                )
            if participant.status == ParticipantStatus.ELIMINATED:
                return SubmitOutcome(score=participant.score, error=StoreError.ALREADY_ELIMINATED)
            if game.status == GameStatus.ENDED:
                return SubmitOutcome(score=participant.score, error=StoreError.GAME_ENDED)

            participant.answers.append(response.model_copy(deep=True))
            participant.score += response.pointsAwarded
            participant.lastSeenAt = utcnow_iso()
            return SubmitOutcome(
                pointsAwarded=response.pointsAwarded,
                score=participant.score,
                response=response,
            )


# ============================================================================
# MONGODB BACKEND
# ============================================================================


def _translate_errors(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"Store {fn.__name__} error: {e}")
            raise StoreUnavailable("Storage temporarily unavailable") from e

    return wrapper


class MongoGameStore(GameStore):
    """MongoDB through motor. Atomicity relies on single-document updates."""

    def __init__(
        self,
        mongo_url: str,
        db_name: str,
        policy: Optional[EliminationPolicy] = None,
        allow_negative_score: bool = False,
    ):
        super().__init__(policy, allow_negative_score)
        self.mongo_url = mongo_url
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self):
        self.client = AsyncIOMotorClient(
            self.mongo_url,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            maxPoolSize=200,
            minPoolSize=10,
            retryWrites=True,
            retryReads=True,
        )
        self.db = self.client[self.db_name]
        await self.db.command("ping")
        logger.info("✓ MongoDB connected")

        try:
            await self.db.games.create_index("id", unique=True)
            await self.db.games.create_index("joinCode", unique=True)
            await self.db.games.create_index("status")
            await self.db.questions.create_index("id", unique=True)
            await self.db.questions.create_index([("gameId", 1), ("orderIndex", 1)])
            await self.db.participants.create_index("id", unique=True)
            await self.db.participants.create_index([("gameId", 1), ("score", -1)])
            await self.db.cheat_reports.create_index([("gameId", 1), ("participantId", 1)])
            logger.info("✓ Database indexes created")
        except PyMongoError as e:
            logger.error(f"Index creation error: {e}")

    async def close(self):
        if self.client:
            self.client.close()

    async def ping(self):
        try:
            await self.db.command("ping")
            return True
        except PyMongoError as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False

    # Games

    @_translate_errors
    async def create_game(self, game):
        await self.db.games.insert_one(game.model_dump())
        return game

    @_translate_errors
    async def get_game(self, game_id):
        doc = await self.db.games.find_one({"id": game_id}, {"_id": 0})
        return Game(**doc) if doc else None

    @_translate_errors
    async def get_game_by_code(self, join_code):
        doc = await self.db.games.find_one({"joinCode": join_code}, {"_id": 0})
        return Game(**doc) if doc else None

    @_translate_errors
    async def list_games(self, status=None, limit=100, skip=0):
        query = {"status": status} if status else {}
        docs = (
            await self.db.games.find(query, {"_id": 0})
            .sort("createdAt", -1)
            .skip(skip)
            .limit(limit)
            .to_list(limit)
        )
        return [Game(**d) for d in docs]

    @_translate_errors
    async def update_game(self, game_id, **fields):
        doc = await self.db.games.find_one_and_update(
            {"id": game_id},
            {"$set": {**fields, "updatedAt": utcnow_iso()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return Game(**doc) if doc else None

    @_translate_errors
    async def delete_game(self, game_id):
        result = await self.db.games.delete_one({"id": game_id})
        if result.deleted_count == 0:
            return False
        await asyncio.gather(
            self.db.questions.delete_many({"gameId": game_id}),
            self.db.participants.delete_many({"gameId": game_id}),
            self.db.cheat_reports.delete_many({"gameId": game_id}),
        )
        return True

    # Questions

    @_translate_errors
    async def add_question(self, question):
        await self.db.questions.insert_one(question.model_dump())
        return question

    @_translate_errors
    async def replace_question(self, question):
        result = await self.db.questions.replace_one({"id": question.id}, question.model_dump())
        return result.matched_count > 0

    @_translate_errors
    async def delete_question(self, game_id, question_id):
        result = await self.db.questions.delete_one({"id": question_id, "gameId": game_id})
        return result.deleted_count > 0

    @_translate_errors
    async def get_question(self, question_id):
        doc = await self.db.questions.find_one({"id": question_id}, {"_id": 0})
        return question_adapter.validate_python(doc) if doc else None

    @_translate_errors
    async def list_questions(self, game_id):
        docs = (
            await self.db.questions.find({"gameId": game_id}, {"_id": 0})
            .sort("orderIndex", 1)
            .to_list(None)
        )
        return [question_adapter.validate_python(d) for d in docs]

    # Participants

    @_translate_errors
    async def add_participant(self, participant):
        await self.db.participants.insert_one(participant.model_dump())
        return participant

    @_translate_errors
    async def get_participant(self, participant_id):
        doc = await self.db.participants.find_one({"id": participant_id}, {"_id": 0})
        return Participant(**doc) if doc else None

    @_translate_errors
    async def list_participants(self, game_id):
        docs = await self.db.participants.find({"gameId": game_id}, {"_id": 0}).to_list(None)
        return [Participant(**d) for d in docs]

    @_translate_errors
    async def count_participants(self, game_id, name=None):
        query = {"gameId": game_id}
        if name is not None:
            query["name"] = name
        return await self.db.participants.count_documents(query)

    @_translate_errors
    async def touch_participant(self, participant_id):
        await self.db.participants.update_one(
            {"id": participant_id}, {"$set": {"lastSeenAt": utcnow_iso()}}
        )

    @_translate_errors
    async def mark_hint_used(self, participant_id, question_id):
        doc = await self.db.participants.find_one_and_update(
            {"id": participant_id},
            {"$addToSet": {"hintsUsed": question_id}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return Participant(**doc) if doc else None

    @_translate_errors
    async def set_participant_status(self, participant_id, status):
        await self.db.participants.update_one(
            {"id": participant_id, "status": {"$ne": ParticipantStatus.ELIMINATED}},
            {"$set": {"status": status, "lastSeenAt": utcnow_iso()}},
        )
        return await self.get_participant(participant_id)

    # Cheat reports

    @_translate_errors
    async def append_cheat_report(self, report):
        await self.db.cheat_reports.insert_one(report.model_dump())
        return report

    @_translate_errors
    async def list_cheat_reports(self, game_id, participant_id=None):
        query = {"gameId": game_id}
        if participant_id:
            query["participantId"] = participant_id
        docs = await self.db.cheat_reports.find(query, {"_id": 0}).to_list(None)

        # penalized reports live on the participant, written with the strike itself
        owner_query = {"gameId": game_id}
        if participant_id:
            owner_query["id"] = participant_id
        owners = await self.db.participants.find(
            owner_query,
            {"_id": 0, "cheatReports": 1},
        ).to_list(None)
        for owner in owners:
            docs.extend(owner.get("cheatReports", []))

        reports = [CheatReport(**d) for d in docs]
        reports.sort(key=lambda r: r.timestamp)
        return reports

    # Transactional boundaries

    def _violation_pipeline(self, device_class: str, severity: str, report: CheatReport) -> list:
        schedule = self.policy.penalty_schedule(device_class, severity)
        penalty = {
            "$arrayElemAt": [
                schedule,
                {"$subtract": [{"$min": ["$violationCount", len(schedule)]}, 1]},
            ]
        }
        new_score = {"$subtract": ["$score", penalty]}
        if not self.allow_negative_score:
            new_score = {"$max": [0, new_score]}
        return [
            {
                "$set": {
                    "violationCount": {"$add": [{"$ifNull": ["$violationCount", 0]}, 1]},
                    "prevScore": "$score",
                }
            },
            {
                "$set": {
                    "score": new_score,
                    "lastPenalty": penalty,
                    "status": {
                        "$cond": [
                            {"$gte": ["$violationCount", self.policy.strike_limit]},
                            ParticipantStatus.ELIMINATED,
                            "$status",
                        ]
                    },
                    "lastSeenAt": utcnow_iso(),
                    # $literal keeps client-supplied detail from being read as a field path
                    "cheatReports": {
                        "$concatArrays": [
                            {"$ifNull": ["$cheatReports", []]},
                            [{"$literal": report.model_dump()}],
                        ]
                    },
                }
            },
            {"$set": {"lastViolationDelta": {"$subtract": ["$score", "$prevScore"]}}},
            {"$unset": "prevScore"},
        ]

    @_translate_errors
    async def evaluate_violation(
        self, participant_id, game_id, reason, device_class, severity, detail=""
    ):
        game = await self.db.games.find_one({"id": game_id}, {"_id": 0, "status": 1})
        if game is None:
            return ViolationOutcome(error=StoreError.NOT_FOUND)

        if game.get("status") != GameStatus.ENDED:
            report = CheatReport(
                participantId=participant_id,
                gameId=game_id,
                reason=reason,
                detail=detail,
                deviceClass=device_class,
                severity=severity,
                penalized=True,
            )
            doc = await self.db.participants.find_one_and_update(
                {
                    "id": participant_id,
                    "gameId": game_id,
                    "status": {"$ne": ParticipantStatus.ELIMINATED},
                },
                self._violation_pipeline(device_class, severity, report),
                projection={"_id": 0, "answers": 0, "cheatReports": 0},
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                strike = doc["violationCount"]
                return ViolationOutcome(
                    violationCount=strike,
                    score=doc["score"],
                    status=doc["status"],
                    pointsDelta=doc.get("lastViolationDelta", 0),
                    message=self.policy.message_for(strike, doc.get("lastPenalty", 0)),
                )

        current = await self.db.participants.find_one(
            {"id": participant_id, "gameId": game_id}, {"_id": 0, "answers": 0, "cheatReports": 0}
        )
        if current is None:
            return ViolationOutcome(error=StoreError.NOT_FOUND)
        error = (
            StoreError.GAME_ENDED
            if game.get("status") == GameStatus.ENDED
            else StoreError.ALREADY_ELIMINATED
        )
        return ViolationOutcome(
            violationCount=current.get("violationCount", 0),
            score=current.get("score", 0),
            status=current.get("status", ParticipantStatus.ACTIVE),
            error=error,
        )

    @_translate_errors
    async def submit_answer(self, response):
        game = await self.db.games.find_one({"id": response.gameId}, {"_id": 0, "status": 1})
        if game is None:
            return SubmitOutcome(error=StoreError.NOT_FOUND)

        if game.get("status") != GameStatus.ENDED:
            doc = await self.db.participants.find_one_and_update(
                {
                    "id": response.participantId,
                    "gameId": response.gameId,
                    "status": {"$ne": ParticipantStatus.ELIMINATED},
                    "answers.questionId": {"$ne": response.questionId},
                },
                {
                    "$push": {"answers": response.model_dump()},
                    "$inc": {"score": response.pointsAwarded},
                    "$set": {"lastSeenAt": utcnow_iso()},
                },
                projection={"_id": 0, "score": 1},
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                return SubmitOutcome(
                    pointsAwarded=response.pointsAwarded, score=doc["score"], response=response
                )

        current = await self.get_participant(response.participantId)
        if current is None or current.gameId != response.gameId:
            return SubmitOutcome(error=StoreError.NOT_FOUND)
        existing = current.response_for(response.questionId)
        if existing is not None:
            return SubmitOutcome(
                pointsAwarded=existing.pointsAwarded,
                score=current.score,
                response=existing,
                error=StoreError.ALREADY_SUBMITTED,
            )
        if current.status == ParticipantStatus.ELIMINATED:
            return SubmitOutcome(score=current.score, error=StoreError.ALREADY_ELIMINATED)
        return SubmitOutcome(score=current.score, error=StoreError.GAME_ENDED)


def create_store(cfg) -> GameStore:
    policy = EliminationPolicy.from_config(cfg)
    if cfg.STORE_BACKEND == "memory":
        return MemoryGameStore(policy, cfg.ALLOW_NEGATIVE_SCORE)
    return MongoGameStore(cfg.MONGO_URL, cfg.DB_NAME, policy, cfg.ALLOW_NEGATIVE_SCORE)
