"""
QuizGuard Backend
Live quiz games with time-decayed scoring and server-side anti-cheat:
admin game control, participant join/submit/hint/signal, WebSocket events.
"""

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Query, Depends, Request, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError
from typing import Any, List, Optional, Dict
from datetime import datetime, timezone, timedelta
from contextlib import asynccontextmanager
import os
import sys
import logging
import random
import string
import asyncio
import time
import hmac

import jwt as pyjwt
import orjson

from cache import QuizCache
from config import config
from errors import QuizError, SubmissionRejected
from models import (
    AdminLogin,
    AnswerSubmit,
    Game,
    GameCreate,
    GameStatus,
    GameUpdate,
    HintRequest,
    HintResult,
    LeaderboardEntry,
    Participant,
    ParticipantJoin,
    ParticipantStatus,
    QuestionBase,
    SignalReport,
    SignalResult,
    SubmissionResult,
    correct_answer_of,
    public_question,
    question_adapter,
)
from realtime import ConnectionManager, GameEvents
from scoring import rank_participants
from session import GameSessions
from store import GameStore, create_store
from submission import SubmissionCoordinator
from suspicion import Signal, classify_device

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

store: Optional[GameStore] = None
manager: Optional[ConnectionManager] = None
events: Optional[GameEvents] = None
sessions: Optional[GameSessions] = None
coordinator: Optional[SubmissionCoordinator] = None
quiz_cache = QuizCache()

# Allowed admin status changes
TRANSITIONS = {
    GameStatus.WAITING: {GameStatus.STARTED, GameStatus.ENDED},
    GameStatus.STARTED: {GameStatus.PAUSED, GameStatus.ENDED},
    GameStatus.PAUSED: {GameStatus.STARTED, GameStatus.ENDED},
    GameStatus.ENDED: set(),
}


def init_services(
    game_store: GameStore,
    grace_period_sec: float = None,
    tick_sec: float = None,
):
    """Wire the store, realtime layer, sessions and coordinator together."""
    global store, manager, events, sessions, coordinator

    store = game_store
    manager = ConnectionManager()
    events = GameEvents(manager)
    sessions = GameSessions(
        events,
        grace_period_sec=config.GRACE_PERIOD_SEC if grace_period_sec is None else grace_period_sec,
        disabled_signals=config.DISABLED_SIGNALS,
        tick_sec=config.CLOCK_TICK_SEC if tick_sec is None else tick_sec,
    )
    coordinator = SubmissionCoordinator(
        store,
        sessions,
        events,
        retries=config.SUBMIT_RETRIES,
        retry_delay_sec=config.SUBMIT_RETRY_DELAY_SEC,
        cache=quiz_cache,
    )


# ============================================================================
# LIFESPAN
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting QuizGuard API")

    game_store = create_store(config)
    try:
        await game_store.connect()
    except Exception as e:
        logger.error(f"❌ Store connection failed: {e}")
        raise

    await quiz_cache.connect(config.REDIS_URL)
    init_services(game_store)
    logger.info(f"✓ QuizGuard API ready ({config.STORE_BACKEND} store)")

    yield

    logger.info("🛑 Shutting down")
    if sessions:
        sessions.shutdown()
    await quiz_cache.close()
    await game_store.close()
    logger.info("✓ Shutdown complete")


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="QuizGuard API",
    version="1.0.0",
    description="QuizGuard - live quiz scoring with server-side anti-cheat",
    lifespan=lifespan,
)

# CORS_ORIGINS env var takes priority over Config defaults
_cors_env = os.getenv("CORS_ORIGINS", "")
if _cors_env == "*":
    _cors_origins = ["*"]
elif _cors_env:
    _cors_origins = [o.strip() for o in _cors_env.split(",") if o.strip()]
else:
    _cors_origins = config.ALLOWED_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=500)


@app.exception_handler(QuizError)
async def quiz_error_handler(request: Request, exc: QuizError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ============================================================================
# AUTHENTICATION
# ============================================================================

security = HTTPBearer(auto_error=False)


def create_admin_token(username: str) -> str:
    payload = {
        "sub": username,
        "role": "admin",
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=config.JWT_EXPIRATION_HOURS),
    }
    return pyjwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict]:
    try:
        return pyjwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except pyjwt.InvalidTokenError:
        return None


async def verify_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """FastAPI dependency to protect admin routes"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")

    return payload


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def generate_code(length: int = 6) -> str:
    chars = string.ascii_uppercase + string.digits
    chars = chars.replace("O", "").replace("0", "").replace("I", "").replace("1", "")
    return "".join(random.choices(chars, k=length))


async def require_game(game_id: str) -> Game:
    game = await store.get_game(game_id)
    if not game:
        raise HTTPException(404, "Game not found")
    return game


async def get_questions_with_cache(game: Game) -> List[QuestionBase]:
    """Questions of a game; cached once the game has left the lobby and they are frozen."""
    if game.status != GameStatus.WAITING:
        cached = await quiz_cache.get_questions(game.id)
        if cached:
            return [question_adapter.validate_python(q) for q in cached]

    questions = await store.list_questions(game.id)
    if questions and game.status != GameStatus.WAITING:
        await quiz_cache.set_questions(game.id, [q.model_dump() for q in questions])
    return questions


async def calc_leaderboard(game_id: str) -> List[Dict]:
    cached = await quiz_cache.get_leaderboard(game_id)
    if cached is not None:
        return cached

    participants = await store.list_participants(game_id)
    leaderboard = rank_participants(participants)
    await quiz_cache.set_leaderboard(game_id, leaderboard)
    return leaderboard


def participant_view(p: Participant) -> Dict[str, Any]:
    return p.model_dump(exclude={"answers"})


async def push_question(game: Game, question: QuestionBase):
    """Make ``question`` the live one: restart the clock, reset detectors, broadcast it."""
    await store.update_game(game.id, currentQuestionId=question.id, revealedQuestionId=None)
    sessions.start_question(
        game.id, question.id, question.timeLimit, on_expire=coordinator.auto_submit_pending
    )
    await events.question_changed(game.id, public_question(question), int(time.time() * 1000))
    logger.info(f"✓ Question {question.orderIndex + 1} live: {game.joinCode} limit={question.timeLimit}s")


async def next_question_for(game: Game) -> Optional[QuestionBase]:
    questions = await get_questions_with_cache(game)
    if game.currentQuestionId is None:
        return questions[0] if questions else None
    ids = [q.id for q in questions]
    if game.currentQuestionId not in ids:
        return None
    idx = ids.index(game.currentQuestionId) + 1
    return questions[idx] if idx < len(questions) else None


async def end_game(game: Game) -> Game:
    sessions.stop_clock(game.id)
    updated = await store.update_game(game.id, status=GameStatus.ENDED)
    await events.game_status_changed(game.id, GameStatus.ENDED)
    await quiz_cache.invalidate_leaderboard(game.id)
    logger.info(f"✓ Game ended: {game.joinCode}")
    return updated


# ============================================================================
# API ROUTES
# ============================================================================


@app.get("/")
async def root():
    return {
        "name": "QuizGuard API",
        "version": "1.0.0",
        "status": "active",
        "features": ["time-decay-scoring", "anti-cheat", "time-sync", "admin-auth"],
    }


@app.get("/health")
async def health():
    status = {"status": "healthy", "services": {}}
    if store is not None and await store.ping():
        status["services"]["store"] = "connected"
    else:
        status["services"]["store"] = "unavailable"
        status["status"] = "degraded"

    status["services"]["cache"] = "redis" if quiz_cache.redis else "memory"
    if manager:
        status["websocket"] = manager.get_performance_stats()
    return status


@app.get("/api/time-sync")
async def time_sync():
    """High-precision time sync endpoint for client clock synchronization"""
    return {
        "serverTime": int(time.time() * 1000),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------


@app.post("/api/admin/login")
async def admin_login(data: AdminLogin):
    """Admin login - validates configured credentials and returns JWT token"""
    valid = hmac.compare_digest(data.username, config.ADMIN_USERNAME) and hmac.compare_digest(
        data.password, config.ADMIN_PASSWORD
    )
    if not valid:
        raise HTTPException(status_code=401, detail="Invalid username or password")

    logger.info(f"✓ Admin login: {data.username}")
    return {"token": create_admin_token(data.username), "username": data.username, "role": "admin"}


@app.get("/api/admin/verify-token")
async def verify_admin_token_endpoint(_admin: Dict = Depends(verify_admin_token)):
    return {"valid": True, "username": _admin.get("sub", "")}


@app.post("/api/admin/games")
async def create_game(data: GameCreate, _admin: Dict = Depends(verify_admin_token)):
    try:
        if len(data.questions) > config.MAX_QUESTIONS:
            raise HTTPException(400, f"At most {config.MAX_QUESTIONS} questions")

        code = generate_code()
        for _ in range(10):
            if not await store.get_game_by_code(code):
                break
            code = generate_code()
        else:
            raise HTTPException(500, "Failed to generate unique code")

        game = await store.create_game(Game(joinCode=code, title=data.title.strip()))

        questions = []
        for idx, q in enumerate(data.questions):
            question = q.model_copy(update={"gameId": game.id, "orderIndex": idx})
            questions.append(await store.add_question(question))

        logger.info(f"✓ Game created: {code} - {data.title}")
        return {**game.model_dump(), "questions": [q.model_dump() for q in questions]}

    except (HTTPException, QuizError):
        raise
    except Exception as e:
        logger.error(f"Create game error: {e}")
        raise HTTPException(500, "Failed to create game")


@app.get("/api/admin/games", response_model=List[Game])
async def list_games(
    status: Optional[str] = None,
    limit: int = Query(100, le=500),
    skip: int = Query(0, ge=0),
    _admin: Dict = Depends(verify_admin_token),
):
    if status and status not in GameStatus.ALL:
        raise HTTPException(400, "Invalid status")
    return await store.list_games(status, limit, skip)


@app.get("/api/admin/games/{game_id}")
async def get_game(game_id: str, _admin: Dict = Depends(verify_admin_token)):
    game = await require_game(game_id)
    questions = await get_questions_with_cache(game)
    return {
        **game.model_dump(),
        "questions": [q.model_dump() for q in questions],
        "participantCount": await store.count_participants(game_id),
    }


@app.patch("/api/admin/games/{game_id}", response_model=Game)
async def update_game(game_id: str, data: GameUpdate, _admin: Dict = Depends(verify_admin_token)):
    await require_game(game_id)
    return await store.update_game(game_id, title=data.title.strip())


@app.delete("/api/admin/games/{game_id}")
async def delete_game(game_id: str, _admin: Dict = Depends(verify_admin_token)):
    if not await store.delete_game(game_id):
        raise HTTPException(404, "Game not found")

    sessions.drop_game(game_id)
    await manager.close_room(game_id)
    await quiz_cache.invalidate(game_id)
    logger.info(f"✓ Game deleted: {game_id}")
    return {"success": True, "message": "Game deleted"}


@app.patch("/api/admin/games/{game_id}/status")
async def update_game_status(
    game_id: str, status: str = Query(...), _admin: Dict = Depends(verify_admin_token)
):
    try:
        if status not in GameStatus.ALL:
            raise HTTPException(400, "Invalid status")

        game = await require_game(game_id)
        if status not in TRANSITIONS[game.status]:
            raise SubmissionRejected(f"Cannot change game from {game.status} to {status}")

        if status == GameStatus.ENDED:
            await end_game(game)
            return {"success": True, "status": status}

        if status == GameStatus.STARTED and game.status == GameStatus.WAITING:
            questions = await store.list_questions(game_id)
            if not questions:
                raise HTTPException(400, "Game has no questions")
            game = await store.update_game(game_id, status=GameStatus.STARTED)
            await quiz_cache.invalidate(game_id)
            await events.game_status_changed(game_id, status)
            await push_question(game, questions[0])
        elif status == GameStatus.STARTED:
            await store.update_game(game_id, status=GameStatus.STARTED)
            sessions.resume(game_id, on_expire=coordinator.auto_submit_pending)
            await events.game_status_changed(game_id, status)
        else:
            sessions.pause(game_id)
            await store.update_game(game_id, status=GameStatus.PAUSED)
            await events.game_status_changed(game_id, status)

        logger.info(f"✓ Game {game.joinCode} status changed to {status}")
        return {"success": True, "status": status}

    except (HTTPException, QuizError):
        raise
    except Exception as e:
        logger.error(f"Update status error: {e}")
        raise HTTPException(500, "Failed to update status")


async def _require_editable(game_id: str) -> Game:
    game = await require_game(game_id)
    if game.status != GameStatus.WAITING:
        raise SubmissionRejected("Questions can only be edited while the game is waiting")
    return game


def parse_question(payload: Dict[str, Any]) -> QuestionBase:
    try:
        return question_adapter.validate_python(payload)
    except ValidationError as e:
        raise HTTPException(422, str(e))


@app.post("/api/admin/games/{game_id}/questions")
async def add_question(
    game_id: str, payload: Dict[str, Any] = Body(...), _admin: Dict = Depends(verify_admin_token)
):
    await _require_editable(game_id)
    question = parse_question(payload)
    count = len(await store.list_questions(game_id))
    if count >= config.MAX_QUESTIONS:
        raise HTTPException(400, f"At most {config.MAX_QUESTIONS} questions")

    created = await store.add_question(
        question.model_copy(update={"gameId": game_id, "orderIndex": count})
    )
    return created.model_dump()


@app.put("/api/admin/games/{game_id}/questions/{question_id}")
async def replace_question(
    game_id: str,
    question_id: str,
    payload: Dict[str, Any] = Body(...),
    _admin: Dict = Depends(verify_admin_token),
):
    await _require_editable(game_id)
    question = parse_question(payload)
    existing = await store.get_question(question_id)
    if existing is None or existing.gameId != game_id:
        raise HTTPException(404, "Question not found")

    updated = question.model_copy(
        update={"id": question_id, "gameId": game_id, "orderIndex": existing.orderIndex}
    )
    await store.replace_question(updated)
    return updated.model_dump()


@app.delete("/api/admin/games/{game_id}/questions/{question_id}")
async def delete_question(game_id: str, question_id: str, _admin: Dict = Depends(verify_admin_token)):
    await _require_editable(game_id)
    if not await store.delete_question(game_id, question_id):
        raise HTTPException(404, "Question not found")
    return {"success": True}


@app.post("/api/admin/games/{game_id}/next-question")
async def next_question(game_id: str, _admin: Dict = Depends(verify_admin_token)):
    game = await require_game(game_id)
    if game.status != GameStatus.STARTED:
        raise SubmissionRejected(f"Game is {game.status}")

    question = await next_question_for(game)
    if question is None:
        await end_game(game)
        return {"success": True, "finished": True}

    await push_question(game, question)
    return {"success": True, "finished": False, "question": public_question(question)}


@app.post("/api/admin/games/{game_id}/reveal")
async def reveal_answer(game_id: str, _admin: Dict = Depends(verify_admin_token)):
    game = await require_game(game_id)
    if not game.currentQuestionId:
        raise SubmissionRejected("No question is live")
    if game.revealedQuestionId == game.currentQuestionId:
        raise SubmissionRejected("Answer already revealed")

    question = await store.get_question(game.currentQuestionId)
    if question is None:
        raise HTTPException(404, "Question not found")

    # close the question for everyone still answering before the answer goes out
    sessions.stop_clock(game_id)
    if game.status == GameStatus.STARTED:
        await coordinator.auto_submit_pending(game_id, question.id)

    await store.update_game(game_id, revealedQuestionId=question.id)
    correct = correct_answer_of(question)
    await events.answer_revealed(game_id, question.id, correct)
    logger.info(f"✓ Answer revealed: {game.joinCode} q={question.orderIndex + 1}")
    return {"questionId": question.id, "correctAnswer": correct}


@app.get("/api/admin/games/{game_id}/participants")
async def get_game_participants(game_id: str, _admin: Dict = Depends(verify_admin_token)):
    await require_game(game_id)
    parts = sorted(await store.list_participants(game_id), key=lambda p: -p.score)
    return {"participants": [p.model_dump() for p in parts], "count": len(parts)}


@app.post("/api/admin/games/{game_id}/participants/{participant_id}/eliminate")
async def eliminate_participant(
    game_id: str, participant_id: str, _admin: Dict = Depends(verify_admin_token)
):
    """Host removes a participant by hand; final like a strike-out"""
    await require_game(game_id)
    p = await store.get_participant(participant_id)
    if not p or p.gameId != game_id:
        raise HTTPException(404, "Participant not found")
    if p.status == ParticipantStatus.ELIMINATED:
        return participant_view(p)

    updated = await store.set_participant_status(participant_id, ParticipantStatus.ELIMINATED)
    await events.eliminated(game_id, participant_id, "You have been eliminated by the quiz host.")
    await quiz_cache.invalidate_leaderboard(game_id)
    logger.info(f"✓ Participant eliminated by host: {p.name} ({game_id})")
    return participant_view(updated)


@app.get("/api/admin/games/{game_id}/cheat-reports")
async def get_cheat_reports(
    game_id: str,
    participantId: Optional[str] = None,
    _admin: Dict = Depends(verify_admin_token),
):
    await require_game(game_id)
    reports = await store.list_cheat_reports(game_id, participantId)
    return {"reports": [r.model_dump() for r in reports], "count": len(reports)}


# ----------------------------------------------------------------------------
# Participants
# ----------------------------------------------------------------------------


@app.get("/api/games/{join_code}/verify")
async def verify_game(join_code: str):
    game = await store.get_game_by_code(join_code.upper())
    if not game:
        raise HTTPException(404, "Game not found")
    return {"valid": True, "gameId": game.id, "title": game.title, "status": game.status}


@app.post("/api/join")
async def join_game(data: ParticipantJoin):
    try:
        name = data.name.strip() if data.name else ""
        if not name:
            raise HTTPException(400, "Name is required")
        if len(name) > 50:
            raise HTTPException(400, "Name too long (max 50 characters)")

        game = await store.get_game_by_code(data.joinCode.strip().upper())
        if not game:
            raise HTTPException(404, "Game not found")
        if game.status == GameStatus.ENDED:
            raise HTTPException(400, "Game has ended")

        if await store.count_participants(game.id) >= config.MAX_PARTICIPANTS:
            raise HTTPException(400, "Game is full")
        if await store.count_participants(game.id, name=name):
            raise HTTPException(400, "Name already taken")

        participant = Participant(
            name=name,
            gameId=game.id,
            deviceClass=classify_device(data.viewportWidth, data.touchPoints, data.userAgent),
        )
        await store.add_participant(participant)
        sessions.player(participant)
        await events.participant_joined(
            game.id, {"id": participant.id, "name": participant.name}
        )

        logger.info(f"✓ Participant joined: {name} -> {game.joinCode} ({participant.deviceClass})")
        return participant_view(participant)

    except (HTTPException, QuizError):
        raise
    except Exception as e:
        logger.error(f"Join error: {e}")
        raise HTTPException(500, "Failed to join game")


@app.get("/api/games/{game_id}/current-question")
async def get_current_question(game_id: str):
    game = await require_game(game_id)
    question = None
    if game.currentQuestionId:
        current = await store.get_question(game.currentQuestionId)
        if current:
            question = public_question(current)
    return {
        "status": game.status,
        "question": question,
        "remaining": sessions.remaining(game_id),
        "revealed": game.revealedQuestionId is not None
        and game.revealedQuestionId == game.currentQuestionId,
        "serverTime": int(time.time() * 1000),
    }


@app.post("/api/submit-answer", response_model=SubmissionResult)
async def submit_answer(ans: AnswerSubmit):
    return await coordinator.submit(
        ans.participantId, ans.questionId, ans.answer, ans.elapsedSeconds, ans.hintUsed
    )


@app.post("/api/hint", response_model=HintResult)
async def request_hint(data: HintRequest):
    return await coordinator.request_hint(data.participantId, data.questionId)


@app.post("/api/signal", response_model=SignalResult)
async def report_signal(data: SignalReport):
    return await coordinator.report_signal(
        data.participantId, Signal(kind=data.kind, detail=data.detail, value=data.value)
    )


@app.get("/api/leaderboard/{game_id}", response_model=List[LeaderboardEntry])
async def get_leaderboard(game_id: str):
    await require_game(game_id)
    return await calc_leaderboard(game_id)


@app.get("/api/games/{game_id}/my-results/{participant_id}")
async def get_my_results(game_id: str, participant_id: str):
    """Personal performance breakdown for a participant"""
    p = await store.get_participant(participant_id)
    if not p or p.gameId != game_id:
        raise HTTPException(404, "Participant not found")

    game = await require_game(game_id)
    questions = await get_questions_with_cache(game)
    leaderboard = await calc_leaderboard(game_id)
    my_rank = next((e["rank"] for e in leaderboard if e["participantId"] == participant_id), 0)

    correct_count = sum(1 for a in p.answers if a.correct)
    total_answered = len(p.answers)
    accuracy = round((correct_count / total_answered * 100) if total_answered else 0, 1)

    return {
        "name": p.name,
        "score": p.score,
        "status": p.status,
        "violationCount": p.violationCount,
        "rank": my_rank,
        "totalPlayers": len(leaderboard),
        "correctAnswers": correct_count,
        "totalQuestions": len(questions),
        "accuracy": accuracy,
        "averageTimePerQuestion": round(p.total_time / max(total_answered, 1), 2),
        "answers": [a.model_dump() for a in p.answers],
    }


@app.get("/api/games/{game_id}/state")
async def get_game_state(game_id: str, participantId: Optional[str] = None):
    """Current game state for recovery when a client reconnects"""
    state = await get_current_question(game_id)
    if participantId:
        p = await store.get_participant(participantId)
        if p and p.gameId == game_id:
            state["participant"] = participant_view(p)
            state["answered"] = (
                state["question"] is not None and p.response_for(state["question"]["id"]) is not None
            )
    return state


# ============================================================================
# WEBSOCKET
# ============================================================================


async def _ws_reply(websocket: WebSocket, message: Dict):
    await websocket.send_text(orjson.dumps(message).decode("utf-8"))


async def _handle_participant_message(websocket: WebSocket, participant_id: str, msg: Dict):
    msg_type = msg.get("type")
    try:
        if msg_type == "submit_answer":
            result = await coordinator.submit(
                participant_id,
                msg.get("questionId", ""),
                msg.get("answer"),
                msg.get("elapsedSeconds", 0),
                bool(msg.get("hintUsed", False)),
            )
            await _ws_reply(websocket, {"type": "submission_result", **result.model_dump()})

        elif msg_type == "request_hint":
            result = await coordinator.request_hint(participant_id, msg.get("questionId", ""))
            await _ws_reply(websocket, {"type": "hint", **result.model_dump()})

        elif msg_type == "signal":
            signal = Signal(
                kind=str(msg.get("kind", "")), detail=str(msg.get("detail", "")), value=msg.get("value")
            )
            result = await coordinator.report_signal(participant_id, signal)
            if result.reported:
                await _ws_reply(websocket, {"type": "signal_result", **result.model_dump()})

        elif msg_type == "draft_answer":
            await coordinator.save_draft(participant_id, msg.get("questionId", ""), msg.get("answer"))

    except QuizError as e:
        await _ws_reply(websocket, {"type": "error", "message": e.message, "status": e.status_code})
    except (ValidationError, TypeError, ValueError) as e:
        await _ws_reply(websocket, {"type": "error", "message": f"Bad message: {e}", "status": 400})


@app.websocket("/ws/{game_id}")
async def websocket_endpoint(websocket: WebSocket, game_id: str):
    participant_id = None
    is_admin = False

    game = await store.get_game(game_id)
    if game is None or game.status == GameStatus.ENDED:
        await websocket.close(code=1008, reason="Game not available")
        return

    try:
        if not await manager.connect(websocket, game_id):
            return

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=config.WS_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                try:
                    await _ws_reply(websocket, {"type": "ping", "t": int(time.time() * 1000)})
                except RuntimeError:
                    break
                continue

            try:
                msg = orjson.loads(data)
            except orjson.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue

            msg_type = msg.get("type")

            if msg_type == "ping":
                await _ws_reply(
                    websocket,
                    {
                        "type": "pong",
                        "clientTime": msg.get("clientTime") or msg.get("t"),
                        "serverTime": int(time.time() * 1000),
                    },
                )

            elif msg_type == "admin_joined":
                payload = verify_token(str(msg.get("token", "")))
                if payload and payload.get("role") == "admin":
                    is_admin = True
                    parts = await store.list_participants(game_id)
                    await _ws_reply(
                        websocket,
                        {
                            "type": "all_participants",
                            "participants": [participant_view(p) for p in parts],
                        },
                    )
                    logger.info(f"✓ Admin joined: {game_id}")
                else:
                    await _ws_reply(websocket, {"type": "error", "message": "Invalid token", "status": 401})

            elif msg_type == "participant_joined":
                p = await store.get_participant(str(msg.get("participantId", "")))
                if p is None or p.gameId != game_id:
                    await _ws_reply(websocket, {"type": "error", "message": "Participant not found", "status": 404})
                    continue

                participant_id = p.id
                await manager.bind_user(websocket, game_id, participant_id)
                sessions.player(p)
                await store.touch_participant(p.id)
                if p.status == ParticipantStatus.DISCONNECTED:
                    await store.set_participant_status(p.id, ParticipantStatus.ACTIVE)

                await _ws_reply(
                    websocket, {"type": "sync_state", **(await get_game_state(game_id, p.id))}
                )
                logger.info(f"✓ Participant {p.name} connected to {game_id}")

            elif msg_type == "request_state_sync":
                await _ws_reply(
                    websocket, {"type": "sync_state", **(await get_game_state(game_id, participant_id))}
                )

            elif participant_id and not is_admin:
                await _handle_participant_message(websocket, participant_id, msg)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {game_id}")
    except RuntimeError:
        logger.info(f"WebSocket runtime error (closed): {game_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        manager.disconnect(websocket, game_id, participant_id)
        if participant_id and not manager.is_connected(participant_id):
            try:
                await store.set_participant_status(participant_id, ParticipantStatus.DISCONNECTED)
            except QuizError as e:
                logger.error(f"Mark disconnected failed for {participant_id}: {e}")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("RELOAD", "") == "1",
        log_level="info",
        loop="asyncio" if sys.platform == "win32" else "uvloop",
        ws_ping_interval=config.WS_HEARTBEAT_SEC,
        ws_ping_timeout=config.WS_TIMEOUT_SEC,
    )
