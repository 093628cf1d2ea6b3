import os

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("GRACE_PERIOD_SEC", "0")

import pytest
from httpx import AsyncClient, ASGITransport

import server
from elimination import EliminationPolicy
from models import (
    DeviceClass,
    Game,
    GameStatus,
    MultiChoiceQuestion,
    Participant,
    ShortAnswerQuestion,
    SingleChoiceQuestion,
)
from realtime import GameEvents
from session import GameSessions
from store import MemoryGameStore
from submission import SubmissionCoordinator


class RecordingEvents(GameEvents):
    """Collects outgoing events instead of pushing them to sockets."""

    def __init__(self):
        super().__init__(None)
        self.game_messages = []
        self.participant_messages = []

    async def to_game(self, game_id, message):
        self.game_messages.append((game_id, message))

    async def to_participant(self, participant_id, message):
        self.participant_messages.append((participant_id, message))

    def types(self):
        return [m["type"] for _, m in self.game_messages + self.participant_messages]

    def sent_to(self, participant_id):
        return [m for pid, m in self.participant_messages if pid == participant_id]


def single_choice(**kw):
    data = dict(
        text="What is the capital of France?",
        options=["Paris", "London", "Berlin"],
        correctAnswers=["Paris"],
    )
    data.update(kw)
    return SingleChoiceQuestion(**data)


def multi_choice(**kw):
    data = dict(
        text="Which are prime?",
        options=["2", "3", "4", "5"],
        correctAnswers=["2", "3", "5"],
    )
    data.update(kw)
    return MultiChoiceQuestion(**data)


def short_answer(**kw):
    data = dict(
        text="What gas do plants absorb?",
        keywords=[{"text": "carbon dioxide"}, {"text": "CO2"}],
    )
    data.update(kw)
    return ShortAnswerQuestion(**data)


async def seed_game(
    store,
    questions,
    status=GameStatus.STARTED,
    names=("Alice",),
    device=DeviceClass.DESKTOP,
    score=0,
):
    """Game with questions and participants; the first question is live unless waiting."""
    game = await store.create_game(Game(joinCode="ABC234", title="Seeded", status=status))
    created = []
    for idx, q in enumerate(questions):
        created.append(
            await store.add_question(q.model_copy(update={"gameId": game.id, "orderIndex": idx}))
        )
    if status != GameStatus.WAITING and created:
        game = await store.update_game(game.id, currentQuestionId=created[0].id)

    participants = []
    for name in names:
        participants.append(
            await store.add_participant(
                Participant(name=name, gameId=game.id, deviceClass=device, score=score)
            )
        )
    return game, created, participants


@pytest.fixture
def memory_store():
    return MemoryGameStore(EliminationPolicy())


@pytest.fixture
def recorder():
    return RecordingEvents()


@pytest.fixture
def sessions(recorder):
    game_sessions = GameSessions(recorder, grace_period_sec=0, tick_sec=0.05)
    yield game_sessions
    game_sessions.shutdown()


@pytest.fixture
def coordinator(memory_store, sessions, recorder):
    return SubmissionCoordinator(memory_store, sessions, recorder, retries=2, retry_delay_sec=0)


@pytest.fixture
async def client(memory_store):
    """Create test client against an in-memory store"""
    server.init_services(memory_store, grace_period_sec=0, tick_sec=0.05)
    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    server.sessions.shutdown()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {server.create_admin_token('admin')}"}
