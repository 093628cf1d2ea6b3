import asyncio
import os
import uuid

import pytest

from conftest import seed_game, single_choice
from elimination import EliminationPolicy
from models import (
    CheatReport,
    DeviceClass,
    ParticipantStatus,
    Response,
    Severity,
    StoreError,
)
from store import MongoGameStore

MONGO_TEST_URL = os.getenv("MONGO_TEST_URL")

requires_mongo = pytest.mark.skipif(not MONGO_TEST_URL, reason="MONGO_TEST_URL not set")


# ============================================================================
# PIPELINE EVALUATION
# ============================================================================

# Just the aggregation operators the violation pipeline uses
OPERATORS = {
    "$add": lambda args: sum(args),
    "$subtract": lambda args: args[0] - args[1],
    "$min": lambda args: min(args),
    "$max": lambda args: max(args),
    "$ifNull": lambda args: next((a for a in args if a is not None), None),
    "$arrayElemAt": lambda args: args[0][args[1]],
    "$cond": lambda args: args[1] if args[0] else args[2],
    "$gte": lambda args: args[0] >= args[1],
    "$concatArrays": lambda args: [item for arr in args for item in arr],
}


def evaluate(expr, doc):
    if isinstance(expr, str) and expr.startswith("$"):
        return doc.get(expr[1:])
    if isinstance(expr, list):
        return [evaluate(e, doc) for e in expr]
    if isinstance(expr, dict):
        if len(expr) == 1:
            (op, args), = expr.items()
            if op == "$literal":
                return args
            if op in OPERATORS:
                return OPERATORS[op](evaluate(args, doc))
            assert not op.startswith("$"), f"unsupported operator {op}"
        return {k: evaluate(v, doc) for k, v in expr.items()}
    return expr


def run_pipeline(doc, pipeline):
    """Apply $set/$unset stages; each stage sees the document as the previous one left it."""
    for stage in pipeline:
        (kind, body), = stage.items()
        if kind == "$set":
            doc = {**doc, **{field: evaluate(expr, doc) for field, expr in body.items()}}
        elif kind == "$unset":
            fields = [body] if isinstance(body, str) else body
            doc = {k: v for k, v in doc.items() if k not in fields}
        else:
            raise AssertionError(f"unexpected stage {kind}")
    return doc


def report(detail="", device=DeviceClass.DESKTOP, severity=Severity.SOFT):
    return CheatReport(
        participantId="p1",
        gameId="g1",
        reason="tab_switch",
        detail=detail,
        deviceClass=device,
        severity=severity,
        penalized=True,
    )


def strike(store, doc, device=DeviceClass.DESKTOP, severity=Severity.SOFT, detail=""):
    # the update filter skips eliminated participants
    assert doc["status"] != ParticipantStatus.ELIMINATED
    pipeline = store._violation_pipeline(device, severity, report(detail, device, severity))
    return run_pipeline(doc, pipeline)


def participant_doc(score_value):
    return {"id": "p1", "gameId": "g1", "score": score_value, "violationCount": 0, "status": "active"}


def unused_store(**kw):
    # constructing the store does not connect
    return MongoGameStore("mongodb://localhost:27017", "unused", **kw)


def test_pipeline_penalty_schedule_per_strike():
    store = unused_store(policy=EliminationPolicy())
    doc = participant_doc(500)

    seen = []
    for _ in range(3):
        doc = strike(store, doc)
        seen.append((doc["violationCount"], doc["lastPenalty"], doc["score"], doc["status"]))

    assert seen == [
        (1, 50, 450, "active"),
        (2, 100, 350, "active"),
        (3, 0, 350, ParticipantStatus.ELIMINATED),
    ]
    assert "prevScore" not in doc
    assert doc["lastViolationDelta"] == 0


def test_pipeline_matches_policy_for_every_device_and_severity():
    policy = EliminationPolicy()
    store = unused_store(policy=policy)
    for device in (DeviceClass.DESKTOP, DeviceClass.MOBILE):
        for severity in (Severity.SOFT, Severity.SERIOUS):
            doc = participant_doc(10_000)
            for n in range(1, policy.strike_limit + 1):
                doc = strike(store, doc, device, severity)
                assert doc["lastPenalty"] == policy.penalty_for(device, severity, n)
                assert doc["lastViolationDelta"] == -policy.penalty_for(device, severity, n)


def test_pipeline_floors_score_at_zero():
    store = unused_store(policy=EliminationPolicy())
    doc = strike(store, participant_doc(120))
    assert doc["score"] == 70

    doc = strike(store, doc)
    assert doc["score"] == 0
    assert doc["lastViolationDelta"] == -70


def test_pipeline_allows_negative_score_when_configured():
    store = unused_store(policy=EliminationPolicy(), allow_negative_score=True)
    doc = strike(store, strike(store, participant_doc(120)))
    assert doc["score"] == -30
    assert doc["lastViolationDelta"] == -100


def test_pipeline_honours_strike_limit():
    store = unused_store(policy=EliminationPolicy(strike_limit=5))
    doc = participant_doc(1000)

    statuses = []
    for _ in range(5):
        doc = strike(store, doc)
        statuses.append(doc["status"])

    assert statuses == ["active"] * 4 + [ParticipantStatus.ELIMINATED]
    assert doc["score"] == 1000 - 50 - 100 - 100 - 100


def test_pipeline_counts_from_missing_field():
    store = unused_store(policy=EliminationPolicy())
    doc = {"id": "p1", "gameId": "g1", "score": 100, "status": "active"}
    assert strike(store, doc)["violationCount"] == 1


def test_pipeline_appends_report_verbatim():
    store = unused_store(policy=EliminationPolicy())
    doc = strike(store, participant_doc(500), detail="$score")
    doc = strike(store, doc, detail="copy")

    reports = doc["cheatReports"]
    assert [r["detail"] for r in reports] == ["$score", "copy"]
    assert all(r["penalized"] is True for r in reports)
    CheatReport(**reports[0])


# ============================================================================
# LIVE MONGODB
# ============================================================================


@pytest.fixture
async def mongo_store():
    store = MongoGameStore(
        MONGO_TEST_URL, f"quizguard_test_{uuid.uuid4().hex[:8]}", EliminationPolicy()
    )
    await store.connect()
    yield store
    await store.client.drop_database(store.db_name)
    await store.close()


@requires_mongo
async def test_mongo_violation_sequence_and_reports(mongo_store):
    game, _, (alice,) = await seed_game(mongo_store, [single_choice()], score=120)

    outcomes = []
    for detail in ("first", "second", "third", "fourth"):
        outcomes.append(
            await mongo_store.evaluate_violation(
                alice.id, game.id, "tab_switch", DeviceClass.DESKTOP, Severity.SOFT, detail
            )
        )

    assert [o.violationCount for o in outcomes] == [1, 2, 3, 3]
    assert [o.score for o in outcomes[:3]] == [70, 0, 0]
    assert [o.pointsDelta for o in outcomes[:3]] == [-50, -70, 0]
    assert outcomes[2].status == ParticipantStatus.ELIMINATED
    assert outcomes[3].error == StoreError.ALREADY_ELIMINATED

    await mongo_store.append_cheat_report(
        CheatReport(
            participantId=alice.id,
            gameId=game.id,
            reason="clipboard",
            deviceClass=DeviceClass.DESKTOP,
            severity=Severity.INFO,
            penalized=False,
        )
    )
    reports = await mongo_store.list_cheat_reports(game.id, alice.id)
    assert [(r.detail, r.penalized) for r in reports] == [
        ("first", True),
        ("second", True),
        ("third", True),
        ("", False),
    ]

    stored = await mongo_store.get_participant(alice.id)
    assert stored.violationCount == 3
    assert stored.status == ParticipantStatus.ELIMINATED


@requires_mongo
async def test_mongo_concurrent_violations_are_serialized(mongo_store):
    game, _, (alice,) = await seed_game(mongo_store, [single_choice()], score=1000)

    outcomes = await asyncio.gather(
        *[
            mongo_store.evaluate_violation(
                alice.id, game.id, "clipboard", DeviceClass.DESKTOP, Severity.SOFT
            )
            for _ in range(5)
        ]
    )

    accepted = [o for o in outcomes if o.error is None]
    assert sorted(o.violationCount for o in accepted) == [1, 2, 3]
    assert (await mongo_store.get_participant(alice.id)).score == 850
    assert len(await mongo_store.list_cheat_reports(game.id)) == 3


@requires_mongo
async def test_mongo_submit_once_per_question(mongo_store):
    game, (question,), (alice,) = await seed_game(mongo_store, [single_choice()])

    def response(points, answer):
        return Response(
            participantId=alice.id,
            questionId=question.id,
            gameId=game.id,
            answer=answer,
            correct=points > 0,
            elapsedSeconds=6.0,
            pointsAwarded=points,
            idempotencyKey=answer,
        )

    first, second = await asyncio.gather(
        mongo_store.submit_answer(response(80, "Paris")),
        mongo_store.submit_answer(response(0, "London")),
    )

    assert sorted([first.error, second.error], key=str) == sorted(
        [None, StoreError.ALREADY_SUBMITTED], key=str
    )
    stored = await mongo_store.get_participant(alice.id)
    assert len(stored.answers) == 1
    assert stored.score == stored.answers[0].pointsAwarded
