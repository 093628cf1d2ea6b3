import asyncio

from conftest import seed_game, single_choice
from models import (
    DeviceClass,
    GameStatus,
    ParticipantStatus,
    Response,
    Severity,
    StoreError,
)


def response_for(game, question, participant, points=80, answer="Paris"):
    return Response(
        participantId=participant.id,
        questionId=question.id,
        gameId=game.id,
        answer=answer,
        correct=points > 0,
        elapsedSeconds=6.0,
        pointsAwarded=points,
        idempotencyKey="key",
    )


# ============================================================================
# VIOLATIONS
# ============================================================================


async def test_violation_sequence_and_score_floor(memory_store):
    game, _, (alice,) = await seed_game(memory_store, [single_choice()], score=120)

    outcomes = []
    for _ in range(4):
        outcomes.append(
            await memory_store.evaluate_violation(
                alice.id, game.id, "tab_switch", DeviceClass.DESKTOP, Severity.SOFT
            )
        )

    assert [o.violationCount for o in outcomes] == [1, 2, 3, 3]
    assert [o.score for o in outcomes[:3]] == [70, 0, 0]
    assert outcomes[1].pointsDelta == -70
    assert outcomes[2].status == ParticipantStatus.ELIMINATED
    assert outcomes[3].error == StoreError.ALREADY_ELIMINATED

    stored = await memory_store.get_participant(alice.id)
    assert stored.violationCount == 3
    assert stored.status == ParticipantStatus.ELIMINATED


async def test_concurrent_violations_are_serialized(memory_store):
    game, _, (alice,) = await seed_game(memory_store, [single_choice()], score=1000)

    outcomes = await asyncio.gather(
        *[
            memory_store.evaluate_violation(
                alice.id, game.id, "clipboard", DeviceClass.DESKTOP, Severity.SOFT
            )
            for _ in range(5)
        ]
    )

    accepted = [o for o in outcomes if o.error is None]
    assert sorted(o.violationCount for o in accepted) == [1, 2, 3]
    assert sum(1 for o in accepted if o.status == ParticipantStatus.ELIMINATED) == 1
    assert (await memory_store.get_participant(alice.id)).score == 850


async def test_violation_after_game_ended(memory_store):
    game, _, (alice,) = await seed_game(memory_store, [single_choice()], status=GameStatus.ENDED)
    outcome = await memory_store.evaluate_violation(
        alice.id, game.id, "tab_switch", DeviceClass.DESKTOP, Severity.SOFT
    )
    assert outcome.error == StoreError.GAME_ENDED
    assert outcome.violationCount == 0
    assert await memory_store.list_cheat_reports(game.id) == []


async def test_violation_records_its_report(memory_store):
    game, _, (alice,) = await seed_game(memory_store, [single_choice()], score=100)

    await memory_store.evaluate_violation(
        alice.id, game.id, "clipboard", DeviceClass.MOBILE, Severity.SERIOUS, "paste"
    )

    (report,) = await memory_store.list_cheat_reports(game.id, alice.id)
    assert report.reason == "clipboard"
    assert report.detail == "paste"
    assert report.deviceClass == DeviceClass.MOBILE
    assert report.severity == Severity.SERIOUS
    assert report.penalized is True


# ============================================================================
# SUBMISSIONS
# ============================================================================


async def test_submit_once_per_question(memory_store):
    game, (question,), (alice,) = await seed_game(memory_store, [single_choice()])

    first = await memory_store.submit_answer(response_for(game, question, alice, points=80))
    assert first.error is None
    assert first.score == 80

    second = await memory_store.submit_answer(
        response_for(game, question, alice, points=0, answer="London")
    )
    assert second.error == StoreError.ALREADY_SUBMITTED
    assert second.response.answer == "Paris"
    assert second.pointsAwarded == 80

    stored = await memory_store.get_participant(alice.id)
    assert stored.score == 80
    assert len(stored.answers) == 1


async def test_submit_refused_for_eliminated_and_ended(memory_store):
    game, (question,), (alice, bob) = await seed_game(
        memory_store, [single_choice()], names=("Alice", "Bob")
    )
    await memory_store.set_participant_status(alice.id, ParticipantStatus.ELIMINATED)
    outcome = await memory_store.submit_answer(response_for(game, question, alice))
    assert outcome.error == StoreError.ALREADY_ELIMINATED

    await memory_store.update_game(game.id, status=GameStatus.ENDED)
    outcome = await memory_store.submit_answer(response_for(game, question, bob))
    assert outcome.error == StoreError.GAME_ENDED


async def test_eliminated_status_is_final(memory_store):
    _, _, (alice,) = await seed_game(memory_store, [single_choice()])
    await memory_store.set_participant_status(alice.id, ParticipantStatus.ELIMINATED)
    updated = await memory_store.set_participant_status(alice.id, ParticipantStatus.ACTIVE)
    assert updated.status == ParticipantStatus.ELIMINATED


async def test_delete_game_cascades(memory_store):
    game, _, (alice,) = await seed_game(memory_store, [single_choice()])
    assert await memory_store.delete_game(game.id) is True
    assert await memory_store.get_participant(alice.id) is None
    assert await memory_store.list_questions(game.id) == []
    assert await memory_store.delete_game(game.id) is False
