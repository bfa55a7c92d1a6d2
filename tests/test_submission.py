import asyncio

import pytest

from conftest import joined_payload, question_payload
from quiz_client.errors import (
    ApiError,
    InvalidAnswer,
    NoActiveQuestion,
    RoundClosed,
    SubmissionFailed,
    SubmissionPending,
)
from quiz_client.models import CurrentQuestion, GamePhase, SubmissionOutcome
from quiz_client.services.games.submission import SubmissionController, SubmitPath, parse_answer
from quiz_client.services.games.synchronizer import GameSynchronizer


class FakeApi:
    def __init__(self, outcome=None, error=None, gate=None):
        self.outcome = outcome or SubmissionOutcome(is_correct=True, is_winner=False, time_taken_ms=800)
        self.error = error
        self.gate = gate
        self.calls = []

    async def submit_answer(self, answer_value, display_name, user_id=None):
        self.calls.append((answer_value, display_name, user_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.outcome


async def _active_round(session, server):
    await session.connect()
    await server.push('joined-successfully', joined_payload())
    await server.push('new-question', question_payload())


@pytest.mark.asyncio
async def test_winning_submission_over_stream(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session)
    await _active_round(session, server)

    path = await controller.submit('4')

    assert path is SubmitPath.STREAM
    (sent,) = server.sent('submit-answer')
    assert sent['answerValue'] == 4.0
    assert isinstance(sent['clientTimestamp'], int)
    assert synchronizer.submission_in_flight

    await server.push('submission-result', {'isCorrect': True, 'isWinner': True, 'timeTakenMs': 1234})
    await server.push('winner-announced', {
        'winner': {'userId': 'u1', 'displayName': 'alice', 'timeTakenMs': 1234},
        'correctAnswer': 4,
    })

    snapshot = synchronizer.snapshot()
    assert snapshot.outcome.is_winner
    assert snapshot.outcome.time_taken_ms == 1234
    assert snapshot.phase is GamePhase.ROUND_CONCLUDED
    assert snapshot.round_state.winner.display_name == 'alice'
    assert snapshot.submission_in_flight is False
    controller.close()


@pytest.mark.asyncio
async def test_submit_without_question(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session)
    await session.connect()
    await server.push('joined-successfully', joined_payload())

    with pytest.raises(NoActiveQuestion):
        await controller.submit(4)
    assert server.sent('submit-answer') == []


@pytest.mark.asyncio
async def test_submit_after_winner(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session)
    await _active_round(session, server)
    await server.push('winner-announced', {'winner': {'displayName': 'bob'}, 'correctAnswer': 4})

    with pytest.raises(RoundClosed):
        await controller.submit(4)
    assert server.sent('submit-answer') == []


@pytest.mark.asyncio
async def test_second_submit_while_pending(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session)
    await _active_round(session, server)

    await controller.submit(4)
    with pytest.raises(SubmissionPending):
        await controller.submit(5)
    # The pending check comes before answer validation
    with pytest.raises(SubmissionPending):
        await controller.submit('abc')

    assert len(server.sent('submit-answer')) == 1
    controller.close()


@pytest.mark.asyncio
@pytest.mark.parametrize('value', ['abc', '', 'nan', 'inf', True, None])
async def test_invalid_answer_rejected(synchronizer, session, server, value):
    controller = SubmissionController(synchronizer, session)
    await _active_round(session, server)

    with pytest.raises(InvalidAnswer):
        await controller.submit(value)
    assert server.sent('submit-answer') == []
    assert synchronizer.submission_in_flight is False


def test_parse_answer_accepts_numbers_and_text():
    assert parse_answer(' 12.5 ') == 12.5
    assert parse_answer(-3) == -3.0
    assert parse_answer('1e3') == 1000.0


@pytest.mark.asyncio
async def test_grace_period_clears_pending_flag(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session, grace_ms=20)
    await _active_round(session, server)

    await controller.submit(4)
    assert synchronizer.submission_in_flight
    await asyncio.sleep(0.05)
    assert synchronizer.submission_in_flight is False
    assert synchronizer.outcome is None

    # A late result still lands
    await server.push('submission-result', {'isCorrect': False, 'isWinner': False, 'timeTakenMs': 3000})
    assert synchronizer.outcome.is_correct is False
    controller.close()


@pytest.mark.asyncio
async def test_old_timer_does_not_clear_newer_submission(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session, grace_ms=200)
    await _active_round(session, server)

    await controller.submit(4)
    await server.push('submission-result', {'isCorrect': False, 'isWinner': False})
    await asyncio.sleep(0.1)
    await controller.submit(5)

    # The first timer fires here; the second submission is still pending
    await asyncio.sleep(0.15)
    assert synchronizer.submission_in_flight
    controller.close()


@pytest.mark.asyncio
async def test_new_question_clears_pending_flag(synchronizer, session, server):
    controller = SubmissionController(synchronizer, session)
    await _active_round(session, server)

    await controller.submit(4)
    await server.push('new-question', question_payload('q2', '5+5'))

    assert synchronizer.submission_in_flight is False
    assert synchronizer.outcome is None
    controller.close()


@pytest.mark.asyncio
async def test_fallback_when_stream_is_down(synchronizer, session, server):
    api = FakeApi()
    controller = SubmissionController(synchronizer, session, api)
    await _active_round(session, server)
    await session.disconnect()

    path = await controller.submit('7')

    assert path is SubmitPath.FALLBACK
    assert api.calls == [(7.0, 'alice', 'u1')]
    assert synchronizer.outcome.is_correct is True
    assert synchronizer.submission_in_flight is False
    controller.close()


@pytest.mark.asyncio
async def test_fallback_failure_clears_flag(synchronizer, session, server):
    api = FakeApi(error=ApiError('Game is not active', status=400))
    controller = SubmissionController(synchronizer, session, api)
    await _active_round(session, server)
    await session.disconnect()

    with pytest.raises(SubmissionFailed):
        await controller.submit(4)
    assert synchronizer.submission_in_flight is False
    assert synchronizer.outcome is None
    controller.close()


@pytest.mark.asyncio
async def test_fallback_without_identity(session, server, identity_cache):
    sync = GameSynchronizer(session, identity_cache)
    sync.apply_current_question(CurrentQuestion.model_validate(
        {'question': {'id': 'q1', 'problemText': '2+2', 'difficulty': 'easy'}, 'isActive': True}
    ))
    api = FakeApi()
    controller = SubmissionController(sync, session, api)

    with pytest.raises(SubmissionFailed):
        await controller.submit(4)
    assert api.calls == []
    assert sync.submission_in_flight is False
    controller.close()


@pytest.mark.asyncio
async def test_fallback_result_for_old_question_is_discarded(synchronizer, session, server):
    gate = asyncio.Event()
    api = FakeApi(gate=gate)
    controller = SubmissionController(synchronizer, session, api)
    await _active_round(session, server)
    await session.disconnect()

    pending = asyncio.ensure_future(controller.submit(4))
    await asyncio.sleep(0.01)
    synchronizer.apply_current_question(CurrentQuestion.model_validate(
        {'question': {'id': 'q2', 'problemText': '6/2', 'difficulty': 'medium'}, 'isActive': True}
    ))
    gate.set()

    assert await pending is SubmitPath.FALLBACK
    assert synchronizer.question.id == 'q2'
    assert synchronizer.outcome is None
    controller.close()


@pytest.mark.asyncio
async def test_close_discards_outstanding_fallback_result(synchronizer, session, server):
    gate = asyncio.Event()
    api = FakeApi(gate=gate)
    controller = SubmissionController(synchronizer, session, api)
    await _active_round(session, server)
    await session.disconnect()

    pending = asyncio.ensure_future(controller.submit(4))
    await asyncio.sleep(0.01)
    controller.close()
    gate.set()
    await pending

    assert synchronizer.outcome is None


@pytest.mark.asyncio
async def test_send_failure_falls_back_to_http(synchronizer, session, server):
    api = FakeApi()
    controller = SubmissionController(synchronizer, session, api)
    await _active_round(session, server)
    server.reject_emits = True

    path = await controller.submit(9)

    assert session.is_connected
    assert path is SubmitPath.FALLBACK
    assert server.sent('submit-answer') == []
    assert api.calls == [(9.0, 'alice', 'u1')]
    assert synchronizer.outcome.is_correct is True
    assert synchronizer.submission_in_flight is False
    controller.close()
