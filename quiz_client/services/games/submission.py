import asyncio
import logging
import math
import time
from enum import Enum
from typing import Dict, Optional

from quiz_client.api.games import GameApi
from quiz_client.errors import (
    ApiError,
    InvalidAnswer,
    NoActiveQuestion,
    NotConnected,
    RoundClosed,
    SubmissionFailed,
    SubmissionPending,
)
from quiz_client.models import SubmitAnswer
from quiz_client.services.games.synchronizer import GameSynchronizer
from quiz_client.transport import TransportSession


log = logging.getLogger(__name__)


class SubmitPath(str, Enum):
    STREAM = 'stream'
    FALLBACK = 'fallback'


def parse_answer(value) -> float:
    """Accept a number or numeric text; reject anything that is not finite."""
    if isinstance(value, bool):
        raise InvalidAnswer('Please enter a valid number')
    try:
        number = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (ValueError, OverflowError):
        raise InvalidAnswer('Please enter a valid number') from None
    if not math.isfinite(number):
        raise InvalidAnswer('Please enter a valid number')
    return number


class SubmissionController:
    """Allows one outstanding answer at a time.

    The in-flight flag is force-cleared ``grace_ms`` after every submit even
    if no result came back. That keeps the submit control usable when a
    result is lost; it does not cancel the request, and a late result can
    still replace the outcome afterwards.
    """

    def __init__(
        self,
        synchronizer: GameSynchronizer,
        session: TransportSession,
        api: Optional[GameApi] = None,
        *,
        grace_ms: int = 1000,
    ):
        self.synchronizer = synchronizer
        self.session = session
        self.api = api
        self.grace_ms = grace_ms
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        # Bumped by close(); fallback results from before a close are discarded
        self._generation = 0

    async def submit(self, answer_value) -> SubmitPath:
        sync = self.synchronizer
        if sync.question is None:
            raise NoActiveQuestion('No active question available')
        if sync.round_state is None or not sync.round_state.is_active:
            raise RoundClosed('Game is not active')
        if sync.submission_in_flight:
            raise SubmissionPending('Please wait, submitting...')
        value = parse_answer(answer_value)

        generation = self._generation
        token = sync.begin_submission()
        round_token = sync.round_token
        self._schedule_grace_clear(token)

        if self.session.is_connected:
            payload = SubmitAnswer(answer_value=value, client_timestamp=int(time.time() * 1000))
            try:
                await self.session.publish('submit-answer', payload.to_dict())
                log.info(f"[submit] path=stream answer={value}")
                return SubmitPath.STREAM
            except NotConnected:
                log.warning('[submit] stream unavailable at send time, using fallback')

        await self._submit_via_fallback(value, token, round_token, generation)
        return SubmitPath.FALLBACK

    async def _submit_via_fallback(self, value: float, token: int, round_token: int, generation: int) -> None:
        sync = self.synchronizer
        identity = sync.identity
        if self.api is None or identity is None:
            sync.clear_submission(token)
            reason = 'no fallback channel configured' if self.api is None else 'join the game before submitting'
            raise SubmissionFailed(f"Failed to submit answer: {reason}")
        try:
            outcome = await self.api.submit_answer(value, identity.display_name, identity.id)
        except ApiError as e:
            sync.clear_submission(token)
            raise SubmissionFailed(f"Failed to submit answer: {e}") from e
        if generation != self._generation:
            log.info('[submit] controller closed, discarding fallback result')
            return
        sync.apply_submission_outcome(outcome, round_token, token)
        log.info(f"[submit] path=fallback correct={outcome.is_correct} winner={outcome.is_winner}")

    def _schedule_grace_clear(self, token: int) -> None:
        loop = asyncio.get_running_loop()
        self._timers[token] = loop.call_later(self.grace_ms / 1000.0, self._grace_expired, token)

    def _grace_expired(self, token: int) -> None:
        self._timers.pop(token, None)
        if self.synchronizer.clear_submission(token):
            log.info(f"[grace-clear] no result after {self.grace_ms}ms, re-enabling submit")

    def close(self) -> None:
        self._generation += 1
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
