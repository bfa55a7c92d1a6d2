import asyncio
import logging
from typing import Optional

import aiohttp
from pydantic import ValidationError

from quiz_client.errors import ApiError, InvalidDisplayName
from quiz_client.models import (
    CreatedUser,
    CreateUser,
    CurrentQuestion,
    FallbackSubmission,
    GameStats,
    Health,
    Leaderboard,
    SubmissionOutcome,
)


log = logging.getLogger(__name__)


class GameApi:
    """HTTP client for the game endpoints mounted under ``/api``."""

    def __init__(self, server_url: str, timeout: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = server_url.rstrip('/') + '/api'
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config) -> 'GameApi':
        return cls(config.SERVER_URL, timeout=config.HTTP_TIMEOUT_SEC)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={'Content-Type': 'application/json'},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, model, *, params=None, json=None):
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, params=params, json=json) as response:
                if response.status >= 400:
                    body = await response.text()
                    log.error(f"[api-error] {method} {path} status={response.status} body={body[:200]}")
                    raise ApiError(f"{method} {path} failed with status {response.status}", status=response.status)
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error(f"[api-error] {method} {path} error={e!r}")
            raise ApiError(f"{method} {path} failed: {e}") from e
        try:
            return model.model_validate(data)
        except ValidationError as e:
            log.error(f"[api-error] {method} {path} unexpected payload: {e}")
            raise ApiError(f"{method} {path} returned an unexpected payload") from e

    async def get_current_question(self) -> CurrentQuestion:
        return await self._request('GET', '/game/question', CurrentQuestion)

    async def submit_answer(self, answer_value: float, display_name: str, user_id: Optional[str] = None) -> SubmissionOutcome:
        body = FallbackSubmission(answer_value=answer_value, display_name=display_name, user_id=user_id)
        return await self._request('POST', '/game/submit', SubmissionOutcome, json=body.to_dict())

    async def get_leaderboard(self, limit: int = 10) -> Leaderboard:
        return await self._request('GET', '/game/leaderboard', Leaderboard, params={'limit': str(limit)})

    async def create_user(self, display_name: str, email: Optional[str] = None) -> CreatedUser:
        try:
            body = CreateUser(display_name=display_name, email=email)
        except ValidationError:
            raise InvalidDisplayName('Username must be between 2 and 20 characters') from None
        return await self._request('POST', '/game/user', CreatedUser, json=body.to_dict())

    async def get_stats(self) -> GameStats:
        return await self._request('GET', '/game/stats', GameStats)

    async def health_check(self) -> Health:
        return await self._request('GET', '/health', Health)
