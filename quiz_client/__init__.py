import logging

from quiz_client.api.games import GameApi
from quiz_client.config import Config
from quiz_client.errors import ApiError, ConnectFailure
from quiz_client.identity import IdentityCache
from quiz_client.latency import LatencyProbe
from quiz_client.models import CurrentQuestion
from quiz_client.services.games.submission import SubmissionController
from quiz_client.services.games.synchronizer import GameSynchronizer
from quiz_client.transport import TransportSession


log = logging.getLogger(__name__)


class QuizClient:
    """One explicitly owned session and the services built on top of it."""

    def __init__(self, config, session, probe, synchronizer, controller, api, identity_cache):
        self.config = config
        self.session = session
        self.probe = probe
        self.synchronizer = synchronizer
        self.controller = controller
        self.api = api
        self.identity_cache = identity_cache

    async def start(self) -> int:
        """Restore identity, wire events, connect and measure latency.

        Returns the measured latency in ms. ``ConnectFailure`` propagates
        after the current question has been fetched over HTTP, so the client
        stays usable through the fallback path; ``start()`` may be retried.
        """
        self.synchronizer.restore_identity()
        self.synchronizer.attach()
        try:
            await self.session.connect()
        except ConnectFailure:
            try:
                await self.refresh_question()
            except ApiError as e:
                log.warning(f"[start] fallback question fetch failed: {e}")
            raise
        latency = await self.probe.measure_round_trip()
        log.info(f"[start] connected to {self.session.url} latency={latency}ms")
        return latency

    async def refresh_question(self) -> CurrentQuestion:
        """Pull the current question over HTTP and apply it locally."""
        current = await self.api.get_current_question()
        self.synchronizer.apply_current_question(current)
        return current

    async def close(self) -> None:
        self.controller.close()
        self.synchronizer.detach()
        await self.session.disconnect()
        await self.api.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # Intents, forwarded for callers that only hold the client
    async def join(self, display_name: str) -> None:
        await self.synchronizer.join(display_name)

    async def submit(self, answer_value):
        return await self.controller.submit(answer_value)


def create_client(config_class=Config, *, client_factory=None, api_session=None) -> QuizClient:
    config = config_class()

    session = TransportSession.from_config(config, client_factory=client_factory)
    identity_cache = IdentityCache.from_config(config)
    api = GameApi(config.SERVER_URL, timeout=config.HTTP_TIMEOUT_SEC, session=api_session)
    synchronizer = GameSynchronizer(
        session,
        identity_cache,
        rejoin_on_reconnect=config.REJOIN_ON_RECONNECT,
    )
    controller = SubmissionController(synchronizer, session, api, grace_ms=config.SUBMIT_GRACE_MS)

    return QuizClient(
        config=config,
        session=session,
        probe=LatencyProbe(session),
        synchronizer=synchronizer,
        controller=controller,
        api=api,
        identity_cache=identity_cache,
    )
