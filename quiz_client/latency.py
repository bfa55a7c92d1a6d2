import logging
import time

from quiz_client.errors import NotConnected
from quiz_client.models import Ping
from quiz_client.transport import TransportSession


log = logging.getLogger(__name__)


class LatencyProbe:
    def __init__(self, session: TransportSession):
        self.session = session

    async def measure_round_trip(self) -> int:
        """Round-trip time of one ``ping`` in milliseconds, or -1 when offline."""
        if not self.session.is_connected:
            return -1
        payload = Ping(client_timestamp=int(time.time() * 1000)).to_dict()
        start = time.monotonic()
        try:
            await self.session.emit_with_ack('ping', payload)
        except NotConnected:
            return -1
        latency = int(round((time.monotonic() - start) * 1000))
        self.session.latency_ms = latency
        log.debug(f"[latency] {latency}ms")
        return latency
