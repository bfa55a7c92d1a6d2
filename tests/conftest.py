import asyncio
import os
import sys

import pytest
import pytest_asyncio

# Ensure the project root (containing the `quiz_client` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from socketio.exceptions import BadNamespaceError
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from quiz_client.config import Config
from quiz_client.identity import IdentityCache
from quiz_client.services.games.synchronizer import GameSynchronizer
from quiz_client.transport import TransportSession


FAKE_SERVER_URL = 'http://quiz.test'


class FakeSocketClient:
    """Scripted stand-in for ``socketio.AsyncClient``."""

    def __init__(self, server):
        self.server = server
        self.handlers = {}
        self.connected = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        self.server.connect_calls += 1
        if self.server.connect_gate is not None:
            await self.server.connect_gate.wait()
        if self.server.failures_remaining > 0:
            self.server.failures_remaining -= 1
            raise SocketIOConnectionError('Connection refused by the server')
        self.connected = True

    async def disconnect(self):
        was_connected, self.connected = self.connected, False
        if was_connected and 'disconnect' in self.handlers:
            await self.handlers['disconnect']('client disconnect')

    async def emit(self, event, data=None, callback=None):
        if not self.connected or self.server.reject_emits:
            raise BadNamespaceError('/ is not a connected namespace.')
        self.server.emitted.append((event, data))
        if callback is not None:
            if self.server.auto_ack:
                asyncio.get_running_loop().call_later(0.005, callback)
            else:
                self.server.pending_acks.append(callback)


class FakeServer:
    def __init__(self):
        self.clients = []
        self.emitted = []
        self.pending_acks = []
        self.failures_remaining = 0
        self.connect_calls = 0
        self.connect_gate = None
        self.auto_ack = True
        # Emits fail as if the namespace went away while still marked connected
        self.reject_emits = False

    def factory(self):
        client = FakeSocketClient(self)
        self.clients.append(client)
        return client

    @property
    def client(self):
        return self.clients[-1]

    async def push(self, event, payload=None, client=None):
        client = client or self.client
        await client.handlers['*'](event, payload)

    async def drop(self):
        """Simulate the server side closing the connection."""
        client = self.client
        client.connected = False
        await client.handlers['disconnect']('transport close')

    def sent(self, event):
        return [data for name, data in self.emitted if name == event]


async def wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError('condition not met before timeout')
        await asyncio.sleep(0.005)


def question_payload(qid='q1', problem='2+2', difficulty='easy', is_active=True, participants=3, winner=None):
    return {
        'question': {'id': qid, 'problemText': problem, 'difficulty': difficulty, 'createdAt': '2024-01-01T00:00:00Z'},
        'roundState': {'isActive': is_active, 'participantCount': participants, 'winner': winner},
    }


def joined_payload(user_id='u1', name='alice', participants=3):
    return {'userId': user_id, 'displayName': name, 'participantCount': participants}


@pytest.fixture()
def server():
    return FakeServer()


@pytest_asyncio.fixture()
async def session(server):
    transport = TransportSession(
        FAKE_SERVER_URL,
        max_attempts=3,
        retry_delay=0,
        client_factory=server.factory,
    )
    yield transport
    await transport.disconnect()


@pytest.fixture()
def identity_cache(tmp_path):
    return IdentityCache(tmp_path / 'storage.json')


@pytest_asyncio.fixture()
async def synchronizer(session, identity_cache):
    sync = GameSynchronizer(session, identity_cache)
    sync.attach()
    yield sync
    sync.detach()


@pytest.fixture()
def test_config(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SERVER_URL = FAKE_SERVER_URL
        MAX_CONNECT_ATTEMPTS = 3
        RECONNECT_DELAY_SEC = 0
        SUBMIT_GRACE_MS = 50
        HTTP_TIMEOUT_SEC = 2
        IDENTITY_CACHE_PATH = str(tmp_path / 'storage.json')

    return TestConfig
