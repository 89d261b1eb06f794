import asyncio
import os

# settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FLUSH_INTERVAL_MS", "20")

import pytest
from sqlalchemy.orm import sessionmaker

from app.agent.chat_manager import ChatSessionManager, ChatStore
from app.agent.connection import ConnectionState
from app.core.errors import InferenceError
from app.core.metrics import RelayMetrics
from app.core.security import TokenIdentity
from app.db import models  # noqa: F401
from app.db.session import Base, build_engine


class FakeConnection:
    """Records every emitted event instead of writing to a socket."""

    def __init__(self, user=None, connection_id="conn-1"):
        self.id = connection_id
        self.user = user
        self.state = ConnectionState.OPEN
        self.sent = []
        self.closed_with = None

    async def emit(self, event, data=None):
        if self.state is ConnectionState.CLOSED:
            return False
        self.sent.append((event, data))
        return True

    async def close(self, code=1000, reason=""):
        self.state = ConnectionState.CLOSED
        self.closed_with = (code, reason)

    def events(self):
        return [event for event, _ in self.sent]

    def payloads(self, event):
        return [data for name, data in self.sent if name == event]


class FakeInference:
    """Yields a fixed list of fragments, optionally failing after them."""

    def __init__(self, fragments=(), fail_with=None, model_name="fake-model"):
        self.fragments = list(fragments)
        self.fail_with = fail_with
        self.model_name = model_name
        self.prompts = []

    async def stream(self, prompt):
        self.prompts.append(prompt)
        for fragment in self.fragments:
            yield fragment
        if self.fail_with is not None:
            raise self.fail_with


class GatedInference:
    """Yields one fragment, then waits until released."""

    def __init__(self, first="partial", rest=("done",), model_name="gated-model"):
        self.first = first
        self.rest = list(rest)
        self.model_name = model_name
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def stream(self, prompt):
        yield self.first
        self.started.set()
        await self.release.wait()
        for fragment in self.rest:
            yield fragment


class CountingStore(ChatStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.calls = []

    async def _run(self, operation, work):
        self.calls.append(operation)
        return await super()._run(operation, work)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return CountingStore(session_factory)


@pytest.fixture
def metrics():
    return RelayMetrics()


@pytest.fixture
def chats(store, metrics):
    return ChatSessionManager(store, context_limit=20, metrics=metrics)


@pytest.fixture
def identity():
    return TokenIdentity(user_id="user-1", email="alice@relay.dev")


@pytest.fixture
def connection(identity):
    return FakeConnection(user=identity)


@pytest.fixture
def failing_inference():
    return FakeInference(["Hel", "lo"], fail_with=InferenceError("connection reset by engine"))


@pytest.fixture
def fake_model():
    return FakeInference(["Hi", " there"])


@pytest.fixture
def client(monkeypatch, fake_model):
    from fastapi.testclient import TestClient

    from app.main import app

    monkeypatch.setattr("app.core.services.build_inference_adapter", lambda settings: fake_model)
    with TestClient(app) as test_client:
        yield test_client
