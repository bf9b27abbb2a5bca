import os
import sys
import json
import tempfile

# Keep the module-level app in main.py away from the real data directory
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "conversations.db"))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

from database import Base, make_engine
from models import db_models  # registers the tables
from services import history
from services.events import BroadcastHub
from services.generator import GenerationClient
from services.orchestrator import GenerationOrchestrator


def ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


class FakeGenerator:
    """httpx handler standing in for the text-generation service."""

    def __init__(self, chunks=(), status_code=200, models=(), error=None, gate=None):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.models = list(models)
        self.error = error
        self.gate = gate
        self.requests = []

    async def _body(self):
        for i, chunk in enumerate(self.chunks):
            if self.gate is not None and i > 0:
                await self.gate.wait()
            yield chunk
        if self.error is not None:
            raise self.error

    async def _broken_error_body(self):
        yield b"model "
        raise self.error

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": n} for n in self.models]})
        self.requests.append(json.loads(request.content))
        if self.status_code != 200:
            if self.error is not None:
                return httpx.Response(self.status_code, content=self._broken_error_body())
            return httpx.Response(self.status_code, content=b"model not found")
        return httpx.Response(200, content=self._body())


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(str(tmp_path / "test.db"))
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def hub():
    return BroadcastHub(backlog=10)


@pytest.fixture
def conversation(db_session):
    """A fresh conversation with model 'm1' selected."""
    history.upsert_models(db_session, ["m1"])
    return history.create_conversation(db_session)


@pytest.fixture
def make_generator(hub):
    def factory(fake: FakeGenerator) -> GenerationClient:
        return GenerationClient(
            hub,
            base_url="http://generator.test",
            transport=httpx.MockTransport(fake),
            idle_timeout=5.0,
        )

    return factory


@pytest.fixture
def make_orchestrator(session_factory, hub, make_generator):
    def factory(fake: FakeGenerator) -> GenerationOrchestrator:
        return GenerationOrchestrator(session_factory, hub, make_generator(fake), settle_interval=0.05)

    return factory


@pytest_asyncio.fixture
async def api(engine, hub):
    """App wired to a temporary database and a fake generator; yields (client, fake, app)."""
    from httpx import AsyncClient, ASGITransport
    from main import create_app

    fake = FakeGenerator(models=["m1", "m2"])
    generator = GenerationClient(
        hub, base_url="http://generator.test", transport=httpx.MockTransport(fake), idle_timeout=5.0
    )
    app = create_app(engine=engine, generator=generator)
    app.state.orchestrator.settle_interval = 0.05
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, fake, app
    await app.state.orchestrator.aclose()
    await generator.aclose()
