"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import timedelta

# Settings are read at import time
TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("WORKER_POOL_ENABLED", "false")
os.environ.setdefault("IMAGE_PROVIDER", "mock")
os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("RESULT_STORAGE_DIR", tempfile.mkdtemp(prefix="workflow-results-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from workflow_engine.main import app
from workflow_engine.database import Base, get_db
from workflow_engine.services.batch_coordinator import BatchCoordinator, get_batch_coordinator
from workflow_engine.services.config_service import ConfigService, EngineConfig
from workflow_engine.services.credential_vault import CredentialVault
from workflow_engine.services.image_generation_service import GeneratedImage
from workflow_engine.services.job_queue import InMemoryJobQueue, SqlJobQueue
from workflow_engine.services.mock_image_generation_service import PLACEHOLDER_PNG
from workflow_engine.services.progress_tracker import ProgressTracker
from workflow_engine.services.result_store import ResultStore
from workflow_engine.services.worker_pool import WorkerPool
from workflow_engine.utils.timezone import utcnow


# Create test database
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeClock:
    """Controllable clock for lease expiry tests."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class MemoryResultBackend:
    """Result backend that keeps bytes in a dict. Can fail the first N writes."""

    def __init__(self, fail_writes: int = 0):
        self.files = {}
        self.fail_writes = fail_writes
        self.write_attempts = 0

    def write(self, storage_path, data, content_type):
        self.write_attempts += 1
        if self.write_attempts <= self.fail_writes:
            raise IOError("disk unavailable")
        self.files[storage_path] = data

    def read(self, storage_path):
        return self.files[storage_path]

    def delete(self, storage_path):
        self.files.pop(storage_path, None)


class FakeImageService:
    """Scripted stand-in for the image API.

    `script` maps a prompt to a list of exceptions raised on successive
    calls; once the list is used up the call succeeds.
    """

    def __init__(self, script=None):
        self.script = {prompt: list(outcomes) for prompt, outcomes in (script or {}).items()}
        self.calls = []

    async def generate_image(self, api_key, prompt, model=None, aspect_ratio=None,
                             resolution=None, reference_assets=None, timeout=60.0):
        self.calls.append({
            "api_key": bytes(api_key).decode() if isinstance(api_key, (bytes, bytearray)) else api_key,
            "prompt": prompt,
            "model": model,
            "reference_assets": reference_assets,
        })
        pending = self.script.get(prompt)
        if pending:
            raise pending.pop(0)
        return GeneratedImage(data=PLACEHOLDER_PNG, mime_type="image/png")

    def calls_for(self, prompt):
        return [c for c in self.calls if c["prompt"] == prompt]


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    ConfigService.invalidate_cache()
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db):
    """Session factory bound to the per-test database."""
    return TestingSessionLocal


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return CredentialVault(key=TEST_ENCRYPTION_KEY)


@pytest.fixture
def result_backend():
    return MemoryResultBackend()


@pytest.fixture
def engine_config():
    """Small pool, no backoff sleeps."""
    return EngineConfig(
        worker_pool_size=2,
        max_attempts=3,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        lease_duration_seconds=180,
        api_call_timeout_seconds=5,
        storage_max_attempts=3,
        max_batch_size=10,
    )


@pytest.fixture(params=["memory", "sql"])
def job_queue(request, engine_config, session_factory):
    """Every coordinator and worker pool test runs against both queue implementations."""
    if request.param == "sql":
        return SqlJobQueue(session_factory, max_attempts=engine_config.max_attempts)
    return InMemoryJobQueue(max_attempts=engine_config.max_attempts)


@pytest.fixture
def tracker(session_factory, vault):
    return ProgressTracker(session_factory, vault)


@pytest.fixture
def result_store(session_factory, result_backend):
    return ResultStore(session_factory, result_backend)


@pytest.fixture
def coordinator(job_queue, tracker, result_store, vault, engine_config, session_factory):
    return BatchCoordinator(
        job_queue=job_queue,
        progress_tracker=tracker,
        result_store=result_store,
        credential_vault=vault,
        engine_config=engine_config,
        session_factory=session_factory
    )


@pytest.fixture
def make_pool(coordinator):
    """Build a worker pool over the test coordinator."""
    def factory(image_service=None, **kwargs):
        return WorkerPool(coordinator, image_service or FakeImageService(), **kwargs)
    return factory


@pytest.fixture
def sealed_key(vault):
    """A sealed API key as the HTTP layer would hand it to the coordinator."""
    return vault.encrypt("test-gemini-api-key")


@pytest.fixture(scope="function")
def client(db, coordinator):
    """Create a test client with overridden database and coordinator dependencies."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_batch_coordinator] = lambda: coordinator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_prompts():
    return [
        "a lighthouse at dawn",
        "a red bicycle in the rain",
        "a bowl of ramen, studio lighting",
        "a fox sleeping under snow",
        "an astronaut reading a newspaper",
    ]
