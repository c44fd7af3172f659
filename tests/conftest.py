import datetime
import os
import sys

import pytest
import pytest_asyncio

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from action_service.config import get_settings
from action_service.storage import create_engine_and_sessionmaker, init_models, utcnow


class FakeClock:
    """Naive-UTC clock that only moves when told to.

    Starts a minute ahead of the wall clock so rows created with the default
    ``run_at`` are already due.
    """

    def __init__(self, start=None):
        self.now = start or (utcnow() + datetime.timedelta(minutes=1))

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def settings():
    s = get_settings()
    snapshot = dict(vars(s))
    s.RETRY_BASE_DELAY_SECONDS = 2
    s.DEFAULT_MAX_ATTEMPTS = 5
    s.WORKER_CANDIDATE_LIMIT = 10
    s.GATE_API_KEY = "test-gate-key"
    s.GATE_ALLOW_THRESHOLD = 0.85
    s.GATE_DENY_THRESHOLD = 0.5
    s.GATE_TIMESTAMP_WINDOW_SECONDS = 300
    s.NONCE_MAX_ENTRIES = 10000
    s.REDIS_NONCE_ENABLED = False
    s.WORKER_SECRET = ""
    s.ADMIN_TOKEN = ""
    s.TICKER_ENABLED = False
    yield s
    s.__dict__.clear()
    s.__dict__.update(snapshot)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    engine, sessionmaker = await create_engine_and_sessionmaker("sqlite+aiosqlite:///%s" % (tmp_path / "actions.db"))
    await init_models(engine)
    yield sessionmaker
    await engine.dispose()
