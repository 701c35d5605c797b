"""Pytest configuration. Ensures backend root is on sys.path for imports like api.*, services.*, etc."""
import sys
from pathlib import Path

import pytest

_backend: Path = Path(__file__).resolve().parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))


@pytest.fixture
def make_store():
    """Async factory for a fresh in-memory store: ``engine, session_factory = await make_store()``.

    Call it inside the same ``asyncio.run`` as the code under test and
    dispose the engine before the loop closes.
    """
    from models.database import init_db, make_engine, make_session_factory

    async def _make():
        engine = make_engine("sqlite+aiosqlite://")
        await init_db(engine)
        return engine, make_session_factory(engine)

    return _make
