from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable

import pytest

from fanout.core.config import get_settings
from fanout.services.notifications.engine import BroadcastEngine
from fanout.tests.utils.engine import build_test_engine


EngineFactory = Callable[..., Awaitable[BroadcastEngine]]


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Settings are cached per process; monkeypatched env must not leak between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine_factory() -> AsyncIterator[EngineFactory]:
    engines: list[BroadcastEngine] = []

    async def _factory(**kwargs: Any) -> BroadcastEngine:
        engine = build_test_engine(**kwargs)
        await engine.start(recover=False)
        engines.append(engine)
        return engine

    yield _factory
    for engine in engines:
        await engine.stop()
