"""
abconfig test configuration.

All tests run with in-memory backends by default - no Redis or database
server required. Override by setting environment variables before running
pytest.
"""
from __future__ import annotations

import os

import pytest

# ── Force in-memory backends for all tests ────────────────────────────────
# These must be set before any abconfig modules are imported.

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ABCONFIG_STORE_BACKEND", "memory")
os.environ.setdefault("ABCONFIG_AUDIT_BACKEND", "log")
os.environ.setdefault("ABCONFIG_ERROR_BACKEND", "none")
os.environ.setdefault("ABCONFIG_LOG_LEVEL", "WARNING")
os.environ.setdefault("ABCONFIG_DATABASE_URL", "sqlite:///:memory:")
os.environ.pop("REDIS_URL", None)


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset all cached singletons between tests.
    This ensures each test gets a fresh store, cache and engine.
    """
    yield

    from abconfig.tier0_core import data
    from abconfig.tier0_core.config import _reset_settings
    from abconfig.tier2_reliability.cache import _reset_cache
    from abconfig.tier3_platform.evaluators import _reset_evaluator
    from abconfig.tier3_platform.store import _reset_store

    data._reset()
    _reset_cache()
    _reset_store()
    _reset_evaluator()
    _reset_settings()


@pytest.fixture
def memory_store():
    from abconfig.tier3_platform.store import MemoryRecordStore
    return MemoryRecordStore()


@pytest.fixture
def memory_cache():
    from abconfig.tier2_reliability.cache import _MemoryCache
    return _MemoryCache()


@pytest.fixture
def manager(memory_store, memory_cache):
    from abconfig.tier3_platform.experiments import ExperimentManager
    return ExperimentManager(store=memory_store, cache=memory_cache)


@pytest.fixture
def make_experiment(manager):
    """
    Create an experiment with its condition sets in one call.

    conditions: list of (condset, weight, commands) or
                (condset, weight, commands, {"ip": ..., "users": [...]})
    """
    def _make(
        shortname: str,
        scope: str = "request",
        conditions: list | None = None,
        enabled: bool = True,
        admin_enabled: bool = False,
        numeric_offset: int = 0,
    ) -> int:
        eid = manager.add_experiment(shortname.title(), shortname, scope)
        assert eid
        assert manager.update_experiment(
            shortname, shortname.title(), shortname, scope, enabled, admin_enabled, numeric_offset
        )
        for entry in conditions or []:
            condset, weight, commands = entry[:3]
            extra = entry[3] if len(entry) > 3 else {}
            assert manager.add_condition(
                eid, condset, extra.get("ip", ""), commands, weight, extra.get("users", [])
            )
        return eid

    return _make


@pytest.fixture
def make_context():
    """Build a RequestContext; error_log lines are collected in ctx.metadata['error_log']."""
    from abconfig.tier1_runtime.context import RequestContext
    from abconfig.tier1_runtime.host import ConfigStore, DictSession, Requester

    def _make(
        requester: Requester | None = None,
        session: DictSession | None = None,
        config: ConfigStore | None = None,
    ) -> RequestContext:
        lines: list[str] = []
        ctx = RequestContext(
            requester=requester or Requester(remote_address="203.0.113.7", user_agent="Mozilla/5.0"),
            session=session if session is not None else DictSession(),
            config=config or ConfigStore(),
            error_log=lines.append,
        )
        ctx.metadata["error_log"] = lines
        return ctx

    return _make


@pytest.fixture
def evaluator_for(manager):
    """ExperimentEvaluator over the test manager with a fixed draw."""
    from abconfig.tier3_platform.evaluators import ExperimentEvaluator

    def _make(draw: int | None = None, environ: dict | None = None):
        return ExperimentEvaluator(
            manager=manager,
            draw=(lambda: draw) if draw is not None else (lambda: 1),
            environ=environ or {},
        )

    return _make
