"""Tests for record stores, the experiment manager and the scope evaluators."""
from __future__ import annotations

import pytest

from abconfig.tier0_core.errors import ConflictError, NotFoundError, ValidationError
from abconfig.tier1_runtime.host import ConfigStore, DictSession, Requester
from abconfig.tier3_platform.evaluators import ExperimentEvaluator, get_evaluator
from abconfig.tier3_platform.models import Scope

ADDR = "203.0.113.7"
UA = "Mozilla/5.0"


# ── record stores ──────────────────────────────────────────────────────────

@pytest.fixture(params=["memory", "sql"])
def record_store(request):
    from abconfig.tier3_platform.store import MemoryRecordStore, SqlRecordStore
    return MemoryRecordStore() if request.param == "memory" else SqlRecordStore()


class TestRecordStore:
    def _experiment(self, store, shortname="exp1", scope="request"):
        return store.insert_experiment("Exp", shortname, scope, True, False, 10)

    def test_insert_and_find(self, record_store):
        eid = self._experiment(record_store)
        found = record_store.find_experiment("exp1")
        assert found.id == eid
        assert found.scope == "request"
        assert found.numeric_offset == 10
        assert record_store.get_experiment(eid).shortname == "exp1"
        assert record_store.find_experiment("missing") is None

    def test_duplicate_shortname(self, record_store):
        self._experiment(record_store)
        with pytest.raises(ConflictError):
            self._experiment(record_store)

    def test_rename_onto_existing_shortname(self, record_store):
        self._experiment(record_store, "exp1")
        eid2 = self._experiment(record_store, "exp2")
        with pytest.raises(ConflictError):
            record_store.update_experiment(eid2, "Exp", "exp1", "request", True, False, 0)

    def test_update_missing_experiment(self, record_store):
        with pytest.raises(NotFoundError):
            record_store.update_experiment(999, "Exp", "exp9", "request", True, False, 0)

    def test_condition_round_trip_keeps_commands(self, record_store):
        eid = self._experiment(record_store)
        record_store.insert_condition(
            eid, "A", "10.0.0.0/8", ["CFG,motd,hello, world", "js_footer,f(1,2)"], 40, [3, 4],
        )
        condition = record_store.find_condition(eid, "A")
        assert condition.commands == ["CFG,motd,hello, world", "js_footer,f(1,2)"]
        assert condition.weight == 40
        assert condition.user_ids == [3, 4]
        assert condition.ip_allow_list == "10.0.0.0/8"

    def test_duplicate_condset(self, record_store):
        eid = self._experiment(record_store)
        record_store.insert_condition(eid, "A", "", [], 50, [])
        with pytest.raises(ConflictError):
            record_store.insert_condition(eid, "A", "", [], 20, [])

    def test_same_condset_in_two_experiments(self, record_store):
        eid1 = self._experiment(record_store, "exp1")
        eid2 = self._experiment(record_store, "exp2")
        record_store.insert_condition(eid1, "A", "", [], 50, [])
        record_store.insert_condition(eid2, "A", "", [], 50, [])
        assert record_store.find_condition(eid2, "A").experiment_id == eid2

    def test_conditions_in_insertion_order(self, record_store):
        eid = self._experiment(record_store)
        for condset in ("C", "A", "B"):
            record_store.insert_condition(eid, condset, "", [], 10, [])
        assert [c.condset for c in record_store.list_conditions(eid)] == ["C", "A", "B"]
        assert [c.condset for c in record_store.load_all()["exp1"].conditions] == ["C", "A", "B"]

    def test_delete_experiment_cascades(self, record_store):
        eid = self._experiment(record_store)
        record_store.insert_condition(eid, "A", "", [], 50, [])
        record_store.delete_experiment(eid)
        assert record_store.get_experiment(eid) is None
        assert record_store.list_conditions(eid) == []
        assert record_store.load_all() == {}

    def test_delete_conditions(self, record_store):
        eid = self._experiment(record_store)
        record_store.insert_condition(eid, "A", "", [], 50, [])
        record_store.insert_condition(eid, "B", "", [], 50, [])
        record_store.delete_condition(eid, "A")
        assert [c.condset for c in record_store.list_conditions(eid)] == ["B"]
        record_store.delete_conditions(eid)
        assert record_store.list_conditions(eid) == []

    def test_factory_rejects_unknown_backend(self, monkeypatch):
        from abconfig.tier0_core.config import _reset_settings
        from abconfig.tier0_core.errors import ConfigurationError
        from abconfig.tier3_platform.store import get_store

        monkeypatch.setenv("ABCONFIG_STORE_BACKEND", "mongo")
        _reset_settings()
        with pytest.raises(ConfigurationError):
            get_store()


# ── experiment manager ─────────────────────────────────────────────────────

class TestExperimentManager:
    def _cached(self, manager):
        return manager.cache.get(manager.settings.cache_key)

    def test_add_experiment_starts_disabled(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "session")
        experiment = manager.get_experiment(eid)
        assert experiment.enabled is False
        assert experiment.admin_enabled is False
        assert 0 <= experiment.numeric_offset <= 99

    def test_add_duplicate_returns_false(self, manager):
        assert manager.add_experiment("Theme", "theme1", "request")
        assert manager.add_experiment("Theme again", "theme1", "session") is False

    def test_add_invalid_raises(self, manager):
        with pytest.raises(ValidationError):
            manager.add_experiment("Theme", "theme-1", "request")

    def test_update_experiment(self, manager):
        manager.add_experiment("Theme", "theme1", "request")
        assert manager.update_experiment("theme1", "Theme 2", "theme2", "device", True, True, 42)
        experiment = manager.store.find_experiment("theme2")
        assert experiment.enabled and experiment.admin_enabled
        assert experiment.numeric_offset == 42
        assert not manager.experiment_exists("theme1")

    def test_update_failures_return_false(self, manager):
        manager.add_experiment("One", "one", "request")
        manager.add_experiment("Two", "two", "request")
        assert manager.update_experiment("missing", "X", "x", "request", True, False, 0) is False
        assert manager.update_experiment("two", "Two", "one", "request", True, False, 0) is False

    def test_delete_experiment(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.add_condition(eid, "A", "", "CFG,theme,classic", 50)
        assert manager.delete_experiment("theme1")
        assert manager.get_conditions_for_experiment(eid) == []
        assert manager.delete_experiment("theme1") is False

    def test_condition_lifecycle(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "request")
        assert manager.add_condition(eid, "A", "", "CFG,theme,classic\n\n  CFG,lang,fr  ", 50)
        assert manager.condition_exists(eid, "A")
        assert manager.get_conditions_for_experiment(eid)[0].commands == ["CFG,theme,classic", "CFG,lang,fr"]

        assert manager.add_condition(eid, "A", "", "", 10) is False
        assert manager.update_condition(eid, "A", "B", "10.0.0.1", ["CFG,theme,boost"], 60, [9])
        condition = manager.store.find_condition(eid, "B")
        assert condition.weight == 60
        assert condition.user_ids == [9]
        assert not manager.condition_exists(eid, "A")

        assert manager.update_condition(eid, "missing", "C", "", "", 10) is False
        assert manager.delete_condition(eid, "B")
        assert manager.delete_condition(eid, "B") is False

    def test_rename_condition_onto_existing_returns_false(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.add_condition(eid, "A", "", "", 10)
        manager.add_condition(eid, "B", "", "", 10)
        assert manager.update_condition(eid, "B", "A", "", "", 10) is False

    def test_delete_all_conditions(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.add_condition(eid, "A", "", "", 10)
        manager.add_condition(eid, "B", "", "", 10)
        manager.delete_all_conditions(eid)
        assert manager.get_conditions_for_experiment(eid) == []

    def test_every_write_invalidates_even_on_failure(self, manager):
        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.add_condition(eid, "A", "", "", 10)

        failing_writes = [
            lambda: manager.add_experiment("Theme", "theme1", "request"),
            lambda: manager.update_experiment("missing", "X", "x", "request", True, False, 0),
            lambda: manager.delete_experiment("missing"),
            lambda: manager.add_condition(eid, "A", "", "", 10),
            lambda: manager.update_condition(eid, "missing", "Z", "", "", 10),
            lambda: manager.delete_condition(eid, "missing"),
        ]
        for write in failing_writes:
            manager.get_experiments()
            assert self._cached(manager) is not None
            assert write() is False
            assert self._cached(manager) is None

    def test_invalid_input_still_invalidates(self, manager):
        manager.get_experiments()
        with pytest.raises(ValidationError):
            manager.add_experiment("", "theme1", "request")
        assert self._cached(manager) is None

    def test_dataset_served_from_cache(self, manager, monkeypatch):
        manager.add_experiment("Theme", "theme1", "request")
        first = manager.get_experiments()
        monkeypatch.setattr(manager.store, "load_all", lambda: pytest.fail("store hit on warm cache"))
        assert manager.get_experiments() is first

    def test_active_filters(self, manager, make_experiment):
        make_experiment("req", scope="request")
        make_experiment("sess", scope="session")
        make_experiment("dev", scope="device")
        make_experiment("off", scope="request", enabled=False)

        assert list(manager.get_active_request()) == ["req"]
        assert list(manager.get_active_session()) == ["sess"]
        assert list(manager.get_active_device()) == ["dev"]
        assert list(manager.get_active_experiments()) == ["req", "sess", "dev"]
        assert list(manager.get_override_experiments(device=False)) == ["req", "sess", "off"]
        assert list(manager.get_override_experiments(device=True)) == ["dev"]

    def test_config_changes_are_audited(self, manager, monkeypatch):
        calls = []

        def record(name, value, plugin, experiment="", oldvalue=""):
            calls.append((name, value, plugin, experiment))

        monkeypatch.setattr("abconfig.tier3_platform.experiments.log_config_change", record)

        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.add_condition(eid, "A", "", "\n".join([
            "CFG,theme,classic",
            "forced_plugin_setting,mod_forum,maxposts,10",
            "js_footer,track()",
            "CFG,broken",
            "CFG,motd,hello, world",
        ]), 50)

        assert calls == [
            ("theme", "classic", "core-experiment:50", "theme1"),
            ("maxposts", "10", "mod_forum-experiment:50", "theme1"),
            ("motd", "hello, world", "core-experiment:50", "theme1"),
        ]

        calls.clear()
        manager.update_condition(eid, "A", "A", "", "CFG,theme,boost", 20)
        assert calls == [("theme", "boost", "core-experiment:20", "theme1")]

    def test_sql_backed_manager(self, memory_cache):
        from abconfig.tier3_platform.experiments import ExperimentManager
        from abconfig.tier3_platform.store import SqlRecordStore

        manager = ExperimentManager(store=SqlRecordStore(), cache=memory_cache)
        eid = manager.add_experiment("Theme", "theme1", "session")
        assert manager.add_experiment("Theme", "theme1", "session") is False
        assert manager.add_condition(eid, "A", "", "CFG,theme,classic", 100)
        assert manager.update_experiment("theme1", "Theme", "theme1", "session", True, False, 5)
        assert list(manager.get_active_session()) == ["theme1"]
        assert manager.get_active_session()["theme1"].conditions[0].commands == ["CFG,theme,classic"]

    def test_add_condition_to_missing_experiment(self, manager):
        assert manager.add_condition(999, "A", "", "CFG,theme,classic", 10) is False
        assert manager.get_conditions_for_experiment(999) == []
        assert manager.get_experiments() == {}

    def test_add_condition_to_deleted_experiment_sql(self, memory_cache):
        from abconfig.tier3_platform.experiments import ExperimentManager
        from abconfig.tier3_platform.store import SqlRecordStore

        manager = ExperimentManager(store=SqlRecordStore(), cache=memory_cache)
        eid = manager.add_experiment("Theme", "theme1", "request")
        manager.delete_experiment("theme1")
        assert manager.add_condition(eid, "A", "", "", 10) is False
        assert manager.get_conditions_for_experiment(eid) == []

    def test_write_during_load_is_not_cached_over(self, manager, make_experiment, monkeypatch):
        make_experiment("exp1", enabled=False)
        load_all = manager.store.load_all
        calls = []

        def load_then_write():
            snapshot = load_all()
            if not calls:
                calls.append(1)
                assert manager.update_experiment("exp1", "Exp1", "exp1", "request", True, False, 0)
            return snapshot

        manager.invalidate()
        monkeypatch.setattr(manager.store, "load_all", load_then_write)
        assert manager.get_experiments()["exp1"].enabled is False
        assert manager.get_experiments()["exp1"].enabled is True

    def test_early_scopes_accepted(self, manager):
        assert manager.add_experiment("Early", "early", "afterconfig")
        assert manager.add_experiment("Boot", "boot", "beforesession")
        assert manager.store.find_experiment("early").scope == "afterconfig"
        assert manager.update_experiment("boot", "Boot", "boot", "beforesession", True, False, 0)


# ── request scope ──────────────────────────────────────────────────────────

class TestRequestScope:
    def test_full_weight_condition_applies(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,classic"])])
        ctx = make_context()
        evaluator_for(draw=37).after_config(ctx)
        assert ctx.config.get("theme") == "classic"

    def test_draw_in_unassigned_remainder(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[
            ("A", 30, ["CFG,theme,a"]),
            ("B", 20, ["CFG,theme,b"]),
        ])
        ctx = make_context()
        evaluator_for(draw=75).after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_draw_selects_second_slice(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[
            ("A", 30, ["CFG,theme,a"]),
            ("B", 20, ["CFG,theme,b"]),
        ])
        ctx = make_context()
        evaluator_for(draw=31).after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_rerolled_every_request(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[
            ("A", 50, ["CFG,theme,a"]),
            ("B", 50, ["CFG,theme,b"]),
        ])
        session = DictSession()
        first, second = make_context(session=session), make_context(session=session)
        evaluator_for(draw=10).after_config(first)
        evaluator_for(draw=90).after_config(second)
        assert first.config.get("theme") == "a"
        assert second.config.get("theme") == "b"
        assert session.data == {}

    def test_disabled_experiment_never_runs(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", enabled=False, conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context()
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_admin_immunity(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,a"])])
        make_experiment("exp2", admin_enabled=True, conditions=[("A", 100, ["CFG,lang,fr"])])
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True))
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") is None
        assert ctx.config.get("lang") == "fr"

    def test_listed_address_skips_condition(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[
            ("A", 50, ["CFG,theme,a"], {"ip": "203.0.113.0/24"}),
            ("B", 50, ["CFG,theme,b"]),
        ])
        ctx = make_context()
        # A is dropped before the walk, so B takes the first slice
        evaluator_for(draw=10).after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_user_targeted_condition(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,a"], {"users": [5]})])
        other = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=6))
        target = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=5))
        evaluator = evaluator_for()
        evaluator.after_config(other)
        evaluator.after_config(target)
        assert other.config.get("theme") is None
        assert target.config.get("theme") == "a"

    def test_static_config_wins(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,classic", "CFG,lang,fr"])])
        ctx = make_context(config=ConfigStore(static={"theme": "boost"}))
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "boost"
        assert ctx.config.get("lang") == "fr"

    def test_first_experiment_to_set_a_key_wins(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,first"])])
        make_experiment("exp2", conditions=[("A", 100, ["CFG,theme,second"])])
        ctx = make_context()
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "first"


# ── forced condsets ────────────────────────────────────────────────────────

class TestForcedCondsets:
    def _setup(self, make_experiment, **kwargs):
        make_experiment("exp1", conditions=[
            ("A", 100, ["CFG,theme,a"]),
            ("B", 0, ["CFG,theme,b"]),
        ], **kwargs)

    def test_cli_env_override(self, make_experiment, make_context, evaluator_for):
        self._setup(make_experiment)
        ctx = make_context(requester=Requester(cli=True))
        evaluator_for(environ={"ABCONFIG_EXP1": "B"}).after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_cli_override_of_disabled_experiment(self, make_experiment, make_context, evaluator_for):
        self._setup(make_experiment, enabled=False)
        ctx = make_context(requester=Requester(cli=True))
        evaluator_for(environ={"ABCONFIG_EXP1": "B"}).after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_unknown_forced_condset_falls_back_to_selection(self, make_experiment, make_context, evaluator_for):
        self._setup(make_experiment)
        ctx = make_context(requester=Requester(cli=True))
        evaluator_for(environ={"ABCONFIG_EXP1": "Z"}).after_config(ctx)
        assert ctx.config.get("theme") == "a"

    def test_admin_url_override(self, make_experiment, make_context, evaluator_for):
        self._setup(make_experiment)
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"exp1": "B"})
        ctx = make_context(requester=requester)
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_non_admin_param_ignored(self, make_experiment, make_context, evaluator_for):
        self._setup(make_experiment)
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=3, params={"exp1": "B"})
        ctx = make_context(requester=requester)
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "a"

    def test_forced_session_experiment_skips_replay(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", conditions=[
            ("A", 50, ["CFG,theme,a"]),
            ("B", 50, ["CFG,theme,b"]),
        ])
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"sess": "B"})
        ctx = make_context(requester=requester, session=DictSession({"abconfig_sess": "A"}))
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "b"

    def test_device_param_forces_for_anyone(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", conditions=[
            ("A", 100, ["CFG,theme,a"]),
            ("B", 0, ["CFG,theme,b"]),
        ])
        requester = Requester(remote_address=ADDR, user_agent=UA, params={"dev": "B"})
        ctx = make_context(requester=requester)
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") == "b"


# ── early scopes ───────────────────────────────────────────────────────────

class TestEarlyScopes:
    def _early(self, make_experiment, scope):
        make_experiment("early", scope=scope, conditions=[("A", 100, ["CFG,theme,early"])])

    def test_afterconfig_never_bucketed(self, make_experiment, make_context, evaluator_for, manager):
        self._early(make_experiment, "afterconfig")
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=5))
        evaluator = evaluator_for(draw=1)
        evaluator.before_session_start(ctx)
        evaluator.after_config(ctx)
        evaluator.after_require_login(ctx)
        assert ctx.config.get("theme") is None
        assert "early" not in manager.get_active_request()
        assert "early" not in manager.get_active_session()

    def test_afterconfig_fires_from_cli_env(self, make_experiment, make_context, evaluator_for):
        self._early(make_experiment, "afterconfig")
        ctx = make_context(requester=Requester(cli=True))
        evaluator_for(environ={"ABCONFIG_EARLY": "A"}).after_config(ctx)
        assert ctx.config.get("theme") == "early"

    def test_afterconfig_fires_from_admin_param(self, make_experiment, make_context, evaluator_for):
        self._early(make_experiment, "afterconfig")
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"early": "A"})
        ctx = make_context(requester=requester)
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "early"

    def test_afterconfig_param_ignored_for_non_admin(self, make_experiment, make_context, evaluator_for):
        self._early(make_experiment, "afterconfig")
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=3, params={"early": "A"})
        ctx = make_context(requester=requester)
        evaluator = evaluator_for()
        evaluator.before_session_start(ctx)
        evaluator.after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_beforesession_fires_from_param(self, make_experiment, make_context, evaluator_for):
        self._early(make_experiment, "beforesession")
        requester = Requester(remote_address=ADDR, user_agent=UA, params={"early": "A"})
        ctx = make_context(requester=requester)
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") == "early"

    def test_beforesession_never_bucketed(self, make_experiment, make_context, evaluator_for):
        self._early(make_experiment, "beforesession")
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, is_admin=True))
        evaluator = evaluator_for(draw=1)
        evaluator.before_session_start(ctx)
        evaluator.after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_override_candidates(self, make_experiment, manager):
        make_experiment("boot", scope="beforesession")
        make_experiment("early", scope="afterconfig")
        make_experiment("dev", scope="device")
        assert list(manager.get_override_experiments(device=True)) == ["boot", "dev"]
        assert list(manager.get_override_experiments(device=False)) == ["early"]

    def test_scripts_consumed_after_render(self, make_experiment, make_context, evaluator_for):
        make_experiment("early", scope="afterconfig", conditions=[("A", 100, ["js_footer,early()"])])
        ctx = make_context(requester=Requester(cli=True))
        evaluator = evaluator_for(environ={"ABCONFIG_EARLY": "A"})
        evaluator.after_config(ctx)
        assert evaluator.before_footer(ctx) == "<script type='text/javascript'>early()</script>"
        assert "js_footer_early" not in ctx.scripts


# ── disable switch ─────────────────────────────────────────────────────────

class TestDisableSwitch:
    def test_admin_can_switch_off(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", admin_enabled=True, conditions=[("A", 100, ["CFG,theme,a"])])
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"abconfig": "0"})
        ctx = make_context(requester=requester)
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_non_admin_cannot_switch_off_request_scope(self, make_experiment, make_context, evaluator_for):
        make_experiment("exp1", conditions=[("A", 100, ["CFG,theme,a"])])
        requester = Requester(remote_address=ADDR, user_agent=UA, params={"abconfig": "0"})
        ctx = make_context(requester=requester)
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") == "a"

    def test_switch_off_device_scope_for_anyone(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", conditions=[("A", 100, ["CFG,theme,a"])])
        requester = Requester(remote_address=ADDR, user_agent=UA, params={"abconfig": "off"})
        ctx = make_context(requester=requester)
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") is None

    def test_switch_off_session_scope(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", admin_enabled=True, conditions=[("A", 100, ["CFG,theme,a"])])
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"abconfig": "0"})
        ctx = make_context(requester=requester)
        evaluator_for().after_require_login(ctx)
        assert not ctx.session.has("abconfig_sess")

    @pytest.mark.parametrize("value", ["off", "no", "false", "0"])
    def test_any_false_value_switches_off(self, value, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", admin_enabled=True, conditions=[("A", 100, ["js_footer,x()"])])
        requester = Requester(remote_address=ADDR, user_agent=UA, user_id=2, is_admin=True, params={"abconfig": value})
        ctx = make_context(requester=requester)
        ctx.scripts.set_script("js_footer_sess", "x()")
        evaluator = evaluator_for()
        evaluator.after_require_login(ctx)
        assert not ctx.session.has("abconfig_sess")
        assert evaluator.before_footer(ctx) == ""


# ── session scope ──────────────────────────────────────────────────────────

class TestSessionScope:
    def _requester(self, user_id=11, is_admin=False):
        return Requester(remote_address=ADDR, user_agent=UA, user_id=user_id, is_admin=is_admin)

    def test_memoized_and_replayed(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", conditions=[
            ("A", 50, ["CFG,theme,a"]),
            ("B", 50, ["CFG,theme,b"]),
        ])
        session = DictSession()

        first = make_context(requester=self._requester(), session=session)
        evaluator_for(draw=10).after_require_login(first)
        assert first.config.get("theme") == "a"
        assert session.get("abconfig_sess") == "A"

        # later request: a draw that would pick B must not re-roll
        second = make_context(requester=self._requester(), session=session)
        evaluator = evaluator_for(draw=90)
        evaluator.after_config(second)
        evaluator.after_require_login(second)
        assert second.config.get("theme") == "a"
        assert session.get("abconfig_sess") == "A"

    def test_no_winner_is_memoized_as_empty(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", conditions=[("A", 30, ["CFG,theme,a"])])
        session = DictSession()

        first = make_context(requester=self._requester(), session=session)
        evaluator_for(draw=75).after_require_login(first)
        assert session.get("abconfig_sess") == ""

        second = make_context(requester=self._requester(), session=session)
        evaluator = evaluator_for(draw=1)
        evaluator.after_config(second)
        evaluator.after_require_login(second)
        assert second.config.get("theme") is None
        assert session.get("abconfig_sess") == ""

    def test_stale_condset_is_ignored(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context(requester=self._requester(), session=DictSession({"abconfig_sess": "gone"}))
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") is None

    def test_admin_immune_session_not_recorded(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session", conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context(requester=self._requester(is_admin=True))
        evaluator_for().after_require_login(ctx)
        assert ctx.config.get("theme") is None
        assert not ctx.session.has("abconfig_sess")

    def test_every_unset_experiment_decided_in_one_pass(self, make_experiment, make_context, evaluator_for):
        make_experiment("one", scope="session", conditions=[("A", 100, ["CFG,theme,a"])])
        make_experiment("two", scope="session", conditions=[("X", 100, ["CFG,lang,fr"])])
        ctx = make_context(requester=self._requester())
        evaluator_for().after_require_login(ctx)
        assert ctx.session.get("abconfig_one") == "A"
        assert ctx.session.get("abconfig_two") == "X"
        assert ctx.config.get("lang") == "fr"


# ── device scope ───────────────────────────────────────────────────────────

class TestDeviceScope:
    @pytest.mark.parametrize("address", ["198.51.100.1", "198.51.100.2", "192.0.2.77", "10.9.8.7"])
    def test_full_weight_always_matches(self, address, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", numeric_offset=10, conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context(requester=Requester(remote_address=address, user_agent=UA))
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") == "a"

    def test_same_device_same_answer(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", numeric_offset=33, conditions=[
            ("A", 50, ["CFG,theme,a"]),
            ("B", 50, ["CFG,theme,b"]),
        ])
        seen = set()
        for draw in (1, 50, 100):
            ctx = make_context(requester=Requester(remote_address="198.51.100.9", user_agent="UA-1"))
            evaluator_for(draw=draw).before_session_start(ctx)
            seen.add(ctx.config.get("theme"))
        assert len(seen) == 1
        assert seen <= {"a", "b"}

    def test_admins_are_not_immune(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, is_admin=True))
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") == "a"

    def test_needs_address_and_user_agent(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context(requester=Requester(cli=True))
        evaluator_for().before_session_start(ctx)
        assert ctx.config.get("theme") is None

    def test_device_experiments_ignored_after_config(self, make_experiment, make_context, evaluator_for):
        make_experiment("dev", scope="device", conditions=[("A", 100, ["CFG,theme,a"])])
        ctx = make_context()
        evaluator_for().after_config(ctx)
        assert ctx.config.get("theme") is None


# ── hook failure handling ──────────────────────────────────────────────────

class _BrokenManager:
    def _fail(self, *args, **kwargs):
        raise RuntimeError("store unavailable")

    get_experiments = get_override_experiments = _fail
    get_active_request = get_active_session = get_active_device = _fail


class TestHookFailures:
    def test_early_hooks_swallow_errors(self, make_context):
        evaluator = ExperimentEvaluator(manager=_BrokenManager(), draw=lambda: 1, environ={})
        ctx = make_context()
        evaluator.before_session_start(ctx)
        evaluator.after_config(ctx)

    def test_later_hooks_propagate(self, make_context):
        evaluator = ExperimentEvaluator(manager=_BrokenManager(), draw=lambda: 1, environ={})
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=4))
        with pytest.raises(RuntimeError):
            evaluator.after_require_login(ctx)
        with pytest.raises(RuntimeError):
            evaluator.before_footer(ctx)


# ── render hooks ───────────────────────────────────────────────────────────

class TestRenderScripts:
    def test_request_scripts_consumed_session_scripts_kept(self, make_experiment, make_context, evaluator_for):
        make_experiment("req", conditions=[("A", 100, ["js_footer,req()"])])
        make_experiment("sess", scope="session", conditions=[("A", 100, ["js_footer,sess()"])])
        ctx = make_context(requester=Requester(remote_address=ADDR, user_agent=UA, user_id=8))
        evaluator = evaluator_for()
        evaluator.after_config(ctx)
        evaluator.after_require_login(ctx)

        assert evaluator.before_http_headers(ctx) == ""
        assert evaluator.before_footer(ctx) == (
            "<script type='text/javascript'>req()</script>"
            "<script type='text/javascript'>sess()</script>"
        )
        assert "js_footer_req" not in ctx.scripts
        assert "js_footer_sess" in ctx.scripts
        assert evaluator.before_footer(ctx) == "<script type='text/javascript'>sess()</script>"

    def test_header_scripts(self, make_experiment, make_context, evaluator_for):
        make_experiment("req", conditions=[("A", 100, ["js_header,var exp = 'A';"])])
        ctx = make_context()
        evaluator = evaluator_for()
        evaluator.after_config(ctx)
        assert evaluator.before_http_headers(ctx) == "<script type='text/javascript'>var exp = 'A';</script>"
        assert evaluator.before_footer(ctx) == ""

    def test_disabled_experiment_entries_removed(self, make_experiment, make_context, evaluator_for):
        make_experiment("off", scope="session", enabled=False)
        ctx = make_context()
        ctx.scripts.set_script("js_footer_off", "stale()")
        evaluator_for().before_footer(ctx)
        assert "js_footer_off" not in ctx.scripts

    def test_admin_switch_off_renders_nothing(self, make_experiment, make_context, evaluator_for):
        make_experiment("sess", scope="session")
        requester = Requester(remote_address=ADDR, user_agent=UA, is_admin=True, params={"abconfig": "0"})
        ctx = make_context(requester=requester)
        ctx.scripts.set_script("js_footer_sess", "x()")
        assert evaluator_for().before_footer(ctx) == ""


# ── provider ───────────────────────────────────────────────────────────────

class TestProvider:
    def test_get_evaluator_is_singleton(self):
        evaluator = get_evaluator()
        assert evaluator is get_evaluator()
        assert evaluator.session_key("exp1") == "abconfig_exp1"

    def test_scope_values(self):
        assert [s.value for s in Scope] == ["request", "session", "device", "beforesession", "afterconfig"]
