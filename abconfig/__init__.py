"""
abconfig
────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from abconfig.tier0_core.logging import get_logger
from abconfig.tier0_core.errors import (
    AbconfigError,
    NotFoundError,
    ConflictError,
    ValidationError,
    ConfigurationError,
    CommandError,
    ConfigAlreadySetError,
    MalformedCommandError,
    HeadersSentError,
    configure_sentry,
)
from abconfig.tier0_core.config import get_settings, AbconfigSettings
from abconfig.tier0_core.metrics import start_metrics_server

from abconfig.tier1_runtime.host import Requester, DictSession, ConfigStore, HeaderBuffer
from abconfig.tier1_runtime.context import (
    get_context,
    set_context,
    new_context,
    RequestContext,
    RenderScriptRegistry,
)
from abconfig.tier1_runtime.middleware import AbconfigWSGIMiddleware

from abconfig.tier2_reliability.cache import get_cache
from abconfig.tier2_reliability.audit import log_config_change, ConfigChangeRecord

from abconfig.tier3_platform.models import Scope, Experiment, Condition
from abconfig.tier3_platform.commands import parse_command, CommandInterpreter, execute_commands
from abconfig.tier3_platform.store import MemoryRecordStore, SqlRecordStore, get_store
from abconfig.tier3_platform.experiments import ExperimentManager
from abconfig.tier3_platform.evaluators import ExperimentEvaluator, get_evaluator

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "AbconfigError", "NotFoundError", "ConflictError", "ValidationError",
    "ConfigurationError", "CommandError", "ConfigAlreadySetError",
    "MalformedCommandError", "HeadersSentError", "configure_sentry",
    # config
    "get_settings", "AbconfigSettings",
    # metrics
    "start_metrics_server",
    # host
    "Requester", "DictSession", "ConfigStore", "HeaderBuffer",
    # context
    "get_context", "set_context", "new_context", "RequestContext", "RenderScriptRegistry",
    # middleware
    "AbconfigWSGIMiddleware",
    # cache
    "get_cache",
    # audit
    "log_config_change", "ConfigChangeRecord",
    # experiments
    "Scope", "Experiment", "Condition",
    "parse_command", "CommandInterpreter", "execute_commands",
    "MemoryRecordStore", "SqlRecordStore", "get_store",
    "ExperimentManager", "ExperimentEvaluator", "get_evaluator",
]
