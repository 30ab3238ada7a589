"""Backend hub - one logical inference service over many OpenAI-compatible backends."""

from .interface import (
    Backend,
    BackendRole,
    HealthStatus,
    Model,
    ProbeResult,
    QuotaSnapshot,
    QuotaTier,
    Status,
)
from .errors import (
    HubError,
    InvalidAddress,
    BackendNotFound,
    ModelNotFound,
    QuotaExceeded,
    Unauthorized,
    SessionExpired,
    BackendUnreachable,
    MalformedResponse,
    BackendError,
)
from .events import EventBus, Signal
from .state import StateStore
from .registry import BackendRegistry
from .prober import HealthProber
from .catalog import ModelCatalog
from .completion import CompletionRouter
from .usage import UsageTracker, QuotaState
from .control import Hub

__all__ = [
    # Interface
    "Backend",
    "BackendRole",
    "HealthStatus",
    "Model",
    "ProbeResult",
    "QuotaSnapshot",
    "QuotaTier",
    "Status",
    # Errors
    "HubError",
    "InvalidAddress",
    "BackendNotFound",
    "ModelNotFound",
    "QuotaExceeded",
    "Unauthorized",
    "SessionExpired",
    "BackendUnreachable",
    "MalformedResponse",
    "BackendError",
    # Components
    "EventBus",
    "Signal",
    "StateStore",
    "BackendRegistry",
    "HealthProber",
    "ModelCatalog",
    "CompletionRouter",
    "UsageTracker",
    "QuotaState",
    "Hub",
]
