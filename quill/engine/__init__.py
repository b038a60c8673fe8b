"""Quill engine: out-of-process turn execution over the Codex app-server."""
from .models import (
    Decision,
    PartType,
    PermissionAction,
    PermissionRequest,
    PermissionResponse,
    PermissionRule,
    TokenUsage,
    ToolStatus,
    TurnInput,
    TurnResult,
    TurnState,
)
from .config import EngineConfig, ModelCost
from .errors import (
    AppServerResponseError,
    AuthRequiredError,
    ConfigError,
    ExecutableNotFoundError,
    PermissionDeniedError,
    PermissionRejectedError,
    QuillError,
    StorageError,
    TransportClosedError,
    TransportError,
    TransportExitedError,
    TurnFailedError,
)

__all__ = [
    # Composition root (lazy import to avoid circular deps)
    "EngineHost",
    # Components (lazy import)
    "AppServerClient",
    "AppServerTransport",
    "PartStore",
    "PermissionNegotiator",
    "TurnProcessor",
    # YAML config (lazy import)
    "load_yaml_config",
    # Models
    "Decision",
    "PartType",
    "PermissionAction",
    "PermissionRequest",
    "PermissionResponse",
    "PermissionRule",
    "TokenUsage",
    "ToolStatus",
    "TurnInput",
    "TurnResult",
    "TurnState",
    # Config
    "EngineConfig",
    "ModelCost",
    # Errors
    "AppServerResponseError",
    "AuthRequiredError",
    "ConfigError",
    "ExecutableNotFoundError",
    "PermissionDeniedError",
    "PermissionRejectedError",
    "QuillError",
    "StorageError",
    "TransportClosedError",
    "TransportError",
    "TransportExitedError",
    "TurnFailedError",
]


def __getattr__(name: str):
    if name == "EngineHost":
        from .host import EngineHost
        return EngineHost
    if name == "AppServerClient":
        from .app_server.client import AppServerClient
        return AppServerClient
    if name == "AppServerTransport":
        from .app_server.transport import AppServerTransport
        return AppServerTransport
    if name == "PartStore":
        from .part_store import PartStore
        return PartStore
    if name == "PermissionNegotiator":
        from .permission import PermissionNegotiator
        return PermissionNegotiator
    if name == "TurnProcessor":
        from .turn_processor import TurnProcessor
        return TurnProcessor
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
