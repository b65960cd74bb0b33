"""chatbridge engine: conversation orchestration and permission arbitration."""
from .models import (
    ConversationTurn,
    InboundMessage,
    PermissionMode,
    PermissionRequest,
    QueryRequest,
    QueryResult,
    TurnRole,
)
from .config import BridgeConfig, RuntimeConfig
from .errors import (
    BridgeError,
    ConfigError,
    EmptyAgentNameError,
    InvalidDirectoryError,
    InvalidSettingSourceError,
    NoActiveSessionError,
    UnknownModelError,
)
from .history import HistoryLog
from .permissions import PermissionArbiter
from .session import SessionLifecycle

__all__ = [
    # Orchestrator (lazy import)
    "ConversationOrchestrator",
    # Backends (lazy import; ClaudeBackend pulls in claude_agent_sdk)
    "AssistantBackend",
    "ClaudeBackend",
    # Models
    "ConversationTurn",
    "InboundMessage",
    "PermissionMode",
    "PermissionRequest",
    "QueryRequest",
    "QueryResult",
    "TurnRole",
    # Config
    "BridgeConfig",
    "RuntimeConfig",
    # State
    "HistoryLog",
    "PermissionArbiter",
    "SessionLifecycle",
    # Model registry (lazy import)
    "ModelRegistry",
    "build_default_registry",
    # Errors
    "BridgeError",
    "ConfigError",
    "EmptyAgentNameError",
    "InvalidDirectoryError",
    "InvalidSettingSourceError",
    "NoActiveSessionError",
    "UnknownModelError",
]


def __getattr__(name: str):
    if name == "ConversationOrchestrator":
        from .orchestrator import ConversationOrchestrator
        return ConversationOrchestrator
    if name == "AssistantBackend":
        from .backend import AssistantBackend
        return AssistantBackend
    if name == "ClaudeBackend":
        from .claude_backend import ClaudeBackend
        return ClaudeBackend
    if name == "ModelRegistry":
        from .model_registry import ModelRegistry
        return ModelRegistry
    if name == "build_default_registry":
        from .model_registry import build_default_registry
        return build_default_registry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
