"""Exception hierarchy for the conversation engine.

Raised by lifecycle mutators for invalid user input and caught by the
orchestrator's command handlers, which turn them into plain-text
replies. Nothing in this hierarchy is fatal.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class InvalidDirectoryError(BridgeError):
    """Requested working directory is missing or not a directory."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}: {path}")


class UnknownModelError(BridgeError):
    """Model shorthand could not be resolved to a known model id."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown model: {name}")


class NoActiveSessionError(BridgeError):
    """Operation needs a session id but none is set."""
    def __init__(self, operation: str = "fork"):
        self.operation = operation
        super().__init__(f"no active session to {operation}")


class InvalidSettingSourceError(BridgeError):
    """CLAUDE.md source names outside of user/project/local."""
    def __init__(self, invalid: list[str], valid: tuple[str, ...]):
        self.invalid = invalid
        self.valid = valid
        super().__init__(
            f"Invalid sources: {', '.join(invalid)} "
            f"(valid sources: {', '.join(valid)})"
        )


class EmptyAgentNameError(BridgeError):
    """Agent name was blank after trimming."""
    def __init__(self) -> None:
        super().__init__("Agent name cannot be empty")


class ConfigError(BridgeError):
    """Configuration file or merged settings failed validation."""
    def __init__(self, issues: list[str]):
        self.issues = issues
        super().__init__(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {issue}" for issue in issues)
        )
