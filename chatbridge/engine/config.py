"""Configuration dataclasses and layered loading.

RuntimeConfig is per conversation: the router copies the template for
every new conversation so mutations stay isolated. BridgeConfig is
process-wide and is built by merging plain dict layers, lowest
precedence first: config file, CHATBRIDGE_* env vars, CLI flags.
"""
from __future__ import annotations

import copy
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .model_registry import build_default_registry
from .models import PermissionMode

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_PERMISSION_TIMEOUT_SECONDS = 300.0
VALID_SETTING_SOURCES: tuple[str, ...] = ("user", "project", "local")

_TRUE_VALUES = {"1", "true", "yes", "on"}


def expand_path(path: str | Path, base: str | Path | None = None) -> Path:
    """Expand ``~`` and resolve relative paths against *base* (or cwd)."""
    expanded = Path(os.path.expanduser(str(path)))
    if not expanded.is_absolute() and base is not None:
        expanded = Path(base) / expanded
    return expanded.resolve()


def split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class RuntimeConfig:
    """Mutable per-conversation settings consulted on every query."""

    working_directory: str = field(default_factory=os.getcwd)
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    model: str = DEFAULT_MODEL
    # Replaces the default system prompt. Exclusive with the append.
    system_prompt: str | None = None
    # Appended to the claude_code preset. Exclusive with system_prompt.
    system_prompt_append: str | None = None
    # None means CLAUDE.md loading is disabled.
    claude_md_sources: list[str] | None = None
    agent_name: str = "Claude"
    max_turns: int | None = None

    def copy(self) -> RuntimeConfig:
        return copy.deepcopy(self)

    @property
    def prompt_status(self) -> str:
        if self.system_prompt:
            return f"custom ({len(self.system_prompt)} chars)"
        if self.system_prompt_append:
            return f"default + append ({len(self.system_prompt_append)} chars)"
        return "default"

    @property
    def claude_md_status(self) -> str:
        if self.claude_md_sources:
            return ", ".join(self.claude_md_sources)
        return "disabled"


@dataclass
class BridgeConfig:
    """Process-wide bridge configuration."""

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    # Sender identities allowed to talk to the agent.
    whitelist: list[str] = field(default_factory=list)
    verbose: bool = False
    log_level: str = "INFO"
    permission_timeout_seconds: float = DEFAULT_PERMISSION_TIMEOUT_SECONDS

    # Runtime-only: never written to the config file.
    resume_session_id: str | None = None
    fork_session: bool = False
    allow_all_group_participants: bool = False

    # HTTP bridge
    host: str = "127.0.0.1"
    port: int = 8787
    outbound_url: str | None = None

    # Path the config was loaded from, if any.
    config_path: str | None = None
    # Extra model shorthands: alias -> model id.
    model_aliases: dict[str, str] = field(default_factory=dict)

    def is_whitelisted(self, sender_id: str) -> bool:
        normalized = normalize_sender(sender_id)
        return any(normalize_sender(w) == normalized for w in self.whitelist)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BridgeConfig:
        """Load configuration from CHATBRIDGE_* environment variables."""
        return cls.from_layers(env_layer(environ))

    @classmethod
    def from_layers(
        cls,
        *layers: Mapping[str, Any],
        config_path: str | None = None,
    ) -> BridgeConfig:
        """Merge dict layers (later wins, None values skipped) and validate.

        Keys follow the config file schema (``directory``, ``mode``,
        ``max_turns``...) plus the runtime-only keys.

        Raises:
            ConfigError: listing every invalid value.
        """
        merged: dict[str, Any] = {}
        for layer in layers:
            merged.update({k: v for k, v in layer.items() if v is not None})

        issues: list[str] = []
        runtime = RuntimeConfig()

        if "directory" in merged:
            runtime.working_directory = str(expand_path(merged["directory"]))

        if "mode" in merged:
            try:
                runtime.permission_mode = PermissionMode.parse(str(merged["mode"]))
            except ValueError as exc:
                issues.append(f"mode: {exc}")

        aliases = merged.get("models") or {}
        model_aliases: dict[str, str] = {}
        if not isinstance(aliases, Mapping):
            issues.append("models: expected a mapping of alias -> model id")
        else:
            for alias, target in aliases.items():
                if isinstance(target, Mapping):
                    target = target.get("model_id")
                if not target:
                    issues.append(f"models.{alias}: missing model_id")
                    continue
                model_aliases[str(alias)] = str(target)

        if "model" in merged:
            registry = build_default_registry(model_aliases)
            resolved = registry.resolve(str(merged["model"]))
            if resolved is None:
                logger.warning(
                    "Unrecognized model %r, using default %s",
                    merged["model"], runtime.model,
                )
            else:
                runtime.model = resolved

        runtime.system_prompt = merged.get("system_prompt") or None
        runtime.system_prompt_append = merged.get("system_prompt_append") or None
        if runtime.system_prompt and runtime.system_prompt_append:
            issues.append(
                "system_prompt and system_prompt_append are mutually exclusive"
            )

        sources = merged.get("claude_md_sources")
        if isinstance(sources, str):
            sources = split_list(sources)
        if sources:
            invalid = [s for s in sources if s not in VALID_SETTING_SOURCES]
            if invalid:
                issues.append(
                    f"claude_md_sources: invalid {', '.join(map(str, invalid))} "
                    f"(valid: {', '.join(VALID_SETTING_SOURCES)})"
                )
            runtime.claude_md_sources = list(sources)

        agent_name = " ".join(str(merged.get("agent_name") or "").split())
        if agent_name:
            runtime.agent_name = agent_name

        if "max_turns" in merged:
            max_turns = _as_int(merged["max_turns"])
            if max_turns is None or max_turns <= 0:
                issues.append("max_turns: must be a positive integer")
            else:
                runtime.max_turns = max_turns

        whitelist = merged.get("whitelist") or []
        if isinstance(whitelist, str):
            whitelist = split_list(whitelist)
        if not isinstance(whitelist, list):
            issues.append("whitelist: expected a list of sender ids")
            whitelist = []

        config = cls(
            runtime=runtime,
            whitelist=[str(w).strip() for w in whitelist if str(w).strip()],
            verbose=_as_bool(merged.get("verbose", False)),
            resume_session_id=merged.get("resume_session_id") or None,
            fork_session=_as_bool(merged.get("fork_session", False)),
            allow_all_group_participants=_as_bool(
                merged.get("allow_all_group_participants", False),
            ),
            outbound_url=merged.get("outbound_url") or None,
            host=str(merged.get("host", cls.host)),
            config_path=config_path,
            model_aliases=model_aliases,
        )
        config.log_level = str(
            merged.get("log_level", "DEBUG" if config.verbose else cls.log_level)
        ).upper()

        timeout = _as_float(merged.get(
            "permission_timeout_seconds", DEFAULT_PERMISSION_TIMEOUT_SECONDS,
        ))
        if timeout is None or timeout < 0:
            issues.append("permission_timeout_seconds: must be a number >= 0")
        else:
            config.permission_timeout_seconds = timeout

        port = _as_int(merged.get("port", cls.port))
        if port is None or not 0 <= port <= 65535:
            issues.append("port: must be an integer between 0 and 65535")
        else:
            config.port = port

        if config.fork_session and not config.resume_session_id:
            issues.append("fork_session requires resume_session_id")

        if issues:
            raise ConfigError(issues)

        logger.info(
            "BridgeConfig: model=%s mode=%s cwd=%s whitelist=%d",
            runtime.model, runtime.permission_mode.value,
            runtime.working_directory, len(config.whitelist),
        )
        return config


def env_layer(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Map CHATBRIDGE_* environment variables onto config keys."""
    env = os.environ if environ is None else environ
    bridge_vars = sorted(k for k in env if k.startswith("CHATBRIDGE_"))
    if bridge_vars:
        logger.info("CHATBRIDGE_* env overrides: %s", ", ".join(bridge_vars))
    else:
        logger.debug("No CHATBRIDGE_* env vars set")

    layer: dict[str, Any] = {
        "directory": env.get("CHATBRIDGE_DIRECTORY") or None,
        "mode": env.get("CHATBRIDGE_MODE") or None,
        "model": env.get("CHATBRIDGE_MODEL") or None,
        "agent_name": env.get("CHATBRIDGE_AGENT_NAME") or None,
        "log_level": env.get("CHATBRIDGE_LOG_LEVEL") or None,
        "permission_timeout_seconds": env.get("CHATBRIDGE_PERMISSION_TIMEOUT") or None,
        "outbound_url": env.get("CHATBRIDGE_OUTBOUND_URL") or None,
    }
    if env.get("CHATBRIDGE_WHITELIST"):
        layer["whitelist"] = split_list(env["CHATBRIDGE_WHITELIST"])
    if env.get("CHATBRIDGE_VERBOSE"):
        layer["verbose"] = env["CHATBRIDGE_VERBOSE"].lower() in _TRUE_VALUES
    return layer


def normalize_sender(sender_id: str) -> str:
    """Strip transport suffixes and phone formatting for whitelist checks.

    ``+1 (234) 567-890`` and ``1234567890@s.whatsapp.net`` both normalize
    to ``1234567890``. Non-numeric identities are lowercased as-is.
    """
    local = sender_id.split("@", 1)[0].strip()
    digits = "".join(ch for ch in local if ch.isdigit())
    stripped = local.replace("+", "").replace(" ", "").replace("-", "")
    stripped = stripped.replace("(", "").replace(")", "")
    if digits and stripped.isdigit():
        return digits
    return local.lower()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
