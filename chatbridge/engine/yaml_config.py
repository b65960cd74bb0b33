"""YAML configuration file.

A single optional file supplies defaults for ``chatbridge run``. The
local file in the working directory wins over the user-wide default:

    <directory>/.chatbridge.yaml
    ~/.chatbridge/config.yaml

Example:
    whitelist: ["+15551234567"]
    directory: ~/code/project
    mode: default
    model: sonnet
    max_turns: 20
    agent_name: Batman
    claude_md_sources: [user, project]
    permission_timeout_seconds: 300
    models:
      fast: claude-haiku-4-5-20251001

Runtime-only settings (resume session id, fork flag, group participant
override, HTTP binding) are never written to the file.
"""
from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from chatbridge.shared.durable_write import atomic_write_text
from chatbridge.shared.identity import generate_agent_identity

from .config import (
    BridgeConfig,
    RuntimeConfig,
    env_layer,
    expand_path,
    split_list,
)
from .errors import ConfigError
from .model_registry import ModelRegistry, build_default_registry

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".chatbridge.yaml"

SAVEABLE_KEYS: tuple[str, ...] = (
    "whitelist",
    "directory",
    "mode",
    "model",
    "max_turns",
    "verbose",
    "agent_name",
    "system_prompt",
    "system_prompt_append",
    "claude_md_sources",
    "permission_timeout_seconds",
    "models",
)

_LIST_KEYS = {"whitelist", "claude_md_sources"}
_INT_KEYS = {"max_turns"}
_FLOAT_KEYS = {"permission_timeout_seconds"}
_BOOL_KEYS = {"verbose"}

_TEMPLATE_HEADER = (
    "# chatbridge configuration\n"
    "# CLI flags override CHATBRIDGE_* env vars, which override this file.\n"
)


def local_config_path(directory: str | Path | None = None) -> Path:
    return expand_path(directory or os.getcwd()) / CONFIG_FILE_NAME


def default_config_path() -> Path:
    return Path.home() / ".chatbridge" / "config.yaml"


def find_config_path(
    config: str | Path | None = None,
    directory: str | Path | None = None,
) -> Path:
    """The config file in effect.

    An explicit path wins. Otherwise the local file, then the default
    file, whichever exists; with neither, the local path (where a new
    file would be created).
    """
    if config:
        return expand_path(config)
    local = local_config_path(directory)
    if local.is_file():
        return local
    default = default_config_path()
    if default.is_file():
        return default
    return local


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a config file. A missing file is an empty config.

    Raises:
        ConfigError: when the file is not valid YAML or not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        logger.debug("load_config_file: no config at %s", path)
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_config_file: YAML parse error in %s: %s", path, exc)
        raise ConfigError([f"{path}: {exc}"]) from exc
    if not isinstance(raw, dict):
        raise ConfigError([f"{path}: top level must be a mapping"])
    logger.info(
        "load_config_file: loaded %s (keys: %s)",
        path, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return raw


def write_config_file(path: str | Path, data: Mapping[str, Any]) -> Path:
    path = Path(path)
    body = yaml.safe_dump(
        dict(data), sort_keys=False, default_flow_style=False, allow_unicode=True,
    )
    atomic_write_text(path, body)
    logger.info("Config written to %s (%d keys)", path, len(data))
    return path


def saveable_config(config: BridgeConfig) -> dict[str, Any]:
    """The persistable subset of *config*, in file-schema keys."""
    runtime = config.runtime
    data: dict[str, Any] = {
        "whitelist": list(config.whitelist),
        "directory": runtime.working_directory,
        "mode": runtime.permission_mode.value,
        "model": runtime.model,
        "max_turns": runtime.max_turns,
        "verbose": config.verbose,
        "agent_name": runtime.agent_name,
        "system_prompt": runtime.system_prompt,
        "system_prompt_append": runtime.system_prompt_append,
        "claude_md_sources": (
            list(runtime.claude_md_sources) if runtime.claude_md_sources else None
        ),
        "permission_timeout_seconds": config.permission_timeout_seconds,
        "models": dict(config.model_aliases) or None,
    }
    return {k: v for k, v in data.items() if k in SAVEABLE_KEYS and v is not None}


def save_config_file(
    config: BridgeConfig,
    runtime: RuntimeConfig | None = None,
    path: str | Path | None = None,
) -> Path:
    """Persist *config*, optionally with a conversation's *runtime* settings.

    Defaults to the local file in the runtime's working directory.
    """
    if runtime is not None:
        config = BridgeConfig(
            runtime=runtime,
            whitelist=config.whitelist,
            verbose=config.verbose,
            permission_timeout_seconds=config.permission_timeout_seconds,
            model_aliases=config.model_aliases,
        )
    target = Path(path) if path else local_config_path(config.runtime.working_directory)
    return write_config_file(target, saveable_config(config))


def generate_config_template(
    whitelist: list[str] | None = None,
    runtime: RuntimeConfig | None = None,
) -> str:
    """YAML text for a fresh config file."""
    runtime = runtime or RuntimeConfig(model="sonnet")
    template: dict[str, Any] = {
        "directory": runtime.working_directory,
        "mode": runtime.permission_mode.value,
        "model": runtime.model,
        "verbose": False,
    }
    if whitelist:
        template["whitelist"] = list(whitelist)
    if runtime.max_turns is not None:
        template["max_turns"] = runtime.max_turns
    if runtime.agent_name and runtime.agent_name != RuntimeConfig.agent_name:
        template["agent_name"] = runtime.agent_name
    if runtime.system_prompt:
        template["system_prompt"] = runtime.system_prompt
    if runtime.system_prompt_append:
        template["system_prompt_append"] = runtime.system_prompt_append
    if runtime.claude_md_sources:
        template["claude_md_sources"] = list(runtime.claude_md_sources)
    return _TEMPLATE_HEADER + yaml.safe_dump(
        template, sort_keys=False, default_flow_style=False, allow_unicode=True,
    )


def parse_config_value(
    key: str, value: str, registry: ModelRegistry | None = None,
) -> Any:
    """Parse a ``config set`` string into the type *key* stores.

    Raises:
        ConfigError: for unknown keys or unparseable values.
    """
    if key not in SAVEABLE_KEYS or key == "models":
        raise ConfigError([
            f"Invalid key: {key} (valid keys: "
            f"{', '.join(k for k in SAVEABLE_KEYS if k != 'models')})"
        ])
    if key in _LIST_KEYS:
        if value.strip().startswith("["):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ConfigError([f"{key}: invalid JSON list: {exc}"]) from exc
            if not isinstance(parsed, list):
                raise ConfigError([f"{key}: expected a list"])
            return [str(item).strip() for item in parsed]
        return split_list(value)
    if key in _INT_KEYS:
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigError([f"{key}: expected an integer"]) from exc
    if key in _FLOAT_KEYS:
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError([f"{key}: expected a number"]) from exc
    if key in _BOOL_KEYS:
        return value.strip().lower() in {"true", "1", "yes", "on"}
    if key == "model":
        registry = registry or build_default_registry()
        return registry.resolve(value) or value
    return value


def validate_file_config(data: Mapping[str, Any]) -> None:
    """Check file values the same way ``chatbridge run`` would.

    Raises:
        ConfigError: listing every problem found.
    """
    BridgeConfig.from_layers(data)


def build_bridge_config(
    cli: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Merge defaults < config file < env < CLI into a BridgeConfig.

    *cli* uses config keys; a ``config`` entry selects the file. When no
    layer names the agent, a random identity is generated.
    """
    cli = dict(cli or {})
    env = env_layer(environ)
    directory = cli.get("directory") or env.get("directory")
    path = find_config_path(cli.pop("config", None), directory)
    file_layer = load_config_file(path)

    layers = [file_layer, env, cli]
    if not any(layer.get("agent_name") for layer in layers):
        base_dir = directory or file_layer.get("directory") or os.getcwd()
        identity = generate_agent_identity(expand_path(base_dir))
        layers.insert(0, {"agent_name": identity.name})
        logger.info("Generated agent name: %s", identity.label)

    return BridgeConfig.from_layers(
        *layers,
        config_path=str(path) if file_layer else None,
    )
