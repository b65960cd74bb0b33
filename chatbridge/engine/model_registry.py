"""Model registry: resolves shorthands to canonical Claude model ids.

Users switch models from chat with short names (``/model opus``,
``/model sonnet-4``). The registry maps every accepted spelling to a
canonical model id and rejects anything it does not know, so a typo can
never reach the backend.

Extra aliases can be added from the ``models:`` section of the config
file:

    models:
      fast: claude-haiku-4-5-20251001
      big:
        model_id: claude-opus-4-5-20251101
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ModelInfo:
    """A selectable model and its shorthand spellings."""
    model_id: str
    shorthand: str
    aliases: list[str] = field(default_factory=list)


# Ordered newest-first; the first entry of each family owns the bare
# family alias ("opus", "sonnet", "haiku").
DEFAULT_MODELS: list[ModelInfo] = [
    ModelInfo(
        "claude-opus-4-5-20251101", "opus-4.5",
        ["opus", "opus-4-5", "claude-opus", "claude-opus-4-5"],
    ),
    ModelInfo(
        "claude-opus-4-1-20250805", "opus-4.1",
        ["opus-4-1", "claude-opus-4-1"],
    ),
    ModelInfo(
        "claude-opus-4-20250514", "opus-4",
        ["claude-opus-4"],
    ),
    ModelInfo(
        "claude-sonnet-4-5-20250929", "sonnet-4.5",
        ["sonnet", "sonnet-4-5", "claude-sonnet", "claude-sonnet-4-5"],
    ),
    ModelInfo(
        "claude-sonnet-4-20250514", "sonnet-4",
        ["claude-sonnet-4"],
    ),
    ModelInfo(
        "claude-haiku-4-5-20251001", "haiku-4.5",
        ["haiku", "haiku-4-5", "claude-haiku", "claude-haiku-4-5"],
    ),
    ModelInfo(
        "claude-3-5-haiku-20241022", "haiku-3.5",
        ["haiku-3-5", "claude-3-5-haiku"],
    ),
]


class ModelRegistry:
    """Registry of selectable models and their aliases.

    Lookups are case-insensitive. ``resolve()`` returns ``None`` for
    unknown names instead of passing them through.
    """

    def __init__(self) -> None:
        self._models: dict[str, ModelInfo] = {}
        self._aliases: dict[str, str] = {}  # alias -> canonical model_id

    # ── Alias management ────────────────────────────────────────

    def register(self, info: ModelInfo) -> None:
        self._models[info.model_id] = info
        for alias in [info.shorthand, *info.aliases]:
            self._aliases.setdefault(alias.lower(), info.model_id)
        logger.debug(
            "Model registered: %s (shorthand=%s, aliases=%d)",
            info.model_id, info.shorthand, len(info.aliases),
        )

    def register_alias(self, alias: str, model_id: str) -> None:
        """Register (or override) an alias that maps to *model_id*.

        Unknown targets are registered as models so the alias resolves.
        """
        if model_id not in self._models:
            self._models[model_id] = ModelInfo(model_id, alias)
        self._aliases[alias.lower()] = model_id
        logger.debug("Model alias registered: %s → %s", alias, model_id)

    def list_aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    # ── Lookup ──────────────────────────────────────────────────

    def resolve(self, name: str) -> str | None:
        """Resolve a shorthand or full id. Returns None if unrecognised."""
        key = name.strip().lower()
        if not key:
            return None
        for model_id in self._models:
            if model_id.lower() == key:
                return model_id
        return self._aliases.get(key)

    def shorthand_for(self, model_id: str) -> str | None:
        info = self._models.get(model_id)
        return info.shorthand if info else None

    def list_models(self) -> list[ModelInfo]:
        return list(self._models.values())

    def to_summary(self, current: str | None = None) -> str:
        """Bullet list of models, marking *current*."""
        lines = []
        for info in self._models.values():
            display = f"{info.shorthand} ({info.model_id})"
            marker = " ✓ (current)" if info.model_id == current else ""
            lines.append(f"• `{display}`{marker}")
        return "\n".join(lines)


def build_default_registry(
    extra_aliases: dict[str, str] | None = None,
) -> ModelRegistry:
    """Registry with the built-in Claude models plus configured aliases."""
    registry = ModelRegistry()
    for info in DEFAULT_MODELS:
        registry.register(info)
    for alias, model_id in (extra_aliases or {}).items():
        registry.register_alias(alias, model_id)
    return registry
