"""Slash command parser, alias table, and group-chat targeting."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass
class ParsedCommand:
    """A parsed slash command."""

    name: str       # lowercased token after '/'
    canonical: str  # name after alias resolution ("" if unknown)
    args: str       # raw trailing text, internal casing/whitespace kept
    raw: str

    @property
    def known(self) -> bool:
        return bool(self.canonical)


# alias -> canonical handler name
COMMAND_ALIASES: dict[str, str] = {
    "clear": "clear",
    "status": "status",
    "help": "help",
    "mode": "mode",
    "plan": "plan",
    "readonly": "plan",
    "default": "default",
    "normal": "default",
    "acceptedits": "acceptedits",
    "accept-edits": "acceptedits",
    "bypass": "bypass",
    "yolo": "bypass",
    "bypasspermissions": "bypass",
    "dontask": "dontask",
    "dont-ask": "dontask",
    "session": "session",
    "fork": "fork",
    "cd": "cd",
    "dir": "cd",
    "directory": "cd",
    "model": "model",
    "models": "models",
    "name": "name",
    "agentname": "name",
    "agent-name": "name",
    "prompt": "prompt",
    "systemprompt": "prompt",
    "promptappend": "promptappend",
    "appendprompt": "promptappend",
    "claudemd": "claudemd",
    "settings": "claudemd",
    "config": "config",
}

_COMMAND_RE = re.compile(r"^/(\S*)(?:\s+(.*))?$", re.DOTALL)


def is_command(text: str) -> bool:
    """A message is a command iff its first non-whitespace character is '/'."""
    return text.lstrip().startswith("/")


def parse_command(text: str) -> ParsedCommand | None:
    """Parse a /command from input text.

    Returns None if text does not start with '/'.
    """
    stripped = text.strip()
    match = _COMMAND_RE.match(stripped)
    if match is None:
        return None
    name = match.group(1).lower()
    args = (match.group(2) or "").strip()
    return ParsedCommand(
        name=name,
        canonical=COMMAND_ALIASES.get(name, ""),
        args=args,
        raw=stripped,
    )


# ── Group-chat targeting ──

_GENERIC_TARGETS = ("ai", "agent")
# A target must end at whitespace, punctuation, or end of text so that
# "@aidan" is not read as "@ai".
_TARGET_END = r"(?=$|[\s,:;.!?])[\s,:;]*"


def _target_pattern(name: str) -> str:
    words = name.split()
    return r"\s+".join(re.escape(w) for w in words)


def strip_group_target(text: str, agent_name: str) -> str | None:
    """Return *text* without its targeting prefix, or None if untargeted.

    Accepted prefixes (case-insensitive): ``@<agent_name>``, ``@ai``,
    ``@agent``, ``/ask <agent_name>``, ``/ask``. Multi-word agent names
    may be separated by any whitespace.
    """
    stripped = text.strip()
    names = [n for n in (agent_name.strip(),) if n]
    mention_targets = [_target_pattern(n) for n in names]
    mention_targets += [re.escape(t) for t in _GENERIC_TARGETS]

    for target in mention_targets:
        match = re.match(rf"@{target}{_TARGET_END}", stripped, re.IGNORECASE)
        if match:
            return stripped[match.end():].strip()

    ask = re.match(rf"/ask{_TARGET_END}", stripped, re.IGNORECASE)
    if ask:
        remainder = stripped[ask.end():]
        for name in names:
            named = re.match(
                rf"{_target_pattern(name)}{_TARGET_END}", remainder, re.IGNORECASE,
            )
            if named:
                remainder = remainder[named.end():]
                break
        return remainder.strip()
    return None


COMMAND_HELP: list[tuple[str, list[tuple[str, str]]]] = [
    ("Session & Directory", [
        ("/clear", "Clear conversation history"),
        ("/status", "Show agent status"),
        ("/session", "Show current session ID"),
        ("/session <id>", "Set session ID to resume"),
        ("/session clear", "Start a new session"),
        ("/fork", "Fork current session (branch off)"),
        ("/cd", "Show current working directory"),
        ("/cd <path>", "Change working directory"),
        ("/help", "Show this help message"),
    ]),
    ("Agent & Model", [
        ("/name", "Show current agent name"),
        ("/name <name>", "Change agent name"),
        ("/model", "Show current model"),
        ("/model <name>", "Switch to a different model"),
        ("/models", "List all available models"),
    ]),
    ("Permission Modes", [
        ("/mode", "Show current permission mode"),
        ("/plan", "Switch to plan mode (read-only)"),
        ("/default", "Switch to default mode (asks for permission)"),
        ("/acceptEdits", "Auto-accept file edits"),
        ("/bypass", "Bypass all permissions (dangerous!)"),
        ("/dontAsk", "Deny if not pre-approved"),
    ]),
    ("System Prompt", [
        ("/prompt", "Show current system prompt"),
        ("/prompt <text>", "Set custom system prompt"),
        ("/prompt clear", "Reset to default"),
        ("/promptappend <text>", "Append to default prompt"),
        ("/promptappend clear", "Clear append"),
    ]),
    ("CLAUDE.md Settings", [
        ("/claudemd", "Show current sources"),
        ("/claudemd user,project", "Load user & project CLAUDE.md"),
        ("/claudemd clear", "Disable CLAUDE.md loading"),
    ]),
    ("Configuration File", [
        ("/config", "Show current runtime config"),
        ("/config path", "Show config file location"),
        ("/config save", "Save current config to file"),
        ("/config generate", "Generate a config template"),
        ("/config reload", "View config file contents"),
    ]),
]

CONFIG_HELP: list[tuple[str, str]] = [
    ("/config", "Show current runtime configuration"),
    ("/config show", "Same as above"),
    ("/config path", "Show config file location"),
    ("/config save", "Save current config to file"),
    ("/config generate", "Generate a config template"),
    ("/config reload", "View config file contents"),
]
