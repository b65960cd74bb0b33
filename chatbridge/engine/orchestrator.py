"""Per-conversation orchestrator.

Owns one conversation's RuntimeConfig, HistoryLog, SessionLifecycle and
PermissionArbiter, and decides what each inbound message is: a reply to
a pending permission prompt, a slash command, or a conversational turn
for the assistant backend.

Conversational turns are serialized by an asyncio.Lock (FIFO), so they
reach the backend in receipt order. Permission replies and commands are
not serialized; a Y/N reply must be able to land while the query that
asked for it is suspended.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Callable

from chatbridge.shared.commands import (
    COMMAND_HELP,
    CONFIG_HELP,
    ParsedCommand,
    is_command,
    parse_command,
    strip_group_target,
)
from chatbridge.shared.formatters import format_tool_input

from . import mode_policy
from .backend import AssistantBackend
from .config import VALID_SETTING_SOURCES, BridgeConfig, RuntimeConfig
from .errors import BridgeError, ConfigError
from .history import HistoryLog
from .model_registry import ModelRegistry, build_default_registry
from .models import (
    InboundMessage,
    PermissionMode,
    PermissionRequest,
    QueryRequest,
    ReplyChannel,
    TypingChannel,
)
from .permissions import PermissionArbiter
from .session import SessionLifecycle
from .yaml_config import (
    generate_config_template,
    load_config_file,
    local_config_path,
    save_config_file,
)

logger = logging.getLogger(__name__)

# Resuming a session from another directory makes the CLI exit non-zero.
RESUME_FAILURE_PATTERN = re.compile(
    r"process exited with code|exit code:?\s*\d+", re.IGNORECASE,
)

SESSION_CLEARED_NOTE = (
    "\n\n⚠️ Session cleared. A new session will start with your next message."
)
RESUME_FAILED_TEXT = (
    "❌ Failed to resume session (sessions are tied to the directory they "
    "were created in). Please send your message again to start a new session."
)
MODEL_HINT = (
    "Use /models to see available models.\n"
    "Shorthands: opus, sonnet, haiku, opus-4.5, sonnet-4, etc."
)
PREVIEW_CHARS = 500
CONFIG_PREVIEW_CHARS = 1500

_MODE_REPLIES = {
    PermissionMode.PLAN: "✓ Switched to *plan* mode. Claude can only read files.",
    PermissionMode.DEFAULT: (
        "✓ Switched to *default* mode. Claude will ask permission for writes."
    ),
    PermissionMode.ACCEPT_EDITS: (
        "✓ Switched to *acceptEdits* mode. Claude can edit files without asking."
    ),
    PermissionMode.BYPASS: (
        "⚠️ Switched to *bypassPermissions* mode. "
        "Claude has full access without confirmation!"
    ),
    PermissionMode.DONT_ASK: (
        "✓ Switched to *dontAsk* mode. "
        "Claude will not prompt, denies if not pre-approved."
    ),
}

_MODE_COMMANDS = {
    "plan": PermissionMode.PLAN,
    "default": PermissionMode.DEFAULT,
    "acceptedits": PermissionMode.ACCEPT_EDITS,
    "bypass": PermissionMode.BYPASS,
    "dontask": PermissionMode.DONT_ASK,
}

_RESET_WORDS = {"clear", "reset"}


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class ConversationOrchestrator:
    """Handles every inbound message for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        config: RuntimeConfig,
        backend: AssistantBackend,
        bridge: BridgeConfig | None = None,
        model_registry: ModelRegistry | None = None,
        session_id: str | None = None,
        fork_on_next_query: bool = False,
    ) -> None:
        self.conversation_id = conversation_id
        self._config = config
        self._backend = backend
        self._bridge = bridge or BridgeConfig(runtime=config)
        self._registry = model_registry or build_default_registry(
            self._bridge.model_aliases,
        )
        self._history = HistoryLog()
        self._session = SessionLifecycle(
            config,
            self._history,
            self._registry,
            session_id=session_id,
            fork_on_next_query=fork_on_next_query,
        )
        self._arbiter = PermissionArbiter(
            notify=self._notify_permission,
            timeout_seconds=self._bridge.permission_timeout_seconds,
        )
        self._query_lock = asyncio.Lock()
        # Reply channel of the query currently holding the lock; permission
        # prompts raised by that query go back through it.
        self._active_reply: ReplyChannel | None = None

        self._handlers = {
            "clear": self._cmd_clear,
            "status": self._cmd_status,
            "help": self._cmd_help,
            "mode": self._cmd_mode,
            "session": self._cmd_session,
            "fork": self._cmd_fork,
            "cd": self._cmd_cd,
            "model": self._cmd_model,
            "models": self._cmd_models,
            "name": self._cmd_name,
            "prompt": self._cmd_prompt,
            "promptappend": self._cmd_promptappend,
            "claudemd": self._cmd_claudemd,
            "config": self._cmd_config,
        }

    # ── Read-only views ──

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def history(self) -> HistoryLog:
        return self._history

    @property
    def session(self) -> SessionLifecycle:
        return self._session

    @property
    def arbiter(self) -> PermissionArbiter:
        return self._arbiter

    @property
    def pending_permissions(self) -> list[PermissionRequest]:
        return self._arbiter.pending()

    # ── Entry point ──

    async def handle(
        self,
        message: InboundMessage,
        reply: ReplyChannel,
        typing: TypingChannel | None = None,
    ) -> None:
        text = message.text
        if message.is_group:
            targeted = strip_group_target(text, self._config.agent_name)
            if targeted is None:
                logger.debug(
                    "Ignoring untargeted group message conv=%s id=%s",
                    self.conversation_id[:12], message.id,
                )
                return
            text = targeted
        if not text.strip():
            return

        if self._arbiter.pending_count > 0:
            if self._arbiter.try_resolve_from_message(text):
                return

        if is_command(text):
            parsed = parse_command(text)
            if parsed is not None:
                await self._dispatch_command(parsed, reply)
            return

        await self._run_query(text, reply, typing)

    def resolve_permission(self, request_id: str, allowed: bool) -> bool:
        return self._arbiter.resolve(request_id, allowed)

    async def dispose(self) -> None:
        cancelled = self._arbiter.cancel_all()
        self._history.clear()
        logger.info(
            "Orchestrator disposed conv=%s cancelled_permissions=%d",
            self.conversation_id[:12], cancelled,
        )

    # ── Conversational turns ──

    async def _run_query(
        self, text: str, reply: ReplyChannel, typing: TypingChannel | None,
    ) -> None:
        async with self._query_lock:
            self._active_reply = reply
            try:
                await self._query_locked(text, reply, typing)
            finally:
                self._active_reply = None

    async def _query_locked(
        self, text: str, reply: ReplyChannel, typing: TypingChannel | None,
    ) -> None:
        logger.info(
            "Processing message with %s conv=%s chars=%d",
            self._backend.name, self.conversation_id[:12], len(text),
        )
        if typing is not None:
            try:
                await typing()
            except Exception:
                logger.warning("Typing indicator failed", exc_info=True)

        history = self._history.snapshot_for_prompt()
        mark = len(self._history)
        session_generation = self._session.generation
        history_generation = self._history.generation
        self._history.add_user(text)
        resumed_session = self._session.session_id
        request = QueryRequest(
            prompt=text,
            history=history,
            config=self._config.copy(),
            session_id=resumed_session,
            fork_session=self._session.consume_fork_flag(),
            permission_handler=self._handle_tool_permission,
            on_session_created=self._session_created_callback(session_generation),
        )

        try:
            result = await self._backend.query(request)
        except asyncio.CancelledError:
            self._history.truncate(mark)
            raise
        except Exception as exc:
            self._history.truncate(mark)
            logger.exception("Error processing message conv=%s", self.conversation_id[:12])
            await reply(f"❌ An error occurred: {exc}")
            return

        if not result.ok:
            self._history.truncate(mark)
            if (
                resumed_session
                and self._session.generation == session_generation
                and RESUME_FAILURE_PATTERN.search(result.error or "")
            ):
                logger.warning(
                    "Session resume failed conv=%s session=%s; clearing session",
                    self.conversation_id[:12], resumed_session[:12],
                )
                self._session.clear_session()
                await reply(RESUME_FAILED_TEXT)
                return
            await reply(f"❌ Error: {result.error}")
            return

        if (
            self._session.generation == session_generation
            and self._history.generation == history_generation
        ):
            self._history.add_assistant(result.text)
        else:
            self._history.truncate(mark)
            logger.info(
                "Conversation was reset mid-query conv=%s; turn not kept in history",
                self.conversation_id[:12],
            )
        if result.tools_used:
            logger.debug("Tools used: %s", ", ".join(result.tools_used))
        logger.info(
            "Response received conv=%s chars=%d tools=%d",
            self.conversation_id[:12], len(result.text), len(result.tools_used),
        )
        await reply(result.text)

    def _session_created_callback(self, generation: int) -> Callable[[str], None]:
        def on_session_created(session_id: str) -> None:
            if self._session.generation != generation:
                logger.info(
                    "Ignoring session %s minted before the session was reset",
                    session_id,
                )
                return
            self._session.on_session_created(session_id)

        return on_session_created

    async def _handle_tool_permission(self, tool_name: str, tool_input: Any) -> bool:
        mode = self._config.permission_mode
        decision = mode_policy.decide(mode, tool_name)
        if decision is mode_policy.Decision.ALLOW:
            return True
        if decision is mode_policy.Decision.DENY:
            logger.info("Denied %s in %s mode", tool_name, mode.value)
            return False
        logger.info("Tool %s requires permission in %s mode", tool_name, mode.value)
        description = format_tool_input(tool_name, tool_input)
        return await self._arbiter.request(tool_name, description, tool_input)

    async def _notify_permission(self, request: PermissionRequest) -> None:
        reply = self._active_reply
        if reply is None:
            raise RuntimeError("no reply channel for permission prompt")
        await reply(self._arbiter.format_request(request))

    # ── Commands ──

    async def _dispatch_command(self, parsed: ParsedCommand, reply: ReplyChannel) -> None:
        logger.info(
            "Command /%s conv=%s", parsed.name, self.conversation_id[:12],
        )
        if parsed.canonical in _MODE_COMMANDS:
            await self._set_mode(_MODE_COMMANDS[parsed.canonical], reply)
            return
        handler = self._handlers.get(parsed.canonical)
        if handler is None:
            await reply(
                f"Unknown command: /{parsed.name}\n\nType /help for available commands."
            )
            return
        try:
            await handler(parsed.args, reply)
        except BridgeError as exc:
            # Handlers catch their own input errors; this is the backstop.
            logger.warning("Command /%s failed: %s", parsed.name, exc)
            await reply(f"❌ {exc}")

    async def _set_mode(self, mode: PermissionMode, reply: ReplyChannel) -> None:
        self._session.on_mode_change(mode)
        await reply(_MODE_REPLIES[mode])

    async def _cmd_clear(self, args: str, reply: ReplyChannel) -> None:
        self._history.clear()
        await reply("✓ Conversation cleared.")

    async def _cmd_status(self, args: str, reply: ReplyChannel) -> None:
        await reply(self.status_text())

    async def _cmd_help(self, args: str, reply: ReplyChannel) -> None:
        await reply(self.help_text())

    async def _cmd_mode(self, args: str, reply: ReplyChannel) -> None:
        if args:
            try:
                mode = PermissionMode.parse(args)
            except ValueError:
                await reply(
                    f"❌ Unknown mode: {args}\n\nValid modes: "
                    + ", ".join(m.value for m in PermissionMode)
                )
                return
            await self._set_mode(mode, reply)
            return
        await reply(f"Current mode: *{self._config.permission_mode.value}*")

    async def _cmd_session(self, args: str, reply: ReplyChannel) -> None:
        current = self._session.session_id
        if not args:
            if current:
                await reply(
                    f"*Current Session:*\n\n`{current}`\n\n"
                    "Use this ID with `--resume` to continue this conversation later."
                )
            else:
                await reply(
                    "No active session yet. Send a message to Claude to start a session."
                )
            return

        if args.lower() in {"clear", "new"}:
            self._session.clear_session()
            await reply(
                "✓ Session cleared. A new session will be started on the next message."
            )
            return

        self._session.set_session_id(args)
        await reply(f"✓ Session set to: `{args}`\n\nNext message will resume this session.")

    async def _cmd_fork(self, args: str, reply: ReplyChannel) -> None:
        try:
            self._session.enable_fork_for_next_query()
        except BridgeError:
            await reply(
                "❌ No active session to fork. Start a conversation first, "
                "then use /fork to branch it."
            )
            return
        await reply(
            f"✓ Fork enabled for session `{self._session.session_id}`.\n\n"
            "Your next message will create a new branch from this session. "
            "The original session remains unchanged."
        )

    async def _cmd_cd(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            await reply(f"📁 Working directory: `{self._config.working_directory}`")
            return

        had_session = self._session.session_id is not None
        try:
            target = self._session.on_directory_change(args)
        except BridgeError as exc:
            await reply(f"❌ {exc}")
            return

        response = f"✓ Working directory changed to: `{target}`"
        if had_session:
            response += (
                "\n\n⚠️ Previous session was cleared (sessions are tied to their "
                "original directory). A new session will start with your next message."
            )
        await reply(response)

    async def _cmd_model(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            await reply(f"🤖 Current model: `{self._config.model}`\n\n{MODEL_HINT}")
            return

        requested = args.strip()
        had_session = self._session.session_id is not None
        try:
            resolved = self._session.on_model_change(requested)
        except BridgeError:
            await reply(f"❌ Unknown model: `{requested}`\n\n{MODEL_HINT}")
            return

        if requested != resolved:
            response = f'✓ Model changed to: `{resolved}` (from "{requested}")'
        else:
            response = f"✓ Model changed to: `{resolved}`"
        if had_session:
            response += (
                "\n\n⚠️ Previous session was cleared. "
                "A new session will start with your next message."
            )
        await reply(response)

    async def _cmd_models(self, args: str, reply: ReplyChannel) -> None:
        listing = self._registry.to_summary(current=self._config.model)
        await reply(
            f"*Available Models:*\n\n{listing}\n\n"
            "Use `/model <shorthand>` to switch (e.g., `/model opus-4-5`)."
        )

    async def _cmd_name(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            await reply(f"🤖 Agent name: *{self._config.agent_name}*")
            return
        try:
            name = self._session.on_agent_name_change(args)
        except BridgeError:
            await reply("❌ Agent name cannot be empty.")
            return
        await reply(f"✓ Agent name changed to: *{name}*")

    async def _cmd_prompt(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            if self._config.system_prompt:
                await reply(
                    f"*Current system prompt:*\n\n{_preview(self._config.system_prompt)}"
                )
            elif self._config.system_prompt_append:
                await reply(
                    f"*System prompt append:*\n\n{_preview(self._config.system_prompt_append)}"
                )
            else:
                await reply("Using default Claude Code system prompt.")
            return

        had_session = self._session.session_id is not None
        if args.lower() in _RESET_WORDS:
            self._session.on_system_prompt_change(None)
            response = "✓ System prompt reset to default."
        else:
            self._session.on_system_prompt_change(args)
            response = f"✓ System prompt set ({len(args)} chars)."
        if had_session:
            response += SESSION_CLEARED_NOTE
        await reply(response)

    async def _cmd_promptappend(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            if self._config.system_prompt_append:
                await reply(
                    f"*Current prompt append:*\n\n{_preview(self._config.system_prompt_append)}"
                )
            else:
                await reply("No text appended to system prompt.")
            return

        had_session = self._session.session_id is not None
        if args.lower() in _RESET_WORDS:
            self._session.on_system_prompt_append_change(None)
            response = "✓ Prompt append cleared."
        else:
            self._session.on_system_prompt_append_change(args)
            response = (
                f"✓ Text will be appended to default system prompt ({len(args)} chars)."
            )
        if had_session:
            response += SESSION_CLEARED_NOTE
        await reply(response)

    async def _cmd_claudemd(self, args: str, reply: ReplyChannel) -> None:
        if not args:
            if self._config.claude_md_sources:
                await reply(
                    f"*CLAUDE.md sources:* {', '.join(self._config.claude_md_sources)}"
                )
            else:
                await reply(
                    "No CLAUDE.md sources configured. "
                    "Use `/claudemd user,project` to enable."
                )
            return

        if args.lower() in {"clear", "none"}:
            self._session.on_claude_md_sources_change(None)
            await reply("✓ CLAUDE.md loading disabled.")
            return

        sources = [s.strip().lower() for s in args.split(",") if s.strip()]
        try:
            self._session.on_claude_md_sources_change(sources)
        except BridgeError as exc:
            invalid = getattr(exc, "invalid", [])
            await reply(
                f"❌ Invalid sources: {', '.join(invalid)}\n\n"
                f"Valid sources: {', '.join(VALID_SETTING_SOURCES)}"
            )
            return
        await reply(f"✓ CLAUDE.md sources set to: {', '.join(sources)}")

    async def _cmd_config(self, args: str, reply: ReplyChannel) -> None:
        subcommand = args.strip().lower()
        config_path = local_config_path(self._config.working_directory)

        if subcommand in {"", "show", "list"}:
            await reply(self.config_text())
            return

        if subcommand == "path":
            exists = "✓ File exists" if config_path.is_file() else "⚠️ File does not exist"
            await reply(f"📁 Config file path:\n`{config_path}`\n\n{exists}")
            return

        if subcommand == "save":
            try:
                saved = save_config_file(self._bridge, runtime=self._config)
            except OSError as exc:
                logger.error("Config save failed: %s", exc)
                await reply(f"❌ Failed to save config: {exc}")
                return
            await reply(f"✓ Configuration saved to:\n`{saved}`")
            return

        if subcommand in {"generate", "template"}:
            template = generate_config_template(self._bridge.whitelist, self._config)
            await reply(
                f"*Config template:*\n\n```yaml\n{template}```\n\n"
                f"Save this to:\n`{config_path}`"
            )
            return

        if subcommand == "reload":
            try:
                file_config = load_config_file(config_path)
            except ConfigError as exc:
                await reply(f"❌ {exc}")
                return
            if not file_config:
                await reply(
                    f"⚠️ No config file found at:\n`{config_path}`\n\n"
                    "Use `/config generate` to create a template."
                )
                return
            dumped = json.dumps(file_config, indent=2, default=str)
            truncated = "\n..." if len(dumped) > CONFIG_PREVIEW_CHARS else ""
            await reply(
                f"*Config file contents:*\n\n```json\n"
                f"{dumped[:CONFIG_PREVIEW_CHARS]}{truncated}\n```\n\n"
                "⚠️ Restart the agent to apply config file changes."
            )
            return

        lines = [f"Unknown config command: {subcommand}", "", "*Available /config commands:*"]
        lines += [f"{cmd} - {desc}" for cmd, desc in CONFIG_HELP]
        await reply("\n".join(lines))

    # ── Text views ──

    def status_text(self) -> str:
        session_id = self._session.session_id
        session = f"`{session_id}`" if session_id else "none (new session)"
        if self._session.fork_on_next_query:
            session += " (fork on next message)"
        config = self._config
        return "\n".join([
            "*Agent Status:*",
            "",
            f"🤖 Agent: *{config.agent_name}*",
            f"📁 Working directory: `{config.working_directory}`",
            f"🔐 Mode: {config.permission_mode.value}",
            f"🧠 Model: {config.model}",
            f"🔗 Session: {session}",
            f"💬 Conversation length: {len(self._history)} messages",
            f"⏳ Pending permissions: {self._arbiter.pending_count}",
            f"📝 System prompt: {config.prompt_status}",
            f"📄 CLAUDE.md sources: {config.claude_md_status}",
        ])

    def help_text(self) -> str:
        lines = ["*Available Commands:*"]
        for section, commands in COMMAND_HELP:
            lines += ["", f"*{section}:*"]
            lines += [f"{cmd} - {desc}" for cmd, desc in commands]
        lines += ["", f"*Valid CLAUDE.md sources:* {', '.join(VALID_SETTING_SOURCES)}"]
        return "\n".join(lines)

    def config_text(self) -> str:
        config = self._config
        bridge = self._bridge
        return "\n".join([
            "*Current Configuration:*",
            "",
            "*Core Settings:*",
            f"• whitelist: {', '.join(bridge.whitelist) or '(none)'}",
            f"• directory: `{config.working_directory}`",
            f"• mode: {config.permission_mode.value}",
            f"• model: {config.model}",
            f"• max_turns: {config.max_turns if config.max_turns is not None else 'unlimited'}",
            "",
            "*Agent:*",
            f"• agent_name: {config.agent_name}",
            f"• verbose: {str(bridge.verbose).lower()}",
            f"• permission_timeout_seconds: {bridge.permission_timeout_seconds:g}",
            "",
            "*Prompts & Settings:*",
            f"• system_prompt: {config.prompt_status}",
            f"• claude_md_sources: {config.claude_md_status}",
            "",
            "Use `/config save` to save to file.",
        ])
