"""Claude Agent SDK backend.

Each turn is a separate ``claude_agent_sdk.query()`` call. Continuity
across turns comes from the resumable session id (``resume``) plus the
history snapshot prepended to the prompt.
"""
from __future__ import annotations

import logging
import os
import shutil
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
    query,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from .backend import AssistantBackend, build_prompt
from .config import RuntimeConfig
from .mode_policy import Decision, decide, deny_reason
from .models import PermissionHandler, QueryRequest, QueryResult

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response generated."
_STDERR_TAIL_LINES = 20


def build_system_prompt(config: RuntimeConfig) -> str | dict[str, str]:
    """Custom prompt replaces the preset; an append extends it."""
    if config.system_prompt:
        return config.system_prompt
    preset: dict[str, str] = {"type": "preset", "preset": "claude_code"}
    if config.system_prompt_append:
        preset["append"] = config.system_prompt_append
    return preset


def resolve_cli_path() -> str | None:
    """System CLI from CHATBRIDGE_CLAUDE_CLI_PATH, else the SDK's bundled one."""
    cli_path = os.getenv("CHATBRIDGE_CLAUDE_CLI_PATH", "").strip()
    if not cli_path:
        return None
    resolved = shutil.which(cli_path)
    if resolved is None:
        logger.warning(
            "Configured Claude CLI not found: %s; falling back to SDK default",
            cli_path,
        )
    return resolved


class ClaudeBackend(AssistantBackend):
    """Backend backed by the Claude Agent SDK."""

    def __init__(self, cli_path: str | None = None) -> None:
        self._cli_path = cli_path if cli_path is not None else resolve_cli_path()

    @property
    def name(self) -> str:
        return "claude"

    def build_options(
        self, request: QueryRequest, stderr_lines: list[str] | None = None,
    ) -> ClaudeAgentOptions:
        config = request.config

        def _capture_stderr(line: str) -> None:
            if stderr_lines is not None:
                stderr_lines.append(line)
            logger.debug("claude stderr: %s", line.rstrip())

        options_kwargs: dict[str, Any] = dict(
            cwd=config.working_directory,
            model=config.model,
            permission_mode=config.permission_mode.value,
            system_prompt=build_system_prompt(config),
            setting_sources=list(config.claude_md_sources or []),
            can_use_tool=self._make_tool_gate(config, request.permission_handler),
            stderr=_capture_stderr,
        )
        if config.max_turns is not None:
            options_kwargs["max_turns"] = config.max_turns
        if request.session_id:
            options_kwargs["resume"] = request.session_id
            options_kwargs["fork_session"] = request.fork_session
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path
        return ClaudeAgentOptions(**options_kwargs)

    async def query(self, request: QueryRequest) -> QueryResult:
        config = request.config
        logger.info(
            "Querying Claude SDK mode=%s model=%s cwd=%s resume=%s fork=%s",
            config.permission_mode.value,
            config.model,
            config.working_directory,
            (request.session_id or "none")[:12],
            request.fork_session,
        )

        full_prompt = build_prompt(request)
        logger.debug("Prompt length: %d chars", len(full_prompt))

        stderr_lines: list[str] = []
        options = self.build_options(request, stderr_lines)

        # can_use_tool needs streaming mode, so the prompt is always an
        # async iterable rather than a plain string.
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": full_prompt},
            }

        text_parts: list[str] = []
        tools_used: list[str] = []
        session_id = request.session_id
        cost_usd: float | None = None
        notified = False
        message_count = 0

        try:
            async for message in query(prompt=_prompt_stream(), options=options):
                message_count += 1
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock) and block.text:
                            text_parts.append(block.text)
                        elif isinstance(block, ToolUseBlock):
                            logger.info(
                                "Claude tool_use id=%s name=%s",
                                str(block.id)[:12], block.name,
                            )
                            tools_used.append(block.name)
                elif isinstance(message, SystemMessage):
                    if message.subtype != "init":
                        continue
                    new_id = (message.data or {}).get("session_id")
                    if not new_id:
                        continue
                    is_new = new_id != session_id
                    session_id = new_id
                    logger.info("Session ID captured: %s", new_id)
                    if is_new and not notified and request.on_session_created:
                        notified = True
                        request.on_session_created(new_id)
                elif isinstance(message, ResultMessage):
                    cost_usd = message.total_cost_usd
                    logger.info(
                        "Query completed cost=%s is_error=%s subtype=%s turns=%s",
                        f"${cost_usd:.4f}" if cost_usd is not None else "unknown",
                        message.is_error,
                        message.subtype,
                        message.num_turns,
                    )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("SDK query error: %s", error)
            logger.debug("SDK query traceback", exc_info=True)
            if stderr_lines:
                logger.debug(
                    "claude stderr tail:\n%s",
                    "".join(stderr_lines[-_STDERR_TAIL_LINES:]),
                )
            return QueryResult(
                error=error,
                tools_used=tools_used,
                session_id=session_id,
            )

        text = "".join(text_parts)
        logger.info(
            "Response: %d chars, %d tools used, %d messages processed",
            len(text), len(tools_used), message_count,
        )
        return QueryResult(
            text=text or NO_RESPONSE_TEXT,
            tools_used=tools_used,
            session_id=session_id,
            cost_usd=cost_usd,
        )

    def _make_tool_gate(
        self, config: RuntimeConfig, handler: PermissionHandler | None,
    ):
        """Build the SDK ``can_use_tool`` callback for one query.

        The handler owns the decision (mode policy, then asking the
        human). Without one, only tools the policy allows outright run.
        """
        mode = config.permission_mode

        async def _can_use_tool(tool_name: str, tool_input: dict[str, Any], context):
            logger.debug("can_use_tool invoked: %s (%s mode)", tool_name, mode.value)
            if handler is not None:
                allowed = await handler(tool_name, tool_input)
            else:
                allowed = decide(mode, tool_name) is Decision.ALLOW
                if not allowed:
                    logger.warning(
                        "No permission handler registered, denying %s", tool_name,
                    )
            if allowed:
                return PermissionResultAllow(updated_input=tool_input)
            if decide(mode, tool_name) is Decision.DENY:
                return PermissionResultDeny(message=deny_reason(mode, tool_name))
            return PermissionResultDeny(message="User denied permission")

        return _can_use_tool
