"""chatbridge CLI: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from chatbridge.engine.config import BridgeConfig, RuntimeConfig, split_list
from chatbridge.engine.errors import ConfigError
from chatbridge.engine.yaml_config import (
    build_bridge_config,
    find_config_path,
    generate_config_template,
    load_config_file,
    local_config_path,
    parse_config_value,
    validate_file_config,
    write_config_file,
)
from chatbridge.shared.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

_SUBCOMMANDS = {"run", "config"}


def _log_runtime_compatibility() -> None:
    """Log the installed claude-agent-sdk version."""
    sdk_version = "unknown"
    try:
        from importlib.metadata import version

        sdk_version = version("claude-agent-sdk")
    except Exception:
        logger.debug("Could not resolve claude-agent-sdk version", exc_info=True)
    logger.info("Runtime versions: claude-agent-sdk=%s", sdk_version)


def configure_logging(level: str, log_dir: Path | None = None) -> Path:
    """Root logger to stderr plus a rotating file under ~/.chatbridge/logs."""
    log_dir = log_dir or Path.home() / ".chatbridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chatbridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


# ── Argument parsing ──


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatbridge",
        description="chatbridge: drive a Claude coding agent from a chat",
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run the bridge (default)")
    run.add_argument("-d", "--directory", help="Working directory for the agent")
    run.add_argument(
        "-m", "--mode",
        help="Permission mode: default, acceptEdits, bypassPermissions, plan, dontAsk",
    )
    run.add_argument(
        "-w", "--whitelist",
        help="Comma-separated sender ids allowed to talk to the agent",
    )
    run.add_argument("--model", help="Model id or shorthand (opus, sonnet, haiku...)")
    run.add_argument("--max-turns", type=int, help="Max agentic turns per query")
    run.add_argument("-v", "--verbose", action="store_true", default=None, help="Debug logging")
    run.add_argument("-c", "--config", metavar="PATH", help="Config file path")
    run.add_argument("--system-prompt", help="Replace the default system prompt")
    run.add_argument("--system-prompt-append", help="Append to the default system prompt")
    run.add_argument(
        "--load-claude-md", metavar="SOURCES",
        help="Comma-separated CLAUDE.md sources: user, project, local",
    )
    run.add_argument("--resume", metavar="SESSION_ID", help="Resume a session")
    run.add_argument(
        "--fork", action="store_true", default=None,
        help="Fork the resumed session instead of continuing it",
    )
    run.add_argument("--agent-name", help="Name prefixed to the agent's messages")
    run.add_argument("--host", help="HTTP bridge bind host (default: 127.0.0.1)")
    run.add_argument("--port", type=int, help="HTTP bridge port (default: 8787)")
    run.add_argument("--outbound-url", help="Webhook URL receiving outbound messages")
    run.add_argument(
        "--allow-all-group-participants", action="store_true", default=None,
        help="Accept group messages from non-whitelisted participants",
    )
    run.add_argument(
        "--permission-timeout", type=float, metavar="SECONDS",
        help="Auto-deny permission prompts after this long (0 disables)",
    )

    config = sub.add_parser("config", help="Manage the config file without running")
    config.add_argument("-c", "--config", metavar="PATH", help="Config file path")
    config.add_argument(
        "-d", "--directory", help="Working directory (for the local config file)",
    )
    config_sub = config.add_subparsers(dest="config_command", required=True)
    show = config_sub.add_parser("show", aliases=["list"], help="Show the config file")
    show.add_argument("--json", action="store_true", help="Output as JSON")
    get = config_sub.add_parser("get", help="Print one value")
    get.add_argument("key")
    set_ = config_sub.add_parser("set", help="Set one value")
    set_.add_argument("key")
    set_.add_argument("value")
    unset = config_sub.add_parser("unset", aliases=["delete"], help="Remove one value")
    unset.add_argument("key")
    init = config_sub.add_parser("init", help="Create a config file")
    init.add_argument("whitelist", help="Comma-separated sender ids")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")
    config_sub.add_parser("path", help="Show the config file path")
    config_sub.add_parser("export", help="Print the config file as JSON")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or (argv[0] not in _SUBCOMMANDS and argv[0] not in {"-h", "--help"}):
        argv.insert(0, "run")
    return build_parser().parse_args(argv)


def cli_layer(args: argparse.Namespace) -> dict[str, Any]:
    """Map ``run`` flags onto config keys; unset flags are None."""
    return {
        "config": args.config,
        "directory": args.directory,
        "mode": args.mode,
        "whitelist": split_list(args.whitelist) if args.whitelist else None,
        "model": args.model,
        "max_turns": args.max_turns,
        "verbose": args.verbose,
        "system_prompt": args.system_prompt,
        "system_prompt_append": args.system_prompt_append,
        "claude_md_sources": (
            split_list(args.load_claude_md) if args.load_claude_md else None
        ),
        "resume_session_id": args.resume,
        "fork_session": args.fork,
        "agent_name": args.agent_name,
        "host": args.host,
        "port": args.port,
        "outbound_url": args.outbound_url,
        "allow_all_group_participants": args.allow_all_group_participants,
        "permission_timeout_seconds": args.permission_timeout,
    }


# ── run ──


async def serve(bridge: BridgeConfig) -> None:
    """Run the bridge until SIGINT/SIGTERM."""
    from chatbridge.adapters.router import ConversationRouter
    from chatbridge.adapters.webhook import BridgeServer, WebhookTransport
    from chatbridge.engine.claude_backend import ClaudeBackend

    backend = ClaudeBackend()
    transport = WebhookTransport(bridge.outbound_url)
    router = ConversationRouter(bridge, backend, transport)
    server = BridgeServer(router, transport, host=bridge.host, port=bridge.port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler.
            pass

    await server.start()
    try:
        await router.start()
        await stop.wait()
        logger.info("Shutting down...")
    finally:
        await router.shutdown()
        await server.stop()
    logger.info("Goodbye!")


def run_command(args: argparse.Namespace) -> int:
    try:
        bridge = build_bridge_config(cli_layer(args))
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    if not bridge.whitelist:
        print(
            "No whitelist configured. Pass -w/--whitelist, set CHATBRIDGE_WHITELIST, "
            "or run `chatbridge config init <ids>`.",
            file=sys.stderr,
        )
        return 1

    log_file = configure_logging(bridge.log_level)
    runtime = bridge.runtime
    logger.info("Starting chatbridge log=%s", log_file)
    logger.info("Agent name: %s", runtime.agent_name)
    logger.info("Working directory: %s", runtime.working_directory)
    logger.info("Mode: %s", runtime.permission_mode.value)
    logger.info("Whitelisted senders: %s", ", ".join(bridge.whitelist))
    if bridge.config_path:
        logger.info("Config file: %s", bridge.config_path)
    if bridge.resume_session_id:
        logger.info(
            "Resuming session: %s%s",
            bridge.resume_session_id, " (forking)" if bridge.fork_session else "",
        )
        logger.warning(
            "Sessions are tied to the directory they were created in. If -d "
            "differs, the resume fails and a new session is started instead."
        )
    _log_runtime_compatibility()

    asyncio.run(serve(bridge))
    return 0


# ── config ──


def _format_value(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _missing(path: Path) -> int:
    print(f"No config file found at: {path}", file=sys.stderr)
    print('Use "chatbridge config init" to create one.', file=sys.stderr)
    return 1


def config_command(args: argparse.Namespace) -> int:
    path = find_config_path(args.config, args.directory)
    command = args.config_command

    try:
        if command in {"show", "list"}:
            if not path.is_file():
                return _missing(path)
            data = load_config_file(path)
            if args.json:
                print(json.dumps(data, indent=2, default=str))
            else:
                print(f"Config file: {path}\n")
                for key, value in data.items():
                    print(f"{key}: {_format_value(value)}")
            return 0

        if command == "get":
            if not path.is_file():
                return _missing(path)
            data = load_config_file(path)
            if args.key not in data:
                print(f'Key "{args.key}" not found in config.', file=sys.stderr)
                return 1
            print(_format_value(data[args.key]))
            return 0

        if command == "set":
            data = load_config_file(path)
            data[args.key] = parse_config_value(args.key, args.value)
            validate_file_config(data)
            write_config_file(path, data)
            print(f"Set {args.key}={_format_value(data[args.key])}")
            print(f"Saved to: {path}")
            return 0

        if command in {"unset", "delete"}:
            if not path.is_file():
                return _missing(path)
            data = load_config_file(path)
            if args.key not in data:
                print(f'Key "{args.key}" not found in config.', file=sys.stderr)
                return 1
            del data[args.key]
            write_config_file(path, data)
            print(f"Removed: {args.key}")
            print(f"Saved to: {path}")
            return 0

        if command == "init":
            target = Path(args.config).expanduser() if args.config else local_config_path(args.directory)
            if target.exists() and not args.force:
                print(f"Config file already exists: {target}", file=sys.stderr)
                print("Use --force to overwrite.", file=sys.stderr)
                return 1

            runtime = RuntimeConfig(
                working_directory=str(target.parent.resolve()), model="sonnet",
            )
            atomic_write_text(
                target, generate_config_template(split_list(args.whitelist), runtime),
            )
            print(f"Created config file: {target}")
            return 0

        if command == "path":
            print(path)
            if not path.is_file():
                print("(file does not exist)", file=sys.stderr)
            return 0

        if command == "export":
            if not path.is_file():
                return _missing(path)
            print(json.dumps(load_config_file(path), indent=2, default=str))
            return 0
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(f"Unknown config command: {command}", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.command == "config":
        sys.exit(config_command(args))
    sys.exit(run_command(args))


if __name__ == "__main__":
    main()
