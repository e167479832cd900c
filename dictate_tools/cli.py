"""Command-line interface for Dictate Tools."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Optional

from .app import DictateToolsApp
from .config import ServerConfig, validate_server_config
from .llm_tools import LLMToolError
from .logging_config import setup_logging
from .orchestrator import UnknownToolError
from . import credentials, settings_store


async def cmd_tools(app: DictateToolsApp, args: argparse.Namespace) -> int:
    tools = app.orchestrator.get_available_tools()
    if args.json:
        print(json.dumps([tool.to_openai_tool()["function"] | {"owner": tool.owner} for tool in tools], indent=2))
        return 0
    for tool in tools:
        print(f"{tool.name:<28} [{tool.owner}] {tool.description}")
    return 0


async def cmd_status(app: DictateToolsApp, args: argparse.Namespace) -> int:
    status = app.orchestrator.get_server_status(include_disabled=True)
    if args.json:
        print(json.dumps(status, indent=2))
        return 0
    if not status:
        print("(no tool servers configured)")
        return 0
    for server_id, info in status.items():
        line = f"{server_id:<20} {info['status']:<10} tools={info['tool_count']}"
        if info["error"]:
            line += f"  error: {info['error']}"
        print(line)
    return 0


def _parse_env(pairs: Optional[list[str]]) -> Optional[dict[str, str]]:
    if not pairs:
        return None
    env = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got '{pair}'")
        env[name] = value
    return env


def _command_line_config(args: argparse.Namespace) -> ServerConfig:
    """Build a config from ``--command CMD ARGS...``.

    Raises:
        ValueError: If the command line or an --env pair is malformed
    """
    if not args.server_command:
        raise ValueError("--command needs the server executable")
    return ServerConfig(
        id=args.server_id,
        command=args.server_command[0],
        args=list(args.server_command[1:]),
        timeout_ms=args.timeout,
        env=_parse_env(args.env),
    )


async def cmd_test_server(app: DictateToolsApp, args: argparse.Namespace) -> int:
    if args.server_command is not None:
        try:
            config = _command_line_config(args)
        except ValueError as e:
            print(str(e))
            return 2
    else:
        raw = (app.settings.get("mcp_servers") or {}).get(args.server_id)
        if raw is None:
            print(f"No tool server named '{args.server_id}' in settings. Use --command for an ad-hoc test.")
            return 2
        config = raw
        if args.timeout is not None and isinstance(raw, Mapping):
            config = {**raw, "timeout": args.timeout}

    result = await app.orchestrator.test_server_connection(args.server_id, config)
    if result["success"]:
        print(f"{args.server_id}: OK")
        return 0
    print(f"{args.server_id}: FAILED ({result['error']})")
    return 1


async def cmd_add_server(app: DictateToolsApp, args: argparse.Namespace) -> int:
    try:
        config = _command_line_config(args)
    except ValueError as e:
        print(str(e))
        return 2

    error = validate_server_config(config)
    if error:
        print(f"{args.server_id}: {error}")
        return 2
    if not args.no_test:
        result = await app.orchestrator.test_server_connection(args.server_id, config)
        if not result["success"]:
            print(f"{args.server_id}: FAILED ({result['error']}), not saved")
            return 1

    settings = settings_store.load_settings()
    settings_store.set_server_config(settings, config)
    if not settings_store.save_settings(settings):
        print("Could not save settings, see the log for details")
        return 1
    print(f"Saved tool server '{args.server_id}'")
    return 0


async def cmd_remove_server(app: DictateToolsApp, args: argparse.Namespace) -> int:
    settings = settings_store.load_settings()
    if not settings_store.remove_server_config(settings, args.server_id):
        print(f"No tool server named '{args.server_id}' in settings.")
        return 2
    if not settings_store.save_settings(settings):
        print("Could not save settings, see the log for details")
        return 1
    print(f"Removed tool server '{args.server_id}'")
    return 0


async def cmd_set_secret(app: DictateToolsApp, args: argparse.Namespace) -> int:
    value = args.value if args.value is not None else getpass.getpass(f"Value for {args.name}: ")
    try:
        credentials.store_credential(args.name, value)
    except (credentials.CredentialStorageError, ValueError) as e:
        print(f"Could not store secret: {e}")
        return 1
    print(f"Stored secret '{args.name}'. Reference it in a server env as keyring:{args.name}")
    return 0


async def cmd_delete_secret(app: DictateToolsApp, args: argparse.Namespace) -> int:
    try:
        credentials.delete_credential(args.name)
    except (credentials.CredentialStorageError, ValueError) as e:
        print(f"Could not delete secret: {e}")
        return 1
    print(f"Deleted secret '{args.name}'")
    return 0


async def cmd_call(app: DictateToolsApp, args: argparse.Namespace) -> int:
    try:
        arguments = json.loads(args.arguments)
    except json.JSONDecodeError as e:
        print(f"Invalid --json arguments: {e}")
        return 2
    if not isinstance(arguments, dict):
        print("--json must be a JSON object")
        return 2

    try:
        result = await app.orchestrator.execute_tool_call({"name": args.tool, "arguments": arguments})
    except UnknownToolError as e:
        print(str(e))
        return 2

    print(result.as_text())
    return 1 if result.is_error else 0


async def cmd_process(app: DictateToolsApp, args: argparse.Namespace) -> int:
    try:
        result = await app.process_transcript(args.text)
    except LLMToolError as e:
        print(f"(LLM) {e}")
        return 1

    for call in result.tool_calls:
        marker = "error" if call.result.is_error else "ok"
        print(f"(tool) {call.name} [{marker}]: {call.result.as_text()}")
    print(result.text)
    return 0


async def cmd_run(app: DictateToolsApp, args: argparse.Namespace) -> int:
    print(f"Ready with {len(app.orchestrator.get_available_tools())} tools. Press Ctrl+C to quit.")
    await app.wait_until_stopped()
    print("Quitting.")
    return 0


COMMANDS: dict[str, Callable[[DictateToolsApp, argparse.Namespace], Awaitable[int]]] = {
    "tools": cmd_tools,
    "status": cmd_status,
    "test-server": cmd_test_server,
    "call": cmd_call,
    "process": cmd_process,
    "run": cmd_run,
    "add-server": cmd_add_server,
    "remove-server": cmd_remove_server,
    "set-secret": cmd_set_secret,
    "delete-secret": cmd_delete_secret,
}

# These never need the configured server pool.
OFFLINE_COMMANDS = {"test-server", "add-server", "remove-server", "set-secret", "delete-secret"}


async def run(args: argparse.Namespace) -> int:
    settings = settings_store.load_settings()
    if args.enable_tools:
        settings["mcp_tools_enabled"] = True

    app = DictateToolsApp(settings)
    try:
        if args.command not in OFFLINE_COMMANDS:
            await app.start(install_handlers=args.command == "run")
        return await COMMANDS[args.command](app, args)
    finally:
        await app.quit()


def _add_server_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--timeout", type=float, default=None, help="Connect timeout in milliseconds")
    parser.add_argument(
        "--env",
        action="append",
        metavar="NAME=VALUE",
        help="Environment variable for the server (repeatable; VALUE may be keyring:<name>)",
    )
    parser.add_argument(
        "--command",
        dest="server_command",
        nargs=argparse.REMAINDER,
        metavar="CMD ...",
        help="Server command line; must be the last option",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dictate-tools",
        description="Manage and exercise the tools available to dictation post-processing",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show INFO-level logs on the console")
    parser.add_argument(
        "--enable-tools",
        action="store_true",
        help="Connect configured tool servers even if disabled in settings",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    tools = sub.add_parser("tools", help="List available tools")
    tools.add_argument("--json", action="store_true", help="Print as JSON")

    status = sub.add_parser("status", help="Show tool server status")
    status.add_argument("--json", action="store_true", help="Print as JSON")

    test = sub.add_parser(
        "test-server",
        help="Check that a tool server can connect",
        allow_abbrev=False,
        epilog="Example: test-server files --timeout 20000 --command npx -y @modelcontextprotocol/server-filesystem ~",
    )
    test.add_argument("server_id", help="Server id from settings, or a label for --command")
    _add_server_options(test)

    add = sub.add_parser(
        "add-server",
        help="Test a tool server and save it to settings",
        allow_abbrev=False,
        epilog="--command must come last; everything after it is the server command line.",
    )
    add.add_argument("server_id", help="Id to save the server under")
    add.add_argument("--no-test", action="store_true", help="Save without testing the connection first")
    _add_server_options(add)

    remove = sub.add_parser("remove-server", help="Remove a tool server from settings")
    remove.add_argument("server_id", help="Server id from settings")

    set_secret = sub.add_parser("set-secret", help="Store a secret for keyring:<name> env references")
    set_secret.add_argument("name", help="Secret name")
    set_secret.add_argument("--value", default=None, help="Secret value (prompted for when omitted)")

    delete_secret = sub.add_parser("delete-secret", help="Delete a stored secret")
    delete_secret.add_argument("name", help="Secret name")

    call = sub.add_parser("call", help="Invoke one tool")
    call.add_argument("tool", help="Tool name")
    call.add_argument("--json", dest="arguments", default="{}", help="Tool arguments as a JSON object")

    process = sub.add_parser("process", help="Run a transcript through the LLM with tools")
    process.add_argument("text", help="Transcript text")

    sub.add_parser("run", help="Keep the tool servers running until interrupted")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.INFO if args.verbose else logging.WARNING)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
