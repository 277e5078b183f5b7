"""CLI entry point for datachat."""

from __future__ import annotations

import argparse
import asyncio
import sys

from datachat.config import AppConfig, load_config
from datachat.log import setup_logging


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="datachat",
        description="Natural-language questions over MongoDB and SQL Server through LLM tool calling",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    _add_config_args(serve_parser)
    serve_parser.add_argument("--host", help="Override api.host")
    serve_parser.add_argument("--port", type=int, help="Override api.port")

    ask_parser = subparsers.add_parser("ask", help="Ask one question from the terminal")
    _add_config_args(ask_parser)
    ask_parser.add_argument("assistant", help="Assistant id from the config")
    ask_parser.add_argument("question", help="The question to ask")
    ask_parser.add_argument("--user", default="cli", help="User id for the session")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    tools_parser = subparsers.add_parser("tools", help="List the tools each assistant exposes")
    _add_config_args(tools_parser)

    args = parser.parse_args()

    if args.command is None:
        args.command = "serve"
        args.config = "config.yaml"
        args.env = ".env"
        args.host = None
        args.port = None

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "tools":
        _list_tools(args.config, args.env)
    elif args.command == "ask":
        _ask(args.config, args.env, args.assistant, args.question, args.user)
    elif args.command == "serve":
        _serve(args.config, args.env, args.host, args.port)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill in your settings", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  LLM provider: {config.llm.provider} ({config.llm.deployment or config.llm.model})")
    if config.documents:
        print(f"  Documents: {config.documents.database}.{config.documents.collection}")
    if config.relational:
        print(f"  Relational: max {config.relational.max_rows_per_query} rows/query")
    print(f"  Export retention: {config.exports.retention_minutes} min")
    print(f"  Assistants configured: {len(config.assistants)}")
    for assistant in config.assistants:
        tools = ", ".join(assistant.tools) if assistant.tools else "(all)"
        print(f"    - {assistant.id} [{assistant.backend}] tools: {tools}")


def _list_tools(config_path: str, env_path: str) -> None:
    from datachat.app import DataChatApp

    config = _load(config_path, env_path)
    setup_logging("WARNING")
    app = DataChatApp(config)
    for assistant_id, orchestrator in app.orchestrators.items():
        print(f"\n  Assistant: {assistant_id}")
        for tool in orchestrator.registry.all():
            print(f"    - {tool.name}: {tool.description}")
    print()


def _ask(config_path: str, env_path: str, assistant_id: str, question: str, user_id: str) -> None:
    from datachat.app import DataChatApp

    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.json_logs)

    async def _async_main() -> int:
        app = DataChatApp(config)
        orchestrator = app.get_orchestrator(assistant_id)
        if orchestrator is None:
            print(f"Unknown assistant: {assistant_id}", file=sys.stderr)
            return 1
        await app.start()
        try:
            result = await orchestrator.ask(user_id, question)
        finally:
            await app.stop()

        for call in result.tool_calls:
            status = "ok" if call.result and call.result.success else "failed"
            print(f"[{call.name} {status}] {call.arguments_json}")
        if result.success:
            print(result.answer)
            return 0
        print(f"Error: {result.error or result.answer}", file=sys.stderr)
        return 1

    sys.exit(asyncio.run(_async_main()))


def _serve(config_path: str, env_path: str, host: str | None, port: int | None) -> None:
    """Load config and run the HTTP API until interrupted."""
    import uvicorn

    from datachat.api import create_app
    from datachat.app import DataChatApp

    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.json_logs)

    app = create_app(DataChatApp(config))
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
