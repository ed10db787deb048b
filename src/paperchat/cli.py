"""
Command-line interface for PaperChat.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import structlog

from .chat import (
    ChatCallbacks,
    ChatOrchestrator,
    ContextConfig,
    ContextWindowManager,
    SqlSessionStore,
)
from .config import Settings, get_settings
from .documents import InMemoryDocumentSource
from .llm import create_provider_manager
from .tools import ToolExecutor

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

REPL_HELP = """Commands:
  /new            start a new session
  /sessions       list sessions
  /switch ID      switch to a session
  /clear          clear the current session
  /quit           exit
"""


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="paperchat",
        description="PaperChat - chat with an LLM about your papers",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show log output")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat")
    chat_parser.add_argument("--session", help="Session id to resume")

    sessions_parser = subparsers.add_parser("sessions", help="Manage chat sessions")
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command")
    sessions_subparsers.add_parser("list", help="List sessions")
    delete_parser = sessions_subparsers.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("session_id", help="Session id to delete")
    sessions_subparsers.add_parser("cleanup", help="Delete sessions without messages")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create .env and the data directory")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    level = settings.log_level.upper() if args.verbose or settings.debug else "WARNING"
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(message)s")

    if args.command == "chat":
        asyncio.run(run_chat(settings, args.session))
    elif args.command == "sessions":
        if args.sessions_command == "list":
            asyncio.run(list_sessions(settings))
        elif args.sessions_command == "delete":
            asyncio.run(delete_session(settings, args.session_id))
        elif args.sessions_command == "cleanup":
            asyncio.run(cleanup_sessions(settings))
        else:
            sessions_parser.print_help()
    elif args.command == "config":
        show_config(settings, args.check)
    elif args.command == "init":
        init_workspace()
    else:
        parser.print_help()


def _ensure_sqlite_dir(database_url: str) -> None:
    prefix = "sqlite+aiosqlite:///"
    if database_url.startswith(prefix):
        path = database_url[len(prefix):]
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)


def build_store(settings: Settings) -> SqlSessionStore:
    _ensure_sqlite_dir(settings.database_url)
    return SqlSessionStore(settings.database_url, max_sessions=settings.max_sessions)


def build_orchestrator(settings: Settings) -> ChatOrchestrator:
    """Wire the engine from settings."""
    provider_manager = create_provider_manager(settings)
    documents = InMemoryDocumentSource()
    return ChatOrchestrator(
        store=build_store(settings),
        provider_manager=provider_manager,
        tool_executor=ToolExecutor(document_source=documents),
        context_manager=ContextWindowManager(provider_manager, ContextConfig.from_settings(settings)),
        document_source=documents,
        settings=settings,
    )


class StreamPrinter:
    """Prints streaming updates as they grow."""

    def __init__(self):
        self.shown = ""

    def reset(self) -> None:
        self.shown = ""

    def update(self, content: str) -> None:
        prefix = os.path.commonprefix([self.shown, content])
        if len(prefix) < len(self.shown):
            sys.stdout.write("\n")
        sys.stdout.write(content[len(prefix):])
        sys.stdout.flush()
        self.shown = content

    def fallback(self, from_provider: str, to_provider: str) -> None:
        print(f"\n[{from_provider} unavailable, switching to {to_provider}]")
        self.reset()

    def error(self, error: Exception) -> None:
        print(f"\n❌ {error}")


async def run_chat(settings: Settings, session_id: str | None) -> None:
    """Interactive chat loop."""
    orchestrator = build_orchestrator(settings)
    printer = StreamPrinter()
    orchestrator.set_callbacks(ChatCallbacks(
        on_streaming_update=printer.update,
        on_error=printer.error,
        on_fallback_notice=printer.fallback,
    ))

    await orchestrator.init()
    if session_id:
        if await orchestrator.switch_session(session_id) is None:
            print(f"Session {session_id} not found, continuing in the current session.")

    print(f"Session: {orchestrator.active_session.id}")
    print(REPL_HELP)

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue

            if line.startswith("/"):
                if not await handle_command(orchestrator, line):
                    break
                continue

            printer.reset()
            await orchestrator.send_message(line)
            session = orchestrator.active_session
            last = session.messages[-1] if session and session.messages else None
            if last is not None and not printer.shown and last.content:
                # Non-streaming replies (e.g. configuration messages)
                print(last.content)
            print()
    finally:
        await orchestrator.close()


async def handle_command(orchestrator: ChatOrchestrator, line: str) -> bool:
    """Handle a REPL slash command. Returns False to exit."""
    command, _, argument = line.partition(" ")

    if command in ("/quit", "/exit"):
        return False
    if command == "/new":
        session = await orchestrator.create_new_session()
        print(f"New session: {session.id}")
    elif command == "/sessions":
        for meta in await orchestrator.list_sessions():
            print(f"{meta.id:<22} {meta.message_count:>4} msgs  {meta.last_message_preview}")
    elif command == "/switch":
        session = await orchestrator.switch_session(argument.strip())
        print(f"Switched to {session.id}" if session else "Session not found")
    elif command == "/clear":
        await orchestrator.clear_current_session()
        print("Session cleared")
    else:
        print(REPL_HELP)
    return True


async def list_sessions(settings: Settings) -> None:
    store = build_store(settings)
    sessions = await store.list_sessions()

    if not sessions:
        print("No sessions.")
        return

    print(f"\n{'ID':<22} {'Messages':<10} {'Last message':<50}")
    print("-" * 82)
    for meta in sessions:
        print(f"{meta.id:<22} {meta.message_count:<10} {meta.last_message_preview:<50}")


async def delete_session(settings: Settings, session_id: str) -> None:
    store = build_store(settings)
    if await store.load_session(session_id) is None:
        logger.error("Session not found", session_id=session_id)
        return
    await store.delete_session(session_id)
    print(f"Deleted session {session_id}")


async def cleanup_sessions(settings: Settings) -> None:
    store = build_store(settings)
    count = await store.cleanup_empty_sessions()
    print(f"Removed {count} empty session(s)")


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== PaperChat Configuration ===\n")

    print("LLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Default Model: {settings.get_llm_config().model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Fallback Order: {settings.fallback_providers or '(all ready providers)'}")
    print(f"  Fallback Max Retries: {settings.fallback_max_retries}")

    print("\nContext:")
    print(f"  Recent Pairs: {settings.context_max_recent_pairs}")
    print(f"  Summaries: {settings.context_enable_summary}")
    print(f"  Summary Threshold: {settings.context_summary_threshold}")
    print(f"  Max Tool Iterations: {settings.max_tool_iterations}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")
    print(f"  Max Sessions: {settings.max_sessions}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not settings.configured_providers:
            errors.append("At least one LLM API key is required")
        elif settings.default_provider not in settings.configured_providers:
            warnings.append(
                f"Default provider {settings.default_provider} has no API key; "
                "requests will fall back to other providers"
            )

        for provider in settings.fallback_providers_list:
            if provider not in ("anthropic", "openai", "openrouter"):
                errors.append(f"Unknown provider in FALLBACK_PROVIDERS: {provider}")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors - fix them before chatting")


def init_workspace() -> None:
    """Create a starter .env and the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# PaperChat Configuration

# LLM API Keys (set at least one)
ANTHROPIC_API_KEY=
OPENAI_API_KEY=
# OPENROUTER_API_KEY=

# Default provider and optional model override
DEFAULT_PROVIDER=anthropic
# DEFAULT_MODEL=

# Providers tried after the default one (empty = all configured)
# FALLBACK_PROVIDERS=openai,openrouter

# Context window
CONTEXT_MAX_RECENT_PAIRS=10
CONTEXT_ENABLE_SUMMARY=false
CONTEXT_SUMMARY_THRESHOLD=20

# Database
DATABASE_URL=sqlite+aiosqlite:///./data/paperchat.db
"""
        env_file.write_text(env_content)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    print(f"✅ Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and add at least one LLM API key")
    print("2. Run: paperchat config --check")
    print("3. Run: paperchat chat")


if __name__ == "__main__":
    main()
