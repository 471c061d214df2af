"""Application entry point for the wabridge gateway."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from rich.console import Console

import settings
from adapters.evolution_client import EvolutionClient
from adapters.home_assistant import HomeAssistantClient
from adapters.report_formatting import (
    fires_table,
    format_execution,
    format_test_result,
    format_validation,
    stats_table,
)
from adapters.sqlite_storage import SQLiteStorage
from adapters.webhook_handler import WebhookHandler
from adapters.webhook_server import WEBHOOK_PATH, build_server
from core.engine import RuleEngine
from core.executor import ActionExecutor
from core.models import IncomingMessage
from core.text import chat_type_for_jid, normalize_event
from core.validator import validate_rules

NAME = "WABRIDGE"
FONT = "tarty-1"

SECRET_ENV_NAMES = ("HA_TOKEN", "SUPERVISOR_TOKEN", "EVOLUTION_API_KEY", "AUTHENTICATION_API_KEY")

console = Console()


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    names = list(SECRET_ENV_NAMES) + list(redact_cfg.get("patterns", []))
    values = [os.getenv(name) for name in names]
    return sorted({value for value in values if value}, key=len, reverse=True)


def _log_file_path(file_cfg: dict) -> str:
    path = file_cfg.get("path", "logs/wabridge.log")
    if not os.path.isabs(path):
        path = os.path.join(settings.PROJECT_ROOT, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return path


def _configure_logging(verbose: bool = False) -> None:
    """Console and optional rotating file logging, with secrets masked."""

    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    level = logging.DEBUG if verbose else getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        handlers.append(
            RotatingFileHandler(
                _log_file_path(file_cfg),
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    if handlers:
        logging.basicConfig(level=level, handlers=handlers)


def _build_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    applied = storage.init_db()
    if applied:
        logging.getLogger(__name__).info("Applied migrations: %s", ", ".join(applied))
    return storage


def _build_engine(storage: SQLiteStorage) -> RuleEngine:
    executor = ActionExecutor(
        home_assistant=HomeAssistantClient(settings.HA_URL, settings.HA_TOKEN),
        sender=EvolutionClient(settings.EVOLUTION_URL, settings.EVOLUTION_API_KEY, settings.INSTANCE_NAME),
        allowed_services=settings.HA_ALLOWED_SERVICES,
    )
    engine = RuleEngine(storage, executor)
    engine.init()
    return engine


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _run() -> None:
    _print_banner()
    logger = logging.getLogger(__name__)

    logger.info("Starting wabridge")
    storage = _build_storage()
    engine = _build_engine(storage)
    logger.info("%s rules are loaded", len(engine.ruleset.rules))
    logger.info("Allowed HA services: %s", ", ".join(settings.HA_ALLOWED_SERVICES) or "none")

    server = build_server(settings.GATEWAY_HOST, settings.GATEWAY_PORT, WebhookHandler(storage, engine))
    logger.info("Listening on http://%s:%s%s", settings.GATEWAY_HOST, settings.GATEWAY_PORT, WEBHOOK_PATH)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()


def _validate(path: str) -> int:
    result = validate_rules(_read_source(path))
    console.print(format_validation(result), markup=False)
    return 0 if result.valid else 1


def _save(path: str) -> int:
    engine = _build_engine(_build_storage())
    result = engine.save_rules(_read_source(path))
    console.print(format_validation(result), markup=False)
    return 0 if result.valid else 1


def _show() -> int:
    engine = _build_engine(_build_storage())
    console.print(engine.get_rules_source(), markup=False, highlight=False)
    return 0


def _message_from_args(args: argparse.Namespace) -> IncomingMessage:
    return IncomingMessage(
        chat_id=args.chat,
        chat_type=args.chat_type or chat_type_for_jid(args.chat),
        sender_id=args.sender or args.chat,
        text=args.text,
        event=normalize_event(args.event),
    )


def _test(args: argparse.Namespace) -> int:
    engine = _build_engine(_build_storage())
    result = engine.test_message(_message_from_args(args))
    console.print(format_test_result(result), markup=False)
    return 0


def _process(args: argparse.Namespace) -> int:
    engine = _build_engine(_build_storage())
    result = asyncio.run(engine.process_message(_message_from_args(args)))
    console.print(format_execution(result), markup=False)
    return 0


def _fires(args: argparse.Namespace) -> int:
    storage = _build_storage()
    console.print(fires_table(storage.list_rule_fires(args.rule, page=args.page, limit=args.limit)))
    return 0


def _stats(args: argparse.Namespace) -> int:
    storage = _build_storage()
    console.print(stats_table(storage.stats(args.hours)))
    return 0


def _add_message_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chat", required=True, help="Chat JID, e.g. 31612345678@s.whatsapp.net")
    parser.add_argument("--text", default="", help="Message text")
    parser.add_argument("--sender", help="Sender JID (defaults to the chat)")
    parser.add_argument("--chat-type", choices=["direct", "group"], help="Derived from the JID when omitted")
    parser.add_argument("--event", default=None, help="Event token (default MESSAGES_UPSERT)")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="wabridge")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the webhook listener")

    validate_parser = subparsers.add_parser("validate", help="Validate a rules YAML file ('-' for stdin)")
    validate_parser.add_argument("path")

    save_parser = subparsers.add_parser("save", help="Validate and activate a rules YAML file")
    save_parser.add_argument("path")

    subparsers.add_parser("show", help="Print the active rules YAML")

    test_parser = subparsers.add_parser("test", help="Dry-run a message against the active rules")
    _add_message_args(test_parser)

    process_parser = subparsers.add_parser("process", help="Run a message through the rules, executing actions")
    _add_message_args(process_parser)

    fires_parser = subparsers.add_parser("fires", help="List recent rule fires")
    fires_parser.add_argument("--rule", default=None)
    fires_parser.add_argument("--page", type=int, default=1)
    fires_parser.add_argument("--limit", type=int, default=50)

    stats_parser = subparsers.add_parser("stats", help="Summary of messages and rule fires")
    stats_parser.add_argument("--hours", type=int, default=24)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    if args.command == "validate":
        sys.exit(_validate(args.path))
    if args.command == "save":
        sys.exit(_save(args.path))
    if args.command == "show":
        sys.exit(_show())
    if args.command == "test":
        sys.exit(_test(args))
    if args.command == "process":
        sys.exit(_process(args))
    if args.command == "fires":
        sys.exit(_fires(args))
    if args.command == "stats":
        sys.exit(_stats(args))
    _run()


if __name__ == "__main__":
    main()
