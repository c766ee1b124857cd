#!/usr/bin/env python3
"""Command-line interface for digest ingestion."""

import argparse
import asyncio
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .config.settings import get_settings
from .database import create_engine, create_schema, create_session_factory
from .exceptions import MailboxError, OcrEngineError, ReauthenticationRequired
from .ingestion.mailbox import GmailMailbox
from .ingestion.parser import TileExtractor
from .ingestion.pipeline import IngestOrchestrator
from .ingestion.resolver import ImageResolver
from .ingestion.store import DEFAULT_QUEUE_LIMIT, SqlAlchemyStore
from .log_config import LOG_FORMATS, configure_logging
from .services.llm import SemanticInterpreter
from .services.ocr import TesseractEngine, TextExtractor

logger = structlog.get_logger(__name__)


async def run_ingest(
    user_id: str,
    query: Optional[str] = None,
    interpret: bool = True,
    database_url: Optional[str] = None
) -> Dict[str, Any]:
    """Run one ingest pass against Gmail and persist new mail pieces."""
    settings = get_settings()
    if not settings.mailbox.access_token:
        raise ValueError("MAILBOX_ACCESS_TOKEN is not set")

    mailbox = GmailMailbox(settings.mailbox.access_token, settings.mailbox)
    db_engine = create_engine(database_url)
    ocr_engine = TesseractEngine(settings.ocr)

    try:
        await create_schema(db_engine)
        store = SqlAlchemyStore(create_session_factory(db_engine))

        text_extractor = None
        try:
            await asyncio.to_thread(ocr_engine.acquire)
            text_extractor = TextExtractor(ocr_engine, settings.ocr)
        except OcrEngineError as exc:
            logger.warning("OCR unavailable, storing parser fields only", error=str(exc))

        interpreter = None
        if interpret and settings.ingest.interpret_enabled:
            interpreter = SemanticInterpreter(settings=settings.llm)

        orchestrator = IngestOrchestrator(
            extractor=TileExtractor(settings=settings.parser),
            resolver=ImageResolver(mailbox, settings=settings.resolver),
            text_extractor=text_extractor,
            interpreter=interpreter,
            settings=settings.ingest
        )
        inserted = await orchestrator.run(user_id, mailbox, store, query=query)
    finally:
        ocr_engine.release()
        await db_engine.dispose()

    return {"ok": True, "inserted": inserted, "report": orchestrator.summary()}


async def list_queue(user_id: str, limit: int = DEFAULT_QUEUE_LIMIT,
                     database_url: Optional[str] = None) -> Dict[str, Any]:
    """The user's most recent mail pieces, newest first."""
    db_engine = create_engine(database_url)
    try:
        await create_schema(db_engine)
        store = SqlAlchemyStore(create_session_factory(db_engine))
        records = await store.list_recent(user_id, limit=limit)
    finally:
        await db_engine.dispose()

    return {"items": [record.to_dict() for record in records]}


def parse_file(path: str, reference_date: Optional[date] = None) -> List[Dict[str, Any]]:
    """Candidates found in a saved digest HTML file."""
    html = Path(path).read_text(encoding="utf-8", errors="replace")
    candidates = TileExtractor().parse(html, reference_date=reference_date)
    return [candidate.to_dict() for candidate in candidates]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="USPS Informed Delivery digest ingestion CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest new mail pieces for a user (needs MAILBOX_ACCESS_TOKEN)
  python -m maildigest.cli ingest --user user-1

  # Ingest without LLM interpretation into a custom database
  python -m maildigest.cli ingest --user user-1 --no-interpret --database-url sqlite+aiosqlite:///./mail.db

  # Show the tiles found in a saved digest
  python -m maildigest.cli parse digest.html --reference-date 2025-11-15

  # List the 20 newest stored mail pieces of a user
  python -m maildigest.cli queue --user user-1 --limit 20
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest digests from Gmail")
    ingest_parser.add_argument("--user", required=True, help="User ID owning the ingested records")
    ingest_parser.add_argument("--query", default=None, help="Mailbox search query")
    ingest_parser.add_argument("--no-interpret", action="store_true", help="Skip LLM interpretation")
    ingest_parser.add_argument("--database-url", default=None, help="SQLAlchemy async database URL")

    parse_parser = subparsers.add_parser("parse", help="Parse a saved digest HTML file")
    parse_parser.add_argument("path", help="Path to the digest HTML file")
    parse_parser.add_argument("--reference-date", type=date.fromisoformat, default=None,
                              help="Date used to complete year-less digest dates (YYYY-MM-DD)")

    queue_parser = subparsers.add_parser("queue", help="List stored mail pieces, newest first")
    queue_parser.add_argument("--user", required=True, help="User ID owning the records")
    queue_parser.add_argument("--limit", type=int, default=DEFAULT_QUEUE_LIMIT, help="Maximum number of records")
    queue_parser.add_argument("--database-url", default=None, help="SQLAlchemy async database URL")

    # Global options
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level")
    parser.add_argument("--log-format", default="json", choices=LOG_FORMATS, help="Log output format")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(args.log_level, args.log_format)

    try:
        if args.command == "ingest":
            result = asyncio.run(run_ingest(
                args.user,
                query=args.query,
                interpret=not args.no_interpret,
                database_url=args.database_url
            ))
            print(json.dumps(result, indent=2))
        elif args.command == "parse":
            print(json.dumps(parse_file(args.path, args.reference_date), indent=2))
        elif args.command == "queue":
            result = asyncio.run(list_queue(args.user, limit=args.limit, database_url=args.database_url))
            print(json.dumps(result, indent=2))
        else:
            logger.error("Unknown command", command=args.command)
            return 1

    except ReauthenticationRequired as exc:
        print(json.dumps({"ok": False, **exc.to_dict()}, indent=2))
        return 2
    except MailboxError as exc:
        logger.error("Mailbox unavailable", **exc.to_dict())
        return 1
    except (ValueError, OSError) as exc:
        logger.error("Command failed", error=str(exc))
        return 1
    except KeyboardInterrupt:
        logger.info("Ingestion interrupted by user")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
