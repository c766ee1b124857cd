"""Tests for the command-line interface."""

import asyncio
import json
import sys
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
import structlog

from maildigest.cli import build_parser, main
from maildigest.database import create_engine, create_schema, create_session_factory
from maildigest.exceptions import MailboxAuthenticationError, MailboxError
from maildigest.ingestion.models import IngestRecord
from maildigest.ingestion.store import SqlAlchemyStore


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the CLI from reconfiguring logging for the whole test session."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    try:
        with patch("maildigest.cli.configure_logging") as configure:
            yield configure
    finally:
        structlog.reset_defaults()


class TestCli:
    """Test CLI commands and exit codes."""

    def test_parse_command(self, tmp_path, capsys, digest_html):
        """parse prints the candidates of a saved digest."""
        path = tmp_path / "digest.html"
        path.write_text(digest_html)

        assert main(["parse", str(path), "--reference-date", "2025-11-20"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert [c["delivery_date"] for c in output] == ["2025-11-15", "2025-11-17"]
        assert output[0]["sender_guess"] == "Widgets Inc"

    def test_ingest_output(self, capsys):
        """ingest prints the inserted count and report."""
        result = {"ok": True, "inserted": 3, "report": {"inserted": 3}}
        with patch("maildigest.cli.run_ingest", new=AsyncMock(return_value=result)) as run:
            assert main(["ingest", "--user", "user-1", "--no-interpret"]) == 0

        run.assert_awaited_once_with("user-1", query=None, interpret=False, database_url=None)
        assert json.loads(capsys.readouterr().out) == result

    def test_reauthentication_exit_code(self, capsys):
        """A rejected credential exits with status 2 and a JSON payload."""
        error = MailboxAuthenticationError("token expired", status_code=401)
        with patch("maildigest.cli.run_ingest", new=AsyncMock(side_effect=error)):
            assert main(["ingest", "--user", "user-1"]) == 2

        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is False
        assert payload["error"] == "reauthentication_required"
        assert payload["service"] == "mailbox"

    def test_mailbox_error_exit_code(self):
        """A failed listing exits with status 1."""
        with patch("maildigest.cli.run_ingest", new=AsyncMock(side_effect=MailboxError("list", 503))):
            assert main(["ingest", "--user", "user-1"]) == 1

    def test_missing_token(self, monkeypatch):
        """ingest without a mailbox token fails cleanly."""
        monkeypatch.delenv("MAILBOX_ACCESS_TOKEN", raising=False)
        with patch("maildigest.cli.get_settings") as get_settings:
            get_settings.return_value.mailbox.access_token = None
            assert main(["ingest", "--user", "user-1"]) == 1

    def test_queue_command(self, tmp_path, capsys):
        """queue prints a user's stored mail pieces newest first."""
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'mail.db'}"

        async def seed():
            engine = create_engine(database_url)
            await create_schema(engine)
            store = SqlAlchemyStore(create_session_factory(engine))
            for index in range(3):
                await store.insert(IngestRecord(
                    user_id="user-1",
                    message_id=f"msg-{index}",
                    fingerprint=str(index) * 64,
                    image_locator=f"cid:scan-{index}",
                    raw_sender_text="Acme Corp",
                    created_at=datetime(2025, 11, 15, 8, index),
                ))
            await engine.dispose()

        asyncio.run(seed())

        assert main(["queue", "--user", "user-1", "--limit", "2", "--database-url", database_url]) == 0

        items = json.loads(capsys.readouterr().out)["items"]
        assert [item["message_id"] for item in items] == ["msg-2", "msg-1"]
        assert items[0]["sender"] == "Acme Corp"
        assert items[0]["image_locator"] == "cid:scan-2"

    def test_queue_defaults(self, capsys):
        """queue uses a limit of 50 when none is given."""
        with patch("maildigest.cli.list_queue", new=AsyncMock(return_value={"items": []})) as list_queue:
            assert main(["queue", "--user", "user-1"]) == 0

        list_queue.assert_awaited_once_with("user-1", limit=50, database_url=None)
        assert json.loads(capsys.readouterr().out) == {"items": []}

    def test_no_command(self):
        """Running without a command prints help and fails."""
        assert main([]) == 1

    def test_global_options(self):
        """Log options are parsed before the command."""
        args = build_parser().parse_args(["--log-level", "DEBUG", "--log-format", "console", "parse", "x.html"])

        assert args.log_level == "DEBUG"
        assert args.log_format == "console"
        assert args.reference_date is None


class TestLogConfig:
    """Test logging setup validation."""

    def test_unknown_format(self):
        from maildigest.log_config import configure_logging

        with pytest.raises(ValueError):
            configure_logging("INFO", "xml")
