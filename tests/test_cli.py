"""Tests for the operator CLI."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from fieldsync.cli import build_parser, main
from fieldsync.repository import EntityRepository
from fieldsync.store.sqlite import SQLiteLocalStore, SQLiteStoreConfig
from fieldsync.sync.queue import SyncQueueManager


async def seed_dead_letter(db_path: Path) -> str:
    store = await SQLiteLocalStore.create(SQLiteStoreConfig(db_path=db_path))
    try:
        queue = SyncQueueManager(store)
        entity = await EntityRepository(store, queue).create("quote", {"status": "draft"})
        item = (await queue.items_for_entity("quote", entity.id))[0]
        await queue.dead_letter(item.id, "quote_number is required")
        return item.id
    finally:
        await store.close()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("fieldsync")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def db(tmp_path: Path) -> Path:
    return tmp_path / "device.db"


def run_cli(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    return exc_info.value.code


class TestParser:
    """Tests for argument parsing."""

    def test_resolve_arguments(self) -> None:
        args = build_parser().parse_args(
            ["conflicts", "resolve", "quote", "q-1", "--choice", "merged", "--payload", "{}"]
        )

        assert args.command == "conflicts"
        assert args.action == "resolve"
        assert args.choice == "merged"

    def test_invalid_choice(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["conflicts", "resolve", "quote", "q-1", "--choice", "mine"])


class TestCommands:
    """Tests for running commands against a device database."""

    def test_status(self, db: Path, capsys: pytest.CaptureFixture) -> None:
        assert run_cli("--db", str(db), "--json", "status") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["pending_count"] == 0
        assert data["dead_letter_count"] == 0
        assert data["queue"]["total"] == 0

    def test_dead_letter_list_and_retry(self, db: Path, capsys: pytest.CaptureFixture) -> None:
        item_id = asyncio.run(seed_dead_letter(db))

        assert run_cli("--db", str(db), "--json", "dead-letter", "list") == 0
        rows = json.loads(capsys.readouterr().out)
        assert [row["id"] for row in rows] == [item_id]
        assert rows[0]["error"] == "quote_number is required"
        assert rows[0]["operation"] == "create"

        assert run_cli("--db", str(db), "dead-letter", "retry", item_id) == 0
        assert "CRITICAL" in capsys.readouterr().out

        assert run_cli("--db", str(db), "--json", "status") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["dead_letter_count"] == 0
        assert data["pending_count"] == 1

    def test_unknown_dead_letter(self, db: Path, capsys: pytest.CaptureFixture) -> None:
        assert run_cli("--db", str(db), "dead-letter", "discard", "missing") == 1
        assert "Error:" in capsys.readouterr().err

    def test_sync_requires_api_url(
        self, db: Path, capsys: pytest.CaptureFixture, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("FIELDSYNC_API_URL", raising=False)

        assert run_cli("--db", str(db), "sync") == 2
        assert "--api-url" in capsys.readouterr().err

    def test_resolve_without_conflict(self, db: Path, capsys: pytest.CaptureFixture) -> None:
        code = run_cli("--db", str(db), "conflicts", "resolve", "quote", "q-1", "--choice", "accept_remote")

        assert code == 1
        assert "No conflict pending for quote/q-1" in capsys.readouterr().err

    def test_conflicts_list_empty(self, db: Path, capsys: pytest.CaptureFixture) -> None:
        assert run_cli("--db", str(db), "conflicts", "list") == 0
        assert capsys.readouterr().out.strip() == "(none)"
