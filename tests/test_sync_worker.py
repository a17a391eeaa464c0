from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from account_directory.database import DatabaseManager
from account_directory.repositories.user_repository import UserRepository
from account_directory.search_index import SearchIndex
from account_directory.services import ServiceContainer
from account_directory.services.sync_worker import SyncWorkerService


def _statuses(db: DatabaseManager, table_name: str) -> list[str]:
    rows = db.sqlite.execute(
        "SELECT status FROM sync_queue WHERE table_name = ? ORDER BY id", (table_name,)
    ).fetchall()
    return [row["status"] for row in rows]


@pytest.fixture()
def worker(container: ServiceContainer) -> SyncWorkerService:
    return container["sync_worker_service"]


def test_reindex_rows_are_replayed_offline(
    worker: SyncWorkerService,
    users: UserRepository,
    index: SearchIndex,
    db: DatabaseManager,
    create_user: Any,
) -> None:
    ada = create_user("Ada", "Lovelace")
    index.remove(ada.id)
    users.queue_reindex(ada.id)

    assert worker.process_pending_queue() == 1

    assert index.search("lovelace") == [ada.id]
    assert _statuses(db, "user_search") == ["synced"]
    assert _statuses(db, "users") == []


def test_reindex_of_vanished_record_clears_index_entry(
    worker: SyncWorkerService,
    users: UserRepository,
    index: SearchIndex,
    create_user: Any,
) -> None:
    ada = create_user("Ada", "Lovelace")
    ghost = ada.model_copy(update={"id": 99})
    users.queue_reindex(99)

    assert worker.process_pending_queue() == 1
    assert ghost.id not in index.search("lovelace")


def test_mirror_rows_wait_until_online(
    worker: SyncWorkerService,
    db: DatabaseManager,
    create_user: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(db, "_mirror_configured", True)
    ada = create_user("Ada", "Lovelace")

    assert worker.process_pending_queue() == 0
    assert _statuses(db, "users") == ["pending"]

    client = MagicMock()
    db._supabase = client

    assert worker.process_pending_queue() == 1
    client.table.assert_called_with("users")
    payload = client.table.return_value.upsert.call_args.args[0]
    assert payload["id"] == ada.id
    assert "password_hash" not in payload
    assert _statuses(db, "users") == ["synced"]


def test_failed_rows_retry_then_give_up(worker: SyncWorkerService, db: DatabaseManager) -> None:
    db.sqlite.execute(
        "INSERT INTO sync_queue (table_name, operation, entity_id, payload) "
        "VALUES ('user_search', 'explode', '1', '{}')"
    )

    for _ in range(4):
        assert worker.process_pending_queue() == 0
        assert _statuses(db, "user_search") == ["pending"]

    worker.process_pending_queue()

    row = db.sqlite.execute("SELECT status, retry_count, error_message FROM sync_queue").fetchone()
    assert row["status"] == "permanently_failed"
    assert row["retry_count"] == 5
    assert "Unknown sync operation" in row["error_message"]
    assert worker.process_pending_queue() == 0


def test_malformed_payload_is_marked_failed(
    worker: SyncWorkerService, db: DatabaseManager,
) -> None:
    db.sqlite.execute(
        "INSERT INTO sync_queue (table_name, operation, entity_id, payload) "
        "VALUES ('user_search', 'reindex', '1', '{broken')"
    )

    assert worker.process_pending_queue() == 0

    row = db.sqlite.execute("SELECT retry_count, error_message FROM sync_queue").fetchone()
    assert row["retry_count"] == 1
    assert row["error_message"].startswith("Malformed JSON")


def test_backoff_doubles_and_caps(worker: SyncWorkerService) -> None:
    assert worker._calculate_backoff_interval() == 30.0
    worker._consecutive_failures = 1
    assert worker._calculate_backoff_interval() == 60.0
    worker._consecutive_failures = 10
    assert worker._calculate_backoff_interval() == 300.0


def test_start_and_stop(worker: SyncWorkerService) -> None:
    worker.start()
    worker.start()
    assert worker.is_running

    worker.stop()
    assert not worker.is_running
