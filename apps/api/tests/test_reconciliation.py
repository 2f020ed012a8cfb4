"""Tests for the local-write outbox and its replay."""

import logging
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from touristid_api.credentials.errors import LocalPersistenceFailure
from touristid_api.credentials.repository import CredentialRepository
from touristid_api.ledger.facade import LedgerConnectionError
from touristid_api.models import DigitalTouristId, LifecycleEvent, PendingLocalWrite
from touristid_api.reconciliation.outbox import APPLY_TASK, REPLAY_TASK, CeleryDispatcher, LocalWriteOutbox
from touristid_api.reconciliation.replayer import ReconciliationService


def _access_payload(blockchain_id: str, tx: str = "0xaccess") -> dict:
    return {
        "blockchain_id": blockchain_id,
        "accessor_id": "police-7",
        "accessor_role": "police",
        "accessor_wallet": None,
        "reason": "routine check",
        "emergency": False,
        "transaction_hash": tx,
        "data_accessed": ["personal_data"],
        "accessed_at": "2025-03-01T12:00:00",
        "event_type": "DIGITAL_ID_ACCESSED",
        "correlation_id": None,
    }


def _broken_session_factory():
    session = mock.MagicMock()
    session.commit.side_effect = OperationalError("INSERT INTO pending_local_writes", {}, Exception("disk full"))
    return lambda: session


def test_enqueue_stores_row_and_dispatches_replay(outbox, dispatcher, db):
    entry_id = outbox.enqueue("access", _access_payload("DID_1"), error=RuntimeError("locked"))

    entry = db.get(PendingLocalWrite, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 0
    assert entry.blockchain_id == "DID_1"
    assert entry.last_error == "locked"
    assert dispatcher.replayed == [entry_id]
    assert dispatcher.applied == []


def test_dispatch_failure_leaves_row_for_sweep(session_factory, db):
    dispatcher = mock.Mock()
    dispatcher.replay.side_effect = ConnectionError("broker down")
    outbox = LocalWriteOutbox(session_factory, dispatcher=dispatcher)

    entry_id = outbox.enqueue("expire", {"blockchain_id": "DID_1", "transaction_hash": "0x1", "at": None})

    assert entry_id is not None
    assert db.get(PendingLocalWrite, entry_id).status == "pending"


def test_unstorable_entry_travels_through_broker(dispatcher):
    outbox = LocalWriteOutbox(_broken_session_factory(), dispatcher=dispatcher)
    payload = _access_payload("DID_1")

    assert outbox.enqueue("access", payload) is None
    assert dispatcher.applied == [("access", payload)]


def test_total_failure_is_logged_critically(caplog):
    dispatcher = mock.Mock()
    dispatcher.apply.side_effect = ConnectionError("broker down")
    outbox = LocalWriteOutbox(_broken_session_factory(), dispatcher=dispatcher)

    with caplog.at_level(logging.CRITICAL, logger="touristid_api.reconciliation.outbox"):
        assert outbox.enqueue("access", _access_payload("DID_1")) is None

    assert any(record.levelno == logging.CRITICAL for record in caplog.records)


def test_replay_of_missing_entry(db):
    assert ReconciliationService(db).replay(12345) == "missing"


def _issue_payload(blockchain_id: str) -> dict:
    return {
        "blockchain_id": blockchain_id,
        "tourist_id": "T1",
        "tourist_name": "Tourist T1",
        "tourist_wallet": "0xwalletT1",
        "personal_data_hash": "0" * 64,
        "encryption_key_ref": "local",
        "issuer_id": "officer-1",
        "issuer_role": "tourism_officer",
        "validity_days": 30,
        "issued_at": "2025-03-01T12:00:00",
        "expires_at": "2025-03-31T12:00:00",
        "checkout_at": None,
        "transaction_hash": "0xissue",
        "correlation_id": None,
    }


def test_replay_retries_until_credential_exists(outbox, db):
    access_entry = outbox.enqueue("access", _access_payload("DID_pending"))
    service = ReconciliationService(db, max_attempts=5)

    with pytest.raises(LocalPersistenceFailure):
        service.replay(access_entry)
    db.expire_all()
    assert db.get(PendingLocalWrite, access_entry).attempts == 1

    # Once the queued issue write lands the access applies
    issue_entry = outbox.enqueue("issue", _issue_payload("DID_pending"))
    assert service.replay(issue_entry) == "applied"
    assert service.replay(access_entry) == "applied"

    db.expire_all()
    entry = db.get(PendingLocalWrite, access_entry)
    assert entry.status == "applied"
    assert entry.applied_at is not None
    assert db.query(DigitalTouristId).filter_by(blockchain_id="DID_pending").one().access_count == 1


def test_replay_gives_up_after_max_attempts(outbox, db):
    entry_id = outbox.enqueue("expire", {"blockchain_id": "DID_never", "transaction_hash": "0x1", "at": None})
    service = ReconciliationService(db, max_attempts=2)

    with pytest.raises(LocalPersistenceFailure):
        service.replay(entry_id)
    assert service.replay(entry_id) == "failed"
    assert service.replay(entry_id) == "failed"
    assert service.pending_ids() == []


def _ledger_active(ledger, tourist_id: str) -> list:
    return [cid for cid, record in ledger._records.items() if record.tourist_id == tourist_id and record.status == "ACTIVE"]


def _issue_with_failed_local_write(issue):
    failure = OperationalError("INSERT INTO digital_tourist_ids", {}, Exception("disk I/O error"))
    with mock.patch("touristid_api.credentials.manager.LocalWriter.apply", side_effect=failure):
        return issue("T1")


def test_issue_replay_that_lost_to_active_credential_revokes_it(issue, ledger, db, dispatcher):
    orphan = _issue_with_failed_local_write(issue)
    # Another issue committed before the queued row was visible to it
    with mock.patch.object(CredentialRepository, "issue_pending_for_subject", return_value=False):
        current = issue("T1")
    entry_id = dispatcher.replayed[0]
    service = ReconciliationService(db, max_attempts=5, ledger=ledger)

    assert service.replay(entry_id) == "conflict"
    assert service.replay(entry_id) == "conflict"

    db.expire_all()
    entry = db.get(PendingLocalWrite, entry_id)
    assert entry.attempts == 1
    assert "UNIQUE" in entry.last_error.upper()
    assert service.pending_ids() == []
    assert _ledger_active(ledger, "T1") == [current.blockchain_id]
    assert ledger._records[orphan.blockchain_id].status == "REVOKED"
    event = db.query(LifecycleEvent).filter_by(event_type="DUPLICATE_ISSUE_REVOKED").one()
    assert event.blockchain_id == orphan.blockchain_id
    assert event.tourist_id == "T1"
    assert event.metadata_json["outboxEntryId"] == entry_id


def test_issue_replay_retries_while_ledger_cannot_revoke(issue, ledger, db, dispatcher):
    orphan = _issue_with_failed_local_write(issue)
    with mock.patch.object(CredentialRepository, "issue_pending_for_subject", return_value=False):
        issue("T1")
    entry_id = dispatcher.replayed[0]
    service = ReconciliationService(db, max_attempts=5, ledger=ledger)

    with mock.patch.object(ledger, "revoke", side_effect=LedgerConnectionError("gateway down")):
        with pytest.raises(LocalPersistenceFailure):
            service.replay(entry_id)
    db.expire_all()
    assert db.get(PendingLocalWrite, entry_id).status == "pending"
    assert db.query(LifecycleEvent).filter_by(event_type="DUPLICATE_ISSUE_REVOKED").count() == 0

    assert service.replay(entry_id) == "conflict"
    assert ledger._records[orphan.blockchain_id].status == "REVOKED"


def test_unqueued_issue_that_lost_to_active_credential_is_revoked(issue, manager, ledger, db, dispatcher):
    manager.outbox = LocalWriteOutbox(_broken_session_factory(), dispatcher=dispatcher)
    orphan = _issue_with_failed_local_write(issue)
    current = issue("T1")
    [(operation, payload)] = dispatcher.applied

    ReconciliationService(db, ledger=ledger).apply(operation, payload)

    assert _ledger_active(ledger, "T1") == [current.blockchain_id]
    assert ledger._records[orphan.blockchain_id].status == "REVOKED"
    assert db.query(LifecycleEvent).filter_by(event_type="DUPLICATE_ISSUE_REVOKED").count() == 1

def test_pending_ids_in_order(outbox, db):
    ids = [outbox.enqueue("event", {"event_type": "X", "timestamp": None}) for _ in range(3)]

    assert ReconciliationService(db).pending_ids(limit=2) == ids[:2]


def test_celery_dispatcher_sends_named_tasks():
    celery_app = mock.MagicMock()
    dispatcher = CeleryDispatcher(celery_app)

    dispatcher.replay(7)
    dispatcher.apply("issue", {"blockchain_id": "DID_1"})

    celery_app.signature.assert_any_call(REPLAY_TASK, args=[7])
    celery_app.signature.assert_any_call(APPLY_TASK, args=["issue", {"blockchain_id": "DID_1"}])
    assert celery_app.signature.return_value.apply_async.call_count == 2


def test_worker_registers_dispatched_tasks_and_schedule():
    from touristid_worker.celery_app import celery_app

    assert REPLAY_TASK in celery_app.tasks
    assert APPLY_TASK in celery_app.tasks
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled == {
        "touristid_worker.tasks.run_auto_expiration",
        "touristid_worker.tasks.sweep_pending_writes",
    }
