"""Tests for routine and emergency-flagged access."""

from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from touristid_api.credentials.errors import AccessDenied, InvalidInput, LedgerUnavailable, NotFound
from touristid_api.credentials.results import Actor
from touristid_api.ledger.facade import ConsentSettings
from touristid_api.models import AccessLogEntry, DigitalTouristId, LifecycleEvent, PendingLocalWrite
from touristid_api.reconciliation.replayer import ReconciliationService


def _credential(db, blockchain_id) -> DigitalTouristId:
    db.expire_all()
    return db.query(DigitalTouristId).filter_by(blockchain_id=blockchain_id).one()


def test_access_without_consent_is_denied(issue, manager, police, db):
    issued = issue("T1")

    with pytest.raises(AccessDenied) as exc_info:
        manager.access(issued.blockchain_id, police, "routine check")

    assert exc_info.value.http_status == 403
    assert _credential(db, issued.blockchain_id).access_count == 0
    assert db.query(AccessLogEntry).count() == 0


def test_access_with_consent_discloses_role_categories(issue, manager, police, police_consent, db):
    issued = issue("T1", initial_consent=police_consent)

    result = manager.access(issued.blockchain_id, police, "routine check")

    assert result.personal_data["name"] == "Tourist T1"
    assert result.booking_data == {"hotel": "Harbour View", "room": "204"}
    assert result.emergency_contacts["primary"] == "+64 21 111 111"
    assert result.emergency_access is False
    assert result.access_count == 1
    assert result.access_levels["POLICE_ACCESS"] is True
    assert result.digital_id.status == "ACTIVE"

    entry = db.query(AccessLogEntry).one()
    assert entry.accessor_id == police.actor_id
    assert entry.accessor_role == "police"
    assert entry.access_reason == "routine check"
    assert entry.data_accessed == ["personal_data", "booking_data", "emergency_contacts"]
    assert entry.transaction_hash == result.transaction_hash

    event = db.query(LifecycleEvent).filter_by(event_type="DIGITAL_ID_ACCESSED").one()
    assert event.metadata_json["accessorRole"] == "police"


def test_access_log_records_only_disclosed_categories(issue, manager, hotel, db):
    issued = issue("T1", initial_consent=ConsentSettings(hotel_access=True))

    result = manager.access(issued.blockchain_id, hotel, "check-in")

    assert result.emergency_contacts is None
    assert result.data_accessed == ["personal_data", "booking_data"]
    assert db.query(AccessLogEntry).one().data_accessed == ["personal_data", "booking_data"]


def test_tourist_can_access_own_credential(issue, manager):
    issued = issue("T1")

    result = manager.access(issued.blockchain_id, Actor(actor_id="T1", role="tourist"), "self check")

    assert result.personal_data["passportNumber"] == "P-T1"


def test_access_count_matches_log_rows(issue, manager, police, police_consent, db):
    issued = issue("T1", initial_consent=police_consent)

    counts = []
    for i in range(5):
        counts.append(manager.access(issued.blockchain_id, police, f"patrol {i}").access_count)

    assert counts == sorted(counts) == [1, 2, 3, 4, 5]
    credential = _credential(db, issued.blockchain_id)
    assert credential.access_count == 5
    assert db.query(AccessLogEntry).filter_by(credential_id=credential.id).count() == 5
    assert credential.last_accessed_at is not None


def test_emergency_flag_bypasses_consent_and_sets_override(issue, manager, police, db):
    issued = issue("T1")

    with pytest.raises(AccessDenied):
        manager.access(issued.blockchain_id, police, "routine check")

    result = manager.access(issued.blockchain_id, police, "routine check", emergency_access=True)

    assert result.emergency_access is True
    assert result.digital_id.emergency_override is True
    assert _credential(db, issued.blockchain_id).emergency_override is True
    assert db.query(AccessLogEntry).one().emergency_access is True


def test_emergency_override_is_sticky(issue, manager, police, police_consent, db):
    issued = issue("T1", initial_consent=police_consent)
    manager.access(issued.blockchain_id, police, "collapse reported", emergency_access=True)

    result = manager.access(issued.blockchain_id, police, "follow-up")

    assert result.digital_id.emergency_override is True
    assert _credential(db, issued.blockchain_id).emergency_override is True


def test_unknown_credential_is_not_found(manager, police):
    with pytest.raises(NotFound):
        manager.access("DID_missing", police, "routine check")


def test_reason_is_required(issue, manager, police):
    issued = issue("T1")
    with pytest.raises(InvalidInput):
        manager.access(issued.blockchain_id, police, "")


def test_routine_access_on_expired_credential_is_denied(issue, manager, police, police_consent, clock):
    issued = issue("T1", validity_days=1, initial_consent=police_consent)
    clock.advance(days=2)
    manager.auto_expire()

    with pytest.raises(AccessDenied):
        manager.access(issued.blockchain_id, police, "routine check")


def test_routine_access_on_lost_credential_is_denied(issue, manager, police, police_consent, admin):
    issued = issue("T1", initial_consent=police_consent)
    manager.report_lost(issued.blockchain_id, "phone stolen", admin)

    with pytest.raises(AccessDenied):
        manager.access(issued.blockchain_id, police, "routine check")


def test_ledger_unavailable_leaves_counters_untouched(issue, manager, police, police_consent, ledger, db):
    issued = issue("T1", initial_consent=police_consent)
    ledger.set_available(False)

    with pytest.raises(LedgerUnavailable):
        manager.access(issued.blockchain_id, police, "routine check")

    assert _credential(db, issued.blockchain_id).access_count == 0
    assert db.query(AccessLogEntry).count() == 0


def test_local_failure_after_ledger_reports_success_and_queues(
    issue, manager, police, police_consent, db, session_factory, dispatcher
):
    issued = issue("T1", initial_consent=police_consent)
    failure = OperationalError("INSERT INTO access_logs", {}, Exception("database is locked"))

    with mock.patch("touristid_api.credentials.manager.LocalWriter.apply", side_effect=failure):
        result = manager.access(issued.blockchain_id, police, "routine check")

    assert result.persisted is False
    assert result.access_count == 1
    assert result.personal_data["name"] == "Tourist T1"
    assert _credential(db, issued.blockchain_id).access_count == 0

    entry = db.query(PendingLocalWrite).filter_by(operation="access").one()
    assert dispatcher.replayed == [entry.id]

    # The worker later applies the queued write exactly once
    worker_session = session_factory()
    try:
        service = ReconciliationService(worker_session)
        assert service.replay(entry.id) == "applied"
        assert service.replay(entry.id) == "applied"
    finally:
        worker_session.close()

    credential = _credential(db, issued.blockchain_id)
    assert credential.access_count == 1
    assert db.query(AccessLogEntry).filter_by(credential_id=credential.id).count() == 1
