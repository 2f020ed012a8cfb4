"""Tests for administrative revocation and ledger event mirroring."""

from unittest import mock

import pytest

from touristid_api.credentials.errors import InvalidTransition, LedgerUnavailable, NotFound, PermissionDenied
from touristid_api.ledger.facade import LedgerRejection
from touristid_api.models import DigitalTouristId, LifecycleEvent


def test_revoke_moves_active_to_revoked(issue, manager, admin, ledger, db):
    issued = issue("T1")

    result = manager.revoke(issued.blockchain_id, "fraudulent booking", admin)

    assert result.persisted
    assert ledger._records[issued.blockchain_id].status == "REVOKED"
    db.expire_all()
    assert db.query(DigitalTouristId).filter_by(blockchain_id=issued.blockchain_id).one().status == "REVOKED"
    event = db.query(LifecycleEvent).filter_by(event_type="DIGITAL_ID_REVOKED").one()
    assert event.metadata_json["reason"] == "fraudulent booking"
    assert event.metadata_json["revokerId"] == admin.actor_id


def test_revoked_subject_can_be_issued_again(issue, manager, admin):
    issued = issue("T1")
    manager.revoke(issued.blockchain_id, "duplicate account", admin)

    assert issue("T1").blockchain_id != issued.blockchain_id


@pytest.mark.parametrize("terminal", ["lost", "expired"])
def test_revoke_from_terminal_state_is_invalid(issue, manager, admin, clock, ledger, terminal):
    issued = issue("T1", validity_days=1)
    if terminal == "lost":
        manager.report_lost(issued.blockchain_id, "lost phone", admin)
    else:
        clock.advance(days=2)
        manager.auto_expire()

    with mock.patch.object(ledger, "revoke") as ledger_revoke:
        with pytest.raises(InvalidTransition):
            manager.revoke(issued.blockchain_id, "cleanup", admin)
    ledger_revoke.assert_not_called()


def test_ledger_rejection_is_permission_denied(issue, manager, police, ledger):
    issued = issue("T1")

    with mock.patch.object(ledger, "revoke", side_effect=LedgerRejection("not an admin")):
        with pytest.raises(PermissionDenied):
            manager.revoke(issued.blockchain_id, "suspicious", police)


def test_ledger_unavailable(issue, manager, admin, ledger, db):
    issued = issue("T1")
    ledger.set_available(False)

    with pytest.raises(LedgerUnavailable):
        manager.revoke(issued.blockchain_id, "suspicious", admin)

    db.expire_all()
    assert db.query(DigitalTouristId).filter_by(blockchain_id=issued.blockchain_id).one().status == "ACTIVE"


def test_unknown_credential_is_not_found(manager, admin):
    with pytest.raises(NotFound):
        manager.revoke("DID_missing", "suspicious", admin)


def test_record_ledger_event_is_idempotent_per_transaction(manager, db):
    for _ in range(2):
        assert manager.record_ledger_event(
            "DIGITAL_ID_EXPIRED",
            blockchain_id="DID_1",
            tourist_id="T1",
            transaction_hash="0xabc",
            metadata={"block": 42},
        )

    event = db.query(LifecycleEvent).filter_by(event_type="DIGITAL_ID_EXPIRED").one()
    assert event.metadata_json == {"block": 42}
    assert event.tourist_id == "T1"
