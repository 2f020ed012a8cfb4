"""Tests for credential issuance."""

from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from touristid_api.credentials.errors import InvalidInput, LedgerUnavailable, SubjectAlreadyCredentialed
from touristid_api.credentials.repository import CredentialRepository
from touristid_api.credentials.results import Actor
from touristid_api.ledger.facade import ConsentSettings, LedgerRejection
from touristid_api.models import DigitalTouristId, LifecycleEvent, PendingLocalWrite
from touristid_api.security.hashing import hash_personal_data


def test_issue_creates_active_credential(issue, db, clock):
    result = issue("T1", validity_days=30)

    assert result.blockchain_id.startswith("DID_")
    assert result.transaction_hash.startswith("0x")
    assert result.issued_at == clock.now
    assert result.expires_at == clock.now + timedelta(days=30)
    assert result.expires_at > result.issued_at
    assert result.persisted

    credential = db.query(DigitalTouristId).filter_by(blockchain_id=result.blockchain_id).one()
    assert credential.status == "ACTIVE"
    assert credential.tourist_id == "T1"
    assert credential.access_count == 0
    assert credential.emergency_override is False
    assert credential.encryption_key_ref == "local"
    assert credential.replaces_id is None


def test_issue_stores_hash_not_personal_data(issue, db, issue_kwargs):
    result = issue("T1")
    personal_data = issue_kwargs("T1")["personal_data"]

    credential = db.query(DigitalTouristId).filter_by(blockchain_id=result.blockchain_id).one()
    assert credential.personal_data_hash == hash_personal_data(personal_data)
    row = {column.name: getattr(credential, column.name) for column in DigitalTouristId.__table__.columns}
    assert personal_data["passportNumber"] not in str(row)


def test_issue_appends_issued_event(issue, db, issuer):
    result = issue("T1")

    event = db.query(LifecycleEvent).filter_by(event_type="DIGITAL_ID_ISSUED").one()
    assert event.blockchain_id == result.blockchain_id
    assert event.tourist_id == "T1"
    assert event.transaction_hash == result.transaction_hash
    assert event.metadata_json["issuerId"] == issuer.actor_id


def test_second_issue_for_same_subject_is_rejected(issue, ledger, db):
    issue("T1", validity_days=30)
    minted = len(ledger._records)

    with pytest.raises(SubjectAlreadyCredentialed) as exc_info:
        issue("T1", validity_days=10)

    assert exc_info.value.http_status == 409
    assert len(ledger._records) == minted
    assert db.query(DigitalTouristId).filter_by(tourist_id="T1").count() == 1


def test_subject_can_be_reissued_after_expiry(issue, manager, clock, db):
    first = issue("T1", validity_days=1)
    clock.advance(days=2)
    manager.auto_expire()

    second = issue("T1", validity_days=5)

    assert second.blockchain_id != first.blockchain_id
    statuses = {c.blockchain_id: c.status for c in db.query(DigitalTouristId).all()}
    assert statuses == {first.blockchain_id: "EXPIRED", second.blockchain_id: "ACTIVE"}


@pytest.mark.parametrize("validity_days", [0, 366, 400, -1])
def test_validity_days_out_of_range_is_rejected(issue, ledger, validity_days):
    with pytest.raises(InvalidInput):
        issue("T1", validity_days=validity_days)
    assert ledger._records == {}


@pytest.mark.parametrize("validity_days", [1, 365])
def test_validity_days_bounds_are_inclusive(issue, validity_days):
    assert issue("T1", validity_days=validity_days).persisted


@pytest.mark.parametrize(
    "overrides",
    [
        {"personal_data": {"nationality": "NZ"}},
        {"personal_data": {"name": "No Nationality"}},
        {"personal_data": {"name": "  ", "nationality": "NZ"}},
        {"emergency_contacts": {"secondary": "+64 21 222 222"}},
        {"emergency_contacts": None},
        {"wallet_address": ""},
        {"validity_days": "30"},
    ],
)
def test_missing_required_fields_are_rejected(issue, ledger, overrides):
    with pytest.raises(InvalidInput):
        issue("T1", **overrides)
    assert ledger._records == {}


def test_checkout_must_be_in_the_future(issue, clock):
    with pytest.raises(InvalidInput):
        issue("T1", checkout_at=clock.now - timedelta(hours=1))


def test_checkout_is_recorded(issue, db, clock):
    checkout = clock.now + timedelta(days=3)
    result = issue("T1", checkout_at=checkout)

    credential = db.query(DigitalTouristId).filter_by(blockchain_id=result.blockchain_id).one()
    assert credential.checkout_at == checkout


def test_biometric_data_only_reaches_ledger_payload(issue, ledger, db):
    result = issue("T1", biometric_data="fingerprint-template")

    assert ledger._records[result.blockchain_id].payload["biometricData"] == "fingerprint-template"
    credential = db.query(DigitalTouristId).filter_by(blockchain_id=result.blockchain_id).one()
    assert "fingerprint-template" not in str(credential.summary())


def test_ledger_unavailable_writes_nothing(issue, ledger, db):
    ledger.set_available(False)

    with pytest.raises(LedgerUnavailable) as exc_info:
        issue("T1")

    assert exc_info.value.retryable
    assert exc_info.value.http_status == 502
    assert db.query(DigitalTouristId).count() == 0
    assert db.query(LifecycleEvent).count() == 0


def test_ledger_rejection_is_invalid_input(issue, ledger, db):
    with mock.patch.object(ledger, "mint", side_effect=LedgerRejection("wallet not allowed")):
        with pytest.raises(InvalidInput):
            issue("T1")
    assert db.query(DigitalTouristId).count() == 0


def test_initial_consent_is_applied(issue, db, ledger):
    result = issue("T1", initial_consent=ConsentSettings(police_access=True, hotel_access=True))

    assert result.consent_transaction_hash is not None
    assert ledger._records[result.blockchain_id].consent.hotel_access
    credential = db.query(DigitalTouristId).filter_by(blockchain_id=result.blockchain_id).one()
    assert credential.consent_configured
    assert db.query(LifecycleEvent).filter_by(event_type="CONSENT_UPDATED").count() == 1


def test_rejected_initial_consent_does_not_fail_issue(manager, ledger, issue_kwargs):
    with mock.patch.object(ledger, "set_consent", side_effect=LedgerRejection("not allowed")):
        result = manager.issue(
            issuer=Actor(actor_id="kiosk-1", role="kiosk"),
            initial_consent=ConsentSettings(police_access=True),
            **issue_kwargs("T1"),
        )

    assert result.persisted
    assert result.consent_transaction_hash is None


def test_local_write_failure_after_mint_is_queued(issue, db, dispatcher, session_factory):
    failure = OperationalError("INSERT INTO digital_tourist_ids", {}, Exception("disk I/O error"))
    with mock.patch("touristid_api.credentials.manager.LocalWriter.apply", side_effect=failure):
        result = issue("T1")

    assert result.persisted is False
    assert result.blockchain_id
    assert db.query(DigitalTouristId).count() == 0

    check = session_factory()
    try:
        entry = check.query(PendingLocalWrite).one()
        assert entry.operation == "issue"
        assert entry.status == "pending"
        assert entry.blockchain_id == result.blockchain_id
        assert entry.transaction_hash == result.transaction_hash
        assert "disk I/O error" in entry.last_error
    finally:
        check.close()
    assert dispatcher.replayed == [entry.id]


def test_queued_issue_blocks_another_issue_for_subject(issue, ledger, db, dispatcher):
    failure = OperationalError("INSERT INTO digital_tourist_ids", {}, Exception("disk I/O error"))
    with mock.patch("touristid_api.credentials.manager.LocalWriter.apply", side_effect=failure):
        queued = issue("T1")

    with pytest.raises(SubjectAlreadyCredentialed):
        issue("T1")

    active = [cid for cid, record in ledger._records.items() if record.tourist_id == "T1" and record.status == "ACTIVE"]
    assert active == [queued.blockchain_id]
    assert dispatcher.replayed == [db.query(PendingLocalWrite).one().id]


def test_only_pending_issue_rows_block_subject(issue, db):
    failure = OperationalError("INSERT INTO digital_tourist_ids", {}, Exception("disk I/O error"))
    with mock.patch("touristid_api.credentials.manager.LocalWriter.apply", side_effect=failure):
        issue("T1")
    db.query(PendingLocalWrite).update({"status": "applied"})
    db.commit()

    assert CredentialRepository(db).issue_pending_for_subject("T1") is False
    assert CredentialRepository(db).issue_pending_for_subject("T2") is False

def test_concurrent_issue_for_same_subject_admits_one(
    make_manager, session_factory, ledger, issuer, issue_kwargs, monkeypatch
):
    """The loser of an insert race gets SubjectAlreadyCredentialed and its mint is revoked."""
    first_session = session_factory()
    second_session = session_factory()
    first = make_manager(first_session)
    second = make_manager(second_session)

    real_mint = ledger.mint
    raced = []
    winners = []

    def racing_mint(subject, encrypted_payload):
        if not raced:
            raced.append(True)
            # While the first caller waits on the ledger, the second completes
            winners.append(second.issue(issuer=issuer, **issue_kwargs("T1")))
        return real_mint(subject, encrypted_payload)

    monkeypatch.setattr(ledger, "mint", racing_mint)

    try:
        with pytest.raises(SubjectAlreadyCredentialed):
            first.issue(issuer=issuer, **issue_kwargs("T1"))

        active = first_session.query(DigitalTouristId).filter_by(tourist_id="T1", status="ACTIVE").all()
        assert [c.blockchain_id for c in active] == [winners[0].blockchain_id]

        revoked = [cid for cid, record in ledger._records.items() if record.status == "REVOKED"]
        assert len(revoked) == 1
        assert revoked[0] != winners[0].blockchain_id
    finally:
        first_session.close()
        second_session.close()
