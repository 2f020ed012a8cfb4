"""Credential states and the allowed lifecycle transitions."""

import enum

from touristid_api.credentials.errors import InvalidTransition


class CredentialStatus(str, enum.Enum):
    """Lifecycle state of a Digital Tourist ID."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    LOST = "LOST"


class EventType(str, enum.Enum):
    """Lifecycle event tags written to the event log."""

    DIGITAL_ID_ISSUED = "DIGITAL_ID_ISSUED"
    DIGITAL_ID_ACCESSED = "DIGITAL_ID_ACCESSED"
    CONSENT_UPDATED = "CONSENT_UPDATED"
    DIGITAL_ID_LOST_REPORTED = "DIGITAL_ID_LOST_REPORTED"
    DIGITAL_ID_REVOKED = "DIGITAL_ID_REVOKED"
    EMERGENCY_ACCESS_TRIGGERED = "EMERGENCY_ACCESS_TRIGGERED"
    DIGITAL_ID_EXPIRED = "DIGITAL_ID_EXPIRED"
    AUTO_EXPIRATION_RUN = "AUTO_EXPIRATION_RUN"
    DUPLICATE_ISSUE_REVOKED = "DUPLICATE_ISSUE_REVOKED"


# Terminal states have no outgoing edges.
TRANSITIONS: dict[CredentialStatus, frozenset[CredentialStatus]] = {
    CredentialStatus.ACTIVE: frozenset(
        {CredentialStatus.EXPIRED, CredentialStatus.REVOKED, CredentialStatus.LOST}
    ),
    CredentialStatus.EXPIRED: frozenset(),
    CredentialStatus.REVOKED: frozenset(),
    CredentialStatus.LOST: frozenset(),
}


def can_transition(current: str, target: CredentialStatus) -> bool:
    """Return True if ``current -> target`` is an allowed lifecycle edge."""
    return target in TRANSITIONS[CredentialStatus(current)]


def ensure_transition(blockchain_id: str, current: str, target: CredentialStatus) -> None:
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Digital ID {blockchain_id} is {current.lower()}; "
            f"cannot move to {target.value.lower()}"
        )
