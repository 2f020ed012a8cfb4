"""Ledger facade backed by the ledger gateway's JSON API."""

import logging
import time
from typing import Optional

import httpx

from touristid_api.ledger.facade import (
    AccessGrant,
    ConsentReceipt,
    ConsentSettings,
    DisclosedBundle,
    LedgerConnectionError,
    LedgerFacade,
    LedgerReceipt,
    LedgerRejection,
    LedgerStatus,
    LedgerSubject,
    LossReceipt,
    MintReceipt,
)
from touristid_api.utils.metrics import ledger_call_duration, ledger_calls

logger = logging.getLogger(__name__)


class HttpLedgerFacade(LedgerFacade):
    """Talks to the ledger gateway, which signs and submits transactions.

    Every call is bounded by ``timeout``. A timeout is reported as
    ``LedgerConnectionError``: an in-flight write is never assumed to
    have succeeded.
    """

    provider = "http"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _call(self, operation: str, method: str, path: str, payload: Optional[dict] = None) -> dict:
        """Perform one gateway request and return its JSON body."""
        started = time.monotonic()
        try:
            response = self.client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            ledger_calls.labels(operation=operation, outcome="unavailable").inc()
            logger.warning(f"Ledger {operation} timed out: {e}")
            raise LedgerConnectionError(f"Ledger {operation} timed out") from e
        except httpx.HTTPError as e:
            ledger_calls.labels(operation=operation, outcome="unavailable").inc()
            logger.warning(f"Ledger {operation} transport error: {e}")
            raise LedgerConnectionError(f"Ledger {operation} unreachable: {e}") from e
        finally:
            ledger_call_duration.labels(operation=operation).observe(time.monotonic() - started)

        if response.status_code >= 500:
            ledger_calls.labels(operation=operation, outcome="unavailable").inc()
            raise LedgerConnectionError(
                f"Ledger {operation} failed with HTTP {response.status_code}"
            )

        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            ledger_calls.labels(operation=operation, outcome="unavailable").inc()
            raise LedgerConnectionError(f"Ledger {operation} returned invalid JSON") from e

        if response.status_code >= 400:
            ledger_calls.labels(operation=operation, outcome="rejected").inc()
            reason = body.get("reason") or body.get("error") or response.reason_phrase
            raise LedgerRejection(f"Ledger rejected {operation}: {reason}", reason=reason)

        ledger_calls.labels(operation=operation, outcome="ok").inc()
        return body

    @staticmethod
    def _tx(body: dict) -> str:
        tx = body.get("transactionHash")
        if not tx:
            raise LedgerConnectionError("Ledger response missing transactionHash")
        return tx

    def mint(self, subject: LedgerSubject, encrypted_payload: dict) -> MintReceipt:
        body = self._call(
            "mint",
            "POST",
            "/credentials",
            {
                "touristId": subject.tourist_id,
                "walletAddress": subject.wallet_address,
                "validityDays": subject.validity_days,
                "expiresAt": subject.expires_at,
                "checkoutAt": subject.checkout_at,
                "issuerId": subject.issuer_id,
                "encryptedPayload": encrypted_payload,
            },
        )
        if not body.get("credentialId"):
            raise LedgerConnectionError("Ledger mint response missing credentialId")
        return MintReceipt(
            credential_id=body["credentialId"],
            transaction_hash=self._tx(body),
            access_levels=body.get("accessLevels") or {},
        )

    def authorize_access(
        self,
        credential_id: str,
        accessor_role: str,
        reason: str,
        emergency: bool = False,
        accessor_id: Optional[str] = None,
        accessor_address: Optional[str] = None,
    ) -> AccessGrant:
        body = self._call(
            "authorize_access",
            "POST",
            f"/credentials/{credential_id}/access",
            {
                "accessorId": accessor_id,
                "accessorRole": accessor_role,
                "accessorAddress": accessor_address,
                "reason": reason,
                "emergency": emergency,
            },
        )
        data = body.get("decryptedData") or {}
        bundle = DisclosedBundle(
            personal_data=data.get("personalData"),
            booking_data=data.get("bookingData"),
            emergency_contacts=data.get("emergencyContacts"),
            emergency_data=data.get("emergencyData"),
        )
        return AccessGrant(
            bundle=bundle,
            transaction_hash=self._tx(body),
            access_levels=body.get("accessLevels") or {},
        )

    def set_consent(
        self,
        credential_id: str,
        settings: ConsentSettings,
        updater_id: Optional[str] = None,
        updater_role: Optional[str] = None,
    ) -> ConsentReceipt:
        body = self._call(
            "set_consent",
            "PUT",
            f"/credentials/{credential_id}/consent",
            {
                "consentSettings": settings.to_dict(),
                "updaterId": updater_id,
                "updaterRole": updater_role,
            },
        )
        previous = body.get("previousConsent")
        return ConsentReceipt(
            previous=ConsentSettings.from_dict(previous) if previous else None,
            transaction_hash=self._tx(body),
        )

    def report_lost(
        self,
        credential_id: str,
        reason: str,
        new_address: str,
        kiosk_location: Optional[str] = None,
    ) -> LossReceipt:
        body = self._call(
            "report_lost",
            "POST",
            f"/credentials/{credential_id}/loss",
            {"reason": reason, "newWalletAddress": new_address, "kioskLocation": kiosk_location},
        )
        if not body.get("replacementId"):
            raise LedgerConnectionError("Ledger loss response missing replacementId")
        return LossReceipt(replacement_id=body["replacementId"], transaction_hash=self._tx(body))

    def expire(self, credential_id: str) -> LedgerReceipt:
        body = self._call("expire", "POST", f"/credentials/{credential_id}/expire")
        return LedgerReceipt(transaction_hash=self._tx(body))

    def revoke(self, credential_id: str, reason: str) -> LedgerReceipt:
        body = self._call("revoke", "POST", f"/credentials/{credential_id}/revoke", {"reason": reason})
        return LedgerReceipt(transaction_hash=self._tx(body))

    def status(self) -> LedgerStatus:
        try:
            body = self._call("status", "GET", "/status")
        except (LedgerConnectionError, LedgerRejection) as e:
            return LedgerStatus(connected=False, provider=self.provider, detail=str(e))
        return LedgerStatus(
            connected=bool(body.get("connected", True)),
            provider=self.provider,
            network=body.get("network"),
            detail=body.get("detail"),
        )
