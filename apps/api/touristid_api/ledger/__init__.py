"""Ledger facade selection."""

import logging
from typing import Optional

from touristid_api.ledger.facade import LedgerFacade
from touristid_api.settings import get_settings

logger = logging.getLogger(__name__)

_ledger_facade: Optional[LedgerFacade] = None


def build_ledger_facade(settings) -> LedgerFacade:
    """Construct the facade named by ``settings.ledger_provider``."""
    provider = settings.ledger_provider.lower()
    if provider == "http":
        from touristid_api.ledger.http_facade import HttpLedgerFacade

        return HttpLedgerFacade(
            settings.ledger_gateway_url,
            api_key=settings.ledger_api_key,
            timeout=settings.ledger_timeout_seconds,
        )
    if provider == "simulated":
        from touristid_api.ledger.simulated import SimulatedLedgerFacade
        from touristid_api.security.encryption import get_encryption_service

        logger.warning("Using simulated ledger; credentials are not anchored on a real ledger")
        return SimulatedLedgerFacade(get_encryption_service())
    raise ValueError(f"Unknown ledger provider: {settings.ledger_provider}")


def get_ledger_facade() -> LedgerFacade:
    """Get the process-wide ledger facade."""
    global _ledger_facade
    if _ledger_facade is None:
        _ledger_facade = build_ledger_facade(get_settings())
    return _ledger_facade


def close_ledger_facade() -> None:
    """Close and forget the process-wide ledger facade."""
    global _ledger_facade
    if _ledger_facade is not None:
        _ledger_facade.close()
        _ledger_facade = None
