"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

# Ledger metrics
ledger_calls = Counter(
    "touristid_ledger_calls_total",
    "Ledger facade calls",
    ["operation", "outcome"],  # outcome: ok, rejected, unavailable
)

ledger_call_duration = Histogram(
    "touristid_ledger_call_duration_seconds",
    "Ledger facade call duration",
    ["operation"],
)

# Lifecycle metrics
credentials_issued = Counter(
    "touristid_credentials_issued_total",
    "Credentials issued (including replacements)",
    ["kind"],  # new, replacement
)

credential_accesses = Counter(
    "touristid_credential_accesses_total",
    "Completed disclosures",
    ["path"],  # routine, emergency
)

credentials_expired = Counter(
    "touristid_credentials_expired_total",
    "Credentials moved to EXPIRED by the auto-expiration sweep",
)

# Reconciliation metrics
local_writes_queued = Counter(
    "touristid_local_writes_queued_total",
    "Ledger-confirmed local writes queued for reconciliation",
    ["operation"],
)

local_writes_replayed = Counter(
    "touristid_local_writes_replayed_total",
    "Reconciliation replays",
    ["operation", "outcome"],  # applied, failed, conflict
)
