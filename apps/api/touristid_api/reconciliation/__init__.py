"""Outbox for ledger-confirmed local writes and its replay."""
