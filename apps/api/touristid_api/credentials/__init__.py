"""Credential lifecycle: state machine, data access and the lifecycle manager."""
