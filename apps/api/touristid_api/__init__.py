"""Digital Tourist ID credential service."""

__version__ = "0.1.0"
