"""Syntropy: worker orchestration and task ledger."""

__version__ = "0.3.0"
