"""
Data models module for the ledger-backed board.

This module contains SQLAlchemy ORM models for:
- Stored ledger transactions
- Per-key load timestamps
"""
