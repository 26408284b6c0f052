"""
SQLAlchemy database models for the ledger-backed board.

This module defines StoredTransaction (every ledger transaction relevant to
the board, plus the ones this device authored) and KeyState (per-key load
timestamps that bound the historical scan).
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Boolean, LargeBinary
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class StoredTransaction(Base):
    """
    A ledger transaction known to this device.

    `raw` holds the CBOR encoding of the transaction. Authored transactions
    stay unconfirmed until the ledger reports them back through a scan or a
    watch, and are resubmitted when the session becomes ready.
    """
    __tablename__ = 'transactions'

    txid = Column(String, primary_key=True)
    raw = Column(LargeBinary, nullable=False)
    timestamp = Column(DateTime, nullable=True)
    authored = Column(Boolean, default=False, nullable=False)
    confirmed = Column(Boolean, default=False, nullable=False)
    stored_at = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<StoredTransaction(txid={self.txid[:8]}, confirmed={self.confirmed})>"


class KeyState(Base):
    """First time a public key was loaded on this device."""
    __tablename__ = 'key_states'

    public_key = Column(String, primary_key=True)  # hex
    load_ts = Column(DateTime, nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<KeyState(public_key={self.public_key[:16]}, load_ts={self.load_ts})>"
