"""
Database manager for the ledger-backed board.

This module provides the DBManager class which stores the ledger
transactions relevant to a board, the transactions this device authored and
per-key load timestamps, with transaction management and automatic rollback.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from core.error_handler import StorageError
from core.transport import Transaction
from models.database import Base, StoredTransaction, KeyState


def _to_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _to_naive(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite DateTime columns store naive UTC
    if moment is None:
        return None
    return _to_utc(moment).replace(tzinfo=None)


class DBManager:
    """
    Manages database operations for the board.

    Provides methods for initializing the database, saving and retrieving
    transactions and key state, and managing sessions with automatic
    rollback on errors.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self.engine = None
        self.SessionLocal = None

    def initialize_database(self):
        """
        Initialize the database by creating the schema if it doesn't exist.

        Creates all tables defined in the models and sets up the session factory.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"
        self.engine = create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False}
        )

        Base.metadata.create_all(self.engine)

        # expire_on_commit=False avoids detached instance errors
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def close(self) -> None:
        """Dispose of the engine and its connections."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self.SessionLocal = None

    @contextmanager
    def get_session(self) -> Session:
        """
        Context manager for database sessions with automatic rollback on error.

        Yields:
            Session: SQLAlchemy session object

        Raises:
            StorageError: If the database is not initialized or an operation fails

        Example:
            with db_manager.get_session() as session:
                session.add(stored)
        """
        if self.SessionLocal is None:
            raise StorageError("Database is not initialized")

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Database operation failed: {e}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Transaction operations

    def save_transaction(
        self,
        tx: Transaction,
        authored: bool = False,
        confirmed: bool = True
    ) -> bool:
        """
        Save or update a transaction.

        An existing row keeps its `authored` flag; a confirmed sighting
        confirms it.

        Args:
            tx: Transaction to store
            authored: Whether this device created the transaction
            confirmed: Whether the ledger has reported the transaction

        Returns:
            True if the transaction was not stored before
        """
        with self.get_session() as session:
            stored = session.get(StoredTransaction, tx.txid)
            if stored is None:
                session.add(StoredTransaction(
                    txid=tx.txid,
                    raw=tx.to_bytes(),
                    timestamp=_to_naive(tx.timestamp),
                    authored=authored,
                    confirmed=confirmed
                ))
                return True

            stored.authored = stored.authored or authored
            if confirmed and not stored.confirmed:
                stored.confirmed = True
                stored.raw = tx.to_bytes()
                stored.timestamp = _to_naive(tx.timestamp)
            return False

    def get_transaction(self, txid: str) -> Optional[Transaction]:
        """Fetch a transaction by its full id."""
        with self.get_session() as session:
            stored = session.get(StoredTransaction, txid)
            if stored is None:
                return None
            return self._load(stored)

    def get_all_transactions(self) -> List[Transaction]:
        """Return all stored transactions ordered by storage time."""
        with self.get_session() as session:
            rows = (
                session.query(StoredTransaction)
                .order_by(StoredTransaction.stored_at, StoredTransaction.txid)
                .all()
            )
            return [self._load(row) for row in rows]

    def get_unconfirmed_authored(self) -> List[Transaction]:
        """Authored transactions the ledger has not reported back yet."""
        with self.get_session() as session:
            rows = (
                session.query(StoredTransaction)
                .filter(StoredTransaction.authored.is_(True))
                .filter(StoredTransaction.confirmed.is_(False))
                .order_by(StoredTransaction.stored_at)
                .all()
            )
            return [self._load(row) for row in rows]

    def mark_confirmed(self, txid: str) -> None:
        """Mark a stored transaction as confirmed."""
        with self.get_session() as session:
            stored = session.get(StoredTransaction, txid)
            if stored is not None:
                stored.confirmed = True

    def delete_transaction(self, txid: str) -> bool:
        """
        Delete a stored transaction.

        Returns:
            True if a row was deleted
        """
        with self.get_session() as session:
            stored = session.get(StoredTransaction, txid)
            if stored is None:
                return False
            session.delete(stored)
            return True

    def is_confirmed(self, txid: str) -> bool:
        with self.get_session() as session:
            stored = session.get(StoredTransaction, txid)
            return bool(stored and stored.confirmed)

    @staticmethod
    def _load(stored: StoredTransaction) -> Transaction:
        tx = Transaction.from_bytes(stored.raw)
        if tx.timestamp is None:
            tx.timestamp = _to_utc(stored.timestamp)
        return tx

    # Key state operations

    def get_load_ts(self, public_key: bytes) -> Optional[datetime]:
        """First load time of a key, if it was ever loaded."""
        with self.get_session() as session:
            state = session.get(KeyState, public_key.hex())
            return _to_utc(state.load_ts) if state else None

    def set_load_ts(self, public_key: bytes, load_ts: datetime) -> datetime:
        """
        Record the load time of a key unless one is already stored.

        Returns:
            The stored load time
        """
        with self.get_session() as session:
            state = session.get(KeyState, public_key.hex())
            if state is None:
                state = KeyState(public_key=public_key.hex(), load_ts=_to_naive(load_ts))
                session.add(state)
            return _to_utc(state.load_ts)
