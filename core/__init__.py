"""
Core module for the ledger-backed board.

This module contains the core functionality including:
- Message codec (fake-multisig chunk scripts)
- Fee engine (input selection, fees, change)
- Cryptography (key derivation, discovery records, owner resolution)
- Ledger transport interface and in-memory ledger
- Database operations
- Synchronization logic
"""

__version__ = "0.1.0"

from core.codec import EncodedMessage, encode_message, decode_message
from core.fee_engine import FeeEngine, FundingPlan, SpendableInput, DustChangePolicy
from core.sync_manager import SyncController, SyncError, SyncState
from core.transport import LedgerTransport, MemoryLedger, Transaction, ScanWindow

__all__ = [
    'EncodedMessage',
    'encode_message',
    'decode_message',
    'FeeEngine',
    'FundingPlan',
    'SpendableInput',
    'DustChangePolicy',
    'SyncController',
    'SyncError',
    'SyncState',
    'LedgerTransport',
    'MemoryLedger',
    'Transaction',
    'ScanWindow',
]
