"""
Ledger Transport boundary for the ledger-backed board

Defines the transaction types the board consumes, the abstract
LedgerTransport interface (watch, scan, sign, broadcast, sync state) and
MemoryLedger, an in-process ledger used for offline boards and tests.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

try:
    import cbor2
except ImportError:
    raise ImportError("cbor2 is required. Install with: pip install cbor2")

from core.codec import parse_multisig, pay_to_pubkey_script
from core.crypto_manager import KeyPair
from core.fee_engine import FundingPlan, SpendableInput


logger = logging.getLogger(__name__)


@dataclass
class TxInput:
    """Reference to a spent output plus the key that signed for it."""
    prev_txid: str
    prev_index: int
    public_key: Optional[bytes] = None
    signature: Optional[bytes] = None


@dataclass
class TxOutput:
    """Value locked by a script."""
    value: int
    script: bytes


@dataclass
class Transaction:
    """
    A ledger transaction as seen by the board.

    Attributes:
        txid: Hex transaction id (display order)
        inputs: Spent outputs
        outputs: Created outputs
        timestamp: Time the ledger recorded the transaction, if known
    """
    txid: str
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    timestamp: Optional[datetime] = None

    @staticmethod
    def compute_txid(inputs: List[TxInput], outputs: List[TxOutput], nonce: int = 0) -> str:
        """Double SHA-256 over the unsigned body."""
        body = cbor2.dumps({
            "inputs": [[i.prev_txid, i.prev_index] for i in inputs],
            "outputs": [[o.value, o.script] for o in outputs],
            "nonce": nonce,
        })
        return hashlib.sha256(hashlib.sha256(body).digest()).digest()[::-1].hex()

    def to_bytes(self) -> bytes:
        """CBOR encoding used for local storage."""
        return cbor2.dumps({
            "txid": self.txid,
            "inputs": [
                [i.prev_txid, i.prev_index, i.public_key, i.signature]
                for i in self.inputs
            ],
            "outputs": [[o.value, o.script] for o in self.outputs],
            "timestamp": self.timestamp.timestamp() if self.timestamp else None,
        })

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Transaction":
        data = cbor2.loads(raw)
        timestamp = data.get("timestamp")
        return cls(
            txid=data["txid"],
            inputs=[TxInput(*item) for item in data["inputs"]],
            outputs=[TxOutput(*item) for item in data["outputs"]],
            timestamp=datetime.fromtimestamp(timestamp, timezone.utc) if timestamp is not None else None
        )

    def involves(self, public_key: bytes) -> bool:
        """Whether the key signs an input or appears in an output script."""
        if any(i.public_key == public_key for i in self.inputs):
            return True
        p2pk = pay_to_pubkey_script(public_key)
        for output in self.outputs:
            if output.script == p2pk:
                return True
            keys = parse_multisig(output.script)
            if keys and public_key in keys:
                return True
        return False


@dataclass
class BroadcastResult:
    """Outcome of a broadcast."""
    accepted: bool
    txid: str
    reason: str = ""


@dataclass(frozen=True)
class ScanWindow:
    """Closed time range swept by one scan."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError("Scan window start must not be after its end")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


TransactionCallback = Callable[[Transaction], None]


class LedgerTransport(ABC):
    """
    Narrow interface to the ledger, its peer network and the wallet signer.

    Implementations report sync state through listeners registered with
    add_synced_listener()/add_progress_listener().
    """

    @abstractmethod
    def watch(self, public_key: bytes, callback: TransactionCallback) -> None:
        """Deliver new transactions involving `public_key` to `callback`."""

    @abstractmethod
    def unwatch(self, public_key: bytes) -> None:
        """Stop delivering transactions for `public_key`."""

    @abstractmethod
    def scan(self, public_key: bytes, window: ScanWindow) -> AsyncIterator[Transaction]:
        """Yield historical transactions involving `public_key` within `window`."""

    @abstractmethod
    def list_spendable(self, public_key: bytes) -> List[SpendableInput]:
        """Unspent outputs `public_key` can sign for."""

    @abstractmethod
    async def sign(self, plan: FundingPlan, keypair: KeyPair) -> Transaction:
        """Turn a funding plan into a signed transaction."""

    @abstractmethod
    async def broadcast(self, tx: Transaction) -> BroadcastResult:
        """Submit a transaction to the network."""

    @abstractmethod
    def is_fully_synced(self) -> bool:
        """Whether the transport has caught up with the network."""

    @abstractmethod
    def add_synced_listener(self, callback: Callable[[], None]) -> None:
        """Call `callback` when the transport becomes fully synced."""

    @abstractmethod
    def remove_synced_listener(self, callback: Callable[[], None]) -> None:
        """Remove a synced listener."""

    def add_progress_listener(self, callback: Callable[[float], None]) -> None:
        """Call `callback(fraction)` as the transport syncs."""

    def remove_progress_listener(self, callback: Callable[[float], None]) -> None:
        """Remove a progress listener."""


class MemoryLedger(LedgerTransport):
    """
    In-process ledger.

    Keeps every transaction in memory, tracks unspent outputs paid to
    `<pubkey> OP_CHECKSIG` scripts and accepts any transaction whose inputs
    are unspent. Used for offline boards and in tests.
    """

    def __init__(self, synced: bool = True, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize MemoryLedger.

        Args:
            synced: Whether the ledger starts fully synced
            clock: Source of transaction timestamps (default: UTC now)
        """
        self.transactions: Dict[str, Transaction] = {}
        self._order: List[str] = []
        self._utxos: Dict[Tuple[str, int], Tuple[int, Optional[bytes]]] = {}
        self._watchers: Dict[bytes, TransactionCallback] = {}
        self._synced = synced
        self._synced_listeners: List[Callable[[], None]] = []
        self._progress_listeners: List[Callable[[float], None]] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._nonce = 0

        # Failure injection for scans and broadcasts
        self.fail_scans = 0
        self.reject_reason: Optional[str] = None
        self.broadcasts: List[str] = []
        self.scans: List[ScanWindow] = []

    # Funding

    def fund(self, public_key: bytes, value: int, timestamp: Optional[datetime] = None) -> Transaction:
        """Create an output of `value` paid to `public_key` out of thin air."""
        self._nonce += 1
        outputs = [TxOutput(value=value, script=pay_to_pubkey_script(public_key))]
        tx = Transaction(
            txid=Transaction.compute_txid([], outputs, self._nonce),
            outputs=outputs,
            timestamp=timestamp or self._clock()
        )
        self._apply(tx)
        return tx

    def add_transaction(self, tx: Transaction) -> None:
        """Record an arbitrary transaction without spending checks."""
        if tx.timestamp is None:
            tx.timestamp = self._clock()
        self._apply(tx)

    def _apply(self, tx: Transaction) -> None:
        for tx_input in tx.inputs:
            self._utxos.pop((tx_input.prev_txid, tx_input.prev_index), None)
        for index, output in enumerate(tx.outputs):
            owner = None
            if len(output.script) in (35, 67) and output.script[-1] == 0xAC:
                owner = output.script[1:-1]
            self._utxos[(tx.txid, index)] = (output.value, owner)

        self.transactions[tx.txid] = tx
        self._order.append(tx.txid)

        for key, callback in list(self._watchers.items()):
            if tx.involves(key):
                callback(tx)

    # LedgerTransport

    def watch(self, public_key: bytes, callback: TransactionCallback) -> None:
        self._watchers[public_key] = callback

    def unwatch(self, public_key: bytes) -> None:
        self._watchers.pop(public_key, None)

    @property
    def watched_keys(self) -> Set[bytes]:
        return set(self._watchers)

    async def scan(self, public_key: bytes, window: ScanWindow) -> AsyncIterator[Transaction]:
        self.scans.append(window)
        if self.fail_scans > 0:
            self.fail_scans -= 1
            raise ConnectionError("Scan interrupted")

        for txid in list(self._order):
            tx = self.transactions[txid]
            if tx.timestamp is not None and window.contains(tx.timestamp) and tx.involves(public_key):
                await asyncio.sleep(0)
                yield tx

    def list_spendable(self, public_key: bytes) -> List[SpendableInput]:
        return [
            SpendableInput(txid=txid, index=index, value=value)
            for (txid, index), (value, owner) in self._utxos.items()
            if owner == public_key
        ]

    async def sign(self, plan: FundingPlan, keypair: KeyPair) -> Transaction:
        inputs = [
            TxInput(prev_txid=i.txid, prev_index=i.index, public_key=keypair.public_key)
            for i in plan.inputs
        ]
        outputs = [TxOutput(value=o.value, script=o.script) for o in plan.outputs]
        txid = Transaction.compute_txid(inputs, outputs)
        for tx_input in inputs:
            tx_input.signature = keypair.sign(bytes.fromhex(txid))
        return Transaction(txid=txid, inputs=inputs, outputs=outputs)

    async def broadcast(self, tx: Transaction) -> BroadcastResult:
        self.broadcasts.append(tx.txid)
        await asyncio.sleep(0)

        if self.reject_reason:
            return BroadcastResult(accepted=False, txid=tx.txid, reason=self.reject_reason)

        if tx.txid in self.transactions:
            return BroadcastResult(accepted=True, txid=tx.txid)

        for tx_input in tx.inputs:
            if (tx_input.prev_txid, tx_input.prev_index) not in self._utxos:
                return BroadcastResult(
                    accepted=False,
                    txid=tx.txid,
                    reason=f"missing or spent input {tx_input.prev_txid[:8]}:{tx_input.prev_index}"
                )

        if tx.timestamp is None:
            tx.timestamp = self._clock()
        self._apply(tx)
        return BroadcastResult(accepted=True, txid=tx.txid)

    def is_fully_synced(self) -> bool:
        return self._synced

    def add_synced_listener(self, callback: Callable[[], None]) -> None:
        self._synced_listeners.append(callback)

    def remove_synced_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._synced_listeners:
            self._synced_listeners.remove(callback)

    def add_progress_listener(self, callback: Callable[[float], None]) -> None:
        self._progress_listeners.append(callback)

    def remove_progress_listener(self, callback: Callable[[float], None]) -> None:
        if callback in self._progress_listeners:
            self._progress_listeners.remove(callback)

    @property
    def listener_count(self) -> int:
        return len(self._synced_listeners) + len(self._progress_listeners)

    def report_progress(self, fraction: float) -> None:
        """Notify progress listeners."""
        for callback in list(self._progress_listeners):
            callback(fraction)

    def set_synced(self) -> None:
        """Mark the ledger synced and notify listeners (may repeat)."""
        self._synced = True
        for callback in list(self._synced_listeners):
            callback()
