r"""
Synchronization Controller for the ledger-backed board

Owns identity resolution (self vs. owner), the readiness signals, the scan
window and the incremental historical scan. The controller moves through
explicit states:

    IDLE -> RESOLVING -> WAITING -> SCANNING -> READY
                 \           \          \          \
                  +-----------+----------+----------+--> CLOSED
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from core.crypto_manager import OwnerResolution, resolve_owner
from core.db_manager import DBManager
from core.error_handler import ScanPassError
from core.transport import LedgerTransport, ScanWindow, Transaction


logger = logging.getLogger(__name__)


DEFAULT_SCAN_DELTA = timedelta(days=30)
DEFAULT_PASS_DELAY = 1.0


class SyncError(Exception):
    """Invalid use of the sync controller."""
    pass


class SyncState(Enum):
    """Lifecycle of a SyncController."""
    IDLE = "idle"
    RESOLVING = "resolving"
    WAITING = "waiting"
    SCANNING = "scanning"
    READY = "ready"
    CLOSED = "closed"


class ReadySignal(Enum):
    """Prerequisites that must fire before scanning starts."""
    SELF_IDENTITY = "self_identity"
    OWNER_IDENTITY = "owner_identity"
    TRANSPORT_SYNCED = "transport_synced"


_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.RESOLVING, SyncState.CLOSED}),
    SyncState.RESOLVING: frozenset({SyncState.WAITING, SyncState.CLOSED}),
    SyncState.WAITING: frozenset({SyncState.SCANNING, SyncState.CLOSED}),
    SyncState.SCANNING: frozenset({SyncState.READY, SyncState.CLOSED}),
    SyncState.READY: frozenset({SyncState.CLOSED}),
    SyncState.CLOSED: frozenset(),
}


class PendingSignals:
    """
    Set of readiness signals that have not fired yet.

    Each signal is consumed at most once; firing it again is ignored.
    """

    def __init__(self, signals: Iterable[ReadySignal] = tuple(ReadySignal)):
        self._pending: Set[ReadySignal] = set(signals)
        self._fired: List[ReadySignal] = []

    def fire(self, signal: ReadySignal) -> bool:
        """
        Consume a signal.

        Returns:
            True if the signal was pending, False for a duplicate
        """
        if signal not in self._pending:
            return False
        self._pending.discard(signal)
        self._fired.append(signal)
        return True

    @property
    def pending(self) -> FrozenSet[ReadySignal]:
        return frozenset(self._pending)

    @property
    def fired(self) -> List[ReadySignal]:
        return list(self._fired)

    @property
    def complete(self) -> bool:
        return not self._pending


def compute_scan_start(
    epoch: datetime,
    self_load_ts: Optional[datetime] = None,
    owner_load_ts: Optional[datetime] = None
) -> datetime:
    """Earliest of the known load timestamps and the board epoch."""
    candidates = [ts for ts in (self_load_ts, owner_load_ts) if ts is not None]
    candidates.append(epoch)
    return min(candidates)


RecordResolver = Callable[[str], Awaitable[List]]


class SyncController:
    """
    Drives a board from identity resolution to a completed historical scan.

    Responsibilities:
    - Resolve the owner identity from the domain's discovery record
    - Track readiness signals (self, owner, transport synced)
    - Sweep the ledger in fixed windows from the scan start up to now
    - Retry failed passes after a fixed delay, forever

    Events are plain callback attributes, set by the owner of the
    controller:
        on_identity_resolved(resolution)
        on_record_needed(record_text)
        on_chain_progress(fraction)
        on_transaction(tx)
        on_scan_progress(window, fraction)
        on_scan_error(error)
        on_ready()
    """

    def __init__(
        self,
        transport: LedgerTransport,
        resolve_records: RecordResolver,
        domain: str,
        self_key: bytes,
        db: Optional[DBManager] = None,
        scan_delta: timedelta = DEFAULT_SCAN_DELTA,
        pass_delay: float = DEFAULT_PASS_DELAY,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize SyncController.

        Args:
            transport: Ledger transport to scan
            resolve_records: Coroutine returning the TXT records of a domain
            domain: Board domain
            self_key: Local public key
            db: Optional database holding per-key load timestamps
            scan_delta: Length of one scan pass
            pass_delay: Seconds to wait between passes and after failures
            clock: Source of the current time (default: UTC now)
        """
        if scan_delta <= timedelta(0):
            raise ValueError("Scan delta must be positive")

        self.transport = transport
        self.resolve_records = resolve_records
        self.domain = domain
        self.self_key = self_key
        self.db = db
        self.scan_delta = scan_delta
        self.pass_delay = pass_delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.state = SyncState.IDLE
        self.signals = PendingSignals()
        self.resolution: Optional[OwnerResolution] = None
        self.scan_start: Optional[datetime] = None
        self.window: Optional[ScanWindow] = None
        self.passes = 0
        self.failed_passes = 0

        self.ready_event = asyncio.Event()
        self.scan_task: Optional[asyncio.Task] = None
        self._listening = False

        self.on_identity_resolved: Optional[Callable[[OwnerResolution], None]] = None
        self.on_record_needed: Optional[Callable[[str], None]] = None
        self.on_chain_progress: Optional[Callable[[float], None]] = None
        self.on_transaction: Optional[Callable[[Transaction], None]] = None
        self.on_scan_progress: Optional[Callable[[ScanWindow, float], None]] = None
        self.on_scan_error: Optional[Callable[[ScanPassError], None]] = None
        self.on_ready: Optional[Callable[[], None]] = None

    @property
    def is_ready(self) -> bool:
        return self.state == SyncState.READY

    @property
    def closed(self) -> bool:
        return self.state == SyncState.CLOSED

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SyncError(f"Invalid transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Sync state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is not None:
            callback(*args)

    async def start(self) -> OwnerResolution:
        """
        Resolve identities and arm the readiness signals.

        Scanning starts on its own once every signal has fired.

        Returns:
            OwnerResolution for the session

        Raises:
            SyncError: If the controller was already started or closed
        """
        self._transition(SyncState.RESOLVING)
        self._listen_transport()

        records: List = []
        try:
            records = list(await self.resolve_records(self.domain) or [])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"TXT lookup for {self.domain} failed: {e}")

        if self.closed:
            raise SyncError("Controller closed during resolution")

        resolution = resolve_owner(records, self.self_key, self._clock())
        self.resolution = resolution

        if resolution.needs_record:
            logger.info(f"The domain {self.domain} does not have a BT record.")
        else:
            role = "owner" if resolution.is_owner else "guest"
            logger.info(f"Resolved owner of {self.domain} ({resolution.owner.key_id}), joining as {role}")

        self._emit(self.on_identity_resolved, resolution)
        if resolution.needs_record:
            self._emit(self.on_record_needed, resolution.record.format())

        self_load_ts = owner_load_ts = None
        if self.db is not None:
            now = self._clock()
            self_load_ts = self.db.set_load_ts(resolution.self_identity.public_key, now)
            owner_load_ts = self.db.set_load_ts(resolution.owner.public_key, now)
        self.scan_start = compute_scan_start(resolution.epoch, self_load_ts, owner_load_ts)
        self.window = ScanWindow(self.scan_start, self.scan_start)

        self._transition(SyncState.WAITING)
        self.signal(ReadySignal.SELF_IDENTITY)
        self.signal(ReadySignal.OWNER_IDENTITY)
        if self.transport.is_fully_synced():
            self.signal(ReadySignal.TRANSPORT_SYNCED)

        return resolution

    def signal(self, signal: ReadySignal) -> bool:
        """
        Fire a readiness signal.

        Duplicates are ignored. When the last signal fires while the
        controller waits, scanning begins.

        Returns:
            True if the signal was consumed
        """
        if self.closed:
            return False

        if not self.signals.fire(signal):
            logger.debug(f"Ignoring duplicate readiness signal {signal.value}")
            return False

        logger.debug(f"Readiness signal {signal.value} fired, pending: {len(self.signals.pending)}")
        if self.signals.complete and self.state == SyncState.WAITING:
            self._begin_scan()
        return True

    def _listen_transport(self) -> None:
        if self._listening:
            return
        self.transport.add_synced_listener(self._on_transport_synced)
        self.transport.add_progress_listener(self._on_transport_progress)
        self._listening = True

    def _unlisten_transport(self) -> None:
        if not self._listening:
            return
        self.transport.remove_synced_listener(self._on_transport_synced)
        self.transport.remove_progress_listener(self._on_transport_progress)
        self._listening = False

    def _on_transport_synced(self) -> None:
        if ReadySignal.TRANSPORT_SYNCED in self.signals.pending:
            logger.info("Ledger is full and up-to-date")
        self.signal(ReadySignal.TRANSPORT_SYNCED)
        if self.transport.is_fully_synced():
            self.transport.remove_progress_listener(self._on_transport_progress)

    def _on_transport_progress(self, fraction: float) -> None:
        if not self.closed:
            self._emit(self.on_chain_progress, fraction)

    def _begin_scan(self) -> None:
        self._transition(SyncState.SCANNING)
        logger.info(f"Scanning ledger from {self.scan_start.isoformat()}")
        self.scan_task = asyncio.create_task(self._scan_loop())

    def _progress(self, now: datetime) -> float:
        total = (now - self.window.start).total_seconds()
        if total <= 0:
            return 1.0
        return min(1.0, (self.window.end - self.window.start).total_seconds() / total)

    async def _scan_loop(self) -> None:
        """
        Sweep the ledger one window at a time.

        Passes run strictly one after another; a failed pass is retried
        after the pass delay.
        """
        owner_key = self.resolution.owner.public_key

        while not self.closed:
            now = self._clock()
            pass_end = max(self.window.end, min(self.window.end + self.scan_delta, now))
            pass_window = ScanWindow(self.window.end, pass_end)

            try:
                found = []
                async for tx in self.transport.scan(owner_key, pass_window):
                    found.append(tx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed_passes += 1
                error = ScanPassError(f"Scan pass {pass_window.start.isoformat()} failed: {e}")
                logger.warning(f"{error}; retrying in {self.pass_delay}s")
                self._emit(self.on_scan_error, error)
                await asyncio.sleep(self.pass_delay)
                continue

            if self.closed:
                return

            for tx in found:
                self._emit(self.on_transaction, tx)

            self.window = ScanWindow(self.window.start, pass_end)
            self.passes += 1
            progress = self._progress(now)
            logger.debug(
                f"Scan pass {self.passes} done up to {pass_end.isoformat()} "
                f"({len(found)} transactions, {progress:.0%})"
            )
            self._emit(self.on_scan_progress, self.window, progress)

            if pass_end >= now:
                break
            await asyncio.sleep(self.pass_delay)

        if self.closed:
            return

        self._transition(SyncState.READY)
        logger.info(f"Scan of {self.domain} complete after {self.passes} passes")
        self.ready_event.set()
        self._emit(self.on_ready)

    async def wait_ready(self) -> None:
        """Wait until the historical scan completes."""
        await self.ready_event.wait()

    async def close(self) -> None:
        """
        Stop scanning and release transport listeners.

        Safe to call more than once.
        """
        if self.closed:
            return
        self._transition(SyncState.CLOSED)
        self._unlisten_transport()

        if self.scan_task and not self.scan_task.done():
            self.scan_task.cancel()
            try:
                await self.scan_task
            except asyncio.CancelledError:
                pass

        logger.info(f"Sync controller for {self.domain} closed")
