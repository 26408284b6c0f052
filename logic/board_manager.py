"""
Board Session for the ledger-backed board

Composes identity resolution, the historical scan, the codec, the fee
engine and the transport into the session API:

- start(): resolve the owner and begin scanning
- post(): encode, fund, sign and broadcast a post (queued until ready)
- list(): reply trees, or a single post by hash prefix
- close(): stop scanning and release transport subscriptions
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Deque, List, Optional, Tuple, Union

from core.codec import pack_payload
from core.crypto_manager import CryptoManager, KeyPair, OwnerResolution
from core.db_manager import DBManager
from core.error_handler import (
    ErrorContext,
    ErrorHandler,
    InsufficientFundsError,
    MalformedMessageError,
    SessionClosedError,
    TransportRejectedError,
    ValidationError,
    get_error_handler,
)
from core.fee_engine import FeeEngine
from core.sync_manager import (
    DEFAULT_PASS_DELAY,
    DEFAULT_SCAN_DELTA,
    RecordResolver,
    SyncController,
)
from core.transport import LedgerTransport, ScanWindow, Transaction
from logic.thread_manager import Post, ThreadBuilder, decode_posts, post_from_transaction


logger = logging.getLogger(__name__)


ConfirmCallback = Callable[[int, int], Awaitable[bool]]


class BoardManagerError(Exception):
    """Base exception for BoardSession errors."""
    pass


@dataclass
class PostRequest:
    """A post waiting for the session to become ready."""
    content: str
    reply_to: Optional[str]
    author_payment: int
    confirm: Optional[ConfirmCallback]


class BoardSession:
    """
    One device's view of one board.

    Events are callback attributes:
        on_identity_resolved(resolution)
        on_record_needed(record_text)
        on_chain_progress(fraction)
        on_scan_progress(window, fraction)
        on_scan_complete()
        on_post(post)
        on_error(error, error_context)
    """

    def __init__(
        self,
        domain: str,
        transport: LedgerTransport,
        resolve_records: RecordResolver,
        db: DBManager,
        fee_engine: FeeEngine,
        passphrase: Optional[str] = None,
        keypair: Optional[KeyPair] = None,
        crypto_manager: Optional[CryptoManager] = None,
        error_handler: Optional[ErrorHandler] = None,
        scan_delta: timedelta = DEFAULT_SCAN_DELTA,
        pass_delay: float = DEFAULT_PASS_DELAY,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize BoardSession.

        Args:
            domain: Board domain carrying the discovery record
            transport: Ledger transport
            resolve_records: Coroutine returning the TXT records of a domain
            db: Initialized database
            fee_engine: Fee policy
            passphrase: Passphrase the local key is derived from
            keypair: Local key, instead of a passphrase
            crypto_manager: CryptoManager used for derivation
            error_handler: ErrorHandler (default: the global one)
            scan_delta: Length of one scan pass
            pass_delay: Seconds between scan passes
            clock: Source of the current time

        Raises:
            BoardManagerError: If neither passphrase nor keypair is given
        """
        if keypair is None:
            if not passphrase:
                raise BoardManagerError("A passphrase or keypair is required")
            keypair = (crypto_manager or CryptoManager()).derive_keypair(passphrase, domain)

        self.domain = domain
        self.transport = transport
        self.db = db
        self.fee_engine = fee_engine
        self.keypair = keypair
        self.error_handler = error_handler or get_error_handler()

        self.sync = SyncController(
            transport=transport,
            resolve_records=resolve_records,
            domain=domain,
            self_key=keypair.public_key,
            db=db,
            scan_delta=scan_delta,
            pass_delay=pass_delay,
            clock=clock
        )
        self.sync.on_identity_resolved = self._on_identity_resolved
        self.sync.on_record_needed = lambda text: self._emit(self.on_record_needed, text)
        self.sync.on_chain_progress = lambda fraction: self._emit(self.on_chain_progress, fraction)
        self.sync.on_transaction = self._ingest
        self.sync.on_scan_progress = self._on_scan_progress
        self.sync.on_scan_error = lambda error: self._report(error, "ledger scan")
        self.sync.on_ready = self._on_ready

        self.resolution: Optional[OwnerResolution] = None
        self.closed = False
        self._watching: Optional[bytes] = None
        self._accepting_posts = False
        self._queue: Deque[Tuple[PostRequest, asyncio.Future]] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self.ready_event = asyncio.Event()

        self.on_identity_resolved: Optional[Callable[[OwnerResolution], None]] = None
        self.on_record_needed: Optional[Callable[[str], None]] = None
        self.on_chain_progress: Optional[Callable[[float], None]] = None
        self.on_scan_progress: Optional[Callable[[ScanWindow, float], None]] = None
        self.on_scan_complete: Optional[Callable[[], None]] = None
        self.on_post: Optional[Callable[[Post], None]] = None
        self.on_error: Optional[Callable[[Exception, ErrorContext], None]] = None

    # Identity

    @property
    def self_key(self) -> bytes:
        return self.keypair.public_key

    @property
    def owner_key(self) -> bytes:
        if self.resolution is None:
            raise BoardManagerError("Board owner is not resolved yet")
        return self.resolution.owner.public_key

    @property
    def is_owner(self) -> bool:
        return self.resolution is not None and self.resolution.is_owner

    @property
    def is_ready(self) -> bool:
        return self._accepting_posts and not self.closed

    # Lifecycle

    async def start(self) -> OwnerResolution:
        """
        Resolve the board owner and start the historical scan.

        Returns:
            OwnerResolution
        """
        if self.closed:
            raise SessionClosedError("Session is closed")
        return await self.sync.start()

    async def wait_ready(self) -> None:
        """Wait until the historical scan completes and posts are accepted."""
        await self.ready_event.wait()

    async def close(self) -> None:
        """
        Stop scanning, release subscriptions and cancel queued posts.

        Safe to call more than once.
        """
        if self.closed:
            return
        self.closed = True

        await self.sync.close()
        if self._watching is not None:
            self.transport.unwatch(self._watching)
            self._watching = None

        if self._ready_task and not self._ready_task.done():
            self._ready_task.cancel()

        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.cancel()

        logger.info(f"Session for {self.domain} closed")

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is not None:
            callback(*args)

    def _report(self, error: Exception, operation: str, txid: Optional[str] = None) -> ErrorContext:
        context = self.error_handler.handle_error(error, operation, txid=txid, domain=self.domain)
        self._emit(self.on_error, error, context)
        return context

    # Sync events

    def _on_identity_resolved(self, resolution: OwnerResolution) -> None:
        self.resolution = resolution
        self.transport.watch(resolution.owner.public_key, self._on_live_transaction)
        self._watching = resolution.owner.public_key
        self._emit(self.on_identity_resolved, resolution)

    def _on_scan_progress(self, window: ScanWindow, fraction: float) -> None:
        self._emit(self.on_scan_progress, window, fraction)

    def _on_live_transaction(self, tx: Transaction) -> None:
        if not self.closed:
            self._ingest(tx)

    def _ingest(self, tx: Transaction) -> None:
        """Store a transaction seen on the ledger and announce new posts."""
        was_confirmed = self.db.is_confirmed(tx.txid)
        self.db.save_transaction(tx, confirmed=True)
        if was_confirmed:
            return

        try:
            post = post_from_transaction(tx, self.owner_key)
        except MalformedMessageError as e:
            logger.debug(f"Skipping transaction {tx.txid[:8]}: {e}")
            return
        if post is not None:
            logger.debug(f"Observed post {post.hash[:8]} by {post.author[:16]}")
            self._emit(self.on_post, post)

    def _on_ready(self) -> None:
        self._ready_task = asyncio.create_task(self._become_ready())

    async def _become_ready(self) -> None:
        await self._resubmit_unconfirmed()
        if self.closed:
            return
        self._emit(self.on_scan_complete)
        self._accepting_posts = True
        self.ready_event.set()
        self._kick()

    async def _resubmit_unconfirmed(self) -> None:
        """Re-broadcast authored transactions the ledger has not reported."""
        pending = self.db.get_unconfirmed_authored()
        if pending:
            logger.info(f"Resubmitting {len(pending)} unconfirmed transactions")
        for tx in pending:
            if self.closed:
                return
            result = await self.transport.broadcast(tx)
            if result.accepted:
                logger.info(f"Got ACK for TX {tx.txid}")
            else:
                self.db.delete_transaction(tx.txid)
                self._report(TransportRejectedError(tx.txid, result.reason), "resubmit", txid=tx.txid)

    # Posting

    async def post(
        self,
        content: str,
        reply_to: Optional[str] = None,
        author_payment: int = 0,
        confirm: Optional[ConfirmCallback] = None
    ) -> Tuple[bool, str]:
        """
        Publish a post.

        Posts issued before the scan completes are queued and run in
        submission order once it does.

        Args:
            content: Post body; its first line becomes the title
            reply_to: Hash or hash prefix of the post being answered
            author_payment: Extra payment to the board owner (0 or >= dust)
            confirm: Optional coroutine `confirm(cost, fee)`; False aborts

        Returns:
            (accepted, txid)

        Raises:
            ValidationError: Invalid request
            InsufficientFundsError: Not enough spendable funds
            SessionClosedError: Session closed before the post ran
        """
        if self.closed:
            raise SessionClosedError("Session is closed")
        if not isinstance(content, str) or not content:
            raise ValidationError("Post content cannot be empty")
        self.fee_engine.validate_payment(author_payment)

        future = asyncio.get_running_loop().create_future()
        self._queue.append((PostRequest(content, reply_to, author_payment, confirm), future))
        if not self._accepting_posts:
            logger.info(f"Queued post until scan completes ({len(self._queue)} waiting)")
        self._kick()

        try:
            return await future
        except asyncio.CancelledError:
            if self.closed:
                raise SessionClosedError("Session closed before the post was sent")
            raise

    def _kick(self) -> None:
        if not self._accepting_posts or self.closed:
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue and not self.closed:
            request, future = self._queue.popleft()
            if future.done():
                continue
            try:
                result = await self._execute(request)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _resolve_reply_to(self, reply_to: str) -> str:
        for tx in self.db.get_all_transactions():
            if tx.txid.startswith(reply_to):
                return tx.txid
        raise ValidationError(f"TX {reply_to} is unknown", reference=reply_to)

    async def _execute(self, request: PostRequest) -> Tuple[bool, str]:
        """Validate, fund, sign, confirm and broadcast one post."""
        if not self.is_owner and not request.reply_to:
            raise ValidationError("You are not owner, please use replyTo to post")

        payload = {"content": request.content}
        if request.reply_to:
            payload["replyTo"] = self._resolve_reply_to(request.reply_to)
        body = pack_payload(payload)

        inputs = self.transport.list_spendable(self.self_key)
        try:
            plan = self.fee_engine.plan(
                body,
                owner_key=self.owner_key,
                self_key=self.self_key,
                inputs=inputs,
                author_payment=request.author_payment,
                is_owner=self.is_owner
            )
        except InsufficientFundsError as e:
            self._report(e, "post funding")
            raise

        tx = await self.transport.sign(plan, self.keypair)

        if request.confirm is not None:
            if not await request.confirm(plan.cost, plan.fee):
                logger.info(f"Post {tx.txid[:8]} declined")
                return False, tx.txid

        if self.closed:
            raise SessionClosedError("Session closed before the post was sent")

        self.db.save_transaction(tx, authored=True, confirmed=False)
        logger.info(f"Sending TX with id {tx.txid}")
        result = await self.transport.broadcast(tx)

        if not result.accepted:
            self.db.delete_transaction(tx.txid)
            self._report(TransportRejectedError(tx.txid, result.reason), "post broadcast", txid=tx.txid)
            return False, tx.txid

        logger.info(f"Got ACK for TX {tx.txid}")
        return True, tx.txid

    # Reading

    def posts(self) -> List[Post]:
        """All decodable posts known to this device."""
        if self.resolution is None:
            return []
        return decode_posts(self.db.get_all_transactions(), self.owner_key)

    def list(self, hash_prefix: Optional[str] = None) -> Union[Optional[Post], List[Post]]:
        """
        Read the board.

        Args:
            hash_prefix: Return only the first post whose hash starts with it

        Returns:
            A single Post (or None) for a prefix, otherwise root posts newest first
        """
        posts = self.posts()
        if hash_prefix:
            return ThreadBuilder.find(posts, hash_prefix)
        return ThreadBuilder.build(posts)
