"""
Thread Manager for the ledger-backed board

Decodes posts out of ledger transactions and assembles them into reply
trees. Replies may be seen before the post they answer; they wait in an
orphan table until the parent shows up.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from core.codec import decode_message, unpack_payload
from core.error_handler import MalformedMessageError
from core.transport import Transaction


logger = logging.getLogger(__name__)


OWNER_AUTHOR = "owner"
UNKNOWN_AUTHOR = "unknown"
UNTITLED = "(untitled)"

_TITLE_PATTERN = re.compile(r"^(?:# )?\s*(.*)$", re.MULTILINE)


class ThreadManagerError(Exception):
    """Base exception for ThreadManager errors."""
    pass


@dataclass
class Post:
    """
    A post decoded from a ledger transaction.

    Attributes:
        hash: Transaction id (hex)
        author: "owner", the signing key in hex, or "unknown"
        timestamp: Ledger time of the transaction
        title: First line of the content
        content: Post body
        reply_to: Hash of the post this one answers
        replies: Direct replies, filled in by ThreadBuilder
    """
    hash: str
    author: str
    timestamp: datetime
    title: str
    content: str
    reply_to: Optional[str] = None
    replies: List["Post"] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.reply_to is None

    def detached(self) -> "Post":
        """Copy without replies."""
        return Post(
            hash=self.hash,
            author=self.author,
            timestamp=self.timestamp,
            title=self.title,
            content=self.content,
            reply_to=self.reply_to
        )

    def __repr__(self):
        return f"<Post(hash={self.hash[:8]}, title={self.title!r}, replies={len(self.replies)})>"


def derive_title(content: str) -> str:
    """First line of the content without a leading `# ` marker."""
    match = _TITLE_PATTERN.search(content)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return UNTITLED


def resolve_author(tx: Transaction, owner_key: bytes) -> str:
    """
    Attribute a transaction to an author.

    The owner signs at least one input of its own posts; anyone else is
    named by the key of the first input.
    """
    keys = [i.public_key for i in tx.inputs if i.public_key]
    if owner_key in keys:
        return OWNER_AUTHOR
    if keys:
        return keys[0].hex()
    return UNKNOWN_AUTHOR


def post_from_transaction(tx: Transaction, owner_key: bytes) -> Optional[Post]:
    """
    Decode a post from a transaction.

    Args:
        tx: Ledger transaction
        owner_key: Board owner's public key

    Returns:
        Post, or None if the transaction carries no message

    Raises:
        MalformedMessageError: If the message cannot be decoded
    """
    body = decode_message((o.script for o in tx.outputs), owner_key)
    if body is None:
        return None

    payload = unpack_payload(body)
    content = payload.get("content")
    if not isinstance(content, str) or not content:
        raise MalformedMessageError("Message has no content")

    reply_to = payload.get("replyTo")
    if reply_to is not None and not isinstance(reply_to, str):
        raise MalformedMessageError("Message replyTo is not a hash")

    return Post(
        hash=tx.txid,
        author=resolve_author(tx, owner_key),
        timestamp=tx.timestamp or datetime.now(timezone.utc),
        title=derive_title(content),
        content=content,
        reply_to=reply_to or None
    )


def decode_posts(transactions: Iterable[Transaction], owner_key: bytes) -> List[Post]:
    """Decode every transaction that carries a message, skipping malformed ones."""
    posts = []
    for tx in transactions:
        try:
            post = post_from_transaction(tx, owner_key)
        except MalformedMessageError as e:
            logger.debug(f"Skipping transaction {tx.txid[:8]}: {e}")
            continue
        if post is not None:
            posts.append(post)
    return posts


class ThreadBuilder:
    """
    Assembles posts into reply trees.

    Storage is flat: `posts` maps hash to post and `orphans` maps a missing
    parent hash to the replies waiting for it. Linking happens in
    `add()`, independent of arrival order.
    """

    def __init__(self):
        self.posts: Dict[str, Post] = {}
        self.roots: List[Post] = []
        self.orphans: Dict[str, List[Post]] = defaultdict(list)

    def add(self, post: Post) -> None:
        """
        Register a post and link it to its parent and waiting children.

        A post hash already registered is ignored.
        """
        if post.hash in self.posts:
            return

        if post.reply_to is None:
            self.roots.append(post)
        elif post.reply_to in self.posts:
            self.posts[post.reply_to].replies.append(post)
        else:
            self.orphans[post.reply_to].append(post)

        self.posts[post.hash] = post

        waiting = self.orphans.pop(post.hash, None)
        if waiting:
            post.replies.extend(waiting)

    def threads(self) -> List[Post]:
        """
        Roots newest first, replies oldest first at every level.

        Replies whose parent never arrived are not reachable.
        """
        for post in self.posts.values():
            post.replies.sort(key=lambda p: (p.timestamp, p.hash))
        return sorted(self.roots, key=lambda p: (p.timestamp, p.hash), reverse=True)

    @property
    def dangling(self) -> List[Post]:
        """Replies still waiting for their parent."""
        return [post for waiting in self.orphans.values() for post in waiting]

    @classmethod
    def build(cls, posts: Iterable[Post]) -> List[Post]:
        """
        Build a reply forest.

        Input posts are copied, so building twice never duplicates replies.

        Args:
            posts: Posts in any order

        Returns:
            Root posts, newest first
        """
        builder = cls()
        for post in posts:
            builder.add(post.detached())
        dropped = len(builder.dangling)
        if dropped:
            logger.debug(f"Dropped {dropped} replies with unknown parents")
        return builder.threads()

    @staticmethod
    def find(posts: Iterable[Post], prefix: str) -> Optional[Post]:
        """First post whose hash starts with `prefix`."""
        for post in posts:
            if post.hash.startswith(prefix):
                return post
        return None


def flatten(threads: Iterable[Post]) -> List[Post]:
    """All posts reachable from the given roots, depth first."""
    result = []
    stack = list(reversed(list(threads)))
    while stack:
        post = stack.pop()
        result.append(post)
        stack.extend(reversed(post.replies))
    return result
