"""
Application Logic Layer for the ledger-backed board

This module provides the session that coordinates the core infrastructure
(codec, fees, sync, storage) and the thread view built from decoded posts.
"""

from logic.board_manager import BoardSession, BoardManagerError
from logic.thread_manager import Post, ThreadBuilder, ThreadManagerError

__all__ = [
    'BoardSession',
    'BoardManagerError',
    'Post',
    'ThreadBuilder',
    'ThreadManagerError',
]
