"""Relay service for thread delivery, the store-and-forward mailbox and the helper cache."""

from .cache_store import CacheEntry, HelperCacheStore, QuotaExceeded
from .hub import Subscription, ThreadHub
from .mailbox import MailboxEvent, ReaderCursors, ThreadMailbox
from .ws_transport import Runtime, create_app

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "HelperCacheStore",
    "QuotaExceeded",
    "Subscription",
    "ThreadHub",
    "MailboxEvent",
    "ReaderCursors",
    "ThreadMailbox",
    "Runtime",
    "create_app",
    "__version__",
]
