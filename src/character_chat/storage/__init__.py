from character_chat.storage.accounts import AccountRepository
from character_chat.storage.catalog import CatalogRepository
from character_chat.storage.events import EventEmitter
from character_chat.storage.notes import NoteRepository
from character_chat.storage.sessions import SessionRepository
from character_chat.storage.store import ChatStore
from character_chat.storage.summaries import SummaryRepository

__all__ = [
    "AccountRepository",
    "CatalogRepository",
    "ChatStore",
    "EventEmitter",
    "NoteRepository",
    "SessionRepository",
    "SummaryRepository",
]
