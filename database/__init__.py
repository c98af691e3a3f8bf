"""
Persistence for flows, nodes, conversations and message logs.

    from database import create_store
    store = create_store({"store_backend": "resilient"})

"sql" talks to SQLAlchemy directly, "memory" keeps everything in dicts,
and "resilient" wraps the SQL store and drops to memory after its first
failure.
"""
from database.models import Base, ConversationRow, FlowNodeRow, FlowRow, MessageRow
from database.session import close_db, get_session, init_db
from database.store import SqlStore
from database.store_base import BaseStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryStore
from database.store_resilient import ResilientStore, StoreHealth

__all__ = [
    "Base", "FlowRow", "FlowNodeRow", "ConversationRow", "MessageRow",
    "init_db", "close_db", "get_session",
    "BaseStore", "SqlStore", "InMemoryStore", "ResilientStore", "StoreHealth",
    "create_store", "get_store", "reset_store",
]
