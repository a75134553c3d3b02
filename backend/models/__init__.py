"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_engine
from models.agent import Agent, AgentStatus, AgentVersion
from models.thread import (
    GENERAL_MODE,
    AgentIdentity,
    HistoryRecord,
    Thread,
    ThreadMessage,
)

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_engine",
    "Agent",
    "AgentStatus",
    "AgentVersion",
    "AgentIdentity",
    "GENERAL_MODE",
    "HistoryRecord",
    "Thread",
    "ThreadMessage",
]
