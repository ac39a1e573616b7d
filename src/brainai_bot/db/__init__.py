"""
Database module for BrainAI Bot
"""
from .base import Base
from .engine import create_db_engine, init_db, get_engine, get_session_factory
from .models import BotUser, UserQuota

__all__ = [
    "Base",
    "create_db_engine",
    "init_db",
    "get_engine",
    "get_session_factory",
    "BotUser",
    "UserQuota",
]
