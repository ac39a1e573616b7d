"""
Database models for BrainAI Bot
"""
from .user import BotUser
from .quota import UserQuota

__all__ = [
    "BotUser",
    "UserQuota",
]
