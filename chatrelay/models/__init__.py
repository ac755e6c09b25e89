"""
Models package — export all SQLAlchemy models.
"""

from chatrelay.models.base import Base
from chatrelay.models.direct_message import DirectMessage
from chatrelay.models.user import User

__all__ = ["Base", "DirectMessage", "User"]
