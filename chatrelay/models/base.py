"""
SQLAlchemy 2.0 async DeclarativeBase for the chat relay.

All models inherit from this Base.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all chat relay database models."""
    pass
