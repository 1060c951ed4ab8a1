"""Database models for the index queue."""

from .base import Base
from .entry import IndexQueueEntry

__all__ = ["Base", "IndexQueueEntry"]
