"""Background workers."""
from .sweep_worker import PendingSweeper

__all__ = ["PendingSweeper"]
