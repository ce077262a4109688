# guards/__init__.py
from .base_guard import BaseGuard
from .loop_guard import LoopGuard

__all__ = [
    "BaseGuard",
    "LoopGuard",
]
