# guards/base_guard.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from state.token_history import TokenHistory
from core.models import GuardViolation


class BaseGuard(ABC):
    """
    Common interface for stream guards.  A guard looks at the history after
    each emission and reports a violation; it never edits the history.
    """
    guard_type: str  # subclasses must set

    @abstractmethod
    def check(self, history: TokenHistory) -> Optional[GuardViolation]:
        raise NotImplementedError
