# core/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    """Non-terminal phases of a GenerationSession."""
    INIT = "init"
    INGESTING = "ingesting"
    GENERATING = "generating"


class TerminalState(str, Enum):
    """How a session ended. The first three are fatal."""
    CONTEXT_EXHAUSTED = "context_exhausted"
    LOOP_DETECTED = "loop_detected"
    ENGINE_FAILURE = "engine_failure"
    MAX_TOKENS_REACHED = "max_tokens_reached"
    OPERATOR_STOPPED = "operator_stopped"

    @property
    def is_fatal(self) -> bool:
        return self in _FATAL_STATES

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self, 0)


_FATAL_STATES = {
    TerminalState.CONTEXT_EXHAUSTED,
    TerminalState.LOOP_DETECTED,
    TerminalState.ENGINE_FAILURE,
}

# 101 is what the process used to exit with when it panicked on overflow
_EXIT_CODES = {
    TerminalState.CONTEXT_EXHAUSTED: 101,
    TerminalState.LOOP_DETECTED: 102,
    TerminalState.ENGINE_FAILURE: 103,
}


class TokenSource(str, Enum):
    PROMPT = "prompt"
    GENERATED = "generated"
    ANCHOR = "anchor"


@dataclass(frozen=True)
class HistoryEntry:
    """One evaluated (or about to be evaluated) slot of the context."""
    token: int
    position: int
    source: TokenSource
    text: str = ""


@dataclass
class GuardViolation:
    """Holds information about a detected guard violation."""
    guard_type: str
    # Index relative to the start of the generated-token stream
    violation_index: int
    ngram: List[int]
    ngram_text: str
    repeats: int
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionResult:
    """What a finished GenerationSession reports back to its host."""
    terminal_state: TerminalState
    generated_tokens: int
    positions_used: int
    capacity: int
    seed: int
    message: str = ""
    violation: Optional[GuardViolation] = None
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_fatal(self) -> bool:
        return self.terminal_state.is_fatal

    @property
    def exit_code(self) -> int:
        return self.terminal_state.exit_code
