# tests/conftest.py
"""
Scripted stand-ins for the model so the control loop can be exercised
without downloading weights.

Character-level vocabulary used throughout the tests::

    0        BOS
    1..26    'a'..'z'
    27       ' '
    28       '.'
    29       anything else
    30, 31   unused (decode to "")
"""
from typing import Callable, List, Optional

import pytest
import torch

from core.errors import EngineFailure
from core.session import GenerationSession
from core.session_config import SessionConfig
from engine.base_engine import BaseInferenceEngine, BaseTokenizer

VOCAB_SIZE = 32
BOS_ID = 0
ALPHABET = "abcdefghijklmnopqrstuvwxyz ."
UNKNOWN_ID = 29


def tok(ch: str) -> int:
    """Token id of a single character."""
    return ALPHABET.index(ch) + 1


class FakeTokenizer(BaseTokenizer):
    def __init__(self, bos_id: Optional[int] = BOS_ID) -> None:
        self.bos_id = bos_id

    def encode(self, text: str, add_bos: bool = False) -> List[int]:
        ids = [ALPHABET.index(c) + 1 if c in ALPHABET else UNKNOWN_ID for c in text]
        if add_bos and self.bos_id is not None:
            ids = [self.bos_id] + ids
        return ids

    def decode(self, tokens: List[int]) -> str:
        return "".join(ALPHABET[t - 1] for t in tokens if 1 <= t <= len(ALPHABET))


class ScriptedEngine(BaseInferenceEngine):
    """
    Returns logits peaked on `script[call_number % len(script)]`, or
    whatever `logits_fn(n_past_after_call, call_number)` returns.
    Every `_forward` call is recorded as `(tokens, start_position)`.
    """

    def __init__(
        self,
        script: Optional[List[int]] = None,
        vocab_size: int = VOCAB_SIZE,
        logits_fn: Optional[Callable[[int, int], torch.Tensor]] = None,
        fail_on_call: Optional[int] = None,
        bad_logits_on_call: Optional[int] = None,
    ) -> None:
        super().__init__()
        self._vocab = vocab_size
        self.script = list(script or [tok("a")])
        self.logits_fn = logits_fn
        self.fail_on_call = fail_on_call
        self.bad_logits_on_call = bad_logits_on_call
        self.calls = []

    @property
    def vocab_size(self) -> int:
        return self._vocab

    def _forward(self, tokens, start_position):
        self.calls.append((list(tokens), start_position))
        n = len(self.calls)
        if self.fail_on_call == n:
            raise EngineFailure("scripted failure", start_position)
        if self.bad_logits_on_call == n:
            return torch.zeros(self._vocab + 1)
        if self.logits_fn is not None:
            return self.logits_fn(start_position + len(tokens), n)

        logits = torch.zeros(self._vocab)
        logits[self.script[(n - 1) % len(self.script)]] = 10.0
        return logits


# Penalties, sampling noise, anchors and the loop guard all switched off,
# so each test turns on only what it is about.
NEUTRAL_CONFIG = dict(
    capacity=100,
    repeat_penalty=1.0,
    presence_penalty=0.0,
    frequency_penalty=0.0,
    temperature=0.0,
    anchor_enabled=False,
    loop_guard_enabled=False,
    seed=1234,
)


@pytest.fixture
def make_config():
    def _make(**overrides) -> SessionConfig:
        return SessionConfig(**{**NEUTRAL_CONFIG, **overrides})
    return _make


@pytest.fixture
def make_session(make_config):
    def _make(engine=None, tokenizer=None, **overrides) -> GenerationSession:
        return GenerationSession(
            engine=engine if engine is not None else ScriptedEngine(),
            tokenizer=tokenizer if tokenizer is not None else FakeTokenizer(),
            config=make_config(**overrides),
        )
    return _make
