# core/session_config.py
"""
SessionConfig
=============

Immutable knobs captured when a GenerationSession is built.  Validation
happens in ``__post_init__`` so a bad value is rejected before the engine
is ever touched.

``from_dict`` understands the nested layout of ``config.yaml`` (see
``utils/helpers.py``)::

    generation_params: {context_size, overflow_fraction, max_tokens,
                        temperature, top_p, top_k, seed}
    penalties:         {repeat_penalty, repeat_last_n,
                        presence_penalty, frequency_penalty}
    mirostat:          {enabled, tau, eta}
    anchors:           {enabled, interval, text, echo}
    loop_guard:        {enabled, window, ngram, repeats, mode}
"""
from __future__ import annotations

import math
from argparse import ArgumentTypeError
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.errors import ConfigurationError
from utils.helpers import _str2bool

UNBOUNDED_WINDOW = -1
LOOP_GUARD_MODES = ("consecutive", "window")

DEFAULT_ANCHOR_TEXT = (
    "\n\nRemember: you are still inside the same piece of writing. "
    "Continue it with a new thought.\n\n"
)


@dataclass(frozen=True)
class SessionConfig:
    capacity: int = 1024
    overflow_fraction: float = 0.95
    max_tokens: Optional[int] = None

    repeat_penalty: float = 2.15
    repeat_last_n: int = UNBOUNDED_WINDOW
    presence_penalty: float = 1.35
    frequency_penalty: float = 1.05

    temperature: float = 0.22
    top_p: float = 0.5
    top_k: int = 20

    mirostat_enabled: bool = False
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1

    anchor_enabled: bool = True
    anchor_interval: int = 80
    anchor_text: str = DEFAULT_ANCHOR_TEXT
    echo_anchors: bool = True

    loop_guard_enabled: bool = True
    loop_guard_window: int = 64
    loop_guard_ngram: int = 4
    loop_guard_repeats: int = 3
    loop_guard_mode: str = "consecutive"

    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self._validate()

    # ------------------------------------------------------------------ #
    #  Validation                                                         #
    # ------------------------------------------------------------------ #
    def _validate(self) -> None:
        if self.capacity <= 0:
            raise ConfigurationError(f"capacity must be positive, got {self.capacity}")
        if not (0.0 < self.overflow_fraction <= 1.0):
            raise ConfigurationError(
                f"overflow_fraction must be in (0, 1], got {self.overflow_fraction}"
            )
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ConfigurationError(f"max_tokens must be positive when set, got {self.max_tokens}")

        if self.repeat_penalty <= 0:
            raise ConfigurationError(f"repeat_penalty must be positive, got {self.repeat_penalty}")
        if self.repeat_last_n < UNBOUNDED_WINDOW:
            raise ConfigurationError(
                f"repeat_last_n must be >= -1 (-1 = unbounded), got {self.repeat_last_n}"
            )

        if self.temperature < 0 or math.isnan(self.temperature):
            raise ConfigurationError(f"temperature must be >= 0, got {self.temperature}")
        if not (0.0 < self.top_p <= 1.0):
            raise ConfigurationError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ConfigurationError(f"top_k must be >= 0, got {self.top_k}")

        if self.mirostat_tau <= 0:
            raise ConfigurationError(f"mirostat_tau must be positive, got {self.mirostat_tau}")
        if self.mirostat_eta <= 0:
            raise ConfigurationError(f"mirostat_eta must be positive, got {self.mirostat_eta}")

        if self.anchor_interval < 0:
            raise ConfigurationError(f"anchor_interval must be >= 0, got {self.anchor_interval}")

        if self.loop_guard_mode not in LOOP_GUARD_MODES:
            raise ConfigurationError(
                f"loop_guard_mode must be one of {LOOP_GUARD_MODES}, got {self.loop_guard_mode!r}"
            )
        for name in ("loop_guard_window", "loop_guard_ngram", "loop_guard_repeats"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.loop_guard_enabled and self.loop_guard_ngram * self.loop_guard_repeats > self.loop_guard_window:
            raise ConfigurationError(
                f"loop_guard_window ({self.loop_guard_window}) is too small to hold "
                f"{self.loop_guard_repeats} repeats of a {self.loop_guard_ngram}-gram"
            )

        if self.seed is not None and not (0 <= self.seed < 2 ** 32):
            raise ConfigurationError(f"seed must fit in 32 bits, got {self.seed}")

    # ------------------------------------------------------------------ #
    #  Derived views                                                      #
    # ------------------------------------------------------------------ #
    @property
    def anchors_active(self) -> bool:
        return self.anchor_enabled and self.anchor_interval > 0 and bool(self.anchor_text)

    @property
    def penalty_window(self) -> int:
        """repeat_last_n clamped to the context capacity."""
        if self.repeat_last_n == UNBOUNDED_WINDOW:
            return UNBOUNDED_WINDOW
        return min(self.repeat_last_n, self.capacity)

    # ------------------------------------------------------------------ #
    #  Construction from merged YAML/CLI config                           #
    # ------------------------------------------------------------------ #
    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "SessionConfig":
        gen = cfg.get("generation_params", {}) or {}
        pen = cfg.get("penalties", {}) or {}
        miro = cfg.get("mirostat", {}) or {}
        anchors = cfg.get("anchors", {}) or {}
        guard = cfg.get("loop_guard", {}) or {}

        kwargs: Dict[str, Any] = {}

        def _take(section: Dict[str, Any], src_key: str, dst_key: str, cast) -> None:
            value = section.get(src_key)
            if value is None:
                return
            try:
                kwargs[dst_key] = cast(value)
            except (TypeError, ValueError, ArgumentTypeError) as e:
                raise ConfigurationError(f"invalid value for {dst_key}: {value!r} ({e})") from e

        _take(gen, "context_size", "capacity", int)
        _take(gen, "overflow_fraction", "overflow_fraction", float)
        _take(gen, "max_tokens", "max_tokens", int)
        _take(gen, "temperature", "temperature", float)
        _take(gen, "top_p", "top_p", float)
        _take(gen, "top_k", "top_k", int)
        _take(gen, "seed", "seed", int)

        _take(pen, "repeat_penalty", "repeat_penalty", float)
        _take(pen, "repeat_last_n", "repeat_last_n", int)
        _take(pen, "presence_penalty", "presence_penalty", float)
        _take(pen, "frequency_penalty", "frequency_penalty", float)

        _take(miro, "enabled", "mirostat_enabled", _str2bool)
        _take(miro, "tau", "mirostat_tau", float)
        _take(miro, "eta", "mirostat_eta", float)

        _take(anchors, "enabled", "anchor_enabled", _str2bool)
        _take(anchors, "interval", "anchor_interval", int)
        _take(anchors, "text", "anchor_text", str)
        _take(anchors, "echo", "echo_anchors", _str2bool)

        _take(guard, "enabled", "loop_guard_enabled", _str2bool)
        _take(guard, "window", "loop_guard_window", int)
        _take(guard, "ngram", "loop_guard_ngram", int)
        _take(guard, "repeats", "loop_guard_repeats", int)
        _take(guard, "mode", "loop_guard_mode", str)

        return cls(**kwargs)
