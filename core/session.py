# core/session.py
"""
GenerationSession
=================

Runs the per-token control loop against a fixed-size context:

    pending history → engine → penalties → strategy → history append
        → decode + emit → anchor check → guards → budget → next step

and stops in exactly one terminal state:

    CONTEXT_EXHAUSTED | LOOP_DETECTED | ENGINE_FAILURE      (fatal)
    MAX_TOKENS_REACHED | OPERATOR_STOPPED                    (normal)

Fatal outcomes are *returned* as a ``SessionResult``; deciding to exit the
process loudly is left to the caller (see ``main.py``).

Every anchor injection, guard violation and budget warning is pushed to
``self.events`` for downstream inspection.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Generator, List, Optional, Union

from core.anchor_scheduler import AnchorScheduler
from core.errors import ConfigurationError, EngineFailure
from core.models import (
    GuardViolation,
    SessionResult,
    SessionState,
    TerminalState,
    TokenSource,
)
from core.penalties import PenaltyStage
from core.session_config import SessionConfig
from core.strategies import MirostatController, build_strategy, make_generator, resolve_seed
from engine.base_engine import BaseInferenceEngine, BaseTokenizer
from guards.base_guard import BaseGuard
from guards.loop_guard import LoopGuard
from state.context_budget import ContextBudget
from state.token_history import TokenHistory

logger = logging.getLogger(__name__)


class GenerationSession:
    """
    One generation run.  Owns the token history, budget counters, anchor
    countdown, guards and (if enabled) the mirostat state; none of it is
    shared with any other session.
    """

    # ------------------------------------------------------------------ #
    #  Initialisation                                                     #
    # ------------------------------------------------------------------ #
    def __init__(
        self,
        engine: BaseInferenceEngine,
        tokenizer: BaseTokenizer,
        config: Union[SessionConfig, Dict[str, Any]],
        extra_guards: Optional[List[BaseGuard]] = None,
        on_event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_token_callback: Optional[Callable[[int, str], None]] = None,
    ) -> None:
        if isinstance(config, dict):
            config = SessionConfig.from_dict(config)
        self.config = config
        self.engine = engine
        self.tokenizer = tokenizer

        self.on_event_callback = on_event_callback
        self.on_token_callback = on_token_callback

        self.seed = resolve_seed(config.seed)
        self.generator = make_generator(self.seed)
        self.strategy = build_strategy(config, self.generator)
        self.penalties = PenaltyStage.from_config(config)

        # anchor text is tokenized once, up front
        anchor_tokens: List[int] = []
        if config.anchors_active:
            anchor_tokens = tokenizer.encode(config.anchor_text, add_bos=False)
            if len(anchor_tokens) >= config.capacity:
                raise ConfigurationError(
                    f"anchor text ({len(anchor_tokens)} tokens) does not fit in the "
                    f"context capacity ({config.capacity})"
                )
        self.anchors = AnchorScheduler(anchor_tokens, config.anchor_interval,
                                       enabled=config.anchors_active)

        self.guards: List[BaseGuard] = []
        if config.loop_guard_enabled:
            self.guards.append(LoopGuard(
                window=config.loop_guard_window,
                ngram=config.loop_guard_ngram,
                repeats=config.loop_guard_repeats,
                mode=config.loop_guard_mode,
                decode=tokenizer.decode,
            ))
        self.guards.extend(extra_guards or [])

        self.history = TokenHistory()
        self.budget = ContextBudget(config.capacity, config.overflow_fraction, config.max_tokens)

        self.state: Union[SessionState, TerminalState] = SessionState.INIT
        self.events: List[Dict[str, Any]] = []
        self.result: Optional[SessionResult] = None
        self._stop_requested = False

        logger.info(
            f"GenerationSession ready: capacity={config.capacity}, "
            f"threshold={self.budget.threshold}, max_tokens={config.max_tokens}, "
            f"strategy={self.strategy.name}, seed={self.seed}, "
            f"anchor_tokens={len(self.anchors) if self.anchors.enabled else 'off'}, "
            f"guards={[g.__class__.__name__ for g in self.guards]}"
        )

    # ------------------------------------------------------------------ #
    #  Host controls                                                      #
    # ------------------------------------------------------------------ #
    def request_stop(self) -> None:
        """Ask the loop to stop at the next step boundary (signal-safe)."""
        self._stop_requested = True

    # ------------------------------------------------------------------ #
    #  Helpers                                                            #
    # ------------------------------------------------------------------ #
    def _push_event(self, event: Dict[str, Any]) -> None:
        self.events.append(event)
        if self.on_event_callback:
            try:
                self.on_event_callback(event)
            except Exception as e_cb:
                logger.error(f"Error in on_event_callback: {e_cb}", exc_info=True)

    def _evaluate_pending(self):
        pending = self.history.pending()
        logits = self.engine.evaluate([e.token for e in pending], pending[0].position)
        self.history.mark_cached()
        return logits

    def _run_guards(self) -> Optional[GuardViolation]:
        for g in self.guards:
            vio = g.check(self.history)
            if vio:
                return vio
        return None

    def _inject_anchor(self) -> str:
        tokens = self.anchors.anchor_tokens
        start = self.history.next_position
        texts = [self.config.anchor_text] + [""] * (len(tokens) - 1)
        self.history.extend(tokens, TokenSource.ANCHOR, texts)
        self.budget.consume(len(tokens))

        logger.debug(f"Anchor #{self.anchors.injections} injected at positions {start}..{start + len(tokens) - 1}")
        self._push_event({
            "type": "anchor",
            "index": self.history.get_generated_length(),
            "position": start,
            "tokens": len(tokens),
        })
        return self.config.anchor_text if self.config.echo_anchors else ""

    def _finish(self, terminal: TerminalState, message: str = "",
                violation: Optional[GuardViolation] = None) -> None:
        self.state = terminal
        self.result = SessionResult(
            terminal_state=terminal,
            generated_tokens=self.history.get_generated_length(),
            positions_used=self.budget.positions_used,
            capacity=self.config.capacity,
            seed=self.seed,
            message=message,
            violation=violation,
            events=self.events,
        )
        if terminal.is_fatal:
            logger.error(f"Session terminated ({terminal.value}): {message}")
        else:
            logger.info(
                f"Session finished ({terminal.value}). generated={self.result.generated_tokens}, "
                f"positions={self.result.positions_used}/{self.config.capacity}, "
                f"anchor tokens={self.history.count(TokenSource.ANCHOR)}"
            )
        if isinstance(self.strategy, MirostatController):
            logger.info(
                f"Mirostat: mu={self.strategy.mu:.3f}, average surprise="
                f"{self.strategy.average_surprise:.3f} bits over {self.strategy.steps} steps"
            )

    def _budget_message(self) -> str:
        return (
            f"Context window exhausted: {self.budget.positions_used}/{self.config.capacity} "
            f"positions used (limit {self.budget.threshold})."
        )

    # ------------------------------------------------------------------ #
    #  Generation                                                         #
    # ------------------------------------------------------------------ #
    def generate(self, prompt: str) -> Generator[str, None, None]:
        """
        Yield decoded text fragments until the session reaches a terminal
        state; `self.result` holds the outcome afterwards.
        """
        if self.state is not SessionState.INIT:
            raise RuntimeError("GenerationSession is single-use; create a new one.")

        # ── ingest ───────────────────────────────────────────────────────
        self.state = SessionState.INGESTING
        prompt_tokens = self.tokenizer.encode(prompt, add_bos=True)
        if not prompt_tokens:
            raise ConfigurationError("prompt tokenized to zero tokens")
        if len(prompt_tokens) >= self.config.capacity:
            raise ConfigurationError(
                f"Prompt ({len(prompt_tokens)} tokens) exceeds context window "
                f"({self.config.capacity} tokens). Use a shorter prompt or increase the context size."
            )

        self.history.extend(prompt_tokens, TokenSource.PROMPT)
        self.budget.consume(len(prompt_tokens))
        logger.info(
            f"Prompt tokens: {len(prompt_tokens)}, available before cut-off: {self.budget.remaining}"
        )

        terminal = self.budget.check()
        if terminal is not None:
            self._finish(terminal, self._budget_message())
            return

        self.state = SessionState.GENERATING
        try:
            while True:
                if self._stop_requested:
                    self._finish(TerminalState.OPERATOR_STOPPED, "stop requested by operator")
                    break

                # ── forward pass on whatever the cache has not seen ──────
                try:
                    logits = self._evaluate_pending()
                except EngineFailure as e:
                    self._finish(TerminalState.ENGINE_FAILURE, f"Inference engine failure: {e}")
                    break
                except Exception as e:
                    logger.debug("Unexpected engine exception", exc_info=True)
                    self._finish(TerminalState.ENGINE_FAILURE, f"Inference engine failure: {e!r}")
                    break

                # ── choose & record ──────────────────────────────────────
                window = self.penalties.window(self.history.tokens())
                adjusted = self.penalties.apply(logits, window)
                token = self.strategy.select(adjusted)

                text = self.tokenizer.decode_token(token)
                self.history.append(token, TokenSource.GENERATED, text)
                self.budget.consume(1, generated=True)

                if self.on_token_callback:
                    try:
                        self.on_token_callback(token, text)
                    except Exception as e_cb:
                        logger.error(f"Error in on_token_callback: {e_cb}", exc_info=True)
                if text:
                    yield text

                # ── anchors go in before anything decides to stop ────────
                if self.anchors.on_generated():
                    anchor_out = self._inject_anchor()
                    if anchor_out:
                        yield anchor_out

                vio = self._run_guards()
                if vio:
                    self._push_event({
                        "type": vio.guard_type,
                        "index": vio.violation_index,
                        "details": {"ngram": vio.ngram, "ngram_text": vio.ngram_text, **vio.details},
                    })
                    self._finish(
                        TerminalState.LOOP_DETECTED,
                        f"Degenerate repetition detected: {vio.ngram_text!r} repeated "
                        f"{vio.repeats}x at generated token {vio.violation_index}.",
                        violation=vio,
                    )
                    break

                terminal = self.budget.check()
                if terminal is TerminalState.CONTEXT_EXHAUSTED:
                    self._push_event({
                        "type": "budget",
                        "index": self.history.get_generated_length(),
                        "details": {"positions_used": self.budget.positions_used,
                                    "threshold": self.budget.threshold},
                    })
                    self._finish(terminal, self._budget_message())
                    break
                if terminal is not None:
                    self._finish(terminal)
                    break

            residual = self.tokenizer.flush()
            if residual:
                yield residual
        except GeneratorExit:
            # consumer walked away mid-stream
            if self.result is None:
                self._finish(TerminalState.OPERATOR_STOPPED, "output consumer closed the stream")
            raise

    def run(self, prompt: str, sink=None) -> SessionResult:
        """Drain `generate` into `sink` (anything with `write(str)`)."""
        for fragment in self.generate(prompt):
            if sink is not None:
                sink.write(fragment)
        return self.result
