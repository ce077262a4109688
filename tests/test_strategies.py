import math

import pytest
import torch

from core.session_config import SessionConfig
from core.strategies import (
    MirostatController,
    SamplerChain,
    build_strategy,
    make_generator,
    resolve_seed,
)
from utils.sampler_helpers import apply_top_k, apply_top_p, surprise


def _kept(logits):
    return {i for i, v in enumerate(logits.tolist()) if v != float("-inf")}


# --------------------------------------------------------------------------- #
#  Truncation helpers                                                         #
# --------------------------------------------------------------------------- #
def test_top_k_keeps_exactly_k_even_with_ties():
    logits = torch.tensor([1.0, 5.0, 3.0, 5.0, 5.0])
    kept = _kept(apply_top_k(logits, 2))
    assert len(kept) == 2
    assert kept <= {1, 3, 4}


def test_top_k_zero_or_large_keeps_everything():
    logits = torch.tensor([1.0, 2.0, 3.0])
    assert torch.equal(apply_top_k(logits, 0), logits)
    assert torch.equal(apply_top_k(logits, 10), logits)


def test_top_p_keeps_smallest_prefix_reaching_mass():
    probs = torch.tensor([0.05, 0.5, 0.15, 0.3])
    kept = _kept(apply_top_p(torch.log(probs), 0.7))
    # 0.5 alone is short of 0.7, 0.5 + 0.3 reaches it
    assert kept == {1, 3}


def test_top_p_always_keeps_the_top_token():
    probs = torch.tensor([0.1, 0.9])
    assert _kept(apply_top_p(torch.log(probs), 0.05)) == {1}


def test_top_p_one_is_a_no_op():
    logits = torch.tensor([0.3, 0.1, 0.2])
    assert torch.equal(apply_top_p(logits, 1.0), logits)


def test_surprise_in_bits():
    assert surprise(0.5) == pytest.approx(1.0)
    assert surprise(0.0) == math.inf


# --------------------------------------------------------------------------- #
#  SamplerChain                                                               #
# --------------------------------------------------------------------------- #
def test_greedy_returns_argmax():
    chain = SamplerChain(temperature=0.0, top_k=0, top_p=1.0)
    assert chain.is_greedy
    assert chain.select(torch.tensor([0.1, 2.0, 1.9, -3.0])) == 1


def test_top_k_one_matches_greedy():
    logits = torch.randn(50, generator=make_generator(3))
    greedy = SamplerChain(0.0, 0, 1.0).select(logits)
    for seed in range(10):
        chain = SamplerChain(1.5, 1, 1.0, make_generator(seed))
        assert chain.select(logits) == greedy


def test_same_seed_same_draws():
    logits = torch.zeros(64)
    a = SamplerChain(1.0, 0, 1.0, make_generator(99))
    b = SamplerChain(1.0, 0, 1.0, make_generator(99))
    assert [a.select(logits) for _ in range(30)] == [b.select(logits) for _ in range(30)]


def test_sampling_respects_truncation():
    logits = torch.tensor([4.0, 3.0, 2.0, 1.0, 0.0, -1.0])
    chain = SamplerChain(1.0, 2, 1.0, make_generator(0))
    assert {chain.select(logits) for _ in range(200)} <= {0, 1}


def test_resolve_seed():
    assert resolve_seed(5) == 5
    assert 0 <= resolve_seed(None) < 2 ** 32


# --------------------------------------------------------------------------- #
#  Mirostat v2                                                                #
# --------------------------------------------------------------------------- #
def test_mirostat_initial_mu_and_update_rule():
    m = MirostatController(tau=3.0, eta=0.1, generator=make_generator(1))
    assert m.mu == pytest.approx(6.0)

    m.select(torch.linspace(0.0, 2.0, 100))
    assert m.steps == 1
    assert m.mu == pytest.approx(6.0 - 0.1 * (m.last_surprise - 3.0))


def test_mirostat_keeps_top_token_when_mu_is_negative():
    m = MirostatController(tau=3.0, eta=0.1, generator=make_generator(1))
    m.mu = -5.0
    logits = torch.tensor([0.0, 1.0, 3.0, 2.0])
    assert m.select(logits) == 2
    # a single surviving token is certain: zero surprise pushes mu back up
    assert m.last_surprise == pytest.approx(0.0)
    assert m.mu == pytest.approx(-5.0 + 0.1 * 3.0)


def test_mirostat_mu_stays_bounded_and_tracks_tau():
    tau, eta = 3.0, 0.1
    m = MirostatController(tau=tau, eta=eta, generator=make_generator(1234))
    logits = torch.linspace(0.0, 2.0, 100)

    for _ in range(2000):
        m.select(logits)
        assert -1.0 < m.mu < 10.0

    assert m.average_surprise == pytest.approx(tau, abs=0.1)


def test_build_strategy_picks_by_config():
    gen = make_generator(0)
    assert isinstance(build_strategy(SessionConfig(), gen), SamplerChain)
    assert isinstance(build_strategy(SessionConfig(mirostat_enabled=True), gen), MirostatController)
