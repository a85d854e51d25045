"""Tests for the log-space alpha/beta recursions."""

import itertools
import math

import pytest
import torch
import torch.nn.functional as F

from torch_ctc.constants import LOG_ZERO
from torch_ctc.forward_backward import (
    ForwardBackwardEngine,
    ctc_alpha,
    ctc_beta,
    emission_scores,
    log_likelihood_from_alpha,
    log_likelihood_from_beta,
    skip_mask,
)
from torch_ctc.gradient import class_occupancy
from torch_ctc.labels import collapse_alignment, expand_labels, expand_labels_batch
from torch_ctc.logspace import safe_log


def run_batch(posteriors, labels, frame_counts):
    """Run the engine on per-sequence (T_n, C) posteriors padded into one batch."""
    N = len(posteriors)
    T_max = max(p.shape[0] for p in posteriors)
    C = posteriors[0].shape[1]
    probs = torch.full((T_max, N, C), 1.0 / C, dtype=posteriors[0].dtype)
    for n, p in enumerate(posteriors):
        probs[: p.shape[0], n] = p
    expanded, exp_lengths = expand_labels_batch(labels, C)
    engine = ForwardBackwardEngine()
    result = engine.run(safe_log(probs), expanded, exp_lengths, torch.tensor(frame_counts))
    return result, expanded, exp_lengths


def torch_ctc_log_likelihood(posteriors, labels):
    """Reference log P(y|x) per sequence from torch.nn.functional.ctc_loss."""
    N = len(posteriors)
    T_max = max(p.shape[0] for p in posteriors)
    C = posteriors[0].shape[1]
    log_probs = torch.zeros(T_max, N, C, dtype=posteriors[0].dtype)
    for n, p in enumerate(posteriors):
        log_probs[: p.shape[0], n] = p.log()
    targets = torch.tensor([k for label in labels for k in label], dtype=torch.long)
    loss = F.ctc_loss(
        log_probs,
        targets,
        input_lengths=torch.tensor([p.shape[0] for p in posteriors]),
        target_lengths=torch.tensor([len(label) for label in labels]),
        blank=0,
        reduction="none",
    )
    return -loss


def brute_force_log_likelihood(posteriors, label):
    """Sum the probability of every frame alignment that collapses to ``label``."""
    T, C = posteriors.shape
    total = 0.0
    for path in itertools.product(range(C), repeat=T):
        if collapse_alignment(list(path)) == list(label):
            total += math.prod(posteriors[t, k].item() for t, k in enumerate(path))
    return math.log(total)


class TestSkipMask:
    def test_skip_only_between_distinct_labels(self):
        expanded = expand_labels([1, 2, 2], num_classes=3).unsqueeze(0)
        mask = skip_mask(expanded)[0]
        # states:             0  1  0  2  0  2  0
        assert mask.tolist() == [False, False, False, True, False, False, False]

    def test_padding_never_skipped(self):
        expanded, _ = expand_labels_batch([[1, 2], [1]], num_classes=3)
        assert not skip_mask(expanded)[1, 3:].any()


class TestLogLikelihood:
    """Total log-likelihood against independent references."""

    @pytest.mark.parametrize("label", [[1], [1, 2], [2, 2], [1, 2, 1]])
    def test_matches_brute_force(self, random_posteriors, label):
        _, post = random_posteriors(5, 3, seed=len(label))
        result, _, _ = run_batch([post], [label], [5])

        expected = brute_force_log_likelihood(post, label)
        assert result.log_likelihood[0].item() == pytest.approx(expected, rel=1e-9)

    def test_matches_torch_ctc_loss_single(self, random_posteriors):
        _, post = random_posteriors(30, 6, seed=1)
        label = [1, 3, 3, 5, 2]
        result, _, _ = run_batch([post], [label], [30])

        expected = torch_ctc_log_likelihood([post], [label])
        assert torch.allclose(result.log_likelihood, expected, rtol=1e-9)

    def test_matches_torch_ctc_loss_padded_batch(self, random_posteriors):
        posteriors = [random_posteriors(T, 5, seed=T)[1] for T in (20, 12, 17)]
        labels = [[1, 2, 3, 4], [4, 4], [2, 1, 2]]
        result, _, _ = run_batch(posteriors, labels, [20, 12, 17])

        expected = torch_ctc_log_likelihood(posteriors, labels)
        assert torch.allclose(result.log_likelihood, expected, rtol=1e-9)

    def test_alpha_and_beta_agree(self, random_posteriors):
        posteriors = [random_posteriors(T, 7, seed=T, scale=3.0)[1] for T in (25, 9, 40)]
        labels = [[1, 2, 3], [6], [5, 5, 1, 2, 3, 4]]
        result, _, _ = run_batch(posteriors, labels, [25, 9, 40])

        from_beta = log_likelihood_from_beta(result.beta, result.emissions)
        assert torch.allclose(result.log_likelihood, from_beta, rtol=1e-10)

    def test_empty_label_is_all_blank_path(self, random_posteriors):
        _, post = random_posteriors(8, 4, seed=3)
        result, _, _ = run_batch([post], [[]], [8])

        expected = post[:, 0].log().sum()
        assert torch.isclose(result.log_likelihood[0], expected)

    def test_single_frame(self, random_posteriors):
        _, post = random_posteriors(1, 3, seed=4)
        result, _, _ = run_batch([post], [[2]], [1])
        assert torch.isclose(result.log_likelihood[0], post[0, 2].log())

    def test_forced_alignment_is_exactly_log_one(self, one_hot_alignment):
        post = one_hot_alignment([1, 0, 2, 2, 0], C=3)
        result, _, _ = run_batch([post], [[1, 2]], [5])
        assert result.log_likelihood[0].item() == 0.0

    def test_impossible_alignment_saturates(self, random_posteriors):
        """Two repeated labels need at least three frames."""
        _, post = random_posteriors(2, 3, seed=5)
        result, _, _ = run_batch([post], [[1, 1]], [2])

        assert result.log_likelihood[0].item() == LOG_ZERO
        assert torch.isfinite(result.alpha).all()
        assert torch.isfinite(result.beta).all()


class TestTables:
    """Shape, padding and occupancy properties of the alpha/beta tables."""

    def test_state_occupancy_sums_to_one(self, random_posteriors):
        posteriors = [random_posteriors(T, 5, seed=T)[1] for T in (15, 10)]
        labels = [[1, 2, 3], [4, 1]]
        result, expanded, _ = run_batch(posteriors, labels, [15, 10])

        occ = class_occupancy(result.alpha, result.beta, expanded, result.log_likelihood, 5)
        assert torch.allclose(occ[:15, 0].sum(-1), torch.ones(15, dtype=torch.float64))
        assert torch.allclose(occ[:10, 1].sum(-1), torch.ones(10, dtype=torch.float64))
        assert (occ[10:, 1] == 0).all()

    def test_padded_frames_hold_sentinel(self, random_posteriors):
        posteriors = [random_posteriors(T, 4, seed=T)[1] for T in (10, 6)]
        result, _, _ = run_batch(posteriors, [[1, 2], [3]], [10, 6])

        assert (result.alpha[6:, 1] == LOG_ZERO).all()
        assert (result.beta[6:, 1] == LOG_ZERO).all()
        # Unused label states of the shorter sequence
        assert (result.alpha[:, 1, 3:] == LOG_ZERO).all()

    def test_nan_in_padding_is_ignored(self, random_posteriors):
        posteriors = [random_posteriors(T, 4, seed=T)[1] for T in (10, 6)]
        labels = [[1, 2], [3]]
        clean, _, _ = run_batch(posteriors, labels, [10, 6])
        clean_ll = clean.log_likelihood.clone()

        probs = torch.full((10, 2, 4), float("nan"), dtype=torch.float64)
        probs[:, 0] = posteriors[0]
        probs[:6, 1] = posteriors[1]
        expanded, exp_lengths = expand_labels_batch(labels, 4)
        dirty = ForwardBackwardEngine().run(
            safe_log(probs), expanded, exp_lengths, torch.tensor([10, 6])
        )

        assert torch.equal(dirty.log_likelihood, clean_ll)
        assert torch.isfinite(dirty.alpha).all()
        assert torch.isfinite(dirty.beta).all()

    def test_functional_form_matches_engine(self, random_posteriors):
        _, post = random_posteriors(12, 4, seed=7)
        expanded = expand_labels([3, 1, 3], 4).unsqueeze(0)
        exp_lengths = torch.tensor([7])
        frame_counts = torch.tensor([12])

        emissions = emission_scores(safe_log(post).unsqueeze(1), expanded)
        alpha = ctc_alpha(emissions, expanded, frame_counts)
        beta = ctc_beta(emissions, expanded, exp_lengths, frame_counts)
        ll = log_likelihood_from_alpha(alpha, exp_lengths, frame_counts)

        result = ForwardBackwardEngine().run_single(safe_log(post), expanded[0])
        assert result.alpha.shape == (12, 7)
        assert torch.equal(result.alpha, alpha[:, 0])
        assert torch.equal(result.beta, beta[:, 0])
        assert torch.equal(result.log_likelihood, ll)


class TestEngineBuffers:
    def test_buffers_reused_across_shapes(self, random_posteriors):
        """A large call followed by a small one matches a fresh engine."""
        engine = ForwardBackwardEngine()
        _, big = random_posteriors(40, 6, seed=11)
        _, small = random_posteriors(7, 6, seed=12)

        engine.run_single(safe_log(big), expand_labels([1, 2, 3, 4, 5], 6))
        reused = engine.run_single(safe_log(small), expand_labels([2, 2], 6))
        fresh = ForwardBackwardEngine().run_single(safe_log(small), expand_labels([2, 2], 6))

        assert torch.equal(reused.alpha, fresh.alpha)
        assert torch.equal(reused.beta, fresh.beta)
        assert torch.equal(reused.log_likelihood, fresh.log_likelihood)

    def test_dtype_change_reallocates(self, random_posteriors):
        engine = ForwardBackwardEngine()
        _, post = random_posteriors(6, 3, seed=13)
        expanded = expand_labels([1, 2], 3)

        engine.run_single(safe_log(post), expanded)
        result = engine.run_single(safe_log(post.float()), expanded)
        assert result.alpha.dtype == torch.float32
