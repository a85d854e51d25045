"""
Pytest configuration for torch-ctc tests.

All tests run on CPU. Cross-checks against torch.nn.functional.ctc_loss use
float64 so that tolerances can stay tight.
"""

import pytest
import torch


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_cuda: mark test as requiring CUDA (will be skipped if not available)",
    )


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Tests create CPU tensors by default."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture
def skip_if_no_cuda():
    """Fixture to skip tests that require CUDA."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")


@pytest.fixture
def random_posteriors():
    """Factory for random (T, C) posterior matrices (softmax of Gaussian logits).

    Returns a function ``(T, C, seed=0, dtype=torch.float64, scale=1.0) -> (logits, posteriors)``.
    """

    def _create(T, C, seed=0, dtype=torch.float64, scale=1.0):
        gen = torch.Generator().manual_seed(seed)
        logits = torch.randn(T, C, generator=gen, dtype=dtype) * scale
        return logits, torch.softmax(logits, dim=-1)

    return _create


@pytest.fixture
def padded_batch():
    """Factory for padded time-major batches.

    Interleaves per-sequence ``(T_n, C)`` matrices into a ``(T_max * N, C)``
    matrix where row ``t * N + n`` is frame ``t`` of sequence ``n``. Padding rows
    are filled with ``pad_value``.
    """

    def _create(matrices, pad_value=0.0):
        N = len(matrices)
        T_max = max(m.shape[0] for m in matrices)
        C = matrices[0].shape[1]
        out = torch.full((T_max, N, C), pad_value, dtype=matrices[0].dtype)
        for n, m in enumerate(matrices):
            out[: m.shape[0], n] = m
        return out.reshape(T_max * N, C)

    return _create


@pytest.fixture
def posteriors_from_alignment():
    """Factory for posteriors whose arg-max follows a frame-level alignment.

    Each frame puts ``peak`` on the aligned class and spreads the rest uniformly.
    """

    def _create(alignment, C, peak=0.9, dtype=torch.float64):
        T = len(alignment)
        rest = (1.0 - peak) / (C - 1)
        post = torch.full((T, C), rest, dtype=dtype)
        post[torch.arange(T), torch.tensor(alignment)] = peak
        return post

    return _create


@pytest.fixture
def one_hot_alignment():
    """Factory for exact one-hot posteriors along an alignment."""

    def _create(alignment, C, dtype=torch.float64):
        T = len(alignment)
        post = torch.zeros(T, C, dtype=dtype)
        post[torch.arange(T), torch.tensor(alignment)] = 1.0
        return post

    return _create
