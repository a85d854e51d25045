"""
torch-ctc: Connectionist Temporal Classification objective for PyTorch

This package computes the CTC sequence log-likelihood and its gradient with
respect to a model's per-frame output distribution, without frame-level
alignment supervision, and keeps the running statistics used to monitor
training.

Key Features:
- Log-space alpha/beta recursions with a finite, saturating log-zero sentinel
- Padded multi-sequence batches advanced together at every time step
- Gradient w.r.t. pre-softmax activations, clipped to [-1, 1]
- Pluggable outlier rejection (stat-only, sum-loss check, rolling average-loss check)
- Greedy CTC decoding and edit-distance token accuracy
"""

from .autograd import CtcFunction, ctc_objective
from .config import CtcConfig
from .constants import LOG_ZERO, PAD_LABEL
from .decoding import EditCounts, edit_distance_counts, greedy_decode, greedy_decode_batch
from .forward_backward import (
    ForwardBackwardEngine,
    ForwardBackwardResult,
    ctc_alpha,
    ctc_beta,
    emission_scores,
    log_likelihood_from_alpha,
    log_likelihood_from_beta,
)
from .gradient import assemble_gradient, class_occupancy, clip_gradient
from .labels import collapse_alignment, expand_labels, expand_labels_batch
from .layout import PaddedLayout
from .logspace import log_add, safe_exp, safe_log
from .loss import Ctc
from .stats import (
    AverageLossCheckPolicy,
    CtcNumericalWarning,
    CtcStats,
    LossWindow,
    OutlierPolicy,
    StatOnlyPolicy,
    SumLossCheckPolicy,
    create_outlier_policy,
)

__version__ = "0.1.0"

__all__ = [
    # Core API
    "Ctc",
    "CtcConfig",
    "CtcFunction",
    "ctc_objective",
    # Statistics and outlier policies
    "CtcStats",
    "LossWindow",
    "OutlierPolicy",
    "StatOnlyPolicy",
    "SumLossCheckPolicy",
    "AverageLossCheckPolicy",
    "create_outlier_policy",
    "CtcNumericalWarning",
    # Forward-backward
    "ForwardBackwardEngine",
    "ForwardBackwardResult",
    "ctc_alpha",
    "ctc_beta",
    "emission_scores",
    "log_likelihood_from_alpha",
    "log_likelihood_from_beta",
    "assemble_gradient",
    "class_occupancy",
    "clip_gradient",
    # Labels and layout
    "expand_labels",
    "expand_labels_batch",
    "collapse_alignment",
    "PaddedLayout",
    # Decoding
    "greedy_decode",
    "greedy_decode_batch",
    "edit_distance_counts",
    "EditCounts",
    # Log-domain arithmetic
    "log_add",
    "safe_exp",
    "safe_log",
    "LOG_ZERO",
    "PAD_LABEL",
]
