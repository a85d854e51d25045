r"""Running training statistics and outlier rejection.

:class:`CtcStats` is a caller-owned state object holding cumulative counters
(objective, frames, sequences, edit errors, reference tokens), "progress"
counters that are reset after every progress report, and the
:class:`LossWindow` used by :class:`AverageLossCheckPolicy`.

Outlier policies decide per utterance whether its loss and gradient are
trusted. They are interchangeable strategy objects:

- :class:`StatOnlyPolicy`: accept every utterance with a finite loss.
- :class:`SumLossCheckPolicy`: reject losses outside ``[min_loss, max_loss]``.
- :class:`AverageLossCheckPolicy`: additionally reject per-frame losses more
  than ``sigma_factor`` standard deviations away from a rolling mean.

Rejected utterances have their gradient rows zeroed and are left out of the
objective; their frames still count towards the progress counters. A
non-finite loss is rejected under every policy.

Examples::

    >>> stats = CtcStats()
    >>> policy = create_outlier_policy("average_loss_check", stat_period=200)
    >>> accepted = policy.apply(stats, utt_ids, frame_counts, losses, diff)
"""

import math
import warnings
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field, fields
from typing import Optional, Union

import torch
from torch import Tensor

from .constants import FRAMES_PER_HOUR, MAX_LOSS, MIN_LOSS

__all__ = [
    "CtcNumericalWarning",
    "LossWindow",
    "CtcStats",
    "OutlierPolicy",
    "StatOnlyPolicy",
    "SumLossCheckPolicy",
    "AverageLossCheckPolicy",
    "create_outlier_policy",
    "zero_sequence_rows",
    "zero_if_not_finite",
]


class CtcNumericalWarning(UserWarning):
    """Emitted when a loss or gradient is dropped for numerical reasons."""


def _ratio(num: float, den: float) -> float:
    return num / den if den else float("nan")


@dataclass
class LossWindow:
    """Half-window sums of accepted per-frame losses.

    ``count``, ``loss_sum`` and ``square_sum`` cover the current window;
    the ``*_bak`` fields hold the part of the window that is subtracted out at
    the next re-centering.
    """

    count: int = 0
    loss_sum: float = 0.0
    square_sum: float = 0.0
    count_bak: int = 0
    loss_sum_bak: float = 0.0
    square_sum_bak: float = 0.0

    @property
    def mean(self) -> float:
        return _ratio(self.loss_sum, self.count)

    @property
    def sigma(self) -> float:
        if not self.count:
            return float("nan")
        variance = self.square_sum / self.count - self.mean**2
        return math.sqrt(max(variance, 0.0))

    def add(self, loss_per_frame: float, backup: bool = False) -> None:
        self.count += 1
        self.loss_sum += loss_per_frame
        self.square_sum += loss_per_frame * loss_per_frame
        if backup:
            self.count_bak += 1
            self.loss_sum_bak += loss_per_frame
            self.square_sum_bak += loss_per_frame * loss_per_frame

    def recenter(self) -> None:
        """Drop the oldest half; the remaining half becomes the next backup."""
        self.count -= self.count_bak
        self.loss_sum -= self.loss_sum_bak
        self.square_sum -= self.square_sum_bak
        self.count_bak = self.count
        self.loss_sum_bak = self.loss_sum
        self.square_sum_bak = self.square_sum


@dataclass
class CtcStats:
    """Cumulative and progress-window training statistics.

    Attributes:
        obj: Sum of accepted per-utterance objectives (:math:`-\\log P`).
        frames: Number of frames processed.
        sequences: Number of utterances processed.
        errors: Edit-distance errors of greedy hypotheses.
        ref_tokens: Reference tokens scored.
        *_progress: Same quantities since the last progress report.
        window: Rolling per-frame loss statistics for outlier detection.
    """

    obj: float = 0.0
    frames: int = 0
    sequences: int = 0
    errors: int = 0
    ref_tokens: int = 0
    obj_progress: float = 0.0
    frames_progress: int = 0
    sequences_progress: int = 0
    errors_progress: int = 0
    ref_tokens_progress: int = 0
    window: LossWindow = field(default_factory=LossWindow)

    def add_objective(self, loss: float) -> None:
        self.obj += loss
        self.obj_progress += loss

    def add_frames(self, num_frames: int) -> None:
        self.frames += num_frames
        self.frames_progress += num_frames

    def add_sequences(self, num_sequences: int) -> None:
        self.sequences += num_sequences
        self.sequences_progress += num_sequences

    def add_errors(self, errors: int, ref_tokens: int) -> None:
        self.errors += errors
        self.errors_progress += errors
        self.ref_tokens += ref_tokens
        self.ref_tokens_progress += ref_tokens

    def token_accuracy(self, progress: bool = False) -> float:
        """Token accuracy in percent, ``nan`` before any token was scored."""
        if progress:
            return 100.0 * (1.0 - _ratio(self.errors_progress, self.ref_tokens_progress))
        return 100.0 * (1.0 - _ratio(self.errors, self.ref_tokens))

    def reset_progress(self) -> None:
        self.obj_progress = 0.0
        self.frames_progress = 0
        self.sequences_progress = 0
        self.errors_progress = 0
        self.ref_tokens_progress = 0

    def reset(self) -> None:
        fresh = CtcStats()
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))

    def merge(self, other: "CtcStats") -> "CtcStats":
        """Add the counters of an independently accumulated tracker."""
        for f in fields(self):
            if f.name != "window":
                setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        for f in fields(LossWindow):
            setattr(self.window, f.name, getattr(self.window, f.name) + getattr(other.window, f.name))
        return self

    def progress_line(self) -> str:
        return (
            f"Progress {self.sequences} sequences ({self.frames / FRAMES_PER_HOUR:g}Hr):"
            f" Obj(log[Pzx]) = {_ratio(self.obj_progress, self.sequences_progress):g}"
            f" Obj(frame) = {_ratio(self.obj_progress, self.frames_progress):g}"
            f" TokenAcc = {self.token_accuracy(progress=True):g} %"
        )

    def summary(self) -> str:
        return (
            f" Obj(log[Pzx]) = {_ratio(self.obj, self.sequences):g}"
            f" Obj(frame) = {_ratio(self.obj, self.frames):g}"
            f" TOKEN_ACCURACY >> {self.token_accuracy():g} % <<"
        )


def zero_sequence_rows(diff: Tensor, n: int, num_frames: int, num_sequences: int) -> None:
    """Zero rows ``t * num_sequences + n`` for ``t < num_frames`` of a padded matrix."""
    diff[n : num_frames * num_sequences : num_sequences] = 0.0


def zero_if_not_finite(diff: Tensor) -> bool:
    """Zero the whole gradient if its sum is NaN or Inf; return True if it was zeroed."""
    if torch.isfinite(diff.sum()):
        return False
    warnings.warn(
        "nan or inf occurred in the CTC gradient, ignoring the whole batch",
        CtcNumericalWarning,
        stacklevel=3,
    )
    diff.zero_()
    return True


class OutlierPolicy(ABC):
    """Base class for per-utterance loss acceptance policies.

    Subclasses implement :meth:`accept`; :meth:`apply` runs it for every
    utterance of a batch and updates the shared counters.

    Args:
        min_loss: Smallest plausible per-utterance loss. Default: ``0``
        max_loss: Largest plausible per-utterance loss. Default: ``3000``
    """

    name = "base"

    def __init__(self, min_loss: float = MIN_LOSS, max_loss: float = MAX_LOSS):
        if min_loss > max_loss:
            raise ValueError(f"min_loss {min_loss} must not exceed max_loss {max_loss}")
        self.min_loss = min_loss
        self.max_loss = max_loss

    def in_range(self, loss: float) -> bool:
        return math.isfinite(loss) and self.min_loss <= loss <= self.max_loss

    @abstractmethod
    def accept(self, stats: CtcStats, utt_id: str, num_frames: int, loss: float) -> bool:
        """Decide whether one utterance's loss and gradient are kept."""
        raise NotImplementedError

    def apply(
        self,
        stats: CtcStats,
        utt_ids: Sequence[str],
        frame_counts: Sequence[int],
        losses: Sequence[float],
        diff: Optional[Tensor] = None,
    ) -> list[bool]:
        """Run the policy over a padded batch.

        Args:
            stats: Running statistics, updated in place.
            utt_ids: Utterance identifiers used in warnings.
            frame_counts: Real frame count per utterance.
            losses: Per-utterance objective :math:`-\\log P`.
            diff: ``(T_max * N, C)`` gradient; rows of rejected utterances are zeroed.

        Returns:
            Per-utterance acceptance flags.
        """
        num_sequences = len(frame_counts)
        accepted = []
        for n, (utt_id, num_frames, loss) in enumerate(zip(utt_ids, frame_counts, losses)):
            if math.isfinite(loss):
                keep = self.accept(stats, utt_id, num_frames, loss)
            else:
                self._warn(utt_id, f"{loss:g}", stacklevel=3)
                keep = False
            if keep:
                stats.add_objective(loss)
            elif diff is not None:
                zero_sequence_rows(diff, n, num_frames, num_sequences)
            stats.add_frames(num_frames)
            accepted.append(keep)
        stats.add_sequences(num_sequences)
        return accepted

    def _warn(self, utt_id: str, detail: str, stacklevel: int = 4) -> None:
        warnings.warn(
            f"Sequence {utt_id} obj is abnormal({detail}), drop its diff and stat",
            CtcNumericalWarning,
            stacklevel=stacklevel,
        )


class StatOnlyPolicy(OutlierPolicy):
    """Accept every utterance with a finite loss; only accumulate statistics."""

    name = "stat_only"

    def accept(self, stats: CtcStats, utt_id: str, num_frames: int, loss: float) -> bool:
        return True


class SumLossCheckPolicy(OutlierPolicy):
    """Reject utterances whose total loss is non-finite or outside ``[min_loss, max_loss]``.

    A negative or implausibly large :math:`-\\log P` indicates a numerical
    failure upstream.
    """

    name = "sum_loss_check"

    def accept(self, stats: CtcStats, utt_id: str, num_frames: int, loss: float) -> bool:
        if self.in_range(loss):
            return True
        self._warn(utt_id, f"{loss:g}")
        return False


class AverageLossCheckPolicy(OutlierPolicy):
    r"""Reject utterances whose per-frame loss is far from the rolling mean.

    Per-frame losses of accepted utterances feed a :class:`LossWindow` stored in
    the caller's :class:`CtcStats`. Until ``stat_period // 2`` utterances have been
    accepted, every finite in-range loss is accepted to bootstrap the window.
    Afterwards an utterance is accepted only if its total loss is in range and

    .. math::
        |\ell / T - \mu| \le k \sigma

    with rolling mean :math:`\mu`, standard deviation :math:`\sigma` and
    :math:`k` = ``sigma_factor``. Whenever the window holds ``stat_period``
    accepted utterances the oldest half is subtracted out, which keeps the
    statistics recent without storing the history.

    Args:
        stat_period: Window size in accepted utterances, at least 2. Default: ``100``
        sigma_factor: Width of the acceptance band in standard deviations. Default: ``6``
        min_loss, max_loss: See :class:`OutlierPolicy`.
    """

    name = "average_loss_check"

    def __init__(
        self,
        stat_period: int = 100,
        sigma_factor: float = 6.0,
        min_loss: float = MIN_LOSS,
        max_loss: float = MAX_LOSS,
    ):
        super().__init__(min_loss, max_loss)
        if stat_period < 2:
            raise ValueError(f"stat_period must be >= 2, got {stat_period}")
        if sigma_factor <= 0:
            raise ValueError(f"sigma_factor must be positive, got {sigma_factor}")
        self.stat_period = stat_period
        self.sigma_factor = sigma_factor

    def accept(self, stats: CtcStats, utt_id: str, num_frames: int, loss: float) -> bool:
        window = stats.window
        loss_per_frame = loss / num_frames

        if window.count < self.stat_period // 2:
            if self.in_range(loss):
                window.add(loss_per_frame, backup=True)
                return True
            self._warn(utt_id, f"sum {loss:g} per_frame {loss_per_frame:g}, bootstrapping")
            return False

        mean, sigma = window.mean, window.sigma
        # Rounding tolerance keeps a zero-sigma window from rejecting its own mean
        band = self.sigma_factor * sigma + 1e-9 * max(1.0, abs(mean))
        if self.in_range(loss) and abs(loss_per_frame - mean) <= band:
            window.add(loss_per_frame)
            if window.count >= self.stat_period:
                window.recenter()
            return True

        self._warn(
            utt_id,
            f"sum {loss:g} per_frame {loss_per_frame:g} mean {mean:g} sigma {sigma:g}",
        )
        return False


def create_outlier_policy(
    policy: Union[str, OutlierPolicy, None] = None, **kwargs
) -> OutlierPolicy:
    """Factory function to create outlier policies.

    Args:
        policy: Policy type. Can be:
            - None or "stat_only": StatOnlyPolicy (default)
            - "sum_loss_check" or "sum": SumLossCheckPolicy
            - "average_loss_check" or "avg": AverageLossCheckPolicy
            - An OutlierPolicy instance (returned as-is)
        **kwargs: Additional arguments passed to the policy constructor

    Returns:
        An OutlierPolicy instance

    Example:
        >>> policy = create_outlier_policy("avg", stat_period=50, sigma_factor=4.0)
    """
    if policy is None or policy == "stat_only":
        kwargs.pop("stat_period", None)
        kwargs.pop("sigma_factor", None)
        return StatOnlyPolicy(**kwargs)
    elif isinstance(policy, OutlierPolicy):
        return policy
    elif policy in ("sum_loss_check", "sum"):
        kwargs.pop("stat_period", None)
        kwargs.pop("sigma_factor", None)
        return SumLossCheckPolicy(**kwargs)
    elif policy in ("average_loss_check", "avg"):
        return AverageLossCheckPolicy(**kwargs)
    else:
        raise ValueError(
            f"Unknown outlier policy: {policy}. "
            f"Options: stat_only, sum_loss_check, average_loss_check"
        )
