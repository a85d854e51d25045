"""Configuration of the CTC objective and its statistics."""

from dataclasses import dataclass

from .constants import MAX_LOSS, MIN_LOSS, OBJECTIVE_CLAMP

__all__ = ["CtcConfig"]


@dataclass
class CtcConfig:
    """Settings for :class:`~torch_ctc.loss.Ctc`.

    Attributes:
        blank: Index of the blank class.
        report_step: Log a progress line every ``report_step`` sequences.
        outlier_policy: ``"stat_only"``, ``"sum_loss_check"`` or ``"average_loss_check"``.
        stat_period: Window size of the average-loss check, in accepted utterances.
        sigma_factor: Acceptance band of the average-loss check, in standard deviations.
        min_loss: Smallest plausible per-utterance loss.
        max_loss: Largest plausible per-utterance loss.
        objective_clamp: ``-log P`` is clamped to ``[-objective_clamp, objective_clamp]``
            before it enters the statistics.
        gradient_clip: Gradient components are clamped to ``[-gradient_clip, gradient_clip]``.
    """

    blank: int = 0
    report_step: int = 100
    outlier_policy: str = "stat_only"
    stat_period: int = 100
    sigma_factor: float = 6.0
    min_loss: float = MIN_LOSS
    max_loss: float = MAX_LOSS
    objective_clamp: float = OBJECTIVE_CLAMP
    gradient_clip: float = 1.0

    def __post_init__(self):
        if self.blank < 0:
            raise ValueError(f"blank must be non-negative, got {self.blank}")
        if self.report_step <= 0:
            raise ValueError(f"report_step must be positive, got {self.report_step}")
        if self.objective_clamp <= 0:
            raise ValueError(f"objective_clamp must be positive, got {self.objective_clamp}")
        if self.gradient_clip <= 0:
            raise ValueError(f"gradient_clip must be positive, got {self.gradient_clip}")
