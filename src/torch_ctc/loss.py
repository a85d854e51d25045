r"""CTC objective with running statistics and outlier rejection.

:class:`Ctc` ties the pieces together for a training driver:

1. expand the reference labels with blanks,
2. run the alpha/beta recursions on the log posteriors,
3. read :math:`\log P(y|x)` per sequence and assemble the output gradient,
4. let the configured outlier policy accept or drop each utterance,
5. zero the whole gradient if it is not finite, then clip it,
6. log a progress line every ``report_step`` sequences.

Posterior matrices are time-major. A batch of ``N`` sequences padded to
``T_max`` frames has ``T_max * N`` rows and row ``t * N + n`` is frame ``t`` of
sequence ``n``, which is the ``(T, N, C)`` layout of
:func:`torch.nn.functional.ctc_loss` flattened over the first two axes.

Examples::

    >>> ctc = Ctc(outlier_policy="average_loss_check", report_step=500)
    >>> posteriors = torch.softmax(logits, dim=-1)        # (T_max * N, C)
    >>> diff = ctc.eval_parallel(utt_ids, frame_counts, posteriors, labels)
    >>> logits.backward(diff)
    >>> ctc.error_rate_mseq(frame_counts, posteriors, labels)
    >>> print(ctc.report())
"""

import dataclasses
import logging
from collections.abc import Sequence
from typing import Optional, Union

import torch
from torch import Tensor

from .config import CtcConfig
from .decoding import edit_distance_counts, greedy_decode, greedy_decode_batch
from .forward_backward import ForwardBackwardEngine, reuse_buffer
from .gradient import assemble_gradient, clip_gradient
from .labels import LabelLike, expand_labels, expand_labels_batch
from .layout import PaddedLayout
from .logspace import safe_log
from .stats import CtcStats, OutlierPolicy, create_outlier_policy, zero_if_not_finite
from .validation import as_index_tensor, validate_batch_layout, validate_posteriors

__all__ = ["Ctc"]

logger = logging.getLogger(__name__)


class Ctc:
    r"""CTC objective, gradient and training statistics.

    Args:
        config (CtcConfig, optional): settings; defaults to :class:`CtcConfig`.
        policy (str, OutlierPolicy, optional): overrides ``config.outlier_policy``.
        **overrides: individual :class:`CtcConfig` fields.

    Attributes:
        stats (CtcStats): statistics used when a call does not pass its own.
        policy (OutlierPolicy): per-utterance acceptance policy, applied by
            both :meth:`eval` and :meth:`eval_parallel`.
        last_log_likelihood (Tensor): :math:`\log P(y|x)` per sequence of the
            latest evaluation, before clamping.
        last_losses (Tensor): per-sequence objective of the latest evaluation,
            clamped to ``[-objective_clamp, objective_clamp]``.
        last_accepted (list[bool]): policy decisions of the latest evaluation.
    """

    def __init__(
        self,
        config: Optional[CtcConfig] = None,
        policy: Union[str, OutlierPolicy, None] = None,
        **overrides,
    ):
        if config is None:
            config = CtcConfig(**overrides)
        elif overrides:
            config = dataclasses.replace(config, **overrides)
        self.config = config
        self.policy = create_outlier_policy(
            policy if policy is not None else config.outlier_policy,
            stat_period=config.stat_period,
            sigma_factor=config.sigma_factor,
            min_loss=config.min_loss,
            max_loss=config.max_loss,
        )
        self.stats = CtcStats()
        self.engine = ForwardBackwardEngine()
        self._error: Optional[Tensor] = None
        self.last_log_likelihood: Optional[Tensor] = None
        self.last_losses: Optional[Tensor] = None
        self.last_accepted: list[bool] = []

    def _stats(self, stats: Optional[CtcStats]) -> CtcStats:
        return self.stats if stats is None else stats

    @torch.no_grad()
    def eval(
        self,
        posteriors: Tensor,
        label: LabelLike,
        stats: Optional[CtcStats] = None,
        utt_id: str = "",
    ) -> Tensor:
        r"""eval(posteriors, label, stats=None, utt_id='') -> Tensor

        Evaluate a single sequence.

        Args:
            posteriors (Tensor): :math:`(T, C)` per-frame class probabilities
            label: reference label indices, blank excluded
            stats (CtcStats, optional): statistics to update; defaults to ``self.stats``
            utt_id (str, optional): identifier used in warnings

        Returns:
            Tensor: :math:`(T, C)` gradient of :math:`-\log P` w.r.t. the
            pre-softmax activations, clipped to ``[-gradient_clip, gradient_clip]``.

        Raises:
            ValueError: If any label index is :math:`\geq C`.
        """
        validate_posteriors(posteriors)
        num_frames, num_classes = posteriors.shape
        expanded = expand_labels(label, num_classes, self.config.blank, device=posteriors.device)
        layout = PaddedLayout.from_frame_counts([num_frames], num_frames, device=posteriors.device)
        exp_lengths = torch.tensor([expanded.numel()], device=posteriors.device)
        return self._evaluate([utt_id], posteriors, layout, expanded.unsqueeze(0), exp_lengths, stats)

    @torch.no_grad()
    def eval_parallel(
        self,
        utt_ids: Sequence[str],
        frame_counts: Union[Tensor, Sequence[int]],
        posteriors: Tensor,
        labels: Sequence[LabelLike],
        stats: Optional[CtcStats] = None,
    ) -> Tensor:
        r"""eval_parallel(utt_ids, frame_counts, posteriors, labels, stats=None) -> Tensor

        Evaluate a padded batch of sequences sharing one time axis.

        Args:
            utt_ids (Sequence[str]): one identifier per sequence
            frame_counts: real frame count per sequence
            posteriors (Tensor): :math:`(T_{max} N, C)` time-major padded posteriors
            labels: one reference label sequence per sequence
            stats (CtcStats, optional): statistics to update; defaults to ``self.stats``

        Returns:
            Tensor: :math:`(T_{max} N, C)` clipped gradient; padded rows and rows
            of rejected utterances are zero.

        Raises:
            ValueError: If the row count is not a multiple of the number of
              sequences, or any label index is :math:`\geq C`.
        """
        validate_posteriors(posteriors)
        num_rows, num_classes = posteriors.shape
        validate_batch_layout(num_rows, len(frame_counts), utt_ids, len(labels))
        layout = PaddedLayout.from_frame_counts(frame_counts, num_rows, device=posteriors.device)
        expanded, exp_lengths = expand_labels_batch(
            labels, num_classes, self.config.blank, device=posteriors.device
        )
        return self._evaluate(utt_ids, posteriors, layout, expanded, exp_lengths, stats)

    def _evaluate(
        self,
        utt_ids: Sequence[str],
        posteriors: Tensor,
        layout: PaddedLayout,
        expanded: Tensor,
        exp_lengths: Tensor,
        stats: Optional[CtcStats],
    ) -> Tensor:
        stats = self._stats(stats)
        cfg = self.config

        probs = layout.time_major(posteriors.detach())
        result = self.engine.run(safe_log(probs), expanded, exp_lengths, layout.frame_counts)

        self._error = reuse_buffer(self._error, probs)
        diff = assemble_gradient(
            result.alpha,
            result.beta,
            probs,
            expanded,
            result.log_likelihood,
            layout.frame_mask(),
            error_out=self._error,
        ).view(posteriors.shape)

        self.last_log_likelihood = result.log_likelihood.clone()
        self.last_losses = (-result.log_likelihood).clamp(-cfg.objective_clamp, cfg.objective_clamp)
        self.last_accepted = self.policy.apply(
            stats, utt_ids, layout.frame_counts.tolist(), self.last_losses.tolist(), diff
        )
        zero_if_not_finite(diff)
        clip_gradient(diff, cfg.gradient_clip)

        self._report_progress(stats)
        return diff

    def _report_progress(self, stats: CtcStats) -> None:
        if stats.sequences_progress >= self.config.report_step:
            logger.info(stats.progress_line())
            stats.reset_progress()

    def error_rate(
        self,
        posteriors: Tensor,
        label: LabelLike,
        stats: Optional[CtcStats] = None,
    ) -> tuple[float, list[int]]:
        r"""error_rate(posteriors, label, stats=None) -> (float, list[int])

        Greedy-decode one sequence and score it against ``label``.

        Returns:
            Tuple of the token error rate in percent and the hypothesis. An
            empty reference scores ``0.0`` for an empty hypothesis and ``inf``
            otherwise.
        """
        validate_posteriors(posteriors)
        stats = self._stats(stats)
        ref = as_index_tensor(label).tolist()
        hyp = greedy_decode(posteriors, blank=self.config.blank)

        counts = edit_distance_counts(ref, hyp)
        stats.add_errors(counts.errors, len(ref))
        if ref:
            rate = 100.0 * counts.errors / len(ref)
        else:
            rate = 0.0 if counts.errors == 0 else float("inf")
        return rate, hyp

    def error_rate_mseq(
        self,
        frame_counts: Union[Tensor, Sequence[int]],
        posteriors: Tensor,
        labels: Sequence[LabelLike],
        stats: Optional[CtcStats] = None,
    ) -> None:
        """Greedy-decode and score every sequence of a padded batch.

        Only the running error and reference token counters are updated.
        """
        validate_posteriors(posteriors)
        validate_batch_layout(posteriors.shape[0], len(frame_counts), num_labels=len(labels))
        stats = self._stats(stats)
        layout = PaddedLayout.from_frame_counts(frame_counts, posteriors.shape[0], device=posteriors.device)

        hyps = greedy_decode_batch(posteriors, layout, blank=self.config.blank)
        for label, hyp in zip(labels, hyps):
            ref = as_index_tensor(label).tolist()
            counts = edit_distance_counts(ref, hyp)
            stats.add_errors(counts.errors, len(ref))

    def report(self, stats: Optional[CtcStats] = None) -> str:
        """Cumulative objective per sequence, per frame and token accuracy."""
        return self._stats(stats).summary()
