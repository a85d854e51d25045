r"""Padded multi-sequence layout.

Several utterances of different lengths share one posterior matrix by
interleaving their frames: row ``t * N + n`` holds frame ``t`` of sequence
``n``. Every sequence is padded to the same number of frames
:math:`T_{max} = \text{rows} / N`, and its real length is tracked in
``frame_counts``. Padding rows are never read by the recurrences; they are
masked through ``frame_counts``, not physically trimmed.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional, Union

import torch
from torch import Tensor

from .validation import as_index_tensor, validate_batch_layout, validate_frame_counts

__all__ = ["PaddedLayout"]


@dataclass
class PaddedLayout:
    """(padded time, sequence index) -> row mapping for one batch.

    Attributes:
        num_sequences: Number of interleaved sequences ``N``.
        max_frames: Padded frame count ``T_max`` shared by the batch.
        frame_counts: ``(N,)`` long tensor of real frame counts.
    """

    num_sequences: int
    max_frames: int
    frame_counts: Tensor

    @classmethod
    def from_frame_counts(
        cls,
        frame_counts: Union[Tensor, Sequence[int]],
        num_rows: int,
        device: Optional[torch.device] = None,
    ) -> "PaddedLayout":
        """Build and validate the layout of a ``num_rows``-row padded matrix."""
        frame_counts = as_index_tensor(frame_counts, device=device)
        num_sequences = frame_counts.numel()
        validate_batch_layout(num_rows, num_sequences)
        max_frames = num_rows // num_sequences
        validate_frame_counts(frame_counts, max_frames)
        return cls(num_sequences, max_frames, frame_counts)

    def row(self, t: int, n: int) -> int:
        return t * self.num_sequences + n

    def rows(self, n: int) -> Tensor:
        """Row indices of the real (non-padded) frames of sequence ``n``."""
        num_frames = int(self.frame_counts[n])
        return torch.arange(num_frames, device=self.frame_counts.device) * self.num_sequences + n

    def time_major(self, matrix: Tensor) -> Tensor:
        """View a ``(T_max * N, C)`` matrix as ``(T_max, N, C)``."""
        return matrix.reshape(self.max_frames, self.num_sequences, -1)

    def frame_mask(self) -> Tensor:
        """``(T_max, N)`` bool mask, True on real frames."""
        t = torch.arange(self.max_frames, device=self.frame_counts.device)
        return t.unsqueeze(1) < self.frame_counts.unsqueeze(0)

    def sequence(self, matrix: Tensor, n: int) -> Tensor:
        """The real frames of sequence ``n`` as a ``(frame_counts[n], C)`` view."""
        num_frames = int(self.frame_counts[n])
        return self.time_major(matrix)[:num_frames, n]
