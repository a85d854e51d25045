"""Input validation utilities for the CTC objective.

These functions raise informative errors early, preventing cryptic downstream
failures (or silently corrupted gradients) inside the forward-backward loops.

Functions:
    validate_posteriors: Validate the posterior matrix shape.
    validate_label_range: Validate reference label indices against the class count.
    validate_batch_layout: Validate a padded multi-sequence layout.
    validate_frame_counts: Validate per-sequence frame counts.
"""

from collections.abc import Sequence
from typing import Optional

import torch
from torch import Tensor

__all__ = [
    "validate_posteriors",
    "validate_label_range",
    "validate_batch_layout",
    "validate_frame_counts",
]


def validate_posteriors(posteriors: Tensor, name: str = "posteriors") -> None:
    r"""validate_posteriors(posteriors, name='posteriors') -> None

    Validates the posterior matrix of shape :math:`(T, C)`.

    Args:
        posteriors (Tensor): per-frame class probabilities, rows are frames
        name (str, optional): name to use in error messages. Default: ``"posteriors"``

    Raises:
        ValueError: If the tensor is not 2D, has no frames, or has fewer than
          two classes (blank plus at least one label).
        ValueError: If the tensor is not floating point.
    """
    if posteriors.ndim != 2:
        raise ValueError(f"{name} must be 2D (frames, classes), got {posteriors.ndim}D")

    if posteriors.shape[0] == 0:
        raise ValueError(f"{name} must contain at least one frame")

    if posteriors.shape[1] < 2:
        raise ValueError(f"{name} must have at least 2 classes (blank + labels), got {posteriors.shape[1]}")

    if not posteriors.is_floating_point():
        raise ValueError(f"{name} must be floating point, got {posteriors.dtype}")


def validate_label_range(label: Tensor, num_classes: int, name: str = "label") -> None:
    r"""validate_label_range(label, num_classes, name='label') -> None

    Validates that every reference label index lies in :math:`[0, C)`.

    Args:
        label (Tensor): 1D integer tensor of class indices
        num_classes (int): number of output classes :math:`C` (blank included)
        name (str, optional): name to use in error messages. Default: ``"label"``

    Raises:
        ValueError: If the tensor is not 1D or not an integer tensor.
        ValueError: If any label is outside :math:`[0, \text{num\_classes})`.

    Examples::

        >>> validate_label_range(torch.tensor([1, 2, 3]), num_classes=4)  # OK

        >>> validate_label_range(torch.tensor([1, 7]), num_classes=4)
        ValueError: label index 7 exceeds output dimension 4
    """
    if label.ndim != 1:
        raise ValueError(f"{name} must be 1D, got {label.ndim}D")

    if label.is_floating_point():
        raise ValueError(f"{name} must hold integer class indices, got {label.dtype}")

    if label.numel() == 0:
        return

    max_val = label.max().item()
    if max_val >= num_classes:
        raise ValueError(f"{name} index {max_val} exceeds output dimension {num_classes}")

    min_val = label.min().item()
    if min_val < 0:
        raise ValueError(f"{name} index {min_val} is negative")


def validate_batch_layout(
    num_rows: int,
    num_sequences: int,
    utt_ids: Optional[Sequence[str]] = None,
    num_labels: Optional[int] = None,
) -> None:
    r"""validate_batch_layout(num_rows, num_sequences, utt_ids=None, num_labels=None) -> None

    Validates that a padded multi-sequence posterior matrix can be split
    evenly into ``num_sequences`` interleaved sequences.

    Args:
        num_rows (int): number of rows of the padded posterior matrix
        num_sequences (int): number of sequences in the batch
        utt_ids (Sequence[str], optional): utterance identifiers, one per sequence
        num_labels (int, optional): number of reference label sequences

    Raises:
        ValueError: If the batch is empty.
        ValueError: If ``num_rows`` is not a multiple of ``num_sequences``.
        ValueError: If ``utt_ids`` or the label list has the wrong length.
    """
    if num_sequences <= 0:
        raise ValueError("batch must contain at least one sequence")

    if num_rows % num_sequences != 0:
        raise ValueError(
            f"number of frames {num_rows} is not a multiple of the number of sequences {num_sequences}"
        )

    if utt_ids is not None and len(utt_ids) != num_sequences:
        raise ValueError(f"got {len(utt_ids)} utterance ids for {num_sequences} sequences")

    if num_labels is not None and num_labels != num_sequences:
        raise ValueError(f"got {num_labels} label sequences for {num_sequences} sequences")


def validate_frame_counts(
    frame_counts: Tensor, max_frames: int, name: str = "frame_counts"
) -> None:
    r"""validate_frame_counts(frame_counts, max_frames, name='frame_counts') -> None

    Validates per-sequence frame counts of a padded batch.

    Args:
        frame_counts (Tensor): 1D integer tensor of real sequence lengths
        max_frames (int): padded length :math:`T_{max}` shared by the batch
        name (str, optional): name to use in error messages. Default: ``"frame_counts"``

    Raises:
        ValueError: If the tensor is not 1D.
        ValueError: If any count is :math:`\leq 0` or exceeds ``max_frames``.
    """
    if frame_counts.ndim != 1:
        raise ValueError(f"{name} must be 1D, got {frame_counts.ndim}D")

    if (frame_counts <= 0).any():
        raise ValueError(f"{name} must be positive, got min={frame_counts.min().item()}")

    if (frame_counts > max_frames).any():
        raise ValueError(
            f"{name} cannot exceed padded length {max_frames}, got max={frame_counts.max().item()}"
        )


def as_index_tensor(values, device: Optional[torch.device] = None) -> Tensor:
    """Convert a sequence of ints (or a tensor) to a 1D ``torch.long`` tensor."""
    if isinstance(values, Tensor):
        return values.to(device=device, dtype=torch.long).reshape(-1)
    return torch.tensor(list(values), dtype=torch.long, device=device)
