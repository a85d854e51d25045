r"""Label expansion with blank insertion.

The CTC state space for a reference label sequence :math:`y_1 \ldots y_L` is
the expanded sequence of length :math:`2L+1`::

    [blank, y1, blank, y2, blank, ..., yL, blank]

Even positions are blanks, odd positions are labels. For padded batches every
sequence gets a fixed-stride slot of ``2 * max(L_i) + 1`` entries and the unused
tail of each slot is filled with :data:`~torch_ctc.constants.PAD_LABEL`.
"""

from collections.abc import Sequence
from typing import Union

import torch
from torch import Tensor

from .constants import PAD_LABEL
from .validation import as_index_tensor, validate_label_range

__all__ = ["expand_labels", "expand_labels_batch", "collapse_alignment"]

LabelLike = Union[Tensor, Sequence[int]]


def expand_labels(
    label: LabelLike, num_classes: int, blank: int = 0, device=None
) -> Tensor:
    r"""expand_labels(label, num_classes, blank=0) -> Tensor

    Interleave ``blank`` with each reference label.

    Args:
        label: reference label indices of length :math:`L` (blank excluded)
        num_classes (int): number of output classes :math:`C`
        blank (int, optional): blank class index. Default: ``0``

    Returns:
        Tensor: ``torch.long`` tensor of length :math:`2L+1`.

    Raises:
        ValueError: If any label index is outside :math:`[0, C)`.

    Examples::

        >>> expand_labels([3, 5, 3], num_classes=6)
        tensor([0, 3, 0, 5, 0, 3, 0])
    """
    label = as_index_tensor(label, device=device)
    validate_label_range(label, num_classes)

    expanded = torch.full((2 * label.numel() + 1,), blank, dtype=torch.long, device=label.device)
    expanded[1::2] = label
    return expanded


def expand_labels_batch(
    labels: Sequence[LabelLike], num_classes: int, blank: int = 0, device=None
) -> tuple[Tensor, Tensor]:
    r"""expand_labels_batch(labels, num_classes, blank=0) -> (Tensor, Tensor)

    Expand several label sequences into one padded, fixed-stride buffer.

    Args:
        labels: ``N`` reference label sequences of possibly different lengths
        num_classes (int): number of output classes :math:`C`
        blank (int, optional): blank class index. Default: ``0``

    Returns:
        expanded (Tensor): ``(N, max_exp_len)`` with ``max_exp_len = 2 * max(L_i) + 1``;
          entries beyond a sequence's own expansion hold ``PAD_LABEL``.
        exp_lengths (Tensor): ``(N,)`` expanded length ``2 * L_i + 1`` per sequence.

    Raises:
        ValueError: If any label index is outside :math:`[0, C)`.
    """
    label_tensors = [as_index_tensor(label, device=device) for label in labels]
    max_label_len = max((label.numel() for label in label_tensors), default=0)
    max_exp_len = 2 * max_label_len + 1

    expanded = torch.full(
        (len(label_tensors), max_exp_len), PAD_LABEL, dtype=torch.long, device=device
    )
    exp_lengths = torch.empty(len(label_tensors), dtype=torch.long, device=device)
    for n, label in enumerate(label_tensors):
        validate_label_range(label, num_classes, name=f"label[{n}]")
        exp_len = 2 * label.numel() + 1
        expanded[n, :exp_len] = blank
        expanded[n, 1:exp_len:2] = label.to(expanded.device)
        exp_lengths[n] = exp_len

    return expanded, exp_lengths


def collapse_alignment(alignment: LabelLike, blank: int = 0) -> list[int]:
    """Turn a frame-level alignment into a label sequence.

    Consecutive duplicates are merged first, then blanks are dropped, so
    ``[a, a, blank, a]`` gives ``[a, a]`` while ``[a, a, a]`` gives ``[a]``.
    """
    alignment = as_index_tensor(alignment)
    if alignment.numel() == 0:
        return []
    merged = torch.unique_consecutive(alignment)
    return merged[merged != blank].tolist()
