"""Greedy CTC decoding and edit-distance scoring."""

from collections.abc import Sequence
from dataclasses import dataclass

import torch
from edit_distance import SequenceMatcher
from torch import Tensor

from .labels import collapse_alignment
from .layout import PaddedLayout

__all__ = ["EditCounts", "edit_distance_counts", "greedy_decode", "greedy_decode_batch"]


@dataclass
class EditCounts:
    """Levenshtein alignment summary of a hypothesis against a reference."""

    errors: int
    insertions: int
    deletions: int
    substitutions: int


def edit_distance_counts(ref: Sequence[int], hyp: Sequence[int]) -> EditCounts:
    """Edit distance of ``hyp`` against ``ref`` with its error breakdown."""
    matcher = SequenceMatcher(a=list(ref), b=list(hyp))
    ins = dels = subs = 0
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "insert":
            ins += j2 - j1
        elif tag == "delete":
            dels += i2 - i1
        elif tag == "replace":
            subs += i2 - i1
    return EditCounts(ins + dels + subs, ins, dels, subs)


@torch.no_grad()
def greedy_decode(posteriors: Tensor, blank: int = 0) -> list[int]:
    """Best-path decode of one ``(T, C)`` posterior matrix.

    Takes the arg-max class of every frame, merges consecutive repeats and
    drops blanks.
    """
    return collapse_alignment(posteriors.argmax(dim=-1), blank=blank)


@torch.no_grad()
def greedy_decode_batch(posteriors: Tensor, layout: PaddedLayout, blank: int = 0) -> list[list[int]]:
    """Best-path decode of every sequence of a padded ``(T_max * N, C)`` matrix."""
    best = layout.time_major(posteriors).argmax(dim=-1)
    hyps = []
    for n in range(layout.num_sequences):
        num_frames = int(layout.frame_counts[n])
        hyps.append(collapse_alignment(best[:num_frames, n], blank=blank))
    return hyps
