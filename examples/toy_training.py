#!/usr/bin/env python3
"""Example: Training a small model with the torch-ctc objective.

Inputs are random token runs; the target of each sequence is its run labels
with repeats merged, so the model has to learn the frame-to-label alignment
on its own.

Key points:
1. Batches are padded to the longest sequence and flattened time-major, so
   row ``t * N + n`` is frame ``t`` of sequence ``n``
2. ``ctc_objective`` returns the summed loss of accepted utterances and
   backpropagates the clipped CTC gradient
3. ``Ctc`` keeps the running objective and token accuracy across batches

Usage:
    python toy_training.py
    python toy_training.py --outlier_policy average_loss_check --report_step 64
"""

import argparse
import logging

import torch
import torch.nn as nn
from torch.utils.data import DataLoader, Dataset

from torch_ctc import Ctc, CtcStats, ctc_objective

logger = logging.getLogger(__name__)


class SimpleEncoder(nn.Module):
    """Embedding followed by a few position-wise layers and a class projection."""

    def __init__(self, vocab_size: int, hidden_dim: int, num_classes: int, num_layers: int = 2):
        super().__init__()
        self.embedding = nn.Embedding(vocab_size, hidden_dim)
        self.layers = nn.Sequential(
            *[
                nn.Sequential(
                    nn.Linear(hidden_dim, hidden_dim),
                    nn.ReLU(),
                    nn.LayerNorm(hidden_dim),
                )
                for _ in range(num_layers)
            ]
        )
        self.proj = nn.Linear(hidden_dim, num_classes)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass.

        Args:
            x: Input token IDs of shape (T_max, batch)

        Returns:
            Activations of shape (T_max, batch, num_classes)
        """
        return self.proj(self.layers(self.embedding(x)))


class RunDataset(Dataset):
    """Random runs of tokens 1..num_labels separated by optional silence (0)."""

    def __init__(self, num_samples: int = 512, max_runs: int = 6, num_labels: int = 5, seed: int = 0):
        gen = torch.Generator().manual_seed(seed)
        self.items = []
        for _ in range(num_samples):
            num_runs = int(torch.randint(1, max_runs + 1, (1,), generator=gen))
            frames, target = [], []
            for _ in range(num_runs):
                label = int(torch.randint(1, num_labels + 1, (1,), generator=gen))
                run = int(torch.randint(2, 6, (1,), generator=gen))
                if target and target[-1] == label or torch.rand(1, generator=gen) < 0.3:
                    frames.extend([0] * int(torch.randint(1, 3, (1,), generator=gen)))
                frames.extend([label] * run)
                target.append(label)
            self.items.append((torch.tensor(frames), target))

    def __len__(self):
        return len(self.items)

    def __getitem__(self, idx):
        inputs, target = self.items[idx]
        return {"inputs": inputs, "labels": target, "lengths": inputs.numel()}


def collate_fn(batch):
    """Pad inputs to (T_max, batch) and keep labels as a list."""
    lengths = [item["lengths"] for item in batch]
    inputs = torch.zeros(max(lengths), len(batch), dtype=torch.long)
    for n, item in enumerate(batch):
        inputs[: item["lengths"], n] = item["inputs"]
    return {
        "inputs": inputs,
        "labels": [item["labels"] for item in batch],
        "lengths": lengths,
    }


def main():
    parser = argparse.ArgumentParser(description="torch-ctc toy training example")
    parser.add_argument("--epochs", type=int, default=5, help="Number of epochs")
    parser.add_argument("--batch_size", type=int, default=16, help="Batch size")
    parser.add_argument("--num_labels", type=int, default=5, help="Number of non-blank labels")
    parser.add_argument("--hidden_dim", type=int, default=64, help="Hidden dimension")
    parser.add_argument("--lr", type=float, default=3e-3, help="Learning rate")
    parser.add_argument("--outlier_policy", type=str, default="sum_loss_check", help="Outlier policy")
    parser.add_argument("--report_step", type=int, default=128, help="Sequences between progress lines")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    num_classes = args.num_labels + 1
    train_loader = DataLoader(
        RunDataset(num_labels=args.num_labels, seed=0),
        batch_size=args.batch_size,
        shuffle=True,
        collate_fn=collate_fn,
    )
    val_loader = DataLoader(
        RunDataset(num_samples=128, num_labels=args.num_labels, seed=1),
        batch_size=args.batch_size,
        collate_fn=collate_fn,
    )

    model = SimpleEncoder(args.num_labels + 1, args.hidden_dim, num_classes)
    optimizer = torch.optim.AdamW(model.parameters(), lr=args.lr)
    ctc = Ctc(outlier_policy=args.outlier_policy, report_step=args.report_step)

    for epoch in range(args.epochs):
        model.train()
        ctc.stats.reset()
        for batch in train_loader:
            logits = model(batch["inputs"]).reshape(-1, num_classes)
            loss = ctc_objective(logits, batch["labels"], batch["lengths"], ctc)
            optimizer.zero_grad()
            (loss / len(batch["lengths"])).backward()
            optimizer.step()
        logger.info("epoch %d train%s", epoch, ctc.report())

        model.eval()
        val_stats = CtcStats()
        with torch.no_grad():
            for batch in val_loader:
                posteriors = torch.softmax(model(batch["inputs"]).reshape(-1, num_classes), dim=-1)
                ctc.error_rate_mseq(batch["lengths"], posteriors, batch["labels"], stats=val_stats)
        logger.info("epoch %d valid TokenAcc = %.2f %%", epoch, val_stats.token_accuracy())


if __name__ == "__main__":
    main()
