"""Numeric constants shared across CTC modules."""

# Finite log(0) sentinel; log-domain arithmetic saturates here instead of -inf
LOG_ZERO = -1e30

# exp() arguments are capped here, below log(float32 max)
EXP_LIMIT = 88.0

# Expanded-label padding value, never matches a posterior column
PAD_LABEL = -1

# Plausible range of a per-utterance objective (-log P)
MIN_LOSS = 0.0
MAX_LOSS = 3000.0

OBJECTIVE_CLAMP = 10000.0

# Assuming 10ms frames: frames per hour
FRAMES_PER_HOUR = 100.0 * 3600
