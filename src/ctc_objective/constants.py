"""
Shared constants used across the CTC objective.

Label indices:
  0 = CTC blank
  1..C-1 = real output labels

Sentinels:
  LOG_ZERO stands in for log(0) in every alpha/beta table.  It is finite
  so that sums of two sentinels (-2e30) stay finite in float64, and it is
  far below the log of the smallest positive float64 (about -745), so a
  real log-probability can never be mistaken for it.

  NO_LABEL fills the unused trailing slots of the expanded label rows of
  shorter sequences in a batch.  It is negative, hence never a valid
  class index.
"""

from typing import Dict, List, Optional

# CTC blank index
BLANK_IDX: int = 0

# log(0) stand-in for the lattice tables
LOG_ZERO: float = -1e30

# Filler for lattice positions past the end of a sequence's expanded label
NO_LABEL: int = -1

# Per-sequence log-likelihood is clipped to +/- this before entering stats
PZX_CLIP: float = 10000.0

# Gradient elements are clipped to [-GRAD_CLIP, GRAD_CLIP]
GRAD_CLIP: float = 1.0

# Plausible range of a sequence negative log-likelihood
MIN_SEQUENCE_LOSS: float = 0.0
MAX_SEQUENCE_LOSS: float = 3000.0

# Acceptance half-width (in sigmas) of the average-loss check
SIGMA_WIDTH: float = 6.0

# 10ms frames
FRAMES_PER_HOUR: float = 100.0 * 3600


def labels_to_str(
    ids: List[int],
    symbols: Optional[Dict[int, str]] = None,
    skip_blank: bool = True,
) -> str:
    """Convert a list of label IDs to a human-readable string."""
    parts = []
    for i in ids:
        i = int(i)
        if skip_blank and i == BLANK_IDX:
            continue
        if symbols is None:
            parts.append(str(i))
        else:
            parts.append(symbols.get(i, f"<unk:{i}>"))
    return " ".join(parts)
