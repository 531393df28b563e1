"""Feature merge stage — fused (136) + cryptic (4) → 140 per residue.

``merged[:, :136]`` is the fused block and ``merged[:, 136:]`` the
cryptic block, in :data:`~cryptic_scan.cryptic.CRYPTIC_SCORES` order.
"""

from __future__ import annotations

import torch

from .cryptic import CRYPTIC_DIM
from .errors import IntegrityError
from .fusion import FUSED_DIM

__all__ = ["MERGED_DIM", "merge_features"]

MERGED_DIM: int = FUSED_DIM + CRYPTIC_DIM


def merge_features(fused: torch.Tensor, cryptic: torch.Tensor,
                   unit=None) -> torch.Tensor:
    """Concatenate the two blocks; any shape mismatch is an :class:`IntegrityError`."""
    if fused.dim() != 2 or fused.shape[1] != FUSED_DIM:
        raise IntegrityError(
            f"fused block has shape {tuple(fused.shape)}, expected (R, {FUSED_DIM})",
            unit=unit, stage="merge")
    if cryptic.dim() != 2 or cryptic.shape[1] != CRYPTIC_DIM:
        raise IntegrityError(
            f"cryptic block has shape {tuple(cryptic.shape)}, expected (R, {CRYPTIC_DIM})",
            unit=unit, stage="merge")
    if fused.shape[0] != cryptic.shape[0]:
        raise IntegrityError(
            f"row mismatch: fused {fused.shape[0]} vs cryptic {cryptic.shape[0]}",
            unit=unit, stage="merge")
    if fused.device != cryptic.device:
        raise IntegrityError(
            f"blocks on different devices ({fused.device}, {cryptic.device})",
            unit=unit, stage="merge")
    merged = torch.cat([fused, cryptic.to(fused.dtype)], dim=1)
    if merged.shape[1] != MERGED_DIM:
        raise IntegrityError(f"merged width {merged.shape[1]} != {MERGED_DIM}",
                             unit=unit, stage="merge")
    return merged
