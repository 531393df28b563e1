"""Breathing ensembles — cheap conformational variants for the cryptic stage.

An anchored-spring "breathing" run: every atom is tied to its reference
position by a spring, and a deterministic sinusoidal drive plays the role
of thermal noise.  Atoms of a *released* residue range get a very soft
spring and drift; everything else stays essentially frozen.  Frames are
recorded every ``stride`` steps.

.. math::

    x_i \\leftarrow x_i - k_i (x_i - x_i^0) + T \\cdot
        (\\sin(1.3 i + 0.1 s),\\; \\cos(1.7 i + 0.2 s),\\; \\sin(1.9 i + 0.3 s))

The result is a host ``(K, A, 3)`` array, staged with the batch at
ingress (:meth:`~cryptic_scan.arena.DeviceArena.upload`).
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .batch import PackedBatch

logger = logging.getLogger(__name__)

__all__ = [
    "FROZEN_STIFFNESS",
    "RELEASED_STIFFNESS",
    "DEFAULT_BREATHING_TEMPERATURE",
    "breathing_ensemble",
]

FROZEN_STIFFNESS: float = 1.0
RELEASED_STIFFNESS: float = 1e-4
DEFAULT_BREATHING_TEMPERATURE: float = 0.20


def breathing_ensemble(
    batch: PackedBatch,
    n_frames: int = 4,
    stride: int = 10,
    released: Optional[Tuple[int, int]] = None,
    temperature: float = DEFAULT_BREATHING_TEMPERATURE,
) -> np.ndarray:
    """Generate *n_frames* breathing conformations of *batch*.

    Parameters
    ----------
    n_frames : int
        Number of recorded frames ``K``.
    stride : int
        Integration steps between recorded frames.
    released : (int, int), optional
        Inclusive residue-index range given the soft spring.  ``None``
        releases every residue.
    temperature : float
        Amplitude of the sinusoidal drive (Å per step).

    Returns
    -------
    np.ndarray, (K, A, 3) float32
    """
    assert n_frames >= 1, "n_frames must be ≥ 1"
    assert stride >= 1, "stride must be ≥ 1"
    anchor = batch.positions.astype(np.float64)
    x = anchor.copy()
    if released is None:
        k = np.full(batch.atom_count, RELEASED_STIFFNESS)
    else:
        lo, hi = released
        free = (batch.atom_residue >= lo) & (batch.atom_residue <= hi)
        k = np.where(free, RELEASED_STIFFNESS, FROZEN_STIFFNESS)
    i = np.arange(batch.atom_count, dtype=np.float64)

    frames = np.empty((n_frames, batch.atom_count, 3), dtype=np.float32)
    step = 0
    for f in range(n_frames):
        for _ in range(stride):
            step += 1
            drive = np.stack([
                np.sin(i * 1.3 + step * 0.1),
                np.cos(i * 1.7 + step * 0.2),
                np.sin(i * 1.9 + step * 0.3),
            ], axis=1) * temperature
            x += -k[:, None] * (x - anchor) + drive
        frames[f] = x
    rmsd = np.sqrt(((frames[-1] - anchor) ** 2).sum(axis=1).mean())
    logger.debug(f"{batch.structure_id}: {n_frames} breathing frames, "
                 f"final RMSD {rmsd:.3f} Å")
    return frames
