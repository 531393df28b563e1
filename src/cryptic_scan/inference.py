"""Inference stage — merged features → per-residue action values.

:func:`infer` evaluates every residue of one structure in a single
batched call against a borrowed :class:`~cryptic_scan.network.ParameterSnapshot`
and refuses to return non-finite values.  :class:`ActionValues` is the
host-side result; :meth:`ActionValues.top_k` ranks candidate cryptic
sites.

Candidate scoring
-----------------
``score``       Q(cryptic) − max Q(other actions)
``confidence``  tanh(Q(best) − Q(second best))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

from .errors import DeviceError, IntegrityError
from .network import ParameterSnapshot, evaluate_q

logger = logging.getLogger(__name__)

__all__ = [
    "CrypticCandidate",
    "ActionValues",
    "infer",
]


@dataclass(frozen=True)
class CrypticCandidate:
    """One ranked candidate cryptic-site residue."""
    residue_index: int
    chain: str
    score: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "residue_index": self.residue_index,
            "chain": self.chain,
            "score": round(self.score, 6),
            "confidence": round(self.confidence, 6),
        }


@dataclass
class ActionValues:
    """Host copy of one structure's ``(R, n_actions)`` Q-values."""

    structure_id: str
    q: np.ndarray                     # (R, n_actions) float64
    actions: Tuple[str, ...]
    chains: Sequence[str]             # (R,)
    cryptic_action: str = "cryptic"

    @property
    def n_residues(self) -> int:
        return int(self.q.shape[0])

    def column(self, action: str) -> np.ndarray:
        return self.q[:, self.actions.index(action)]

    def greedy(self) -> List[str]:
        """Best action per residue."""
        return [self.actions[i] for i in np.argmax(self.q, axis=1)]

    def scores(self) -> np.ndarray:
        """Cryptic advantage over the best competing action, ``(R,)``."""
        j = self.actions.index(self.cryptic_action)
        others = np.delete(self.q, j, axis=1)
        return self.q[:, j] - others.max(axis=1)

    def margins(self) -> np.ndarray:
        """Gap between the best and second-best action, ``(R,)``."""
        top2 = np.sort(self.q, axis=1)[:, -2:]
        return top2[:, 1] - top2[:, 0]

    def top_k(self, k: int) -> List[CrypticCandidate]:
        """The *k* highest-scoring residues, ties broken by residue index."""
        if k <= 0:
            return []
        score = self.scores()
        conf = np.tanh(self.margins())
        order = np.lexsort((np.arange(self.n_residues), -score))[:k]
        return [CrypticCandidate(residue_index=int(i), chain=str(self.chains[i]),
                                 score=float(score[i]), confidence=float(conf[i]))
                for i in order]


def infer(
    merged: torch.Tensor,
    snapshot: ParameterSnapshot,
    unit: Optional[str] = None,
) -> torch.Tensor:
    """Q-values ``(R, n_actions)`` float64 on the features' device.

    Raises
    ------
    IntegrityError
        If the feature width does not match the network input.
    DeviceError
        If the device fails or any Q-value is non-finite.
    """
    expected = snapshot.config.input_dim
    if merged.dim() != 2 or merged.shape[1] != expected:
        raise IntegrityError(
            f"merged features have shape {tuple(merged.shape)}, network "
            f"expects (R, {expected})", unit=unit, stage="inference")
    try:
        q = evaluate_q(snapshot, merged)
    except torch.cuda.OutOfMemoryError as exc:
        raise DeviceError(f"out of memory during inference: {exc}",
                          unit=unit, stage="inference") from exc
    if not bool(torch.isfinite(q).all()):
        n_bad = int((~torch.isfinite(q)).any(dim=1).sum())
        raise DeviceError(f"non-finite Q-values for {n_bad} residues",
                          unit=unit, stage="inference")
    return q.to(merged.device)
