"""Fitness functions for the evolutionary trainer.

A fitness function maps the inference output of every training
structure to one scalar; the trainer only requires
``fitness(values: Sequence[ActionValues]) -> float``.

:class:`RewardPrimitives` holds the per-structure agreement measures;
:class:`LabelFitness` averages one of them over structures with known
cryptic-site labels.
"""

from __future__ import annotations

from typing import Dict, Mapping, Sequence

import numpy as np
from scipy.stats import rankdata, spearmanr

from .errors import DataError
from .inference import ActionValues

__all__ = [
    "RewardPrimitives",
    "LabelFitness",
]


class RewardPrimitives:
    """Bounded agreement measures between residue scores and labels."""

    @staticmethod
    def roc_auc(scores: np.ndarray, labels: np.ndarray) -> float:
        """Area under the ROC curve (Mann–Whitney, ties averaged).

        0.5 when only one class is present.
        """
        scores = np.asarray(scores, dtype=float)
        labels = np.asarray(labels, dtype=bool)
        n_pos = int(labels.sum())
        n_neg = labels.size - n_pos
        if n_pos == 0 or n_neg == 0:
            return 0.5
        ranks = rankdata(scores)
        u = ranks[labels].sum() - n_pos * (n_pos + 1) / 2.0
        return float(u / (n_pos * n_neg))

    @staticmethod
    def precision_at_k(scores: np.ndarray, labels: np.ndarray, k: int) -> float:
        """Fraction of the *k* top-scoring residues that are labelled sites."""
        scores = np.asarray(scores, dtype=float)
        labels = np.asarray(labels, dtype=bool)
        k = min(k, scores.size)
        if k <= 0:
            return 0.0
        order = np.lexsort((np.arange(scores.size), -scores))[:k]
        return float(labels[order].mean())

    @staticmethod
    def spearman(scores: np.ndarray, targets: np.ndarray) -> float:
        """Spearman ρ; 0.0 when either input is constant."""
        scores = np.asarray(scores, dtype=float)
        targets = np.asarray(targets, dtype=float)
        if np.ptp(scores) == 0 or np.ptp(targets) == 0:
            return 0.0
        rho, _ = spearmanr(scores, targets)
        return float(rho)

    @staticmethod
    def margin(scores: np.ndarray, labels: np.ndarray, scale: float = 1.0) -> float:
        """tanh of the mean score gap between sites and non-sites."""
        scores = np.asarray(scores, dtype=float)
        labels = np.asarray(labels, dtype=bool)
        if labels.all() or not labels.any():
            return 0.0
        gap = scores[labels].mean() - scores[~labels].mean()
        return float(np.tanh(gap / max(scale, 1e-6)))


class LabelFitness:
    """Mean per-structure agreement with known cryptic-site labels.

    Parameters
    ----------
    labels : mapping
        ``{structure_id: (R,) bool or float array}`` in canonical residue order.
    metric : str
        ``"auc"``, ``"precision_at_k"``, ``"spearman"`` or ``"margin"``.
    k : int
        Cut-off for ``precision_at_k``.
    """

    METRICS = ("auc", "precision_at_k", "spearman", "margin")

    def __init__(self, labels: Mapping[str, np.ndarray], metric: str = "auc",
                 k: int = 10):
        assert metric in self.METRICS, f"metric must be one of {self.METRICS}"
        self.labels: Dict[str, np.ndarray] = {
            sid: np.asarray(v) for sid, v in labels.items()}
        self.metric = metric
        self.k = k

    def score_one(self, values: ActionValues) -> float:
        sid = values.structure_id
        if sid not in self.labels:
            raise DataError("no labels for structure", unit=sid, stage="reward")
        y = self.labels[sid]
        if y.shape[0] != values.n_residues:
            raise DataError(
                f"{y.shape[0]} labels for {values.n_residues} residues",
                unit=sid, stage="reward")
        s = values.scores()
        if self.metric == "auc":
            return RewardPrimitives.roc_auc(s, y)
        if self.metric == "precision_at_k":
            return RewardPrimitives.precision_at_k(s, y, self.k)
        if self.metric == "spearman":
            return RewardPrimitives.spearman(s, y)
        return RewardPrimitives.margin(s, y)

    def __call__(self, values: Sequence[ActionValues]) -> float:
        if not values:
            raise DataError("fitness called with no structures", stage="reward")
        return float(np.mean([self.score_one(v) for v in values]))

    def __repr__(self) -> str:
        return f"LabelFitness({self.metric}, {len(self.labels)} structures)"
