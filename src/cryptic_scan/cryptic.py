"""Cryptic-feature stage — four scores aimed at hidden pockets.

====  =====================  =========================================
Col   Score                  Full information  →  reduced fallback
====  =====================  =========================================
0     flexibility            logistic(z(provider flexibility) −
                             z(packing))  →  1 − packing / max packing
1     pocket depth           concavity × exposure × (1 + depth / scale)
2     exposure variance      std of relative exposure over ensemble
                             frames  →  √(rel(1 − rel)) · flexibility ·
                             single-conformation confidence
3     centrality             PageRank on the CA contact graph / max
====  =====================  =========================================

*Packing* is the weighted contact number ``Σ_j 1 / d_ij²`` over Cα.  A
score computed from the reduced path is reported with
:attr:`InfoLevel.REDUCED`; no score is ever replaced by a constant
stand-in for missing input.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

import torch

from .arena import StructureTensors
from .errors import DeviceError, IntegrityError
from .fusion import (
    FUSED_DIM,
    SLOT_DEPTH,
    SLOT_RAW_REL_SASA,
    residue_exposure,
)
from .geometry import (
    gather_positions,
    radius_unit_vector_sums,
    residue_centroids,
    row_blocks,
)
from .providers import FLEXIBILITY
from .spectral import contact_graph, pagerank
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "CRYPTIC_DIM",
    "CRYPTIC_SCORES",
    "InfoLevel",
    "CrypticScores",
    "weighted_contact_number",
    "compute_cryptic",
]

CRYPTIC_DIM: int = 4
CRYPTIC_SCORES: Tuple[str, ...] = (
    "flexibility", "pocket_depth", "exposure_variance", "centrality",
)


class InfoLevel(enum.IntEnum):
    """How much input a score was computed from."""
    REDUCED = 0
    FULL = 1


@dataclass
class CrypticScores:
    """``(R, 4)`` scores plus the information level behind each column."""
    values: torch.Tensor
    info_level: Tuple[InfoLevel, ...]

    @property
    def reduced(self) -> Tuple[str, ...]:
        return tuple(name for name, lvl in zip(CRYPTIC_SCORES, self.info_level)
                     if lvl is InfoLevel.REDUCED)

    def as_dict(self) -> dict:
        return {name: self.info_level[i].name.lower()
                for i, name in enumerate(CRYPTIC_SCORES)}


def _zscore(x: torch.Tensor) -> torch.Tensor:
    if x.numel() < 2:
        return torch.zeros_like(x)
    return (x - x.mean()) / x.std().clamp(min=1e-12)


def weighted_contact_number(ca: torch.Tensor, chunk: int = 1024) -> torch.Tensor:
    """``Σ_{j≠i} 1/d_ij²`` over Cα positions, float64."""
    R = ca.shape[0]
    out = torch.zeros(R, dtype=torch.float64, device=ca.device)
    ca64 = ca.to(torch.float64)
    for lo, hi in row_blocks(R, chunk):
        d2 = torch.cdist(ca64[lo:hi], ca64) ** 2
        rows = torch.arange(hi - lo, device=ca.device)
        d2[rows, rows + lo] = float("inf")
        out[lo:hi] = (1.0 / d2.clamp(min=1e-6)).sum(dim=1)
    return out


def _flexibility(fused, capabilities, packing):
    slot = capabilities.get(FLEXIBILITY)
    if slot is not None:
        flex = fused[:, slot].to(torch.float64)
        return torch.sigmoid(_zscore(flex) - _zscore(packing)), InfoLevel.FULL
    top = packing.max().clamp(min=1e-12)
    return 1.0 - packing / top, InfoLevel.REDUCED


def _pocket_depth(t, fused, thresholds, chunk):
    cent = residue_centroids(t.positions, t.start, t.stop)
    vec, cnt = radius_unit_vector_sums(
        cent, t.positions, thresholds["cryptic.concavity_radius"],
        query_group=torch.arange(t.n_residues, device=t.device),
        point_group=t.atom_residue, chunk=chunk)
    resultant = vec.norm(dim=-1) / cnt.clamp(min=1.0)
    # no neighbours within the radius: fully convex
    concavity = torch.where(cnt > 0, 1.0 - resultant, torch.zeros_like(resultant))
    exposure = fused[:, SLOT_RAW_REL_SASA].to(torch.float64)
    depth_a = fused[:, SLOT_DEPTH].to(torch.float64) * 10.0
    return concavity * exposure * (1.0 + depth_a / thresholds["cryptic.depth_scale"])


def _exposure_variance(t, fused, ensemble, flexibility, thresholds):
    if ensemble is not None and ensemble.shape[0] > 0:
        frames = [residue_exposure(t, thresholds=thresholds)[1]]
        for k in range(ensemble.shape[0]):
            frames.append(residue_exposure(t, ensemble[k], thresholds)[1])
        stacked = torch.stack(frames, dim=0)
        return stacked.std(dim=0, unbiased=False), InfoLevel.FULL
    rel = fused[:, SLOT_RAW_REL_SASA].to(torch.float64).clamp(0.0, 1.0)
    conf = thresholds["cryptic.single_conformation_confidence"]
    return torch.sqrt(rel * (1.0 - rel)) * flexibility * conf, InfoLevel.REDUCED


def _centrality(ca, thresholds):
    graph = contact_graph(ca, thresholds["cryptic.contact_radius"])
    pr = pagerank(graph, thresholds["cryptic.pagerank_damping"],
                  thresholds.count("cryptic.pagerank_iterations"))
    return pr / pr.max().clamp(min=1e-300)


def compute_cryptic(
    t: StructureTensors,
    fused: torch.Tensor,
    capabilities: Optional[Mapping[str, int]] = None,
    ensemble: Optional[torch.Tensor] = None,
    thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
) -> CrypticScores:
    """Compute the four cryptic-site scores.

    Parameters
    ----------
    fused : (R, 136) tensor
        Read-only output of the fusion stage.
    capabilities : mapping, optional
        ``{capability: fused slot}`` from the provider stack.
    ensemble : (K, A, 3) tensor, optional
        Alternative conformations of the same atoms.

    Raises
    ------
    IntegrityError
        If *fused* is not ``(R, 136)`` or the ensemble atom count differs.
    DeviceError
        If any score is non-finite.
    """
    sid = t.structure_id
    R = t.n_residues
    if fused.shape != (R, FUSED_DIM):
        raise IntegrityError(
            f"fused shape {tuple(fused.shape)} != ({R}, {FUSED_DIM})",
            unit=sid, stage="cryptic")
    if ensemble is not None and tuple(ensemble.shape[1:]) != (t.n_atoms, 3):
        raise IntegrityError(
            f"ensemble shape {tuple(ensemble.shape)} does not match "
            f"{t.n_atoms} atoms", unit=sid, stage="cryptic")
    chunk = thresholds.count("fusion.chunk_size")
    capabilities = capabilities or {}

    cent = residue_centroids(t.positions, t.start, t.stop)
    ca = gather_positions(t.positions, t.idx_ca, cent)
    packing = weighted_contact_number(ca, chunk)

    flex, flex_level = _flexibility(fused, capabilities, packing)
    pocket = _pocket_depth(t, fused, thresholds, chunk)
    variance, var_level = _exposure_variance(t, fused, ensemble, flex, thresholds)
    central = _centrality(ca, thresholds)

    values = torch.stack([flex, pocket, variance, central], dim=1)
    if not bool(torch.isfinite(values).all()):
        raise DeviceError("non-finite cryptic scores", unit=sid, stage="cryptic")
    levels = (flex_level, InfoLevel.FULL, var_level, InfoLevel.FULL)
    logger.debug(f"{sid}: cryptic scores, info levels "
                 f"{[lvl.name for lvl in levels]}")
    return CrypticScores(values=values.to(torch.float32), info_level=levels)
