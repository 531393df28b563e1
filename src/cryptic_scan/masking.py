"""Masking stage — per-residue glycan occlusion weights.

A residue is *motif-eligible* when it is the asparagine of an N-linked
sequon, ``N-X-S/T`` with ``X ≠ P``, all three residues in one chain
(``mask.sequon_window`` optionally extends eligibility to neighbouring
residues of the same chain).  Independently, the local atomic density
around each residue's side-chain centroid is the number of foreign atoms
within ``mask.density_cutoff``.

The weight combines both:

.. math::

    w_i = \\begin{cases}
        \\min(1, \\rho_i / \\rho_{sat}) & \\text{eligible and } \\rho_i \\ge \\rho_{min} \\\\
        0 & \\text{otherwise}
    \\end{cases}

so a residue without a motif is unmasked whatever its density, and the
weight reads as the fraction of the local surface patch a glycan would
occlude.  The stage is a pure function of the batch.
"""

from __future__ import annotations

import logging

import torch

from .arena import StructureTensors
from .batch import AA_TO_IDX
from .errors import DeviceError, IntegrityError
from .geometry import (
    gather_positions,
    radius_counts,
    residue_centroids,
    same_chain_offset,
    sidechain_centroids,
)
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "sequon_mask",
    "sidechain_reference",
    "glycan_density",
    "compute_mask",
]

_ASN = AA_TO_IDX["N"]
_PRO = AA_TO_IDX["P"]
_SER = AA_TO_IDX["S"]
_THR = AA_TO_IDX["T"]


def sequon_mask(res_type: torch.Tensor, res_chain: torch.Tensor,
                window: int = 0) -> torch.Tensor:
    """Bool ``(R,)``: residue is (or lies within *window* of) a sequon Asn."""
    R = res_type.shape[0]
    idx = torch.arange(R, device=res_type.device)
    nxt = res_type[(idx + 1).clamp(max=R - 1)]
    nxt2 = res_type[(idx + 2).clamp(max=R - 1)]
    hit = ((res_type == _ASN)
           & (nxt != _PRO)
           & ((nxt2 == _SER) | (nxt2 == _THR))
           & same_chain_offset(res_chain, 1)
           & same_chain_offset(res_chain, 2))
    if window <= 0:
        return hit
    spread = hit.clone()
    for off in range(1, window + 1):
        for sign in (-1, 1):
            src = idx - sign * off
            ok = (src >= 0) & (src < R)
            from_hit = hit[src.clamp(0, R - 1)] & ok
            spread |= from_hit & same_chain_offset(res_chain, -sign * off)
    return spread


def sidechain_reference(t: StructureTensors) -> torch.Tensor:
    """Side-chain centroid per residue (CA for Gly, residue centroid w/o CA)."""
    cent = residue_centroids(t.positions, t.start, t.stop)
    ca = gather_positions(t.positions, t.idx_ca, cent)
    sc, _ = sidechain_centroids(t.positions, t.is_backbone, t.start, t.stop, ca)
    return sc


def glycan_density(t: StructureTensors, rows: torch.Tensor,
                   cutoff: float, chunk: int = 1024) -> torch.Tensor:
    """Foreign-atom counts within *cutoff* of the side-chain centroid of *rows*."""
    ref = sidechain_reference(t)[rows]
    counts = radius_counts(
        ref, t.positions, [cutoff],
        query_group=rows, point_group=t.atom_residue, chunk=chunk,
    )
    return counts[:, 0]


def compute_mask(
    t: StructureTensors,
    thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
) -> torch.Tensor:
    """Compute the ``(R,)`` float32 mask buffer.

    Raises
    ------
    IntegrityError
        If any residue has an empty atom range.
    DeviceError
        If the result is non-finite or leaves ``[0, 1]``.
    """
    sid = t.structure_id
    lengths = t.stop - t.start
    if bool((lengths <= 0).any()):
        bad = torch.nonzero(lengths <= 0).flatten()[:5].tolist()
        raise IntegrityError(f"empty atom range for residues {bad}",
                             unit=sid, stage="masking")

    eligible = sequon_mask(t.res_type, t.res_chain,
                           thresholds.count("mask.sequon_window"))
    weights = torch.zeros(t.n_residues, dtype=torch.float32, device=t.device)
    rows = torch.nonzero(eligible).flatten()
    if rows.numel() > 0:
        density = glycan_density(t, rows, thresholds["mask.density_cutoff"],
                                 thresholds.count("fusion.chunk_size"))
        w = (density / thresholds["mask.density_saturation"]).clamp(0.0, 1.0)
        w = torch.where(density >= thresholds["mask.density_min"], w,
                        torch.zeros_like(w))
        weights[rows] = w

    if not bool(torch.isfinite(weights).all()) or bool(
            ((weights < 0) | (weights > 1)).any()):
        raise DeviceError("mask weights outside [0, 1]", unit=sid,
                          stage="masking")
    logger.debug(f"{sid}: {int(rows.numel())} sequon residues, "
                 f"{int((weights > 0).sum())} masked")
    return weights
