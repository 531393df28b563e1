"""Device-side geometry kernels shared by the pipeline stages.

Everything here takes and returns ``torch`` tensors on the caller's
device; nothing touches the host.  Neighbour queries over atoms are
processed in row blocks of ``chunk`` queries so the peak footprint is
``chunk × n_atoms`` rather than ``n_atoms²``.

Residue reductions exploit the contiguous atom-range invariant: a
segment sum is a difference of a float64 prefix sum, which is
deterministic on every device (no atomics).
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import torch

__all__ = [
    "segment_sum",
    "segment_mean",
    "segment_max",
    "gather_positions",
    "residue_centroids",
    "sidechain_centroids",
    "pseudo_cb",
    "radius_counts",
    "radius_weighted_sums",
    "radius_unit_vector_sums",
    "nearest_distance",
    "row_blocks",
    "dihedral",
    "bond_angle",
    "same_chain_offset",
]


# ── segment reductions over contiguous residue ranges ────────────

def segment_sum(values: torch.Tensor, start: torch.Tensor,
                stop: torch.Tensor) -> torch.Tensor:
    """Sum ``values[start[r]:stop[r]]`` for every residue ``r``.

    *values* is ``(A,)`` or ``(A, d)``; the result is float64 with the
    leading axis replaced by ``R``.
    """
    v = values.to(torch.float64)
    pad_shape = (1,) + tuple(v.shape[1:])
    cs = torch.cat([torch.zeros(pad_shape, dtype=v.dtype, device=v.device),
                    torch.cumsum(v, dim=0)], dim=0)
    return cs[stop] - cs[start]


def segment_mean(values: torch.Tensor, start: torch.Tensor,
                 stop: torch.Tensor) -> torch.Tensor:
    counts = (stop - start).to(torch.float64)
    s = segment_sum(values, start, stop)
    if s.dim() > 1:
        counts = counts.unsqueeze(-1)
    return s / counts


def segment_max(values: torch.Tensor, atom_residue: torch.Tensor,
                n_residues: int, fill: float = 0.0) -> torch.Tensor:
    """Per-residue max of a ``(A,)`` tensor (``fill`` for all-masked rows)."""
    out = torch.full((n_residues,), float("-inf"), dtype=values.dtype,
                     device=values.device)
    out = out.scatter_reduce(0, atom_residue, values, reduce="amax",
                             include_self=True)
    return torch.where(torch.isfinite(out), out, torch.full_like(out, fill))


# ── residue reference points ─────────────────────────────────────

def gather_positions(positions: torch.Tensor, idx: torch.Tensor,
                     fallback: torch.Tensor) -> torch.Tensor:
    """``positions[idx]`` with rows where ``idx < 0`` taken from *fallback*."""
    safe = idx.clamp(min=0)
    got = positions[safe]
    return torch.where((idx >= 0).unsqueeze(-1), got, fallback)


def residue_centroids(positions: torch.Tensor, start: torch.Tensor,
                      stop: torch.Tensor) -> torch.Tensor:
    return segment_mean(positions, start, stop).to(positions.dtype)


def sidechain_centroids(
    positions: torch.Tensor,
    is_backbone: torch.Tensor,
    start: torch.Tensor,
    stop: torch.Tensor,
    fallback: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Side-chain centroid per residue and side-chain atom count.

    Residues with no side-chain atoms (Gly, truncated residues) take the
    *fallback* point (normally CA).
    """
    sc = (~is_backbone).to(torch.float64)
    n_sc = segment_sum(sc, start, stop)
    sums = segment_sum(positions.to(torch.float64) * sc.unsqueeze(-1), start, stop)
    has = n_sc > 0
    cent = sums / n_sc.clamp(min=1.0).unsqueeze(-1)
    cent = torch.where(has.unsqueeze(-1), cent, fallback.to(torch.float64))
    return cent.to(positions.dtype), n_sc


def pseudo_cb(n: torch.Tensor, ca: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
    """Ideal Cβ position from backbone N, CA, C."""
    b = ca - n
    cc = c - ca
    a = torch.cross(b, cc, dim=-1)
    return -0.58273431 * a + 0.56802827 * b - 0.54067466 * cc + ca


# ── chunked radius queries ───────────────────────────────────────

def row_blocks(n: int, chunk: int):
    for lo in range(0, n, chunk):
        yield lo, min(n, lo + chunk)


def radius_counts(
    queries: torch.Tensor,
    points: torch.Tensor,
    radii: Sequence[float],
    *,
    query_group: Optional[torch.Tensor] = None,
    point_group: Optional[torch.Tensor] = None,
    point_mask: Optional[torch.Tensor] = None,
    exclude_self: bool = False,
    chunk: int = 1024,
) -> torch.Tensor:
    """Count points within each radius of each query.

    Parameters
    ----------
    queries : (Q, 3)
    points : (P, 3)
    radii : sequence of float
        Cutoffs (Å), inclusive.
    query_group, point_group : (Q,), (P,) long, optional
        Points sharing the query's group are excluded (e.g. own residue).
    point_mask : (P,) bool, optional
        Only these points are counted.
    exclude_self : bool
        Exclude the point at the same index as the query
        (``queries is points``).

    Returns
    -------
    (Q, len(radii)) float32 counts.
    """
    Q = queries.shape[0]
    r = torch.as_tensor(list(radii), dtype=queries.dtype, device=queries.device)
    out = torch.zeros(Q, len(r), dtype=torch.float32, device=queries.device)
    for lo, hi in row_blocks(Q, chunk):
        d = torch.cdist(queries[lo:hi], points)          # (q, P)
        keep = torch.ones_like(d, dtype=torch.bool)
        if query_group is not None and point_group is not None:
            keep &= query_group[lo:hi].unsqueeze(1) != point_group.unsqueeze(0)
        if point_mask is not None:
            keep &= point_mask.unsqueeze(0)
        if exclude_self:
            rows = torch.arange(hi - lo, device=d.device)
            keep[rows, rows + lo] = False
        for k in range(len(r)):
            out[lo:hi, k] = ((d <= r[k]) & keep).sum(dim=1).to(torch.float32)
    return out


def radius_weighted_sums(
    queries: torch.Tensor,
    points: torch.Tensor,
    weights: torch.Tensor,
    radius: float,
    *,
    min_distance: float = 0.0,
    inverse_distance: bool = False,
    query_group: Optional[torch.Tensor] = None,
    point_group: Optional[torch.Tensor] = None,
    chunk: int = 1024,
) -> torch.Tensor:
    """``Σ_j w_j`` (or ``Σ_j w_j / max(d_ij, min_distance)``) within *radius*."""
    Q = queries.shape[0]
    out = torch.zeros(Q, dtype=torch.float64, device=queries.device)
    w = weights.to(torch.float64)
    for lo, hi in row_blocks(Q, chunk):
        d = torch.cdist(queries[lo:hi], points).to(torch.float64)
        keep = d <= radius
        if query_group is not None and point_group is not None:
            keep &= query_group[lo:hi].unsqueeze(1) != point_group.unsqueeze(0)
        contrib = w.unsqueeze(0).expand_as(d)
        if inverse_distance:
            contrib = contrib / d.clamp(min=max(min_distance, 1e-6))
        out[lo:hi] = torch.where(keep, contrib, torch.zeros_like(contrib)).sum(dim=1)
    return out


def radius_unit_vector_sums(
    queries: torch.Tensor,
    points: torch.Tensor,
    radius: float,
    *,
    query_group: Optional[torch.Tensor] = None,
    point_group: Optional[torch.Tensor] = None,
    chunk: int = 1024,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Sum of unit vectors from each query to its neighbours, and the count."""
    Q = queries.shape[0]
    vec = torch.zeros(Q, 3, dtype=torch.float64, device=queries.device)
    cnt = torch.zeros(Q, dtype=torch.float64, device=queries.device)
    p64 = points.to(torch.float64)
    for lo, hi in row_blocks(Q, chunk):
        q64 = queries[lo:hi].to(torch.float64)
        d = torch.cdist(q64, p64)
        keep = (d <= radius) & (d > 1e-6)
        if query_group is not None and point_group is not None:
            keep &= query_group[lo:hi].unsqueeze(1) != point_group.unsqueeze(0)
        # Σ_j (p_j − q) / d_ij  =  W·P − q·ΣW
        w = torch.where(keep, 1.0 / d.clamp(min=1e-6), torch.zeros_like(d))
        vec[lo:hi] = w @ p64 - q64 * w.sum(dim=1, keepdim=True)
        cnt[lo:hi] = keep.sum(dim=1).to(torch.float64)
    return vec, cnt


def nearest_distance(queries: torch.Tensor, points: torch.Tensor,
                     chunk: int = 1024) -> torch.Tensor:
    """Distance from each query to its closest point (float64)."""
    Q = queries.shape[0]
    out = torch.empty(Q, dtype=torch.float64, device=queries.device)
    for lo, hi in row_blocks(Q, chunk):
        d = torch.cdist(queries[lo:hi], points)
        out[lo:hi] = d.min(dim=1).values.to(torch.float64)
    return out


# ── internal coordinates ─────────────────────────────────────────

def bond_angle(a: torch.Tensor, b: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
    """Angle a-b-c in radians, row-wise."""
    u = a - b
    v = c - b
    cos = (u * v).sum(-1) / (u.norm(dim=-1) * v.norm(dim=-1)).clamp(min=1e-8)
    return torch.arccos(cos.clamp(-1.0, 1.0))


def dihedral(p0: torch.Tensor, p1: torch.Tensor, p2: torch.Tensor,
             p3: torch.Tensor) -> torch.Tensor:
    """Signed torsion p0-p1-p2-p3 in radians, row-wise."""
    b0 = p0 - p1
    b1 = p2 - p1
    b2 = p3 - p2
    b1n = b1 / b1.norm(dim=-1, keepdim=True).clamp(min=1e-8)
    v = b0 - (b0 * b1n).sum(-1, keepdim=True) * b1n
    w = b2 - (b2 * b1n).sum(-1, keepdim=True) * b1n
    x = (v * w).sum(-1)
    y = (torch.cross(b1n, v, dim=-1) * w).sum(-1)
    return torch.atan2(y, x)


def same_chain_offset(res_chain: torch.Tensor, offset: int) -> torch.Tensor:
    """Bool mask: residue ``i + offset`` exists and shares ``i``'s chain."""
    R = res_chain.shape[0]
    idx = torch.arange(R, device=res_chain.device) + offset
    valid = (idx >= 0) & (idx < R)
    shifted = res_chain[idx.clamp(0, R - 1)]
    return valid & (shifted == res_chain)

