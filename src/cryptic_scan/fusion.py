"""Feature fusion stage — the 136-slot per-residue descriptor.

One pass builds the shared intermediates (residue reference points,
per-atom exposure, residue-residue distance blocks, backbone frames) and
derives every block of the fused vector from them.  The glycan mask folds
into exposure: ``effective = raw · (1 − mask)``.

Slot contract
-------------
======== ====================== =============================================
Slots    Block                  Content
======== ====================== =============================================
0–7      exposure               effective SASA (nm²), effective rel. SASA,
                                raw rel. SASA, mask weight, HSE-up, HSE-down,
                                HSE-up fraction, residue depth (nm)
8–11     burial                 centroid distance / Rg, 1 − rel. SASA,
                                log1p CA neighbours (10 Å), log1p atoms (8 Å)
12–15    curvature              CA virtual angle / π, virtual torsion sin,
                                cos, circumradius curvature (1/Å)
16–23    secondary structure    one-hot over ``H B E G I T S -``
24–31    contacts               log1p CA contacts at 4, 6, 8, 10, 12, 14,
                                16, 20 Å
32–43    dihedrals              φ, ψ, ω, χ1, χ2 as (sin, cos); has-χ1, has-χ2
44–63    residue type           one-hot over ``ACDEFGHIKLMNPQRSTVWY``
64–79    hydrophobicity/charge  KD / 4.5, Eisenberg, KD window mean, helical
                                hydrophobic moment, net charge, |charge|,
                                local potential, charge window mean; flags
                                acidic, basic, polar, aromatic, aliphatic,
                                small, Pro, Gly
80–87    side chain             atom count, side-chain extent, centroid
                                offset, residue Rg, vdW volume (100 Å³),
                                polar-atom fraction, sulfur count, outward
                                orientation
88–103   neighbourhood          means of 8 descriptors over CA neighbours
                                at 8 Å (88–95) and 12 Å (96–103)
104–111  sequence position      relative position, log1p N-/C-terminal
                                distance, log chain length, N-/C-terminus
                                flags, sequon flag, tanh(d_sequon / 30 Å)
112–119  radial shells          log1p atom counts in 2 Å shells to 16 Å
120–135  providers              :class:`~cryptic_scan.providers.ProviderStack`
======== ====================== =============================================

Undefined internal coordinates (chain termini, missing atoms) encode as
``sin = cos = 0`` for dihedrals and as a straight chain (angle π, torsion
0, curvature 0) for the CA virtual geometry.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Tuple

import torch
import torch.nn.functional as F

from .arena import ELEMENT_CODES, StructureTensors
from .batch import AA_TO_IDX, AMINO_ACIDS, SS_STATES
from .errors import DeviceError, IntegrityError
from .geometry import (
    bond_angle,
    dihedral,
    gather_positions,
    nearest_distance,
    pseudo_cb,
    radius_counts,
    radius_weighted_sums,
    residue_centroids,
    row_blocks,
    same_chain_offset,
    segment_max,
    segment_mean,
    segment_sum,
    sidechain_centroids,
)
from .masking import sequon_mask
from .providers import PROVIDER_SLOTS, ProviderContext, ProviderStack
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "FUSED_DIM",
    "FUSED_SLOTS",
    "SLOT_EFFECTIVE_REL_SASA",
    "SLOT_RAW_REL_SASA",
    "SLOT_MASK",
    "SLOT_DEPTH",
    "CONTACT_RADII",
    "SHELL_EDGES",
    "atom_exposure",
    "residue_exposure",
    "compute_fused",
]

FUSED_DIM: int = 136

FUSED_SLOTS: Dict[str, Tuple[int, int]] = {
    "exposure": (0, 8),
    "burial": (8, 12),
    "curvature": (12, 16),
    "secondary_structure": (16, 24),
    "contacts": (24, 32),
    "dihedrals": (32, 44),
    "residue_type": (44, 64),
    "hydrophobicity_charge": (64, 80),
    "side_chain": (80, 88),
    "neighbourhood": (88, 104),
    "sequence_position": (104, 112),
    "radial_shells": (112, 120),
    "providers": PROVIDER_SLOTS,
}

SLOT_EFFECTIVE_REL_SASA = 1
SLOT_RAW_REL_SASA = 2
SLOT_MASK = 3
SLOT_DEPTH = 7

CONTACT_RADII = (4.0, 6.0, 8.0, 10.0, 12.0, 14.0, 16.0, 20.0)
SHELL_EDGES = (2.0, 4.0, 6.0, 8.0, 10.0, 12.0, 14.0, 16.0)

# Kyte & Doolittle (1982)
_KYTE_DOOLITTLE = {
    "A": 1.8, "C": 2.5, "D": -3.5, "E": -3.5, "F": 2.8, "G": -0.4,
    "H": -3.2, "I": 4.5, "K": -3.9, "L": 3.8, "M": 1.9, "N": -3.5,
    "P": -1.6, "Q": -3.5, "R": -4.5, "S": -0.8, "T": -0.7, "V": 4.2,
    "W": -0.9, "Y": -1.3,
}

# Eisenberg consensus scale (1984)
_EISENBERG = {
    "A": 0.62, "C": 0.29, "D": -0.90, "E": -0.74, "F": 1.19, "G": 0.48,
    "H": -0.40, "I": 1.38, "K": -1.50, "L": 1.06, "M": 0.64, "N": -0.78,
    "P": 0.12, "Q": -0.85, "R": -2.53, "S": -0.18, "T": -0.05, "V": 1.08,
    "W": 0.81, "Y": 0.26,
}

_FLAG_SETS = ("DE", "KRH", "STNQCY", "FWYH", "AVLIM", "AGCSTDNP", "P", "G")

_MOMENT_ANGLE = math.radians(100.0)


def _residue_table(values: Dict[str, float], device) -> torch.Tensor:
    """Per-type lookup of length 21; unknown residues read 0."""
    table = torch.zeros(len(AMINO_ACIDS) + 1, dtype=torch.float64, device=device)
    for aa, v in values.items():
        table[AA_TO_IDX[aa]] = v
    return table


def _shift(x: torch.Tensor, offset: int) -> torch.Tensor:
    """``x[i + offset]`` with indices clamped to the valid range."""
    R = x.shape[0]
    idx = (torch.arange(R, device=x.device) + offset).clamp(0, R - 1)
    return x[idx]


def _window_mean(values: torch.Tensor, res_chain: torch.Tensor,
                 half: int) -> torch.Tensor:
    total = values.clone()
    count = torch.ones_like(values)
    for off in range(1, half + 1):
        for k in (-off, off):
            ok = same_chain_offset(res_chain, k).to(values.dtype)
            total = total + _shift(values, k) * ok
            count = count + ok
    return total / count


def _hydrophobic_moment(h: torch.Tensor, res_chain: torch.Tensor,
                        half: int) -> torch.Tensor:
    re = h.clone()
    im = torch.zeros_like(h)
    count = torch.ones_like(h)
    for k in range(-half, half + 1):
        if k == 0:
            continue
        ok = same_chain_offset(res_chain, k).to(h.dtype)
        hk = _shift(h, k) * ok
        re = re + hk * math.cos(k * _MOMENT_ANGLE)
        im = im + hk * math.sin(k * _MOMENT_ANGLE)
        count = count + ok
    return torch.sqrt(re ** 2 + im ** 2) / count


def _unit(v: torch.Tensor) -> torch.Tensor:
    return v / v.norm(dim=-1, keepdim=True).clamp(min=1e-8)


# ═══════════════════════════════════════════════════════════════════
# Exposure
# ═══════════════════════════════════════════════════════════════════

def atom_exposure(
    positions: torch.Tensor,
    thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
) -> torch.Tensor:
    """Per-atom exposed fraction from neighbour crowding, float64 ``(A,)``.

    ``1 − n_neighbours(burial_radius) / burial_saturation``, clipped to
    ``[0, 1]``.
    """
    counts = radius_counts(
        positions, positions, [thresholds["fusion.burial_radius"]],
        exclude_self=True, chunk=thresholds.count("fusion.chunk_size"),
    )[:, 0].to(torch.float64)
    return (1.0 - counts / thresholds["fusion.burial_saturation"]).clamp(0.0, 1.0)


def residue_exposure(
    t: StructureTensors,
    positions: Optional[torch.Tensor] = None,
    thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Residue SASA estimate (Å²), relative SASA, and per-atom exposure.

    *positions* defaults to the reference coordinates; pass an ensemble
    frame to evaluate an alternative conformation of the same atoms.
    """
    pos = t.positions if positions is None else positions
    exposure = atom_exposure(pos, thresholds)
    probe = thresholds["fusion.probe_radius"]
    area = 4.0 * math.pi * (t.radii.to(torch.float64) + probe) ** 2
    sasa = segment_sum(area * exposure, t.start, t.stop)
    full = segment_sum(area, t.start, t.stop)
    return sasa, sasa / full.clamp(min=1e-12), exposure


# ═══════════════════════════════════════════════════════════════════
# Shared residue-pair passes
# ═══════════════════════════════════════════════════════════════════

def _half_sphere_exposure(ca, direction, radius, chunk):
    R = ca.shape[0]
    up = torch.zeros(R, dtype=torch.float64, device=ca.device)
    down = torch.zeros_like(up)
    for lo, hi in row_blocks(R, chunk):
        d = torch.cdist(ca[lo:hi], ca)
        near = d <= radius
        rows = torch.arange(hi - lo, device=ca.device)
        near[rows, rows + lo] = False
        u = direction[lo:hi]
        side = u @ ca.t() - (u * ca[lo:hi]).sum(-1, keepdim=True)
        up[lo:hi] = (near & (side > 0)).sum(dim=1).to(torch.float64)
        down[lo:hi] = (near & (side <= 0)).sum(dim=1).to(torch.float64)
    return up, down


def _neighbour_means(ca, feats, radii, chunk):
    """Mean of *feats* over CA neighbours (self excluded) for each radius."""
    R = ca.shape[0]
    out = []
    for radius in radii:
        acc = torch.zeros_like(feats)
        for lo, hi in row_blocks(R, chunk):
            d = torch.cdist(ca[lo:hi], ca)
            adj = d <= radius
            rows = torch.arange(hi - lo, device=ca.device)
            adj[rows, rows + lo] = False
            w = adj.to(feats.dtype)
            cnt = w.sum(dim=1, keepdim=True).clamp(min=1.0)
            acc[lo:hi] = (w @ feats) / cnt
        out.append(acc)
    return torch.cat(out, dim=1)


def _chain_positions(res_chain: torch.Tensor):
    """0-based index within the chain and the chain length, per residue."""
    n_chains = int(res_chain.max()) + 1
    onehot = F.one_hot(res_chain, n_chains)
    rank = onehot.cumsum(dim=0).gather(1, res_chain.unsqueeze(1)).squeeze(1) - 1
    length = torch.bincount(res_chain, minlength=n_chains)[res_chain]
    return rank.to(torch.float64), length.to(torch.float64)


# ═══════════════════════════════════════════════════════════════════
# compute_fused
# ═══════════════════════════════════════════════════════════════════

def compute_fused(
    t: StructureTensors,
    mask: torch.Tensor,
    providers: Optional[ProviderStack] = None,
    thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
    context: Optional[ProviderContext] = None,
) -> torch.Tensor:
    """Compute the ``(R, 136)`` float32 fused descriptor buffer.

    Parameters
    ----------
    t : StructureTensors
        Device-resident structure.
    mask : (R,) tensor
        Glycan occlusion weights from :func:`~cryptic_scan.masking.compute_mask`.
    providers : ProviderStack, optional
        Fills slots 120–135; defaults to :meth:`ProviderStack.default`.
    context : ProviderContext, optional
        Shared provider inputs; pass one to reuse its GNM modes later.

    Raises
    ------
    IntegrityError
        If *mask* does not have one entry per residue.
    DeviceError
        If any descriptor is non-finite.
    """
    sid = t.structure_id
    R = t.n_residues
    dev = t.device
    f64 = torch.float64
    th = thresholds
    chunk = th.count("fusion.chunk_size")
    if mask.shape != (R,):
        raise IntegrityError(f"mask shape {tuple(mask.shape)} != ({R},)",
                             unit=sid, stage="fusion")
    providers = providers if providers is not None else ProviderStack.default()
    context = context if context is not None else ProviderContext(t, thresholds)

    # ── shared intermediates ────────────────────────────────────
    pos = t.positions
    cent = residue_centroids(pos, t.start, t.stop)
    ca = gather_positions(pos, t.idx_ca, cent)
    n = gather_positions(pos, t.idx_n, ca)
    c = gather_positions(pos, t.idx_c, ca)
    cb = gather_positions(pos, t.idx_cb, pseudo_cb(n, ca, c))
    sc, n_sc = sidechain_centroids(pos, t.is_backbone, t.start, t.stop, ca)
    pos64 = pos.to(f64)
    ca64 = ca.to(f64)
    com = pos64.mean(dim=0)
    rg_all = torch.sqrt(((pos64 - com) ** 2).sum(-1).mean()).clamp(min=1e-8)
    m = mask.to(f64)

    sasa, rel, exposure = residue_exposure(t, thresholds=th)

    # ── exposure 0–7 ────────────────────────────────────────────
    hse_up, hse_down = _half_sphere_exposure(
        ca, _unit(cb - ca), th["fusion.hse_radius"], chunk)
    hse_total = (hse_up + hse_down).clamp(min=1.0)
    surface = exposure >= min(th["fusion.surface_exposure"], float(exposure.max()))
    depth = nearest_distance(cent, pos[surface], chunk)
    block_exposure = torch.stack([
        sasa * (1.0 - m) / 100.0,
        rel * (1.0 - m),
        rel,
        m,
        hse_up / th["fusion.hse_scale"],
        hse_down / th["fusion.hse_scale"],
        hse_up / hse_total,
        depth / 10.0,
    ], dim=1)

    # ── burial 8–11 ─────────────────────────────────────────────
    ca_nb = radius_counts(ca, ca, [th["fusion.ca_neighbor_radius"]],
                          exclude_self=True, chunk=chunk)[:, 0].to(f64)
    atom_nb = radius_counts(cent, pos, [th["fusion.atom_density_radius"]],
                            chunk=chunk)[:, 0].to(f64)
    block_burial = torch.stack([
        (cent.to(f64) - com).norm(dim=-1) / rg_all,
        1.0 - rel,
        torch.log1p(ca_nb),
        torch.log1p(atom_nb),
    ], dim=1)

    # ── curvature 12–15 ─────────────────────────────────────────
    prev_ok = same_chain_offset(t.res_chain, -1)
    next_ok = same_chain_offset(t.res_chain, 1)
    next2_ok = same_chain_offset(t.res_chain, 2)
    ca_prev, ca_next, ca_next2 = _shift(ca64, -1), _shift(ca64, 1), _shift(ca64, 2)
    angle_ok = prev_ok & next_ok
    angle = torch.where(angle_ok, bond_angle(ca_prev, ca64, ca_next),
                        torch.full((R,), math.pi, dtype=f64, device=dev))
    tors_ok = prev_ok & next_ok & next2_ok
    tors = dihedral(ca_prev, ca64, ca_next, ca_next2)
    chord = (ca_prev - ca_next).norm(dim=-1).clamp(min=1e-8)
    curvature = torch.where(angle_ok, 2.0 * torch.sin(angle) / chord,
                            torch.zeros_like(angle))
    block_curvature = torch.stack([
        angle / math.pi,
        torch.where(tors_ok, torch.sin(tors), torch.zeros_like(tors)),
        torch.where(tors_ok, torch.cos(tors), torch.ones_like(tors)),
        curvature,
    ], dim=1)

    # ── secondary structure 16–23 ───────────────────────────────
    block_ss = F.one_hot(t.ss, len(SS_STATES)).to(f64)

    # ── contacts 24–31 ──────────────────────────────────────────
    block_contacts = torch.log1p(
        radius_counts(ca, ca, CONTACT_RADII, exclude_self=True, chunk=chunk).to(f64))

    # ── dihedrals 32–43 ─────────────────────────────────────────
    has = {k: getattr(t, f"idx_{k}") >= 0 for k in ("n", "ca", "c", "cb", "g", "d")}
    pn, pca, pc = n.to(f64), ca64, c.to(f64)
    pcb = gather_positions(pos, t.idx_cb, ca).to(f64)
    pg = gather_positions(pos, t.idx_g, ca).to(f64)
    pd = gather_positions(pos, t.idx_d, ca).to(f64)
    bb = has["n"] & has["ca"] & has["c"]
    phi_ok = bb & prev_ok & _shift(has["c"], -1)
    psi_ok = bb & next_ok & _shift(has["n"], 1)
    omega_ok = bb & next_ok & _shift(has["n"] & has["ca"], 1)
    chi1_ok = has["n"] & has["ca"] & has["cb"] & has["g"]
    chi2_ok = chi1_ok & has["d"]
    torsions = [
        (dihedral(_shift(pc, -1), pn, pca, pc), phi_ok),
        (dihedral(pn, pca, pc, _shift(pn, 1)), psi_ok),
        (dihedral(pca, pc, _shift(pn, 1), _shift(pca, 1)), omega_ok),
        (dihedral(pn, pca, pcb, pg), chi1_ok),
        (dihedral(pca, pcb, pg, pd), chi2_ok),
    ]
    cols = []
    for ang, ok in torsions:
        okf = ok.to(f64)
        cols += [torch.sin(ang) * okf, torch.cos(ang) * okf]
    cols += [chi1_ok.to(f64), chi2_ok.to(f64)]
    block_dihedrals = torch.stack(cols, dim=1)

    # ── residue type 44–63 ──────────────────────────────────────
    block_type = F.one_hot(t.res_type, len(AMINO_ACIDS) + 1)[:, :len(AMINO_ACIDS)].to(f64)

    # ── hydrophobicity / charge 64–79 ───────────────────────────
    kd = _residue_table(_KYTE_DOOLITTLE, dev)[t.res_type]
    eis = _residue_table(_EISENBERG, dev)[t.res_type]
    q = t.charges.to(f64)
    net = segment_sum(q, t.start, t.stop)
    potential = radius_weighted_sums(
        cent, pos, t.charges, th["fusion.potential_radius"],
        min_distance=th["fusion.potential_min_distance"], inverse_distance=True,
        query_group=torch.arange(R, device=dev), point_group=t.atom_residue,
        chunk=chunk)
    half = th.count("fusion.window_half_width")
    flags = [_residue_table({aa: 1.0 for aa in letters}, dev)[t.res_type]
             for letters in _FLAG_SETS]
    block_chem = torch.stack([
        kd / 4.5,
        eis,
        _window_mean(kd / 4.5, t.res_chain, half),
        _hydrophobic_moment(eis, t.res_chain, th.count("fusion.moment_half_width")),
        net,
        segment_sum(q.abs(), t.start, t.stop),
        potential,
        _window_mean(net, t.res_chain, half),
    ] + flags, dim=1)

    # ── side chain 80–87 ────────────────────────────────────────
    own_ca = ca64[t.atom_residue]
    to_ca = (pos64 - own_ca).norm(dim=-1)
    extent = segment_max(torch.where(t.is_backbone, torch.zeros_like(to_ca), to_ca),
                         t.atom_residue, R)
    cent64 = cent.to(f64)
    rg_res = torch.sqrt(segment_mean(((pos64 - cent64[t.atom_residue]) ** 2).sum(-1),
                                     t.start, t.stop))
    volume = segment_sum(4.0 / 3.0 * math.pi * t.radii.to(f64) ** 3,
                         t.start, t.stop) / 100.0
    polar = ((t.element == ELEMENT_CODES["N"]) | (t.element == ELEMENT_CODES["O"]))
    sulfur = (t.element == ELEMENT_CODES["S"]).to(f64)
    offset = sc.to(f64) - ca64
    outward = (_unit(offset) * _unit(ca64 - com)).sum(-1) * (offset.norm(dim=-1) > 1e-6)
    block_sidechain = torch.stack([
        (t.stop - t.start).to(f64),
        extent,
        offset.norm(dim=-1),
        rg_res,
        volume,
        segment_mean(polar.to(f64), t.start, t.stop),
        segment_sum(sulfur, t.start, t.stop),
        outward,
    ], dim=1)

    # ── neighbourhood 88–103 ────────────────────────────────────
    nb_feats = torch.stack([
        rel * (1.0 - m), 1.0 - rel, kd / 4.5, net, flags[3],
        block_ss[:, SS_STATES.index("H")], block_ss[:, SS_STATES.index("E")], n_sc,
    ], dim=1)
    block_neighbourhood = _neighbour_means(
        ca, nb_feats,
        (th["fusion.neighbor_radius_near"], th["fusion.neighbor_radius_far"]), chunk)

    # ── sequence position 104–111 ───────────────────────────────
    rank, length = _chain_positions(t.res_chain)
    sequons = sequon_mask(t.res_type, t.res_chain)
    if bool(sequons.any()):
        d_seq = nearest_distance(ca, ca[sequons], chunk)
        seq_far = torch.tanh(d_seq / th["fusion.sequon_distance_scale"])
    else:
        seq_far = torch.ones(R, dtype=f64, device=dev)
    block_position = torch.stack([
        rank / (length - 1.0).clamp(min=1.0),
        torch.log1p(rank),
        torch.log1p(length - 1.0 - rank),
        torch.log(length),
        (rank == 0).to(f64),
        (rank == length - 1.0).to(f64),
        sequons.to(f64),
        seq_far,
    ], dim=1)

    # ── radial shells 112–119 ───────────────────────────────────
    cum = radius_counts(cent, pos, SHELL_EDGES, chunk=chunk).to(f64)
    shells = torch.cat([cum[:, :1], cum[:, 1:] - cum[:, :-1]], dim=1)
    block_shells = torch.log1p(shells)

    # ── providers 120–135 ───────────────────────────────────────
    block_providers = providers.supply(context).to(f64)

    fused = torch.cat([
        block_exposure, block_burial, block_curvature, block_ss,
        block_contacts, block_dihedrals, block_type, block_chem,
        block_sidechain, block_neighbourhood, block_position, block_shells,
        block_providers,
    ], dim=1)
    if fused.shape != (R, FUSED_DIM):
        raise IntegrityError(f"fused shape {tuple(fused.shape)} != ({R}, {FUSED_DIM})",
                             unit=sid, stage="fusion")
    if not bool(torch.isfinite(fused).all()):
        bad = torch.nonzero(~torch.isfinite(fused).all(dim=0)).flatten()[:5].tolist()
        raise DeviceError(f"non-finite fused descriptors in slots {bad}",
                          unit=sid, stage="fusion")
    logger.debug(f"{sid}: fused {R}×{FUSED_DIM} descriptors")
    return fused.to(torch.float32)
