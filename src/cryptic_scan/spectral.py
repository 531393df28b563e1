"""Residue contact graph and Gaussian-network-model spectra on the device.

The contact graph connects residues whose Cα atoms lie within a cutoff
(7.3 Å, the standard GNM value).  Its Kirchhoff matrix Γ (the graph
Laplacian) is diagonalised once per structure; the eigenpairs feed the
elastic-network and thermal-mode providers and the centrality score.

All quantities are in reduced units (kB = ℏ = 1).  Mode frequencies are
ω_k = √λ_k and x_k = ω_k / T.

Observables
-----------
gnm_msf                       ⟨ΔR_i²⟩ ∝ Σ_k v_{k,i}² / λ_k
per_residue_entropy           s_i = Σ_k v_{k,i}² · [x/(eˣ−1) − ln(1−e⁻ˣ)]
per_residue_heat_capacity     c_i = Σ_k v_{k,i}² · x²eˣ/(eˣ−1)²
per_residue_free_energy       f_i = Σ_k v_{k,i}² · T ln(1−e⁻ˣ)
low_mode_ipr                  Σ_{k ≤ n} v_{k,i}⁴  (localisation in slow modes)

Eigenvectors are sign-fixed so that each mode's largest-magnitude
component is positive; repeated runs give identical features.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch
from torch_geometric.data import Data
from torch_geometric.utils import degree, get_laplacian, to_dense_adj

__all__ = [
    "ZERO_MODE_TOL",
    "GNMModes",
    "contact_graph",
    "kirchhoff_matrix",
    "gnm_modes",
    "gnm_msf",
    "per_residue_entropy",
    "per_residue_heat_capacity",
    "per_residue_free_energy",
    "low_mode_ipr",
    "pagerank",
]

ZERO_MODE_TOL: float = 1e-8


# ── contact graph ────────────────────────────────────────────────

def contact_graph(ca: torch.Tensor, cutoff: float) -> Data:
    """Undirected residue contact graph as a PyG ``Data`` object.

    ``edge_index`` holds both directions; ``edge_attr`` the Cα distance.
    """
    R = ca.shape[0]
    d = torch.cdist(ca.to(torch.float64), ca.to(torch.float64))
    adj = (d <= cutoff) & ~torch.eye(R, dtype=torch.bool, device=ca.device)
    edge_index = torch.nonzero(adj).t().contiguous()
    edge_attr = d[edge_index[0], edge_index[1]].unsqueeze(-1)
    return Data(edge_index=edge_index, edge_attr=edge_attr, pos=ca, num_nodes=R)


def kirchhoff_matrix(graph: Data) -> torch.Tensor:
    """Dense float64 Kirchhoff (unweighted Laplacian) matrix Γ."""
    R = graph.num_nodes
    ei, ew = get_laplacian(graph.edge_index, num_nodes=R)
    return to_dense_adj(ei, edge_attr=ew.to(torch.float64), max_num_nodes=R)[0]


# ── modes ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GNMModes:
    """Eigen-decomposition of Γ, ascending, float64.

    ``nonzero`` selects the internal (non-rigid-body) modes; there is one
    zero mode per connected component.
    """
    eigenvalues: torch.Tensor   # (R,)
    eigenvectors: torch.Tensor  # (R, R), column k is mode k
    degree: torch.Tensor        # (R,)

    @property
    def nonzero(self) -> torch.Tensor:
        return self.eigenvalues > ZERO_MODE_TOL

    @property
    def internal_values(self) -> torch.Tensor:
        return self.eigenvalues[self.nonzero]

    @property
    def internal_vectors(self) -> torch.Tensor:
        return self.eigenvectors[:, self.nonzero]

    @property
    def n_internal(self) -> int:
        return int(self.nonzero.sum())


def gnm_modes(graph: Data) -> GNMModes:
    """Diagonalise the Kirchhoff matrix of *graph*."""
    gamma = kirchhoff_matrix(graph)
    evals, evecs = torch.linalg.eigh(gamma)
    # Deterministic sign: largest-|.| entry of every mode positive
    pivot = evecs.abs().argmax(dim=0)
    signs = torch.sign(evecs[pivot, torch.arange(evecs.shape[1], device=evecs.device)])
    signs = torch.where(signs == 0, torch.ones_like(signs), signs)
    evecs = evecs * signs.unsqueeze(0)
    deg = degree(graph.edge_index[0], num_nodes=graph.num_nodes, dtype=torch.float64)
    return GNMModes(eigenvalues=evals.clamp(min=0.0), eigenvectors=evecs, degree=deg)


def gnm_msf(modes: GNMModes, n_modes: Optional[int] = None) -> torch.Tensor:
    """Mean-square fluctuation per residue from the slowest *n_modes*.

    ``n_modes=None`` uses every internal mode.
    """
    lam = modes.internal_values
    vec = modes.internal_vectors
    if n_modes is not None:
        lam = lam[:n_modes]
        vec = vec[:, :n_modes]
    if lam.numel() == 0:
        return torch.zeros(vec.shape[0], dtype=torch.float64, device=vec.device)
    return (vec ** 2 / lam.unsqueeze(0)).sum(dim=1)


# ── thermodynamics per residue ───────────────────────────────────

def _reduced_frequencies(lam: torch.Tensor, T: float) -> torch.Tensor:
    return (torch.sqrt(lam) / T).clamp(1e-6, 30.0)


def per_residue_entropy(modes: GNMModes, T: float = 1.0) -> torch.Tensor:
    """Vibrational entropy decomposed onto residues by mode participation."""
    x = _reduced_frequencies(modes.internal_values, T)
    s_k = x / torch.expm1(x) - torch.log(-torch.expm1(-x))
    return (modes.internal_vectors ** 2) @ s_k


def per_residue_heat_capacity(modes: GNMModes, T: float = 1.0) -> torch.Tensor:
    x = _reduced_frequencies(modes.internal_values, T)
    c_k = x ** 2 * torch.exp(x) / torch.expm1(x) ** 2
    return (modes.internal_vectors ** 2) @ c_k


def per_residue_free_energy(modes: GNMModes, T: float = 1.0) -> torch.Tensor:
    x = _reduced_frequencies(modes.internal_values, T)
    f_k = T * torch.log(-torch.expm1(-x))
    return (modes.internal_vectors ** 2) @ f_k


def low_mode_ipr(modes: GNMModes, n_modes: int) -> torch.Tensor:
    """Per-residue fourth-power participation in the slowest modes."""
    vec = modes.internal_vectors[:, :n_modes]
    return (vec ** 4).sum(dim=1)


# ── centrality ───────────────────────────────────────────────────

def pagerank(graph: Data, damping: float = 0.85,
             iterations: int = 100) -> torch.Tensor:
    """PageRank on the contact graph by a fixed number of power steps.

    Isolated residues redistribute uniformly.  Returns float64 scores
    summing to 1.
    """
    R = graph.num_nodes
    device = graph.edge_index.device
    A = to_dense_adj(graph.edge_index, max_num_nodes=R)[0].to(torch.float64)
    out_deg = A.sum(dim=1)
    dangling = out_deg == 0
    P = A / out_deg.clamp(min=1.0).unsqueeze(1)
    rank = torch.full((R,), 1.0 / R, dtype=torch.float64, device=device)
    teleport = (1.0 - damping) / R
    for _ in range(iterations):
        spill = rank[dangling].sum() / R
        rank = teleport + damping * (rank @ P + spill)
    return rank / rank.sum()
