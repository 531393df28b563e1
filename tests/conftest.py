"""Synthetic helical structures shared by the test modules.

Every chain is an idealised α-helix (100° and 1.5 Å rise per residue,
Cα on a 2.3 Å radius) with heavy-atom side chains pointing outward.
Chains are laid side by side 30 Å apart along x.  Residue atom sets use
real PDB names, so Cβ/γ/δ lookups and element codes behave as they do
for deposited structures.
"""

import math
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pytest

from cryptic_scan.batch import ingest, vdw_radius


SIDE_CHAINS: Dict[str, Tuple[str, ...]] = {
    "A": ("CB",),
    "C": ("CB", "SG"),
    "D": ("CB", "CG", "OD1", "OD2"),
    "E": ("CB", "CG", "CD", "OE1", "OE2"),
    "F": ("CB", "CG", "CD1", "CD2", "CE1", "CE2", "CZ"),
    "G": (),
    "H": ("CB", "CG", "ND1", "CD2", "CE1", "NE2"),
    "I": ("CB", "CG1", "CG2", "CD1"),
    "K": ("CB", "CG", "CD", "CE", "NZ"),
    "L": ("CB", "CG", "CD1", "CD2"),
    "M": ("CB", "CG", "SD", "CE"),
    "N": ("CB", "CG", "OD1", "ND2"),
    "P": ("CB", "CG", "CD"),
    "Q": ("CB", "CG", "CD", "OE1", "NE2"),
    "R": ("CB", "CG", "CD", "NE", "CZ", "NH1", "NH2"),
    "S": ("CB", "OG"),
    "T": ("CB", "OG1", "CG2"),
    "V": ("CB", "CG1", "CG2"),
    "W": ("CB", "CG", "CD1", "CD2", "NE1", "CE2", "CE3", "CZ2", "CZ3", "CH2"),
    "Y": ("CB", "CG", "CD1", "CD2", "CE1", "CE2", "CZ", "OH"),
}

_CHARGES = {
    "N": -0.30, "CA": 0.10, "C": 0.50, "O": -0.50,
    "OD1": -0.50, "OD2": -0.50, "OE1": -0.50, "OE2": -0.50,
    "NZ": 1.00, "NH1": 0.50, "NH2": 0.50,
}

# (radius Å, angle offset °, z offset Å) of the backbone atoms
_BACKBONE = (
    ("N", 1.6, -28.0, -0.5),
    ("CA", 2.3, 0.0, 0.0),
    ("C", 1.7, 28.0, 0.5),
    ("O", 2.0, 38.0, 1.6),
)

# filler swaps: side-chain atom change relative to L → residue
_SWAPS = {6: "W", 4: "Y", 3: "F", 2: "H", 1: "K",
          -1: "V", -2: "C", -3: "A", -4: "G"}

SEQUON_MOTIFS = ("NAS", "NVT", "NLS", "NET")


def atoms_for(sequence: str) -> int:
    return sum(4 + len(SIDE_CHAINS[aa]) for aa in sequence)


def _charge(aa: str, name: str) -> float:
    if name in ("OD1", "OD2") and aa != "D":
        return 0.0
    if name in ("OE1",) and aa != "E":
        return 0.0
    return _CHARGES.get(name, 0.0)


def build_raw(
    chains: Sequence[Tuple[str, str]],
    structure_id: str = "SYN1",
    ss: str = "H",
) -> dict:
    """Raw batch mapping for ``[(chain_id, sequence), ...]``."""
    positions: List[Tuple[float, float, float]] = []
    elements, names, atom_res, radii, charges = [], [], [], [], []
    res_types, res_chains, res_ss = [], [], []
    r = 0
    for k, (chain_id, seq) in enumerate(chains):
        x0 = 30.0 * k
        for i, aa in enumerate(seq):
            theta = math.radians(100.0 * i)
            z = 1.5 * i
            atoms = [(nm, rad, math.radians(off), z + dz)
                     for nm, rad, off, dz in _BACKBONE]
            for j, nm in enumerate(SIDE_CHAINS[aa]):
                atoms.append((nm, 2.3 + 1.5 * (j + 1),
                              math.radians(12.0 * (j % 2) - 6.0), z + 0.3 * j))
            for nm, rad, off, az in atoms:
                positions.append((x0 + rad * math.cos(theta + off),
                                  rad * math.sin(theta + off), az))
                element = nm[0]
                elements.append(element)
                names.append(nm)
                atom_res.append(r)
                radii.append(vdw_radius(element))
                charges.append(_charge(aa, nm))
            res_types.append(aa)
            res_chains.append(chain_id)
            res_ss.append(ss)
            r += 1
    return {
        "structure_id": structure_id,
        "atom_count": len(positions),
        "residue_count": r,
        "positions": np.asarray(positions, dtype=np.float64).ravel().tolist(),
        "elements": elements,
        "atom_names": names,
        "atom_residue_index": atom_res,
        "radii": radii,
        "charges": charges,
        "residue_types": res_types,
        "residue_chains": res_chains,
        "secondary_structure": res_ss,
    }


def build_batch(chains, structure_id: str = "SYN1", ss: str = "H"):
    if isinstance(chains, str):
        chains = [("A", chains)]
    return ingest(build_raw(chains, structure_id, ss))


def scenario_sequence(n_residues: int, n_atoms: int, n_sequons: int) -> str:
    """Single-chain sequence with exactly *n_sequons* N-X-S/T motifs and *n_atoms* atoms.

    Motifs are spread evenly; the filler is leucine, then individual
    filler residues are swapped until the atom count is met.  Asparagine
    occurs only as the first residue of a motif.
    """
    seq = ["L"] * n_residues
    stride = n_residues // n_sequons
    assert stride >= 4, "motifs too dense to stay separated"
    motif_pos = set()
    for m in range(n_sequons):
        start = m * stride + 1
        for j, aa in enumerate(SEQUON_MOTIFS[m % len(SEQUON_MOTIFS)]):
            seq[start + j] = aa
            motif_pos.add(start + j)
    filler = [i for i in range(n_residues) if i not in motif_pos]

    delta = n_atoms - atoms_for("".join(seq))
    steps: List[int] = []
    while delta != 0:
        if delta > 0:
            step = max(s for s in _SWAPS if 0 < s <= delta)
        else:
            step = min(s for s in _SWAPS if delta <= s < 0)
        steps.append(step)
        delta -= step
    if len(steps) > len(filler):
        raise ValueError("not enough filler residues to reach the atom count")
    spacing = len(filler) / max(len(steps), 1)
    for n, step in enumerate(steps):
        seq[filler[int(n * spacing)]] = _SWAPS[step]
    out = "".join(seq)
    assert atoms_for(out) == n_atoms
    return out


# ── fixtures ────────────────────────────────────────────────────

@pytest.fixture
def small_batch():
    """40-residue helix with two glycosylation sequons."""
    seq = "MKLVAEGLNASLKRLEAILDGKNVTFYHLPEAIQKLGDWS"
    return build_batch(seq, "SMALL")


@pytest.fixture
def two_chain_batch():
    return build_batch(
        [("A", "MKTAYIAKQRNISFVKSHFSRQ"), ("B", "GLNETKVAALEDRWGHPQ")],
        "DIMER")


@pytest.fixture
def tiny_batch():
    return build_batch("MKNVTAGLEKAW", "TINY")
