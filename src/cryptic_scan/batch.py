"""Packed structure batches — the core's only input format.

A :class:`PackedBatch` is a flat, residue-ordered, columnar layout of one
structure: per-atom arrays (positions, elements, names, residue index,
van-der-Waals radius, partial charge) and per-residue arrays (amino-acid
type, chain, DSSP label, contiguous atom range).  Residue order is the
canonical order of every per-residue array downstream.

:func:`ingest` is the batch-ingestor contract: it turns the raw batch
mapping into a validated :class:`PackedBatch` and rejects malformed input
with :class:`~cryptic_scan.errors.DataError` *before* anything enters the
pipeline.  The core itself re-checks only structural shape
(:meth:`PackedBatch.check_shape`).

Batch mapping fields
--------------------
``structure_id``, ``atom_count``, ``residue_count``,
``positions`` (flat, 3 per atom), ``elements``, ``atom_names``,
``atom_residue_index``, ``radii``, ``charges``, ``residue_types``
(one- or three-letter), ``residue_chains``, ``secondary_structure``.

No field has an implicit default.  Callers that only know elements can
fill ``radii`` with :func:`vdw_radius`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np

from .errors import DataError, IntegrityError

logger = logging.getLogger(__name__)

__all__ = [
    "AMINO_ACIDS",
    "SS_STATES",
    "BACKBONE_NAMES",
    "AtomRecord",
    "ResidueRecord",
    "PackedBatch",
    "ingest",
    "vdw_radius",
]


# ── Vocabularies ─────────────────────────────────────────────────

AMINO_ACIDS: str = "ACDEFGHIKLMNPQRSTVWY"
"""Canonical one-letter order used by the residue-type one-hot."""

AA_TO_IDX: Dict[str, int] = {aa: i for i, aa in enumerate(AMINO_ACIDS)}
UNKNOWN_AA: int = len(AMINO_ACIDS)

THREE_TO_ONE: Dict[str, str] = {
    "ALA": "A", "CYS": "C", "ASP": "D", "GLU": "E", "PHE": "F",
    "GLY": "G", "HIS": "H", "ILE": "I", "LYS": "K", "LEU": "L",
    "MET": "M", "ASN": "N", "PRO": "P", "GLN": "Q", "ARG": "R",
    "SER": "S", "THR": "T", "VAL": "V", "TRP": "W", "TYR": "Y",
    # common variants
    "HSD": "H", "HSE": "H", "HIE": "H", "HID": "H", "MSE": "M",
    "CYX": "C", "ASX": "X", "GLX": "X", "UNK": "X",
}

SS_STATES: str = "HBEGITS-"
"""DSSP 8-state alphabet; ``-`` is coil."""

BACKBONE_NAMES = frozenset({"N", "CA", "C", "O", "OXT"})

# Bondi (1964) radii, Å
_VDW_RADII: Dict[str, float] = {
    "H": 1.20, "C": 1.70, "N": 1.55, "O": 1.52, "S": 1.80,
    "P": 1.80, "SE": 1.90, "F": 1.47, "CL": 1.75, "BR": 1.85,
    "I": 1.98, "FE": 1.94, "ZN": 1.39, "MG": 1.73, "CA": 2.31,
    "NA": 2.27, "K": 2.75, "MN": 1.97, "CU": 1.40,
}


def vdw_radius(element: str) -> float:
    """Bondi van-der-Waals radius for *element* (Å).

    Raises
    ------
    DataError
        If the element is not tabulated.
    """
    key = element.strip().upper()
    if key not in _VDW_RADII:
        raise DataError(f"No van-der-Waals radius for element {element!r}")
    return _VDW_RADII[key]


# ═══════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AtomRecord:
    """One atom, immutable once loaded."""
    element: str
    name: str
    position: Tuple[float, float, float]
    residue_index: int
    chain_id: str
    radius: float
    charge: float


@dataclass(frozen=True)
class ResidueRecord:
    """One residue and its contiguous atom range ``[atom_start, atom_stop)``."""
    index: int
    residue_type: str
    chain_id: str
    atom_start: int
    atom_stop: int
    secondary_structure: str

    @property
    def n_atoms(self) -> int:
        return self.atom_stop - self.atom_start


# ═══════════════════════════════════════════════════════════════════
# PackedBatch
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PackedBatch:
    """Columnar atom/residue layout of one structure.

    All arrays are made read-only on construction.
    """

    structure_id: str
    positions: np.ndarray          # (A, 3) float64
    elements: np.ndarray           # (A,) str
    atom_names: np.ndarray         # (A,) str
    atom_residue: np.ndarray       # (A,) int64
    radii: np.ndarray              # (A,) float64
    charges: np.ndarray            # (A,) float64
    residue_types: np.ndarray      # (R,) one-letter str
    residue_chains: np.ndarray     # (R,) str
    secondary_structure: np.ndarray  # (R,) str
    residue_start: np.ndarray      # (R,) int64
    residue_stop: np.ndarray       # (R,) int64

    def __post_init__(self):
        for value in self.__dict__.values():
            if isinstance(value, np.ndarray):
                value.setflags(write=False)

    # ── sizes ───────────────────────────────────────────────────

    @property
    def atom_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def residue_count(self) -> int:
        return int(self.residue_types.shape[0])

    @property
    def sequence(self) -> str:
        return "".join(self.residue_types.tolist())

    @property
    def chains(self) -> List[str]:
        """Chain ids in first-appearance order."""
        seen: Dict[str, None] = {}
        for c in self.residue_chains.tolist():
            seen.setdefault(c, None)
        return list(seen)

    def nbytes(self) -> int:
        """Host size of the numeric arrays."""
        return int(sum(a.nbytes for a in (
            self.positions, self.atom_residue, self.radii, self.charges,
            self.residue_start, self.residue_stop)))

    # ── record views ────────────────────────────────────────────

    @property
    def atoms(self) -> List[AtomRecord]:
        chains = self.residue_chains[self.atom_residue]
        return [
            AtomRecord(
                element=str(self.elements[i]),
                name=str(self.atom_names[i]),
                position=tuple(float(x) for x in self.positions[i]),
                residue_index=int(self.atom_residue[i]),
                chain_id=str(chains[i]),
                radius=float(self.radii[i]),
                charge=float(self.charges[i]),
            )
            for i in range(self.atom_count)
        ]

    @property
    def residues(self) -> List[ResidueRecord]:
        return [
            ResidueRecord(
                index=i,
                residue_type=str(self.residue_types[i]),
                chain_id=str(self.residue_chains[i]),
                atom_start=int(self.residue_start[i]),
                atom_stop=int(self.residue_stop[i]),
                secondary_structure=str(self.secondary_structure[i]),
            )
            for i in range(self.residue_count)
        ]

    @classmethod
    def from_records(
        cls,
        structure_id: str,
        atoms: Sequence[AtomRecord],
        residues: Sequence[ResidueRecord],
    ) -> "PackedBatch":
        """Pack record sequences into columnar form (ranges are trusted)."""
        return cls(
            structure_id=structure_id,
            positions=np.array([a.position for a in atoms], dtype=np.float64).reshape(-1, 3),
            elements=np.array([a.element for a in atoms], dtype=str),
            atom_names=np.array([a.name for a in atoms], dtype=str),
            atom_residue=np.array([a.residue_index for a in atoms], dtype=np.int64),
            radii=np.array([a.radius for a in atoms], dtype=np.float64),
            charges=np.array([a.charge for a in atoms], dtype=np.float64),
            residue_types=np.array([r.residue_type for r in residues], dtype=str),
            residue_chains=np.array([r.chain_id for r in residues], dtype=str),
            secondary_structure=np.array(
                [r.secondary_structure for r in residues], dtype=str),
            residue_start=np.array([r.atom_start for r in residues], dtype=np.int64),
            residue_stop=np.array([r.atom_stop for r in residues], dtype=np.int64),
        )

    # ── structural shape check (core side) ──────────────────────

    def check_shape(self) -> None:
        """Verify non-zero counts and consistent atom ranges.

        This is the only validation the core repeats; chemistry is the
        ingestor's responsibility.

        Raises
        ------
        IntegrityError
            On zero counts, empty or non-contiguous residue ranges, or
            ``atom_count != Σ range lengths``.
        """
        sid = self.structure_id
        if self.atom_count == 0 or self.residue_count == 0:
            raise IntegrityError(
                f"empty batch ({self.atom_count} atoms, "
                f"{self.residue_count} residues)", unit=sid)
        lengths = self.residue_stop - self.residue_start
        if np.any(lengths <= 0):
            bad = np.flatnonzero(lengths <= 0)[:5].tolist()
            raise IntegrityError(
                f"empty atom range for residues {bad}", unit=sid)
        if (self.residue_start[0] != 0
                or np.any(self.residue_start[1:] != self.residue_stop[:-1])
                or self.residue_stop[-1] != self.atom_count):
            raise IntegrityError(
                "residue atom ranges are not contiguous", unit=sid)
        if int(lengths.sum()) != self.atom_count:
            raise IntegrityError(
                f"atom_count {self.atom_count} != Σ range lengths "
                f"{int(lengths.sum())}", unit=sid)

    def __repr__(self) -> str:
        return (f"PackedBatch({self.structure_id!r}, "
                f"{self.residue_count} residues, {self.atom_count} atoms, "
                f"chains={self.chains})")


# ═══════════════════════════════════════════════════════════════════
# Batch ingestor
# ═══════════════════════════════════════════════════════════════════

_REQUIRED_FIELDS = (
    "structure_id", "atom_count", "residue_count", "positions",
    "elements", "atom_names", "atom_residue_index", "radii", "charges",
    "residue_types", "residue_chains", "secondary_structure",
)


def _one_letter(code: str, sid: str) -> str:
    code = str(code).strip().upper()
    if len(code) == 1:
        if code not in AA_TO_IDX and code != "X":
            raise DataError(f"unknown residue type {code!r}", unit=sid)
        return code
    if code not in THREE_TO_ONE:
        raise DataError(f"unknown residue type {code!r}", unit=sid)
    return THREE_TO_ONE[code]


def _column(raw: Mapping[str, Any], key: str, n: int, sid: str,
            dtype=None) -> np.ndarray:
    arr = np.array(raw[key]) if dtype is None else np.array(raw[key], dtype=dtype)
    if arr.ndim != 1 or arr.shape[0] != n:
        raise DataError(
            f"field {key!r} has shape {arr.shape}, expected ({n},)", unit=sid)
    return arr


def ingest(raw: Mapping[str, Any]) -> PackedBatch:
    """Validate a raw batch mapping and pack it.

    Parameters
    ----------
    raw : mapping
        The batch input fields listed in the module docstring.

    Returns
    -------
    PackedBatch

    Raises
    ------
    DataError
        On any missing field, count/length mismatch, non-finite number,
        non-contiguous residue assignment, or unknown vocabulary entry.
    """
    missing = [k for k in _REQUIRED_FIELDS if k not in raw]
    sid = str(raw.get("structure_id", "<unknown>"))
    if missing:
        raise DataError(f"missing batch fields {missing}", unit=sid)

    try:
        n_atoms = int(raw["atom_count"])
        n_res = int(raw["residue_count"])
    except (TypeError, ValueError) as exc:
        raise DataError(f"non-integer counts: {exc}", unit=sid) from exc
    if n_atoms <= 0 or n_res <= 0:
        raise DataError(
            f"counts must be positive ({n_atoms} atoms, {n_res} residues)",
            unit=sid)

    try:
        positions = np.array(raw["positions"], dtype=np.float64)
        radii = _column(raw, "radii", n_atoms, sid, np.float64)
        charges = _column(raw, "charges", n_atoms, sid, np.float64)
        atom_residue = _column(raw, "atom_residue_index", n_atoms, sid, np.int64)
    except (TypeError, ValueError) as exc:
        raise DataError(f"non-numeric field: {exc}", unit=sid) from exc

    if positions.size != 3 * n_atoms:
        raise DataError(
            f"positions has {positions.size} scalars, expected {3 * n_atoms}",
            unit=sid)
    positions = positions.reshape(n_atoms, 3)
    for key, arr in (("positions", positions), ("radii", radii),
                     ("charges", charges)):
        if not np.all(np.isfinite(arr)):
            raise DataError(f"non-finite values in {key!r}", unit=sid)
    if np.any(radii <= 0):
        raise DataError("radii must be positive", unit=sid)

    elements = np.array([str(e).strip().upper() for e in
                         _column(raw, "elements", n_atoms, sid)], dtype=str)
    atom_names = np.array([str(a).strip().upper() for a in
                           _column(raw, "atom_names", n_atoms, sid)], dtype=str)
    residue_types = np.array(
        [_one_letter(t, sid) for t in _column(raw, "residue_types", n_res, sid)],
        dtype=str)
    residue_chains = np.array(
        [str(c) for c in _column(raw, "residue_chains", n_res, sid)], dtype=str)
    ss = np.array([str(s) if str(s) not in ("", " ", "C") else "-"
                   for s in _column(raw, "secondary_structure", n_res, sid)],
                  dtype=str)
    bad_ss = sorted(set(ss.tolist()) - set(SS_STATES))
    if bad_ss:
        raise DataError(f"unknown secondary-structure codes {bad_ss}", unit=sid)

    # Residue ranges: atom_residue_index must be 0,0,..,1,1,..,R-1 (dense)
    if atom_residue[0] != 0 or atom_residue[-1] != n_res - 1:
        raise DataError(
            "atom_residue_index must start at 0 and end at residue_count-1",
            unit=sid)
    steps = np.diff(atom_residue)
    if np.any((steps != 0) & (steps != 1)):
        raise DataError(
            "atom_residue_index is not contiguous and dense from 0", unit=sid)
    boundaries = np.flatnonzero(steps) + 1
    starts = np.concatenate([[0], boundaries]).astype(np.int64)
    stops = np.concatenate([boundaries, [n_atoms]]).astype(np.int64)

    batch = PackedBatch(
        structure_id=sid,
        positions=positions,
        elements=elements,
        atom_names=atom_names,
        atom_residue=atom_residue,
        radii=radii,
        charges=charges,
        residue_types=residue_types,
        residue_chains=residue_chains,
        secondary_structure=ss,
        residue_start=starts,
        residue_stop=stops,
    )
    logger.debug(f"Ingested {batch!r}")
    return batch
