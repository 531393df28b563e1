"""Device arena — one buffer pool per in-flight structure.

The pipeline keeps every intermediate (mask, fused, cryptic, merged,
Q-values) resident on one device.  Stages exchange integer
:data:`BufferHandle` indices into the arena instead of tensors, and the
arena records every host↔device transfer so the "exactly two transfers
per structure" contract is observable:

1. **ingress** — :meth:`DeviceArena.upload` stages the packed batch (plus
   any optional ensemble / provider arrays) in one step;
2. **egress** — :meth:`DeviceArena.download` retrieves the final buffer.

A memory budget check runs before upload; exceeding it raises
:class:`~cryptic_scan.errors.DeviceError` without allocating anything.

Usage
-----
>>> with DeviceArena("1ABC", device="cpu") as arena:
...     tensors = arena.upload(batch)
...     h_mask = arena.put("mask", compute_mask(tensors))
...     ...
...     h_q = arena.put("q_values", q, egress=True)
...     q_host = arena.download(h_q)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

import numpy as np
import torch

from .batch import AA_TO_IDX, BACKBONE_NAMES, SS_STATES, UNKNOWN_AA, PackedBatch
from .errors import DeviceError, IntegrityError

logger = logging.getLogger(__name__)

__all__ = [
    "BufferHandle",
    "Transfer",
    "StructureTensors",
    "DeviceArena",
    "resolve_device",
    "estimate_arena_bytes",
    "TRANSFER_LOG_LIMIT",
]

BufferHandle = int
"""Index of a buffer inside a :class:`DeviceArena`."""

ELEMENT_CODES: Dict[str, int] = {"C": 0, "N": 1, "O": 2, "S": 3, "H": 4}
OTHER_ELEMENT: int = 5

TRANSFER_LOG_LIMIT: int = 64
"""Downloads kept in :attr:`DeviceArena.transfers`; older ones are only counted."""

_GAMMA_NAMES = ("CG", "CG1", "OG", "OG1", "SG")
_DELTA_NAMES = ("CD", "CD1", "OD1", "ND1", "SD")


def resolve_device(device: str | torch.device = "auto") -> torch.device:
    """``"auto"`` → CUDA when available, else CPU.

    A bare ``"cuda"`` gets the current CUDA index, so ``cuda`` and ``cuda:0``
    compare equal once resolved.
    """
    if device == "auto":
        device = "cuda" if torch.cuda.is_available() else "cpu"
    if not isinstance(device, torch.device):
        device = torch.device(device)
    if device.type == "cuda" and device.index is None and torch.cuda.is_available():
        return torch.device("cuda", torch.cuda.current_device())
    return device


@dataclass(frozen=True)
class Transfer:
    """One host↔device copy."""
    direction: str   # "h2d" or "d2h"
    label: str
    nbytes: int


@dataclass
class StructureTensors:
    """Device-resident view of a :class:`PackedBatch`.

    Atom-name lookups are resolved on the host before upload into
    per-residue index tensors (``-1`` where the atom is absent).
    """

    structure_id: str
    positions: torch.Tensor        # (A, 3) float32
    atom_residue: torch.Tensor     # (A,) long
    radii: torch.Tensor            # (A,) float32
    charges: torch.Tensor          # (A,) float32
    element: torch.Tensor          # (A,) long, ELEMENT_CODES
    is_backbone: torch.Tensor      # (A,) bool
    res_type: torch.Tensor         # (R,) long, AMINO_ACIDS index / UNKNOWN_AA
    res_chain: torch.Tensor        # (R,) long
    ss: torch.Tensor               # (R,) long, SS_STATES index
    start: torch.Tensor            # (R,) long
    stop: torch.Tensor             # (R,) long
    idx_n: torch.Tensor            # (R,) long
    idx_ca: torch.Tensor
    idx_c: torch.Tensor
    idx_o: torch.Tensor
    idx_cb: torch.Tensor
    idx_g: torch.Tensor            # first γ atom (χ1)
    idx_d: torch.Tensor            # first δ atom (χ2)
    ensemble: Optional[torch.Tensor] = None        # (K, A, 3) float32
    aux: Dict[str, torch.Tensor] = field(default_factory=dict)

    @property
    def device(self) -> torch.device:
        return self.positions.device

    @property
    def n_atoms(self) -> int:
        return int(self.positions.shape[0])

    @property
    def n_residues(self) -> int:
        return int(self.res_type.shape[0])


def _name_indices(batch: PackedBatch) -> Dict[str, np.ndarray]:
    R = batch.residue_count
    out = {k: np.full(R, -1, dtype=np.int64)
           for k in ("n", "ca", "c", "o", "cb", "g", "d")}
    names = batch.atom_names
    for r in range(R):
        lo, hi = int(batch.residue_start[r]), int(batch.residue_stop[r])
        lookup = {}
        for a in range(lo, hi):
            lookup.setdefault(str(names[a]), a)
        for key, name in (("n", "N"), ("ca", "CA"), ("c", "C"),
                          ("o", "O"), ("cb", "CB")):
            if name in lookup:
                out[key][r] = lookup[name]
        for key, options in (("g", _GAMMA_NAMES), ("d", _DELTA_NAMES)):
            for name in options:
                if name in lookup:
                    out[key][r] = lookup[name]
                    break
    return out


def estimate_arena_bytes(
    n_atoms: int,
    n_residues: int,
    chunk_size: int = 1024,
    n_frames: int = 0,
) -> int:
    """Rough peak device footprint of one pipeline run (bytes).

    Dominated by the chunked atom-distance blocks, the dense residue
    distance / Kirchhoff matrices (float64) and the per-residue buffers.
    """
    atoms = n_atoms * (3 * 4 + 8 + 4 + 4 + 8 + 1)
    frames = n_frames * n_atoms * 3 * 4
    block = min(chunk_size, max(n_atoms, n_residues)) * n_atoms * (4 + 1) * 2
    dense = n_residues * n_residues * 8 * 4
    per_residue = n_residues * (140 + 136 + 4 + 16) * 4
    return int(atoms + frames + block + dense + per_residue)


class DeviceArena:
    """Buffer pool for one structure's pipeline run.

    Parameters
    ----------
    structure_id : str
        Identifier carried by every error raised from this arena.
    device : str or torch.device
        ``"auto"``, ``"cpu"``, ``"cuda"``, ``"cuda:1"``, ...
    memory_budget_bytes : int, optional
        Refuse uploads whose estimated footprint exceeds this.
    """

    def __init__(
        self,
        structure_id: str,
        device: str | torch.device = "auto",
        memory_budget_bytes: Optional[int] = None,
    ):
        self.structure_id = structure_id
        self.device = resolve_device(device)
        self.memory_budget_bytes = memory_budget_bytes
        self.transfers: List[Transfer] = []
        self.n_transfers = 0
        self._buffers: List[Optional[torch.Tensor]] = []
        self._names: List[str] = []
        self._free: List[BufferHandle] = []
        self._egress: Set[int] = set()
        self._downloaded: Set[int] = set()
        self._tensors: Optional[StructureTensors] = None
        self._released = False
        self._lock = threading.Lock()

    # ── context manager ─────────────────────────────────────────

    def __enter__(self) -> "DeviceArena":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    # ── ingress ─────────────────────────────────────────────────

    def upload(
        self,
        batch: PackedBatch,
        *,
        ensemble: Optional[np.ndarray] = None,
        aux: Optional[Mapping[str, np.ndarray]] = None,
        chunk_size: int = 1024,
    ) -> StructureTensors:
        """Stage *batch* (and optional extras) on the device.

        Raises
        ------
        IntegrityError
            If the arena already holds a structure or was released, or the
            ensemble does not match the atom count.
        DeviceError
            If the estimated footprint exceeds the memory budget, or the
            device runs out of memory.
        """
        self._check_live()
        if self._tensors is not None:
            raise IntegrityError(
                "arena already holds a structure", unit=self.structure_id,
                stage="upload")
        batch.check_shape()

        n_frames = 0
        if ensemble is not None:
            ensemble = np.asarray(ensemble, dtype=np.float32)
            if ensemble.ndim != 3 or ensemble.shape[1:] != (batch.atom_count, 3):
                raise IntegrityError(
                    f"ensemble shape {ensemble.shape} does not match "
                    f"({batch.atom_count} atoms, 3)",
                    unit=self.structure_id, stage="upload")
            n_frames = ensemble.shape[0]

        need = estimate_arena_bytes(batch.atom_count, batch.residue_count,
                                    chunk_size, n_frames)
        if self.memory_budget_bytes is not None and need > self.memory_budget_bytes:
            raise DeviceError(
                f"estimated {need / 2**20:.1f} MiB exceeds budget "
                f"{self.memory_budget_bytes / 2**20:.1f} MiB",
                unit=self.structure_id, stage="upload")

        chain_ids = {c: i for i, c in enumerate(batch.chains)}
        names = _name_indices(batch)
        host = {
            "positions": batch.positions.astype(np.float32),
            "atom_residue": batch.atom_residue.astype(np.int64),
            "radii": batch.radii.astype(np.float32),
            "charges": batch.charges.astype(np.float32),
            "element": np.array([ELEMENT_CODES.get(e, OTHER_ELEMENT)
                                 for e in batch.elements], dtype=np.int64),
            "is_backbone": np.array([n in BACKBONE_NAMES
                                     for n in batch.atom_names], dtype=bool),
            "res_type": np.array([AA_TO_IDX.get(t, UNKNOWN_AA)
                                  for t in batch.residue_types], dtype=np.int64),
            "res_chain": np.array([chain_ids[c] for c in batch.residue_chains],
                                  dtype=np.int64),
            "ss": np.array([SS_STATES.index(s) for s in batch.secondary_structure],
                           dtype=np.int64),
            "start": batch.residue_start.astype(np.int64),
            "stop": batch.residue_stop.astype(np.int64),
        }
        for key, arr in names.items():
            host[f"idx_{key}"] = arr

        nbytes = sum(a.nbytes for a in host.values())
        try:
            dev = {k: torch.from_numpy(np.ascontiguousarray(v)).to(self.device)
                   for k, v in host.items()}
            ens_t = None
            if ensemble is not None:
                ens_t = torch.from_numpy(ensemble).to(self.device)
                nbytes += ensemble.nbytes
            aux_t = {}
            for key, arr in (aux or {}).items():
                arr = np.asarray(arr, dtype=np.float32)
                aux_t[key] = torch.from_numpy(arr).to(self.device)
                nbytes += arr.nbytes
        except torch.cuda.OutOfMemoryError as exc:
            raise DeviceError(f"out of memory during upload: {exc}",
                              unit=self.structure_id, stage="upload") from exc

        self._record(Transfer("h2d", "batch", int(nbytes)))
        self._tensors = StructureTensors(
            structure_id=batch.structure_id, ensemble=ens_t, aux=aux_t, **dev)
        logger.debug(f"{self.structure_id}: uploaded {nbytes} bytes to {self.device}")
        return self._tensors

    @property
    def tensors(self) -> StructureTensors:
        self._check_live()
        if self._tensors is None:
            raise IntegrityError("nothing uploaded", unit=self.structure_id)
        return self._tensors

    # ── buffers ─────────────────────────────────────────────────

    def put(
        self, name: str, tensor: torch.Tensor, *, egress: bool = False,
    ) -> BufferHandle:
        """Register a device buffer and return its handle.

        Only buffers registered with ``egress=True`` may be downloaded;
        intermediates stay resident.  Freed slots are reused, so an arena
        serving many inferences does not grow.
        """
        self._check_live()
        if tensor.device != self.device:
            raise IntegrityError(
                f"buffer {name!r} is on {tensor.device}, arena is on {self.device}",
                unit=self.structure_id, stage=name)
        with self._lock:
            if self._free:
                handle = self._free.pop()
                self._buffers[handle] = tensor
                self._names[handle] = name
                self._egress.discard(handle)
                self._downloaded.discard(handle)
            else:
                self._buffers.append(tensor)
                self._names.append(name)
                handle = len(self._buffers) - 1
            if egress:
                self._egress.add(handle)
        return handle

    def get(self, handle: BufferHandle) -> torch.Tensor:
        self._check_live()
        if not 0 <= handle < len(self._buffers) or self._buffers[handle] is None:
            raise IntegrityError(f"invalid buffer handle {handle}",
                                 unit=self.structure_id)
        return self._buffers[handle]

    def name_of(self, handle: BufferHandle) -> str:
        return self._names[handle]

    def free(self, handle: BufferHandle) -> None:
        self.get(handle)
        with self._lock:
            if self._buffers[handle] is None:
                raise IntegrityError(f"buffer handle {handle} already freed",
                                     unit=self.structure_id)
            self._buffers[handle] = None
            self._free.append(handle)

    def _record(self, transfer: Transfer) -> None:
        with self._lock:
            self.n_transfers += 1
            self.transfers.append(transfer)
            if len(self.transfers) > TRANSFER_LOG_LIMIT:
                # the ingress record always stays first
                oldest = next(i for i, t in enumerate(self.transfers)
                              if t.direction == "d2h")
                del self.transfers[oldest]

    def handles(self) -> Dict[str, BufferHandle]:
        """Live ``{name: handle}`` map (latest handle wins for repeated names)."""
        return {n: h for h, n in enumerate(self._names)
                if self._buffers[h] is not None}

    # ── egress ──────────────────────────────────────────────────

    def download(self, handle: BufferHandle) -> np.ndarray:
        """Copy an egress buffer to the host, once.

        Raises
        ------
        IntegrityError
            If *handle* is a resident intermediate or was already retrieved.
        """
        tensor = self.get(handle)
        if handle not in self._egress:
            raise IntegrityError(
                f"buffer {self._names[handle]!r} is resident-only",
                unit=self.structure_id, stage="download")
        with self._lock:
            if handle in self._downloaded:
                raise IntegrityError(
                    f"buffer {self._names[handle]!r} already retrieved",
                    unit=self.structure_id, stage="download")
            self._downloaded.add(handle)
        host = tensor.detach().cpu().numpy().copy()
        self._record(Transfer("d2h", self._names[handle], int(host.nbytes)))
        return host

    # ── lifetime ────────────────────────────────────────────────

    def release(self) -> None:
        """Drop every buffer; the arena cannot be reused."""
        self._buffers = [None] * len(self._buffers)
        self._tensors = None
        self._released = True

    @property
    def released(self) -> bool:
        return self._released

    def _check_live(self) -> None:
        if self._released:
            raise IntegrityError("arena already released",
                                 unit=self.structure_id)

    def __repr__(self) -> str:
        live = sum(b is not None for b in self._buffers)
        return (f"DeviceArena({self.structure_id!r}, {self.device}, "
                f"{live} buffers, {len(self.transfers)} transfers)")
