"""Feature providers — pluggable sources for the fused provider slots.

Upstream physics modules contribute per-residue features through a
*capability interface* rather than a class hierarchy.  A provider states
which slot range of the 136-dimensional fused vector it fills and which
named capabilities those slots carry; the core validates only the width
and finiteness of what it returns.

::

    fused[:, 0:120]     geometric / biophysical descriptors (fusion.py)
    fused[:, 120:136]   ProviderStack → [ElasticNetworkProvider 120:128,
                                          ThermalModeProvider   128:136]

Each :class:`FeatureProvider` has:

* ``name`` — label used in errors and logs
* ``slots`` — ``(start, stop)`` inside :data:`PROVIDER_SLOTS`
* ``capabilities`` — ``{capability: absolute fused slot}``
* ``supply(context)`` — ``(R, stop - start)`` tensor on the context device

Providers that bring host data (:class:`PrecomputedProvider`) also expose
``host_arrays()``; the pipeline stages those at ingress so no provider
triggers a mid-pipeline transfer.

Usage
-----
>>> stack = ProviderStack.default()
>>> stack = stack.replace(PrecomputedProvider("conservation", (128, 136), scores))
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
import torch
from torch_geometric.data import Data

from .arena import StructureTensors
from .errors import DeviceError, IntegrityError
from .geometry import gather_positions, residue_centroids
from .spectral import (
    GNMModes,
    contact_graph,
    gnm_modes,
    gnm_msf,
    low_mode_ipr,
    per_residue_entropy,
    per_residue_free_energy,
    per_residue_heat_capacity,
)
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "PROVIDER_SLOTS",
    "FLEXIBILITY",
    "ProviderContext",
    "FeatureProvider",
    "HostStagedProvider",
    "ProviderStack",
    "ElasticNetworkProvider",
    "ThermalModeProvider",
    "PrecomputedProvider",
]

PROVIDER_SLOTS: Tuple[int, int] = (120, 136)
"""Slot range of the fused vector reserved for providers."""

FLEXIBILITY = "flexibility"
"""Capability name read by the cryptic stage's flexibility score."""


# ═══════════════════════════════════════════════════════════════════
# ProviderContext — shared, memoised inputs
# ═══════════════════════════════════════════════════════════════════

class ProviderContext:
    """Inputs shared by every provider of one structure.

    The contact graph and its GNM modes are computed on first use and
    reused by later providers (and by the cryptic stage).
    """

    def __init__(self, tensors: StructureTensors,
                 thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS):
        self.tensors = tensors
        self.thresholds = thresholds
        self._ca: Optional[torch.Tensor] = None
        self._graph: Optional[Data] = None
        self._modes: Optional[GNMModes] = None

    @property
    def n_residues(self) -> int:
        return self.tensors.n_residues

    @property
    def device(self) -> torch.device:
        return self.tensors.device

    @property
    def ca(self) -> torch.Tensor:
        if self._ca is None:
            t = self.tensors
            cent = residue_centroids(t.positions, t.start, t.stop)
            self._ca = gather_positions(t.positions, t.idx_ca, cent)
        return self._ca

    @property
    def graph(self) -> Data:
        if self._graph is None:
            self._graph = contact_graph(self.ca, self.thresholds["enm.cutoff"])
        return self._graph

    @property
    def modes(self) -> GNMModes:
        if self._modes is None:
            self._modes = gnm_modes(self.graph)
        return self._modes


# ═══════════════════════════════════════════════════════════════════
# Protocols
# ═══════════════════════════════════════════════════════════════════

@runtime_checkable
class FeatureProvider(Protocol):
    """Capability interface for a per-residue feature source."""

    @property
    def name(self) -> str:
        ...

    @property
    def slots(self) -> Tuple[int, int]:
        """``(start, stop)`` in fused-vector coordinates."""
        ...

    @property
    def capabilities(self) -> Mapping[str, int]:
        """``{capability: absolute fused slot}``."""
        ...

    def supply(self, context: ProviderContext) -> torch.Tensor:
        """Return an ``(R, stop - start)`` tensor."""
        ...


@runtime_checkable
class HostStagedProvider(Protocol):
    """A provider whose inputs live on the host until ingress."""

    def host_arrays(self) -> Dict[str, np.ndarray]:
        ...


# ═══════════════════════════════════════════════════════════════════
# ProviderStack — validated tiling of the provider slots
# ═══════════════════════════════════════════════════════════════════

class ProviderStack:
    """Ordered, non-overlapping providers that tile :data:`PROVIDER_SLOTS`.

    Raises
    ------
    ValueError
        If the providers overlap, leave gaps, or fall outside the
        provider range.
    """

    def __init__(self, providers: Sequence[FeatureProvider]):
        self._providers: List[FeatureProvider] = sorted(
            providers, key=lambda p: p.slots[0])
        self._check_tiling()

    @classmethod
    def default(cls) -> "ProviderStack":
        return cls([ElasticNetworkProvider(), ThermalModeProvider()])

    def _check_tiling(self) -> None:
        lo, hi = PROVIDER_SLOTS
        cursor = lo
        for p in self._providers:
            a, b = p.slots
            if a != cursor or b <= a:
                raise ValueError(
                    f"provider {p.name!r} claims slots [{a}, {b}); expected "
                    f"a range starting at {cursor} (providers must tile "
                    f"[{lo}, {hi}) without gaps or overlap)")
            for cap, slot in p.capabilities.items():
                if not a <= slot < b:
                    raise ValueError(
                        f"capability {cap!r} of {p.name!r} at slot {slot} "
                        f"is outside [{a}, {b})")
            cursor = b
        if cursor != hi:
            raise ValueError(
                f"providers cover [{lo}, {cursor}), expected [{lo}, {hi})")

    def __iter__(self):
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self._providers]

    @property
    def capabilities(self) -> Dict[str, int]:
        caps: Dict[str, int] = {}
        for p in self._providers:
            caps.update(p.capabilities)
        return caps

    def replace(self, provider: FeatureProvider) -> "ProviderStack":
        """New stack with every provider overlapping *provider*'s slots swapped out."""
        a, b = provider.slots
        kept = [p for p in self._providers
                if p.slots[1] <= a or p.slots[0] >= b]
        return ProviderStack(kept + [provider])

    def host_arrays(self) -> Dict[str, np.ndarray]:
        staged: Dict[str, np.ndarray] = {}
        for p in self._providers:
            if isinstance(p, HostStagedProvider):
                staged.update(p.host_arrays())
        return staged

    def supply(self, context: ProviderContext) -> torch.Tensor:
        """Run every provider and return the ``(R, 16)`` provider block."""
        sid = context.tensors.structure_id
        R = context.n_residues
        blocks = []
        for p in self._providers:
            a, b = p.slots
            out = p.supply(context)
            if out.dim() != 2 or tuple(out.shape) != (R, b - a):
                raise IntegrityError(
                    f"provider {p.name!r} returned shape {tuple(out.shape)}, "
                    f"expected ({R}, {b - a})", unit=sid, stage="fusion")
            if not bool(torch.isfinite(out).all()):
                raise DeviceError(
                    f"provider {p.name!r} returned non-finite values",
                    unit=sid, stage="fusion")
            blocks.append(out.to(torch.float32))
        return torch.cat(blocks, dim=1)

    def __repr__(self) -> str:
        parts = [f"{p.name}[{p.slots[0]}:{p.slots[1]}]" for p in self._providers]
        return f"ProviderStack({', '.join(parts)})"


def _mean_normalised(x: torch.Tensor) -> torch.Tensor:
    m = x.mean()
    return x / m if float(m) > 0 else x


# ═══════════════════════════════════════════════════════════════════
# Built-in providers
# ═══════════════════════════════════════════════════════════════════

class ElasticNetworkProvider:
    """Gaussian network model descriptors, slots 120–127.

    ======  ==========================================================
    Slot    Descriptor
    ======  ==========================================================
    120     MSF over all internal modes / mean  (capability: flexibility)
    121     MSF over the ``enm.n_slow_modes`` slowest modes / mean
    122     Fiedler-vector component × √R
    123     |Fiedler component| × √R
    124     hinge score exp(−|v_F| / (w · std v_F))
    125–127 squared amplitude × R in the three slowest modes
    ======  ==========================================================

    Structures with fewer than three internal modes report 0 amplitude
    for the missing modes.
    """

    name = "elastic_network"
    slots = (120, 128)
    capabilities = {FLEXIBILITY: 120}

    def supply(self, context: ProviderContext) -> torch.Tensor:
        th = context.thresholds
        modes = context.modes
        R = context.n_residues
        dev = context.device
        rootR = float(R) ** 0.5

        msf = _mean_normalised(gnm_msf(modes))
        slow = _mean_normalised(gnm_msf(modes, th.count("enm.n_slow_modes")))
        vecs = modes.internal_vectors
        if vecs.shape[1] > 0:
            fiedler = vecs[:, 0]
            spread = fiedler.std() if R > 1 else torch.tensor(1.0, dtype=torch.float64, device=dev)
            hinge = torch.exp(-fiedler.abs() / (th["enm.hinge_width"] * spread.clamp(min=1e-12)))
        else:
            fiedler = torch.zeros(R, dtype=torch.float64, device=dev)
            hinge = torch.zeros(R, dtype=torch.float64, device=dev)
        amps = torch.zeros(R, 3, dtype=torch.float64, device=dev)
        k = min(3, vecs.shape[1])
        if k:
            amps[:, :k] = vecs[:, :k] ** 2 * R
        return torch.stack(
            [msf, slow, fiedler * rootR, fiedler.abs() * rootR, hinge,
             amps[:, 0], amps[:, 1], amps[:, 2]], dim=1)


class ThermalModeProvider:
    """Per-residue mode thermodynamics, slots 128–135.

    ======  ==========================================================
    Slot    Descriptor
    ======  ==========================================================
    128     vibrational entropy contribution / mean
    129     heat-capacity contribution / mean
    130     free-energy contribution / |mean|
    131     low-mode IPR participation × R
    132     contact degree / mean degree
    133     entropy contrast vs. contact neighbours
    134     entropy hot-spot indicator (s_i > mean + std)
    135     slow-mode share of the residue's participation
    ======  ==========================================================
    """

    name = "thermal_modes"
    slots = (128, 136)
    capabilities: Dict[str, int] = {}

    def supply(self, context: ProviderContext) -> torch.Tensor:
        th = context.thresholds
        modes = context.modes
        R = context.n_residues
        T = th["thermal.temperature"]
        n_low = th.count("thermal.n_low_modes")

        s = per_residue_entropy(modes, T)
        c = per_residue_heat_capacity(modes, T)
        f = per_residue_free_energy(modes, T)
        f_mean = f.mean().abs()
        f_norm = f / f_mean if float(f_mean) > 0 else f
        ipr = low_mode_ipr(modes, n_low) * R
        deg = _mean_normalised(modes.degree)

        graph = context.graph
        src, dst = graph.edge_index
        nb_sum = torch.zeros(R, dtype=torch.float64, device=context.device)
        nb_sum = nb_sum.scatter_add(0, src, s[dst])
        nb_mean = nb_sum / modes.degree.clamp(min=1.0)
        s_mean = s.mean()
        contrast = (s - nb_mean) / s_mean if float(s_mean) > 0 else s - nb_mean
        hot = (s > s.mean() + s.std()).to(torch.float64) if R > 1 else torch.zeros_like(s)

        vec2 = modes.internal_vectors ** 2
        total = vec2.sum(dim=1)
        share = vec2[:, :n_low].sum(dim=1) / total.clamp(min=1e-12)

        return torch.stack(
            [_mean_normalised(s), _mean_normalised(c), f_norm, ipr, deg,
             contrast, hot, share], dim=1)


class PrecomputedProvider:
    """Wraps an upstream ``(R, width)`` host array as a provider.

    Parameters
    ----------
    name : str
        Provider label; also the staging key.
    slots : (int, int)
        Fused slot range it fills.
    values : array-like, (R, stop - start)
        Per-residue features in canonical residue order.
    capabilities : mapping, optional
        ``{capability: absolute slot}`` it satisfies.
    """

    def __init__(self, name: str, slots: Tuple[int, int], values,
                 capabilities: Optional[Mapping[str, int]] = None):
        self.name = name
        self.slots = (int(slots[0]), int(slots[1]))
        self.values = np.asarray(values, dtype=np.float32)
        self.capabilities = dict(capabilities or {})
        width = self.slots[1] - self.slots[0]
        if self.values.ndim != 2 or self.values.shape[1] != width:
            raise ValueError(
                f"provider {name!r}: values shape {self.values.shape} does "
                f"not fit slot width {width}")

    @property
    def key(self) -> str:
        return f"provider:{self.name}"

    def host_arrays(self) -> Dict[str, np.ndarray]:
        return {self.key: self.values}

    def supply(self, context: ProviderContext) -> torch.Tensor:
        aux = context.tensors.aux
        if self.key not in aux:
            raise IntegrityError(
                f"provider {self.name!r} was not staged at ingress",
                unit=context.tensors.structure_id, stage="fusion")
        return aux[self.key]
