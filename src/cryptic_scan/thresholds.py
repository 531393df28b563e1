"""ThresholdRegistry — every stage constant in one place.

Collects the cutoff radii, saturation counts and scoring constants used
by the masking, fusion, spectral-provider and cryptic stages into a
typed, immutable registry that can be:

* **inspected** — ``registry["mask.density_cutoff"]``
* **overridden** — ``registry.replace({"mask.density_min": 20.0})``
* **diffed** — ``registry.diff(other)``
* **swept** — build many registries with one constant varying

Network dimensions and ES hyperparameters are *not* here; those live in
:class:`~cryptic_scan.network.NetworkConfig` and
:class:`~cryptic_scan.trainer.ESConfig`.

Usage
-----
>>> from cryptic_scan.thresholds import DEFAULT_THRESHOLDS
>>> reg = DEFAULT_THRESHOLDS
>>> reg["mask.density_cutoff"]              # 10.0
>>> strict = reg.replace({"mask.density_min": 40.0}, name="strict")
>>> strict.diff(reg)                         # {'mask.density_min': (40.0, 12.0)}
"""

from __future__ import annotations

from typing import Dict, Iterator, Optional, Tuple

__all__ = [
    "ThresholdRegistry",
    "DEFAULT_THRESHOLDS",
]


# ═══════════════════════════════════════════════════════════════════
# ThresholdRegistry
# ═══════════════════════════════════════════════════════════════════

class ThresholdRegistry:
    """Immutable mapping of dotted keys → float values.

    Parameters
    ----------
    data : dict[str, float]
        ``{"section.name": value, ...}``.
    name : str, optional
        Label for the registry (e.g. ``"default"``, ``"sweep-007"``).
    """

    def __init__(self, data: Dict[str, float], *, name: str = "custom"):
        self._data: Dict[str, float] = {k: float(v) for k, v in data.items()}
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def __getitem__(self, key: str) -> float:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __repr__(self) -> str:
        return f"ThresholdRegistry({self._name!r}, {len(self._data)} keys)"

    def __setitem__(self, key: str, value: float):
        raise TypeError(
            "ThresholdRegistry is immutable — use .replace() instead")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ThresholdRegistry):
            return NotImplemented
        return self._data == other._data

    def get(self, key: str, default: float = 0.0) -> float:
        return self._data.get(key, default)

    def count(self, key: str) -> int:
        """Return an integer-valued constant (window widths, iterations)."""
        return int(round(self._data[key]))

    def items(self):
        return self._data.items()

    def to_dict(self) -> Dict[str, float]:
        """Mutable copy of the data."""
        return dict(self._data)

    def replace(
        self,
        overrides: Dict[str, float],
        *,
        name: Optional[str] = None,
    ) -> "ThresholdRegistry":
        """Return a new registry with selected keys overridden.

        Raises
        ------
        KeyError
            If a key in *overrides* is not already present.
        """
        unknown = sorted(k for k in overrides if k not in self._data)
        if unknown:
            raise KeyError(
                f"Unknown threshold keys {unknown}. "
                f"Valid sections: {list(self.sections)}"
            )
        merged = dict(self._data)
        merged.update(overrides)
        return ThresholdRegistry(merged, name=name or (self._name + "+"))

    def diff(
        self, other: "ThresholdRegistry",
    ) -> Dict[str, Tuple[Optional[float], Optional[float]]]:
        """``{key: (self_value, other_value)}`` for every differing key."""
        result = {}
        for k in sorted(set(self._data) | set(other._data)):
            a, b = self._data.get(k), other._data.get(k)
            if a != b:
                result[k] = (a, b)
        return result

    def section(self, prefix: str) -> Dict[str, float]:
        """All keys under *prefix* as a flat dict."""
        return {k: v for k, v in self._data.items()
                if k.startswith(prefix + ".")}

    @property
    def sections(self) -> Tuple[str, ...]:
        return tuple(sorted({k.split(".", 1)[0] for k in self._data
                             if "." in k}))


# ═══════════════════════════════════════════════════════════════════
# DEFAULT_THRESHOLDS
# ═══════════════════════════════════════════════════════════════════
#
# Naming convention: section.descriptive_name
#   section ∈ {mask, fusion, enm, thermal, cryptic}
# Distances in Å, counts as floats (read through .count()).

_DEFAULT_DATA: Dict[str, float] = {

    # ── mask — glycan occlusion ─────────────────────────────────
    "mask.density_cutoff": 10.0,        # sphere around side-chain centroid
    "mask.density_min": 12.0,           # foreign atoms needed to count
    "mask.density_saturation": 96.0,    # atoms at which weight reaches 1
    "mask.sequon_window": 0.0,          # ±residues sharing the sequon weight

    # ── fusion — 136-slot descriptor pass ───────────────────────
    "fusion.probe_radius": 1.4,         # water probe
    "fusion.burial_radius": 10.0,       # per-atom neighbour sphere
    "fusion.burial_saturation": 160.0,  # neighbours at full burial
    "fusion.surface_exposure": 0.3,     # atoms at/above are "surface"
    "fusion.hse_radius": 13.0,          # half-sphere exposure sphere
    "fusion.hse_scale": 40.0,
    "fusion.potential_radius": 12.0,
    "fusion.potential_min_distance": 2.0,
    "fusion.window_half_width": 3.0,    # KD / charge sequence window
    "fusion.moment_half_width": 5.0,    # hydrophobic moment window
    "fusion.neighbor_radius_near": 8.0,
    "fusion.neighbor_radius_far": 12.0,
    "fusion.ca_neighbor_radius": 10.0,
    "fusion.atom_density_radius": 8.0,
    "fusion.sequon_distance_scale": 30.0,
    "fusion.chunk_size": 1024.0,        # query rows per distance block

    # ── enm — Gaussian network model provider ───────────────────
    "enm.cutoff": 7.3,                  # standard GNM contact cutoff
    "enm.n_slow_modes": 10.0,
    "enm.hinge_width": 0.5,

    # ── thermal — mode thermodynamics provider ──────────────────
    "thermal.temperature": 1.0,         # reduced units (kB = ħ = 1)
    "thermal.n_low_modes": 10.0,

    # ── cryptic — cryptic-site scores ───────────────────────────
    "cryptic.concavity_radius": 10.0,
    "cryptic.contact_radius": 8.0,
    "cryptic.depth_scale": 10.0,
    "cryptic.pagerank_damping": 0.85,
    "cryptic.pagerank_iterations": 100.0,
    "cryptic.single_conformation_confidence": 0.5,
}


DEFAULT_THRESHOLDS: ThresholdRegistry = ThresholdRegistry(
    _DEFAULT_DATA, name="default",
)
"""The default stage constants."""
