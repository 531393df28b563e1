"""Dueling Q-network over a flat, trainer-owned parameter vector.

Architecture
------------
::

    x (140) ─ Linear(140→128) ─ ReLU ─ Linear(128→96) ─ ReLU ─┬─ value head      96→24→1
                                                               └─ advantage head  96→24→n_actions

    Q(s, a) = V(s) + A(s, a) − mean_a A(s, ·)

Snapshots store weights in float32, float16 or bfloat16.  Evaluation
widens them to float64 first, so every layer sum, the advantage mean
and the V + A combination are accumulated in float64.

Ownership
---------
:class:`NetworkParameters` holds the authoritative float64 flat vector
and is mutated only by the trainer.  Inference never sees it directly:
it borrows an immutable :class:`ParameterSnapshot` (named tensors in
storage precision, on the target device) and evaluates a weight-free
template module through :func:`torch.func.functional_call`.  Total
parameter count with the default two actions is 35,163.
"""

from __future__ import annotations

import math
import threading
import types
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn
from torch.func import functional_call

from .errors import DataError

__all__ = [
    "STORAGE_DTYPES",
    "NetworkConfig",
    "DuelingQNetwork",
    "ParameterLayout",
    "NetworkParameters",
    "ParameterSnapshot",
    "evaluate_q",
]

STORAGE_DTYPES: Dict[str, torch.dtype] = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


# ═══════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NetworkConfig:
    """Dimensions and precision of the dueling Q-network."""

    # ── Dimensions ──────────────────────────────────────────────
    input_dim: int = 140                 # merged feature width
    encoder_dims: Tuple[int, ...] = (128, 96)
    head_dim: int = 24                   # hidden width of both heads
    actions: Tuple[str, ...] = ("non_cryptic", "cryptic")
    cryptic_action: str = "cryptic"

    # ── Precision ───────────────────────────────────────────────
    storage_dtype: str = "float32"

    def __post_init__(self):
        assert self.input_dim > 0, "input_dim must be positive"
        assert len(self.encoder_dims) >= 1, "need at least one encoder layer"
        assert all(d > 0 for d in self.encoder_dims), "encoder widths must be positive"
        assert self.head_dim > 0, "head_dim must be positive"
        assert len(self.actions) >= 2, "need at least two actions"
        assert len(set(self.actions)) == len(self.actions), "duplicate action names"
        assert self.cryptic_action in self.actions, (
            f"cryptic_action {self.cryptic_action!r} not in {self.actions}")
        assert self.storage_dtype in STORAGE_DTYPES, (
            f"storage_dtype must be one of {sorted(STORAGE_DTYPES)}")

    @property
    def n_actions(self) -> int:
        return len(self.actions)

    @property
    def dtype(self) -> torch.dtype:
        return STORAGE_DTYPES[self.storage_dtype]

    def to_dict(self) -> dict:
        return {
            "input_dim": self.input_dim,
            "encoder_dims": list(self.encoder_dims),
            "head_dim": self.head_dim,
            "actions": list(self.actions),
            "cryptic_action": self.cryptic_action,
            "storage_dtype": self.storage_dtype,
        }

    @classmethod
    def from_dict(cls, d: Mapping) -> "NetworkConfig":
        return cls(
            input_dim=int(d["input_dim"]),
            encoder_dims=tuple(int(x) for x in d["encoder_dims"]),
            head_dim=int(d["head_dim"]),
            actions=tuple(d["actions"]),
            cryptic_action=d.get("cryptic_action", "cryptic"),
            storage_dtype=d.get("storage_dtype", "float32"),
        )


# ═══════════════════════════════════════════════════════════════════
# Module
# ═══════════════════════════════════════════════════════════════════

class DuelingQNetwork(nn.Module):
    """Shared encoder with separate value and advantage heads.

    ``forward`` returns ``(V, A)`` in the parameter dtype; use
    :func:`evaluate_q` for the float64 dueling combination.
    """

    def __init__(self, config: Optional[NetworkConfig] = None):
        super().__init__()
        self.config = config or NetworkConfig()
        c = self.config

        layers: List[nn.Module] = []
        width = c.input_dim
        for d in c.encoder_dims:
            layers += [nn.Linear(width, d), nn.ReLU()]
            width = d
        self.encoder = nn.Sequential(*layers)
        self.value_head = nn.Sequential(
            nn.Linear(width, c.head_dim), nn.ReLU(), nn.Linear(c.head_dim, 1))
        self.advantage_head = nn.Sequential(
            nn.Linear(width, c.head_dim), nn.ReLU(),
            nn.Linear(c.head_dim, c.n_actions))

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        z = self.encoder(x)
        return self.value_head(z), self.advantage_head(z)

    def count_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def summary(self) -> str:
        """Human-readable model summary."""
        c = self.config
        enc = "→".join(str(d) for d in (c.input_dim,) + tuple(c.encoder_dims))
        lines = [
            "DuelingQNetwork",
            "=" * 40,
            f"Input dim:      {c.input_dim}",
            f"Encoder:        {enc} (ReLU)",
            f"Head dim:       {c.head_dim}",
            f"Actions:        {', '.join(c.actions)}",
            f"Storage dtype:  {c.storage_dtype}",
            f"Parameters:     {self.count_parameters():,}",
        ]
        return "\n".join(lines)


_templates = threading.local()


def _template(config: NetworkConfig) -> DuelingQNetwork:
    """Weight-free module used as the functional-call skeleton.

    ``functional_call`` swaps parameters on the module for the duration
    of a call, so each thread gets its own skeleton.
    """
    cache = getattr(_templates, "by_config", None)
    if cache is None:
        cache = _templates.by_config = {}
    net = cache.get(config)
    if net is None:
        with torch.device("meta"):
            net = DuelingQNetwork(config)
        net = cache[config] = net.eval()
    return net


# ═══════════════════════════════════════════════════════════════════
# Layout
# ═══════════════════════════════════════════════════════════════════

class ParameterLayout:
    """Ordered ``name → (offset, shape)`` map of the flat vector."""

    def __init__(self, entries: List[Tuple[str, Tuple[int, ...]]]):
        self._entries: Dict[str, Tuple[int, Tuple[int, ...]]] = {}
        offset = 0
        for name, shape in entries:
            shape = tuple(int(s) for s in shape)
            self._entries[name] = (offset, shape)
            offset += math.prod(shape)
        self._n_params = offset

    @classmethod
    def for_config(cls, config: NetworkConfig) -> "ParameterLayout":
        net = _template(config)
        return cls([(name, tuple(p.shape)) for name, p in net.named_parameters()])

    @property
    def n_params(self) -> int:
        return self._n_params

    @property
    def names(self) -> List[str]:
        return list(self._entries)

    def __getitem__(self, name: str) -> Tuple[int, Tuple[int, ...]]:
        return self._entries[name]

    def __iter__(self):
        return iter(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterLayout):
            return NotImplemented
        return self._entries == other._entries

    def to_list(self) -> List[dict]:
        return [{"name": n, "offset": o, "shape": list(s)}
                for n, (o, s) in self._entries.items()]

    @classmethod
    def from_list(cls, items: List[Mapping]) -> "ParameterLayout":
        layout = cls([(d["name"], tuple(d["shape"])) for d in items])
        for d in items:
            if layout[d["name"]][0] != int(d["offset"]):
                raise DataError(f"layout offset for {d['name']!r} is not contiguous")
        return layout

    def __repr__(self) -> str:
        return f"ParameterLayout({len(self._entries)} tensors, {self._n_params} params)"


# ═══════════════════════════════════════════════════════════════════
# Snapshot
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ParameterSnapshot:
    """Immutable parameter view borrowed by one inference call.

    ``tensors`` is a read-only mapping of storage-dtype tensors; the
    snapshot never aliases the trainer's float64 vector.
    """

    config: NetworkConfig
    tensors: Mapping[str, torch.Tensor]
    tag: str = ""

    @classmethod
    def from_vector(
        cls,
        vector: np.ndarray,
        config: NetworkConfig,
        device: str | torch.device = "cpu",
        tag: str = "",
    ) -> "ParameterSnapshot":
        layout = ParameterLayout.for_config(config)
        vector = np.asarray(vector, dtype=np.float64)
        if vector.shape != (layout.n_params,):
            raise DataError(
                f"parameter vector has shape {vector.shape}, network expects "
                f"({layout.n_params},)")
        flat = torch.from_numpy(vector.copy()).to(device=device, dtype=config.dtype)
        tensors = {}
        for name, (offset, shape) in layout:
            tensors[name] = flat[offset:offset + math.prod(shape)].view(shape)
        return cls(config=config, tensors=types.MappingProxyType(tensors), tag=tag)

    @property
    def device(self) -> torch.device:
        return next(iter(self.tensors.values())).device

    @property
    def dtype(self) -> torch.dtype:
        return self.config.dtype


# ═══════════════════════════════════════════════════════════════════
# Authoritative parameters
# ═══════════════════════════════════════════════════════════════════

class NetworkParameters:
    """Trainer-owned float64 flat parameter vector."""

    def __init__(self, config: NetworkConfig, values: np.ndarray):
        self.config = config
        self.layout = ParameterLayout.for_config(config)
        values = np.array(values, dtype=np.float64)
        if values.shape != (self.layout.n_params,):
            raise DataError(
                f"expected {self.layout.n_params} parameters, got shape {values.shape}")
        self._values = values

    @classmethod
    def initialize(cls, config: Optional[NetworkConfig] = None,
                   seed: int = 42) -> "NetworkParameters":
        """Uniform ``±1/√fan_in`` init (the PyTorch ``nn.Linear`` default bounds)."""
        config = config or NetworkConfig()
        layout = ParameterLayout.for_config(config)
        rng = np.random.default_rng(seed)
        values = np.empty(layout.n_params, dtype=np.float64)
        for name, (offset, shape) in layout:
            fan_in = shape[1] if len(shape) == 2 else layout[name.replace("bias", "weight")][1][1]
            bound = 1.0 / math.sqrt(fan_in)
            size = math.prod(shape)
            values[offset:offset + size] = rng.uniform(-bound, bound, size)
        return cls(config, values)

    @classmethod
    def zeros(cls, config: Optional[NetworkConfig] = None) -> "NetworkParameters":
        config = config or NetworkConfig()
        return cls(config, np.zeros(ParameterLayout.for_config(config).n_params))

    @property
    def n_params(self) -> int:
        return self.layout.n_params

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the flat vector."""
        view = self._values.view()
        view.flags.writeable = False
        return view

    def copy(self) -> "NetworkParameters":
        return NetworkParameters(self.config, self._values.copy())

    def apply_update(self, delta: np.ndarray) -> None:
        """``θ ← θ + delta`` in place."""
        delta = np.asarray(delta, dtype=np.float64)
        if delta.shape != self._values.shape:
            raise DataError(f"update shape {delta.shape} != {self._values.shape}")
        self._values += delta

    def snapshot(self, device: str | torch.device = "cpu",
                 tag: str = "") -> ParameterSnapshot:
        return ParameterSnapshot.from_vector(self._values, self.config, device, tag)

    def __repr__(self) -> str:
        return (f"NetworkParameters({self.n_params} params, "
                f"storage={self.config.storage_dtype})")


# ═══════════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════════

def evaluate_q(snapshot: ParameterSnapshot, x: torch.Tensor) -> torch.Tensor:
    """Batched dueling Q-values ``(R, n_actions)`` in float64.

    Weights stay stored in the snapshot dtype but are widened to float64
    for the layer products, so low-precision storage only rounds the
    weights and never the sums.  Rows are independent; the result for
    one residue does not depend on any other row.
    """
    net = _template(snapshot.config)
    weights = {name: t.to(torch.float64) for name, t in snapshot.tensors.items()}
    with torch.no_grad():
        v, a = functional_call(net, weights,
                               (x.to(device=snapshot.device, dtype=torch.float64),))
    return v + a - a.mean(dim=-1, keepdim=True)
