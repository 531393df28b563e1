"""Checkpoints — the flat parameter vector plus a shape/version descriptor.

One ``.npz`` file per checkpoint with two entries:

* ``params`` — float64 ``(n_params,)`` vector
* ``descriptor`` — JSON text::

    {
      "format": "cryptic-scan-params",
      "version": 1,
      "n_params": 35163,
      "sha256": "...",
      "layout": [{"name": "encoder.0.weight", "offset": 0, "shape": [128, 140]}, ...],
      "network": {...NetworkConfig...},
      "metadata": {...}
    }

Loading against a configured architecture checks the parameter count
and layout *before* any snapshot can be built; a mismatch is a
:class:`~cryptic_scan.errors.DataError`.

Workflow
--------
>>> store = CheckpointStore("~/.cryptic_scan/checkpoints")
>>> store.save("run-07", trainer.params, {"generation": 120})
>>> params, meta = store.load("run-07", NetworkConfig())
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import DataError
from .network import NetworkConfig, NetworkParameters, ParameterLayout

logger = logging.getLogger(__name__)

__all__ = [
    "CHECKPOINT_FORMAT",
    "CHECKPOINT_VERSION",
    "save_checkpoint",
    "load_checkpoint",
    "read_descriptor",
    "CheckpointStore",
]

CHECKPOINT_FORMAT = "cryptic-scan-params"
CHECKPOINT_VERSION = 1
DESCRIPTOR_KEYS = ("n_params", "sha256", "layout", "network")


def _numpy_safe(obj: Any) -> Any:
    """Recursively convert numpy scalars/arrays to native Python types."""
    if isinstance(obj, dict):
        return {k: _numpy_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_safe(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return obj


def _digest(values: np.ndarray) -> str:
    return hashlib.sha256(np.ascontiguousarray(values, dtype="<f8").tobytes()).hexdigest()


def save_checkpoint(
    path: str | Path,
    params: NetworkParameters,
    metadata: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write *params* to *path* (``.npz`` appended if missing)."""
    path = Path(path).expanduser()
    if path.suffix != ".npz":
        path = path.with_suffix(path.suffix + ".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    values = np.asarray(params.values, dtype=np.float64)
    descriptor = {
        "format": CHECKPOINT_FORMAT,
        "version": CHECKPOINT_VERSION,
        "n_params": int(values.size),
        "sha256": _digest(values),
        "layout": params.layout.to_list(),
        "network": params.config.to_dict(),
        "metadata": _numpy_safe(metadata or {}),
    }
    np.savez(path, params=values, descriptor=np.array(json.dumps(descriptor)))
    logger.info(f"saved checkpoint {path} ({values.size} params)")
    return path


def read_descriptor(path: str | Path) -> Tuple[Dict[str, Any], np.ndarray]:
    """Return ``(descriptor, params)`` without validating against a network.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    DataError
        If the file is not a readable checkpoint.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"No checkpoint at {path}")
    try:
        with np.load(path, allow_pickle=False) as npz:
            values = np.array(npz["params"], dtype=np.float64)
            descriptor = json.loads(npz["descriptor"].item())
    except (KeyError, ValueError, OSError) as exc:
        raise DataError(f"unreadable checkpoint {path}: {exc}",
                        stage="checkpoint") from exc
    if descriptor.get("format") != CHECKPOINT_FORMAT:
        raise DataError(f"{path} is not a {CHECKPOINT_FORMAT} file",
                        stage="checkpoint")
    if descriptor.get("version") != CHECKPOINT_VERSION:
        raise DataError(
            f"checkpoint version {descriptor.get('version')} is not supported "
            f"(expected {CHECKPOINT_VERSION})", stage="checkpoint")
    missing = [k for k in DESCRIPTOR_KEYS if k not in descriptor]
    if missing:
        raise DataError(f"checkpoint descriptor lacks {missing}", stage="checkpoint")
    return descriptor, values


def load_checkpoint(
    path: str | Path,
    config: Optional[NetworkConfig] = None,
) -> Tuple[NetworkParameters, Dict[str, Any]]:
    """Load a checkpoint, validated against *config*.

    Parameters
    ----------
    config : NetworkConfig, optional
        Architecture the parameters must fit.  Defaults to the one
        recorded in the descriptor.

    Returns
    -------
    params : NetworkParameters
    metadata : dict

    Raises
    ------
    DataError
        On a missing or malformed descriptor entry, or on a mismatch in
        parameter count, layout or checksum.
    """
    descriptor, values = read_descriptor(path)
    try:
        if config is None:
            config = NetworkConfig.from_dict(descriptor["network"])
        stored = ParameterLayout.from_list(descriptor["layout"])
        n_params = int(descriptor["n_params"])
    except DataError as exc:
        raise DataError(exc.message, stage="checkpoint") from exc
    except (KeyError, TypeError, ValueError, AssertionError) as exc:
        raise DataError(f"malformed checkpoint descriptor: {exc!r}",
                        stage="checkpoint") from exc
    expected = ParameterLayout.for_config(config)

    if values.ndim != 1 or values.size != n_params:
        raise DataError(
            f"params array has shape {values.shape}, descriptor says "
            f"{n_params}", stage="checkpoint")
    if values.size != expected.n_params:
        raise DataError(
            f"checkpoint has {values.size} parameters, configured network "
            f"expects {expected.n_params}", stage="checkpoint")
    if stored != expected:
        raise DataError("checkpoint layout does not match the configured network",
                        stage="checkpoint")
    if descriptor.get("sha256") != _digest(values):
        raise DataError("checkpoint checksum mismatch", stage="checkpoint")

    return NetworkParameters(config, values), descriptor.get("metadata", {})


# ═══════════════════════════════════════════════════════════════════
# CheckpointStore — directory of named checkpoints
# ═══════════════════════════════════════════════════════════════════

class CheckpointStore:
    """Directory of named checkpoints, one ``.npz`` per name.

    Parameters
    ----------
    root : str or Path
        Directory for checkpoints.  Created on first write.
    """

    def __init__(self, root: str | Path = "~/.cryptic_scan/checkpoints"):
        self.root = Path(root).expanduser()

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.npz"

    def has(self, name: str) -> bool:
        return self._path(name).exists()

    def save(self, name: str, params: NetworkParameters,
             metadata: Optional[Dict[str, Any]] = None) -> Path:
        return save_checkpoint(self._path(name), params, metadata)

    def load(self, name: str, config: Optional[NetworkConfig] = None
             ) -> Tuple[NetworkParameters, Dict[str, Any]]:
        return load_checkpoint(self._path(name), config)

    def list_names(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.npz"))

    def remove(self, name: str) -> bool:
        path = self._path(name)
        if path.exists():
            path.unlink()
            return True
        return False

    def __repr__(self) -> str:
        return f"CheckpointStore({self.root!s}, {len(self.list_names())} checkpoints)"
