"""Per-structure pipeline and concurrent dispatch over independent structures.

::

    PackedBatch ──upload──▶ DeviceArena
        mask     = compute_mask(...)           ┐
        fused    = compute_fused(...)          │ device-resident,
        cryptic  = compute_cryptic(...)        │ chained by BufferHandle
        merged   = merge_features(...)         │
        q        = infer(merged, snapshot)     ┘
    ActionValues ◀──download── q

Stages of one structure run strictly in sequence.  Independent
structures run concurrently in a thread pool (``max_concurrent``), each
with its own arena; a failure aborts only its own structure and is
reported in that structure's :class:`PipelineOutcome`.

:meth:`CrypticPipeline.featurize` stops before inference and returns a
live :class:`FeaturizedStructure`, so the trainer can evaluate many
parameter snapshots against one set of resident merged features.

Usage
-----
>>> pipe = CrypticPipeline(device="cpu")
>>> snap = pipe.snapshot(NetworkParameters.initialize())
>>> result = pipe.run(batch, snap)
>>> result.action_values.top_k(5)
>>> outcomes = pipe.run_many(batches, snap)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import torch

from .arena import BufferHandle, DeviceArena, Transfer, resolve_device
from .batch import PackedBatch
from .cryptic import CrypticScores, compute_cryptic
from .errors import CrypticScanError, DeviceError, IntegrityError
from .fusion import compute_fused
from .inference import ActionValues, infer
from .masking import compute_mask
from .merge import MERGED_DIM, merge_features
from .network import NetworkParameters, ParameterSnapshot
from .providers import ProviderContext, ProviderStack
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "PipelineResult",
    "PipelineOutcome",
    "FeaturizedStructure",
    "CrypticPipeline",
]


@dataclass
class PipelineResult:
    """Host-side result of one structure's pipeline run."""
    structure_id: str
    action_values: ActionValues
    info_level: Dict[str, str] = field(default_factory=dict)
    transfers: Tuple[Transfer, ...] = ()
    time_s: float = 0.0

    def top_k(self, k: int):
        return self.action_values.top_k(k)


@dataclass
class PipelineOutcome:
    """Result *or* error for one structure of a :meth:`~CrypticPipeline.run_many` call."""
    structure_id: str
    result: Optional[PipelineResult] = None
    error: Optional[CrypticScanError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FeaturizedStructure:
    """Live arena holding one structure's merged features.

    Release it (or use it as a context manager) when done.
    """
    arena: DeviceArena
    merged: BufferHandle
    chains: Tuple[str, ...]
    cryptic: CrypticScores

    @property
    def structure_id(self) -> str:
        return self.arena.structure_id

    def release(self) -> None:
        self.arena.release()

    def __enter__(self) -> "FeaturizedStructure":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _run_stage(name: str, unit: str, fn, *args, **kwargs):
    """Run one stage, tagging errors with the structure and stage."""
    try:
        return fn(*args, **kwargs)
    except CrypticScanError as exc:
        if exc.unit is None:
            raise exc.with_unit(unit) from exc
        raise
    except torch.cuda.OutOfMemoryError as exc:
        raise DeviceError(f"out of memory: {exc}", unit=unit, stage=name) from exc
    except RuntimeError as exc:
        raise DeviceError(f"execution failed: {exc}", unit=unit, stage=name) from exc


class CrypticPipeline:
    """Mask → fuse → cryptic → merge → infer, one arena per structure.

    Parameters
    ----------
    providers : ProviderStack, optional
        Fills fused slots 120–135 (default: elastic-network + thermal).
    thresholds : ThresholdRegistry
        Stage constants.
    device : str
        ``"auto"``, ``"cpu"`` or ``"cuda"``.
    memory_budget_bytes : int, optional
        Per-structure device budget enforced at upload.
    max_concurrent : int
        Upper bound on structures in flight in :meth:`run_many` / :meth:`submit`.
    """

    def __init__(
        self,
        providers: Optional[ProviderStack] = None,
        thresholds: ThresholdRegistry = DEFAULT_THRESHOLDS,
        device: str = "auto",
        memory_budget_bytes: Optional[int] = None,
        max_concurrent: int = 4,
    ):
        assert max_concurrent >= 1, "max_concurrent must be ≥ 1"
        self.providers = providers if providers is not None else ProviderStack.default()
        self.thresholds = thresholds
        self.device = resolve_device(device)
        self.memory_budget_bytes = memory_budget_bytes
        self.max_concurrent = max_concurrent
        self._executor: Optional[ThreadPoolExecutor] = None

    # ── parameters ──────────────────────────────────────────────

    def snapshot(self, params: NetworkParameters, tag: str = "") -> ParameterSnapshot:
        """Immutable snapshot of *params* on this pipeline's device."""
        return params.snapshot(self.device, tag)

    # ── featurization ───────────────────────────────────────────

    def featurize(
        self,
        batch: PackedBatch,
        ensemble: Optional[np.ndarray] = None,
    ) -> FeaturizedStructure:
        """Upload *batch* and run every stage up to the merged features.

        The returned arena stays live; on error it is released here.
        """
        sid = batch.structure_id
        th = self.thresholds
        arena = DeviceArena(sid, self.device, self.memory_budget_bytes)
        try:
            t = _run_stage("upload", sid, arena.upload, batch, ensemble=ensemble,
                           aux=self.providers.host_arrays(),
                           chunk_size=th.count("fusion.chunk_size"))
            context = ProviderContext(t, th)

            mask = _run_stage("masking", sid, compute_mask, t, th)
            h_mask = arena.put("mask", mask)

            fused = _run_stage("fusion", sid, compute_fused, t, arena.get(h_mask),
                               self.providers, th, context)
            h_fused = arena.put("fused", fused)

            scores = _run_stage("cryptic", sid, compute_cryptic, t, arena.get(h_fused),
                                self.providers.capabilities, t.ensemble, th)
            h_cryptic = arena.put("cryptic", scores.values)

            merged = _run_stage("merge", sid, merge_features, arena.get(h_fused),
                                arena.get(h_cryptic), sid)
            h_merged = arena.put("merged", merged)
        except BaseException:
            arena.release()
            raise
        logger.debug(f"{sid}: featurized {batch.residue_count} residues")
        return FeaturizedStructure(arena=arena, merged=h_merged,
                                   chains=tuple(batch.residue_chains),
                                   cryptic=scores)

    # ── inference ───────────────────────────────────────────────

    def infer(self, feat: FeaturizedStructure,
              snapshot: ParameterSnapshot) -> ActionValues:
        """Evaluate *snapshot* on resident features and download the Q-values."""
        arena = feat.arena
        sid = feat.structure_id
        if resolve_device(snapshot.device) != resolve_device(arena.device):
            raise IntegrityError(
                f"snapshot is on {snapshot.device}, arena is on {arena.device}",
                unit=sid, stage="inference")
        merged = arena.get(feat.merged)
        if merged.shape[1] != MERGED_DIM:
            raise IntegrityError(f"merged width {merged.shape[1]} != {MERGED_DIM}",
                                 unit=sid, stage="inference")
        q = _run_stage("inference", sid, infer, merged, snapshot, sid)
        h_q = arena.put("q_values", q, egress=True)
        host = arena.download(h_q)
        arena.free(h_q)
        return ActionValues(structure_id=sid, q=host,
                            actions=snapshot.config.actions, chains=feat.chains,
                            cryptic_action=snapshot.config.cryptic_action)

    # ── whole chain ─────────────────────────────────────────────

    def run(
        self,
        batch: PackedBatch,
        snapshot: ParameterSnapshot,
        ensemble: Optional[np.ndarray] = None,
    ) -> PipelineResult:
        """Run every stage for one structure; exactly one upload and one download."""
        t0 = time.time()
        with self.featurize(batch, ensemble) as feat:
            values = self.infer(feat, snapshot)
            transfers = tuple(feat.arena.transfers)
            info = feat.cryptic.as_dict()
        elapsed = time.time() - t0
        logger.debug(f"{batch.structure_id}: pipeline done in {elapsed:.2f}s")
        return PipelineResult(structure_id=batch.structure_id, action_values=values,
                              info_level=info, transfers=transfers, time_s=elapsed)

    def _outcome(self, batch, snapshot, ensemble) -> PipelineOutcome:
        try:
            return PipelineOutcome(batch.structure_id,
                                   result=self.run(batch, snapshot, ensemble))
        except CrypticScanError as exc:
            logger.warning(f"{batch.structure_id}: aborted: {exc}")
            return PipelineOutcome(batch.structure_id, error=exc)

    def run_many(
        self,
        batches: Sequence[PackedBatch],
        snapshot: ParameterSnapshot,
        ensembles: Optional[Mapping[str, np.ndarray]] = None,
    ) -> List[PipelineOutcome]:
        """Run independent structures concurrently.

        Returns one outcome per batch, in input order; failed structures
        carry their error instead of a result.
        """
        ensembles = ensembles or {}
        workers = min(self.max_concurrent, max(1, len(batches)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._outcome, b, snapshot,
                                   ensembles.get(b.structure_id))
                       for b in batches]
            outcomes = [f.result() for f in futures]
        n_ok = sum(o.ok for o in outcomes)
        logger.info(f"run_many: {n_ok}/{len(outcomes)} structures succeeded")
        return outcomes

    def submit(
        self,
        batch: PackedBatch,
        snapshot: ParameterSnapshot,
        ensemble: Optional[np.ndarray] = None,
    ) -> "Future[PipelineResult]":
        """Queue one structure; the future can be cancelled until it starts."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent,
                                                thread_name_prefix="cryptic-scan")
        return self._executor.submit(self.run, batch, snapshot, ensemble)

    def close(self, cancel_pending: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=cancel_pending)
            self._executor = None

    def __enter__(self) -> "CrypticPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"CrypticPipeline({self.device}, {self.providers!r}, "
                f"max_concurrent={self.max_concurrent})")
