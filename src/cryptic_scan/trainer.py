"""Evolution-strategy training of the dueling Q-network.

Provides:
- :class:`ESConfig` — population, noise and stopping hyperparameters
- :class:`EvolutionTrainer` — generation state machine over the flat
  parameter vector
- :func:`sample_noise`, :func:`normalize_rewards`, :func:`antithetic_update`
  — the pure pieces of one generation
- :class:`TrainResult` / :class:`GenerationRecord` — structured results

One generation
--------------
::

    SAMPLING     ε_1 … ε_{P/2} ~ N(0, σ² I)   (Generator seeded by (seed, generation))
    EVALUATING   member 2i   → θ + ε_i         member 2i+1 → θ − ε_i
                 reward = fitness(pipeline output over the training structures)
                 ── barrier: every member finishes ──
    UPDATING     n = normalize(rewards)
                 θ ← θ + α/(P σ) · Σ_i (n_{2i} − n_{2i+1}) ε_i   (float64, pair order)
                       − α λ θ                                  (optional L2 decay)

A pair whose two members score the same contributes exactly nothing.
Training stops after ``generations`` or when the mean reward has not
improved by ``plateau_min_delta`` for ``plateau_patience`` generations.

Usage
-----
>>> trainer = EvolutionTrainer(NetworkConfig(), ESConfig(population_size=64))
>>> result = trainer.train(batches, LabelFitness(labels))
>>> print(result.summary())
"""

from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy.stats import rankdata

from .batch import PackedBatch
from .errors import CrypticScanError, DeviceError, TrainingDivergenceError
from .inference import ActionValues
from .network import NetworkConfig, NetworkParameters, ParameterSnapshot
from .pipeline import CrypticPipeline, FeaturizedStructure

logger = logging.getLogger(__name__)

__all__ = [
    "ESConfig",
    "TrainerPhase",
    "GenerationRecord",
    "TrainResult",
    "EvolutionTrainer",
    "sample_noise",
    "normalize_rewards",
    "antithetic_update",
]

Fitness = Callable[[Sequence[ActionValues]], float]

NORMALIZATIONS = ("centered_rank", "z_score", "none")


# ═══════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ESConfig:
    """Hyperparameters of the antithetic evolution strategy."""

    # ── Population ──────────────────────────────────────────────
    population_size: int = 64        # members per generation (θ+ε and θ−ε)
    sigma: float = 0.02              # perturbation standard deviation
    step_size: float = 0.01          # α
    normalization: str = "centered_rank"
    weight_decay: float = 0.0        # L2 decay λ applied with the update

    # ── Stopping ────────────────────────────────────────────────
    generations: int = 100
    plateau_patience: int = 0        # 0 disables plateau stopping
    plateau_min_delta: float = 1e-4

    # ── Execution ───────────────────────────────────────────────
    seed: int = 42
    max_workers: int = 1             # members evaluated concurrently
    refeaturize_members: bool = False

    def __post_init__(self):
        assert self.population_size >= 2 and self.population_size % 2 == 0, (
            f"population_size ({self.population_size}) must be even and ≥ 2 "
            f"for antithetic pairing")
        assert self.sigma > 0, "sigma must be positive"
        assert self.step_size > 0, "step_size must be positive"
        assert self.normalization in NORMALIZATIONS, (
            f"normalization must be one of {NORMALIZATIONS}")
        assert self.weight_decay >= 0, "weight_decay must be ≥ 0"
        assert self.generations >= 1, "generations must be ≥ 1"
        assert self.plateau_patience >= 0, "plateau_patience must be ≥ 0"
        assert self.max_workers >= 1, "max_workers must be ≥ 1"

    @property
    def n_pairs(self) -> int:
        return self.population_size // 2


class TrainerPhase(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    EVALUATING = "evaluating"
    UPDATING = "updating"
    FINISHED = "finished"
    ABORTED = "aborted"


# ═══════════════════════════════════════════════════════════════════
# Result dataclasses
# ═══════════════════════════════════════════════════════════════════

@dataclass
class GenerationRecord:
    """Statistics of one completed generation."""
    generation: int
    mean_reward: float
    max_reward: float
    min_reward: float
    std_reward: float
    update_norm: float
    n_evaluations: int
    time_s: float = 0.0


@dataclass
class TrainResult:
    """Results from one training run."""
    generations: List[GenerationRecord] = field(default_factory=list)
    best_mean_reward: float = float("-inf")
    best_generation: int = -1
    stop_reason: str = ""
    n_evaluations: int = 0
    n_updates: int = 0
    time_s: float = 0.0

    @property
    def total_generations(self) -> int:
        return len(self.generations)

    @property
    def reward_history(self) -> List[float]:
        return [g.mean_reward for g in self.generations]

    def summary(self) -> str:
        lines = [
            "Evolution Strategy Training",
            "=" * 50,
            f"Generations:    {self.total_generations} ({self.stop_reason})",
            f"Evaluations:    {self.n_evaluations}",
            f"Updates:        {self.n_updates}",
            f"Best reward:    {self.best_mean_reward:.4f} (gen {self.best_generation})",
            f"Total time:     {self.time_s:.1f}s",
        ]
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable dictionary."""
        return {
            "total_generations": self.total_generations,
            "best_mean_reward": self.best_mean_reward,
            "best_generation": self.best_generation,
            "stop_reason": self.stop_reason,
            "n_evaluations": self.n_evaluations,
            "n_updates": self.n_updates,
            "time_s": self.time_s,
            "generations": [
                {
                    "generation": g.generation,
                    "mean_reward": g.mean_reward,
                    "max_reward": g.max_reward,
                    "min_reward": g.min_reward,
                    "std_reward": g.std_reward,
                    "update_norm": g.update_norm,
                    "n_evaluations": g.n_evaluations,
                    "time_s": g.time_s,
                }
                for g in self.generations
            ],
        }


# ═══════════════════════════════════════════════════════════════════
# Pure generation steps
# ═══════════════════════════════════════════════════════════════════

def sample_noise(seed: int, generation: int, n_pairs: int, n_params: int,
                 sigma: float) -> np.ndarray:
    """``(n_pairs, n_params)`` float64 perturbations for one generation."""
    rng = np.random.default_rng([seed, generation])
    return rng.standard_normal((n_pairs, n_params)) * sigma


def normalize_rewards(rewards: np.ndarray, method: str = "centered_rank") -> np.ndarray:
    """Scale-free rewards.

    ``centered_rank`` maps average ranks onto ``[−0.5, 0.5]``;
    ``z_score`` standardises; ``none`` returns a float64 copy.  Equal
    raw rewards always map to equal normalised rewards.
    """
    r = np.asarray(rewards, dtype=np.float64)
    if method == "none":
        return r.copy()
    if method == "z_score":
        std = r.std()
        if std == 0:
            return np.zeros_like(r)
        return (r - r.mean()) / std
    if method == "centered_rank":
        if r.size < 2:
            return np.zeros_like(r)
        ranks = rankdata(r, method="average")
        return (ranks - 1.0) / (r.size - 1.0) - 0.5
    raise ValueError(f"unknown normalization {method!r}")


def antithetic_update(
    noise: np.ndarray,
    normalized: np.ndarray,
    sigma: float,
    step_size: float,
) -> np.ndarray:
    """``α/(P σ) · Σ_i (n_{2i} − n_{2i+1}) ε_i``, reduced in pair order.

    *normalized* holds the population's rewards in member order
    (``θ+ε_0, θ−ε_0, θ+ε_1, …``).
    """
    n_pairs, n_params = noise.shape
    normalized = np.asarray(normalized, dtype=np.float64)
    assert normalized.shape == (2 * n_pairs,), "one reward per member"
    population = 2 * n_pairs
    grad = np.zeros(n_params, dtype=np.float64)
    for i in range(n_pairs):
        grad += (normalized[2 * i] - normalized[2 * i + 1]) * noise[i]
    return grad * (step_size / (population * sigma))


# ═══════════════════════════════════════════════════════════════════
# Trainer
# ═══════════════════════════════════════════════════════════════════

class EvolutionTrainer:
    """Antithetic ES over the flat network parameter vector.

    Parameters
    ----------
    network_config : NetworkConfig, optional
        Architecture; ignored when *params* is given.
    es_config : ESConfig, optional
        Hyperparameters.
    pipeline : CrypticPipeline, optional
        Featurization and inference; a CPU/auto pipeline by default.
    params : NetworkParameters, optional
        Starting point (e.g. from a checkpoint).  Otherwise initialised
        from ``es_config.seed``.
    verbose : bool
        Print per-generation progress.
    """

    def __init__(
        self,
        network_config: Optional[NetworkConfig] = None,
        es_config: Optional[ESConfig] = None,
        pipeline: Optional[CrypticPipeline] = None,
        params: Optional[NetworkParameters] = None,
        verbose: bool = True,
    ):
        self.es = es_config or ESConfig()
        if params is None:
            params = NetworkParameters.initialize(network_config, seed=self.es.seed)
        self._params = params
        self.network_config = params.config
        self.pipeline = pipeline or CrypticPipeline()
        self.verbose = verbose
        self.phase = TrainerPhase.IDLE
        self.generation = 0
        self.n_updates = 0
        self.n_evaluations = 0
        self.history: List[GenerationRecord] = []

    @property
    def params(self) -> NetworkParameters:
        """The authoritative parameters (mutated only between generations)."""
        return self._params

    def snapshot(self) -> ParameterSnapshot:
        return self.pipeline.snapshot(self._params, tag=f"gen{self.generation}")

    # ── members ─────────────────────────────────────────────────

    def _member_vector(self, base: np.ndarray, noise: np.ndarray, j: int) -> np.ndarray:
        eps = noise[j // 2]
        return base + eps if j % 2 == 0 else base - eps

    def _evaluate_member(
        self,
        j: int,
        base: np.ndarray,
        noise: np.ndarray,
        batches: Sequence[PackedBatch],
        feats: Optional[Sequence[FeaturizedStructure]],
        ensembles: Mapping[str, np.ndarray],
        fitness: Fitness,
    ) -> float:
        snap = ParameterSnapshot.from_vector(
            self._member_vector(base, noise, j), self.network_config,
            self.pipeline.device, tag=f"gen{self.generation}/m{j}")
        if feats is not None:
            values = [self.pipeline.infer(f, snap) for f in feats]
        else:
            values = [self.pipeline.run(b, snap, ensembles.get(b.structure_id)).action_values
                      for b in batches]
        return float(fitness(values))

    def _evaluate_population(self, base, noise, batches, feats, ensembles, fitness):
        P = self.es.population_size
        args = (base, noise, batches, feats, ensembles, fitness)
        if self.es.max_workers == 1:
            outcomes = []
            for j in range(P):
                try:
                    outcomes.append((self._evaluate_member(j, *args), None))
                except Exception as exc:
                    outcomes.append((None, exc))
        else:
            with ThreadPoolExecutor(max_workers=self.es.max_workers) as pool:
                futures = [pool.submit(self._evaluate_member, j, *args)
                           for j in range(P)]
                outcomes = [(None, f.exception()) if f.exception() is not None
                            else (f.result(), None) for f in futures]
        # barrier passed: every member has finished
        self.n_evaluations += P
        for j, (_, exc) in enumerate(outcomes):
            if exc is not None:
                self.phase = TrainerPhase.ABORTED
                logger.warning(f"generation {self.generation}: member {j} failed: {exc}")
                if isinstance(exc, CrypticScanError):
                    raise type(exc)(
                        f"member {j} failed on {exc.unit}: {exc.message}",
                        unit=self.generation, stage=exc.stage) from exc
                raise DeviceError(f"member {j} failed: {exc!r}",
                                  unit=self.generation, stage="evaluate") from exc
        return np.array([r for r, _ in outcomes], dtype=np.float64)

    # ── one generation ──────────────────────────────────────────

    def run_generation(
        self,
        batches: Sequence[PackedBatch],
        fitness: Fitness,
        feats: Optional[Sequence[FeaturizedStructure]] = None,
        ensembles: Optional[Mapping[str, np.ndarray]] = None,
    ) -> GenerationRecord:
        """Sample, evaluate every member, then apply exactly one update."""
        es = self.es
        g = self.generation
        t0 = time.time()

        self.phase = TrainerPhase.SAMPLING
        base = np.array(self._params.values, dtype=np.float64)
        noise = sample_noise(es.seed, g, es.n_pairs, base.size, es.sigma)

        self.phase = TrainerPhase.EVALUATING
        rewards = self._evaluate_population(base, noise, batches, feats,
                                            ensembles or {}, fitness)

        if not np.all(np.isfinite(rewards)):
            self.phase = TrainerPhase.ABORTED
            raise TrainingDivergenceError(
                f"{int((~np.isfinite(rewards)).sum())} non-finite rewards",
                unit=g, stage="update")
        if np.ptp(rewards) == 0:
            self.phase = TrainerPhase.ABORTED
            raise TrainingDivergenceError(
                f"all {rewards.size} rewards equal ({rewards[0]:.6g})",
                unit=g, stage="update")

        self.phase = TrainerPhase.UPDATING
        normalized = normalize_rewards(rewards, es.normalization)
        delta = antithetic_update(noise, normalized, es.sigma, es.step_size)
        if es.weight_decay > 0:
            delta -= es.step_size * es.weight_decay * base
        if not np.all(np.isfinite(delta)):
            self.phase = TrainerPhase.ABORTED
            raise TrainingDivergenceError("non-finite parameter update",
                                          unit=g, stage="update")
        self._params.apply_update(delta)
        self.n_updates += 1

        record = GenerationRecord(
            generation=g,
            mean_reward=float(rewards.mean()),
            max_reward=float(rewards.max()),
            min_reward=float(rewards.min()),
            std_reward=float(rewards.std()),
            update_norm=float(np.linalg.norm(delta)),
            n_evaluations=int(rewards.size),
            time_s=time.time() - t0,
        )
        self.history.append(record)
        self.generation += 1
        return record

    # ── full run ────────────────────────────────────────────────

    def train(
        self,
        batches: Sequence[PackedBatch],
        fitness: Fitness,
        ensembles: Optional[Mapping[str, np.ndarray]] = None,
    ) -> TrainResult:
        """Run generations until the budget or a reward plateau.

        Raises
        ------
        CrypticScanError
            Any member failure, re-tagged with the generation number.
        TrainingDivergenceError
            Non-finite or degenerate generation rewards.
        """
        es = self.es
        ensembles = ensembles or {}
        result = TrainResult()
        t0 = time.time()
        if self.verbose:
            print(f"  Network: {self._params.n_params:,} params on "
                  f"{self.pipeline.device}, population {es.population_size}")

        feats: Optional[List[FeaturizedStructure]] = None
        if not es.refeaturize_members:
            feats = []
        try:
            if feats is not None:
                for b in batches:
                    feats.append(self.pipeline.featurize(b, ensembles.get(b.structure_id)))

            since_best = 0
            for _ in range(es.generations):
                rec = self.run_generation(batches, fitness, feats, ensembles)
                result.generations.append(rec)
                if rec.mean_reward > result.best_mean_reward + es.plateau_min_delta:
                    result.best_mean_reward = rec.mean_reward
                    result.best_generation = rec.generation
                    since_best = 0
                else:
                    since_best += 1

                if self.verbose:
                    print(
                        f"  Gen {rec.generation:3d}: "
                        f"reward={rec.mean_reward:.4f} "
                        f"[{rec.min_reward:.4f}, {rec.max_reward:.4f}]  "
                        f"|Δθ|={rec.update_norm:.2e}  "
                        f"{'*' if since_best == 0 else ''}"
                    )
                logger.info(f"generation {rec.generation}: mean reward "
                            f"{rec.mean_reward:.4f}")

                if es.plateau_patience and since_best >= es.plateau_patience:
                    result.stop_reason = "plateau"
                    if self.verbose:
                        print(f"  Plateau at generation {rec.generation} "
                              f"(best @ {result.best_generation})")
                    break
            else:
                result.stop_reason = "budget"
        except BaseException:
            self.phase = TrainerPhase.ABORTED
            raise
        finally:
            for f in feats or []:
                f.release()

        self.phase = TrainerPhase.FINISHED
        result.n_evaluations = sum(r.n_evaluations for r in result.generations)
        result.n_updates = len(result.generations)
        result.time_s = time.time() - t0
        return result
