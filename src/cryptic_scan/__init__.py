"""cryptic-scan: device-resident cryptic-site scoring for packed protein structures.

A packed structure is uploaded once, masked for glycan occlusion, fused
into a 136-slot descriptor, extended with four cryptic-site scores and
scored by a dueling Q-network, with only the final action values coming
back to the host.  An antithetic evolution strategy trains the network's
flat parameter vector without gradients.
"""
from .errors import (
    CrypticScanError, DataError, IntegrityError, DeviceError,
    TrainingDivergenceError,
)
from .thresholds import ThresholdRegistry, DEFAULT_THRESHOLDS

# Batches & device arena
from .batch import (
    AMINO_ACIDS, SS_STATES, AtomRecord, ResidueRecord, PackedBatch,
    ingest, vdw_radius,
)
from .arena import BufferHandle, Transfer, StructureTensors, DeviceArena

# Stages
from .masking import compute_mask, sequon_mask
from .providers import (
    PROVIDER_SLOTS, FeatureProvider, ProviderContext, ProviderStack,
    ElasticNetworkProvider, ThermalModeProvider, PrecomputedProvider,
)
from .fusion import FUSED_DIM, FUSED_SLOTS, compute_fused
from .ensemble import breathing_ensemble
from .cryptic import CRYPTIC_DIM, CRYPTIC_SCORES, InfoLevel, CrypticScores, compute_cryptic
from .merge import MERGED_DIM, merge_features

# Network & inference
from .network import (
    NetworkConfig, DuelingQNetwork, ParameterLayout, NetworkParameters,
    ParameterSnapshot, evaluate_q,
)
from .inference import ActionValues, CrypticCandidate, infer
from .pipeline import CrypticPipeline, PipelineResult, PipelineOutcome, FeaturizedStructure
from .checkpoint import save_checkpoint, load_checkpoint, CheckpointStore

# Training
from .rewards import RewardPrimitives, LabelFitness
from .trainer import (
    ESConfig, TrainerPhase, GenerationRecord, TrainResult, EvolutionTrainer,
    sample_noise, normalize_rewards, antithetic_update,
)

__all__ = [
    # Errors & thresholds
    "CrypticScanError", "DataError", "IntegrityError", "DeviceError",
    "TrainingDivergenceError",
    "ThresholdRegistry", "DEFAULT_THRESHOLDS",
    # Batches & device arena
    "AMINO_ACIDS", "SS_STATES", "AtomRecord", "ResidueRecord", "PackedBatch",
    "ingest", "vdw_radius",
    "BufferHandle", "Transfer", "StructureTensors", "DeviceArena",
    # Stages
    "compute_mask", "sequon_mask",
    "PROVIDER_SLOTS", "FeatureProvider", "ProviderContext", "ProviderStack",
    "ElasticNetworkProvider", "ThermalModeProvider", "PrecomputedProvider",
    "FUSED_DIM", "FUSED_SLOTS", "compute_fused",
    "breathing_ensemble",
    "CRYPTIC_DIM", "CRYPTIC_SCORES", "InfoLevel", "CrypticScores", "compute_cryptic",
    "MERGED_DIM", "merge_features",
    # Network & inference
    "NetworkConfig", "DuelingQNetwork", "ParameterLayout", "NetworkParameters",
    "ParameterSnapshot", "evaluate_q",
    "ActionValues", "CrypticCandidate", "infer",
    "CrypticPipeline", "PipelineResult", "PipelineOutcome", "FeaturizedStructure",
    "save_checkpoint", "load_checkpoint", "CheckpointStore",
    # Training
    "RewardPrimitives", "LabelFitness",
    "ESConfig", "TrainerPhase", "GenerationRecord", "TrainResult", "EvolutionTrainer",
    "sample_noise", "normalize_rewards", "antithetic_update",
]

__version__ = "0.1.0"
