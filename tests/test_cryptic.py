"""Tests for the cryptic-site scores, ensembles and feature merge."""

import numpy as np
import pytest
import torch

from cryptic_scan.arena import DeviceArena
from cryptic_scan.cryptic import (
    CRYPTIC_DIM,
    CRYPTIC_SCORES,
    InfoLevel,
    compute_cryptic,
    weighted_contact_number,
)
from cryptic_scan.ensemble import breathing_ensemble
from cryptic_scan.errors import IntegrityError
from cryptic_scan.fusion import FUSED_DIM, compute_fused
from cryptic_scan.masking import compute_mask
from cryptic_scan.merge import MERGED_DIM, merge_features
from cryptic_scan.providers import ProviderStack


@pytest.fixture
def staged(small_batch):
    """(tensors, fused) for the small helix; arena released afterwards."""
    arena = DeviceArena("SMALL", "cpu")
    t = arena.upload(small_batch)
    stack = ProviderStack.default()
    fused = compute_fused(t, compute_mask(t), stack)
    yield t, fused, stack
    arena.release()


# ═══════════════════════════════════════════════════════════════════
# Scores
# ═══════════════════════════════════════════════════════════════════

class TestComputeCryptic:

    def test_shape_and_names(self, staged):
        t, fused, stack = staged
        scores = compute_cryptic(t, fused, stack.capabilities)
        assert scores.values.shape == (t.n_residues, CRYPTIC_DIM)
        assert scores.values.dtype == torch.float32
        assert len(CRYPTIC_SCORES) == CRYPTIC_DIM

    def test_finite(self, staged):
        t, fused, stack = staged
        assert bool(torch.isfinite(compute_cryptic(t, fused, stack.capabilities).values).all())

    def test_full_information_with_flexibility_provider(self, staged):
        t, fused, stack = staged
        scores = compute_cryptic(t, fused, stack.capabilities)
        assert scores.info_level[0] is InfoLevel.FULL
        # single conformation: variance is the reduced estimate
        assert scores.info_level[2] is InfoLevel.REDUCED
        assert scores.reduced == ("exposure_variance",)

    def test_flexibility_fallback_without_capability(self, staged):
        t, fused, _ = staged
        scores = compute_cryptic(t, fused, capabilities={})
        assert scores.info_level[0] is InfoLevel.REDUCED
        flex = scores.values[:, 0]
        assert flex.max().item() < 1.0
        assert flex.min().item() >= 0.0

    def test_ensemble_gives_full_variance(self, staged, small_batch):
        t, fused, stack = staged
        frames = torch.from_numpy(breathing_ensemble(small_batch, n_frames=3))
        scores = compute_cryptic(t, fused, stack.capabilities, frames)
        assert scores.info_level[2] is InfoLevel.FULL
        assert scores.as_dict()["exposure_variance"] == "full"
        assert bool((scores.values[:, 2] >= 0).all())

    def test_identical_frames_zero_variance(self, staged):
        t, fused, stack = staged
        frames = t.positions.unsqueeze(0).repeat(2, 1, 1)
        scores = compute_cryptic(t, fused, stack.capabilities, frames)
        assert torch.allclose(scores.values[:, 2], torch.zeros(t.n_residues))

    def test_centrality_peaks_at_one(self, staged):
        t, fused, stack = staged
        central = compute_cryptic(t, fused, stack.capabilities).values[:, 3]
        assert central.max().item() == pytest.approx(1.0)
        assert central.min().item() > 0.0

    def test_pocket_depth_non_negative(self, staged):
        t, fused, stack = staged
        pocket = compute_cryptic(t, fused, stack.capabilities).values[:, 1]
        assert bool((pocket >= 0).all())

    def test_fused_shape_checked(self, staged):
        t, fused, stack = staged
        with pytest.raises(IntegrityError, match="fused shape"):
            compute_cryptic(t, fused[:, :100], stack.capabilities)

    def test_ensemble_atom_count_checked(self, staged):
        t, fused, stack = staged
        bad = torch.zeros(2, t.n_atoms + 1, 3)
        with pytest.raises(IntegrityError, match="ensemble"):
            compute_cryptic(t, fused, stack.capabilities, bad)

    def test_as_dict(self, staged):
        t, fused, _ = staged
        d = compute_cryptic(t, fused, {}).as_dict()
        assert d == {"flexibility": "reduced", "pocket_depth": "full",
                     "exposure_variance": "reduced", "centrality": "full"}


class TestWeightedContactNumber:

    def test_pair(self):
        ca = torch.tensor([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        wcn = weighted_contact_number(ca)
        assert torch.allclose(wcn, torch.tensor([0.25, 0.25], dtype=torch.float64))

    def test_chunking_invariant(self):
        ca = torch.randn(50, 3, generator=torch.Generator().manual_seed(0)) * 10
        assert torch.allclose(weighted_contact_number(ca, 7),
                              weighted_contact_number(ca, 1024))


# ═══════════════════════════════════════════════════════════════════
# Ensembles
# ═══════════════════════════════════════════════════════════════════

class TestBreathingEnsemble:

    def test_shape_dtype(self, small_batch):
        frames = breathing_ensemble(small_batch, n_frames=4, stride=5)
        assert frames.shape == (4, small_batch.atom_count, 3)
        assert frames.dtype == np.float32

    def test_deterministic(self, small_batch):
        np.testing.assert_array_equal(breathing_ensemble(small_batch),
                                      breathing_ensemble(small_batch))

    def test_frozen_region_stays_close(self, small_batch):
        frames = breathing_ensemble(small_batch, n_frames=2, released=(10, 15))
        disp = np.linalg.norm(frames[-1] - small_batch.positions, axis=1)
        free = (small_batch.atom_residue >= 10) & (small_batch.atom_residue <= 15)
        assert disp[free].mean() > disp[~free].mean()

    def test_zero_temperature_is_static(self, small_batch):
        frames = breathing_ensemble(small_batch, n_frames=2, temperature=0.0)
        np.testing.assert_allclose(frames[1], small_batch.positions, atol=1e-5)


# ═══════════════════════════════════════════════════════════════════
# Merge
# ═══════════════════════════════════════════════════════════════════

class TestMergeFeatures:

    def test_width(self):
        merged = merge_features(torch.zeros(5, FUSED_DIM), torch.ones(5, CRYPTIC_DIM))
        assert merged.shape == (5, MERGED_DIM)
        assert MERGED_DIM == 140
        assert torch.all(merged[:, FUSED_DIM:] == 1)

    def test_fused_width_mismatch(self):
        with pytest.raises(IntegrityError, match="fused"):
            merge_features(torch.zeros(5, 135), torch.zeros(5, CRYPTIC_DIM))

    def test_cryptic_width_mismatch(self):
        with pytest.raises(IntegrityError, match="cryptic"):
            merge_features(torch.zeros(5, FUSED_DIM), torch.zeros(5, 3))

    def test_row_mismatch(self):
        with pytest.raises(IntegrityError, match="row mismatch") as info:
            merge_features(torch.zeros(5, FUSED_DIM), torch.zeros(4, CRYPTIC_DIM),
                           unit="1ABC")
        assert info.value.unit == "1ABC"
        assert info.value.stage == "merge"
