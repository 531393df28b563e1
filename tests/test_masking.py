"""Tests for glycan occlusion masking (cryptic_scan.masking)."""

import pytest
import torch

from cryptic_scan.arena import DeviceArena
from cryptic_scan.batch import AA_TO_IDX
from cryptic_scan.errors import IntegrityError
from cryptic_scan.masking import compute_mask, glycan_density, sequon_mask
from cryptic_scan.thresholds import DEFAULT_THRESHOLDS

from conftest import build_batch


def _codes(seq):
    return torch.tensor([AA_TO_IDX[a] for a in seq])


def _mask(batch, thresholds=DEFAULT_THRESHOLDS):
    with DeviceArena(batch.structure_id, "cpu") as arena:
        t = arena.upload(batch)
        return compute_mask(t, thresholds)


class TestSequonMask:

    def test_nxs_and_nxt(self):
        hit = sequon_mask(_codes("ANASANVTA"), torch.zeros(9, dtype=torch.long))
        assert hit.nonzero().flatten().tolist() == [1, 5]

    def test_proline_blocks(self):
        hit = sequon_mask(_codes("ANPSA"), torch.zeros(5, dtype=torch.long))
        assert not hit.any()

    def test_wrong_third_residue(self):
        hit = sequon_mask(_codes("ANAGA"), torch.zeros(5, dtype=torch.long))
        assert not hit.any()

    def test_motif_across_chain_break(self):
        chains = torch.tensor([0, 0, 0, 1, 1])
        hit = sequon_mask(_codes("AANAS"), chains)
        # N at 2, X at 3 (chain 1): not a sequon
        assert not hit.any()

    def test_motif_at_chain_end_ignored(self):
        hit = sequon_mask(_codes("AAAN"), torch.zeros(4, dtype=torch.long))
        assert not hit.any()

    def test_window_spreads_within_chain(self):
        chains = torch.tensor([0, 0, 0, 0, 1, 1])
        hit = sequon_mask(_codes("ANASAA"), chains, window=2)
        assert hit.tolist() == [True, True, True, True, False, False]


class TestComputeMask:

    def test_shape_dtype_range(self, small_batch):
        m = _mask(small_batch)
        assert m.shape == (small_batch.residue_count,)
        assert m.dtype == torch.float32
        assert bool(((m >= 0) & (m <= 1)).all())

    def test_only_sequon_asparagines_masked(self, small_batch):
        m = _mask(small_batch)
        assert m.nonzero().flatten().tolist() == [8, 22]

    def test_density_gate(self, small_batch):
        strict = DEFAULT_THRESHOLDS.replace({"mask.density_min": 1e6})
        assert not _mask(small_batch, strict).any()

    def test_weight_saturates(self, small_batch):
        low = DEFAULT_THRESHOLDS.replace({"mask.density_saturation": 1.0})
        m = _mask(small_batch, low)
        assert m[8].item() == pytest.approx(1.0)

    def test_weight_is_density_fraction(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            m = compute_mask(t)
            rows = torch.tensor([8])
            density = glycan_density(t, rows, DEFAULT_THRESHOLDS["mask.density_cutoff"])
            expected = min(1.0, density.item() / DEFAULT_THRESHOLDS["mask.density_saturation"])
            assert m[8].item() == pytest.approx(expected, rel=1e-6)

    def test_no_sequons_no_mask(self):
        batch = build_batch("MKLVAEGLLKRLEAILDGK", "NOSEQ")
        assert not _mask(batch).any()

    def test_deterministic(self, small_batch):
        assert torch.equal(_mask(small_batch), _mask(small_batch))

    def test_window_threshold(self, small_batch):
        wide = DEFAULT_THRESHOLDS.replace({"mask.sequon_window": 1.0})
        m = _mask(small_batch, wide)
        assert set(m.nonzero().flatten().tolist()) == {7, 8, 9, 21, 22, 23}

    def test_empty_range_integrity_error(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            t.stop = t.stop.clone()
            t.stop[3] = t.start[3]
            with pytest.raises(IntegrityError, match="empty atom range"):
                compute_mask(t)
