"""Tests for the device arena (cryptic_scan.arena)."""

import numpy as np
import pytest
import torch

from cryptic_scan.arena import (
    TRANSFER_LOG_LIMIT,
    DeviceArena,
    estimate_arena_bytes,
    resolve_device,
)
from cryptic_scan.errors import DeviceError, IntegrityError


class TestUpload:

    def test_tensors_shapes(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            assert t.n_atoms == small_batch.atom_count
            assert t.n_residues == small_batch.residue_count
            assert t.positions.dtype == torch.float32
            assert t.device == torch.device("cpu")

    def test_one_ingress_transfer(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            arena.upload(small_batch)
            assert len(arena.transfers) == 1
            assert arena.transfers[0].direction == "h2d"
            assert arena.transfers[0].nbytes > 0

    def test_name_indices(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            names = small_batch.atom_names
            assert all(names[i] == "CA" for i in t.idx_ca.tolist())
            assert all(names[i] == "N" for i in t.idx_n.tolist())
            # glycine has no CB
            gly = small_batch.sequence.index("G")
            assert int(t.idx_cb[gly]) == -1

    def test_backbone_flags(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            assert int(t.is_backbone.sum()) == 4 * small_batch.residue_count

    def test_chain_codes(self, two_chain_batch):
        with DeviceArena("DIMER", "cpu") as arena:
            t = arena.upload(two_chain_batch)
            assert set(t.res_chain.tolist()) == {0, 1}

    def test_second_upload_rejected(self, small_batch):
        with DeviceArena("SMALL", "cpu") as arena:
            arena.upload(small_batch)
            with pytest.raises(IntegrityError, match="already holds"):
                arena.upload(small_batch)

    def test_ensemble_shape_checked(self, small_batch):
        bad = np.zeros((2, small_batch.atom_count - 1, 3))
        with DeviceArena("SMALL", "cpu") as arena:
            with pytest.raises(IntegrityError, match="ensemble"):
                arena.upload(small_batch, ensemble=bad)

    def test_ensemble_staged_with_batch(self, small_batch):
        frames = np.repeat(small_batch.positions[None], 3, axis=0)
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch, ensemble=frames)
            assert t.ensemble.shape == (3, small_batch.atom_count, 3)
            assert len(arena.transfers) == 1

    def test_aux_arrays(self, small_batch):
        extra = {"provider:x": np.ones((small_batch.residue_count, 2))}
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch, aux=extra)
            assert t.aux["provider:x"].dtype == torch.float32


class TestMemoryBudget:

    def test_over_budget_raises_device_error(self, small_batch):
        arena = DeviceArena("SMALL", "cpu", memory_budget_bytes=1024)
        with pytest.raises(DeviceError, match="budget") as info:
            arena.upload(small_batch)
        assert info.value.unit == "SMALL"
        assert arena.transfers == []

    def test_within_budget(self, small_batch):
        need = estimate_arena_bytes(small_batch.atom_count, small_batch.residue_count)
        with DeviceArena("SMALL", "cpu", memory_budget_bytes=need) as arena:
            arena.upload(small_batch)

    def test_estimate_grows_with_frames(self):
        assert estimate_arena_bytes(1000, 120, n_frames=4) > estimate_arena_bytes(1000, 120)


class TestBuffers:

    def test_put_get(self):
        with DeviceArena("X", "cpu") as arena:
            h = arena.put("a", torch.ones(3))
            assert torch.equal(arena.get(h), torch.ones(3))
            assert arena.name_of(h) == "a"

    def test_handles_are_indices(self):
        with DeviceArena("X", "cpu") as arena:
            assert arena.put("a", torch.ones(1)) == 0
            assert arena.put("b", torch.ones(1)) == 1
            assert arena.handles() == {"a": 0, "b": 1}

    def test_invalid_handle(self):
        with DeviceArena("X", "cpu") as arena:
            with pytest.raises(IntegrityError, match="handle"):
                arena.get(5)

    def test_free(self):
        with DeviceArena("X", "cpu") as arena:
            h = arena.put("a", torch.ones(1))
            arena.free(h)
            with pytest.raises(IntegrityError):
                arena.get(h)

    def test_resident_buffer_not_downloadable(self):
        with DeviceArena("X", "cpu") as arena:
            h = arena.put("mask", torch.ones(3))
            with pytest.raises(IntegrityError, match="resident-only"):
                arena.download(h)

    def test_download_once(self):
        with DeviceArena("X", "cpu") as arena:
            h = arena.put("q", torch.arange(4.0), egress=True)
            host = arena.download(h)
            np.testing.assert_array_equal(host, np.arange(4.0))
            with pytest.raises(IntegrityError, match="already retrieved"):
                arena.download(h)

    def test_download_records_egress(self):
        with DeviceArena("X", "cpu") as arena:
            h = arena.put("q", torch.zeros(2, 2, dtype=torch.float64), egress=True)
            arena.download(h)
            assert [t.direction for t in arena.transfers] == ["d2h"]
            assert arena.transfers[0].nbytes == 32

    def test_freed_slot_reused(self):
        with DeviceArena("X", "cpu") as arena:
            arena.put("merged", torch.ones(3))
            for _ in range(10):
                h = arena.put("q", torch.zeros(2), egress=True)
                arena.download(h)
                arena.free(h)
            assert h == 1
            assert len(arena._buffers) == 2
            h2 = arena.put("q", torch.zeros(2), egress=True)
            arena.download(h2)

    def test_transfer_log_capped(self, small_batch):
        with DeviceArena("X", "cpu") as arena:
            arena.upload(small_batch)
            for _ in range(100):
                h = arena.put("q", torch.zeros(4), egress=True)
                arena.download(h)
                arena.free(h)
            assert len(arena.transfers) == TRANSFER_LOG_LIMIT
            assert arena.transfers[0].direction == "h2d"
            assert arena.n_transfers == 101

    def test_released_arena_unusable(self):
        arena = DeviceArena("X", "cpu")
        h = arena.put("a", torch.ones(1))
        arena.release()
        assert arena.released
        with pytest.raises(IntegrityError, match="released"):
            arena.get(h)
        with pytest.raises(IntegrityError):
            arena.put("b", torch.ones(1))

    def test_tensors_before_upload(self):
        with DeviceArena("X", "cpu") as arena:
            with pytest.raises(IntegrityError, match="nothing uploaded"):
                _ = arena.tensors


class TestResolveDevice:

    def test_explicit_cpu(self):
        assert resolve_device("cpu") == torch.device("cpu")

    def test_auto(self):
        expected = "cuda" if torch.cuda.is_available() else "cpu"
        assert resolve_device("auto").type == expected

    def test_passthrough(self):
        dev = torch.device("cpu")
        assert resolve_device(dev) is dev

    def test_cpu_forms_equal(self):
        assert resolve_device("cpu") == resolve_device(torch.device("cpu"))

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="needs CUDA")
    def test_bare_cuda_gets_index(self):
        index = torch.cuda.current_device()
        assert resolve_device("cuda") == torch.device("cuda", index)
        assert resolve_device(torch.device("cuda")).index == index
        assert resolve_device("auto") == resolve_device(f"cuda:{index}")
