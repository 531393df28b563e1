"""Tests for the provider capability interface (cryptic_scan.providers)
and the GNM spectra behind the built-in providers (cryptic_scan.spectral).
"""

import numpy as np
import pytest
import torch

from cryptic_scan.arena import DeviceArena
from cryptic_scan.errors import DeviceError, IntegrityError
from cryptic_scan.fusion import FUSED_SLOTS, compute_fused
from cryptic_scan.masking import compute_mask
from cryptic_scan.providers import (
    FLEXIBILITY,
    PROVIDER_SLOTS,
    ElasticNetworkProvider,
    FeatureProvider,
    PrecomputedProvider,
    ProviderContext,
    ProviderStack,
    ThermalModeProvider,
)
from cryptic_scan.spectral import (
    contact_graph,
    gnm_modes,
    gnm_msf,
    kirchhoff_matrix,
    pagerank,
    per_residue_entropy,
)


class _Constant:
    """Minimal provider satisfying the protocol structurally."""

    def __init__(self, name, slots, value=0.5, capabilities=None, width=None):
        self.name = name
        self.slots = slots
        self.capabilities = capabilities or {}
        self.value = value
        self.width = width

    def supply(self, context):
        w = self.width if self.width is not None else self.slots[1] - self.slots[0]
        return torch.full((context.n_residues, w), self.value)


@pytest.fixture
def context(small_batch):
    arena = DeviceArena("SMALL", "cpu")
    t = arena.upload(small_batch)
    yield ProviderContext(t)
    arena.release()


# ═══════════════════════════════════════════════════════════════════
# ProviderStack tiling
# ═══════════════════════════════════════════════════════════════════

class TestProviderStackTiling:

    def test_default_stack(self):
        stack = ProviderStack.default()
        assert stack.names == ["elastic_network", "thermal_modes"]
        assert stack.capabilities == {FLEXIBILITY: 120}

    def test_builtins_satisfy_protocol(self):
        assert isinstance(ElasticNetworkProvider(), FeatureProvider)
        assert isinstance(ThermalModeProvider(), FeatureProvider)
        assert isinstance(_Constant("c", (120, 136)), FeatureProvider)

    def test_order_independent(self):
        stack = ProviderStack([ThermalModeProvider(), ElasticNetworkProvider()])
        assert stack.names == ["elastic_network", "thermal_modes"]

    def test_gap_rejected(self):
        with pytest.raises(ValueError, match="tile"):
            ProviderStack([ElasticNetworkProvider(), _Constant("late", (130, 136))])

    def test_overlap_rejected(self):
        with pytest.raises(ValueError):
            ProviderStack([ElasticNetworkProvider(), _Constant("o", (126, 136))])

    def test_short_coverage_rejected(self):
        with pytest.raises(ValueError, match="cover"):
            ProviderStack([ElasticNetworkProvider()])

    def test_outside_range_rejected(self):
        with pytest.raises(ValueError):
            ProviderStack([_Constant("wide", (100, 136))])

    def test_capability_outside_slots(self):
        with pytest.raises(ValueError, match="capability"):
            ProviderStack([_Constant("c", (120, 136), capabilities={"x": 140})])

    def test_single_provider_may_fill_everything(self):
        stack = ProviderStack([_Constant("all", PROVIDER_SLOTS)])
        assert len(stack) == 1

    def test_replace(self):
        stack = ProviderStack.default().replace(_Constant("thermo2", (128, 136)))
        assert stack.names == ["elastic_network", "thermo2"]

    def test_replace_spanning_two(self):
        stack = ProviderStack.default().replace(_Constant("all", (120, 136)))
        assert stack.names == ["all"]
        assert stack.capabilities == {}

    def test_repr(self):
        assert "elastic_network[120:128]" in repr(ProviderStack.default())


# ═══════════════════════════════════════════════════════════════════
# Supply
# ═══════════════════════════════════════════════════════════════════

class TestSupply:

    def test_default_block(self, context, small_batch):
        block = ProviderStack.default().supply(context)
        assert block.shape == (small_batch.residue_count, 16)
        assert block.dtype == torch.float32
        assert bool(torch.isfinite(block).all())

    def test_wrong_width_is_integrity_error(self, context):
        stack = ProviderStack([ElasticNetworkProvider(),
                               _Constant("bad", (128, 136), width=3)])
        with pytest.raises(IntegrityError, match="bad"):
            stack.supply(context)

    def test_non_finite_is_device_error(self, context):
        stack = ProviderStack([ElasticNetworkProvider(),
                               _Constant("nan", (128, 136), value=float("nan"))])
        with pytest.raises(DeviceError, match="non-finite"):
            stack.supply(context)

    def test_context_memoises_modes(self, context):
        assert context.modes is context.modes
        assert context.graph is context.graph

    def test_custom_provider_lands_in_fused(self, small_batch):
        stack = ProviderStack.default().replace(_Constant("c", (128, 136), value=0.25))
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch)
            fused = compute_fused(t, compute_mask(t), stack)
        assert torch.all(fused[:, 128:136] == 0.25)


class TestElasticNetworkProvider:

    def test_msf_mean_normalised(self, context):
        out = ElasticNetworkProvider().supply(context)
        assert out[:, 0].mean().item() == pytest.approx(1.0)

    def test_helix_ends_most_flexible(self, context):
        msf = ElasticNetworkProvider().supply(context)[:, 0]
        mid = msf.shape[0] // 2
        assert msf[0] > msf[mid] and msf[-1] > msf[mid]

    def test_hinge_in_unit_interval(self, context):
        hinge = ElasticNetworkProvider().supply(context)[:, 4]
        assert bool(((hinge > 0) & (hinge <= 1)).all())


class TestThermalModeProvider:

    def test_hot_spot_is_indicator(self, context):
        hot = ThermalModeProvider().supply(context)[:, 6]
        assert set(hot.unique().tolist()) <= {0.0, 1.0}

    def test_share_in_unit_interval(self, context):
        share = ThermalModeProvider().supply(context)[:, 7]
        assert bool(((share >= 0) & (share <= 1 + 1e-9)).all())


class TestPrecomputedProvider:

    def test_width_validated(self):
        with pytest.raises(ValueError, match="slot width"):
            PrecomputedProvider("up", (128, 136), np.zeros((5, 3)))

    def test_staged_at_ingress(self, small_batch):
        R = small_batch.residue_count
        values = np.arange(R * 8, dtype=np.float32).reshape(R, 8)
        up = PrecomputedProvider("upstream", (128, 136), values)
        stack = ProviderStack.default().replace(up)
        assert set(stack.host_arrays()) == {"provider:upstream"}
        with DeviceArena("SMALL", "cpu") as arena:
            t = arena.upload(small_batch, aux=stack.host_arrays())
            block = stack.supply(ProviderContext(t))
        np.testing.assert_array_equal(block[:, 8:].numpy(), values)

    def test_not_staged_is_integrity_error(self, context, small_batch):
        up = PrecomputedProvider("upstream", (128, 136),
                                 np.zeros((small_batch.residue_count, 8)))
        with pytest.raises(IntegrityError, match="staged"):
            up.supply(context)

    def test_flexibility_capability(self, small_batch):
        up = PrecomputedProvider("flex", (120, 128),
                                 np.ones((small_batch.residue_count, 8)),
                                 capabilities={FLEXIBILITY: 121})
        stack = ProviderStack.default().replace(up)
        assert stack.capabilities == {FLEXIBILITY: 121}


# ═══════════════════════════════════════════════════════════════════
# Spectra
# ═══════════════════════════════════════════════════════════════════

def _chain_ca(n, spacing=3.8):
    return torch.tensor([[spacing * i, 0.0, 0.0] for i in range(n)])


class TestSpectral:

    def test_contact_graph_chain(self):
        g = contact_graph(_chain_ca(5), 4.0)
        assert g.num_nodes == 5
        assert g.edge_index.shape[1] == 8   # 4 bonds × 2 directions

    def test_kirchhoff_rows_sum_to_zero(self):
        gamma = kirchhoff_matrix(contact_graph(_chain_ca(6), 4.0))
        assert gamma.dtype == torch.float64
        assert torch.allclose(gamma.sum(dim=1), torch.zeros(6, dtype=torch.float64))
        assert gamma[0, 0] == 1 and gamma[2, 2] == 2 and gamma[0, 1] == -1

    def test_one_zero_mode_per_component(self):
        ca = torch.cat([_chain_ca(4), _chain_ca(4) + torch.tensor([100.0, 0, 0])])
        modes = gnm_modes(contact_graph(ca, 4.0))
        assert modes.n_internal == 6

    def test_sign_fixed(self):
        modes = gnm_modes(contact_graph(_chain_ca(8), 4.0))
        v = modes.eigenvectors
        pivot = v.abs().argmax(dim=0)
        assert torch.all(v[pivot, torch.arange(8)] > 0)

    def test_msf_symmetric_chain(self):
        msf = gnm_msf(gnm_modes(contact_graph(_chain_ca(9), 4.0)))
        assert torch.allclose(msf, msf.flip(0), atol=1e-8)
        assert msf[0] > msf[4]

    def test_entropy_positive(self):
        s = per_residue_entropy(gnm_modes(contact_graph(_chain_ca(6), 4.0)))
        assert torch.all(s > 0)

    def test_pagerank_sums_to_one(self):
        pr = pagerank(contact_graph(_chain_ca(7), 4.0))
        assert pr.sum().item() == pytest.approx(1.0)
        assert pr[3] > pr[0]

    def test_pagerank_isolated_nodes_uniform(self):
        pr = pagerank(contact_graph(_chain_ca(3, spacing=50.0), 4.0))
        assert torch.allclose(pr, torch.full((3,), 1 / 3, dtype=torch.float64))
