"""Tests for the dueling Q-network, parameter ownership and inference
(cryptic_scan.network, cryptic_scan.inference).
"""

import threading

import numpy as np
import pytest
import torch

from cryptic_scan.errors import DataError, DeviceError, IntegrityError
from cryptic_scan.inference import ActionValues, CrypticCandidate, infer
from cryptic_scan.network import (
    DuelingQNetwork,
    NetworkConfig,
    NetworkParameters,
    ParameterLayout,
    ParameterSnapshot,
    evaluate_q,
)


@pytest.fixture
def params():
    return NetworkParameters.initialize(seed=3)


@pytest.fixture
def features():
    g = torch.Generator().manual_seed(0)
    return torch.randn(25, 140, generator=g)


# ═══════════════════════════════════════════════════════════════════
# Architecture
# ═══════════════════════════════════════════════════════════════════

class TestArchitecture:

    def test_parameter_count(self):
        assert DuelingQNetwork().count_parameters() == 35163

    def test_layout_matches_module(self):
        layout = ParameterLayout.for_config(NetworkConfig())
        assert layout.n_params == 35163
        assert layout.names[0] == "encoder.0.weight"
        assert layout["encoder.0.weight"] == (0, (128, 140))
        assert layout["encoder.0.bias"][0] == 128 * 140

    def test_three_actions_count(self):
        config = NetworkConfig(actions=("a", "b", "cryptic"))
        assert ParameterLayout.for_config(config).n_params == 35163 + 25

    def test_summary(self):
        text = DuelingQNetwork().summary()
        assert "35,163" in text
        assert "140→128→96" in text

    def test_config_round_trip(self):
        c = NetworkConfig(head_dim=16, storage_dtype="bfloat16")
        assert NetworkConfig.from_dict(c.to_dict()) == c

    def test_config_rejects_unknown_cryptic_action(self):
        with pytest.raises(AssertionError):
            NetworkConfig(actions=("a", "b"), cryptic_action="cryptic")

    def test_layout_from_list_rejects_gaps(self):
        items = ParameterLayout.for_config(NetworkConfig()).to_list()
        items[1]["offset"] += 1
        with pytest.raises(DataError):
            ParameterLayout.from_list(items)


# ═══════════════════════════════════════════════════════════════════
# Ownership
# ═══════════════════════════════════════════════════════════════════

class TestParameters:

    def test_initialize_reproducible(self):
        a = NetworkParameters.initialize(seed=7)
        b = NetworkParameters.initialize(seed=7)
        np.testing.assert_array_equal(a.values, b.values)

    def test_initialize_bounds(self, params):
        w_off, shape = params.layout["encoder.0.weight"]
        w = params.values[w_off:w_off + shape[0] * shape[1]]
        assert np.abs(w).max() <= 1 / np.sqrt(140)

    def test_values_read_only(self, params):
        with pytest.raises(ValueError):
            params.values[0] = 1.0

    def test_apply_update(self, params):
        before = params.values.copy()
        delta = np.full(params.n_params, 0.5)
        params.apply_update(delta)
        np.testing.assert_allclose(params.values, before + 0.5)

    def test_apply_update_shape_checked(self, params):
        with pytest.raises(DataError):
            params.apply_update(np.zeros(3))

    def test_wrong_length_rejected(self):
        with pytest.raises(DataError):
            NetworkParameters(NetworkConfig(), np.zeros(10))

    def test_snapshot_is_independent(self, params, features):
        snap = params.snapshot("cpu")
        q_before = evaluate_q(snap, features)
        params.apply_update(np.ones(params.n_params))
        assert torch.equal(evaluate_q(snap, features), q_before)

    def test_snapshot_tensors_immutable_mapping(self, params):
        snap = params.snapshot("cpu")
        with pytest.raises(TypeError):
            snap.tensors["encoder.0.weight"] = torch.zeros(1)

    def test_snapshot_storage_dtype(self):
        p = NetworkParameters.initialize(NetworkConfig(storage_dtype="bfloat16"))
        snap = p.snapshot("cpu", tag="bf16")
        assert snap.dtype == torch.bfloat16
        assert snap.tensors["encoder.0.weight"].dtype == torch.bfloat16
        assert snap.tag == "bf16"

    def test_from_vector_shape_checked(self):
        with pytest.raises(DataError):
            ParameterSnapshot.from_vector(np.zeros(5), NetworkConfig())


# ═══════════════════════════════════════════════════════════════════
# Evaluation
# ═══════════════════════════════════════════════════════════════════

class TestEvaluateQ:

    def test_shape_dtype(self, params, features):
        q = evaluate_q(params.snapshot(), features)
        assert q.shape == (25, 2)
        assert q.dtype == torch.float64

    def test_matches_module_forward(self, params, features):
        net = DuelingQNetwork().double()
        for name, (offset, shape) in params.layout:
            size = int(np.prod(shape))
            value = torch.from_numpy(params.values[offset:offset + size].copy()).view(shape)
            net.get_parameter(name).data.copy_(value)
        with torch.no_grad():
            v, a = net(features.double())
        expected = v + a - a.mean(dim=1, keepdim=True)
        q = evaluate_q(params.snapshot(), features)
        assert torch.allclose(q, expected, atol=1e-4)

    def test_rows_independent(self, params, features):
        snap = params.snapshot()
        full = evaluate_q(snap, features)
        part = evaluate_q(snap, features[5:9])
        assert torch.allclose(full[5:9], part)

    def test_deterministic(self, params, features):
        snap = params.snapshot()
        assert torch.equal(evaluate_q(snap, features), evaluate_q(snap, features))

    def test_bfloat16_close_to_float32(self, params, features):
        bf = NetworkParameters(NetworkConfig(storage_dtype="bfloat16"), params.values)
        q32 = evaluate_q(params.snapshot(), features)
        q16 = evaluate_q(bf.snapshot(), features)
        assert q16.dtype == torch.float64
        assert torch.allclose(q16, q32, atol=0.1)

    def test_half_storage_accumulates_in_float64(self, params):
        x = torch.randn(2000, 140, generator=torch.Generator().manual_seed(1))
        half = NetworkParameters(NetworkConfig(storage_dtype="float16"), params.values)
        snap = half.snapshot()
        net = DuelingQNetwork().double()
        for name, tensor in snap.tensors.items():
            net.get_parameter(name).data.copy_(tensor.to(torch.float64))
        with torch.no_grad():
            v, a = net(x.double())
        expected = v + a - a.mean(dim=1, keepdim=True)
        assert torch.allclose(evaluate_q(snap, x), expected, rtol=0, atol=1e-12)

    def test_concurrent_snapshots(self, features):
        snaps = [NetworkParameters.initialize(seed=s).snapshot() for s in range(4)]
        expected = [evaluate_q(s, features) for s in snaps]
        results = [None] * 4

        def work(i):
            for _ in range(5):
                results[i] = evaluate_q(snaps[i], features)

        threads = [threading.Thread(target=work, args=(i,)) for i in range(4)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        for got, want in zip(results, expected):
            assert torch.allclose(got, want)


class TestInfer:

    def test_width_checked(self, params):
        with pytest.raises(IntegrityError, match="expects"):
            infer(torch.zeros(4, 136), params.snapshot(), unit="X")

    def test_non_finite_is_device_error(self, params, features):
        bad = features.clone()
        bad[3, 0] = float("nan")
        with pytest.raises(DeviceError, match="1 residues") as info:
            infer(bad, params.snapshot(), unit="X")
        assert info.value.unit == "X"

    def test_returns_float64(self, params, features):
        q = infer(features, params.snapshot())
        assert q.dtype == torch.float64
        assert q.shape == (25, 2)


# ═══════════════════════════════════════════════════════════════════
# Host-side action values
# ═══════════════════════════════════════════════════════════════════

def _values(q, chains=None):
    q = np.asarray(q, dtype=np.float64)
    return ActionValues("S", q, ("non_cryptic", "cryptic"),
                        chains or ["A"] * q.shape[0])


class TestActionValues:

    def test_scores_are_cryptic_advantage(self):
        av = _values([[1.0, 3.0], [2.0, 0.5]])
        np.testing.assert_allclose(av.scores(), [2.0, -1.5])

    def test_greedy(self):
        assert _values([[1.0, 3.0], [2.0, 0.5]]).greedy() == ["cryptic", "non_cryptic"]

    def test_margins(self):
        np.testing.assert_allclose(_values([[1.0, 3.0], [2.0, 0.5]]).margins(), [2.0, 1.5])

    def test_top_k_order_and_ties(self):
        av = _values([[0.0, 1.0], [0.0, 2.0], [0.0, 1.0], [0.0, -1.0]],
                     chains=["A", "A", "B", "B"])
        top = av.top_k(3)
        assert [c.residue_index for c in top] == [1, 0, 2]
        assert top[2].chain == "B"
        assert isinstance(top[0], CrypticCandidate)
        assert top[0].confidence == pytest.approx(np.tanh(2.0))

    def test_top_k_bounds(self):
        av = _values([[0.0, 1.0], [0.0, 2.0]])
        assert av.top_k(0) == []
        assert len(av.top_k(10)) == 2

    def test_candidate_to_dict(self):
        c = CrypticCandidate(4, "A", 0.1234567891, 0.5)
        assert c.to_dict() == {"residue_index": 4, "chain": "A",
                               "score": 0.123457, "confidence": 0.5}

    def test_column(self):
        av = _values([[1.0, 3.0], [2.0, 0.5]])
        np.testing.assert_array_equal(av.column("cryptic"), [3.0, 0.5])
