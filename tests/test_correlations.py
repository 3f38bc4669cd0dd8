"""Tests for the multiple-tau correlator and its level cascade."""

import dataclasses
import math

import pytest
import torch
from numpy.testing import assert_allclose

from torch_multitau.correlations import (
    CircularBuffer,
    CorrelatorConfig,
    Level,
    MultipleTauCorrelator,
    Sample,
)
from torch_multitau.errors import ConfigurationError, DimensionMismatchError
from torch_multitau.operators import (
    CORRELATION_OPERATIONS,
    Compression,
    CorrelationOperation,
    Normalization,
)


def feed(correlator: MultipleTauCorrelator, samples: torch.Tensor) -> None:
    """Update the correlator with each row of ``samples``."""
    for sample in samples:
        correlator.update(sample)


def assert_results_equal(first, second) -> None:
    """Bit-identical comparison of two correlation results."""
    assert torch.equal(first.lag_times, second.lag_times)
    assert torch.equal(first.counts, second.counts)
    assert torch.equal(first.values, second.values)


class TestCircularBuffer:
    """Test suite for the ring buffer backing each level."""

    def test_keeps_latest_in_order(self, device: torch.device) -> None:
        """Test overwriting and chronological readout."""
        buf = CircularBuffer(3, device=device)
        for value in range(5):
            buf.append(torch.tensor([float(value)]))

        assert buf.is_full
        assert buf.count == 3
        assert_allclose(buf.get_array().cpu().numpy().ravel(), [2.0, 3.0, 4.0])
        assert buf[0].item() == 2.0
        assert buf[2].item() == 4.0

    def test_partial_fill(self, device: torch.device) -> None:
        """Test readout before the buffer wraps."""
        buf = CircularBuffer(4, device=device)
        assert buf.get_array().numel() == 0

        buf.append(torch.tensor(1.0))
        buf.append(torch.tensor(2.0))
        assert not buf.is_full
        assert_allclose(buf.get_array().cpu().numpy(), [1.0, 2.0])

    def test_index_out_of_range(self) -> None:
        """Test indexing past the stored elements."""
        buf = CircularBuffer(2)
        buf.append(torch.tensor(1.0))
        with pytest.raises(IndexError):
            buf[1]


class TestLevel:
    """Test suite for pushing and compressing samples within a level."""

    @staticmethod
    def push_range(level: Level, n: int, *, can_compress: bool = True) -> list:
        return [
            level.push(
                Sample(torch.tensor([float(t)], dtype=torch.float64), float(t)),
                can_compress=can_compress,
            )
            for t in range(n)
        ]

    def test_merges_two_oldest_every_second_arrival(self, device: torch.device) -> None:
        """Test compression timing, values and ticks."""
        level = Level(0, 4, device=device)
        merged = self.push_range(level, 8)

        assert merged[:4] == [None] * 4
        assert merged[5] is None
        assert merged[7] is None
        assert merged[4].values.item() == pytest.approx(0.5)
        assert merged[4].tick == pytest.approx(0.5)
        assert merged[6].values.item() == pytest.approx(2.5)
        assert merged[6].tick == pytest.approx(2.5)
        assert len(level) == 4

    def test_deepest_level_never_merges(self, device: torch.device) -> None:
        """Test the last level only evicts."""
        level = Level(3, 4, device=device)
        merged = self.push_range(level, 10, can_compress=False)

        assert all(sample is None for sample in merged)
        assert len(level) == 4

    @pytest.mark.parametrize(
        ("compression", "expected"),
        [
            (Compression.LINEAR, 0.5),
            (Compression.DISCARD1, 1.0),
            (Compression.DISCARD2, 0.0),
        ],
    )
    def test_compression_rules(
        self, compression: Compression, expected: float, device: torch.device
    ) -> None:
        """Test each rule acts on values and ticks alike."""
        level = Level(0, 2, compression, device=device)
        merged = self.push_range(level, 3)[2]

        assert merged.values.item() == pytest.approx(expected)
        assert merged.tick == pytest.approx(expected)

    def test_merged_sample_survives_overwrite(self, device: torch.device) -> None:
        """Test a discarded-rule sample is not a view into the ring."""
        level = Level(0, 2, Compression.DISCARD2, device=device)
        merged = self.push_range(level, 4)[2]

        assert merged.values.item() == 0.0


class TestCorrelatorConfig:
    """Test suite for configuration validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"tau_lin": 1, "tau_max": 8},
            {"tau_lin": 0, "tau_max": 8},
            {"tau_lin": 8, "tau_max": 4},
            {"tau_lin": 4, "tau_max": 8, "delta_N": 0},
            {"tau_lin": 4, "tau_max": 8, "delta_N": -3},
            {"tau_lin": 4.0, "tau_max": 8},
            {"tau_lin": 4, "tau_max": 8, "operation": "cross_entropy"},
            {"tau_lin": 4, "tau_max": 8, "compression": "median"},
            {"tau_lin": 4, "tau_max": 8, "normalization": "sqrt"},
            {
                "tau_lin": 4,
                "tau_max": 8,
                "operation": "square_distance",
                "normalization": "connected",
            },
            {
                "tau_lin": 4,
                "tau_max": 8,
                "operation": "square_distance_componentwise",
                "normalization": "normalized",
            },
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        """Test bad configurations fail fast."""
        with pytest.raises(ConfigurationError):
            CorrelatorConfig(**kwargs)
        with pytest.raises(ConfigurationError):
            MultipleTauCorrelator(**kwargs)

    def test_tags_are_coerced(self) -> None:
        """Test string tags become enum members."""
        config = CorrelatorConfig(
            tau_max=8,
            tau_lin=4,
            operation="componentwise_product",
            compression="discard1",
            normalization="connected",
        )
        assert config.operation is CorrelationOperation.COMPONENTWISE_PRODUCT
        assert config.compression is Compression.DISCARD1
        assert config.normalization is Normalization.CONNECTED

    @pytest.mark.parametrize(
        ("tag", "operation"),
        [
            ("scalar_product", CorrelationOperation.SCALAR_PRODUCT),
            ("component_product", CorrelationOperation.COMPONENTWISE_PRODUCT),
            ("square_distance", CorrelationOperation.SQUARE_DISTANCE),
        ],
    )
    def test_short_operation_tags(
        self, tag: str, operation: CorrelationOperation
    ) -> None:
        """Test the short operation tags select the matching operation."""
        correlator = MultipleTauCorrelator(tau_max=8, tau_lin=4, operation=tag)
        correlator.update(torch.ones(3))

        assert correlator.config.operation is operation
        assert correlator.result().counts.tolist() == [1]

    def test_immutable(self) -> None:
        """Test the configuration cannot change after construction."""
        config = CorrelatorConfig(tau_max=8, tau_lin=4)
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.tau_lin = 2

    @pytest.mark.parametrize(
        ("tau_lin", "tau_max", "depth"),
        [(4, 32, 5), (2, 2, 2), (16, 16, 2), (5, 32, 4), (8, 7000, 11)],
    )
    def test_hierarchy_depth(self, tau_lin: int, tau_max: int, depth: int) -> None:
        """Test the coarsest level is the first to reach tau_max."""
        config = CorrelatorConfig(tau_max=tau_max, tau_lin=tau_lin)
        assert config.hierarchy_depth == depth
        assert (tau_lin - 1) * 2 ** (depth - 1) >= tau_max
        assert (tau_lin - 1) * 2 ** (depth - 2) < tau_max


class TestMultipleTauCorrelator:
    """Test suite for accumulation and result assembly."""

    def test_zero_lag_is_mean_self_product(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test lag 0 equals the mean of each sample with itself."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=8, device=device)
        feed(correlator, random_samples)

        result = correlator.result()
        expected = (random_samples**2).sum(dim=-1).mean()
        assert result.lag_times[0].item() == 0
        assert result.counts[0].item() == len(random_samples)
        assert_allclose(result.values[0].item(), expected.item(), rtol=1e-12)

    @pytest.mark.parametrize("operation", list(CorrelationOperation))
    def test_constant_sequence(
        self, operation: CorrelationOperation, device: torch.device
    ) -> None:
        """Test a constant input gives op(c, c) at every lag."""
        constant = torch.tensor([1.0, 2.0, 3.0, 4.0], dtype=torch.float64, device=device)
        correlator = MultipleTauCorrelator(
            tau_max=64, tau_lin=4, operation=operation, device=device
        )
        for _ in range(300):
            correlator.update(constant)

        result = correlator.result()
        expected = CORRELATION_OPERATIONS[operation](constant.unsqueeze(0), constant)[0]
        assert len(result) > 4
        assert (result.counts > 0).all()
        for _, value, _ in result:
            assert_allclose(value.cpu().numpy(), expected.cpu().numpy(), atol=1e-12)

    def test_memory_is_logarithmic(self, device: torch.device) -> None:
        """Test stored samples grow with log(N), not N."""
        tau_lin, n_samples = 8, 5000
        correlator = MultipleTauCorrelator(
            tau_max=10**6, tau_lin=tau_lin, device=device
        )
        generator = torch.Generator().manual_seed(1)
        feed(correlator, torch.randn(n_samples, 2, generator=generator))

        n_levels_bound = math.log2(n_samples / tau_lin) + 2
        assert correlator.n_levels <= n_levels_bound
        assert correlator.n_stored_samples <= tau_lin * n_levels_bound
        assert all(len(level) <= tau_lin for level in correlator.levels)

    def test_levels_grow_lazily(self, device: torch.device) -> None:
        """Test levels appear only when a merged sample needs one."""
        correlator = MultipleTauCorrelator(tau_max=32, tau_lin=4, device=device)
        assert correlator.n_levels == 0

        feed(correlator, torch.ones(4, 1))
        assert correlator.n_levels == 1
        correlator.update(torch.ones(1))
        assert correlator.n_levels == 2

    def test_levels_capped_at_hierarchy_depth(self, device: torch.device) -> None:
        """Test no level beyond the configured depth is created."""
        correlator = MultipleTauCorrelator(tau_max=8, tau_lin=4, device=device)
        feed(correlator, torch.ones(1000, 1))

        assert correlator.n_levels == correlator.config.hierarchy_depth == 3

    @pytest.mark.parametrize("delta_N", [1, 5])
    def test_lag_axis(self, delta_N: int, device: torch.device) -> None:  # noqa: N803
        """Test lag times are sorted, deduplicated and scaled by delta_N."""
        correlator = MultipleTauCorrelator(
            tau_max=32, tau_lin=4, delta_N=delta_N, device=device
        )
        feed(correlator, torch.ones(1000, 1))

        expected = [0, 1, 2, 3, 4, 6, 8, 12, 16, 24, 32, 48]
        lag_times = correlator.result().lag_times.tolist()
        assert lag_times == [delta_N * lag for lag in expected]

    def test_exponential_decay(self, device: torch.device) -> None:
        """Test a decaying signal reproduces exp(-t / tau) within 5%."""
        tau = 15.0
        direction = torch.ones(3, dtype=torch.float64, device=device) / math.sqrt(3.0)
        correlator = MultipleTauCorrelator(
            tau_max=32,
            tau_lin=4,
            delta_N=1,
            operation="scalar_product",
            normalization="normalized",
            device=device,
        )
        for t in range(1000):
            correlator.update(math.exp(-t / tau) * direction)

        result = correlator.result()
        expected = torch.exp(-result.lag_times.to(torch.float64) / tau)
        assert result.lag_times[-1].item() >= 32
        assert_allclose(result.values.cpu().numpy(), expected.cpu().numpy(), rtol=0.05)

    def test_include_empty(self, device: torch.device) -> None:
        """Test lags without contributions are marked, not invented."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=8, device=device)
        feed(correlator, torch.ones(3, 2))

        assert len(correlator.result()) == 3

        result = correlator.result(include_empty=True)
        assert result.lag_times.tolist() == list(range(8))
        assert result.counts.tolist() == [3, 2, 1, 0, 0, 0, 0, 0]
        assert torch.isnan(result.values[3:]).all()
        assert not torch.isnan(result.values[:3]).any()

    def test_result_is_idempotent(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test repeated queries return bit-identical results."""
        correlator = MultipleTauCorrelator(
            tau_max=64, tau_lin=4, normalization="normalized", device=device
        )
        feed(correlator, random_samples)

        assert_results_equal(correlator.result(), correlator.result())

    def test_reset_matches_fresh(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test reset returns to the just-constructed state."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        fresh = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        feed(correlator, random_samples)

        correlator.reset()

        assert correlator.n_samples == 0
        assert correlator.n_levels == 0
        assert len(correlator.result()) == 0
        assert_results_equal(correlator.result(), fresh.result())
        # Dimension is free again
        correlator.update(torch.ones(5))

    def test_dimension_mismatch_leaves_state(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test a rejected sample changes nothing."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        feed(correlator, random_samples[:10])
        before = correlator.result()

        with pytest.raises(DimensionMismatchError):
            correlator.update(torch.ones(2))

        assert correlator.n_samples == 10
        assert_results_equal(before, correlator.result())

    def test_dimension_fixed_at_construction(self, device: torch.device) -> None:
        """Test the dim argument pins the sample dimension."""
        correlator = MultipleTauCorrelator(tau_max=8, tau_lin=4, dim=3, device=device)
        with pytest.raises(DimensionMismatchError):
            correlator.update(torch.ones(4))

    def test_complex_product_needs_even_dimension(self) -> None:
        """Test (re, im) pairs are enforced."""
        with pytest.raises(ConfigurationError):
            MultipleTauCorrelator(
                tau_max=8, tau_lin=4, operation="complex_conjugate_product", dim=3
            )
        correlator = MultipleTauCorrelator(
            tau_max=8, tau_lin=4, operation="complex_conjugate_product"
        )
        with pytest.raises(DimensionMismatchError):
            correlator.update(torch.ones(3))

    def test_multidimensional_observable_is_flattened(
        self, device: torch.device
    ) -> None:
        """Test per-particle observables are treated as one vector."""
        correlator = MultipleTauCorrelator(
            tau_max=8, tau_lin=4, operation="componentwise_product", device=device
        )
        correlator.update(torch.ones(2, 3))

        assert correlator.dim == 6
        assert correlator.result().values.shape == (1, 6)

    def test_tensor_product_shape(self, device: torch.device) -> None:
        """Test cross tensor products of unequal dimensions."""
        correlator = MultipleTauCorrelator(
            tau_max=8, tau_lin=4, operation="tensor_product", device=device
        )
        correlator.update(torch.ones(2), torch.ones(3))

        assert correlator.result().values.shape == (1, 2, 3)

    def test_cross_correlation_recovers_delay(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test <A(t) B(t + tau)> for B delayed by two samples."""
        n_samples = len(random_samples) - 2
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=8, device=device)
        for t in range(n_samples):
            correlator.update(random_samples[t + 2], random_samples[t])

        result = correlator.result()
        delayed = result.lag_times == 2
        expected = (random_samples[2 : n_samples] ** 2).sum(dim=-1).mean()
        assert result.counts[delayed].item() == n_samples - 2
        assert_allclose(result.values[delayed].item(), expected.item(), rtol=1e-12)

    def test_cross_and_auto_samples_do_not_mix(self, device: torch.device) -> None:
        """Test a correlator keeps to one mode."""
        correlator = MultipleTauCorrelator(tau_max=8, tau_lin=4, device=device)
        correlator.update(torch.ones(2))
        with pytest.raises(DimensionMismatchError):
            correlator.update(torch.ones(2), torch.ones(2))

    def test_normalized(self, random_samples: torch.Tensor, device: torch.device) -> None:
        """Test normalization divides by the zero-lag value."""
        raw = MultipleTauCorrelator(
            tau_max=64, tau_lin=4, operation="componentwise_product", device=device
        )
        normalized = MultipleTauCorrelator(
            tau_max=64,
            tau_lin=4,
            operation="componentwise_product",
            normalization="normalized",
            device=device,
        )
        feed(raw, random_samples)
        feed(normalized, random_samples)

        raw_values = raw.result().values
        values = normalized.result().values
        assert_allclose(values[0].cpu().numpy(), 1.0)
        assert_allclose(
            values.cpu().numpy(), (raw_values / raw_values[0]).cpu().numpy()
        )

    def test_connected(self, random_samples: torch.Tensor, device: torch.device) -> None:
        """Test connected correlations subtract the product of the means."""
        samples = random_samples + 5.0
        raw = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        connected = MultipleTauCorrelator(
            tau_max=64, tau_lin=4, normalization="connected", device=device
        )
        feed(raw, samples)
        feed(connected, samples)

        mean = samples.mean(dim=0)
        expected = raw.result().values - mean @ mean
        assert_allclose(
            connected.result().values.cpu().numpy(),
            expected.cpu().numpy(),
            rtol=1e-10,
            atol=1e-9,
        )

    def test_connected_constant_is_zero(self, device: torch.device) -> None:
        """Test a constant input has no connected correlation."""
        correlator = MultipleTauCorrelator(
            tau_max=16,
            tau_lin=4,
            operation="componentwise_product",
            normalization="connected",
            device=device,
        )
        feed(correlator, torch.full((100, 3), 2.5))

        assert_allclose(correlator.result().values.cpu().numpy(), 0.0, atol=1e-12)

    def test_square_distance_is_msd(self, device: torch.device) -> None:
        """Test square distance of a uniform drift grows quadratically."""
        correlator = MultipleTauCorrelator(
            tau_max=64, tau_lin=8, operation="square_distance", device=device
        )
        velocity = torch.tensor([1.0, 2.0, 2.0], dtype=torch.float64)
        for t in range(500):
            correlator.update(t * velocity)

        result = correlator.result()
        expected = result.lag_times.to(torch.float64) ** 2 * 3.0
        assert_allclose(result.values.cpu().numpy(), expected.cpu().numpy(), rtol=1e-12)


class TestCheckpoint:
    """Test suite for state_dict round trips."""

    def test_resume(self, random_samples: torch.Tensor, device: torch.device) -> None:
        """Test a restored correlator continues exactly."""
        options = {"tau_max": 64, "tau_lin": 4, "operation": "componentwise_product"}
        reference = MultipleTauCorrelator(**options, device=device)
        first = MultipleTauCorrelator(**options, device=device)
        feed(reference, random_samples)
        feed(first, random_samples[:123])

        resumed = MultipleTauCorrelator(**options, device=device)
        resumed.load_state_dict(first.state_dict())
        feed(resumed, random_samples[123:])

        assert resumed.n_samples == reference.n_samples
        assert_results_equal(resumed.result(), reference.result())

    def test_rejects_other_configuration(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test checkpoints only load into an identical configuration."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        feed(correlator, random_samples[:20])
        state = correlator.state_dict()

        with pytest.raises(ConfigurationError):
            MultipleTauCorrelator(tau_max=64, tau_lin=8).load_state_dict(state)
        with pytest.raises(ConfigurationError):
            correlator.load_state_dict({**state, "version": 99})
        with pytest.raises(ConfigurationError):
            correlator.load_state_dict({**state, "kind": "TimeSeries"})

    def test_state_dict_is_detached(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test later updates do not alter a saved checkpoint."""
        correlator = MultipleTauCorrelator(tau_max=64, tau_lin=4, device=device)
        feed(correlator, random_samples[:20])
        state = correlator.state_dict()
        sums = state["levels"][0]["sums"].clone()

        feed(correlator, random_samples[20:40])

        assert torch.equal(state["levels"][0]["sums"], sums)

    def test_from_config_and_to(
        self, random_samples: torch.Tensor, device: torch.device
    ) -> None:
        """Test a correlator rebuilt from a config matches after a device move."""
        correlator = MultipleTauCorrelator(
            tau_max=32, tau_lin=4, delta_N=2, normalization="connected"
        )
        twin = MultipleTauCorrelator.from_config(correlator.config)
        assert twin.config == correlator.config

        feed(correlator, random_samples)
        feed(twin, random_samples)
        assert correlator.to(device) is correlator
        assert_results_equal(correlator.result(), twin.result())

    def test_fixed_dimension_survives_load(self, random_samples: torch.Tensor) -> None:
        """Test a checkpoint cannot change a dimension fixed at construction."""
        source = MultipleTauCorrelator(tau_max=8, tau_lin=4)
        feed(source, torch.ones(10, 5))
        state = source.state_dict()

        pinned = MultipleTauCorrelator(tau_max=8, tau_lin=4, dim=3)
        with pytest.raises(ConfigurationError):
            pinned.load_state_dict(state)
        assert pinned.dim == 3
        assert pinned.n_samples == 0

        empty = MultipleTauCorrelator(tau_max=8, tau_lin=4).state_dict()
        pinned.load_state_dict(empty)
        assert pinned.dim == 3
        with pytest.raises(DimensionMismatchError):
            pinned.update(torch.ones(5))

        matching = MultipleTauCorrelator(tau_max=8, tau_lin=4, dim=3)
        feed(matching, random_samples[:10])
        pinned.load_state_dict(matching.state_dict())
        assert pinned.n_samples == 10
