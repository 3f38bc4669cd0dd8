"""Multiple-tau correlation function accumulator.

Module provides an on-the-fly estimator of time correlation functions
(velocity autocorrelation, stress autocorrelation, mean square displacement)
over trajectories of arbitrary length, using memory logarithmic in the
trajectory length.

Samples are stored in a cascade of levels. Level ``i`` keeps the last
``tau_lin`` samples at a time resolution of ``2**i`` accepted samples; once a
level is full, every second arrival merges its two oldest samples into one
sample for level ``i + 1``. Each new sample at a level is correlated against
all samples resident in that level, so short lags are resolved exactly and
long lags at progressively coarser resolution.

Example:
    Computing a velocity autocorrelation function in a loop::

        correlator = MultipleTauCorrelator(
            tau_lin=16,
            tau_max=10_000,
            delta_N=10,
            operation="scalar_product",
        )

        for step in range(n_steps):
            state = integrator.step(state)
            if step % correlator.delta_N == 0:
                correlator.update(state.velocities)

        for lag_time, value, count in correlator.result():
            ...
"""

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import torch

from torch_multitau.errors import ConfigurationError, DimensionMismatchError
from torch_multitau.operators import (
    BILINEAR_OPERATIONS,
    COMPRESSION_RULES,
    CORRELATION_OPERATIONS,
    Compression,
    CorrelationOperation,
    Normalization,
    check_dimensions,
    coerce,
    output_shape,
)


logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1

# Zero-lag components smaller than this are left unnormalized
_NORM_EPS = 1e-10


def check_checkpoint(state: dict, kind: str, config: dict) -> None:
    """Verify a checkpoint header against the accumulator restoring it.

    Args:
        state: Checkpoint produced by an accumulator's ``state_dict``
        kind: Registered kind of the restoring accumulator
        config: Plain-value configuration of the restoring accumulator

    Raises:
        ConfigurationError: On a version, kind or configuration mismatch
    """
    if state.get("version") != CHECKPOINT_VERSION:
        raise ConfigurationError(
            f"Unsupported checkpoint version {state.get('version')!r}"
        )
    if state.get("kind") != kind:
        raise ConfigurationError(
            f"Checkpoint of a {state.get('kind')!r} cannot restore a {kind!r}"
        )
    if state.get("config") != config:
        raise ConfigurationError(
            f"Checkpoint configuration {state.get('config')} differs from {config}"
        )


class CircularBuffer:
    """Circular buffer for storing time series data.

    Provides a fixed-size circular buffer optimized for storing
    and retrieving time series data, with minimal memory allocation.

    Attributes:
        size: Maximum number of elements to store
        buffer: Storage for the data
        head: Current write position
        count: Number of elements currently stored
        device: Device where the buffer is stored
        dtype: Storage dtype
    """

    def __init__(
        self,
        size: int,
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        """Initialize a circular buffer.

        Args:
            size: Maximum number of elements to store
            device: Device for tensor storage (CPU or GPU)
            dtype: Storage dtype, values are cast on append
        """
        self.size = size
        self.buffer: torch.Tensor | None = None
        self.head = 0
        self.count = 0
        self.device = device
        self.dtype = dtype

    def append(self, value: torch.Tensor) -> None:
        """Append a new value, overwriting the oldest one when full.

        Args:
            value: New tensor to store
        """
        if self.buffer is None:
            # Initialize buffer shape as first value
            shape = (self.size, *value.shape)
            self.buffer = torch.zeros(shape, device=self.device, dtype=self.dtype)

        self.buffer[self.head] = value
        self.head = (self.head + 1) % self.size
        self.count = min(self.count + 1, self.size)

    def __getitem__(self, index: int) -> torch.Tensor:
        """Element by chronological position, 0 being the oldest."""
        if self.buffer is None or not 0 <= index < self.count:
            raise IndexError(f"Index {index} out of range for {self.count} elements")
        return self.buffer[(self.head - self.count + index) % self.size]

    def get_array(self) -> torch.Tensor:
        """Get the current buffer contents as a tensor.

        Returns:
            Tensor containing the buffered data in chron. order
        """
        if self.count == 0 or self.buffer is None:
            return torch.empty(0, device=self.device, dtype=self.dtype)

        if self.count < self.size:
            # Filled portion only!
            return self.buffer[: self.count]

        # Avoid unnecessary copy if unwrapped
        if self.head == 0:
            return self.buffer

        return torch.cat([self.buffer[self.head :], self.buffer[: self.head]])

    @property
    def is_full(self) -> bool:
        """Check if the buffer is full.

        Returns:
            True if buffer contains size elements, False otherwise
        """
        return self.count == self.size

    def state_dict(self) -> dict:
        """Snapshot of the buffer contents and cursor."""
        return {
            "buffer": None if self.buffer is None else self.buffer.clone(),
            "head": self.head,
            "count": self.count,
        }

    def load_state_dict(self, state: dict) -> None:
        """Restore contents saved by :meth:`state_dict`."""
        buffer = state["buffer"]
        self.buffer = None
        if buffer is not None:
            self.buffer = buffer.to(self.device, self.dtype, copy=True)
        self.head = state["head"]
        self.count = state["count"]

    def to(self, device: torch.device) -> "CircularBuffer":
        """Move buffer to specified device.

        Returns:
            Self, for method chaining
        """
        self.device = device
        if self.buffer is not None:
            self.buffer = self.buffer.to(device)
        return self


@dataclass
class Sample:
    """Observation entering a level.

    Attributes:
        values: Flattened observable, shape (dim,)
        tick: Observation time in accepted samples; merged samples carry the
            tick chosen by the compression rule
        cross_values: Second observable for cross-correlation, shape
            (cross_dim,), or None for autocorrelation
    """

    values: torch.Tensor
    tick: float
    cross_values: torch.Tensor | None = None


class Level:
    """One resolution tier of the multiple-tau cascade.

    Attributes:
        index: Position in the cascade, 0 being the raw samples
        capacity: Ring size, equal to ``tau_lin``
        time_step: Spacing of resident samples, ``2**index`` accepted samples
        values: Ring of first-observable samples
        cross_values: Ring of second-observable samples, if cross-correlating
        ticks: Ring of sample ticks
        sums: Correlation sums per lag, shape (capacity, *operation_shape)
        counts: Number of contributions per lag, shape (capacity,)
        n_pushed: Samples received since construction or reset
        n_merged: Leading samples already merged into the next level
    """

    def __init__(
        self,
        index: int,
        capacity: int,
        compression: Compression = Compression.LINEAR,
        device: torch.device | None = None,
    ) -> None:
        self.index = index
        self.capacity = capacity
        self.time_step = 2**index
        self.device = device
        self._compress = COMPRESSION_RULES[compression]

        self.values = CircularBuffer(capacity, device=device)
        self.cross_values: CircularBuffer | None = None
        self.ticks = CircularBuffer(capacity, device=device)
        self.sums: torch.Tensor | None = None
        self.counts = torch.zeros(capacity, dtype=torch.long, device=device)
        self.n_pushed = 0
        self.n_merged = 0

    def __len__(self) -> int:
        return self.values.count

    def push(self, sample: Sample, *, can_compress: bool) -> Sample | None:
        """Store a sample, merging the two oldest ones first when due.

        Merging happens when the ring is full and its oldest sample has not
        yet been merged, i.e. every second arrival once full. Samples that
        were already merged are evicted silently.

        Args:
            sample: Sample at this level's resolution
            can_compress: False for the deepest level of the cascade

        Returns:
            The merged sample destined for the next level, or None
        """
        compressed = None
        oldest = self.n_pushed - self.values.count
        if can_compress and self.values.is_full and oldest == self.n_merged:
            cross = None
            if self.cross_values is not None:
                cross = self._compress(self.cross_values[0], self.cross_values[1])
                cross = cross.clone()
            compressed = Sample(
                values=self._compress(self.values[0], self.values[1]).clone(),
                tick=self._compress(self.ticks[0].item(), self.ticks[1].item()),
                cross_values=cross,
            )
            self.n_merged += 2

        self.values.append(sample.values)
        if sample.cross_values is not None:
            if self.cross_values is None:
                self.cross_values = CircularBuffer(self.capacity, device=self.device)
            self.cross_values.append(sample.cross_values)
        self.ticks.append(torch.tensor(sample.tick, dtype=torch.float64))
        self.n_pushed += 1
        return compressed

    def accumulate(
        self,
        sample: Sample,
        operation: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    ) -> None:
        """Correlate the newest sample with every resident sample.

        Must follow :meth:`push` of the same sample, so the sample itself
        contributes the zero lag.
        """
        newest = sample.values if sample.cross_values is None else sample.cross_values
        contributions = operation(self.values.get_array(), newest)
        lags = torch.round((sample.tick - self.ticks.get_array()) / self.time_step)
        lags = lags.long()

        if self.sums is None:
            shape = (self.capacity, *contributions.shape[1:])
            self.sums = torch.zeros(shape, dtype=torch.float64, device=self.device)
        self.sums.index_add_(0, lags, contributions)
        self.counts.index_add_(0, lags, torch.ones_like(lags))

    def state_dict(self) -> dict:
        """Snapshot of buffers, sums and counters."""
        return {
            "values": self.values.state_dict(),
            "cross_values": None
            if self.cross_values is None
            else self.cross_values.state_dict(),
            "ticks": self.ticks.state_dict(),
            "sums": None if self.sums is None else self.sums.clone(),
            "counts": self.counts.clone(),
            "n_pushed": self.n_pushed,
            "n_merged": self.n_merged,
        }

    def load_state_dict(self, state: dict) -> None:
        """Restore a snapshot taken by :meth:`state_dict`."""
        self.values.load_state_dict(state["values"])
        if state["cross_values"] is None:
            self.cross_values = None
        else:
            self.cross_values = CircularBuffer(self.capacity, device=self.device)
            self.cross_values.load_state_dict(state["cross_values"])
        self.ticks.load_state_dict(state["ticks"])
        sums = state["sums"]
        self.sums = None
        if sums is not None:
            self.sums = sums.to(self.device, torch.float64, copy=True)
        self.counts = state["counts"].to(self.device, torch.long, copy=True)
        self.n_pushed = state["n_pushed"]
        self.n_merged = state["n_merged"]

    def to(self, device: torch.device) -> "Level":
        """Move all storage to ``device``."""
        self.device = device
        self.values.to(device)
        self.ticks.to(device)
        if self.cross_values is not None:
            self.cross_values.to(device)
        if self.sums is not None:
            self.sums = self.sums.to(device)
        self.counts = self.counts.to(device)
        return self


@dataclass(frozen=True)
class CorrelatorConfig:
    """Immutable correlator configuration.

    String tags are accepted for the enumerated fields and converted on
    construction.

    Attributes:
        tau_max: Longest lag to resolve, in accepted samples
        tau_lin: Samples per level, at least 2
        delta_N: Simulation steps between accepted samples
        operation: Correlation operation
        compression: Rule merging samples into the next level
        normalization: Post-processing applied at result time

    Raises:
        ConfigurationError: If any value is out of range or unknown
    """

    tau_max: int
    tau_lin: int = 16
    delta_N: int = 1  # noqa: N815
    operation: CorrelationOperation = CorrelationOperation.SCALAR_PRODUCT
    compression: Compression = Compression.LINEAR
    normalization: Normalization = Normalization.NONE

    def __post_init__(self) -> None:
        for name in ("tau_max", "tau_lin", "delta_N"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if self.tau_lin < 2:
            raise ConfigurationError(f"tau_lin must be at least 2, got {self.tau_lin}")
        if self.tau_max < self.tau_lin:
            raise ConfigurationError(
                f"tau_max ({self.tau_max}) must not be smaller than "
                f"tau_lin ({self.tau_lin})"
            )
        if self.delta_N <= 0:
            raise ConfigurationError(f"delta_N must be positive, got {self.delta_N}")

        # Frozen dataclass, bypass __setattr__ for the coercion
        operation = coerce(CorrelationOperation, self.operation)
        object.__setattr__(self, "operation", operation)
        object.__setattr__(self, "compression", coerce(Compression, self.compression))
        normalization = coerce(Normalization, self.normalization)
        object.__setattr__(self, "normalization", normalization)

        if (
            normalization != Normalization.NONE
            and operation not in BILINEAR_OPERATIONS
        ):
            raise ConfigurationError(
                f"{normalization.value} normalization requires a product "
                f"operation, got {operation.value}"
            )

    @property
    def hierarchy_depth(self) -> int:
        """Number of levels needed for the coarsest one to reach ``tau_max``."""
        depth = 1
        while (self.tau_lin - 1) * 2 ** (depth - 1) < self.tau_max:
            depth += 1
        return depth

    def as_dict(self) -> dict:
        """Plain-value representation, used in checkpoints."""
        return {
            "tau_max": self.tau_max,
            "tau_lin": self.tau_lin,
            "delta_N": self.delta_N,
            "operation": self.operation.value,
            "compression": self.compression.value,
            "normalization": self.normalization.value,
        }


@dataclass(frozen=True)
class CorrelationResult:
    """Assembled correlation function.

    Iterating yields ``(lag_time, value, count)`` triples in order of
    increasing lag time. Entries with ``count == 0`` only appear when
    requested and carry NaN values.

    Attributes:
        lag_times: Lag times in simulation steps, shape (n_lags,)
        values: Averaged correlations, shape (n_lags, *operation_shape)
        counts: Contributions per lag, shape (n_lags,)
    """

    lag_times: torch.Tensor
    values: torch.Tensor
    counts: torch.Tensor

    def __len__(self) -> int:
        return len(self.lag_times)

    def __iter__(self) -> Iterator[tuple[int, torch.Tensor, int]]:
        for lag_time, value, count in zip(
            self.lag_times, self.values, self.counts, strict=True
        ):
            yield int(lag_time), value, int(count)


class MultipleTauCorrelator:
    """Streaming multiple-tau correlation function estimator.

    Memory grows as ``O(tau_lin * log2(N / tau_lin))`` for ``N`` samples and
    each update costs ``O(tau_lin)`` amortized.

    Attributes:
        config: Immutable configuration
        levels: Cascade levels, created on demand
        n_samples: Samples accepted since construction or reset
        dim: Dimension of the first observable, fixed by the constructor or
            the first sample
        cross_dim: Dimension of the second observable
        device: Device where calculations are performed
    """

    kind = "Correlator"

    def __init__(  # noqa: PLR0913
        self,
        tau_max: int,
        tau_lin: int = 16,
        delta_N: int = 1,  # noqa: N803
        operation: CorrelationOperation | str = CorrelationOperation.SCALAR_PRODUCT,
        compression: Compression | str = Compression.LINEAR,
        normalization: Normalization | str = Normalization.NONE,
        *,
        dim: int | None = None,
        cross_dim: int | None = None,
        device: torch.device | None = None,
    ) -> None:
        """Initialize a correlator.

        Args:
            tau_max: Longest lag to resolve, in accepted samples
            tau_lin: Samples kept per level
            delta_N: Simulation steps between accepted samples, sets the
                unit of the reported lag times
            operation: Correlation operation tag
            compression: Compression rule tag
            normalization: Normalization mode tag
            dim: Dimension of the first observable, or None to take it from
                the first sample
            cross_dim: Dimension of the second observable; giving it commits
                the correlator to cross-correlation
            device: Device for tensor storage and computation

        Raises:
            ConfigurationError: On invalid parameters
        """
        self.config = CorrelatorConfig(
            tau_max=tau_max,
            tau_lin=tau_lin,
            delta_N=delta_N,
            operation=operation,
            compression=compression,
            normalization=normalization,
        )
        if dim is not None:
            try:
                check_dimensions(
                    self.config.operation, dim, dim if cross_dim is None else cross_dim
                )
            except DimensionMismatchError as err:
                raise ConfigurationError(str(err)) from err

        self.device = device
        self._operation = CORRELATION_OPERATIONS[self.config.operation]
        self._initial_dims = (dim, cross_dim)
        self.reset()

    @classmethod
    def from_config(
        cls, config: CorrelatorConfig, **kwargs
    ) -> "MultipleTauCorrelator":
        """Build a correlator from an existing configuration."""
        return cls(**config.as_dict(), **kwargs)

    @property
    def delta_N(self) -> int:  # noqa: N802
        """Simulation steps between accepted samples."""
        return self.config.delta_N

    @property
    def n_levels(self) -> int:
        """Number of levels created so far."""
        return len(self.levels)

    @property
    def n_stored_samples(self) -> int:
        """Samples resident across all levels."""
        return sum(len(level) for level in self.levels)

    def reset(self) -> None:
        """Return to the just-constructed state."""
        self.levels: list[Level] = []
        self.n_samples = 0
        self.dim, self.cross_dim = self._initial_dims
        self._cross: bool | None = None if self.cross_dim is None else True
        self._sum_a: torch.Tensor | None = None
        self._sum_b: torch.Tensor | None = None
        logger.debug("Correlator reset")

    def _new_level(self, index: int) -> Level:
        return Level(index, self.config.tau_lin, self.config.compression, self.device)

    def _as_vector(self, values: torch.Tensor) -> torch.Tensor:
        return torch.as_tensor(values, dtype=torch.float64, device=self.device).reshape(
            -1
        )

    def _check_sample(
        self, values: torch.Tensor, cross_values: torch.Tensor | None
    ) -> None:
        """Validate a sample and fix the dimensions on first use."""
        cross = cross_values is not None
        if self._cross is not None and cross != self._cross:
            expected = "a second" if self._cross else "no second"
            raise DimensionMismatchError(f"Correlator expects {expected} observable")

        dim = values.numel()
        cross_dim = cross_values.numel() if cross else dim
        if self.dim is not None and dim != self.dim:
            raise DimensionMismatchError(
                f"Sample dimension {dim} differs from fixed dimension {self.dim}"
            )
        if self.cross_dim is not None and cross_dim != self.cross_dim:
            raise DimensionMismatchError(
                f"Second sample dimension {cross_dim} differs from fixed "
                f"dimension {self.cross_dim}"
            )
        check_dimensions(self.config.operation, dim, cross_dim)

        self._cross = cross
        self.dim = dim
        self.cross_dim = cross_dim

    def update(
        self, values: torch.Tensor, cross_values: torch.Tensor | None = None
    ) -> None:
        """Accept one sample.

        Args:
            values: Observable value, flattened to a vector
            cross_values: Second observable value for cross-correlation

        Raises:
            DimensionMismatchError: If the sample does not match the fixed
                dimensions; the correlator is left unchanged
        """
        values = self._as_vector(values)
        if cross_values is not None:
            cross_values = self._as_vector(cross_values)
        self._check_sample(values, cross_values)

        if self._sum_a is None:
            self._sum_a = torch.zeros_like(values)
            self._sum_b = torch.zeros(
                self.cross_dim, dtype=torch.float64, device=self.device
            )
        self._sum_a += values
        self._sum_b += values if cross_values is None else cross_values

        sample: Sample | None = Sample(values, float(self.n_samples), cross_values)
        self.n_samples += 1
        depth = self.config.hierarchy_depth
        index = 0
        while sample is not None:
            if index == len(self.levels):
                self.levels.append(self._new_level(index))
                logger.debug(
                    "Created level %d, lag step %d",
                    index,
                    2**index * self.config.delta_N,
                )
            level = self.levels[index]
            compressed = level.push(sample, can_compress=index + 1 < depth)
            level.accumulate(sample, self._operation)
            sample = compressed
            index += 1

    def result(self, *, include_empty: bool = False) -> CorrelationResult:
        """Assemble the correlation function over all levels.

        Does not modify the correlator. Where two levels resolve the same lag
        time the finer level's entry is kept.

        Args:
            include_empty: Also report lags without contributions, with a
                count of 0 and NaN values

        Returns:
            Correlation function ordered by lag time
        """
        shape = ()
        if self.dim is not None:
            shape = output_shape(self.config.operation, self.dim, self.cross_dim)
        lag_times = [torch.empty(0, dtype=torch.long, device=self.device)]
        values = [torch.empty((0, *shape), dtype=torch.float64, device=self.device)]
        counts = [torch.empty(0, dtype=torch.long, device=self.device)]

        for level in self.levels:
            level_lags = torch.arange(level.capacity, device=self.device)
            level_lags = level_lags * level.time_step * self.config.delta_N
            keep = ~torch.isin(level_lags, torch.cat(lag_times))
            if not include_empty:
                keep &= level.counts > 0
            level_counts = level.counts[keep]
            denominator = level_counts.reshape(-1, *(1,) * len(shape))

            lag_times.append(level_lags[keep])
            values.append(level.sums[keep] / denominator)
            counts.append(level_counts)

        lag_times = torch.cat(lag_times)
        order = torch.argsort(lag_times, stable=True)
        lag_times = lag_times[order]
        values = torch.cat(values)[order]
        counts = torch.cat(counts)[order]

        if self.n_samples > 0:
            values = self._normalize(values)
        return CorrelationResult(lag_times=lag_times, values=values, counts=counts)

    def _normalize(self, values: torch.Tensor) -> torch.Tensor:
        normalization = self.config.normalization
        if normalization == Normalization.NORMALIZED:
            base = self.levels[0]
            zero_lag = base.sums[0] / base.counts[0]
            mask = zero_lag.abs() > _NORM_EPS
            return torch.where(mask, values / zero_lag, values)
        if normalization == Normalization.CONNECTED:
            mean_a = self._sum_a / self.n_samples
            mean_b = self._sum_b / self.n_samples
            return values - self._operation(mean_a.unsqueeze(0), mean_b)[0]
        return values

    def state_dict(self) -> dict:
        """Checkpoint sufficient to resume :meth:`update` exactly."""
        return {
            "version": CHECKPOINT_VERSION,
            "kind": self.kind,
            "config": self.config.as_dict(),
            "dim": self.dim,
            "cross_dim": self.cross_dim,
            "cross": self._cross,
            "n_samples": self.n_samples,
            "sum_a": None if self._sum_a is None else self._sum_a.clone(),
            "sum_b": None if self._sum_b is None else self._sum_b.clone(),
            "levels": [level.state_dict() for level in self.levels],
        }

    def load_state_dict(self, state: dict) -> None:
        """Restore a checkpoint taken by :meth:`state_dict`.

        Raises:
            ConfigurationError: If the checkpoint version, kind or
                configuration differs from this correlator's, or its
                dimensions conflict with those fixed at construction
        """
        check_checkpoint(state, self.kind, self.config.as_dict())
        dim, cross_dim = self._initial_dims
        for name, fixed in (("dim", dim), ("cross_dim", cross_dim)):
            if fixed is not None and state[name] not in (None, fixed):
                raise ConfigurationError(
                    f"Checkpoint {name} {state[name]} differs from fixed {name} {fixed}"
                )
        if cross_dim is not None and state["cross"] is False:
            raise ConfigurationError(
                "Checkpoint of an autocorrelation cannot restore a cross-correlator"
            )

        levels = []
        for index, level_state in enumerate(state["levels"]):
            level = self._new_level(index)
            level.load_state_dict(level_state)
            levels.append(level)

        self.reset()
        self.levels = levels
        if state["dim"] is not None:
            self.dim = state["dim"]
        if state["cross_dim"] is not None:
            self.cross_dim = state["cross_dim"]
        if state["cross"] is not None:
            self._cross = state["cross"]
        self.n_samples = state["n_samples"]
        self._sum_a = self._sum_b = None
        if state["sum_a"] is not None:
            self._sum_a = state["sum_a"].to(self.device, copy=True)
            self._sum_b = state["sum_b"].to(self.device, copy=True)
        logger.debug(
            "Loaded correlator checkpoint with %d samples in %d levels",
            self.n_samples,
            len(self.levels),
        )

    def to(self, device: torch.device) -> "MultipleTauCorrelator":
        """Move correlator to specified device.

        Args:
            device: Target device

        Returns:
            Self, for method chaining
        """
        # Skip if already on target device
        if self.device == device:
            return self

        self.device = device
        for level in self.levels:
            level.to(device)
        if self._sum_a is not None:
            self._sum_a = self._sum_a.to(device)
            self._sum_b = self._sum_b.to(device)
        return self
