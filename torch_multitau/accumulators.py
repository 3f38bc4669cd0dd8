"""Companion accumulators: running mean/variance and full time series."""

import logging

import torch

from torch_multitau.correlations import CHECKPOINT_VERSION, check_checkpoint
from torch_multitau.errors import (
    ConfigurationError,
    DimensionMismatchError,
    InsufficientSamplesError,
)


logger = logging.getLogger(__name__)


def _check_delta_n(delta_N: int) -> None:  # noqa: N803
    if not isinstance(delta_N, int) or isinstance(delta_N, bool) or delta_N <= 0:
        raise ConfigurationError(f"delta_N must be a positive integer, got {delta_N!r}")


class MeanVarianceCalculator:
    """Running mean and variance of an observable.

    Uses Welford's online update, which avoids the cancellation of the naive
    sum-of-squares formula when the variance is small compared to the mean.

    Attributes:
        delta_N: Simulation steps between accepted samples
        n_samples: Samples accepted since construction or reset
        shape: Observable shape, fixed by the first sample
        device: Device where calculations are performed
    """

    kind = "MeanVarianceCalculator"

    def __init__(
        self, delta_N: int = 1, device: torch.device | None = None  # noqa: N803
    ) -> None:
        _check_delta_n(delta_N)
        self.delta_N = delta_N
        self.device = device
        self.reset()

    def reset(self) -> None:
        """Forget all samples."""
        self.n_samples = 0
        self.shape: torch.Size | None = None
        self._mean: torch.Tensor | None = None
        self._m2: torch.Tensor | None = None
        logger.debug("Mean/variance calculator reset")

    def update(self, values: torch.Tensor) -> None:
        """Accept one sample.

        Raises:
            DimensionMismatchError: If the sample shape differs from the
                first sample's
        """
        values = torch.as_tensor(values, dtype=torch.float64, device=self.device)
        if self.shape is None:
            self.shape = values.shape
            self._mean = torch.zeros_like(values)
            self._m2 = torch.zeros_like(values)
        elif values.shape != self.shape:
            raise DimensionMismatchError(
                f"Sample shape {tuple(values.shape)} differs from "
                f"{tuple(self.shape)}"
            )

        self.n_samples += 1
        delta = values - self._mean
        self._mean += delta / self.n_samples
        self._m2 += delta * (values - self._mean)

    def mean(self) -> torch.Tensor:
        """Mean of the accepted samples."""
        if self.n_samples == 0:
            raise InsufficientSamplesError("Mean requires at least one sample")
        return self._mean.clone()

    def variance(self, correction: int = 0) -> torch.Tensor:
        """Variance of the accepted samples.

        Args:
            correction: Difference between the sample count and the divisor,
                0 for the population variance and 1 for the unbiased sample
                variance, as in :func:`torch.var`

        Returns:
            Component-wise variance

        Raises:
            InsufficientSamplesError: With fewer than two samples, or no more
                samples than ``correction``
        """
        if self.n_samples < 2:
            raise InsufficientSamplesError(
                f"Variance requires at least two samples, got {self.n_samples}"
            )
        if self.n_samples - correction < 1:
            raise InsufficientSamplesError(
                f"Variance with correction={correction} requires more than "
                f"{correction} samples, got {self.n_samples}"
            )
        return self._m2 / (self.n_samples - correction)

    def std_error(self) -> torch.Tensor:
        """Standard error of the mean, from the unbiased sample variance."""
        return torch.sqrt(self.variance(correction=1) / self.n_samples)

    def result(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Mean and population variance."""
        return self.mean(), self.variance()

    def state_dict(self) -> dict:
        """Checkpoint sufficient to resume :meth:`update` exactly."""
        return {
            "version": CHECKPOINT_VERSION,
            "kind": self.kind,
            "config": {"delta_N": self.delta_N},
            "n_samples": self.n_samples,
            "shape": None if self.shape is None else tuple(self.shape),
            "mean": None if self._mean is None else self._mean.clone(),
            "m2": None if self._m2 is None else self._m2.clone(),
        }

    def load_state_dict(self, state: dict) -> None:
        """Restore a checkpoint taken by :meth:`state_dict`."""
        check_checkpoint(state, self.kind, {"delta_N": self.delta_N})
        self.n_samples = state["n_samples"]
        self.shape = None if state["shape"] is None else torch.Size(state["shape"])
        self._mean = self._m2 = None
        if state["mean"] is not None:
            self._mean = state["mean"].to(self.device, copy=True)
            self._m2 = state["m2"].to(self.device, copy=True)


class TimeSeries:
    """Record of every accepted observable value.

    Memory grows linearly with the number of samples; use it for short runs
    or sparse ``delta_N``.
    """

    kind = "TimeSeries"

    def __init__(
        self, delta_N: int = 1, device: torch.device | None = None  # noqa: N803
    ) -> None:
        _check_delta_n(delta_N)
        self.delta_N = delta_N
        self.device = device
        self.reset()

    def __len__(self) -> int:
        return len(self._series)

    def reset(self) -> None:
        """Forget all samples."""
        self._series: list[torch.Tensor] = []
        self.shape: torch.Size | None = None

    def update(self, values: torch.Tensor) -> None:
        """Append one sample."""
        values = torch.as_tensor(values, dtype=torch.float64, device=self.device)
        if self.shape is None:
            self.shape = values.shape
        elif values.shape != self.shape:
            raise DimensionMismatchError(
                f"Sample shape {tuple(values.shape)} differs from "
                f"{tuple(self.shape)}"
            )
        self._series.append(values.clone())

    def result(self) -> torch.Tensor:
        """All samples, shape (n_samples, *shape)."""
        if not self._series:
            return torch.empty(0, dtype=torch.float64, device=self.device)
        return torch.stack(self._series)

    def state_dict(self) -> dict:
        """Checkpoint holding the full series."""
        return {
            "version": CHECKPOINT_VERSION,
            "kind": self.kind,
            "config": {"delta_N": self.delta_N},
            "series": self.result(),
        }

    def load_state_dict(self, state: dict) -> None:
        """Restore a checkpoint taken by :meth:`state_dict`."""
        check_checkpoint(state, self.kind, {"delta_N": self.delta_N})
        self.reset()
        for values in state["series"]:
            self.update(values)
