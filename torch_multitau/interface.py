"""Accumulator registry and the handles the driving loop updates.

The registry maps accumulator kind names to their classes. It is filled once
by :func:`initialize` (called when the package is imported) and only read
afterwards.

Example:
    Sampling an observable every 10 steps::

        accumulators = AutoUpdateAccumulators()
        vacf = create(
            "Correlator",
            observable=lambda state: state.velocities,
            tau_max=1000,
            delta_N=10,
        )
        accumulators.add(vacf)

        for step in range(n_steps):
            state = integrator.step(state)
            accumulators(state)

        for lag_time, value, count in vacf.result():
            ...
"""

import logging
from collections.abc import Callable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

import torch

from torch_multitau.accumulators import MeanVarianceCalculator, TimeSeries
from torch_multitau.correlations import MultipleTauCorrelator
from torch_multitau.errors import ConfigurationError


logger = logging.getLogger(__name__)

Observable = Callable[..., torch.Tensor]

_REGISTRY: dict[str, type] = {}


def initialize() -> None:
    """Register the accumulator kinds. Calling it again has no effect."""
    if _REGISTRY:
        return
    for accumulator_type in (MultipleTauCorrelator, MeanVarianceCalculator, TimeSeries):
        _REGISTRY[accumulator_type.kind] = accumulator_type
    logger.debug("Registered accumulators: %s", ", ".join(_REGISTRY))


def registered_kinds() -> Mapping[str, type]:
    """Read-only view of the kind to class map."""
    return MappingProxyType(_REGISTRY)


class AccumulatorHandle:
    """Accumulator bound to the observable(s) feeding it.

    Attributes:
        accumulator: Wrapped accumulator
        observable: Callable producing the sample from the arguments passed
            to :meth:`update`
        cross_observable: Callable producing the second sample of a
            cross-correlation, or None
    """

    def __init__(
        self,
        accumulator: Any,
        observable: Observable,
        cross_observable: Observable | None = None,
    ) -> None:
        self.accumulator = accumulator
        self.observable = observable
        self.cross_observable = cross_observable

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind}, delta_N={self.delta_N})"

    @property
    def kind(self) -> str:
        """Registered kind of the wrapped accumulator."""
        return self.accumulator.kind

    @property
    def delta_N(self) -> int:  # noqa: N802
        """Simulation steps between updates."""
        return self.accumulator.delta_N

    def update(self, *args: Any) -> None:
        """Evaluate the observable(s) and feed the accumulator.

        Args:
            *args: Forwarded to the observables, typically the current
                simulation state
        """
        values = self.observable(*args)
        if self.cross_observable is None:
            self.accumulator.update(values)
        else:
            self.accumulator.update(values, self.cross_observable(*args))

    def result(self) -> Any:
        """Result of the wrapped accumulator."""
        return self.accumulator.result()

    def reset(self) -> None:
        """Reset the wrapped accumulator."""
        self.accumulator.reset()

    def state_dict(self) -> dict:
        """Checkpoint of the wrapped accumulator."""
        return self.accumulator.state_dict()

    def load_state_dict(self, state: dict) -> None:
        """Restore the wrapped accumulator from a checkpoint."""
        self.accumulator.load_state_dict(state)


def create(
    kind: str,
    observable: Observable,
    cross_observable: Observable | None = None,
    **config: Any,
) -> AccumulatorHandle:
    """Create a registered accumulator bound to an observable.

    Args:
        kind: Registered kind, see :func:`registered_kinds`
        observable: Callable producing the sample
        cross_observable: Second observable, only for ``"Correlator"``
        **config: Keyword arguments of the accumulator class

    Returns:
        Handle to update and query the accumulator

    Raises:
        ConfigurationError: On an unknown kind or invalid configuration
    """
    initialize()
    try:
        accumulator_type = _REGISTRY[kind]
    except KeyError:
        raise ConfigurationError(
            f"Unknown accumulator kind {kind!r}, expected one of "
            f"{', '.join(_REGISTRY)}"
        ) from None
    if cross_observable is not None and accumulator_type is not MultipleTauCorrelator:
        raise ConfigurationError(f"{kind} does not take a second observable")

    try:
        accumulator = accumulator_type(**config)
    except TypeError as err:
        raise ConfigurationError(f"Invalid {kind} configuration: {err}") from err
    return AccumulatorHandle(accumulator, observable, cross_observable)


class AutoUpdateAccumulators:
    """Handles updated by the simulation loop at their own intervals.

    Each handle counts down from 1 when added, so it is updated on the
    first call and then every ``delta_N`` steps.
    """

    def __init__(self) -> None:
        self._countdowns: dict[AccumulatorHandle, int] = {}

    def __len__(self) -> int:
        return len(self._countdowns)

    def __contains__(self, handle: AccumulatorHandle) -> bool:
        return handle in self._countdowns

    def __iter__(self) -> Iterator[AccumulatorHandle]:
        return iter(list(self._countdowns))

    def add(self, handle: AccumulatorHandle) -> None:
        """Start updating ``handle``."""
        if handle in self._countdowns:
            raise ValueError(f"{handle!r} is already auto-updated")
        self._countdowns[handle] = 1

    def remove(self, handle: AccumulatorHandle) -> None:
        """Stop updating ``handle``."""
        if handle not in self._countdowns:
            raise ValueError(f"{handle!r} is not auto-updated")
        del self._countdowns[handle]

    def clear(self) -> None:
        """Stop updating all handles."""
        self._countdowns.clear()

    def next_update(self) -> int:
        """Steps until the next handle is due, 0 if none is registered."""
        return min(self._countdowns.values(), default=0)

    def __call__(self, *args: Any, steps: int = 1) -> None:
        """Advance by ``steps`` simulation steps and update due handles.

        Args:
            *args: Forwarded to the observables
            steps: Steps elapsed since the previous call

        All countdowns advance before any handle is updated, and every due
        handle is updated even if another one fails. The first failure is
        re-raised once all due handles were processed.

        Raises:
            ValueError: If ``steps`` would skip over an update
        """
        if steps < 1:
            raise ValueError(f"steps must be positive, got {steps}")
        for handle, countdown in self._countdowns.items():
            if steps > countdown:
                raise ValueError(
                    f"Advancing {steps} steps skips an update of {handle!r}, "
                    f"due in {countdown}"
                )

        due = []
        for handle, countdown in self._countdowns.items():
            countdown -= steps
            if countdown == 0:
                due.append(handle)
                countdown = handle.delta_N
            self._countdowns[handle] = countdown

        errors: list[Exception] = []
        for handle in due:
            try:
                handle.update(*args)
            except Exception as err:  # noqa: BLE001
                logger.error("Update of %r failed: %s", handle, err)
                errors.append(err)
        if errors:
            raise errors[0]
