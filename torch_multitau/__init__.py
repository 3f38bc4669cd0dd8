"""Streaming multiple-tau correlators and companion accumulators in PyTorch.

Currently includes:

- MultipleTauCorrelator: Bounded-memory time correlation function estimator.
- MeanVarianceCalculator: Running mean and variance.
- TimeSeries: Full record of an observable.
"""

import logging

from torch_multitau.accumulators import MeanVarianceCalculator, TimeSeries
from torch_multitau.correlations import (
    CircularBuffer,
    CorrelationResult,
    CorrelatorConfig,
    Level,
    MultipleTauCorrelator,
    Sample,
)
from torch_multitau.errors import (
    AccumulatorError,
    ConfigurationError,
    DimensionMismatchError,
    InsufficientSamplesError,
)
from torch_multitau.interface import (
    AccumulatorHandle,
    AutoUpdateAccumulators,
    create,
    initialize,
    registered_kinds,
)
from torch_multitau.operators import Compression, CorrelationOperation, Normalization


__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

initialize()

__all__ = [
    "AccumulatorError",
    "AccumulatorHandle",
    "AutoUpdateAccumulators",
    "CircularBuffer",
    "Compression",
    "ConfigurationError",
    "CorrelationOperation",
    "CorrelationResult",
    "CorrelatorConfig",
    "DimensionMismatchError",
    "InsufficientSamplesError",
    "Level",
    "MeanVarianceCalculator",
    "MultipleTauCorrelator",
    "Normalization",
    "Sample",
    "TimeSeries",
    "create",
    "initialize",
    "registered_kinds",
]
