"""Exceptions raised by the accumulators."""


class AccumulatorError(Exception):
    """Base class for accumulator errors."""


class ConfigurationError(AccumulatorError, ValueError):
    """Invalid accumulator configuration or incompatible checkpoint."""


class DimensionMismatchError(AccumulatorError, ValueError):
    """Sample dimension differs from the one fixed for the accumulator."""


class InsufficientSamplesError(AccumulatorError):
    """Too few samples to compute the requested statistic."""
