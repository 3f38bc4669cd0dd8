"""Correlation operations, compression rules and normalization modes.

All three are closed enumerations. Each operation and compression rule maps
to a pure function in a lookup table, so a correlator resolves its behavior
once at construction and never branches on the tag again.

Correlation operations take the older samples ``old`` with shape
``(n, dim_a)`` and the newest sample ``new`` with shape ``(dim_b,)`` and
return one contribution per old sample, shape ``(n, *output_shape)``.
"""

from collections.abc import Callable
from enum import Enum

import torch

from torch_multitau.errors import ConfigurationError, DimensionMismatchError


class CorrelationOperation(str, Enum):
    """Pairwise function correlating an older and a newer sample."""

    SCALAR_PRODUCT = "scalar_product"
    COMPONENTWISE_PRODUCT = "componentwise_product"
    SQUARE_DISTANCE = "square_distance"
    SQUARE_DISTANCE_COMPONENTWISE = "square_distance_componentwise"
    TENSOR_PRODUCT = "tensor_product"
    COMPLEX_CONJUGATE_PRODUCT = "complex_conjugate_product"

    @classmethod
    def _missing_(cls, value: object) -> "CorrelationOperation | None":
        # Short tag for the element-wise product
        if value == "component_product":
            return cls.COMPONENTWISE_PRODUCT
        return None


class Compression(str, Enum):
    """Rule merging two adjacent samples into one coarser sample."""

    LINEAR = "linear"
    DISCARD1 = "discard1"
    DISCARD2 = "discard2"


class Normalization(str, Enum):
    """Post-processing applied to averaged correlations at result time."""

    NONE = "none"
    NORMALIZED = "normalized"
    CONNECTED = "connected"


def scalar_product(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    """Dot product of each old sample with the new one."""
    return old @ new


def componentwise_product(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    """Element-wise product."""
    return old * new


def square_distance(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    """Squared difference averaged over components, as used for MSDs."""
    return ((new - old) ** 2).mean(dim=-1)


def square_distance_componentwise(
    old: torch.Tensor, new: torch.Tensor
) -> torch.Tensor:
    """Squared difference per component."""
    return (new - old) ** 2


def tensor_product(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    """Outer product, shape ``(n, dim_a, dim_b)``."""
    return old.unsqueeze(-1) * new


def complex_conjugate_product(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    r"""Product :math:`a^* b` of samples stored as interleaved ``(re, im)`` pairs."""
    a = old.reshape(old.shape[0], -1, 2)
    b = new.reshape(-1, 2)
    real = a[..., 0] * b[:, 0] + a[..., 1] * b[:, 1]
    imag = a[..., 0] * b[:, 1] - a[..., 1] * b[:, 0]
    return torch.stack([real, imag], dim=-1).reshape(old.shape[0], -1)


CORRELATION_OPERATIONS: dict[
    CorrelationOperation, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]
] = {
    CorrelationOperation.SCALAR_PRODUCT: scalar_product,
    CorrelationOperation.COMPONENTWISE_PRODUCT: componentwise_product,
    CorrelationOperation.SQUARE_DISTANCE: square_distance,
    CorrelationOperation.SQUARE_DISTANCE_COMPONENTWISE: square_distance_componentwise,
    CorrelationOperation.TENSOR_PRODUCT: tensor_product,
    CorrelationOperation.COMPLEX_CONJUGATE_PRODUCT: complex_conjugate_product,
}

# Operations that are linear in each argument; only these admit
# normalization by the zero-lag value or subtraction of the mean product.
BILINEAR_OPERATIONS = frozenset(
    {
        CorrelationOperation.SCALAR_PRODUCT,
        CorrelationOperation.COMPONENTWISE_PRODUCT,
        CorrelationOperation.TENSOR_PRODUCT,
        CorrelationOperation.COMPLEX_CONJUGATE_PRODUCT,
    }
)


def output_shape(
    operation: CorrelationOperation, dim_a: int, dim_b: int
) -> tuple[int, ...]:
    """Shape of a single correlation contribution.

    Args:
        operation: Correlation operation
        dim_a: Dimension of the older (first) observable
        dim_b: Dimension of the newer (second) observable

    Returns:
        Shape excluding the leading lag axis
    """
    if operation in (
        CorrelationOperation.SCALAR_PRODUCT,
        CorrelationOperation.SQUARE_DISTANCE,
    ):
        return ()
    if operation == CorrelationOperation.TENSOR_PRODUCT:
        return (dim_a, dim_b)
    return (dim_a,)


def check_dimensions(operation: CorrelationOperation, dim_a: int, dim_b: int) -> None:
    """Raise if the operation cannot combine observables of these dimensions."""
    if operation != CorrelationOperation.TENSOR_PRODUCT and dim_a != dim_b:
        raise DimensionMismatchError(
            f"{operation.value} needs equal dimensions, got {dim_a} and {dim_b}"
        )
    if operation == CorrelationOperation.COMPLEX_CONJUGATE_PRODUCT and dim_a % 2:
        raise DimensionMismatchError(
            f"{operation.value} needs an even dimension of (re, im) pairs, "
            f"got {dim_a}"
        )


def linear(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:
    """Average of the two samples."""
    return 0.5 * (old + new)


def discard1(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:  # noqa: ARG001
    """Keep the newer sample."""
    return new


def discard2(old: torch.Tensor, new: torch.Tensor) -> torch.Tensor:  # noqa: ARG001
    """Keep the older sample."""
    return old


COMPRESSION_RULES: dict[
    Compression, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]
] = {
    Compression.LINEAR: linear,
    Compression.DISCARD1: discard1,
    Compression.DISCARD2: discard2,
}


def coerce(enum_type: type[Enum], value: object) -> Enum:
    """Convert a tag or enum member to ``enum_type``.

    Raises:
        ConfigurationError: If ``value`` names no member of ``enum_type``
    """
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(repr(member.value) for member in enum_type)
        raise ConfigurationError(
            f"Unknown {enum_type.__name__} {value!r}, expected one of {choices}"
        ) from None
