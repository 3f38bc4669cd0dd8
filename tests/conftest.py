import pytest
import torch


@pytest.fixture
def device() -> torch.device:
    """Provide device for testing."""
    return torch.device("cpu")


@pytest.fixture
def random_samples(device: torch.device) -> torch.Tensor:
    """Reproducible 3-component samples, shape (200, 3)."""
    generator = torch.Generator().manual_seed(0)
    return torch.randn(200, 3, generator=generator, dtype=torch.float64).to(device)
