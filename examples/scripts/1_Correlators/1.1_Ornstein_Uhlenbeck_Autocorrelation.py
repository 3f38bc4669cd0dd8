"""Ornstein-Uhlenbeck velocity autocorrelation example."""

# /// script
# dependencies = [
#     "matplotlib",
#     "numpy",
# ]
# ///

import matplotlib.pyplot as plt
import numpy as np
import torch

import torch_multitau as tm


def ou_step(
    velocities: torch.Tensor, decay: float, noise: float, generator: torch.Generator
) -> torch.Tensor:
    """Advance an Ornstein-Uhlenbeck process by one exact step."""
    kicks = torch.randn(
        velocities.shape, generator=generator, dtype=velocities.dtype
    )
    return decay * velocities + noise * kicks


def plot_results(
    *,  # Force keyword-only arguments
    lag_times: np.ndarray,
    vacf: np.ndarray,
    relaxation_time: float,
    timestep: float,
) -> None:
    """Plot the estimated VACF against the exact exponential."""
    plt.figure(figsize=(10, 8))
    time = lag_times * timestep
    plt.semilogx(time[1:], vacf[1:], "bo", label="multiple-tau estimate")
    plt.semilogx(
        time[1:], np.exp(-time[1:] / relaxation_time), "k-", label="exact"
    )
    plt.xlabel("Time (ps)", fontsize=12)
    plt.ylabel("Normalized VACF", fontsize=12)
    plt.title("Ornstein-Uhlenbeck VACF", fontsize=14)
    plt.axhline(y=0, color="k", linestyle="--", alpha=0.3)
    plt.legend()
    plt.tight_layout()
    plt.savefig("ou_vacf_example.png")


def main() -> None:
    """Sample an OU process and correlate its velocities on the fly."""
    generator = torch.Generator().manual_seed(42)
    n_particles = 64
    timestep = 0.01  # ps
    relaxation_time = 1.0  # ps
    decay = float(np.exp(-timestep / relaxation_time))
    noise = float(np.sqrt(1.0 - decay**2))

    correlation_dt = 2  # Step delta between samples
    accumulators = tm.AutoUpdateAccumulators()
    vacf = tm.create(
        "Correlator",
        observable=lambda velocities: velocities,
        tau_max=2000,
        tau_lin=16,
        delta_N=correlation_dt,
        operation="scalar_product",
        normalization="normalized",
    )
    mean_speed = tm.create(
        "MeanVarianceCalculator",
        observable=lambda velocities: velocities.norm(dim=-1).mean(),
        delta_N=correlation_dt,
    )
    accumulators.add(vacf)
    accumulators.add(mean_speed)

    velocities = torch.randn(n_particles, 3, generator=generator, dtype=torch.float64)
    num_steps = 50_000
    for _ in range(num_steps):
        accumulators(velocities)
        velocities = ou_step(velocities, decay, noise, generator)

    result = vacf.result()
    mean, variance = mean_speed.result()
    print(f"Stored samples: {vacf.accumulator.n_stored_samples}")
    print(f"Mean speed: {mean.item():.4f} (variance {variance.item():.2e})")
    for lag_time, value, count in result:
        print(f"{lag_time * timestep:10.2f} ps  {value.item():8.4f}  ({count})")

    plot_results(
        lag_times=result.lag_times.cpu().numpy(),
        vacf=result.values.cpu().numpy(),
        relaxation_time=relaxation_time,
        timestep=timestep,
    )


if __name__ == "__main__":
    main()
