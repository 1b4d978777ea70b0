"""Layer distribution planning for llama.cpp RPC clusters.

Decides how many of a model's layers are offloaded to RPC workers (``-ngl``)
and how the offloaded layers are split between workers (``-ts``). Everything
here is pure and fails closed: bad inputs are clamped or defaulted, never
raised.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from .interface import WorkerDescriptor

logger = logging.getLogger(__name__)

DEFAULT_LAYER_COUNT = 40

MIN_PROPORTION = 0.01
MAX_PROPORTION = 0.99


def _clamp(value, low, high):
    return max(low, min(high, value))


@dataclass(frozen=True)
class DistributionPlan:
    """How a model's layers are split between the master and its workers."""
    total_layers: int
    model_size_mb: int
    remote_layers: int
    worker_addresses: tuple[str, ...] = ()
    # Share of the remote layers per worker; only set with 2+ workers
    worker_fractions: tuple[float, ...] = ()

    @property
    def master_layers(self) -> int:
        return self.total_layers - self.remote_layers

    @property
    def tensor_split(self) -> str | None:
        """Value for llama-server's ``-ts`` flag, e.g. ``"0.25,0.75"``.

        Entries are rounded to two decimals, so many workers can drift past
        a sum of 1.0; llama.cpp normalizes the split itself.
        """
        if len(self.worker_fractions) < 2:
            return None
        return ",".join(f"{f:.2f}" for f in self.worker_fractions)

    def to_memory(self) -> dict[str, float]:
        """Per-worker share as ``{"host:port": fraction}`` for the plan cache."""
        if not self.worker_fractions:
            return {address: 1.0 for address in self.worker_addresses}
        return {
            address: round(fraction, 2)
            for address, fraction in zip(self.worker_addresses, self.worker_fractions)
        }


def clamp_remote_layers(total_layers: int, remote_layers: int) -> int:
    """Keep at least one layer on the master and at least one on the workers."""
    return _clamp(remote_layers, 1, total_layers - 1)


def remote_layer_count(
    total_layers: int,
    master_ram_mb: int,
    workers: Sequence[WorkerDescriptor],
) -> int:
    """Number of layers to offload to the worker pool.

    Explicit per-worker proportions take precedence: they are summed (workers
    without one count as 0) and the sum decides the master/worker split. Only
    when no worker declares a proportion is the split derived from RAM.
    """
    declared = sum(w.proportion for w in workers if w.proportion is not None)

    if declared > 0:
        proportion = _clamp(declared, MIN_PROPORTION, MAX_PROPORTION)
        remote = int(total_layers * proportion)
        logger.debug(
            f"Planner: explicit proportion {declared:.2f} (clamped {proportion:.2f}) "
            f"-> {remote} of {total_layers} layers remote"
        )
    else:
        worker_ram = sum(w.ram_mb for w in workers)
        total_ram = master_ram_mb + worker_ram
        fraction = worker_ram / total_ram if total_ram > 0 else 0.0
        remote = int(total_layers * fraction)
        logger.debug(
            f"Planner: RAM split {worker_ram}MB of {total_ram}MB ({fraction:.2f}) "
            f"-> {remote} of {total_layers} layers remote"
        )

    return clamp_remote_layers(total_layers, remote)


def worker_fractions(workers: Sequence[WorkerDescriptor]) -> tuple[float, ...]:
    """Split of the offloaded layers between workers.

    Always proportional to worker RAM, even when the master/worker split came
    from explicit proportions. Workers that all declare 0 MB share equally.
    """
    if len(workers) < 2:
        return ()
    total_ram = sum(w.ram_mb for w in workers)
    if total_ram <= 0:
        return tuple(1.0 / len(workers) for _ in workers)
    return tuple(w.ram_mb / total_ram for w in workers)


def plan_distribution(
    total_layers: int | None,
    model_size_mb: int,
    master_ram_mb: int,
    workers: Sequence[WorkerDescriptor],
    default_layers: int = DEFAULT_LAYER_COUNT,
) -> DistributionPlan | None:
    """Compute the layer distribution for a master-mode launch.

    ``workers`` should be the enabled, connected participants; disabled or
    disconnected entries are filtered out defensively anyway. Returns None
    when nothing can be distributed, in which case all layers stay local.
    """
    participants = [w for w in workers if w.enabled and w.connected]
    if not participants:
        logger.debug("Planner: no participating workers, all layers stay local")
        return None

    if not total_layers or total_layers <= 0:
        logger.warning(f"Planner: layer count unknown, assuming {default_layers}")
        total_layers = default_layers

    if total_layers < 2:
        logger.warning(f"Planner: model has {total_layers} layer(s), nothing to distribute")
        return None

    remote = remote_layer_count(total_layers, master_ram_mb, participants)
    plan = DistributionPlan(
        total_layers=total_layers,
        model_size_mb=model_size_mb,
        remote_layers=remote,
        worker_addresses=tuple(w.address for w in participants),
        worker_fractions=worker_fractions(participants),
    )
    logger.info(
        f"Planner: {plan.master_layers} layers local, {plan.remote_layers} remote "
        f"across {len(participants)} worker(s)"
        + (f", tensor split {plan.tensor_split}" if plan.tensor_split else "")
    )
    return plan


# ─────────────────────────────────────────────────────────────────
# Display helpers
# ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LoadShare:
    """One device's share of the load, for display."""
    name: str
    address: str | None  # None for the master
    ram_mb: int
    fraction: float
    explicit: bool = False


def load_breakdown(
    master_ram_mb: int,
    workers: Sequence[WorkerDescriptor],
) -> list[LoadShare]:
    """Per-device share of the whole model, master first.

    With any explicit proportion, the master gets what is left over
    (clamped to [0.01, 0.99]) and workers without a proportion show 0.
    Otherwise every device's share is its RAM over the total RAM.
    """
    declared = sum(w.proportion for w in workers if w.proportion is not None)
    total_ram = master_ram_mb + sum(w.ram_mb for w in workers)

    def ram_share(ram_mb: int) -> float:
        return ram_mb / total_ram if total_ram > 0 else 0.0

    if declared > 0:
        master = _clamp(1.0 - declared, MIN_PROPORTION, MAX_PROPORTION)
    else:
        master = ram_share(master_ram_mb)

    shares = [LoadShare(name="Master", address=None, ram_mb=master_ram_mb, fraction=master)]
    for w in workers:
        if w.proportion is not None:
            fraction = w.proportion
        elif declared <= 0:
            fraction = ram_share(w.ram_mb)
        else:
            fraction = 0.0
        shares.append(LoadShare(
            name=w.name,
            address=w.address,
            ram_mb=w.ram_mb,
            fraction=fraction,
            explicit=w.proportion is not None,
        ))
    return shares


@dataclass(frozen=True)
class CapacityCheck:
    total_ram_mb: int
    model_size_mb: int

    @property
    def sufficient(self) -> bool:
        # Unknown model size is never reported as a shortfall
        return self.model_size_mb == 0 or self.total_ram_mb >= self.model_size_mb


def capacity_check(
    master_ram_mb: int,
    workers: Sequence[WorkerDescriptor],
    model_size_mb: int,
) -> CapacityCheck:
    """Compare the cluster's declared RAM against the model size."""
    total = master_ram_mb + sum(w.ram_mb for w in workers if w.enabled)
    return CapacityCheck(total_ram_mb=total, model_size_mb=model_size_mb)
