"""
Local training data for federated rounds.

Workers keep their data private; a round only ever sees bounded slices of
it. The synthetic generator below stands in for a real loader in demos
and tests.
"""

from dataclasses import dataclass
from typing import Tuple
import logging

import torch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingData:
    """
    Paired inputs and targets, indexed along the first dimension.
    """
    inputs: torch.Tensor
    targets: torch.Tensor

    def __post_init__(self):
        if self.inputs.shape[0] != self.targets.shape[0]:
            raise ValueError(
                f"inputs has {self.inputs.shape[0]} samples but "
                f"targets has {self.targets.shape[0]}"
            )

    def __len__(self) -> int:
        return self.inputs.shape[0]

    def slice(self, start: int, size: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Return (inputs, targets) for samples [start, start + size).

        Raises:
            IndexError: If the slice reaches past the end of the data
        """
        if start < 0 or size <= 0 or start + size > len(self):
            raise IndexError(
                f"Slice [{start}, {start + size}) out of bounds for {len(self)} samples"
            )
        return self.inputs[start:start + size], self.targets[start:start + size]


def one_hot(labels: torch.Tensor, num_classes: int) -> torch.Tensor:
    """Encode integer labels as float one-hot rows."""
    return torch.nn.functional.one_hot(labels.long(), num_classes).float()


def create_dummy_dataset(
    num_samples: int,
    input_dim: int,
    num_classes: int,
    seed: int = 42,
    noise: float = 0.1
) -> TrainingData:
    """
    Create a linearly separable classification dataset.

    Each class has a random centroid; samples are centroids plus gaussian
    noise. Targets are one-hot encoded.

    Args:
        num_samples: Number of samples
        input_dim: Feature dimension
        num_classes: Number of classes
        seed: Random seed for reproducibility
        noise: Standard deviation of the per-sample noise

    Returns:
        TrainingData with float inputs and one-hot targets
    """
    generator = torch.Generator().manual_seed(seed)
    centroids = torch.randn(num_classes, input_dim, generator=generator)
    labels = torch.randint(0, num_classes, (num_samples,), generator=generator)
    inputs = centroids[labels] + noise * torch.randn(num_samples, input_dim, generator=generator)

    logger.debug(
        f"Created dummy dataset: {num_samples} samples, "
        f"{input_dim} features, {num_classes} classes"
    )
    return TrainingData(inputs=inputs, targets=one_hot(labels, num_classes))


def create_sharded_dataset(
    num_samples: int,
    input_dim: int,
    num_classes: int,
    rank: int,
    world_size: int,
    seed: int = 42
) -> TrainingData:
    """
    Create this worker's shard of a shared synthetic dataset.

    All workers generate the same global dataset from the seed and keep
    interleaved samples rank, rank + world_size, ...

    Args:
        num_samples: Global number of samples
        input_dim: Feature dimension
        num_classes: Number of classes
        rank: Worker position (0 to world_size-1)
        world_size: Total number of workers
        seed: Random seed shared by all workers

    Returns:
        TrainingData for this worker
    """
    if not 0 <= rank < world_size:
        raise ValueError(f"rank {rank} out of range for world_size {world_size}")

    full = create_dummy_dataset(num_samples, input_dim, num_classes, seed=seed)
    indices = torch.arange(rank, num_samples, world_size)
    return TrainingData(inputs=full.inputs[indices], targets=full.targets[indices])
