"""
Model parameter containers for federated rounds.

A model is an ordered sequence of named parameter tensors. The canonical
model handed out by the coordinator is never mutated by a worker; rounds
operate on clones and report the difference as a ParameterDelta.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Dict, Any
import logging

import torch

from communication.serialization import serialize_tensor, deserialize_tensor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Model:
    """
    Canonical model: ordered, named parameter tensors.

    The tensors are treated as read-only. Use clone_params() to obtain a
    working copy.
    """
    model_id: str
    names: Tuple[str, ...]
    params: Tuple[torch.Tensor, ...]
    version: int = 0

    def __post_init__(self):
        if len(self.names) != len(self.params):
            raise ValueError(
                f"Model {self.model_id} has {len(self.names)} names "
                f"but {len(self.params)} parameters"
            )

    def __len__(self) -> int:
        return len(self.params)

    @property
    def shapes(self) -> List[torch.Size]:
        return [p.shape for p in self.params]

    def clone_params(self) -> List[torch.Tensor]:
        """Detached copies of every parameter, in order."""
        return [p.detach().clone() for p in self.params]

    def count_parameters(self) -> int:
        """Total number of scalar parameters."""
        return sum(p.numel() for p in self.params)

    def to_payload(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            'model_id': self.model_id,
            'version': self.version,
            'params': [
                serialize_tensor(p, name=n) for n, p in zip(self.names, self.params)
            ]
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Model':
        """Create a Model from a dictionary produced by to_payload()."""
        entries = payload['params']
        return cls(
            model_id=payload['model_id'],
            names=tuple(e.get('name') or f"param_{i}" for i, e in enumerate(entries)),
            params=tuple(deserialize_tensor(e) for e in entries),
            version=payload.get('version', 0)
        )

    @classmethod
    def from_tensors(
        cls,
        model_id: str,
        params: Sequence[torch.Tensor],
        names: Optional[Sequence[str]] = None,
        version: int = 0
    ) -> 'Model':
        """Wrap a list of tensors, generating names when none are given."""
        if names is None:
            names = [f"param_{i}" for i in range(len(params))]
        return cls(
            model_id=model_id,
            names=tuple(names),
            params=tuple(p.detach() for p in params),
            version=version
        )


@dataclass
class ParameterDelta:
    """
    Per-parameter difference between the model before and after a round.

    Produced once per round and reported exactly once. `reported` flips
    only when the reporting sink acknowledges the delta.
    """
    model_id: str
    version: int
    names: Tuple[str, ...]
    tensors: Tuple[torch.Tensor, ...]
    reported: bool = field(default=False)

    def __len__(self) -> int:
        return len(self.tensors)

    def mark_reported(self):
        if self.reported:
            raise RuntimeError(f"Delta for model {self.model_id} was already reported")
        self.reported = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            'model_id': self.model_id,
            'version': self.version,
            'delta': [
                serialize_tensor(t, name=n) for n, t in zip(self.names, self.tensors)
            ]
        }


def compute_delta(model: Model, final_params: Sequence[torch.Tensor]) -> ParameterDelta:
    """
    Compute original - final for every parameter.

    Args:
        model: Canonical model the round started from
        final_params: Working parameters at the end of the round

    Returns:
        ParameterDelta with the same names and shapes as the model
    """
    if len(final_params) != len(model.params):
        raise ValueError(
            f"Expected {len(model.params)} parameters, got {len(final_params)}"
        )

    tensors = []
    for name, original, final in zip(model.names, model.params, final_params):
        if original.shape != final.shape:
            raise ValueError(
                f"Shape mismatch for {name}: {tuple(original.shape)} vs {tuple(final.shape)}"
            )
        tensors.append(original.detach() - final.detach())

    return ParameterDelta(
        model_id=model.model_id,
        version=model.version,
        names=model.names,
        tensors=tuple(tensors)
    )


def create_mlp_model(
    model_id: str,
    layer_sizes: Sequence[int],
    seed: int = 0,
    version: int = 0
) -> Model:
    """
    Create a fully-connected model as (weight, bias) pairs.

    Args:
        model_id: Identifier of the model
        layer_sizes: Units per layer, input first, classes last (e.g. [784, 128, 10])
        seed: Random seed so every process builds the same initial model
        version: Model version

    Returns:
        Model with parameters named fc{i}.weight / fc{i}.bias
    """
    if len(layer_sizes) < 2:
        raise ValueError("layer_sizes needs at least an input and an output size")

    generator = torch.Generator().manual_seed(seed)
    names = []
    params = []
    for i, (fan_in, fan_out) in enumerate(zip(layer_sizes[:-1], layer_sizes[1:])):
        # Glorot uniform
        limit = (6.0 / (fan_in + fan_out)) ** 0.5
        weight = (torch.rand(fan_in, fan_out, generator=generator) * 2 - 1) * limit
        bias = torch.zeros(fan_out)
        names.extend([f"fc{i}.weight", f"fc{i}.bias"])
        params.extend([weight, bias])

    model = Model.from_tensors(model_id, params, names=names, version=version)
    logger.debug(
        f"Created MLP model {model_id} {list(layer_sizes)} "
        f"({model.count_parameters():,} parameters)"
    )
    return model
