"""
Built-in plans that a worker can execute locally.

A plan is a named computation with an explicit argument list:

    plan(worker, data_batch, target_batch, batch_size, lr, *params)
        -> [loss, accuracy, *new_params]

Plans are pure functions of their inputs; they never mutate the
parameters they receive.
"""

from typing import Callable, Dict, List, Sequence, Tuple, Any

import torch


Plan = Callable[..., Sequence[torch.Tensor]]


def mlp_forward(inputs: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
    """
    Forward pass of a fully-connected network stored as (weight, bias) pairs.

    ReLU between layers, raw logits out.
    """
    if len(params) % 2 != 0:
        raise ValueError(f"Expected (weight, bias) pairs, got {len(params)} tensors")

    hidden = inputs
    num_layers = len(params) // 2
    for i in range(num_layers):
        weight, bias = params[2 * i], params[2 * i + 1]
        hidden = hidden @ weight + bias
        if i < num_layers - 1:
            hidden = torch.relu(hidden)
    return hidden


def mlp_training_plan(
    worker: Any,
    data_batch: torch.Tensor,
    target_batch: torch.Tensor,
    batch_size: int,
    lr: float,
    *params: torch.Tensor
) -> List[torch.Tensor]:
    """
    One SGD step of softmax cross-entropy on a batch.

    Args:
        worker: Worker context (unused by local plans)
        data_batch: Inputs, shape (batch, features)
        target_batch: One-hot targets, shape (batch, classes)
        batch_size: Number of samples in this batch
        lr: Learning rate
        *params: Current parameters as (weight, bias) pairs

    Returns:
        [loss, accuracy, *new_params]
    """
    with torch.enable_grad():
        leaves = [p.detach().requires_grad_(True) for p in params]
        logits = mlp_forward(data_batch, leaves)
        log_probs = torch.log_softmax(logits, dim=1)
        loss = -(target_batch * log_probs).sum() / batch_size
        grads = torch.autograd.grad(loss, leaves)

    with torch.no_grad():
        accuracy = (logits.argmax(dim=1) == target_batch.argmax(dim=1)).float().mean()
        new_params = [(p - lr * g).detach() for p, g in zip(leaves, grads)]

    return [loss.detach(), accuracy, *new_params]


def evaluate(
    params: Sequence[torch.Tensor],
    inputs: torch.Tensor,
    targets: torch.Tensor
) -> Tuple[float, float]:
    """
    Compute (loss, accuracy) of parameters over a dataset.
    """
    with torch.no_grad():
        logits = mlp_forward(inputs, params)
        log_probs = torch.log_softmax(logits, dim=1)
        loss = -(targets * log_probs).sum() / inputs.shape[0]
        accuracy = (logits.argmax(dim=1) == targets.argmax(dim=1)).float().mean()
    return loss.item(), accuracy.item()


PLANS: Dict[str, Plan] = {
    "training_plan": mlp_training_plan,
}


def get_plan(name: str) -> Plan:
    """
    Look up a built-in plan by name.

    Raises:
        KeyError: If no plan with this name exists
    """
    if name not in PLANS:
        raise KeyError(f"Unknown plan: {name}")
    return PLANS[name]


def list_plans() -> List[str]:
    """Names of all built-in plans."""
    return sorted(PLANS)
