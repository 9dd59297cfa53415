"""
Model store and delta aggregation for the coordinator.

Holds the canonical model per model id, collects worker deltas per scope
round and applies federated averaging once every expected worker has
reported:

    params[v + 1] = params[v] - mean(deltas)

Deltas are original - trained, so subtracting their mean moves the model
toward the workers' trained parameters.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Any

import torch

from core.model import Model


logger = logging.getLogger(__name__)


@dataclass
class PendingRound:
    """Reports collected for one scope and model version."""
    scope_id: str
    model_id: str
    version: int
    reports: Dict[str, List[torch.Tensor]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)


class ModelStore:
    """
    Canonical models and in-flight federated rounds.

    Usage:
        store = ModelStore()
        store.register_model(create_mlp_model("mlp", [16, 32, 4]))
        ack = store.submit_report(scope_id, worker_id, "mlp", 0, tensors, expected)
    """

    def __init__(self):
        self.models: Dict[str, Model] = {}
        self.rounds: Dict[Tuple[str, str, int], PendingRound] = {}
        self.aggregation_history: List[Dict[str, Any]] = []
        self.max_history = 1000

    def register_model(self, model: Model):
        """Install (or replace) a canonical model."""
        self.models[model.model_id] = model
        logger.info(
            f"Registered model {model.model_id} v{model.version} "
            f"({model.count_parameters():,} parameters)"
        )

    def get_model(self, model_id: str) -> Optional[Model]:
        return self.models.get(model_id)

    def submit_report(
        self,
        scope_id: str,
        worker_id: str,
        model_id: str,
        version: int,
        delta: Sequence[torch.Tensor],
        expected_workers: Sequence[str]
    ) -> Dict[str, Any]:
        """
        Record a worker's delta and aggregate when the round is complete.

        A second report from the same worker for the same round replaces
        the first.

        Args:
            scope_id: Reporting worker's scope
            worker_id: Reporting worker
            model_id: Model the delta applies to
            version: Model version the worker trained from
            delta: Delta tensors in parameter order
            expected_workers: Workers whose reports complete the round

        Returns:
            Acknowledgment dictionary

        Raises:
            KeyError: If the model is unknown
            ValueError: If the version is stale or the delta does not match
        """
        model = self.models.get(model_id)
        if model is None:
            raise KeyError(f"Unknown model: {model_id}")

        if version != model.version:
            raise ValueError(
                f"Stale report for {model_id}: trained on v{version}, "
                f"current is v{model.version}"
            )

        if len(delta) != len(model):
            raise ValueError(f"Delta has {len(delta)} tensors, model has {len(model)}")
        for i, (d, p) in enumerate(zip(delta, model.params)):
            if d.shape != p.shape:
                raise ValueError(f"Delta tensor {i} has shape {tuple(d.shape)}, expected {tuple(p.shape)}")

        key = (scope_id, model_id, version)
        pending = self.rounds.get(key)
        if pending is None:
            pending = PendingRound(scope_id=scope_id, model_id=model_id, version=version)
            self.rounds[key] = pending
        pending.reports[worker_id] = list(delta)

        expected = set(expected_workers) | {worker_id}
        received = len(expected & set(pending.reports))

        logger.info(
            f"Report from {worker_id} for {model_id} v{version} in scope {scope_id} "
            f"({received}/{len(expected)})"
        )

        aggregated = False
        if expected <= set(pending.reports):
            self._aggregate(pending)
            aggregated = True

        return {
            'status': 'accepted',
            'reports_received': received,
            'reports_expected': len(expected),
            'aggregated': aggregated,
            'model_version': self.models[model_id].version
        }

    def _aggregate(self, pending: PendingRound):
        """Apply the mean delta and bump the model version."""
        model = self.models[pending.model_id]
        reports = list(pending.reports.values())

        new_params = []
        for i, param in enumerate(model.params):
            mean_delta = torch.stack([r[i].to(param.dtype) for r in reports]).mean(dim=0)
            new_params.append(param - mean_delta)

        updated = Model(
            model_id=model.model_id,
            names=model.names,
            params=tuple(new_params),
            version=model.version + 1
        )
        self.models[model.model_id] = updated
        del self.rounds[(pending.scope_id, pending.model_id, pending.version)]

        self.aggregation_history.append({
            'scope_id': pending.scope_id,
            'model_id': pending.model_id,
            'version': updated.version,
            'num_reports': len(reports),
            'duration': time.time() - pending.started_at
        })
        if len(self.aggregation_history) > self.max_history:
            self.aggregation_history = self.aggregation_history[-self.max_history:]

        logger.info(
            f"✓ Aggregated {len(reports)} deltas for {model.model_id}: "
            f"v{model.version} -> v{updated.version}"
        )

    def get_round_status(self, scope_id: str, model_id: str) -> Dict[str, Any]:
        """
        Reports received so far for the current version in a scope.

        Returns:
            Status dictionary
        """
        model = self.models.get(model_id)
        if model is None:
            return {'model_id': model_id, 'known': False}

        pending = self.rounds.get((scope_id, model_id, model.version))
        return {
            'model_id': model_id,
            'known': True,
            'version': model.version,
            'reported': sorted(pending.reports) if pending else []
        }
