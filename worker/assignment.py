"""
Protocol/plan assignment received from the coordinator.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from worker.config import ClientConfig
from worker.plans import PlanExecutor, PlanHandle


@dataclass(frozen=True)
class JobDescriptor:
    """What to train: model id, version and the round's client config."""
    model_id: str
    version: int
    client_config: ClientConfig


@dataclass(frozen=True)
class Assignment:
    """
    A worker's assignment within its scope.

    Opaque beyond its named plan handles; immutable once fetched.
    """
    protocol: str
    plans: Tuple[str, ...]
    participants: Dict[str, str]
    job: JobDescriptor
    executor: PlanExecutor = field(repr=False, compare=False)

    def plan(self, name: str) -> PlanHandle:
        """
        Resolve a named plan.

        Raises:
            KeyError: If the plan is not assigned or cannot be executed here
        """
        if name not in self.plans:
            raise KeyError(f"Plan {name} is not part of this assignment")
        if not self.executor.has_plan(name):
            raise KeyError(f"Plan {name} is not available to the executor")
        return PlanHandle(name=name, executor=self.executor)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], executor: PlanExecutor) -> 'Assignment':
        """
        Build an assignment from the coordinator response.

        Raises:
            ValueError: If a field is missing or malformed, or the client
                config is invalid
        """
        try:
            job = data['job']
            return cls(
                protocol=data['protocol'],
                plans=tuple(data['plans']),
                participants=dict(data.get('participants', {})),
                job=JobDescriptor(
                    model_id=job['model_id'],
                    version=job.get('version', 0),
                    client_config=ClientConfig.from_dict(job['client_config'])
                ),
                executor=executor
            )
        except KeyError as e:
            raise ValueError(f"Assignment missing field: {e.args[0]}")
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Malformed assignment: {e}")
