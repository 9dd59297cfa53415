"""
Plan execution for worker rounds.

A plan is resolved by name from the session assignment and invoked with
explicit arguments. Executors differ per deployment: LocalPlanExecutor runs
registered torch functions in-process, RemotePlanExecutor forwards the call
to a plan runtime over HTTP.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import torch

from communication.serialization import serialize_tensor, deserialize_tensors
from core.plans import PLANS, Plan


logger = logging.getLogger(__name__)


class PlanExecutor(ABC):
    """Capability to invoke named plans."""

    @abstractmethod
    def has_plan(self, name: str) -> bool:
        """Whether this executor can run the named plan."""

    @abstractmethod
    async def invoke(self, name: str, worker: Any, *args: Any) -> List[torch.Tensor]:
        """
        Invoke a plan.

        Args:
            name: Plan name from the assignment
            worker: Worker context passed as the plan's first argument
            *args: Remaining plan arguments, in order

        Returns:
            Plan outputs, in order
        """

    async def close(self):
        """Release executor resources."""


class LocalPlanExecutor(PlanExecutor):
    """
    Runs plans in-process.

    Synchronous plans run in a worker thread so the event loop keeps
    serving membership traffic while a step computes.
    """

    def __init__(self, plans: Optional[Dict[str, Plan]] = None):
        self.plans: Dict[str, Plan] = dict(PLANS if plans is None else plans)

    def register(self, name: str, plan: Plan):
        self.plans[name] = plan

    def has_plan(self, name: str) -> bool:
        return name in self.plans

    async def invoke(self, name: str, worker: Any, *args: Any) -> List[torch.Tensor]:
        if name not in self.plans:
            raise KeyError(f"Unknown plan: {name}")

        plan = self.plans[name]
        if inspect.iscoroutinefunction(plan):
            result = await plan(worker, *args)
        else:
            result = await asyncio.to_thread(plan, worker, *args)
        return list(result)


class RemotePlanExecutor(PlanExecutor):
    """
    Forwards plan calls to a plan runtime service.

    POST {runtime_url}/plans/{name}/execute with tensors serialized as JSON;
    the response carries {"outputs": [...]}.
    """

    def __init__(
        self,
        runtime_url: str,
        plan_names: Sequence[str] = ("training_plan",),
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize remote executor.

        Args:
            runtime_url: Base URL of the plan runtime
            plan_names: Plans the runtime serves
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.runtime_url = runtime_url.rstrip('/')
        self.plan_names = set(plan_names)
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def has_plan(self, name: str) -> bool:
        return name in self.plan_names

    async def invoke(self, name: str, worker: Any, *args: Any) -> List[torch.Tensor]:
        payload = {
            'worker': worker.to_dict() if hasattr(worker, 'to_dict') else worker,
            'args': [encode_argument(arg) for arg in args]
        }

        client = await self._get_client()
        response = await client.post(
            f"{self.runtime_url}/plans/{name}/execute",
            json=payload
        )
        response.raise_for_status()

        outputs = deserialize_tensors(response.json()['outputs'])
        logger.debug(f"Remote plan {name} returned {len(outputs)} outputs")
        return outputs

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def encode_argument(arg: Any) -> Dict[str, Any]:
    """Tag a plan argument as a tensor or a plain JSON value."""
    if isinstance(arg, torch.Tensor):
        return {'tensor': serialize_tensor(arg)}
    return {'value': arg}


@dataclass(frozen=True)
class PlanHandle:
    """A named plan bound to the executor that runs it."""
    name: str
    executor: PlanExecutor

    async def invoke(self, worker: Any, *args: Any) -> List[torch.Tensor]:
        return await self.executor.invoke(self.name, worker, *args)
