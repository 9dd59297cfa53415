"""
Local round execution.

Turns a canonical model, a local dataset and a server-issued ClientConfig
into a strictly sequential series of plan invocations, one per batch, and
produces the parameter delta for the round.

Ownership: the executor clones the canonical model into a working
parameter set at round start and owns it exclusively until the round
ends. Every tensor the round holds (working parameters, plan metrics,
batch slices) is registered in a per-round TensorArena and released by
identity; the arena is emptied on every exit path.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import torch

from core.dataset import TrainingData
from core.model import Model, ParameterDelta, compute_delta
from worker.config import ClientConfig
from worker.errors import TrainingError, RoundCancelledError
from worker.events import BatchEndEvent, EpochEndEvent
from worker.plans import PlanHandle


logger = logging.getLogger(__name__)


Reporter = Callable[[ParameterDelta], Awaitable[Any]]


class TensorArena:
    """
    Registry of the tensors owned by one round.

    Tensors are tracked by identity and tagged with a kind ("param",
    "result", "batch"). Releasing drops the arena's reference, which is
    the last one the round holds.
    """

    def __init__(self):
        self._live: Dict[int, Tuple[torch.Tensor, str]] = {}
        self.acquired = 0
        self.released = 0

    def acquire(self, tensors: Sequence[torch.Tensor], kind: str) -> List[torch.Tensor]:
        """
        Take ownership of tensors. Re-acquiring a live tensor only re-tags it.
        """
        for tensor in tensors:
            key = id(tensor)
            if key not in self._live:
                self.acquired += 1
            self._live[key] = (tensor, kind)
        return list(tensors)

    def release(self, tensors: Sequence[torch.Tensor]):
        """Release tensors owned by this arena; unknown tensors are ignored."""
        for tensor in tensors:
            if self._live.pop(id(tensor), None) is not None:
                self.released += 1

    def release_all(self):
        """Release everything still live."""
        self.released += len(self._live)
        self._live.clear()

    def owns(self, tensor: torch.Tensor) -> bool:
        return id(tensor) in self._live

    def live_count(self, kind: Optional[str] = None) -> int:
        if kind is None:
            return len(self._live)
        return sum(1 for _, k in self._live.values() if k == kind)


class ParameterSet:
    """
    The round's current working parameters.

    replace() adopts a new set and releases the previous one in the same
    step, so exactly one current copy of each parameter is live.
    """

    def __init__(self, arena: TensorArena, params: Sequence[torch.Tensor]):
        self._arena = arena
        self._params = arena.acquire(params, kind="param")

    def __len__(self) -> int:
        return len(self._params)

    @property
    def tensors(self) -> Tuple[torch.Tensor, ...]:
        return tuple(self._params)

    def replace(self, new_params: Sequence[torch.Tensor]):
        """
        Adopt new_params as current and release the previous tensors.

        Raises:
            ValueError: If the count or any shape differs from the current set
        """
        if len(new_params) != len(self._params):
            raise ValueError(
                f"Plan returned {len(new_params)} parameters, expected {len(self._params)}"
            )
        for i, (old, new) in enumerate(zip(self._params, new_params)):
            if old.shape != new.shape:
                raise ValueError(
                    f"Parameter {i} changed shape: {tuple(old.shape)} -> {tuple(new.shape)}"
                )

        kept = {id(t) for t in new_params}
        self._arena.acquire(new_params, kind="param")
        self._arena.release([t for t in self._params if id(t) not in kept])
        self._params = list(new_params)


@dataclass
class RoundState:
    """Position within a round."""
    update: int = 0
    batch: int = 0
    epoch: int = 0


@dataclass
class RoundCallbacks:
    """Optional progress callbacks; each may be sync or async."""
    on_batch_end: Optional[Callable[[BatchEndEvent], Any]] = None
    on_epoch_end: Optional[Callable[[EpochEndEvent], Any]] = None
    on_done: Optional[Callable[[], Any]] = None


async def _call(callback: Optional[Callable[..., Any]], *args: Any):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _scalar(value: Any) -> float:
    if isinstance(value, torch.Tensor):
        return float(value.detach().reshape(-1)[0].item())
    return float(value)


class RoundExecutor:
    """
    Runs one bounded training round batch by batch.

    Usage:
        executor = RoundExecutor(plan=assignment.plan("training_plan"), worker_context=identity)
        delta = await executor.run_round(model, dataset, client_config, callbacks, reporter)
    """

    def __init__(
        self,
        plan: PlanHandle,
        worker_context: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
        arena_factory: Callable[[], TensorArena] = TensorArena
    ):
        """
        Initialize round executor.

        Args:
            plan: Training plan to invoke once per update
            worker_context: Passed to the plan as its first argument
            cancel_event: When set, the round stops at the next suspension point
            arena_factory: Creates the per-round tensor arena
        """
        self.plan = plan
        self.worker_context = worker_context
        self.cancel_event = cancel_event
        self.arena_factory = arena_factory

        # Per-round state (replaced at every round start)
        self.arena: Optional[TensorArena] = None
        self.state: Optional[RoundState] = None
        self._params: Optional[ParameterSet] = None

    @property
    def working_param_count(self) -> int:
        """Number of working parameters currently held (0 outside a round)."""
        return len(self._params) if self._params is not None else 0

    async def run_round(
        self,
        model: Model,
        dataset: TrainingData,
        client_config: ClientConfig,
        callbacks: Optional[RoundCallbacks] = None,
        reporter: Optional[Reporter] = None
    ) -> ParameterDelta:
        """
        Run a round and return its parameter delta.

        Args:
            model: Canonical model (never mutated)
            dataset: Local training data
            client_config: Batch size, learning rate and bounds for this round
            callbacks: Progress callbacks
            reporter: Receives the delta exactly once before on_done fires

        Returns:
            ParameterDelta (original - final) for every parameter

        Raises:
            TrainingError: If a plan invocation, result check or callback fails
            RoundCancelledError: If cancellation was requested
        """
        callbacks = callbacks or RoundCallbacks()

        dataset_size = len(dataset)
        if dataset_size == 0:
            raise TrainingError("Cannot run a round on an empty dataset")

        num_batches = client_config.num_batches(dataset_size)
        num_updates = client_config.num_updates(dataset_size)

        logger.info(
            f"Starting round: {dataset_size} samples, batch_size={client_config.batch_size}, "
            f"{num_batches} batches/epoch, {num_updates} updates"
        )

        self.arena = self.arena_factory()
        self.state = RoundState()
        state = self.state

        try:
            self._params = ParameterSet(self.arena, model.clone_params())

            while state.update < num_updates:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise RoundCancelledError(
                        "Round cancelled",
                        update=state.update, batch=state.batch, epoch=state.epoch
                    )
                await self._run_update(model, dataset, client_config, num_batches, callbacks)

            delta = compute_delta(model, self._params.tensors)

        except TrainingError:
            logger.error(f"Round aborted at update {state.update}")
            raise
        except Exception as e:
            logger.error(f"Round aborted at update {state.update}: {e}")
            raise TrainingError(
                f"Round aborted: {e}",
                update=state.update, batch=state.batch, epoch=state.epoch, cause=e
            ) from e
        finally:
            self.arena.release_all()
            self._params = None

        logger.info(f"✓ Round complete: {num_updates} updates, {state.epoch} full epochs")

        if reporter is not None:
            await reporter(delta)

        await _call(callbacks.on_done)
        return delta

    async def _run_update(
        self,
        model: Model,
        dataset: TrainingData,
        client_config: ClientConfig,
        num_batches: int,
        callbacks: RoundCallbacks
    ):
        """Run one plan invocation and advance the round state."""
        state = self.state
        arena = self.arena
        batch_size = client_config.batch_size

        start = state.batch * batch_size
        chunk_size = min(batch_size, len(dataset) - start)
        data_batch, target_batch = dataset.slice(start, chunk_size)
        arena.acquire([data_batch, target_batch], kind="batch")

        outputs = await self.plan.invoke(
            self.worker_context,
            data_batch,
            target_batch,
            chunk_size,
            client_config.lr,
            *self._params.tensors
        )
        arena.acquire(outputs, kind="result")

        expected = len(self._params) + 2
        if len(outputs) != expected:
            raise TrainingError(
                f"Plan {self.plan.name} returned {len(outputs)} outputs, expected {expected}",
                update=state.update, batch=state.batch, epoch=state.epoch
            )

        loss, accuracy, new_params = outputs[0], outputs[1], outputs[2:]
        loss_value = _scalar(loss)
        accuracy_value = _scalar(accuracy)
        arena.release([loss, accuracy])

        self._params.replace(new_params)

        logger.debug(
            f"Update {state.update} (epoch {state.epoch}, batch {state.batch}, "
            f"size {chunk_size}): loss={loss_value:.4f}, acc={accuracy_value:.4f}"
        )

        await _call(callbacks.on_batch_end, BatchEndEvent(
            update=state.update,
            batch=state.batch,
            epoch=state.epoch,
            accuracy=accuracy_value,
            loss=loss_value
        ))
        arena.release([data_batch, target_batch])

        state.batch += 1
        if state.batch == num_batches:
            await _call(callbacks.on_epoch_end, EpochEndEvent(
                update=state.update,
                batch=state.batch,
                epoch=state.epoch,
                model=model
            ))
            state.batch = 0
            state.epoch += 1

        state.update += 1
