"""
Main worker client for meshfed federated learning.

Wires the coordinator client, mesh transport, plan executor and job state
machine together, and supplies local training data when the embedding
application does not.
"""

import asyncio
import signal
import logging
from typing import List, Optional

from communication.mesh import PeerTransport, WebSocketPeerTransport
from core.dataset import TrainingData, create_dummy_dataset
from core.model import Model, ParameterDelta
from worker import events as job_events
from worker.config import WorkerConfig
from worker.coordinator_client import CoordinatorClient
from worker.events import IdentifiedEvent, BatchEndEvent, EpochEndEvent
from worker.identity import IdentityStore, Role
from worker.job import Job
from worker.plans import PlanExecutor, LocalPlanExecutor, RemotePlanExecutor
from worker.round_executor import RoundCallbacks


logger = logging.getLogger(__name__)


class WorkerClient:
    """
    Main worker client orchestrating all components.

    Manages worker lifecycle including the handshake, mesh connection,
    a training round and graceful shutdown.
    """

    def __init__(
        self,
        config: WorkerConfig,
        transport: Optional[PeerTransport] = None,
        plan_executor: Optional[PlanExecutor] = None,
        http_transport=None
    ):
        """
        Initialize worker client.

        Args:
            config: Worker configuration
            transport: Peer transport (built from config when None)
            plan_executor: Plan executor (built from config when None)
            http_transport: Optional httpx transport for the coordinator client
        """
        self.config = config
        self._transport = transport
        self._plan_executor = plan_executor
        self._http_transport = http_transport

        # Set logging level
        logging.getLogger().setLevel(config.log_level)

        # Components (initialized in start())
        self.coordinator_client: Optional[CoordinatorClient] = None
        self.identity_store: Optional[IdentityStore] = None
        self.job: Optional[Job] = None

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()

        logger.info(f"Worker client initialized: {config}")

    async def start(self):
        """
        Start worker client.

        Connects to the coordinator, fetches the assignment and model and
        starts connecting to the scope's participants.
        """
        if self._running:
            logger.warning("Worker already running")
            return

        logger.info("=" * 60)
        logger.info("Starting meshfed Worker")
        logger.info("=" * 60)
        logger.info(f"Coordinator: {self.config.coordinator_url}")
        logger.info(f"Model: {self.config.model_id}")
        logger.info(f"Mesh: {self.config.mesh_transport}")
        logger.info("=" * 60)

        worker_id, scope_id = self.config.worker_id, self.config.scope_id
        if self.config.identity_file:
            self.identity_store = IdentityStore(self.config.identity_file)
            stored_worker, stored_scope = self.identity_store.load()
            worker_id = worker_id or stored_worker
            scope_id = scope_id or stored_scope

        self.coordinator_client = CoordinatorClient(
            coordinator_url=self.config.coordinator_url,
            timeout=self.config.coordinator_timeout,
            retry_attempts=self.config.coordinator_retry_attempts,
            retry_delay=self.config.coordinator_retry_delay,
            hostname=self.config.hostname,
            transport=self._http_transport
        )

        self.job = Job(
            coordinator_client=self.coordinator_client,
            transport=self._build_transport(),
            plan_executor=self._build_plan_executor(),
            model_id=self.config.model_id,
            plan_name=self.config.plan_name,
            worker_id=worker_id,
            scope_id=scope_id
        )
        self.job.on(job_events.IDENTIFIED, self._on_identified)

        self._running = True
        await self.job.start()

        if self.job.identity.is_creator:
            logger.info("Other workers can join this scope with:")
            for command in self.join_commands():
                logger.info(f"  {command}")

        logger.info("")
        logger.info("Worker started successfully!")
        logger.info("=" * 60)

    def join_commands(self) -> List[str]:
        """One run_worker command per pre-allocated participant slot."""
        if self.job is None or self.job.identity is None:
            return []
        return [
            f"python scripts/run_worker.py --coordinator {self.config.coordinator_url} "
            f"--worker-id {worker_id} --scope {self.job.identity.scope_id}"
            for worker_id, role in self.job.participants.items()
            if role == Role.PARTICIPANT.value
        ]

    def _build_transport(self) -> Optional[PeerTransport]:
        if self._transport is not None:
            return self._transport
        if self.config.mesh_transport == "websocket":
            return WebSocketPeerTransport(self.config.get_mesh_url())
        if self.config.mesh_transport == "none":
            return None
        raise ValueError(f"Unknown mesh transport: {self.config.mesh_transport}")

    def _build_plan_executor(self) -> PlanExecutor:
        if self._plan_executor is not None:
            return self._plan_executor
        if self.config.plan_runtime_url:
            logger.info(f"Executing plans on {self.config.plan_runtime_url}")
            self._plan_executor = RemotePlanExecutor(
                self.config.plan_runtime_url,
                plan_names=(self.config.plan_name,)
            )
        else:
            self._plan_executor = LocalPlanExecutor()
        return self._plan_executor

    def _on_identified(self, event: IdentifiedEvent):
        if self.identity_store is not None:
            self.identity_store.save(event.identity)
        logger.info(f"✓ Identified as {event.identity.worker_id} ({event.identity.role.value})")

    async def stop(self, leave: bool = False):
        """
        Stop worker client.

        Args:
            leave: Also remove this worker from its scope on the coordinator
        """
        if not self._running:
            return

        logger.info("=" * 60)
        logger.info("Shutting down worker...")
        logger.info("=" * 60)

        if self.job:
            await self.job.disconnect()
            logger.info("✓ Disconnected from participants")

        if self._plan_executor:
            await self._plan_executor.close()

        if self.coordinator_client:
            if leave and self.job and self.job.identity:
                await self.coordinator_client.leave(self.job.identity)
                if self.identity_store:
                    self.identity_store.clear()
            await self.coordinator_client.close()
            logger.info("✓ Coordinator client closed")

        self._running = False
        self._shutdown_event.set()

        logger.info("Worker shutdown complete")

    def build_dataset(self, model: Model) -> TrainingData:
        """
        Create a synthetic dataset shaped for the model.

        Input dimension comes from the first weight, class count from the
        last bias.
        """
        input_dim = model.params[0].shape[0]
        num_classes = model.params[-1].shape[-1]
        return create_dummy_dataset(
            num_samples=self.config.num_samples,
            input_dim=input_dim,
            num_classes=num_classes,
            seed=self.config.dataset_seed
        )

    async def run_training(
        self,
        dataset: Optional[TrainingData] = None,
        callbacks: Optional[RoundCallbacks] = None
    ) -> ParameterDelta:
        """
        Run one federated round and report its delta.

        Args:
            dataset: Local training data (synthetic when None)
            callbacks: Optional round callbacks

        Returns:
            The reported delta
        """
        if not self._running:
            raise RuntimeError("Worker not started. Call start() first.")

        if dataset is None:
            dataset = self.build_dataset(self.job.model)
            logger.info(f"Created dummy dataset ({len(dataset)} samples)")

        config = self.job.client_config
        logger.info("")
        logger.info("=" * 60)
        logger.info("Starting Training")
        logger.info("=" * 60)
        logger.info(
            f"batch_size={config.batch_size}, lr={config.lr}, "
            f"updates={config.num_updates(len(dataset))}"
        )

        self.job.on(job_events.BATCH_END, _log_batch)
        self.job.on(job_events.EPOCH_END, _log_epoch)
        try:
            delta = await self.job.train(dataset, callbacks=callbacks)
        finally:
            self.job.events.off(job_events.BATCH_END, _log_batch)
            self.job.events.off(job_events.EPOCH_END, _log_epoch)

        logger.info("=" * 60)
        logger.info(f"✓ Round complete, reported {len(delta)} delta tensors")
        logger.info("=" * 60)
        return delta

    async def wait_for_shutdown(self):
        """Block until shutdown is triggered via signal or stop()."""
        await self._shutdown_event.wait()

    def get_status(self) -> dict:
        """
        Get worker status.

        Returns:
            Status dictionary with component information
        """
        status = {
            'running': self._running,
            'coordinator_url': self.config.coordinator_url,
            'model_id': self.config.model_id
        }

        if self.job:
            status['job'] = self.job.get_status()

        return status

    def is_running(self) -> bool:
        return self._running


def _log_batch(event: BatchEndEvent):
    logger.info(
        f"Update {event.update} (epoch {event.epoch}, batch {event.batch}): "
        f"loss={event.loss:.4f}, acc={event.accuracy:.3f}"
    )


def _log_epoch(event: EpochEndEvent):
    logger.info(f"✓ Epoch {event.epoch} complete after update {event.update}")


def setup_logging(config: WorkerConfig):
    """Configure root logging for a worker process."""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


# Signal handling for graceful shutdown

_worker_instance: Optional[WorkerClient] = None


def setup_signal_handlers(worker: WorkerClient):
    """
    Set up signal handlers for graceful shutdown.

    Args:
        worker: Worker client instance
    """
    global _worker_instance
    _worker_instance = worker

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        if _worker_instance and _worker_instance.job:
            _worker_instance.job.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


# Main entry point

async def main(config: Optional[WorkerConfig] = None):
    """
    Main entry point for worker client.

    Args:
        config: Optional worker configuration (creates default if None)
    """
    if config is None:
        config = WorkerConfig()

    setup_logging(config)

    worker = WorkerClient(config)
    setup_signal_handlers(worker)

    try:
        await worker.start()
        await worker.run_training()
    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
