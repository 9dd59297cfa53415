"""
Job lifecycle state machine.

A job takes a worker from first contact with the coordinator to a reported
delta:

    CONNECTING -> IDENTIFIED -> ASSIGNMENT_READY -> MESH_CONNECTING -> READY
        -> TRAINING -> REPORTING -> DONE

FAILED is reachable from every non-terminal state. From FAILED a new round
may be started after a training failure, and the retained delta may be
re-reported after a report failure. Disconnecting from the mesh is a
separate operation available in any state.

The job does not choose training data: on READY it emits a `ready` event
and the embedding application calls train() with its dataset.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from communication.mesh import PeerTransport
from core.dataset import TrainingData
from core.model import Model, ParameterDelta
from worker import events as job_events
from worker.assignment import Assignment
from worker.config import ClientConfig
from worker.coordinator_client import CoordinatorClient
from worker.errors import (
    JobError,
    JobStateError,
    CoordinatorConnectionError,
    MeshConnectionError,
    AssignmentError,
    TrainingError,
    ReportError,
)
from worker.events import (
    EventChannel,
    IdentifiedEvent,
    ReadyEvent,
    StateChangedEvent,
)
from worker.identity import WorkerIdentity
from worker.membership import MembershipTracker, PeerStatus
from worker.plans import PlanExecutor, LocalPlanExecutor
from worker.reporting import ProtocolHook, ReportingSink
from worker.round_executor import RoundCallbacks, RoundExecutor, _call


logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Lifecycle states of a job."""
    CONNECTING = "connecting"
    IDENTIFIED = "identified"
    ASSIGNMENT_READY = "assignment_ready"
    MESH_CONNECTING = "mesh_connecting"
    READY = "ready"
    TRAINING = "training"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    JobState.CONNECTING: {JobState.IDENTIFIED, JobState.FAILED},
    JobState.IDENTIFIED: {JobState.ASSIGNMENT_READY, JobState.FAILED},
    JobState.ASSIGNMENT_READY: {JobState.MESH_CONNECTING, JobState.FAILED},
    JobState.MESH_CONNECTING: {JobState.READY, JobState.FAILED},
    JobState.READY: {JobState.TRAINING, JobState.FAILED},
    JobState.TRAINING: {JobState.REPORTING, JobState.FAILED},
    JobState.REPORTING: {JobState.DONE, JobState.FAILED},
    JobState.DONE: set(),
    JobState.FAILED: {JobState.TRAINING, JobState.REPORTING},
}


class Job:
    """
    One worker's federated training job.

    Usage:
        job = Job(coordinator_client, transport=transport, model_id="mlp")
        job.on("batch_end", print_progress)
        ready = await job.start()
        delta = await job.train(dataset)
    """

    def __init__(
        self,
        coordinator_client: CoordinatorClient,
        transport: Optional[PeerTransport] = None,
        plan_executor: Optional[PlanExecutor] = None,
        model_id: str = "mlp",
        plan_name: str = "training_plan",
        worker_id: Optional[str] = None,
        scope_id: Optional[str] = None,
        events: Optional[EventChannel] = None,
        protocol_hook: Optional[ProtocolHook] = None,
        report_timeout: Optional[float] = None
    ):
        """
        Initialize job.

        Args:
            coordinator_client: Client for the coordinator HTTP API
            transport: Peer transport (None runs without a mesh)
            plan_executor: Executor for assigned plans (local by default)
            model_id: Model to train
            plan_name: Name of the training plan in the assignment
            worker_id: Existing worker id to resume, if any
            scope_id: Scope to join, if any (None creates a new scope)
            events: Event channel shared with the embedder
            protocol_hook: Protocol step run before reporting
            report_timeout: Time limit for one report, in seconds
        """
        self.coordinator_client = coordinator_client
        self.transport = transport
        self.plan_executor = plan_executor or LocalPlanExecutor()
        self.model_id = model_id
        self.plan_name = plan_name
        self.requested_worker_id = worker_id
        self.requested_scope_id = scope_id
        self.events = events or EventChannel()
        self.protocol_hook = protocol_hook
        self.report_timeout = report_timeout

        self.state = JobState.CONNECTING
        self.identity: Optional[WorkerIdentity] = None
        self.assignment: Optional[Assignment] = None
        self.model: Optional[Model] = None
        self.failure: Optional[JobError] = None

        # Delta kept after a failed report so it can be retried
        self.pending_delta: Optional[ParameterDelta] = None
        self.last_ack: Optional[Dict[str, Any]] = None
        self.rounds_completed = 0

        self.membership: Optional[MembershipTracker] = None
        if transport is not None:
            self.membership = MembershipTracker(transport, self.events)

        self.executor: Optional[RoundExecutor] = None
        self._sink: Optional[ReportingSink] = None
        self._cancel = asyncio.Event()
        self._started = False
        self._disconnected = False

    # Events

    def on(self, event: str, handler):
        """Register an event handler (see worker.events for names)."""
        return self.events.on(event, handler)

    # Read-only views

    @property
    def client_config(self) -> Optional[ClientConfig]:
        return self.assignment.job.client_config if self.assignment else None

    @property
    def participants(self) -> Dict[str, str]:
        """
        Every scope member and its role, as assigned by the coordinator.

        Creators use this to distribute join links.
        """
        return dict(self.assignment.participants) if self.assignment else {}

    @property
    def roster(self) -> Dict[str, PeerStatus]:
        """Current peer connection states."""
        return self.membership.roster.snapshot() if self.membership else {}

    # Lifecycle

    async def start(self) -> ReadyEvent:
        """
        Drive the job from CONNECTING to READY.

        Returns:
            The ready event (model, client config, identity, participants)

        Raises:
            CoordinatorConnectionError: Handshake failed
            AssignmentError: No usable assignment, plan, model or config
            MeshConnectionError: Transport could not start connecting
        """
        if self._started:
            raise JobStateError("Job already started")
        self._started = True

        await self._handshake()
        await self._fetch_assignment()
        await self._connect_mesh()

        await self._transition(JobState.READY)

        if self.identity.is_creator:
            logger.info(
                f"Scope {self.identity.scope_id} created with "
                f"{len(self.participants)} participants"
            )

        ready = ReadyEvent(
            model=self.model,
            client_config=self.client_config,
            identity=self.identity,
            participants=self.participants
        )
        await self.events.emit(job_events.READY, ready)
        return ready

    async def _handshake(self):
        try:
            self.identity = await self.coordinator_client.connect(
                model_id=self.model_id,
                worker_id=self.requested_worker_id,
                scope_id=self.requested_scope_id
            )
        except (httpx.HTTPError, ValueError) as e:
            error = CoordinatorConnectionError(f"Handshake failed: {e}", cause=e)
            await self._fail(error)
            raise error from e

        await self._transition(JobState.IDENTIFIED)

        assigned = self.requested_worker_id is None or self.requested_scope_id is None
        await self.events.emit(job_events.IDENTIFIED, IdentifiedEvent(self.identity, assigned))

    async def _fetch_assignment(self):
        try:
            data = await self.coordinator_client.fetch_assignment(self.identity)
            assignment = Assignment.from_dict(data, self.plan_executor)
            assignment.plan(self.plan_name)
            model = await self.coordinator_client.fetch_model(assignment.job.model_id)
        except KeyError as e:
            error = AssignmentError(f"No usable training plan: {e.args[0]}", cause=e)
            await self._fail(error)
            raise error from e
        except (httpx.HTTPError, ValueError) as e:
            error = AssignmentError(f"Assignment failed: {e}", cause=e)
            await self._fail(error)
            raise error from e

        self.assignment = assignment
        self.model = model
        await self._transition(JobState.ASSIGNMENT_READY)

    async def _connect_mesh(self):
        await self._transition(JobState.MESH_CONNECTING)

        if self.membership is None:
            logger.info("No mesh transport configured, skipping peer connections")
            return

        peers = [p for p in self.participants if p != self.identity.worker_id]
        self.membership.worker_id = self.identity.worker_id
        self.membership.seed(peers)
        await self.membership.start()

        try:
            await self.transport.connect_to_participants(
                self.identity.worker_id,
                self.identity.scope_id,
                peers
            )
        except Exception as e:
            await self.membership.stop()
            error = MeshConnectionError(f"Could not connect to participants: {e}", cause=e)
            await self._fail(error)
            raise error from e

        logger.info(f"Mesh connection initiated toward {len(peers)} peers")

    async def train(
        self,
        dataset: TrainingData,
        callbacks: Optional[RoundCallbacks] = None
    ) -> ParameterDelta:
        """
        Run a round on the embedder's dataset and report its delta.

        Allowed from READY, or from FAILED after a training failure.

        Args:
            dataset: Local training data
            callbacks: Optional callbacks, invoked after the matching events
                (an on_done callback that raises is logged, the round stays DONE)

        Returns:
            The reported delta

        Raises:
            TrainingError: The round was aborted (session stays connected)
            ReportError: The report failed; the delta is kept for retry_report()
        """
        retrying = self.state == JobState.FAILED and isinstance(self.failure, TrainingError)
        if self.state != JobState.READY and not retrying:
            raise JobStateError(f"Cannot train in state {self.state.value}")
        if self._disconnected:
            raise JobStateError("Job was disconnected")

        callbacks = callbacks or RoundCallbacks()
        self._cancel.clear()
        await self._transition(JobState.TRAINING)

        async def on_batch_end(event):
            await self.events.emit(job_events.BATCH_END, event)
            await _call(callbacks.on_batch_end, event)

        async def on_epoch_end(event):
            await self.events.emit(job_events.EPOCH_END, event)
            await _call(callbacks.on_epoch_end, event)

        async def on_done():
            await self.events.emit(job_events.DONE)
            # The round is reported and DONE; a raising callback cannot undo that
            try:
                await _call(callbacks.on_done)
            except Exception as e:
                logger.error(f"on_done callback failed after round completed: {e}")

        self.executor = RoundExecutor(
            plan=self.assignment.plan(self.plan_name),
            worker_context=self.identity,
            cancel_event=self._cancel
        )

        try:
            delta = await self.executor.run_round(
                self.model,
                dataset,
                self.client_config,
                callbacks=RoundCallbacks(on_batch_end, on_epoch_end, on_done),
                reporter=self._report
            )
        except TrainingError as e:
            await self._fail(e)
            raise
        except ReportError as e:
            self.pending_delta = e.delta
            await self._fail(e)
            raise

        return delta

    async def retry_report(self) -> Dict[str, Any]:
        """
        Re-report the delta kept after a failed report.

        Returns:
            Acknowledgment from the coordinator
        """
        if not (self.state == JobState.FAILED
                and isinstance(self.failure, ReportError)
                and self.pending_delta is not None):
            raise JobStateError("No failed report to retry")

        try:
            await self._report(self.pending_delta)
        except ReportError as e:
            await self._fail(e)
            raise

        await self.events.emit(job_events.DONE)
        return self.last_ack

    async def _report(self, delta: ParameterDelta):
        """Hand the delta to the reporting sink: TRAINING/FAILED -> REPORTING -> DONE."""
        await self._transition(JobState.REPORTING)

        ack = await self._get_sink().report(delta)

        self.pending_delta = None
        self.last_ack = ack
        self.rounds_completed += 1
        await self._transition(JobState.DONE)

    def _get_sink(self) -> ReportingSink:
        if self._sink is None:
            self._sink = ReportingSink(
                coordinator_client=self.coordinator_client,
                identity=self.identity,
                hook=self.protocol_hook,
                transport=self.transport,
                timeout=self.report_timeout
            )
        return self._sink

    # Peers

    async def send_to_participants(self, payload: Any) -> int:
        """
        Send a payload to connected peers, best-effort.

        Returns:
            Number of peers the payload was handed to
        """
        if self.transport is None or not self.transport.is_connected:
            return 0
        return await self.transport.send_to_participants(payload)

    def cancel(self):
        """Request the running round to stop at its next suspension point."""
        self._cancel.set()

    async def disconnect(self):
        """
        Stop the running round (if any) and leave the mesh.

        Does not change the lifecycle state.
        """
        self.cancel()
        self._disconnected = True

        if self.membership is not None:
            await self.membership.stop()
        if self.transport is not None:
            await self.transport.disconnect_from_participants()

        logger.info("Job disconnected from participants")

    # State handling

    async def _transition(self, new_state: JobState):
        if new_state not in _TRANSITIONS[self.state]:
            raise JobStateError(
                f"Illegal transition {self.state.value} -> {new_state.value}"
            )

        previous = self.state
        self.state = new_state
        logger.info(f"Job state: {previous.value} -> {new_state.value}")
        await self.events.emit(
            job_events.STATE_CHANGED,
            StateChangedEvent(previous.value, new_state.value)
        )

    async def _fail(self, error: JobError):
        self.failure = error
        logger.error(f"Job failed: {error}")
        await self._transition(JobState.FAILED)
        await self.events.emit(job_events.FAILED, error)

    def get_status(self) -> dict:
        """
        Get job status.

        Returns:
            Status dictionary
        """
        status = {
            'state': self.state.value,
            'model_id': self.model_id,
            'rounds_completed': self.rounds_completed,
            'failure': str(self.failure) if self.failure else None,
            'pending_report': self.pending_delta is not None
        }

        if self.identity:
            status['identity'] = self.identity.to_dict()

        if self.membership:
            status['membership'] = self.membership.get_status()

        if self.executor and self.executor.state:
            status['round'] = {
                'update': self.executor.state.update,
                'batch': self.executor.state.batch,
                'epoch': self.executor.state.epoch
            }

        return status
