"""
Coordinator server for meshfed federated learning.

Provides REST API and WebSocket endpoints for:
- Session handshake (scope creation and joining)
- Protocol/plan assignment and model download
- Delta reporting with federated averaging
- Mesh relay between scope members
- Plan runtime for remote plan execution
- Job configuration
"""

import argparse
import asyncio
import json
import logging
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from pydantic import BaseModel, Field
import uvicorn

from communication.serialization import deserialize_tensor, deserialize_tensors, serialize_tensors
from core.model import create_mlp_model
from core.plans import PLANS
from coordinator.model_store import ModelStore
from coordinator.registry import ScopeRegistry
from coordinator.training_config import FLJobConfig, JobConfigManager


logger = logging.getLogger(__name__)


# Pydantic models for API

class SessionConnect(BaseModel):
    """Session handshake request."""
    model_id: str = Field(..., description="Model the worker wants to train")
    worker_id: Optional[str] = Field(None, description="Existing worker id to rejoin with")
    scope_id: Optional[str] = Field(None, description="Scope to join (omit to create one)")
    hostname: Optional[str] = Field(None, description="Worker hostname")


class DeltaReport(BaseModel):
    """Parameter delta report."""
    model_id: str = Field(..., description="Model the delta applies to")
    version: int = Field(..., description="Model version trained from", ge=0)
    delta: List[Dict[str, Any]] = Field(..., description="Serialized delta tensors")


class PlanExecution(BaseModel):
    """Plan invocation request."""
    worker: Optional[Dict[str, Any]] = Field(None, description="Calling worker identity")
    args: List[Dict[str, Any]] = Field(..., description="Tagged plan arguments")


# WebSocket connection manager

class ScopeConnectionManager:
    """Relays membership events and messages between members of a scope."""

    def __init__(self):
        self.scopes: Dict[str, Dict[str, WebSocket]] = {}

    async def connect(self, scope_id: str, worker_id: str, websocket: WebSocket):
        """Accept a member connection and announce it to the scope."""
        await websocket.accept()

        peers = self.scopes.setdefault(scope_id, {})
        for peer_id in list(peers):
            if peer_id != worker_id:
                await websocket.send_json({'event': 'peer_connected', 'worker_id': peer_id})
        peers[worker_id] = websocket

        await self.broadcast(scope_id, {'event': 'peer_connected', 'worker_id': worker_id}, exclude=worker_id)
        logger.info(f"Mesh member connected: {worker_id}@{scope_id} ({len(peers)} in scope)")

    async def disconnect(self, scope_id: str, worker_id: str, websocket: WebSocket):
        """Remove a member connection unless it was already replaced."""
        peers = self.scopes.get(scope_id, {})
        if peers.get(worker_id) is not websocket:
            return

        del peers[worker_id]
        if not peers:
            self.scopes.pop(scope_id, None)

        await self.broadcast(scope_id, {'event': 'peer_disconnected', 'worker_id': worker_id})
        logger.info(f"Mesh member disconnected: {worker_id}@{scope_id}")

    async def broadcast(self, scope_id: str, message: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """
        Send a message to every connected member of a scope.

        Returns:
            Number of members the message was sent to
        """
        peers = self.scopes.get(scope_id, {})
        sent = 0
        disconnected = []
        for peer_id, connection in list(peers.items()):
            if peer_id == exclude:
                continue
            try:
                await connection.send_json(message)
                sent += 1
            except Exception as e:
                logger.error(f"Error relaying to {peer_id}: {e}")
                disconnected.append(peer_id)

        # Clean up disconnected members
        for peer_id in disconnected:
            peers.pop(peer_id, None)

        return sent

    def connected(self, scope_id: str) -> List[str]:
        return sorted(self.scopes.get(scope_id, {}))


# Global state
registry: Optional[ScopeRegistry] = None
model_store: Optional[ModelStore] = None
job_config_manager: Optional[JobConfigManager] = None
ws_manager: ScopeConnectionManager = ScopeConnectionManager()

# Set by run_server() before startup
initial_config: Optional[FLJobConfig] = None


def setup_state(config: Optional[FLJobConfig] = None):
    """
    Initialize coordinator state.

    Args:
        config: Job configuration (uses default if None)

    Raises:
        ValueError: If the configuration is invalid
    """
    global registry, model_store, job_config_manager, ws_manager

    config = config or FLJobConfig()
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid job configuration: {errors}")

    registry = ScopeRegistry()
    job_config_manager = JobConfigManager(config)
    model_store = ModelStore()
    model_store.register_model(build_model(config))
    ws_manager = ScopeConnectionManager()


def build_model(config: FLJobConfig):
    """Initial canonical model for a job configuration."""
    return create_mlp_model(config.model_id, config.layer_sizes, seed=config.model_seed)


# Lifespan context manager

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)."""
    # Startup
    logger.info("Starting coordinator server...")
    setup_state(initial_config)
    logger.info("Coordinator server started successfully")

    yield

    # Shutdown
    logger.info("Coordinator server shutdown complete")


# Create FastAPI app

app = FastAPI(
    title="meshfed Coordinator",
    description="Coordinator server for meshfed federated learning",
    version="0.1.0",
    lifespan=lifespan
)


# API Endpoints

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "meshfed Coordinator",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "scopes": registry.get_scope_count(),
        "models": {m.model_id: m.version for m in model_store.models.values()}
    }


@app.post("/sessions/connect")
async def connect_session(request: SessionConnect):
    """
    Session handshake.

    Without scope_id a new scope is created with the caller as creator.
    With scope_id the caller claims its slot (worker_id) or the next free
    participant slot.

    Returns 404 for an unknown model, scope or slot, 400 for a model
    mismatch and 409 if the scope is full.
    """
    if model_store.get_model(request.model_id) is None:
        raise HTTPException(status_code=404, detail=f"Model {request.model_id} not found")

    if request.scope_id is None:
        scope = registry.create_scope(
            model_id=request.model_id,
            num_workers=job_config_manager.get_config().max_workers,
            worker_id=request.worker_id,
            hostname=request.hostname
        )
        member = scope.members[scope.creator_id]
    else:
        scope = registry.get_scope(request.scope_id)
        if scope is None:
            raise HTTPException(status_code=404, detail="Scope not found")

        if scope.model_id != request.model_id:
            raise HTTPException(
                status_code=400,
                detail=f"Scope trains {scope.model_id}, not {request.model_id}"
            )

        member = registry.join_scope(scope.scope_id, request.worker_id, request.hostname)
        if member is None:
            if request.worker_id is not None:
                raise HTTPException(status_code=404, detail="Worker has no slot in this scope")
            raise HTTPException(status_code=409, detail="Scope is full")

    return {
        "worker_id": member.worker_id,
        "scope_id": scope.scope_id,
        "role": member.role
    }


@app.get("/scopes/{scope_id}")
async def get_scope(scope_id: str):
    """
    Get scope information.

    Returns 404 if scope not found.
    """
    scope = registry.get_scope(scope_id)
    if scope is None:
        raise HTTPException(status_code=404, detail="Scope not found")

    info = scope.to_dict()
    info['mesh_connected'] = ws_manager.connected(scope_id)
    info['round'] = model_store.get_round_status(scope_id, scope.model_id)
    return info


@app.get("/scopes/{scope_id}/workers/{worker_id}/assignment")
async def get_assignment(scope_id: str, worker_id: str):
    """
    Get a worker's protocol/plan assignment.

    Returns 404 if the scope or worker is unknown.
    """
    scope = registry.get_scope(scope_id)
    member = registry.get_member(scope_id, worker_id)
    if scope is None or member is None:
        raise HTTPException(status_code=404, detail="Worker not found in scope")

    config = job_config_manager.get_config()
    model = model_store.get_model(scope.model_id)

    return {
        "protocol": config.protocol,
        "plans": list(config.plans),
        "participants": scope.participants(),
        "job": {
            "model_id": model.model_id,
            "version": model.version,
            "client_config": job_config_manager.get_client_config(worker_id)
        }
    }


@app.get("/models/{model_id}")
async def get_model(model_id: str):
    """
    Download the canonical model.

    Returns 404 if model not found.
    """
    model = model_store.get_model(model_id)
    if model is None:
        raise HTTPException(status_code=404, detail="Model not found")

    return model.to_payload()


@app.post("/scopes/{scope_id}/workers/{worker_id}/report")
async def report_delta(scope_id: str, worker_id: str, report: DeltaReport):
    """
    Accept a worker's parameter delta.

    Once every joined member of the scope has reported, the mean delta is
    applied and the model version advances.

    Returns 404 for an unknown worker, 400 for a model mismatch, 422 for
    an undecodable delta and 409 for a stale or misshapen delta.
    """
    scope = registry.get_scope(scope_id)
    member = registry.get_member(scope_id, worker_id)
    if scope is None or member is None or not member.joined:
        raise HTTPException(status_code=404, detail="Worker not found in scope")

    if report.model_id != scope.model_id:
        raise HTTPException(status_code=400, detail=f"Scope trains {scope.model_id}")

    try:
        tensors = deserialize_tensors(report.delta)
    except (KeyError, ValueError, TypeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid delta: {e}")

    try:
        ack = model_store.submit_report(
            scope_id=scope_id,
            worker_id=worker_id,
            model_id=report.model_id,
            version=report.version,
            delta=tensors,
            expected_workers=scope.joined_members()
        )
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if ack['aggregated']:
        await ws_manager.broadcast(scope_id, {
            'event': 'model_updated',
            'model_id': report.model_id,
            'version': ack['model_version']
        })

    return ack


@app.delete("/scopes/{scope_id}/workers/{worker_id}")
async def leave_scope(scope_id: str, worker_id: str):
    """
    Leave a scope.

    Returns 200 if successful, 404 if worker not found.
    """
    success = registry.leave_scope(scope_id, worker_id)

    if not success:
        raise HTTPException(status_code=404, detail="Worker not found in scope")

    return {"message": "Worker left scope"}


@app.post("/plans/{plan_name}/execute")
async def execute_plan(plan_name: str, request: PlanExecution):
    """
    Plan runtime: run a built-in plan on behalf of a worker.

    Arguments arrive as {"tensor": serialized} or {"value": json}.

    Returns 404 for an unknown plan and 422 for bad arguments.
    """
    plan = PLANS.get(plan_name)
    if plan is None:
        raise HTTPException(status_code=404, detail=f"Plan {plan_name} not found")

    try:
        args = [
            deserialize_tensor(arg["tensor"]) if "tensor" in arg else arg["value"]
            for arg in request.args
        ]
        outputs = await asyncio.to_thread(plan, request.worker, *args)
    except (KeyError, ValueError, TypeError, RuntimeError) as e:
        raise HTTPException(status_code=422, detail=f"Plan execution failed: {e}")

    return {"outputs": serialize_tensors(outputs)}


@app.get("/training/config")
async def get_job_config():
    """Get current federated job configuration."""
    return job_config_manager.to_dict()


@app.put("/training/config")
async def update_job_config(updates: Dict[str, Any]):
    """
    Update federated job configuration.

    Changing model_id, layer_sizes or model_seed installs a fresh model.

    Returns:
        Updated configuration or error if validation fails
    """
    errors = job_config_manager.update_config(updates)

    if errors:
        raise HTTPException(
            status_code=400,
            detail={"message": "Invalid configuration", "errors": errors}
        )

    if {'model_id', 'layer_sizes', 'model_seed'} & set(updates):
        model_store.register_model(build_model(job_config_manager.get_config()))

    return {
        "message": "Job configuration updated",
        "config": job_config_manager.to_dict()
    }


@app.put("/training/config/worker/{worker_id}/batch_size")
async def set_worker_batch_size(worker_id: str, batch_size: int):
    """
    Set a custom batch size for one worker.

    Returns:
        Updated worker client config
    """
    if batch_size <= 0:
        raise HTTPException(status_code=400, detail="batch_size must be positive")

    job_config_manager.set_worker_batch_size(worker_id, batch_size)

    return {
        "message": f"Batch size set for worker {worker_id}",
        "worker_id": worker_id,
        "client_config": job_config_manager.get_client_config(worker_id)
    }


@app.websocket("/ws/scopes/{scope_id}/{worker_id}")
async def mesh_relay(websocket: WebSocket, scope_id: str, worker_id: str):
    """
    Mesh relay between members of a scope.

    Events sent to members:
    - peer_connected: {"event", "worker_id"}
    - peer_disconnected: {"event", "worker_id"}
    - message: {"event", "from", "payload"}
    - model_updated: {"event", "model_id", "version"}

    Members send {"event": "message", "payload": ...} to reach every
    other connected member.
    """
    if registry.get_member(scope_id, worker_id) is None:
        await websocket.close(code=4404)
        return

    await ws_manager.connect(scope_id, worker_id, websocket)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Invalid relay message from {worker_id}")
                continue

            if data.get('event') == 'message':
                await ws_manager.broadcast(
                    scope_id,
                    {'event': 'message', 'from': worker_id, 'payload': data.get('payload')},
                    exclude=worker_id
                )
            else:
                # Keep connection alive
                await websocket.send_json({"event": "pong"})

    except WebSocketDisconnect:
        await ws_manager.disconnect(scope_id, worker_id, websocket)


# Development server

def run_server(host: str = "0.0.0.0", port: int = 8000, config: Optional[FLJobConfig] = None):
    """
    Run the coordinator server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to bind to (default: 8000)
        config: Job configuration (default if None)
    """
    global initial_config
    initial_config = config
    uvicorn.run(app, host=host, port=port, log_level="info")


def main():
    parser = argparse.ArgumentParser(description="meshfed coordinator")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--config", help="Path to job configuration JSON")
    parser.add_argument("--max-workers", type=int, help="Workers per scope")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = FLJobConfig.from_json_file(args.config) if args.config else FLJobConfig()
    if args.max_workers:
        config.max_workers = args.max_workers

    run_server(host=args.host, port=args.port, config=config)


if __name__ == "__main__":
    main()
