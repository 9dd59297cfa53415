"""
Local federated simulation.

Runs an in-process coordinator and several workers linked by a LocalMesh.
Each worker trains on its own shard of a synthetic dataset; the
coordinator averages their deltas into the next model version.

Usage:
    python scripts/run_local_simulation.py --workers 3 --rounds 2
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import httpx

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from communication.mesh import LocalMesh
from coordinator import server
from coordinator.training_config import FLJobConfig
from core.dataset import create_dummy_dataset, create_sharded_dataset
from core.plans import evaluate
from worker import events as job_events
from worker.coordinator_client import CoordinatorClient
from worker.job import Job

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

COORDINATOR_URL = "http://coordinator"
DATA_SEED = 42


def make_client() -> CoordinatorClient:
    return CoordinatorClient(
        COORDINATOR_URL,
        retry_attempts=1,
        transport=httpx.ASGITransport(app=server.app)
    )


async def run_round(config: FLJobConfig, num_workers: int, num_samples: int):
    """Create a scope, train every member once and let the coordinator aggregate."""
    mesh = LocalMesh()
    jobs = []
    clients = []

    # The creator opens the scope; everyone else joins it
    for rank in range(num_workers):
        client = make_client()
        scope_id = jobs[0].identity.scope_id if jobs else None
        job = Job(client, transport=mesh.transport(), model_id=config.model_id, scope_id=scope_id)
        job.on(job_events.PEER_CONNECTED, lambda e, r=rank: logger.info(f"[worker {r}] peer connected: {e.peer_id}"))
        await job.start()
        jobs.append(job)
        clients.append(client)

    input_dim, num_classes = config.layer_sizes[0], config.layer_sizes[-1]
    datasets = [
        create_sharded_dataset(num_samples, input_dim, num_classes, rank, num_workers, seed=DATA_SEED)
        for rank in range(num_workers)
    ]

    await asyncio.gather(*(job.train(data) for job, data in zip(jobs, datasets)))

    for job, client in zip(jobs, clients):
        await job.disconnect()
        await client.close()


async def main():
    parser = argparse.ArgumentParser(description="meshfed local simulation")
    parser.add_argument("--workers", type=int, default=3, help="Workers per scope")
    parser.add_argument("--rounds", type=int, default=3, help="Federated rounds")
    parser.add_argument("--samples", type=int, default=600, help="Global dataset size")
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--lr", type=float, default=0.1)
    parser.add_argument("--epochs", type=int, default=1)
    args = parser.parse_args()

    config = FLJobConfig(
        max_workers=args.workers,
        batch_size=args.batch_size,
        lr=args.lr,
        max_epochs=args.epochs
    )
    server.setup_state(config)

    # Every shard comes from this global dataset
    eval_data = create_dummy_dataset(args.samples, config.layer_sizes[0], config.layer_sizes[-1], seed=DATA_SEED)

    def report_model(label: str):
        model = server.model_store.get_model(config.model_id)
        loss, acc = evaluate(model.params, eval_data.inputs, eval_data.targets)
        logger.info(f"{label}: model v{model.version} loss={loss:.4f} acc={acc:.3f}")

    report_model("Initial")
    for round_index in range(args.rounds):
        logger.info("=" * 60)
        logger.info(f"Round {round_index + 1}/{args.rounds}")
        logger.info("=" * 60)
        await run_round(config, args.workers, args.samples)
        report_model(f"After round {round_index + 1}")


if __name__ == "__main__":
    asyncio.run(main())
