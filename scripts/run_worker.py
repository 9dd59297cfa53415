"""
Run a meshfed worker against a coordinator.

Usage:
    # Terminal 1: Start coordinator
    python -m coordinator.server --max-workers 2

    # Terminal 2: Create a scope (prints the join command)
    python scripts/run_worker.py

    # Terminal 3: Join it
    python scripts/run_worker.py --scope <scope_id>
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from worker.client import main
from worker.config import WorkerConfig


def parse_args():
    parser = argparse.ArgumentParser(description="meshfed worker")
    parser.add_argument("--config", help="Path to worker configuration JSON")
    parser.add_argument("--coordinator", help="Coordinator URL")
    parser.add_argument("--scope", help="Scope to join (omit to create one)")
    parser.add_argument("--worker-id", help="Worker id to rejoin with")
    parser.add_argument("--identity-file", help="Persist worker/scope ids here")
    parser.add_argument("--model", help="Model id to train")
    parser.add_argument("--mesh", choices=["websocket", "none"], help="Mesh transport")
    parser.add_argument("--plan-runtime", help="URL of a remote plan runtime")
    parser.add_argument("--samples", type=int, help="Synthetic dataset size")
    parser.add_argument("--seed", type=int, help="Synthetic dataset seed")
    parser.add_argument("--log-level", default=None, help="Logging level")
    parser.add_argument("--log-file", help="Also write logs to this file")
    return parser.parse_args()


def build_config(args) -> WorkerConfig:
    config = WorkerConfig.from_json_file(args.config) if args.config else WorkerConfig()

    overrides = {
        'coordinator_url': args.coordinator,
        'scope_id': args.scope,
        'worker_id': args.worker_id,
        'identity_file': args.identity_file,
        'model_id': args.model,
        'mesh_transport': args.mesh,
        'plan_runtime_url': args.plan_runtime,
        'num_samples': args.samples,
        'dataset_seed': args.seed,
        'log_level': args.log_level,
        'log_file': args.log_file
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    return config


if __name__ == "__main__":
    asyncio.run(main(build_config(parse_args())))
