"""
Worker configuration for meshfed federated learning.

Defines the local process settings (WorkerConfig) and the server-issued
per-round training settings (ClientConfig).
"""

import math
import socket
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import json


def get_hostname() -> str:
    """
    Get hostname.

    Returns:
        Hostname as string
    """
    return socket.gethostname()


@dataclass(frozen=True)
class ClientConfig:
    """
    Training settings issued by the coordinator for one round.

    At least one bound is always finite: max_epochs defaults to 1 when the
    server leaves it unset.
    """

    batch_size: int
    lr: float
    max_epochs: Optional[int] = None
    max_updates: Optional[int] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer: {self.batch_size}")
        if self.lr is None or self.lr <= 0:
            raise ValueError(f"lr must be positive: {self.lr}")
        if self.max_epochs is not None and self.max_epochs <= 0:
            raise ValueError(f"max_epochs must be positive: {self.max_epochs}")
        if self.max_updates is not None and self.max_updates <= 0:
            raise ValueError(f"max_updates must be positive: {self.max_updates}")

    @property
    def epochs(self) -> int:
        """Epoch bound with the default applied."""
        return self.max_epochs or 1

    def num_batches(self, dataset_size: int) -> int:
        """ceil(dataset_size / batch_size)."""
        if dataset_size <= 0:
            raise ValueError(f"dataset_size must be positive: {dataset_size}")
        return math.ceil(dataset_size / self.batch_size)

    def num_updates(self, dataset_size: int) -> int:
        """
        Total training steps for a round over dataset_size samples.

        The tighter of the epoch cap and the update cap wins.
        """
        epoch_cap = self.epochs * self.num_batches(dataset_size)
        max_updates = self.max_updates or epoch_cap
        return min(max_updates, epoch_cap)

    def to_dict(self) -> Dict[str, Any]:
        config = dict(self.extras)
        config.update({
            'batch_size': self.batch_size,
            'lr': self.lr,
            'max_epochs': self.max_epochs,
            'max_updates': self.max_updates
        })
        return config

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ClientConfig':
        """
        Create config from the coordinator's dictionary.

        Unknown keys are kept in `extras`.

        Raises:
            ValueError: If a required key is missing or a value is invalid
        """
        known = {'batch_size', 'lr', 'max_epochs', 'max_updates'}
        missing = {'batch_size', 'lr'} - set(config_dict)
        if missing:
            raise ValueError(f"Client config missing required keys: {sorted(missing)}")

        return cls(
            batch_size=config_dict['batch_size'],
            lr=config_dict['lr'],
            max_epochs=config_dict.get('max_epochs'),
            max_updates=config_dict.get('max_updates'),
            extras={k: v for k, v in config_dict.items() if k not in known}
        )


@dataclass
class WorkerConfig:
    """
    Configuration for a meshfed worker process.

    This includes identity, coordinator connection, mesh transport,
    plan execution, local data and logging settings.
    """

    # Identity (None means the coordinator assigns one)
    worker_id: Optional[str] = None
    scope_id: Optional[str] = None
    identity_file: Optional[str] = None
    hostname: str = field(default_factory=get_hostname)

    # Job
    model_id: str = "mlp"
    plan_name: str = "training_plan"

    # Coordinator connection
    coordinator_url: str = "http://localhost:8000"
    coordinator_timeout: float = 30.0  # seconds
    coordinator_retry_attempts: int = 3
    coordinator_retry_delay: float = 1.0  # seconds

    # Mesh transport ("websocket" or "none")
    mesh_transport: str = "websocket"
    mesh_url: Optional[str] = None  # derived from coordinator_url when unset

    # Plan execution (None runs plans in-process)
    plan_runtime_url: Optional[str] = None

    # Local data
    num_samples: int = 1000
    dataset_seed: int = 42

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_file: Optional[str] = None

    def get_mesh_url(self) -> str:
        """
        WebSocket base URL for the mesh relay.

        Returns:
            mesh_url if set, otherwise coordinator_url with a ws scheme
        """
        if self.mesh_url:
            return self.mesh_url.rstrip('/')
        url = self.coordinator_url.rstrip('/')
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            'worker_id': self.worker_id,
            'scope_id': self.scope_id,
            'identity_file': self.identity_file,
            'hostname': self.hostname,
            'model_id': self.model_id,
            'plan_name': self.plan_name,
            'coordinator_url': self.coordinator_url,
            'coordinator_timeout': self.coordinator_timeout,
            'coordinator_retry_attempts': self.coordinator_retry_attempts,
            'coordinator_retry_delay': self.coordinator_retry_delay,
            'mesh_transport': self.mesh_transport,
            'mesh_url': self.mesh_url,
            'plan_runtime_url': self.plan_runtime_url,
            'num_samples': self.num_samples,
            'dataset_seed': self.dataset_seed,
            'log_level': self.log_level,
            'log_file': self.log_file
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'WorkerConfig':
        """
        Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            WorkerConfig instance
        """
        return cls(**config_dict)

    @classmethod
    def from_json_file(cls, path: str) -> 'WorkerConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            WorkerConfig instance
        """
        with open(path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    def to_json_file(self, path: str):
        """
        Save config to JSON file.

        Args:
            path: Path to save JSON config
        """
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WorkerConfig(worker_id='{self.worker_id}', "
            f"scope_id='{self.scope_id}', "
            f"coordinator='{self.coordinator_url}', "
            f"model='{self.model_id}')"
        )
