"""
Federated job configuration for the meshfed coordinator.

The coordinator owns all training decisions including:
- Model architecture and initial seed
- Protocol and plans handed to workers
- Per-round client config (batch size, learning rate, bounds)
- Scope size

Workers receive their client config with the assignment.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List
import json
import logging

logger = logging.getLogger(__name__)


SUPPORTED_PROTOCOLS = ["fedavg"]


@dataclass
class FLJobConfig:
    """
    Federated job configuration managed by the coordinator.

    Every scope created for the model follows this configuration.
    """

    # Model configuration
    model_id: str = "mlp"
    layer_sizes: List[int] = field(default_factory=lambda: [16, 32, 4])
    model_seed: int = 0

    # Protocol and plans
    protocol: str = "fedavg"
    plans: List[str] = field(default_factory=lambda: ["training_plan"])

    # Client config (sent to every worker each round)
    batch_size: int = 32
    lr: float = 0.1
    max_epochs: Optional[int] = 1
    max_updates: Optional[int] = None

    # Scope size including the creator
    max_workers: int = 2

    # Optional: Worker-specific overrides
    # Key: worker_id, Value: dict of client config overrides (e.g., {"batch_size": 8})
    worker_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FLJobConfig':
        """Create from dictionary."""
        return cls(**data)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> 'FLJobConfig':
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_json_file(cls, path: str) -> 'FLJobConfig':
        """Load from JSON file."""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_json_file(self, path: str):
        """Save to JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def client_config(self, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Client config for one worker.

        Applies worker-specific overrides if present.

        Args:
            worker_id: Worker identifier

        Returns:
            Client config dict (batch_size, lr, max_epochs, max_updates)
        """
        config = {
            'batch_size': self.batch_size,
            'lr': self.lr,
            'max_epochs': self.max_epochs,
            'max_updates': self.max_updates
        }

        if worker_id in self.worker_overrides:
            overrides = self.worker_overrides[worker_id]
            logger.info(f"Applying overrides for worker {worker_id}: {overrides}")
            config.update(overrides)

        return config

    def set_worker_override(self, worker_id: str, key: str, value: Any):
        """
        Set worker-specific client config override.

        Args:
            worker_id: Worker identifier
            key: Client config key to override
            value: Override value
        """
        if worker_id not in self.worker_overrides:
            self.worker_overrides[worker_id] = {}

        self.worker_overrides[worker_id][key] = value
        logger.info(f"Set override for {worker_id}: {key} = {value}")

    def validate(self) -> List[str]:
        """
        Validate job configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.model_id:
            errors.append("model_id must not be empty")

        if len(self.layer_sizes) < 2 or any(s <= 0 for s in self.layer_sizes):
            errors.append(f"layer_sizes needs at least two positive sizes: {self.layer_sizes}")

        if self.protocol not in SUPPORTED_PROTOCOLS:
            errors.append(f"Invalid protocol: {self.protocol}")

        if not self.plans:
            errors.append("At least one plan is required")

        # Hyperparameter validation
        if self.batch_size <= 0:
            errors.append(f"batch_size must be positive: {self.batch_size}")

        if self.lr <= 0:
            errors.append(f"lr must be positive: {self.lr}")

        if self.max_epochs is not None and self.max_epochs <= 0:
            errors.append(f"max_epochs must be positive: {self.max_epochs}")

        if self.max_updates is not None and self.max_updates <= 0:
            errors.append(f"max_updates must be positive: {self.max_updates}")

        if self.max_workers <= 0:
            errors.append(f"max_workers must be positive: {self.max_workers}")

        return errors


class JobConfigManager:
    """
    Manages the federated job configuration for the coordinator.

    Handles configuration storage, updates, and per-worker client configs.
    """

    def __init__(self, config: Optional[FLJobConfig] = None):
        """
        Initialize job config manager.

        Args:
            config: Initial job configuration (uses default if None)
        """
        self.config = config or FLJobConfig()
        logger.info(f"Job config initialized: {self.config.model_id} model "
                    f"{self.config.layer_sizes}, {self.config.protocol}, "
                    f"{self.config.max_workers} workers per scope")

    def get_config(self) -> FLJobConfig:
        """Get current job configuration."""
        return self.config

    def update_config(self, updates: Dict[str, Any]) -> List[str]:
        """
        Update job configuration.

        Args:
            updates: Dictionary of fields to update

        Returns:
            List of validation errors (empty if successful)
        """
        config_dict = self.config.to_dict()
        unknown = set(updates) - set(config_dict)
        if unknown:
            return [f"Unknown fields: {sorted(unknown)}"]

        config_dict.update(updates)
        new_config = FLJobConfig.from_dict(config_dict)

        # Validate
        errors = new_config.validate()
        if errors:
            logger.error(f"Config validation failed: {errors}")
            return errors

        # Apply if valid
        self.config = new_config
        logger.info(f"Job config updated: {updates}")
        return []

    def get_client_config(self, worker_id: str) -> Dict[str, Any]:
        """Client config for a specific worker."""
        return self.config.client_config(worker_id)

    def set_worker_batch_size(self, worker_id: str, batch_size: int):
        """
        Set custom batch size for a worker.

        Args:
            worker_id: Worker identifier
            batch_size: Batch size for this worker
        """
        self.config.set_worker_override(worker_id, 'batch_size', batch_size)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return self.config.to_dict()
