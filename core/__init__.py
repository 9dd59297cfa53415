"""
Core numerical building blocks for meshfed.

Provides:
- Model: ordered named parameter tensors and parameter deltas
- TrainingData: local inputs/targets with bounded slicing
- Built-in training plans executed by local workers
"""

__version__ = "0.1.0"
