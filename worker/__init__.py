"""
Worker module for meshfed federated learning.

Workers are the processes that:
- Join a collaboration scope through the coordinator
- Fetch their plan assignment and the participant roster
- Connect to peers over the mesh transport
- Run a bounded local training round on private data
- Report only the resulting parameter delta
"""

__version__ = "0.1.0"
