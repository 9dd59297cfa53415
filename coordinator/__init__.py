"""
Coordinator module for meshfed federated learning.

The coordinator is responsible for:
- Session handshakes and collaboration scope creation
- Plan/protocol assignment and participant rosters
- Serving canonical models and client configuration
- Collecting reported deltas and averaging them
- Relaying mesh traffic between scope members
"""

__version__ = "0.1.0"
