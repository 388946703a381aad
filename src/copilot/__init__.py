"""
Copilot Ensemble - Multi-persona reasoning core with autonomy governance.

This package runs several persona reasoning agents over a shared conversation,
merges their contributions into one response, and routes every proposed side
effect through an autonomy policy engine before anything is executed.
"""

__version__ = "0.1.0"

__all__ = [
    "models",
    "services",
    "lib",
    "local",
    "cli"
]
