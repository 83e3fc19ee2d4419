"""dreams -- offline consolidation of a memory association graph.

Quick start::

    from dreams import Brain

    async def main():
        brain = Brain()
        await brain.initialize()

        summary = await brain.dream()
        history = await brain.dream_history(limit=5)

        await brain.shutdown()

For lower-level access, import from submodules::

    from dreams.connections import Connection, ConnectionManager, CONNECTION_TYPES
    from dreams.graph import GraphStore
    from dreams.dreaming import DreamEngine, DreamLog, DreamOptions
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from dreams.brain import Brain
from dreams.connections import CONNECTION_TYPES, NODE_TYPES, Connection
from dreams.dreaming import DreamInProgressError, DreamLog, DreamOptions

__all__ = [
    "__version__",
    "Brain",
    "Connection",
    "CONNECTION_TYPES",
    "NODE_TYPES",
    "DreamInProgressError",
    "DreamLog",
    "DreamOptions",
]
