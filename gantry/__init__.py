"""Gantry: a build-pipeline orchestrator.

Runs a graph of tasks (build, test, lint, publish, deploy) with bounded
parallelism, hands artifacts between tasks through a run-scoped store,
and records every task transition in a hash-chained ledger.
"""

__version__ = "0.1.0"
__description__ = "Build-pipeline orchestrator with artifact hand-off and an auditable run ledger"

from gantry.core.orchestrator import Orchestrator
from gantry.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
