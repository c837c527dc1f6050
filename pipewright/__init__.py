"""Pipewright: a DAG pipeline orchestration engine for CI/CD.

  - Trigger filtering with loop-safe ignore paths
  - Stage graph with deterministic topological scheduling
  - Fail-fast step gating on structured security findings
  - Run-scoped artifact and output handoff with declared visibility
  - Per-stage secret injection and log redaction
  - GitOps write-back of the deployed image reference
"""

__version__ = "0.1.0"
__description__ = "DAG pipeline orchestration engine for CI/CD"

from pipewright.core.orchestrator import Orchestrator
from pipewright.core.scheduler import Scheduler

__all__ = ["Orchestrator", "Scheduler", "__version__"]
