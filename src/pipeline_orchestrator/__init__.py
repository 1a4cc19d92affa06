"""Pipeline Orchestrator.

Runs CI/CD workflows described as a graph of jobs:
- matrix expansion and dependency layering
- bounded-concurrency scheduling with retries, conditions and cancellation
- environment promotion gated on health checks, with automatic rollback
"""

__version__ = "0.1.0"

from pipeline_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
