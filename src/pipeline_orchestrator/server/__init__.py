"""FastAPI server adapter for pipeline-orchestrator.

This module exposes a REST API over the promotion engine.

Design intent:
- Keep business logic in `pipeline_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, CORS, job tracking) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from pipeline_orchestrator.server.app import create_app
