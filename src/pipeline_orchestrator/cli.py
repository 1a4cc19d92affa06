"""Console-script shim; the CLI lives in `pipeline_orchestrator.orchestrator.main`."""

from __future__ import annotations

from pipeline_orchestrator.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
