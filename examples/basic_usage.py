#!/usr/bin/env python3
"""Programmatic workflow run example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* build a small matrix workflow in code
* run it with the shell step executor and print each instance's status

The workflow file is optional; without one a built-in demo workflow is used.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from pipeline_orchestrator.orchestrator.config import OrchestratorSettings
from pipeline_orchestrator.orchestrator.errors import PipelineError
from pipeline_orchestrator.orchestrator.logging import configure_logging
from pipeline_orchestrator.orchestrator.runner import Orchestrator
from pipeline_orchestrator.orchestrator.workflow.loader import load_workflow, parse_workflow
from pipeline_orchestrator.orchestrator.workflow.models import TriggerEvent

DEMO_WORKFLOW = {
    "name": "demo",
    "env": {"GREETING": "hello"},
    "jobs": {
        "build": {
            "outputs": {"artifact": "${{ steps.pack.outputs.artifact }}"},
            "steps": [
                {"run": "echo building"},
                {"id": "pack", "run": 'echo "artifact=app-$GREETING.tar" >> "$PIPELINE_OUTPUT"'},
            ],
        },
        "test": {
            "needs": "build",
            "strategy": {
                "matrix": {
                    "os": ["linux", "macos"],
                    "python": ["3.11", "3.12"],
                    "exclude": [{"os": "macos", "python": "3.11"}],
                }
            },
            "steps": [
                {"run": "echo testing ${{ needs.build.outputs.artifact }} on ${{ matrix.os }}"},
            ],
        },
        "report": {
            "needs": "test",
            "if": "always()",
            "steps": [{"run": "echo tests finished: ${{ needs.test.result }}"}],
        },
    },
}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow (programmatic example).")
    parser.add_argument("--workflow", default=None, help="Path to a workflow YAML file (optional)")
    parser.add_argument("--ref", default="refs/heads/main", help="Git ref for the trigger event")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    try:
        workflow = load_workflow(args.workflow) if args.workflow else parse_workflow(DEMO_WORKFLOW)
    except PipelineError as e:
        print(f"Invalid workflow: {e}")
        return 2

    outcome = Orchestrator(settings).run(workflow, event=TriggerEvent(ref=args.ref))
    for instance_id, status in outcome.run.summary().items():
        print(f"{instance_id}: {status}")
    return 0 if outcome.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
