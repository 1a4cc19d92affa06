"""CLI entrypoint for the pipeline orchestrator."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from types import FrameType

from pydantic import ValidationError

from pipeline_orchestrator import __version__
from pipeline_orchestrator.orchestrator.config import OrchestratorSettings
from pipeline_orchestrator.orchestrator.deploy.promotion import PromotionResult
from pipeline_orchestrator.orchestrator.deploy.store import JsonEnvironmentStore
from pipeline_orchestrator.orchestrator.errors import PipelineError
from pipeline_orchestrator.orchestrator.logging import configure_logging
from pipeline_orchestrator.orchestrator.runner import Orchestrator, build_promotion_engine
from pipeline_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from pipeline_orchestrator.orchestrator.workflow.loader import load_workflow
from pipeline_orchestrator.orchestrator.workflow.models import TriggerEvent
from pipeline_orchestrator.orchestrator.workflow.planner import plan_workflow

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline",
        description="Run CI/CD workflows and promote builds through environments",
    )
    parser.add_argument(
        "--version", action="version", version=f"pipeline-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate", help="Check a workflow file without running anything"
    )
    validate.add_argument("workflow", type=Path, help="Path to the workflow YAML file")

    run = subparsers.add_parser("run", help="Run a workflow")
    run.add_argument("workflow", type=Path, help="Path to the workflow YAML file")
    run.add_argument("--event", default="push", help="Trigger event name (event.name)")
    run.add_argument("--ref", default="", help="Git ref that triggered the run (event.ref)")
    run.add_argument("--sha", default="", help="Commit SHA that triggered the run (event.sha)")
    run.add_argument(
        "--max-concurrent-jobs",
        type=int,
        default=None,
        help="Override PIPELINE_MAX_CONCURRENT_JOBS",
    )
    run.add_argument(
        "--fail-fast",
        action="store_true",
        help="Cancel jobs that have not started once any job fails",
    )
    run.add_argument("--json", action="store_true", help="Print the run result as JSON")

    promote = subparsers.add_parser(
        "promote", help="Deploy a version to an environment with health-check gating"
    )
    promote.add_argument("--env", "--environment", dest="environment", required=True)
    source = promote.add_mutually_exclusive_group(required=True)
    source.add_argument("--version", dest="target_version", help="Version identifier to deploy")
    source.add_argument(
        "--from",
        dest="source_environment",
        help="Promote the version currently deployed in this environment",
    )

    rollback = subparsers.add_parser(
        "rollback", help="Revert an environment to its previous version"
    )
    rollback.add_argument("--env", "--environment", dest="environment", required=True)

    status = subparsers.add_parser("env-status", help="Show recorded environment state")
    status.add_argument("--env", "--environment", dest="environment", default=None)

    return parser


def _print_promotion(result: PromotionResult) -> None:
    if result.ok:
        print(f"{result.environment}: promoted {result.version}")
    else:
        restored = result.previous_version or "nothing"
        print(
            f"{result.environment}: rolled back {result.version} (restored {restored}): "
            f"{result.reason}"
        )


def _install_interrupt_handler(token: CancellationToken) -> None:
    def handler(signum: int, _frame: FrameType | None) -> None:
        logger.warning("Interrupt received; cancelling run", extra={"signal": signum})
        token.cancel("Interrupted")

    signal.signal(signal.SIGINT, handler)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        overrides: dict[str, object] = {}
        if args.command == "run":
            if args.max_concurrent_jobs is not None:
                overrides["max_concurrent_jobs"] = args.max_concurrent_jobs
            if args.fail_fast:
                overrides["fail_fast"] = True
        settings = OrchestratorSettings(**overrides)  # type: ignore[arg-type]
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your environment / .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            workflow = load_workflow(args.workflow)
            plan = plan_workflow(workflow)
            print(
                f"Workflow {workflow.name!r} is valid: {len(workflow.jobs)} job(s), "
                f"{len(plan.instances)} instance(s) in {len(plan.layers)} layer(s)"
            )
            for index, layer in enumerate(plan.layers, start=1):
                print(f"  layer {index}: {', '.join(layer)}")
            return 0

        if args.command == "run":
            workflow = load_workflow(args.workflow)
            token = CancellationToken()
            _install_interrupt_handler(token)
            orchestrator = Orchestrator(settings)
            outcome = orchestrator.run(
                workflow,
                event=TriggerEvent(name=args.event, ref=args.ref, sha=args.sha),
                cancellation=token,
            )
            if args.json:
                payload = outcome.run.to_json()
                payload["promotions"] = [p.to_json() for p in outcome.promotions]
                print(json.dumps(payload, indent=2, ensure_ascii=False))
            else:
                for instance_id, status in outcome.run.summary().items():
                    print(f"{instance_id}={status}")
                for promotion in outcome.promotions:
                    _print_promotion(promotion)
                print(f"run {outcome.run.run_id}: {outcome.run.status.value}")
            return 0 if outcome.ok else 1

        if args.command == "promote":
            engine = build_promotion_engine(settings)
            if args.source_environment is not None:
                result = engine.promote_from(args.source_environment, args.environment)
            else:
                result = engine.promote(args.environment, args.target_version)
            _print_promotion(result)
            return 0 if result.ok else 1

        if args.command == "rollback":
            engine = build_promotion_engine(settings)
            result = engine.rollback(args.environment)
            _print_promotion(result)
            return 0 if result.ok else 1

        if args.command == "env-status":
            store = JsonEnvironmentStore(settings.environments_state_file)
            if args.environment is not None:
                state = store.get(args.environment)
                if state is None:
                    print(f"No state recorded for {args.environment!r}", file=sys.stderr)
                    return 1
                states = [state]
            else:
                states = store.list()
            print(
                json.dumps(
                    [s.model_dump(mode="json") for s in states], indent=2, ensure_ascii=False
                )
            )
            return 0

        parser.error(f"Unknown command: {args.command}")
        return 2

    except PipelineError as e:
        logger.error("Command failed", extra={"command": args.command, "error": str(e)})
        print(f"Error: {e}", file=sys.stderr)
        return 2
