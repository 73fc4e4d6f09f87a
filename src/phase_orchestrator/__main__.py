"""Entry point for `python -m phase_orchestrator` and the `phase-orchestrator` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from phase_orchestrator import PhaseOrchestrator
from phase_orchestrator.checkpoint_store import CheckpointStore, SqliteCheckpointStore, open_checkpoint_store
from phase_orchestrator.checkpoints import CheckpointService
from phase_orchestrator.errors import OrchestratorError
from phase_orchestrator.events import PhaseAwaitingApprovalEvent, PhaseCompleteEvent, PhaseErrorEvent, PhaseStartEvent
from phase_orchestrator.generation import ChatModelGenerationEngine
from phase_orchestrator.llm import ensure_openai_api_key
from phase_orchestrator.models import ExecutionState, OrchestrationStatus, OrchestratorConfig, Phase, ResearchMode
from phase_orchestrator.phases import display_name
from phase_orchestrator.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run, resume and inspect phase orchestrations")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start a new orchestration")
    run.add_argument("--project-id", required=True)
    run.add_argument("--project-name", required=True)
    run.add_argument("--project-path", required=True)
    run.add_argument(
        "--mode",
        type=lambda value: value.lower(),
        default=ResearchMode.BALANCED.value,
        choices=[mode.value for mode in ResearchMode],
        help="Research depth; selects the model tier",
    )
    run.add_argument(
        "--phase",
        dest="phases",
        action="append",
        type=lambda value: value.lower(),
        choices=[phase.value for phase in Phase],
        required=True,
        help="Phase to run, in order (repeatable)",
    )
    _add_approval_args(run)

    resume = commands.add_parser("resume", help="Continue an orchestration from a checkpoint")
    target = resume.add_mutually_exclusive_group(required=True)
    target.add_argument("--checkpoint-id")
    target.add_argument("--project-path", help="Resume the newest checkpoint for this project path")
    _add_approval_args(resume)

    checkpoints = commands.add_parser("checkpoints", help="Inspect or delete stored checkpoints")
    checkpoint_commands = checkpoints.add_subparsers(dest="checkpoint_command", required=True)
    listing = checkpoint_commands.add_parser("list", help="List checkpoints, newest first")
    listing.add_argument(
        "--status",
        type=lambda value: value.lower(),
        default=None,
        choices=[status.value for status in OrchestrationStatus],
    )
    listing.add_argument("--resumable", action="store_true", help="Only list checkpoints that can be resumed")
    delete = checkpoint_commands.add_parser("delete", help="Delete one checkpoint or all for a project path")
    delete_target = delete.add_mutually_exclusive_group(required=True)
    delete_target.add_argument("--checkpoint-id")
    delete_target.add_argument("--project-path")

    return parser.parse_args(argv)


def _add_approval_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--approval-action",
        type=lambda value: value.upper(),
        default="APPROVE",
        choices=["APPROVE", "PROMPT"],
        help="APPROVE every gate automatically, or PROMPT on stdin",
    )
    parser.add_argument(
        "--revision-feedback",
        default=None,
        help="With APPROVE: revise each phase once with this feedback before approving it",
    )


def _attach_console(orchestrator: PhaseOrchestrator, *, approval_action: str, revision_feedback: str | None) -> None:
    pending: set[asyncio.Task[None]] = set()
    revised: set[int] = set()

    def on_start(event: PhaseStartEvent) -> None:
        print(f"==> {display_name(event.phase)}", flush=True)

    def on_complete(event: PhaseCompleteEvent) -> None:
        print(event.output, flush=True)

    def on_error(event: PhaseErrorEvent) -> None:
        print(f"!! {display_name(event.phase)} failed: {event.message}", file=sys.stderr, flush=True)

    async def prompt_reviewer(event: PhaseAwaitingApprovalEvent) -> None:
        answer = await asyncio.to_thread(
            input, f"Approve {display_name(event.phase)}? [Enter to continue, or type revision feedback] "
        )
        if answer.strip():
            orchestrator.revise_phase(answer.strip())
        else:
            orchestrator.approve_and_continue()

    def on_awaiting(event: PhaseAwaitingApprovalEvent) -> None:
        if approval_action == "PROMPT":
            task = asyncio.get_running_loop().create_task(prompt_reviewer(event))
            pending.add(task)
            task.add_done_callback(pending.discard)
            return
        if revision_feedback and event.index not in revised:
            revised.add(event.index)
            orchestrator.revise_phase(revision_feedback)
        else:
            orchestrator.approve_and_continue()

    orchestrator.subscribe(on_start, event_name="phase:start")
    orchestrator.subscribe(on_complete, event_name="phase:complete")
    orchestrator.subscribe(on_error, event_name="phase:error")
    orchestrator.subscribe(on_awaiting, event_name="phase:awaiting_approval")


def _report(state: ExecutionState) -> int:
    print(f"status={state.status.value}")
    for phase in state.phases:
        print(f"  {phase.phase.value}: {phase.status.value}" + (f" ({phase.error})" if phase.error else ""))
    return 0 if state.status == OrchestrationStatus.COMPLETED else 1


async def _drive(args: argparse.Namespace, store: CheckpointStore, settings: RuntimeSettings) -> int:
    service = CheckpointService(store)
    orchestrator = PhaseOrchestrator(ChatModelGenerationEngine(settings=settings), service)
    _attach_console(orchestrator, approval_action=args.approval_action, revision_feedback=args.revision_feedback)
    try:
        if args.command == "run":
            config = OrchestratorConfig(
                project_id=args.project_id,
                project_name=args.project_name,
                project_path=args.project_path,
                mode=ResearchMode(args.mode),
                phases=[Phase(value) for value in args.phases],
            )
            state = await orchestrator.start(config)
        else:
            checkpoint_id = args.checkpoint_id
            if checkpoint_id is None:
                record = service.get_checkpoint_by_project_path(args.project_path)
                if record is None:
                    logging.error("No checkpoint found for project path %s", args.project_path)
                    return 1
                checkpoint_id = record.id
            state = await orchestrator.resume_from_checkpoint(checkpoint_id)
    finally:
        orchestrator.cleanup()
    return _report(state)


def _checkpoints(args: argparse.Namespace, store: CheckpointStore) -> int:
    service = CheckpointService(store)
    if args.checkpoint_command == "list":
        if args.resumable:
            summaries = service.list_resumable_checkpoints()
        else:
            status = OrchestrationStatus(args.status) if args.status is not None else None
            summaries = service.list_checkpoints(status)
        print(json.dumps([summary.model_dump(mode="json", by_alias=True) for summary in summaries], indent=2))
        return 0

    if args.checkpoint_id is not None:
        deleted = 1 if service.delete_checkpoint(args.checkpoint_id) else 0
    else:
        deleted = service.delete_checkpoints_by_project_path(args.project_path)
    print(f"deleted={deleted}")
    return 0 if deleted else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        settings = RuntimeSettings.from_env()
        if args.command in {"run", "resume"}:
            ensure_openai_api_key(repo_root=repo_root)
        store = open_checkpoint_store(settings, repo_root=repo_root)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to initialise orchestrator: %s", exc)
        return 1

    try:
        if args.command == "checkpoints":
            return _checkpoints(args, store)
        return asyncio.run(_drive(args, store, settings))
    except (OrchestratorError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Orchestration failed: %s", exc)
        return 1
    finally:
        if isinstance(store, SqliteCheckpointStore):
            store.close()


if __name__ == "__main__":
    raise SystemExit(main())
