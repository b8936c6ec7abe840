"""CLI entrypoint for duet."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from duet.config import load_config, write_default_config
from duet.errors import OrchestratorError
from duet.pipeline import PipelineController, RunOptions
from duet.schemas import RUN_MODES
from duet.verify import format_verification, verification_failures, verify_agents

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so it's found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all sub-commands."""
    p = argparse.ArgumentParser(
        prog="duet",
        description="duet - coordinate two coding agents through plan, decide, implement and review.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # Init sub-command
    init_p = sub.add_parser("init", help="Write a default .orchestrator/config.json.")
    init_p.add_argument("--root", type=str, default=".", help="Project root (default: cwd).")
    init_p.add_argument("--force", action="store_true", help="Overwrite an existing config.")

    # Doctor sub-command
    doctor_p = sub.add_parser("doctor", help="Verify the configured agent CLIs.")
    doctor_p.add_argument("--root", type=str, default=".", help="Project root (default: cwd).")
    doctor_p.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON report instead of human-readable output.",
    )

    # Run sub-command
    run_p = sub.add_parser("run", help="Run the two-agent pipeline for a task.")
    run_p.add_argument("task", type=str, help="Task description.")
    run_p.add_argument("--root", type=str, default=".", help="Project root (default: cwd).")
    run_p.add_argument("--session", type=str, default=None, help="Session id to create or continue.")
    run_p.add_argument(
        "--branch-from",
        type=str,
        default=None,
        help="Parent run id (within --session) whose summary seeds this run.",
    )
    run_p.add_argument(
        "--branch-prompt",
        type=str,
        default=None,
        help="Extra instructions for a branched run (required with --branch-from).",
    )
    run_p.add_argument(
        "--mode",
        choices=list(RUN_MODES),
        default="full",
        help="Run mode (default: full).",
    )
    run_p.add_argument(
        "--decision",
        type=str,
        default=None,
        help="Decision mode override: judge, debate, neither or prefer-<agent>.",
    )
    run_p.add_argument(
        "--apply",
        action="store_true",
        help="Apply the final patch to the project root (guardrails permitting).",
    )
    run_p.add_argument(
        "--interactive",
        action="store_true",
        help="Debate, then ask for approval and a driver before joint implementation.",
    )
    run_p.add_argument(
        "--stream",
        action="store_true",
        help="Echo transcript events to stdout as JSON lines.",
    )
    run_p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        dest="run_verbose",
        help="Enable verbose (DEBUG) logging.",
    )
    return p


def _run_init(args: argparse.Namespace) -> int:
    path = write_default_config(Path(args.root).resolve(), force=args.force)
    print(f"Wrote {path}")
    return 0


def _run_doctor(args: argparse.Namespace) -> int:
    """Verify agents and print the report."""
    root = Path(args.root).resolve()
    config = load_config(root)
    results = verify_agents(config, root)
    if args.json:
        print(json.dumps([item.to_dict() for item in results], indent=2))
    else:
        print(format_verification(results))
    return 1 if verification_failures(results) else 0


def _run_pipeline(args: argparse.Namespace) -> int:
    controller = PipelineController(Path(args.root).resolve())
    outcome = controller.run(
        RunOptions(
            task=args.task,
            session_id=args.session,
            branch_from=args.branch_from,
            branch_prompt=args.branch_prompt,
            mode=args.mode,
            decision_mode=args.decision,
            apply=args.apply,
            interactive=args.interactive,
            stream=args.stream,
        )
    )
    out = sys.stderr if args.stream else sys.stdout
    print(f"Session: {outcome.session_id}", file=out)
    print(f"Run:     {outcome.run_id}", file=out)
    print(f"Winner:  {outcome.decision.winner}", file=out)
    print(f"Output:  {outcome.run_dir}", file=out)
    if outcome.final_patch is not None:
        print(f"Patch:   {outcome.final_patch}", file=out)
    if args.apply:
        if outcome.violations:
            print("Apply:   blocked by guardrails", file=out)
            for violation in outcome.violations:
                print(f"  - {violation}", file=out)
        else:
            print(f"Apply:   {'applied' if outcome.applied else 'not applied'}", file=out)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested sub-command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all modes) --------------------------------
    verbose = getattr(args, "verbose", False) or getattr(args, "run_verbose", False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 1

    handlers = {"init": _run_init, "doctor": _run_doctor, "run": _run_pipeline}
    try:
        return handlers[args.command](args)
    except OrchestratorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
