"""Command-line interface to chain state.

Documents go to stdout as JSON; status lines and errors go to stderr.
Exit status is 0 on success and 1 on any rejected operation.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Optional, Sequence

from . import config
from .chain_logging import setup_logging_from_env
from .errors import ChainStateError
from .models import PIPELINE_STAGES
from .state import (
    create_initial_state,
    generate_chain_id,
    mark_stage_complete,
    merge_states,
    parse_state,
    validate_state,
)
from .store import list_chains
from .workflow import ChainManager

EPILOG = """\
Examples:
  chain-state generate-id
  chain-state --chain-id a3f7c8d1 init
  chain-state save 01-setup-and-scope '{"chain_id":"a3f7c8d1","timestamp":"2025-11-14T10:00:00Z"}'
  chain-state load 01-setup-and-scope
  chain-state last-stage
"""


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _status(message: str) -> None:
    print(message, file=sys.stderr)


def _read_json_arg(value: str) -> str:
    """Return JSON text from an argument, or from stdin when it is ``-``."""
    if value == "-":
        return sys.stdin.read()
    return value


def _manager(args: argparse.Namespace, *, resume_latest: bool = True) -> ChainManager:
    return ChainManager(config.resolve_root(args.root), args.chain_id, resume_latest=resume_latest)


def _cmd_generate_id(args: argparse.Namespace) -> int:
    print(generate_chain_id())
    return 0


def _cmd_init(args: argparse.Namespace) -> int:
    if not args.chain_id:
        _status("❌ ERROR: init needs --chain-id (create one with generate-id)")
        return 1
    state_dir = _manager(args).store.init()
    _status(f"✓ Initialized state directory: {state_dir}")
    return 0


def _cmd_start(args: argparse.Namespace) -> int:
    manager = _manager(args, resume_latest=False)
    document = manager.start_chain(
        args.chain_id,
        project_name=args.project_name,
        project_path=args.project_path,
        analysis_dir=args.analysis_dir,
        manifest_path=args.manifest_path,
    )
    _status(f"✓ Chain started: {manager.chain_id} ({manager.store.state_dir})")
    _print_json(document)
    return 0


def _cmd_save(args: argparse.Namespace) -> int:
    manager = _manager(args, resume_latest=False)
    manager.save_state(args.stage, _read_json_arg(args.state))
    _status(f"✓ State saved: {manager.store.stage_path(args.stage)}")
    return 0


def _cmd_load(args: argparse.Namespace) -> int:
    _print_json(_manager(args).store.load(args.stage))
    return 0


def _cmd_load_latest(args: argparse.Namespace) -> int:
    _print_json(_manager(args).store.load_latest())
    return 0


def _cmd_last_stage(args: argparse.Namespace) -> int:
    print(_manager(args).last_completed_stage())
    return 0


def _cmd_is_complete(args: argparse.Namespace) -> int:
    print("true" if _manager(args).is_stage_complete(args.stage) else "false")
    return 0


def _cmd_chain_id(args: argparse.Namespace) -> int:
    print(_manager(args).get_chain_id())
    return 0


def _cmd_chains(args: argparse.Namespace) -> int:
    for chain_id in list_chains(config.state_root(config.resolve_root(args.root))):
        print(chain_id)
    return 0


def _cmd_resume(args: argparse.Namespace) -> int:
    _print_json(_manager(args).resume_info().to_dict())
    return 0


def _cmd_init_state(args: argparse.Namespace) -> int:
    _print_json(create_initial_state(args.new_chain_id))
    return 0


def _cmd_merge(args: argparse.Namespace) -> int:
    old = parse_state(_read_json_arg(args.old))
    new = parse_state(_read_json_arg(args.new))
    _print_json(merge_states(old, new, deep=args.deep))
    return 0


def _cmd_mark_complete(args: argparse.Namespace) -> int:
    _print_json(mark_stage_complete(parse_state(_read_json_arg(args.state)), args.stage))
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    result = validate_state(_read_json_arg(args.state))
    if result:
        print("✓ Valid state")
        return 0
    print("❌ Invalid state")
    _status(f"❌ {result.reason}")
    return 1


def _cmd_stages(args: argparse.Namespace) -> int:
    _print_json([stage.to_dict() for stage in PIPELINE_STAGES])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chain-state",
        description="Manage checkpointed state for chained analysis workflows.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--root",
        help="Project root owning .analysis/.state (default: CHAINSTATE_PROJECT_ROOT, git top-level, or cwd).",
    )
    parser.add_argument(
        "--chain-id",
        help="Chain to operate on (default: the most recently written chain).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, metavar="<command>")

    subparsers.add_parser("generate-id", help="Generate unique chain ID").set_defaults(func=_cmd_generate_id)
    subparsers.add_parser("init", help="Initialize state directory").set_defaults(func=_cmd_init)

    start_parser = subparsers.add_parser("start", help="Start a chain and save its bootstrap state")
    start_parser.add_argument("--project-name")
    start_parser.add_argument("--project-path")
    start_parser.add_argument("--analysis-dir")
    start_parser.add_argument("--manifest-path")
    start_parser.set_defaults(func=_cmd_start)

    save_parser = subparsers.add_parser("save", help="Save state for stage")
    save_parser.add_argument("stage")
    save_parser.add_argument("state", help="State JSON, or '-' to read stdin")
    save_parser.set_defaults(func=_cmd_save)

    load_parser = subparsers.add_parser("load", help="Load state for stage")
    load_parser.add_argument("stage")
    load_parser.set_defaults(func=_cmd_load)

    subparsers.add_parser("load-latest", help="Load latest state").set_defaults(func=_cmd_load_latest)
    subparsers.add_parser("last-stage", help="Get last completed stage").set_defaults(func=_cmd_last_stage)

    complete_parser = subparsers.add_parser("is-complete", help="Check if stage is complete")
    complete_parser.add_argument("stage")
    complete_parser.set_defaults(func=_cmd_is_complete)

    subparsers.add_parser("chain-id", help="Get chain ID from latest state").set_defaults(func=_cmd_chain_id)
    subparsers.add_parser("chains", help="List chains, newest first").set_defaults(func=_cmd_chains)
    subparsers.add_parser("resume", help="Show where the chain stopped and what runs next").set_defaults(
        func=_cmd_resume
    )
    subparsers.add_parser("stages", help="List the pipeline stages").set_defaults(func=_cmd_stages)

    init_state_parser = subparsers.add_parser("init-state", help="Create initial state")
    init_state_parser.add_argument("new_chain_id", metavar="chain_id")
    init_state_parser.set_defaults(func=_cmd_init_state)

    merge_parser = subparsers.add_parser("merge", help="Merge state objects")
    merge_parser.add_argument("old")
    merge_parser.add_argument("new")
    merge_parser.add_argument("--deep", action="store_true", help="Merge nested objects recursively")
    merge_parser.set_defaults(func=_cmd_merge)

    mark_parser = subparsers.add_parser("mark-complete", help="Mark stage as complete")
    mark_parser.add_argument("state")
    mark_parser.add_argument("stage")
    mark_parser.set_defaults(func=_cmd_mark_complete)

    validate_parser = subparsers.add_parser("validate", help="Validate state schema")
    validate_parser.add_argument("state")
    validate_parser.set_defaults(func=_cmd_validate)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging_from_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return args.func(args)
    except (ChainStateError, ValueError) as e:
        _status(f"❌ ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
