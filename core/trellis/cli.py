"""
Command-line interface for Trellis.

Usage:
    trellis run my_flows.triage:builder --input '{"age": 17}'
    trellis run my_flows.triage:make_builder --checkpoint-dir ./checkpoints
    trellis resume my_flows.triage:builder <execution_id> --checkpoint-dir ./checkpoints
    trellis validate my_flows.triage:builder
    trellis checkpoints <execution_id> --checkpoint-dir ./checkpoints

TARGET is ``module:attribute`` where the attribute is a GraphBuilder or a
zero-argument callable returning one.
"""

import argparse
import asyncio
import importlib
import json
import sys
from pathlib import Path

from trellis.builder.workflow import GraphBuilder
from trellis.config import load_checkpoint_config, load_executor_config
from trellis.graph.checkpoint_manager import CheckpointManager
from trellis.graph.errors import TrellisError
from trellis.graph.executor import GraphExecutor
from trellis.observability import configure_logging
from trellis.storage.checkpoint_store import FileCheckpointStore


def _configure_paths() -> None:
    """Make modules in the current directory importable as targets."""
    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)


def load_target(target: str) -> GraphBuilder:
    """
    Resolve ``module:attribute`` to a GraphBuilder.

    Raises:
        ValueError: If the target is malformed or doesn't yield a GraphBuilder
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Target must look like 'module:attribute', got '{target}'")

    module = importlib.import_module(module_name)
    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part)

    if not isinstance(obj, GraphBuilder) and callable(obj):
        obj = obj()
    if not isinstance(obj, GraphBuilder):
        raise ValueError(f"Target '{target}' is not a GraphBuilder (got {type(obj).__name__})")
    return obj


def _build_executor(builder: GraphBuilder, args: argparse.Namespace) -> GraphExecutor:
    config = load_executor_config(args.config)
    if getattr(args, "max_steps", None):
        config.max_steps = args.max_steps

    manager = None
    if getattr(args, "checkpoint_dir", None):
        manager = CheckpointManager(
            FileCheckpointStore(args.checkpoint_dir),
            config=load_checkpoint_config(args.config),
        )
    return builder.executor(config=config, checkpoint_manager=manager)


def _print_result(result) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        initial = json.loads(args.input) if args.input else {}
    except json.JSONDecodeError as e:
        print(f"Invalid --input JSON: {e}", file=sys.stderr)
        return 1
    if not isinstance(initial, dict):
        print("--input must be a JSON object", file=sys.stderr)
        return 1

    builder = load_target(args.target)
    graph = builder.build()
    executor = _build_executor(builder, args)
    result = asyncio.run(executor.execute(graph, initial, execution_id=args.execution_id))
    return _print_result(result)


def cmd_resume(args: argparse.Namespace) -> int:
    builder = load_target(args.target)
    graph = builder.build()
    executor = _build_executor(builder, args)
    result = asyncio.run(executor.resume(graph, args.execution_id))
    return _print_result(result)


def cmd_validate(args: argparse.Namespace) -> int:
    builder = load_target(args.target)
    validation = builder.validate()
    for err in validation.errors:
        print(f"ERROR: {err}")
    for warn in validation.warnings:
        print(f"WARN: {warn}")
    if validation.valid:
        print(f"✓ Graph '{builder.graph_id}' is valid ({len(builder.nodes)} nodes)")
        return 0
    return 1


def cmd_checkpoints(args: argparse.Namespace) -> int:
    store = FileCheckpointStore(args.checkpoint_dir)
    checkpoints = asyncio.run(store.list_checkpoints(args.execution_id))
    if not checkpoints:
        print(f"No checkpoints for execution '{args.execution_id}'")
        return 1
    for cp in checkpoints:
        print(
            f"{cp.checkpoint_id}  {cp.created_at}  step={cp.step}  status={cp.status}  "
            f"next={cp.next_node or '-'}"
        )
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Execute a graph")
    run_parser.add_argument("target", help="module:attribute of a GraphBuilder")
    run_parser.add_argument("--input", "-i", help="Initial state as a JSON object")
    run_parser.add_argument("--execution-id", help="Execution ID (generated if omitted)")
    run_parser.add_argument("--max-steps", type=int, help="Override the step limit")
    run_parser.add_argument("--checkpoint-dir", help="Directory for file checkpoints")
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume from the latest checkpoint")
    resume_parser.add_argument("target", help="module:attribute of a GraphBuilder")
    resume_parser.add_argument("execution_id")
    resume_parser.add_argument("--checkpoint-dir", required=True)
    resume_parser.add_argument("--max-steps", type=int, help="Override the step limit")
    resume_parser.set_defaults(func=cmd_resume)

    validate_parser = subparsers.add_parser("validate", help="Validate a graph")
    validate_parser.add_argument("target", help="module:attribute of a GraphBuilder")
    validate_parser.set_defaults(func=cmd_validate)

    checkpoints_parser = subparsers.add_parser("checkpoints", help="List stored checkpoints")
    checkpoints_parser.add_argument("execution_id")
    checkpoints_parser.add_argument("--checkpoint-dir", required=True)
    checkpoints_parser.set_defaults(func=cmd_checkpoints)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trellis",
        description="Trellis - Run graph workflows with checkpoints and events",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log output"
    )
    parser.add_argument("--config", help="Path to configuration.json")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    _configure_paths()

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        return args.func(args)
    except (ImportError, AttributeError, ValueError, TrellisError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
