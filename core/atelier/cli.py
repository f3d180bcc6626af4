"""
Command-line interface for Atelier.

Usage:
    atelier validate pipelines/lookbook.json
    atelier run pipelines/lookbook.json --form '{"imageUrl": "https://..."}'
    atelier serve --store ./data --port 8080
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from atelier.config import (
    CallbackConfig,
    EngineConfig,
    WebhookServerConfig,
    get_knowledge_endpoint,
    get_provider_endpoints,
    get_tool_endpoints,
)
from atelier.errors import PipelineCompileError
from atelier.graph.compiler import GraphCompiler
from atelier.knowledge.retriever import HttpKnowledgeRetriever
from atelier.nodes.registry import NodeRegistry, default_registry
from atelier.observability import configure_logging
from atelier.providers.client import HttpProviderClient
from atelier.providers.tools import HttpToolClient
from atelier.runtime.pipeline_runtime import PipelineRuntime
from atelier.runtime.reconciler import CallbackReconciler
from atelier.runtime.webhook_server import WebhookServer
from atelier.storage.file_store import FileRunStore


def _build_registry(engine_config: EngineConfig) -> NodeRegistry:
    endpoints = get_provider_endpoints()
    knowledge_endpoint = get_knowledge_endpoint()
    tool_endpoints = get_tool_endpoints()
    return default_registry(
        HttpProviderClient(endpoints) if endpoints else None,
        HttpKnowledgeRetriever(knowledge_endpoint) if knowledge_endpoint else None,
        max_loop_iterations=engine_config.max_loop_iterations,
        tool_client=HttpToolClient(tool_endpoints) if tool_endpoints else None,
    )


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def cmd_validate(args: argparse.Namespace) -> int:
    """Compile a pipeline and print its diagnostics."""
    try:
        raw = _load_json(args.pipeline)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {args.pipeline}: {e}", file=sys.stderr)
        return 1

    engine_config = EngineConfig(allow_cycles=args.allow_cycles)
    compiler = GraphCompiler(_build_registry(engine_config), allow_cycles=args.allow_cycles)
    try:
        compiled = compiler.compile(raw)
    except PipelineCompileError as e:
        for diagnostic in e.diagnostics:
            print(diagnostic)
        print(f"✗ {e}", file=sys.stderr)
        return 1

    for diagnostic in compiled.diagnostics:
        print(diagnostic)
    print(
        f"✓ {compiled.id} ({compiled.source_format}): {len(compiled.nodes)} nodes, "
        f"{len(compiled.forks)} fork(s), {len(compiled.joins)} join(s)"
    )
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a pipeline once and print the result."""
    try:
        raw = _load_json(args.pipeline)
        form = json.loads(args.form) if args.form else {}
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    engine_config = EngineConfig()
    runtime = PipelineRuntime(
        _build_registry(engine_config), FileRunStore(args.store), engine_config=engine_config
    )
    try:
        result = asyncio.run(runtime.start_run(raw, form, user_id=args.user))
    except PipelineCompileError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    print(
        json.dumps(
            {
                "runId": result.run_id,
                "status": str(result.status),
                "output": result.output,
                "error": result.error,
                "failedNode": result.failed_node,
                "awaiting": result.awaiting,
                "quality": result.execution_quality,
            },
            indent=2,
            default=str,
        )
    )
    return 0 if result.success or result.is_suspended else 1


async def _serve(args: argparse.Namespace) -> None:
    engine_config = EngineConfig()
    store = FileRunStore(args.store)
    runtime = PipelineRuntime(_build_registry(engine_config), store, engine_config=engine_config)
    reconciler = CallbackReconciler(
        store, CallbackConfig(), resumer=runtime, event_bus=runtime.event_bus
    )
    server = WebhookServer(reconciler, WebhookServerConfig(host=args.host, port=args.port))

    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the completion callback server until interrupted."""
    try:
        asyncio.run(_serve(args))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser(
        "validate", help="Compile a pipeline and report problems"
    )
    validate_parser.add_argument("pipeline", help="Path to a pipeline JSON file")
    validate_parser.add_argument(
        "--allow-cycles",
        action="store_true",
        help="Tolerate cycles in stored legacy pipelines (back-edges are dropped)",
    )
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Execute a pipeline once")
    run_parser.add_argument("pipeline", help="Path to a pipeline JSON file")
    run_parser.add_argument("--form", help="Form inputs as a JSON object")
    run_parser.add_argument("--user", default=None, help="User id recorded on the run")
    run_parser.add_argument("--store", default="./atelier-data", help="Run store directory")
    run_parser.set_defaults(func=cmd_run)

    serve_parser = subparsers.add_parser("serve", help="Serve the completion callback webhook")
    serve_parser.add_argument("--store", default="./atelier-data", help="Run store directory")
    serve_parser.add_argument("--host", default=WebhookServerConfig.host)
    serve_parser.add_argument("--port", type=int, default=WebhookServerConfig.port)
    serve_parser.set_defaults(func=cmd_serve)


def main():
    parser = argparse.ArgumentParser(
        prog="atelier",
        description="Atelier - Compile and run AI photo processing pipelines",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
