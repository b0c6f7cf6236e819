"""CLI entry point for grove.

Usage:
    grove serve --port 5865
    grove send "Explain this stack trace" --session <SESSION_ID>
    grove trees --project api
    grove jobs --active
    grove search "retry budget"
    grove providers
    grove complete <BRANCH_ID> --absorb
    grove context <SESSION_ID>
    grove delete --tree <TREE_ID>
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.app import GroveServices, build_services
from grove.engine.errors import GroveError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grove",
        description="Branching conversations routed across LLM providers",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to grove.yaml (default: ~/.grove/grove.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", default=None, help="Bind address (default: from config)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: from config)")
    serve.add_argument(
        "--token",
        default=None,
        help="Shared secret for x-grove-token (default: GROVE_TOKEN or generated)",
    )

    send = sub.add_parser("send", help="Send a message and stream the reply")
    send.add_argument("message", help="Message text")
    send.add_argument("--session", default=None, help="Continue the branch owning this session id")
    send.add_argument("--branch", default=None, help="Continue this branch id")
    send.add_argument("--provider", default=None, help="Provider id (default: active provider)")
    send.add_argument("--model", default=None, help="Model override")
    send.add_argument("--project", default=None, help="Project label for a new tree")
    send.add_argument("--cwd", default=None, help="Working directory for tools")

    trees = sub.add_parser("trees", help="List conversation trees")
    trees.add_argument("--all", action="store_true", help="Include archived trees")
    trees.add_argument("--project", default=None, help="Only trees with this project label")

    jobs = sub.add_parser("jobs", help="List background jobs")
    jobs.add_argument("--active", action="store_true", help="Only queued and running jobs")
    jobs.add_argument("--limit", type=int, default=20, help="Number of recent jobs (default: 20)")

    search = sub.add_parser("search", help="Search message history")
    search.add_argument("query", help="Search terms")
    search.add_argument("--limit", type=int, default=50)

    sub.add_parser("providers", help="Show registered providers and their health")

    complete = sub.add_parser("complete", help="Mark a branch completed and summarize it")
    complete.add_argument("branch", help="Branch id")
    complete.add_argument(
        "--absorb", action="store_true", help="Append a digest to the parent branch",
    )

    context = sub.add_parser("context", help="Show estimated context pressure for a session")
    context.add_argument("session", help="Session id")
    context.add_argument("--rotate", action="store_true", help="Rotate the CLI session now")

    delete = sub.add_parser("delete", help="Delete a tree or every tree of a project")
    target = delete.add_mutually_exclusive_group(required=True)
    target.add_argument("--tree", default=None, help="Tree id")
    target.add_argument("--project", default=None, help="Project label")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    services = build_services(args.config)
    try:
        if args.command == "serve":
            _serve(services, args)
        elif args.command == "send":
            sys.exit(asyncio.run(_send(services, args)))
        elif args.command == "trees":
            _list_trees(services, args)
        elif args.command == "jobs":
            _list_jobs(services, args)
        elif args.command == "search":
            _search(services, args)
        elif args.command == "providers":
            asyncio.run(_providers(services))
        elif args.command == "complete":
            asyncio.run(_complete(services, args))
        elif args.command == "context":
            sys.exit(asyncio.run(_context(services, args)))
        elif args.command == "delete":
            _delete(services, args)
    except GroveError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _serve(services: GroveServices, args: argparse.Namespace) -> None:
    from grove.server.server import GroveServer

    server = GroveServer(services, host=args.host, port=args.port, token=args.token)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)


async def _send(services: GroveServices, args: argparse.Namespace) -> int:
    conversations = services.conversations
    if args.branch:
        branch_id = args.branch
    elif args.session:
        branch = services.trees.get_branch_by_session(args.session)
        if branch is None:
            print(f"Error: no branch owns session {args.session}", file=sys.stderr)
            return 1
        branch_id = branch.id
    else:
        _tree, branch = conversations.start_conversation(
            args.message, project=args.project, working_directory=args.cwd,
        )
        branch_id = branch.id
        print(f"session: {branch.session_id}", file=sys.stderr)

    status = 0
    try:
        async for event in conversations.send(
            branch_id,
            args.message,
            provider_id=args.provider,
            model=args.model,
            working_directory=args.cwd,
        ):
            if isinstance(event, TextEvent):
                sys.stdout.write(event.text)
                sys.stdout.flush()
            elif isinstance(event, ToolStartEvent):
                print(f"\n[tool] {event.name}", file=sys.stderr)
            elif isinstance(event, ToolEndEvent):
                marker = "failed" if event.is_error else "done"
                print(f"[tool {marker}] {event.name}", file=sys.stderr)
            elif isinstance(event, DoneEvent):
                sys.stdout.write("\n")
            elif isinstance(event, ErrorEvent):
                print(f"\nError ({event.kind.value}): {event.message}", file=sys.stderr)
                status = 1
            elif isinstance(event, CancelledEvent):
                print("\nCancelled.", file=sys.stderr)
                status = 130
    finally:
        await services.shutdown()
    return status


def _list_trees(services: GroveServices, args: argparse.Namespace) -> None:
    trees = services.trees.list_trees(include_archived=args.all, project=args.project)
    if not trees:
        print("No trees.")
        return
    for tree in trees:
        archived = " (archived)" if tree.archived else ""
        project = f" [{tree.project}]" if tree.project else ""
        print(f"  {tree.id}  {tree.name}{project}  {tree.message_count} msgs  {tree.updated_at}{archived}")


def _list_jobs(services: GroveServices, args: argparse.Namespace) -> None:
    jobs = services.jobs.active_jobs() if args.active else services.jobs.recent_jobs(args.limit)
    if not jobs:
        print("No jobs.")
        return
    for job in jobs:
        print(f"  {job.id}  {job.status.value:<9}  {job.command[:60]}")


def _search(services: GroveServices, args: argparse.Namespace) -> None:
    results = services.messages.search(args.query, limit=args.limit)
    if not results:
        print("No matches.")
        return
    for message in results:
        snippet = " ".join(message.content.split())[:100]
        print(f"  {message.session_id}  {message.role.value:<9}  {snippet}")


async def _providers(services: GroveServices) -> None:
    await services.router.refresh_health()
    for entry in services.router.health_report():
        active = "*" if entry["active"] else " "
        print(f"{active} {entry['id']:<16} {entry['health']:<11} {entry['name']}")



async def _complete(services: GroveServices, args: argparse.Namespace) -> None:
    try:
        branch = await services.conversations.complete_branch(
            args.branch, absorb_into_parent=args.absorb,
        )
    finally:
        await services.shutdown()
    print(f"Branch {branch.id} completed.")
    if branch.summary:
        print(branch.summary)


async def _context(services: GroveServices, args: argparse.Namespace) -> int:
    rotator = services.rotator
    if rotator is None:
        print("Session rotation is disabled.", file=sys.stderr)
        return 1
    try:
        estimate = rotator.pressure(args.session)
        print(
            f"~{estimate.tokens} tokens ({estimate.ratio:.0%}), pressure {estimate.level.value}, "
            f"{rotator.rotation_count(args.session)} rotations"
        )
        if args.rotate:
            provider = services.router.active_provider
            if provider is None:
                print("Error: no active provider", file=sys.stderr)
                return 1
            branch = services.trees.get_branch_by_session(args.session)
            checkpoint = await rotator.force_rotate(
                args.session, branch.id if branch else None, provider.identifier,
            )
            print("Rotated." if checkpoint else "Rotation skipped: no checkpoint.")
        latest = rotator.latest_checkpoint(args.session)
        if latest is not None:
            print(f"\nLatest checkpoint ({latest.created_at}):\n{latest.summary}")
    finally:
        await services.shutdown()
    return 0


def _delete(services: GroveServices, args: argparse.Namespace) -> None:
    if args.tree:
        session_ids = services.conversations.delete_tree(args.tree)
    else:
        session_ids = services.conversations.delete_project(args.project)
    print(f"Deleted {len(session_ids)} sessions.")

if __name__ == "__main__":
    main()
