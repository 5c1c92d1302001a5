"""rtbf - staff command line for forget requests.

Commands::

    rtbf forget-user <user_id> [--wait]   - Forget a user without asking them
    rtbf status <request_id>              - Show a request and its shard targets
    rtbf list                             - List all requests, newest first

Exit codes: 0 success, 1 request failed or was refused, 2 usage error.

Configuration is read from the environment exactly as for the API server.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import textwrap

from rtbf.config import Settings, get_settings
from rtbf.database import close_db, get_identity_engine, get_session_factory, init_db
from rtbf.errors import ForgetError
from rtbf.infra.work_queue import InProcessWorkQueue
from rtbf.services.orchestrator import status_label
from rtbf.telemetry.logging import configure_logging
from rtbf.wiring import ForgetContainer, build_container

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_forget_user(container: ForgetContainer, args: argparse.Namespace) -> int:
    try:
        request = await container.service.force_execute(args.user_id)
    except ForgetError as exc:
        print(f"[ERROR] {exc.code}: {exc}", file=sys.stderr)
        return EXIT_FAILED

    print(
        f"Successfully began request {request.id} to anonymise user {request.user_id} "
        f"(new name: {request.target_name})"
    )
    if args.wait and isinstance(container.queue, InProcessWorkQueue):
        await container.queue.join()
        finished = await container.service.load_request(request.id)
        if finished is not None:
            print(f"Request {finished.id} is {status_label(finished.status)}")
    return EXIT_OK


async def cmd_status(container: ForgetContainer, args: argparse.Namespace) -> int:
    request = await container.service.load_request(args.request_id)
    if request is None:
        print(f"[ERROR] request {args.request_id} not found", file=sys.stderr)
        return EXIT_FAILED

    print(
        f"Request {request.id}: user {request.user_id} "
        f"{request.original_name!r} -> {request.target_name!r} "
        f"[{status_label(request.status)}] source={request.source}"
    )
    targets = await container.service.load_targets(request.id)
    if targets is None:
        print("  no shard targets")
        return EXIT_OK
    for target in targets:
        line = f"  {target.shard_id:<24} {status_label(target.status)}"
        if target.error_message:
            line += f"\n{textwrap.indent(target.error_message, '      ')}"
        print(line)
    return EXIT_OK


async def cmd_list(container: ForgetContainer, args: argparse.Namespace) -> int:  # noqa: ARG001
    for request in await container.service.list_requests():
        print(
            f"{request.id:>6}  {request.user_id:>8}  {status_label(request.status):<12} "
            f"{request.source:<13} {request.created_at:%Y-%m-%d %H:%M}"
        )
    return EXIT_OK


_COMMANDS = {
    "forget-user": cmd_forget_user,
    "status": cmd_status,
    "list": cmd_list,
}


# ------------------------------------------------------------------ #
# Argument parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtbf",
        description="Right-to-be-forgotten staff tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """\
            Examples:
              rtbf forget-user 1234 --wait
              rtbf status 17
              rtbf list
            """
        ),
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    forget_parser = subparsers.add_parser(
        "forget-user",
        help="Forcefully forget a user, skipping their confirmation",
    )
    forget_parser.add_argument("user_id", type=int, help="Central ID of the user to forget")
    forget_parser.add_argument(
        "--wait",
        action="store_true",
        help="Wait for the shard work to finish and print the final status",
    )

    status_parser = subparsers.add_parser("status", help="Show one request")
    status_parser.add_argument("request_id", type=int)

    subparsers.add_parser("list", help="List all requests")
    return parser


# ------------------------------------------------------------------ #
# Dispatch
# ------------------------------------------------------------------ #


async def run(args: argparse.Namespace, settings: Settings) -> int:
    init_db(settings)
    container = build_container(settings, get_session_factory(), get_identity_engine())
    await container.start()
    try:
        return await _COMMANDS[args.command](container, args)
    finally:
        await container.stop()
        await close_db()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in _COMMANDS:
        parser.print_help()
        return EXIT_USAGE

    settings = get_settings()
    configure_logging(json_logs=settings.is_prod, log_level="DEBUG" if settings.debug else "INFO")
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
