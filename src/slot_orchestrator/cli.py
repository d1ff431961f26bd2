"""Console entry point: ``slot-orchestrator serve|list|pop-in|apply``.

``serve`` runs the orchestrator. ``list``, ``apply`` and ``pop-in`` talk to a running
orchestrator over HTTP; ``pop-in`` then attaches this terminal to the slot's
tmux session and returns when the operator detaches.
"""

import argparse
import asyncio
import sys

import httpx

from .errors import OrchestratorError
from .models import AgentStatus, OrchestratorConfig
from .session_controller import SessionController


def _base_url(args: argparse.Namespace, config: OrchestratorConfig) -> str:
    return args.url or f"http://{config.server_host}:{config.server_port}"


def format_slot_table(slots: list[dict]) -> str:
    """Render slots as a plain text table."""
    if not slots:
        return "No slots."
    rows = [("NAME", "BRANCH", "STATUS", "AGENT", "PORTS", "ENDPOINTS")]
    for slot in slots:
        ports = ",".join(f"{k}={v}" for k, v in sorted(slot.get("ports", {}).items()))
        endpoints = ",".join(f"{k}={v}" for k, v in sorted(slot.get("endpoints", {}).items()))
        rows.append(
            (
                slot["name"],
                slot["branchName"],
                slot["status"],
                slot["agentStatus"],
                ports or "-",
                endpoints or "-",
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join(
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows
    )


def cmd_serve(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    from .server import SlotOrchestratorServer

    if args.host:
        config.server_host = args.host
    if args.port:
        config.server_port = args.port
    server = SlotOrchestratorServer(config)
    asyncio.run(server.start_server())
    return 0


def cmd_list(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    response = httpx.get(f"{_base_url(args, config)}/slots", timeout=10.0)
    response.raise_for_status()
    print(format_slot_table(response.json()["slots"]))
    return 0


def cmd_pop_in(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    response = httpx.get(f"{_base_url(args, config)}/slots/{args.name}", timeout=10.0)
    if response.status_code == 404:
        print(f"slot '{args.name}' not found", file=sys.stderr)
        return 1
    response.raise_for_status()

    slot = response.json()
    if slot["agentStatus"] != AgentStatus.ACTIVE.value:
        print(
            f"slot '{args.name}' has no active agent (agent is {slot['agentStatus']})",
            file=sys.stderr,
        )
        return 1

    sessions = SessionController(
        session_prefix=config.session_prefix,
        retry_attempts=config.session_retry_attempts,
    )
    return sessions.attach(args.name)


def cmd_apply(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    """Apply a stored blueprint; non-zero if any of its slots failed."""
    response = httpx.post(
        f"{_base_url(args, config)}/blueprints/{args.blueprint}/apply", timeout=600.0
    )
    if response.status_code == 404:
        print(f"blueprint '{args.blueprint}' not found", file=sys.stderr)
        return 1
    response.raise_for_status()

    result = response.json()
    for outcome in result["slots"]:
        if outcome["ok"]:
            print(f"{outcome['name']}: {outcome['slot']['status']}")
        else:
            print(f"{outcome['name']}: {outcome['error']}", file=sys.stderr)
    return 1 if result["failed"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slot-orchestrator",
        description="Run isolated development slots side by side",
    )
    parser.add_argument(
        "--url",
        help="Orchestrator URL (default: http://$SLOT_ORCHESTRATOR_HOST:$SLOT_ORCHESTRATOR_PORT)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the orchestrator server")
    serve.add_argument("--host", help="Host to bind to")
    serve.add_argument("--port", type=int, help="Port to listen on")
    serve.set_defaults(func=cmd_serve)

    list_cmd = subparsers.add_parser("list", help="List slots")
    list_cmd.set_defaults(func=cmd_list)

    pop_in = subparsers.add_parser("pop-in", help="Attach to a slot's agent session")
    pop_in.add_argument("name", help="Slot name")
    pop_in.set_defaults(func=cmd_pop_in)

    apply = subparsers.add_parser("apply", help="Create the slots of a stored blueprint")
    apply.add_argument("blueprint", help="Blueprint name")
    apply.set_defaults(func=cmd_apply)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = OrchestratorConfig.from_env()
    try:
        return args.func(args, config)
    except httpx.HTTPError as e:
        print(f"Cannot reach orchestrator: {e}", file=sys.stderr)
        return 1
    except OrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
