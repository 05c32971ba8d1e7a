"""
btguard Command Line Interface.

Provides commands for managing btguard:
- start: Start the daemon
- status: Show policy and audit summary
- devices: List and manage trusted/blocked devices
- events: Query the audit log
- simulate: Replay a scripted sequence of pairing requests
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from btguard import __version__
from btguard.config import BTGuardConfig, load_config, validate_config
from btguard.core.engine import TrustEngine
from btguard.errors import OperationResult
from btguard.policy.models import Classification


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="btguard",
        description="Bluetooth pairing firewall",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # start command
    start_parser = subparsers.add_parser("start", help="Start the daemon")
    start_parser.add_argument(
        "-s", "--script",
        metavar="FILE",
        help="Simulation script for the simulated adapter",
    )
    start_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    start_parser.set_defaults(func=cmd_start)

    # status command
    status_parser = subparsers.add_parser("status", help="Show policy summary")
    status_parser.set_defaults(func=cmd_status)

    # devices command
    devices_parser = subparsers.add_parser("devices", help="List and manage devices")
    devices_sub = devices_parser.add_subparsers(dest="devices_cmd")

    list_parser = devices_sub.add_parser("list", help="List trusted and blocked devices")
    list_filter = list_parser.add_mutually_exclusive_group()
    list_filter.add_argument(
        "--trusted",
        action="store_true",
        help="Only trusted devices",
    )
    list_filter.add_argument(
        "--blocked",
        action="store_true",
        help="Only blocked devices",
    )

    trust_parser = devices_sub.add_parser("trust", help="Trust a device")
    trust_parser.add_argument("identity", help="Device hardware address")

    block_parser = devices_sub.add_parser("block", help="Block a device")
    block_parser.add_argument("identity", help="Device hardware address")

    remove_parser = devices_sub.add_parser("remove", help="Remove a device from a list")
    remove_parser.add_argument("identity", help="Device hardware address")
    remove_parser.add_argument(
        "--from",
        dest="from_list",
        choices=["trusted", "blocked"],
        required=True,
        help="List to remove the device from",
    )

    devices_parser.set_defaults(func=cmd_devices)

    # events command
    events_parser = subparsers.add_parser("events", help="Query the audit log")
    events_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of events to show",
    )
    events_parser.add_argument(
        "-d", "--device",
        help="Filter by device identity",
    )
    events_parser.add_argument(
        "-t", "--type",
        help="Filter by event type",
    )
    events_parser.set_defaults(func=cmd_events)

    # simulate command
    simulate_parser = subparsers.add_parser(
        "simulate", help="Replay a scripted sequence of pairing requests"
    )
    simulate_parser.add_argument("script", help="YAML simulation script")
    simulate_parser.add_argument(
        "--decide",
        choices=["trust", "block", "ignore"],
        help="Answer every prompt with this decision",
    )
    simulate_parser.set_defaults(func=cmd_simulate)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


def get_config(args: argparse.Namespace) -> BTGuardConfig:
    """Load and validate configuration."""
    config = load_config(args.config)
    errors = validate_config(config)
    if errors:
        raise ValueError("; ".join(errors))
    return config


def get_engine(args: argparse.Namespace) -> TrustEngine:
    """Build an engine over the configured storage, without an adapter."""
    config = get_config(args)
    config.policy.trust_bonded_on_start = False
    config.prompt.log_prompts = False
    return TrustEngine.from_config(config)


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                for key, value in item.items():
                    print(f"  {key}: {value}")
                print()
            else:
                print(f"  {item}")
    else:
        print(data)


def report_failure(result: OperationResult, args: argparse.Namespace) -> int:
    """Print a failed result and return the exit code."""
    if getattr(args, "json", False):
        output(result.to_dict(), args)
    else:
        print(f"Error: {result.message}", file=sys.stderr)
    return 1


def cmd_start(args: argparse.Namespace) -> int:
    """Start the daemon."""
    from btguard.daemon import main as daemon_main

    daemon_args = []
    if args.config:
        daemon_args.extend(["-c", args.config])
    if args.script:
        daemon_args.extend(["-s", args.script])
    if args.verbose:
        daemon_args.append("-v")

    return daemon_main(daemon_args)


def cmd_status(args: argparse.Namespace) -> int:
    """Show policy and audit summary."""
    try:
        engine = get_engine(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(engine.start())
        status = {
            "version": __version__,
            "storage": str(engine.store.backend.db_path),
            "storage_available": result.ok,
            "trusted": len(engine.registry.trusted),
            "blocked": len(engine.registry.blocked),
            "audit_events": engine.audit.count_events() if engine.audit else None,
        }
        if getattr(args, "json", False):
            output(status, args)
        else:
            print("btguard Status")
            print("=" * 40)
            print(f"Version:          {status['version']}")
            print(f"Policy storage:   {status['storage']}")
            print(f"Storage:          {'available' if result.ok else 'UNAVAILABLE'}")
            print(f"Trusted devices:  {status['trusted']}")
            print(f"Blocked devices:  {status['blocked']}")
            if status["audit_events"] is not None:
                print(f"Audit events:     {status['audit_events']}")
        return 0 if result.ok else 1
    finally:
        engine.close()


def cmd_devices(args: argparse.Namespace) -> int:
    """List and manage devices."""
    try:
        engine = get_engine(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(_devices(engine, args))
    finally:
        engine.close()


async def _devices(engine: TrustEngine, args: argparse.Namespace) -> int:
    loaded = await engine.start()
    if not loaded.ok:
        return report_failure(loaded, args)

    if args.devices_cmd == "list" or args.devices_cmd is None:
        classification = None
        if getattr(args, "trusted", False):
            classification = Classification.TRUSTED
        elif getattr(args, "blocked", False):
            classification = Classification.BLOCKED

        result = engine.get_snapshot(classification)
        if not result.ok:
            return report_failure(result, args)
        entries = result.value

        if getattr(args, "json", False):
            output([entry.to_dict() for entry in entries], args)
        else:
            print(f"Bluetooth Devices ({len(entries)} total)")
            print("=" * 60)
            if not entries:
                print("No devices found.")
            else:
                print(f"{'Address':<20} {'Name':<25} {'Status':<10}")
                print("-" * 60)
                for entry in entries:
                    print(
                        f"{entry.identity[:20]:<20} "
                        f"{entry.name[:25]:<25} "
                        f"{entry.classification.value:<10}"
                    )
        return 0

    if args.devices_cmd == "trust":
        result = await engine.trust_device(args.identity)
        message = f"Device trusted: {args.identity}"
    elif args.devices_cmd == "block":
        result = await engine.block_device(args.identity)
        message = f"Device blocked: {args.identity}"
    elif args.from_list == "trusted":
        result = await engine.remove_trusted(args.identity)
        message = f"Removed from trusted: {args.identity}"
    else:
        result = await engine.remove_blocked(args.identity)
        message = f"Removed from blocked: {args.identity}"

    if not result.ok:
        return report_failure(result, args)

    if getattr(args, "json", False):
        output(result.to_dict(), args)
    else:
        print(message)
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    """Query the audit log."""
    try:
        config = get_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not config.audit.enabled:
        print("Audit log is disabled", file=sys.stderr)
        return 1

    from btguard.audit.database import AuditLog

    audit = AuditLog(config.audit.path, wal_mode=config.audit.wal_mode)
    try:
        events = audit.get_events(
            identity=args.device,
            event_type=args.type,
            limit=args.limit,
        )
        total = audit.count_events(identity=args.device, event_type=args.type)

        if getattr(args, "json", False):
            output([e.to_dict() for e in events], args)
        else:
            print(f"Audit Log ({len(events)} of {total} events)")
            print("=" * 80)
            if not events:
                print("No events found.")
            else:
                print(f"{'Time':<20} {'Device':<20} {'Type':<14} {'Detail':<24}")
                print("-" * 80)
                for event in events:
                    time_str = event.timestamp.strftime("%Y-%m-%d %H:%M:%S")
                    detail = event.decision or event.action or event.detail or "-"
                    print(
                        f"{time_str:<20} "
                        f"{(event.identity or '-')[:20]:<20} "
                        f"{event.event_type:<14} "
                        f"{detail[:24]:<24}"
                    )
        return 0
    finally:
        audit.close()


def cmd_simulate(args: argparse.Namespace) -> int:
    """Replay a simulation script through the engine."""
    from btguard.bluetooth.simulated import SimulatedAdapter
    from btguard.daemon import BTGuardDaemon

    try:
        config = get_config(args)
        adapter = SimulatedAdapter.from_file(args.script)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    config.api.enabled = False
    if args.decide:
        config.prompt.auto_decision = args.decide

    daemon = BTGuardDaemon(config, adapter=adapter, exit_when_idle=True)
    asyncio.run(daemon.run())
    pending = daemon.unanswered

    outcomes = sorted(
        daemon.outcomes,
        key=lambda o: o.attempt.sequence if o.attempt else 0,
    )
    summary = {
        "outcomes": [o.to_dict() for o in outcomes],
        "unanswered_prompts": pending,
        "cancelled": list(adapter.cancelled),
    }

    if getattr(args, "json", False):
        output(summary, args)
        return 0

    print(f"Simulation: {len(outcomes)} pairing request(s)")
    print("=" * 78)
    print(f"{'Address':<20} {'Name':<18} {'Action':<8} {'Decision':<24} {'Flags':<8}")
    print("-" * 78)
    for outcome in outcomes:
        flags = []
        if outcome.duplicate:
            flags.append("dup")
        if outcome.coalesced:
            flags.append("joined")
        if outcome.cancel_ok is False:
            flags.append("cancel!")
        if outcome.error is not None and outcome.attempt is None:
            flags.append("malformed")
        print(
            f"{(outcome.identity or '-')[:20]:<20} "
            f"{((outcome.attempt.display_name if outcome.attempt else None) or '-')[:18]:<18} "
            f"{(outcome.action.value if outcome.action else '-'):<8} "
            f"{(outcome.decision.value if outcome.decision else '-'):<24} "
            f"{','.join(flags):<8}"
        )
    if pending:
        print()
        print(f"Unanswered prompts dismissed: {len(pending)}")
    if adapter.cancelled:
        print(f"Bonding cancelled for: {', '.join(adapter.cancelled)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
