# portrelay/cli.py

import argparse
import logging
import os
import shutil
import sys
from typing import List, Optional

from portrelay.core.config import Config
from portrelay.core.errors import ForwardError, NoFreePortError, PortConflictError, RuleNotFoundError
from portrelay.core.models import ChangeResult, ChangeStatus, PortUsageDetail
from portrelay.services.relay_service import RelayService
from portrelay.system.iptables import IPTablesError
from portrelay.system.sysctl import IPForwardingError

RANGE_CONFIRM_THRESHOLD = 1000
NO_PREFLIGHT = {"info", "config"}


# ===== Utilities =====

def need_root():
    if os.geteuid() != 0:
        print("This command must run as root (use sudo).", file=sys.stderr)
        sys.exit(1)


def check_dependencies():
    missing = []
    if shutil.which("iptables") is None:
        missing.append("iptables")
    if shutil.which("ss") is None and shutil.which("netstat") is None:
        missing.append("ss or netstat")
    if missing:
        print(f"Missing required commands: {', '.join(missing)}", file=sys.stderr)
        print("Ubuntu/Debian: apt install iptables iproute2 net-tools", file=sys.stderr)
        print("CentOS/RHEL:   yum install iptables iproute net-tools", file=sys.stderr)
        sys.exit(1)


def preflight():
    need_root()
    check_dependencies()


def build_service(config: Config) -> RelayService:
    return RelayService.from_config(config)


def confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_usage_detail(usage: PortUsageDetail):
    if not usage.in_use:
        print("  Port is available")
        return
    if usage.listeners:
        print("  Used by a local process:")
        for line in usage.listeners:
            print(f"    {line}")
    if usage.rules:
        print("  Used by forwarding rules:")
        for line in usage.rules:
            print(f"    {line}")


def print_result(result: ChangeResult, config: Config) -> int:
    for warning in result.warnings:
        print(f"[!] {warning}")
    if result.status is ChangeStatus.SUCCESS:
        change = result.change
        relay, target = change.final_relay_port, change.final_target_port
        print(f"[✓] {result.message}")
        print(f"  {config.target_name}: {config.target_ip}:{target}")
        print(f"  {config.relay_name} access: {config.relay_display}:{relay}")
        if change.auto_assigned:
            print(f"  Relay port {relay} was assigned automatically (requested {change.requested_relay_port})")
        if relay != change.relay_port or relay != target:
            print(f"  Clients should connect to {config.relay_display}:{relay}")
        return 0
    if result.ok:
        print(f"[i] {result.message}")
        return 0

    print(f"[✗] {result.status.value}: {result.message}", file=sys.stderr)
    if result.error is not None:
        print(f"    error: {result.error.value}", file=sys.stderr)
    if result.completed_steps:
        print(f"    completed steps: {', '.join(result.completed_steps)}", file=sys.stderr)
    if result.status is ChangeStatus.PARTIAL_FAILURE:
        print(f"    rolled back: {'yes' if result.compensated else 'NO, check the rule table'}", file=sys.stderr)
    return 1


# ===== Commands =====

def cmd_add(service: RelayService, args) -> int:
    try:
        result = service.reconciler.add(args.target_port, args.relay_port, auto_assign=args.auto)
    except PortConflictError as e:
        print(f"[✗] {e}", file=sys.stderr)
        if e.usage:
            print_usage_detail(e.usage)
        print("Suggestions:")
        print(f"  1. Assign automatically: portrelay auto {args.target_port}")
        print(f"  2. Find a free port:     portrelay find-free {e.port}")
        print(f"  3. Pick another port:    portrelay add {args.target_port} <relay port>")
        return 1
    return print_result(result, service.config)


def cmd_modify(service: RelayService, args) -> int:
    try:
        change = service.reconciler.propose_modify(args.relay_port, args.new_target, args.new_relay, args.force)
    except PortConflictError as e:
        print(f"[✗] {e}", file=sys.stderr)
        if e.usage:
            print_usage_detail(e.usage)
        print(f"Use --force to move the rule to relay port {e.port} anyway, "
              f"or pick a free port with: portrelay find-free {e.port}")
        return 1
    print(f"[i] {change.summary()}")
    return print_result(service.reconciler.apply_change(change), service.config)


def _ask_port(prompt: str, default: int) -> str:
    answer = input(f"{prompt} [{default}]: ").strip()
    return answer or str(default)


def cmd_edit(service: RelayService, args) -> int:
    relay_port = args.relay_port
    current = service.iptables.find_rule(relay_port)
    if current is None:
        raise RuleNotFoundError(relay_port)
    print("=== Edit forwarding rule ===")
    print(f"  Relay port:  {relay_port}")
    print(f"  Target port: {current.target_port}")
    print(f"  Mapping:     {service.config.relay_display}:{relay_port} -> {current.target_host}:{current.target_port}")
    print()
    print("  1. Change target port only")
    print("  2. Change relay port only")
    print("  3. Change both")
    print("  4. Cancel")
    choice = input("Choose (1-4): ").strip()

    new_target, new_relay = None, None
    if choice == "1":
        new_target = _ask_port("New target port", current.target_port)
    elif choice == "2":
        new_relay = _ask_port("New relay port", relay_port)
    elif choice == "3":
        new_target = _ask_port("New target port", current.target_port)
        new_relay = _ask_port("New relay port", relay_port)
    elif choice == "4":
        print("[i] Edit cancelled")
        return 0
    else:
        print("Invalid choice", file=sys.stderr)
        return 1

    change = service.reconciler.propose_modify(relay_port, new_target, new_relay)
    if change.is_noop:
        return print_result(service.reconciler.apply_change(change), service.config)
    print(f"[i] {change.summary()}")
    confirmed = confirm("Apply this change?")
    return print_result(service.reconciler.apply_change(change, confirmed), service.config)


def cmd_remove(service: RelayService, args) -> int:
    change = service.reconciler.propose_remove(args.relay_port)
    print(f"[i] About to {change.summary()}")
    confirmed = True if args.force else confirm("Remove this forwarding rule?")
    return print_result(service.reconciler.apply_change(change, confirmed), service.config)


def cmd_range(service: RelayService, args) -> int:
    count = args.end - args.start + 1
    if count > RANGE_CONFIRM_THRESHOLD:
        print(f"[!] The range spans {count} ports; consider splitting it")
        if not confirm("Continue?"):
            print("[i] Cancelled")
            return 1
    result = service.reconciler.add_range(args.start, args.end)
    for port, reason in sorted(result.failed.items()):
        print(f"  {port}: {reason}")
    print(f"[✓] Range done: {len(result.succeeded)} succeeded, {len(result.failed)} failed")
    if result.failed:
        print("[i] Failed ports are probably in use or already forwarded")
    return 0


def cmd_list(service: RelayService, args) -> int:
    config = service.config
    if args.port is not None:
        description = service.reporting.describe(args.port)
        print(f"=== Port {description.port} ===")
        if description.rule:
            print(f"Forwarding rule: {config.relay_display}:{description.port} -> "
                  f"{description.rule.target_host}:{description.rule.target_port}")
        else:
            print("No forwarding rule found")
        print("Port usage:")
        print_usage_detail(description.usage)
        return 0

    listing = service.reporting.list_all()
    print(f"=== Forwarding rules to {config.target_name} ({config.target_ip}) ===")
    print(f"Total: {listing.total}")
    if not listing.total:
        return 0
    print(f"{'#':<4} {'Relay port':<12} {'Target port':<12} {'Status':<10}")
    print("-" * 42)
    for index, entry in enumerate(listing.entries, start=1):
        status = "listening" if entry.listening else "idle"
        print(f"{index:<4} {entry.relay_port:<12} {entry.target_port:<12} {status:<10}")
    if listing.remaining:
        print(f"... showing the first {len(listing.entries)} of {listing.total} rules "
              f"({listing.remaining} more); use 'portrelay list <port>' for details")
    return 0


def cmd_status(service: RelayService, args) -> int:
    config = service.config
    status = service.reporting.status()
    print("=== Relay status ===")
    print(f"  Target: {config.target_name} ({config.target_ip})")
    print(f"  Relay:  {config.relay_name} ({config.relay_ip or 'unset'})")
    print(f"  IP forwarding: {'enabled' if status.ip_forward_enabled else 'disabled'}")
    print(f"  Forwarding rules: {status.rule_count}")
    print("Well-known ports:")
    for port, conflict in status.well_known_ports.items():
        print(f"  {port:<6} {'available' if conflict.is_available else 'in use (' + conflict.value + ')'}")
    if status.recent_rules:
        print("First rules:")
        for rule in status.recent_rules:
            print(f"  {rule.relay_port} -> {rule.target_port}")
    return 0


def cmd_test(service: RelayService, args) -> int:
    report = service.reporting.test_connectivity(args.relay_port)
    rule = report.rule
    print(f"[i] {service.config.relay_display}:{rule.relay_port} -> {rule.target_host}:{rule.target_port}")
    if report.relay_reachable:
        print(f"[✓] Relay port {rule.relay_port} accepts connections")
    else:
        print(f"[!] Relay port {rule.relay_port} did not accept a connection (the service may be down)")
    if report.target_reachable:
        print(f"[✓] Target {rule.target_host}:{rule.target_port} accepts connections")
    else:
        print(f"[!] Target {rule.target_host}:{rule.target_port} is unreachable")
        print("    Check that the target host is reachable, the service runs and the firewall allows it")
    return 0


def cmd_check(service: RelayService, args) -> int:
    description = service.reporting.describe(args.port)
    print(f"=== Port {description.port}: {description.conflict.value} ===")
    print_usage_detail(description.usage)
    return 0


def cmd_find_free(service: RelayService, args) -> int:
    port = service.allocator.find_available_port(args.start)
    if port is None:
        raise NoFreePortError(args.start or service.config.auto_port_start, service.config.max_attempts)
    print(f"[✓] Available port: {port}")
    return 0


def cmd_save(service: RelayService, args) -> int:
    path = service.iptables.save_rules(service.config.rules_file)
    print(f"[✓] Rules saved to {path}")
    return 0


def cmd_restore(service: RelayService, args) -> int:
    service.iptables.restore_rules(service.config.rules_file)
    print(f"[✓] Rules restored from {service.config.rules_file}")
    return 0


def cmd_backup(service: RelayService, args) -> int:
    path = service.iptables.backup_rules(service.config.backup_dir)
    print(f"[✓] Rules backed up to {path}")
    return 0


def cmd_info(service: RelayService, args) -> int:
    config = service.config
    print("=== Connection info ===")
    print(f"  {config.target_name}: {config.target_ip}")
    print(f"  {config.relay_name}: {config.relay_display}")
    print(f"  Direct:   client -> {config.target_ip}:<port>")
    print(f"  Relayed:  client -> {config.relay_display}:<relay port> -> {config.target_ip}:<target port>")
    print(f"  Replace {config.target_ip} with {config.relay_display} in client configurations,")
    print("  and update the port when the relay port differs from the target port.")
    return 0


def cmd_config(service: RelayService, args) -> int:
    config = service.config
    print("=== Configuration ===")
    print(f"  RELAY_TARGET_IP={config.target_ip}")
    print(f"  RELAY_TARGET_NAME={config.target_name}")
    print(f"  RELAY_SERVER_IP={config.relay_ip}")
    print(f"  RELAY_SERVER_NAME={config.relay_name}")
    print(f"  RELAY_RULES_FILE={config.rules_file}")
    print(f"  RELAY_BACKUP_DIR={config.backup_dir}")
    print(f"  RELAY_AUTO_PORT_START={config.auto_port_start}")
    print(f"  RELAY_MAX_ATTEMPTS={config.max_attempts}")
    print(f"  RELAY_LIST_LIMIT={config.list_limit}")
    print(f"  RELAY_IPTABLES={config.iptables_bin}")
    print(f"  RELAY_API_HOST={config.api_host}")
    print(f"  RELAY_API_PORT={config.api_port}")
    return 0


def cmd_cleanup(service: RelayService, args) -> int:
    report = service.reporting.cleanup()
    print("=== Rule consistency ===")
    print(f"  Redirect rules: {report.redirect_count}")
    print(f"  FORWARD ACCEPT rules: {report.accept_count}")
    if not report.duplicates:
        print("[✓] No duplicate relay ports")
        return 0
    for port, rules in report.duplicates.items():
        print(f"[!] Relay port {port} is claimed by {len(rules)} rules:")
        for rule in rules:
            print(f"    {rule}")
    print(f"[!] {report.duplicate_count} duplicate rule(s); decide which one to keep and remove the others by hand")
    return 0


def cmd_serve(service: RelayService, args) -> int:
    if not service.config.admin_api_key:
        print("RELAY_ADMIN_API_KEY must be set to serve the API.", file=sys.stderr)
        return 1
    from portrelay.main import app, init_app
    import uvicorn

    init_app(service)
    uvicorn.run(app, host=service.config.api_host, port=service.config.api_port, log_level="info")
    return 0


# ===== Argument parsing =====

def port_arg(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535: {value}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="portrelay", description="TCP port forwarding manager for a relay host.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="forward a target port (same relay port unless given)")
    p.add_argument("target_port", type=port_arg)
    p.add_argument("relay_port", type=port_arg, nargs="?")
    p.set_defaults(func=cmd_add, auto=False)

    p = sub.add_parser("auto", help="forward a target port, picking a free relay port if needed")
    p.add_argument("target_port", type=port_arg)
    p.set_defaults(func=cmd_add, auto=True, relay_port=None)

    p = sub.add_parser("map", help="forward a target port to a specific relay port")
    p.add_argument("target_port", type=port_arg)
    p.add_argument("relay_port", type=port_arg)
    p.set_defaults(func=cmd_add, auto=False)

    p = sub.add_parser("modify", help="change an existing rule")
    p.add_argument("relay_port", type=port_arg)
    p.add_argument("new_target", type=port_arg, nargs="?")
    p.add_argument("new_relay", type=port_arg, nargs="?")
    p.add_argument("--force", action="store_true", help="use the new relay port even if it is in use")
    p.set_defaults(func=cmd_modify)

    p = sub.add_parser("edit", help="change an existing rule interactively")
    p.add_argument("relay_port", type=port_arg)
    p.set_defaults(func=cmd_edit)

    p = sub.add_parser("remove", help="remove a rule")
    p.add_argument("relay_port", type=port_arg)
    p.add_argument("--force", action="store_true", help="do not ask for confirmation")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("range", help="forward every port of a range to the same port")
    p.add_argument("start", type=port_arg)
    p.add_argument("end", type=port_arg)
    p.set_defaults(func=cmd_range)

    p = sub.add_parser("list", help="list rules, or show one port")
    p.add_argument("port", type=port_arg, nargs="?")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("test", help="test connectivity of a forwarded port")
    p.add_argument("relay_port", type=port_arg)
    p.set_defaults(func=cmd_test)

    p = sub.add_parser("check", help="show what uses a port")
    p.add_argument("port", type=port_arg)
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("find-free", help="find an available relay port")
    p.add_argument("start", type=port_arg, nargs="?")
    p.set_defaults(func=cmd_find_free)

    for name, func, help_text in (
        ("status", cmd_status, "show relay status"),
        ("save", cmd_save, "save the rule table to the rules file"),
        ("restore", cmd_restore, "restore the rule table from the rules file"),
        ("backup", cmd_backup, "write a timestamped copy of the rule table"),
        ("info", cmd_info, "show connection info"),
        ("config", cmd_config, "show the configuration"),
        ("cleanup", cmd_cleanup, "report duplicate rules"),
        ("serve", cmd_serve, "run the HTTP admin API"),
    ):
        sub.add_parser(name, help=help_text).set_defaults(func=func)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = Config.from_env()
    if args.command not in NO_PREFLIGHT:
        preflight()
    service = build_service(config)

    try:
        return args.func(service, args)
    except ForwardError as e:
        print(f"[✗] {e}", file=sys.stderr)
    except (IPTablesError, IPForwardingError) as e:
        print(f"[✗] Operation failed: {e}", file=sys.stderr)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
