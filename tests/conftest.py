"""Test configuration and fixtures for portrelay tests."""

import subprocess
from typing import Dict, List, Optional, Set, Tuple

import pytest

from portrelay.core.config import Config
from portrelay.services.relay_service import RelayService
from portrelay.system.iptables import IPTablesManager
from portrelay.system.scanner import HostPortScanner
from portrelay.system.sysctl import IPForwarding, IPForwardingError

TARGET_IP = "203.0.113.9"
RELAY_IP = "198.51.100.7"
ADMIN_KEY = "test-admin-key"

HEADER = "target     prot opt source               destination"


def _option(spec: List[str], name: str) -> Optional[str]:
    if name in spec:
        return spec[spec.index(name) + 1]
    return None


def render_rule(spec: List[str]) -> str:
    """Renders a rule spec the way `iptables -L -n` prints it."""
    target = _option(spec, "-j") or ""
    proto = _option(spec, "-p") or "all"
    line = f"{target:<10} {proto:<4} --  0.0.0.0/0            0.0.0.0/0           "
    dport = _option(spec, "--dport")
    if dport:
        line += f" {proto} dpt:{dport}"
    destination = _option(spec, "--to-destination")
    if destination:
        line += f" to:{destination}"
    return line


class FakeIPTables(IPTablesManager):
    """
    IPTablesManager whose commands run against an in-memory table instead of
    the kernel. Every command is recorded in `calls`.
    """

    def __init__(self, target_host: str = TARGET_IP):
        super().__init__(target_host)
        self.chains: Dict[Tuple[str, str], List[List[str]]] = {
            ("nat", "PREROUTING"): [],
            ("nat", "POSTROUTING"): [],
            ("filter", "FORWARD"): [],
        }
        self.calls: List[List[str]] = []
        self.failures: List[Tuple[str, str, Optional[int]]] = []
        self.ignored: Set[Tuple[str, str]] = set()
        self.restored: Optional[str] = None

    # --- Test helpers ---

    def seed_redirect(self, relay_port: int, target_port: int, target_host: Optional[str] = None):
        spec = self._redirect_spec(relay_port, target_host or self.target_host, target_port)
        self.chains[("nat", "PREROUTING")].append(spec)

    def seed_accept(self, target_port: int):
        self.chains[("filter", "FORWARD")].append(self._accept_spec(target_port))

    def fail_on(self, action: str, chain: str, port: Optional[int] = None):
        """Makes matching commands exit non-zero. `port` narrows the match to one --dport."""
        self.failures.append((action, chain, port))

    def ignore(self, action: str, chain: str):
        """Makes matching commands report success without changing anything."""
        self.ignored.add((action, chain))

    @property
    def mutations(self) -> List[List[str]]:
        return [c for c in self.calls if "-A" in c or "-D" in c]

    def redirect_specs(self) -> List[List[str]]:
        return self.chains[("nat", "PREROUTING")]

    def accept_ports(self) -> List[int]:
        return [int(_option(spec, "--dport")) for spec in self.chains[("filter", "FORWARD")]]

    # --- Command emulation ---

    def _execute(self, command: List[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        self.calls.append(list(command))
        binary = command[0]
        if binary.endswith("-save"):
            return subprocess.CompletedProcess(command, 0, self._render_save(), "")
        if binary.endswith("-restore"):
            self.restored = stdin
            return subprocess.CompletedProcess(command, 0, "", "")

        args = list(command[1:])
        table = "filter"
        if "-t" in args:
            index = args.index("-t")
            table = args[index + 1]
            del args[index:index + 2]
        action, chain, rest = args[0], args[1], args[2:]

        dport = _option(rest, "--dport")
        for fail_action, fail_chain, fail_port in self.failures:
            if fail_action == action and fail_chain == chain and (fail_port is None or str(fail_port) == dport):
                return subprocess.CompletedProcess(command, 1, "", "iptables: simulated failure.")
        if (action, chain) in self.ignored:
            return subprocess.CompletedProcess(command, 0, "", "")

        rules = self.chains.setdefault((table, chain), [])
        if action == "-A":
            rules.append(rest)
            return subprocess.CompletedProcess(command, 0, "", "")
        if action == "-D":
            if rest in rules:
                rules.remove(rest)
                return subprocess.CompletedProcess(command, 0, "", "")
            return subprocess.CompletedProcess(
                command, 1, "", "iptables: Bad rule (does a matching rule exist in that chain?)."
            )
        if action == "-C":
            return subprocess.CompletedProcess(command, 0 if rest in rules else 1, "", "")
        if action == "-L":
            return subprocess.CompletedProcess(command, 0, self._render_list(chain, rules, "--line-numbers" in rest), "")
        return subprocess.CompletedProcess(command, 2, "", f"unsupported action {action}")

    @staticmethod
    def _render_list(chain: str, rules: List[List[str]], line_numbers: bool) -> str:
        lines = [f"Chain {chain} (policy ACCEPT)"]
        if line_numbers:
            lines.append(f"num  {HEADER}")
            lines.extend(f"{i:<4} {render_rule(spec)}" for i, spec in enumerate(rules, start=1))
        else:
            lines.append(HEADER)
            lines.extend(render_rule(spec) for spec in rules)
        return "\n".join(lines) + "\n"

    def _render_save(self) -> str:
        out = []
        for table in ("nat", "filter"):
            out.append(f"*{table}")
            for (rule_table, chain), rules in self.chains.items():
                if rule_table == table:
                    out.extend(f"-A {chain} " + " ".join(spec) for spec in rules)
            out.append("COMMIT")
        return "\n".join(out) + "\n"


class FakeScanner(HostPortScanner):
    def __init__(self, bound: Optional[Set[int]] = None):
        self.bound: Set[int] = set(bound or ())

    def get_listening_sockets(self) -> List[Tuple[int, str]]:
        return [
            (port, f'LISTEN 0 128 0.0.0.0:{port} 0.0.0.0:* users:(("daemon",pid={1000 + i},fd=3))')
            for i, port in enumerate(sorted(self.bound))
        ]


class FakeIPForwarding(IPForwarding):
    def __init__(self, enabled: bool = True, fail: bool = False):
        super().__init__()
        self.enabled = enabled
        self.fail = fail

    def is_enabled(self) -> bool:
        return self.enabled

    def ensure_enabled(self) -> bool:
        if self.fail:
            raise IPForwardingError("Failed to enable IP forwarding: read-only file system")
        if self.enabled:
            return False
        self.enabled = True
        return True


@pytest.fixture
def config(tmp_path):
    return Config(
        target_ip=TARGET_IP,
        target_name="vpn",
        relay_ip=RELAY_IP,
        relay_name="edge",
        rules_file=str(tmp_path / "rules.v4"),
        backup_dir=str(tmp_path / "backups"),
        auto_port_start=40000,
        max_attempts=50,
        list_limit=3,
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture
def iptables():
    return FakeIPTables()


@pytest.fixture
def scanner():
    return FakeScanner({22})


@pytest.fixture
def ip_forwarding():
    return FakeIPForwarding()


@pytest.fixture
def service(config, iptables, scanner, ip_forwarding):
    return RelayService(config, iptables, scanner, ip_forwarding)


@pytest.fixture
def reconciler(service):
    return service.reconciler
