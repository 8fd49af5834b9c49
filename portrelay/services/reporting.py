# portrelay/services/reporting.py

import logging
import socket
from collections import OrderedDict
from typing import Dict, List, Optional

from portrelay.core.config import Config
from portrelay.core.errors import RuleNotFoundError, validate_port
from portrelay.core.models import (
    ConnectivityReport,
    ConsistencyReport,
    ForwardEntry,
    ForwardListing,
    ForwardRule,
    PortConflict,
    PortDescription,
    SystemStatus,
)
from portrelay.services.availability import AvailabilityResolver
from portrelay.system.iptables import IPTablesManager
from portrelay.system.scanner import HostPortScanner
from portrelay.system.sysctl import IPForwarding

WELL_KNOWN_PORTS = (22, 80, 443, 3389, 8080, 8443)
RECENT_RULES = 5


class ReportingService:
    """Read-only views. Each call rescans the rule table; nothing is cached between calls."""

    def __init__(
        self,
        config: Config,
        iptables: IPTablesManager,
        scanner: HostPortScanner,
        resolver: AvailabilityResolver,
        ip_forwarding: IPForwarding,
    ):
        self.config = config
        self.iptables = iptables
        self.scanner = scanner
        self.resolver = resolver
        self.ip_forwarding = ip_forwarding

    def list_all(self, limit: Optional[int] = None) -> ForwardListing:
        limit = self.config.list_limit if limit is None else limit
        rules = self.iptables.list_forwarding_rules()
        bound = {port for port, _ in self.scanner.get_listening_sockets()}
        entries = [
            ForwardEntry(relay_port=rule.relay_port, target_port=rule.target_port, listening=rule.relay_port in bound)
            for rule in rules[:limit]
        ]
        return ForwardListing(entries=entries, total=len(rules))

    def describe(self, port: int) -> PortDescription:
        port = validate_port(port)
        usage = self.resolver.usage_detail(port)
        return PortDescription(
            port=port,
            rule=self.iptables.find_rule(port),
            usage=usage,
            conflict=PortConflict.classify(bool(usage.listeners), self.iptables.rule_exists(port)),
        )

    def status(self) -> SystemStatus:
        rules = self.iptables.list_forwarding_rules()
        return SystemStatus(
            ip_forward_enabled=self.ip_forwarding.is_enabled(),
            rule_count=len(rules),
            well_known_ports={port: self.resolver.check_availability(port) for port in WELL_KNOWN_PORTS},
            recent_rules=rules[:RECENT_RULES],
        )

    def cleanup(self) -> ConsistencyReport:
        """Finds relay ports claimed by more than one redirect. Reports only, never deletes."""
        rules = self.iptables.list_forwarding_rules()
        by_port: Dict[int, List[ForwardRule]] = OrderedDict()
        for rule in rules:
            by_port.setdefault(rule.relay_port, []).append(rule)
        duplicates = {port: claims for port, claims in by_port.items() if len(claims) > 1}
        for port, claims in duplicates.items():
            logging.warning(f"Relay port {port} is claimed by {len(claims)} rules: {', '.join(map(str, claims))}")
        return ConsistencyReport(
            redirect_count=len(rules),
            accept_count=self.iptables.count_accept_rules(),
            duplicates=duplicates,
        )

    @staticmethod
    def _reachable(host: str, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    def test_connectivity(self, relay_port: int, timeout: float = 3.0) -> ConnectivityReport:
        relay_port = validate_port(relay_port, "relay port")
        rule = self.iptables.find_rule(relay_port)
        if rule is None:
            raise RuleNotFoundError(relay_port)
        logging.info(f"Testing {self.config.relay_display}:{relay_port} -> {rule.target_host}:{rule.target_port}")
        return ConnectivityReport(
            rule=rule,
            relay_reachable=self._reachable("127.0.0.1", relay_port, timeout),
            target_reachable=self._reachable(rule.target_host, rule.target_port, timeout),
        )
