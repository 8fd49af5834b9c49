# portrelay/services/availability.py

import logging

from portrelay.core.errors import validate_port
from portrelay.core.models import PortConflict, PortUsageDetail
from portrelay.system.iptables import IPTablesManager
from portrelay.system.scanner import HostPortScanner


class AvailabilityResolver:
    """Classifies a candidate relay port from live listener and rule table state. Never caches."""

    def __init__(self, scanner: HostPortScanner, iptables: IPTablesManager):
        self.scanner = scanner
        self.iptables = iptables

    def check_availability(self, port: int) -> PortConflict:
        port = validate_port(port)
        conflict = PortConflict.classify(
            system_bound=self.scanner.is_port_bound(port),
            forward_bound=self.iptables.rule_exists(port),
        )
        logging.debug(f"Port {port}: {conflict.value}")
        return conflict

    def usage_detail(self, port: int) -> PortUsageDetail:
        port = validate_port(port)
        return PortUsageDetail(
            port=port,
            listeners=self.scanner.listeners(port),
            rules=self.iptables.rule_lines(port),
        )
