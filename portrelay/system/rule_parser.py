# portrelay/system/rule_parser.py

import re
from typing import List, Optional

from portrelay.core.models import ForwardRule


class RuleParser:
    """
    Turns `iptables -t nat -L PREROUTING -n` output into ForwardRule records.

    A matching line looks like (optionally prefixed by a line number):
        DNAT  tcp  --  0.0.0.0/0  0.0.0.0/0  tcp dpt:3389 to:203.0.113.9:3389
    Only redirects to the configured target host are returned.
    """

    VERSION = "iptables-list-v1"

    def __init__(self, target_host: str):
        self.target_host = target_host
        self._regex = re.compile(
            r"\bDNAT\s+(?:tcp|6)\b.*\bdpt:(\d+)\b.*\bto:" + re.escape(target_host) + r":(\d+)(?!\d)"
        )
        self._dport_regex = re.compile(r"\bdpt:(\d+)(?!\d)")

    def parse_line(self, line: str) -> Optional[ForwardRule]:
        match = self._regex.search(line)
        if not match:
            return None
        relay_port, target_port = int(match.group(1)), int(match.group(2))
        if not (1 <= relay_port <= 65535 and 1 <= target_port <= 65535):
            return None
        return ForwardRule(relay_port=relay_port, target_host=self.target_host, target_port=target_port)

    def parse_dump(self, output: str) -> List[ForwardRule]:
        rules = []
        for line in output.splitlines():
            rule = self.parse_line(line)
            if rule is not None:
                rules.append(rule)
        return rules

    def destination_port(self, line: str) -> Optional[int]:
        """Destination port of any listing line, whatever its target."""
        match = self._dport_regex.search(line)
        return int(match.group(1)) if match else None
