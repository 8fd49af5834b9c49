# portrelay/system/scanner.py

import logging
import subprocess
from typing import List, Optional, Tuple


class HostPortScanner:
    """
    Scanner for TCP ports listening on the relay host.
    Uses 'ss' and falls back to 'netstat'. When neither can be run every port
    looks unbound, which is logged but not treated as an error.
    """

    COMMANDS = (
        ["ss", "-ltnp"],        # Listen, TCP, Numeric, Processes
        ["netstat", "-ltnp"],
    )

    def _parse_listing(self, output: str) -> List[Tuple[int, str]]:
        """Parses ss/netstat output into (port, line) pairs. Local address is the 4th column in both."""
        listeners = []
        for line in output.strip().split('\n'):
            parts = line.split()
            if len(parts) >= 4:
                port_str = parts[3].rsplit(':', 1)[-1]
                if port_str.isdigit():
                    listeners.append((int(port_str), line.strip()))
        return listeners

    def _run_listing(self, command: List[str]) -> Optional[str]:
        try:
            process = subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                encoding="utf-8",
            )
            return process.stdout
        except FileNotFoundError:
            logging.warning(f"The '{command[0]}' command was not found.")
        except subprocess.CalledProcessError as e:
            logging.warning(f"Error executing '{' '.join(command)}': {(e.stderr or '').strip()}")
        return None

    def get_listening_sockets(self) -> List[Tuple[int, str]]:
        for command in self.COMMANDS:
            output = self._run_listing(command)
            if output is not None:
                return self._parse_listing(output)
        logging.warning("Could not enumerate listening sockets; assuming no port is bound.")
        return []

    def listeners(self, port: int) -> List[str]:
        return [line for bound_port, line in self.get_listening_sockets() if bound_port == port]

    def is_port_bound(self, port: int) -> bool:
        return bool(self.listeners(port))
