# portrelay/services/allocator.py

import logging
from typing import Optional

from portrelay.core.errors import InvalidInputError, validate_port
from portrelay.services.availability import AvailabilityResolver

MAX_PORT = 65535
PROGRESS_INTERVAL = 100


class PortAllocator:
    def __init__(self, resolver: AvailabilityResolver, default_start: int = 40000, default_attempts: int = 1000):
        self.resolver = resolver
        self.default_start = default_start
        self.default_attempts = default_attempts

    def find_available_port(self, start: Optional[int] = None, max_attempts: Optional[int] = None) -> Optional[int]:
        """
        Scans upward from `start` and returns the first available port, or None
        once 65535 or the attempt budget is reached.
        """
        start = validate_port(self.default_start if start is None else start, "start port")
        max_attempts = self.default_attempts if max_attempts is None else max_attempts
        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise InvalidInputError(f"max_attempts must be a positive integer, got {max_attempts}")

        logging.info(f"Searching for an available port starting at {start}...")
        attempts = 0
        for port in range(start, MAX_PORT + 1):
            if attempts >= max_attempts:
                break
            attempts += 1
            if self.resolver.check_availability(port).is_available:
                logging.info(f"Found available port {port} after {attempts} attempt(s)")
                return port
            if attempts % PROGRESS_INTERVAL == 0:
                logging.debug(f"Checked {attempts} ports, currently at {port}")

        logging.warning(f"No available port found within {attempts} attempt(s) from {start}")
        return None
