# portrelay/core/errors.py

from typing import Optional

from portrelay.core.models import PortConflict, PortUsageDetail


class ForwardError(Exception):
    """Base class for errors raised before any rule is mutated."""
    pass


class InvalidInputError(ForwardError):
    pass


class InvalidPortError(InvalidInputError):
    def __init__(self, port, label: str = "port"):
        self.port = port
        super().__init__(f"Invalid {label}: {port} (must be an integer between 1 and 65535)")


class PortConflictError(ForwardError):
    """The relay port is taken by a listening process and/or an existing rule."""

    def __init__(self, port: int, conflict: PortConflict, usage: Optional[PortUsageDetail] = None):
        self.port = port
        self.conflict = conflict
        self.usage = usage
        super().__init__(f"Relay port {port} is not available ({conflict.value})")


class RuleNotFoundError(ForwardError):
    def __init__(self, relay_port: int):
        self.relay_port = relay_port
        super().__init__(f"No forwarding rule exists at relay port {relay_port}")


class NoFreePortError(ForwardError):
    def __init__(self, start: int, max_attempts: int):
        self.start = start
        self.max_attempts = max_attempts
        super().__init__(f"No available port found from {start} within {max_attempts} attempts")


def validate_port(value, label: str = "port") -> int:
    """Returns the port as int or raises InvalidPortError."""
    if isinstance(value, bool):
        raise InvalidPortError(value, label)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise InvalidPortError(value, label)
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise InvalidPortError(value, label)
    return value


class StaleChangeError(ForwardError):
    """The rule a proposal was based on changed before the proposal was applied."""
    pass
