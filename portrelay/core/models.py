# portrelay/core/models.py

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ForwardRule:
    """One redirect mapping. Identity is the relay port."""
    relay_port: int
    target_host: str
    target_port: int

    def __str__(self) -> str:
        return f"*:{self.relay_port} -> {self.target_host}:{self.target_port}"


class PortConflict(str, Enum):
    AVAILABLE = "available"
    SYSTEM_BOUND = "system_bound"
    FORWARD_BOUND = "forward_bound"
    BOTH = "both"

    @classmethod
    def classify(cls, system_bound: bool, forward_bound: bool) -> "PortConflict":
        if system_bound and forward_bound:
            return cls.BOTH
        if system_bound:
            return cls.SYSTEM_BOUND
        if forward_bound:
            return cls.FORWARD_BOUND
        return cls.AVAILABLE

    @property
    def is_available(self) -> bool:
        return self is PortConflict.AVAILABLE


@dataclass
class PortUsageDetail:
    port: int
    listeners: List[str] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)

    @property
    def in_use(self) -> bool:
        return bool(self.listeners or self.rules)


class ChangeKind(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class ChangeStatus(str, Enum):
    SUCCESS = "success"
    NOOP = "noop"
    CANCELLED = "cancelled"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class ErrorKind(str, Enum):
    ADAPTER_FAILURE = "adapter_failure"
    VERIFICATION_FAILED = "verification_failed"
    COMPENSATION_FAILED = "compensation_failed"
    REMOVAL_FAILED = "removal_failed"


@dataclass
class ChangeDescription:
    """
    A proposed change, produced without touching the rule table.
    For add, relay_port/target_port describe the new rule. For modify and remove
    they describe the current rule; new_* describe the replacement.
    """
    kind: ChangeKind
    relay_port: int
    target_port: int
    target_host: str
    new_relay_port: Optional[int] = None
    new_target_port: Optional[int] = None
    force: bool = False
    auto_assigned: bool = False
    requested_relay_port: Optional[int] = None
    checked_at: float = field(default_factory=time.monotonic)

    @property
    def final_relay_port(self) -> int:
        return self.new_relay_port if self.new_relay_port is not None else self.relay_port

    @property
    def final_target_port(self) -> int:
        return self.new_target_port if self.new_target_port is not None else self.target_port

    @property
    def is_noop(self) -> bool:
        return (
            self.kind is ChangeKind.MODIFY
            and self.final_relay_port == self.relay_port
            and self.final_target_port == self.target_port
        )

    def summary(self) -> str:
        if self.kind is ChangeKind.ADD:
            return f"add *:{self.relay_port} -> {self.target_host}:{self.target_port}"
        if self.kind is ChangeKind.REMOVE:
            return f"remove *:{self.relay_port} -> {self.target_host}:{self.target_port}"
        return (
            f"modify *:{self.relay_port} -> {self.target_host}:{self.target_port} "
            f"into *:{self.final_relay_port} -> {self.target_host}:{self.final_target_port}"
        )


@dataclass
class ChangeResult:
    status: ChangeStatus
    change: Optional[ChangeDescription] = None
    error: Optional[ErrorKind] = None
    completed_steps: List[str] = field(default_factory=list)
    compensated: bool = False
    warnings: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ChangeStatus.SUCCESS, ChangeStatus.NOOP, ChangeStatus.CANCELLED)


@dataclass
class RangeResult:
    start: int
    end: int
    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def requested(self) -> int:
        return self.end - self.start + 1


@dataclass
class ForwardEntry:
    relay_port: int
    target_port: int
    listening: bool


@dataclass
class ForwardListing:
    entries: List[ForwardEntry]
    total: int

    @property
    def remaining(self) -> int:
        return max(self.total - len(self.entries), 0)


@dataclass
class PortDescription:
    port: int
    rule: Optional[ForwardRule]
    usage: PortUsageDetail
    conflict: PortConflict


@dataclass
class SystemStatus:
    ip_forward_enabled: bool
    rule_count: int
    well_known_ports: Dict[int, PortConflict]
    recent_rules: List[ForwardRule]


@dataclass
class ConsistencyReport:
    redirect_count: int
    accept_count: int
    duplicates: Dict[int, List[ForwardRule]]

    @property
    def duplicate_count(self) -> int:
        return sum(len(rules) - 1 for rules in self.duplicates.values())


@dataclass
class ConnectivityReport:
    rule: ForwardRule
    relay_reachable: bool
    target_reachable: bool
