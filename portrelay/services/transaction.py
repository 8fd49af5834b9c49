# portrelay/services/transaction.py

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple, Type

from portrelay.system.iptables import IPTablesError
from portrelay.system.sysctl import IPForwardingError

EXTERNAL_ERRORS: Tuple[Type[Exception], ...] = (IPTablesError, IPForwardingError)


@dataclass
class Step:
    """
    One external call. A critical step failure aborts the transaction and undoes
    the completed steps; a non-critical failure is only recorded as a warning.
    """
    name: str
    action: Callable[[], Any]
    compensate: Optional[Callable[[], Any]] = None
    critical: bool = True


@dataclass
class TransactionOutcome:
    completed: List[Step] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[Exception] = None
    compensation_failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None

    @property
    def completed_names(self) -> List[str]:
        return [step.name for step in self.completed]

    @property
    def mutated(self) -> bool:
        """Whether a completed step left something that needed undoing."""
        return any(step.compensate is not None for step in self.completed)

    @property
    def compensated(self) -> bool:
        return not self.succeeded and not self.compensation_failures


class Transaction:
    def __init__(self, name: str, steps: Sequence[Step], errors: Tuple[Type[Exception], ...] = EXTERNAL_ERRORS):
        self.name = name
        self.steps = list(steps)
        self.errors = errors

    def run(self) -> TransactionOutcome:
        outcome = TransactionOutcome()
        for step in self.steps:
            try:
                step.action()
            except self.errors as e:
                if not step.critical:
                    logging.warning(f"[{self.name}] {step.name} failed, continuing: {e}")
                    outcome.warnings.append(f"{step.name}: {e}")
                    continue
                logging.error(f"[{self.name}] {step.name} failed: {e}")
                outcome.failed_step = step.name
                outcome.error = e
                self._compensate(outcome)
                return outcome
            outcome.completed.append(step)
        return outcome

    def _compensate(self, outcome: TransactionOutcome):
        for step in reversed(outcome.completed):
            if step.compensate is None:
                continue
            logging.warning(f"[{self.name}] undoing {step.name}...")
            try:
                step.compensate()
            except self.errors as e:
                logging.error(f"[{self.name}] could not undo {step.name}: {e}")
                outcome.compensation_failures.append(step.name)
