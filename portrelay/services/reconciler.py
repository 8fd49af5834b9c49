# portrelay/services/reconciler.py

import logging
import time
from typing import List, Optional

from portrelay.core.config import Config
from portrelay.core.errors import (
    ForwardError,
    InvalidInputError,
    NoFreePortError,
    PortConflictError,
    RuleNotFoundError,
    StaleChangeError,
    validate_port,
)
from portrelay.core.models import (
    ChangeDescription,
    ChangeKind,
    ChangeResult,
    ChangeStatus,
    ErrorKind,
    ForwardRule,
    RangeResult,
)
from portrelay.services.allocator import PortAllocator
from portrelay.services.availability import AvailabilityResolver
from portrelay.services.transaction import Step, Transaction, TransactionOutcome
from portrelay.system.iptables import IPTablesError, IPTablesManager
from portrelay.system.sysctl import IPForwarding

STEP_IP_FORWARD = "enable ip forwarding"
STEP_INSERT_REDIRECT = "insert redirect"
STEP_INSERT_ACCEPT = "insert accept"
STEP_MASQUERADE = "ensure masquerade"
STEP_DELETE_OLD_REDIRECT = "delete old redirect"
STEP_DELETE_OLD_ACCEPT = "delete old accept"
STEP_INSERT_NEW_REDIRECT = "insert new redirect"
STEP_INSERT_NEW_ACCEPT = "insert new accept"
STEP_DELETE_REDIRECT = "delete redirect"
STEP_DELETE_ACCEPT = "delete accept"


class ForwardReconciler:
    """
    Add/modify/remove forwarding rules against the live iptables table.

    Each intent is split into propose_* (read-only checks, returns a
    ChangeDescription) and apply_change (mutation). Mutations run as a
    Transaction of forward steps with compensations, and every successful
    mutation is re-verified by re-reading the table.
    """

    def __init__(
        self,
        config: Config,
        iptables: IPTablesManager,
        resolver: AvailabilityResolver,
        allocator: PortAllocator,
        ip_forwarding: IPForwarding,
        recheck_after: float = 0.25,
    ):
        self.config = config
        self.iptables = iptables
        self.resolver = resolver
        self.allocator = allocator
        self.ip_forwarding = ip_forwarding
        self.recheck_after = recheck_after

    @property
    def target_host(self) -> str:
        return self.config.target_ip

    def _current_rule(self, relay_port: int) -> ForwardRule:
        rule = self.iptables.find_rule(relay_port)
        if rule is None:
            raise RuleNotFoundError(relay_port)
        return rule

    def _require_available(self, port: int):
        conflict = self.resolver.check_availability(port)
        if not conflict.is_available:
            raise PortConflictError(port, conflict, self.resolver.usage_detail(port))

    # --- Proposals ---

    def propose_add(self, target_port: int, relay_port: Optional[int] = None, auto_assign: bool = False) -> ChangeDescription:
        target_port = validate_port(target_port, "target port")
        relay_port = target_port if relay_port is None else validate_port(relay_port, "relay port")
        requested = relay_port
        auto_assigned = False

        conflict = self.resolver.check_availability(relay_port)
        if not conflict.is_available:
            logging.warning(f"Relay port {relay_port} is not available ({conflict.value})")
            if not auto_assign:
                raise PortConflictError(relay_port, conflict, self.resolver.usage_detail(relay_port))
            found = self.allocator.find_available_port(relay_port)
            if found is None:
                raise NoFreePortError(relay_port, self.allocator.default_attempts)
            logging.info(f"Auto-assigned relay port {found} instead of {relay_port}")
            relay_port = found
            auto_assigned = True

        return ChangeDescription(
            kind=ChangeKind.ADD,
            relay_port=relay_port,
            target_port=target_port,
            target_host=self.target_host,
            auto_assigned=auto_assigned,
            requested_relay_port=requested,
        )

    def propose_modify(
        self,
        old_relay_port: int,
        new_target_port: Optional[int] = None,
        new_relay_port: Optional[int] = None,
        force: bool = False,
    ) -> ChangeDescription:
        old_relay_port = validate_port(old_relay_port, "relay port")
        if new_target_port is not None:
            new_target_port = validate_port(new_target_port, "new target port")
        if new_relay_port is not None:
            new_relay_port = validate_port(new_relay_port, "new relay port")

        current = self._current_rule(old_relay_port)
        change = ChangeDescription(
            kind=ChangeKind.MODIFY,
            relay_port=old_relay_port,
            target_port=current.target_port,
            target_host=self.target_host,
            new_relay_port=new_relay_port if new_relay_port is not None else old_relay_port,
            new_target_port=new_target_port if new_target_port is not None else current.target_port,
            force=force,
        )
        if change.is_noop:
            return change

        if change.final_relay_port != old_relay_port:
            conflict = self.resolver.check_availability(change.final_relay_port)
            if not conflict.is_available:
                if not force:
                    raise PortConflictError(
                        change.final_relay_port, conflict, self.resolver.usage_detail(change.final_relay_port)
                    )
                logging.warning(f"New relay port {change.final_relay_port} is {conflict.value}; forcing the change")
        change.checked_at = time.monotonic()
        return change

    def propose_remove(self, relay_port: int) -> ChangeDescription:
        relay_port = validate_port(relay_port, "relay port")
        current = self._current_rule(relay_port)
        return ChangeDescription(
            kind=ChangeKind.REMOVE,
            relay_port=relay_port,
            target_port=current.target_port,
            target_host=self.target_host,
        )

    # --- Application ---

    def _revalidate(self, change: ChangeDescription):
        """Re-runs the checks a proposal relied on, for proposals older than recheck_after."""
        logging.debug(f"Re-checking stale proposal: {change.summary()}")
        if change.kind is ChangeKind.ADD:
            self._require_available(change.relay_port)
        else:
            current = self._current_rule(change.relay_port)
            if current.target_port != change.target_port:
                raise StaleChangeError(
                    f"Relay port {change.relay_port} now forwards to {current.target_port}, "
                    f"not {change.target_port}; propose the change again"
                )
            if (
                change.kind is ChangeKind.MODIFY
                and change.final_relay_port != change.relay_port
                and not change.force
            ):
                self._require_available(change.final_relay_port)
        change.checked_at = time.monotonic()

    def apply_change(self, change: ChangeDescription, confirmed: bool = True) -> ChangeResult:
        # Proposals may come back over the API, not only from propose_*.
        validate_port(change.relay_port, "relay port")
        validate_port(change.target_port, "target port")
        validate_port(change.final_relay_port, "new relay port")
        validate_port(change.final_target_port, "new target port")
        if not confirmed:
            logging.info(f"Change cancelled: {change.summary()}")
            return ChangeResult(ChangeStatus.CANCELLED, change=change, message="Change cancelled")
        if change.is_noop:
            logging.warning("New configuration is identical to the current one, nothing to do")
            return ChangeResult(ChangeStatus.NOOP, change=change, message="Nothing to change")

        if time.monotonic() - change.checked_at > self.recheck_after:
            self._revalidate(change)

        if change.kind is ChangeKind.ADD:
            return self._apply_add(change)
        if change.kind is ChangeKind.MODIFY:
            return self._apply_modify(change)
        if change.kind is ChangeKind.REMOVE:
            return self._apply_remove(change)
        raise InvalidInputError(f"Unknown change kind: {change.kind}")

    def _failed(self, change: ChangeDescription, outcome: TransactionOutcome, error: ErrorKind) -> ChangeResult:
        status = ChangeStatus.PARTIAL_FAILURE if outcome.mutated else ChangeStatus.FAILURE
        message = f"{outcome.failed_step} failed: {outcome.error}"
        if outcome.mutated:
            message += "; rolled back" if outcome.compensated else "; rollback incomplete"
        return ChangeResult(
            status,
            change=change,
            error=error,
            completed_steps=outcome.completed_names,
            compensated=outcome.compensated,
            warnings=outcome.warnings,
            message=message,
        )

    def _verification_problem(self, expected: ForwardRule, replaced: Optional[ForwardRule]) -> Optional[str]:
        try:
            rules = self.iptables.list_forwarding_rules()
        except IPTablesError as e:
            logging.error(f"Could not re-read the rule table for verification: {e}")
            return f"Could not re-read the rule table to verify {expected}: {e}"
        if expected not in rules:
            return f"Rule {expected} was not found after a successful insert"
        if replaced is not None and replaced in rules:
            return f"Rule {replaced} is still present after it was replaced"
        return None

    def _verified(
        self,
        change: ChangeDescription,
        outcome: TransactionOutcome,
        expected: ForwardRule,
        replaced: Optional[ForwardRule] = None,
    ) -> ChangeResult:
        """Re-reads the table: `expected` must be there, and `replaced` (if given) must be gone."""
        problem = self._verification_problem(expected, replaced)
        if problem:
            logging.error(f"Verification failed: {problem}")
            return ChangeResult(
                ChangeStatus.FAILURE,
                change=change,
                error=ErrorKind.VERIFICATION_FAILED,
                completed_steps=outcome.completed_names,
                warnings=outcome.warnings,
                message=problem,
            )
        return ChangeResult(
            ChangeStatus.SUCCESS,
            change=change,
            completed_steps=outcome.completed_names,
            warnings=outcome.warnings,
            message=f"Forwarding {expected}",
        )

    def _apply_add(self, change: ChangeDescription) -> ChangeResult:
        relay, host, target = change.relay_port, change.target_host, change.target_port
        logging.info(f"Adding forward rule: {self.config.relay_display}:{relay} -> {host}:{target}")

        outcome = Transaction("add", [
            Step(STEP_IP_FORWARD, self.ip_forwarding.ensure_enabled),
            Step(
                STEP_INSERT_REDIRECT,
                lambda: self.iptables.insert_redirect_rule(relay, host, target),
                compensate=lambda: self.iptables.delete_redirect_rule(relay, host, target),
            ),
            Step(
                STEP_INSERT_ACCEPT,
                lambda: self.iptables.insert_accept_rule(target),
                compensate=lambda: self.iptables.delete_accept_rule(target),
            ),
            Step(STEP_MASQUERADE, self.iptables.ensure_masquerade_rule, critical=False),
        ]).run()

        if not outcome.succeeded:
            return self._failed(change, outcome, ErrorKind.ADAPTER_FAILURE)
        return self._verified(change, outcome, ForwardRule(relay, host, target))

    def _apply_modify(self, change: ChangeDescription) -> ChangeResult:
        host = change.target_host
        old_relay, old_target = change.relay_port, change.target_port
        new_relay, new_target = change.final_relay_port, change.final_target_port
        logging.info(f"Modifying forward rule: *:{old_relay} -> {host}:{old_target} into *:{new_relay} -> {host}:{new_target}")

        outcome = Transaction("modify", [
            Step(
                STEP_DELETE_OLD_REDIRECT,
                lambda: self.iptables.delete_redirect_rule(old_relay, host, old_target),
                compensate=lambda: self.iptables.insert_redirect_rule(old_relay, host, old_target),
            ),
            # The old accept rule may be shared with another mapping to the same target port.
            Step(
                STEP_DELETE_OLD_ACCEPT,
                lambda: self.iptables.delete_accept_rule(old_target),
                compensate=lambda: self.iptables.insert_accept_rule(old_target),
                critical=False,
            ),
            Step(
                STEP_INSERT_NEW_REDIRECT,
                lambda: self.iptables.insert_redirect_rule(new_relay, host, new_target),
                compensate=lambda: self.iptables.delete_redirect_rule(new_relay, host, new_target),
            ),
            Step(STEP_INSERT_NEW_ACCEPT, lambda: self.iptables.insert_accept_rule(new_target), critical=False),
        ]).run()

        if not outcome.succeeded:
            if STEP_DELETE_OLD_REDIRECT in outcome.compensation_failures:
                logging.critical(
                    f"Could not restore *:{old_relay} -> {host}:{old_target}; the mapping is now absent"
                )
                result = self._failed(change, outcome, ErrorKind.COMPENSATION_FAILED)
                result.message += f"; mapping for relay port {old_relay} is absent"
                return result
            return self._failed(change, outcome, ErrorKind.ADAPTER_FAILURE)
        replaced = None
        if (old_relay, old_target) != (new_relay, new_target):
            replaced = ForwardRule(old_relay, host, old_target)
        return self._verified(change, outcome, ForwardRule(new_relay, host, new_target), replaced)

    def _apply_remove(self, change: ChangeDescription) -> ChangeResult:
        relay, host, target = change.relay_port, change.target_host, change.target_port
        logging.info(f"Removing forward rule: *:{relay} -> {host}:{target}")

        outcome = Transaction("remove", [
            Step(STEP_DELETE_REDIRECT, lambda: self.iptables.delete_redirect_rule(relay, host, target), critical=False),
            Step(STEP_DELETE_ACCEPT, lambda: self.iptables.delete_accept_rule(target), critical=False),
        ]).run()

        removed = ForwardRule(relay, host, target)
        try:
            remaining: List[ForwardRule] = [r for r in self.iptables.list_forwarding_rules() if r.relay_port == relay]
        except IPTablesError as e:
            logging.error(f"Could not re-read the rule table for verification: {e}")
            return ChangeResult(
                ChangeStatus.FAILURE,
                change=change,
                error=ErrorKind.VERIFICATION_FAILED,
                completed_steps=outcome.completed_names,
                warnings=outcome.warnings,
                message=f"Could not verify removal of {removed}: {e}",
            )

        if removed in remaining:
            logging.error(f"Removal failed: {removed} is still present")
            return ChangeResult(
                ChangeStatus.FAILURE,
                change=change,
                error=ErrorKind.REMOVAL_FAILED,
                completed_steps=outcome.completed_names,
                warnings=outcome.warnings,
                message=f"Rule {removed} is still present after removal",
            )
        warnings = list(outcome.warnings)
        if remaining:
            warnings.append(f"relay port {relay} is still claimed by {len(remaining)} other rule(s)")
        return ChangeResult(
            ChangeStatus.SUCCESS,
            change=change,
            completed_steps=outcome.completed_names,
            warnings=warnings,
            message=f"Removed {removed}",
        )

    # --- Convenience intents ---

    def add(self, target_port: int, relay_port: Optional[int] = None, auto_assign: bool = False) -> ChangeResult:
        return self.apply_change(self.propose_add(target_port, relay_port, auto_assign))

    def modify(
        self,
        old_relay_port: int,
        new_target_port: Optional[int] = None,
        new_relay_port: Optional[int] = None,
        force: bool = False,
    ) -> ChangeResult:
        return self.apply_change(self.propose_modify(old_relay_port, new_target_port, new_relay_port, force))

    def remove(self, relay_port: int) -> ChangeResult:
        return self.apply_change(self.propose_remove(relay_port))

    def add_range(self, start: int, end: int) -> RangeResult:
        start = validate_port(start, "start port")
        end = validate_port(end, "end port")
        if start > end:
            raise InvalidInputError(f"Start port {start} is greater than end port {end}")

        result = RangeResult(start=start, end=end)
        logging.info(f"Adding port range {start}-{end} ({result.requested} ports)")
        for port in range(start, end + 1):
            try:
                change_result = self.add(port, port, auto_assign=False)
            except (ForwardError, IPTablesError) as e:
                result.failed[port] = str(e)
                continue
            if change_result.ok:
                result.succeeded.append(port)
            else:
                result.failed[port] = change_result.message
        logging.info(f"Range done: {len(result.succeeded)} succeeded, {len(result.failed)} failed")
        return result
