# portrelay/system/iptables.py

import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from portrelay.core.models import ForwardRule
from portrelay.system.rule_parser import RuleParser


class IPTablesError(Exception):
    """Custom exception for errors during iptables command execution."""

    def __init__(self, message: str, command: Optional[List[str]] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class IPTablesManager:
    """
    Encapsulates all interactions with iptables for one target host.
    Every query re-reads the live table; every insert/delete is a single iptables call.
    Nothing is batched or rolled back here, callers own cross-call consistency.
    """

    def __init__(self, target_host: str, iptables_bin: str = "iptables", parser: Optional[RuleParser] = None):
        self.target_host = target_host
        self.iptables_bin = iptables_bin
        self.parser = parser or RuleParser(target_host)

    def _execute(self, command: List[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                command,
                input=stdin,
                capture_output=True,
                text=True,
                encoding="utf-8",
            )
        except FileNotFoundError as e:
            error_message = f"Command not found: '{command[0]}'"
            logging.error(error_message)
            raise IPTablesError(error_message, command) from e
        except OSError as e:
            error_message = f"Failed to execute '{command[0]}': {e}"
            logging.error(error_message)
            raise IPTablesError(error_message, command) from e

    def _run_command(self, command: List[str], stdin: Optional[str] = None, quiet: bool = False) -> str:
        """Private helper to execute a command, raising IPTablesError on a non-zero exit."""
        process = self._execute(command, stdin)
        joined = " ".join(command)
        if process.returncode != 0:
            stderr = (process.stderr or "").strip()
            error_message = f"Error executing '{joined}'. stderr: {stderr}"
            logging.error(error_message)
            raise IPTablesError(error_message, command, stderr)
        if quiet:
            logging.debug(f"Command executed successfully: {joined}")
        else:
            logging.info(f"Command executed successfully: {joined}")
        return process.stdout

    def _rule_present(self, table: str, chain: str, spec: List[str]) -> bool:
        process = self._execute([self.iptables_bin, "-t", table, "-C", chain] + spec)
        return process.returncode == 0

    # --- Rule specs ---

    @staticmethod
    def _redirect_spec(relay_port: int, target_host: str, target_port: int) -> List[str]:
        return [
            "-p", "tcp", "--dport", str(relay_port),
            "-j", "DNAT", "--to-destination", f"{target_host}:{target_port}",
        ]

    @staticmethod
    def _accept_spec(target_port: int) -> List[str]:
        return ["-p", "tcp", "--dport", str(target_port), "-j", "ACCEPT"]

    MASQUERADE_SPEC = ["-j", "MASQUERADE"]

    # --- Queries ---

    def _list_prerouting(self, line_numbers: bool = False) -> str:
        command = [self.iptables_bin, "-t", "nat", "-L", "PREROUTING", "-n"]
        if line_numbers:
            command.append("--line-numbers")
        return self._run_command(command, quiet=True)

    def list_forwarding_rules(self) -> List[ForwardRule]:
        """Redirects to the target host, in table order (oldest first)."""
        return self.parser.parse_dump(self._list_prerouting())

    def find_rule(self, relay_port: int) -> Optional[ForwardRule]:
        for rule in self.list_forwarding_rules():
            if rule.relay_port == relay_port:
                return rule
        return None

    def rule_exists(self, relay_port: int) -> bool:
        return self.find_rule(relay_port) is not None

    def rule_lines(self, port: int) -> List[str]:
        """Numbered PREROUTING lines whose destination port is `port`, whatever their target."""
        output = self._list_prerouting(line_numbers=True)
        return [line for line in output.splitlines() if self.parser.destination_port(line) == port]

    def count_accept_rules(self) -> int:
        output = self._run_command([self.iptables_bin, "-L", "FORWARD", "-n"], quiet=True)
        return sum(1 for line in output.splitlines() if line.split()[:1] == ["ACCEPT"])

    # --- Mutations ---

    def insert_redirect_rule(self, relay_port: int, target_host: str, target_port: int):
        self._run_command(
            [self.iptables_bin, "-t", "nat", "-A", "PREROUTING"]
            + self._redirect_spec(relay_port, target_host, target_port)
        )
        logging.info(f"Redirect added: *:{relay_port} -> {target_host}:{target_port}")

    def delete_redirect_rule(self, relay_port: int, target_host: str, target_port: int):
        self._run_command(
            [self.iptables_bin, "-t", "nat", "-D", "PREROUTING"]
            + self._redirect_spec(relay_port, target_host, target_port)
        )
        logging.info(f"Redirect removed: *:{relay_port} -> {target_host}:{target_port}")

    def insert_accept_rule(self, target_port: int):
        self._run_command([self.iptables_bin, "-A", "FORWARD"] + self._accept_spec(target_port))

    def delete_accept_rule(self, target_port: int):
        self._run_command([self.iptables_bin, "-D", "FORWARD"] + self._accept_spec(target_port))

    def ensure_masquerade_rule(self) -> bool:
        """Appends the global MASQUERADE rule unless it is already there. Returns True if it was added."""
        if self._rule_present("nat", "POSTROUTING", self.MASQUERADE_SPEC):
            return False
        self._run_command([self.iptables_bin, "-t", "nat", "-A", "POSTROUTING"] + self.MASQUERADE_SPEC)
        return True

    # --- Persistence ---

    def _dump(self) -> str:
        return self._run_command([f"{self.iptables_bin}-save"], quiet=True)

    def save_rules(self, path: str) -> Path:
        target = Path(path)
        content = self._dump()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise IPTablesError(f"Failed to write rules to {target}: {e}") from e
        logging.info(f"Rules saved to {target}")
        return target

    def restore_rules(self, path: str):
        source = Path(path)
        if not source.is_file():
            raise IPTablesError(f"Rules file {source} does not exist")
        self._run_command([f"{self.iptables_bin}-restore"], stdin=source.read_text(encoding="utf-8"))
        logging.info(f"Rules restored from {source}")

    def backup_rules(self, directory: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.save_rules(str(Path(directory) / f"iptables_backup_{stamp}.txt"))
