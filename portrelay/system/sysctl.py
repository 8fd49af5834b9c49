# portrelay/system/sysctl.py

import logging
import subprocess
from pathlib import Path


class IPForwardingError(Exception):
    pass


class IPForwarding:
    """The kernel's IPv4 forwarding switch, plus its persisted sysctl.conf setting."""

    SETTING = "net.ipv4.ip_forward=1"

    def __init__(self, proc_path: str = "/proc/sys/net/ipv4/ip_forward", sysctl_conf: str = "/etc/sysctl.conf"):
        self.proc_path = Path(proc_path)
        self.sysctl_conf = Path(sysctl_conf)

    def is_enabled(self) -> bool:
        try:
            return self.proc_path.read_text().strip() == "1"
        except OSError as e:
            logging.warning(f"Cannot read {self.proc_path}: {e}")
            return False

    def _persist(self):
        try:
            content = self.sysctl_conf.read_text() if self.sysctl_conf.exists() else ""
            if self.SETTING in content.replace(" ", ""):
                return
            with open(self.sysctl_conf, "a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write(self.SETTING + "\n")
            logging.info(f"IP forwarding persisted in {self.sysctl_conf}")
        except OSError as e:
            raise IPForwardingError(f"Failed to persist IP forwarding in {self.sysctl_conf}: {e}") from e

    def ensure_enabled(self) -> bool:
        """Turns forwarding on only if it is off. Returns True if it had to be flipped."""
        if self.is_enabled():
            logging.debug("IP forwarding already enabled")
            return False

        logging.info("Enabling IP forwarding...")
        try:
            self.proc_path.write_text("1\n")
        except OSError as e:
            raise IPForwardingError(f"Failed to enable IP forwarding: {e}") from e
        self._persist()
        try:
            subprocess.run(["sysctl", "-p"], capture_output=True, text=True)
        except FileNotFoundError:
            logging.warning("The 'sysctl' command was not found; the setting applies after reboot.")
        return True
