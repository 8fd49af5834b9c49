# portrelay/core/config.py

import ipaddress
import logging
import os
import sys
from dataclasses import dataclass

# Setup logging to output to stdout.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)


def _int_from_env(name: str, default: int, minimum: int = 1, maximum: int = 65535) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
        if not minimum <= value <= maximum:
            raise ValueError(f"must be between {minimum} and {maximum}")
        return value
    except ValueError as e:
        logging.warning(f"{name} is invalid ('{raw}'): {e}. Using default {default}.")
        return default


@dataclass
class Config:
    """
    Centralized and validated configuration from environment variables.
    Only the target host is mandatory; everything else has a usable default.
    """
    target_ip: str
    target_name: str = "target"
    relay_ip: str = ""
    relay_name: str = "relay"
    rules_file: str = "/etc/iptables/rules.v4"
    backup_dir: str = "/root"
    auto_port_start: int = 40000
    max_attempts: int = 1000
    list_limit: int = 20
    iptables_bin: str = "iptables"
    api_host: str = "127.0.0.1"
    api_port: int = 5000
    admin_api_key: str = ""

    @classmethod
    def from_env(cls) -> "Config":
        """Factory method to create a configuration from environment variables."""
        target_ip = os.environ.get("RELAY_TARGET_IP", "").strip()
        if not target_ip:
            logging.critical("Critical Error: RELAY_TARGET_IP environment variable is not set!")
            sys.exit(1)
        try:
            ipaddress.IPv4Address(target_ip)
        except ValueError:
            logging.critical(f"Critical Error: RELAY_TARGET_IP '{target_ip}' is not a valid IPv4 address!")
            sys.exit(1)

        relay_ip = os.environ.get("RELAY_SERVER_IP", "").strip()
        if relay_ip:
            try:
                ipaddress.IPv4Address(relay_ip)
            except ValueError:
                logging.warning(f"RELAY_SERVER_IP '{relay_ip}' is not a valid IPv4 address. Ignoring it.")
                relay_ip = ""

        config = cls(
            target_ip=target_ip,
            target_name=os.environ.get("RELAY_TARGET_NAME", "target"),
            relay_ip=relay_ip,
            relay_name=os.environ.get("RELAY_SERVER_NAME", "relay"),
            rules_file=os.environ.get("RELAY_RULES_FILE", "/etc/iptables/rules.v4"),
            backup_dir=os.environ.get("RELAY_BACKUP_DIR", "/root"),
            auto_port_start=_int_from_env("RELAY_AUTO_PORT_START", 40000),
            max_attempts=_int_from_env("RELAY_MAX_ATTEMPTS", 1000, maximum=65535),
            list_limit=_int_from_env("RELAY_LIST_LIMIT", 20, maximum=10000),
            iptables_bin=os.environ.get("RELAY_IPTABLES", "iptables"),
            api_host=os.environ.get("RELAY_API_HOST", "127.0.0.1"),
            api_port=_int_from_env("RELAY_API_PORT", 5000),
            admin_api_key=os.environ.get("RELAY_ADMIN_API_KEY", ""),
        )
        logging.debug(
            f"Configuration loaded: Target={config.target_name} ({config.target_ip}), "
            f"AutoStart={config.auto_port_start}, Attempts={config.max_attempts}"
        )
        return config

    @property
    def relay_display(self) -> str:
        return self.relay_ip or self.relay_name
