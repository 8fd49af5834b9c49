# portrelay/services/relay_service.py

import asyncio
import logging
from typing import Any, Callable

from portrelay.core.config import Config
from portrelay.services.allocator import PortAllocator
from portrelay.services.availability import AvailabilityResolver
from portrelay.services.reconciler import ForwardReconciler
from portrelay.services.reporting import ReportingService
from portrelay.system.iptables import IPTablesManager
from portrelay.system.scanner import HostPortScanner
from portrelay.system.sysctl import IPForwarding


class RelayService:
    """
    Wires the adapters and services for one relay host. The blocking core is
    reached from async callers through `run`, which lets one intent finish
    before the next one starts.
    """

    def __init__(
        self,
        config: Config,
        iptables_manager: IPTablesManager,
        host_port_scanner: HostPortScanner,
        ip_forwarding: IPForwarding,
    ):
        self.config = config
        self.iptables = iptables_manager
        self.scanner = host_port_scanner
        self.ip_forwarding = ip_forwarding
        self.resolver = AvailabilityResolver(self.scanner, self.iptables)
        self.allocator = PortAllocator(self.resolver, config.auto_port_start, config.max_attempts)
        self.reconciler = ForwardReconciler(config, self.iptables, self.resolver, self.allocator, self.ip_forwarding)
        self.reporting = ReportingService(config, self.iptables, self.scanner, self.resolver, self.ip_forwarding)
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Config) -> "RelayService":
        return cls(
            config,
            IPTablesManager(config.target_ip, config.iptables_bin),
            HostPortScanner(),
            IPForwarding(),
        )

    async def run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        async with self._lock:
            logging.debug(f"Running {getattr(func, '__name__', func)}")
            return await asyncio.to_thread(func, *args, **kwargs)
