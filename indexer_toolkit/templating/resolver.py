"""
Host address resolution

Services running in containers reach the chain RPC endpoint (and other
host-side services) through the Docker host's address. Detection is
platform specific, so it is kept behind the IHostResolver protocol and can
be replaced by a fixed address in tests or via settings.
"""

import logging
import platform
import re
import socket
import subprocess
from collections.abc import Callable

from indexer_toolkit.core.exceptions import ConfigRenderError

logger = logging.getLogger(__name__)

_INET = re.compile(r"inet (\d{1,3}(?:\.\d{1,3}){3})")


class StaticHostResolver:
    """Always returns the same address"""

    def __init__(self, address: str):
        self.address = address

    def resolve(self) -> str:
        return self.address


class DockerHostResolver:
    """
    Detect the address containers use to reach the host

    Order of attempts (Linux):
    1. IPv4 address of the docker0 bridge
    2. Source address of the default outbound route
    Otherwise (and on Docker Desktop platforms) the fallback is used,
    "host.docker.internal" by default.

    Raises ConfigRenderError from resolve() when nothing is found and no
    fallback is configured.
    """

    def __init__(
        self,
        fallback: str | None = "host.docker.internal",
        bridge_interface: str = "docker0",
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.fallback = fallback
        self.bridge_interface = bridge_interface
        self._run = run

    def resolve(self) -> str:
        if platform.system() == "Linux":
            address = self._bridge_address() or self._outbound_address()
            if address:
                logger.info(f"Resolved host address: {address}")
                return address

        if self.fallback:
            logger.info(f"Using fallback host address: {self.fallback}")
            return self.fallback

        raise ConfigRenderError(
            "Unable to determine the host address",
            template="host_address",
            missing=["host_address"],
            recovery_hint="Set INDEXER_TOOLKIT_HOST_ADDRESS or pass --host-address",
        )

    def _bridge_address(self) -> str | None:
        try:
            result = self._run(
                ["ip", "-4", "addr", "show", self.bridge_interface],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=10,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"ip addr failed: {e}")
            return None

        if result.returncode != 0:
            return None
        match = _INET.search(result.stdout)
        return match.group(1) if match else None

    def _outbound_address(self) -> str | None:
        # UDP connect sends nothing; it only selects the outbound interface
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.connect(("10.255.255.255", 1))
                address = sock.getsockname()[0]
        except OSError as e:
            logger.debug(f"Outbound address detection failed: {e}")
            return None

        if address.startswith("127.") or address == "0.0.0.0":
            return None
        return address
