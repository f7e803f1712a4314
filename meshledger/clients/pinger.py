"""ICMP echo client used by the liveness prober."""

import asyncio
import math
import re
from dataclasses import dataclass
from typing import List, Optional

from meshledger.config import settings
from meshledger.core.exceptions import ProbeError
from meshledger.utils.logger import get_logger
from meshledger.utils.telemetry import add_span_attributes, trace_operation

logger = get_logger(__name__)

# Matches "time=12.3 ms", "time=5ms" and Windows-style "time<1ms"
LATENCY_RE = re.compile(r"time[=<]\s*(\d+(?:\.\d+)?)\s*ms")


@dataclass
class PingResult:
    """Outcome of one echo request."""

    is_reachable: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None


def parse_latency(output: str) -> Optional[float]:
    """Extract the round-trip time in milliseconds from ping output."""
    match = LATENCY_RE.search(output)
    if match is None:
        return None
    return float(match.group(1))


class Pinger:
    """Send a single ICMP echo through the system ``ping`` binary."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or settings.PING_BINARY

    def build_command(self, ip_address: str, timeout: float) -> List[str]:
        wait = str(max(1, math.ceil(timeout)))
        return [self.binary, "-c", "1", "-W", wait, ip_address]

    async def _echo(self, ip_address: str, timeout: float) -> float:
        """
        Run one echo request.

        Returns:
            Round-trip latency in milliseconds (0.0 when not reported)

        Raises:
            ProbeError: If the host does not answer, the binary is missing,
                or the request exceeds ``timeout``
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(ip_address, timeout),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"Cannot run {self.binary}: {e}") from e

        try:
            # Grace second on top of ping's own wait
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout + 1
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProbeError(f"Ping to {ip_address} timed out after {timeout}s") from e

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or "host unreachable"
            raise ProbeError(f"Ping to {ip_address} failed: {detail}")

        latency = parse_latency(stdout.decode(errors="replace"))
        return latency if latency is not None else 0.0

    async def ping(self, ip_address: str, timeout: Optional[float] = None) -> PingResult:
        """
        Check reachability of an address. Never raises.

        Args:
            ip_address: Dotted-quad IPv4 address
            timeout: Seconds to wait (PROBE_TIMEOUT_SECONDS by default)

        Returns:
            PingResult with latency when reachable, or the error text
        """
        timeout = timeout or settings.PROBE_TIMEOUT_SECONDS

        with trace_operation(
            "client.pinger.ping", {"ip.address": ip_address, "probe.timeout": timeout}
        ):
            try:
                latency = await self._echo(ip_address, timeout)
            except ProbeError as e:
                logger.debug(
                    "Ping failed",
                    extra={"ip_address": ip_address, "error": e.detail},
                )
                add_span_attributes(**{"probe.reachable": False})
                return PingResult(is_reachable=False, error=e.detail)

            add_span_attributes(**{"probe.reachable": True, "probe.latency_ms": latency})
            return PingResult(is_reachable=True, latency_ms=latency)
