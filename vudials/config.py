"""
Hub timing and retry settings.

Write commands need a bus write plus acknowledge on the dial, which is much
slower than a read, so the write timeout defaults to five times the read
timeout. Image chunks and the display refresh get their own, longer limits.
"""

from dataclasses import dataclass
from typing import Optional

from .commands import LatencyClass

DEFAULT_BAUD = 115200


@dataclass
class HubConfig:
    """Settings passed to HubController / DeviceRegistry. All times in seconds."""
    baud: int = DEFAULT_BAUD

    read_timeout: float = 1.0
    write_timeout: float = 5.0
    discovery_timeout: float = 3.0
    display_chunk_timeout: float = 2.5
    display_refresh_timeout: float = 4.0
    handshake_timeout: float = 0.5

    provision_attempts: int = 3
    provision_delay: float = 0.2

    chunk_delay: float = 0.2
    display_settle_delay: float = 0.2
    image_max_attempts: int = 3
    drain_idle_interval: float = 0.5

    # Optional identity reconciliation; None disables it
    reconcile_interval: Optional[float] = None
    reconcile_silence: float = 300.0

    poll_interval: float = 0.005

    def timeout_for(self, latency: LatencyClass) -> float:
        return {
            LatencyClass.READ: self.read_timeout,
            LatencyClass.WRITE: self.write_timeout,
            LatencyClass.DISCOVERY: self.discovery_timeout,
            LatencyClass.DISPLAY_CHUNK: self.display_chunk_timeout,
            LatencyClass.DISPLAY_REFRESH: self.display_refresh_timeout,
        }[latency]
