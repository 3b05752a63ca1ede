"""
Periodic identity reconciliation.

Runtime indices move when dials lose power, so a UID can silently end up
pointing at another dial (or at nothing). When enabled, the reconciler re-reads
the UID at each cached index and reruns discovery on the first mismatch, or
when a dial has been silent for too long.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import anyio

from .errors import NotConnectedError, UnknownDeviceError
from .models import EventKind

if TYPE_CHECKING:
    from .controller import HubController

logger = logging.getLogger(__name__)


class Reconciler:
    """Verify cached UID -> index mappings every `interval` seconds."""

    def __init__(self, controller: "HubController", interval: float, silence: Optional[float] = None):
        """
        Args:
            controller: Controller whose registry is checked
            interval: Seconds between checks
            silence: Rediscover when a dial has not answered for this long
                (None: only UID mismatches trigger discovery)
        """
        self.controller = controller
        self.interval = interval
        self.silence = silence
        self.checks = 0
        self.rediscoveries = 0

    async def check_once(self) -> bool:
        """
        Run one verification pass.

        Returns:
            True if discovery was triggered
        """
        controller = self.controller
        if not controller.connected:
            return False
        self.checks += 1

        reason = None
        now = datetime.now(timezone.utc)
        for uid, dial in controller.dials().items():
            if self.silence is not None and (now - dial.last_communication).total_seconds() > self.silence:
                reason = f"{uid} silent for more than {self.silence:.0f}s"
                break
            try:
                matches = await controller.registry.verify(uid)
            except UnknownDeviceError:
                # Dropped by a concurrent rescan
                continue
            except NotConnectedError as e:
                logger.warning(f"Reconciliation aborted: {e}")
                return False
            if not matches:
                reason = f"{uid} no longer answers at index {dial.index}"
                break
            controller.registry.update(uid)

        if reason is None:
            return False

        logger.info(f"Reconciling: {reason}")
        self.rediscoveries += 1
        result = await controller.discover()
        controller._emit(EventKind.RECONCILED, detail=f"{reason} ({result.code.value})")
        return True

    async def run(self):
        """Check forever; cancelled with the controller's task group."""
        logger.debug(f"Reconciler started (every {self.interval}s)")
        while True:
            await anyio.sleep(self.interval)
            await self.check_once()
