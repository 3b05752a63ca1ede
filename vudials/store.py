"""Per-UID dial metadata that survives power cycles and re-provisioning."""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, Mapping, Optional

from .models import Calibration, EasingConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DialMetadata:
    name: str
    easing: EasingConfig = field(default_factory=EasingConfig)
    calibration: Calibration = field(default_factory=Calibration)


def default_name(uid: str) -> str:
    return f"Dial_{uid[:8]}"


class MetadataStore:
    """
    In-memory UID -> DialMetadata table.

    Configuration collaborators seed it from their own persistence (via the
    constructor or put()) and read it back after edits; the registry only ever
    looks entries up by UID.
    """

    def __init__(self, entries: Optional[Mapping[str, DialMetadata]] = None):
        self._entries: Dict[str, DialMetadata] = dict(entries or {})

    def __contains__(self, uid: str) -> bool:
        return uid in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, uid: str) -> Optional[DialMetadata]:
        return self._entries.get(uid)

    def get_or_create(self, uid: str) -> DialMetadata:
        """Look up metadata by UID, creating defaults for an unseen dial."""
        entry = self._entries.get(uid)
        if entry is None:
            entry = DialMetadata(name=default_name(uid))
            self._entries[uid] = entry
            logger.info(f"New dial {uid}, created default metadata ({entry.name})")
        return entry

    def put(self, uid: str, metadata: DialMetadata):
        self._entries[uid] = metadata

    def update(self, uid: str, **changes) -> DialMetadata:
        entry = replace(self.get_or_create(uid), **changes)
        self._entries[uid] = entry
        return entry

    def as_dict(self) -> Dict[str, DialMetadata]:
        return dict(self._entries)
