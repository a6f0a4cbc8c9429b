"""
Profile catalog and the device-hint selection heuristic.

select_optimal() is a fixed decision table: the first matching row wins and
the result is always a catalog name.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from config import DEFAULT_PROFILE
from engine.enums import ConnectionType
from engine.models import TranscodeProfile
from engine.schemas import DeviceHints

logger = logging.getLogger(__name__)

FALLBACK_PROFILE = "standard"

BUILTIN_PROFILES = (
    TranscodeProfile("mobile-low", 480, 360, 500, 64),
    TranscodeProfile("mobile-high", 720, 480, 1500, 128),
    TranscodeProfile("standard", 1280, 720, 2500, 192),
    TranscodeProfile("high", 1920, 1080, 5000, 256),
    TranscodeProfile("ultra", 3840, 2160, 15000, 320),
    TranscodeProfile("audio-only", 0, 0, 0, 192, video_codec=None),
)

# Bandwidth thresholds (kbps)
LOW_BANDWIDTH_KBPS = 1500
MEDIUM_BANDWIDTH_KBPS = 5000
HIGH_BANDWIDTH_KBPS = 10000
ULTRA_BANDWIDTH_KBPS = 20000

_SLOW_CONNECTIONS = frozenset([ConnectionType.SLOW_2G, ConnectionType.CELLULAR_2G, ConnectionType.CELLULAR_3G])
_FAST_CONNECTIONS = frozenset([ConnectionType.CELLULAR_4G, ConnectionType.WIFI])

_MOBILE_UA = re.compile(r"mobile|android|iphone|ipad|ipod", re.IGNORECASE)
_TABLET_UA = re.compile(r"ipad|android(?!.*mobile)", re.IGNORECASE)


class ProfileCatalog:
    """Immutable set of named encoding presets."""

    def __init__(self, profiles: Iterable[TranscodeProfile] = BUILTIN_PROFILES, default: str = DEFAULT_PROFILE):
        self._profiles: Dict[str, TranscodeProfile] = {p.name: p for p in profiles}
        if FALLBACK_PROFILE not in self._profiles:
            raise ValueError(f"Profile catalog must contain '{FALLBACK_PROFILE}'")
        if default not in self._profiles:
            logger.warning(f"Default profile '{default}' is not in the catalog, using '{FALLBACK_PROFILE}'")
            default = FALLBACK_PROFILE
        self.default = default

    def __contains__(self, name: str) -> bool:
        return name in self._profiles

    def lookup(self, name: Optional[str]) -> TranscodeProfile:
        """Profile by name; unknown or empty names resolve to the default profile."""
        profile = self._profiles.get(name or "")
        if profile is None:
            if name:
                logger.info(f"Unknown profile '{name}', using '{self.default}'")
            return self._profiles[self.default]
        return profile

    def list_profiles(self) -> List[TranscodeProfile]:
        return list(self._profiles.values())

    def select_optimal(self, hints: DeviceHints) -> str:
        name = select_profile_name(hints)
        # The table only names built-in profiles; a trimmed catalog falls back
        return name if name in self._profiles else FALLBACK_PROFILE


def select_profile_name(hints: DeviceHints) -> str:
    """Decision table mapping device hints to a profile name."""
    bandwidth = hints.bandwidth_kbps or 0
    connection = hints.connection_type
    known_bandwidth = bandwidth > 0

    if hints.is_mobile and (
        (known_bandwidth and bandwidth < LOW_BANDWIDTH_KBPS) or connection in _SLOW_CONNECTIONS
    ):
        return "mobile-low"

    if (hints.is_mobile or hints.is_tablet) and (
        LOW_BANDWIDTH_KBPS <= bandwidth < MEDIUM_BANDWIDTH_KBPS or connection in _FAST_CONNECTIONS
    ):
        return "mobile-high"

    if not hints.is_mobile:
        if bandwidth >= ULTRA_BANDWIDTH_KBPS:
            return "ultra"
        if bandwidth >= HIGH_BANDWIDTH_KBPS:
            return "high"

    if not hints.is_mobile and not hints.is_tablet and connection == ConnectionType.WIFI:
        return "standard"

    return "standard"


def hints_from_user_agent(
    user_agent: Optional[str],
    connection_type: Optional[str] = None,
    bandwidth_kbps: Optional[float] = None,
) -> DeviceHints:
    """Build DeviceHints from a User-Agent header and optional network hints."""
    user_agent = user_agent or ""
    return DeviceHints(
        is_mobile=bool(_MOBILE_UA.search(user_agent)),
        is_tablet=bool(_TABLET_UA.search(user_agent)),
        connection_type=connection_type,
        bandwidth_kbps=bandwidth_kbps,
    )
