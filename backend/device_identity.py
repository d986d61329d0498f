"""
Stable per-installation device identifier.

The id is a coarse, non-secret label derived from environment signals. It is
used for watermarking and audit only, never as an authorization factor, and
it is always passed explicitly to the server; nothing reads it as ambient
state.
"""
import locale
import os
import platform
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from logging_config import get_logger

logger = get_logger(__name__)

EMPTY_DEVICE_ID = "00000000"
DEFAULT_STORE = Path.home() / ".lessonguard" / "device_id"


def derive_device_id(signals: Iterable[Optional[str]]) -> str:
    """32-bit rolling hash (h*31 + unit, signed wrap) over the joined signals.

    Units are UTF-16 code units, so ids match those produced by browser
    clients for the same signal string. Result is abs(h) as 8 hex digits.
    """
    joined = "|".join(s for s in signals if s)
    if not joined:
        return EMPTY_DEVICE_ID
    data = joined.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x").rjust(8, "0")


def _memory_gib() -> int:
    pages = os.sysconf("SC_PHYS_PAGES")
    page_size = os.sysconf("SC_PAGE_SIZE")
    return max(1, round(pages * page_size / 2**30))


def collect_environment_signals(user_agent: Optional[str] = None) -> list[str]:
    """Best-effort environment fingerprint. Any probe that fails is skipped."""
    probes = (
        ("user_agent", lambda: user_agent),
        ("platform",   lambda: platform.system()),
        ("machine",    lambda: platform.machine()),
        ("locale",     lambda: locale.getlocale()[0]),
        ("timezone",   lambda: datetime.now().astimezone().tzname()),
        ("cpu",        lambda: f"hc{os.cpu_count()}" if os.cpu_count() else None),
        ("memory",     lambda: f"dm{_memory_gib()}"),
    )
    signals: list[str] = []
    for name, probe in probes:
        try:
            value = probe()
        except (OSError, ValueError, AttributeError) as exc:
            logger.debug("device_signal_unavailable", extra={"signal": name, "error": str(exc)})
            continue
        if value:
            signals.append(str(value))
    return signals


class DeviceIdentity:
    """Get-or-create a device id persisted at *path*.

    Idempotent per installation: once written, the stored id is returned as-is
    even if the environment later changes. A store that cannot be read or
    written degrades to a freshly derived id rather than failing the caller.
    """

    def __init__(self, path: Optional[Path] = None, user_agent: Optional[str] = None):
        self.path = Path(path) if path else DEFAULT_STORE
        self.user_agent = user_agent

    def get_or_create(self) -> str:
        try:
            stored = self.path.read_text(encoding="utf-8").strip()
            if stored:
                return stored
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("device_id_read_failed", extra={"path": str(self.path), "error": str(exc)})

        device_id = derive_device_id(collect_environment_signals(self.user_agent))
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(device_id, encoding="utf-8")
        except OSError as exc:
            logger.warning("device_id_persist_failed", extra={"path": str(self.path), "error": str(exc)})
        return device_id
