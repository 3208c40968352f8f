"""
Device binding hash.

The hash correlates repeated check-ins from the same host; it is not an
authentication factor.
"""

import json
import locale
import os
import platform
import time
from typing import Any, Dict, Optional

import structlog

from .utils import hash_data

# Initialize structured logger
logger = structlog.get_logger(__name__)


def device_characteristics() -> Dict[str, Any]:
    """Collect the host characteristics that make up the device hash."""
    language, encoding = locale.getlocale()
    return {
        "platform": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "processor": platform.processor(),
        "cpu_count": os.cpu_count(),
        "language": language,
        "encoding": encoding,
        "timezone": list(time.tzname),
    }


def compute_device_hash(characteristics: Optional[Dict[str, Any]] = None) -> str:
    """
    SHA-256 over a canonical JSON of device characteristics.

    Parameters
    ----------
    characteristics : dict, optional
        Values to hash; defaults to ``device_characteristics()``.

    Returns
    -------
    str
        64 hexadecimal characters, stable for identical characteristics.
    """
    if characteristics is None:
        characteristics = device_characteristics()

    canonical = json.dumps(characteristics, sort_keys=True, separators=(",", ":"), default=str)
    device_hash = hash_data(canonical, algorithm="sha256")
    logger.debug("Device hash computed", device_hash=device_hash[:12])
    return device_hash
