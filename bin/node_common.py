#!/usr/bin/env python3
"""
Node Census Common Module

Shared pieces for the census, cache and statistics-page jobs:
- Error taxonomy (FetchError, LoadTimeoutError, ExtractionIncompleteError)
- Graceful shutdown flag driven by SIGINT/SIGTERM
- RateLimiter: minimum inter-call spacing with an optional call budget
- write_artifact(): atomic whole-file JSON replace
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional


DEFAULT_OUTPUT_DIR = os.environ.get("OUTPUT_DIR", os.path.join("public", "data"))


# =============================================================================
# ERRORS
# =============================================================================

class CensusError(Exception):
    """Base class for fatal job errors."""


class FetchError(CensusError):
    """An external call returned a non-success status or was unreachable."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        status_str = f"HTTP {status}" if status is not None else "no response"
        super().__init__(f"Request failed ({status_str}) for {url}: {reason}".rstrip(": "))


class LoadTimeoutError(CensusError):
    """The rendered page never reached a ready state."""


class ExtractionIncompleteError(CensusError):
    """Mandatory fields were still unresolved after the full extraction cascade."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Could not extract mandatory fields: {', '.join(self.missing)}")


# =============================================================================
# GLOBALS AND SHUTDOWN HANDLING
# =============================================================================

shutdown_flag = False


def _signal_handler(sig, frame):
    global shutdown_flag
    print("\n[Shutdown] Interrupt received. Finishing current node and flushing...")
    shutdown_flag = True


def install_signal_handlers() -> None:
    """Route SIGINT/SIGTERM to the shutdown flag instead of killing the job."""
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def shutdown_requested() -> bool:
    return shutdown_flag


def reset_shutdown() -> None:
    global shutdown_flag
    shutdown_flag = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _monotonic() -> float:
    """Monotonic time for duration measurements."""
    return time.monotonic()


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a trailing Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def env_int(name: str, default: int) -> int:
    """Read an integer override from the environment, ignoring junk values."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[Config] Ignoring non-integer {name}={raw!r}; using {default}")
        return default


def load_json_config(path: Optional[str]) -> dict[str, Any]:
    """Load a JSON config file into a dict (empty when no path is given)."""
    if not path:
        return {}
    with Path(path).open("r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """
    Minimum-spacing limiter for one class of external calls.

    Non-accumulating like a leaky bucket: idle time never buys a burst.
    Waiters are released in arrival order because asyncio.Lock is FIFO.

    The optional max_calls budget is advisory. acquire() never refuses;
    callers check `exhausted` before asking.
    """

    def __init__(
        self,
        min_interval_ms: float,
        max_calls: Optional[int] = None,
        *,
        clock: Callable[[], float] = _monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._min_delay = max(0.0, float(min_interval_ms)) / 1000.0
        self._max_calls = max_calls
        self._clock = clock
        self._sleep = sleep
        self._last_release: Optional[float] = None
        self._calls = 0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until the next throttled call may be issued."""
        async with self._lock:
            if self._last_release is not None:
                elapsed = self._clock() - self._last_release
                if elapsed < self._min_delay:
                    await self._sleep(self._min_delay - elapsed)
            self._last_release = self._clock()
            self._calls += 1

    @property
    def min_interval_ms(self) -> float:
        return self._min_delay * 1000.0

    @property
    def calls(self) -> int:
        """Number of calls released so far."""
        return self._calls

    @property
    def remaining(self) -> Optional[int]:
        """Calls left in the budget, or None when unbounded."""
        if self._max_calls is None:
            return None
        return max(0, self._max_calls - self._calls)

    @property
    def exhausted(self) -> bool:
        return self._max_calls is not None and self._calls >= self._max_calls


# =============================================================================
# ARTIFACT WRITER
# =============================================================================

def write_artifact(path: Path | str, payload: dict[str, Any]) -> str:
    """
    Serialize payload to path as indented JSON, replacing the file atomically.

    The JSON is written to a temp file in the target directory and moved into
    place with os.replace, so readers never see a partial artifact.

    Returns:
        Absolute path of the written file
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{out.name}.", suffix=".tmp", dir=str(out.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_name, out)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
    return str(out.resolve())
