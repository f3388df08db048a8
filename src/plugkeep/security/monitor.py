"""Per-plugin resource accounting.

Provides:
- ViolationKind: Kinds of limits a plugin can breach
- ResourceMonitor: Thread-safe counters checked against a SecurityPolicy
- ProcessSampler: psutil-based sampling of a plugin-owned worker process
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    from plugkeep.security.policy import SecurityPolicy

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


class ViolationKind(str, Enum):
    """Kinds of limit a plugin can breach."""

    MEMORY = "memory"
    CPU_TIME = "cpu_time"
    NETWORK_REQUESTS = "network_requests"
    NETWORK_DESTINATION = "network_destination"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    NOT_ACTIVE = "not_active"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time view of a plugin's counters."""

    plugin: str
    memory_mb: float
    cpu_seconds: float
    network_requests: int
    window_started: float
    frozen: bool


@dataclass(frozen=True)
class ResourceSample:
    """A sampler reading: resident memory and cumulative CPU time."""

    memory_mb: float
    cpu_seconds: float


class ResourceMonitor:
    """Live resource counters for one active plugin.

    Counters never decrease inside a measurement window. The network request
    counter and the memory high-water mark restart when the window rolls
    over; CPU time is cumulative for the lifetime of the monitor. Only
    :meth:`reset` zeroes everything, and :meth:`freeze` stops all further
    writes once the plugin's sandbox scope is torn down.

    All methods are safe to call from multiple threads.
    """

    def __init__(
        self,
        plugin: str,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize monitor.

        Args:
            plugin: Plugin the counters belong to
            window_seconds: Length of the measurement window
            clock: Monotonic time source
        """
        self.plugin = plugin
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()

        self._memory_mb = 0.0
        self._last_memory_mb = 0.0
        self._cpu_seconds = 0.0
        self._network_requests = 0
        self._window_start = clock()
        self._frozen = False

    @property
    def frozen(self) -> bool:
        """Whether the monitor has stopped accepting writes."""
        return self._frozen

    @property
    def window_started(self) -> float:
        """Monotonic start time of the current measurement window."""
        with self._lock:
            self._roll_window()
            return self._window_start

    def _roll_window(self) -> None:
        """Start a new window if the current one expired. Caller holds the lock."""
        now = self._clock()
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._network_requests = 0
            self._memory_mb = self._last_memory_mb

    def _writable(self, what: str) -> bool:
        if self._frozen:
            logger.debug("Ignoring %s for '%s': monitor frozen", what, self.plugin)
            return False
        return True

    def record_memory(self, memory_mb: float) -> bool:
        """Record a memory reading; the window keeps its high-water mark.

        Returns:
            False if the monitor is frozen and the reading was dropped
        """
        with self._lock:
            if not self._writable("memory reading"):
                return False
            self._roll_window()
            self._last_memory_mb = memory_mb
            self._memory_mb = max(self._memory_mb, memory_mb)
            return True

    def add_cpu(self, seconds: float) -> bool:
        """Add CPU time attributed to the plugin."""
        if seconds <= 0:
            return True
        with self._lock:
            if not self._writable("cpu time"):
                return False
            self._cpu_seconds += seconds
            return True

    def observe_cpu_total(self, total_seconds: float) -> bool:
        """Raise cumulative CPU time to an absolute sampler reading."""
        with self._lock:
            if not self._writable("cpu reading"):
                return False
            self._cpu_seconds = max(self._cpu_seconds, total_seconds)
            return True

    def try_network_request(self, limit: int) -> bool:
        """Count an outbound request if the window still has room.

        Args:
            limit: Maximum requests allowed per window

        Returns:
            True if the request was counted, False if the limit is reached
            or the monitor is frozen
        """
        with self._lock:
            if not self._writable("network request"):
                return False
            self._roll_window()
            if self._network_requests >= limit:
                return False
            self._network_requests += 1
            return True

    def check(self, policy: SecurityPolicy) -> list[ViolationKind]:
        """Compare counters against a policy.

        Returns:
            One entry per breached limit kind
        """
        with self._lock:
            self._roll_window()
            breaches: list[ViolationKind] = []
            if self._memory_mb > policy.max_memory_mb:
                breaches.append(ViolationKind.MEMORY)
            if self._cpu_seconds > policy.max_cpu_seconds:
                breaches.append(ViolationKind.CPU_TIME)
            if self._network_requests > policy.max_network_requests_per_window:
                breaches.append(ViolationKind.NETWORK_REQUESTS)
            return breaches

    def observed(self, kind: ViolationKind) -> float:
        """Current value of the counter behind a violation kind."""
        with self._lock:
            if kind == ViolationKind.MEMORY:
                return self._memory_mb
            if kind == ViolationKind.CPU_TIME:
                return self._cpu_seconds
            if kind in (ViolationKind.NETWORK_REQUESTS, ViolationKind.NETWORK_DESTINATION):
                return float(self._network_requests)
            return 0.0

    def snapshot(self) -> ResourceSnapshot:
        """Get a consistent copy of all counters."""
        with self._lock:
            self._roll_window()
            return ResourceSnapshot(
                plugin=self.plugin,
                memory_mb=self._memory_mb,
                cpu_seconds=self._cpu_seconds,
                network_requests=self._network_requests,
                window_started=self._window_start,
                frozen=self._frozen,
            )

    def reset(self) -> None:
        """Zero all counters and reopen the monitor for writes."""
        with self._lock:
            self._memory_mb = 0.0
            self._last_memory_mb = 0.0
            self._cpu_seconds = 0.0
            self._network_requests = 0
            self._window_start = self._clock()
            self._frozen = False

    def freeze(self) -> None:
        """Stop accepting writes; counters stay readable."""
        with self._lock:
            self._frozen = True


class ProcessSampler:
    """Samples memory and CPU time of a plugin-owned worker process."""

    def __init__(self, pid: int):
        self.pid = pid
        self._process = psutil.Process(pid)

    def sample(self) -> ResourceSample | None:
        """Read current RSS and cumulative CPU time.

        Returns:
            Sample, or None if the process is gone or inaccessible
        """
        try:
            with self._process.oneshot():
                rss = self._process.memory_info().rss
                cpu = self._process.cpu_times()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Sampler for pid %d unavailable: %s", self.pid, e)
            return None

        return ResourceSample(memory_mb=rss / _MB, cpu_seconds=cpu.user + cpu.system)
