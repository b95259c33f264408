"""
ARTrack Visibility - Debounced Marker Show/Hide

Detection is noisy: a marker that is clearly in view can still be missed
for a frame or two. The tracker only hides content after the marker has
been unseen for longer than ``deactivation_time``.

State Machine:
┌──────────┐   on_detected()    ┌──────────┐
│ INACTIVE │ ─────────────────→ │  ACTIVE  │
│ (hidden) │                    │ (shown)  │
└──────────┘ ←───────────────── └──────────┘
               tick(now) with
     now - last_seen_at > deactivation_time

Detections never deactivate; only a tick can.
"""

import time
import logging
from enum import Enum
from typing import Optional, Callable


class MarkerStatus(Enum):
    """Visibility state of a marker's content."""
    INACTIVE = "inactive"  # Hidden (initial)
    ACTIVE = "active"      # Shown


class VisibilityTracker:
    """
    Per-marker visibility state machine.

    Usage:
        tracker = VisibilityTracker(on_show=show, on_hide=hide)
        tracker.on_detected()       # from the detection callback
        tracker.tick()              # once per render tick
    """

    DEFAULT_DEACTIVATION_TIME = 0.25  # seconds

    def __init__(
        self,
        deactivation_time: float = DEFAULT_DEACTIVATION_TIME,
        on_show: Optional[Callable[[], None]] = None,
        on_hide: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.perf_counter,
        name: str = "marker"
    ):
        """
        Args:
            deactivation_time: Grace period in seconds before content is hidden
            on_show: Called on the INACTIVE -> ACTIVE transition
            on_hide: Called on the ACTIVE -> INACTIVE transition
            clock: Time source used when callers do not pass ``now``
            name: Label used in log messages
        """
        self._deactivation_time = 0.0
        self.deactivation_time = deactivation_time
        self._on_show = on_show
        self._on_hide = on_hide
        self._clock = clock
        self._status = MarkerStatus.INACTIVE
        self._last_seen_at: Optional[float] = None
        self.logger = logging.getLogger(f"Visibility-{name}")

    @property
    def deactivation_time(self) -> float:
        return self._deactivation_time

    @deactivation_time.setter
    def deactivation_time(self, value: float):
        # Takes effect on the next tick; current state is not re-evaluated
        if value < 0:
            raise ValueError(f"deactivation_time must be >= 0, got {value}")
        self._deactivation_time = float(value)

    def on_detected(self, now: Optional[float] = None) -> bool:
        """
        Record a sighting.

        Returns:
            True if this sighting activated the marker
        """
        self._last_seen_at = self._clock() if now is None else now
        if self._status == MarkerStatus.ACTIVE:
            return False

        self._status = MarkerStatus.ACTIVE
        self.logger.debug(f"Activated at t={self._last_seen_at:.3f}")
        if self._on_show is not None:
            self._on_show()
        return True

    def tick(self, now: Optional[float] = None) -> bool:
        """
        Age out the marker if it has not been seen recently.

        Returns:
            True if this tick deactivated the marker
        """
        if self._status != MarkerStatus.ACTIVE:
            return False

        now = self._clock() if now is None else now
        if now - self._last_seen_at <= self._deactivation_time:
            return False

        self._status = MarkerStatus.INACTIVE
        self.logger.debug(
            f"Deactivated at t={now:.3f} (unseen for {now - self._last_seen_at:.3f}s)"
        )
        if self._on_hide is not None:
            self._on_hide()
        return True

    def reset(self):
        """Return to INACTIVE without firing callbacks."""
        self._status = MarkerStatus.INACTIVE
        self._last_seen_at = None

    @property
    def status(self) -> MarkerStatus:
        return self._status

    @property
    def active(self) -> bool:
        return self._status == MarkerStatus.ACTIVE

    @property
    def last_seen_at(self) -> Optional[float]:
        return self._last_seen_at
