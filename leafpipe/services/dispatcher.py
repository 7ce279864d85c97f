"""Rate-limited, delta-gated color dispatch.

Keeps the last color successfully sent to each segment (the committed
color).  Each tick only segments whose proposed color moved more than
``epsilon`` away from their committed color are sent, as a single batch.
A failed send is logged and leaves the committed table untouched, so the
next tick naturally retries whatever is still different.
"""

import logging
import threading
import time

from leafpipe.errors import DispatchError
from leafpipe.services.colors import OFF

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_MS = 100.0
DEFAULT_EPSILON = 0.01


class DeviceDispatcher:
    """Pushes per-segment colors to a device client.

    The client needs a ``send_colors({segment_id: (r, g, b)}, transition_ds)``
    method that raises DispatchError on failure.  Thread-safe: the committed
    table is guarded by a single lock.
    """

    def __init__(self, client, segment_ids, min_interval_ms=DEFAULT_MIN_INTERVAL_MS,
                 epsilon=DEFAULT_EPSILON, transition_ds=1, clock=time.monotonic):
        self._client = client
        self.segment_ids = tuple(segment_ids)
        self.min_interval = min_interval_ms / 1000.0
        self.epsilon = float(epsilon)
        self.transition_ds = int(transition_ds)
        self._clock = clock
        self._lock = threading.Lock()

        self._committed = {}  # segment_id -> SegmentColor
        self._last_attempt = None

        self.sends = 0
        self.segments_sent = 0
        self.failures = 0
        self.last_error = None

    def committed(self):
        """Snapshot of the committed colors."""
        with self._lock:
            return dict(self._committed)

    def pending(self, proposed):
        """Segments of ``proposed`` that differ from their committed color."""
        with self._lock:
            return self._diff(proposed)

    def _diff(self, proposed):
        changed = {}
        for sid in self.segment_ids:
            color = proposed.get(sid)
            if color is None:
                continue
            prev = self._committed.get(sid)
            if prev is None or color.distance(prev) > self.epsilon:
                changed[sid] = color
        return changed

    def tick(self, proposed, now=None):
        """Send whatever changed, subject to the rate limit.

        Args:
            proposed: {segment_id: SegmentColor} from the color mapper.
            now: Current time in seconds (defaults to the dispatcher clock).

        Returns:
            Number of segments successfully sent this tick.
        """
        now = self._clock() if now is None else now
        with self._lock:
            if (self._last_attempt is not None
                    and now - self._last_attempt < self.min_interval):
                return 0

            changed = self._diff(proposed)
            if not changed:
                return 0

            self._last_attempt = now
            if not self._send(changed):
                return 0
            self._committed.update(changed)
            return len(changed)

    def _send(self, changed):
        payload = {sid: color.to_rgb() for sid, color in changed.items()}
        try:
            self._client.send_colors(payload, self.transition_ds)
        except DispatchError as exc:
            self.failures += 1
            self.last_error = str(exc)
            logger.warning("Color update failed (%d segment(s)): %s", len(changed), exc)
            return False
        self.sends += 1
        self.segments_sent += len(changed)
        logger.debug("Sent %d segment(s)", len(changed))
        return True

    def blackout(self):
        """Turn every segment off, ignoring the diff and the rate limit.

        Returns True if the device accepted the update.
        """
        off = {sid: OFF for sid in self.segment_ids}
        with self._lock:
            if not self._send(off):
                return False
            self._committed.update(off)
            self._last_attempt = self._clock()
        return True

    def get_stats(self):
        with self._lock:
            return {
                "sends": self.sends,
                "segments_sent": self.segments_sent,
                "failures": self.failures,
                "last_error": self.last_error,
                "committed": {
                    str(sid): list(color.to_rgb()) for sid, color in self._committed.items()
                },
            }
