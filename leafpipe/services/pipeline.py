"""Audio-to-light pipeline coordinator.

Two threads share one pipeline instance:

* the capture thread runs ``run()``: next_frame -> analyzer -> extractor ->
  mapper, and drops the resulting colors into a single-slot mailbox;
* the dispatch thread wakes every ``update_interval_ms`` and hands whatever
  is in the mailbox to the dispatcher.

Intermediate colors are overwritten, never queued, so the lights always
follow the most recent audio.
"""

import logging
import threading
import time

from leafpipe.errors import CaptureError, LeafpipeError
from leafpipe.services.analyzer import SpectralAnalyzer
from leafpipe.services.colors import ColorMapper
from leafpipe.services.dispatcher import DeviceDispatcher
from leafpipe.services.features import FeatureExtractor

logger = logging.getLogger(__name__)

CAPTURE_POLL_S = 0.5


class LatestValue:
    """Single-slot mailbox: ``put`` overwrites, ``get`` never blocks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = None
        self._version = 0

    def put(self, value):
        with self._lock:
            self._value = value
            self._version += 1

    def get(self):
        with self._lock:
            return self._value

    @property
    def version(self):
        with self._lock:
            return self._version


class Pipeline:
    """Owns startup, the capture loop, the dispatch timer and teardown.

    Usage:
        pipeline = Pipeline(config, source, client)
        pipeline.start()
        try:
            pipeline.run()      # returns after stop(), raises CaptureError
        finally:
            pipeline.stop()
    """

    def __init__(self, config, source, client):
        self.config = config
        self.source = source
        self.client = client

        self.layout = None
        self.analyzer = None
        self.extractor = None
        self.mapper = None
        self.dispatcher = None
        self.mailbox = LatestValue()

        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._dispatch_thread = None
        self._started = False
        self._streaming = False
        self._stopped = False

        self.frames = 0
        self.steps = 0
        self.onsets = 0
        self.last_features = None
        self.started_at = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, dispatch_thread=True):
        """Authenticate, discover the layout, open capture and start dispatching.

        Raises AuthError, CaptureError or LeafpipeError; the caller should
        still call ``stop()`` to release whatever was opened.  If ``stop()``
        runs while startup is still in progress (a signal during a slow
        connect or while waiting for PCM), startup gives up quietly and
        ``run()`` returns at once.
        """
        try:
            self._start(dispatch_thread)
        except LeafpipeError:
            if not self._stop_event.is_set():
                raise
            logger.info("Startup interrupted by shutdown")
            self._abort_start()

    def _start(self, dispatch_thread):
        self.client.connect()
        if self._stop_event.is_set():
            return self._abort_start()
        self.layout = self.client.get_layout()
        segment_ids = self.layout.segment_ids
        if not segment_ids:
            raise LeafpipeError("Device reports no light-emitting panels")

        self.analyzer = SpectralAnalyzer.from_config(self.config)
        self.extractor = FeatureExtractor.from_config(self.config, self.analyzer.band_count)
        self.mapper = ColorMapper.from_config(self.config, segment_ids)
        self.dispatcher = DeviceDispatcher(
            self.client,
            segment_ids,
            min_interval_ms=self.config.update_interval_ms,
            epsilon=self.config.color_epsilon,
            transition_ds=self.config.transition_ds,
        )
        logger.info(
            "Pipeline: %d segment(s), %d band(s), window %d, hop %d",
            len(segment_ids), self.analyzer.band_count,
            self.analyzer.window_size, self.analyzer.hop_size,
        )

        if self._stop_event.is_set():
            return self._abort_start()
        # Set before the request: a stop() racing it still restores the lights
        self._streaming = True
        self.client.enable_streaming()
        if self._stop_event.is_set():
            return self._abort_start()
        self.source.open()
        if self._stop_event.is_set():
            return self._abort_start()
        self._started = True
        self.started_at = time.time()

        if dispatch_thread:
            self._dispatch_thread = threading.Thread(
                target=self._dispatch_loop, name="leafpipe-dispatch", daemon=True
            )
            self._dispatch_thread.start()

    def _abort_start(self):
        # stop() already ran, but a step still in flight may have reopened
        # the source or the client socket
        for name, close in (("audio source", self.source.close),
                            ("device client", self.client.close)):
            try:
                close()
            except Exception:
                logger.exception("Error closing %s", name)

    def run(self):
        """Capture loop.  Blocks until ``stop()`` or a capture failure."""
        try:
            while not self._stop_event.is_set():
                frame = self.source.next_frame(timeout=CAPTURE_POLL_S)
                if frame is None:
                    continue
                self.process_frame(frame)
        except CaptureError as exc:
            if self._stop_event.is_set():
                # close() from stop() unblocks the source this way
                return
            logger.error("Capture failed: %s", exc)
            self.stop()
            raise

    @property
    def stopping(self):
        return self._stop_event.is_set()

    def stop(self):
        """Stop capture and dispatch, then leave the lights in the shutdown state.

        Safe to call more than once and from any thread.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._stop_event.set()

        try:
            self.source.close()
        except Exception:
            logger.exception("Error closing audio source")

        thread = self._dispatch_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

        if self._streaming and self.config.shutdown_state == "off":
            self.dispatcher.blackout()
            try:
                self.client.set_power(False)
            except Exception:
                logger.exception("Failed to power off panels")

        try:
            self.client.close()
        except Exception:
            logger.exception("Error closing device client")
        logger.info("Pipeline stopped")

    # ------------------------------------------------------------------
    # The two halves
    # ------------------------------------------------------------------

    def process_frame(self, frame):
        """Analyze one PcmFrame and publish the newest colors.

        Returns the FeatureVectors produced (one per completed hop).
        """
        self.frames += 1
        produced = []
        for energies in self.analyzer.push(frame.mono(), frame.timestamp):
            features = self.extractor.update(energies)
            self.mailbox.put(self.mapper.map(features))
            produced.append(features)
        if produced:
            self.steps += len(produced)
            self.onsets += sum(1 for f in produced if f.onset)
            self.last_features = produced[-1]
        return produced

    def dispatch_once(self, now=None):
        """Offer the latest colors to the dispatcher.  Returns segments sent."""
        colors = self.mailbox.get()
        if colors is None:
            return 0
        return self.dispatcher.tick(colors, now)

    def _dispatch_loop(self):
        interval = self.config.update_interval_ms / 1000.0
        while not self._stop_event.wait(interval):
            try:
                self.dispatch_once()
            except Exception:
                logger.exception("Unexpected error in dispatch loop")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self):
        """Return a JSON-serializable snapshot of the pipeline."""
        features = self.last_features
        return {
            "running": self._started and not self._stop_event.is_set(),
            "source": self.source.describe(),
            "device": {
                "host": getattr(self.client, "host", None),
                "transport": getattr(self.client, "transport", None),
                "segments": list(self.layout.segment_ids) if self.layout else [],
            },
            "uptime_s": round(time.time() - self.started_at, 1) if self.started_at else 0.0,
            "frames": self.frames,
            "steps": self.steps,
            "onsets": self.onsets,
            "dropped_buffers": getattr(self.source, "dropped", 0),
            "features": None if features is None else {
                "loudness": round(features.loudness, 4),
                "bands": [round(b, 4) for b in features.bands],
                "onset": features.onset,
            },
            "dispatch": self.dispatcher.get_stats() if self.dispatcher else None,
        }
