"""Audio frame sources.

Two ways to get PCM into the pipeline:

* SoundDeviceSource: a PortAudio input stream via ``sounddevice``.  On
  PipeWire/PulseAudio systems point it at the sink's monitor to visualise
  whatever is playing.
* PipeSource: raw interleaved s16le PCM from a named pipe, e.g. fed by
  ``pw-record --format s16 - > /tmp/leafpipe-pcm`` or ``parec``.

Both hand out PcmFrame objects from ``next_frame()``, which blocks until the
next buffer arrives and raises CaptureError once the source is gone.
"""

import fcntl
import logging
import os
import queue
import select
import threading
import time
from dataclasses import dataclass

import numpy as np

from leafpipe.errors import CaptureError

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 2  # 16-bit signed LE
QUEUE_DEPTH = 32
PIPE_OPEN_POLL_S = 0.25

# Queue marker meaning the stream ended underneath us
_FINISHED = object()


@dataclass(frozen=True)
class PcmFrame:
    samples: np.ndarray  # float32, shape (n_frames, channels), [-1, 1]
    channels: int
    sample_rate: int
    timestamp: float  # time.monotonic() of the first sample

    def __len__(self):
        return self.samples.shape[0]

    def mono(self):
        """Downmix to a 1D float64 array by averaging channels."""
        if self.samples.ndim == 1:
            return self.samples.astype(np.float64)
        if self.samples.shape[1] == 1:
            return self.samples[:, 0].astype(np.float64)
        return self.samples.mean(axis=1, dtype=np.float64)


def decode_s16le(raw, channels):
    """Convert interleaved s16le bytes to a float32 (n, channels) array."""
    frame_bytes = channels * BYTES_PER_SAMPLE
    usable = len(raw) - len(raw) % frame_bytes
    samples = np.frombuffer(raw[:usable], dtype="<i2").astype(np.float32) / 32768.0
    return samples.reshape(-1, channels)


class FrameSource:
    """Shared open/close/context-manager plumbing."""

    def open(self):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def next_frame(self, timeout=None):
        raise NotImplementedError

    def describe(self):
        return type(self).__name__

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# ----------------------------------------------------------------------
# PortAudio (sounddevice)
# ----------------------------------------------------------------------

def list_devices():
    """Return [(index, name, max_input_channels, default_samplerate)] of inputs."""
    import sounddevice as sd

    try:
        devices = sd.query_devices()
    except sd.PortAudioError as exc:
        raise CaptureError(f"Could not query audio devices: {exc}") from exc
    return [
        (idx, str(d.get("name", "")), int(d.get("max_input_channels", 0)),
         float(d.get("default_samplerate", 0.0)))
        for idx, d in enumerate(devices)
        if int(d.get("max_input_channels", 0)) > 0
    ]


def resolve_device(name, devices):
    """Pick an input device index from ``list_devices()`` output.

    An explicit name matches exactly first, then as a case-insensitive
    substring.  With no name, a monitor/loopback input wins, then the
    generic pipewire/pulse/default device.  Raises CaptureError when
    nothing fits.
    """
    if name:
        if name.strip().isdigit():
            idx = int(name)
            if any(d[0] == idx for d in devices):
                return idx
            raise CaptureError(f"Audio device index {idx} is not an input device")
        for idx, dev_name, _ch, _sr in devices:
            if dev_name == name:
                return idx
        lowered = name.lower()
        for idx, dev_name, _ch, _sr in devices:
            if lowered in dev_name.lower():
                return idx
        raise CaptureError(
            f"Audio source '{name}' not found (run with --list-devices to see inputs)"
        )

    for idx, dev_name, _ch, _sr in devices:
        lowered = dev_name.lower()
        if "monitor" in lowered or "loopback" in lowered:
            return idx
    for idx, dev_name, _ch, _sr in devices:
        if dev_name.lower() in ("pipewire", "pulse", "default"):
            return idx
    raise CaptureError(
        "Could not auto-detect a system-audio monitor device; set audio_source"
    )


class SoundDeviceSource(FrameSource):
    """Captures from a PortAudio input device.

    The PortAudio callback only copies buffers into a bounded queue; when
    the consumer falls behind the oldest buffer is dropped so analysis stays
    close to live audio.
    """

    def __init__(self, source_name="", sample_rate=44100, channels=2, block_size=1024,
                 queue_depth=QUEUE_DEPTH):
        self.source_name = source_name
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.block_size = int(block_size)
        self._queue = queue.Queue(maxsize=queue_depth)
        self._stream = None
        self._closed = threading.Event()
        self.device = None
        self.dropped = 0

    def describe(self):
        return f"sounddevice:{self.device if self.device is not None else self.source_name}"

    def open(self):
        import sounddevice as sd

        self.device = resolve_device(self.source_name, list_devices())
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=self._callback,
                finished_callback=self._finished,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise CaptureError(f"Could not open audio device {self.device}: {exc}") from exc
        logger.info("Capturing from device %s at %d Hz, %d ch",
                    self.device, self.sample_rate, self.channels)

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("Audio callback status: %s", status)
        frame = PcmFrame(
            samples=indata.copy(),
            channels=self.channels,
            sample_rate=self.sample_rate,
            timestamp=time.monotonic() - frames / self.sample_rate,
        )
        self._offer(frame)

    def _offer(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                    logger.debug("Analysis behind, dropped oldest audio buffer (%d total)",
                                 self.dropped)
                except queue.Empty:
                    pass

    def _finished(self):
        self._offer(_FINISHED)

    def next_frame(self, timeout=None):
        if self._stream is None and self._queue.empty():
            raise CaptureError("Audio stream is not open")
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _FINISHED:
            if self._closed.is_set():
                raise CaptureError("Audio stream closed")
            raise CaptureError(f"Audio device {self.device} disconnected")
        return item

    def close(self):
        self._closed.set()
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception:
            logger.exception("Error closing audio stream")
        # finished_callback may not fire on close; make sure readers wake up
        self._offer(_FINISHED)


# ----------------------------------------------------------------------
# Named pipe
# ----------------------------------------------------------------------

class PipeSource(FrameSource):
    """Reads interleaved s16le PCM from a FIFO (or any readable file).

    ``open()`` waits until a writer sends its first bytes; ``close()`` from
    another thread ends that wait with a CaptureError.  A writer closing the
    pipe is a disconnect.
    """

    def __init__(self, path, sample_rate=44100, channels=2, chunk_frames=1024):
        self.path = path
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.chunk_bytes = int(chunk_frames) * self.channels * BYTES_PER_SAMPLE
        self._fd = None
        self._pending = b""
        self._frames_read = 0
        self._start = None
        self._closed = threading.Event()

    def describe(self):
        return f"pipe:{self.path}"

    def open(self):
        try:
            fd = os.open(self.path, os.O_RDONLY | os.O_NONBLOCK)
        except OSError as exc:
            raise CaptureError(f"Could not open PCM pipe {self.path}: {exc}") from exc

        # A non-blocking FIFO open returns at once; wait for the writer's
        # first bytes here so close() from another thread can cut it short.
        logger.info("Waiting for PCM on %s", self.path)
        try:
            while not self._closed.is_set():
                readable, _, _ = select.select([fd], [], [], PIPE_OPEN_POLL_S)
                if readable:
                    break
        except OSError as exc:
            os.close(fd)
            raise CaptureError(f"Error waiting on PCM pipe {self.path}: {exc}") from exc
        if self._closed.is_set():
            os.close(fd)
            raise CaptureError(f"PCM pipe {self.path} closed before a writer connected")

        flags = fcntl.fcntl(fd, fcntl.F_GETFL)
        fcntl.fcntl(fd, fcntl.F_SETFL, flags & ~os.O_NONBLOCK)
        self._fd = fd
        self._pending = b""
        self._frames_read = 0
        self._start = time.monotonic()
        logger.info("Reading PCM from %s (%d Hz, %d ch)", self.path,
                    self.sample_rate, self.channels)

    def next_frame(self, timeout=None):
        if self._fd is None:
            raise CaptureError("PCM pipe is not open")
        frame_bytes = self.channels * BYTES_PER_SAMPLE
        while len(self._pending) < frame_bytes:
            try:
                raw = os.read(self._fd, self.chunk_bytes)
            except OSError as exc:
                raise CaptureError(f"Error reading PCM pipe {self.path}: {exc}") from exc
            if not raw:
                raise CaptureError(f"PCM pipe {self.path} closed by writer")
            self._pending += raw

        usable = len(self._pending) - len(self._pending) % frame_bytes
        raw, self._pending = self._pending[:usable], self._pending[usable:]
        samples = decode_s16le(raw, self.channels)

        # Timestamps follow the sample clock, anchored at open()
        timestamp = self._start + self._frames_read / self.sample_rate
        self._frames_read += samples.shape[0]
        return PcmFrame(
            samples=samples,
            channels=self.channels,
            sample_rate=self.sample_rate,
            timestamp=timestamp,
        )

    def close(self):
        self._closed.set()
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                logger.exception("Error closing PCM pipe")


def create_source(config):
    """Build the frame source selected by ``config.audio_backend``."""
    if config.audio_backend == "pipe":
        return PipeSource(
            config.pipe_path,
            sample_rate=config.sample_rate,
            channels=config.channels,
            chunk_frames=config.block_size,
        )
    return SoundDeviceSource(
        config.audio_source,
        sample_rate=config.sample_rate,
        channels=config.channels,
        block_size=config.block_size,
    )
