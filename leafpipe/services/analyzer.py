"""Windowed spectral analysis.

Incoming mono samples are accumulated in a ring buffer.  Once a full window
is available, and after that every ``hop_size`` new samples, the most recent
window is Hamming-weighted, transformed with a real FFT and reduced to a
handful of band energies.  The update rate therefore depends only on the
hop size, never on the buffer sizes the capture backend happens to deliver.
"""

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 2048
DEFAULT_OVERLAP = 0.5
DEFAULT_MIN_FREQ = 100.0
DEFAULT_MAX_FREQ = 15000.0


@dataclass(frozen=True)
class BandEnergies:
    """One analysis step: per-band energy plus the raw window RMS."""

    values: np.ndarray  # ascending frequency, non-negative
    rms: float
    timestamp: float  # seconds, end of the analysis window


def geometric_band_edges(band_count, min_freq=DEFAULT_MIN_FREQ, max_freq=DEFAULT_MAX_FREQ):
    """Split [min_freq, max_freq] into ``band_count`` log-spaced bands.

    Returns ``band_count + 1`` edges in Hz.
    """
    if band_count < 1:
        raise ValueError("band_count must be at least 1")
    return tuple(float(f) for f in np.geomspace(min_freq, max_freq, band_count + 1))


class SpectralAnalyzer:
    """Turns a stream of mono samples into BandEnergies, one per hop.

    Usage:
        analyzer = SpectralAnalyzer(44100, window_size=2048, overlap=0.5,
                                    band_edges_hz=(20, 250, 2000, 16000))
        for energies in analyzer.push(mono, timestamp):
            ...
    """

    def __init__(self, sample_rate, window_size=DEFAULT_WINDOW_SIZE,
                 overlap=DEFAULT_OVERLAP, band_edges_hz=None):
        if window_size < 2:
            raise ValueError("window_size must be at least 2")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0, 1)")

        self.sample_rate = float(sample_rate)
        self.window_size = int(window_size)
        self.hop_size = max(1, int(round(self.window_size * (1.0 - overlap))))
        self.band_edges_hz = tuple(band_edges_hz or geometric_band_edges(3))

        self._window = np.hamming(self.window_size)
        self._scale = 2.0 / float(np.sum(self._window))
        self._band_slices = self._bin_ranges(self.band_edges_hz)

        self._ring = np.zeros(self.window_size, dtype=np.float64)
        self._write_pos = 0
        self._filled = 0
        self._since_step = 0
        self._anchor_timestamp = None
        self._anchor_samples = 0
        self._last_step_timestamp = None
        self._samples_seen = 0

    @classmethod
    def from_config(cls, config):
        edges = config.band_edges_hz or geometric_band_edges(
            config.band_count, config.min_freq_hz, config.max_freq_hz
        )
        return cls(
            config.sample_rate,
            window_size=config.window_size,
            overlap=config.overlap,
            band_edges_hz=edges,
        )

    @property
    def band_count(self):
        return len(self._band_slices)

    def _bin_ranges(self, edges):
        """Map band edges in Hz onto [start, stop) rfft bin ranges."""
        n_bins = self.window_size // 2 + 1
        bin_hz = self.sample_rate / self.window_size
        ranges = []
        for lo, hi in zip(edges, edges[1:]):
            start = int(np.ceil(lo / bin_hz))
            stop = int(np.ceil(hi / bin_hz))
            start = min(start, n_bins - 1)
            stop = min(stop, n_bins)
            if stop <= start:
                # Band narrower than one bin: use the bin nearest its centre
                start = min(int(round((lo + hi) / 2.0 / bin_hz)), n_bins - 1)
                stop = start + 1
            ranges.append(slice(start, stop))
        return ranges

    def reset(self):
        """Drop buffered samples; the next step needs a full window again."""
        self._ring[:] = 0.0
        self._write_pos = 0
        self._filled = 0
        self._since_step = 0
        self._anchor_timestamp = None
        self._anchor_samples = 0
        self._last_step_timestamp = None
        self._samples_seen = 0

    def push(self, samples, timestamp):
        """Add mono samples and return the analysis steps they complete.

        Args:
            samples: 1D array of float samples in [-1, 1].
            timestamp: Capture time of the first sample, in seconds.

        Returns:
            List of BandEnergies, possibly empty.  A large push yields one
            entry per hop boundary it crosses, each computed on the window
            ending at that boundary.
        """
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        # Each push re-anchors the clock, so capture gaps and drift show up
        # in step timestamps instead of accumulating
        self._anchor_timestamp = float(timestamp)
        self._anchor_samples = self._samples_seen

        results = []
        pos = 0
        total = len(samples)
        while pos < total:
            if self._filled < self.window_size:
                needed = self.window_size - self._filled
            else:
                needed = self.hop_size - self._since_step
            take = min(needed, total - pos)
            self._write(samples[pos:pos + take])
            pos += take

            if self._filled < self.window_size:
                continue
            if self._since_step >= self.hop_size or self._samples_seen == self.window_size:
                self._since_step = 0
                results.append(self._step())
        return results

    def _write(self, chunk):
        n = len(chunk)
        if n == 0:
            return
        end = self._write_pos + n
        if end <= self.window_size:
            self._ring[self._write_pos:end] = chunk
        else:
            split = self.window_size - self._write_pos
            self._ring[self._write_pos:] = chunk[:split]
            self._ring[:n - split] = chunk[split:]
        self._write_pos = end % self.window_size
        was_full = self._filled >= self.window_size
        self._filled = min(self.window_size, self._filled + n)
        self._samples_seen += n
        if was_full:
            self._since_step += n

    def current_window(self):
        """Return the buffered window, oldest sample first."""
        return np.concatenate((self._ring[self._write_pos:], self._ring[:self._write_pos]))

    def _step(self):
        mono = self.current_window()
        rms = float(np.sqrt(np.mean(mono ** 2)))

        spectrum = np.abs(np.fft.rfft(mono * self._window)) * self._scale
        values = np.array(
            [float(np.sum(spectrum[band])) for band in self._band_slices],
            dtype=np.float64,
        )
        values = np.log1p(values)

        timestamp = self._anchor_timestamp + (
            self._samples_seen - self._anchor_samples
        ) / self.sample_rate
        if self._last_step_timestamp is not None:
            timestamp = max(timestamp, self._last_step_timestamp)
        self._last_step_timestamp = timestamp
        return BandEnergies(values=values, rms=rms, timestamp=timestamp)
