"""Perceptual feature extraction.

Turns raw band energies into a compact FeatureVector:

* loudness and per-band values, EMA-smoothed and normalized against a
  decaying peak so the response follows the music's own dynamic range
  instead of fixed absolute thresholds;
* an onset flag, raised when a band that carries a real share of the energy
  jumps well above its trailing average in a single step, with a refractory
  interval so a single transient only triggers once;
* a silence gate that forces everything to zero on near-silent input.

All history is held in per-band scalar accumulators, so memory use does not
grow with run time.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

# Trailing averages below this are treated as "no history" for onset checks
MIN_ONSET_BASELINE = 1e-4
# Bands whose smoothed energy is below this fraction of the strongest band
# (spectral leakage, noise floor) never raise an onset
ONSET_MIN_SHARE = 0.25


@dataclass(frozen=True)
class FeatureVector:
    loudness: float  # 0-1
    bands: tuple  # 0-1 per band, ascending frequency
    onset: bool
    timestamp: float


def decay_alpha(dt, tau):
    """EMA weight for a new sample arriving ``dt`` after the previous one."""
    if tau <= 0:
        return 1.0
    return 1.0 - math.exp(-max(dt, 0.0) / tau)


class FeatureExtractor:
    """Smoothing, adaptive normalization and onset detection.

    Times are in seconds unless the argument name says otherwise.  One
    instance belongs to one pipeline; it is not thread-safe.
    """

    def __init__(
        self,
        band_count,
        smoothing_ms=60.0,
        normalize_decay_s=8.0,
        loudness_reference=0.05,
        band_reference=0.05,
        onset_ratio=1.6,
        onset_refractory_ms=150.0,
        onset_history_ms=600.0,
        onset_warmup_ms=500.0,
        silence_threshold=0.002,
    ):
        self.band_count = int(band_count)
        self.smoothing_tau = smoothing_ms / 1000.0
        self.normalize_decay_s = float(normalize_decay_s)
        self.loudness_reference = float(loudness_reference)
        self.band_reference = float(band_reference)
        self.onset_ratio = float(onset_ratio)
        self.onset_refractory = onset_refractory_ms / 1000.0
        self.onset_history_tau = onset_history_ms / 1000.0
        self.onset_warmup = onset_warmup_ms / 1000.0
        self.silence_threshold = float(silence_threshold)
        self.reset()

    @classmethod
    def from_config(cls, config, band_count):
        return cls(
            band_count,
            smoothing_ms=config.smoothing_ms,
            normalize_decay_s=config.normalize_decay_s,
            loudness_reference=config.loudness_reference,
            band_reference=config.band_reference,
            onset_ratio=config.onset_ratio,
            onset_refractory_ms=config.onset_refractory_ms,
            onset_history_ms=config.onset_history_ms,
            onset_warmup_ms=config.onset_warmup_ms,
            silence_threshold=config.silence_threshold,
        )

    def reset(self):
        self._last_ts = None
        self._first_ts = None
        self._last_onset_ts = None
        self._ema_loudness = 0.0
        self._peak_loudness = 0.0
        self._ema_bands = np.zeros(self.band_count)
        self._peak_bands = np.zeros(self.band_count)
        self._trailing_bands = np.zeros(self.band_count)
        self._prev_bands = np.zeros(self.band_count)

    def update(self, energies):
        """Consume one BandEnergies step and return its FeatureVector."""
        raw_bands = np.asarray(energies.values, dtype=np.float64)
        if raw_bands.shape != (self.band_count,):
            raise ValueError(
                f"expected {self.band_count} bands, got {raw_bands.shape[0]}"
            )
        ts = float(energies.timestamp)
        first = self._first_ts is None
        if first:
            self._first_ts = ts
            dt = 0.0
        else:
            dt = ts - self._last_ts
        self._last_ts = ts

        # --- EMA smoothing ----------------------------------------------------
        # The first sample seeds the averages so they don't ramp up from zero
        alpha = 1.0 if first else decay_alpha(dt, self.smoothing_tau)
        self._ema_loudness += alpha * (energies.rms - self._ema_loudness)
        self._ema_bands += alpha * (raw_bands - self._ema_bands)

        # --- Adaptive normalization (decaying peak) ---------------------------
        keep = math.exp(-dt / self.normalize_decay_s)
        self._peak_loudness = max(self._ema_loudness, self._peak_loudness * keep)
        self._peak_bands = np.maximum(self._ema_bands, self._peak_bands * keep)

        loudness = self._ema_loudness / max(self._peak_loudness, self.loudness_reference, 1e-12)
        bands = self._ema_bands / np.maximum(
            self._peak_bands, max(self.band_reference, 1e-12)
        )

        # --- Onset detection against each band's trailing average -------------
        onset = self._detect_onset(raw_bands, ts)

        history_alpha = 1.0 if first else decay_alpha(dt, self.onset_history_tau)
        self._trailing_bands += history_alpha * (raw_bands - self._trailing_bands)
        self._prev_bands = raw_bands

        # --- Silence gate -----------------------------------------------------
        if energies.rms < self.silence_threshold:
            return FeatureVector(
                loudness=0.0,
                bands=(0.0,) * self.band_count,
                onset=False,
                timestamp=ts,
            )

        if onset:
            self._last_onset_ts = ts
            logger.debug("Onset at %.3fs", ts)

        return FeatureVector(
            loudness=float(np.clip(loudness, 0.0, 1.0)),
            bands=tuple(float(v) for v in np.clip(bands, 0.0, 1.0)),
            onset=onset,
            timestamp=ts,
        )

    def _detect_onset(self, raw_bands, ts):
        """A band fires when it is above ``onset_ratio`` times its trailing
        average *and* got there in one step.  Slow swells (a fade-in, a
        sweep) raise the ratio but never the per-step rise, so they don't
        flash.
        """
        if ts - self._first_ts < self.onset_warmup:
            return False
        if (self._last_onset_ts is not None
                and ts - self._last_onset_ts < self.onset_refractory):
            return False
        baseline = self._trailing_bands
        active = (baseline > MIN_ONSET_BASELINE) & (
            self._ema_bands >= ONSET_MIN_SHARE * self._ema_bands.max()
        )
        above = raw_bands > self.onset_ratio * baseline
        rise = raw_bands - self._prev_bands > (self.onset_ratio - 1.0) * baseline
        return bool(np.any(active & above & rise))
