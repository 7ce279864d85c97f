"""Feature vector to per-segment color mapping.

Loudness drives brightness, band energies drive hue, and onsets add a short
white-ish flash on top.  Apart from the flash decay the mapping is a pure
function of the feature vector.
"""

import colorsys
import math
from collections import namedtuple


# Flash levels below this are dropped so the overlay settles completely
FLASH_CUTOFF = 0.02
# Fraction of saturation a full-strength flash removes
FLASH_DESATURATION = 0.6


class SegmentColor(namedtuple("SegmentColor", "hue saturation brightness")):
    """HSV color; hue wraps in [0, 1), saturation and brightness in [0, 1]."""

    __slots__ = ()

    def to_rgb(self):
        return hsv_to_rgb(self.hue, self.saturation, self.brightness)

    def distance(self, other):
        """Largest per-component difference, hue measured around the wheel."""
        dh = abs(self.hue - other.hue) % 1.0
        dh = min(dh, 1.0 - dh)
        return max(dh, abs(self.saturation - other.saturation),
                   abs(self.brightness - other.brightness))


OFF = SegmentColor(0.0, 0.0, 0.0)


def hsv_to_rgb(h, s, v):
    """Convert HSV to RGB.

    Args:
        h: Hue, 0.0-1.0 (wraps around).
        s: Saturation, 0.0-1.0.
        v: Value, 0.0-1.0.

    Returns:
        Tuple of (r, g, b) with values 0-255.
    """
    r, g, b = colorsys.hsv_to_rgb(h % 1.0, s, v)
    return (int(round(r * 255)), int(round(g * 255)), int(round(b * 255)))


class Palette:
    """Piecewise-linear hue lookup from low (bass) to high (treble).

    ``hue_stops`` are in degrees; the default runs red through yellow and
    green to blue.
    """

    def __init__(self, hue_stops=(0.0, 40.0, 120.0, 200.0, 250.0), saturation=1.0):
        if not hue_stops:
            raise ValueError("palette needs at least one hue stop")
        self.hue_stops = tuple(float(h) for h in hue_stops)
        self.saturation = float(saturation)

    def hue_at(self, position):
        """Hue (0-1) at ``position`` in [0, 1] along the palette."""
        position = min(1.0, max(0.0, float(position)))
        stops = self.hue_stops
        if len(stops) == 1:
            return (stops[0] / 360.0) % 1.0
        scaled = position * (len(stops) - 1)
        idx = min(int(scaled), len(stops) - 2)
        frac = scaled - idx
        degrees = stops[idx] + (stops[idx + 1] - stops[idx]) * frac
        return (degrees / 360.0) % 1.0


def band_centroid(bands):
    """Energy-weighted band position in [0, 1]; 0.5 when all bands are zero."""
    total = sum(bands)
    if len(bands) < 2 or total <= 0.0:
        return 0.5
    weighted = sum(i * b for i, b in enumerate(bands))
    return weighted / total / (len(bands) - 1)


class ColorMapper:
    """Maps FeatureVectors onto the panel layout.

    In uniform mode every segment shows the same color, hued by the band
    centroid.  In spatial mode segments (ordered left to right) are spread
    across the bands, bass on the left, and each takes its band's palette hue
    with brightness following both loudness and that band's energy.
    """

    def __init__(self, segment_ids, palette=None, brightness_floor=0.05,
                 brightness_ceiling=0.8, spatial=True, flash_strength=0.6,
                 flash_decay_ms=120.0):
        self.segment_ids = tuple(segment_ids)
        self.palette = palette or Palette()
        self.brightness_floor = float(brightness_floor)
        self.brightness_ceiling = float(brightness_ceiling)
        self.spatial = bool(spatial)
        self.flash_strength = float(flash_strength)
        self.flash_decay = flash_decay_ms / 1000.0

        self._flash = {sid: 0.0 for sid in self.segment_ids}
        self._last_ts = None

    @classmethod
    def from_config(cls, config, segment_ids):
        return cls(
            segment_ids,
            palette=Palette(config.palette, config.saturation),
            brightness_floor=config.brightness_floor,
            brightness_ceiling=config.brightness_ceiling,
            spatial=config.spatial,
            flash_strength=config.flash_strength,
            flash_decay_ms=config.flash_decay_ms,
        )

    def band_for_segment(self, index, band_count):
        """Band index shown by the ``index``-th segment in spatial mode."""
        n = len(self.segment_ids)
        return min(band_count - 1, index * band_count // max(n, 1))

    def _brightness(self, level):
        level = min(1.0, max(0.0, level))
        span = self.brightness_ceiling - self.brightness_floor
        return self.brightness_floor + span * level

    def _advance_flash(self, features):
        if self._last_ts is not None and self.flash_decay > 0:
            keep = math.exp(-max(features.timestamp - self._last_ts, 0.0) / self.flash_decay)
            for sid, level in self._flash.items():
                level *= keep
                self._flash[sid] = level if level >= FLASH_CUTOFF else 0.0
        self._last_ts = features.timestamp
        if features.onset and self.flash_strength > 0:
            for sid in self._flash:
                self._flash[sid] = 1.0

    def map(self, features):
        """Return {segment_id: SegmentColor} for one feature vector."""
        self._advance_flash(features)

        bands = features.bands
        band_count = len(bands)
        saturation = self.palette.saturation
        colors = {}

        if not self.spatial or band_count < 2:
            hue = self.palette.hue_at(band_centroid(bands))
            brightness = self._brightness(features.loudness)
            for sid in self.segment_ids:
                colors[sid] = self._overlay(sid, hue, saturation, brightness)
            return colors

        for index, sid in enumerate(self.segment_ids):
            band = self.band_for_segment(index, band_count)
            hue = self.palette.hue_at(band / (band_count - 1))
            brightness = self._brightness(0.5 * features.loudness + 0.5 * bands[band])
            colors[sid] = self._overlay(sid, hue, saturation, brightness)
        return colors

    def _overlay(self, sid, hue, saturation, brightness):
        flash = self._flash.get(sid, 0.0) * self.flash_strength
        if flash > 0.0:
            brightness += (1.0 - brightness) * flash
            saturation *= 1.0 - FLASH_DESATURATION * flash
        return SegmentColor(hue, saturation, min(1.0, brightness))
