"""Real-time audio visualiser for Nanoleaf light panels."""

__version__ = "0.1.0"
