"""Exception types shared across the pipeline.

Startup failures (config, auth, capture) are fatal and map to process exit
codes in ``leafpipe.app``.  ``DispatchError`` is the only one the pipeline
recovers from: the dispatcher logs it and keeps the last committed colors.
"""


class LeafpipeError(Exception):
    """Base class for all leafpipe errors."""

    exit_code = 1


class ConfigError(LeafpipeError):
    """Configuration is missing or malformed."""

    exit_code = 2


class AuthError(LeafpipeError):
    """The device token is missing or rejected, or the device is unreachable."""

    exit_code = 3


class CaptureError(LeafpipeError):
    """The audio source is unavailable or disconnected."""

    exit_code = 4


class DispatchError(LeafpipeError):
    """A color update could not be delivered to the device."""
