"""Exception types raised or reported by ARTrack components."""


class ArTrackError(Exception):
    """Base class for all ARTrack errors."""


class ConfigurationError(ArTrackError):
    """An option was given a value outside its allowed set."""


class InitializationError(ArTrackError):
    """Calibration or tracking-library setup failed; the session is not usable."""


class CaptureError(ArTrackError):
    """The platform refused or failed to provide a camera stream."""


class LayerCapacityError(ArTrackError):
    """Every render-layer bit has already been handed out."""
