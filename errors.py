"""
Error types
===========
Capture errors end the current listening attempt and are shown to the player.
Generation errors never leave the story pipeline; they are replaced by
fallback text or missing audio where they happen.
"""


class EarTrainerError(Exception):
    """Base class for everything raised by the ear trainer."""


# ─── Capture ─────────────────────────────────────────────────────────────────

class CaptureError(EarTrainerError):
    """The microphone / pitch estimator pipeline could not run."""


class MicrophonePermissionError(CaptureError, PermissionError):
    """Access to the microphone was denied."""


class DeviceError(CaptureError):
    """No usable audio input device."""


class ModelLoadError(CaptureError):
    """The pitch estimator could not be initialized."""


class EstimatorSampleError(CaptureError):
    """A single pitch estimate failed; the sampling loop keeps going."""


# ─── Generation ──────────────────────────────────────────────────────────────

class GenerationError(EarTrainerError):
    """Story text or speech backend failure."""


class RateLimitError(GenerationError):
    """The backend answered 429 Too Many Requests."""
