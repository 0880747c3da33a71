"""Error taxonomy for the capture and mixdown pipeline.

Library code raises these; StudioSession is the one place that catches
them and turns them into a status line for the user.
"""


class StudioError(Exception):
    """Base class for every failure the pipeline reports."""


class DeviceError(StudioError):
    """Microphone permission denied or no input device available."""


class DeviceLostError(DeviceError):
    """The capture device ended while a recording was in flight."""


class DecodeError(StudioError):
    """Audio bytes could not be parsed (unsupported or corrupt)."""


class MixError(StudioError):
    """A required input buffer was missing at render time."""


class EncodeError(StudioError):
    """A rendered mix could not be written to the output container."""


class CaptureStateError(StudioError):
    """A capture session was driven through an invalid transition."""
