class SignalingError(Exception):
    """Base class for errors raised by the signaling client."""


class MediaCaptureError(SignalingError):
    """Local camera/microphone could not be opened."""


class ProtocolViolation(SignalingError):
    """An envelope arrived that the peer table cannot accept (e.g. an answer for an unknown peer)."""
