"""Exception types shared by the capture and transcription pipeline."""

from __future__ import annotations


class AudioServiceError(Exception):
    """Base class carrying a short machine-readable ``code``."""

    code = "AUDIO_SERVICE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class AudioDeviceError(AudioServiceError):
    code = "AUDIO_DEVICE_ERROR"


class TranscriptionError(AudioServiceError):
    """Raised when the speech-to-text engine cannot be run at all."""

    code = "TRANSCRIPTION_ERROR"


class ExtractionError(AudioServiceError):
    """Raised when probing or cutting a segment out of a recording fails."""

    code = "EXTRACTION_ERROR"


class ModelNotFoundError(AudioServiceError):
    code = "MODEL_NOT_FOUND"


class ServiceNotInitializedError(AudioServiceError):
    code = "NOT_INITIALIZED"
