"""Exception types shared by the clipper services and the processing pipeline."""

from typing import Optional


class ClipperError(Exception):
    """Base class for all clipper errors."""


class TransientExternalFailure(ClipperError):
    """A call to an external collaborator (transcription, detection, clipping) failed.

    Always caught at the stage boundary and downgraded to a safe default.
    """

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class ExternalServiceError(TransientExternalFailure):
    """The external service answered with a non-success response."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code} – {message}"
        super().__init__(service, message)


class ServiceTimeoutError(TransientExternalFailure):
    """The external service did not answer within the configured timeout."""

    def __init__(self, service: str, timeout: float):
        self.timeout = timeout
        super().__init__(service, f"timed out ({timeout:.0f}s)")


class EmptyTranscriptError(TransientExternalFailure):
    """Transcription succeeded but produced no text."""

    def __init__(self, model: str, duration: float = 0.0):
        self.model = model
        self.duration = duration
        super().__init__("transcription", f"model '{model}' returned empty transcript (duration: {duration}s)")


class MalformedResponse(ClipperError):
    """A structured response did not match the expected schema."""


class DataQualityDefect(ClipperError):
    """Out-of-order, overlapping or missing timestamps.

    Recorded and logged while sanitizing word or utterance timestamps; never raised.
    """

    def __init__(self, index: int, message: str, unit: str = "word"):
        self.index = index
        self.unit = unit
        super().__init__(f"{unit} {index}: {message}")


class ConfigurationError(ClipperError):
    """A required credential or setting is missing."""


class SourceMediaError(ClipperError):
    """The source media for a project is missing or unusable."""


class InvalidTransitionError(ClipperError):
    """A processing status change that the state machine does not allow."""


class PipelineBusyError(ClipperError):
    """A pipeline run is already active for the project."""

    def __init__(self, project_id: int):
        self.project_id = project_id
        super().__init__(f"Pipeline already running for project {project_id}")


class UnrecoverablePipelineFailure(ClipperError):
    """Any failure not handled by a stage; the project ends in `error`."""


class ProjectNotFoundError(ClipperError):
    """No project with the given id."""

    def __init__(self, project_id: int):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")
