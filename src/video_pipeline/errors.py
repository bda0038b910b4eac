"""Typed errors raised across the video pipeline."""

from enum import Enum

from .schemas import SourceType, VideoStatus


class ExtractorErrorCode(str, Enum):
    """Failure codes shared by every transcript source extractor."""

    INVALID_URL = "INVALID_URL"
    INVALID_ID = "INVALID_ID"
    VIDEO_NOT_FOUND = "VIDEO_NOT_FOUND"
    VIDEO_PRIVATE = "VIDEO_PRIVATE"
    AGE_RESTRICTED = "AGE_RESTRICTED"
    NO_TRANSCRIPT = "NO_TRANSCRIPT"
    ASSET_NOT_READY = "ASSET_NOT_READY"
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_INVALID = "API_KEY_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_EXTRACTOR_CODES = frozenset(
    {
        ExtractorErrorCode.RATE_LIMITED,
        ExtractorErrorCode.NETWORK_ERROR,
        ExtractorErrorCode.ASSET_NOT_READY,
        ExtractorErrorCode.TRANSCRIPTION_FAILED,
        ExtractorErrorCode.UNKNOWN_ERROR,
    }
)


class ExtractorError(Exception):
    """Failure reported by a single transcript source."""

    default_code = ExtractorErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        code: ExtractorErrorCode | None = None,
        source_type: SourceType | None = None,
        original_error: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.source_type = source_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_EXTRACTOR_CODES


class InvalidIdentifierError(ExtractorError):
    """Malformed URL or source identifier."""

    default_code = ExtractorErrorCode.INVALID_URL


class VideoNotFoundError(ExtractorError):
    default_code = ExtractorErrorCode.VIDEO_NOT_FOUND


class VideoPrivateError(ExtractorError):
    default_code = ExtractorErrorCode.VIDEO_PRIVATE


class NoTranscriptError(ExtractorError):
    """The source has no transcript. Signals the router to try the next source."""

    default_code = ExtractorErrorCode.NO_TRANSCRIPT


class RateLimitedError(ExtractorError):
    default_code = ExtractorErrorCode.RATE_LIMITED


class ExtractorNetworkError(ExtractorError):
    default_code = ExtractorErrorCode.NETWORK_ERROR


class FileTooLargeError(ExtractorError):
    """Media exceeds the paid transcription size cap; the input must be split."""

    default_code = ExtractorErrorCode.FILE_TOO_LARGE


class RouterErrorCode(str, Enum):
    """Failure codes raised by the transcript router itself."""

    UNKNOWN_SOURCE = "UNKNOWN_SOURCE"
    MISSING_VIDEO_ID = "MISSING_VIDEO_ID"
    MISSING_PLAYBACK_ID = "MISSING_PLAYBACK_ID"
    MISSING_VIDEO_BUFFER = "MISSING_VIDEO_BUFFER"
    NO_AUTO_CAPTIONS = "NO_AUTO_CAPTIONS"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"


class TranscriptRouterError(Exception):
    """Routing failure, wrapping the extractor error that caused it.

    ``code`` is either a ``RouterErrorCode`` or the wrapped extractor's
    ``ExtractorErrorCode`` so callers can tell "try another source" apart from
    "nothing will ever work".
    """

    def __init__(
        self,
        message: str,
        code: RouterErrorCode | ExtractorErrorCode,
        source_type: SourceType | None = None,
        original_error: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.source_type = source_type
        self.original_error = original_error

    @property
    def requires_paid_fallback(self) -> bool:
        """True when only the media bytes are missing for a paid transcription."""
        return self.code == RouterErrorCode.MISSING_VIDEO_BUFFER

    @property
    def retryable(self) -> bool:
        """False when the input itself is unusable and a retry cannot help."""
        if isinstance(self.original_error, ExtractorError):
            return self.original_error.retryable
        if isinstance(self.code, ExtractorErrorCode):
            return self.code in RETRYABLE_EXTRACTOR_CODES
        return self.code == RouterErrorCode.EXTRACTION_FAILED


class ProcessingError(Exception):
    """Failure of a pipeline stage for one video."""

    def __init__(
        self,
        message: str,
        stage: VideoStatus,
        video_id: str,
        retryable: bool = True,
        original_error: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.video_id = video_id
        self.retryable = retryable
        self.original_error = original_error


class RetryLimitExceededError(ProcessingError):
    """A failed video has used all retries for its stage; an operator must step in."""

    def __init__(self, message: str, stage: VideoStatus, video_id: str):
        super().__init__(message, stage=stage, video_id=video_id, retryable=False)


class StateTransitionError(Exception):
    """Attempted status change that the lifecycle graph does not allow."""

    def __init__(
        self,
        message: str,
        current_state: VideoStatus | None,
        attempted_state: VideoStatus,
    ):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        self.attempted_state = attempted_state


class EmbeddingError(Exception):
    """Embedding generation failed after all retries."""


class VectorSearchError(Exception):
    """Similarity search could not be completed."""
