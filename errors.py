#!/usr/bin/env python3
"""
Typed errors raised while building a program.

Components wrap low-level failures (network, parse, subprocess exit codes)
with `raise SomeError(...) from exc` so the original cause stays on
`__cause__`. Attempt reasons for the personalized audit trail are derived
from the error type via `failure_reason_for`.
"""

REASON_NOT_ENOUGH_ARTICLES = "NOT_ENOUGH_ARTICLES"
REASON_SCRIPT_ERROR = "SCRIPT_GENERATION_ERROR"
REASON_AUDIO_ERROR = "AUDIO_GENERATION_ERROR"
REASON_UPLOAD_ERROR = "UPLOAD_ERROR"
REASON_PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
REASON_CANCELLED = "CANCELLED"
REASON_OTHER = "OTHER"


class ProgramBuildError(Exception):
    """Base class for every typed build failure."""

    reason = REASON_OTHER

    def __init__(self, message, context=None):
        super().__init__(message)
        self.context = dict(context or {})


class ScriptGenerationError(ProgramBuildError):
    """Generation call failed or returned output that could not be parsed."""

    reason = REASON_SCRIPT_ERROR


class ScriptValidationError(ProgramBuildError):
    """Parsed script does not cover the candidate articles, or a stored script is unreadable."""

    reason = REASON_SCRIPT_ERROR


class AudioGenerationError(ProgramBuildError):
    """Speech synthesis or media assembly failed."""

    reason = REASON_AUDIO_ERROR


class FileNotReadyError(AudioGenerationError):
    """A media file never reached a stable, non-empty size before the timeout."""


class UploadError(ProgramBuildError):
    reason = REASON_UPLOAD_ERROR


class PersistenceError(ProgramBuildError):
    reason = REASON_PERSISTENCE_ERROR


class InsufficientArticlesError(ProgramBuildError):
    reason = REASON_NOT_ENOUGH_ARTICLES

    def __init__(self, message, found=0, required=0, context=None):
        super().__init__(message, context)
        self.found = found
        self.required = required


class ProgramAlreadyExistsError(ProgramBuildError):
    def __init__(self, message, source_key=None, program_date=None, context=None):
        super().__init__(message, context)
        self.source_key = source_key
        self.program_date = program_date


class ArticleSourceNotFoundError(ProgramBuildError):
    """The feed (or other article source selector) does not exist."""


class UserNotFoundError(ProgramBuildError):
    pass


class ArticleSourceError(ProgramBuildError):
    """The article source API could not be queried."""


class BuildCancelledError(ProgramBuildError):
    reason = REASON_CANCELLED


def failure_reason_for(error):
    """Map an exception to the reason stored on a failed generation attempt."""
    if isinstance(error, ProgramBuildError):
        return error.reason
    return REASON_OTHER
