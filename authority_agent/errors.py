from __future__ import annotations


class AuthorityAgentError(Exception):
    """Base class for every error raised by the analysis pipeline."""


class CrawlError(AuthorityAgentError):
    """Target unreachable, non-2xx after retries, or navigation timed out."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Crawl failed for {url}: {reason}")
        self.url = url
        self.reason = reason


class ExtractionFieldError(AuthorityAgentError):
    """A single extraction step failed. Always recovered to a default."""

    def __init__(self, field: str, cause: BaseException):
        super().__init__(f"{field}: {cause}")
        self.field = field
        self.cause = cause


class ScoringCollaboratorError(AuthorityAgentError):
    """The external commentary service failed, timed out or returned junk."""


class QueueBackendUnavailable(AuthorityAgentError):
    """The distributed backend could not be reached at startup."""


class JobExecutionError(AuthorityAgentError):
    """Uncaught failure while crawling or scoring a job."""
