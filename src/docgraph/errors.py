from __future__ import annotations
from typing import Optional
import re


class DocGraphError(Exception):
    """Base class for every error raised by the docgraph package."""


class ConfigurationError(DocGraphError):
    pass


class KeyPoolExhaustedError(DocGraphError):
    """Every credential in one rotation cycle failed."""


class InvalidResponseError(DocGraphError):
    """A model answered, but with something we cannot use."""


class RetryLimitExceededError(DocGraphError):
    def __init__(self, attempts: int, last_error: Optional[str] = None):
        self.attempts = attempts
        self.last_error = last_error
        msg = f"task gave up after {attempts} retries"
        if last_error:
            msg += f" (last error: {last_error})"
        super().__init__(msg)


class IngestionError(DocGraphError):
    def __init__(self, message: str, filename: Optional[str] = None):
        self.filename = filename
        super().__init__(message)


class DocumentNotFoundError(DocGraphError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"document {document_id} does not exist")


class StoreWriteError(DocGraphError):
    pass


class ProgressChannelClosedError(DocGraphError):
    pass


_RATE_LIMIT_RE = re.compile(r"\b429\b|rate[ -]limit|quota|resource exhausted")


def is_rate_limit_error(err: BaseException) -> bool:
    status = getattr(err, "status_code", None)
    if status is None:
        response = getattr(err, "response", None)
        status = getattr(response, "status_code", None)
    if status is not None:
        return status == 429
    return _RATE_LIMIT_RE.search(str(err).lower()) is not None
