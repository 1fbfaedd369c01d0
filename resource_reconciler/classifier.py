import asyncio
from typing import Iterable, Optional

import aiohttp
from loguru import logger
from pydantic import BaseModel, model_validator

from resource_reconciler.errors import RemoteAPIError
from resource_reconciler.models import ErrorKind

TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def error_code(error: BaseException) -> Optional[str]:
    """Extracts the remote error code, falling back to the HTTP status"""
    if isinstance(error, RemoteAPIError):
        return error.code
    if isinstance(error, aiohttp.ClientResponseError):
        return str(error.status)
    code = getattr(error, "code", None)
    return None if code is None else str(code)


class ErrorRule(BaseModel):
    """Matches an error by code, by a fragment of its message, or both"""

    kind: ErrorKind
    code: Optional[str] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def _require_matcher(self) -> "ErrorRule":
        if self.code is None and self.message is None:
            raise ValueError("an error rule needs a code or a message to match")
        return self

    def matches(self, error: BaseException) -> bool:
        if self.code is not None and error_code(error) != self.code:
            return False
        if self.message is not None and self.message not in str(error):
            return False
        return True


class ErrorClassifier:
    """Three-way classification of probe and request errors.

    Rules are resource-type specific and checked in order; the first match
    wins. Errors no rule matches fall back to HTTP semantics: 404 means the
    resource is gone, throttling, server errors and connection failures are
    transient, everything else is fatal.
    """

    def __init__(self, rules: Optional[Iterable[ErrorRule]] = None):
        self.rules = list(rules or [])
        self.logger = logger

    def with_rules(self, *rules: ErrorRule) -> "ErrorClassifier":
        """Returns a classifier that checks the given rules before these ones"""
        return ErrorClassifier([*rules, *self.rules])

    def classify(self, error: BaseException) -> ErrorKind:
        for rule in self.rules:
            if rule.matches(error):
                self.logger.debug(f"{error!r} matched rule {rule}, kind {rule.kind.value}")
                return rule.kind
        return self._default_kind(error)

    def _default_kind(self, error: BaseException) -> ErrorKind:
        if isinstance(error, (RemoteAPIError, aiohttp.ClientResponseError)):
            if error.status == 404:
                return ErrorKind.not_found
            if error.status in TRANSIENT_HTTP_STATUSES:
                return ErrorKind.transient
            return ErrorKind.fatal

        if isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
            return ErrorKind.transient

        return ErrorKind.fatal
