# core/errors.py

"""
Error taxonomy

Every error carries a public message and an optional private ``err`` with
additional context (exit code, underlying OSError...). The message may end
up in a job record or an HTTP response, the context is only logged.
"""

import logging
from enum import Enum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    PARAM = "param"
    UPSTREAM = "upstream"
    INTERNAL = "internal"
    KILLED = "killed"

    @property
    def error_code(self) -> int:
        return _ERROR_CODES[self]


_ERROR_CODES = {
    FailureKind.PARAM: 400,
    FailureKind.UPSTREAM: 503,
    FailureKind.INTERNAL: 500,
    FailureKind.KILLED: 500,
}


class DeployError(Exception):
    """Base error, the message is intended for public consumption"""

    kind = FailureKind.INTERNAL

    def __init__(self, message: str, err: Any = None):
        super().__init__(message)
        self.message = message
        self.err = err

    def __str__(self) -> str:
        return self.message


class ParamError(DeployError):
    """Invalid parameters, or parameters rejected further down the chain"""

    kind = FailureKind.PARAM


class ProxyError(DeployError):
    """Error received from some third party (Git host, package registry...)"""

    kind = FailureKind.UPSTREAM


class InternalError(DeployError):
    """Unexpected condition, never raised for bad third-party input"""

    kind = FailureKind.INTERNAL


class WorkerKilledError(InternalError):
    """The worker process was killed and left no exit status"""

    kind = FailureKind.KILLED


def classify_failure(exc: BaseException) -> FailureKind:
    """Map any exception raised by a worker to its failure kind"""
    if isinstance(exc, DeployError):
        return exc.kind
    return FailureKind.INTERNAL


def register_error_handlers(app: FastAPI) -> None:
    """Render DeployError subclasses as JSON with the matching status code"""

    async def _handler(request: Request, exc: DeployError) -> JSONResponse:
        if exc.kind == FailureKind.PARAM:
            logger.warning(f"{request.method} {request.url.path} - {exc.message}")
        else:
            logger.error(f"{request.method} {request.url.path} - {exc.message} ({exc.err})")
        return JSONResponse(
            status_code=exc.kind.error_code,
            content={"success": False, "error": exc.message}
        )

    app.add_exception_handler(DeployError, _handler)
