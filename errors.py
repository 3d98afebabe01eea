"""Error kinds raised by the session manager.

Each kind is an HTTPException so it reaches the client with its status code
unchanged, whichever layer raised it.
"""

from __future__ import annotations

from fastapi import HTTPException


class InvalidRequest(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=400, detail=detail)


class Forbidden(HTTPException):
    def __init__(self, detail: str = "Access denied") -> None:
        super().__init__(status_code=403, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=404, detail=detail)


class Conflict(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=409, detail=detail)


class IOFailure(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=500, detail=detail)


class ProcessFailure(HTTPException):
    """Engine exited, crashed, or could not be spawned."""

    def __init__(self, detail: str, status_code: int = 502) -> None:
        super().__init__(status_code=status_code, detail=detail)


class Aborted(ProcessFailure):
    """Session was torn down while the caller was waiting on it."""

    def __init__(self, detail: str = "Stream was terminated") -> None:
        super().__init__(detail, status_code=503)


class ReadinessTimeout(HTTPException):
    def __init__(self, detail: str = "Timeout waiting for HLS playlist") -> None:
        super().__init__(status_code=504, detail=detail)
