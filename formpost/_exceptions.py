from __future__ import annotations

import typing

if typing.TYPE_CHECKING:
    from ._request import RequestConfig


class FormPostError(Exception):
    """Base class for every error raised by formpost."""


class InvalidArgument(FormPostError, ValueError):
    """A required argument was missing or malformed.

    Always raised before anything is written to the sink.
    """


class UsageError(FormPostError, RuntimeError):
    """An encoder session was used after it was closed or failed."""


class IOFailure(FormPostError, OSError):
    """The sink or a byte source failed while a part was being written.

    The original ``OSError`` is available as ``__cause__``. The session that
    raised this is no longer well-framed and must be abandoned.
    """

    def __init__(self, message: str, *, part_name: str | None = None) -> None:
        super().__init__(message)
        self.part_name = part_name


class RequestError(FormPostError):
    """The HTTP transport failed while executing a request."""

    def __init__(self, message: str, *, request: RequestConfig | None = None) -> None:
        super().__init__(message)
        self._request = request

    @property
    def request(self) -> RequestConfig:
        if self._request is None:
            raise RuntimeError("The .request property has not been set.")
        return self._request

    @request.setter
    def request(self, request: RequestConfig) -> None:
        self._request = request
