"""
Builder-style HTTP requests with GET, POST and multipart submission.

Requests are immutable: every ``with_*`` call returns a new request with the
updated :class:`RequestConfig`. The flavour of a request decides what
:meth:`HttpRequest.execute` hands back as the result value:

* :class:`FetchRequest` → the response body as text
* :class:`ReadRequest`  → the number of body bytes received
* :class:`MatchRequest` → whether a regular expression matches the body

Example
-------
>>> with HttpClientFacade() as http:
...     result = (
...         http.as_fetch_request("https://example.org/upload")
...         .with_form_field("title", "holiday")
...         .with_form_file("photo", "image/jpeg", "beach.jpg")
...         .execute()
...     )
...     result.status_code
200
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
import re
import tempfile
import typing
from collections.abc import Iterator, Mapping

import httpx

from ._exceptions import InvalidArgument, RequestError
from ._multipart import MultipartEncoder

logger = logging.getLogger("formpost.request")

T = typing.TypeVar("T")
R = typing.TypeVar("R", bound="HttpRequest[typing.Any]")

DEFAULT_TEXT_TYPES: tuple[str, ...] = (
    "text/",
    "application/json",
    "application/xml",
    "application/javascript",
    "application/ecmascript",
)
DEFAULT_TIMEOUT = httpx.Timeout(30.0)

# Multipart bodies larger than this are spooled to a temporary file.
SPOOL_MAX_MEMORY = 1024 * 1024
BODY_CHUNK_SIZE = 64 * 1024


def is_text_content_type(content_type: str, text_types: typing.Iterable[str]) -> bool:
    ct = content_type.lower().split(";")[0].strip()
    return ct != "" and any(ct.startswith(t) for t in text_types)


class SubmissionType(enum.Enum):
    GET = "GET"
    POST = "POST"
    MULTIPART = "MULTIPART"


class RequestMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    PATCH = "PATCH"


@dataclasses.dataclass(frozen=True)
class FormField:
    """One field of a multipart submission: a text value or a file on disk."""

    name: str
    value: str | None = None
    mime_type: str | None = None
    path: str | None = None

    @property
    def is_file(self) -> bool:
        return self.path is not None

    def emit(self, encoder: MultipartEncoder) -> None:
        if self.path is not None:
            encoder.emit_file(self.name, self.mime_type, self.path)
        else:
            encoder.emit_value(self.name, self.value)


@dataclasses.dataclass(frozen=True)
class RequestConfig:
    url: str | None = None
    method: RequestMethod | None = None
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes | None = None
    form_fields: tuple[FormField, ...] = ()
    follow_redirects: bool = True
    text_types: tuple[str, ...] = DEFAULT_TEXT_TYPES
    regex: str | None = None
    boundary: str | None = None

    @property
    def submission_type(self) -> SubmissionType:
        if self.form_fields:
            return SubmissionType.MULTIPART
        if self.body is not None:
            return SubmissionType.POST
        return SubmissionType.GET

    @property
    def effective_method(self) -> str:
        if self.method is not None:
            return self.method.value
        if self.submission_type is SubmissionType.GET:
            return RequestMethod.GET.value
        return RequestMethod.POST.value


class Response:
    """Read-only view of a completed HTTP response."""

    def __init__(
        self,
        response: httpx.Response,
        text_types: typing.Iterable[str] = DEFAULT_TEXT_TYPES,
    ) -> None:
        self._response = response
        self._text_types = tuple(text_types)

    def __repr__(self) -> str:
        return f"<Response [{self.status_code} {self.reason_phrase}]>"

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def reason_phrase(self) -> str:
        return self._response.reason_phrase

    @property
    def http_version(self) -> str:
        return self._response.http_version

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def content(self) -> bytes:
        return self._response.content

    @property
    def content_size(self) -> int:
        return len(self._response.content)

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    @property
    def is_text(self) -> bool:
        return is_text_content_type(self.content_type, self._text_types)

    @property
    def text(self) -> str:
        return self._response.text

    @property
    def history(self) -> list[Response]:
        return [Response(r, self._text_types) for r in self._response.history]

    def get_header(self, name: str) -> list[str]:
        return self._response.headers.get_list(name)

    def get_cookie_values(self, name: str) -> list[str]:
        return [
            cookie.value or ""
            for cookie in self._response.cookies.jar
            if cookie.name == name
        ]


@dataclasses.dataclass(frozen=True)
class RequestResult(typing.Generic[T]):
    value: T
    response: Response

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def content_size(self) -> int:
        return self.response.content_size

    @property
    def text(self) -> str:
        return self.response.text


class _SpooledBody:
    """Sink for an outgoing multipart body.

    The encoder writes into a spooled temporary file. Closing the sink only
    seals it; the content is then replayed to the transport by iteration,
    which may happen more than once (e.g. on a 307 redirect).
    """

    def __init__(self, max_size: int = SPOOL_MAX_MEMORY) -> None:
        self._file = tempfile.SpooledTemporaryFile(max_size=max_size)
        self._size = 0
        self._sealed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def sealed(self) -> bool:
        return self._sealed

    def write(self, data: bytes) -> int:
        if self._sealed:
            raise ValueError("request body is sealed")
        written = self._file.write(data)
        self._size += len(data)
        return written

    def flush(self) -> None:
        self._file.flush()

    def close(self) -> None:
        self._sealed = True

    def __iter__(self) -> Iterator[bytes]:
        self._file.seek(0)
        while True:
            chunk = self._file.read(BODY_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    def discard(self) -> None:
        self._file.close()


class HttpRequest(typing.Generic[T]):
    """Immutable request builder; subclasses decide the result type."""

    def __init__(self, client: httpx.Client, config: RequestConfig | None = None) -> None:
        self._client = client
        self._config = config if config is not None else RequestConfig()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self._config.effective_method} "
            f"{self._config.url!r} ({self._config.submission_type.value})>"
        )

    @property
    def config(self) -> RequestConfig:
        return self._config

    @property
    def submission_type(self) -> SubmissionType:
        return self._config.submission_type

    @property
    def follow_redirects(self) -> bool:
        return self._config.follow_redirects

    def _replace(self: R, **changes: typing.Any) -> R:
        return type(self)(self._client, dataclasses.replace(self._config, **changes))

    def with_url(self: R, url: str | httpx.URL) -> R:
        return self._replace(url=str(url))

    def with_header(self: R, name: str, value: str) -> R:
        return self._replace(headers=self._config.headers + ((name, value),))

    def with_headers(self: R, headers: Mapping[str, str]) -> R:
        """Replace all headers."""
        return self._replace(headers=tuple(headers.items()))

    def with_post_body(self: R, body: str | bytes) -> R:
        if self._config.form_fields:
            raise InvalidArgument("a request cannot carry both a POST body and form fields")
        if isinstance(body, str):
            body = body.encode("utf-8")
        return self._replace(body=bytes(body))

    def with_method(self: R, method: RequestMethod | str) -> R:
        try:
            method = RequestMethod(method.upper() if isinstance(method, str) else method)
        except ValueError as exc:
            raise InvalidArgument(f"unsupported request method: {method!r}") from exc
        return self._replace(method=method)

    def with_form_field(self: R, name: str, value: str | None) -> R:
        return self._add_field(FormField(name, value=value))

    def with_form_file(
        self: R, name: str, mime_type: str | None, path: str | os.PathLike[str]
    ) -> R:
        return self._add_field(FormField(name, mime_type=mime_type, path=os.fspath(path)))

    def with_boundary(self: R, boundary: str) -> R:
        if not boundary:
            raise InvalidArgument("boundary must not be empty")
        return self._replace(boundary=boundary)

    def with_follow_redirects(self: R, follow: bool) -> R:
        return self._replace(follow_redirects=bool(follow))

    def with_text_type(self: R, text_type: str) -> R:
        """Accept another MIME type (or type prefix) as a text response."""
        if text_type in self._config.text_types:
            return self
        return self._replace(text_types=self._config.text_types + (text_type,))

    def _add_field(self: R, field: FormField) -> R:
        if not field.name:
            raise InvalidArgument("field name must be provided")
        if self._config.body is not None:
            raise InvalidArgument("a request cannot carry both a POST body and form fields")
        return self._replace(form_fields=self._config.form_fields + (field,))

    def _check_executable(self) -> None:
        if not self._config.url:
            raise InvalidArgument("a URL must be set before executing a request")

    def _result_value(self, response: Response) -> T:
        raise NotImplementedError()  # pragma: no cover

    def execute(self) -> RequestResult[T]:
        """Send the request and wrap the response.

        Multipart bodies are fully encoded and the encoder closed before any
        byte goes on the wire, so ``Content-Length`` is always known.
        """
        self._check_executable()
        config = self._config
        headers = httpx.Headers(list(config.headers))
        content: typing.Any = None
        body: _SpooledBody | None = None

        submission = config.submission_type
        if submission is SubmissionType.MULTIPART:
            body = _SpooledBody()
            try:
                with MultipartEncoder(body, config.boundary) as encoder:
                    for field in config.form_fields:
                        field.emit(encoder)
            except BaseException:
                body.discard()
                raise
            headers["Content-Type"] = encoder.content_type
            headers["Content-Length"] = str(body.size)
            content = body
        elif submission is SubmissionType.POST:
            content = config.body

        method = config.effective_method
        logger.debug("%s %s (%s submission)", method, config.url, submission.value)
        try:
            raw = self._client.request(
                method,
                typing.cast(str, config.url),
                headers=headers,
                content=content,
                follow_redirects=config.follow_redirects,
            )
        except httpx.HTTPError as exc:
            raise RequestError(f"{type(exc).__name__}: {exc}", request=config) from exc
        finally:
            if body is not None:
                body.discard()

        response = Response(raw, config.text_types)
        logger.debug("%s %s -> %d", method, config.url, response.status_code)
        return RequestResult(self._result_value(response), response)


class FetchRequest(HttpRequest[str]):
    """Returns the body as text; empty when the response is not textual."""

    def _result_value(self, response: Response) -> str:
        if not response.is_text:
            logger.debug("ignoring non-text response body (%s)", response.content_type)
            return ""
        return response.text


class ReadRequest(HttpRequest[int]):
    """Returns the number of body bytes received."""

    def _result_value(self, response: Response) -> int:
        return response.content_size


class MatchRequest(HttpRequest[bool]):
    """Returns whether the configured regular expression matches the body."""

    def with_regex(self, regex: str) -> MatchRequest:
        try:
            re.compile(regex)
        except re.error as exc:
            raise InvalidArgument(f"invalid regular expression {regex!r}: {exc}") from exc
        return self._replace(regex=regex)

    def _check_executable(self) -> None:
        super()._check_executable()
        if self._config.regex is None:
            raise InvalidArgument("a regular expression must be set with with_regex()")

    def _result_value(self, response: Response) -> bool:
        return re.search(typing.cast(str, self._config.regex), response.text) is not None


class HttpClientFacade:
    """Entry point that hands out request builders bound to one client.

    Pass an existing ``httpx.Client`` to share its connection pool, or let
    the facade create (and later close) its own.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        timeout: httpx.Timeout | float | None = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        trust_env: bool = True,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            client = httpx.Client(timeout=timeout, transport=transport, trust_env=trust_env)
        self._client = client

    def __enter__(self) -> HttpClientFacade:
        return self

    def __exit__(self, *args: typing.Any) -> None:
        self.close()

    @property
    def client(self) -> httpx.Client:
        return self._client

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def as_fetch_request(self, url: str | httpx.URL | None = None) -> FetchRequest:
        return _with_optional_url(FetchRequest(self._client), url)

    def as_read_request(self, url: str | httpx.URL | None = None) -> ReadRequest:
        return _with_optional_url(ReadRequest(self._client), url)

    def as_match_request(
        self, regex: str | None = None, url: str | httpx.URL | None = None
    ) -> MatchRequest:
        request = _with_optional_url(MatchRequest(self._client), url)
        if regex is not None:
            request = request.with_regex(regex)
        return request


def _with_optional_url(request: R, url: str | httpx.URL | None) -> R:
    return request if url is None else request.with_url(url)
