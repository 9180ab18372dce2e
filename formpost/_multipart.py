"""
Streaming ``multipart/form-data`` encoder (RFC 2388).

A :class:`MultipartEncoder` is bound to one output sink and one boundary for
its whole life. Each ``emit_*`` call frames a single part and writes it to the
sink straight away, so the form is never held in memory as a whole::

    with open("body.bin", "wb") as sink:
        encoder = MultipartEncoder(sink, create_random_boundary())
        encoder.emit_value("title", "holiday")
        encoder.emit_file("photo", "image/jpeg", "beach.jpg")
        encoder.close()

Framing of a single part::

    --<boundary>\\r\\n
    Content-Disposition: form-data; name="<name>"[; filename="<file_name>"]\\r\\n
    [Content-Type: <mime_type>\\r\\n]
    \\r\\n
    <payload>\\r\\n

and the body ends with ``--<boundary>--\\r\\n``.
"""

from __future__ import annotations

import codecs
import contextlib
import enum
import io
import logging
import os
import random
import typing

from ._exceptions import InvalidArgument, IOFailure, UsageError

logger = logging.getLogger("formpost.multipart")

CRLF = "\r\n"
BYTES_LIKE = (bytes, bytearray, memoryview)
DEFAULT_CHUNK_SIZE = 8192
BOUNDARY_PREFIX = "-" * 20

# Characters that would break the Content-Disposition header grammar.
_UNSAFE_NAME_CHARS = ('"', "\r", "\n")


class Sink(typing.Protocol):
    def write(self, data: bytes, /) -> typing.Any: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class ByteSource(typing.Protocol):
    def read(self, size: int = -1, /) -> bytes: ...

    def close(self) -> None: ...


class EncoderState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


def create_random_boundary(rng: random.Random | None = None) -> str:
    """Return a fresh boundary token.

    Twenty dashes followed by a random 64-bit value in hex. A private
    ``random.SystemRandom`` is used unless *rng* is given, so boundaries never
    depend on the process-wide seeded generator.
    """
    if rng is None:
        rng = random.SystemRandom()
    return BOUNDARY_PREFIX + format(rng.getrandbits(64), "x")


def get_content_type(boundary: str) -> str:
    """Return the ``Content-Type`` header value for a body using *boundary*."""
    return f"multipart/form-data; boundary={boundary}"


class MultipartEncoder:
    """Writes a multipart/form-data body part by part into *sink*.

    Parameters
    ----------
    sink:
        Destination with ``write``, ``flush`` and ``close``. It is written to
        exclusively by this encoder and closed by :meth:`close`.
    boundary:
        Delimiter token. A random one is generated when omitted.
    encoding:
        Charset for header lines and text values.
    chunk_size:
        Size of the buffer used to copy streamed file content.
    validate_names:
        Reject field and file names containing ``"``, CR or LF. Off by default,
        in which case names are written verbatim.

    The encoder is a single ordered writer and is not safe to share between
    threads.
    """

    def __init__(
        self,
        sink: Sink,
        boundary: str | None = None,
        *,
        encoding: str = "utf-8",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        validate_names: bool = False,
    ) -> None:
        if sink is None:
            raise InvalidArgument("sink must not be None")
        if boundary is None:
            boundary = create_random_boundary()
        elif not boundary:
            raise InvalidArgument("boundary must not be empty")
        if chunk_size < 1:
            raise InvalidArgument(f"chunk_size must be positive, got {chunk_size!r}")
        try:
            codecs.lookup(encoding)
        except LookupError as exc:
            raise InvalidArgument(f"unknown encoding: {encoding!r}") from exc

        self._sink = sink
        self._boundary = boundary
        self._encoding = encoding
        self._chunk_size = chunk_size
        self._validate_names = validate_names
        self._state = EncoderState.OPEN
        self._failed = False
        self._bytes_written = 0

    def __enter__(self) -> MultipartEncoder:
        return self

    def __exit__(self, exc_type: typing.Any, exc: typing.Any, tb: typing.Any) -> None:
        if self._state is EncoderState.CLOSED:
            return
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def __repr__(self) -> str:
        return f"MultipartEncoder(boundary={self._boundary!r}, state={self._state.value})"

    @property
    def boundary(self) -> str:
        return self._boundary

    @property
    def content_type(self) -> str:
        return get_content_type(self._boundary)

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is EncoderState.CLOSED

    @property
    def bytes_written(self) -> int:
        """Number of bytes handed to the sink so far."""
        return self._bytes_written

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def emit_value(self, name: str, value: typing.Any = None) -> None:
        """Write a plain text field. ``None`` is sent as an empty value."""
        self._check_usable()
        self._check_part(name)
        if value is None:
            value = ""
        header = self._part_header(name, None, None)
        payload = self._encode(str(value))

        with self._writing(name):
            self._write(header)
            self._write(payload)
            self._write(CRLF.encode("ascii"))
            self._sink.flush()
        logger.debug("emitted value part %r (%d bytes)", name, len(payload))

    def emit_bytes(
        self,
        name: str,
        mime_type: str | None,
        file_name: str,
        data: bytes | bytearray | memoryview,
    ) -> None:
        """Write an in-memory buffer as a file attachment, byte for byte."""
        self._check_usable()
        if data is None:
            raise InvalidArgument("data must not be None")
        if not isinstance(data, BYTES_LIKE):
            raise InvalidArgument(
                f"data must be bytes-like, got {type(data).__name__}"
            )
        self._check_part(name, file_name, is_file=True)
        header = self._part_header(name, mime_type, file_name)

        with self._writing(name):
            self._write(header)
            self._write(data)
            self._write(CRLF.encode("ascii"))
            self._sink.flush()
        logger.debug("emitted file part %r as %r (%d bytes)", name, file_name, _nbytes(data))

    def emit_stream(
        self,
        name: str,
        mime_type: str | None,
        file_name: str,
        source: ByteSource,
    ) -> None:
        """Copy *source* into a file attachment using a bounded buffer.

        *source* is read until exhausted and then closed. A failure to close
        it is ignored, since the content has already been written.
        """
        self._check_usable()
        if source is None:
            raise InvalidArgument("source must not be None")
        if isinstance(source, io.TextIOBase):
            raise InvalidArgument("source must be opened in binary mode")
        self._check_part(name, file_name, is_file=True)
        header = self._part_header(name, mime_type, file_name)

        copied = 0
        with self._writing(name):
            try:
                self._write(header)
                while True:
                    chunk = source.read(self._chunk_size)
                    if chunk is None:
                        raise IOFailure(
                            "byte source has no data ready; non-blocking sources are not supported",
                            part_name=name,
                        )
                    if not isinstance(chunk, BYTES_LIKE):
                        raise IOFailure(
                            f"byte source returned {type(chunk).__name__}, expected bytes",
                            part_name=name,
                        )
                    if not chunk:
                        break
                    self._write(chunk)
                    copied += _nbytes(chunk)
            finally:
                _release_source(source)
            self._write(CRLF.encode("ascii"))
            self._sink.flush()
        logger.debug("emitted streamed file part %r as %r (%d bytes)", name, file_name, copied)

    def emit_file(
        self,
        name: str,
        mime_type: str | None,
        path: str | os.PathLike[str],
    ) -> None:
        """Stream the file at *path*, named by its canonical path."""
        self._check_usable()
        if path is None:
            raise InvalidArgument("path must not be None")
        path = os.fspath(path)
        if not os.path.exists(path):
            raise InvalidArgument(f"file does not exist: {path!r}")
        if os.path.isdir(path):
            raise InvalidArgument(f"file cannot be a directory: {path!r}")

        file_name = os.path.realpath(path)
        self._check_part(name, file_name, is_file=True)
        try:
            source = open(file_name, "rb")
        except OSError as exc:
            raise IOFailure(f"cannot open {file_name!r}: {exc}", part_name=name) from exc
        self.emit_stream(name, mime_type, file_name, source)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Write the closing boundary, flush and release the sink.

        Closing twice is a :class:`UsageError`. If an earlier part failed
        the terminator is not written and the sink is only released.
        """
        if self._state is EncoderState.CLOSED:
            raise UsageError("multipart encoder is already closed")

        try:
            if not self._failed:
                with self._writing(None):
                    self._write(self._encode(f"--{self._boundary}--{CRLF}"))
                    self._sink.flush()
        finally:
            self._state = EncoderState.CLOSED
            self._sink.close()
        logger.debug(
            "closed multipart body %r after %d bytes", self._boundary, self._bytes_written
        )

    def abort(self) -> None:
        """Release the sink without terminating the body."""
        if self._state is EncoderState.CLOSED:
            return
        self._state = EncoderState.CLOSED
        logger.debug("aborting multipart body %r", self._boundary)
        self._sink.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_usable(self) -> None:
        if self._state is EncoderState.CLOSED:
            raise UsageError("cannot emit a part on a closed multipart encoder")
        if self._failed:
            raise UsageError(
                "a previous part failed to write; the multipart body is no longer well-framed"
            )

    def _check_part(
        self, name: str, file_name: str | None = None, *, is_file: bool = False
    ) -> None:
        if not name:
            raise InvalidArgument("field name must be provided")
        if is_file and not file_name:
            raise InvalidArgument("file name must be provided")
        if self._validate_names:
            for label, value in (("field name", name), ("file name", file_name)):
                if value is not None and any(c in value for c in _UNSAFE_NAME_CHARS):
                    raise InvalidArgument(
                        f"{label} {value!r} contains a quote or line break"
                    )

    def _part_header(self, name: str, mime_type: str | None, file_name: str | None) -> bytes:
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if file_name is not None:
            disposition += f'; filename="{file_name}"'
        lines = [f"--{self._boundary}", disposition]
        if mime_type:
            lines.append(f"Content-Type: {mime_type}")
        return self._encode(CRLF.join(lines) + CRLF + CRLF)

    def _encode(self, text: str) -> bytes:
        try:
            return text.encode(self._encoding)
        except UnicodeEncodeError as exc:
            raise InvalidArgument(
                f"cannot encode {text!r} as {self._encoding}: {exc.reason}"
            ) from exc

    def _write(self, data: bytes | bytearray | memoryview) -> None:
        self._sink.write(data)
        self._bytes_written += _nbytes(data)

    @contextlib.contextmanager
    def _writing(self, part_name: str | None) -> typing.Iterator[None]:
        try:
            yield
        except IOFailure:
            self._failed = True
            raise
        except OSError as exc:
            self._failed = True
            what = "closing boundary" if part_name is None else f"part {part_name!r}"
            raise IOFailure(f"failed to write {what}: {exc}", part_name=part_name) from exc
        except Exception:
            self._failed = True
            raise


def _nbytes(data: bytes | bytearray | memoryview) -> int:
    return memoryview(data).nbytes

def _release_source(source: ByteSource) -> None:
    try:
        source.close()
    except Exception as exc:
        logger.debug("ignoring failure while closing byte source: %r", exc)
