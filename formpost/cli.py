from __future__ import annotations

import json
import sys
import time
import typing

import click

from ._exceptions import FormPostError
from ._multipart import MultipartEncoder
from ._request import DEFAULT_TEXT_TYPES, FormField, HttpClientFacade, is_text_content_type

# ---------------------------------------------------------------------------
# Rich output helpers (graceful fallback when rich is not installed)
# ---------------------------------------------------------------------------

try:
    from rich.console import Console
    from rich.syntax import Syntax
    from rich.text import Text

    HAS_RICH = True
except ImportError:  # pragma: no cover
    HAS_RICH = False


def _status_color(status_code: int) -> str:
    """Return a rich color name based on HTTP status category."""
    if status_code < 200:
        return "cyan"
    elif status_code < 300:
        return "green"
    elif status_code < 400:
        return "yellow"
    elif status_code < 500:
        return "red"
    else:
        return "bold red"


def is_binary_content(content: bytes) -> bool:
    return b"\0" in content


def is_binary_content_type(content_type: str) -> bool:
    ct = content_type.lower().split(";")[0].strip()
    return ct != "" and not is_text_content_type(ct, DEFAULT_TEXT_TYPES)


# ---------------------------------------------------------------------------
# Plain-text formatter (used with --no-color or when rich is missing)
# ---------------------------------------------------------------------------


def format_response_plain(response: typing.Any) -> str:
    status_line = (
        f"{response.http_version} {response.status_code} {response.reason_phrase}"
    ).rstrip()
    lines: list[str] = [status_line]

    headers = response.headers
    for key, value in headers.items():
        lines.append(f"{key}: {value}")

    lines.append("")

    content = response.content
    if content:
        content_type = headers.get("content-type", "")

        if is_binary_content_type(content_type) or is_binary_content(content):
            lines.append(f"<{len(content)} bytes of binary data>")
        elif "application/json" in content_type:
            try:
                data = json.loads(response.text)
                lines.append(json.dumps(data, indent=4, ensure_ascii=False))
            except (json.JSONDecodeError, TypeError):
                lines.append(response.text)
        else:
            lines.append(response.text)

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Rich formatter
# ---------------------------------------------------------------------------


def print_response_rich(console: Console, response: typing.Any) -> None:
    """Pretty-print a response using rich."""
    color = _status_color(response.status_code)

    status_line = Text()
    status_line.append(f"{response.http_version} ", style="bold dim")
    status_line.append(f"{response.status_code}", style=f"bold {color}")
    if response.reason_phrase:
        status_line.append(f" {response.reason_phrase}", style=color)
    console.print(status_line)

    headers = response.headers
    for key, value in headers.items():
        header_text = Text()
        header_text.append(f"{key}", style="dim cyan")
        header_text.append(": ", style="dim")
        header_text.append(value)
        console.print(header_text)

    console.print()

    content = response.content
    if content:
        content_type = headers.get("content-type", "")

        if is_binary_content_type(content_type) or is_binary_content(content):
            console.print(f"[dim]<{len(content)} bytes of binary data>[/dim]")
        elif "application/json" in content_type:
            try:
                formatted = json.dumps(json.loads(response.text), indent=4, ensure_ascii=False)
                console.print(Syntax(formatted, "json", theme="monokai"))
            except (json.JSONDecodeError, TypeError):
                console.print(response.text)
        else:
            console.print(response.text)


# ---------------------------------------------------------------------------
# Option parsing helpers (curl-style -H "Key: Value" and -F name=value)
# ---------------------------------------------------------------------------


def parse_header(header: str) -> tuple[str, str]:
    """Parse a 'Key: Value' header string."""
    if ":" not in header:
        raise click.BadParameter(
            f"Invalid header format: '{header}'. Expected 'Key: Value'."
        )
    key, _, value = header.partition(":")
    return key.strip(), value.strip()


def parse_form_field(field: str) -> FormField:
    """Parse ``name=value`` or ``name=@path[;type=mime/type]``."""
    if "=" not in field:
        raise click.BadParameter(
            f"Invalid form field: '{field}'. Expected 'name=value' or 'name=@path'."
        )
    name, _, value = field.partition("=")
    name = name.strip()
    if not name:
        raise click.BadParameter(f"Invalid form field: '{field}'. Missing field name.")

    if not value.startswith("@"):
        return FormField(name, value=value)

    path, _, params = value[1:].partition(";")
    mime_type = None
    if params:
        key, _, param_value = params.partition("=")
        if key.strip().lower() != "type" or not param_value.strip():
            raise click.BadParameter(
                f"Invalid form field: '{field}'. Only ';type=<mime>' is supported."
            )
        mime_type = param_value.strip()
    if not path:
        raise click.BadParameter(f"Invalid form field: '{field}'. Missing file path.")
    return FormField(name, mime_type=mime_type, path=path)


class _KeepOpen:
    """Sink adapter that flushes instead of closing the wrapped stream."""

    def __init__(self, stream: typing.BinaryIO) -> None:
        self._stream = stream

    def write(self, data: bytes) -> int:
        return self._stream.write(data)

    def flush(self) -> None:
        self._stream.flush()

    def close(self) -> None:
        self._stream.flush()


def _dump_body(target: str, fields: list[FormField], boundary: str | None) -> MultipartEncoder:
    if boundary is not None and not boundary:
        raise click.BadParameter("boundary must not be empty", param_hint="'--boundary'")
    if target == "-":
        sink: typing.Any = _KeepOpen(click.get_binary_stream("stdout"))
    else:
        try:
            sink = open(target, "wb")
        except OSError as exc:
            raise click.FileError(target, hint=exc.strerror) from exc
    try:
        encoder = MultipartEncoder(sink, boundary)
    except BaseException:
        sink.close()
        raise
    with encoder:
        for field in fields:
            field.emit(encoder)
    return encoder


# ---------------------------------------------------------------------------
# CLI command
# ---------------------------------------------------------------------------


@click.command(help="Submit HTML-style forms over HTTP, multipart uploads included.")
@click.argument("url", required=False)
@click.option("-m", "--method", default=None, help="HTTP method.")
@click.option("-d", "--data", default=None, help="Raw body to send as a POST.")
@click.option(
    "-F",
    "--form",
    "form_fields",
    multiple=True,
    help='Add a form field, e.g. -F title=hello or -F "upload=@file.txt;type=text/plain".',
)
@click.option(
    "-H",
    "--header",
    "headers",
    multiple=True,
    help='Add a header, e.g. -H "Authorization: Bearer token".',
)
@click.option("--boundary", default=None, help="Use a fixed multipart boundary.")
@click.option(
    "--dump",
    default=None,
    help="Write the encoded multipart body to a file ('-' for stdout) instead of sending it.",
)
@click.option(
    "--no-follow-redirects", is_flag=True, default=False, help="Do not follow redirects."
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose output.")
@click.option(
    "--no-color", is_flag=True, default=False, help="Disable colored output."
)
def main(
    url: str | None,
    method: str | None,
    data: str | None,
    form_fields: tuple[str, ...],
    headers: tuple[str, ...],
    boundary: str | None,
    dump: str | None,
    no_follow_redirects: bool,
    verbose: bool,
    no_color: bool,
) -> None:
    use_rich = HAS_RICH and not no_color and sys.stdout.isatty()
    fields = [parse_form_field(f) for f in form_fields]

    if data is not None and fields:
        raise click.UsageError("--data and --form cannot be combined.")

    try:
        if dump is not None:
            if not fields:
                raise click.UsageError("--dump needs at least one --form field.")
            encoder = _dump_body(dump, fields, boundary)
            if verbose:
                click.echo(
                    f"Content-Type: {encoder.content_type}\n"
                    f"Content-Length: {encoder.bytes_written}",
                    err=True,
                )
            return

        if url is None:
            raise click.UsageError("Missing argument 'URL'.")

        with HttpClientFacade() as http:
            request = http.as_fetch_request(url).with_follow_redirects(
                not no_follow_redirects
            )
            for h in headers:
                key, value = parse_header(h)
                request = request.with_header(key, value)
            if method is not None:
                request = request.with_method(method)
            if boundary is not None:
                request = request.with_boundary(boundary)
            if data is not None:
                request = request.with_post_body(data)
            for field in fields:
                if field.is_file:
                    request = request.with_form_file(
                        field.name, field.mime_type, typing.cast(str, field.path)
                    )
                else:
                    request = request.with_form_field(field.name, field.value)

            if verbose:
                click.echo(
                    f"> {request.config.effective_method} {url} "
                    f"({request.submission_type.value.lower()})",
                    err=True,
                )

            start_time = time.monotonic()
            result = request.execute()
            elapsed_ms = (time.monotonic() - start_time) * 1000
            response = result.response

            if use_rich:
                console = Console()
                for hist_resp in response.history:
                    print_response_rich(console, hist_resp)
                    console.print()
                print_response_rich(console, response)
                if verbose:
                    console.print()
                    console.print(f"[dim]⏱  Total: {elapsed_ms:.1f}ms[/dim]")
            else:
                for hist_resp in response.history:
                    click.echo(format_response_plain(hist_resp))
                    click.echo()
                click.echo(format_response_plain(response))
                if verbose:
                    click.echo()
                    click.echo(f"Total: {elapsed_ms:.1f}ms")

            if response.status_code >= 300:
                sys.exit(1)

    except FormPostError as exc:
        if use_rich:
            console = Console(stderr=True)
            console.print(f"[bold red]{type(exc).__name__}[/bold red]: {exc}")
        else:
            click.echo(f"{type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
