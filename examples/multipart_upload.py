"""
Multipart Uploads
=================

Encoding a form body by hand, and posting one through the request builder.
"""

import io
import tempfile
from pathlib import Path

import formpost


class KeepBuffer(io.BytesIO):
    """BytesIO that survives the encoder closing it."""

    def close(self) -> None:
        pass


def main() -> None:
    # ── Encode a body into memory ────────────────────────────────────────
    sink = KeepBuffer()
    with formpost.MultipartEncoder(sink, formpost.create_random_boundary()) as encoder:
        encoder.emit_value("title", "holiday")
        encoder.emit_bytes("notes", "text/plain", "notes.txt", b"sunny\n")
        encoder.emit_stream("raw", "application/octet-stream", "raw.bin", io.BytesIO(b"\x00\x01"))
    print(f"Content-Type:   {encoder.content_type}")
    print(f"Content-Length: {encoder.bytes_written}")
    print()

    # ── Post a form with a file attachment ───────────────────────────────
    with tempfile.TemporaryDirectory() as tmp:
        photo = Path(tmp) / "photo.jpg"
        photo.write_bytes(b"\xff\xd8\xff\xe0 not really a jpeg")

        with formpost.HttpClientFacade() as http:
            result = (
                http.as_fetch_request("https://httpbin.org/post")
                .with_form_field("title", "holiday")
                .with_form_file("photo", "image/jpeg", photo)
                .execute()
            )
        print(f"POST → {result.status_code}")
        print(f"  Received {result.content_size} bytes")

    # ── Check a page for a pattern ───────────────────────────────────────
    with formpost.HttpClientFacade() as http:
        result = http.as_match_request(r"Herman Melville", "https://httpbin.org/html").execute()
    print(f"Match → {result.value}")


if __name__ == "__main__":
    main()
