"""Static file serving handler."""

import email.utils
import logging
import mimetypes
import os
import secrets
import urllib.parse
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from static_server.domain.byte_ranges import (
    ByteRange,
    RangeNotSatisfiable,
    parse_range_header,
)
from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.domain.http_types import HttpRequest, HttpResponse, should_close
from static_server.domain.response_builders import (
    forbidden_response,
    internal_error_response,
    method_not_allowed_response,
    not_found_response,
    not_modified_response,
    options_response,
    range_not_satisfiable_response,
    redirect_response,
)
from static_server.domain.sandbox import AliasedPath, ForbiddenPath, resolve_sandbox_path

FILE_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.handlers.file"), {}
)

ALLOWED_METHODS = ("GET", "HEAD", "POST", "OPTIONS")
READ_METHODS = {"GET", "HEAD", "POST"}
WELCOME_FILE = "index.html"
CHUNK_SIZE = 65536


def _read_span(
    file_handle: BinaryIO, start: int, length: int, chunk_size: int = CHUNK_SIZE
) -> Iterator[bytes]:
    file_handle.seek(start)
    remaining = length
    while remaining > 0:
        chunk = file_handle.read(min(chunk_size, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


class FileStream:
    """Response body read lazily from an open file it owns.

    The handle is closed when iteration ends or when ``close`` is called,
    including when the body was never iterated at all.
    """

    def __init__(self, file_handle: BinaryIO, chunks: Iterator[bytes]) -> None:
        self._file_handle = file_handle
        self._chunks = chunks

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from self._chunks
        finally:
            self.close()

    
    def closed(self) -> bool:
        return self._file_handle.closed

    def close(self) -> None:
        close_chunks = getattr(self._chunks, "close", None)
        if close_chunks is not None:
            close_chunks()
        self._file_handle.close()


def stream_file(
    file_handle: BinaryIO, start: int, length: int, chunk_size: int = CHUNK_SIZE
) -> FileStream:
    """Stream ``length`` bytes from ``start`` in chunks, closing the handle after."""
    return FileStream(file_handle, _read_span(file_handle, start, length, chunk_size))


def _multipart_chunks(
    file_handle: BinaryIO, parts: list[tuple[bytes, ByteRange]], trailer: bytes
) -> Iterator[bytes]:
    for part_header, byte_range in parts:
        yield part_header
        yield from _read_span(file_handle, byte_range.start, byte_range.length)
    yield trailer


def _multipart_body(
    file_handle: BinaryIO, ranges: list[ByteRange], content_type: str, size: int
) -> tuple[str, int, FileStream]:
    """Lay out a multipart/byteranges payload; return its type, length and stream."""
    boundary = secrets.token_hex(16)
    parts = [
        (
            (
                f"\r\n--{boundary}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Range: {byte_range.content_range(size)}\r\n\r\n"
            ).encode("ascii"),
            byte_range,
        )
        for byte_range in ranges
    ]
    trailer = f"\r\n--{boundary}--\r\n".encode("ascii")
    content_length = len(trailer) + sum(
        len(part_header) + byte_range.length for part_header, byte_range in parts
    )
    return (
        f"multipart/byteranges; boundary={boundary}",
        content_length,
        FileStream(file_handle, _multipart_chunks(file_handle, parts, trailer)),
    )


def _content_type_for_path(filepath: Path) -> str:
    mime_type, _ = mimetypes.guess_type(filepath.as_posix())
    return mime_type or "application/octet-stream"


def _entity_tag(stat_result: os.stat_result) -> str:
    return f'"{stat_result.st_mtime_ns:x}-{stat_result.st_size:x}"'


def _strip_weak(tag: str) -> str:
    return tag[2:] if tag.startswith("W/") else tag


def _none_match(header_value: str, etag: str) -> bool:
    """Weak comparison of an If-None-Match list against the current tag."""
    candidates = [item.strip() for item in header_value.split(",")]
    return "*" in candidates or _strip_weak(etag) in {
        _strip_weak(candidate) for candidate in candidates
    }


def _not_modified_since(header_value: str, mtime: float) -> bool:
    try:
        since: Optional[datetime] = email.utils.parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return False
    if since is None or since.tzinfo is None:
        return False
    return int(mtime) <= since.timestamp()


class StaticFileHandler:
    """Serve files below a fixed root directory, honoring ranges and validators."""

    def __init__(self, root_directory: str) -> None:
        root = Path(root_directory)
        if not root.is_dir():
            raise NotADirectoryError(f"Root is not a directory: {root_directory}")
        self._root = root.resolve().as_posix()
        mimetypes.init()

    @property
    def root_directory(self) -> str:
        return self._root

    def serve(self, request: HttpRequest) -> HttpResponse:
        """Answer a request for the file (or directory) named by its path."""
        if request.method == "OPTIONS":
            return options_response(request, ALLOWED_METHODS)
        if request.method not in READ_METHODS:
            FILE_LOGGER.warning(
                "Unsupported method",
                extra={
                    "event": "method_not_allowed",
                    "route": request.path,
                    "method": request.method,
                },
            )
            return method_not_allowed_response(request, ALLOWED_METHODS)

        try:
            resolved_path = resolve_sandbox_path(self._root, request.path)
        except AliasedPath:
            FILE_LOGGER.warning(
                "Path resolves outside the root",
                extra={"event": "aliased_path", "route": request.path},
            )
            return not_found_response(request)
        except ForbiddenPath:
            FILE_LOGGER.warning(
                "Forbidden path access blocked",
                extra={"event": "forbidden_path", "route": request.path},
            )
            return forbidden_response(request)

        if resolved_path.is_dir():
            return self._directory_response(request, resolved_path)
        if not resolved_path.is_file() or request.path.endswith("/"):
            FILE_LOGGER.info(
                "File not found",
                extra={
                    "event": "file_not_found",
                    "route": request.path,
                    "method": request.method,
                },
            )
            return not_found_response(request)
        return self._file_response(request, resolved_path)

    def _directory_response(
        self, request: HttpRequest, directory: Path
    ) -> HttpResponse:
        if not request.path.endswith("/"):
            location = urllib.parse.quote(request.path + "/")
            return redirect_response(request, location)
        welcome = directory / WELCOME_FILE
        if welcome.is_file():
            return self._file_response(request, welcome)
        FILE_LOGGER.info(
            "Directory listing refused",
            extra={"event": "directory_forbidden", "route": request.path},
        )
        return forbidden_response(request)

    def _file_response(self, request: HttpRequest, resolved_path: Path) -> HttpResponse:
        # pylint: disable=consider-using-with
        try:
            file_handle = open(resolved_path, "rb")
        except FileNotFoundError:
            return not_found_response(request)
        except OSError as error:
            FILE_LOGGER.error(
                "File could not be opened",
                extra={
                    "event": "file_open_failed",
                    "route": request.path,
                    "error_type": type(error).__name__,
                },
            )
            return internal_error_response(request)

        try:
            response = self._build_entity_response(request, resolved_path, file_handle)
        except BaseException:
            file_handle.close()
            raise
        if response.body_iter is None:
            file_handle.close()
        return response

    def _build_entity_response(
        self, request: HttpRequest, resolved_path: Path, file_handle: BinaryIO
    ) -> HttpResponse:
        stat_result = os.fstat(file_handle.fileno())
        size = stat_result.st_size
        etag = _entity_tag(stat_result)
        last_modified = email.utils.formatdate(stat_result.st_mtime, usegmt=True)
        validators = {"ETag": etag, "Last-Modified": last_modified}
        content_type = _content_type_for_path(resolved_path)

        if request.method in {"GET", "HEAD"}:
            if_none_match = request.headers.get("if-none-match")
            if if_none_match is not None:
                if _none_match(if_none_match, etag):
                    return not_modified_response(request, validators)
            elif _not_modified_since(
                request.headers.get("if-modified-since", ""), stat_result.st_mtime
            ):
                return not_modified_response(request, validators)

        headers = {
            "Content-Type": content_type,
            "Accept-Ranges": "bytes",
            **validators,
        }
        close_connection = should_close(request)

        ranges = None
        range_header = request.headers.get("range")
        if_range = request.headers.get("if-range")
        if (
            request.method == "GET"
            and range_header is not None
            and (if_range is None or if_range.strip() in {etag, last_modified})
        ):
            try:
                ranges = parse_range_header(range_header, size)
            except RangeNotSatisfiable:
                FILE_LOGGER.info(
                    "Range not satisfiable",
                    extra={
                        "event": "range_not_satisfiable",
                        "route": request.path,
                        "range": range_header,
                    },
                )
                return range_not_satisfiable_response(request, size)

        if ranges is None:
            status_line, content_length = "HTTP/1.1 200 OK", size
            body_iter = stream_file(file_handle, 0, size)
        elif len(ranges) == 1:
            byte_range = ranges[0]
            headers["Content-Range"] = byte_range.content_range(size)
            status_line, content_length = "HTTP/1.1 206 Partial Content", byte_range.length
            body_iter = stream_file(file_handle, byte_range.start, byte_range.length)
        else:
            status_line = "HTTP/1.1 206 Partial Content"
            headers["Content-Type"], content_length, body_iter = _multipart_body(
                file_handle, ranges, content_type, size
            )

        if FILE_LOGGER.logger.isEnabledFor(logging.DEBUG):
            FILE_LOGGER.debug(
                "File response prepared",
                extra={
                    "event": "file_read_started",
                    "route": request.path,
                    "method": request.method,
                    "bytes_out": content_length,
                },
            )

        if request.method == "HEAD":
            body_iter.close()
            body_iter = None
        return HttpResponse(
            status_line,
            headers,
            b"",
            close_connection,
            body_iter=body_iter,
            content_length=content_length,
        )
