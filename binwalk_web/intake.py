"""Multipart intake for ``/api/analyze``.

Reads the ``file`` and ``options`` parts out of an upload without trusting the
body to be well formed. Part payloads are kept as the raw bytes on the wire,
whether or not the part declares a filename. Bad options degrade to defaults;
a missing file or an unparseable body is a client error.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import Request
from pydantic import ValidationError
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect

from .errors import InvalidOptions, MalformedUpload, MissingFile
from .models import AnalyzeOptions

logger = logging.getLogger("binwalk-web.intake")

WANTED_PARTS = ("file", "options")


@dataclass
class Upload:
    data: bytes
    filename: Optional[str] = None
    options: AnalyzeOptions = field(default_factory=AnalyzeOptions)


@dataclass
class Part:
    name: str = ""
    filename: Optional[str] = None
    chunks: List[bytes] = field(default_factory=list)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class PartCollector:
    """python-multipart callbacks that keep only the parts we care about."""

    def __init__(self):
        self.parts: List[Part] = []
        self._current: Optional[Part] = None
        self._headers: Dict[bytes, bytes] = {}
        self._field = b""
        self._value = b""

    def callbacks(self):
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self) -> None:
        self._current = None
        self._headers = {}
        self._field = b""
        self._value = b""

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._field.lower()] = self._value
        self._field = b""
        self._value = b""

    def on_headers_finished(self) -> None:
        _, params = parse_options_header(self._headers.get(b"content-disposition", b""))
        name = params.get(b"name", b"").decode("utf-8", "replace")
        if name not in WANTED_PARTS:
            return
        filename = params.get(b"filename")
        self._current = Part(
            name=name,
            filename=filename.decode("utf-8", "replace") if filename is not None else None,
        )

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._current is not None:
            self._current.chunks.append(data[start:end])

    def on_part_end(self) -> None:
        if self._current is not None:
            self.parts.append(self._current)
        self._current = None


def parse_options(raw: bytes) -> AnalyzeOptions:
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise InvalidOptions("options must be a JSON object")
        return AnalyzeOptions.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise InvalidOptions(f"options could not be parsed: {exc}") from exc


async def read_parts(request: Request) -> List[Part]:
    content_type, params = parse_options_header(request.headers.get("content-type", ""))
    if content_type != b"multipart/form-data":
        # nothing that could carry a file part
        return []
    boundary = params.get(b"boundary")
    if not boundary:
        raise MalformedUpload("Malformed multipart body: missing boundary")

    collector = PartCollector()
    parser = MultipartParser(boundary, collector.callbacks())
    try:
        async for chunk in request.stream():
            parser.write(chunk)
        parser.finalize()
    except MultipartParseError as exc:
        raise MalformedUpload(f"Malformed multipart body: {exc}") from exc
    except ClientDisconnect as exc:
        logger.info("Client disconnected during upload")
        raise MalformedUpload("Client disconnected during upload") from exc
    return collector.parts


async def parse_upload(request: Request) -> Upload:
    data: Optional[bytes] = None
    filename: Optional[str] = None
    options: Optional[AnalyzeOptions] = None

    for part in await read_parts(request):
        if part.name == "file":
            data = part.data
            filename = part.filename
        elif part.name == "options":
            try:
                options = parse_options(part.data)
            except InvalidOptions as exc:
                logger.warning("%s; using defaults", exc.message)
                options = None

    if data is None:
        raise MissingFile()
    return Upload(data=data, filename=filename, options=options or AnalyzeOptions())
