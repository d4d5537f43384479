"""Static-file serving over CDP request interception.

In static mode every request the tab issues pauses in the ``Fetch`` domain.
The URL path is mapped onto the content root and the file is returned with
``Fetch.fulfillRequest``; no socket server is involved.

Mapping rules:
- an empty path or ``/`` serves the configured home document;
- the leading ``/`` is dropped and ``/`` becomes the native separator;
- the content type comes from the resource kind the browser declares, with
  extension tables for images and fonts.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import unquote, urlsplit

from .errors import CdpError
from .target import ResolvedTarget

_LOGGER = logging.getLogger("chrome_shell.interceptor")

IMAGE_CONTENT_TYPES: dict[str, str] = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "svg": "image/svg+xml",
    "gif": "image/gif",
    "webp": "image/webp",
    "png": "image/png",
    "ico": "image/ico",
    "tiff": "image/tiff",
    "tif": "image/tiff",
    "bmp": "image/bmp",
}

FONT_CONTENT_TYPES: dict[str, str] = {
    "ttf": "font/opentype",
    "otf": "font/opentype",
    "ttc": "font/opentype",
    "woff": "application/font-woff",
}

DEFAULT_IMAGE_CONTENT_TYPE = "image/png"
DEFAULT_FONT_CONTENT_TYPE = "application/font-woff"


class ResourceKind(str, Enum):
    DOCUMENT = "document"
    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    FONT = "font"
    OTHER = "other"

    @classmethod
    def from_cdp(cls, raw: str | None) -> ResourceKind:
        """Map a CDP Network.ResourceType ("Document", "Stylesheet", ...) to a kind."""
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.OTHER

    @property
    def is_binary(self) -> bool:
        return self in (ResourceKind.IMAGE, ResourceKind.FONT)


@dataclass(frozen=True, slots=True)
class InterceptedRequest:
    request_id: str
    url: str
    resource_kind: ResourceKind
    resource_type: str = ""

    @classmethod
    def from_event(cls, params: dict[str, Any]) -> InterceptedRequest:
        """Build from Fetch.requestPaused params."""
        request = params.get("request") if isinstance(params.get("request"), dict) else {}
        raw_type = str(params.get("resourceType") or "")
        return cls(
            request_id=str(params.get("requestId") or ""),
            url=str(request.get("url") or ""),
            resource_kind=ResourceKind.from_cdp(raw_type),
            resource_type=raw_type,
        )


@dataclass(frozen=True, slots=True)
class SynthesizedResponse:
    content_type: str
    status: int = 200
    text: str | None = None
    data: bytes | None = None

    def __post_init__(self) -> None:
        if (self.text is None) == (self.data is None):
            raise ValueError("SynthesizedResponse needs exactly one of text or data")

    def body_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        return (self.text or "").encode("utf-8")

    def to_fulfill_params(self, request_id: str) -> dict[str, Any]:
        return {
            "requestId": request_id,
            "responseCode": self.status,
            "responseHeaders": [{"name": "Content-Type", "value": self.content_type}],
            "body": base64.b64encode(self.body_bytes()).decode("ascii"),
        }


@dataclass(frozen=True, slots=True)
class ServeFile:
    path: Path
    content_type: str
    binary: bool


@dataclass(frozen=True, slots=True)
class MissingFile:
    path: Path


@dataclass(frozen=True, slots=True)
class UnsupportedResource:
    kind: str
    path: Path


Resolution = ServeFile | MissingFile | UnsupportedResource


def relative_file_path(url: str, home_path: str) -> str:
    path = unquote(urlsplit(url).path)
    if not path.strip() or path == "/":
        path = unquote(home_path)
    if path.startswith("/"):
        path = path[1:]
    return path.replace("/", os.sep)


def file_extension(file_name: str) -> str:
    return file_name[file_name.rfind(".") + 1 :]


def content_type_for(kind: ResourceKind, extension: str) -> str | None:
    """Content type for a resource kind, or None when the kind cannot be served."""
    if kind is ResourceKind.DOCUMENT:
        return "text/html"
    if kind is ResourceKind.SCRIPT:
        return "text/javascript"
    if kind is ResourceKind.STYLESHEET:
        return "text/css"
    if kind is ResourceKind.IMAGE:
        return IMAGE_CONTENT_TYPES.get(extension, DEFAULT_IMAGE_CONTENT_TYPE)
    if kind is ResourceKind.FONT:
        return FONT_CONTENT_TYPES.get(extension, DEFAULT_FONT_CONTENT_TYPE)
    return None


def _within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def resolve_request(request: InterceptedRequest, target: ResolvedTarget) -> Resolution:
    relative = relative_file_path(request.url, target.home_path)
    path = target.content_root / relative
    if not _within(path, target.content_root) or not path.is_file():
        return MissingFile(path)

    content_type = content_type_for(request.resource_kind, file_extension(relative))
    if content_type is None:
        return UnsupportedResource(kind=request.resource_type or request.resource_kind.value, path=path)
    return ServeFile(path=path, content_type=content_type, binary=request.resource_kind.is_binary)


def read_response(serve: ServeFile) -> SynthesizedResponse:
    if serve.binary:
        return SynthesizedResponse(content_type=serve.content_type, data=serve.path.read_bytes())
    with open(serve.path, encoding="utf-8", errors="replace", newline="") as fh:
        return SynthesizedResponse(content_type=serve.content_type, text=fh.read())


def not_found_response(missing: MissingFile, target: ResolvedTarget) -> SynthesizedResponse:
    try:
        shown = missing.path.relative_to(target.content_root).as_posix()
    except ValueError:
        shown = missing.path.name
    return SynthesizedResponse(content_type="text/plain", status=404, text=f"Not found: {shown}")


class CommandSender(Protocol):
    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...


class StaticRequestHandler:
    """Fetch.requestPaused subscriber answering from the content root."""

    def __init__(self, conn: CommandSender, target: ResolvedTarget, *, missing_file_policy: str = "not_found") -> None:
        self.conn = conn
        self.target = target
        self.missing_file_policy = missing_file_policy

    def __call__(self, params: dict[str, Any]) -> None:
        request = InterceptedRequest.from_event(params)
        if not request.request_id:
            return
        try:
            self.handle(request)
        except CdpError as exc:
            # Typically the tab went away while the request was in flight.
            _LOGGER.debug("static_respond_failed url=%s reason=%s", request.url, exc)

    def handle(self, request: InterceptedRequest) -> None:
        resolution = resolve_request(request, self.target)

        if isinstance(resolution, MissingFile):
            _LOGGER.info("static_missing url=%s path=%s", request.url, resolution.path)
            if self.missing_file_policy == "ignore":
                return
            self.respond(request, not_found_response(resolution, self.target))
            return

        if isinstance(resolution, UnsupportedResource):
            _LOGGER.warning("static_unsupported kind=%s url=%s", resolution.kind, request.url)
            self.fail(request, "BlockedByClient")
            return

        try:
            response = read_response(resolution)
        except OSError as exc:
            _LOGGER.warning("static_read_failed path=%s reason=%s", resolution.path, exc)
            self.fail(request, "Failed")
            return
        self.respond(request, response)

    def respond(self, request: InterceptedRequest, response: SynthesizedResponse) -> None:
        self.conn.send("Fetch.fulfillRequest", response.to_fulfill_params(request.request_id))

    def fail(self, request: InterceptedRequest, reason: str) -> None:
        self.conn.send("Fetch.failRequest", {"requestId": request.request_id, "errorReason": reason})
