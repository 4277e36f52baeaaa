"""Media acquisition: turn any media reference into bytes or a local file.

A reference is classified once, in this order: raw bytes, http(s) URL,
``data:`` URI, base64-looking text, local path. The base64 check is a
heuristic; text that fails to decode is treated as a path.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote_to_bytes

from mediaclassify.errors import InvalidInputError, NotFoundError
from mediaclassify.media.net import fetch_bytes

if TYPE_CHECKING:
    from types import TracebackType

    import httpx

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "mediaclassify-"
TEMP_FILE_NAME = "input"

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")


class ReferenceKind(StrEnum):
    URL = "url"
    LOCAL_PATH = "local_path"
    RAW_BYTES = "raw_bytes"
    DATA_URI = "data_uri"
    BASE64 = "base64"


class IoMode(StrEnum):
    MEMORY = "memory"
    DISK = "disk"


def looks_base64(text: str) -> bool:
    """Return True if ``text`` uses only the base64 alphabet and has a valid length."""
    return bool(_BASE64_RE.match(text)) and len(text) % 4 == 0


@dataclass(frozen=True)
class MediaReference:
    """A caller-supplied identifier or payload for one image or video."""

    kind: ReferenceKind
    value: str | bytes

    @classmethod
    def parse(cls, raw: object) -> MediaReference:
        """Classify a raw input into a reference.

        Raises:
            InvalidInputError: If the input is empty or of an unsupported type.
        """
        if isinstance(raw, MediaReference):
            return raw
        if isinstance(raw, (bytes, bytearray, memoryview)):
            data = bytes(raw)
            if not data:
                raise InvalidInputError("Media buffer is empty")
            return cls(ReferenceKind.RAW_BYTES, data)
        if isinstance(raw, Path):
            raw = str(raw)
        if not isinstance(raw, str) or not raw:
            raise InvalidInputError("Media reference must be a non-empty string or bytes buffer")
        if raw.startswith(("http://", "https://")):
            return cls(ReferenceKind.URL, raw)
        if raw.startswith("data:"):
            return cls(ReferenceKind.DATA_URI, raw)
        if looks_base64(raw):
            return cls(ReferenceKind.BASE64, raw)
        return cls(ReferenceKind.LOCAL_PATH, raw)

    def describe(self) -> str:
        """Short printable form used in result envelopes and error messages."""
        return describe_input(self.value)


def describe_input(raw: object) -> str:
    """Printable form of any raw input; long payloads are abbreviated."""
    if isinstance(raw, MediaReference):
        return raw.describe()
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return f"<{len(raw)} bytes>"
    text = str(raw)
    if len(text) > 64:
        return f"{text[:48]}...<{len(text)} chars>"
    return text


@dataclass
class ResolvedMedia:
    """Concrete in-memory or on-disk form of a reference plus its release obligation.

    ``cleanup`` may be called any number of times; only the first call does
    work. The instance is also an async context manager.
    """

    mode: IoMode
    data: bytes | None = None
    path: Path | None = None
    temp_dir: Path | None = None
    _cleaned: bool = field(default=False, init=False, repr=False)

    @classmethod
    def in_memory(cls, data: bytes) -> ResolvedMedia:
        return cls(mode=IoMode.MEMORY, data=data)

    @classmethod
    def on_disk(cls, path: Path, temp_dir: Path | None = None) -> ResolvedMedia:
        return cls(mode=IoMode.DISK, path=path, temp_dir=temp_dir)

    @property
    def source(self) -> bytes | Path:
        """The payload handed to decode or extraction collaborators."""
        if self.data is not None:
            return self.data
        if self.path is None:
            raise InvalidInputError("Resolved media has neither data nor path")
        return self.path

    def require_bytes(self) -> bytes:
        """Return the in-memory payload.

        Raises:
            InvalidInputError: If the media was staged on disk.
        """
        if self.data is None:
            raise InvalidInputError("Resolved media is not held in memory")
        return self.data

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    async def size_bytes(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is None:
            return 0
        stat = await asyncio.to_thread(self.path.stat)
        return stat.st_size

    async def cleanup(self) -> bool:
        """Release the temp directory, if any.

        Returns:
            True once nothing remains to release, False if removal failed.
        """
        if self._cleaned:
            return True
        if self.temp_dir is not None:
            try:
                await asyncio.to_thread(shutil.rmtree, self.temp_dir)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove temp dir %s", self.temp_dir, exc_info=True)
                return False
        self._cleaned = True
        return True

    async def __aenter__(self) -> ResolvedMedia:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.cleanup()


def decode_data_uri(uri: str) -> bytes:
    """Decode the payload of a ``data:`` URI.

    Raises:
        InvalidInputError: If the URI has no payload or invalid base64.
    """
    header, sep, payload = uri.partition(",")
    if not sep or not payload:
        raise InvalidInputError("Invalid data URI", input_ref=uri[:64])
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload)
        except binascii.Error as exc:
            raise InvalidInputError("Invalid base64 payload in data URI", input_ref=uri[:64]) from exc
    return unquote_to_bytes(payload)


def _write_temp(data: bytes) -> tuple[Path, Path]:
    temp_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX))
    path = temp_dir / TEMP_FILE_NAME
    try:
        path.write_bytes(data)
    except OSError:
        shutil.rmtree(temp_dir, ignore_errors=True)
        raise
    return path, temp_dir


def _read_local(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise NotFoundError(f"Local file not found: {path}", input_ref=str(path)) from None
    except IsADirectoryError:
        raise InvalidInputError(f"Not a file: {path}", input_ref=str(path)) from None


class MediaResolver:
    """Resolves media references in memory or through temp files."""

    def __init__(self, http_client: httpx.AsyncClient, *, retries: int = 2) -> None:
        self._http = http_client
        self._retries = retries

    async def resolve(self, ref: MediaReference | object, io_mode: IoMode = IoMode.MEMORY) -> ResolvedMedia:
        """Resolve a reference to bytes (memory mode) or a file path (disk mode).

        Raises:
            InvalidInputError: Empty or malformed reference.
            FetchFailedError: Download failed.
            NotFoundError: Local file does not exist.
        """
        ref = MediaReference.parse(ref)

        if ref.kind is ReferenceKind.LOCAL_PATH:
            path = Path(str(ref.value))
            if io_mode is IoMode.DISK:
                if not await asyncio.to_thread(path.is_file):
                    raise NotFoundError(f"Local file not found: {path}", input_ref=str(path))
                return ResolvedMedia.on_disk(path)
            return ResolvedMedia.in_memory(await asyncio.to_thread(_read_local, path))

        data = await self._load_bytes(ref)
        if ref.kind is ReferenceKind.BASE64 and data is None:
            # Looked like base64 but was not; treat it as a path.
            return await self.resolve(MediaReference(ReferenceKind.LOCAL_PATH, ref.value), io_mode)
        if data is None:
            raise InvalidInputError("Media reference could not be decoded", input_ref=ref.describe())

        if io_mode is IoMode.MEMORY:
            return ResolvedMedia.in_memory(data)
        path, temp_dir = await asyncio.to_thread(_write_temp, data)
        logger.debug("Staged %s bytes at %s", len(data), path)
        return ResolvedMedia.on_disk(path, temp_dir)

    async def _load_bytes(self, ref: MediaReference) -> bytes | None:
        if ref.kind is ReferenceKind.RAW_BYTES:
            return bytes(ref.value)  # type: ignore[arg-type]
        value = str(ref.value)
        if ref.kind is ReferenceKind.URL:
            return await fetch_bytes(self._http, value, retries=self._retries)
        if ref.kind is ReferenceKind.DATA_URI:
            return decode_data_uri(value)
        if ref.kind is ReferenceKind.BASE64:
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error:
                return None
        return None
