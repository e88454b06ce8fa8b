from __future__ import annotations

"""Stream recording files into one zip archive and remove them afterwards."""

import logging
import os
import shutil
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, BinaryIO, Protocol

from .errors import ArchiveError, CollectionError


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_TEMP_PREFIX = "TemporaryFile-"


def entry_name(name: str) -> str:
    """Return a zip-encodable entry name; undecodable bytes become `\\xNN` escapes."""

    return os.fsencode(name).decode("utf-8", "backslashreplace")


class ArchiveAborted(OSError):
    """Raised by an aborted output stream for every later write."""


class _AbortableSink:
    """File-like wrapper that refuses writes once the archive is aborted.

    Closing a zipfile entry or the archive writes its trailer; both also happen
    implicitly when the objects are garbage collected. Refusing writes keeps a
    failed archive without a central directory no matter who closes it.
    """

    def __init__(self, fileobj: IO[bytes]) -> None:
        self._fileobj = fileobj
        self.aborted = False

    def write(self, data: Any) -> int:
        if self.aborted:
            raise ArchiveAborted("archive was aborted")
        return self._fileobj.write(data)

    def tell(self) -> int:
        return self._fileobj.tell()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._fileobj.seek(offset, whence)

    def flush(self) -> None:
        if not self.aborted:
            self._fileobj.flush()


class EntryWriter(Protocol):
    def start_entry(self, name: str, source: Path | None = None) -> None:
        ...

    def write(self, data: bytes) -> None:
        ...

    def finish_entry(self) -> None:
        ...

    def finish(self) -> None:
        ...

    def abort(self) -> None:
        ...


class ArchiveWriter:
    """Sequential zip writer with explicit entry boundaries and abort."""

    def __init__(self, fileobj: IO[bytes], *, compression: int = zipfile.ZIP_DEFLATED) -> None:
        self._sink = _AbortableSink(fileobj)
        self._zip = zipfile.ZipFile(self._sink, mode="w", compression=compression)  # type: ignore[arg-type]
        self._compression = compression
        self._entry: IO[bytes] | None = None
        self._entry_name: str | None = None

    def start_entry(self, name: str, source: Path | None = None) -> None:
        if self._entry is not None:
            raise ArchiveError(f"entry {self._entry_name} is still open", entry=name)
        name = entry_name(name)
        try:
            if source is not None:
                info = zipfile.ZipInfo.from_file(source, arcname=name, strict_timestamps=False)
            else:
                info = zipfile.ZipInfo(name)
            info.compress_type = self._compression
            self._entry = self._zip.open(info, mode="w")
        except (OSError, ValueError) as exc:
            raise ArchiveError(f"failed to start zip entry {name}: {exc}", entry=name) from exc
        self._entry_name = name

    def write(self, data: bytes) -> None:
        if self._entry is None:
            raise ArchiveError("no zip entry is open")
        try:
            self._entry.write(data)
        except (OSError, ValueError) as exc:
            raise ArchiveError(f"failed to write zip entry {self._entry_name}: {exc}", entry=self._entry_name) from exc

    def finish_entry(self) -> None:
        if self._entry is None:
            raise ArchiveError("no zip entry is open")
        try:
            self._entry.close()
        except (OSError, ValueError, RuntimeError) as exc:
            raise ArchiveError(f"failed to finish zip entry {self._entry_name}: {exc}", entry=self._entry_name) from exc
        self._entry = None
        self._entry_name = None

    def finish(self) -> None:
        try:
            self._zip.close()
            self._sink.flush()
        except (OSError, ValueError) as exc:
            raise ArchiveError(f"failed to finish zip writer: {exc}") from exc

    def abort(self) -> None:
        """Drop the open entry and the index; the output stays recognizably incomplete."""

        self._sink.aborted = True
        if self._entry is not None:
            try:
                self._entry.close()
            except (OSError, ValueError, RuntimeError):
                pass
            self._entry = None
        try:
            self._zip.close()
        except (ArchiveAborted, ValueError):
            pass


@dataclass(frozen=True)
class DataFile:
    name: str
    path: Path
    is_regular: bool


@dataclass
class CollectionResult:
    entries: list[str] = field(default_factory=list)
    bytes_read: int = 0
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"entries": list(self.entries), "bytes_read": self.bytes_read, "skipped": list(self.skipped)}


def list_data_files(data_dir: Path) -> list[DataFile]:
    """Enumerate a directory non-recursively, in directory order."""

    try:
        with os.scandir(data_dir) as scanner:
            return [DataFile(name=entry.name, path=Path(entry.path), is_regular=entry.is_file()) for entry in scanner]
    except OSError as exc:
        raise CollectionError(f"failed to list {data_dir}: {exc}", path=str(data_dir)) from exc


def _open_source(path: Path) -> BinaryIO:
    return open(path, "rb", buffering=0)  # noqa: SIM115


class ArchiveCollector:
    """Copy every eligible file of a data directory into one archive."""

    def __init__(
        self,
        *,
        temp_prefix: str = DEFAULT_TEMP_PREFIX,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        writer_factory: Callable[[IO[bytes]], EntryWriter] = ArchiveWriter,
        opener: Callable[[Path], BinaryIO] = _open_source,
    ) -> None:
        self.temp_prefix = temp_prefix
        self.chunk_size = chunk_size
        self.writer_factory = writer_factory
        self.opener = opener

    def is_eligible(self, data_file: DataFile) -> bool:
        return data_file.is_regular and not data_file.name.startswith(self.temp_prefix)

    def collect(self, data_dir: Path, output: IO[bytes]) -> CollectionResult:
        """Write the archive to `output`; any failure aborts it and raises."""

        writer = self.writer_factory(output)
        result = CollectionResult()
        try:
            for data_file in list_data_files(data_dir):
                if not self.is_eligible(data_file):
                    result.skipped.append(data_file.name)
                    continue
                result.bytes_read += self._add_file(writer, data_file)
                result.entries.append(entry_name(data_file.name))
            writer.finish()
        except BaseException:
            writer.abort()
            raise
        return result

    def _add_file(self, writer: EntryWriter, data_file: DataFile) -> int:
        try:
            source = self.opener(data_file.path)
        except OSError as exc:
            raise CollectionError(f"failed to open {data_file.path}: {exc}", path=str(data_file.path)) from exc
        total = 0
        with source:
            writer.start_entry(data_file.name, data_file.path)
            while True:
                chunk = self._read_chunk(source, data_file.path)
                if not chunk:
                    break
                writer.write(chunk)
                total += len(chunk)
            writer.finish_entry()
        logger.debug("archived %s (%d bytes)", data_file.name, total)
        return total

    def _read_chunk(self, source: BinaryIO, path: Path) -> bytes:
        while True:
            try:
                return source.read(self.chunk_size) or b""
            except InterruptedError:
                logger.debug("read of %s interrupted by a signal, retrying", path)
            except OSError as exc:
                raise CollectionError(f"failed to read {path}: {exc}", path=str(path)) from exc


def remove_data_dir(data_dir: Path) -> bool:
    """Recursively delete the data directory; report failure instead of raising."""

    try:
        shutil.rmtree(data_dir)
    except OSError as exc:
        logger.error("failed to remove %s: %s", data_dir, exc)
        return False
    return True
