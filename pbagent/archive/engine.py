# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive Engine - streaming tar archives for backup sessions.

Archives are written and read strictly forward (tarfile stream modes), so a
read handle can only be walked once. Callers reopen the archive between
list_entries() and any extraction, and between successive extract_one()
calls. A consumed handle raises ArchiveError instead of silently yielding
nothing.

Compression follows the file name on write (.tar.gz/.tgz gzip, .tar.zst
zstd, anything else plain) and is detected from the content on read.
Ownership, permissions and mtimes are kept on both sides so restored
services find their files as they left them.

All functions here block; call them through run_blocking() from async code.
"""

import asyncio
import functools
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, List

import structlog
import zstandard as zstd

from pbagent.exceptions import ArchiveError, NotFoundError

logger = structlog.get_logger()

# Thread pool for blocking archive work
_executor = ThreadPoolExecutor(max_workers=2)

# Copy buffer for entry payloads
CHUNK_SIZE = 64 * 1024

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
DEFAULT_ZSTD_LEVEL = 10

# Paths currently open for writing
_writers: set = set()
_writers_lock = threading.Lock()


class ArchiveHandle:
    """An open archive. Use as a context manager or call close_archive()."""

    def __init__(
        self,
        path: Path,
        mode: str,
        compression: str,
        tar: tarfile.TarFile,
        stream: Any = None,
    ):
        self.path = path
        self.mode = mode
        self.compression = compression
        self.tar = tar
        self._stream = stream
        self.consumed = False
        self.closed = False

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        close_archive(self)

    def __repr__(self) -> str:
        return f"ArchiveHandle({str(self.path)!r}, mode={self.mode!r}, compression={self.compression!r})"


def compression_for(path: Path | str) -> str:
    """Compression implied by an archive file name."""
    name = str(path).lower()
    if name.endswith((".tar.gz", ".tgz")):
        return "gz"
    if name.endswith(".tar.zst"):
        return "zst"
    return "none"


def _error_code(exc: BaseException) -> int | str:
    errno = getattr(exc, "errno", None)
    return errno if errno is not None else type(exc).__name__


def _wrap(exc: BaseException, message: str, path: Path) -> ArchiveError:
    return ArchiveError(
        f"{message}: {exc}",
        code=_error_code(exc),
        details={"path": str(path)},
    )


def create_archive(path: Path | str, mode: str = "r") -> ArchiveHandle:
    """
    Open an archive for reading ("r") or writing ("w").

    Args:
        path: Archive file path
        mode: "r" to read (format and filter auto-detected), "w" to write

    Returns:
        ArchiveHandle

    Raises:
        ArchiveError: If the archive cannot be opened, or is already open
            for writing
    """
    path = Path(path)
    if mode == "w":
        return _open_writer(path)
    if mode == "r":
        return _open_reader(path)
    raise ArchiveError(f"Unsupported archive mode: {mode}", code="EINVAL")


def _open_writer(path: Path) -> ArchiveHandle:
    key = str(path.resolve())
    with _writers_lock:
        if key in _writers:
            raise ArchiveError(
                f"Archive already open for writing: {path}",
                code="EBUSY",
                details={"path": str(path)},
            )
        _writers.add(key)

    compression = compression_for(path)
    try:
        if compression == "zst":
            raw = open(path, "wb")
            try:
                stream = zstd.ZstdCompressor(level=DEFAULT_ZSTD_LEVEL).stream_writer(raw)
                tar = tarfile.open(
                    fileobj=stream,
                    mode="w|",
                    format=tarfile.PAX_FORMAT,
                    copybufsize=CHUNK_SIZE,
                )
            except BaseException:
                raw.close()
                raise
            handle = ArchiveHandle(path, "w", compression, tar, stream)
        else:
            tar = tarfile.open(
                path,
                "w|gz" if compression == "gz" else "w|",
                format=tarfile.PAX_FORMAT,
                copybufsize=CHUNK_SIZE,
            )
            handle = ArchiveHandle(path, "w", compression, tar)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        with _writers_lock:
            _writers.discard(key)
        raise _wrap(e, "Failed to create archive", path)

    logger.debug("archive_opened", path=str(path), mode="w", compression=compression)
    return handle


def _open_reader(path: Path) -> ArchiveHandle:
    try:
        with open(path, "rb") as probe:
            magic = probe.read(4)

        if magic == ZSTD_MAGIC:
            raw = open(path, "rb")
            try:
                stream = zstd.ZstdDecompressor().stream_reader(raw)
                tar = tarfile.open(fileobj=stream, mode="r|", copybufsize=CHUNK_SIZE)
            except BaseException:
                raw.close()
                raise
            handle = ArchiveHandle(path, "r", "zst", tar, stream)
        else:
            tar = tarfile.open(path, "r|*", copybufsize=CHUNK_SIZE)
            handle = ArchiveHandle(path, "r", "auto", tar)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise _wrap(e, "Failed to open archive", path)

    logger.debug("archive_opened", path=str(path), mode="r", compression=handle.compression)
    return handle


def close_archive(handle: ArchiveHandle) -> None:
    """
    Finalize and close an archive. Safe to call more than once.

    Raises:
        ArchiveError: If finalizing a written archive fails
    """
    if handle.closed:
        return
    handle.closed = True
    try:
        handle.tar.close()
        if handle._stream is not None:
            handle._stream.close()
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise _wrap(e, "Failed to close archive", handle.path)
    finally:
        if handle.mode == "w":
            with _writers_lock:
                _writers.discard(str(handle.path.resolve()))


def _require(handle: ArchiveHandle, mode: str) -> None:
    if handle.closed:
        raise ArchiveError(f"Archive is closed: {handle.path}", code="EBADF")
    if handle.mode != mode:
        raise ArchiveError(
            f"Archive opened with mode {handle.mode!r}, operation needs {mode!r}",
            code="EBADF",
        )
    if mode == "r":
        if handle.consumed:
            raise ArchiveError(
                f"Archive stream already consumed, reopen it: {handle.path}",
                code="ESPIPE",
            )
        handle.consumed = True


# ============================================================================
# Write
# ============================================================================


def add_entry(handle: ArchiveHandle, file: Path | str, arcname: str | None = None) -> None:
    """
    Add one file, directory node or symlink, keeping its metadata.

    Regular file content is copied in CHUNK_SIZE blocks.
    """
    _require(handle, "w")
    file = Path(file)
    arcname = arcname if arcname is not None else file.name
    try:
        info = handle.tar.gettarinfo(str(file), arcname=arcname)
        if info is None:
            logger.warning("archive_entry_skipped", file=str(file), reason="unsupported type")
            return
        if info.isreg():
            with open(file, "rb") as f:
                handle.tar.addfile(info, f)
        else:
            handle.tar.addfile(info)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise _wrap(e, f"Failed to add {file}", handle.path)


def add_directory(handle: ArchiveHandle, directory: Path | str, arcname: str | None = None) -> int:
    """
    Add a directory and everything below it.

    Returns:
        Number of entries written
    """
    directory = Path(directory)
    arcname = arcname if arcname is not None else directory.name
    add_entry(handle, directory, arcname)
    count = 1
    try:
        children = sorted(directory.iterdir())
    except OSError as e:
        raise _wrap(e, f"Failed to list {directory}", handle.path)
    for child in children:
        child_name = f"{arcname}/{child.name}" if arcname else child.name
        if child.is_dir() and not child.is_symlink():
            count += add_directory(handle, child, child_name)
        else:
            add_entry(handle, child, child_name)
            count += 1
    return count


def create_from_paths(archive_path: Path | str, sources: List[tuple]) -> int:
    """
    Write a new archive from (path, arcname) pairs; directories recurse.

    The archive is closed on every exit path.
    """
    count = 0
    with create_archive(archive_path, "w") as handle:
        for source, arcname in sources:
            source = Path(source)
            if source.is_dir() and not source.is_symlink():
                count += add_directory(handle, source, arcname)
            else:
                add_entry(handle, source, arcname)
                count += 1
    logger.info("archive_created", path=str(archive_path), entries=count)
    return count


# ============================================================================
# Read
# ============================================================================


def _trusted_member(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    # Security: refuse path traversal, keep owner and mode otherwise
    if member.name.startswith("/") or ".." in member.name.split("/"):
        raise ArchiveError(
            f"Unsafe path in archive: {member.name}",
            code="EPERM",
            details={"member": member.name},
        )
    return tarfile.fully_trusted_filter(member, dest_path)


def _normalize(name: str) -> str:
    return name[2:] if name.startswith("./") else name


def list_entries(handle: ArchiveHandle) -> List[str]:
    """
    Enumerate entry names without extracting payloads.

    Consumes the handle.
    """
    _require(handle, "r")
    try:
        return [member.name for member in handle.tar]
    except (OSError, tarfile.TarError, zstd.ZstdError, EOFError) as e:
        raise _wrap(e, "Failed to list archive", handle.path)


def extract_one(handle: ArchiveHandle, name: str, dest: Path | str) -> Path:
    """
    Extract exactly the entry called `name` into `dest`.

    Consumes the handle.

    Returns:
        Path of the extracted entry

    Raises:
        NotFoundError: If the archive has no such entry
        ArchiveError: On archive failures or unsafe entry names
    """
    _require(handle, "r")
    dest = Path(dest)
    wanted = _normalize(name)
    try:
        for member in handle.tar:
            if _normalize(member.name) == wanted:
                handle.tar.extract(member, dest, numeric_owner=True, filter=_trusted_member)
                logger.debug("archive_entry_extracted", archive=str(handle.path), entry=name)
                return dest / wanted
    except ArchiveError:
        raise
    except (OSError, tarfile.TarError, zstd.ZstdError, EOFError) as e:
        raise _wrap(e, f"Failed to extract {name}", handle.path)

    raise NotFoundError(
        f"Entry not found in archive: {name}",
        details={"archive": str(handle.path), "entry": name},
    )


def extract_all(handle: ArchiveHandle, dest: Path | str) -> None:
    """
    Extract every entry into `dest`, restoring ownership and permissions.

    Consumes the handle.
    """
    _require(handle, "r")
    dest = Path(dest)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        handle.tar.extractall(dest, numeric_owner=True, filter=_trusted_member)
    except ArchiveError:
        raise
    except (OSError, tarfile.TarError, zstd.ZstdError, EOFError) as e:
        raise _wrap(e, "Failed to extract archive", handle.path)
    logger.debug("archive_extracted", archive=str(handle.path), dest=str(dest))


def extract_archive(archive_path: Path | str, dest: Path | str) -> None:
    """Open, fully extract and close an archive."""
    with create_archive(archive_path, "r") as handle:
        extract_all(handle, dest)


def read_entries(archive_path: Path | str) -> List[str]:
    """Open, list and close an archive."""
    with create_archive(archive_path, "r") as handle:
        return list_entries(handle)


def extract_entry(archive_path: Path | str, name: str, dest: Path | str) -> Path:
    """Open, extract one entry and close an archive."""
    with create_archive(archive_path, "r") as handle:
        return extract_one(handle, name, dest)


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run blocking archive work in the archive thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, functools.partial(func, *args, **kwargs))
