#! /usr/bin/python3

import asyncio
import click
import errno
import logging
import os
import re
import stat
import uuid
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata as _metadata
from typing import Callable, Optional, Protocol



# logging is configured in main; the copy engine only writes debug records
logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Windows ERROR_PRIVILEGE_NOT_HELD, raised by unprivileged directory symlinks
_WINERROR_PRIVILEGE_NOT_HELD = 1314
_PERMISSION_ERRNOS = (errno.EPERM, errno.EACCES)


def get_version() -> str:
    """Return the project version, preferring installed package metadata.
    Fallback to reading pyproject.toml's [project].version when running from source.
    """
    try:
        return _metadata.version("entrycopy")
    except _metadata.PackageNotFoundError:
        pass
    candidates = [
        os.path.join(os.path.dirname(os.path.abspath(__file__)), "pyproject.toml"),
        os.path.join(os.path.abspath(os.getcwd()), "pyproject.toml"),
    ]
    for path in candidates:
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError:
            continue
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"", content, re.MULTILINE)
        if m:
            return m.group(1)
    return "0.0.0"


#####
# Data model


class Kind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    BLOCK = "block"
    CHAR = "char"
    FIFO = "fifo"
    SOCKET = "socket"
    UNKNOWN = "unknown"


UNSUPPORTED_KINDS = frozenset({Kind.BLOCK, Kind.CHAR, Kind.FIFO, Kind.SOCKET, Kind.UNKNOWN})


def kind_of(st_mode: int) -> Kind:
    if stat.S_ISLNK(st_mode):
        return Kind.SYMLINK
    if stat.S_ISREG(st_mode):
        return Kind.FILE
    if stat.S_ISDIR(st_mode):
        return Kind.DIRECTORY
    if stat.S_ISBLK(st_mode):
        return Kind.BLOCK
    if stat.S_ISCHR(st_mode):
        return Kind.CHAR
    if stat.S_ISFIFO(st_mode):
        return Kind.FIFO
    if stat.S_ISSOCK(st_mode):
        return Kind.SOCKET
    return Kind.UNKNOWN


@dataclass(frozen=True)
class StatInfo:
    """What a lookup reports about one filesystem object."""
    kind: Kind
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None

    @classmethod
    def from_stat_result(cls, st: os.stat_result) -> "StatInfo":
        return cls(kind_of(st.st_mode), stat.S_IMODE(st.st_mode), st.st_uid, st.st_gid)


@dataclass(frozen=True)
class Ownership:
    uid: int
    gid: int


@dataclass(frozen=True)
class SourceDescriptor:
    """Snapshot of the source taken once per copy, never re-validated.
    mode and ownership are only recorded for files and directories.
    """
    kind: Kind
    mode: Optional[int] = None
    ownership: Optional[Ownership] = None


@dataclass(frozen=True)
class DestinationProbe:
    present: bool
    kind: Optional[Kind] = None


def effective_uid() -> Optional[int]:
    geteuid = getattr(os, "geteuid", None)
    return geteuid() if geteuid is not None else None


@dataclass(frozen=True)
class CopyOptions:
    is_windows: bool = field(default_factory=lambda: os.name == "nt")
    identity: Callable[[], Optional[int]] = effective_uid

    def is_privileged(self) -> bool:
        return self.identity() == 0


#####
# Errors


class ErrorCode(str, Enum):
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    DEST_EXISTS = "DEST_EXISTS"
    UNSUPPORTED_KIND = "UNSUPPORTED_KIND"
    READ_FAILURE = "READ_FAILURE"
    WRITE_FAILURE = "WRITE_FAILURE"
    OS_FAILURE = "OS_FAILURE"


class CopyError(Exception):
    """A failed copy. code is one of ErrorCode; errno and os_code keep the
    underlying OS failure when there was one (os_code is e.g. 'EPERM').
    """

    def __init__(self, code: ErrorCode, message: str, source=None, destination=None,
                 errno_value: Optional[int] = None):
        self.code = code
        self.message = message
        self.source = source
        self.destination = destination
        self.errno = errno_value
        self.os_code = errno.errorcode.get(errno_value) if errno_value is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    @classmethod
    def from_os_error(cls, code: ErrorCode, err: OSError, source, destination) -> "CopyError":
        reason = err.strerror or str(err)
        return cls(code, f"Cannot copy {source!r} to {destination!r}: {reason}", source, destination, err.errno)


def map_error(err: BaseException, source, destination) -> CopyError:
    """Normalize a raw failure into a CopyError. Already-mapped errors pass
    through untouched, OS failures keep their errno under OS_FAILURE.
    """
    if isinstance(err, CopyError):
        return err
    if isinstance(err, OSError):
        return CopyError.from_os_error(ErrorCode.OS_FAILURE, err, source, destination)
    raise TypeError(f"not a copy failure: {err!r}")


def _is_permission_error(err: OSError) -> bool:
    if err.errno in _PERMISSION_ERRNOS:
        return True
    return getattr(err, "winerror", None) == _WINERROR_PRIVILEGE_NOT_HELD


#####
# Filesystem capability


class ByteSource(Protocol):
    async def read(self, size: int = CHUNK_SIZE) -> bytes: ...
    async def close(self) -> None: ...


class ByteSink(Protocol):
    async def write(self, data: bytes) -> None: ...
    async def commit(self) -> None: ...
    async def discard(self) -> None: ...


class FileSystem(Protocol):
    async def lstat(self, path: str) -> StatInfo: ...
    async def stat(self, path: str) -> StatInfo: ...
    async def readlink(self, path: str) -> str: ...
    async def symlink(self, target: str, path: str, link_type: Optional[str] = None) -> None: ...
    async def open_read(self, path: str) -> ByteSource: ...
    async def open_atomic_write(self, path: str, mode: Optional[int] = None,
                                ownership: Optional[Ownership] = None) -> ByteSink: ...
    async def chmod(self, path: str, mode: int) -> None: ...
    async def mkdir(self, path: str, mode: int = 0o777) -> None: ...
    async def chown(self, path: str, uid: int, gid: int) -> None: ...


class LocalReader:
    def __init__(self, handle):
        self._handle = handle

    async def read(self, size: int = CHUNK_SIZE) -> bytes:
        return await asyncio.to_thread(self._handle.read, size)

    async def close(self) -> None:
        await asyncio.to_thread(self._handle.close)


class AtomicWriter:
    """Writes into a hidden sibling of path and renames it into place on
    commit. Until then nothing is visible at path; on discard, or on any
    commit failure, the temporary is removed. The temporary is created with
    mode, or 0o666 when none is given.
    """

    def __init__(self, path: str, mode: Optional[int] = None, ownership: Optional[Ownership] = None):
        self.path = path
        self.mode = mode
        self.ownership = ownership
        directory, name = os.path.split(os.path.abspath(path))
        self.temp_path = os.path.join(directory, f".{name}.{uuid.uuid4().hex[:12]}.tmp")
        fd = os.open(self.temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0),
                     mode & 0o777 if mode is not None else 0o666)
        self._handle = os.fdopen(fd, "wb")
        self._done = False

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._handle.write, data)

    async def commit(self) -> None:
        await asyncio.to_thread(self._commit)

    async def discard(self) -> None:
        await asyncio.to_thread(self._discard)

    def _commit(self):
        try:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            if self.ownership is not None:
                os.chown(self.temp_path, self.ownership.uid, self.ownership.gid)
            os.replace(self.temp_path, self.path)
            self._done = True
        except BaseException:
            self._discard()
            raise

    def _discard(self):
        if self._done:
            return
        self._done = True
        self._handle.close()
        try:
            os.unlink(self.temp_path)
        except FileNotFoundError:
            pass


class LocalFileSystem:
    """FileSystem backed by the os module; blocking calls run in worker threads."""

    async def lstat(self, path: str) -> StatInfo:
        return StatInfo.from_stat_result(await asyncio.to_thread(os.lstat, path))

    async def stat(self, path: str) -> StatInfo:
        return StatInfo.from_stat_result(await asyncio.to_thread(os.stat, path))

    async def readlink(self, path: str) -> str:
        return await asyncio.to_thread(os.readlink, path)

    async def symlink(self, target: str, path: str, link_type: Optional[str] = None) -> None:
        if link_type == "junction":
            await asyncio.to_thread(_create_junction, target, path)
        else:
            await asyncio.to_thread(os.symlink, target, path, link_type == "dir")

    async def open_read(self, path: str) -> LocalReader:
        return LocalReader(await asyncio.to_thread(open, path, "rb"))

    async def open_atomic_write(self, path: str, mode: Optional[int] = None,
                                ownership: Optional[Ownership] = None) -> AtomicWriter:
        return await asyncio.to_thread(AtomicWriter, path, mode, ownership)

    async def chmod(self, path: str, mode: int) -> None:
        await asyncio.to_thread(os.chmod, path, mode)

    async def mkdir(self, path: str, mode: int = 0o777) -> None:
        await asyncio.to_thread(os.mkdir, path, mode)

    async def chown(self, path: str, uid: int, gid: int) -> None:
        await asyncio.to_thread(os.chown, path, uid, gid)


def _create_junction(target: str, path: str):
    import _winapi  # Windows only

    # junctions only hold absolute targets
    absolute = os.path.abspath(os.path.join(os.path.dirname(path), target))
    _winapi.CreateJunction(absolute, path)


#####
# Classifier


async def classify(fs: FileSystem, source: str) -> SourceDescriptor:
    """Describe source without following it if it is a symlink."""
    try:
        info = await fs.lstat(source)
    except OSError as err:
        if err.errno != errno.ENOENT:
            raise
        raise CopyError(ErrorCode.SOURCE_NOT_FOUND, f"Source {source!r} does not exist",
                        source, None, err.errno) from err
    if info.kind in (Kind.FILE, Kind.DIRECTORY):
        ownership = None
        if info.uid is not None and info.gid is not None:
            ownership = Ownership(info.uid, info.gid)
        return SourceDescriptor(info.kind, info.mode, ownership)
    return SourceDescriptor(info.kind)


async def probe(fs: FileSystem, destination: str) -> DestinationProbe:
    # only "not found" means absent; anything else is a hard failure
    try:
        info = await fs.lstat(destination)
    except OSError as err:
        if err.errno != errno.ENOENT:
            raise
        return DestinationProbe(present=False)
    return DestinationProbe(present=True, kind=info.kind)


#####
# Strategies


async def _transfer(reader: ByteSource, writer: ByteSink, source: str, destination: str):
    # pull-based: the next read waits for the previous write to finish
    total = 0
    while True:
        try:
            chunk = await reader.read(CHUNK_SIZE)
        except OSError as err:
            raise CopyError.from_os_error(ErrorCode.READ_FAILURE, err, source, destination) from err
        if not chunk:
            return total
        try:
            await writer.write(chunk)
        except OSError as err:
            raise CopyError.from_os_error(ErrorCode.WRITE_FAILURE, err, source, destination) from err
        total += len(chunk)


async def copy_file(fs: FileSystem, source: str, destination: str, descriptor: SourceDescriptor,
                    options: CopyOptions):
    ownership = descriptor.ownership if options.is_privileged() else None
    try:
        reader = await fs.open_read(source)
    except OSError as err:
        raise CopyError.from_os_error(ErrorCode.READ_FAILURE, err, source, destination) from err
    try:
        try:
            writer = await fs.open_atomic_write(destination, mode=descriptor.mode, ownership=ownership)
        except OSError as err:
            raise CopyError.from_os_error(ErrorCode.WRITE_FAILURE, err, source, destination) from err
    except BaseException:
        await reader.close()
        raise
    # the reader is closed before commit; its close cannot fail a committed copy
    try:
        try:
            total = await _transfer(reader, writer, source, destination)
        finally:
            await reader.close()
    except BaseException:
        await writer.discard()
        raise
    try:
        await writer.commit()
    except OSError as err:
        raise CopyError.from_os_error(ErrorCode.WRITE_FAILURE, err, source, destination) from err
    logger.debug("wrote %d bytes to %s", total, destination)

    # the creation mode was filtered by the umask and carries no setuid bits
    if descriptor.mode is not None:
        logger.debug("chmod %s %o", destination, descriptor.mode)
        await fs.chmod(destination, descriptor.mode)


class LinkMaker(Protocol):
    async def make_link(self, fs: FileSystem, source: str, target: str, destination: str) -> None: ...


class PosixLinkMaker:
    """Symlinks carry no type; the target text is reused verbatim."""

    async def make_link(self, fs, source, target, destination):
        await fs.symlink(target, destination)


class WindowsLinkMaker:
    """Windows wants the link type up front. Directory links fall back to a
    junction when the process lacks the symlink privilege.
    """

    async def make_link(self, fs, source, target, destination):
        resolved = os.path.abspath(os.path.join(os.path.dirname(source), target))
        if not await self._is_directory(fs, resolved):
            await fs.symlink(target, destination, "file")
            return
        try:
            await fs.symlink(target, destination, "dir")
        except OSError as err:
            if not _is_permission_error(err):
                raise
            logger.debug("dir symlink %s refused (%s), retrying as junction", destination, err)
            await fs.symlink(target, destination, "junction")

    @staticmethod
    async def _is_directory(fs, path):
        # a dangling target is linked as a file
        try:
            info = await fs.stat(path)
        except OSError:
            return False
        return info.kind == Kind.DIRECTORY


def link_maker_for(options: CopyOptions) -> LinkMaker:
    return WindowsLinkMaker() if options.is_windows else PosixLinkMaker()


async def copy_symlink(fs: FileSystem, source: str, destination: str, options: CopyOptions,
                       link_maker: Optional[LinkMaker] = None):
    target = await fs.readlink(source)
    logger.debug("link %s -> %s", source, target)
    if link_maker is None:
        link_maker = link_maker_for(options)
    await link_maker.make_link(fs, source, target, destination)


async def copy_directory_node(fs, source, destination, descriptor: SourceDescriptor, options: CopyOptions):
    """Re-create the directory itself; its children are left to the caller."""
    await fs.mkdir(destination)
    if descriptor.mode is not None:
        await fs.chmod(destination, descriptor.mode)
    if descriptor.ownership is not None and options.is_privileged():
        await fs.chown(destination, descriptor.ownership.uid, descriptor.ownership.gid)


#####
# Entry points


async def plan_copy(source: str, destination: str, fs: Optional[FileSystem] = None) -> SourceDescriptor:
    """Run the classification phase only and return the descriptor that
    would drive the copy. Raises the same CopyErrors copy_entry would.
    """
    if fs is None:
        fs = LocalFileSystem()
    try:
        descriptor = await classify(fs, source)
        found = await probe(fs, destination)
    except OSError as err:
        raise map_error(err, source, destination) from err
    if found.present:
        message = f"Cannot copy {source!r} over existing {found.kind.value} {destination!r}"
        raise CopyError(ErrorCode.DEST_EXISTS, message, source, destination, errno.EEXIST)
    if descriptor.kind in UNSUPPORTED_KINDS:
        raise CopyError(ErrorCode.UNSUPPORTED_KIND, f"Copying of {descriptor.kind.value} {source!r} is not supported",
                        source, destination)
    return descriptor


async def copy_entry(source: str, destination: str, options: Optional[CopyOptions] = None,
                     fs: Optional[FileSystem] = None):
    """Copy exactly one file, symlink or directory node from source to a
    destination that must not exist yet.

    Files are written atomically, then their mode is applied; ownership is
    carried over only when running as uid 0. Symlinks are re-created with the
    same target text. Every failure is raised as a CopyError.
    """
    if options is None:
        options = CopyOptions()
    if fs is None:
        fs = LocalFileSystem()
    descriptor = await plan_copy(source, destination, fs)
    logger.debug("copying %s %s to %s", descriptor.kind.value, source, destination)
    try:
        if descriptor.kind == Kind.FILE:
            await copy_file(fs, source, destination, descriptor, options)
        elif descriptor.kind == Kind.SYMLINK:
            await copy_symlink(fs, source, destination, options)
        else:
            await copy_directory_node(fs, source, destination, descriptor, options)
    except OSError as err:
        raise map_error(err, source, destination) from err
    return descriptor


#####


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=f"v{get_version()}", prog_name="entrycopy")
@click.argument('src', type=click.Path(path_type=str))
@click.argument('dst', type=click.Path(path_type=str))
@click.option('-N', '--dry-run', 'dryrun', is_flag=True, help='Classify source and destination but do not copy')
@click.option('--log-level', default='INFO',
              type=click.Choice(['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG', 'NOTSET'], case_sensitive=False),
              help='Logging verbosity')
def main(src, dst, dryrun, log_level):
    """Copy one file, symlink or directory node from SRC to DST without overwriting."""
    log_level = getattr(logging, str(log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s:%(funcName)s:%(levelname)s - %(message)s'
    )

    source = os.path.abspath(src)
    destination = os.path.abspath(dst)
    logger.debug("source: %s", source)
    logger.debug("destination: %s", destination)

    try:
        if dryrun:
            descriptor = asyncio.run(plan_copy(source, destination))
            logger.info("EVENT: would copy %s %s to %s", descriptor.kind.value, source, destination)
            return
        descriptor = asyncio.run(copy_entry(source, destination))
    except CopyError as err:
        raise click.ClickException(f"{err.code.value}: {err}")

    logger.info("EVENT: copied %s %s to %s", descriptor.kind.value, source, destination)
    logger.info("exiting - success.")


if __name__ == "__main__":
    main()
