import asyncio
import errno
import os

import pytest


def os_error(code, path=None):
    return OSError(code, os.strerror(code), path)


class FakeReader:
    def __init__(self, data, error=None, fail_after=0, chunk=2, events=None, close_error=None):
        self.close_error = close_error
        self.events = events if events is not None else []
        self.data = data
        self.error = error
        self.fail_after = fail_after
        self.chunk = chunk
        self.pos = 0
        self.closed = False

    async def read(self, size=-1):
        await asyncio.sleep(0)
        if self.error is not None and self.pos >= self.fail_after:
            raise self.error
        chunk = self.data[self.pos:self.pos + self.chunk]
        self.pos += len(chunk)
        self.events.append(("read", chunk))
        return chunk

    async def close(self):
        self.closed = True
        self.events.append(("close", None))
        if self.close_error is not None:
            raise self.close_error


class FakeWriter:
    def __init__(self, fs, path, mode, ownership, error=None):
        self.fs = fs
        self.path = path
        self.mode = mode
        self.ownership = ownership
        self.error = error
        self.buffer = b""
        self.state = "open"

    async def write(self, data):
        self.fs.events.append(("write-start", data))
        for _ in range(self.fs.write_yields):
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.buffer += data
        self.fs.events.append(("write-end", data))

    async def commit(self):
        self.fs.events.append(("commit", None))
        self.fs.committed[self.path] = self.buffer
        self.state = "committed"

    async def discard(self):
        self.state = "discarded"


class FakeFS:
    """In-memory FileSystem double. Lookups not scripted report ENOENT;
    every call is recorded in calls as (operation, args).
    """

    def __init__(self):
        self.lstats = {}
        self.stats = {}
        self.links = {}
        self.contents = {}
        self.read_errors = {}
        self.write_errors = {}
        self.close_errors = {}
        self.failures = {}
        self.calls = []
        self.readers = []
        self.writers = []
        self.committed = {}
        self.events = []
        self.write_yields = 1

    def _record(self, op, *args):
        self.calls.append((op, args))
        failure = self.failures.get((op,) + args[:1])
        if failure is not None:
            raise failure

    def ops(self, op):
        return [args for name, args in self.calls if name == op]

    async def lstat(self, path):
        self._record("lstat", path)
        await asyncio.sleep(0)
        result = self.lstats.get(path, os_error(errno.ENOENT, path))
        if isinstance(result, BaseException):
            raise result
        return result

    async def stat(self, path):
        self._record("stat", path)
        result = self.stats.get(path, os_error(errno.ENOENT, path))
        if isinstance(result, BaseException):
            raise result
        return result

    async def readlink(self, path):
        self._record("readlink", path)
        return self.links[path]

    async def symlink(self, target, path, link_type=None):
        self.calls.append(("symlink", (target, path, link_type)))
        failure = self.failures.get(("symlink", target, link_type))
        if failure is not None:
            raise failure

    async def open_read(self, path):
        self._record("open_read", path)
        error, fail_after = self.read_errors.get(path, (None, 0))
        reader = FakeReader(self.contents.get(path, b"content"), error, fail_after, events=self.events,
                            close_error=self.close_errors.get(path))
        self.readers.append(reader)
        return reader

    async def open_atomic_write(self, path, mode=None, ownership=None):
        self._record("open_atomic_write", path, mode, ownership)
        writer = FakeWriter(self, path, mode, ownership, self.write_errors.get(path))
        self.writers.append(writer)
        return writer

    async def chmod(self, path, mode):
        self._record("chmod", path, mode)

    async def mkdir(self, path, mode=0o777):
        self._record("mkdir", path, mode)

    async def chown(self, path, uid, gid):
        self._record("chown", path, uid, gid)


@pytest.fixture
def fake_fs():
    return FakeFS()
