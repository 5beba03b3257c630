"""The shared directory as an unordered, eventually-consistent file channel.

Everything that crosses between the proxy and the relay is a named
blob.  The naming convention is the whole protocol surface::

    req_<id>.json          request envelope         (proxy -> relay)
    ack_<id>.json          ack marker               (relay -> proxy)
    res_<id>.json          response envelope, v1    (relay -> proxy)
    req_<id>_<seq>.dat     request-direction chunk  (proxy -> relay)
    res_<id>_<seq>.dat     response-direction chunk (relay -> proxy)
    req_<id>_end.json      end marker, request direction
    res_<id>_end.json      end marker, response direction

Writers never expose a partially written blob: :meth:`Channel.write_atomic`
writes to a temporary name and renames it into place.  Readers make no
assumption about the order in which blobs become visible.

:class:`DirectoryChannel` is the real thing; :class:`MemoryChannel` is a
dict-backed stand-in with the same contract, used by the tests.
"""

from __future__ import annotations

import abc
import os
import re
from enum import Enum
from pathlib import Path
from typing import Optional

TMP_SUFFIX = ".tmp"

# Anything that belongs to a connection, including in-flight temp files
CONNECTION_FILE_RE = re.compile(r"^(?:req|res|ack)_([a-f0-9]+)")
REQUEST_ENVELOPE_RE = re.compile(r"^req_([a-f0-9]+)\.json$")
PURGE_PREFIXES = ("req_", "res_", "ack_")


class Direction(Enum):
    """Who wrote a chunk: the proxy (``req``) or the relay (``res``)."""

    REQUEST = "req"
    RESPONSE = "res"

    @property
    def opposite(self) -> Direction:
        return Direction.RESPONSE if self is Direction.REQUEST else Direction.REQUEST


def request_name(cid: str) -> str:
    return f"req_{cid}.json"


def ack_name(cid: str) -> str:
    return f"ack_{cid}.json"


def response_name(cid: str) -> str:
    return f"res_{cid}.json"


def chunk_name(direction: Direction, cid: str, seq: int) -> str:
    return f"{direction.value}_{cid}_{seq}.dat"


def end_name(direction: Direction, cid: str) -> str:
    return f"{direction.value}_{cid}_end.json"


def connection_id_of(name: str) -> Optional[str]:
    """Return the connection id encoded in *name*, or ``None``."""
    m = CONNECTION_FILE_RE.match(name)
    return m.group(1) if m else None


class Channel(abc.ABC):
    """Minimal blob store the transport is written against."""

    @abc.abstractmethod
    def write_atomic(self, name: str, data: bytes) -> None:
        """Make *data* visible under *name* in one step.  Raises ``OSError``."""

    @abc.abstractmethod
    def read(self, name: str) -> Optional[bytes]:
        """Return the blob, or ``None`` if it is not (yet) visible.

        Raises ``OSError`` for anything other than absence (locked file,
        permissions...), which callers treat as "try again next tick".
        """

    @abc.abstractmethod
    def exists(self, name: str) -> bool: ...

    @abc.abstractmethod
    def delete(self, name: str) -> bool:
        """Remove *name*.  Returns ``False`` if it was already gone."""

    @abc.abstractmethod
    def list(self) -> list[str]: ...

    def purge(self) -> int:
        """Delete every protocol file.  Returns how many were removed."""
        deleted = 0
        for name in self.list():
            if name.startswith(PURGE_PREFIXES):
                try:
                    if self.delete(name):
                        deleted += 1
                except OSError:
                    continue
        return deleted


class DirectoryChannel(Channel):
    """A :class:`Channel` over a real (possibly synced) directory."""

    __slots__ = ("path",)

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)

    def write_atomic(self, name: str, data: bytes) -> None:
        final = self.path / name
        tmp = self.path / (name + TMP_SUFFIX)
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, final)

    def read(self, name: str) -> Optional[bytes]:
        try:
            with open(self.path / name, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def exists(self, name: str) -> bool:
        return (self.path / name).is_file()

    def delete(self, name: str) -> bool:
        try:
            os.unlink(self.path / name)
            return True
        except FileNotFoundError:
            return False

    def list(self) -> list[str]:
        return os.listdir(self.path)

    def __repr__(self) -> str:
        return f"DirectoryChannel({str(self.path)!r})"


class MemoryChannel(Channel):
    """In-memory :class:`Channel`.

    ``hidden`` holds names that have been written but are not visible
    yet, which lets tests reproduce a sync service that delivers files
    late or out of order; :meth:`reveal` makes them visible.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.hidden: dict[str, bytes] = {}
        self.hold_names: set[str] = set()
        self.fail_writes = False

    def write_atomic(self, name: str, data: bytes) -> None:
        if self.fail_writes:
            raise OSError(f"write refused: {name}")
        if name in self.hold_names:
            self.hidden[name] = bytes(data)
        else:
            self.files[name] = bytes(data)

    def hold(self, *names: str) -> None:
        """Keep future writes to *names* invisible until :meth:`reveal`."""
        self.hold_names.update(names)

    def reveal(self, *names: str) -> None:
        for name in names or tuple(self.hidden):
            self.hold_names.discard(name)
            if name in self.hidden:
                self.files[name] = self.hidden.pop(name)

    def read(self, name: str) -> Optional[bytes]:
        return self.files.get(name)

    def exists(self, name: str) -> bool:
        return name in self.files

    def delete(self, name: str) -> bool:
        return self.files.pop(name, None) is not None

    def list(self) -> list[str]:
        return list(self.files)
