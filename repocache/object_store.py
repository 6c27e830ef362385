# object_store.py -- Content-addressable object storage in the cache database
# Copyright (C) 2023 The repocache Authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# repocache is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Git objects stored in the ``objects`` table.

Objects are kept zlib-compressed, keyed by their binary SHA-1. Content is
not verified when it is inserted; instead every reader re-hashes what it
decompresses, and a reader that reaches the end of an object guarantees
that the bytes it produced match the object's name.

A row may also be a placeholder (no type, size -1, no content), created so
that commits can refer to trees and parents that are not cached. Placeholders
are reported as missing and are filled in by a later insert.
"""

__all__ = [
    "ObjectPrefix",
    "ObjectReader",
    "add_object",
    "cat",
    "insert_object",
    "open_object",
    "read_object",
    "stat",
]

import io
import shutil
import sqlite3
import zlib
from hashlib import sha1
from typing import IO, NamedTuple

from .errors import CorruptionError, NotFoundError
from .objects import (
    OBJECT_TYPE_NUMS,
    as_raw_sha,
    obj_sha,
    object_header,
    sha_to_hex,
)
from .store import execute_query, savepoint

_CHUNK_SIZE = 32 * 1024


class ObjectPrefix(NamedTuple):
    """The type and uncompressed size of a stored object."""

    type_name: str
    size: int


def _find(conn: sqlite3.Connection, sha: bytes | str) -> tuple[int, ObjectPrefix]:
    raw = as_raw_sha(sha)
    rows = execute_query(conn, "objects/find", {"sha1": raw})
    if not rows:
        raise NotFoundError(sha_to_hex(raw))
    row = rows[0]
    return row["oid"], ObjectPrefix(row["type"], row["uncompressed_size"])


def stat(conn: sqlite3.Connection, sha: bytes | str) -> ObjectPrefix:
    """Return the type and size of an object.

    Args:
      conn: Cache database connection
      sha: Binary or hex SHA of the object
    Raises:
      NotFoundError: if the object is not cached
    """
    return _find(conn, sha)[1]


class ObjectReader(io.RawIOBase):
    """Decompressing reader over a stored object's content.

    The read that reaches the end of the object checks that the content had
    exactly the stored size, that the compressed stream ended cleanly and
    that the content hashes to the object's name; any mismatch raises
    CorruptionError. Once a read has failed, every later read raises the
    same error.
    """

    def __init__(
        self, blob: "sqlite3.Blob", sha: bytes, prefix: ObjectPrefix
    ) -> None:
        self._blob = blob
        self._decompressor = zlib.decompressobj()
        self.sha = sha
        self.type_name = prefix.type_name
        self.size = prefix.size
        self._remaining = prefix.size
        self._hash = sha1(object_header(prefix.type_name, prefix.size))
        self._error: Exception | None = None
        self._verified = False

    def readable(self) -> bool:
        return True

    def _fail(self, message: str) -> CorruptionError:
        self._error = CorruptionError(
            f"read git object {sha_to_hex(self.sha).decode('ascii')}: {message}"
        )
        return self._error

    def _decompress(self, max_length: int) -> bytes:
        """Return up to max_length bytes of content; b"" at end of stream."""
        while not self._decompressor.eof:
            data = self._decompressor.unconsumed_tail
            if not data:
                data = self._blob.read(_CHUNK_SIZE)
                if not data:
                    raise self._fail("compressed content is truncated")
            try:
                out = self._decompressor.decompress(data, max_length)
            except zlib.error as exc:
                raise self._fail(f"invalid compressed content: {exc}") from exc
            if out:
                return out
        return b""

    def _verify(self) -> None:
        if self._decompress(1):
            raise self._fail(f"content is longer than {self.size} bytes")
        if self._decompressor.unused_data or self._blob.read(1):
            raise self._fail("trailing data after compressed content")
        got = self._hash.digest()
        if got != self.sha:
            raise self._fail(
                f"corrupted content (hash = {sha_to_hex(got).decode('ascii')})"
            )
        self._verified = True

    def readinto(self, buffer: "bytearray | memoryview") -> int:  # type: ignore[override]
        if self._error is not None:
            raise self._error
        if self.closed:
            raise ValueError("I/O operation on closed object reader")
        if len(buffer) == 0:
            return 0
        if self._remaining == 0:
            if not self._verified:
                self._verify()
            return 0
        data = self._decompress(min(len(buffer), self._remaining))
        if not data:
            raise self._fail(
                f"unexpected end of content ({self._remaining} bytes missing)"
            )
        n = len(data)
        buffer[:n] = data
        self._hash.update(data)
        self._remaining -= n
        if self._remaining == 0:
            self._verify()
        return n

    def close(self) -> None:
        if not self.closed:
            self._blob.close()
            self._decompressor = zlib.decompressobj()
        super().close()


def open_object(conn: sqlite3.Connection, sha: bytes | str) -> ObjectReader:
    """Open a verifying reader over an object's content.

    The reader must be closed; it is a context manager.

    Raises:
      NotFoundError: if the object is not cached
    """
    oid, prefix = _find(conn, sha)
    blob = conn.blobopen("objects", "content", oid, readonly=True)
    return ObjectReader(blob, as_raw_sha(sha), prefix)


def read_object(conn: sqlite3.Connection, sha: bytes | str) -> tuple[str, bytes]:
    """Read and verify a whole object.

    Returns: Tuple of (type name, content)
    Raises:
      NotFoundError: if the object is not cached
      CorruptionError: if the stored content does not match the object name
    """
    with open_object(conn, sha) as reader:
        return reader.type_name, reader.readall()


def cat(conn: sqlite3.Connection, sha: bytes | str, outfile: IO[bytes]) -> str:
    """Copy a verified object's content to a file.

    Content is written as it is decompressed, so on CorruptionError the
    file may already hold some of it.

    Returns: The object's type name
    """
    with open_object(conn, sha) as reader:
        shutil.copyfileobj(reader, outfile, _CHUNK_SIZE)
        return reader.type_name


def insert_object(
    conn: sqlite3.Connection,
    sha: bytes | str,
    type_name: str,
    size: int,
    compressed: bytes | IO[bytes],
    compressed_size: int | None = None,
) -> bool:
    """Store an object's zlib-compressed content.

    Nothing happens if the object is already stored. A placeholder row for
    the object is filled in. The content is not checked against sha.

    Args:
      conn: Cache database connection
      sha: Binary or hex SHA of the object
      type_name: Object type (blob, tree, commit or tag)
      size: Uncompressed size of the content
      compressed: zlib stream of the content, as bytes or a binary file
      compressed_size: Length of the zlib stream; determined from
        compressed when not given
    Returns: Whether the object was inserted
    """
    if type_name not in OBJECT_TYPE_NUMS:
        raise ValueError(f"unknown object type {type_name!r}")
    raw = as_raw_sha(sha)
    if isinstance(compressed, bytes):
        compressed = io.BytesIO(compressed)
    if compressed_size is None:
        start = compressed.tell()
        compressed_size = compressed.seek(0, io.SEEK_END) - start
        compressed.seek(start)
    with savepoint(conn):
        rows = execute_query(
            conn,
            "objects/insert",
            {
                "sha1": raw,
                "type": type_name,
                "uncompressed_size": size,
                "compressed_size": compressed_size,
            },
        )
        if not rows:
            return False
        written = 0
        with conn.blobopen("objects", "content", rows[0]["oid"]) as blob:
            while written < compressed_size:
                chunk = compressed.read(min(_CHUNK_SIZE, compressed_size - written))
                if not chunk:
                    break
                blob.write(chunk)
                written += len(chunk)
        if written != compressed_size:
            raise ValueError(
                f"cache {type_name} {sha_to_hex(raw).decode('ascii')}: "
                f"compressed content ended after {written} of {compressed_size} bytes"
            )
    return True


def add_object(
    conn: sqlite3.Connection, type_name: str, data: bytes, level: int = -1
) -> tuple[bytes, bool]:
    """Hash, compress and store raw object content.

    Returns: Tuple of (hex SHA, whether the object was inserted)
    """
    raw = obj_sha(type_name, data)
    inserted = insert_object(conn, raw, type_name, len(data), zlib.compress(data, level))
    return sha_to_hex(raw), inserted
