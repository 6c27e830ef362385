# cache.py -- A repository cache
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

"""Object-oriented access to a cache file.

:class:`Cache` bundles a database connection with the functions that work
on it::

    with Cache.open("repo.cache") as cache:
        cache.copy_from(get_remote("https://example.com/repo.git"))
        print(cache.read_commit(sha).message)
"""

__all__ = ["Cache", "open_cache"]

import os
import sqlite3
import threading
from typing import IO

from . import commits, object_store, store
from .client import Remote
from .config import DEFAULT_FILTER_SPEC
from .object_store import ObjectPrefix, ObjectReader
from .sync import SyncResult, sync


class Cache:
    """A repository cache backed by a single SQLite file."""

    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self.conn = conn
        self.path = path

    @classmethod
    def open(cls, path: str | os.PathLike[str]) -> "Cache":
        """Open a cache, creating or migrating the file as needed.

        Raises:
          StoreError: if the file can't be opened or isn't a cache
        """
        return cls(store.connect(path), os.fspath(path))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Cache":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def stat(self, sha: bytes | str) -> ObjectPrefix:
        return object_store.stat(self.conn, sha)

    def open_object(self, sha: bytes | str) -> ObjectReader:
        return object_store.open_object(self.conn, sha)

    def read_object(self, sha: bytes | str) -> tuple[str, bytes]:
        return object_store.read_object(self.conn, sha)

    def cat(self, sha: bytes | str, outfile: IO[bytes]) -> str:
        return object_store.cat(self.conn, sha, outfile)

    def insert_object(
        self,
        sha: bytes | str,
        type_name: str,
        size: int,
        compressed: bytes | IO[bytes],
        compressed_size: int | None = None,
    ) -> bool:
        return object_store.insert_object(
            self.conn, sha, type_name, size, compressed, compressed_size
        )

    def add_object(self, type_name: str, data: bytes) -> tuple[bytes, bool]:
        return object_store.add_object(self.conn, type_name, data)

    def index_commit(self, sha: bytes | str) -> None:
        commits.index_commit(self.conn, sha)

    def read_commit(self, sha: bytes | str) -> commits.IndexedCommit:
        return commits.read_commit(self.conn, sha)

    def copy_from(
        self,
        remote: Remote,
        *,
        filter_spec: bytes | None = DEFAULT_FILTER_SPEC,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Sync the cache with a remote; see :func:`repocache.sync.sync`."""
        return sync(self.conn, remote, filter_spec=filter_spec, cancel=cancel)


def open_cache(path: str | os.PathLike[str]) -> Cache:
    """Open a cache file; see :meth:`Cache.open`."""
    return Cache.open(path)
