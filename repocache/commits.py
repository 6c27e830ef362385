# commits.py -- Indexing commit metadata in the cache database
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

"""Structured commit rows derived from cached commit objects.

A commit is indexed into the ``commits`` and ``commit_parents`` tables once
its object is stored. Trees and parents that are not cached are referenced
through placeholder rows in ``objects``.
"""

__all__ = [
    "IndexedCommit",
    "index_commit",
    "index_commits",
    "read_commit",
    "topological_order",
]

import logging
import sqlite3
import threading
from collections.abc import Callable, Hashable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import Cancelled, CorruptionError, NotFoundError, ParseError
from .object_store import read_object
from .objects import COMMIT, ParsedCommit, as_raw_sha, hex_to_sha, parse_commit, sha_to_hex
from .store import execute_query, savepoint

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)

# Offsets of 100 hours or more can't be written as +HHMM.
_MAX_TZOFFSET_MINS = 60 * 100


@dataclass
class IndexedCommit:
    """A commit as recorded in the index.

    Object names are 40-byte hex SHAs; timezones are offsets from UTC in
    seconds. Identities are None when the commit had an empty one.
    """

    sha: bytes
    tree: bytes
    parents: list[bytes] = field(default_factory=list)
    author: str | None = None
    author_time: int | None = None
    author_timezone: int | None = None
    committer: str | None = None
    commit_time: int | None = None
    commit_timezone: int | None = None
    message: str = ""


def topological_order(
    ids: Iterable[T], parents_of: Callable[[T], Iterable[T]]
) -> list[T]:
    """Order a batch of commits so that parents come before their children.

    Only parents that are themselves in the batch are followed. Each id is
    emitted exactly once, even if the parent graph contains a cycle.

    Args:
      ids: Commit ids in the batch; the order is used to break ties
      parents_of: Function returning the parent ids of a commit
    Returns: List of the ids in the batch, parents first
    """
    batch = dict.fromkeys(ids)
    visited: set[T] = set()
    order: list[T] = []
    for start in batch:
        if start in visited:
            continue
        visited.add(start)
        stack: list[tuple[T, Iterator[T]]] = [(start, iter(parents_of(start)))]
        while stack:
            node, parents = stack[-1]
            for parent in parents:
                if parent in batch and parent not in visited:
                    visited.add(parent)
                    stack.append((parent, iter(parents_of(parent))))
                    break
            else:
                stack.pop()
                order.append(node)
    return order


def _tzoffset_mins(seconds: int) -> int:
    mins = seconds // 60
    if abs(mins) >= _MAX_TZOFFSET_MINS:
        raise ParseError(f"timezone offset out of range ({mins} minutes)")
    return mins


def _upsert(conn: sqlite3.Connection, raw: bytes, commit: ParsedCommit) -> None:
    rows = execute_query(conn, "objects/find", {"sha1": raw})
    if not rows:
        raise NotFoundError(sha_to_hex(raw))
    oid = rows[0]["oid"]
    execute_query(
        conn,
        "commits/upsert",
        {
            "oid": oid,
            "tree": hex_to_sha(commit.tree),
            "author": commit.decoded_author() or None,
            "committer": commit.decoded_committer() or None,
            "author_timestamp": commit.author_time,
            "author_tzoffset_mins": _tzoffset_mins(commit.author_timezone),
            "commit_timestamp": commit.commit_time,
            "commit_tzoffset_mins": _tzoffset_mins(commit.commit_timezone),
            "message": commit.decoded_message(),
        },
    )
    for n, parent in enumerate(commit.parents):
        execute_query(
            conn,
            "commits/insert_parent",
            {"oid": oid, "n": n, "parent": hex_to_sha(parent)},
        )


def _load(conn: sqlite3.Connection, raw: bytes) -> ParsedCommit:
    type_name, data = read_object(conn, raw)
    if type_name != COMMIT:
        raise ParseError(
            f"{sha_to_hex(raw).decode('ascii')} is a {type_name}, not a commit"
        )
    return parse_commit(data)


def index_commit(conn: sqlite3.Connection, sha: bytes | str) -> ParsedCommit:
    """Parse a stored commit and write its rows to the index.

    Indexing is idempotent: the commit row is replaced and its parent links
    are rewritten. Everything happens inside a savepoint.

    Returns: The parsed commit
    Raises:
      NotFoundError: if the commit object is not cached
      CorruptionError: if the stored object is corrupt
      ParseError: if the object is not a well-formed commit
    """
    raw = as_raw_sha(sha)
    with savepoint(conn):
        commit = _load(conn, raw)
        _upsert(conn, raw, commit)
    return commit


def index_commits(
    conn: sqlite3.Connection,
    shas: Iterable[bytes | str],
    cancel: threading.Event | None = None,
) -> tuple[list[bytes], list[bytes]]:
    """Index a batch of commits, parents before children.

    A commit that cannot be read or parsed is logged and skipped; only its
    own rows are affected. Database errors propagate.

    Returns: Tuple of (hex SHAs indexed in order, hex SHAs that failed)
    """
    parsed: dict[bytes, ParsedCommit] = {}
    failed: list[bytes] = []
    for sha in shas:
        raw = as_raw_sha(sha)
        if raw in parsed:
            continue
        try:
            parsed[raw] = _load(conn, raw)
        except (ParseError, CorruptionError, NotFoundError) as exc:
            logger.warning("Unable to index commit %s: %s", sha_to_hex(raw).decode("ascii"), exc)
            failed.append(sha_to_hex(raw))

    def parents_of(raw: bytes) -> Iterator[bytes]:
        return (hex_to_sha(p) for p in parsed[raw].parents)

    indexed: list[bytes] = []
    for raw in topological_order(parsed, parents_of):
        if cancel is not None and cancel.is_set():
            raise Cancelled("commit indexing cancelled")
        try:
            with savepoint(conn):
                _upsert(conn, raw, parsed[raw])
        except (ParseError, NotFoundError) as exc:
            logger.warning("Unable to index commit %s: %s", sha_to_hex(raw).decode("ascii"), exc)
            failed.append(sha_to_hex(raw))
            continue
        logger.debug("Indexed commit %s", sha_to_hex(raw).decode("ascii"))
        indexed.append(sha_to_hex(raw))
    return indexed, failed


def read_commit(conn: sqlite3.Connection, sha: bytes | str) -> IndexedCommit:
    """Look up an indexed commit.

    Raises:
      NotFoundError: if the commit has not been indexed
    """
    raw = as_raw_sha(sha)
    rows = execute_query(conn, "commits/find", {"sha1": raw})
    if not rows:
        raise NotFoundError(sha_to_hex(raw))
    row = rows[0]
    parents = [
        sha_to_hex(p["parent"])
        for p in execute_query(conn, "commits/parents", {"sha1": raw})
    ]

    def seconds(mins: int | None) -> int | None:
        return None if mins is None else mins * 60

    return IndexedCommit(
        sha=sha_to_hex(raw),
        tree=sha_to_hex(row["tree"]),
        parents=parents,
        author=row["author"],
        author_time=row["author_timestamp"],
        author_timezone=seconds(row["author_tzoffset_mins"]),
        committer=row["committer"],
        commit_time=row["commit_timestamp"],
        commit_timezone=seconds(row["commit_tzoffset_mins"]),
        message=row["message"] or "",
    )
