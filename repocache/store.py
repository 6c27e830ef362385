# store.py -- The SQLite database behind a repository cache
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

"""The cache database: opening, schema migration and transactions.

A cache is a single SQLite file. It is tagged with a fixed
``application_id`` so foreign databases are never touched, and carries the
schema version in ``user_version``. A file written by a different schema
version is wiped and recreated; there is no incremental migration, since
everything in a cache can be fetched again.

The connection runs in autocommit mode and transactions are managed
explicitly with :func:`transaction` and :func:`savepoint`.

SQL lives in ``*.sql`` files next to this module and is loaded once, at
import time, into :data:`QUERIES`.
"""

__all__ = [
    "APPLICATION_ID",
    "QUERIES",
    "SCHEMA_VERSION",
    "connect",
    "execute_query",
    "load_queries",
    "migrate",
    "savepoint",
    "transaction",
]

import itertools
import logging
import os
import re
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from importlib import resources

from .errors import StoreError

logger = logging.getLogger(__name__)

APPLICATION_ID = 0x40A9233D

SCHEMA_VERSION = 1

PAGE_SIZE = 8192


def _split_statements(text: str) -> list[str]:
    statements = []
    current = ""
    for line in text.splitlines(keepends=True):
        current += line
        if sqlite3.complete_statement(current):
            statements.append(current.strip())
            current = ""
    if current.strip():
        raise ValueError(f"incomplete SQL statement: {current.strip()!r}")
    return statements


def load_queries(package: str = __package__, directory: str = "sql") -> dict[str, list[str]]:
    """Load every SQL file below a package directory.

    Returns: Dictionary mapping names like ``"objects/find"`` to the list of
        statements in that file
    """
    queries: dict[str, list[str]] = {}
    pending = [(resources.files(package).joinpath(directory), "")]
    while pending:
        root, prefix = pending.pop()
        for entry in root.iterdir():
            if entry.is_dir():
                pending.append((entry, prefix + entry.name + "/"))
            elif entry.name.endswith(".sql"):
                name = prefix + entry.name[: -len(".sql")]
                queries[name] = _split_statements(entry.read_text(encoding="utf-8"))
    return queries


QUERIES = load_queries()


def execute_query(
    conn: sqlite3.Connection, name: str, params: Mapping[str, object] | None = None
) -> list[sqlite3.Row]:
    """Run every statement of a named query with shared named parameters.

    Returns: The rows produced by the last statement
    """
    rows: list[sqlite3.Row] = []
    for statement in QUERIES[name]:
        rows = conn.execute(statement, params or {}).fetchall()
    return rows


_savepoint_ids = itertools.count()
_savepoint_lock = threading.Lock()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block in an immediate transaction.

    The transaction is committed when the block exits normally and rolled
    back, with the exception re-raised, otherwise.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        # SQLite may already have rolled back on its own.
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


@contextmanager
def savepoint(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block in a savepoint.

    Savepoints nest, both inside each other and inside :func:`transaction`.
    On exception only the work done inside the block is undone.
    """
    with _savepoint_lock:
        name = f"repocache_{next(_savepoint_ids)}"
    conn.execute(f'SAVEPOINT "{name}"')
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute(f'ROLLBACK TO "{name}"')
            conn.execute(f'RELEASE "{name}"')
        raise
    conn.execute(f'RELEASE "{name}"')


def _regexp(pattern: str | None, value: str | None) -> bool | None:
    if pattern is None or value is None:
        return None
    return re.search(pattern, value) is not None


def _database_path(conn: sqlite3.Connection) -> str:
    for _seq, name, path in conn.execute("PRAGMA database_list"):
        if name == "main":
            return path or ":memory:"
    return ":memory:"


def _drop_all_tables(conn: sqlite3.Connection) -> None:
    tables = []
    views = []
    for type_name, name in conn.execute(
        "SELECT \"type\", \"name\" FROM sqlite_master WHERE \"type\" in ('table', 'view')"
    ):
        if name.startswith("sqlite_"):
            continue
        if type_name == "view":
            views.append(name)
        else:
            tables.append(name)
    for name in views:
        conn.execute('DROP VIEW "{}"'.format(name.replace('"', '""')))
    for name in tables:
        conn.execute('DROP TABLE "{}"'.format(name.replace('"', '""')))
    logger.debug("Dropped %d tables and %d views", len(tables), len(views))


def migrate(conn: sqlite3.Connection) -> None:
    """Bring the schema of an open cache database up to date.

    Runs in a single immediate transaction, so a failure at any step leaves
    the file as it was.

    Raises:
      StoreError: if the database belongs to another application
    """
    with transaction(conn):
        has_schema = conn.execute(
            "SELECT COUNT(*) > 0 FROM sqlite_master"
        ).fetchone()[0]
        (app_id,) = conn.execute("PRAGMA application_id").fetchone()
        if app_id != APPLICATION_ID and not (app_id == 0 and not has_schema):
            raise StoreError(
                _database_path(conn),
                f"database application_id = {app_id:#x} (expected {APPLICATION_ID:#x})",
            )
        (version,) = conn.execute("PRAGMA user_version").fetchone()
        if has_schema and version == SCHEMA_VERSION:
            return
        if has_schema:
            logger.info(
                "Cache schema version %d is not %d; discarding cached data",
                version,
                SCHEMA_VERSION,
            )
            with savepoint(conn):
                _drop_all_tables(conn)
        # PRAGMAs don't permit parameter substitution.
        conn.execute(f"PRAGMA application_id = {APPLICATION_ID:d}")
        execute_query(conn, "schema")
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION:d}")


def connect(path: str | os.PathLike[str]) -> sqlite3.Connection:
    """Open a cache database, creating and migrating it as needed.

    The connection is in autocommit mode, enforces foreign keys and returns
    :class:`sqlite3.Row` rows.

    Raises:
      StoreError: if the file cannot be opened, is not a cache database
        or cannot be migrated
    """
    path = os.fspath(path)
    try:
        conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    except sqlite3.Error as exc:
        raise StoreError(path, exc) from exc
    try:
        conn.row_factory = sqlite3.Row
        conn.create_function("regexp", 2, _regexp, deterministic=True)
        conn.execute(f"PRAGMA page_size = {PAGE_SIZE:d}")
        migrate(conn)
        conn.execute("PRAGMA foreign_keys = on")
    except StoreError as exc:
        conn.close()
        raise StoreError(path, exc.reason) from exc
    except sqlite3.Error as exc:
        conn.close()
        raise StoreError(path, exc) from exc
    except BaseException:
        conn.close()
        raise
    logger.debug("Opened cache %s", path)
    return conn
