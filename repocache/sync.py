# sync.py -- Copying objects from a remote into the cache
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

"""Fetching a remote's history into the cache.

A sync asks the remote for everything its branches and tags point at,
without blobs, and stores the commits, trees and tags in the pack it sends
back. Delta entries are buffered while the pack streams past and resolved
once it has been read completely, since a delta's base may appear later in
the pack or be another delta. Finally the new commits are indexed.

The whole sync runs in one transaction: if anything fails, or the sync is
cancelled, the cache is left exactly as it was.
"""

__all__ = [
    "PackIngester",
    "SyncResult",
    "sync",
]

import logging
import sqlite3
import threading
import zlib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO

from .client import PullRequest, Remote
from .commits import index_commits
from .config import DEFAULT_FILTER_SPEC
from .errors import Cancelled, NotFoundError, UnresolvedDeltas
from .object_store import insert_object, read_object
from .objects import BLOB, COMMIT, OBJECT_TYPE_NAMES, obj_sha, sha_to_hex
from .pack import OFS_DELTA, REF_DELTA, PackStreamReader, UnpackedObject, apply_delta
from .protocol import CAPABILITY_FILTER, ZERO_SHA
from .store import transaction

logger = logging.getLogger(__name__)

SYNC_REF_PREFIXES = (b"HEAD", b"refs/heads/", b"refs/tags/")

# Seconds between checks of the cancel event while a transfer runs.
CANCEL_POLL_INTERVAL = 0.1


@dataclass
class SyncResult:
    """Outcome of a sync.

    Attributes:
      refs: Advertised refs that were fetched, mapped to hex SHAs
      objects_inserted: Number of objects newly stored
      new_commits: Hex SHAs of newly stored commits, in indexing order
      failed_commits: Hex SHAs of new commits that could not be indexed
    """

    refs: dict[bytes, bytes] = field(default_factory=dict)
    objects_inserted: int = 0
    new_commits: list[bytes] = field(default_factory=list)
    failed_commits: list[bytes] = field(default_factory=list)


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("sync cancelled")


class PackIngester:
    """Store the objects of a pack stream in the cache.

    Blobs are not cached. Their contents are kept in memory until deltas
    are resolved, since a delta may use a blob, or a blob produced by
    another delta, as its base.
    """

    def __init__(
        self, conn: sqlite3.Connection, cancel: threading.Event | None = None
    ) -> None:
        self.conn = conn
        self.cancel = cancel
        # Pack offset to binary SHA of every entry stored so far.
        self.offsets: dict[int, bytes] = {}
        # Offsets of entries of unmodelled types, which are not stored.
        self.skipped_offsets: set[int] = set()
        self.blob_offsets: dict[int, bytes] = {}
        self.blobs: dict[bytes, bytes] = {}
        self.pending: dict[int, UnpackedObject] = {}
        self.new_commits: list[bytes] = []
        self.inserted = 0

    def _reader(self, read: Callable[[int], bytes]) -> Callable[[int], bytes]:
        def checked_read(size: int) -> bytes:
            _check_cancelled(self.cancel)
            data = read(size)
            # The read may have returned early because the transport was
            # torn down on cancellation.
            _check_cancelled(self.cancel)
            return data

        return checked_read

    def _store(self, offset: int, type_name: str, data: bytes) -> bytes:
        sha = obj_sha(type_name, data)
        if type_name == BLOB:
            self.blob_offsets[offset] = data
            self.blobs[sha] = data
            return sha
        inserted = insert_object(
            self.conn, sha, type_name, len(data), zlib.compress(data)
        )
        self.offsets[offset] = sha
        if inserted:
            self.inserted += 1
            if type_name == COMMIT:
                self.new_commits.append(sha)
        logger.debug(
            "%s %s %s",
            "Stored" if inserted else "Already have",
            type_name,
            sha_to_hex(sha).decode("ascii"),
        )
        return sha

    def ingest(self, packfile: IO[bytes]) -> int:
        """Read a pack stream, storing full entries and buffering deltas.

        Returns: Number of entries in the pack
        Raises:
          PackFormatError: if the pack is structurally invalid
          CorruptionError: if an entry or the pack checksum is wrong
          Cancelled: if the cancel event is set while reading
        """
        read_some = getattr(packfile, "read1", None) or packfile.read
        reader = PackStreamReader(
            self._reader(packfile.read), read_some=self._reader(read_some)
        )
        for unpacked in reader.read_objects():
            assert unpacked.offset is not None
            if unpacked.pack_type_num in (OFS_DELTA, REF_DELTA):
                self.pending[unpacked.offset] = unpacked
                continue
            type_name = OBJECT_TYPE_NAMES.get(unpacked.pack_type_num)
            if type_name is None:
                logger.debug(
                    "Skipping pack entry of type %d at offset %d",
                    unpacked.pack_type_num,
                    unpacked.offset,
                )
                self.skipped_offsets.add(unpacked.offset)
                continue
            self._store(unpacked.offset, type_name, unpacked.data())
        logger.info(
            "Read %d pack entries; %d deltas pending", len(reader), len(self.pending)
        )
        return len(reader)

    def _base(self, delta: UnpackedObject) -> tuple[str, bytes] | None:
        """Locate the base of a delta.

        Returns: Tuple of (type name, content) of the base, or None if the
            base is not available yet
        """
        if delta.pack_type_num == OFS_DELTA:
            base_offset = delta.base_offset
            if base_offset in self.blob_offsets:
                return BLOB, self.blob_offsets[base_offset]
            if base_offset in self.offsets:
                return read_object(self.conn, self.offsets[base_offset])
            return None
        assert isinstance(delta.delta_base, bytes)
        if delta.delta_base in self.blobs:
            return BLOB, self.blobs[delta.delta_base]
        try:
            return read_object(self.conn, delta.delta_base)
        except NotFoundError:
            return None

    def resolve_deltas(self) -> int:
        """Apply buffered deltas until none are left.

        Each pass resolves every delta whose base is available, so chains
        resolve one link per pass in whatever order they appear in the pack.
        Deltas against entries of unmodelled types are skipped. The blob
        contents kept for deltas are released afterwards.

        Returns: Number of deltas resolved or skipped
        Raises:
          UnresolvedDeltas: if some deltas have no base anywhere
          ApplyDeltaError: if a delta does not apply to its base
        """
        resolved = 0
        passes = 0
        try:
            while self.pending:
                _check_cancelled(self.cancel)
                passes += 1
                progress = False
                for offset, delta in list(self.pending.items()):
                    if (
                        delta.pack_type_num == OFS_DELTA
                        and delta.base_offset in self.skipped_offsets
                    ):
                        self.skipped_offsets.add(offset)
                        base = None
                    else:
                        base = self._base(delta)
                        if base is None:
                            continue
                    del self.pending[offset]
                    progress = True
                    resolved += 1
                    if base is not None:
                        type_name, base_data = base
                        self._store(
                            offset, type_name, apply_delta(base_data, delta.data())
                        )
                if not progress:
                    raise UnresolvedDeltas(
                        sorted({self._describe_base(d) for d in self.pending.values()})
                    )
        finally:
            self.blob_offsets.clear()
            self.blobs.clear()
        logger.info("Resolved %d deltas in %d passes", resolved, passes)
        return resolved

    def _describe_base(self, delta: UnpackedObject) -> str:
        if delta.pack_type_num == OFS_DELTA:
            return f"offset {delta.base_offset}"
        assert isinstance(delta.delta_base, bytes)
        return sha_to_hex(delta.delta_base).decode("ascii")


@contextmanager
def _abort_on_cancel(
    cancel: threading.Event | None, abort: Callable[[], None]
) -> Iterator[None]:
    """Call abort from a watcher thread if cancel is set during the block."""
    if cancel is None:
        yield
        return
    finished = threading.Event()

    def watch() -> None:
        while not finished.is_set():
            if cancel.wait(CANCEL_POLL_INTERVAL):
                logger.debug("Sync cancelled; aborting transfer")
                abort()
                return

    watcher = threading.Thread(target=watch, name="repocache-cancel", daemon=True)
    watcher.start()
    try:
        yield
    finally:
        finished.set()
        watcher.join()


def sync(
    conn: sqlite3.Connection,
    remote: Remote,
    *,
    filter_spec: bytes | None = DEFAULT_FILTER_SPEC,
    cancel: threading.Event | None = None,
) -> SyncResult:
    """Copy the history of a remote's branches and tags into the cache.

    Args:
      conn: Cache database connection
      remote: Remote to pull from
      filter_spec: Object filter to request when the remote supports it;
        None to request every object
      cancel: Event that aborts the sync when set
    Returns: A SyncResult
    Raises:
      ProtocolError: if talking to the remote fails
      CorruptionError: if the pack is corrupt or deltas cannot be resolved
      Cancelled: if cancel was set
    """
    _check_cancelled(cancel)
    result = SyncResult()
    with remote.start_pull() as stream:
        result.refs = stream.list_refs(*SYNC_REF_PREFIXES)
        want = [sha for sha in dict.fromkeys(result.refs.values()) if sha != ZERO_SHA]
        if not want:
            logger.info("Remote %r has nothing to sync", remote)
            return result
        if filter_spec and not stream.has_capability(CAPABILITY_FILTER):
            logger.info("Remote %r does not support filters; fetching blobs too", remote)
            filter_spec = None
        logger.info("Requesting %d objects from %r", len(want), remote)
        response = stream.negotiate(PullRequest(want=want, filter_spec=filter_spec))
        try:
            with _abort_on_cancel(cancel, stream.abort), transaction(conn):
                ingester = PackIngester(conn, cancel)
                ingester.ingest(response.packfile)
                ingester.resolve_deltas()
                _check_cancelled(cancel)
                logger.info("Indexing %d new commits", len(ingester.new_commits))
                result.new_commits, result.failed_commits = index_commits(
                    conn, ingester.new_commits, cancel
                )
                result.objects_inserted = ingester.inserted
        except Cancelled:
            raise
        except Exception as exc:
            if cancel is not None and cancel.is_set():
                raise Cancelled("sync cancelled") from exc
            raise
        finally:
            response.close()
    logger.info(
        "Sync from %r stored %d objects", remote, result.objects_inserted
    )
    return result
