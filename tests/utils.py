# utils.py -- Test utilities for repocache
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

"""Utility functions common to repocache tests."""

import io
from collections.abc import Sequence

from repocache.client import PullRequest, PullResponse, PullStream, Remote
from repocache.objects import (
    BLOB,
    OBJECT_TYPE_NAMES,
    ParsedCommit,
    obj_sha,
    serialize_commit,
    serialize_tree,
    sha_to_hex,
)
from repocache.pack import (
    DELTA_TYPES,
    OFS_DELTA,
    REF_DELTA,
    SHA1Writer,
    create_delta,
    write_pack_header,
    write_pack_object,
)
from repocache.protocol import CAPABILITY_FILTER, CAPABILITY_OFS_DELTA

# Commit time used by make_commit when none is given.
DEFAULT_COMMIT_TIME = 1174773719


def make_commit_data(**attrs) -> bytes:
    """Build the content of a commit object.

    Any ParsedCommit field may be overridden; the tree defaults to the empty
    tree.

    Returns: Serialized commit content
    """
    all_attrs = {
        "tree": make_tree_data([])[0],
        "parents": [],
        "author": b"Test Author <test@nodomain.com>",
        "author_time": DEFAULT_COMMIT_TIME,
        "author_timezone": 0,
        "committer": b"Test Committer <test@nodomain.com>",
        "commit_time": DEFAULT_COMMIT_TIME,
        "commit_timezone": 0,
        "message": b"Test message.\n",
    }
    all_attrs.update(attrs)
    return serialize_commit(ParsedCommit(**all_attrs))


def make_tree_data(items: Sequence[tuple[bytes, int, bytes]]) -> tuple[bytes, bytes]:
    """Build a tree object from (name, mode, hexsha) entries.

    Returns: Tuple of (hex SHA, content)
    """
    data = serialize_tree(items)
    return sha_to_hex(obj_sha("tree", data)), data


def hexsha(type_name: str, data: bytes) -> bytes:
    """Return the hex SHA of an object."""
    return sha_to_hex(obj_sha(type_name, data))


def build_pack(f, objects_spec, external=None):
    """Write test pack data from a concise spec.

    Args:
      f: A file-like object to write the pack to.
      objects_spec: A list of (type_num, obj). For non-delta types, obj
        is the object's content. For delta types, obj is a tuple of
        (base, data), where base is either an index in objects_spec of the
        base for that delta, or for a ref delta a binary SHA of an object
        outside the pack, and data is the full, non-deltified content.
      external: Dictionary mapping binary SHAs of objects outside the pack
        to (type name, content), for ref deltas against them.
    Returns: A list of tuples in the order specified by objects_spec:
        (offset, type name, data, binary sha)
    """
    external = external or {}
    sf = SHA1Writer(f)
    num_objects = len(objects_spec)
    write_pack_header(sf.write, num_objects)

    full_objects = {}
    offsets = {}

    while len(full_objects) < num_objects:
        for i, (type_num, data) in enumerate(objects_spec):
            if type_num not in DELTA_TYPES:
                type_name = OBJECT_TYPE_NAMES.get(type_num, BLOB)
                full_objects[i] = (type_name, data, obj_sha(type_name, data))
                continue
            base, data = data
            if isinstance(base, int):
                if base not in full_objects:
                    continue
                base_type_name, _, _ = full_objects[base]
            else:
                base_type_name, _ = external[base]
            full_objects[i] = (base_type_name, data, obj_sha(base_type_name, data))

    for i, (type_num, obj) in enumerate(objects_spec):
        offset = sf.offset()
        delta_base = None
        if type_num == OFS_DELTA:
            base_index, data = obj
            delta_base = offset - offsets[base_index]
            _, base_data, _ = full_objects[base_index]
            obj = b"".join(create_delta(base_data, data))
        elif type_num == REF_DELTA:
            base_ref, data = obj
            if isinstance(base_ref, int):
                _, base_data, delta_base = full_objects[base_ref]
            else:
                _, base_data = external[base_ref]
                delta_base = base_ref
            obj = b"".join(create_delta(base_data, data))
        write_pack_object(sf.write, type_num, obj, delta_base)
        offsets[i] = offset

    sf.write_sha()
    f.seek(0)
    return [
        (offsets[i],) + full_objects[i] for i in range(num_objects)
    ]


def build_pack_data(objects_spec, external=None) -> bytes:
    """Like build_pack, but return the pack as bytes."""
    f = io.BytesIO()
    build_pack(f, objects_spec, external)
    return f.getvalue()


class FakePullStream(PullStream):
    """Pull stream that serves a canned packfile."""

    def __init__(self, remote: "FakeRemote") -> None:
        super().__init__(dict(remote.refs), set(remote.capabilities))
        self.remote = remote
        self.closed = False
        self.aborted = False

    def negotiate(self, request: PullRequest) -> PullResponse:
        self.remote.requests.append(request)
        return PullResponse(set(self.capabilities), self.remote.open_packfile())

    def close(self) -> None:
        self.closed = True

    def abort(self) -> None:
        self.aborted = True
        self.remote.abort_transfer()


class FakeRemote(Remote):
    """Remote advertising fixed refs and sending a fixed pack."""

    def __init__(
        self,
        refs: dict[bytes, bytes],
        pack_data: bytes = b"",
        capabilities: Sequence[bytes] = (CAPABILITY_FILTER, CAPABILITY_OFS_DELTA),
    ) -> None:
        self.refs = refs
        self.pack_data = pack_data
        self.capabilities = list(capabilities)
        self.requests: list[PullRequest] = []
        self.streams: list[FakePullStream] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def open_packfile(self):
        return io.BytesIO(self.pack_data)

    def abort_transfer(self) -> None:
        """Called when a pull stream is aborted."""

    def start_pull(self) -> PullStream:
        stream = FakePullStream(self)
        self.streams.append(stream)
        return stream
