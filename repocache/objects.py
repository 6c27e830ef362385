# objects.py -- Git object identities and framing
# Copyright (C) 2007 James Westby <jw+debian@jameswestby.net>
# Copyright (C) 2008-2013 Jelmer Vernooij <jelmer@jelmer.uk>
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

"""Git object identities and the framing of commit and tree objects.

Objects are handled as raw bytes plus a type name; the cache never builds a
full object model. This module knows how to name objects (the SHA-1 over a
``"<type> <size>\\0"`` prefix and the content), how to parse commit headers,
and how to serialize commits and trees when they need to be built.
"""

import binascii
from collections.abc import Iterable
from dataclasses import dataclass, field
from hashlib import sha1

from .errors import ParseError

__all__ = [
    "BLOB",
    "COMMIT",
    "OBJECT_TYPE_NAMES",
    "OBJECT_TYPE_NUMS",
    "TAG",
    "TREE",
    "ParsedCommit",
    "as_raw_sha",
    "format_time_entry",
    "format_timezone",
    "hex_to_sha",
    "object_header",
    "obj_sha",
    "parse_commit",
    "parse_time_entry",
    "parse_timezone",
    "serialize_commit",
    "serialize_tree",
    "sha_to_hex",
    "valid_hexsha",
]

COMMIT = "commit"
TREE = "tree"
BLOB = "blob"
TAG = "tag"

# Type numbers as used in pack entry headers.
OBJECT_TYPE_NAMES = {1: COMMIT, 2: TREE, 3: BLOB, 4: TAG}
OBJECT_TYPE_NUMS = {name: num for num, name in OBJECT_TYPE_NAMES.items()}

# Header fields for commits
_TREE_HEADER = b"tree"
_PARENT_HEADER = b"parent"
_AUTHOR_HEADER = b"author"
_COMMITTER_HEADER = b"committer"
_ENCODING_HEADER = b"encoding"

SHA_LENGTH = 20
HEXSHA_LENGTH = 40


def sha_to_hex(sha: bytes) -> bytes:
    """Takes a string and returns the hex of the sha within."""
    hexsha = binascii.hexlify(sha)
    assert len(hexsha) == HEXSHA_LENGTH, f"Incorrect length of sha1 string: {hexsha!r}"
    return hexsha


def hex_to_sha(hex: bytes | str) -> bytes:
    """Takes a hex sha and returns a binary sha."""
    assert len(hex) == HEXSHA_LENGTH, f"Incorrect length of hexsha: {hex!r}"
    try:
        return binascii.unhexlify(hex)
    except (TypeError, binascii.Error) as exc:
        if not isinstance(hex, bytes):
            raise
        raise ValueError(exc.args[0]) from exc


def valid_hexsha(hex: bytes | str) -> bool:
    """Check if a string is a valid hex SHA.

    Args:
      hex: Hex string to check
    Returns: True if valid hex SHA, False otherwise
    """
    if len(hex) != HEXSHA_LENGTH:
        return False
    try:
        binascii.unhexlify(hex)
    except (TypeError, binascii.Error):
        return False
    else:
        return True


def as_raw_sha(sha: bytes | str) -> bytes:
    """Normalize an object name to its 20-byte binary form.

    Args:
      sha: Binary SHA (20 bytes) or hex SHA (40 characters, bytes or str)
    Returns: Binary SHA
    Raises:
      ValueError: if sha is neither
    """
    if isinstance(sha, bytes) and len(sha) == SHA_LENGTH:
        return sha
    if len(sha) == HEXSHA_LENGTH and valid_hexsha(sha):
        return hex_to_sha(sha)
    raise ValueError(f"invalid object name {sha!r}")


def object_header(type_name: str, length: int) -> bytes:
    """Return an object header for the given type and content length."""
    return type_name.encode("ascii") + b" " + str(length).encode("ascii") + b"\0"


def obj_sha(type_name: str, chunks: bytes | Iterable[bytes]) -> bytes:
    """Compute the binary SHA for a type name and object content.

    Args:
      type_name: Object type name
      chunks: Object content, as bytes or an iterable of chunks
    Returns: Binary SHA-1 digest
    """
    if isinstance(chunks, bytes):
        chunks = [chunks]
    else:
        chunks = list(chunks)
    sha = sha1(object_header(type_name, sum(map(len, chunks))))
    for chunk in chunks:
        sha.update(chunk)
    return sha.digest()


def parse_timezone(text: bytes) -> tuple[int, bool]:
    """Parse a timezone text fragment (e.g. '+0100').

    Args:
      text: Text to parse.
    Returns: Tuple with timezone as seconds difference to UTC
        and a boolean indicating whether this was a UTC timezone
        prefixed with a negative sign (-0000).
    """
    # cgit parses the first character as the sign, and the rest
    #  as an integer (using strtol), which could also be negative.
    #  We do the same for compatibility. See #697828.
    if text[:1] not in b"+-":
        raise ValueError(f"Timezone must start with + or - ({text!r})")
    sign = text[:1]
    offset = int(text[1:])
    if sign == b"-":
        offset = -offset
    unnecessary_negative_timezone = offset >= 0 and sign == b"-"
    signum = ((offset < 0) and -1) or 1
    offset = abs(offset)
    hours = int(offset / 100)
    minutes = offset % 100
    return (
        signum * (hours * 3600 + minutes * 60),
        unnecessary_negative_timezone,
    )


def format_timezone(offset: int, unnecessary_negative_timezone: bool = False) -> bytes:
    """Format a timezone for Git serialization.

    Args:
      offset: Timezone offset as seconds difference to UTC
      unnecessary_negative_timezone: Whether to use a minus sign for
        UTC or positive timezones (-0000 and --700 rather than +0000 / +0700).
    """
    if offset % 60 != 0:
        raise ValueError("Unable to handle non-minute offset.")
    if offset < 0 or unnecessary_negative_timezone:
        sign = "-"
        offset = -offset
    else:
        sign = "+"
    return ("%c%02d%02d" % (sign, offset / 3600, (offset / 60) % 60)).encode("ascii")  # noqa: UP031


def parse_time_entry(value: bytes) -> tuple[bytes, int, tuple[int, bool]]:
    """Parse an author or committer value.

    Args:
      value: Value of the header, e.g. ``b"A U Thor <a@b.c> 1700000000 +0100"``
    Returns: Tuple of (identity, time, (timezone, timezone_neg_utc))
    Raises:
      ParseError: if the value is not an identity followed by a time
    """
    try:
        sep = value.rindex(b"> ")
    except ValueError as exc:
        raise ParseError(f"missing time in identity {value!r}") from exc
    person = value[0 : sep + 1]
    rest = value[sep + 2 :]
    try:
        timetext, timezonetext = rest.rsplit(b" ", 1)
        time = int(timetext)
        timezone, timezone_neg_utc = parse_timezone(timezonetext)
    except ValueError as exc:
        raise ParseError(f"invalid time entry {rest!r}") from exc
    return person, time, (timezone, timezone_neg_utc)


def format_time_entry(
    person: bytes, time: int, timezone_info: tuple[int, bool]
) -> bytes:
    """Format an author or committer value."""
    (timezone, timezone_neg_utc) = timezone_info
    return b" ".join(
        [person, str(time).encode("ascii"), format_timezone(timezone, timezone_neg_utc)]
    )


@dataclass
class ParsedCommit:
    """The header fields and message of a commit object.

    Object names (tree and parents) are 40-byte hex SHAs. Timezones are
    offsets from UTC in seconds.
    """

    tree: bytes
    parents: list[bytes]
    author: bytes
    author_time: int
    author_timezone: int
    committer: bytes
    commit_time: int
    commit_timezone: int
    message: bytes
    encoding: bytes | None = None
    extra: list[tuple[bytes, bytes]] = field(default_factory=list)

    def decoded_message(self) -> str:
        """Return the message decoded with the commit's declared encoding."""
        return _decode(self.message, self.encoding)

    def decoded_author(self) -> str:
        """Return the author identity as text."""
        return _decode(self.author, self.encoding)

    def decoded_committer(self) -> str:
        """Return the committer identity as text."""
        return _decode(self.committer, self.encoding)


def _decode(value: bytes, encoding: bytes | None) -> str:
    codec = "utf-8"
    if encoding:
        codec = encoding.decode("ascii", "replace")
    try:
        return value.decode(codec, "replace")
    except LookupError:
        return value.decode("utf-8", "replace")


def _parse_message(data: bytes) -> tuple[list[tuple[bytes, bytes]], bytes]:
    """Split raw object text into header fields and the message.

    Continuation lines (starting with a space) are folded into the
    preceding field, which is how multi-line headers like gpgsig and
    mergetag are encoded.
    """
    fields: list[tuple[bytes, bytes]] = []
    pos = 0
    while True:
        if pos >= len(data):
            # Headers only, without a message.
            return fields, b""
        eol = data.find(b"\n", pos)
        if eol < 0:
            eol = len(data)
        line = data[pos:eol]
        pos = eol + 1
        if not line:
            return fields, data[pos:]
        if line.startswith(b" "):
            if not fields:
                raise ParseError("continuation line before first header")
            name, value = fields[-1]
            fields[-1] = (name, value + b"\n" + line[1:])
            continue
        name, sep, value = line.partition(b" ")
        if not sep or not name:
            raise ParseError(f"malformed header line {line!r}")
        fields.append((name, value))


def parse_commit(data: bytes) -> ParsedCommit:
    """Parse the raw content of a commit object.

    Args:
      data: Commit content, without the object header
    Returns: A ParsedCommit
    Raises:
      ParseError: if the commit framing is malformed
    """
    fields, message = _parse_message(data)
    if not fields or fields[0][0] != _TREE_HEADER:
        raise ParseError("commit does not start with a tree header")
    tree: bytes | None = None
    parents: list[bytes] = []
    author = committer = None
    encoding = None
    extra: list[tuple[bytes, bytes]] = []
    for name, value in fields:
        if name == _TREE_HEADER:
            if tree is not None:
                raise ParseError("multiple tree headers")
            if not valid_hexsha(value):
                raise ParseError(f"invalid tree {value!r}")
            tree = value
        elif name == _PARENT_HEADER:
            if not valid_hexsha(value):
                raise ParseError(f"invalid parent {value!r}")
            parents.append(value)
        elif name == _AUTHOR_HEADER:
            if author is not None:
                raise ParseError("multiple author headers")
            author = parse_time_entry(value)
        elif name == _COMMITTER_HEADER:
            if committer is not None:
                raise ParseError("multiple committer headers")
            committer = parse_time_entry(value)
        elif name == _ENCODING_HEADER:
            encoding = value
        else:
            extra.append((name, value))
    if author is None:
        raise ParseError("missing author")
    if committer is None:
        raise ParseError("missing committer")
    assert tree is not None
    return ParsedCommit(
        tree=tree.lower(),
        parents=[p.lower() for p in parents],
        author=author[0],
        author_time=author[1],
        author_timezone=author[2][0],
        committer=committer[0],
        commit_time=committer[1],
        commit_timezone=committer[2][0],
        message=message,
        encoding=encoding,
        extra=extra,
    )


def serialize_commit(commit: ParsedCommit) -> bytes:
    """Serialize a commit into the canonical object content."""
    chunks = [_TREE_HEADER + b" " + commit.tree + b"\n"]
    for p in commit.parents:
        chunks.append(_PARENT_HEADER + b" " + p + b"\n")
    chunks.append(
        _AUTHOR_HEADER
        + b" "
        + format_time_entry(
            commit.author, commit.author_time, (commit.author_timezone, False)
        )
        + b"\n"
    )
    chunks.append(
        _COMMITTER_HEADER
        + b" "
        + format_time_entry(
            commit.committer, commit.commit_time, (commit.commit_timezone, False)
        )
        + b"\n"
    )
    if commit.encoding:
        chunks.append(_ENCODING_HEADER + b" " + commit.encoding + b"\n")
    for k, v in commit.extra:
        chunks.append(k + b" " + v.replace(b"\n", b"\n ") + b"\n")
    chunks.append(b"\n")
    chunks.append(commit.message)
    return b"".join(chunks)


def _tree_sort_key(entry: tuple[bytes, int, bytes]) -> bytes:
    name, mode, _ = entry
    if mode & 0o40000:
        return name + b"/"
    return name


def serialize_tree(items: Iterable[tuple[bytes, int, bytes]]) -> bytes:
    """Serialize the items in a tree to the canonical object content.

    Args:
      items: Iterable over (name, mode, hexsha) tuples
    Returns: Tree object content, with entries in Git's canonical order
    """
    return b"".join(
        (f"{mode:04o}").encode("ascii") + b" " + name + b"\0" + hex_to_sha(hexsha)
        for name, mode, hexsha in sorted(items, key=_tree_sort_key)
    )
