# errors.py -- errors for repocache
# Copyright (C) 2007 James Westby <jw+debian@jameswestby.net>
# Copyright (C) 2009-2012 Jelmer Vernooij <jelmer@jelmer.uk>
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

"""repocache exception classes.

Every exception raised on purpose by repocache derives from
:class:`RepoCacheError`, so callers can tell cache failures apart from
programming errors. Absence of an object is reported with
:class:`NotFoundError`, which is distinct from every failure class.
"""

import binascii
from collections.abc import Sequence


class RepoCacheError(Exception):
    """Base class for all repocache errors."""


class StoreError(RepoCacheError):
    """The cache database could not be opened, migrated or accessed."""

    def __init__(self, path: str, reason: object) -> None:
        """Initialize a StoreError.

        Args:
            path: Path of the cache database.
            reason: Underlying cause, usually an exception or a message.
        """
        self.path = path
        self.reason = reason
        super().__init__(f"open git repo cache {path}: {reason}")


class NotFoundError(RepoCacheError, KeyError):
    """A requested object is not present in the cache."""

    def __init__(self, sha: bytes) -> None:
        """Initialize a NotFoundError.

        Args:
            sha: Hex SHA of the missing object.
        """
        self.sha = sha
        RepoCacheError.__init__(
            self, f"read git object {sha.decode('ascii')}: git object not found"
        )

    def __str__(self) -> str:
        """Return the message without KeyError's quoting."""
        return str(self.args[0])


class CorruptionError(RepoCacheError):
    """Content read from the cache or a packfile does not match its identity."""


class ChecksumMismatch(CorruptionError):
    """A checksum didn't match the expected contents."""

    def __init__(
        self,
        expected: bytes | str,
        got: bytes | str,
        extra: str | None = None,
    ) -> None:
        """Initialize a ChecksumMismatch exception.

        Args:
            expected: The expected checksum value (bytes or hex string).
            got: The actual checksum value (bytes or hex string).
            extra: Optional additional error information.
        """
        if isinstance(expected, bytes) and len(expected) == 20:
            expected_str = binascii.hexlify(expected).decode("ascii")
        else:
            expected_str = (
                expected if isinstance(expected, str) else expected.decode("ascii")
            )
        if isinstance(got, bytes) and len(got) == 20:
            got_str = binascii.hexlify(got).decode("ascii")
        else:
            got_str = got if isinstance(got, str) else got.decode("ascii")
        self.expected = expected_str
        self.got = got_str
        self.extra = extra
        message = f"Checksum mismatch: Expected {expected_str}, got {got_str}"
        if self.extra is not None:
            message = f"{extra}: {message}"
        super().__init__(message)


class ApplyDeltaError(CorruptionError):
    """Indicates that applying a delta failed."""


class UnresolvedDeltas(CorruptionError):
    """Delta entries in a packfile reference bases that never arrived."""

    def __init__(self, bases: Sequence[str]) -> None:
        """Initialize UnresolvedDeltas.

        Args:
            bases: Descriptions of the missing bases (hex SHAs or offsets).
        """
        self.bases = list(bases)
        super().__init__(
            "packfile is inconsistent: unresolved delta bases "
            + ", ".join(self.bases)
        )


class ProtocolError(RepoCacheError):
    """Git protocol exception."""

    def __eq__(self, other: object) -> bool:
        """Check equality between ProtocolError instances."""
        return (
            isinstance(other, ProtocolError)
            and type(self) is type(other)
            and self.args == other.args
        )

    __hash__ = RepoCacheError.__hash__


class HangupException(ProtocolError):
    """The remote closed the connection."""

    def __init__(self, stderr_lines: Sequence[bytes] | None = None) -> None:
        """Initialize a HangupException.

        Args:
            stderr_lines: Optional list of stderr output lines from the remote server.
        """
        if stderr_lines:
            super().__init__(
                "\n".join(
                    line.decode("utf-8", "surrogateescape") for line in stderr_lines
                )
            )
        else:
            super().__init__("The remote server unexpectedly closed the connection.")
        self.stderr_lines = stderr_lines


class PackFormatError(ProtocolError):
    """A packfile stream is structurally invalid."""


class HTTPUnauthorized(ProtocolError):
    """Raised when authentication fails."""

    def __init__(self, www_authenticate: str | None, url: str) -> None:
        """Initialize HTTPUnauthorized.

        Args:
            www_authenticate: Value of the WWW-Authenticate header.
            url: URL that required authentication.
        """
        super().__init__("No valid credentials provided")
        self.www_authenticate = www_authenticate
        self.url = url


class ParseError(RepoCacheError):
    """Indicates an error parsing an object."""


class Cancelled(RepoCacheError):
    """An operation was aborted through its cancellation signal."""
