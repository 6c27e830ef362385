# protocol.py -- Shared parts of the git protocols
# Copyright (C) 2008 John Carr <john.carr@unrouted.co.uk>
# Copyright (C) 2008-2012 Jelmer Vernooij <jelmer@jelmer.uk>
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

"""Generic functions for talking the git smart server protocol."""

import io
import logging
from collections.abc import Callable, Iterable, Iterator

from .errors import HangupException, ProtocolError

logger = logging.getLogger(__name__)

ZERO_SHA = b"0" * 40

CAPABILITY_AGENT = b"agent"
CAPABILITY_FILTER = b"filter"
CAPABILITY_MULTI_ACK = b"multi_ack"
CAPABILITY_MULTI_ACK_DETAILED = b"multi_ack_detailed"
CAPABILITY_NO_PROGRESS = b"no-progress"
CAPABILITY_OFS_DELTA = b"ofs-delta"
CAPABILITY_SIDE_BAND_64K = b"side-band-64k"
CAPABILITY_SYMREF = b"symref"
CAPABILITY_THIN_PACK = b"thin-pack"

COMMAND_DONE = b"done"
COMMAND_FILTER = b"filter"
COMMAND_HAVE = b"have"
COMMAND_WANT = b"want"

SIDE_BAND_CHANNEL_DATA = 1
SIDE_BAND_CHANNEL_PROGRESS = 2
SIDE_BAND_CHANNEL_FATAL = 3

# Pseudo-ref sent by servers that have no refs, to carry capabilities.
CAPABILITIES_REF = b"capabilities^{}"
PEELED_TAG_SUFFIX = b"^{}"

# Largest payload a single pkt-line can carry.
MAX_PKT_DATA = 65516

_RBUFSIZE = 65536


def agent_string() -> bytes:
    """Return the agent string advertised to servers."""
    from . import __version__

    return ("repocache/" + ".".join(str(x) for x in __version__)).encode("ascii")


def capability_agent() -> bytes:
    """Return the agent capability, as sent in the first want line."""
    return CAPABILITY_AGENT + b"=" + agent_string()


def parse_capability(capability: bytes) -> tuple[bytes, bytes | None]:
    """Split a capability into its name and optional value."""
    parts = capability.split(b"=", 1)
    if len(parts) == 1:
        return (parts[0], None)
    return (parts[0], parts[1])


def extract_capabilities(text: bytes) -> tuple[bytes, list[bytes]]:
    """Extract a capabilities list from a string, if present.

    Args:
      text: String to extract from
    Returns: Tuple with text with capabilities removed and list of capabilities
    """
    if b"\0" not in text:
        return text, []
    text, capabilities = text.rstrip().split(b"\0")
    return (text, capabilities.strip().split(b" "))


def pkt_line(data: bytes | None) -> bytes:
    """Wrap data in a pkt-line.

    Args:
      data: The data to wrap, as a str or None.
    Returns: The data prefixed with its length in pkt-line format; if data was
        None, returns the flush-pkt ('0000').
    """
    if data is None:
        return b"0000"
    if len(data) > MAX_PKT_DATA:
        raise ValueError(f"pkt-line payload too long ({len(data)} bytes)")
    return ("%04x" % (len(data) + 4)).encode("ascii") + data  # noqa: UP031


class Protocol:
    """Class for interacting with a remote git process over the wire.

    Parts of the git wire protocol use 'pkt-lines' to communicate. A pkt-line
    consists of the length of the line as a 4-byte hex string, followed by the
    payload data. The length includes the 4-byte header. The special line
    '0000' indicates the end of a section of input and is called a 'flush-pkt'.

    For details on the pkt-line format, see the cgit distribution:
        Documentation/technical/protocol-common.txt
    """

    def __init__(
        self,
        read: Callable[[int], bytes],
        write: Callable[[bytes], object] | None,
        close: Callable[[], None] | None = None,
    ) -> None:
        """Initialize Protocol.

        Args:
          read: Function to read bytes from the transport
          write: Function to write bytes to the transport
          close: Optional function to close the transport
        """
        self.read = read
        self.write = write
        self._close = close
        self._readahead: io.BytesIO | None = None

    def close(self) -> None:
        """Close the underlying transport if a close function was provided."""
        if self._close:
            self._close()

    def __enter__(self) -> "Protocol":
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Exit context manager and close transport."""
        self.close()

    def read_pkt_line(self) -> bytes | None:
        """Reads a pkt-line from the remote git process.

        This method may read from the readahead buffer; see unread_pkt_line.

        Returns: The next string from the stream, without the length prefix, or
            None for a flush-pkt ('0000') or delim-pkt ('0001').
        """
        if self._readahead is None:
            read = self.read
        else:
            read = self._readahead.read
            self._readahead = None

        try:
            sizestr = read(4)
            if not sizestr:
                raise HangupException
            size = int(sizestr, 16)
            if size == 0 or size == 1:  # flush-pkt or delim-pkt
                logger.debug("git< %s", "0000" if size == 0 else "0001")
                return None
            if size < 4:
                raise ProtocolError(f"invalid pkt-line length {sizestr!r}")
            pkt_contents = read(size - 4)
        except ConnectionResetError as exc:
            raise HangupException from exc
        except ValueError as exc:
            raise ProtocolError(f"invalid pkt-line length {sizestr!r}") from exc
        except OSError as exc:
            raise ProtocolError(str(exc)) from exc
        else:
            if len(pkt_contents) + 4 != size:
                raise ProtocolError(
                    f"Length of pkt read {len(pkt_contents) + 4:04x} does not match "
                    f"length prefix {size:04x}"
                )
            logger.debug("git< %r", pkt_contents)
            return pkt_contents

    def eof(self) -> bool:
        """Test whether the protocol stream has reached EOF.

        Note that this refers to the actual stream EOF and not just a
        flush-pkt.

        Returns: True if the stream is at EOF, False otherwise.
        """
        try:
            next_line = self.read_pkt_line()
        except HangupException:
            return True
        self.unread_pkt_line(next_line)
        return False

    def unread_pkt_line(self, data: bytes | None) -> None:
        """Unread a single line of data into the readahead buffer.

        This method can be used to unread a single pkt-line into a fixed
        readahead buffer.

        Args:
          data: The data to unread, without the length prefix.
        Raises:
          ValueError: If more than one pkt-line is unread.
        """
        if self._readahead is not None:
            raise ValueError("Attempted to unread multiple pkt-lines.")
        self._readahead = io.BytesIO(pkt_line(data))

    def read_pkt_seq(self) -> Iterator[bytes]:
        """Read a sequence of pkt-lines from the remote git process.

        Returns: Yields each line of data up to but not including the next
            flush-pkt.
        """
        pkt = self.read_pkt_line()
        while pkt:
            yield pkt
            pkt = self.read_pkt_line()

    def write_pkt_line(self, line: bytes | None) -> None:
        """Sends a pkt-line to the remote git process.

        Args:
          line: A string containing the data to send, without the length
            prefix.
        """
        assert self.write is not None
        try:
            self.write(pkt_line(line))
        except ConnectionResetError as exc:
            raise HangupException from exc
        except OSError as exc:
            raise ProtocolError(str(exc)) from exc
        logger.debug("git> %r", line if line is not None else b"0000")


def read_pkt_refs(
    pkt_seq: Iterable[bytes],
) -> tuple[dict[bytes, bytes], set[bytes]]:
    """Read a v0/v1 reference advertisement.

    Args:
      pkt_seq: Sequence of pkt-lines, up to the terminating flush-pkt
    Returns: Tuple of (refs, server capabilities). Peeled tag entries
        (``refs/tags/v1^{}``) are dropped.
    """
    server_capabilities = None
    refs: dict[bytes, bytes] = {}
    for pkt in pkt_seq:
        try:
            (sha, ref) = pkt.rstrip(b"\n").split(None, 1)
        except ValueError as exc:
            raise ProtocolError(f"invalid ref advertisement {pkt!r}") from exc
        if sha == b"ERR":
            raise ProtocolError(ref.decode("utf-8", "replace"))
        if server_capabilities is None:
            (ref, server_capabilities) = extract_capabilities(ref)
        if ref.endswith(PEELED_TAG_SUFFIX):
            continue
        refs[ref] = sha

    if server_capabilities is None:
        return {}, set()
    return refs, set(server_capabilities)


class SideBandReader(io.RawIOBase):
    """Read-only file over the data channel of a side-band-64k stream.

    Progress messages are logged as they arrive; a message on the error
    channel raises ProtocolError. The flush-pkt that ends the stream is
    reported as EOF.
    """

    def __init__(self, proto: Protocol) -> None:
        self._proto = proto
        self._pending = b""
        self._done = False

    def readable(self) -> bool:
        return True

    def _next_data(self) -> bytes:
        while not self._done:
            pkt = self._proto.read_pkt_line()
            if pkt is None:
                self._done = True
                break
            channel = pkt[0]
            data = pkt[1:]
            if channel == SIDE_BAND_CHANNEL_DATA:
                if data:
                    return data
            elif channel == SIDE_BAND_CHANNEL_PROGRESS:
                for line in data.replace(b"\r", b"\n").splitlines():
                    if line.strip():
                        logger.debug("remote: %s", line.decode("utf-8", "replace"))
            elif channel == SIDE_BAND_CHANNEL_FATAL:
                raise ProtocolError(
                    "remote error: " + data.decode("utf-8", "replace").strip()
                )
            else:
                raise ProtocolError(f"Invalid sideband channel {channel}")
        return b""

    def readinto(self, buffer: "bytearray | memoryview") -> int:  # type: ignore[override]
        if not self._pending:
            self._pending = self._next_data()
            if not self._pending:
                return 0
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n
