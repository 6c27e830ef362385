# pack.py -- For dealing with packed git objects.
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

"""Reading and writing packfile streams.

A pack is a compact representation of a bunch of objects, stored
using deltas where possible. The cache only ever receives packs over the
wire, so this module reads them as a stream: a 12-byte header, a sequence of
zlib-compressed entries (whole objects or deltas against another object),
and a trailing SHA-1 over everything before it.

The writers at the bottom of this module produce the same format; they are
used to build packs for local remotes and tests.
"""

__all__ = [
    "DELTA_TYPES",
    "OFS_DELTA",
    "REF_DELTA",
    "PackStreamReader",
    "SHA1Writer",
    "UnpackedObject",
    "apply_delta",
    "create_delta",
    "pack_object_header",
    "read_pack_header",
    "read_zlib_chunks",
    "take_msb_bytes",
    "unpack_object",
    "write_pack_header",
    "write_pack_object",
]

import binascii
import struct
import zlib
from collections import deque
from collections.abc import Callable, Iterator
from difflib import SequenceMatcher
from hashlib import sha1
from io import BytesIO
from os import SEEK_END
from struct import unpack_from
from typing import IO

from .errors import ApplyDeltaError, ChecksumMismatch, CorruptionError, PackFormatError
from .objects import sha_to_hex

OFS_DELTA = 6
REF_DELTA = 7

DELTA_TYPES = (OFS_DELTA, REF_DELTA)

_SHA_SIZE = 20

_ZLIB_BUFSIZE = 65536  # 64KB buffer for better I/O performance


def take_msb_bytes(read: Callable[[int], bytes]) -> list[int]:
    """Read bytes marked with most significant bit.

    Args:
      read: Read function
    Returns: List of bytes read
    """
    ret: list[int] = []
    while len(ret) == 0 or ret[-1] & 0x80:
        b = read(1)
        if not b:
            raise PackFormatError("unexpected end of pack entry header")
        ret.append(ord(b[:1]))
    return ret


class UnpackedObject:
    """Class encapsulating an object unpacked from a pack stream.

    These objects should only be created from within unpack_object. Non-delta
    entries carry their content in decomp_chunks; delta entries carry the raw
    delta instructions there and their base in delta_base (a relative offset
    for OFS_DELTA, a binary SHA for REF_DELTA).
    """

    __slots__ = [
        "decomp_chunks",  # Decompressed object chunks.
        "decomp_len",  # Decompressed length of this object.
        "delta_base",  # Delta base offset or SHA.
        "offset",  # Offset in its pack.
        "pack_type_num",  # Type of this object in the pack (may be a delta).
    ]

    decomp_chunks: list[bytes]
    decomp_len: int
    delta_base: None | bytes | int
    offset: int | None
    pack_type_num: int

    def __init__(
        self,
        pack_type_num: int,
        *,
        delta_base: None | bytes | int = None,
        decomp_len: int = 0,
        decomp_chunks: list[bytes] | None = None,
        offset: int | None = None,
    ) -> None:
        """Initialize an UnpackedObject.

        Args:
            pack_type_num: Type number of this object in the pack
            delta_base: Delta base (offset or SHA) if this is a delta object
            decomp_len: Decompressed length of this object
            decomp_chunks: Decompressed chunks
            offset: Offset in the pack file
        """
        self.offset = offset
        self.pack_type_num = pack_type_num
        self.delta_base = delta_base
        self.decomp_chunks = decomp_chunks or []
        self.decomp_len = decomp_len

    @property
    def base_offset(self) -> int:
        """Absolute pack offset of an OFS_DELTA entry's base."""
        assert self.pack_type_num == OFS_DELTA
        assert isinstance(self.delta_base, int) and self.offset is not None
        return self.offset - self.delta_base

    def data(self) -> bytes:
        """Return the decompressed content as a single bytestring."""
        return b"".join(self.decomp_chunks)

    def __eq__(self, other: object) -> bool:
        """Check equality with another UnpackedObject."""
        if not isinstance(other, UnpackedObject):
            return False
        for slot in self.__slots__:
            if getattr(self, slot) != getattr(other, slot):
                return False
        return True

    def __repr__(self) -> str:
        """Return string representation of this UnpackedObject."""
        data = [f"{s}={getattr(self, s)!r}" for s in self.__slots__]
        return "{}({})".format(self.__class__.__name__, ", ".join(data))


def read_zlib_chunks(
    read_some: Callable[[int], bytes],
    unpacked: UnpackedObject,
    buffer_size: int = _ZLIB_BUFSIZE,
) -> bytes:
    """Read zlib data from a buffer.

    This function requires that the buffer have additional data following the
    compressed data, which is guaranteed to be the case for git pack files.

    Args:
      read_some: Read function that returns at least one byte, but may
        return less than the requested size.
      unpacked: An UnpackedObject to write result data to. Its decomp_len
        must be set to the declared size of the entry.
      buffer_size: Size of the read buffer.
    Returns: Leftover unused data from the decompression.

    Raises:
      PackFormatError: if the stream ends inside the entry
      CorruptionError: if the entry does not decompress to its declared size
    """
    if unpacked.decomp_len < 0:
        raise ValueError("non-negative zlib data stream size expected")
    decomp_obj = zlib.decompressobj()

    decomp_chunks = unpacked.decomp_chunks
    decomp_len = 0

    while True:
        add = read_some(buffer_size)
        if not add:
            raise PackFormatError("EOF before end of zlib stream")
        try:
            decomp = decomp_obj.decompress(add)
        except zlib.error as exc:
            raise CorruptionError(f"invalid compressed pack entry: {exc}") from exc
        decomp_len += len(decomp)
        if decomp_len > unpacked.decomp_len:
            raise CorruptionError(
                f"pack entry larger than its declared size {unpacked.decomp_len}"
            )
        decomp_chunks.append(decomp)
        unused = decomp_obj.unused_data
        if unused or decomp_obj.eof:
            break

    if decomp_len != unpacked.decomp_len:
        raise CorruptionError(
            f"pack entry decompressed to {decomp_len} bytes, "
            f"expected {unpacked.decomp_len}"
        )
    return unused


def read_pack_header(read: Callable[[int], bytes]) -> tuple[int, int]:
    """Read the header of a pack file.

    Args:
      read: Read function
    Returns: Tuple of (pack version, number of objects).
    Raises:
      PackFormatError: if the header is missing or invalid
    """
    header = read(12)
    if len(header) < 12:
        raise PackFormatError("file too short to contain pack")
    if header[:4] != b"PACK":
        raise PackFormatError(f"Invalid pack header {header!r}")
    (version,) = unpack_from(b">L", header, 4)
    if version not in (2, 3):
        raise PackFormatError(f"Version was {version}")
    (num_objects,) = unpack_from(b">L", header, 8)
    return (version, num_objects)


def unpack_object(
    read_all: Callable[[int], bytes],
    read_some: Callable[[int], bytes] | None = None,
    zlib_bufsize: int = _ZLIB_BUFSIZE,
) -> tuple[UnpackedObject, bytes]:
    """Unpack a Git object.

    Args:
      read_all: Read function that blocks until the number of requested
        bytes are read.
      read_some: Read function that returns at least one byte, but may not
        return the number of bytes requested.
      zlib_bufsize: An optional buffer size for zlib operations.
    Returns: A tuple of (unpacked, unused), where unused is the unused data
        leftover from decompression, and unpacked in an UnpackedObject with
        pack_type_num, delta_base, decomp_chunks and decomp_len set.
    """
    if read_some is None:
        read_some = read_all

    raw = take_msb_bytes(read_all)
    type_num = (raw[0] >> 4) & 0x07
    size = raw[0] & 0x0F
    for i, byte in enumerate(raw[1:]):
        size += (byte & 0x7F) << ((i * 7) + 4)

    delta_base: int | bytes | None
    if type_num == OFS_DELTA:
        raw = take_msb_bytes(read_all)
        delta_base_offset = raw[0] & 0x7F
        for byte in raw[1:]:
            delta_base_offset += 1
            delta_base_offset <<= 7
            delta_base_offset += byte & 0x7F
        delta_base = delta_base_offset
    elif type_num == REF_DELTA:
        delta_base = read_all(_SHA_SIZE)
        if len(delta_base) != _SHA_SIZE:
            raise PackFormatError("unexpected end of delta base reference")
    else:
        delta_base = None

    unpacked = UnpackedObject(type_num, delta_base=delta_base, decomp_len=size)
    unused = read_zlib_chunks(read_some, unpacked, buffer_size=zlib_bufsize)
    return unpacked, unused


class PackStreamReader:
    """Class to read a pack stream.

    The pack is read with the given read callbacks; every byte but the
    trailing checksum is hashed as it goes past, so the trailer can be
    verified once the last entry has been read.
    """

    def __init__(
        self,
        read_all: Callable[[int], bytes],
        read_some: Callable[[int], bytes] | None = None,
        zlib_bufsize: int = _ZLIB_BUFSIZE,
    ) -> None:
        """Initialize pack stream reader.

        Args:
            read_all: Function to read all requested bytes
            read_some: Function to read some bytes (optional)
            zlib_bufsize: Buffer size for zlib decompression
        """
        self.read_all = read_all
        if read_some is None:
            self.read_some = read_all
        else:
            self.read_some = read_some
        self.sha = sha1()
        self._offset = 0
        self._rbuf = BytesIO()
        self._num_objects = 0
        # trailer is a deque to avoid memory allocation on small reads
        self._trailer: deque[int] = deque()
        self._zlib_bufsize = zlib_bufsize

    def _read(self, read: Callable[[int], bytes], size: int) -> bytes:
        """Read up to size bytes using the given callback.

        As a side effect, update the verifier's hash (excluding the last
        20 bytes read, which is the pack checksum).

        Args:
          read: The read callback to read from.
          size: The maximum number of bytes to read; the particular
            behavior is callback-specific.
        Returns: Bytes read
        """
        data = read(size)
        if not data:
            return data

        # maintain a trailer of the last 20 bytes we've read
        n = len(data)
        self._offset += n
        tn = len(self._trailer)
        if n >= _SHA_SIZE:
            to_pop = tn
            to_add = _SHA_SIZE
        else:
            to_pop = max(n + tn - _SHA_SIZE, 0)
            to_add = n
        self.sha.update(
            bytes(bytearray([self._trailer.popleft() for _ in range(to_pop)]))
        )
        self._trailer.extend(data[-to_add:])

        # hash everything but the trailer
        self.sha.update(data[:-to_add])
        return data

    def _buf_len(self) -> int:
        buf = self._rbuf
        start = buf.tell()
        buf.seek(0, SEEK_END)
        end = buf.tell()
        buf.seek(start)
        return end - start

    @property
    def offset(self) -> int:
        """Return current offset in the stream."""
        return self._offset - self._buf_len()

    def read(self, size: int) -> bytes:
        """Read, blocking until size bytes are read."""
        buf_len = self._buf_len()
        if buf_len >= size:
            return self._rbuf.read(size)
        buf_data = self._rbuf.read()
        self._rbuf = BytesIO()
        return buf_data + self._read(self.read_all, size - buf_len)

    def recv(self, size: int) -> bytes:
        """Read up to size bytes, blocking until one byte is read."""
        buf_len = self._buf_len()
        if buf_len:
            data = self._rbuf.read(size)
            if size >= buf_len:
                self._rbuf = BytesIO()
            return data
        return self._read(self.read_some, size)

    def __len__(self) -> int:
        """Return the number of objects in this pack."""
        return self._num_objects

    def read_objects(self) -> Iterator[UnpackedObject]:
        """Read the objects in this pack file.

        Returns: Iterator over UnpackedObjects with offset, pack_type_num,
            delta_base (for delta types), decomp_chunks and decomp_len set.

        Raises:
          PackFormatError: if the header is invalid or the stream is truncated.
          CorruptionError: if an entry does not decompress to its declared size.
          ChecksumMismatch: if the checksum of the pack contents does not
            match the checksum in the pack trailer.
        """
        _pack_version, self._num_objects = read_pack_header(self.read)

        for _ in range(self._num_objects):
            offset = self.offset
            unpacked, unused = unpack_object(
                self.read,
                read_some=self.recv,
                zlib_bufsize=self._zlib_bufsize,
            )
            unpacked.offset = offset

            # prepend any unused data to current read buffer
            buf = BytesIO()
            buf.write(unused)
            buf.write(self._rbuf.read())
            buf.seek(0)
            self._rbuf = buf

            yield unpacked

        end_offset = self.offset
        if self._buf_len() < _SHA_SIZE:
            # If the read buffer is full, then the last read() got the whole
            # trailer off the wire. If not, it means there is still some of the
            # trailer to read. We need to read() all 20 bytes; N come from the
            # read buffer and (20 - N) come from the wire.
            self.read(_SHA_SIZE)

        pack_sha = bytes(self._trailer)
        if self._offset - end_offset < _SHA_SIZE:
            raise PackFormatError("pack stream ended before its checksum")
        if pack_sha != self.sha.digest():
            raise ChecksumMismatch(
                sha_to_hex(pack_sha), self.sha.hexdigest(), extra="pack trailer"
            )


def _delta_encode_size(size: int) -> bytes:
    ret = bytearray()
    c = size & 0x7F
    size >>= 7
    while size:
        ret.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    ret.append(c)
    return bytes(ret)


# The length of delta compression copy operations in version 2 packs is limited
# to 64K.  To copy more, we use several copy operations.  Version 3 packs allow
# 24-bit lengths in copy operations, but we always make version 2 packs.
_MAX_COPY_LEN = 0xFFFF


def _encode_copy_operation(start: int, length: int) -> bytes:
    scratch = bytearray([0x80])
    for i in range(4):
        if start & 0xFF << i * 8:
            scratch.append((start >> i * 8) & 0xFF)
            scratch[0] |= 1 << i
    for i in range(2):
        if length & 0xFF << i * 8:
            scratch.append((length >> i * 8) & 0xFF)
            scratch[0] |= 1 << (4 + i)
    return bytes(scratch)


def create_delta(base_buf: bytes, target_buf: bytes) -> Iterator[bytes]:
    """Use python difflib to work out how to transform base_buf to target_buf.

    Args:
      base_buf: Base buffer
      target_buf: Target buffer
    Returns: Iterator over chunks of delta instructions
    """
    # write delta header
    yield _delta_encode_size(len(base_buf))
    yield _delta_encode_size(len(target_buf))
    # write out delta opcodes
    seq = SequenceMatcher(isjunk=None, a=base_buf, b=target_buf, autojunk=False)
    for opcode, i1, i2, j1, j2 in seq.get_opcodes():
        # Git patch opcodes don't care about deletes!
        if opcode == "equal":
            # If they are equal, unpacker will use data from base_buf
            # Write out an opcode that says what range to use
            copy_start = i1
            copy_len = i2 - i1
            while copy_len > 0:
                to_copy = min(copy_len, _MAX_COPY_LEN)
                yield _encode_copy_operation(copy_start, to_copy)
                copy_start += to_copy
                copy_len -= to_copy
        if opcode == "replace" or opcode == "insert":
            # If we are replacing a range or adding one, then we just
            # output it to the stream (prefixed by its size)
            s = j2 - j1
            o = j1
            while s > 127:
                yield bytes([127])
                yield bytes(memoryview(target_buf)[o : o + 127])
                s -= 127
                o += 127
            yield bytes([s])
            yield bytes(memoryview(target_buf)[o : o + s])


def _get_delta_header_size(delta: bytes, index: int) -> tuple[int, int]:
    size = 0
    i = 0
    while True:
        if index >= len(delta):
            raise ApplyDeltaError("truncated delta header")
        cmd = delta[index]
        index += 1
        size |= (cmd & ~0x80) << i
        i += 7
        if not cmd & 0x80:
            break
    return size, index


def apply_delta(src_buf: bytes, delta: bytes) -> bytes:
    """Based on the similar function in git's patch-delta.c.

    Args:
      src_buf: Source buffer
      delta: Delta instructions
    Returns: The reconstructed target buffer
    Raises:
      ApplyDeltaError: if the delta is malformed or does not fit the source
    """
    out = []
    index = 0
    delta_length = len(delta)

    src_size, index = _get_delta_header_size(delta, index)
    dest_size, index = _get_delta_header_size(delta, index)
    if src_size != len(src_buf):
        raise ApplyDeltaError(
            f"Unexpected source buffer size: {src_size} vs {len(src_buf)}"
        )
    while index < delta_length:
        cmd = delta[index]
        index += 1
        if cmd & 0x80:
            if index + bin(cmd & 0x7F).count("1") > delta_length:
                raise ApplyDeltaError("copy instruction runs past end of delta")
            cp_off = 0
            for i in range(4):
                if cmd & (1 << i):
                    cp_off |= delta[index] << (i * 8)
                    index += 1
            cp_size = 0
            # Version 3 packs can contain copy sizes larger than 64K.
            for i in range(3):
                if cmd & (1 << (4 + i)):
                    cp_size |= delta[index] << (i * 8)
                    index += 1
            if cp_size == 0:
                cp_size = 0x10000
            if cp_off + cp_size > src_size or cp_size > dest_size:
                raise ApplyDeltaError(
                    f"copy of {cp_size} bytes at {cp_off} outside source"
                )
            out.append(src_buf[cp_off : cp_off + cp_size])
        elif cmd != 0:
            if index + cmd > delta_length:
                raise ApplyDeltaError("insert runs past end of delta")
            out.append(delta[index : index + cmd])
            index += cmd
        else:
            raise ApplyDeltaError("Invalid opcode 0")

    result = b"".join(out)
    if dest_size != len(result):
        raise ApplyDeltaError("dest size incorrect")
    return result


class SHA1Writer:
    """Wrapper for file-like object that remembers the SHA1 of its data."""

    def __init__(self, f: IO[bytes]) -> None:
        """Initialize SHA1Writer.

        Args:
            f: File-like object to wrap
        """
        self.f = f
        self.length = 0
        self.sha1 = sha1(b"")

    def write(self, data: bytes) -> int:
        """Write data and update SHA1."""
        self.sha1.update(data)
        self.f.write(data)
        self.length += len(data)
        return len(data)

    def write_sha(self) -> bytes:
        """Write the SHA1 digest to the file.

        Returns:
            The SHA1 digest bytes
        """
        sha = self.sha1.digest()
        assert len(sha) == _SHA_SIZE
        self.f.write(sha)
        self.length += len(sha)
        return sha

    def offset(self) -> int:
        """Get the total number of bytes written."""
        return self.length


def pack_object_header(
    type_num: int, delta_base: bytes | int | None, size: int
) -> bytearray:
    """Create a pack object header for the given object info.

    Args:
      type_num: Numeric type of the object.
      delta_base: Delta base offset or ref, or None for whole objects.
      size: Uncompressed object size.
    Returns: A header for a packed object.
    """
    header = []
    c = (type_num << 4) | (size & 15)
    size >>= 4
    while size:
        header.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    header.append(c)
    if type_num == OFS_DELTA:
        assert isinstance(delta_base, int)
        ret = [delta_base & 0x7F]
        delta_base >>= 7
        while delta_base:
            delta_base -= 1
            ret.insert(0, 0x80 | (delta_base & 0x7F))
            delta_base >>= 7
        header.extend(ret)
    elif type_num == REF_DELTA:
        assert isinstance(delta_base, bytes)
        assert len(delta_base) == _SHA_SIZE
        header += delta_base
    return bytearray(header)


def write_pack_object(
    write: Callable[[bytes], int],
    type_num: int,
    data: bytes,
    delta_base: bytes | int | None = None,
    compression_level: int = -1,
) -> int:
    """Write pack object to a file.

    Args:
      write: Write function to use
      type_num: Numeric type of the object
      data: Object content, or delta instructions for delta types
      delta_base: Relative base offset (OFS_DELTA) or base SHA (REF_DELTA)
      compression_level: the zlib compression level
    Returns: CRC32 checksum of the written object
    """
    chunks = [
        bytes(pack_object_header(type_num, delta_base, len(data))),
        zlib.compress(data, compression_level),
    ]
    crc32 = 0
    for chunk in chunks:
        write(chunk)
        crc32 = binascii.crc32(chunk, crc32)
    return crc32 & 0xFFFFFFFF


def write_pack_header(write: Callable[[bytes], int], num_objects: int) -> None:
    """Write a pack header for the given number of objects."""
    write(b"PACK")  # Pack header
    write(struct.pack(b">L", 2))  # Pack version
    write(struct.pack(b">L", num_objects))  # Number of objects in pack
