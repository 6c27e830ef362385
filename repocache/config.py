# config.py - Reading git configuration files
# Copyright (C) 2011-2013 Jelmer Vernooij <jelmer@jelmer.uk>
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

"""Reading Git configuration files.

repocache only reads configuration: the ``[repocache]`` section chooses the
default cache file and the object filter requested from servers, and the
``[http]`` sections (including URL-scoped ``[http "<url>"]`` ones) configure
the HTTP transport the same way they configure git itself.
"""

__all__ = [
    "DEFAULT_FILTER_SPEC",
    "CacheSettings",
    "Config",
    "ConfigDict",
    "ConfigFile",
    "StackedConfig",
    "get_xdg_config_home_path",
    "urlmatch_http_sections",
]

import logging
import os
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from typing import IO
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

Name = bytes
NameLike = bytes | str
Section = tuple[bytes, ...]
SectionLike = bytes | str | tuple[bytes | str, ...]
Value = bytes

DEFAULT_FILTER_SPEC = b"blob:none"


def _lower_section(section: Section) -> Section:
    # Section names are case-insensitive, subsection names are not.
    if not section:
        return section
    return (section[0].lower(), *section[1:])


class Config:
    """A Git configuration."""

    def get(self, section: SectionLike, name: NameLike) -> Value:
        """Retrieve the contents of a configuration setting.

        Args:
          section: Tuple with section name and optional subsection name
          name: Variable name
        Returns:
          Contents of the setting
        Raises:
          KeyError: if the value is not set
        """
        raise NotImplementedError(self.get)

    def get_multivar(self, section: SectionLike, name: NameLike) -> Iterator[Value]:
        """Retrieve every value of a multivar, in file order.

        Raises:
          KeyError: if the value is not set
        """
        raise NotImplementedError(self.get_multivar)

    def get_boolean(
        self, section: SectionLike, name: NameLike, default: bool | None = None
    ) -> bool | None:
        """Retrieve a configuration setting as boolean.

        Accepts the spellings git accepts: true/yes/on/1 and false/no/off/0,
        and a bare key (``[core] bare``) as true.

        Args:
          section: Tuple with section name and optional subsection name
          name: Name of the setting
          default: Default value if setting is not found
        Returns:
          Contents of the setting
        """
        try:
            value = self.get(section, name)
        except KeyError:
            return default
        if value.lower() in (b"true", b"yes", b"on", b"1"):
            return True
        elif value.lower() in (b"false", b"no", b"off", b"0", b""):
            return False
        raise ValueError(f"not a valid boolean string: {value!r}")

    def sections(self) -> Iterator[Section]:
        """Iterate over the sections.

        Returns: Iterator over section tuples
        """
        raise NotImplementedError(self.sections)

    def has_section(self, name: Section) -> bool:
        """Check if a specified section exists."""
        return _lower_section(name) in (_lower_section(s) for s in self.sections())


class ConfigDict(Config):
    """Git configuration stored in a dictionary.

    Each section maps to an ordered list of (name, value) pairs so that
    multivars keep every value; lookups are case-insensitive on the section
    and variable names.
    """

    def __init__(self, encoding: str | None = None) -> None:
        """Create a new ConfigDict."""
        if encoding is None:
            encoding = sys.getdefaultencoding()
        self.encoding = encoding
        self._values: dict[Section, list[tuple[Name, Value]]] = {}

    def __repr__(self) -> str:
        """Return string representation of ConfigDict."""
        return f"{self.__class__.__name__}({self._values!r})"

    def __eq__(self, other: object) -> bool:
        """Check equality with another ConfigDict."""
        return isinstance(other, self.__class__) and other._values == self._values

    def _check_section_and_name(
        self, section: SectionLike, name: NameLike
    ) -> tuple[Section, Name]:
        if not isinstance(section, tuple):
            section = (section,)
        checked_section = tuple(
            subsection.encode(self.encoding)
            if not isinstance(subsection, bytes)
            else subsection
            for subsection in section
        )
        if not isinstance(name, bytes):
            name = name.encode(self.encoding)
        return _lower_section(checked_section), name.lower()

    def _all(self, section: Section, name: Name) -> list[Value]:
        return [v for k, v in self._values.get(section, []) if k.lower() == name]

    def get_multivar(self, section: SectionLike, name: NameLike) -> Iterator[Value]:
        """Get every value of a setting, in file order."""
        section, name = self._check_section_and_name(section, name)
        values = self._all(section, name)
        if not values and len(section) > 1:
            values = self._all((section[0],), name)
        if not values:
            raise KeyError(name)
        return iter(values)

    def get(self, section: SectionLike, name: NameLike) -> Value:
        """Get the last value of a setting.

        A lookup in a subsection falls back to the plain section.

        Raises:
          KeyError: if the value is not set
        """
        section, name = self._check_section_and_name(section, name)
        if len(section) > 1:
            values = self._all(section, name)
            if values:
                return values[-1]
        values = self._all((section[0],), name)
        if not values:
            raise KeyError(name)
        return values[-1]

    def add(self, section: SectionLike, name: NameLike, value: bytes | str) -> None:
        """Append a value to a setting, making it a multivar if already set."""
        if not isinstance(section, tuple):
            section = (section,)
        raw_section = tuple(
            s if isinstance(s, bytes) else s.encode(self.encoding) for s in section
        )
        if not isinstance(name, bytes):
            name = name.encode(self.encoding)
        if not isinstance(value, bytes):
            value = value.encode(self.encoding)
        self._values.setdefault(_lower_section(raw_section), []).append((name, value))

    def items(self, section: SectionLike) -> Iterator[tuple[Name, Value]]:
        """Get items in a section."""
        section_bytes, _ = self._check_section_and_name(section, b"")
        return iter(self._values.get(section_bytes, []))

    def sections(self) -> Iterator[Section]:
        """Get all sections."""
        return iter(self._values.keys())


_ESCAPE_TABLE = {
    ord(b"\\"): ord(b"\\"),
    ord(b'"'): ord(b'"'),
    ord(b"n"): ord(b"\n"),
    ord(b"t"): ord(b"\t"),
    ord(b"b"): ord(b"\b"),
}
_COMMENT_CHARS = [ord(b"#"), ord(b";")]
_WHITESPACE_CHARS = [ord(b"\t"), ord(b" ")]


def _parse_string(value: bytes) -> bytes:
    value_array = bytearray(value.strip())
    ret = bytearray()
    whitespace = bytearray()
    in_quotes = False
    i = 0
    while i < len(value_array):
        c = value_array[i]
        if c == ord(b"\\"):
            i += 1
            if i >= len(value_array):
                raise ValueError("escape character at end of value")
            try:
                v = _ESCAPE_TABLE[value_array[i]]
            except KeyError as exc:
                raise ValueError(
                    f"escape character followed by unknown character "
                    f"{value_array[i:i + 1]!r} at {i!r} in {value!r}"
                ) from exc
            ret.extend(whitespace)
            whitespace = bytearray()
            ret.append(v)
        elif c == ord(b'"'):
            in_quotes = not in_quotes
        elif c in _COMMENT_CHARS and not in_quotes:
            # the rest of the line is a comment
            break
        elif c in _WHITESPACE_CHARS and not in_quotes:
            whitespace.append(c)
        else:
            ret.extend(whitespace)
            whitespace = bytearray()
            ret.append(c)
        i += 1

    if in_quotes:
        raise ValueError("missing end quote")

    return bytes(ret)


def _check_variable_name(name: bytes) -> bool:
    return bool(name) and all(c.isalnum() or c == "-" for c in name.decode("latin-1"))


def _check_section_name(name: bytes) -> bool:
    return bool(name) and all(
        c.isalnum() or c in "-." for c in name.decode("latin-1")
    )


def _strip_comments(line: bytes) -> bytes:
    string_open = False
    for i, character in enumerate(line):
        # Comment characters outside balanced quotes denote comment start
        if character == ord(b'"'):
            string_open = not string_open
        elif not string_open and character in _COMMENT_CHARS:
            return line[:i]
    return line


def _is_line_continuation(value: bytes) -> bool:
    """Check whether a raw value ends with an unescaped backslash-newline."""
    content = value.rstrip(b"\r\n")
    if content == value:
        return False
    trailing = len(content) - len(content.rstrip(b"\\"))
    return trailing % 2 == 1


def _parse_section_header_line(line: bytes) -> tuple[Section, bytes]:
    # Parse section header ("[bla]")
    line = _strip_comments(line).rstrip()
    in_quotes = False
    escaped = False
    for i, c in enumerate(line):
        if escaped:
            escaped = False
            continue
        if c == ord(b'"'):
            in_quotes = not in_quotes
        if c == ord(b"\\"):
            escaped = True
        if c == ord(b"]") and not in_quotes:
            last = i
            break
    else:
        raise ValueError("expected trailing ]")
    pts = line[1:last].split(b" ", 1)
    line = line[last + 1 :]
    section: Section
    if len(pts) == 2:
        if pts[1][:1] != b'"' or pts[1][-1:] != b'"':
            raise ValueError(f"Invalid subsection {pts[1]!r}")
        if not _check_section_name(pts[0]):
            raise ValueError(f"invalid section name {pts[0]!r}")
        subsection = pts[1][1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")
        section = (pts[0], subsection)
    else:
        if not _check_section_name(pts[0]):
            raise ValueError(f"invalid section name {pts[0]!r}")
        pts = pts[0].split(b".", 1)
        if len(pts) == 2:
            section = (pts[0], pts[1])
        else:
            section = (pts[0],)
    return section, line


class ConfigFile(ConfigDict):
    """A Git configuration file, like ~/.gitconfig."""

    def __init__(self, encoding: str | None = None) -> None:
        """Initialize an empty ConfigFile."""
        super().__init__(encoding=encoding)
        self.path: str | None = None

    @classmethod
    def from_file(cls, f: IO[bytes]) -> "ConfigFile":
        """Read configuration from a file-like object.

        Raises:
          ValueError: if the file is not valid git-config syntax
        """
        ret = cls()
        section: Section | None = None
        setting: bytes | None = None
        continuation = b""
        for lineno, line in enumerate(f.readlines()):
            if lineno == 0 and line.startswith(b"\xef\xbb\xbf"):
                line = line[3:]
            if setting is not None:  # continuation line
                if _is_line_continuation(line):
                    continuation += line.rstrip(b"\r\n")[:-1]
                    continue
                continuation += line
                assert section is not None
                ret.add(section, setting, _parse_string(continuation))
                setting = None
                continue
            line = line.lstrip()
            if line[:1] == b"[":
                section, line = _parse_section_header_line(line)
                ret._values.setdefault(_lower_section(section), [])
            if _strip_comments(line).strip() == b"":
                continue
            if section is None:
                raise ValueError(f"setting {line!r} without section")
            try:
                name, value = line.split(b"=", 1)
            except ValueError:
                # A bare key is a boolean set to true.
                name = _strip_comments(line)
                value = b"true"
            name = name.strip()
            if not _check_variable_name(name):
                raise ValueError(f"invalid variable name {name!r}")
            if _is_line_continuation(value):
                setting = name
                continuation = value.rstrip(b"\r\n")[:-1]
            else:
                ret.add(section, name, _parse_string(value))
        if setting is not None:
            raise ValueError("unterminated line continuation at end of file")
        return ret

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> "ConfigFile":
        """Read configuration from a file on disk."""
        abs_path = os.fspath(path)
        with open(abs_path, "rb") as f:
            ret = cls.from_file(f)
        ret.path = abs_path
        return ret


def get_xdg_config_home_path(*path_segments: str) -> str:
    """Get a path in the XDG config home directory."""
    xdg_config_home = os.environ.get(
        "XDG_CONFIG_HOME",
        os.path.expanduser("~/.config/"),
    )
    return os.path.join(xdg_config_home, *path_segments)


class StackedConfig(Config):
    """Configuration which reads from multiple config files.

    Backends are consulted in order; the first one defining a setting wins.
    """

    def __init__(self, backends: list[ConfigFile]) -> None:
        """Initialize a StackedConfig.

        Args:
          backends: List of config files to read from (in order of precedence)
        """
        self.backends = backends

    def __repr__(self) -> str:
        """Return string representation of StackedConfig."""
        return f"<{self.__class__.__name__} for {self.backends!r}>"

    @classmethod
    def default(cls) -> "StackedConfig":
        """Create a StackedConfig with the user and system config files."""
        return cls(cls.default_backends())

    @classmethod
    def default_backends(cls) -> list[ConfigFile]:
        """Retrieve the default configuration.

        See git-config(1) for details on the files searched.
        """
        paths = []

        try:
            paths.append(os.environ["GIT_CONFIG_GLOBAL"])
        except KeyError:
            paths.append(os.path.expanduser("~/.gitconfig"))
            paths.append(get_xdg_config_home_path("git", "config"))

        try:
            paths.append(os.environ["GIT_CONFIG_SYSTEM"])
        except KeyError:
            if "GIT_CONFIG_NOSYSTEM" not in os.environ:
                paths.append("/etc/gitconfig")

        logger.debug("Loading gitconfig from paths: %s", paths)

        backends = []
        for path in paths:
            try:
                cf = ConfigFile.from_path(path)
            except FileNotFoundError:
                logger.debug("Gitconfig file not found: %s", path)
                continue
            except ValueError as exc:
                logger.warning("Ignoring invalid gitconfig %s: %s", path, exc)
                continue
            backends.append(cf)
        return backends

    def get(self, section: SectionLike, name: NameLike) -> Value:
        """Get value from configuration."""
        for backend in self.backends:
            try:
                return backend.get(section, name)
            except KeyError:
                pass
        raise KeyError(name)

    def get_multivar(self, section: SectionLike, name: NameLike) -> Iterator[Value]:
        """Get multiple values from configuration."""
        found = False
        for backend in self.backends:
            try:
                values = list(backend.get_multivar(section, name))
            except KeyError:
                continue
            found = True
            yield from values
        if not found:
            raise KeyError(name)

    def sections(self) -> Iterator[Section]:
        """Get all sections."""
        seen = set()
        for backend in self.backends:
            for section in backend.sections():
                if section not in seen:
                    seen.add(section)
                    yield section


def _url_matches(url: str, pattern: str) -> bool:
    parsed = urlparse(url)
    wanted = urlparse(pattern)
    if wanted.scheme and wanted.scheme != parsed.scheme:
        return False
    if wanted.netloc and wanted.netloc.lower() != parsed.netloc.lower():
        return False
    prefix = wanted.path.rstrip("/")
    return parsed.path == prefix or parsed.path.startswith(prefix + "/")


def urlmatch_http_sections(config: Config, url: str | None) -> Iterator[Section]:
    """Yield http config sections matching the given URL, least specific first.

    The plain ``[http]`` section always matches; ``[http "<url>"]`` sections
    match when scheme, host and a leading path prefix agree, and are ordered
    by the length of that prefix so later sections override earlier ones.
    """
    matching: list[tuple[int, Section]] = []
    for section in config.sections():
        if section[0] != b"http":
            continue
        if len(section) < 2:
            matching.append((-1, section))
        elif url is not None:
            pattern = section[1].decode("utf-8", "replace")
            if _url_matches(url, pattern):
                matching.append((len(urlparse(pattern).path.rstrip("/")), section))
    matching.sort(key=lambda x: x[0])
    for _, section in matching:
        yield section


@dataclass
class CacheSettings:
    """Settings from the ``[repocache]`` configuration section."""

    path: str | None = None
    filter_spec: bytes | None = DEFAULT_FILTER_SPEC

    @classmethod
    def from_config(cls, config: Config) -> "CacheSettings":
        """Read the settings, falling back to defaults for unset keys.

        ``repocache.filter`` set to an empty string disables the filter.
        """
        settings = cls()
        try:
            path = config.get(b"repocache", b"path")
        except KeyError:
            pass
        else:
            settings.path = os.path.expanduser(path.decode("utf-8"))
        try:
            filter_spec = config.get(b"repocache", b"filter")
        except KeyError:
            pass
        else:
            settings.filter_spec = filter_spec or None
        return settings
