# test_config.py -- Tests for reading configuration files
# Copyright (C) 2011 Jelmer Vernooij <jelmer@jelmer.uk>
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

"""Tests for reading configuration files."""

import os
from io import BytesIO

from repocache.config import (
    DEFAULT_FILTER_SPEC,
    CacheSettings,
    ConfigDict,
    ConfigFile,
    StackedConfig,
    _parse_string,
    urlmatch_http_sections,
)

from . import TestCase


class ConfigFileTests(TestCase):
    def from_file(self, text: bytes) -> ConfigFile:
        return ConfigFile.from_file(BytesIO(text))

    def test_empty(self) -> None:
        self.assertEqual(ConfigFile(), self.from_file(b""))

    def test_default_config(self) -> None:
        cf = self.from_file(
            b"""[core]
\trepositoryformatversion = 0
\tfilemode = true
\tbare = false
"""
        )
        self.assertEqual(b"0", cf.get(b"core", b"repositoryformatversion"))
        self.assertTrue(cf.get_boolean(b"core", b"filemode"))
        self.assertFalse(cf.get_boolean(b"core", b"bare"))
        self.assertRaises(KeyError, cf.get, b"core", b"missing")

    def test_comments(self) -> None:
        cf = self.from_file(
            b"# top\n\n[section] # after section\n; before\nfoo = bar # after value\n"
        )
        self.assertEqual(b"bar", cf.get(b"section", b"foo"))

    def test_comment_character_within_value_string(self) -> None:
        cf = self.from_file(b'[section]\nfoo = "bar #baz ;qux"\n')
        self.assertEqual(b"bar #baz ;qux", cf.get(b"section", b"foo"))

    def test_comment_character_within_section_string(self) -> None:
        cf = self.from_file(b'[branch "foo#bar"] # a comment\nbar = foo\n')
        self.assertEqual(b"foo", cf.get((b"branch", b"foo#bar"), b"bar"))

    def test_closing_bracket_within_section_string(self) -> None:
        cf = self.from_file(b'[branch "foo]bar"] # a comment\nbar = foo\n')
        self.assertEqual(b"foo", cf.get((b"branch", b"foo]bar"), b"bar"))

    def test_utf8_bom(self) -> None:
        cf = self.from_file(b"\xef\xbb\xbf[core]\nfoo = bar\n")
        self.assertEqual(b"bar", cf.get(b"core", b"foo"))

    def test_case_insensitive(self) -> None:
        cf = self.from_file(b"[CoRe]\nFileMode = false\n")
        self.assertEqual(b"false", cf.get(b"core", b"filemode"))
        self.assertEqual(b"false", cf.get(b"CORE", b"FILEMODE"))
        self.assertTrue(cf.has_section((b"core",)))

    def test_multivar(self) -> None:
        cf = self.from_file(b"[http]\nextraHeader = A: 1\nextraheader = B: 2\n")
        self.assertEqual(b"B: 2", cf.get(b"http", b"extraHeader"))
        self.assertEqual(
            [b"A: 1", b"B: 2"], list(cf.get_multivar(b"http", b"extraheader"))
        )

    def test_boolean_setting(self) -> None:
        cf = self.from_file(b"[core]\nbare\nfoo = yes\nbar = off\nbaz = maybe\n")
        self.assertTrue(cf.get_boolean(b"core", b"bare"))
        self.assertTrue(cf.get_boolean(b"core", b"foo"))
        self.assertFalse(cf.get_boolean(b"core", b"bar"))
        self.assertIsNone(cf.get_boolean(b"core", b"missing"))
        self.assertTrue(cf.get_boolean(b"core", b"missing", True))
        self.assertRaises(ValueError, cf.get_boolean, b"core", b"baz")

    def test_subsection(self) -> None:
        cf = self.from_file(b'[http "https://example.com/"]\nproxy = http://proxy\n')
        self.assertEqual(
            b"http://proxy", cf.get((b"http", b"https://example.com/"), b"proxy")
        )
        self.assertRaises(KeyError, cf.get, b"http", b"proxy")

    def test_subsection_falls_back_to_section(self) -> None:
        cf = self.from_file(b"[http]\nproxy = http://proxy\n")
        self.assertEqual(b"http://proxy", cf.get((b"http", b"https://x/"), b"proxy"))

    def test_dotted_subsection(self) -> None:
        cf = self.from_file(b"[branch.foo]\nfoo = bar\n")
        self.assertEqual(b"bar", cf.get((b"branch", b"foo"), b"foo"))

    def test_subsection_invalid(self) -> None:
        self.assertRaises(ValueError, self.from_file, b'[branch "foo]\nfoo = bar\n')
        self.assertRaises(ValueError, self.from_file, b"[branch foo]\nfoo = bar\n")

    def test_setting_without_section(self) -> None:
        self.assertRaises(ValueError, self.from_file, b"foo = bar\n")

    def test_invalid_variable_name(self) -> None:
        self.assertRaises(ValueError, self.from_file, b"[core]\nfoo_bar = 1\n")

    def test_line_continuation(self) -> None:
        cf = self.from_file(b"[core]\nfoo = bar\\\nbaz\n")
        self.assertEqual(b"barbaz", cf.get(b"core", b"foo"))

    def test_unterminated_continuation(self) -> None:
        self.assertRaises(ValueError, self.from_file, b"[core]\nfoo = bar\\\n")

    def test_from_path(self) -> None:
        path = os.path.join(self.make_tempdir(), "config")
        with open(path, "wb") as f:
            f.write(b"[core]\nfoo = bar\n")
        cf = ConfigFile.from_path(path)
        self.assertEqual(path, cf.path)
        self.assertEqual(b"bar", cf.get(b"core", b"foo"))


class ParseStringTests(TestCase):
    def test_quoted(self) -> None:
        self.assertEqual(b" foo", _parse_string(b'" foo"'))
        self.assertEqual(b"\tfoo", _parse_string(b'"\\tfoo"'))

    def test_not_quoted(self) -> None:
        self.assertEqual(b"foo", _parse_string(b"  foo "))
        self.assertEqual(b"foo bar", _parse_string(b"foo bar"))

    def test_escapes(self) -> None:
        self.assertEqual(b'a"b\\c\nd', _parse_string(b'a\\"b\\\\c\\nd'))

    def test_invalid(self) -> None:
        self.assertRaises(ValueError, _parse_string, b"foo\\x")
        self.assertRaises(ValueError, _parse_string, b"foo\\")
        self.assertRaises(ValueError, _parse_string, b'"foo')


class ConfigDictTests(TestCase):
    def test_add_and_get(self) -> None:
        cd = ConfigDict()
        cd.add(b"core", b"foo", b"bar")
        cd.add("core", "foo", "baz")
        self.assertEqual(b"baz", cd.get(b"core", b"foo"))
        self.assertEqual([b"bar", b"baz"], list(cd.get_multivar("core", "foo")))
        self.assertEqual([(b"foo", b"bar"), (b"foo", b"baz")], list(cd.items(b"core")))
        self.assertEqual([(b"core",)], list(cd.sections()))

    def test_missing(self) -> None:
        cd = ConfigDict()
        self.assertRaises(KeyError, cd.get, b"core", b"foo")
        self.assertRaises(KeyError, cd.get_multivar, b"core", b"foo")


class StackedConfigTests(TestCase):
    def write_config(self, content: bytes) -> str:
        path = os.path.join(self.make_tempdir(), "gitconfig")
        with open(path, "wb") as f:
            f.write(content)
        return path

    def test_precedence(self) -> None:
        first = ConfigFile.from_file(BytesIO(b"[core]\nfoo = 1\n[http]\nh = a\n"))
        second = ConfigFile.from_file(
            BytesIO(b"[core]\nfoo = 2\nbar = 3\n[http]\nh = b\n")
        )
        sc = StackedConfig([first, second])
        self.assertEqual(b"1", sc.get(b"core", b"foo"))
        self.assertEqual(b"3", sc.get(b"core", b"bar"))
        self.assertEqual([b"a", b"b"], list(sc.get_multivar(b"http", b"h")))
        self.assertEqual([(b"core",), (b"http",)], list(sc.sections()))
        self.assertRaises(KeyError, sc.get, b"core", b"missing")

    def test_default_backends_global(self) -> None:
        path = self.write_config(b"[repocache]\npath = /srv/cache.db\n")
        self.overrideEnv("GIT_CONFIG_GLOBAL", path)
        sc = StackedConfig.default()
        self.assertEqual([path], [b.path for b in sc.backends])
        self.assertEqual(b"/srv/cache.db", sc.get(b"repocache", b"path"))

    def test_default_backends_none(self) -> None:
        self.assertEqual([], StackedConfig.default_backends())

    def test_default_backends_invalid(self) -> None:
        self.overrideEnv("GIT_CONFIG_GLOBAL", self.write_config(b"foo = bar\n"))
        with self.assertLogs("repocache.config", level="WARNING"):
            self.assertEqual([], StackedConfig.default_backends())


class UrlmatchHttpSectionsTests(TestCase):
    def test_ordering(self) -> None:
        cf = ConfigFile.from_file(
            BytesIO(
                b'[http "https://example.com/repo.git"]\nproxy = c\n'
                b'[http "https://example.com"]\nproxy = b\n'
                b'[http "https://other.com"]\nproxy = x\n'
                b"[http]\nproxy = a\n"
                b"[core]\nproxy = y\n"
            )
        )
        self.assertEqual(
            [
                (b"http",),
                (b"http", b"https://example.com"),
                (b"http", b"https://example.com/repo.git"),
            ],
            list(urlmatch_http_sections(cf, "https://example.com/repo.git")),
        )

    def test_path_prefix(self) -> None:
        cf = ConfigFile.from_file(BytesIO(b'[http "https://example.com/repo"]\nx = 1\n'))
        self.assertEqual(
            [], list(urlmatch_http_sections(cf, "https://example.com/repo.git"))
        )
        self.assertEqual(
            [(b"http", b"https://example.com/repo")],
            list(urlmatch_http_sections(cf, "https://EXAMPLE.com/repo/sub.git")),
        )

    def test_no_url(self) -> None:
        cf = ConfigFile.from_file(
            BytesIO(b'[http]\nx = 1\n[http "https://example.com"]\nx = 2\n')
        )
        self.assertEqual([(b"http",)], list(urlmatch_http_sections(cf, None)))


class CacheSettingsTests(TestCase):
    def settings(self, text: bytes) -> CacheSettings:
        return CacheSettings.from_config(ConfigFile.from_file(BytesIO(text)))

    def test_defaults(self) -> None:
        settings = self.settings(b"")
        self.assertIsNone(settings.path)
        self.assertEqual(DEFAULT_FILTER_SPEC, settings.filter_spec)

    def test_path(self) -> None:
        settings = self.settings(b"[repocache]\npath = ~/cache.db\n")
        self.assertEqual("/nonexistent/cache.db", settings.path)

    def test_filter(self) -> None:
        self.assertEqual(
            b"tree:0", self.settings(b"[repocache]\nfilter = tree:0\n").filter_spec
        )

    def test_filter_disabled(self) -> None:
        self.assertIsNone(self.settings(b"[repocache]\nfilter =\n").filter_spec)
