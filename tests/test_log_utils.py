# test_log_utils.py -- Tests for log_utils.py
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

"""Tests for repocache.log_utils."""

import logging
import os

from repocache.log_utils import (
    _NULL_HANDLER,
    _REPOCACHE_LOGGER,
    _get_trace_target,
    default_logging_config,
    remove_null_handler,
)

from . import TestCase


class LogUtilsTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.overrideEnv("GIT_TRACE", None)
        handlers = list(_REPOCACHE_LOGGER.handlers)
        root = logging.getLogger()
        root_state = (list(root.handlers), root.level)

        def restore() -> None:
            _REPOCACHE_LOGGER.handlers = handlers
            for handler in root.handlers:
                if handler not in root_state[0]:
                    handler.close()
            root.handlers, root.level = root_state

        self.addCleanup(restore)
        root.handlers = []
        root.level = logging.WARNING

    def test_remove_null_handler(self) -> None:
        _REPOCACHE_LOGGER.addHandler(_NULL_HANDLER)
        remove_null_handler()
        self.assertNotIn(_NULL_HANDLER, _REPOCACHE_LOGGER.handlers)

    def test_trace_disabled(self) -> None:
        for value in (None, "", "0", "false", "FALSE", "relative/path", "10"):
            self.overrideEnv("GIT_TRACE", value)
            self.assertIsNone(_get_trace_target(), value)

    def test_trace_stderr(self) -> None:
        for value in ("1", "2", "true", "True"):
            self.overrideEnv("GIT_TRACE", value)
            self.assertEqual(2, _get_trace_target())

    def test_trace_fd(self) -> None:
        for fd in range(3, 10):
            self.overrideEnv("GIT_TRACE", str(fd))
            self.assertEqual(fd, _get_trace_target())

    def test_trace_path(self) -> None:
        path = os.path.join(self.make_tempdir(), "trace.log")
        self.overrideEnv("GIT_TRACE", path)
        self.assertEqual(path, _get_trace_target())

    def test_default_config(self) -> None:
        default_logging_config()
        root = logging.getLogger()
        self.assertNotIn(_NULL_HANDLER, _REPOCACHE_LOGGER.handlers)
        self.assertEqual(logging.INFO, root.level)
        self.assertTrue(root.handlers)

    def test_default_config_verbose(self) -> None:
        default_logging_config(verbose=True)
        self.assertEqual(logging.DEBUG, logging.getLogger().level)

    def test_trace_to_file(self) -> None:
        path = os.path.join(self.make_tempdir(), "trace.log")
        self.overrideEnv("GIT_TRACE", path)
        default_logging_config()
        logging.getLogger("repocache.test").debug("traced message")
        for handler in logging.getLogger().handlers:
            handler.flush()
        with open(path) as f:
            self.assertIn("repocache.test DEBUG: traced message", f.read())

    def test_trace_to_directory(self) -> None:
        tmpdir = self.make_tempdir()
        self.overrideEnv("GIT_TRACE", tmpdir)
        default_logging_config()
        logging.getLogger("repocache.test").debug("traced message")
        self.assertEqual([f"trace.{os.getpid()}"], os.listdir(tmpdir))
