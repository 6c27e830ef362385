#
# repocache - Simple command-line interface to a repository cache
# Copyright (C) 2023 The repocache Authors
# vim: expandtab
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

"""Simple command-line interface to a repository cache.

This is a maintenance tool: it fills a cache from a remote and lets you
look at what is in it.
"""

__all__ = [
    "Command",
    "main",
]

import argparse
import logging
import signal
import sys
import threading
import types
from collections.abc import Sequence

from .cache import Cache
from .client import get_remote
from .config import CacheSettings, StackedConfig
from .errors import NotFoundError, RepoCacheError
from .log_utils import default_logging_config

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = "repocache.db"

# Set by SIGINT so a running sync can roll back cleanly.
_cancel = threading.Event()


def signal_int(signal: int, frame: types.FrameType | None) -> None:
    """Handle interrupt signal by cancelling running work.

    A second interrupt exits immediately.

    Args:
        signal: Signal number
        frame: Current stack frame
    """
    if _cancel.is_set():
        sys.exit(1)
    _cancel.set()


class Command:
    """A repocache subcommand."""

    def __init__(self, cache_path: str, config: StackedConfig) -> None:
        self.cache_path = cache_path
        self.config = config

    def open_cache(self) -> Cache:
        return Cache.open(self.cache_path)

    def run(self, args: Sequence[str]) -> int | None:
        """Run the command."""
        raise NotImplementedError(self.run)


class cmd_sync(Command):
    """Fetch commits, trees and tags from a remote into the cache."""

    def run(self, args: Sequence[str]) -> int | None:
        """Execute the sync command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="repocache sync")
        parser.add_argument("url", help="Remote URL or path of a local repository")
        parser.add_argument(
            "--filter",
            type=str,
            default=None,
            help="Object filter to request (default: repocache.filter or blob:none)",
        )
        parser.add_argument(
            "--no-filter", action="store_true", help="Fetch blobs as well"
        )
        parsed_args = parser.parse_args(args)

        settings = CacheSettings.from_config(self.config)
        if parsed_args.no_filter:
            filter_spec = None
        elif parsed_args.filter is not None:
            filter_spec = parsed_args.filter.encode("ascii")
        else:
            filter_spec = settings.filter_spec
        try:
            remote = get_remote(parsed_args.url, config=self.config)
        except ValueError as exc:
            logger.error("%s", exc)
            return 1
        with self.open_cache() as cache:
            result = cache.copy_from(remote, filter_spec=filter_spec, cancel=_cancel)
        for ref, sha in sorted(result.refs.items()):
            logger.info("%s\t%s", sha.decode("ascii"), ref.decode("utf-8", "replace"))
        logger.info(
            "Stored %d objects; indexed %d new commits",
            result.objects_inserted,
            len(result.new_commits),
        )
        for sha in result.failed_commits:
            logger.warning("Failed to index %s", sha.decode("ascii"))
        return 0


class cmd_stat(Command):
    """Show the type and size of cached objects."""

    def run(self, args: Sequence[str]) -> int | None:
        """Execute the stat command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="repocache stat")
        parser.add_argument("sha", nargs="+", help="Object names")
        parsed_args = parser.parse_args(args)
        ret = 0
        with self.open_cache() as cache:
            for sha in parsed_args.sha:
                try:
                    prefix = cache.stat(sha)
                except NotFoundError:
                    sys.stdout.write(f"{sha} missing\n")
                    ret = 1
                else:
                    sys.stdout.write(f"{sha} {prefix.type_name} {prefix.size}\n")
        return ret


class cmd_cat_file(Command):
    """Print the verified content of a cached object."""

    def run(self, args: Sequence[str]) -> int | None:
        """Execute the cat-file command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="repocache cat-file")
        group = parser.add_mutually_exclusive_group()
        group.add_argument("-t", dest="type", action="store_true", help="Show type")
        group.add_argument("-s", dest="size", action="store_true", help="Show size")
        parser.add_argument("sha", help="Object name")
        parsed_args = parser.parse_args(args)
        with self.open_cache() as cache:
            try:
                if parsed_args.type or parsed_args.size:
                    prefix = cache.stat(parsed_args.sha)
                    value = prefix.type_name if parsed_args.type else prefix.size
                    sys.stdout.write(f"{value}\n")
                else:
                    sys.stdout.flush()
                    cache.cat(parsed_args.sha, sys.stdout.buffer)
                    sys.stdout.buffer.flush()
            except NotFoundError as exc:
                logger.error("%s", exc)
                return 1
        return 0


class cmd_show_commit(Command):
    """Show a commit as recorded in the commit index."""

    def run(self, args: Sequence[str]) -> int | None:
        """Execute the show-commit command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="repocache show-commit")
        parser.add_argument("sha", help="Commit name")
        parsed_args = parser.parse_args(args)
        with self.open_cache() as cache:
            try:
                commit = cache.read_commit(parsed_args.sha)
            except NotFoundError as exc:
                logger.error("%s", exc)
                return 1
        out = sys.stdout
        out.write(f"commit {commit.sha.decode('ascii')}\n")
        out.write(f"tree {commit.tree.decode('ascii')}\n")
        for parent in commit.parents:
            out.write(f"parent {parent.decode('ascii')}\n")
        if commit.author is not None:
            out.write(
                f"author {commit.author} {commit.author_time} "
                f"{_format_offset(commit.author_timezone)}\n"
            )
        if commit.committer is not None:
            out.write(
                f"committer {commit.committer} {commit.commit_time} "
                f"{_format_offset(commit.commit_timezone)}\n"
            )
        out.write("\n")
        for line in commit.message.splitlines():
            out.write(f"    {line}\n")
        return 0


def _format_offset(seconds: int | None) -> str:
    if seconds is None:
        return "+0000"
    sign = "-" if seconds < 0 else "+"
    mins = abs(seconds) // 60
    return f"{sign}{mins // 60:02d}{mins % 60:02d}"


commands = {
    "cat-file": cmd_cat_file,
    "show-commit": cmd_show_commit,
    "stat": cmd_stat,
    "sync": cmd_sync,
}


def main(argv: Sequence[str] | None = None) -> int | None:
    """Main entry point for the repocache CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code or None
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(
        prog="repocache",
        description="Simple command-line interface to a repository cache",
    )
    parser.add_argument(
        "--cache",
        type=str,
        default=None,
        help=f"Cache file (default: repocache.path or {DEFAULT_CACHE_PATH})",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug output"
    )
    parser.add_argument(
        "command",
        help=f"Command to run. Available: {', '.join(sorted(commands.keys()))}",
    )
    parser.add_argument("args", nargs=argparse.REMAINDER)
    global_args = parser.parse_args(argv)

    default_logging_config(global_args.verbose)

    try:
        cmd_kls = commands[global_args.command]
    except KeyError:
        logging.fatal("No such subcommand: %s", global_args.command)
        return 1

    config = StackedConfig.default()
    cache_path = (
        global_args.cache
        or CacheSettings.from_config(config).path
        or DEFAULT_CACHE_PATH
    )
    try:
        return cmd_kls(cache_path, config).run(global_args.args)
    except RepoCacheError as exc:
        logger.error("%s", exc)
        return 1


def _main() -> None:
    signal.signal(signal.SIGINT, signal_int)
    sys.exit(main())


if __name__ == "__main__":
    _main()
