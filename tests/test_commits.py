# test_commits.py -- Tests for the commit index
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

"""Tests for repocache.commits."""

import os

from repocache.commits import (
    IndexedCommit,
    index_commit,
    index_commits,
    read_commit,
    topological_order,
)
from repocache.errors import NotFoundError, ParseError
from repocache.object_store import add_object, stat
from repocache.store import connect, transaction

from . import TestCase
from .utils import make_commit_data, make_tree_data


class TopologicalOrderTests(TestCase):
    def order(self, graph, ids=None):
        if ids is None:
            ids = list(graph)
        return topological_order(ids, lambda c: graph.get(c, []))

    def assertParentsFirst(self, graph, order):
        position = {c: i for i, c in enumerate(order)}
        for child, parents in graph.items():
            for parent in parents:
                if parent in position:
                    self.assertLess(position[parent], position[child])

    def test_empty(self) -> None:
        self.assertEqual([], self.order({}))

    def test_linear_reversed_input(self) -> None:
        graph = {3: [2], 2: [1], 1: []}
        self.assertEqual([1, 2, 3], self.order(graph))

    def test_merge(self) -> None:
        graph = {4: [2, 3], 3: [1], 2: [1], 1: []}
        order = self.order(graph)
        self.assertEqual(1, order[0])
        self.assertEqual(4, order[-1])
        self.assertParentsFirst(graph, order)

    def test_parents_outside_batch_ignored(self) -> None:
        graph = {3: [2], 2: [1]}
        self.assertEqual([2, 3], self.order(graph, [3, 2]))

    def test_each_node_once(self) -> None:
        graph = {3: [1, 2, 1], 2: [1], 1: []}
        self.assertEqual([1, 2, 3], self.order(graph, [3, 2, 1, 3]))

    def test_cycle_terminates(self) -> None:
        graph = {1: [2], 2: [3], 3: [1]}
        order = self.order(graph)
        self.assertEqual([1, 2, 3], sorted(order))

    def test_self_parent(self) -> None:
        self.assertEqual([1], self.order({1: [1]}))

    def test_deep_history(self) -> None:
        n = 100000
        graph = {i: [i - 1] for i in range(1, n)}
        graph[0] = []
        order = self.order(graph, reversed(range(n)))
        self.assertEqual(list(range(n)), order)


class CommitIndexTestCase(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.conn = connect(os.path.join(self.make_tempdir(), "cache.db"))
        self.addCleanup(self.conn.close)
        self.tree, _ = add_object(self.conn, "tree", make_tree_data([])[1])

    def add_commit(self, **attrs) -> bytes:
        attrs.setdefault("tree", self.tree)
        sha, _ = add_object(self.conn, "commit", make_commit_data(**attrs))
        return sha

    def count(self, table: str) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class IndexCommitTests(CommitIndexTestCase):
    def test_index_and_read(self) -> None:
        parent = self.add_commit(message=b"first\n")
        sha = self.add_commit(
            parents=[parent],
            author=b"A U Thor <author@example.com>",
            author_time=1700000000,
            author_timezone=3600,
            committer=b"C O Mitter <committer@example.com>",
            commit_time=1700000100,
            commit_timezone=-19800,
            message=b"second\n",
        )
        index_commit(self.conn, parent)
        index_commit(self.conn, sha)
        self.assertEqual(
            IndexedCommit(
                sha=sha,
                tree=self.tree,
                parents=[parent],
                author="A U Thor <author@example.com>",
                author_time=1700000000,
                author_timezone=3600,
                committer="C O Mitter <committer@example.com>",
                commit_time=1700000100,
                commit_timezone=-19800,
                message="second\n",
            ),
            read_commit(self.conn, sha),
        )
        self.assertEqual(4, self.count("users"))

    def test_reindex_is_idempotent(self) -> None:
        p1 = self.add_commit(message=b"p1\n")
        p2 = self.add_commit(message=b"p2\n")
        sha = self.add_commit(parents=[p1, p2])
        index_commit(self.conn, sha)
        rows = self.count("commits"), self.count("commit_parents"), self.count("users")
        index_commit(self.conn, sha)
        self.assertEqual(
            rows,
            (self.count("commits"), self.count("commit_parents"), self.count("users")),
        )
        self.assertEqual([p1, p2], read_commit(self.conn, sha).parents)

    def test_parent_order_preserved(self) -> None:
        parents = [self.add_commit(message=f"p{i}\n".encode()) for i in range(5)]
        sha = self.add_commit(parents=list(reversed(parents)))
        index_commit(self.conn, sha)
        self.assertEqual(list(reversed(parents)), read_commit(self.conn, sha).parents)

    def test_uncached_tree_and_parent_get_placeholders(self) -> None:
        tree = b"a" * 40
        parent = b"b" * 40
        sha = self.add_commit(tree=tree, parents=[parent])
        index_commit(self.conn, sha)
        commit = read_commit(self.conn, sha)
        self.assertEqual(tree, commit.tree)
        self.assertEqual([parent], commit.parents)
        self.assertRaises(NotFoundError, stat, self.conn, tree)
        self.assertRaises(NotFoundError, stat, self.conn, parent)

    def test_placeholder_filled_later(self) -> None:
        tree_data = make_tree_data([(b"f", 0o100644, b"c" * 40)])[1]
        tree_sha = make_tree_data([(b"f", 0o100644, b"c" * 40)])[0]
        sha = self.add_commit(tree=tree_sha)
        index_commit(self.conn, sha)
        add_object(self.conn, "tree", tree_data)
        self.assertEqual("tree", stat(self.conn, tree_sha).type_name)
        self.assertEqual(tree_sha, read_commit(self.conn, sha).tree)

    def test_not_a_commit(self) -> None:
        self.assertRaises(ParseError, index_commit, self.conn, self.tree)

    def test_missing(self) -> None:
        self.assertRaises(NotFoundError, index_commit, self.conn, b"d" * 40)

    def test_not_indexed(self) -> None:
        sha = self.add_commit()
        self.assertRaises(NotFoundError, read_commit, self.conn, sha)

    def test_timezone_out_of_range(self) -> None:
        sha = self.add_commit(author_timezone=100 * 3600)
        self.assertRaises(ParseError, index_commit, self.conn, sha)
        self.assertEqual(0, self.count("commits"))


class IndexCommitsTests(CommitIndexTestCase):
    def test_parents_first(self) -> None:
        c1 = self.add_commit(message=b"1\n")
        c2 = self.add_commit(parents=[c1], message=b"2\n")
        c3 = self.add_commit(parents=[c1], message=b"3\n")
        c4 = self.add_commit(parents=[c2, c3], message=b"4\n")
        with transaction(self.conn):
            indexed, failed = index_commits(self.conn, [c4, c3, c2, c1])
        self.assertEqual([], failed)
        self.assertEqual(c1, indexed[0])
        self.assertEqual(c4, indexed[-1])
        self.assertEqual(4, len(indexed))
        self.assertEqual([c2, c3], read_commit(self.conn, c4).parents)

    def test_failures_are_isolated(self) -> None:
        good = self.add_commit(message=b"good\n")
        bad, _ = add_object(self.conn, "commit", b"this is not a commit\n")
        bad_tz = self.add_commit(commit_timezone=-120 * 3600)
        missing = b"e" * 40
        with self.assertLogs("repocache.commits", level="WARNING"):
            indexed, failed = index_commits(self.conn, [bad, good, bad_tz, missing])
        self.assertEqual([good], indexed)
        self.assertEqual(sorted([bad, bad_tz, missing]), sorted(failed))
        self.assertEqual(1, self.count("commits"))

    def test_hex_and_raw_names(self) -> None:
        sha = self.add_commit()
        indexed, failed = index_commits(self.conn, [sha, sha.decode("ascii")])
        self.assertEqual([sha], indexed)
        self.assertEqual([], failed)
