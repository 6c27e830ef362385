#!/usr/bin/python3
# Setup file for repocache
# Copyright (C) 2023 The repocache Authors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

setup(
    package_data={"repocache": ["py.typed", "sql/*.sql", "sql/*/*.sql"]},
)
