#!/usr/bin/env python

# vminspect Memory Introspection
# Copyright 2013 Google Inc. All Rights Reserved.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or (at
# your option) any later version.
#
# This program is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 59 Temple Place, Suite 330, Boston, MA 02111-1307 USA
#
"""Installation and deployment script."""
import os

from setuptools import find_packages, setup, Command

vminspect_description = "Virtual machine introspection over raw guest memory"

current_directory = os.path.dirname(os.path.abspath(__file__))

# constants.py imports nothing so it is safe to read before installation.
ENV = {"__file__": __file__}
exec(open(os.path.join(current_directory, "vminspect", "constants.py")).read(),
     ENV)
VERSION = ENV["VERSION"]


install_requires = [
    "PyYAML",
    "intervaltree >= 3.0",
    "pyelftools >= 0.24",
    "sortedcontainers >= 2.0, < 3.0",
]


class CleanCommand(Command):
    description = ("custom clean command that forcefully removes "
                   "dist/build directories")
    user_options = []

    def initialize_options(self):
        self.cwd = None

    def finalize_options(self):
        self.cwd = os.getcwd()

    def run(self):
        if os.getcwd() != self.cwd:
            raise RuntimeError('Must be in package root: %s' % self.cwd)

        os.system('rm -rf ./build ./dist')


commands = {}
commands["clean"] = CleanCommand

setup(
    name="vminspect",
    version=VERSION,
    cmdclass=commands,
    description=vminspect_description,
    long_description=open(os.path.join(current_directory, "README.md")).read(),
    long_description_content_type="text/markdown",
    license="GPL",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
    ],
    python_requires=">=3.7",
    packages=find_packages(".", include=["vminspect", "vminspect.*"]),
    install_requires=install_requires,
    extras_require={
        "tests": ["mock", "pytest"],
    },
)
