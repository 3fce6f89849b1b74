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

VERSION = "1.0.0"

# Log domain subsystems. Various components will send log messages to these
# subsystems. These are useful for targeted debugging.
LOG_DOMAINS = ["PageTranslation", "Symbols", "Linux"]

# The name of the configuration file searched for in the usual places.
CONFIG_FILE_NAME = ".vminspectrc"

PAGE_SHIFT = 12
PAGE_SIZE = 1 << PAGE_SHIFT

# Virtual addresses at or above this are in the canonical kernel half.
KERNEL_SPACE_START = 0xffff800000000000

# Width of the comm field in task_struct (TASK_COMM_LEN).
TASK_COMM_LEN = 16

# Longest path we are willing to reconstruct from a dentry chain.
MAX_PATH_DEPTH = 256

# Longest file name component (NAME_MAX plus the terminator).
MAX_NAME_LENGTH = 256
