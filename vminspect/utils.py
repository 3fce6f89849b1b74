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

"""These are various utilities for vminspect."""
import collections
import functools
import sys
import threading

import sortedcontainers


def SmartUnicode(string, encoding="utf8"):
    """Returns a unicode object from the string."""
    if isinstance(string, (bytes, bytearray)):
        return bytes(string).decode(encoding, "replace")

    return str(string)


def CString(data, encoding="utf8"):
    """Decodes a NUL terminated C string from a byte buffer."""
    end = data.find(b"\x00")
    if end >= 0:
        data = data[:end]

    return SmartUnicode(data, encoding=encoding)


def Synchronized(f):
    """Runs the method under self.lock when the object has one."""

    @functools.wraps(f)
    def NewFunction(self, *args, **kw):
        if self.lock is None:
            return f(self, *args, **kw)

        with self.lock:
            return f(self, *args, **kw)

    return NewFunction


class FastStore(object):
    """A cache which expires the least recently used entries first.

    Entries are kept in an OrderedDict in order of use, so both lookups and
    reordering are O(1).
    """

    def __init__(self, max_size=10, lock=False):
        """Constructor.

        Args:
             max_size: The maximum number of objects held in cache.
             lock: If True this cache will be thread safe.
        """
        self._data = collections.OrderedDict()
        self._limit = max_size
        self.lock = threading.RLock() if lock else None
        self.hits = self.misses = 0

    def __len__(self):
        return len(self._data)

    @Synchronized
    def Expire(self):
        while len(self._data) > self._limit:
            self._data.popitem(last=False)

    @Synchronized
    def Put(self, key, item):
        """Add the object to the cache."""
        self._data[key] = item
        self._data.move_to_end(key)
        self.Expire()

        return key

    @Synchronized
    def Get(self, key):
        """Fetch the object from cache.

        Objects may be flushed from cache at any time. Callers must always
        handle the possibility of KeyError raised here.

        Raises:
            KeyError: If the object is not present in the cache.
        """
        try:
            item = self._data[key]
        except KeyError:
            self.misses += 1
            raise

        self._data.move_to_end(key)
        self.hits += 1

        return item

    @Synchronized
    def __contains__(self, key):
        return key in self._data

    @Synchronized
    def Flush(self):
        self._data.clear()


class SortedCollection(sortedcontainers.SortedDict):
    """A dict sorted by key with nearest-key lookups."""

    def get_value_smaller_than(self, k):
        for x in self.irange(maximum=k, reverse=True):
            return x, self[x]

        return None, None

    def get_value_larger_than(self, k):
        for x in self.irange(k):
            return x, self[x]

        return None, None


class safe_property(property):
    """Re-Raises AttributeError in properties.

    In Python @property swallows AttributeError and calls __getattr__. This is
    rarely what you want because sometime an AttributeError is erronously raised
    from legitimately broken property code and just swallowing it automatically
    can cause weird error messages.
    """

    def __get__(self, *args, **kwargs):
        try:
            return super(safe_property, self).__get__(*args, **kwargs)
        except AttributeError as e:
            message = "AttributeError raised: %s" % e

            # Retain the original backtrace but re-raise a RuntimeError to
            # prevent the property from calling __getattr__.
            raise RuntimeError(message, sys.exc_info()[2])


def WriteBounded(items, out):
    """Copies as many items as fit into the caller supplied buffer.

    The capacity is len(out): a list, a bytearray or any mutable sequence
    supporting slice assignment. Text is encoded as utf8 first.

    Returns:
      The true number of items (or bytes) available, which may exceed the
      capacity of out. Nothing past the capacity is ever written.
    """
    if isinstance(items, str):
        items = items.encode("utf8")

    items = list(items) if not isinstance(items, (bytes, bytearray)) else items
    count = min(len(items), len(out))
    if count:
        out[:count] = items[:count]

    return len(items)
