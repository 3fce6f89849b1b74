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

"""Exceptions raised by vminspect.

Every failure is an Error with a kind. Errors can be wrapped with human
readable context, building a chain which is printed outermost context first:

    try:
        ...
    except errors.Error as e:
        raise e.with_context("resolving current process") from e

or, more conveniently:

    with errors.context("resolving current process"):
        ...
"""
import contextlib

from vminspect import utils


class Error(Exception):
    """All vminspect errors come from this one."""

    kind = "Error"

    def __init__(self, message=None, cause=None):
        self.message = message or self.kind
        self.cause = cause
        super(Error, self).__init__(self.message)

    def with_context(self, context):
        """Returns a new error annotating this one with context."""
        return ContextError(context, cause=self)

    def chain(self):
        """Yields the errors in the chain, outermost first."""
        error = self
        while error is not None:
            yield error
            error = error.cause

    def root_cause(self):
        for error in self.chain():
            pass

        return error

    def find(self, cls):
        """Returns the first error in the chain which is an instance of cls."""
        for error in self.chain():
            if isinstance(error, cls):
                return error

    @utils.safe_property
    def contexts(self):
        return [e.message for e in self.chain() if isinstance(e, ContextError)]

    def __str__(self):
        return ": ".join(e.message for e in self.chain())

    def print_to(self, buf):
        """Writes the printed chain into a caller bytearray.

        Returns:
          The length of the full text. If this is larger than len(buf) the
          text was cut short and the caller should retry with a larger buffer.
        """
        return utils.WriteBounded(str(self), buf)


class ContextError(Error):
    """An annotation on another error.

    The kind is always that of the wrapped error.
    """

    def __init__(self, context, cause=None):
        if cause is None:
            raise TypeError("A context error needs a cause.")

        self.cause = cause
        super(ContextError, self).__init__(context, cause=cause)

    @utils.safe_property
    def kind(self):
        return self.cause.kind


class InvalidArgument(Error):
    kind = "InvalidArgument"


class OutOfMemory(Error):
    kind = "OutOfMemory"

    def __init__(self, requested=None, limit=None):
        self.requested = requested
        self.limit = limit
        message = "out of memory"
        if requested is not None:
            message = "requested %d bytes, more than the buffer limit (%s)" % (
                requested, limit)

        super(OutOfMemory, self).__init__(message)


class TranslationFailure(Error):
    """The page table walk could not resolve a virtual address."""
    kind = "TranslationFailure"

    def __init__(self, level, address, mmu_addr=None):
        self.level = level
        self.address = address
        self.mmu_addr = mmu_addr
        super(TranslationFailure, self).__init__(
            "invalid %s translating %s" % (level, address))


class ReadFailure(Error):
    """The backend could not supply bytes for a physical range."""
    kind = "ReadFailure"

    def __init__(self, address, length, reason=None):
        self.address = address
        self.length = length
        message = "unable to read %d bytes at %s" % (length, address)
        if reason:
            message = "%s (%s)" % (message, reason)

        super(ReadFailure, self).__init__(message)


class MissingSymbol(Error):
    """A required symbol is absent from the active symbols."""
    kind = "MissingSymbol"

    def __init__(self, symbol):
        self.symbol = symbol
        super(MissingSymbol, self).__init__("missing symbol: %s" % symbol)


class NoSymbolFound(Error):
    """An address had no preceding symbol."""
    kind = "NoSymbolFound"


class ParseFailure(Error):
    """A symbols payload is malformed."""
    kind = "ParseFailure"


class BufferTooSmall(Error):
    kind = "BufferTooSmall"

    def __init__(self, required):
        self.required = required
        super(BufferTooSmall, self).__init__(
            "buffer too small, %d required" % required)


class CorruptedData(Error):
    """Guest structures are inconsistent (e.g. a list never closes)."""
    kind = "CorruptedData"


@contextlib.contextmanager
def context(message, *args):
    """Annotates any Error raised inside the block with message."""
    try:
        yield
    except Error as e:
        if args:
            message = message % args

        raise e.with_context(message) from e
