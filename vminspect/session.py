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

"""This module implements the vminspect session.

The session carries the configuration parameters and the logger used by the
introspection engine. It is passed explicitly to everything that needs it:
there is no process wide logger or configuration.
"""
import logging

from vminspect import config
from vminspect import constants
from vminspect import utils


config.DeclareOption(
    "--buffer_size", default=20 * 1024 * 1024,
    type="IntParser",
    help="The maximum size of buffers we are allowed to read. "
    "This is used to control memory usage.")

config.DeclareOption(
    "--home", default=None,
    help="An alternative home directory path. If not set we use $HOME.")

config.DeclareOption(
    "--logging_level", default="WARNING", type="Choices",
    choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    help="The default logging level.")

config.DeclareOption(
    "--logging_format",
    default="%(asctime)s:%(levelname)s:%(name)s:%(message)s",
    help="The format string to pass to the logging module.")

config.DeclareOption(
    "--log_domain", default=[], type="ArrayStringParser",
    help="Add debug logging to these components: %s" % (
        ", ".join(constants.LOG_DOMAINS)))

config.DeclareOption(
    "--symbols_path", default=[], type="ArrayStringParser",
    help="Directories of symbol files loaded by Session.LoadSymbols().")


class Session(object):
    """Base session.

    This session contains the bare minimum to use vminspect.
    """

    # Each session has a unique session id (within this process).
    session_id = 0

    def __init__(self, use_config_file=False, logger=None, **kwargs):
        # We use this logger if provided.
        self.logger = logger
        self._logger = None

        # Make this session id unique.
        Session.session_id += 1
        self.session_id = Session.session_id

        # Store user configurable attributes here.
        self.state = {}
        for k, v in kwargs.items():
            self._store(k, v)

        if use_config_file:
            config.MergeConfigOptions(self.state, self)

        self._set_logging_level(self.GetParameter("logging_level"))
        self._set_logging_format(self.GetParameter("logging_format"))

    def __repr__(self):
        return "<%s %d>" % (self.__class__.__name__, self.session_id)

    @utils.safe_property
    def logging(self):
        if self.logger is not None:
            return self.logger

        logger_name = u"vminspect.%s" % self.session_id
        if self._logger is None or self._logger.name != logger_name:
            # All vminspect logging must be done through the session's logger.
            self._logger = logging.getLogger(logger_name)

        return self._logger

    def _store(self, item, value):
        options = config.OPTIONS.args.get(item)
        if options is not None:
            value = config.ParseOption(options, value)

        self.state[item] = value

    def _set_logging_level(self, level):
        if isinstance(level, str):
            level = getattr(logging, level.upper(), logging.WARNING)

        if self.logger is not None:
            # An injected logger is configured by its owner.
            return

        self.logging.setLevel(int(level))

        # Create subloggers and suppress their logging level.
        domains = self.GetParameter("log_domain") or []
        for log_domain in constants.LOG_DOMAINS:
            logger = self.logging.getChild(log_domain)
            if log_domain in domains:
                logger.setLevel(logging.DEBUG)
            else:
                logger.setLevel(max(logging.WARNING, int(level)))

    def _set_logging_format(self, logging_format):
        if self.logger is not None or not logging_format:
            return

        formatter = logging.Formatter(fmt=logging_format)
        for handler in self.logging.handlers:
            handler.setFormatter(formatter)

    def GetLogger(self, domain):
        """Returns the logger for one of the LOG_DOMAINS."""
        return self.logging.getChild(domain)

    def HasParameter(self, item):
        return self.state.get(item) is not None

    def GetParameter(self, item, default=None):
        """Retrieves a stored parameter.

        Parameters set explicitly on the session win, then those read from the
        configuration file, then the declared default for the option.
        """
        options = config.OPTIONS.args.get(item)

        result = self.state.get(item)
        if result is not None:
            # The option may have been declared after the value was stored.
            if options is not None:
                return config.ParseOption(options, result)

            return result

        if options is not None and options.get("default") is not None:
            return options["default"]

        return default

    def SetParameter(self, item, value):
        """Sets a session parameter."""
        self._store(item, value)

        if item in ("logging_level", "log_domain"):
            self._set_logging_level(self.GetParameter("logging_level"))
        elif item == "logging_format":
            self._set_logging_format(value)

    def LoadSymbols(self, symbols=None):
        """Loads every directory in symbols_path into a symbols table.

        Returns:
          The symbols table (a new one unless symbols is given).
        """
        # Deferred to avoid a circular import (symbols uses the session).
        from vminspect import symbols as symbols_module

        if symbols is None:
            symbols = symbols_module.Symbols(session=self)

        for path in self.GetParameter("symbols_path") or []:
            symbols.load_dir(path)

        return symbols
