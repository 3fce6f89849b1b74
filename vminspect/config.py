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

"""This is the vminspect configuration system.

Options are declared by the modules which use them (DeclareOption) and are
resolved by the session. Users may keep commonly used settings in a YAML
configuration file (.vminspectrc). The file is only consulted when the session
is created with use_config_file=True; when used as a library the configuration
file has no effect.
"""
import collections
import logging
import os
import tempfile

import yaml

from vminspect import constants


class CommandMetadata(object):
    """A collection of declared options.

    Each option has a type which conveys how values coming from the
    configuration file are to be interpreted. Currently supported types:

    - IntParser: An integer (possibly encoded as a hex string).
    - ArrayStringParser: A list of strings.
    - Boolean: A flag - true/false.
    - String: Any string.
    - Choices: A string which must be one of the choices parameter.
    """

    def __init__(self):
        self.args = collections.OrderedDict()

    def add_argument(self, long_opt, **options):
        """Add a new option."""
        if not isinstance(options.get("type", ""), str):
            raise RuntimeError("Type must be a string.")

        name = long_opt.lstrip("-")
        options.setdefault("type", "String")
        options["name"] = name

        self.args[name] = options


def ParseOption(options, value):
    """Converts a raw value (e.g. from YAML) according to the option type."""
    if value is None:
        return None

    option_type = options.get("type", "String")
    if option_type == "IntParser":
        if isinstance(value, str):
            return int(value, 0)
        return int(value)

    if option_type == "ArrayStringParser":
        if isinstance(value, str):
            return [x.strip() for x in value.split(",") if x.strip()]
        return list(value)

    if option_type == "Boolean":
        if isinstance(value, str):
            return value.lower() in ("1", "true", "yes", "on")
        return bool(value)

    if option_type == "Choices":
        choices = options.get("choices", [])
        if value not in choices:
            raise ValueError("Invalid value %r for %s (valid: %s)" % (
                value, options["name"], ", ".join(choices)))

    return value


def GetHomeDir(session=None):
    return (
        (session and session.state.get("home")) or
        os.environ.get("HOME") or      # Unix
        os.environ.get("USERPROFILE") or  # Windows
        tempfile.gettempdir() or  # Fallback tmp dir.
        ".")


def GetConfigFile(session=None):
    """Gets the configuration stored in the config file.

    Searches for the config file in reasonable locations.

    Return:
      configuration stored in the config file. If the file is not found, returns
      an empty configuration.
    """
    search_path = [
        constants.CONFIG_FILE_NAME,   # Current directory.
        os.path.join(GetHomeDir(session), constants.CONFIG_FILE_NAME),
        "/etc/vminspectrc",
    ]

    for path in search_path:
        try:
            with open(path, "rb") as fd:
                result = yaml.safe_load(fd) or {}
                logging.debug("Loaded configuration from %s", path)

                return result

        except (IOError, ValueError, yaml.YAMLError):
            pass

    return {}


def MergeConfigOptions(state, session=None):
    """Read the config file and apply the declared options to state.

    Values already present in state (i.e. set explicitly by the caller) win
    over the configuration file.
    """
    config_data = GetConfigFile(session)
    for name, value in config_data.items():
        options = OPTIONS.args.get(name)
        if options is None:
            logging.debug("Ignoring unknown configuration option %s", name)
            continue

        if state.get(name) is None:
            state[name] = ParseOption(options, value)

    return state


# Global options control the framework's own flags.
OPTIONS = CommandMetadata()


def DeclareOption(*args, **kwargs):
    """Declare a config option for the configuration file and sessions."""
    OPTIONS.add_argument(*args, **kwargs)
