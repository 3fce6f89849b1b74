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

"""The symbols table.

Symbols are kept per module (a kernel, a shared library, an executable). Each
module maps symbol names to offsets (and optional sizes) and back, and holds
the layouts of the structs we need to interpret guest memory.

Three payload formats are understood, detected by their content:

- Profile JSON, made of sections ($METADATA, $CONSTANTS, $FUNCTIONS, $SIZES,
  $STRUCTS) each handled by a ProfileSectionLoader:

    {
      "$METADATA": {"Name": "kernel"},
      "$CONSTANTS": {"init_task": 18446744071600981568},
      "$STRUCTS": {"task_struct": [9024, {"pid": [2216, ["int"]]}]}
    }

- ELF objects, whose symbol tables are read with pyelftools.

- kallsyms / System.map text (as produced by nm).

A later load for a module replaces the earlier one outright.
"""
import io
import json
import os
import re

from elftools.common import exceptions as elf_exceptions
from elftools.construct import core as construct_core
from elftools.elf import dynamic
from elftools.elf import elffile
from elftools.elf import sections

from vminspect import errors
from vminspect import registry
from vminspect import session as session_module
from vminspect import utils


class Struct(object):
    """The layout of a struct: its size and the offsets of its fields."""

    def __init__(self, name, size=None, fields=None):
        self.name = name
        self.size = size
        self.fields = dict(fields or {})

    def get_offset(self, field):
        return self.fields.get(field)

    def require_offset(self, field):
        result = self.fields.get(field)
        if result is None:
            raise errors.MissingSymbol("%s.%s" % (self.name, field))

        return result

    def __contains__(self, field):
        return field in self.fields

    def __repr__(self):
        return "<Struct %s (%s bytes, %d fields)>" % (
            self.name, self.size, len(self.fields))


class ModuleSymbols(object):
    """The symbols of one module."""

    def __init__(self, name, metadata=None):
        self.name = name
        self.metadata = dict(metadata or {})

        self._offsets = {}
        self._sizes = {}

        # Offset -> list of names at that offset, sorted by offset.
        self._names = utils.SortedCollection()
        self._structs = {}

    def add_symbol(self, name, offset, size=None):
        offset = int(offset)
        previous = self._offsets.get(name)
        if previous is not None:
            self._names[previous].remove(name)
            if not self._names[previous]:
                del self._names[previous]

        self._offsets[name] = offset
        self._names.setdefault(offset, []).append(name)
        if size is not None:
            self._sizes[name] = int(size)

    def set_size(self, name, size):
        self._sizes[name] = int(size)

    def add_struct(self, name, size=None, fields=None):
        self._structs[name] = Struct(name, size=size, fields=fields)
        return self._structs[name]

    def get_address(self, name):
        """Returns the offset of the symbol, or None."""
        return self._offsets.get(name)

    def require_address(self, name):
        result = self._offsets.get(name)
        if result is None:
            raise errors.MissingSymbol(name)

        return result

    def get_symbol(self, offset):
        """Returns the name of the symbol exactly at offset, or None."""
        names = self._names.get(int(offset))
        if names:
            return names[0]

    def get_symbol_inexact(self, offset):
        """Finds the closest symbol at or below offset.

        Returns:
          A tuple of (name, offset from the start of that symbol).

        Raises:
          NoSymbolFound: if no symbol starts at or below offset.
        """
        offset = int(offset)
        found, names = self._names.get_value_smaller_than(offset)
        if found is None:
            raise errors.NoSymbolFound(
                "no symbol at or below %#x in %s" % (offset, self.name))

        return names[0], offset - found

    def symbol_size(self, name):
        return self._sizes.get(name)

    def get_struct(self, name):
        return self._structs.get(name)

    def require_struct(self, name):
        result = self._structs.get(name)
        if result is None:
            raise errors.MissingSymbol(name)

        return result

    def symbols(self):
        """Yields (name, offset) in ascending offset order."""
        for offset, names in self._names.items():
            for name in names:
                yield name, offset

    def structs(self):
        return sorted(self._structs)

    def __len__(self):
        return len(self._offsets)

    def __repr__(self):
        return "<ModuleSymbols %s (%d symbols, %d structs)>" % (
            self.name, len(self._offsets), len(self._structs))


class ProfileSectionLoader(object, metaclass=registry.MetaclassRegistry):
    """A loader for a section in the profile JSON file.

    The profile json serialization contains a number of sections, each has a
    well known name (e.g. $CONSTANTS, $FUNCTIONS, $STRUCTS). Each section is
    handled by the loader registered under its name. This allows more complex
    sections to be introduced and extended.
    """
    __abstract = True
    order = 100

    def LoadIntoModule(self, session, module, data):
        """Loads the data into the module."""
        _ = session, data
        return module


class MetadataProfileSectionLoader(ProfileSectionLoader):
    """Creates the module, so it must run first."""
    name = "$METADATA"
    order = 1

    def LoadIntoModule(self, session, module, metadata):
        if not isinstance(metadata, dict):
            raise errors.ParseFailure("$METADATA must be a dict")

        name = module.name or metadata.get("Name")
        if not name:
            raise errors.InvalidArgument(
                "No module name given and none declared in $METADATA.")

        return ModuleSymbols(name, metadata=metadata)


class ConstantProfileSectionLoader(ProfileSectionLoader):
    name = "$CONSTANTS"

    def LoadIntoModule(self, session, module, constants):
        for k, v in constants.items():
            module.add_symbol(k, v)

        return module


class FunctionsProfileSectionLoader(ConstantProfileSectionLoader):
    name = "$FUNCTIONS"


class SizesProfileSectionLoader(ProfileSectionLoader):
    """Symbol sizes. Runs after the symbols are known."""
    name = "$SIZES"
    order = 200

    def LoadIntoModule(self, session, module, symbol_sizes):
        for k, v in symbol_sizes.items():
            module.set_size(k, v)

        return module


class StructProfileLoader(ProfileSectionLoader):
    """Struct layouts.

    Each struct is [size, {field: [offset, type definition]}]. A bare integer
    offset is accepted for a field too.
    """
    name = "$STRUCTS"

    def LoadIntoModule(self, session, module, types):
        for struct_name, definition in types.items():
            size, members = definition[0], definition[1]
            fields = {}
            for field, field_definition in members.items():
                if isinstance(field_definition, (list, tuple)):
                    field_definition = field_definition[0]

                fields[field] = int(field_definition)

            module.add_struct(struct_name, size=size, fields=fields)

        return module


class SymbolsParser(object, metaclass=registry.MetaclassRegistry):
    """Parses one payload format into a ModuleSymbols.

    Parsers are probed in order and the first one which recognizes the payload
    is used.
    """
    __abstract = True
    order = 100

    def __init__(self, session=None):
        self.session = session

    @classmethod
    def Probe(cls, data):
        """Returns True if this parser handles data."""
        return False

    def Parse(self, data, name=None):
        raise NotImplementedError()


class ProfileParser(SymbolsParser):
    """The JSON profile format."""
    name = "profile"
    order = 10

    @classmethod
    def Probe(cls, data):
        return data.lstrip()[:1] == b"{"

    def Parse(self, data, name=None):
        try:
            profile_data = json.loads(data.decode("utf8"))
        except ValueError as e:
            raise errors.ParseFailure("invalid profile json: %s" % e)

        if not isinstance(profile_data, dict):
            raise errors.ParseFailure("profile json must be an object")

        profile_data.setdefault("$METADATA", {})

        # Data is a dict with sections as keys.
        handlers = []
        for section in profile_data:
            try:
                handlers.append(
                    ProfileSectionLoader.classes_by_name[section][0])
            except KeyError:
                # This is not fatal in order to allow new sections to be safely
                # introduced to older binaries.
                self.session.GetLogger("Symbols").warning(
                    "Unable to parse profile section %s", section)

        # Sort the handlers in order:
        handlers.sort(key=lambda x: x.order)

        # Delegate module creation to the loaders.
        module = ModuleSymbols(name)
        for handler in handlers:
            try:
                module = handler().LoadIntoModule(
                    self.session, module, profile_data[handler.name])
            except (AttributeError, IndexError, KeyError, TypeError,
                    ValueError) as e:
                raise errors.ParseFailure(
                    "malformed %s section: %s" % (handler.name, e))

        return module


class ElfParser(SymbolsParser):
    """ELF symbol tables (.symtab and .dynsym)."""
    name = "elf"
    order = 20

    SYMBOL_TYPES = ("STT_FUNC", "STT_OBJECT")

    @classmethod
    def Probe(cls, data):
        return data[:4] == b"\x7fELF"

    def _GetSoname(self, elf):
        for section in elf.iter_sections():
            if not isinstance(section, dynamic.DynamicSection):
                continue

            for tag in section.iter_tags():
                if tag.entry.d_tag == "DT_SONAME":
                    return tag.soname

    def Parse(self, data, name=None):
        try:
            elf = elffile.ELFFile(io.BytesIO(data))
            name = name or self._GetSoname(elf)
            if not name:
                raise errors.InvalidArgument(
                    "No module name given and the ELF has no DT_SONAME.")

            module = ModuleSymbols(name, metadata=dict(
                Type="ELF", Arch=elf.get_machine_arch()))

            for section in elf.iter_sections():
                if not isinstance(section, sections.SymbolTableSection):
                    continue

                for symbol in section.iter_symbols():
                    if (not symbol.name or not symbol["st_value"] or
                            symbol["st_info"]["type"] not in self.SYMBOL_TYPES):
                        continue

                    module.add_symbol(symbol.name, symbol["st_value"],
                                      symbol["st_size"] or None)

        except (elf_exceptions.ELFError, construct_core.ConstructError) as e:
            raise errors.ParseFailure("invalid ELF file: %s" % e)

        return module


class KAllSymsParser(SymbolsParser):
    """A parser for kallsyms and System.map files."""
    name = "kallsyms"
    order = 30

    # The regular expression to parse the kallsyms file.
    KALLSYMS_REGEXP = re.compile(
        r"(?P<offset>[0-9a-fA-F]+) "
        r"(?P<type>[a-zA-Z]) "
        r"(?P<symbol>[^ \t]+)"
        r"(\t\[?(?P<module>[^ \]]+)\]?)?$")

    # nm prints undefined symbols without an address.
    UNDEFINED_REGEXP = re.compile(r"\s*[uUvVwW] [^ \t]+$")

    # Text, data and absolute symbols. Everything else (e.g. local read only
    # data, weak symbols) is of no use for introspection.
    SYMBOL_TYPES = "TtDA"

    @classmethod
    def Probe(cls, data):
        for line in data.splitlines():
            line = line.strip()
            if line:
                try:
                    line = line.decode("ascii")
                except UnicodeDecodeError:
                    return False

                if cls.UNDEFINED_REGEXP.match(line):
                    continue

                return cls.KALLSYMS_REGEXP.match(line) is not None

        return False

    def _ParseKallsym(self, line, line_number):
        """Parses a single symbol line from a symbols file.

        This is the result of obtaining symbols from nm:

        0000000000 t linux_proc_banner
        0000000010 s other_symbol [module]

        Returns:
          Tuple of offset, symbol_name, type, module, or None for an
          undefined symbol.
        """
        if self.UNDEFINED_REGEXP.match(line):
            return None

        matches = self.KALLSYMS_REGEXP.match(line)
        if not matches:
            raise errors.ParseFailure(
                "invalid symbol line %d: %r" % (line_number, line))

        return (int(matches.group("offset"), 16), matches.group("symbol"),
                matches.group("type"), matches.group("module"))

    def Parse(self, data, name=None):
        if not name:
            raise errors.InvalidArgument(
                "kallsyms payloads do not declare a module name.")

        try:
            text = data.decode("ascii")
        except UnicodeDecodeError as e:
            raise errors.ParseFailure("invalid kallsyms text: %s" % e)

        module = ModuleSymbols(name, metadata=dict(Type="KAllSyms"))
        for line_number, line in enumerate(text.splitlines(), 1):
            line = line.rstrip()
            if not line:
                continue

            parsed = self._ParseKallsym(line, line_number)
            if parsed is None:
                continue

            offset, symbol, symbol_type, symbol_module = parsed

            # Symbols exported by loaded kernel modules belong elsewhere.
            if symbol_module or symbol_type not in self.SYMBOL_TYPES:
                continue

            module.add_symbol(symbol, offset)

        return module


class Symbols(object):
    """An append only table of module symbols.

    The table may be shared by several introspection sessions. The generation
    counter is bumped on every load so consumers can invalidate their caches.
    """

    def __init__(self, session=None):
        if session is None:
            session = session_module.Session()

        self.session = session
        self.logging = session.GetLogger("Symbols")
        self._modules = {}
        self.generation = 0

    def add_module(self, module):
        """Adds the module, replacing any module of the same name."""
        if module.name in self._modules:
            self.logging.debug("Replacing symbols for %s", module.name)

        self._modules[module.name] = module
        self.generation += 1

        return module

    def load_from_bytes(self, data, name=None):
        """Loads a symbols payload.

        Args:
          data: The payload (profile json, ELF or kallsyms text).
          name: The module name. If not given the name declared inside the
            payload is used.

        Returns:
          The loaded ModuleSymbols.
        """
        if isinstance(data, str):
            data = data.encode("utf8")

        if not isinstance(data, (bytes, bytearray)):
            raise errors.InvalidArgument(
                "Symbols payload must be bytes, not %s" % type(data).__name__)

        data = bytes(data)
        parsers = sorted(SymbolsParser.classes.values(), key=lambda x: x.order)
        for parser_cls in parsers:
            if parser_cls.Probe(data):
                module = parser_cls(session=self.session).Parse(
                    data, name=name)
                self.logging.debug("Loaded %d symbols for %s (%s)",
                                   len(module), module.name, parser_cls.name)

                return self.add_module(module)

        raise errors.ParseFailure("Unrecognized symbols payload format.")

    def load_from_file(self, path, name=None):
        """Loads a symbols file.

        The module name is name, then the name declared inside the file, then
        the file name.
        """
        try:
            with open(path, "rb") as fd:
                data = fd.read()
        except (IOError, OSError) as e:
            raise errors.InvalidArgument("Unable to read %s: %s" % (path, e))

        with errors.context("loading symbols from %s", path):
            try:
                return self.load_from_bytes(data, name=name)
            except errors.InvalidArgument:
                if name:
                    raise

            return self.load_from_bytes(data, name=os.path.basename(path))

    def load_dir(self, path):
        """Loads every regular, non hidden file in a directory.

        Files which fail to load are skipped with a warning.

        Returns:
          The number of modules loaded.

        Raises:
          InvalidArgument: if the directory can not be read.
          ParseFailure: if no file in the directory could be loaded.
        """
        try:
            names = sorted(os.listdir(path))
        except (IOError, OSError) as e:
            raise errors.InvalidArgument(
                "Unable to list directory %s: %s" % (path, e))

        candidates = 0
        loaded = 0
        last_error = None
        for filename in names:
            full_path = os.path.join(path, filename)
            if filename.startswith(".") or not os.path.isfile(full_path):
                continue

            candidates += 1
            try:
                self.load_from_file(full_path)
                loaded += 1
            except errors.Error as e:
                self.logging.warning("Skipping symbols file %s: %s",
                                     full_path, e)
                last_error = e

        if candidates and not loaded:
            raise errors.ParseFailure(
                "No symbols could be loaded from %s" % path, cause=last_error)

        return loaded

    def get_module(self, name):
        return self._modules.get(name)

    def require_module(self, name):
        result = self._modules.get(name)
        if result is None:
            raise errors.MissingSymbol(name)

        return result

    def modules(self):
        """Returns the modules, sorted by name."""
        return [self._modules[x] for x in sorted(self._modules)]

    def __contains__(self, name):
        return name in self._modules

    def __len__(self):
        return len(self._modules)

    def __repr__(self):
        return "<Symbols %s>" % ", ".join(sorted(self._modules))
