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

""" This module implements a class registry.

The MetaclassRegistry automatically adds any derived class to the base
class. This means that we do not need to go through a special initializating
step, as soon as a module is imported, the implementation is registered.

Backends, OS family strategies, address translators and symbol payload
loaders are all discovered this way.
"""


class MetaclassRegistry(type):
    """Automatic Plugin Registration through metaclasses."""

    def __init__(cls, name, bases, env_dict):
        super(MetaclassRegistry, cls).__init__(name, bases, env_dict)

        # The first class using the metaclass owns the registry and every
        # derived class shares it.
        registered_base = None
        for base in bases:
            if isinstance(base, MetaclassRegistry):
                registered_base = base
                break

        if registered_base is None:
            cls.classes = {}
            cls.classes_by_name = {}
            cls.top_level_class = cls
        else:
            cls.classes = registered_base.classes
            cls.classes_by_name = registered_base.classes_by_name
            cls.top_level_class = registered_base.top_level_class

        # Classes are abstract if they have the __abstract attribute. It is
        # name mangled so it is not inherited: each abstract class must be
        # marked explicitly.
        if env_dict.get("_%s__abstract" % name):
            return

        if cls.__name__.startswith("Abstract"):
            return

        if cls.__name__ in cls.classes:
            raise RuntimeError(
                "Multiple definitions for class %s (%s)" % (
                    cls, cls.classes[cls.__name__]))

        cls.classes[cls.__name__] = cls

        # Names may collide (e.g. a subclass refining its parent), which is
        # why each value is a list of classes with that name.
        cls.classes_by_name.setdefault(getattr(cls, "name", None), []).append(
            cls)

    def ImplementationByName(cls, name):
        """Returns the first registered class with this name, or None."""
        implementations = cls.classes_by_name.get(name)
        if implementations:
            return implementations[0]

    def ImplementationByClass(cls, name):
        return cls.classes.get(name)
