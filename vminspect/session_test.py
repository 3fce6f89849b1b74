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

import logging
import os
import shutil
import tempfile
import unittest

from vminspect import config
from vminspect import constants
from vminspect import session
from vminspect import testlib


class SessionTest(testlib.VmiBaseUnitTestCase):
    """Test the session parameters and logging."""

    def setUp(self):
        super(SessionTest, self).setUp()
        self.home = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.home)
        super(SessionTest, self).tearDown()

    def _write_config(self, text):
        with open(os.path.join(self.home, constants.CONFIG_FILE_NAME),
                  "w") as fd:
            fd.write(text)

    def testDefaults(self):
        self.assertEqual(self.session.GetParameter("buffer_size"),
                         20 * 1024 * 1024)
        self.assertEqual(self.session.GetParameter("no_such_option", 5), 5)
        self.assertFalse(self.session.HasParameter("buffer_size"))

    def testExplicitValuesAreParsed(self):
        s = session.Session(buffer_size="0x1000", log_domain="Linux,Symbols")
        self.assertEqual(s.GetParameter("buffer_size"), 0x1000)
        self.assertEqual(s.GetParameter("log_domain"), ["Linux", "Symbols"])

        s.SetParameter("buffer_size", 10)
        self.assertEqual(s.GetParameter("buffer_size"), 10)
        self.assertTrue(s.HasParameter("buffer_size"))

    def testInvalidChoice(self):
        self.assertRaises(ValueError, session.Session, logging_level="LOUD")

    def testConfigFile(self):
        self._write_config("buffer_size: 0x2000\n"
                           "max_list_entries: 12\n"
                           "unknown_option: 1\n")

        # Without use_config_file the file is ignored.
        s = session.Session(home=self.home)
        self.assertEqual(s.GetParameter("max_list_entries", 0x100000),
                         0x100000)

        s = session.Session(use_config_file=True, home=self.home,
                            buffer_size=0x3000)
        # Explicit values win over the file.
        self.assertEqual(s.GetParameter("buffer_size"), 0x3000)
        self.assertEqual(s.GetParameter("max_list_entries"), 12)
        self.assertIsNone(s.GetParameter("unknown_option"))

    def testMalformedConfigFile(self):
        self._write_config("{{ not yaml")
        self.assertEqual(config.GetConfigFile(session.Session(home=self.home)),
                         {})

    def testLogDomains(self):
        s = session.Session(logging_level="ERROR", log_domain=["Linux"])
        self.assertEqual(s.GetLogger("Linux").level, logging.DEBUG)
        self.assertEqual(s.GetLogger("Symbols").level, logging.ERROR)
        self.assertTrue(s.GetLogger("Linux").name.startswith(s.logging.name))

        s.SetParameter("log_domain", [])
        self.assertEqual(s.GetLogger("Linux").level, logging.ERROR)

    def testInjectedLogger(self):
        logger = logging.getLogger("vminspect_test.injected")
        s = session.Session(logger=logger, logging_level="DEBUG")

        self.assertIs(s.logging, logger)
        self.assertEqual(s.GetLogger("Linux").name,
                         "vminspect_test.injected.Linux")

    def testSessionsAreIndependent(self):
        s1 = session.Session(buffer_size=1)
        s2 = session.Session()
        self.assertNotEqual(s1.session_id, s2.session_id)
        self.assertNotEqual(s1.logging.name, s2.logging.name)
        self.assertEqual(s2.GetParameter("buffer_size"), 20 * 1024 * 1024)

    def testLoadSymbols(self):
        builder = testlib.GuestBuilder()
        with open(os.path.join(self.home, "kernel.json"), "wb") as fd:
            fd.write(builder.profile_json())

        s = session.Session(symbols_path=[self.home])
        table = s.LoadSymbols()
        self.assertIn("kernel", table)
        self.assertIs(table.session, s)


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
