#
# Copyright 2016 University of Southern California
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
import os
import logging
from bagkit.bagkit_errors import BagError, InvalidBagitFileFormatError, MaliciousPathError, \
    MissingBagitFileError, UnparsableVersionError, UnsupportedAlgorithmError
from bagkit.bagkit_reader import read_bag
from test.test_common import BaseTest

logger = logging.getLogger()

HELLO_MD5 = "5d41402abc4b2a76b9719d911017c592"
BAGIT_TXT = "BagIt-Version: 1.0\nTag-File-Character-Encoding: UTF-8\n"


class TestReader(BaseTest):

    def _write_bag(self, files):
        for name, text in files.items():
            self.write_text_file(os.path.join(self.test_bag_dir, name), text)
        data_dir = os.path.join(self.test_bag_dir, "data")
        if not os.path.isdir(data_dir):
            os.makedirs(data_dir)

    def test_read_written_bag(self):
        logger.info(self.getTestHeader('read a freshly written bag'))
        written = self.make_test_bag(tags={"bag-info.txt": {"Contact-Name": "nobody"},
                                           "extra/notes.txt": {"Note": "hello"}})
        bag = read_bag(self.test_bag_dir)
        self.assertEqual("0.97", bag.version)
        self.assertEqual("UTF-8", bag.encoding)
        self.assertEqual(["md5", "sha256"], bag.algorithms)
        self.assertEqual(["md5", "sha256"], bag.tag_algorithms)
        self.assertEqual(written.info, bag.info)
        self.assertEqual(dict(written.payload_entries()), dict(bag.payload_entries()))
        self.assertEqual(dict(written.tag_entries()), dict(bag.tag_entries()))
        self.assertIn("data/test2/test 3.txt", bag.manifests["md5"])
        self.assertEqual({"extra/notes.txt": "Note: hello\n"}, dict(bag.tag_files))
        self.assertEqual("hello", bag.tag_fields("extra/notes.txt").get("Note"))
        self.assertFalse(bag.fetch_entries)

    def test_read_missing_bag(self):
        logger.info(self.getTestHeader('read missing bag directory'))
        self.assertRaises(BagError, read_bag, os.path.join(self.tmpdir, "nowhere"))

    def test_read_missing_bagit_txt(self):
        logger.info(self.getTestHeader('read bag without bagit.txt'))
        self._write_bag({"manifest-md5.txt": ""})
        self.assertRaises(MissingBagitFileError, read_bag, self.test_bag_dir)

    def test_read_bagit_txt_with_bom(self):
        logger.info(self.getTestHeader('read bagit.txt with byte order mark'))
        self._write_bag({"bagit.txt": u"\ufeff" + BAGIT_TXT})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)

    def test_read_bad_bagit_txt(self):
        logger.info(self.getTestHeader('read malformed bagit.txt'))
        self._write_bag({"bagit.txt": "BagIt-Version: one\nTag-File-Character-Encoding: UTF-8\n"})
        self.assertRaises(UnparsableVersionError, read_bag, self.test_bag_dir)
        self._write_bag({"bagit.txt": "Tag-File-Character-Encoding: UTF-8\n"})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)
        self._write_bag({"bagit.txt": "BagIt-Version: 1.0\nTag-File-Character-Encoding: NOPE-8\n"})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)

    def test_read_malicious_manifest_path(self):
        logger.info(self.getTestHeader('read manifest with path outside the bag'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "manifest-md5.txt": "%s  ../../etc/passwd\n" % HELLO_MD5})
        self.assertRaises(MaliciousPathError, read_bag, self.test_bag_dir)

    def test_read_unsupported_manifest_algorithm(self):
        logger.info(self.getTestHeader('read manifest with unsupported algorithm'))
        self._write_bag({"bagit.txt": BAGIT_TXT, "manifest-foo.txt": ""})
        self.assertRaises(UnsupportedAlgorithmError, read_bag, self.test_bag_dir)

    def test_read_manifest_entries(self):
        logger.info(self.getTestHeader('read manifest entries'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "manifest-MD5.txt": "%s *data/hello.txt\n\n%s  data/100%%25.txt\n" %
                                             (HELLO_MD5.upper(), HELLO_MD5)})
        bag = read_bag(self.test_bag_dir)
        manifest = bag.manifests["md5"]
        self.assertEqual("manifest-MD5.txt", manifest.filename)
        self.assertEqual(HELLO_MD5, manifest.get("data/hello.txt"))
        self.assertIn("data/100%.txt", manifest)

    def test_read_bad_manifest_lines(self):
        logger.info(self.getTestHeader('read malformed manifest lines'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "manifest-md5.txt": "%s  data/hello.txt\n%s  data/hello.txt\n" % (HELLO_MD5, HELLO_MD5)})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)
        self._write_bag({"bagit.txt": BAGIT_TXT, "manifest-md5.txt": "%s\n" % HELLO_MD5})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)
        self._write_bag({"bagit.txt": BAGIT_TXT, "manifest-md5.txt": "not-a-digest  data/hello.txt\n"})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)

    def test_read_fetch_file(self):
        logger.info(self.getTestHeader('read fetch.txt'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "fetch.txt": "http://example.org/a.txt\t-\tdata/a.txt\n"
                                      "http://example.org/b%20c.txt 12 data/b c.txt\n"})
        bag = read_bag(self.test_bag_dir)
        self.assertTrue(bag.has_fetch_file)
        self.assertEqual(2, len(bag.fetch_entries))
        self.assertIsNone(bag.fetch_entries[0].length)
        self.assertEqual(12, bag.fetch_entries[1].length)
        self.assertEqual("data/b c.txt", bag.fetch_entries[1].filename)
        self.assertEqual(["data/a.txt", "data/b c.txt"], bag.files_to_be_fetched())

    def test_read_bad_fetch_file(self):
        logger.info(self.getTestHeader('read malformed fetch.txt'))
        self._write_bag({"bagit.txt": BAGIT_TXT, "fetch.txt": "http://example.org/a.txt twelve data/a.txt\n"})
        self.assertRaises(InvalidBagitFileFormatError, read_bag, self.test_bag_dir)
        self._write_bag({"bagit.txt": BAGIT_TXT, "fetch.txt": "http://example.org/a.txt 1 ../a.txt\n"})
        self.assertRaises(MaliciousPathError, read_bag, self.test_bag_dir)

    def test_read_bag_info_continuation(self):
        logger.info(self.getTestHeader('read bag-info.txt continuation lines'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "bag-info.txt": "External-Description: first\n  second\nContact-Name: a\nContact-Name: b\n"})
        bag = read_bag(self.test_bag_dir)
        self.assertTrue(bag.has_info_file)
        self.assertEqual("first second", bag.info.get("external-description"))
        self.assertEqual(["a", "b"], bag.info.get_all("Contact-Name"))

    def test_read_names_with_surrounding_spaces(self):
        logger.info(self.getTestHeader('read manifest and fetch.txt names with trailing spaces'))
        self._write_bag({"bagit.txt": BAGIT_TXT,
                         "manifest-md5.txt": "%s  data/notes \r\n%s\tdata/tabbed.txt\r\n  %s *data/*starred \r\n" %
                                             (HELLO_MD5, HELLO_MD5, HELLO_MD5),
                         "fetch.txt": "http://example.org/notes\t5\tdata/remote/notes \n"})
        bag = read_bag(self.test_bag_dir)
        self.assertEqual(["data/*starred ", "data/notes ", "data/tabbed.txt"], sorted(bag.manifests["md5"].entries))
        self.assertEqual("data/remote/notes ", bag.fetch_entries[0].filename)
        self.assertEqual(5, bag.fetch_entries[0].length)
