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
import json
import shutil
import logging
import mock
from io import StringIO
from zipfile import ZipFile
from os.path import join as ospj
from os.path import exists as ospe
from os.path import isfile as ospif
from bagkit import bagkit_api as bk, bagkit_config as bkcfg, get_typed_exception, bag_parent_dir_from_archive, \
    guess_mime_type, inspect_path, safe_move
from bagkit.bagkit_errors import BagError, BagValidationError, ProfileValidationError, MaliciousPathError, \
    BaggingInterruptedError, CORRUPT_CHECKSUM, MISSING_FILE
from bagkit.bagkit_profile import load_profile
from bagkit.bagkit_reader import read_bag
from test.test_common import BaseTest

logger = logging.getLogger()


class TestAPI(BaseTest):

    def setUp(self):
        super(TestAPI, self).setUp()
        self.stream = StringIO()
        self.handler = logging.StreamHandler(self.stream)
        logger.addHandler(self.handler)
        shutil.copytree(self.test_data_dir, self.test_bag_dir)
        self.test_metadata_file = ospj(self.test_config_dir, 'test-metadata.json')
        self.test_profile_file = ospj(self.test_profiles_dir, 'test-profile.json')
        self.test_remote_manifest = ospj(self.test_http_dir, 'test-fetch-manifest.json')

    def tearDown(self):
        self.stream.close()
        logger.removeHandler(self.handler)
        super(TestAPI, self).tearDown()

    def _make_bag(self, **kwargs):
        return bk.make_bag(self.test_bag_dir, config_file=self.test_config_file, **kwargs)

    def test_create_config(self):
        logger.info(self.getTestHeader('create config'))
        config_file = ospj(self.test_config_dir, ".bagkit", 'bagkit.json')
        bkcfg.write_config(config_file=config_file)
        self.assertTrue(ospif(config_file))
        with open(config_file) as cf:
            self.assertEqual(json.loads(json.dumps(bkcfg.DEFAULT_CONFIG)), json.load(cf))

    def test_read_with_create_default_config(self):
        logger.info(self.getTestHeader('read config with create default if missing'))
        config_file = ospj(self.test_config_dir, ".bagkit", 'bagkit.json')
        config = bkcfg.read_config(config_file=config_file)
        self.assertTrue(ospif(config_file))
        self.assertEqual(bkcfg.DEFAULT_BAG_ALGORITHMS, bkcfg.get_bag_config(config)[bkcfg.BAG_ALGORITHMS_TAG])

    def test_read_without_create_default_config(self):
        logger.info(self.getTestHeader('read config without creating a default'))
        config_file = ospj(self.test_config_dir, ".bagkit", 'bagkit.json')
        config = bkcfg.read_config(config_file=config_file, create_default=False)
        self.assertFalse(ospe(config_file))
        self.assertEqual(bkcfg.DEFAULT_PROFILE, config[bkcfg.PROFILE_CONFIG_TAG][bkcfg.DEFAULT_PROFILE_TAG])
        self.assertExpectedMessages(["Using internal defaults"], self.stream.getvalue())

    def test_read_with_update_base_config(self):
        logger.info(self.getTestHeader('read config with auto-upgrade version'))
        config_file = ospj(self.test_config_dir, 'base-config.json')
        config = bkcfg.read_config(config_file=config_file, auto_upgrade=True)
        bag_config = config[bkcfg.BAG_CONFIG_TAG]
        self.assertEqual(["md5", "sha1"], bag_config[bkcfg.BAG_ALGORITHMS_TAG])
        self.assertEqual("Example Organization", bag_config[bkcfg.BAG_METADATA_TAG]["Source-Organization"])
        self.assertEqual(bkcfg.DEFAULT_FETCH_CONFIG, config[bkcfg.FETCH_CONFIG_TAG])
        self.assertNotEqual("0.9.0", config[bkcfg.CONFIG_VERSION_TAG])
        backups = [f for f in os.listdir(self.test_config_dir) if f.startswith('base-config.json-')]
        self.assertEqual(1, len(backups))
        self.assertFalse(bkcfg.upgrade_config(config_file))

    def test_bootstrap_config(self):
        logger.info(self.getTestHeader('test bootstrap config'))
        config_file = ospj(self.test_config_dir, ".bagkit", 'bagkit.json')
        bkcfg.bootstrap_config(config_file=config_file, base_dir=self.test_config_dir)
        self.assertTrue(ospif(config_file))

    def test_create_bag(self):
        logger.info(self.getTestHeader('create bag'))
        bag = self._make_bag()
        self.assertEqual(["md5", "sha256"], bag.algorithms)
        self.assertTrue(ospif(ospj(self.test_bag_dir, 'data', 'README.txt')))
        self.assertTrue(ospif(ospj(self.test_bag_dir, 'data', 'test2', 'test 3.txt')))
        self.assertFalse(ospe(ospj(self.test_bag_dir, 'README.txt')))
        for key in ("Bagging-Date", "Bagging-Time", "Payload-Oxum", "Bag-Size", "Bag-Software-Agent"):
            self.assertIn(key, bag.info)
        self.assertTrue(bk.is_bag(self.test_bag_dir))
        bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)

    def test_create_bag_with_algorithms(self):
        logger.info(self.getTestHeader('create bag with explicit algorithms'))
        bag = self._make_bag(algs=["sha1", "SHA-512"])
        self.assertEqual(["sha1", "sha512"], bag.algorithms)
        self.assertTrue(ospif(ospj(self.test_bag_dir, 'manifest-sha512.txt')))
        self.assertTrue(ospif(ospj(self.test_bag_dir, 'tagmanifest-sha1.txt')))

    def test_create_bag_missing_dir(self):
        logger.info(self.getTestHeader('create bag from missing directory'))
        self.assertRaises(BagError, bk.make_bag, ospj(self.tmpdir, 'nowhere'), config_file=self.test_config_file)

    def test_create_bag_with_metadata(self):
        logger.info(self.getTestHeader('create bag with metadata'))
        bag = self._make_bag(metadata_file=self.test_metadata_file,
                             metadata={"Contact-Name": "Override Contact", "External-Identifier": ["a", "b"]})
        self.assertEqual("Example Organization", bag.info.get("Source-Organization"))
        self.assertEqual("Override Contact", bag.info.get("Contact-Name"))
        self.assertEqual(["Override Contact"], bag.info.get_all("Contact-Name"))
        self.assertEqual(["a", "b"], read_bag(self.test_bag_dir).info.get_all("External-Identifier"))

    def test_create_bag_with_config_metadata(self):
        logger.info(self.getTestHeader('create bag with metadata from config'))
        bag = bk.make_bag(self.test_bag_dir, config_file=ospj(self.test_config_dir, 'base-config.json'))
        self.assertEqual(["md5", "sha1"], bag.algorithms)
        self.assertEqual("Example Organization", bag.info.get("Source-Organization"))

    def test_create_bag_idempotent(self):
        logger.info(self.getTestHeader('create idempotent bag'))
        bag = self._make_bag(idempotent=True, metadata={"Bagging-Date": "2026-01-01"})
        self.assertNotIn("Bagging-Date", bag.info)
        self.assertNotIn("Bagging-Time", bag.info)
        self.assertExpectedMessages(["not compatible with Bag idempotency"], self.stream.getvalue())

    def test_create_bag_with_profile(self):
        logger.info(self.getTestHeader('create bag with profile'))
        bag = self._make_bag(profile="default", metadata={"Source-Organization": "Example Organization"})
        profile = load_profile("default")
        self.assertEqual(profile.identifier, bag.info.get("BagIt-Profile-Identifier"))
        self.assertEqual(profile.identifier,
                         bk.validate_bag_profile(self.test_bag_dir, config_file=self.test_config_file).identifier)

    def test_existing_bag_not_modified(self):
        logger.info(self.getTestHeader('make bag on an existing bag without update'))
        self._make_bag()
        manifest = self.slurp_text_file(ospj(self.test_bag_dir, 'manifest-md5.txt'))
        bag = self._make_bag(algs=["sha1"], metadata={"Contact-Name": "nobody"})
        self.assertEqual(["md5", "sha256"], bag.algorithms)
        self.assertNotIn("Contact-Name", bag.info)
        self.assertEqual(manifest, self.slurp_text_file(ospj(self.test_bag_dir, 'manifest-md5.txt')))
        self.assertExpectedMessages(["is already a bag"], self.stream.getvalue())

    def test_update_bag(self):
        logger.info(self.getTestHeader('update bag'))
        original = self._make_bag(metadata={"Contact-Name": "First Contact"})
        self.write_text_file(ospj(self.test_bag_dir, 'data', 'new.txt'), "new file")
        bag = self._make_bag(update=True, metadata={"Contact-Email": "contact@example.org"})
        self.assertIn("data/new.txt", bag.manifests["md5"])
        self.assertEqual("First Contact", bag.info.get("Contact-Name"))
        self.assertEqual("contact@example.org", bag.info.get("Contact-Email"))
        self.assertEqual(original.info.get("Bagging-Date"), bag.info.get("Bagging-Date"))
        self.assertNotEqual(original.info.get("Payload-Oxum"), bag.info.get("Payload-Oxum"))
        bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)

    def test_update_bag_change_algorithms(self):
        logger.info(self.getTestHeader('update bag with different algorithms'))
        self._make_bag()
        bag = self._make_bag(update=True, algs=["sha1"])
        self.assertEqual(["sha1"], bag.algorithms)
        self.assertFalse(ospe(ospj(self.test_bag_dir, 'manifest-md5.txt')))
        self.assertFalse(ospe(ospj(self.test_bag_dir, 'tagmanifest-sha256.txt')))
        self.assertEqual(["sha1"], read_bag(self.test_bag_dir).algorithms)
        bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)

    def test_create_bag_from_remote_file_manifest(self):
        logger.info(self.getTestHeader('create bag from remote file manifest'))
        bag = self._make_bag(remote_file_manifest=self.test_remote_manifest)
        self.assertEqual(["data/remote/hello.txt"], bag.files_to_be_fetched())
        self.assertEqual("5d41402abc4b2a76b9719d911017c592", bag.manifests["md5"].get("data/remote/hello.txt"))
        self.assertExpectedMessages(["http://example.org/files/hello.txt\t5\tdata/remote/hello.txt"],
                                    self.slurp_text_file(ospj(self.test_bag_dir, 'fetch.txt')))
        bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)
        bk.validate_bag(self.test_bag_dir, fast=True, config_file=self.test_config_file)
        bk.validate_bag_structure(self.test_bag_dir)
        with self.assertRaises(BagValidationError) as ar:
            bk.validate_bag_structure(self.test_bag_dir, skip_remote=False)
        self.assertEqual([MISSING_FILE], [f.kind for f in ar.exception.details])

    def test_create_bag_from_remote_file_manifest_json_stream(self):
        logger.info(self.getTestHeader('create bag from remote file manifest json stream'))
        with open(self.test_remote_manifest) as rfm:
            entries = json.load(rfm)
        stream_file = ospj(self.test_http_dir, 'test-fetch-manifest.jsonl')
        self.write_text_file(stream_file, "".join(json.dumps(entry) + "\n" for entry in entries))
        bag = self._make_bag(remote_file_manifest=stream_file)
        self.assertEqual(["data/remote/hello.txt"], bag.files_to_be_fetched())

    def test_remote_file_manifest_without_checksums(self):
        logger.info(self.getTestHeader('remote file manifest without checksums'))
        bad_manifest = ospj(self.test_http_dir, 'bad-fetch-manifest.json')
        self.write_text_file(bad_manifest, json.dumps(
            [{"url": "http://example.org/files/hello.txt", "length": 5, "filename": "hello.txt"}]))
        self.assertRaises(ValueError, list, bk.read_remote_file_manifest(bad_manifest))

    def test_update_bag_keeps_remote_files(self):
        logger.info(self.getTestHeader('update bag keeps unfetched remote files'))
        self._make_bag(remote_file_manifest=self.test_remote_manifest)
        bag = self._make_bag(update=True)
        self.assertEqual(["data/remote/hello.txt"], bag.files_to_be_fetched())
        self.assertEqual("5", bag.info.get("Payload-Oxum").split(".")[1])
        bk.validate_bag(self.test_bag_dir, fast=True, config_file=self.test_config_file)

    def test_validate_bag_invalid(self):
        logger.info(self.getTestHeader('validate invalid bag'))
        self._make_bag()
        with open(ospj(self.test_bag_dir, 'data', 'README.txt'), 'a') as f:
            f.write("changed")
        with self.assertRaises(BagValidationError) as ar:
            bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)
        self.assertEqual([CORRUPT_CHECKSUM, CORRUPT_CHECKSUM], [f.kind for f in ar.exception.details])
        self.assertExpectedMessages(["data/README.txt md5 validation failed"], str(ar.exception))
        self.assertRaises(BagValidationError, bk.validate_bag, self.test_bag_dir, fail_fast=True,
                          config_file=self.test_config_file)

    def test_validate_bag_cancel(self):
        logger.info(self.getTestHeader('validate bag with callback cancel'))
        self._make_bag()
        self.assertRaises(BaggingInterruptedError, bk.validate_bag, self.test_bag_dir,
                          callback=lambda current, total: False, config_file=self.test_config_file)

    def test_validate_profile(self):
        logger.info(self.getTestHeader('validate profile'))
        self._make_bag(metadata={"Source-Organization": "Example Organization"})
        profile = bk.validate_bag_profile(self.test_bag_dir, config_file=self.test_config_file)
        self.assertEqual(load_profile("default").identifier, profile.identifier)

    def test_validate_invalid_profile(self):
        logger.info(self.getTestHeader('validate invalid profile'))
        self._make_bag(metadata={"Source-Organization": "Example Organization"})
        with self.assertRaises(ProfileValidationError) as ar:
            bk.validate_bag_profile(self.test_bag_dir, profile_path=self.test_profile_file)
        self.assertFalse(ar.exception.result.is_valid)
        self.assertIn("UnacceptedBagItVersion", ar.exception.result.kinds())

    def test_archive_and_extract_bag(self):
        logger.info(self.getTestHeader('archive and extract bag'))
        self._make_bag()
        for archiver in bk.ARCHIVE_FORMATS:
            archive = bk.archive_bag(self.test_bag_dir, archiver, config_file=self.test_config_file)
            self.assertEqual(ospj(self.tmpdir, 'test-bag.%s' % archiver), archive)
            bk.validate_bag_serialization(archive, bag_profile_path="default")
            output_path = ospj(self.tmpdir, 'extracted-%s' % archiver)
            bag_path = bk.extract_bag(archive, output_path=output_path)
            self.assertEqual(ospj(os.path.realpath(output_path), 'test-bag'), bag_path)
            bk.validate_bag(bag_path, config_file=self.test_config_file)

    def test_archive_bag_unsupported_format(self):
        logger.info(self.getTestHeader('archive bag with unsupported format'))
        self._make_bag()
        self.assertRaises(RuntimeError, bk.archive_bag, self.test_bag_dir, "7z", config_file=self.test_config_file)

    def test_archive_bag_incomplete(self):
        logger.info(self.getTestHeader('archive incomplete bag'))
        self._make_bag()
        os.remove(ospj(self.test_bag_dir, 'data', 'README.txt'))
        self.assertRaises(BagValidationError, bk.archive_bag, self.test_bag_dir, "zip",
                          config_file=self.test_config_file)

    def test_archive_bag_idempotent(self):
        logger.info(self.getTestHeader('idempotent archives are identical'))
        self._make_bag(idempotent=True)
        for archiver in ("zip", "tgz"):
            archive = bk.archive_bag(self.test_bag_dir, archiver, config_file=self.test_config_file,
                                     idempotent=True)
            with open(archive, 'rb') as f:
                first = f.read()
            os.utime(ospj(self.test_bag_dir, 'data', 'README.txt'), (0, 1000000))
            archive = bk.archive_bag(self.test_bag_dir, archiver, config_file=self.test_config_file,
                                     idempotent=True)
            with open(archive, 'rb') as f:
                self.assertEqual(first, f.read())

    def test_extract_malicious_archive(self):
        logger.info(self.getTestHeader('extract archive with member outside of the output path'))
        archive = ospj(self.tmpdir, 'evil.zip')
        with ZipFile(archive, 'w') as zf:
            zf.writestr("evil/bagit.txt", "BagIt-Version: 1.0\n")
            zf.writestr("../escaped.txt", "gotcha")
        output_path = ospj(self.tmpdir, 'extracted')
        self.assertRaises(MaliciousPathError, bk.extract_bag, archive, output_path=output_path)
        self.assertFalse(ospe(ospj(self.tmpdir, 'escaped.txt')))

    def test_extract_unsupported_archive(self):
        logger.info(self.getTestHeader('extract unsupported archive'))
        not_an_archive = ospj(self.tmpdir, 'bag.zip')
        self.write_text_file(not_an_archive, "not an archive")
        self.assertRaises(RuntimeError, bk.extract_bag, not_an_archive)
        self.assertRaises(RuntimeError, bk.extract_bag, ospj(self.tmpdir, 'missing.zip'))

    def test_resolve_fetch(self):
        logger.info(self.getTestHeader('resolve fetch with resolver'))
        self._make_bag(remote_file_manifest=self.test_remote_manifest)

        def fetch(url, output_path, size=None):
            self.write_text_file(output_path, "hello")
            return output_path

        resolver = mock.Mock()
        resolver.fetch.side_effect = fetch
        self.assertTrue(bk.resolve_fetch(self.test_bag_dir, resolver=resolver))
        self.assertEqual(1, resolver.fetch.call_count)
        bk.validate_bag_structure(self.test_bag_dir, skip_remote=False)
        bk.validate_bag(self.test_bag_dir, config_file=self.test_config_file)

        self.assertTrue(bk.resolve_fetch(self.test_bag_dir, resolver=resolver))
        self.assertEqual(1, resolver.fetch.call_count)
        self.assertTrue(bk.resolve_fetch(self.test_bag_dir, force=True, resolver=resolver))
        self.assertEqual(2, resolver.fetch.call_count)

    def test_resolve_fetch_failure(self):
        logger.info(self.getTestHeader('resolve fetch with failing resolver'))
        self._make_bag(remote_file_manifest=self.test_remote_manifest)
        resolver = mock.Mock()
        resolver.fetch.return_value = None
        self.assertFalse(bk.resolve_fetch(self.test_bag_dir, resolver=resolver))

    def test_resolve_fetch_nothing_to_fetch(self):
        logger.info(self.getTestHeader('resolve fetch without fetch.txt'))
        self._make_bag()
        resolver = mock.Mock()
        self.assertTrue(bk.resolve_fetch(self.test_bag_dir, resolver=resolver))
        resolver.fetch.assert_not_called()

    def test_is_bag(self):
        logger.info(self.getTestHeader('is bag'))
        self.assertFalse(bk.is_bag(self.test_bag_dir))
        self.assertFalse(bk.is_bag(ospj(self.tmpdir, 'nowhere')))
        self._make_bag()
        self.assertTrue(bk.is_bag(self.test_bag_dir))

    def test_cleanup_bag(self):
        logger.info(self.getTestHeader('cleanup bag'))
        try:
            bk.cleanup_bag(self.test_bag_dir)
            self.assertFalse(ospe(self.test_bag_dir), "Failed to cleanup bag directory")
        except Exception as e:
            self.fail(get_typed_exception(e))

    def test_cleanup_bag_save(self):
        logger.info(self.getTestHeader('cleanup bag with save'))
        saved = bk.cleanup_bag(self.test_bag_dir, save=True)
        self.assertFalse(ospe(self.test_bag_dir))
        self.assertTrue(ospe(saved))

    def test_bag_parent_dir_from_archive(self):
        logger.info(self.getTestHeader('bag parent dir from archive member list'))
        self.assertEqual("bag", bag_parent_dir_from_archive(["bag/", "bag/bagit.txt", "bag/data/a.txt"]))
        self.assertEqual("bag", bag_parent_dir_from_archive(["bag", "bag/bagit.txt", "bag/data/a.txt"]))
        self.assertIsNone(bag_parent_dir_from_archive(["bagit.txt", "data/a.txt"]))
        self.assertIsNone(bag_parent_dir_from_archive(["one/bagit.txt", "two/bagit.txt"]))
        self.assertIsNone(bag_parent_dir_from_archive([]))

    def test_inspect_path(self):
        logger.info(self.getTestHeader('inspect path'))
        self.assertEqual((False, True, False), inspect_path(self.test_bag_dir))
        self.assertEqual((True, False, False), inspect_path(ospj(self.test_bag_dir, 'README.txt')))
        self.assertEqual((False, False, True), inspect_path("https://example.org/bag.zip"))
        self.assertEqual((False, False, False), inspect_path(ospj(self.tmpdir, 'nowhere')))

    def test_safe_move(self):
        logger.info(self.getTestHeader('safe move'))
        moved = safe_move(self.test_bag_dir)
        self.assertFalse(ospe(self.test_bag_dir))
        self.assertTrue(moved.startswith(os.path.realpath(self.test_bag_dir) + "-"))
        self.assertTrue(ospif(ospj(moved, 'README.txt')))
        nowhere = os.path.realpath(ospj(self.tmpdir, 'nowhere'))
        self.assertEqual(nowhere, safe_move(nowhere))

    def test_guess_mime_type(self):
        logger.info(self.getTestHeader('guess mime type'))
        self.assertEqual("application/zip", guess_mime_type("bag.zip"))
        self.assertEqual("application/gzip", guess_mime_type("bag.tgz"))
        self.assertEqual("application/x-tar", guess_mime_type("bag.tar"))
        self.assertEqual("text/plain", guess_mime_type("README.txt"))
        self.assertEqual("application/octet-stream", guess_mime_type("bag"))
