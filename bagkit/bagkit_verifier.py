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
"""
Checks a ``Bag`` model against the live contents of its directory.

Every defect becomes a ``Finding`` and all findings are collected in one pass, so a single run reports every broken
file. With ``fail_fast`` the first finding is raised as a ``BagValidationError`` instead. Verification is read-only.
"""
import os
import logging
from collections import OrderedDict
from bagkit.bagkit_digest import resolve, hash_files
from bagkit.bagkit_errors import BagValidationError, InvalidBagitFileFormatError, MaliciousPathError, \
    Finding, ValidationResult, MISSING_BAGIT_FILE, MISSING_PAYLOAD_DIRECTORY, MISSING_PAYLOAD_MANIFEST, \
    MISSING_TAG_MANIFEST, MISSING_FILE, FILE_NOT_IN_PAYLOAD_DIRECTORY, FILE_NOT_IN_TAG_MANIFEST, CORRUPT_CHECKSUM, \
    MALICIOUS_PATH, PAYLOAD_OXUM_MISMATCH
from bagkit.bagkit_model import BAGIT_TXT, BAG_INFO_TXT, manifest_filename
from bagkit.bagkit_paths import sanitize_path, walk_payload, find_tag_files

logger = logging.getLogger(__name__)


class BagVerifier(object):

    def __init__(self,
                 skip_payload=False,
                 completeness_only=False,
                 fast=False,
                 fail_fast=False,
                 processes=1,
                 callback=None,
                 registry=None):
        self.skip_payload = skip_payload
        self.completeness_only = completeness_only
        self.fast = fast
        self.fail_fast = fail_fast
        self.processes = processes
        self.callback = callback
        self.registry = registry

    def verify(self, bag):
        logger.info("Verifying bag: %s" % bag.path)
        result = ValidationResult()

        has_payload_dir = self._validate_structure(bag, result)
        self._validate_tag_coverage(bag, result)
        self._validate_entries(bag, bag.tagmanifests, result)

        if has_payload_dir and not self.skip_payload:
            if self.fast:
                self._validate_oxum(bag, result)
            else:
                on_disk = self._validate_completeness(bag, result)
                if not self.completeness_only:
                    self._validate_entries(bag, bag.manifests, result, on_disk)

        if result.is_valid:
            logger.info("Bag %s is valid" % bag.path)
        else:
            logger.warning("Bag %s failed verification with %d finding(s)" % (bag.path, len(result.findings)))
        return result

    def _report(self, result, finding):
        logger.warning(str(finding))
        result.add(finding)
        if self.fail_fast:
            raise BagValidationError("Bag validation failed", [finding])

    def _validate_structure(self, bag, result):
        if not os.path.isfile(os.path.join(bag.path, BAGIT_TXT)):
            self._report(result, Finding(MISSING_BAGIT_FILE, path=BAGIT_TXT))

        has_payload_dir = os.path.isdir(bag.data_dir)
        if not has_payload_dir:
            self._report(result, Finding(MISSING_PAYLOAD_DIRECTORY, path=bag.data_dir))

        if not bag.manifests:
            self._report(result, Finding(MISSING_PAYLOAD_MANIFEST, path=bag.path))
        for alg in sorted(set(bag.manifests) - set(bag.tagmanifests)):
            self._report(result, Finding(MISSING_TAG_MANIFEST, path=manifest_filename(alg, tag=True), algorithm=alg))

        return has_payload_dir

    def _validate_tag_coverage(self, bag, result):
        on_disk = list()
        for rel_path, full_path in find_tag_files(bag.path):
            try:
                rel_path = sanitize_path(rel_path, bag.path)
            except MaliciousPathError:
                self._report(result, Finding(MALICIOUS_PATH, path=rel_path))
                continue
            if os.path.isfile(full_path):
                on_disk.append(rel_path)

        for alg, tagmanifest in sorted(bag.tagmanifests.items()):
            for path in on_disk:
                if path not in tagmanifest:
                    self._report(result, Finding(FILE_NOT_IN_TAG_MANIFEST, path=path, algorithm=alg))

    def _payload_on_disk(self, bag, result):
        on_disk = OrderedDict()
        for rel_path, full_path in walk_payload(bag.path):
            try:
                rel_path = sanitize_path(rel_path, bag.path)
            except MaliciousPathError:
                self._report(result, Finding(MALICIOUS_PATH, path=rel_path))
                continue
            if os.path.isfile(full_path):
                on_disk[rel_path] = full_path
        return on_disk

    def _validate_completeness(self, bag, result):
        on_disk = self._payload_on_disk(bag, result)
        in_manifests = bag.payload_entries()
        to_be_fetched = set(bag.files_to_be_fetched())

        for path in sorted(set(in_manifests) - set(on_disk)):
            if path in to_be_fetched:
                logger.debug("Skipping %s, it has not been fetched yet" % path)
                continue
            self._report(result, Finding(MISSING_FILE, path=path))
        for path in sorted(set(on_disk) - set(in_manifests)):
            self._report(result, Finding(FILE_NOT_IN_PAYLOAD_DIRECTORY, path=path))

        return on_disk

    def _validate_entries(self, bag, manifests, result, on_disk=None):
        entries = OrderedDict()
        for manifest in manifests.values():
            for path, digest in manifest.sorted_entries():
                entries.setdefault(path, OrderedDict())[manifest.algorithm] = digest

        jobs = list()
        for path, hashes in entries.items():
            if on_disk is not None:
                # payload files missing from disk were already reported as incomplete
                if path not in on_disk:
                    continue
                full_path = on_disk[path]
            else:
                full_path = os.path.join(bag.path, *path.split("/"))
                if not os.path.isfile(full_path):
                    self._report(result, Finding(MISSING_FILE, path=path))
                    continue
            algorithms = [resolve(alg, self.registry) for alg in hashes]
            jobs.append((full_path, (path, hashes), algorithms))

        findings = list()
        for (path, hashes), digests, byte_count, error in hash_files(jobs, self.processes, self.callback):
            if error:
                logger.error("Unable to calculate file hashes for %s" % path)
                finding = Finding(CORRUPT_CHECKSUM, path=path,
                                  message="%s could not be read: %s" % (path, error))
                findings.append(finding)
                if self.fail_fast:
                    self._report(result, finding)
                continue
            for alg, computed in sorted(digests.items()):
                stored = hashes[alg].lower()
                if stored != computed:
                    finding = Finding(CORRUPT_CHECKSUM, path=path, algorithm=alg, expected=stored, found=computed)
                    findings.append(finding)
                    if self.fail_fast:
                        self._report(result, finding)

        for finding in sorted(findings, key=lambda f: (f.path, f.algorithm or "")):
            self._report(result, finding)

    def _validate_oxum(self, bag, result):
        if not bag.has_oxum():
            self._report(result, Finding(PAYLOAD_OXUM_MISMATCH, path=BAG_INFO_TXT,
                                         message="Fast validation requires bag-info.txt to include Payload-Oxum"))
            return
        try:
            oxum = bag.payload_oxum()
        except InvalidBagitFileFormatError as e:
            self._report(result, Finding(PAYLOAD_OXUM_MISMATCH, path=BAG_INFO_TXT, message=str(e)))
            return

        total_bytes = total_files = 0
        on_disk = self._payload_on_disk(bag, result)
        for full_path in on_disk.values():
            total_bytes += os.path.getsize(full_path)
            total_files += 1
        for entry in bag.fetch_entries:
            if entry.filename not in on_disk and entry.length is not None:
                total_bytes += entry.length
                total_files += 1

        if (total_bytes, total_files) != oxum:
            self._report(result, Finding(PAYLOAD_OXUM_MISMATCH, path=BAG_INFO_TXT,
                                         expected="%d.%d" % oxum,
                                         found="%d.%d" % (total_bytes, total_files)))


def verify_bag(bag, **kwargs):
    return BagVerifier(**kwargs).verify(bag)


def is_valid(bag, **kwargs):
    return verify_bag(bag, **kwargs).is_valid
