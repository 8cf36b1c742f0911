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
import io
import os
import re
import json
import codecs
import shutil
import logging
from datetime import date
from collections import OrderedDict
from bagkit import VERSION, PROJECT_URL, SUPPORTED_BAGIT_SPECS, escape_uri, human_readable_size
from bagkit.bagkit_config import DEFAULT_BAG_INFO_KEYS, DEFAULT_BAG_SPEC_VERSION
from bagkit.bagkit_digest import resolve, resolve_all, hash_files
from bagkit.bagkit_errors import BagError, MissingPayloadDirectoryError, UnparsableVersionError
from bagkit.bagkit_model import Bag, BagInfo, Manifest, FetchEntry, BAGIT_TXT, FETCH_TXT, DATA_DIR, \
    MANIFEST_FILENAME_REGEX, manifest_filename, read_tag_text
from bagkit.bagkit_paths import sanitize_path, encode_filename, walk_payload, find_tag_files

logger = logging.getLogger(__name__)

VERSION_REGEX = re.compile(r"^\d+\.\d+$")
RESERVED_TAG_FILES = (BAGIT_TXT, FETCH_TXT)


class BagWriter(object):
    """
    Writes the tag files and manifests of a new bag around a payload in ``<bag_dir>/data``.

    Tag files are registered with ``add_tags`` and remote payload files with ``add_remote_file`` before calling
    ``write``. Nothing is written to disk until then.
    """

    def __init__(self,
                 bag_dir,
                 algorithms,
                 version=DEFAULT_BAG_SPEC_VERSION,
                 encoding="UTF-8",
                 processes=1,
                 registry=None,
                 bag_info_keys=DEFAULT_BAG_INFO_KEYS,
                 idempotent=False):
        if not algorithms:
            raise ValueError("At least one checksum algorithm is required to write a bag")
        if not VERSION_REGEX.match(str(version)):
            raise UnparsableVersionError("Bag version numbers must be MAJOR.MINOR numbers, not %s" % version)
        if version not in SUPPORTED_BAGIT_SPECS:
            raise BagError("Unsupported BagIt specification version: %s" % version)
        try:
            codecs.lookup(encoding)
        except LookupError:
            raise BagError("Unsupported tag file character encoding: %s" % encoding)

        self.bag_dir = os.path.abspath(bag_dir)
        self.registry = registry
        self.algorithms = resolve_all(algorithms, registry)
        self.version = version
        self.encoding = encoding
        self.processes = processes
        self.keys = bag_info_keys
        self.idempotent = idempotent
        self.tags = OrderedDict()
        self.remote_entries = OrderedDict()

    @property
    def algorithm_names(self):
        return [a.name for a in self.algorithms]

    def add_tags(self, tag_file_name, fields):
        tag_file_name = sanitize_path(tag_file_name, self.bag_dir)
        if tag_file_name in RESERVED_TAG_FILES or MANIFEST_FILENAME_REGEX.match(tag_file_name) or \
                tag_file_name.split("/")[0] == DATA_DIR:
            raise BagError("Tag file name %s is reserved or inside the payload directory" % tag_file_name)
        self.tags.setdefault(tag_file_name, BagInfo()).update(fields)
        return self.tags[tag_file_name]

    def add_remote_file(self, filename, url, length, checksums):
        filename = sanitize_path(filename, self.bag_dir)
        if filename.split("/")[0] != DATA_DIR:
            raise BagError("Remote file %s must be located in the payload directory" % filename)
        try:
            length = int(length)
        except (TypeError, ValueError):
            raise ValueError("A specified remote file [%s] contains a non-integer file size: \"%s\"" %
                             (filename, length))
        digests = dict()
        for name, digest in checksums.items():
            digests[resolve(name, self.registry).name] = digest.lower()
        missing = [a for a in self.algorithm_names if a not in digests]
        if missing:
            raise BagError("Remote file %s is missing %s checksum(s)" % (filename, ", ".join(missing)))
        self.remote_entries[filename] = {"url": url, "length": length, "checksums": digests}

    def write(self, payload_dir=None, callback=None):
        bag = Bag(self.bag_dir, self.version, self.encoding)
        data_dir = bag.data_dir

        if payload_dir is not None:
            self._copy_payload(payload_dir, data_dir)
        if not os.path.isdir(data_dir):
            raise MissingPayloadDirectoryError("Payload directory %s does not exist" % data_dir)
        self._remove_stale_manifests()

        logger.info("Creating bag in %s using checksum algorithms: %s" %
                    (self.bag_dir, ", ".join(self.algorithm_names)))

        for name in self.algorithm_names:
            bag.add_manifest(Manifest(name))
        total_bytes, total_files = self._make_manifests(bag, callback)
        self._write_manifests(bag)

        logger.info("Creating %s" % BAGIT_TXT)
        self._write_text(BAGIT_TXT, "BagIt-Version: %s\nTag-File-Character-Encoding: %s\n" %
                         (self.version, self.encoding))

        bag.info = self._make_bag_info(total_bytes, total_files)
        bag.has_info_file = True
        self._write_tag_file(self.keys["bag_info_file"], bag.info)
        for tag_file_name, fields in self.tags.items():
            if tag_file_name == self.keys["bag_info_file"]:
                continue
            self._write_tag_file(tag_file_name, fields)

        self._write_fetch_file(bag)

        # every other tag file must be final before the tag manifests are computed
        self._make_tagmanifests(bag)

        logger.info("Created bag: %s" % self.bag_dir)
        return bag

    def _remove_stale_manifests(self):
        keep = set()
        for name in self.algorithm_names:
            keep.update([manifest_filename(name), manifest_filename(name, tag=True)])
        for name in sorted(os.listdir(self.bag_dir)):
            if name in keep or not MANIFEST_FILENAME_REGEX.match(name):
                continue
            path = os.path.join(self.bag_dir, name)
            if os.path.isfile(path):
                logger.info("Removing stale manifest %s" % name)
                os.remove(path)

    def _copy_payload(self, payload_dir, data_dir):
        if not os.path.isdir(payload_dir):
            raise MissingPayloadDirectoryError("Payload directory %s does not exist" % payload_dir)
        if os.path.isdir(data_dir) and os.listdir(data_dir):
            raise BagError("Payload directory %s already contains files" % data_dir)
        logger.info("Copying payload from %s to %s" % (payload_dir, data_dir))
        shutil.copytree(payload_dir, data_dir, dirs_exist_ok=True)

    def _payload_jobs(self):
        for rel_path, full_path in walk_payload(self.bag_dir):
            rel_path = sanitize_path(rel_path, self.bag_dir)
            if os.path.islink(full_path) and os.path.isdir(full_path):
                logger.warning("Skipping symbolic link to directory: %s" % rel_path)
                continue
            if not os.path.isfile(full_path):
                logger.warning("Skipping non-regular file: %s" % rel_path)
                continue
            if rel_path in self.remote_entries:
                raise BagError("A remote file entry [%s] with metadata %s already exists in the bag payload "
                               "directory" % (rel_path, json.dumps(self.remote_entries[rel_path])))
            yield full_path, rel_path, self.algorithms

    def _make_manifests(self, bag, callback=None):
        logger.info("Using %d processes to generate manifests: %s" %
                    (self.processes or os.cpu_count(), ", ".join(self.algorithm_names)))
        total_bytes = total_files = 0
        for rel_path, digests, byte_count, error in hash_files(self._payload_jobs(), self.processes, callback):
            if error:
                logger.error("Unable to calculate file hashes for %s" % rel_path)
                raise error
            for alg, digest in digests.items():
                bag.manifests[alg].add(rel_path, digest)
            total_bytes += byte_count
            total_files += 1

        for filename, entry in self.remote_entries.items():
            for alg, digest in entry["checksums"].items():
                if alg in bag.manifests:
                    bag.manifests[alg].add(filename, digest)
            bag.fetch_entries.append(FetchEntry(entry["url"], entry["length"], filename))
            total_bytes += entry["length"]
            total_files += 1

        return total_bytes, total_files

    def _write_manifests(self, bag):
        for manifest in bag.manifests.values():
            logger.info("Writing %s" % manifest.filename)
            self._write_text(manifest.filename, "".join(
                "%s  %s\n" % (digest, encode_filename(path)) for path, digest in manifest.sorted_entries()))

    def _make_bag_info(self, total_bytes, total_files):
        info = BagInfo(self.tags.get(self.keys["bag_info_file"], BagInfo()).items())
        if not self.idempotent:
            info.setdefault(self.keys["bagging_date"], date.strftime(date.today(), "%Y-%m-%d"))
        info.setdefault(self.keys["bag_size"], human_readable_size(total_bytes))
        info.setdefault(self.keys["software_agent"], "bagkit version: %s <%s>" % (VERSION, PROJECT_URL))
        info.set(self.keys["payload_oxum"], "%s.%s" % (total_bytes, total_files))
        return info

    def _write_tag_file(self, tag_file_name, fields):
        logger.info("Creating %s" % tag_file_name)
        lines = list()
        for key, value in fields.items():
            if isinstance(value, dict):
                logger.warning("Nested dictionary content not supported in tag file: [%s]. "
                               "Skipping element \"%s\" with value %s." % (tag_file_name, key, json.dumps(value)))
                continue
            # strip CR, LF and CRLF so they don't mess up the tag file
            value = re.sub(r'\n|\r|(\r\n)', '', str(value))
            lines.append("%s: %s\n" % (key, value))
        self._write_text(tag_file_name, "".join(lines))

    def _write_fetch_file(self, bag):
        fetch_file_path = os.path.join(self.bag_dir, FETCH_TXT)
        if not bag.fetch_entries:
            if os.path.isfile(fetch_file_path):
                os.remove(fetch_file_path)
            return
        logger.info("Writing %s" % FETCH_TXT)
        self._write_text(FETCH_TXT, "".join(
            "%s\t%s\t%s\n" % (escape_uri(e.url), e.length, encode_filename(e.filename))
            for e in sorted(bag.fetch_entries, key=lambda e: e.filename)))
        bag.has_fetch_file = True

    def _make_tagmanifests(self, bag):
        jobs = list()
        for rel_path, full_path in find_tag_files(self.bag_dir):
            rel_path = sanitize_path(rel_path, self.bag_dir)
            if not os.path.isfile(full_path):
                continue
            jobs.append((full_path, rel_path, self.algorithms))
            if not bag.has_tag_file(rel_path) and rel_path != self.keys["bag_info_file"]:
                bag.tag_files[rel_path] = read_tag_text(full_path, self.encoding)

        tagmanifests = OrderedDict((name, Manifest(name, tag=True)) for name in self.algorithm_names)
        for rel_path, digests, byte_count, error in hash_files(jobs):
            if error:
                raise error
            for alg, digest in digests.items():
                tagmanifests[alg].add(rel_path, digest)

        for manifest in tagmanifests.values():
            logger.info("Writing %s" % manifest.filename)
            self._write_text(manifest.filename, "".join(
                "%s  %s\n" % (digest, encode_filename(path)) for path, digest in manifest.sorted_entries()))
            bag.add_manifest(manifest)

    def _write_text(self, rel_path, text):
        path = os.path.join(self.bag_dir, *rel_path.split("/"))
        parent = os.path.dirname(path)
        if not os.path.isdir(parent):
            os.makedirs(parent)
        with io.open(path, "w", encoding=self.encoding, newline="\n") as f:
            f.write(text)


def write_bag(bag_dir, algorithms, payload_dir=None, tags=None, **kwargs):
    """
    Convenience wrapper around ``BagWriter``. ``tags`` maps tag file names (``bag-info.txt`` included) to their
    fields.
    """
    callback = kwargs.pop("callback", None)
    writer = BagWriter(bag_dir, algorithms, **kwargs)
    for tag_file_name, fields in (tags or {}).items():
        writer.add_tags(tag_file_name, fields)
    return writer.write(payload_dir=payload_dir, callback=callback)
