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
Parses an existing bag directory into a ``Bag`` model. Reading never computes a checksum; every path taken from
a manifest, fetch.txt or a directory listing is sanitized before it is used.
"""
import io
import os
import re
import codecs
import logging
from bagkit.bagkit_digest import resolve
from bagkit.bagkit_errors import BagError, InvalidBagitFileFormatError, MissingBagitFileError, \
    UnparsableVersionError
from bagkit.bagkit_model import Bag, Manifest, FetchEntry, parse_tag_file, read_tag_text, BAGIT_TXT, \
    BAG_INFO_TXT, FETCH_TXT, MANIFEST_FILENAME_REGEX
from bagkit.bagkit_paths import sanitize_path, decode_filename, find_tag_files

logger = logging.getLogger(__name__)

VERSION_REGEX = re.compile(r"^\d+\.\d+$")
DIGEST_REGEX = re.compile(r"^[0-9A-Fa-f]+$")
# two spaces is the separator bagkit writes, " *" marks binary mode in checksum utility output
MANIFEST_LINE_REGEX = re.compile(r"^(?P<digest>\S+)(?:  | \*|[ \t]+)(?P<path>.+)$")
FETCH_LINE_REGEX = re.compile(r"^(?P<url>\S+)[ \t]+(?P<length>\S+)(?:\t| +)(?P<path>.+)$")
UTF8_BOM = codecs.BOM_UTF8.decode("utf-8")


def read_bag(bag_dir, registry=None):
    bag_dir = os.path.abspath(bag_dir)
    if not os.path.isdir(bag_dir):
        raise BagError("Bag directory %s does not exist" % bag_dir)

    logger.debug("Reading bag: %s" % bag_dir)
    version, encoding = read_bagit_txt(bag_dir)
    bag = Bag(bag_dir, version, encoding)

    for name in sorted(os.listdir(bag_dir)):
        match = MANIFEST_FILENAME_REGEX.match(name)
        if not match or not os.path.isfile(os.path.join(bag_dir, name)):
            continue
        algorithm = resolve(match.group("alg"), registry)
        manifest = Manifest(algorithm.name, tag=bool(match.group("tag")), filename=name)
        existing = (bag.tagmanifests if manifest.tag else bag.manifests).get(algorithm.name)
        if existing is not None:
            raise InvalidBagitFileFormatError("Both %s and %s use the %s algorithm" %
                                              (existing.filename, name, algorithm.name))
        load_manifest(manifest, os.path.join(bag_dir, name), bag_dir, encoding)
        bag.add_manifest(manifest)

    bag_info_path = os.path.join(bag_dir, BAG_INFO_TXT)
    if os.path.isfile(bag_info_path):
        bag.info = parse_tag_file(read_text(bag_info_path, encoding), BAG_INFO_TXT)
        bag.has_info_file = True

    fetch_path = os.path.join(bag_dir, FETCH_TXT)
    if os.path.isfile(fetch_path):
        bag.fetch_entries = parse_fetch_file(read_text(fetch_path, encoding), bag_dir)
        bag.has_fetch_file = True

    for rel_path, full_path in find_tag_files(bag_dir):
        rel_path = sanitize_path(rel_path, bag_dir)
        if os.path.isfile(full_path) and not bag.has_tag_file(rel_path):
            bag.tag_files[rel_path] = read_tag_text(full_path, encoding)

    return bag


def read_text(path, encoding):
    try:
        with io.open(path, "r", encoding=encoding) as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise InvalidBagitFileFormatError("%s is not valid %s: %s" % (os.path.basename(path), encoding, e))


def read_bagit_txt(bag_dir):
    path = os.path.join(bag_dir, BAGIT_TXT)
    if not os.path.isfile(path):
        raise MissingBagitFileError("Expected %s does not exist: %s" % (BAGIT_TXT, path))

    text = read_text(path, "utf-8")
    if text.startswith(UTF8_BOM):
        raise InvalidBagitFileFormatError("%s must not contain a byte-order mark" % BAGIT_TXT)
    tags = parse_tag_file(text, BAGIT_TXT)

    version = tags.get("BagIt-Version")
    if version is None:
        raise InvalidBagitFileFormatError("Missing required tag in %s: BagIt-Version" % BAGIT_TXT)
    if not VERSION_REGEX.match(version):
        raise UnparsableVersionError("Bag version numbers must be MAJOR.MINOR numbers, not %s" % version)

    encoding = tags.get("Tag-File-Character-Encoding")
    if encoding is None:
        raise InvalidBagitFileFormatError("Missing required tag in %s: Tag-File-Character-Encoding" % BAGIT_TXT)
    try:
        codecs.lookup(encoding)
    except LookupError:
        raise InvalidBagitFileFormatError("Unsupported tag file character encoding: %s" % encoding)

    return version, encoding


def _lines(text):
    # tag files are read with universal newlines, so "\n" is the only line terminator left
    for num, line in enumerate(text.split("\n"), 1):
        if line.strip():
            yield num, line.lstrip()


def load_manifest(manifest, path, bag_dir, encoding="utf-8"):
    for num, line in _lines(read_text(path, encoding)):
        match = MANIFEST_LINE_REGEX.match(line)
        if not match:
            raise InvalidBagitFileFormatError("%s: line %d is not a \"checksum path\" pair: %r" %
                                              (manifest.filename, num, line))
        digest = match.group("digest")
        if not DIGEST_REGEX.match(digest):
            raise InvalidBagitFileFormatError("%s: line %d has a malformed checksum: %s" %
                                              (manifest.filename, num, digest))
        raw_path = decode_filename(match.group("path"))
        manifest.add(sanitize_path(raw_path, bag_dir), digest)
    return manifest


def parse_fetch_file(text, bag_dir):
    entries = list()
    for num, line in _lines(text):
        match = FETCH_LINE_REGEX.match(line)
        if not match:
            raise InvalidBagitFileFormatError("%s: line %d is not a \"url length path\" triple: %r" %
                                              (FETCH_TXT, num, line))
        url, length, raw_path = match.group("url", "length", "path")
        if length == "-":
            length = None
        else:
            try:
                length = int(length)
            except ValueError:
                raise InvalidBagitFileFormatError("%s: line %d has a malformed length: %s" %
                                                  (FETCH_TXT, num, length))
        entries.append(FetchEntry(url, length, sanitize_path(decode_filename(raw_path), bag_dir)))
    return entries
