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
In-memory representation of a bag: its declaration, bag-info fields, payload and tag manifests, other tag files
and fetch entries. The writer builds one of these before touching the disk; the reader reconstructs one from disk.
"""
import io
import os
import re
from collections import OrderedDict, namedtuple
from bagkit.bagkit_errors import InvalidBagitFileFormatError

BAGIT_TXT = "bagit.txt"
BAG_INFO_TXT = "bag-info.txt"
FETCH_TXT = "fetch.txt"
DATA_DIR = "data"
MANIFEST_PREFIX = "manifest-"
TAGMANIFEST_PREFIX = "tagmanifest-"
MANIFEST_FILENAME_REGEX = re.compile(r"^(?P<tag>tag)?manifest-(?P<alg>.+)\.txt$")

FetchEntry = namedtuple("FetchEntry", ["url", "length", "filename"])


def manifest_filename(algorithm, tag=False):
    return "%s%s.txt" % (TAGMANIFEST_PREFIX if tag else MANIFEST_PREFIX, algorithm)


def parse_version(version):
    return tuple(int(i) for i in version.split(".", 1))


class Manifest(object):

    def __init__(self, algorithm, tag=False, filename=None):
        self.algorithm = algorithm
        self.tag = tag
        self.filename = filename or manifest_filename(algorithm, tag)
        self.entries = OrderedDict()

    def add(self, path, digest):
        if path in self.entries:
            raise InvalidBagitFileFormatError(
                "Duplicate entry for %s in %s" % (path, self.filename))
        self.entries[path] = digest.lower()

    def __contains__(self, path):
        return path in self.entries

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries.items())

    def get(self, path):
        return self.entries.get(path)

    def sorted_entries(self):
        return sorted(self.entries.items(), key=lambda t: t[0])

    def __repr__(self):
        return "<Manifest %s (%d entries)>" % (self.filename, len(self.entries))


class BagInfo(object):
    """
    Ordered (key, value) pairs of a key/value tag file. Lookup is case-insensitive, keys keep the case they were
    added with and a key may carry several values.
    """

    def __init__(self, items=None):
        self._items = list()
        if items:
            self.update(items)

    @staticmethod
    def _norm(key):
        return key.lower()

    def add(self, key, value):
        if isinstance(value, (list, tuple)):
            for v in value:
                self._items.append((key, v))
        else:
            self._items.append((key, value))

    def update(self, items):
        if hasattr(items, "items"):
            items = items.items()
        for key, value in items:
            self.add(key, value)

    def set(self, key, value):
        norm = self._norm(key)
        values = list(value) if isinstance(value, (list, tuple)) else [value]
        new_items = list()
        inserted = False
        for k, v in self._items:
            if self._norm(k) == norm:
                if not inserted:
                    new_items.extend((key, nv) for nv in values)
                    inserted = True
                continue
            new_items.append((k, v))
        if not inserted:
            new_items.extend((key, nv) for nv in values)
        self._items = new_items

    def setdefault(self, key, value):
        if key not in self:
            self.add(key, value)
        return self.get(key)

    def remove(self, key):
        norm = self._norm(key)
        self._items = [(k, v) for k, v in self._items if self._norm(k) != norm]

    def get(self, key, default=None):
        norm = self._norm(key)
        for k, v in self._items:
            if self._norm(k) == norm:
                return v
        return default

    def get_all(self, key):
        norm = self._norm(key)
        return [v for k, v in self._items if self._norm(k) == norm]

    def keys(self):
        seen = set()
        keys = list()
        for k, _ in self._items:
            if self._norm(k) not in seen:
                seen.add(self._norm(k))
                keys.append(k)
        return keys

    def items(self):
        return list(self._items)

    def __contains__(self, key):
        norm = self._norm(key)
        return any(self._norm(k) == norm for k, _ in self._items)

    def __getitem__(self, key):
        if key not in self:
            raise KeyError(key)
        return self.get(key)

    def __setitem__(self, key, value):
        self.set(key, value)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def __eq__(self, other):
        if isinstance(other, BagInfo):
            return self._items == other._items
        return NotImplemented

    def __repr__(self):
        return "BagInfo(%r)" % self._items


def parse_tag_file(text, filename="tag file", strict=True):
    """
    Parse key/value tag file content into a ``BagInfo``. Lines starting with whitespace continue the value of
    the previous line. With ``strict`` unset, lines that are not key/value pairs are skipped.
    """
    info = BagInfo()
    key = value = None
    for num, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        if line[0] in (" ", "\t") and key is not None:
            value = " ".join((value, line.strip()))
            continue
        if key is not None:
            info.add(key, value)
            key = value = None
        if ":" not in line:
            if strict:
                raise InvalidBagitFileFormatError(
                    "%s: line %d is not a \"key: value\" pair: %r" % (filename, num, line))
            continue
        k, v = line.split(":", 1)
        key, value = k.strip(), v.strip()
    if key is not None:
        info.add(key, value)
    return info


class Bag(object):

    def __init__(self, path, version="0.97", encoding="utf-8"):
        self.path = os.path.abspath(path) if path else None
        self.version = version
        self.encoding = encoding
        self.info = BagInfo()
        self.manifests = OrderedDict()
        self.tagmanifests = OrderedDict()
        self.tag_files = OrderedDict()
        self.fetch_entries = list()
        self.has_info_file = False
        self.has_fetch_file = False

    def __str__(self):
        return self.path or "<unsaved bag>"

    def __repr__(self):
        return "<Bag %s (BagIt %s)>" % (self.path, self.version)

    @property
    def version_info(self):
        return parse_version(self.version)

    @property
    def algorithms(self):
        return list(self.manifests.keys())

    @property
    def tag_algorithms(self):
        return list(self.tagmanifests.keys())

    @property
    def data_dir(self):
        return os.path.join(self.path, DATA_DIR)

    def add_manifest(self, manifest):
        target = self.tagmanifests if manifest.tag else self.manifests
        target[manifest.algorithm] = manifest
        return manifest

    def _entries(self, manifests):
        entries = OrderedDict()
        for manifest in manifests.values():
            for path, digest in manifest.sorted_entries():
                entries.setdefault(path, OrderedDict())[manifest.algorithm] = digest
        return entries

    def payload_entries(self):
        return self._entries(self.manifests)

    def tag_entries(self):
        return self._entries(self.tagmanifests)

    def files_to_be_fetched(self):
        return [entry.filename for entry in self.fetch_entries]

    def has_oxum(self):
        return "Payload-Oxum" in self.info

    def payload_oxum(self, key="Payload-Oxum"):
        oxum = self.info.get(key)
        if oxum is None:
            return None
        try:
            byte_count, file_count = oxum.split(".", 1)
            return int(byte_count), int(file_count)
        except ValueError:
            raise InvalidBagitFileFormatError("Malformed Payload-Oxum value: %s" % oxum)

    def tag_fields(self, name):
        if name == BAG_INFO_TXT:
            return self.info if self.has_info_file else None
        text = self.tag_files.get(name)
        if text is None:
            return None
        return parse_tag_file(text, name, strict=False)

    def has_tag_file(self, name):
        if name == BAGIT_TXT:
            return True
        if name == BAG_INFO_TXT:
            return self.has_info_file
        if name == FETCH_TXT:
            return self.has_fetch_file
        for manifest in list(self.manifests.values()) + list(self.tagmanifests.values()):
            if manifest.filename == name:
                return True
        return name in self.tag_files


def read_tag_text(path, encoding="utf-8"):
    with io.open(path, "r", encoding=encoding, errors="replace", newline="") as f:
        return f.read()
