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
Every path read from a manifest, tag file, fetch.txt or a directory listing goes through ``sanitize_path`` before
it is joined with a filesystem root. The value returned is the only form of the path used afterwards.
"""
import os
import re
import posixpath
import logging
from bagkit.bagkit_errors import MaliciousPathError

logger = logging.getLogger(__name__)

_WINDOWS_ABSOLUTE = re.compile(r"^([A-Za-z]:|\\\\|//)")


def encode_filename(s):
    s = s.replace("%", "%25")
    s = s.replace("\r", "%0D")
    s = s.replace("\n", "%0A")
    return s


def decode_filename(s):
    s = re.sub(r"%0D", "\r", s, flags=re.IGNORECASE)
    s = re.sub(r"%0A", "\n", s, flags=re.IGNORECASE)
    s = s.replace("%25", "%")
    return s


def to_bag_path(path):
    if os.path.sep != '/':
        path = path.replace(os.path.sep, '/')
    return path


def is_within(path, root):
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # paths on different drives
        return False


def sanitize_path(raw_path, bag_root):
    if raw_path is None or not raw_path.strip():
        raise MaliciousPathError(raw_path, "empty path")

    if raw_path.startswith("/") or _WINDOWS_ABSOLUTE.match(raw_path) or os.path.isabs(raw_path):
        raise MaliciousPathError(raw_path, "absolute paths are not allowed")

    if raw_path.startswith("~"):
        raise MaliciousPathError(raw_path, "home directory expansion is not allowed")

    components = raw_path.split("/")
    if any(not c.strip() for c in components):
        raise MaliciousPathError(raw_path, "blank path component")

    normalized = posixpath.normpath(raw_path)
    if normalized == "." or ".." in normalized.split("/"):
        raise MaliciousPathError(raw_path, "path escapes the bag directory")

    full_path = os.path.join(bag_root, *normalized.split("/"))
    if not is_within(full_path, bag_root):
        raise MaliciousPathError(raw_path, "path resolves outside of the bag directory")

    return normalized


def _walk(bag_dir, top):
    for dirpath, dirnames, filenames in os.walk(os.path.join(bag_dir, top) if top else bag_dir):
        dirnames.sort()
        if not top and dirpath == bag_dir:
            dirnames[:] = [d for d in dirnames if d != "data"]
        for name in list(dirnames):
            full_path = os.path.join(dirpath, name)
            if os.path.islink(full_path):
                # symlinked directories are never descended into, only checked for escapes
                yield to_bag_path(os.path.relpath(full_path, bag_dir)), full_path
        for name in sorted(filenames):
            full_path = os.path.join(dirpath, name)
            yield to_bag_path(os.path.relpath(full_path, bag_dir)), full_path


def walk_payload(bag_dir):
    """Yield ``(bag relative path, full path)`` for every entry below ``data/``."""
    return _walk(bag_dir, "data")


def find_tag_files(bag_dir):
    """Yield every file outside of ``data/`` except the tag manifests in the bag root."""
    for rel_path, full_path in _walk(bag_dir, None):
        if "/" not in rel_path and rel_path.startswith("tagmanifest-"):
            continue
        yield rel_path, full_path
