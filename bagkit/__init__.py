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
import sys
import shutil
import logging
import mimetypes
from datetime import datetime
from urllib.parse import unquote as urlunquote, urlsplit
from importlib_metadata import distribution, PackageNotFoundError

logger = logging.getLogger(__name__)

__version__ = "1.0.0"

try:
    version = distribution("bagkit").version
    VERSION = version + '' if not getattr(sys, 'frozen', False) else version + '-frozen'
except PackageNotFoundError:  # pragma: no cover
    VERSION = __version__ + '-dev' if not getattr(sys, 'frozen', False) else __version__ + '-frozen'
PROJECT_URL = 'https://github.com/bagkit/bagkit'

BAG_PROFILE_TAG = 'BagIt-Profile-Identifier'
SUPPORTED_BAGIT_SPECS = ["0.97", "1.0"]

DEFAULT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser('~'), '.bagkit')

Kilobyte = 1024
Megabyte = Kilobyte ** 2

_TRUE_VALUES = ('y', 'yes', 't', 'true', 'on', '1')
_FALSE_VALUES = ('n', 'no', 'f', 'false', 'off', '0')


def stob(string):
    value = str(string).lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError("invalid truth value %r" % (string,))


def get_typed_exception(e):
    exc = "".join(("[", type(e).__name__, "] "))
    return "".join((exc, str(e)))


# fetch.txt urls only need (%,\r,\n,\t, ) escaped
def escape_uri(uri, encode_whitespace=True):
    if not uri:
        return uri

    uri = uri.replace("%", "%25").replace("\n", "%0A").replace("\r", "%0D")
    if encode_whitespace:
        uri = uri.replace(" ", "%20").replace("\t", "%09")

    return uri


def human_readable_size(byte_count):
    if byte_count < Kilobyte:
        return "%d bytes" % byte_count
    size = float(byte_count)
    for unit in ("KB", "MB", "GB", "TB"):
        size /= Kilobyte
        if size < Kilobyte or unit == "TB":
            return "%.1f %s" % (size, unit)


def inspect_path(path):
    """
    Classify a command line path argument. Returns ``(is_file, is_dir, is_uri)``; a path that does not exist
    locally but carries a URL scheme (not a Windows drive letter) is treated as a URI.
    """
    abs_path = os.path.abspath(path)
    if os.path.exists(abs_path):
        return os.path.isfile(abs_path), os.path.isdir(abs_path), False
    scheme = urlsplit(path).scheme
    return False, False, len(scheme) > 1


def timestamped_path(path):
    return "%s-%s" % (path, datetime.now().strftime("%Y-%m-%d_%H.%M.%S"))


def safe_move(path):
    """
    Move an existing file or directory aside by renaming it with a timestamp suffix. Returns the path the old
    content now lives at.
    """
    path = os.path.realpath(path)
    if os.path.dirname(path) == path:
        logger.debug("Ignore move of root filesystem path: %s" % path)
        return path
    if not os.path.exists(path):
        return path
    moved_path = timestamped_path(path)
    while os.path.exists(moved_path):
        moved_path += "_"
    logger.info("Target path %s already exists, moving it to %s" % (path, moved_path))
    shutil.move(path, moved_path)
    return moved_path


def bag_parent_dir_from_archive(file_list):
    """
    Return the single top level directory that every member of a bag archive lives under, or None when the
    archive has members in its root or more than one top level directory.
    """
    tops = set()
    for name in file_list or []:
        head, sep, tail = name.replace("\\", "/").lstrip("/").partition("/")
        if not sep:
            # a bare directory entry ("bag") is fine, a root level file is not
            if name.endswith("/") or any(other.startswith(name + "/") for other in file_list):
                tops.add(head)
                continue
            logger.warning("Unable to determine bag parent directory from archive file list. "
                           "Found file %s in the archive root" % name)
            return None
        tops.add(head)
    if len(tops) != 1:
        logger.warning("Unable to determine bag parent directory from archive file list. "
                       "Expecting a single bag parent dir but got: %s" % sorted(tops))
        return None
    return tops.pop()


ARCHIVE_MIME_TYPES = {
    ".tgz": "application/gzip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".zip": "application/zip",
}


def guess_mime_type(file_path):
    ext = os.path.splitext(file_path)[1].lower()
    if ext in ARCHIVE_MIME_TYPES:
        return ARCHIVE_MIME_TYPES[ext]
    mtype, encoding = mimetypes.guess_type(file_path, strict=False)
    return mtype or encoding or "application/octet-stream"
