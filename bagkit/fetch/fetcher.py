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
Resolution of ``fetch.txt`` entries. The transfer itself is delegated to a resolver: any object providing
``fetch(url, output_path, size=None)`` that returns the output path on success and ``None`` on failure.
"""
import os
import datetime
import logging
from bagkit import urlsplit
from bagkit.bagkit_config import read_config, FETCH_CONFIG_TAG, DEFAULT_FETCH_CONFIG
from bagkit.bagkit_errors import MaliciousPathError, BaggingInterruptedError
from bagkit.bagkit_model import DATA_DIR
from bagkit.bagkit_paths import sanitize_path
from bagkit.fetch.transports import find_fetcher

logger = logging.getLogger(__name__)

UNIMPLEMENTED = "Transfer protocol \"%s\" is not supported."


class SchemeResolver(object):
    """Default resolver, dispatching each URL to the transport registered for its scheme."""

    def __init__(self, config=None, **kwargs):
        self.fetch_config = (config or {}).get(FETCH_CONFIG_TAG) or DEFAULT_FETCH_CONFIG
        self.kwargs = kwargs
        self.fetchers = dict()

    def fetch(self, url, output_path, size=None):
        scheme = urlsplit(url).scheme.lower()
        fetcher = self.fetchers.get(scheme)
        if not fetcher:
            fetcher = find_fetcher(scheme, self.fetch_config, **self.kwargs)
            if fetcher:
                self.fetchers[scheme] = fetcher
        if not fetcher:
            logger.warning(UNIMPLEMENTED % scheme)
            return None
        return fetcher.fetch(url, output_path, size=size)

    def cleanup(self):
        for fetcher in self.fetchers.values():
            fetcher.cleanup()
        self.fetchers.clear()


def fetch_output_path(bag, filename):
    path = sanitize_path(filename, bag.path)
    if not path.startswith(DATA_DIR + "/"):
        raise MaliciousPathError(filename, "fetch target is not in the payload directory")
    return os.path.join(bag.path, *path.split("/"))


def fetch_bag_files(bag, resolver=None, force=False, callback=None, config_file=None):
    """
    Retrieve the files listed in the fetch.txt of ``bag`` that are missing locally, or all of them with ``force``.
    Returns ``True`` when every requested transfer succeeded.
    """
    own_resolver = resolver is None
    if own_resolver:
        resolver = SchemeResolver(read_config(config_file))

    success = True
    current = 0
    total = len(bag.fetch_entries)
    start = datetime.datetime.now()
    try:
        for entry in bag.fetch_entries:
            output_path = fetch_output_path(bag, entry.filename)
            local_size = os.path.getsize(output_path) if os.path.isfile(output_path) else None
            missing = local_size is None or (entry.length is not None and local_size != entry.length)

            if not force and not missing:
                logger.debug("Not fetching already present file: %s" % output_path)
            else:
                result_path = resolver.fetch(entry.url, output_path, size=entry.length)
                if not result_path:
                    logger.warning("Unable to fetch %s from %s" % (entry.filename, entry.url))
                    success = False

            current += 1
            if callback and not callback(current, total):
                raise BaggingInterruptedError("Fetch interrupted after %d of %d files" % (current, total))
    finally:
        if own_resolver:
            resolver.cleanup()

    elapsed = datetime.datetime.now() - start
    logger.info("Fetch complete. Elapsed time: %s" % elapsed)
    return success


def fetch_single_file(url, output_path=None, config_file=None, resolver=None):
    own_resolver = resolver is None
    if own_resolver:
        resolver = SchemeResolver(read_config(config_file))
    try:
        return resolver.fetch(url, output_path)
    finally:
        if own_resolver:
            resolver.cleanup()
