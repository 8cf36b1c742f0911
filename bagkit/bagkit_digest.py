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
Registry of the checksum algorithms a bag manifest may use.

Each algorithm is described by a ``DigestAlgorithm`` descriptor; new algorithms are made available by registering
a descriptor, which yields a new registry and leaves the original untouched.
"""
import io
import re
import hashlib
import logging
from collections import namedtuple
from functools import partial
from multiprocessing.pool import ThreadPool
from bagkit.bagkit_errors import UnsupportedAlgorithmError, BaggingInterruptedError

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 512 * io.DEFAULT_BUFFER_SIZE

DigestAlgorithm = namedtuple("DigestAlgorithm", ["name", "aliases", "digest_size", "factory"])


def normalize_algorithm_name(name):
    return re.sub(r"[^0-9a-z]", "", str(name).lower())


def make_algorithm(name, hashlib_name=None, aliases=()):
    factory = partial(hashlib.new, hashlib_name or name)
    return DigestAlgorithm(name=name,
                           aliases=frozenset(aliases),
                           digest_size=factory().digest_size,
                           factory=factory)


DEFAULT_ALGORITHMS = (
    make_algorithm("md5"),
    make_algorithm("sha1", aliases=("sha",)),
    make_algorithm("sha224"),
    make_algorithm("sha256"),
    make_algorithm("sha384"),
    make_algorithm("sha512"),
    make_algorithm("sha3-256", "sha3_256"),
    make_algorithm("sha3-512", "sha3_512"),
)


class DigestRegistry(object):

    def __init__(self, algorithms=DEFAULT_ALGORITHMS):
        lookup = dict()
        for algorithm in algorithms:
            for alias in {algorithm.name} | set(algorithm.aliases):
                key = normalize_algorithm_name(alias)
                existing = lookup.get(key)
                if existing is not None and existing.name != algorithm.name:
                    raise ValueError("Digest alias [%s] is already registered to %s" % (alias, existing.name))
                lookup[key] = algorithm
        self._lookup = lookup
        self._algorithms = tuple(algorithms)

    @property
    def names(self):
        return tuple(a.name for a in self._algorithms)

    def __contains__(self, name):
        return normalize_algorithm_name(name) in self._lookup

    def __iter__(self):
        return iter(self._algorithms)

    def register(self, algorithm):
        return DigestRegistry(self._algorithms + (algorithm,))

    def resolve(self, name):
        algorithm = self._lookup.get(normalize_algorithm_name(name))
        if algorithm is None:
            raise UnsupportedAlgorithmError("Unsupported checksum algorithm: %s" % name)
        return algorithm


DEFAULT_REGISTRY = DigestRegistry()


def resolve(name, registry=None):
    return (registry or DEFAULT_REGISTRY).resolve(name)


def resolve_all(names, registry=None):
    algorithms = list()
    for name in names:
        algorithm = resolve(name, registry)
        if algorithm not in algorithms:
            algorithms.append(algorithm)
    return algorithms


class StreamingHasher(object):

    def __init__(self, algorithm):
        self.algorithm = algorithm
        self._hash = algorithm.factory()

    def update(self, chunk):
        self._hash.update(chunk)

    def hexdigest(self):
        return self._hash.hexdigest().lower()


def new_hasher(algorithm):
    return StreamingHasher(algorithm)


class MultiHasher(object):
    """Feeds every chunk it is given to one independent hasher per algorithm."""

    def __init__(self, algorithms):
        self.hashers = [new_hasher(a) for a in algorithms]
        self.byte_count = 0

    def update(self, chunk):
        self.byte_count += len(chunk)
        for h in self.hashers:
            h.update(chunk)

    def hexdigests(self):
        return dict((h.algorithm.name, h.hexdigest()) for h in self.hashers)


def hash_file(path, algorithms, chunk_size=HASH_BLOCK_SIZE):
    hasher = MultiHasher(algorithms)
    with io.open(path, "rb") as f:
        while True:
            block = f.read(chunk_size)
            if not block:
                break
            hasher.update(block)
    return hasher.hexdigests(), hasher.byte_count


def _hash_job(job):
    full_path, key, algorithms = job
    try:
        digests, byte_count = hash_file(full_path, algorithms)
    except (OSError, IOError) as e:
        return key, None, None, e
    return key, digests, byte_count, None


def hash_files(jobs, processes=1, callback=None):
    """
    Hash each ``(full_path, key, algorithms)`` job, reading every file exactly once, and yield
    ``(key, digests, byte_count, error)`` as each one completes. Jobs are spread over a bounded thread pool when
    ``processes`` is not 1 (``None`` or 0 means one thread per CPU). ``callback(current, total)`` is invoked
    between files; a falsy return value cancels the remaining work.
    """
    jobs = list(jobs)
    total = len(jobs)
    pool = None
    if processes == 1:
        results = (_hash_job(job) for job in jobs)
    else:
        pool = ThreadPool(processes if processes else None)
        results = pool.imap_unordered(_hash_job, jobs)
    try:
        for current, result in enumerate(results, 1):
            yield result
            if callback and not callback(current, total):
                raise BaggingInterruptedError("Hashing interrupted after %d of %d files" % (current, total))
    finally:
        if pool:
            pool.terminate()
