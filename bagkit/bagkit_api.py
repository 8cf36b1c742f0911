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
import io
import gzip
import json
import time
import shutil
import logging
import tarfile
import tempfile
from zipfile import ZipFile, ZipInfo, ZIP_DEFLATED, ZIP_STORED, is_zipfile
from datetime import date, datetime
from tzlocal import get_localzone
from collections import OrderedDict
from bagkit import DEFAULT_LOG_FORMAT, BAG_PROFILE_TAG, get_typed_exception, safe_move, bag_parent_dir_from_archive
from bagkit.bagkit_config import read_config, get_bag_config, DEFAULT_BAG_INFO_KEYS, BAG_SPEC_VERSION_TAG, \
    BAG_ALGORITHMS_TAG, BAG_PROCESSES_TAG, BAG_METADATA_TAG, BAG_ARCHIVE_IDEMPOTENT, PROFILE_CONFIG_TAG, \
    DEFAULT_PROFILE_TAG, DEFAULT_BAG_SPEC_VERSION, DEFAULT_BAG_ALGORITHMS, DEFAULT_PROFILE
from bagkit.bagkit_digest import DEFAULT_REGISTRY
from bagkit.bagkit_errors import BagError, BagValidationError, ProfileValidationError, MaliciousPathError, \
    Finding, MISSING_FILE
from bagkit.bagkit_model import BagInfo, BAGIT_TXT, DATA_DIR, FETCH_TXT
from bagkit.bagkit_paths import is_within
from bagkit.bagkit_profile import BagProfile, load_profile
from bagkit.bagkit_reader import read_bag
from bagkit.bagkit_verifier import verify_bag
from bagkit.bagkit_writer import BagWriter
from bagkit.fetch.fetcher import fetch_bag_files, fetch_output_path

logger = logging.getLogger(__name__)

ARCHIVE_FORMATS = ("zip", "tar", "tgz")


def configure_logging(level=logging.INFO, logpath=None, filemode='a', log_format=DEFAULT_LOG_FORMAT, force=False):
    logging.captureWarnings(True)
    if logpath:
        logging.basicConfig(filename=logpath, filemode=filemode, level=level, format=log_format, force=force)
    else:
        logging.basicConfig(level=level, format=log_format, force=force)


def read_metadata(metadata_file):
    if not metadata_file:
        return dict()
    else:
        metadata_file = os.path.abspath(metadata_file)

    logger.info("Reading bag metadata from file: %s" % metadata_file)
    with io.open(metadata_file, encoding='utf-8') as mf:
        return json.loads(mf.read(), object_pairs_hook=OrderedDict)


def cleanup_bag(bag_path, save=False):
    logger.info("Cleaning up bag dir: %s" % bag_path)
    if save:
        return safe_move(bag_path)
    else:
        shutil.rmtree(bag_path)
        return None


def is_bag(bag_path):
    bag = None
    try:
        if os.path.isdir(bag_path):
            bag = read_bag(bag_path)
    except BagError as e:
        logger.warning("Exception while checking if directory %s is a bag: %s" % (bag_path, e))
    return True if bag else False


def move_to_payload(bag_path):
    logger.info("Moving contents of %s into the payload directory" % bag_path)
    temp_data = tempfile.mkdtemp(dir=bag_path)
    for name in os.listdir(bag_path):
        path = os.path.join(bag_path, name)
        if path == temp_data:
            continue
        os.rename(path, os.path.join(temp_data, name))
    os.rename(temp_data, os.path.join(bag_path, DATA_DIR))


def read_remote_file_manifest(remote_file_manifest, registry=None):
    """
    Yield ``(filename, url, length, checksums)`` for each entry of a remote file manifest: either a JSON array of
    objects or a stream of JSON objects, one per line.
    """
    registry = registry or DEFAULT_REGISTRY
    logger.info("Generating remote file references from %s" % remote_file_manifest)
    with io.open(remote_file_manifest, "r", encoding='utf-8') as rfm_in:
        line = rfm_in.readline().lstrip()
        rfm_in.seek(0)
        if line.startswith('{'):
            entries = (json.loads(entry, object_pairs_hook=OrderedDict) for entry in rfm_in if entry.strip())
        else:
            entries = json.load(rfm_in, object_pairs_hook=OrderedDict)
        for entry in entries:
            checksums = OrderedDict((k, v) for k, v in entry.items()
                                    if k not in ("url", "length", "filename") and k in registry)
            if not checksums:
                raise ValueError("A remote file manifest entry did not provide a required hash value: %s" %
                                 json.dumps(entry))
            url = entry['url'][0] if isinstance(entry['url'], list) else entry['url']
            yield '/'.join([DATA_DIR, entry['filename']]), url, entry['length'], checksums


def _merge_metadata(info, metadata):
    for key, value in (metadata or {}).items():
        info.set(key, value)
    return info


def make_bag(bag_path,
             algs=None,
             update=False,
             metadata=None,
             metadata_file=None,
             remote_file_manifest=None,
             config_file=None,
             idempotent=None,
             profile=None,
             callback=None):
    """
    Convert the directory ``bag_path`` into a bag in place, moving its contents into ``data/``. If the directory
    already is a bag it is left untouched unless ``update`` is set, in which case its manifests and tag files are
    regenerated from the current payload.
    """
    bag_path = os.path.abspath(bag_path)
    if not os.path.isdir(bag_path):
        raise BagError("Bag directory %s does not exist" % bag_path)

    existing = read_bag(bag_path) if os.path.isfile(os.path.join(bag_path, BAGIT_TXT)) else None
    if existing and not update:
        logger.info("The directory %s is already a bag." % bag_path)
        return existing

    config = read_config(config_file)
    bag_config = get_bag_config(config)
    bag_version = existing.version if existing else bag_config.get(BAG_SPEC_VERSION_TAG, DEFAULT_BAG_SPEC_VERSION)
    bag_algorithms = algs if algs else bag_config.get(BAG_ALGORITHMS_TAG, DEFAULT_BAG_ALGORITHMS)
    bag_processes = bag_config.get(BAG_PROCESSES_TAG, 1)
    idempotent_config = bag_config.get(BAG_ARCHIVE_IDEMPOTENT, False)
    idempotent = idempotent_config if (idempotent_config and idempotent is None) else \
        False if idempotent is None else idempotent

    # bag metadata merge order: config(if new, else if update use existing)->metadata_file->metadata
    if existing and existing.has_info_file:
        bag_metadata = BagInfo(existing.info.items())
        for key in ("payload_oxum", "bag_size"):
            bag_metadata.remove(DEFAULT_BAG_INFO_KEYS[key])
    else:
        bag_metadata = _merge_metadata(BagInfo(), bag_config.get(BAG_METADATA_TAG, {}))
    _merge_metadata(bag_metadata, read_metadata(metadata_file))
    _merge_metadata(bag_metadata, metadata)

    if profile:
        if not isinstance(profile, BagProfile):
            profile = load_profile(profile)
        bag_metadata.set(BAG_PROFILE_TAG, profile.identifier)

    if idempotent:
        for key in ("Bagging-Date", "Bagging-Time"):
            if key in bag_metadata:
                logger.warning("%s metadata is not compatible with Bag idempotency. Removing %s attribute." %
                               (key, key))
                bag_metadata.remove(key)
    else:
        bag_metadata.setdefault('Bagging-Date', date.strftime(date.today(), "%Y-%m-%d"))
        bag_metadata.setdefault('Bagging-Time', datetime.strftime(datetime.now(tz=get_localzone()), "%H:%M:%S %Z"))

    writer = BagWriter(bag_path,
                       bag_algorithms,
                       version=bag_version,
                       processes=bag_processes,
                       idempotent=idempotent)
    writer.add_tags(DEFAULT_BAG_INFO_KEYS["bag_info_file"], bag_metadata.items())

    if existing:
        logger.info("Updating bag: %s" % bag_path)
        payload_entries = existing.payload_entries()
        for entry in existing.fetch_entries:
            if os.path.isfile(fetch_output_path(existing, entry.filename)):
                continue
            if entry.length is None:
                raise BagError("Remote file %s has no length in %s and cannot be carried over" %
                               (entry.filename, FETCH_TXT))
            writer.add_remote_file(entry.filename, entry.url, entry.length, payload_entries.get(entry.filename, {}))
    else:
        move_to_payload(bag_path)

    if remote_file_manifest:
        for filename, url, length, checksums in read_remote_file_manifest(remote_file_manifest):
            writer.add_remote_file(filename, url, length, checksums)

    bag = writer.write(callback=callback)
    logger.info("%s bag: %s" % ("Updated" if existing else "Created", bag_path))
    return bag


def archive_bag(bag_path, bag_archiver, config_file=None, idempotent=None):
    bag_archiver = bag_archiver.lower()
    bag_path = bag_path.rstrip(os.path.sep)

    config = read_config(config_file)
    idempotent_config = get_bag_config(config).get(BAG_ARCHIVE_IDEMPOTENT, False)
    idempotent = idempotent_config if (idempotent_config and idempotent is None) else \
        False if idempotent is None else idempotent

    if bag_archiver not in ARCHIVE_FORMATS:
        raise RuntimeError("Archive format not supported for bag file: %s \n "
                           "Supported archive formats are %s" % (bag_path, "/".join(ARCHIVE_FORMATS).upper()))
    try:
        validate_bag_structure(bag_path, skip_remote=True)
    except BagError as e:
        logger.error("Error while archiving bag: %s", e)
        raise

    logger.info("Archiving bag (%s): %s" % (bag_archiver, bag_path))
    if idempotent:
        logger.debug("Creating idempotent (reproducible) %s formatted bag archive." % bag_archiver)
    fn = '.'.join([os.path.basename(bag_path), bag_archiver])
    archive_path = os.path.join(os.path.dirname(bag_path), fn)
    if bag_archiver == 'zip':
        archive = zip_bag_dir(bag_path, archive_path, idempotent)
    else:
        archive = tar_bag_dir(bag_path, archive_path, 'w:gz' if bag_archiver == 'tgz' else 'w', idempotent)

    logger.info('Created bag archive: %s' % archive)
    return archive


def _archive_entries(bag_path):
    parent = os.path.dirname(bag_path)
    entries = [os.path.relpath(bag_path, parent) + os.path.sep]
    for root, dirs, files in os.walk(bag_path):
        for d in dirs:
            entries.append(os.path.relpath(os.path.join(root, d), parent) + os.path.sep)
        for f in files:
            entries.append(os.path.relpath(os.path.join(root, f), parent))
    return sorted(entries)


def tar_bag_dir(bag_path, tar_file_path, tarmode, idempotent=False):

    def filter_mtime(tarinfo):
        # a fixed mtime is a core requirement for a reproducible archive
        tarinfo.mtime = 0
        tarinfo.uid = tarinfo.gid = 0
        tarinfo.uname = tarinfo.gname = ""
        return tarinfo

    parent = os.path.dirname(bag_path)
    if idempotent and tarmode == 'w:gz':
        # tarfile cannot pass mtime=0 through to the gzip header, so the tar is compressed in a second pass
        with io.open(tar_file_path, 'wb') as f_out:
            with gzip.GzipFile(filename="", mode='wb', fileobj=f_out, mtime=0) as gzf:
                with tarfile.open(fileobj=gzf, mode='w') as t:
                    for entry in _archive_entries(bag_path):
                        t.add(os.path.join(parent, entry), entry.rstrip(os.path.sep), recursive=False,
                              filter=filter_mtime)
        return tar_file_path

    with tarfile.open(tar_file_path, tarmode) as t:
        for entry in _archive_entries(bag_path):
            t.add(os.path.join(parent, entry), entry.rstrip(os.path.sep), recursive=False,
                  filter=filter_mtime if idempotent else None)
    return tar_file_path


def zip_bag_dir(bag_path, zip_file_path, idempotent=False):
    parent = os.path.dirname(bag_path)
    with ZipFile(zip_file_path, 'w', ZIP_DEFLATED, allowZip64=True) as zipfile:
        for e in _archive_entries(bag_path):
            filepath = os.path.join(parent, e)
            if idempotent:
                # a fixed mtime is a core requirement for a reproducible archive
                date_time = (1980, 1, 1, 0, 0, 0)
            else:
                date_time = time.localtime(os.stat(filepath).st_mtime)[0:6]
            info = ZipInfo(filename=e.replace(os.path.sep, "/"), date_time=date_time)
            info.create_system = 3  # unix
            if e.endswith(os.path.sep):
                info.external_attr = 0o40755 << 16 | 0x010
                info.compress_type = ZIP_STORED
                zipfile.writestr(info, b'')
            else:
                info.external_attr = 0o100644 << 16
                info.compress_type = ZIP_DEFLATED
                with io.open(filepath, 'rb') as data, zipfile.open(info, 'w') as out:
                    while True:
                        chunk = data.read(io.DEFAULT_BUFFER_SIZE)
                        if not chunk:
                            break
                        out.write(chunk)
        return zipfile.filename


def _check_archive_members(names, base_path):
    for name in names:
        if not is_within(os.path.join(base_path, name), base_path):
            raise MaliciousPathError(name, "archive member would be extracted outside of %s" % base_path)


def extract_bag(bag_path, output_path=None, temp=False):
    if not os.path.isfile(bag_path):
        raise RuntimeError("Specified bag archive not found: %s" % bag_path)

    bag_dir = os.path.splitext(os.path.basename(bag_path))[0]
    if bag_dir.endswith(".tar"):
        bag_dir = os.path.splitext(bag_dir)[0]
    if temp:
        base_path = tempfile.mkdtemp(prefix='bag_')
    elif output_path:
        base_path = os.path.realpath(output_path)
        if not os.path.isdir(base_path):
            os.makedirs(base_path)
    else:
        base_path = os.path.dirname(os.path.abspath(bag_path))

    if is_zipfile(bag_path):
        logger.info("Extracting ZIP archived file: %s" % bag_path)
        archive = ZipFile(bag_path)
        files = archive.namelist()
    elif tarfile.is_tarfile(bag_path):
        logger.info("Extracting TAR/GZ archived file: %s" % bag_path)
        archive = tarfile.open(bag_path)
        files = archive.getnames()
    else:
        raise RuntimeError("Archive format not supported for file: %s\n"
                           "Supported archive formats are ZIP or TAR/GZ" % bag_path)

    try:
        _check_archive_members(files, base_path)
        archived_bag_dir = bag_parent_dir_from_archive(files)
        extracted_path = os.path.join(base_path, archived_bag_dir or bag_dir)
        safe_move(extracted_path)

        if isinstance(archive, tarfile.TarFile):
            if not hasattr(tarfile, 'data_filter'):
                raise RuntimeError(
                    "TAR archive extraction has been disabled because the TAR 'extraction filters' feature is not "
                    "present in the current Python version. See: https://peps.python.org/pep-0706")

            # entries archived with a mtime of 0 (epoch) are extracted without preserving the mtime
            def tar_data_filter(entry, path):
                if entry.mtime == 0:
                    entry = entry.replace(mtime=None)
                return tarfile.data_filter(entry, path)
            archive.extractall(base_path, filter=tar_data_filter)
        else:
            archive.extractall(base_path)
    finally:
        archive.close()

    logger.info("File %s was successfully extracted to directory %s" % (bag_path, extracted_path))
    return extracted_path


def validate_bag(bag_path, fast=False, callback=None, config_file=None, fail_fast=False):
    config = read_config(config_file)
    bag_processes = get_bag_config(config).get(BAG_PROCESSES_TAG, 1)

    logger.info("Validating bag: %s" % bag_path)
    bag = read_bag(bag_path)
    result = verify_bag(bag, fast=fast, fail_fast=fail_fast, processes=bag_processes, callback=callback)
    if not result.is_valid:
        if bag.fetch_entries:
            logger.warning("BagValidationError: A BagValidationError may be transient if the bag contains "
                           "unresolved remote file references from a fetch.txt file. In this case the bag is "
                           "incomplete but not necessarily invalid. Resolve remote file references (if any) and "
                           "re-validate.")
        raise BagValidationError("Bag validation failed", result.findings)
    logger.info("Bag %s is valid" % bag_path)
    return result


def validate_bag_structure(bag_path, skip_remote=True):
    logger.info("Validating bag structure: %s" % bag_path)
    bag = read_bag(bag_path)
    result = verify_bag(bag, completeness_only=True)
    if not skip_remote:
        for entry in bag.fetch_entries:
            if not os.path.isfile(fetch_output_path(bag, entry.filename)):
                finding = Finding(MISSING_FILE, path=entry.filename,
                                  message="%s is listed in %s but has not been fetched" % (entry.filename, FETCH_TXT))
                logger.warning(str(finding))
                result.add(finding)
    if not result.is_valid:
        raise BagValidationError("Inconsistent payload state", result.findings)
    logger.info("The directory %s is a valid bag structure" % bag_path)
    return result


def validate_bag_profile(bag_path, profile_path=None, config_file=None):
    logger.info("Validating bag profile: %s", bag_path)
    bag = read_bag(bag_path)

    source = profile_path or bag.info.get(BAG_PROFILE_TAG)
    if not source:
        config = read_config(config_file)
        source = (config.get(PROFILE_CONFIG_TAG) or {}).get(DEFAULT_PROFILE_TAG, DEFAULT_PROFILE)
        logger.info("Bag does not contain a %s, using the default profile: %s" % (BAG_PROFILE_TAG, source))
    profile = load_profile(source)

    result = profile.validate(bag)
    if not result.is_valid:
        raise ProfileValidationError("Bag structure does not conform to specified profile: %s" % result, result)
    logger.info("Bag structure conforms to specified profile")
    return profile


def validate_bag_serialization(bag_path, bag_profile=None, bag_profile_path=None):
    if not bag_profile:
        if not bag_profile_path:
            raise ProfileValidationError("Unable to instantiate profile, no bag profile or profile path found")
        logger.info("Retrieving profile: %s" % bag_profile_path)
        bag_profile = load_profile(bag_profile_path)

    logger.info("Validating bag serialization: %s" % bag_path)
    result = bag_profile.validate_serialization(bag_path)
    if not result.is_valid:
        logger.error("Bag serialization does not conform to specified profile: %s" % result)
        raise ProfileValidationError("Bag serialization does not conform to specified profile: %s" % result, result)
    logger.info("Bag serialization conforms to specified profile")
    return result


def resolve_fetch(bag_path, force=False, callback=None, config_file=None, resolver=None):
    bag = read_bag(bag_path)
    if not bag.fetch_entries:
        logger.info("Bag %s has no remote file references to resolve" % bag_path)
        return True

    logger.info("Attempting to resolve remote file references from %s" % os.path.join(bag_path, FETCH_TXT))
    try:
        return fetch_bag_files(bag, resolver=resolver, force=force, callback=callback, config_file=config_file)
    except BagError as e:
        logger.error("Error while resolving remote file references: %s" % get_typed_exception(e))
        raise
