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
Validation of bags against BagIt profiles (https://github.com/bagit-profiles/bagit-profiles).

A ``BagProfile`` is built once from a profile document and is read-only afterwards. ``BagProfile.validate`` works
only on what the ``Bag`` model captured from disk; ``BagProfile.validate_serialization`` is the one check that looks
at the filesystem, since the serialized form of a bag is not part of the model.
"""
import io
import os
import re
import json
import logging
import certifi
import requests
from collections import OrderedDict
from bagkit import SUPPORTED_BAGIT_SPECS, guess_mime_type, get_typed_exception
from bagkit.bagkit_config import DEFAULT_BAG_INFO_KEYS
from bagkit.bagkit_digest import DEFAULT_REGISTRY
from bagkit.bagkit_errors import ProfileError, UnsupportedAlgorithmError, Finding, ValidationResult, \
    UNACCEPTED_BAGIT_VERSION, UNACCEPTED_ALGORITHM, MISSING_REQUIRED_ALGORITHM, MISSING_REQUIRED_TAG, \
    TAG_VALUE_MISMATCH, FETCH_NOT_ALLOWED, UNACCEPTED_SERIALIZATION
from bagkit.bagkit_model import BAGIT_TXT, FETCH_TXT, manifest_filename

logger = logging.getLogger(__name__)

PROFILE_INFO_TAG = "BagIt-Profile-Info"
PROFILE_VERSION_TAG = "BagIt-Profile-Version"
ACCEPT_BAGIT_VERSION_TAG = "Accept-BagIt-Version"
SERIALIZATION_TAG = "Serialization"
ACCEPT_SERIALIZATION_TAG = "Accept-Serialization"
MANIFESTS_REQUIRED_TAG = "Manifests-Required"
MANIFESTS_ALLOWED_TAG = "Manifests-Allowed"
TAG_MANIFESTS_REQUIRED_TAG = "Tag-Manifests-Required"
TAG_MANIFESTS_ALLOWED_TAG = "Tag-Manifests-Allowed"
TAG_FILES_REQUIRED_TAG = "Tag-Files-Required"
ALLOW_FETCH_TAG = "Allow-Fetch.txt"

SERIALIZATION_POLICIES = ("forbidden", "optional", "required")

# serialization mode -> (file extensions, mime types)
SERIALIZATION_MODES = OrderedDict([
    ("zip", ((".zip",), ("application/zip", "application/x-zip", "application/x-zip-compressed"))),
    ("tar", ((".tar",), ("application/x-tar", "application/tar"))),
    ("tar.gz", ((".tar.gz", ".tgz"), ("application/x-tar+gzip", "application/tar+gzip", "application/x-gtar",
                                      "application/gzip", "application/x-gzip"))),
])

PROFILES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "profiles")


def serialization_mode(path):
    name = os.path.basename(path).lower()
    for mode, (extensions, _) in SERIALIZATION_MODES.items():
        if name.endswith(extensions):
            return mode
    return None


def normalize_serialization(value):
    value = str(value).strip().lower()
    if value == "tgz":
        return "tar.gz"
    if value in SERIALIZATION_MODES:
        return value
    for mode, (_, mime_types) in SERIALIZATION_MODES.items():
        if value in mime_types:
            return mode
    return None


def _string_list(document, key, default=None):
    value = document.get(key, default)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProfileError("Profile field \"%s\" must be a list of strings" % key)
    return value


class BagProfile(object):

    def __init__(self, identifier, document, registry=None, bag_info_keys=DEFAULT_BAG_INFO_KEYS):
        if not isinstance(document, dict):
            raise ProfileError("Profile document must be a JSON object")
        self.document = document
        self.registry = registry or DEFAULT_REGISTRY
        self.bag_info_keys = bag_info_keys

        info = document.get(PROFILE_INFO_TAG)
        if not isinstance(info, dict):
            raise ProfileError("Required \"%s\" object is missing from profile" % PROFILE_INFO_TAG)
        self.info = info
        self.identifier = info.get(bag_info_keys["profile_identifier"]) or identifier
        if not self.identifier:
            raise ProfileError("Profile has no identifier")
        self.version = str(info.get(PROFILE_VERSION_TAG, info.get("Version", "")))

        self.accept_bagit_versions = _string_list(document, ACCEPT_BAGIT_VERSION_TAG, list(SUPPORTED_BAGIT_SPECS))

        self.serialization = document.get(SERIALIZATION_TAG, "optional")
        if self.serialization not in SERIALIZATION_POLICIES:
            raise ProfileError("Profile field \"%s\" must be one of %s, not: %s" %
                               (SERIALIZATION_TAG, ", ".join(SERIALIZATION_POLICIES), self.serialization))
        self.accept_serialization = list()
        for value in _string_list(document, ACCEPT_SERIALIZATION_TAG, []):
            mode = normalize_serialization(value)
            if mode is None:
                logger.warning("Ignoring unknown serialization type in profile %s: %s" % (self.identifier, value))
            elif mode not in self.accept_serialization:
                self.accept_serialization.append(mode)

        self.manifests_required, self.manifests_allowed = \
            self._algorithms(MANIFESTS_REQUIRED_TAG, MANIFESTS_ALLOWED_TAG)
        self.tag_manifests_required, self.tag_manifests_allowed = \
            self._algorithms(TAG_MANIFESTS_REQUIRED_TAG, TAG_MANIFESTS_ALLOWED_TAG)

        self.tag_files_required = _string_list(document, TAG_FILES_REQUIRED_TAG, [])
        self.allow_fetch = document.get(ALLOW_FETCH_TAG, True)
        if not isinstance(self.allow_fetch, bool):
            raise ProfileError("Profile field \"%s\" must be a boolean" % ALLOW_FETCH_TAG)

        self.tag_constraints = OrderedDict()
        for key, fields in document.items():
            if key == PROFILE_INFO_TAG or not key.endswith("-Info"):
                continue
            self.tag_constraints[key.lower() + ".txt"] = self._constraints(key, fields)

    def __repr__(self):
        return "<BagProfile %s>" % self.identifier

    def _algorithms(self, required_key, allowed_key):
        required = list()
        for name in _string_list(self.document, required_key, []):
            try:
                required.append(self.registry.resolve(name).name)
            except UnsupportedAlgorithmError:
                raise ProfileError("Profile requires an unsupported checksum algorithm: %s" % name)

        allowed_names = _string_list(self.document, allowed_key)
        if allowed_names is None:
            allowed = list(self.registry.names)
        else:
            allowed = list()
            for name in allowed_names:
                if name in self.registry:
                    allowed.append(self.registry.resolve(name).name)
                else:
                    logger.debug("Profile %s allows unsupported algorithm: %s" % (self.identifier, name))

        not_allowed = [name for name in required if name not in allowed]
        if not_allowed:
            raise ProfileError("Required algorithm(s) %s in \"%s\" are not listed in \"%s\"" %
                               (", ".join(not_allowed), required_key, allowed_key))
        return required, allowed

    @staticmethod
    def _constraints(section, fields):
        if not isinstance(fields, dict):
            raise ProfileError("Profile section \"%s\" must be a JSON object" % section)
        constraints = OrderedDict()
        for field, config in fields.items():
            if not isinstance(config, dict):
                raise ProfileError("Constraint for \"%s\" in \"%s\" must be a JSON object" % (field, section))
            values = config.get("values")
            if values is not None and not isinstance(values, list):
                raise ProfileError("Allowed \"values\" for \"%s\" in \"%s\" must be a list" % (field, section))
            pattern = config.get("pattern")
            if pattern is not None:
                try:
                    pattern = re.compile(pattern)
                except re.error as e:
                    raise ProfileError("Invalid \"pattern\" for \"%s\" in \"%s\": %s" % (field, section, e))
            constraints[field] = {
                "required": bool(config.get("required", False)),
                "values": [str(v) for v in values] if values is not None else None,
                "pattern": pattern,
                "repeatable": bool(config.get("repeatable", True)),
            }
        return constraints

    @staticmethod
    def _report(result, finding):
        logger.warning(str(finding))
        result.add(finding)

    def validate(self, bag):
        logger.info("Validating bag %s against profile %s" % (bag, self.identifier))
        result = ValidationResult()

        self._validate_version(bag, result)
        self._validate_algorithms(bag.algorithms, self.manifests_required, self.manifests_allowed, False, result)
        if bag.tagmanifests or self.tag_manifests_required:
            self._validate_algorithms(bag.tag_algorithms, self.tag_manifests_required, self.tag_manifests_allowed,
                                      True, result)
        self._validate_tag_files(bag, result)
        self._validate_tags(bag, result)
        self._validate_fetch(bag, result)

        if result.is_valid:
            logger.info("Bag %s conforms to profile %s" % (bag, self.identifier))
        return result

    def _validate_version(self, bag, result):
        if self.accept_bagit_versions and bag.version not in self.accept_bagit_versions:
            self._report(result, Finding(UNACCEPTED_BAGIT_VERSION, path=BAGIT_TXT, found=bag.version,
                                         expected=", ".join(self.accept_bagit_versions)))

    def _validate_algorithms(self, used, required, allowed, tag, result):
        for name in required:
            if name not in used:
                self._report(result, Finding(MISSING_REQUIRED_ALGORITHM, path=manifest_filename(name, tag),
                                             algorithm=name))
        if used and not set(used) & set(allowed):
            for name in used:
                self._report(result, Finding(UNACCEPTED_ALGORITHM, path=manifest_filename(name, tag),
                                             algorithm=name))

    def _validate_tag_files(self, bag, result):
        for name in self.tag_files_required:
            if not bag.has_tag_file(name):
                self._report(result, Finding(MISSING_REQUIRED_TAG, path=name,
                                             message="Required tag file %s is not present" % name))

    def _validate_tags(self, bag, result):
        for filename, constraints in self.tag_constraints.items():
            fields = bag.tag_fields(filename)
            for field, constraint in constraints.items():
                values = fields.get_all(field) if fields is not None else []
                if not values:
                    if constraint["required"]:
                        self._report(result, Finding(MISSING_REQUIRED_TAG, path=filename, expected=field))
                    continue
                if not constraint["repeatable"] and len(values) > 1:
                    self._report(result, Finding(
                        TAG_VALUE_MISMATCH, path=filename, expected=field, found=", ".join(values),
                        message="Tag %s in %s is not repeatable but occurs %d times" %
                                (field, filename, len(values))))
                for value in values:
                    if constraint["values"] is not None and value not in constraint["values"]:
                        self._report(result, Finding(TAG_VALUE_MISMATCH, path=filename, expected=field, found=value))
                    elif constraint["pattern"] is not None and not constraint["pattern"].fullmatch(value):
                        self._report(result, Finding(TAG_VALUE_MISMATCH, path=filename, expected=field, found=value))

        if self.bag_info_keys["bag_info_file"] in self.tag_constraints:
            declared = bag.info.get(self.bag_info_keys["profile_identifier"])
            if declared and declared != self.identifier:
                self._report(result, Finding(
                    TAG_VALUE_MISMATCH, path=self.bag_info_keys["bag_info_file"],
                    expected=self.bag_info_keys["profile_identifier"], found=declared,
                    message="%s declares profile %s but is being validated against %s" %
                            (bag, declared, self.identifier)))

    def _validate_fetch(self, bag, result):
        if not self.allow_fetch and (bag.has_fetch_file or bag.fetch_entries):
            self._report(result, Finding(FETCH_NOT_ALLOWED, path=FETCH_TXT, found=len(bag.fetch_entries)))

    def validate_serialization(self, path):
        if not os.path.exists(path):
            raise IOError("Can't find file %s" % path)
        result = ValidationResult()

        if os.path.isdir(path):
            if self.serialization == "required":
                self._report(result, Finding(
                    UNACCEPTED_SERIALIZATION, path=path, found="directory",
                    message="%s: Bag serialization is required but the bag is a directory" % path))
            return result

        mode = serialization_mode(path)
        if self.serialization == "forbidden":
            self._report(result, Finding(
                UNACCEPTED_SERIALIZATION, path=path, found=mode or guess_mime_type(path),
                message="%s: Bag serialization is forbidden but the bag is a file" % path))
        elif self.accept_serialization and mode not in self.accept_serialization:
            self._report(result, Finding(UNACCEPTED_SERIALIZATION, path=path, found=mode or guess_mime_type(path)))

        return result


def list_profiles():
    return sorted(os.path.splitext(name)[0] for name in os.listdir(PROFILES_DIR) if name.endswith(".json"))


def bundled_profile_path(source):
    """Return the bundled copy of a profile given by name or by its published identifier, if there is one."""
    bundled = os.path.join(PROFILES_DIR, "%s.json" % source)
    if os.path.sep not in source and "/" not in source and os.path.isfile(bundled):
        return bundled
    for name in list_profiles():
        path = os.path.join(PROFILES_DIR, "%s.json" % name)
        with io.open(path, encoding="UTF-8") as profile_file:
            info = json.loads(profile_file.read()).get(PROFILE_INFO_TAG) or {}
        if info.get(DEFAULT_BAG_INFO_KEYS["profile_identifier"]) == source:
            return path
    return None


def read_profile_document(source):
    bundled = bundled_profile_path(source)
    if bundled:
        path = bundled
    elif os.path.isfile(source):
        path = source
    elif source.lower().startswith(("http://", "https://")):
        try:
            response = requests.get(source, verify=certifi.where(), timeout=60)
            response.raise_for_status()
            return response.json(object_pairs_hook=OrderedDict)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProfileError("Profile %s could not be retrieved: %s" % (source, get_typed_exception(e)))
    else:
        raise ProfileError("Unknown profile [%s]: not a bundled profile name, file path or http(s) URL" % source)

    try:
        with io.open(path, encoding="UTF-8") as profile_file:
            return json.loads(profile_file.read(), object_pairs_hook=OrderedDict)
    except (IOError, ValueError) as e:
        raise ProfileError("Profile %s could not be read: %s" % (path, get_typed_exception(e)))


def load_profile(source, registry=None, bag_info_keys=DEFAULT_BAG_INFO_KEYS):
    logger.info("Loading profile: %s" % source)
    document = read_profile_document(source)
    return BagProfile(source, document, registry=registry, bag_info_keys=bag_info_keys)
