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
Exceptions raised when a bag cannot be modeled at all, and the findings accumulated when a modeled bag is
checked for integrity or for conformance to a profile.
"""
from collections import namedtuple

UNSUPPORTED_ALGORITHM = "UnsupportedAlgorithm"
UNPARSABLE_VERSION = "UnparsableVersion"
MALICIOUS_PATH = "MaliciousPath"
INVALID_BAGIT_FILE_FORMAT = "InvalidBagitFileFormat"
MISSING_BAGIT_FILE = "MissingBagitFile"
MISSING_PAYLOAD_DIRECTORY = "MissingPayloadDirectory"
MISSING_PAYLOAD_MANIFEST = "MissingPayloadManifest"
MISSING_TAG_MANIFEST = "MissingTagManifest"
MISSING_FILE = "MissingFile"
FILE_NOT_IN_TAG_MANIFEST = "FileNotInTagManifest"
FILE_NOT_IN_PAYLOAD_DIRECTORY = "FileNotInPayloadDirectory"
CORRUPT_CHECKSUM = "CorruptChecksum"
PAYLOAD_OXUM_MISMATCH = "PayloadOxumMismatch"
MISSING_REQUIRED_TAG = "MissingRequiredTag"
TAG_VALUE_MISMATCH = "TagValueMismatch"
UNACCEPTED_BAGIT_VERSION = "UnacceptedBagItVersion"
UNACCEPTED_ALGORITHM = "UnacceptedAlgorithm"
MISSING_REQUIRED_ALGORITHM = "MissingRequiredAlgorithm"
FETCH_NOT_ALLOWED = "FetchNotAllowed"
UNACCEPTED_SERIALIZATION = "UnacceptedSerialization"


class BagError(Exception):
    kind = None


class UnsupportedAlgorithmError(BagError, ValueError):
    kind = UNSUPPORTED_ALGORITHM


class UnparsableVersionError(BagError):
    kind = UNPARSABLE_VERSION


class MaliciousPathError(BagError):
    kind = MALICIOUS_PATH

    def __init__(self, path, reason):
        super(MaliciousPathError, self).__init__("Unsafe path [%s]: %s" % (path, reason))
        self.path = path
        self.reason = reason


class InvalidBagitFileFormatError(BagError):
    kind = INVALID_BAGIT_FILE_FORMAT


class MissingBagitFileError(BagError):
    kind = MISSING_BAGIT_FILE


class MissingPayloadDirectoryError(BagError):
    kind = MISSING_PAYLOAD_DIRECTORY


class BaggingInterruptedError(RuntimeError):
    pass


class BagValidationError(BagError):

    def __init__(self, message, details=None):
        super(BagValidationError, self).__init__()
        self.message = message
        self.details = list(details) if details else []

    def __str__(self):
        if len(self.details) > 0:
            details = "; ".join([str(e) for e in self.details])
            return "%s: %s" % (self.message, details)
        return self.message


class ProfileError(BagError):
    pass


class ProfileValidationError(BagError):

    def __init__(self, message, result=None):
        super(ProfileValidationError, self).__init__(message)
        self.result = result


_MESSAGES = {
    MISSING_BAGIT_FILE: "%(path)s is missing",
    MISSING_PAYLOAD_DIRECTORY: "Expected data directory %(path)s does not exist",
    MISSING_PAYLOAD_MANIFEST: "No payload manifest found in %(path)s",
    MISSING_TAG_MANIFEST: "%(path)s is missing for payload manifest algorithm %(algorithm)s",
    MISSING_FILE: "%(path)s exists in manifest but was not found on filesystem",
    FILE_NOT_IN_PAYLOAD_DIRECTORY: "%(path)s exists on filesystem but is not in the manifest",
    FILE_NOT_IN_TAG_MANIFEST: "%(path)s exists on filesystem but is not in the %(algorithm)s tag manifest",
    CORRUPT_CHECKSUM: '%(path)s %(algorithm)s validation failed: expected="%(expected)s" found="%(found)s"',
    PAYLOAD_OXUM_MISMATCH: "Payload-Oxum validation failed: expected %(expected)s found %(found)s",
    MALICIOUS_PATH: "%(path)s resolves outside of the bag",
    UNACCEPTED_BAGIT_VERSION: "Bag version %(found)s is not in list of allowed values: %(expected)s",
    UNACCEPTED_ALGORITHM: "Manifest algorithm %(algorithm)s is not accepted",
    MISSING_REQUIRED_ALGORITHM: "Required manifest algorithm %(algorithm)s is not present",
    MISSING_REQUIRED_TAG: "Required tag %(expected)s is not present in %(path)s",
    TAG_VALUE_MISMATCH: "Tag %(expected)s in %(path)s has a value that is not allowed: %(found)s",
    FETCH_NOT_ALLOWED: "%(path)s is present but is not allowed",
    UNACCEPTED_SERIALIZATION: "Bag serialization of %(path)s is not accepted: %(found)s",
}


class Finding(namedtuple("Finding", ["kind", "path", "algorithm", "expected", "found", "message"])):
    """
    A single integrity or conformance defect. ``kind`` is one of the module level kind constants; the
    remaining fields are filled in as far as they apply to that kind.
    """
    __slots__ = ()

    def __new__(cls, kind, path=None, algorithm=None, expected=None, found=None, message=None):
        return super(Finding, cls).__new__(cls, kind, path, algorithm, expected, found, message)

    def __str__(self):
        if self.message:
            return self.message
        template = _MESSAGES.get(self.kind)
        if not template:
            return "%s: %s" % (self.kind, self.path)
        return template % self._asdict()


class ValidationResult(object):

    def __init__(self, findings=None):
        self.findings = list(findings) if findings else []

    @property
    def is_valid(self):
        return not self.findings

    def __bool__(self):
        return self.is_valid

    def __len__(self):
        return len(self.findings)

    def __iter__(self):
        return iter(self.findings)

    def add(self, finding):
        self.findings.append(finding)
        return finding

    def kinds(self):
        return [f.kind for f in self.findings]

    def by_kind(self, kind):
        return [f for f in self.findings if f.kind == kind]

    def __str__(self):
        if self.is_valid:
            return "VALID"
        return "INVALID: %s" % "\n  ".join(["%s" % e for e in self.findings])
