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
import errno
import logging
import json
from types import MappingProxyType
from collections import OrderedDict
from packaging.version import parse as parse_version
from importlib_metadata import distribution, PackageNotFoundError
from bagkit import get_typed_exception, safe_move, DEFAULT_CONFIG_PATH, __version__

logger = logging.getLogger(__name__)

BAG_CONFIG_TAG = "bag_config"
BAG_SPEC_VERSION_TAG = "bagit_spec_version"
BAG_ALGORITHMS_TAG = "bag_algorithms"
BAG_PROCESSES_TAG = "bag_processes"
BAG_METADATA_TAG = "bag_metadata"
BAG_ARCHIVER_TAG = "bag_archiver"
BAG_ARCHIVE_IDEMPOTENT = "bag_archive_idempotent"
PROFILE_CONFIG_TAG = "profile_config"
DEFAULT_PROFILE_TAG = "default_profile"
CONFIG_VERSION_TAG = "bagkit_config_version"
DEFAULT_BAG_SPEC_VERSION = "0.97"
DEFAULT_CONFIG_FILE_ENVAR = "BAGKIT_CONFIG_FILE"
DEFAULT_CONFIG_FILE = os.path.join(DEFAULT_CONFIG_PATH, 'bagkit.json')
DEFAULT_BAG_ALGORITHMS = ['md5', 'sha256']
DEFAULT_PROFILE = "default"

# Well-known bag-info.txt field names. Passed explicitly to the writer and to profiles rather than referenced as
# module globals, so callers can substitute their own table.
DEFAULT_BAG_INFO_KEYS = MappingProxyType({
    "bag_info_file": "bag-info.txt",
    "source_organization": "Source-Organization",
    "bagging_date": "Bagging-Date",
    "bagging_time": "Bagging-Time",
    "payload_oxum": "Payload-Oxum",
    "bag_size": "Bag-Size",
    "software_agent": "Bag-Software-Agent",
    "profile_identifier": "BagIt-Profile-Identifier",
})

STANDARD_BAG_INFO_HEADERS = (
    "Source-Organization",
    "Organization-Address",
    "Contact-Name",
    "Contact-Phone",
    "Contact-Email",
    "External-Description",
    "External-Identifier",
    "Bag-Size",
    "Bag-Group-Identifier",
    "Bag-Count",
    "Internal-Sender-Identifier",
    "Internal-Sender-Description",
    "BagIt-Profile-Identifier",
)

FETCH_CONFIG_TAG = "fetch_config"
DEFAULT_FETCH_HTTP_SESSION_CONFIG = {
    "retry_connect": 2,
    "retry_read": 4,
    "retry_backoff_factor": 1.0,
    "retry_status_forcelist": [500, 502, 503, 504]
}
DEFAULT_FETCH_CONFIG = {
    "http": {
        "session_config": DEFAULT_FETCH_HTTP_SESSION_CONFIG,
        "allow_redirects": True
    },
    "https": {
        "session_config": DEFAULT_FETCH_HTTP_SESSION_CONFIG,
        "allow_redirects": True,
        "bypass_ssl_cert_verification": False
    }
}

DEFAULT_CONFIG = {
    CONFIG_VERSION_TAG: __version__,
    BAG_CONFIG_TAG:
        {
            BAG_SPEC_VERSION_TAG: DEFAULT_BAG_SPEC_VERSION,
            BAG_ALGORITHMS_TAG: DEFAULT_BAG_ALGORITHMS,
            BAG_PROCESSES_TAG: 1,
            BAG_ARCHIVER_TAG: "zip",
            BAG_ARCHIVE_IDEMPOTENT: False,
            BAG_METADATA_TAG: {}
        },
    PROFILE_CONFIG_TAG:
        {
            DEFAULT_PROFILE_TAG: DEFAULT_PROFILE
        },
    FETCH_CONFIG_TAG: DEFAULT_FETCH_CONFIG
}


def get_updated_config_keys(config):
    """Top level sections whose format changed since the version that wrote ``config``; these are reset."""
    if parse_version(config.get(CONFIG_VERSION_TAG, "0")) < parse_version("1.0.0"):
        return [FETCH_CONFIG_TAG, PROFILE_CONFIG_TAG]
    return []


def installed_version():
    try:
        return distribution("bagkit").version
    except PackageNotFoundError:  # pragma: no cover
        return __version__


def write_config(config=DEFAULT_CONFIG, config_file=DEFAULT_CONFIG_FILE):
    config_path = os.path.dirname(config_file)
    try:
        if config_path and not os.path.isdir(config_path):
            try:
                os.makedirs(config_path, mode=0o750)
            except OSError as error:  # pragma: no cover
                if error.errno != errno.EEXIST:
                    raise
        with open(config_file, 'w') as cf:
            json.dump(config if config is not None else DEFAULT_CONFIG, cf, indent=4, sort_keys=True)
        logger.info("Wrote configuration file: %s" % config_file)
    except Exception as e:
        logger.warning("Unable to create configuration file %s. %s" % (config_file, get_typed_exception(e)))


def resolve_config_file(config_file=None, create_default=True):
    """
    An explicit path wins, then the path named by the BAGKIT_CONFIG_FILE environment variable, then
    ~/.bagkit/bagkit.json. A missing environment variable target falls back to the default path unless it is
    going to be created.
    """
    if config_file:
        return config_file
    config_file = os.getenv(DEFAULT_CONFIG_FILE_ENVAR, DEFAULT_CONFIG_FILE)
    if config_file != DEFAULT_CONFIG_FILE and not os.path.isfile(config_file) and not create_default:
        logger.warning("Invalid configuration file path specified using environment variable %s: [%s]. "
                       "Falling back to default configuration file path: [%s]" %
                       (DEFAULT_CONFIG_FILE_ENVAR, config_file, DEFAULT_CONFIG_FILE))
        return DEFAULT_CONFIG_FILE
    return config_file


def read_config(config_file=None, create_default=True, auto_upgrade=False):
    config_file = resolve_config_file(config_file, create_default)
    if not os.path.isfile(config_file):
        if create_default:
            write_config(config_file=config_file)
    elif auto_upgrade:
        upgrade_config(config_file)

    if not os.path.isfile(config_file):
        logger.warning("Unable to read configuration file: [%s]. Using internal defaults." % config_file)
        return json.loads(json.dumps(DEFAULT_CONFIG), object_pairs_hook=OrderedDict)

    logger.debug("Loading configuration file from: %s" % config_file)
    with open(config_file) as cf:
        return json.load(cf, object_pairs_hook=OrderedDict)


def get_bag_config(config):
    bag_config = dict(DEFAULT_CONFIG[BAG_CONFIG_TAG])
    bag_config.update((config or {}).get(BAG_CONFIG_TAG) or {})
    return bag_config


def upgrade_config(config_file):
    """
    Rewrite ``config_file`` in the format of the installed version, keeping the user's settings for sections whose
    format did not change. The previous file is moved aside. Returns True if the file was rewritten.
    """
    if not config_file or not os.path.isfile(config_file):
        return False

    with open(config_file) as cf:
        config = json.load(cf, object_pairs_hook=OrderedDict)

    version = installed_version()
    if parse_version(version) <= parse_version(config.get(CONFIG_VERSION_TAG, "0")):
        return False

    new_config = json.loads(json.dumps(DEFAULT_CONFIG), object_pairs_hook=OrderedDict)
    copy_config_items(config, new_config, [BAG_CONFIG_TAG, PROFILE_CONFIG_TAG, FETCH_CONFIG_TAG])
    new_config[CONFIG_VERSION_TAG] = version
    safe_move(config_file)
    write_config(new_config, config_file)
    logger.info("Updated configuration file [%s] to current version format: %s" % (config_file, version))
    return True


def copy_config_items(old_config, new_config, key_names):
    reset_keys = get_updated_config_keys(old_config)
    for key_name in key_names:
        item = old_config.get(key_name)
        if item is None or key_name in reset_keys:
            new_config[key_name] = json.loads(json.dumps(DEFAULT_CONFIG[key_name]), object_pairs_hook=OrderedDict)
        elif isinstance(item, dict):
            new_config[key_name].update(item)
        else:
            new_config[key_name] = item

    return new_config


def bootstrap_config(config_file=DEFAULT_CONFIG_FILE, base_dir=None):
    base_dir = base_dir or os.path.expanduser('~')
    if not os.access(base_dir, os.F_OK | os.R_OK | os.W_OK | os.X_OK) or not os.path.isdir(base_dir):
        logger.warning("Unable to bootstrap configuration: %s is not a writable directory" % base_dir)
        return
    if os.path.isfile(config_file):
        upgrade_config(config_file)
    else:
        write_config(config_file=config_file)
        print("Created default configuration file: %s" % config_file)
