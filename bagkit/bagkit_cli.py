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
import argparse
import os
import sys
import logging
from bagkit import bagkit_api as bk, inspect_path, get_typed_exception, VERSION
from bagkit.bagkit_config import bootstrap_config, DEFAULT_CONFIG_FILE, STANDARD_BAG_INFO_HEADERS
from bagkit.bagkit_digest import DEFAULT_REGISTRY


class VersionAction(argparse.Action):

    def __init__(self,
                 option_strings,
                 dest=argparse.SUPPRESS,
                 default=argparse.SUPPRESS,
                 help="show program's version number and exit"):
        super(VersionAction, self).__init__(
            option_strings=option_strings,
            dest=dest,
            default=default,
            nargs=0,
            help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        print("bagkit %s" % VERSION)
        bootstrap_config()
        parser.exit()


class AddMetadataAction(argparse.Action):

    def __init__(self, option_strings, dest, nargs=None, **kwargs):
        if nargs is not None:
            raise ValueError("nargs not allowed")
        super(AddMetadataAction, self).__init__(option_strings, dest, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        opt = option_string[2:]
        opt_caps = '-'.join([o.capitalize() for o in opt.split('-')])
        metadata = getattr(namespace, "metadata", None)
        if metadata is None:
            metadata = dict()
            setattr(namespace, "metadata", metadata)
        metadata[opt_caps] = values


def _fail(message):
    sys.stderr.write("Error: %s\n\n" % message)
    sys.exit(2)


def parse_cli(argv=None):
    description = 'bagkit utility for creating, validating and archiving BagIt bags'

    parser = argparse.ArgumentParser(
        description=description, epilog="For more information see: https://github.com/bagkit/bagkit")

    parser.add_argument('--version', action=VersionAction)

    standard_args = parser.add_argument_group('Bag arguments')

    update_arg = "--update"
    standard_args.add_argument(
        update_arg, action="store_true",
        help="Update an existing bag dir, regenerating manifests and fetch.txt if necessary.")

    archiver_arg = "--archiver"
    standard_args.add_argument(
        archiver_arg, choices=list(bk.ARCHIVE_FORMATS), help="Archive a bag using the specified format.")

    checksum_arg = "--checksum"
    standard_args.add_argument(
        checksum_arg, action='append', choices=list(DEFAULT_REGISTRY.names) + ['all'],
        help="Checksum algorithm to use: can be specified multiple times with different values. "
             "If \'all\' is specified, every supported checksum will be generated")

    fetch_arg = "--resolve-fetch"
    standard_args.add_argument(
        fetch_arg, "--fetch", choices=['all', 'missing'],
        help="Download remote files listed in the bag's fetch.txt file. "
             "The \"missing\" option only attempts to fetch files that do not "
             "already exist in the bag payload directory. "
             "The \"all\" option causes all fetch files to be re-acquired,"
             " even if they already exist in the bag payload directory.")

    validate_arg = "--validate"
    standard_args.add_argument(
        validate_arg, choices=['fast', 'full', 'structure'],
        help="Validate a bag directory or bag archive. If \"fast\" is specified, Payload-Oxum (if present) will be "
             "used to check that the payload files are present and accounted for. If \"full\" is specified, "
             "all checksums will be regenerated and compared to the corresponding entries in the manifest. "
             "If \"structure\" is specified, the bag will be checked for structural validity only.")

    validate_profile_arg = "--validate-profile"
    standard_args.add_argument(
        validate_profile_arg, action="store_true",
        help="Validate a bag against the profile given with --profile, or else the profile specified by the bag's "
             "\"BagIt-Profile-Identifier\" metadata field, or else the configured default profile.")

    profile_arg = "--profile"
    standard_args.add_argument(
        profile_arg, metavar='<profile>',
        help="A bundled profile name, a path to a profile file or a profile URL. When creating or updating a bag, "
             "the profile identifier is recorded in bag-info.txt.")

    config_file_arg = "--config-file"
    standard_args.add_argument(
        config_file_arg, default=DEFAULT_CONFIG_FILE, metavar='<file>',
        help="Optional path to a configuration file. If this argument is not specified, the configuration file "
             "defaults to: %s " % DEFAULT_CONFIG_FILE)

    metadata_file_arg = "--metadata-file"
    standard_args.add_argument(
        metadata_file_arg, metavar='<file>', help="Optional path to a JSON formatted metadata file")

    remote_file_manifest_arg = "--remote-file-manifest"
    standard_args.add_argument(
        remote_file_manifest_arg, metavar='<file>',
        help="Optional path to a JSON formatted remote file manifest configuration file used to add remote file entries"
             " to the bag manifest(s) and create the bag fetch.txt file.")

    standard_args.add_argument(
        '--quiet', action="store_true", help="Suppress logging output.")

    standard_args.add_argument(
        '--debug', action="store_true", help="Enable debug logging output.")

    standard_args.add_argument(
        'path', metavar="<path>", help="Path to a bag directory or bag archive file.")

    metadata_args = parser.add_argument_group('Bag metadata arguments')
    for header in sorted(STANDARD_BAG_INFO_HEADERS):
        metadata_args.add_argument('--%s' % header.lower(), action=AddMetadataAction)
    parser.set_defaults(metadata=None)

    args = parser.parse_args(argv)

    bk.configure_logging(level=logging.ERROR if args.quiet else (logging.DEBUG if args.debug else logging.INFO))

    is_file, is_dir, is_uri = inspect_path(args.path)
    if not is_file and not is_dir:
        _fail("file or directory not found: %s" % args.path)
    path = os.path.abspath(args.path)

    if args.archiver and not is_dir:
        _fail("A bag archive can only be created on directories.")

    if args.checksum and not is_dir:
        _fail("A checksum manifest can only be added to a bag directory.")

    if args.update and not is_dir:
        _fail("Only existing bag directories can be updated.")

    if args.resolve_fetch and not is_dir:
        _fail("Resolving remote files using %s can only target bag directories." % fetch_arg)

    if args.update and args.resolve_fetch:
        _fail("The %s argument is not compatible with the %s argument." % (update_arg, fetch_arg))

    if args.remote_file_manifest and args.resolve_fetch:
        _fail("The %s argument is not compatible with the %s argument." % (remote_file_manifest_arg, fetch_arg))

    is_bag = bk.is_bag(path) if is_dir else False
    for name, value in ((checksum_arg, args.checksum),
                        (remote_file_manifest_arg, args.remote_file_manifest),
                        (metadata_file_arg, args.metadata_file)):
        if value and not args.update and is_bag:
            _fail("Specifying %s for an existing bag requires the %s argument in order to apply any changes." %
                  (name, update_arg))

    if args.metadata and not args.update and is_bag:
        _fail("Adding or modifying metadata %s for an existing bag requires the %s argument in order to apply any "
              "changes." % (args.metadata, update_arg))

    return args, path, is_bag, is_file


def main(argv=None):

    args, path, is_bag, is_file = parse_cli(argv)

    archive = None
    temp_path = None
    error = None
    result = 0

    if not args.quiet:
        sys.stdout.write('\n')

    try:
        if not is_file:
            # do not try to create or update the bag if the user just wants to validate or complete an existing bag
            if not ((args.validate or args.validate_profile or args.resolve_fetch) and not args.update and is_bag):
                if args.checksum and 'all' in args.checksum:
                    args.checksum = list(DEFAULT_REGISTRY.names)
                # create or update the bag depending on the input arguments
                bk.make_bag(path,
                            algs=args.checksum,
                            update=args.update,
                            metadata=args.metadata,
                            metadata_file=args.metadata_file,
                            remote_file_manifest=args.remote_file_manifest,
                            config_file=args.config_file,
                            profile=args.profile)

        # otherwise just extract the bag if it is an archive and no other conflicting options specified
        elif not (args.validate or args.validate_profile):
            bk.extract_bag(path)
            if not args.quiet:
                sys.stdout.write('\n')
            return result

        if args.resolve_fetch:
            if not bk.resolve_fetch(path,
                                    force=True if args.resolve_fetch == 'all' else False,
                                    config_file=args.config_file):
                raise RuntimeError("One or more remote files could not be fetched")

        if args.validate:
            if is_file:
                temp_path = bk.extract_bag(path, temp=True)
            if args.validate == 'structure':
                bk.validate_bag_structure(temp_path if temp_path else path)
            else:
                bk.validate_bag(temp_path if temp_path else path,
                                fast=True if args.validate == 'fast' else False,
                                config_file=args.config_file)

        if args.archiver:
            archive = bk.archive_bag(path, args.archiver, config_file=args.config_file)

        if archive is None and is_file:
            archive = path

        if args.validate_profile:
            if is_file:
                if not temp_path:
                    temp_path = bk.extract_bag(path, temp=True)
            profile = bk.validate_bag_profile(temp_path if temp_path else path,
                                              profile_path=args.profile,
                                              config_file=args.config_file)
            bk.validate_bag_serialization(archive if archive else path, profile)

    except Exception as e:
        result = 1
        error = "Error: %s" % get_typed_exception(e)

    finally:
        if temp_path:
            bk.cleanup_bag(os.path.dirname(temp_path))
        if result != 0:
            sys.stdout.write("\n%s" % error)

    if not args.quiet:
        sys.stdout.write('\n')

    return result


if __name__ == '__main__':
    sys.exit(main())
