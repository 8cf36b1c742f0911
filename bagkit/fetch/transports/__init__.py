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
import sys
import logging
from importlib import import_module
from bagkit.fetch import SCHEME_HTTP, SCHEME_HTTPS
from bagkit.fetch.transports.fetch_http import HTTPFetchTransport

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TRANSPORTS = {
    SCHEME_HTTP: HTTPFetchTransport,
    SCHEME_HTTPS: HTTPFetchTransport,
}


def find_fetcher(scheme, fetch_config, **kwargs):
    clazz = None
    config = fetch_config.get(scheme, fetch_config.get(scheme.lower(), fetch_config.get(scheme.upper()))) or {}
    handler = config.get("handler")
    if not handler:
        clazz = DEFAULT_FETCH_TRANSPORTS.get(scheme.lower())
        if not clazz:
            return None

    if not clazz:
        try:
            module_name, class_name = handler.rsplit(".", 1)
            try:
                module = sys.modules[module_name]
            except KeyError:
                module = import_module(module_name)
            clazz = getattr(module, class_name) if module else None
        except (ImportError, AttributeError, ValueError):
            logger.debug("Import of fetch handler class [%s] failed" % handler)
        if not clazz:
            raise RuntimeError("Unable to import specified fetch handler class: [%s]" % handler)

    return clazz(config, **kwargs)
