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
import datetime
import logging
import certifi
import requests
from requests.utils import default_user_agent
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from bagkit import urlsplit, stob, get_typed_exception, VERSION
from bagkit.bagkit_config import DEFAULT_FETCH_CONFIG, DEFAULT_FETCH_HTTP_SESSION_CONFIG
from bagkit.fetch import SCHEME_HTTP, Megabyte, get_transfer_summary, ensure_valid_output_path, \
    check_transfer_size_mismatch
from bagkit.fetch.transports.base_transport import BaseFetchTransport

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * Megabyte
HEADERS = {"User-Agent": "bagkit/%s (%s)" % (VERSION, default_user_agent())}


class HTTPFetchTransport(BaseFetchTransport):

    def __init__(self, config, **kwargs):
        super(HTTPFetchTransport, self).__init__(config, **kwargs)
        self.config = config or DEFAULT_FETCH_CONFIG[SCHEME_HTTP]
        self.sessions = dict()

    def bypass_cert_verify(self, url):
        bypass = self.config.get("bypass_ssl_cert_verification", False)
        if isinstance(bypass, bool) and bypass:
            logger.warning("Bypassing SSL certificate verification due to global configuration setting. "
                           "Disabling all SSL certificate verification in this way is NOT recommended.")
            return True
        elif isinstance(bypass, list):
            for uri in bypass:
                if uri in url:
                    logger.warning(
                        "Bypassing SSL certificate validation for URL %s due to matching whitelist entry: [%s]" %
                        (url, uri))
                    return True
        return False

    @staticmethod
    def init_new_session(session_config):
        settings = dict(DEFAULT_FETCH_HTTP_SESSION_CONFIG)
        settings.update(session_config or {})
        retries = Retry(connect=settings["retry_connect"],
                        read=settings["retry_read"],
                        backoff_factor=settings["retry_backoff_factor"],
                        status_forcelist=settings["retry_status_forcelist"])
        session = requests.session()
        for prefix in ("http://", "https://"):
            session.mount(prefix, HTTPAdapter(max_retries=retries))

        return session

    def get_session(self, url):
        url_parts = urlsplit(url)
        base_url = "%s://%s" % (url_parts.scheme, url_parts.netloc)
        if base_url not in self.sessions:
            self.sessions[base_url] = self.init_new_session(self.config.get("session_config"))
        return self.sessions[base_url]

    @staticmethod
    def _stream_to_file(response, output_path):
        total = 0
        try:
            with open(output_path, "wb") as data_file:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    data_file.write(chunk)
                    total += len(chunk)
        except requests.exceptions.RequestException:
            # no partial files left behind
            if os.path.isfile(output_path):
                os.remove(output_path)
            raise
        return total

    def fetch(self, url, output_path, size=None, **kwargs):
        headers = dict(kwargs.get("headers", {"Connection": "keep-alive"}))
        headers.update(HEADERS)
        output_path = ensure_valid_output_path(url, output_path)
        verify = False if self.bypass_cert_verify(url) else certifi.where()
        try:
            logger.info("Attempting GET from URL: %s" % url)
            r = self.get_session(url).get(url,
                                          stream=True,
                                          headers=headers,
                                          allow_redirects=stob(self.config.get("allow_redirects", True)),
                                          verify=verify)
            if r.status_code != 200:
                logger.error("HTTP GET Failed for URL: %s" % url)
                logger.error("Host %s responded:\n\n%s" % (urlsplit(url).netloc, r.text))
                logger.warning("File transfer failed: [%s]" % output_path)
                return None

            start = datetime.datetime.now()
            logger.debug("Transferring file %s to %s" % (url, output_path))
            total = self._stream_to_file(r, output_path)
            check_transfer_size_mismatch(output_path, size, total)
            logger.info("File [%s] transfer complete. %s" %
                        (output_path, get_transfer_summary(total, datetime.datetime.now() - start)))
            return output_path
        except requests.exceptions.RequestException as e:
            logger.error("HTTP Request Exception: %s" % (get_typed_exception(e)))

        return None

    def cleanup(self):
        for session in self.sessions.values():
            session.close()
        self.sessions.clear()
