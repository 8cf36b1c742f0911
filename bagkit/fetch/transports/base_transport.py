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


class BaseFetchTransport(object):
    """
    A fetch transport retrieves the content of a single URL into a local file. ``fetch`` returns the output path
    on success and ``None`` on failure; transport level errors are logged rather than raised.
    """

    def __init__(self, config, **kwargs):
        self.config = config or dict()
        self.kwargs = kwargs

    def fetch(self, url, output_path, size=None, **kwargs):
        raise NotImplementedError("Method \"fetch\" is not implemented by %s" % type(self).__name__)

    def cleanup(self):
        pass
