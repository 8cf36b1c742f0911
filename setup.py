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

""" Installation script for the bagkit utilities.
"""
import io
import re
from setuptools import setup, find_packages

__version__ = re.search(
    r'__version__\s*=\s*[\'"]([^\'"]*)[\'"]',
    io.open('bagkit/__init__.py', encoding='utf_8_sig').read()
    ).group(1)

with open('README.md') as readme_file:
    readme = readme_file.read()

setup(
    name="bagkit",
    description="Utilities for creating, validating, fetching and archiving BagIt bags",
    long_description=readme,
    long_description_content_type='text/markdown',
    url='https://github.com/bagkit/bagkit/',
    version=__version__,
    packages=find_packages(exclude=['test', 'test.*']),
    package_data={'bagkit': ['profiles/*.json']},
    test_suite='test',
    entry_points={
        'console_scripts': [
            'bagkit = bagkit.bagkit_cli:main'
        ]
    },
    install_requires=['tzlocal',
                      'certifi',
                      'requests>=2.7.0',
                      'urllib3',
                      'importlib_metadata',
                      'packaging'],
    extras_require={
        'test': ['mock', 'coverage'],
    },
    python_requires='>=3.8, <4',
    license='Apache 2.0',
    classifiers=[
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        "Operating System :: POSIX",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: Microsoft :: Windows",
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12'
    ]
)
