#!/usr/bin/env python

# --------------------------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for license information.
# --------------------------------------------------------------------------------------------

from codecs import open
from setuptools import setup, find_packages

try:
    from azext_vm_connect_diagnostics._version import __version__
except ImportError:
    __version__ = "0.1.0b1"

VERSION = __version__

CLASSIFIERS = [
    'Development Status :: 4 - Beta',
    'Intended Audience :: Developers',
    'Intended Audience :: System Administrators',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: 3.10',
    'Programming Language :: Python :: 3.11',
    'Programming Language :: Python :: 3.12',
    'Programming Language :: Python :: 3.13',
    'License :: OSI Approved :: MIT License',
]

# azure-cli-core, knack and the management SDKs ship with azure-cli; they are
# listed so the package also installs and tests outside an az environment.
DEPENDENCIES = [
    'azure-cli-core',
    'knack',
    'azure-core',
    'azure-mgmt-compute',
    'azure-mgmt-network',
    'azure-mgmt-authorization',
    'psutil>=5.9.0',
]

TEST_DEPENDENCIES = [
    'pytest',
    'pytest-asyncio',
]

with open('README.md', 'r', encoding='utf-8') as f:
    README = f.read()
with open('HISTORY.rst', 'r', encoding='utf-8') as f:
    HISTORY = f.read()

setup(
    name='vm-connect-diagnostics',
    version=VERSION,
    description='Microsoft Azure Command-Line Tools VM Connect Diagnostics Extension',
    author='Microsoft Corporation',
    author_email='azpycli@microsoft.com',
    url='https://github.com/Azure/azure-cli-extensions/tree/main/src/vm-connect-diagnostics',
    long_description=README + '\n\n' + HISTORY,
    long_description_content_type='text/markdown',
    license='MIT',
    classifiers=CLASSIFIERS,
    packages=find_packages(),
    install_requires=DEPENDENCIES,
    extras_require={'test': TEST_DEPENDENCIES},
    package_data={'azext_vm_connect_diagnostics': ['azext_metadata.json']},
)
