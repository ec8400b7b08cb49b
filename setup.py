#!/usr/bin/env python3

# python setup.py sdist --format=zip,gztar

import importlib.util
import sys

from setuptools import setup, find_packages

MIN_PYTHON_VERSION = "3.10.0"
_min_python_version_tuple = tuple(map(int, (MIN_PYTHON_VERSION.split("."))))


if sys.version_info[:3] < _min_python_version_tuple:
    sys.exit("Error: trdwallet requires Python version >= %s..." % MIN_PYTHON_VERSION)

with open('contrib/requirements/requirements.txt') as f:
    requirements = f.read().splitlines()

# load version.py; needlessly complicated alternative to "imp.load_source":
version_spec = importlib.util.spec_from_file_location('version', 'trdwallet/version.py')
version_module = version = importlib.util.module_from_spec(version_spec)
version_spec.loader.exec_module(version_module)

extras_require = {
    'tests': ['pytest'],
}


setup(
    name="trdwallet",
    version=version.TRDWALLET_VERSION,
    python_requires='>={}'.format(MIN_PYTHON_VERSION),
    install_requires=requirements,
    extras_require=extras_require,
    packages=(['trdwallet',]
              + [('trdwallet.'+pkg) for pkg in
                 find_packages('trdwallet', exclude=["tests"])]),
    package_dir={
        'trdwallet': 'trdwallet'
    },
    entry_points={
        'console_scripts': ['trdwallet=trdwallet.commands:main'],
    },
    description="Wallet state synchronization engine for the TRD indexer",
    author="The trdwallet developers",
    license="MIT Licence",
    long_description="""Keeps the local state of a TRD wallet in sync with an indexing service""",
)
