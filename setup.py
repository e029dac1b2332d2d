#!/usr/bin/env python
from setuptools import setup, find_packages

setup(name  = 'leaselock',
    version = '1.0.0',
    description = 'A distributed lease lock built on top of DynamoDB conditional writes',
    long_description='A distributed lease lock built on top of DynamoDB conditional writes, '
                     'with background heartbeats and lease expiry warnings',
    classifiers = [
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: POSIX :: Linux',
        'Operating System :: Unix',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: System :: Networking',
        'Topic :: Utilities'
    ],
    keywords = 'python dynamodb lock lease',
    license = 'BSD',
    packages = find_packages(),
    platforms = ['Linux', 'Mac OS X', 'Win'],
    include_package_data = True,
    zip_safe = True,
    python_requires = '>=3.8',
    install_requires = [ 'boto3 >= 1.26.0', 'botocore >= 1.29.0' ],
    extras_require = {
        'quality'   : [ 'coverage >= 3.5.3', 'pytest >= 7.0.0', 'mock >= 4.0.0', 'pycodestyle >= 2.8.0' ],
        'documents' : [ 'Sphinx >= 1.2.2' ],
    },
)
