#!/usr/bin/env python3
from os import path
from setuptools import setup

with open(path.join(path.dirname(path.abspath(__file__)), 'README.rst')) as f:
    long_description = f.read()

setup(
    name='couchrelay',
    version='1.0.0',
    license='GNU Affero GPL v3',
    author='Florian Leitner',
    author_email='florian.leitner@gmail.com',
    description='a streaming CouchDB document store adapter',
    long_description=long_description,
    python_requires='>=3.5',
    install_requires=[],
    extras_require={
        'test': ['pytest'],
    },
    packages=[
        'couchrelay',
    ],
    package_dir={'': 'src'},
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: GNU Affero General Public License v3',
        'Operating System :: POSIX',
        'Programming Language :: Python :: 3',
        'Topic :: Database',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Software Development :: Libraries',
    ],
)
