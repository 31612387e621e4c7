#!/usr/bin/env python

# Setup script for the `tailscale-remote-unlock' package.
#
# Last Change: October 18, 2026

"""
Setup script for the `tailscale-remote-unlock` package.

**pip install .**
  Install from the working directory into the current Python environment.

**python -m build**
  Build source and wheel distribution archives.
"""

# Standard library modules.
import codecs
import os
import re

# De-facto standard solution for Python packaging.
from setuptools import find_packages, setup


def get_contents(*args):
    """Get the contents of a file relative to the source distribution directory."""
    with codecs.open(get_absolute_path(*args), 'r', 'UTF-8') as handle:
        return handle.read()


def get_version(*args):
    """Extract the version number from a Python module."""
    contents = get_contents(*args)
    metadata = dict(re.findall('__([a-z]+)__ = [\'"]([^\'"]+)', contents))
    return metadata['version']


def get_requirements(*args):
    """Get requirements from pip requirement files."""
    requirements = set()
    contents = get_contents(*args)
    for line in contents.splitlines():
        # Strip comments.
        line = re.sub(r'^#.*|\s#.*', '', line)
        # Ignore empty lines
        if line and not line.isspace():
            requirements.add(re.sub(r'\s+', '', line))
    return sorted(requirements)


def get_absolute_path(*args):
    """Transform relative pathnames into absolute pathnames."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), *args)


setup(name='tailscale-remote-unlock',
      version=get_version('tailscale_remote_unlock', '__init__.py'),
      description="Unlock encrypted ZFS datasets over SSH on a Tailscale network",
      long_description=get_contents('README.rst'),
      license='MIT',
      packages=find_packages(exclude=['tests']),
      entry_points=dict(console_scripts=[
          'tailscale-remote-unlock = tailscale_remote_unlock.cli:main',
      ]),
      python_requires='>=3.11',
      install_requires=get_requirements('requirements.txt'),
      extras_require=dict(tests=get_requirements('requirements-tests.txt')),
      classifiers=[
          'Development Status :: 3 - Alpha',
          'Environment :: Console',
          'Environment :: No Input/Output (Daemon)',
          'Intended Audience :: System Administrators',
          'License :: OSI Approved :: MIT License',
          'Natural Language :: English',
          'Operating System :: POSIX :: Linux',
          'Programming Language :: Python',
          'Programming Language :: Python :: 3',
          'Programming Language :: Python :: 3.11',
          'Programming Language :: Python :: 3.12',
          'Programming Language :: Python :: Implementation :: CPython',
          'Topic :: System :: Boot',
          'Topic :: System :: Filesystems',
          'Topic :: System :: Systems Administration',
          'Topic :: Utilities',
      ])
