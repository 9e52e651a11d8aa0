#!/usr/bin/env python
import re

from setuptools import setup

with open('pydhcpc/__init__.py', 'r') as f:
    version = re.search(r"__version__ = '([^']+)'", f.read()).group(1)

readme = open("README.md", "r")


setup(name='pydhcpc',
      version=version,
      description='Asyncio DHCPv4 client',
      url='https://github.com/svinota/pyroute2',
      license='dual license GPLv2+ and Apache v2',
      packages=['pydhcpc',
                'pydhcpc.enums'],
      entry_points={
          'console_scripts': ['pydhcpc=pydhcpc.cli:run'],
      },
      python_requires='>=3.11',
      install_requires=['pyroute2>=0.9.1', ],
      extras_require={'dev': ['pytest',
                              'pytest-asyncio',
                              'pytest-timeout',
                              'pytest-cov',
                              'nox']},
      classifiers=['License :: OSI Approved :: GNU General Public ' +
                   'License v2 or later (GPLv2+)',
                   'License :: OSI Approved :: Apache Software License',
                   'Programming Language :: Python',
                   'Topic :: System :: Networking',
                   'Topic :: System :: Systems Administration',
                   'Operating System :: POSIX :: Linux',
                   'Intended Audience :: Developers',
                   'Intended Audience :: System Administrators',
                   'Programming Language :: Python :: 3',
                   'Programming Language :: Python :: 3.11',
                   'Programming Language :: Python :: 3.12',
                   'Programming Language :: Python :: 3.13',
                   'Development Status :: 4 - Beta'],
      long_description=readme.read(),
      long_description_content_type='text/markdown')
