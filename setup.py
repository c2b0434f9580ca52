#!/usr/bin/env python
import sys
import os

if len(sys.argv) == 1:
    sys.argv.append('install')

# Use our own pytest-based test harness
if sys.argv[1] == 'test':
    from subprocess import call
    sys.exit(call([sys.executable, 'test.py'] + sys.argv[2:]))

from setuptools import setup, find_packages

sys.path.insert(0, os.path.dirname(__file__))
import multifit

packages = find_packages(include=['multifit', 'multifit.*'])

dist = setup(
    name='multifit',
    version=multifit.__version__,
    description='Simultaneous model fitting across multiple exposures',
    long_description=open('README.rst').read(),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Science/Research',
        'License :: Public Domain',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Scientific/Engineering',
        'Topic :: Scientific/Engineering :: Astronomy',
    ],
    packages=packages,
    python_requires='>=3.8',
    install_requires=['numpy', 'scipy>=1.11', 'matplotlib'],
    extras_require={'test': ['pytest']},
)

# End of file
