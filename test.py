#!/usr/bin/env python

"""
Run tests for multifit.

Usage:

./test.py
    - run all tests

./test.py --cov=multifit
    - run all tests with coverage report (needs pytest-cov)
"""

import os
import sys

import pytest

# Make sure that we have a private version of mplconfig
mplconfig = os.path.join(os.getcwd(), '.mplconfig')
os.environ['MPLCONFIGDIR'] = mplconfig
if not os.path.exists(mplconfig):
    os.mkdir(mplconfig)
import matplotlib
matplotlib.use('Agg')

sys.dont_write_bytecode = True

# Check that we are running from the root.
root = os.path.abspath(os.getcwd())
assert os.path.exists(
    os.path.join(root, 'multifit', 'evaluator.py')), "Not in multifit root"
sys.path.insert(0, root)

# Collect test_* functions from every module, not just test_*.py files
pytest_args = ['-v', '-o', 'python_files=*.py', '--doctest-modules']
pytest_args += sys.argv[1:]  # allow coverage arguments
pytest_args += [os.path.join(root, 'multifit')]

print("pytest " + " ".join(pytest_args))
sys.exit(pytest.main(pytest_args))
