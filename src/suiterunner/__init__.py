"""
SuiteRunner - a declarative unit-test framework and console runner.

This package provides tools to:
- Mark classes and methods as fixtures, tests and lifecycle hooks
- Build a hierarchical suite from loaded modules
- Run it in-process or in an isolated child process, streaming events
- Write an XML result document
"""

__version__ = "0.1.0"
__author__ = "SuiteRunner Team"
