"""Core test model construction and execution.

The engine, isolation and runner modules are imported directly from their
submodules; they depend on ``suiterunner.framework``, which itself imports
from this package.
"""

from suiterunner.core.builder import TestBuilder
from suiterunner.core.filters import CategoryFilter, SelectionFilter
from suiterunner.core.reflect import ModuleReflector

__all__ = ["TestBuilder", "ModuleReflector", "CategoryFilter", "SelectionFilter"]
