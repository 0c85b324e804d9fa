"""Catalog of the declarative markers SuiteRunner recognizes."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from suiterunner.exceptions import DiscoveryError

# Attribute under which markers are stored on a decorated construct
MARKERS_ATTR = "__suiterunner_markers__"

# Markers that apply to modules, classes and methods
IGNORE = "ignore"
EXPLICIT = "explicit"
PLATFORM = "platform"

# Markers that apply to classes and methods
CATEGORY = "category"
PROPERTY = "property"

# Markers that apply only to classes
FIXTURE = "fixture"

# Markers that apply only to methods
TEST = "test"
SETUP = "setup"
TEARDOWN = "teardown"
FIXTURE_SETUP = "fixture_setup"
FIXTURE_TEARDOWN = "fixture_teardown"
EXPECTED_EXCEPTION = "expected_exception"

LIFECYCLE_ROLES = (SETUP, TEARDOWN, FIXTURE_SETUP, FIXTURE_TEARDOWN)


class ConstructKind(str, Enum):
    """Kinds of code constructs a marker can decorate."""

    ASSEMBLY = "assembly"
    TYPE = "type"
    METHOD = "method"
    PROPERTY = "property"


class MatchType(str, Enum):
    """How an expected exception message is compared with the actual one."""

    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"

    def matches(self, expected: str, actual: str) -> bool:
        """Check whether ``actual`` satisfies ``expected`` under this policy."""
        if self is MatchType.CONTAINS:
            return expected in actual
        if self is MatchType.STARTS_WITH:
            return actual.startswith(expected)
        if self is MatchType.ENDS_WITH:
            return actual.endswith(expected)
        if self is MatchType.REGEX:
            return re.search(expected, actual) is not None
        return expected == actual

    @property
    def phrase(self) -> str:
        """Wording used in mismatch messages."""
        return {
            MatchType.EXACT: "message",
            MatchType.CONTAINS: "message containing",
            MatchType.STARTS_WITH: "message starting with",
            MatchType.ENDS_WITH: "message ending with",
            MatchType.REGEX: "message matching",
        }[self]


@dataclass(frozen=True)
class Marker:
    """A recognized marker kind.

    Attributes:
        name: Unique marker name
        applies_to: Construct kinds the marker may decorate
        parameters: Ordered parameter names mapped to their accepted types
    """

    name: str
    applies_to: frozenset[ConstructKind]
    parameters: tuple[tuple[str, tuple[type, ...]], ...] = ()

    def parameter_names(self) -> list[str]:
        return [name for name, _ in self.parameters]

    def validate(self, instance: "MarkerInstance", kind: ConstructKind, where: str) -> None:
        """Check that ``instance`` is well formed and legal on ``kind``."""
        if kind not in self.applies_to:
            raise DiscoveryError(f"Marker '{self.name}' cannot be applied to {kind.value} {where}")

        accepted = dict(self.parameters)
        for param, value in instance.params:
            if param not in accepted:
                raise DiscoveryError(
                    f"Marker '{self.name}' on {where} has unknown parameter '{param}'"
                )
            if value is not None and not isinstance(value, accepted[param]):
                raise DiscoveryError(
                    f"Marker '{self.name}' on {where}: parameter '{param}' "
                    f"has unexpected type {type(value).__name__}"
                )


@dataclass(frozen=True)
class MarkerInstance:
    """A marker attached to a construct, with its parameter values."""

    name: str
    params: tuple[tuple[str, Any], ...] = field(default=())

    def get(self, param: str, default: Any = None) -> Any:
        for key, value in self.params:
            if key == param:
                return value
        return default

    @classmethod
    def create(cls, name: str, /, **params: Any) -> "MarkerInstance":
        return cls(name=name, params=tuple(params.items()))


class MarkerCatalog:
    """Fixed registry of recognized markers."""

    def __init__(self, markers: Iterable[Marker] = ()):
        self._markers: dict[str, Marker] = {}
        for marker in markers:
            self.register(marker)

    def register(self, marker: Marker) -> None:
        if marker.name in self._markers:
            raise ValueError(f"Marker already registered: {marker.name}")
        self._markers[marker.name] = marker

    def get(self, name: str) -> Optional[Marker]:
        return self._markers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._markers

    def __iter__(self):
        return iter(self._markers.values())

    def validate(self, instance: MarkerInstance, kind: ConstructKind, where: str) -> None:
        """Validate a marker instance found on a construct of the given kind."""
        marker = self.get(instance.name)
        if marker is None:
            raise DiscoveryError(f"Unknown marker '{instance.name}' on {where}")
        marker.validate(instance, kind, where)


_ANY_RUNNABLE = frozenset({ConstructKind.ASSEMBLY, ConstructKind.TYPE, ConstructKind.METHOD})
_TYPE_OR_METHOD = frozenset({ConstructKind.TYPE, ConstructKind.METHOD})
_TYPE = frozenset({ConstructKind.TYPE})
_METHOD = frozenset({ConstructKind.METHOD})

_STR = (str,)


def default_catalog() -> MarkerCatalog:
    """Build the catalog of markers understood by the framework."""
    return MarkerCatalog(
        [
            Marker(IGNORE, _ANY_RUNNABLE, (("reason", _STR),)),
            Marker(EXPLICIT, _ANY_RUNNABLE, (("reason", _STR),)),
            Marker(
                PLATFORM,
                _ANY_RUNNABLE,
                (("include", _STR), ("exclude", _STR), ("reason", _STR)),
            ),
            Marker(CATEGORY, _TYPE_OR_METHOD, (("name", _STR),)),
            Marker(PROPERTY, _TYPE_OR_METHOD, (("name", _STR), ("value", (object,)))),
            Marker(FIXTURE, _TYPE, (("description", _STR),)),
            Marker(TEST, _METHOD, (("description", _STR),)),
            Marker(SETUP, _METHOD),
            Marker(TEARDOWN, _METHOD),
            Marker(FIXTURE_SETUP, _METHOD),
            Marker(FIXTURE_TEARDOWN, _METHOD),
            Marker(
                EXPECTED_EXCEPTION,
                _METHOD,
                (
                    ("exception_type", (type,)),
                    ("exception_name", _STR),
                    ("message", _STR),
                    ("match", (MatchType,)),
                ),
            ),
        ]
    )
