"""Construction of the test model from marked code."""

import functools
import inspect
import os
import platform
import sys
from types import ModuleType
from typing import Any, Optional, Sequence, Union

import structlog

from suiterunner.core import markers
from suiterunner.core.markers import ConstructKind, MarkerCatalog, MarkerInstance, default_catalog
from suiterunner.core.model import Case, ExpectedException, RunState, Suite, TestNode
from suiterunner.core.reflect import MethodRef, ModuleReflector, Reflector, type_full_name
from suiterunner.exceptions import AmbiguousLifecycleMethod, DiscoveryError

log = structlog.get_logger("suiterunner.builder")

EXPLICIT_REASON = "Explicit selection required"
CONTEXT_PARAMETER = "context"


class PlatformHelper:
    """Answers whether the current platform satisfies a ``platform`` marker."""

    def __init__(self, names: Optional[Sequence[str]] = None):
        if names is None:
            names = [sys.platform, platform.system()]
            if os.name == "posix":
                names.append("unix")
            if sys.platform == "win32":
                names.append("win")
            if sys.platform == "darwin":
                names.append("macosx")
        self.names = {name.lower() for name in names if name}

    @staticmethod
    def _tokens(spec: Optional[str]) -> list[str]:
        if not spec:
            return []
        return [token.strip().lower() for token in spec.split(",") if token.strip()]

    def is_supported(self, include: Optional[str], exclude: Optional[str]) -> tuple[bool, Optional[str]]:
        """Return whether the platform is supported and, if not, why."""
        included = self._tokens(include)
        if included and not any(token in self.names for token in included):
            return False, f"Only supported on {include}"
        if any(token in self.names for token in self._tokens(exclude)):
            return False, f"Not supported on {exclude}"
        return True, None


class TestBuilder:
    """Builds suites and cases from classes and methods carrying markers."""

    __test__ = False

    def __init__(
        self,
        reflector: Optional[Reflector] = None,
        catalog: Optional[MarkerCatalog] = None,
        platform_helper: Optional[PlatformHelper] = None,
    ):
        """Initialize the builder.

        Args:
            reflector: Introspection capability (defaults to ModuleReflector)
            catalog: Recognized markers (defaults to the framework catalog)
            platform_helper: Platform check used for ``platform`` markers
        """
        self.reflector = reflector or ModuleReflector()
        self.catalog = catalog or default_catalog()
        self.platform_helper = platform_helper or PlatformHelper()

    def build(
        self,
        unit: ModuleType,
        fixtures: Optional[Sequence[str]] = None,
        parent_name: Optional[str] = None,
    ) -> Suite:
        """Build the suite for one code unit.

        Args:
            unit: Loaded module
            fixtures: Optional explicit list of fixture (or test) names to build
            parent_name: Full name of the enclosing suite, if any

        Raises:
            DiscoveryError: If the unit has no fixtures and none were requested,
                or a requested fixture cannot be located
        """
        suite, missing = self._build_unit(unit, fixtures, parent_name)
        if missing:
            raise DiscoveryError(f"Unable to locate fixture {', '.join(missing)}")
        return suite

    def build_all(
        self,
        units: Sequence[ModuleType],
        fixtures: Optional[Sequence[str]] = None,
        name: str = "suiterunner",
    ) -> Suite:
        """Build one root suite covering several code units."""
        if len(units) == 1:
            return self.build(units[0], fixtures)

        roots: list[TestNode] = []
        unlocated: set[str] = set(fixtures or [])
        for unit in units:
            try:
                suite, missing = self._build_unit(unit, fixtures, parent_name=name)
            except DiscoveryError as e:
                log.warning("Skipping code unit", unit=unit.__name__, error=str(e))
                continue
            unlocated &= set(missing)
            if fixtures and not suite.children:
                continue
            roots.append(suite)

        if fixtures and unlocated:
            raise DiscoveryError(f"Unable to locate fixture {', '.join(sorted(unlocated))}")
        if not roots:
            raise DiscoveryError("No fixtures found in any code unit")
        return Suite(name=name, full_name=name, children=tuple(roots))

    def _build_unit(
        self,
        unit: ModuleType,
        fixtures: Optional[Sequence[str]],
        parent_name: Optional[str],
    ) -> tuple[Suite, list[str]]:
        unit_name = unit.__name__
        unit_log = log.bind(unit=unit_name)

        types = self.reflector.list_types(unit)
        missing: list[str] = []
        if fixtures:
            candidates, missing = self._select_types(types, fixtures)
        else:
            candidates = [cls for cls in types if self._is_fixture(cls)]
            if not candidates:
                raise DiscoveryError(f"No fixtures found in {unit_name}")

        try:
            self._validate(unit, ConstructKind.ASSEMBLY, unit_name)
            run_state, reason, is_explicit = self._run_state(unit)
        except DiscoveryError as e:
            unit_log.warning("Malformed module markers", error=str(e))
            run_state, reason, is_explicit = RunState.NOT_RUNNABLE, str(e), False

        children = []
        for cls in candidates:
            node = self._build_fixture(cls, unit_name)
            if node is not None:
                children.append(node)

        unit_log.debug("Built code unit", fixtures=len(children))
        suite = Suite(
            name=unit_name,
            full_name=unit_name,
            parent_name=parent_name,
            run_state=run_state,
            reason=reason,
            is_explicit=is_explicit,
            children=tuple(children),
        )
        return suite, missing

    def _select_types(self, types: list[type], names: Sequence[str]) -> tuple[list[type], list[str]]:
        """Pick the types named in an explicit fixture list."""
        selected: list[type] = []
        missing: list[str] = []
        for name in names:
            matches = [
                cls
                for cls in types
                if name in (type_full_name(cls), cls.__qualname__)
                or name.startswith(f"{type_full_name(cls)}.")
                or name.startswith(f"{cls.__qualname__}.")
            ]
            if not matches:
                missing.append(name)
            for cls in matches:
                if cls not in selected:
                    selected.append(cls)
        # Keep declaration order
        return [cls for cls in types if cls in selected], missing

    def _is_fixture(self, cls: type) -> bool:
        if inspect.isabstract(cls):
            return False
        if self.reflector.has_marker(cls, markers.FIXTURE, inherited=True):
            return True
        return any(
            self.reflector.has_marker(method, markers.TEST, inherited=True)
            for method in self.reflector.list_methods(cls)
        )

    def _build_fixture(self, cls: type, parent_name: str) -> Optional[Suite]:
        """Build a fixture suite; malformed markers make only this node not runnable."""
        full_name = type_full_name(cls)
        try:
            return self._build_fixture_node(cls, full_name, parent_name)
        except DiscoveryError as e:
            log.warning("Fixture is not runnable", fixture=full_name, error=str(e))
            reason = str(e)
            children: list[TestNode] = []
            for member in self._members(cls):
                if isinstance(member, MethodRef):
                    children.append(
                        Case(
                            name=member.name,
                            full_name=f"{full_name}.{member.name}",
                            parent_name=full_name,
                            run_state=RunState.NOT_RUNNABLE,
                            reason=reason,
                            method=member,
                        )
                    )
                    continue
                node = self._build_fixture(member, full_name)
                if node is not None:
                    children.append(node)
            return Suite(
                name=cls.__name__,
                full_name=full_name,
                parent_name=parent_name,
                run_state=RunState.NOT_RUNNABLE,
                reason=reason,
                children=tuple(children),
                fixture_type=cls,
            )

    def _members(self, cls: type) -> list[Union[MethodRef, type]]:
        """Test methods and nested fixtures of a class, in declaration order.

        Inherited tests come first. A nested fixture follows the test methods
        declared above it in the class body.
        """
        methods = self.reflector.list_methods(cls)
        position = {method.name: index for index, method in enumerate(methods)}
        own_names = list(vars(cls))
        cursor = max((index for name, index in position.items() if name not in own_names), default=-1)

        ordered: list[tuple[int, int, Union[MethodRef, type]]] = [
            (index, 0, method)
            for index, method in enumerate(methods)
            if self.reflector.has_marker(method, markers.TEST, inherited=True)
        ]
        nested_types = {nested.__name__: nested for nested in self.reflector.list_nested_types(cls)}
        sequence = 0
        for name in own_names:
            if name in position:
                cursor = max(cursor, position[name])
            elif name in nested_types and self._is_fixture(nested_types[name]):
                sequence += 1
                ordered.append((cursor, sequence, nested_types[name]))
        return [member for _, _, member in sorted(ordered, key=lambda entry: entry[:2])]

    def _build_fixture_node(self, cls: type, full_name: str, parent_name: str) -> Optional[Suite]:
        self._validate(cls, ConstructKind.TYPE, full_name)
        methods = self.reflector.list_methods(cls)
        lifecycle = {
            role: self._find_lifecycle_method(full_name, methods, role)
            for role in markers.LIFECYCLE_ROLES
        }
        run_state, reason, is_explicit = self._run_state(cls)

        children: list[TestNode] = []
        for member in self._members(cls):
            if isinstance(member, MethodRef):
                children.append(self._build_case(member, full_name))
                continue
            node = self._build_fixture(member, full_name)
            if node is not None:
                children.append(node)

        if not children:
            log.debug("Fixture has no tests, excluded", fixture=full_name)
            return None

        fixture_marker = self._first(cls, markers.FIXTURE, inherited=True)
        return Suite(
            name=cls.__name__,
            full_name=full_name,
            parent_name=parent_name,
            run_state=run_state,
            reason=reason,
            is_explicit=is_explicit,
            categories=self._categories(cls),
            properties=self._properties(cls),
            description=fixture_marker.get("description") if fixture_marker else None,
            children=tuple(children),
            fixture_type=cls,
            factory=functools.partial(self.reflector.create_instance, cls),
            setup=lifecycle[markers.SETUP],
            teardown=lifecycle[markers.TEARDOWN],
            fixture_setup=lifecycle[markers.FIXTURE_SETUP],
            fixture_teardown=lifecycle[markers.FIXTURE_TEARDOWN],
        )

    def _build_case(self, method: MethodRef, parent_name: str) -> Case:
        full_name = f"{parent_name}.{method.name}"
        try:
            self._validate(method, ConstructKind.METHOD, full_name)
            self._check_signature(method)
            expected = self._expected_exception(method)
            run_state, reason, is_explicit = self._run_state(method)
        except DiscoveryError as e:
            log.warning("Test is not runnable", test=full_name, error=str(e))
            return Case(
                name=method.name,
                full_name=full_name,
                parent_name=parent_name,
                run_state=RunState.NOT_RUNNABLE,
                reason=str(e),
                method=method,
            )

        test_marker = self._first(method, markers.TEST, inherited=True)
        return Case(
            name=method.name,
            full_name=full_name,
            parent_name=parent_name,
            run_state=run_state,
            reason=reason,
            is_explicit=is_explicit,
            categories=self._categories(method),
            properties=self._properties(method),
            description=test_marker.get("description") if test_marker else None,
            method=method,
            expected=expected,
        )

    def _check_signature(self, method: MethodRef) -> None:
        extra = [name for name in self.reflector.parameters(method) if name != CONTEXT_PARAMETER]
        if extra:
            raise DiscoveryError(
                f"Method {method.full_name} has unexpected parameters: {', '.join(extra)}"
            )

    def _find_lifecycle_method(self, fixture_name: str, methods: list[MethodRef], role: str) -> Optional[MethodRef]:
        found = [m for m in methods if self.reflector.has_marker(m, role, inherited=True)]
        if len(found) > 1:
            raise AmbiguousLifecycleMethod(fixture_name, role, [m.name for m in found])
        if not found:
            return None
        method = found[0]
        self._validate(method, ConstructKind.METHOD, method.full_name)
        self._check_signature(method)
        return method

    def _validate(self, construct: Any, kind: ConstructKind, where: str) -> None:
        for marker in self.reflector.get_markers(construct):
            self.catalog.validate(marker, kind, where)

    def _first(self, construct: Any, name: str, inherited: bool = False) -> Optional[MarkerInstance]:
        found = self.reflector.get_markers(construct, name, inherited)
        return found[0] if found else None

    def _run_state(self, construct: Any) -> tuple[RunState, Optional[str], bool]:
        """Resolve ignore, explicit and platform markers in that order.

        Explicit overrides ignore; an unsupported platform overrides both.
        """
        run_state, reason, is_explicit = RunState.RUNNABLE, None, False

        ignore = self._first(construct, markers.IGNORE)
        if ignore is not None:
            run_state = RunState.IGNORED
            reason = self.reflector.get_marker_param(ignore, "reason") or ""

        explicit = self._first(construct, markers.EXPLICIT)
        if explicit is not None:
            is_explicit = True
            run_state = RunState.EXPLICIT
            reason = self.reflector.get_marker_param(explicit, "reason") or EXPLICIT_REASON

        for marker in self.reflector.get_markers(construct, markers.PLATFORM):
            supported, why = self.platform_helper.is_supported(
                self.reflector.get_marker_param(marker, "include"),
                self.reflector.get_marker_param(marker, "exclude"),
            )
            if not supported:
                run_state = RunState.SKIPPED
                reason = self.reflector.get_marker_param(marker, "reason") or why
                break

        return run_state, reason, is_explicit

    def _categories(self, construct: Any) -> frozenset[str]:
        return frozenset(
            self.reflector.get_marker_param(marker, "name")
            for marker in self.reflector.get_markers(construct, markers.CATEGORY)
        )

    def _properties(self, construct: Any) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for marker in self.reflector.get_markers(construct, markers.PROPERTY):
            name = self.reflector.get_marker_param(marker, "name")
            if name:
                properties[name] = self.reflector.get_marker_param(marker, "value")
        return properties

    def _expected_exception(self, method: MethodRef) -> Optional[ExpectedException]:
        found = self.reflector.get_markers(method, markers.EXPECTED_EXCEPTION)
        if not found:
            return None
        if len(found) > 1:
            raise DiscoveryError(f"{method.full_name} declares more than one expected exception")

        marker = found[0]
        exception_type = self.reflector.get_marker_param(marker, "exception_type")
        exception_name = self.reflector.get_marker_param(marker, "exception_name")
        if exception_type is None and not exception_name:
            raise DiscoveryError(f"{method.full_name}: expected exception needs a type or a name")

        return ExpectedException(
            exception_type=exception_type,
            exception_name=None if exception_type is not None else exception_name,
            message=self.reflector.get_marker_param(marker, "message"),
            match=self.reflector.get_marker_param(marker, "match") or markers.MatchType.EXACT,
        )
