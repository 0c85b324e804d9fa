"""Introspection of loaded code units.

The builder and engine only talk to a :class:`Reflector`. The default
implementation, :class:`ModuleReflector`, reads markers that the
``suiterunner.framework`` decorators store on modules, classes and functions.
"""

import importlib
import importlib.util
import inspect
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

import structlog

from suiterunner.core.markers import MARKERS_ATTR, MarkerInstance
from suiterunner.exceptions import TEST_FAULTS, DiscoveryError

log = structlog.get_logger("suiterunner.reflect")


@dataclass(frozen=True)
class MethodRef:
    """A method as seen on a particular class."""

    owner: type
    name: str
    function: Callable

    @property
    def full_name(self) -> str:
        return f"{type_full_name(self.owner)}.{self.name}"


def type_full_name(cls: type) -> str:
    """Return the fully qualified name of a class."""
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _unwrap(member: Any) -> Any:
    if isinstance(member, (staticmethod, classmethod)):
        return member.__func__
    return member


@runtime_checkable
class Reflector(Protocol):
    """Capabilities the builder and engine need from the host's introspection."""

    def list_types(self, unit: ModuleType) -> list[type]:
        ...

    def list_nested_types(self, cls: type) -> list[type]:
        ...

    def list_methods(self, cls: type) -> list[MethodRef]:
        ...

    def has_marker(self, construct: Any, marker_name: str, inherited: bool = False) -> bool:
        ...

    def get_markers(
        self, construct: Any, marker_name: Optional[str] = None, inherited: bool = False
    ) -> list[MarkerInstance]:
        ...

    def get_marker_param(self, marker: MarkerInstance, param_name: str) -> Any:
        ...

    def parameters(self, method: MethodRef) -> list[str]:
        ...

    def create_instance(self, cls: type) -> Any:
        ...

    def invoke(self, method: MethodRef, instance: Any, args: Sequence[Any] = (), kwargs: Optional[dict] = None) -> Any:
        ...


class ModuleReflector:
    """Reflector over Python modules and classes."""

    def list_types(self, unit: ModuleType) -> list[type]:
        """List classes defined in a module, in declaration order."""
        return [
            obj
            for obj in vars(unit).values()
            if inspect.isclass(obj) and obj.__module__ == unit.__name__
        ]

    def list_nested_types(self, cls: type) -> list[type]:
        """List classes defined inside a class body, in declaration order."""
        prefix = f"{cls.__qualname__}."
        return [
            obj
            for obj in vars(cls).values()
            if inspect.isclass(obj)
            and obj.__module__ == cls.__module__
            and obj.__qualname__.startswith(prefix)
        ]

    def list_methods(self, cls: type) -> list[MethodRef]:
        """List methods visible on a class, base classes first.

        An override keeps the position of the method it overrides.
        """
        found: dict[str, Callable] = {}
        for klass in reversed(cls.__mro__):
            if klass is object:
                continue
            for name, member in vars(klass).items():
                func = _unwrap(member)
                if inspect.isfunction(func):
                    found[name] = func
        return [MethodRef(owner=cls, name=name, function=func) for name, func in found.items()]

    def _own_markers(self, construct: Any) -> tuple[MarkerInstance, ...]:
        if isinstance(construct, MethodRef):
            construct = construct.function
        try:
            return tuple(vars(construct).get(MARKERS_ATTR, ()))
        except TypeError:
            return ()

    def _lineage(self, construct: Any) -> list[Any]:
        """Constructs whose markers count when looking up inherited markers."""
        if isinstance(construct, MethodRef):
            chain = []
            for klass in construct.owner.__mro__:
                member = vars(klass).get(construct.name)
                if member is not None:
                    chain.append(_unwrap(member))
            return chain or [construct.function]
        if inspect.isclass(construct):
            return [klass for klass in construct.__mro__ if klass is not object]
        return [construct]

    def get_markers(
        self, construct: Any, marker_name: Optional[str] = None, inherited: bool = False
    ) -> list[MarkerInstance]:
        """Return markers on a construct, optionally including inherited ones.

        Own markers come first; inherited ones follow, nearest base first.
        """
        sources = self._lineage(construct) if inherited else [construct]
        result: list[MarkerInstance] = []
        for source in sources:
            for marker in self._own_markers(source):
                if marker_name is None or marker.name == marker_name:
                    result.append(marker)
        return result

    def has_marker(self, construct: Any, marker_name: str, inherited: bool = False) -> bool:
        return bool(self.get_markers(construct, marker_name, inherited))

    def get_marker_param(self, marker: MarkerInstance, param_name: str) -> Any:
        return marker.get(param_name)

    def parameters(self, method: MethodRef) -> list[str]:
        """Names of the parameters a method accepts, excluding ``self``."""
        names = list(inspect.signature(method.function).parameters)
        member = inspect.getattr_static(method.owner, method.name, None)
        if names and not isinstance(member, staticmethod):
            names = names[1:]
        return names

    def create_instance(self, cls: type) -> Any:
        return cls()

    def invoke(self, method: MethodRef, instance: Any, args: Sequence[Any] = (), kwargs: Optional[dict] = None) -> Any:
        bound = getattr(instance, method.name) if instance is not None else getattr(method.owner, method.name)
        return bound(*args, **(kwargs or {}))


def load_code_unit(spec: str) -> ModuleType:
    """Load a code unit from a ``.py`` path or an importable module name."""
    path = Path(spec)
    if spec.endswith(".py") or path.is_file():
        path = path.resolve()
        if not path.is_file():
            raise DiscoveryError(f"Code unit not found: {path}")

        module_name = path.stem
        existing = sys.modules.get(module_name)
        if existing is not None and getattr(existing, "__file__", None) == str(path):
            return existing

        module_spec = importlib.util.spec_from_file_location(module_name, path)
        if module_spec is None or module_spec.loader is None:
            raise DiscoveryError(f"Cannot load code unit: {path}")

        module = importlib.util.module_from_spec(module_spec)
        sys.modules[module_name] = module
        try:
            module_spec.loader.exec_module(module)
        except TEST_FAULTS as e:
            sys.modules.pop(module_name, None)
            raise DiscoveryError(f"Error importing {path}: {e}") from e
        log.debug("Loaded code unit from file", unit=module_name, path=str(path))
        return module

    try:
        return importlib.import_module(spec)
    except TEST_FAULTS as e:
        raise DiscoveryError(f"Cannot import code unit '{spec}': {e}") from e
