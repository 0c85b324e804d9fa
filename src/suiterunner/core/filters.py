"""Filters deciding which parts of the test model take part in a run."""

from typing import Iterable

from suiterunner.core.model import Suite, TestNode


class CategoryFilter:
    """Selects nodes whose categories intersect a set of names.

    An empty filter matches everything. A suite passes if it matches itself
    or if any descendant passes; everything below a matching suite passes.
    """

    def __init__(self, categories: Iterable[str] = ()):
        self.categories = frozenset(c.strip() for c in categories if c and c.strip())

    @property
    def is_empty(self) -> bool:
        return not self.categories

    def matches(self, node: TestNode) -> bool:
        """Check the node's own categories only."""
        return self.is_empty or bool(self.categories & node.categories)

    def passes(self, node: TestNode, ancestor_matched: bool = False) -> bool:
        if ancestor_matched or self.matches(node):
            return True
        if isinstance(node, Suite):
            return any(self.passes(child) for child in node.children)
        return False

    def __repr__(self) -> str:
        return f"CategoryFilter({sorted(self.categories)!r})"


class SelectionFilter:
    """Selects nodes by full name, together with their ancestors and descendants."""

    def __init__(self, names: Iterable[str] = ()):
        self.names = frozenset(n.strip() for n in names if n and n.strip())

    @property
    def is_empty(self) -> bool:
        return not self.names

    def selects(self, node: TestNode) -> bool:
        """Check whether the node itself was named."""
        return node.full_name in self.names

    def passes(self, node: TestNode, ancestor_selected: bool = False) -> bool:
        if self.is_empty or ancestor_selected or self.selects(node):
            return True
        prefix = f"{node.full_name}."
        return any(name.startswith(prefix) for name in self.names)

    def __repr__(self) -> str:
        return f"SelectionFilter({sorted(self.names)!r})"

    @classmethod
    def resolve(cls, root: Suite, names: Iterable[str]) -> "SelectionFilter":
        """Resolve full or trailing partial names against a built tree."""
        wanted = [n.strip() for n in names if n and n.strip()]
        resolved: set[str] = set()
        for node in _walk(root):
            for name in wanted:
                if node.full_name == name or node.full_name.endswith(f".{name}"):
                    resolved.add(node.full_name)
        return cls(resolved or wanted)


def _walk(node: TestNode):
    yield node
    if isinstance(node, Suite):
        for child in node.children:
            yield from _walk(child)
