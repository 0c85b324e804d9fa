"""Tests for the marker catalog."""

import pytest

from suiterunner.core import markers
from suiterunner.core.markers import (
    ConstructKind,
    Marker,
    MarkerCatalog,
    MarkerInstance,
    MatchType,
    default_catalog,
)
from suiterunner.exceptions import DiscoveryError


class TestMatchType:
    """Tests for MatchType."""

    @pytest.mark.parametrize(
        "match,expected,actual,result",
        [
            (MatchType.EXACT, "bad input", "bad input", True),
            (MatchType.EXACT, "bad", "bad input", False),
            (MatchType.CONTAINS, "d in", "bad input", True),
            (MatchType.STARTS_WITH, "bad", "bad input", True),
            (MatchType.STARTS_WITH, "input", "bad input", False),
            (MatchType.ENDS_WITH, "input", "bad input", True),
            (MatchType.REGEX, r"^b\w+ i", "bad input", True),
            (MatchType.REGEX, r"^input", "bad input", False),
        ],
    )
    def test_matches(self, match, expected, actual, result):
        """Test each comparison policy."""
        assert match.matches(expected, actual) is result

    def test_from_string(self):
        """Test that policies can be given by value."""
        assert MatchType("starts_with") is MatchType.STARTS_WITH

    def test_phrase(self):
        """Test the wording used in mismatch messages."""
        assert MatchType.EXACT.phrase == "message"
        assert MatchType.CONTAINS.phrase == "message containing"


class TestMarker:
    """Tests for Marker validation."""

    def test_rejects_wrong_construct_kind(self):
        """Test that a marker is refused on a construct it does not apply to."""
        marker = Marker("fixture", frozenset({ConstructKind.TYPE}))
        with pytest.raises(DiscoveryError, match="cannot be applied to method"):
            marker.validate(MarkerInstance.create("fixture"), ConstructKind.METHOD, "mod.C.m")

    def test_rejects_unknown_parameter(self):
        """Test that unknown parameters are refused."""
        marker = Marker("ignore", frozenset({ConstructKind.METHOD}), (("reason", (str,)),))
        with pytest.raises(DiscoveryError, match="unknown parameter 'why'"):
            marker.validate(MarkerInstance.create("ignore", why="x"), ConstructKind.METHOD, "m")

    def test_rejects_wrong_parameter_type(self):
        """Test that parameter types are checked."""
        marker = Marker("ignore", frozenset({ConstructKind.METHOD}), (("reason", (str,)),))
        with pytest.raises(DiscoveryError, match="unexpected type int"):
            marker.validate(MarkerInstance.create("ignore", reason=3), ConstructKind.METHOD, "m")

    def test_accepts_valid_instance(self):
        """Test that a well-formed instance passes."""
        marker = Marker("ignore", frozenset({ConstructKind.METHOD}), (("reason", (str,)),))
        marker.validate(MarkerInstance.create("ignore", reason="later"), ConstructKind.METHOD, "m")


class TestMarkerInstance:
    """Tests for MarkerInstance."""

    def test_get_keeps_order_and_defaults(self):
        """Test parameter lookup."""
        instance = MarkerInstance.create("platform", include="linux", exclude="win")
        assert instance.get("include") == "linux"
        assert instance.get("reason") is None
        assert instance.get("reason", "none") == "none"
        assert [name for name, _ in instance.params] == ["include", "exclude"]


class TestMarkerCatalog:
    """Tests for MarkerCatalog."""

    def test_default_catalog_contents(self):
        """Test that every framework marker is registered."""
        catalog = default_catalog()
        for name in (
            markers.FIXTURE,
            markers.TEST,
            markers.SETUP,
            markers.TEARDOWN,
            markers.FIXTURE_SETUP,
            markers.FIXTURE_TEARDOWN,
            markers.IGNORE,
            markers.EXPLICIT,
            markers.PLATFORM,
            markers.CATEGORY,
            markers.PROPERTY,
            markers.EXPECTED_EXCEPTION,
        ):
            assert name in catalog

    def test_scopes(self):
        """Test which construct kinds the main markers apply to."""
        catalog = default_catalog()
        assert catalog.get(markers.FIXTURE).applies_to == frozenset({ConstructKind.TYPE})
        assert catalog.get(markers.TEST).applies_to == frozenset({ConstructKind.METHOD})
        assert ConstructKind.ASSEMBLY in catalog.get(markers.IGNORE).applies_to
        assert ConstructKind.ASSEMBLY not in catalog.get(markers.CATEGORY).applies_to

    def test_unknown_marker(self):
        """Test that unknown markers are refused."""
        with pytest.raises(DiscoveryError, match="Unknown marker 'retry'"):
            default_catalog().validate(MarkerInstance.create("retry"), ConstructKind.METHOD, "m")

    def test_duplicate_registration(self):
        """Test that a marker name can only be registered once."""
        catalog = MarkerCatalog([Marker("a", frozenset({ConstructKind.TYPE}))])
        with pytest.raises(ValueError):
            catalog.register(Marker("a", frozenset({ConstructKind.METHOD})))
