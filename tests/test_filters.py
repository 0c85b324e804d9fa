"""Tests for category and selection filters."""

from suiterunner.core.filters import CategoryFilter, SelectionFilter


class TestCategoryFilter:
    """Tests for CategoryFilter."""

    def test_empty_matches_everything(self, build_sample):
        """Test that no categories means no filtering."""
        root = build_sample("sample_categories")
        category_filter = CategoryFilter()
        assert category_filter.is_empty
        assert all(category_filter.passes(child) for child in root.children)

    def test_blank_names_ignored(self):
        """Test that empty category names are dropped."""
        assert CategoryFilter(["", " ", "slow "]).categories == frozenset({"slow"})

    def test_case_matches_own_categories(self, build_sample):
        """Test matching on a case's own categories."""
        root = build_sample("sample_categories")
        category_filter = CategoryFilter(["slow"])
        assert category_filter.passes(root.find("sample_categories.CategoryFixture.slow_test"))
        assert not category_filter.passes(root.find("sample_categories.CategoryFixture.fast_test"))
        assert not category_filter.passes(root.find("sample_categories.CategoryFixture.untagged_test"))

    def test_suite_passes_through_descendant(self, build_sample):
        """Test that a suite passes when any descendant matches."""
        root = build_sample("sample_categories")
        category_filter = CategoryFilter(["smoke"])
        assert category_filter.passes(root)
        assert category_filter.passes(root.find("sample_categories.FastFixture"))
        assert not category_filter.passes(root.find("sample_categories.SlowFixture"))

    def test_ancestor_match_includes_everything_below(self, build_sample):
        """Test that children of a matching suite pass."""
        root = build_sample("sample_categories")
        case = root.find("sample_categories.SlowFixture.inherits_category")
        category_filter = CategoryFilter(["slow"])
        assert not category_filter.matches(case)
        assert category_filter.passes(case, ancestor_matched=True)


class TestSelectionFilter:
    """Tests for SelectionFilter."""

    def test_empty_selects_everything(self, build_sample):
        """Test that no names means no filtering."""
        root = build_sample("sample_basic")
        assert SelectionFilter().passes(root.children[0])

    def test_ancestors_and_descendants_pass(self, build_sample):
        """Test that a named node brings its ancestors and descendants."""
        root = build_sample("sample_categories")
        selection = SelectionFilter(["sample_categories.CategoryFixture"])
        fixture = root.find("sample_categories.CategoryFixture")

        assert selection.passes(root)
        assert selection.passes(fixture)
        assert selection.selects(fixture)
        assert selection.passes(fixture.children[0], ancestor_selected=True)
        assert not selection.passes(root.find("sample_categories.SlowFixture"))

    def test_resolve_partial_names(self, build_sample):
        """Test that trailing names resolve to full names."""
        root = build_sample("sample_categories")
        selection = SelectionFilter.resolve(root, ["CategoryFixture.fast_test", "FastFixture"])
        assert selection.names == frozenset(
            {
                "sample_categories.CategoryFixture.fast_test",
                "sample_categories.FastFixture",
            }
        )

    def test_resolve_unknown_keeps_names(self, build_sample):
        """Test that names matching nothing are kept as given."""
        root = build_sample("sample_basic")
        assert SelectionFilter.resolve(root, ["Missing"]).names == frozenset({"Missing"})
