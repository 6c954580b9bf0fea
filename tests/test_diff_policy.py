"""Tests for field-level drift detection."""

from types import SimpleNamespace

import pytest

from resource_operator.diff_policy import Comparison, DiffPolicy, FieldPolicy

POLICY = DiffPolicy(
    (
        FieldPolicy("image", desired=lambda s: s.image, observed=lambda r: r.image),
        FieldPolicy(
            "state",
            desired=lambda s: s.state,
            observed=lambda r: r.state,
            comparison=Comparison.CASE_INSENSITIVE,
        ),
        FieldPolicy("hosts", desired=lambda s: s.hosts, observed=lambda r: r.hosts),
    )
)


def spec(**values: object) -> SimpleNamespace:
    defaults = {"image": "nginx:1.25", "state": "On", "hosts": ("a", "b")}
    return SimpleNamespace(**{**defaults, **values})


class TestDiffPolicy:
    """Tests for DiffPolicy comparisons."""

    def test_no_drift(self) -> None:
        """Test that equal values report no change."""
        assert POLICY.changed_fields(spec(), spec()) == []
        assert POLICY.differs(spec(), spec()) is False

    def test_exact_field_changed(self) -> None:
        """Test that exact fields are compared as-is."""
        assert POLICY.changed_fields(spec(), spec(image="nginx:1.26")) == ["image"]

    def test_case_insensitive_field(self) -> None:
        """Test that case-insensitive fields ignore case only."""
        assert POLICY.changed_fields(spec(state="on"), spec(state="ON")) == []
        assert POLICY.changed_fields(spec(state="On"), spec(state="Off")) == ["state"]

    def test_sequences_compared_whole(self) -> None:
        """Test that order matters in sequence fields."""
        assert POLICY.changed_fields(spec(), spec(hosts=("b", "a"))) == ["hosts"]

    def test_changed_fields_keep_policy_order(self) -> None:
        """Test that all changed fields are reported in declaration order."""
        changed = POLICY.changed_fields(spec(), spec(image="x", hosts=()))
        assert changed == ["image", "hosts"]

    def test_ignoring(self) -> None:
        """Test that ignored fields never report drift."""
        policy = POLICY.ignoring(["image"])

        assert policy.changed_fields(spec(), spec(image="x")) == []
        assert POLICY.changed_fields(spec(), spec(image="x")) == ["image"]

    def test_ignoring_unknown_field(self) -> None:
        """Test that ignoring an untracked field raises ValueError."""
        with pytest.raises(ValueError, match="Unknown diff field 'replicas'"):
            POLICY.ignoring(["replicas"])

    def test_with_comparison(self) -> None:
        """Test replacing the comparison of a single field."""
        policy = POLICY.with_comparison("image", Comparison.CASE_INSENSITIVE)

        assert policy.changed_fields(spec(image="NGINX:1.25"), spec()) == []
        assert policy.field_names == POLICY.field_names
