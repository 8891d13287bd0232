"""
Tests for severity normalization.
"""

import pytest

from soarkit.core.severity import Severity, max_severity, normalize_severity


class TestSeverityOrdering:

    def test_levels_are_ordered(self):
        assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
        assert Severity.CRITICAL >= Severity.HIGH
        assert max([Severity.MEDIUM, Severity.CRITICAL, Severity.LOW]) == Severity.CRITICAL

    def test_bump_stops_at_critical(self):
        assert Severity.LOW.bump() == Severity.MEDIUM
        assert Severity.HIGH.bump() == Severity.CRITICAL
        assert Severity.CRITICAL.bump() == Severity.CRITICAL

    def test_compare_with_other_type_is_an_error(self):
        with pytest.raises(TypeError):
            Severity.LOW < 3


class TestNormalizeSeverity:

    @pytest.mark.parametrize("value,expected", [
        ("Critical", Severity.CRITICAL),
        ("sev1", Severity.CRITICAL),
        ("SEV-2", Severity.HIGH),
        ("warn", Severity.MEDIUM),
        ("informational", Severity.LOW),
        ("P4", Severity.LOW),
    ])
    def test_symbolic(self, value, expected):
        assert normalize_severity(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (0, Severity.LOW),
        (3.9, Severity.LOW),
        (4.0, Severity.MEDIUM),
        (7, Severity.HIGH),
        (9.8, Severity.CRITICAL),
        ("6.5", Severity.MEDIUM),
    ])
    def test_cvss_scale(self, value, expected):
        assert normalize_severity(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (35, Severity.LOW),
        (40, Severity.MEDIUM),
        (85, Severity.HIGH),
        (100, Severity.CRITICAL),
    ])
    def test_percentage_scale(self, value, expected):
        assert normalize_severity(value) == expected

    @pytest.mark.parametrize("value", [None, True, "", "bogus", -1, 101, object()])
    def test_unrecognized_is_none(self, value):
        assert normalize_severity(value) is None

    def test_member_passes_through(self):
        assert normalize_severity(Severity.HIGH) is Severity.HIGH

    def test_max_severity_ignores_none(self):
        assert max_severity(None, Severity.LOW, Severity.HIGH) == Severity.HIGH
        assert max_severity(None, None) is None
