"""
Tests for version comparison.
"""

import pytest

from src.plugin_registry.version_utils import compare_versions, is_newer, normalize_version


class TestCompareVersions:
    """Ordering must be numeric, never lexical."""

    @pytest.mark.parametrize('left,right,expected', [
        ('1.0.0', '1.0.0', 0),
        ('v1.0.0', '1.0.0', 0),
        ('1.10.0', '1.9.0', 1),
        ('1.2.0', '1.10.0', -1),
        ('2.0.0', '2.0.0-beta.1', 1),
        ('1.0', '1.0.0', 0),
        ('1.2', '1.1.9', 1),
        ('1.2.3.4', '1.2.3', 1),
        ('1.2.3.10', '1.2.3.9', 1),
        ('1.0-rc2', '1.0', -1),
        ('1.0-rc2', '1.0-rc1', 1),
        ('1.0-beta', '1.0-alpha', 1),
        ('', '1.0.0', -1),
        ('1.0.0', '', 1),
    ])
    def test_ordering(self, left, right, expected):
        assert compare_versions(left, right) == expected

    def test_antisymmetric(self):
        assert compare_versions('1.2.3', '1.3.0') == -compare_versions('1.3.0', '1.2.3')

    def test_is_newer_strict(self):
        assert is_newer('1.0.1', '1.0.0')
        assert not is_newer('1.0.0', '1.0.0')
        assert not is_newer('v1.0.0', '1.0.0')
        assert not is_newer('0.9.0', '1.0.0')

    def test_normalize_strips_v_prefix_only_before_digit(self):
        assert normalize_version(' v2.1.0 ') == '2.1.0'
        assert normalize_version('vnext') == 'vnext'
        assert normalize_version(None) == ''
