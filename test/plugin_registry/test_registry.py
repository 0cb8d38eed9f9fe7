"""
Tests for PluginRegistry.
"""

import pytest

from src.plugin_registry.exceptions import PluginRegistryError
from src.plugin_registry.registry import PluginRecord, PluginRegistry


def _record(slug='acme-widget', local_path='/nonexistent/acme-widget', **kwargs) -> PluginRecord:
    owner, _, repo = slug.partition('-')
    return PluginRecord(slug=slug, owner=owner, repo=repo, local_path=local_path, **kwargs)


class TestPluginRegistry:
    """Test registry CRUD."""

    def test_add_and_get(self, registry):
        registry.add(_record(installed_version='1.0.0', branch='v1.0.0'))

        record = registry.get('acme-widget')

        assert record.owner == 'acme'
        assert record.repo == 'widget'
        assert record.installed_version == '1.0.0'
        assert record.branch == 'v1.0.0'
        assert record.has_update is False
        assert record.created_at == record.updated_at

    def test_get_unknown_slug(self, registry):
        assert registry.get('nobody-nothing') is None
        assert not registry.exists('nobody-nothing')

    def test_persists_across_instances(self, registry, paths):
        registry.add(_record())
        assert PluginRegistry(paths.registry_file).exists('acme-widget')

    def test_get_all_is_sorted_by_slug(self, registry):
        registry.add(_record('zeta-plugin'))
        registry.add(_record('acme-widget'))

        assert [r.slug for r in registry.get_all()] == ['acme-widget', 'zeta-plugin']

    def test_update_changes_mutable_fields(self, registry):
        registry.add(_record(installed_version='1.0.0'))
        before = registry.get('acme-widget')

        updated = registry.update('acme-widget', {'latest_version': '2.0.0', 'has_update': 1})

        assert updated.latest_version == '2.0.0'
        assert updated.has_update is True
        assert updated.installed_version == '1.0.0'
        assert updated.created_at == before.created_at
        assert updated.updated_at >= before.updated_at

    def test_update_rejects_identity_fields(self, registry):
        registry.add(_record())

        with pytest.raises(ValueError, match='slug'):
            registry.update('acme-widget', {'slug': 'other'})
        with pytest.raises(ValueError, match='owner'):
            registry.update('acme-widget', {'owner': 'other'})

    def test_update_unknown_slug(self, registry):
        assert registry.update('nobody-nothing', {'has_update': True}) is None

    def test_remove(self, registry):
        registry.add(_record())

        assert registry.remove('acme-widget') is True
        assert registry.remove('acme-widget') is False
        assert registry.get_all() == []

    def test_add_replaces_existing_slug(self, registry):
        registry.add(_record(installed_version='1.0.0'))
        registry.add(_record(installed_version='2.0.0'))

        assert len(registry.get_all()) == 1
        assert registry.get('acme-widget').installed_version == '2.0.0'

    def test_pending_updates(self, registry):
        registry.add(_record('acme-widget', has_update=True))
        registry.add(_record('acme-gadget'))

        assert [r.slug for r in registry.get_with_pending_updates()] == ['acme-widget']

    def test_find_by_path(self, registry, tmp_path):
        plugin_dir = tmp_path / 'acme-widget'
        plugin_dir.mkdir()
        registry.add(_record(local_path=str(plugin_dir)))

        assert registry.find_by_path(plugin_dir).slug == 'acme-widget'
        assert registry.find_by_path(tmp_path / 'other') is None

    def test_corrupt_file(self, paths):
        paths.registry_file.write_text('{not json')

        with pytest.raises(PluginRegistryError):
            PluginRegistry(paths.registry_file).get_all()


class TestPluginRecord:
    """Test derived record fields."""

    def test_missing_directory_is_flagged(self, tmp_path):
        record = _record(local_path=str(tmp_path / 'gone'))
        assert record.is_missing
        assert record.to_dict()['is_missing'] is True

    def test_local_dir(self, tmp_path):
        plugin_dir = tmp_path / 'acme-widget'
        plugin_dir.mkdir()
        record = _record(local_path=str(plugin_dir))

        data = record.to_dict()

        assert data['local_dir'] == 'acme-widget'
        assert data['is_missing'] is False

    def test_from_dict_ignores_derived_keys(self, tmp_path):
        data = _record(local_path=str(tmp_path)).to_dict()
        assert PluginRecord.from_dict(data).slug == 'acme-widget'
