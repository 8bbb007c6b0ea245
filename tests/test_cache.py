"""
Tests for the Heatmap Cache
===========================
"""

from heatmap.cache import HeatmapCache


class TestHeatmapCache:
    """Tests for HeatmapCache."""

    def test_put_and_get(self, cache):
        cache.put(1, 'key-a', False, '<div>map</div>', {'has_notes': True})

        entry = cache.get(1, 'key-a', False)

        assert entry.content == '<div>map</div>'
        assert entry.metadata == {'has_notes': True}
        assert entry.condensed is False
        assert entry.created_at
        assert cache.exists(1, 'key-a', False)

    def test_modes_are_separate(self, cache):
        cache.put(1, 'key-a', False, 'full')

        assert not cache.exists(1, 'key-a', True)
        assert cache.get(1, 'key-a', True) is None

        cache.put(1, 'key-a', True, 'condensed')
        assert cache.get(1, 'key-a', True).content == 'condensed'
        assert cache.get(1, 'key-a', False).content == 'full'

    def test_put_replaces(self, cache):
        cache.put(1, 'key-a', False, 'old')
        cache.put(1, 'key-a', False, 'new')
        assert cache.get(1, 'key-a', False).content == 'new'

    def test_delete_one_visualization(self, cache):
        cache.put(1, 'key-a', False, 'a')
        cache.put(1, 'key-a', True, 'a-condensed')
        cache.put(1, 'key-b', False, 'b')

        assert cache.delete(1, 'key-a', condensed=True) == 1
        assert cache.exists(1, 'key-a', False)
        assert cache.delete(1, 'key-a') == 1
        assert cache.exists(1, 'key-b', False)

    def test_delete_set(self, cache):
        cache.put(1, 'key-a', False, 'a')
        cache.put(1, 'key-b', True, 'b')
        cache.put(2, 'key-a', False, 'other set')

        assert cache.delete_set(1) == 2
        assert not cache.exists(1, 'key-a', False)
        assert cache.exists(2, 'key-a', False)

    def test_persists_across_instances(self, cache):
        cache.put(3, 'key', False, 'kept')
        assert HeatmapCache(cache.db_path).get(3, 'key', False).content == 'kept'

    def test_to_dict(self, cache):
        cache.put(1, 'key-a', False, 'body', {'x': 1})
        data = cache.get(1, 'key-a', False).to_dict()
        assert data['visualization_key'] == 'key-a'
        assert 'content' not in data
        assert cache.get(1, 'key-a', False).to_dict(include_content=True)['content'] == 'body'
