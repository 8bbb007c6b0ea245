"""
Heatmap Cache Module
====================
Persistent storage for rendered heatmaps.

Entries are keyed by (set id, visualization key, condensed flag). Each write
is a single INSERT OR REPLACE transaction, so a reader sees either no entry
or a complete one.
"""

import sqlite3
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from config_logging import get_logger

logger = get_logger('heatmap.cache')


@dataclass
class CachedHeatmap:
    """A stored rendering."""
    set_id: int
    visualization_key: str
    condensed: bool
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        data = {
            'set_id': self.set_id,
            'visualization_key': self.visualization_key,
            'condensed': self.condensed,
            'metadata': self.metadata,
            'created_at': self.created_at
        }
        if include_content:
            data['content'] = self.content
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'CachedHeatmap':
        return cls(
            set_id=row['set_id'],
            visualization_key=row['visualization_key'],
            condensed=bool(row['condensed']),
            content=row['content'],
            metadata=json.loads(row['metadata'] or '{}'),
            created_at=row['created_at']
        )


class HeatmapCache:
    """
    SQLite-backed cache of rendered heatmaps.

    A connection is opened per operation so the cache can be shared by the
    request threads and the render workers.
    """

    def __init__(self, db_path: str = None):
        """Initialize cache with database path."""
        if db_path is None:
            db_path = str(Path(__file__).parent.parent / "heatmap_cache.db")

        self.db_path = str(db_path)
        self._init_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self):
        """Initialize heatmap cache tables."""
        conn = self._get_connection()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS heatmap_cache (
                    set_id INTEGER NOT NULL,
                    visualization_key TEXT NOT NULL,
                    condensed INTEGER NOT NULL DEFAULT 0,
                    content TEXT NOT NULL,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (set_id, visualization_key, condensed)
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_heatmap_cache_set
                ON heatmap_cache(set_id)
            ''')
            conn.commit()
        finally:
            conn.close()

    def exists(self, set_id: int, visualization_key: str, condensed: bool) -> bool:
        conn = self._get_connection()
        try:
            row = conn.execute('''
                SELECT 1 FROM heatmap_cache
                WHERE set_id = ? AND visualization_key = ? AND condensed = ?
            ''', (set_id, visualization_key, int(condensed))).fetchone()
            return row is not None
        finally:
            conn.close()

    def get(self, set_id: int, visualization_key: str, condensed: bool) -> Optional[CachedHeatmap]:
        """Cached rendering, or None."""
        conn = self._get_connection()
        try:
            row = conn.execute('''
                SELECT set_id, visualization_key, condensed, content, metadata, created_at
                FROM heatmap_cache
                WHERE set_id = ? AND visualization_key = ? AND condensed = ?
            ''', (set_id, visualization_key, int(condensed))).fetchone()
            return CachedHeatmap.from_row(row) if row else None
        finally:
            conn.close()

    def put(self, set_id: int, visualization_key: str, condensed: bool,
            content: str, metadata: Optional[Dict[str, Any]] = None):
        """Store a complete rendering, replacing any previous one."""
        conn = self._get_connection()
        try:
            with conn:
                conn.execute('''
                    INSERT OR REPLACE INTO heatmap_cache
                    (set_id, visualization_key, condensed, content, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', (set_id, visualization_key, int(condensed), content,
                      json.dumps(metadata or {}), datetime.now().isoformat()))
        finally:
            conn.close()
        logger.debug(f"Cached heatmap {visualization_key}", set_id=set_id, condensed=condensed)

    def delete(self, set_id: int, visualization_key: str, condensed: Optional[bool] = None) -> int:
        """Delete one visualization; both modes unless condensed is given."""
        conn = self._get_connection()
        try:
            with conn:
                if condensed is None:
                    cursor = conn.execute('''
                        DELETE FROM heatmap_cache
                        WHERE set_id = ? AND visualization_key = ?
                    ''', (set_id, visualization_key))
                else:
                    cursor = conn.execute('''
                        DELETE FROM heatmap_cache
                        WHERE set_id = ? AND visualization_key = ? AND condensed = ?
                    ''', (set_id, visualization_key, int(condensed)))
            return cursor.rowcount
        finally:
            conn.close()

    def delete_set(self, set_id: int) -> int:
        """Drop every cached rendering of a comparison set."""
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute('DELETE FROM heatmap_cache WHERE set_id = ?', (set_id,))
            removed = cursor.rowcount
        finally:
            conn.close()
        logger.info(f"Removed {removed} cached heatmaps", set_id=set_id)
        return removed
