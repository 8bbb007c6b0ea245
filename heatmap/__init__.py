"""
Witness Heatmap Module v1.0.0
=============================
Renders a base witness as an HTML heatmap of the places where the other
witnesses of a comparison set differ from it.

Features:
- Change list built from pairwise difference alignments
- Streaming renderer with revision, page break, note and change markup
- Background render jobs with dedup and cancellation
- SQLite cache of finished renderings
"""

from .routes import heatmap_blueprint
from .view import HeatmapView, HeatmapResponse, HeatmapTask, generate_task_id
from .cache import HeatmapCache, CachedHeatmap
from .changelist import ChangeListBuilder
from .renderer import HeatmapRenderer
from .sources import HeatmapDataSource, MemoryDataSource
from .models import (
    Range,
    Witness,
    ComparisonSet,
    Alignment,
    Change,
    SetWitness,
    Note,
    Revision,
    PageBreak,
    VisualizationInfo
)

__version__ = "1.0.0"
__all__ = [
    'heatmap_blueprint',
    'HeatmapView',
    'HeatmapResponse',
    'HeatmapTask',
    'generate_task_id',
    'HeatmapCache',
    'CachedHeatmap',
    'ChangeListBuilder',
    'HeatmapRenderer',
    'HeatmapDataSource',
    'MemoryDataSource',
    'Range',
    'Witness',
    'ComparisonSet',
    'Alignment',
    'Change',
    'SetWitness',
    'Note',
    'Revision',
    'PageBreak',
    'VisualizationInfo'
]
