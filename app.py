"""
Witness Heatmap - Main Flask Application
Serves heatmap visualizations of collated witnesses and their render tasks
"""
import atexit
from typing import Optional

from flask import Flask, jsonify

from config_logging import get_config, get_logger, AppConfig, __version__
from heatmap import HeatmapCache, HeatmapView, MemoryDataSource, heatmap_blueprint
from heatmap.sources import HeatmapDataSource
from job_manager import JobManager

logger = get_logger('app')


def create_app(
    config: Optional[AppConfig] = None,
    source: Optional[HeatmapDataSource] = None,
    cache: Optional[HeatmapCache] = None,
    manager: Optional[JobManager] = None
) -> Flask:
    """
    Build the Flask app and start its render workers.

    Args:
        config: Application config (defaults to the environment config)
        source: Collation data source (defaults to an empty in-memory store)
        cache: Heatmap cache (defaults to the configured SQLite file)
        manager: Job manager (defaults to one sized from config)
    """
    config = config or get_config()
    is_valid, errors = config.validate()
    if not is_valid:
        raise ValueError("Invalid configuration: " + "; ".join(errors))

    if manager is None:
        manager = JobManager(
            max_workers=config.render_workers,
            max_jobs=config.max_jobs,
            job_ttl=config.job_ttl
        )
    manager.start()

    view = HeatmapView(
        source=source if source is not None else MemoryDataSource(),
        cache=cache if cache is not None else HeatmapCache(str(config.cache_db_path)),
        manager=manager,
        config=config
    )

    app = Flask(__name__)
    app.config['DEBUG'] = config.debug
    app.extensions['heatmap_view'] = view
    app.extensions['heatmap_jobs'] = manager
    app.register_blueprint(heatmap_blueprint)

    @app.route('/api/health', methods=['GET'])
    def health():
        """Liveness check"""
        return jsonify({'success': True, 'version': __version__, 'workers': manager.running})

    logger.info(f"Heatmap app created (workers={config.render_workers})")
    return app


if __name__ == '__main__':
    config = get_config()
    app = create_app(config)
    atexit.register(app.extensions['heatmap_jobs'].shutdown)
    print("=" * 60)
    print("  Witness Heatmap")
    print(f"  Starting server at http://{config.host}:{config.port}")
    print("=" * 60)
    app.run(host=config.host, port=config.port, debug=config.debug)
