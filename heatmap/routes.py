"""
Heatmap Flask Routes
====================
API endpoints for heatmap visualizations and their render tasks.

v1.0.0: Initial implementation
"""

import time
from functools import wraps
from typing import List, Optional

from flask import Blueprint, Response, current_app, g, jsonify, request

from config_logging import get_logger, HeatmapError, StructuredLogger, ValidationError

from .view import (
    HeatmapView,
    STATUS_READY,
    STATUS_RENDERING,
    STATUS_UNAVAILABLE,
)

logger = get_logger('heatmap.routes')

heatmap_blueprint = Blueprint('heatmap', __name__)

FALSE_VALUES = ('0', 'false', 'no', 'off')


# =============================================================================
# STANDARDIZED ERROR HANDLING DECORATOR
# =============================================================================

def handle_heatmap_errors(f):
    """
    Decorator for standardized API error handling in heatmap routes.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        start_time = time.time()
        try:
            result = f(*args, **kwargs)

            elapsed = time.time() - start_time
            if elapsed > 5.0:
                logger.warning(f"Slow heatmap API call: {f.__name__} took {elapsed:.1f}s")

            return result

        except HeatmapError as e:
            if e.status_code >= 500:
                logger.error(f"{e.code} in {f.__name__}: {e.message}")
            else:
                logger.warning(f"{e.code} in {f.__name__}: {e.message}")
            body = e.to_dict()
            body['error']['correlation_id'] = getattr(g, 'correlation_id', 'unknown')
            return jsonify(body), e.status_code
        except Exception as e:
            logger.exception(f"Unexpected error in {f.__name__}: {e}")
            return jsonify({
                'success': False,
                'error': {
                    'code': 'INTERNAL_ERROR',
                    'message': 'An unexpected error occurred',
                    'correlation_id': getattr(g, 'correlation_id', 'unknown')
                }
            }), 500

    return decorated


@heatmap_blueprint.before_request
def assign_correlation_id():
    g.correlation_id = StructuredLogger.new_correlation_id()


def _get_view() -> HeatmapView:
    return current_app.extensions['heatmap_view']


def _flag(name: str) -> bool:
    """Query flags count as set when present, unless given a false value."""
    if name not in request.args:
        return False
    return request.args.get(name, '').strip().lower() not in FALSE_VALUES


def _int_arg(name: str) -> Optional[int]:
    value = request.args.get(name)
    if value is None or value.strip() == '':
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Parameter '{name}' must be an integer", field=name)


def _filter_arg() -> List[int]:
    value = request.args.get('filter', '')
    ids = []
    for part in value.split(','):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            raise ValidationError(f"Invalid witness id in filter: {part!r}", field='filter')
    return ids


# =============================================================================
# HEATMAP ENDPOINTS
# =============================================================================

@heatmap_blueprint.route('/api/sets/<int:set_id>/heatmap', methods=['GET'])
@handle_heatmap_errors
def get_heatmap(set_id):
    """
    Get the heatmap of a comparison set.

    Query params:
        base: Base witness id (defaults to the first witness)
        condensed: Render the condensed variant
        filter: Comma separated witness ids to leave out
        refresh: Drop cached renderings of the set first

    Returns:
        200 HTML when ready, 202 JSON while rendering,
        200 plain text when the set cannot be visualized
    """
    response = _get_view().render(
        set_id,
        base_id=_int_arg('base'),
        condensed=_flag('condensed'),
        witness_filter=_filter_arg(),
        refresh=_flag('refresh')
    )

    if response.status == STATUS_READY:
        return Response(response.content, status=200, mimetype='text/html')

    if response.status == STATUS_RENDERING:
        return jsonify({'success': True, **response.to_dict()}), 202

    if response.status == STATUS_UNAVAILABLE:
        return Response(response.message, status=200, mimetype='text/plain')

    code = response.metadata.get('code', 'PROCESSING_ERROR')
    return jsonify({
        'success': False,
        'error': {
            'code': code,
            'message': response.message,
            'task_id': response.task_id,
            'correlation_id': getattr(g, 'correlation_id', 'unknown')
        }
    }), 503 if code == 'INSUFFICIENT_RESOURCES' else 500


@heatmap_blueprint.route('/api/sets/<int:set_id>/heatmap', methods=['DELETE'])
@handle_heatmap_errors
def delete_heatmap(set_id):
    """Invalidate cached heatmaps of a set."""
    removed = _get_view().delete(set_id)
    return jsonify({'success': True, 'data': {'set_id': set_id, 'removed': removed}})


@heatmap_blueprint.route('/api/heatmap/tasks/<task_id>', methods=['GET'])
@handle_heatmap_errors
def get_task(task_id):
    """Status of a render task."""
    return jsonify({'success': True, 'data': _get_view().task_status(task_id)})


@heatmap_blueprint.route('/api/heatmap/tasks/<task_id>/cancel', methods=['POST'])
@handle_heatmap_errors
def cancel_task(task_id):
    """Request cancellation of a render task."""
    cancelled = _get_view().cancel(task_id)
    return jsonify({'success': True, 'data': {'task_id': task_id, 'cancelled': cancelled}})
