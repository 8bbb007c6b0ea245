"""
Tests for Configuration, Logging and Errors
===========================================
"""

import json
import logging

import pytest

from config_logging import (
    AppConfig,
    DataIntegrityError,
    HeatmapError,
    JsonFormatter,
    NotFoundError,
    ProcessingError,
    RenderResourceError,
    StructuredLogger,
    ValidationError,
    get_config,
    handle_errors,
    reset_config,
)


class TestAppConfig:
    """Tests for AppConfig."""

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv('WHM_PORT', '6001')
        monkeypatch.setenv('WHM_BATCH_SIZE', '250')
        monkeypatch.setenv('WHM_RENDER_WORKERS', '4')
        monkeypatch.setenv('WHM_LOG_FORMAT', 'text')
        monkeypatch.setenv('WHM_TEMP_DIR', str(tmp_path / 'tmp'))
        monkeypatch.setenv('WHM_CACHE_DB', str(tmp_path / 'c.db'))

        config = AppConfig.from_env()

        assert config.port == 6001
        assert config.heatmap_batch_size == 250
        assert config.render_workers == 4
        assert config.log_format == 'text'
        assert config.log_to_file is False
        assert config.cache_db_path == tmp_path / 'c.db'
        assert (tmp_path / 'tmp').is_dir()

    def test_validate(self, tmp_path):
        good = AppConfig(temp_dir=tmp_path, log_to_file=False)
        assert good.validate() == (True, [])

        bad = AppConfig(temp_dir=tmp_path, log_to_file=False, heatmap_batch_size=0,
                        render_workers=0, log_format='xml')
        is_valid, errors = bad.validate()
        assert not is_valid
        assert len(errors) == 3

    def test_global_config(self):
        reset_config()
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first


class TestErrors:
    """Tests for the error hierarchy."""

    def test_status_codes(self):
        assert ValidationError("x").status_code == 400
        assert NotFoundError("x").status_code == 404
        assert DataIntegrityError("x").status_code == 500
        assert ProcessingError("x").status_code == 500
        assert RenderResourceError("x").status_code == 503

    def test_to_dict(self):
        error = NotFoundError("Set 3 does not exist", resource='set')
        assert error.to_dict() == {
            'success': False,
            'error': {
                'code': 'NOT_FOUND',
                'message': 'Set 3 does not exist',
                'details': {'resource': 'set'}
            }
        }

    def test_handle_errors(self):
        @handle_errors()
        def bad_value():
            raise ValueError("nope")

        @handle_errors()
        def crash():
            raise KeyError("boom")

        @handle_errors()
        def known():
            raise DataIntegrityError("re-collate")

        with pytest.raises(ValidationError):
            bad_value()
        with pytest.raises(ProcessingError):
            crash()
        with pytest.raises(DataIntegrityError):
            known()
        assert issubclass(RenderResourceError, HeatmapError)


class TestLogging:
    """Tests for structured logging."""

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord('heatmap.test', logging.INFO, __file__, 1,
                                   'rendered %s', ('map',), None)
        record.set_id = 4
        record.correlation_id = 'abc'

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'rendered map'
        assert data['level'] == 'INFO'
        assert data['set_id'] == 4
        assert data['correlation_id'] == 'abc'
        assert 'lineno' not in data

    def test_correlation_ids(self):
        new_id = StructuredLogger.new_correlation_id()
        assert StructuredLogger.get_correlation_id() == new_id

    def test_log_operation_reraises(self, tmp_path):
        logger = StructuredLogger('heatmap.test', AppConfig(temp_dir=tmp_path, log_to_file=False))
        with pytest.raises(RuntimeError):
            with logger.log_operation('render', set_id=1):
                raise RuntimeError("failed")
