#!/usr/bin/env python3
"""
Witness Heatmap Configuration & Logging Module
==============================================
Centralized configuration, structured logging, and error types shared by the
heatmap core, the render job manager and the HTTP layer.

Version: module v1.0
"""

import os
import sys
import json
import logging
import tempfile
import uuid
import time
import functools
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable
from pathlib import Path
from dataclasses import dataclass, field
from contextlib import contextmanager
import threading

# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================
DEFAULT_BATCH_SIZE = 5000           # Alignments fetched per page
DEFAULT_RENDER_WORKERS = 2          # Worker threads rendering heatmaps
DEFAULT_MAX_JOBS = 100              # Jobs kept in the registry
DEFAULT_JOB_TTL = 3600              # Seconds a finished job stays visible
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5MB max per log file
LOG_BACKUP_COUNT = 5                # Number of log backup files to keep

__version__ = "1.0.0"
VERSION = __version__
APP_NAME = "WitnessHeatmap"

ENV_PREFIX = "WHM_"


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_flag(name: str, default: bool) -> bool:
    return _env(name, 'true' if default else 'false').lower() == 'true'


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

@dataclass
class AppConfig:
    """Application configuration with safe local defaults."""

    # Server settings
    host: str = "127.0.0.1"
    port: int = 5060
    debug: bool = False

    # Heatmap rendering
    heatmap_batch_size: int = DEFAULT_BATCH_SIZE
    render_workers: int = DEFAULT_RENDER_WORKERS
    max_jobs: int = DEFAULT_MAX_JOBS
    job_ttl: float = DEFAULT_JOB_TTL

    # Paths
    base_dir: Path = field(default_factory=lambda: Path(__file__).parent)
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / 'witness_heatmap')
    log_dir: Path = field(default_factory=lambda: Path(__file__).parent / 'logs')
    cache_db_path: Path = field(default_factory=lambda: Path(__file__).parent / 'heatmap_cache.db')

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # Options: json, text
    log_to_file: bool = True
    log_to_console: bool = True

    def __post_init__(self):
        """Normalize paths and make sure working directories exist."""
        self.temp_dir = Path(self.temp_dir)
        self.log_dir = Path(self.log_dir)
        self.cache_db_path = Path(self.cache_db_path)

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        if self.log_to_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        # Quieter logs in production
        if os.environ.get('WHM_ENV', 'development').lower() == 'production':
            self.debug = False
            self.log_level = "WARNING"

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Load configuration from environment variables."""
        defaults = cls.__dataclass_fields__
        return cls(
            host=_env('HOST', '127.0.0.1'),
            port=int(_env('PORT', '5060')),
            debug=_env_flag('DEBUG', False),
            heatmap_batch_size=int(_env('BATCH_SIZE', str(DEFAULT_BATCH_SIZE))),
            render_workers=int(_env('RENDER_WORKERS', str(DEFAULT_RENDER_WORKERS))),
            max_jobs=int(_env('MAX_JOBS', str(DEFAULT_MAX_JOBS))),
            job_ttl=float(_env('JOB_TTL', str(DEFAULT_JOB_TTL))),
            temp_dir=Path(_env('TEMP_DIR', str(defaults['temp_dir'].default_factory()))),
            log_dir=Path(_env('LOG_DIR', str(defaults['log_dir'].default_factory()))),
            cache_db_path=Path(_env('CACHE_DB', str(defaults['cache_db_path'].default_factory()))),
            log_level=_env('LOG_LEVEL', 'INFO'),
            log_format=_env('LOG_FORMAT', 'json'),
            log_to_file=_env_flag('LOG_TO_FILE', True),
            log_to_console=_env_flag('LOG_TO_CONSOLE', True),
        )

    def validate(self) -> tuple:
        """Validate configuration and return (is_valid, errors)."""
        errors = []

        if self.heatmap_batch_size <= 0:
            errors.append("Heatmap batch size must be a positive number")

        if self.render_workers <= 0:
            errors.append("At least one render worker is required")

        if self.max_jobs <= 0:
            errors.append("max_jobs must be a positive number")

        if self.log_format not in ('json', 'text'):
            errors.append(f"Invalid log_format: {self.log_format}. Must be 'json' or 'text'")

        if not hasattr(logging, self.log_level.upper()):
            errors.append(f"Invalid log_level: {self.log_level}")

        return (len(errors) == 0, errors)


# Global config instance
_config: Optional[AppConfig] = None

def get_config() -> AppConfig:
    """Get or create the global configuration."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration (for testing)."""
    global _config
    _config = None


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================

class StructuredLogger:
    """Thread-safe structured JSON logger with correlation IDs."""

    _local = threading.local()

    def __init__(self, name: str, config: Optional[AppConfig] = None):
        self.name = name
        self.config = config or get_config()
        self._setup_logger()

    def _setup_logger(self):
        """Configure the underlying Python logger."""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.config.log_level.upper()))
        self.logger.handlers.clear()
        self.logger.propagate = False

        if self.config.log_format == 'json':
            formatter = JsonFormatter()
        else:
            formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
            )

        if self.config.log_to_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        # Rotating file handler so long-running servers don't fill the disk
        if self.config.log_to_file:
            from logging.handlers import RotatingFileHandler
            log_file = self.config.log_dir / f"{self.name.lower()}.log"
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if not self.logger.handlers:
            self.logger.addHandler(logging.NullHandler())

    @classmethod
    def set_correlation_id(cls, correlation_id: str):
        """Set correlation ID for current thread."""
        cls._local.correlation_id = correlation_id

    @classmethod
    def get_correlation_id(cls) -> str:
        """Get correlation ID for current thread."""
        return getattr(cls._local, 'correlation_id', None) or str(uuid.uuid4())[:8]

    @classmethod
    def new_correlation_id(cls) -> str:
        """Generate and set a new correlation ID."""
        correlation_id = str(uuid.uuid4())[:12]
        cls.set_correlation_id(correlation_id)
        return correlation_id

    def _extra(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {'correlation_id': self.get_correlation_id(), **kwargs}

    def debug(self, message: str, **kwargs):
        """Log debug message."""
        self.logger.debug(message, extra=self._extra(kwargs))

    def info(self, message: str, **kwargs):
        """Log info message."""
        self.logger.info(message, extra=self._extra(kwargs))

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self.logger.warning(message, extra=self._extra(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs):
        """Log error message with optional exception info."""
        self.logger.error(message, exc_info=exc_info, extra=self._extra(kwargs))

    def exception(self, message: str, **kwargs):
        """Log exception with full traceback."""
        self.error(message, exc_info=True, **kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message."""
        self.logger.critical(message, extra=self._extra(kwargs))

    @contextmanager
    def log_operation(self, operation: str, **context):
        """Context manager for logging operation start/end with timing."""
        start_time = time.time()
        self.info(f"{operation} started", operation=operation, status='started', **context)
        try:
            yield
            duration_ms = (time.time() - start_time) * 1000
            self.info(f"{operation} completed", operation=operation, status='completed',
                      duration_ms=round(duration_ms, 2), **context)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self.error(f"{operation} failed: {e}", operation=operation, status='failed',
                       duration_ms=round(duration_ms, 2), exc_info=True, **context)
            raise


# LogRecord attributes that are not user supplied fields
_RESERVED_RECORD_KEYS = frozenset((
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'thread', 'threadName', 'exc_info', 'exc_text',
    'message', 'taskName',
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['traceback'] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, get_config())


# =============================================================================
# ERROR HANDLING UTILITIES
# =============================================================================

class HeatmapError(Exception):
    """Base exception for the heatmap service."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR",
                 status_code: int = 500, details: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response dict."""
        return {
            'success': False,
            'error': {
                'code': self.code,
                'message': self.message,
                'details': self.details
            }
        }


class ValidationError(HeatmapError):
    """Input validation error."""
    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, code="VALIDATION_ERROR", status_code=400,
                         details={'field': field, **kwargs})


class NotFoundError(HeatmapError):
    """Requested set, witness or job does not exist."""
    def __init__(self, message: str, resource: Optional[str] = None, **kwargs):
        super().__init__(message, code="NOT_FOUND", status_code=404,
                         details={'resource': resource, **kwargs})


class DataIntegrityError(HeatmapError):
    """Stored collation data is incomplete; the set must be re-collated."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="DATA_INTEGRITY", status_code=500, details=kwargs)


class ProcessingError(HeatmapError):
    """Heatmap processing error."""
    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        super().__init__(message, code="PROCESSING_ERROR", status_code=500,
                         details={'stage': stage, **kwargs})


class RenderResourceError(HeatmapError):
    """Not enough memory to assemble a visualization."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="INSUFFICIENT_RESOURCES", status_code=503, details=kwargs)


class RenderCanceled(Exception):
    """Raised inside a render job once its cancellation was requested."""
    pass


def handle_errors(logger: Optional[StructuredLogger] = None):
    """Decorator for standardized error handling."""
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            _logger = logger or get_logger(func.__module__)
            try:
                return func(*args, **kwargs)
            except HeatmapError:
                raise  # Re-raise our custom errors
            except ValueError as e:
                _logger.error(f"Validation error: {e}", exc_info=True)
                raise ValidationError(str(e))
            except Exception as e:
                _logger.exception(f"Unexpected error in {func.__name__}: {e}")
                raise ProcessingError(f"An unexpected error occurred: {type(e).__name__}")
        return wrapper
    return decorator
