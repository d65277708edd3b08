"""
Utility modules for density maps.

Provides:
- Configuration management
- Logging utilities
- JSON helpers
"""

from .config import (
    DEFAULT_CONFIG,
    DEFAULT_PATHS,
    load_config,
    save_config,
    validate_config,
    get_config_value,
    get_default_path,
    get_output_dir,
    get_section_defaults,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    log_processing_start,
    log_processing_end,
    ProcessingTimer,
)

from .json_utils import (
    NumpyEncoder,
    sanitize_for_json,
    atomic_json_dump,
)

__all__ = [
    # Config
    'DEFAULT_CONFIG',
    'DEFAULT_PATHS',
    'load_config',
    'save_config',
    'validate_config',
    'get_config_value',
    'get_default_path',
    'get_output_dir',
    'get_section_defaults',
    # Logging
    'get_logger',
    'setup_logging',
    'log_parameters',
    'log_processing_start',
    'log_processing_end',
    'ProcessingTimer',
    # JSON
    'NumpyEncoder',
    'sanitize_for_json',
    'atomic_json_dump',
]
