"""
Configuration Loader.

This module initializes the global configuration object (`config`) used throughout
the application. It leverages `yacs` to provide a hierarchical, dot-accessible
configuration structure defined in `matlab_runner.core_config`.

Usage:
    from matlab_runner.config import config
    print(config.RUN.ARTIFACT_POLL_INTERVAL_SEC)
"""

import os
import logging
from matlab_runner.core_config import get_cfg_defaults

# Load default configuration
config = get_cfg_defaults()

# Optional user overrides
user_config_path = os.environ.get("MATLAB_RUNNER_CONFIG_FILE")
if user_config_path and os.path.exists(user_config_path):
    config.merge_from_file(user_config_path)

# Freeze config to prevent accidental changes during runtime.
config.freeze()

logger = logging.getLogger(__name__)
