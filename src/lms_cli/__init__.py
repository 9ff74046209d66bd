"""lms-cli.

Command-line client for LMS instances with OAuth 2.0 login and
per-instance token storage.
"""

__version__ = "0.1.0"

from lms_cli.config import Config, ConfigError, load_config

__all__ = [
    "Config",
    "ConfigError",
    "__version__",
    "load_config",
]
