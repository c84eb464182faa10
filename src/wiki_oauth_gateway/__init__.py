"""Wiki OAuth Gateway.

OAuth 1.0a login and authenticated API proxy for MediaWiki sites.
"""

__version__ = "0.1.0"

from wiki_oauth_gateway.config import Config, ConfigError, load_config
from wiki_oauth_gateway.server import create_app

__all__ = [
    "Config",
    "ConfigError",
    "__version__",
    "create_app",
    "load_config",
]
