"""
Dependency injection setup for the BYOK Router Proxy.
"""

from functools import cache

from byokrouter.infrastructure.config.settings import ByokSettings
from byokrouter.router import ByokRouter


@cache
def get_settings() -> ByokSettings:
    """Get a singleton instance of the settings, read from the environment."""
    return ByokSettings()


@cache
def get_router() -> ByokRouter:
    """Get a singleton instance of the ByokRouter."""
    return ByokRouter(config=get_settings())
