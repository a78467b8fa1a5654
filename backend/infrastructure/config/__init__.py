from .catalog import build_billing_config, load_catalog, parse_catalog
from .settings import Settings, get_settings, settings

__all__ = [
    "Settings",
    "build_billing_config",
    "get_settings",
    "load_catalog",
    "parse_catalog",
    "settings",
]
