from typing import Any

from .logging import setup_logging
from .settings import Settings, get_settings


def env(key: str, default: Any = None) -> Any:
    """Access any environment variable through settings.

    Declared fields come back validated and converted; anything else is read from
    the raw values captured by ``extra="allow"``.

    Args:
        key: Environment variable key (case insensitive)
        default: Default value if not found

    Returns
    -------
        The environment variable value or default
    """
    settings = get_settings()

    value = getattr(settings, key.upper(), None)
    if value is not None:
        return value

    extras = settings.model_extra or {}
    value = extras.get(key.lower(), extras.get(key.upper()))
    return default if value is None else value


__all__ = ["Settings", "env", "get_settings", "setup_logging"]
