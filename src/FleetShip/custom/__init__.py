"""Registered table of custom artifact handlers.

A custom artifact is dispatched by its declared name.  Built-in handlers
cover ``doas.conf`` and ``ip-address``; further handlers can be registered
with :func:`register_handler` or shipped by other distributions under the
``fleetship.custom_handlers`` entry-point group.
"""

from __future__ import annotations

import logging
import threading
from importlib import metadata
from typing import MutableMapping, Optional

from ..errors import ConfigError
from .base import OPTIONAL, REQUIRED, CustomHandler, HandlerContext, validate_custom_vars
from .doas import DoasConfHandler
from .ip_address import IpAddressHandler

__all__ = [
    "OPTIONAL",
    "REQUIRED",
    "CustomHandler",
    "HandlerContext",
    "validate_custom_vars",
    "register_handler",
    "get_handler",
    "load_entry_point_handlers",
    "ENTRY_POINT_GROUP",
]

ENTRY_POINT_GROUP = "fleetship.custom_handlers"

_LOCK = threading.Lock()
_HANDLERS: MutableMapping[str, CustomHandler] = {}
_ENTRY_POINTS_LOADED = False


def register_handler(handler: CustomHandler, *, name: Optional[str] = None) -> None:
    """Register ``handler`` under ``name`` (default: its ``NAME``)."""

    if not hasattr(handler, "stage"):
        raise TypeError("custom handler must implement a stage method")
    with _LOCK:
        _HANDLERS[name or handler.NAME] = handler


def load_entry_point_handlers(*, logger: Optional[logging.Logger] = None, reload: bool = False) -> None:
    """Register handlers advertised under :data:`ENTRY_POINT_GROUP` once per interpreter."""

    global _ENTRY_POINTS_LOADED

    log = logger or logging.getLogger(__name__)
    with _LOCK:
        if _ENTRY_POINTS_LOADED and not reload:
            return
        _ENTRY_POINTS_LOADED = True
    for entry in metadata.entry_points().select(group=ENTRY_POINT_GROUP):
        try:
            candidate = entry.load()
            handler = candidate() if isinstance(candidate, type) else candidate
            register_handler(handler, name=getattr(handler, "NAME", entry.name))
            log.info("custom handler registered", extra={"stage": "init", "package": entry.name})
        except (ImportError, AttributeError, TypeError) as exc:
            log.warning(
                "custom handler %s failed to load: %s",
                entry.name,
                exc,
                extra={"stage": "init"},
            )


def get_handler(name: str) -> CustomHandler:
    """Return the handler for artifact ``name``.

    Raises:
        ConfigError: If no handler is registered under ``name``.
    """

    load_entry_point_handlers()
    with _LOCK:
        handler = _HANDLERS.get(name)
    if handler is None:
        raise ConfigError(f'Don\'t know how to handle custom type for "{name}"')
    return handler


register_handler(DoasConfHandler())
register_handler(IpAddressHandler())
