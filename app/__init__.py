"""VirtualFeed FastAPI application package.

``app.app`` and ``app.create_app`` resolve lazily so importing a service
module does not build the web application.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

_LAZY_EXPORTS = {"app": "app.main", "create_app": "app.main", "settings": "app.config"}

__all__ = list(_LAZY_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'app' has no attribute {name}")
    return getattr(import_module(module_name), name)
