"""
Route modules for the Longshot API.

Shared services are registered once at startup with set_dependencies() and
looked up by each route with get_deps().
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class RouteDependencies:
    """Services shared by the route modules"""
    settings: Any = None
    browser_bridge: Any = None
    orchestrator: Any = None
    message_router: Any = None
    config_manager: Any = None
    broadcaster: Any = None


_deps: Optional[RouteDependencies] = None


def set_dependencies(deps: RouteDependencies):
    global _deps
    _deps = deps


def get_deps() -> RouteDependencies:
    if _deps is None:
        raise RuntimeError("Route dependencies not initialized")
    return _deps
