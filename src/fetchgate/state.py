"""Application state container.

AppState is created once at server startup (inside the FastMCP lifespan
context manager) and handed to every tool handler via the MCP Context object.
The lifespan owns the lifecycle of everything referenced here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from fetchgate.cache import CacheDb, SearchCache, SnapshotCache
    from fetchgate.config import Settings
    from fetchgate.orchestrator import Orchestrator
    from fetchgate.protocols import SearchProvider
    from fetchgate.ratelimit import HostRateLimiter
    from fetchgate.robots import RobotsCache
    from fetchgate.safety import SafetyGate


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every tool handler."""

    settings: Settings
    http_client: httpx.AsyncClient
    db: CacheDb
    snapshots: SnapshotCache
    search_cache: SearchCache
    rate_limiter: HostRateLimiter
    safety_gate: SafetyGate
    orchestrator: Orchestrator
    search_provider: SearchProvider
    robots: RobotsCache | None = None
