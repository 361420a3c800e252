"""Configuration for session behavior."""

from dataclasses import dataclass

from ..sandbox.constants import MIRROR_HOST, PRIMARY_HOST


@dataclass
class SessionConfig:
    """Configuration for session behavior.

    Simple configuration for the executing indicator, package index hosts and
    cancellation of synchronous code.
    """

    # Delay before a running submission is reported as executing
    show_executing_delay: float = 0.01

    # Package index
    primary_host: str = PRIMARY_HOST
    mirror_host: str = MIRROR_HOST
    probe_timeout: float = 5.0
    probe_on_load: bool = True
    cache_dir: str | None = None

    # Cooperative cancellation of synchronous submissions
    cooperative_cancel: bool = True
    cancel_check_interval: int = 100

    # Virtual source files kept in linecache
    linecache_max_size: int = 128
