"""Context object shared across worker threads."""

from dataclasses import dataclass
from typing import Optional

from user_sites.bootstrap.config import ServerConfig
from user_sites.domain.sandbox import HomeLookup
from user_sites.lifecycle.state import ServerLifecycle


@dataclass
class WorkerContext:
    """Dependencies shared across handler threads."""

    homes: HomeLookup
    lifecycle: Optional[ServerLifecycle] = None
    config: Optional[ServerConfig] = None
