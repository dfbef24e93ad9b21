"""Context object shared across worker threads."""

from dataclasses import dataclass
from typing import Optional

from static_server.bootstrap.config import ServerConfig
from static_server.lifecycle.state import ServerLifecycle
from static_server.pipeline.chain import RequestHandler


@dataclass
class WorkerContext:
    """Dependencies shared across handler threads."""

    handler: RequestHandler
    config: ServerConfig
    lifecycle: Optional[ServerLifecycle] = None
