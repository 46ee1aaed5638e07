#!/usr/bin/env python3
"""State records owned by the process supervisor."""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ServiceState(str, Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    UNHEALTHY = 'unhealthy'
    RESTARTING = 'restarting'
    DEGRADED = 'degraded'


@dataclass
class ManagedProcess:
    """One supervised child service.

    ``process`` is only ever touched by the owning supervisor; a new start is
    refused while it is set.
    """

    name: str
    port: Optional[int] = None
    process: Optional[asyncio.subprocess.Process] = None
    state: ServiceState = ServiceState.STOPPED
    restart_count: int = 0
    consecutive_restarts: int = 0
    stop_requested: bool = False
    started_at: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def has_handle(self) -> bool:
        return self.process is not None

    def clear_handle(self):
        self.process = None
        self.port = None
        self.started_at = None

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view written to the runtime state file."""
        return {
            'name': self.name,
            'pid': self.pid,
            'port': self.port,
            'state': self.state.value,
            'restart_count': self.restart_count,
            'started_at': time.strftime('%Y-%m-%dT%H:%M:%S', time.localtime(self.started_at))
            if self.started_at else None,
        }
