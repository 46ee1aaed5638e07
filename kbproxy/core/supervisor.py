#!/usr/bin/env python3
"""Lifecycle owner for one externally launched local service."""
import asyncio
import json
import os
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..config.settings import ServiceSpec, SupervisorSettings
from ..utils.log_setup import get_logger
from ..utils.platform_helper import spawn_process, terminate_children
from .health import HealthProbe
from .ports import find_free_port
from .state import ManagedProcess, ServiceState

StatusCallback = Callable[[str, bool, str], None]


class ProcessSupervisor:
    """Starts, health-checks and restarts a single service process.

    One instance owns one :class:`ManagedProcess`. The periodic health check,
    the exit watcher and any pending restart each run as their own asyncio
    task on the caller's event loop.
    """

    def __init__(self, spec: ServiceSpec, settings: Optional[SupervisorSettings] = None, *,
                 on_status: Optional[StatusCallback] = None,
                 run_dir: Optional[Path] = None,
                 probe: Optional[HealthProbe] = None):
        """
        Initialise the supervisor.

        Args:
            spec: Command, working directory and health path of the service
            settings: Timing and restart policy
            on_status: Callback receiving (service_name, ok, message)
            run_dir: Directory for the runtime state file and service log
            probe: Health probe override (defaults to the service's health path)
        """
        self.spec = spec
        self.name = spec.name
        self.settings = settings or SupervisorSettings()
        self.on_status = on_status
        self.managed = ManagedProcess(name=spec.name)
        self.probe = probe or HealthProbe(spec.health_path, timeout=self.settings.health_timeout)

        self.run_dir = Path(run_dir) if run_dir is not None else None
        self.state_file = self.run_dir / f'{self.name}.json' if self.run_dir else None
        log_file = self.run_dir / f'{self.name}.log' if self.run_dir else None
        self.logger = get_logger(f'kbproxy.supervisor.{self.name}', log_file=log_file)

        self._lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._pump_tasks: List[asyncio.Task] = []

    @property
    def port(self) -> Optional[int]:
        return self.managed.port

    @property
    def state(self) -> ServiceState:
        return self.managed.state

    @property
    def pid(self) -> Optional[int]:
        return self.managed.pid

    @property
    def restart_count(self) -> int:
        return self.managed.restart_count

    def _notify(self, ok: bool, message: str):
        if ok:
            self.logger.info(message)
        else:
            self.logger.error(message)
        if self.on_status is None:
            return
        try:
            self.on_status(self.name, ok, message)
        except Exception as exc:
            self.logger.error(f"Status callback failed: {exc}")

    def _set_state(self, state: ServiceState):
        self.managed.state = state
        if self.managed.has_handle:
            self._write_state_file()

    def _write_state_file(self):
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(json.dumps(self.managed.snapshot(), indent=2), encoding='utf-8')
        except OSError as exc:
            self.logger.warning(f"Failed to write state file {self.state_file}: {exc}")

    def _remove_state_file(self):
        if self.state_file is None:
            return
        try:
            self.state_file.unlink(missing_ok=True)
        except OSError as exc:
            self.logger.warning(f"Failed to remove state file {self.state_file}: {exc}")

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]):
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    async def is_available(self) -> bool:
        """True only when a port is assigned and the health probe passes."""
        if not self.managed.port:
            return False
        return await self.probe.check(self.managed.port)

    async def ensure_available(self) -> bool:
        """Return True once the service answers its health check, starting it if needed."""
        if self.managed.state == ServiceState.DEGRADED:
            self.logger.info(f"Clearing degraded state of {self.name} on explicit request")
            self.managed.consecutive_restarts = 0
            self.managed.state = ServiceState.STOPPED
        return await self._ensure_available()

    async def _ensure_available(self) -> bool:
        async with self._lock:
            if await self.is_available():
                self.logger.info(f"{self.name} is already available on port {self.managed.port}")
                return True

            if self.spec.port_range:
                port = find_free_port(*self.spec.port_range)
            else:
                port = find_free_port()
            return await self.start(port)

    async def start(self, port: int) -> bool:
        """Launch the service on ``port`` and verify it with one health probe."""
        m = self.managed
        if m.has_handle:
            self.logger.warning(f"{self.name} already has a process attached (PID: {m.pid}), not starting another")
            return False

        if not self.spec.command:
            self._notify(False, f"No command configured for {self.name}")
            return False

        cmd = [*self.spec.command, '--port', str(port)]
        env = os.environ.copy()
        env.update(self.spec.env)
        env['PORT'] = str(port)

        self.logger.info(f"Starting {self.name} on port {port}: {' '.join(cmd)}")
        m.stop_requested = False
        m.state = ServiceState.STARTING

        try:
            process = await spawn_process(cmd, cwd=self.spec.cwd, env=env)
        except OSError as exc:
            m.state = ServiceState.STOPPED
            self._notify(False, f"Failed to start {self.name}: {exc}")
            return False

        m.process = process
        m.port = port
        m.started_at = time.time()
        self._write_state_file()
        self._pump_tasks = [
            asyncio.create_task(self._pump(process.stdout, is_stderr=False)),
            asyncio.create_task(self._pump(process.stderr, is_stderr=True)),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(process))

        self.logger.info(f"Waiting {self.settings.settle_delay}s for {self.name} to start...")
        await asyncio.sleep(self.settings.settle_delay)

        healthy = m.process is process and await self.probe.check(port)
        if not healthy:
            await self.stop()
            self._notify(False, f"{self.name} started but is not responding to health checks")
            return False

        self._set_state(ServiceState.RUNNING)
        self._health_task = asyncio.create_task(self._health_loop())
        self._notify(True, f"{self.name} running on port {port} (PID: {process.pid})")
        return True

    async def stop(self):
        """Deliberately stop the service; no automatic restart follows."""
        restart_task = self._restart_task
        if restart_task is not None and not restart_task.done() and restart_task is not asyncio.current_task():
            restart_task.cancel()
            # Let a restart caught mid-spawn attach its handle so teardown can reap it
            try:
                await restart_task
            except asyncio.CancelledError:
                pass
        await self._teardown()
        self.managed.state = ServiceState.STOPPED

    async def _teardown(self):
        m = self.managed
        m.stop_requested = True
        self._cancel_task(self._health_task)

        process = m.process
        m.clear_handle()
        self._remove_state_file()

        if process is None:
            return

        self.logger.info(f"Stopping {self.name} process (PID: {process.pid})")
        await self._terminate(process)
        self.logger.info(f"{self.name} process terminated")

    async def _terminate(self, process: asyncio.subprocess.Process, timeout: float = 5.0):
        if process.returncode is not None:
            return
        await asyncio.to_thread(terminate_children, process.pid, timeout)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"{self.name} ignored SIGTERM, killing it")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _pump(self, stream: Optional[asyncio.StreamReader], is_stderr: bool):
        if stream is None:
            return
        label = 'stderr' if is_stderr else 'stdout'
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Over-long line; the reader already discarded it
                continue
            if not line:
                break
            text = line.decode('utf-8', errors='replace').rstrip()
            if not text:
                continue
            if is_stderr:
                self.logger.warning(f"{self.name} {label}: {text}")
            else:
                self.logger.info(f"{self.name} {label}: {text}")

    async def _watch_exit(self, process: asyncio.subprocess.Process):
        code = await process.wait()
        self.logger.info(f"{self.name} process (PID: {process.pid}) exited with code {code}")

        m = self.managed
        if m.process is not process:
            return

        self._cancel_task(self._health_task)
        m.clear_handle()
        self._remove_state_file()

        if m.stop_requested:
            m.state = ServiceState.STOPPED
            return
        if m.state == ServiceState.STARTING:
            # start() notices the missing handle after its settle delay and reports the failure
            return

        m.state = ServiceState.UNHEALTHY
        self._schedule_restart(f"terminated unexpectedly (exit code {code})")

    async def _health_loop(self):
        interval = self.settings.health_interval
        while True:
            await asyncio.sleep(interval)
            m = self.managed
            if m.stop_requested or not m.port:
                return

            self.logger.debug(f"Running scheduled health check for {self.name}")
            if await self.probe.check(m.port):
                if m.consecutive_restarts:
                    self.logger.info(f"{self.name} healthy again, resetting restart counter")
                    m.consecutive_restarts = 0
                continue

            if m.stop_requested:
                return
            self._set_state(ServiceState.UNHEALTHY)
            self._schedule_restart("is not responding to health checks")
            return

    def _schedule_restart(self, reason: str):
        if self._restart_task is not None and not self._restart_task.done():
            self.logger.info(f"Restart of {self.name} already pending, ignoring: {reason}")
            return
        self._restart_task = asyncio.create_task(self._restart(reason))

    def _backoff_delay(self, attempt: int) -> float:
        base = self.settings.restart_backoff
        return min(base * (2 ** (attempt - 1)), self.settings.restart_backoff_max)

    async def _restart(self, reason: str):
        m = self.managed
        self._notify(False, f"{self.name} {reason}, restarting")
        await self._teardown()

        limit = self.settings.max_restart_attempts
        while True:
            if limit and m.consecutive_restarts >= limit:
                m.state = ServiceState.DEGRADED
                self._notify(False, f"{self.name} degraded after {m.consecutive_restarts} consecutive restart attempts")
                return

            m.consecutive_restarts += 1
            m.restart_count += 1
            delay = self._backoff_delay(m.consecutive_restarts)
            m.state = ServiceState.RESTARTING
            self.logger.info(f"Restart attempt {m.consecutive_restarts} for {self.name} in {delay:.1f}s")
            await asyncio.sleep(delay)

            if await self._ensure_available():
                return
