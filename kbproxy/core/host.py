#!/usr/bin/env python3
"""Foreground host that owns one supervisor per configured service."""
import asyncio
import os
from typing import Dict, List, Mapping, Optional

from ..config.settings import Settings
from ..utils.log_setup import get_logger
from .supervisor import ProcessSupervisor, StatusCallback

PROXY_SERVICE = 'proxy'


def check_proxy_environment(proxy_url: str, env_name: str, environ: Mapping[str, str]) -> List[str]:
    """Return warnings for proxy variables that are unset or point elsewhere."""
    warnings = []

    override = environ.get(env_name)
    if not override:
        warnings.append(f"{env_name} is not set; recommended value: {proxy_url}")
    elif override.rstrip('/') != proxy_url:
        warnings.append(f"{env_name} is set to {override}, but the proxy is running on {proxy_url}")

    http_proxy = environ.get('HTTP_PROXY') or environ.get('http_proxy')
    https_proxy = environ.get('HTTPS_PROXY') or environ.get('https_proxy')
    if not http_proxy and not https_proxy:
        warnings.append(
            f"HTTP_PROXY and HTTPS_PROXY are not set; recommended values: "
            f"HTTP_PROXY={proxy_url}, HTTPS_PROXY={proxy_url}"
        )
    else:
        for name, value in (('HTTP_PROXY', http_proxy), ('HTTPS_PROXY', https_proxy)):
            if value and value.rstrip('/') != proxy_url:
                warnings.append(f"{name} is set to {value}, but the proxy is running on {proxy_url}")
    return warnings


def proxy_env_exports(proxy_url: str, env_name: str, windows: bool = False) -> List[str]:
    """Shell lines that point clients at the proxy."""
    names = [env_name, 'HTTP_PROXY', 'HTTPS_PROXY']
    if windows:
        return [f"set {name}={proxy_url}" for name in names]
    return [f"export {name}={proxy_url}" for name in names]


class ServiceHost:
    """Builds and drives a :class:`ProcessSupervisor` for every enabled service."""

    def __init__(self, settings: Settings, on_status: Optional[StatusCallback] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.settings = settings
        self.on_status = on_status
        self.environ = environ if environ is not None else os.environ
        self.logger = get_logger('kbproxy.host', log_file=settings.run_dir / 'host.log')
        self.supervisors: Dict[str, ProcessSupervisor] = {}

        for name, spec in settings.services.items():
            if not spec.enabled:
                continue
            if not spec.command:
                self.logger.warning(f"Service {name} is enabled but has no command, skipping")
                continue
            self.supervisors[name] = ProcessSupervisor(
                spec,
                settings.supervisor,
                on_status=self._handle_status,
                run_dir=settings.run_dir,
            )

    def _handle_status(self, service_name: str, ok: bool, message: str):
        self._emit(service_name, ok, message)
        if service_name == PROXY_SERVICE and ok:
            self.check_environment()

    def _emit(self, service_name: str, ok: bool, message: str):
        if self.on_status is not None:
            self.on_status(service_name, ok, message)
        else:
            marker = 'OK' if ok else 'WARN'
            print(f"[{marker}] {service_name}: {message}")

    def proxy_url(self) -> Optional[str]:
        supervisor = self.supervisors.get(PROXY_SERVICE)
        if supervisor is None or not supervisor.port:
            return None
        return f"http://127.0.0.1:{supervisor.port}"

    def check_environment(self) -> List[str]:
        """Surface proxy environment warnings through the status callback."""
        proxy_url = self.proxy_url()
        if proxy_url is None:
            return []
        warnings = check_proxy_environment(proxy_url, self.settings.proxy_url_env, self.environ)
        for warning in warnings:
            self.logger.warning(warning)
            self._emit(PROXY_SERVICE, False, warning)
        return warnings

    async def ensure_all(self) -> Dict[str, bool]:
        """Ensure every supervised service is available; returns per-service results."""
        results = {}
        for name, supervisor in self.supervisors.items():
            results[name] = await supervisor.ensure_available()
        return results

    async def stop_all(self):
        for name, supervisor in self.supervisors.items():
            self.logger.info(f"Stopping {name}")
            await supervisor.stop()

    async def serve(self, stop_event: asyncio.Event) -> Dict[str, bool]:
        """Start everything, then keep supervising until ``stop_event`` is set."""
        try:
            results = await self.ensure_all()
            if not self.supervisors:
                self.logger.warning("No services configured to supervise")
            await stop_event.wait()
            return results
        finally:
            await self.stop_all()
