#!/usr/bin/env python3
"""Settings file handling for the supervisor host and the proxy service."""
import copy
import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

PROJECT_ROOT = Path(__file__).parent.parent.parent


def default_home() -> Path:
    """Return the product directory (``~/.kbproxy`` unless KBPROXY_HOME is set)."""
    override = os.environ.get('KBPROXY_HOME')
    if override:
        return Path(override).expanduser()
    return Path.home() / '.kbproxy'


DEFAULT_SETTINGS: Dict[str, Any] = {
    'upstream_base_url': 'https://api.openai.com',
    'transformer': 'logging',
    'transformer_options': {},
    'proxy_url_env': 'GH_COPILOT_OVERRIDE_PROXY_URL',
    'log_dir': None,
    'supervisor': {
        'settle_delay': 2.0,
        'health_interval': 30.0,
        'health_timeout': 5.0,
        'restart_backoff': 1.0,
        'restart_backoff_max': 30.0,
        'max_restart_attempts': 5,
    },
    'services': {
        'proxy': {
            'enabled': True,
            'command': None,
            'cwd': None,
            'env': {},
            'health_path': '/ping',
            'port_range': [7001, 7010],
        },
        'core': {
            'enabled': False,
            'command': [],
            'cwd': None,
            'env': {},
            'health_path': '/control/health',
            'port_range': None,
        },
    },
}


@dataclass
class ServiceSpec:
    """Launch description of one supervised service."""

    name: str
    command: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    health_path: str = '/ping'
    port_range: Optional[Tuple[int, int]] = None
    enabled: bool = True


@dataclass
class SupervisorSettings:
    settle_delay: float = 2.0
    health_interval: float = 30.0
    health_timeout: float = 5.0
    restart_backoff: float = 1.0
    restart_backoff_max: float = 30.0
    max_restart_attempts: int = 5


@dataclass
class Settings:
    """Resolved settings consumed by the host, the supervisors and the proxy."""

    home: Path
    upstream_base_url: str = 'https://api.openai.com'
    transformer: str = 'logging'
    transformer_options: Dict[str, Any] = field(default_factory=dict)
    proxy_url_env: str = 'GH_COPILOT_OVERRIDE_PROXY_URL'
    log_dir: Optional[Path] = None
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    services: Dict[str, ServiceSpec] = field(default_factory=dict)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if self.log_dir is None:
            self.log_dir = self.home / 'logs'

    @property
    def run_dir(self) -> Path:
        return self.home / 'run'


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` onto a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_port_range(value) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    try:
        start, end = int(value[0]), int(value[1])
    except (TypeError, ValueError, IndexError):
        print(f"Ignoring invalid port range: {value!r}")
        return None
    if not (1 <= start <= end <= 65535):
        print(f"Ignoring out-of-bounds port range: {value!r}")
        return None
    return start, end


def _float_setting(section: Dict[str, Any], key: str, default: float) -> float:
    try:
        value = float(section.get(key, default))
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def default_proxy_command(config_file: Optional[Path]) -> List[str]:
    """Command the supervisor uses to launch this package's proxy server."""
    cmd = [sys.executable, '-m', 'kbproxy.main', 'proxy']
    if config_file is not None:
        cmd.extend(['--config', str(config_file)])
    return cmd


class ConfigManager:
    """Loads ``settings.json`` from the product directory, creating it on first use."""

    def __init__(self, home: Optional[Path] = None, config_file: Optional[Path] = None):
        self.home = Path(home) if home is not None else default_home()
        self.config_file = Path(config_file) if config_file is not None else self.home / 'settings.json'

    def _ensure_config_file(self) -> bool:
        """Ensure the settings file exists; return True if newly created."""
        if self.config_file.exists():
            return False
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(DEFAULT_SETTINGS, f, ensure_ascii=False, indent=2)
            return True
        except OSError as e:
            print(f"Failed to create settings file {self.config_file}: {e}")
            return False

    def load_raw(self) -> Dict[str, Any]:
        """Return the settings document merged over the defaults."""
        self._ensure_config_file()
        data: Dict[str, Any] = {}
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    data = json.load(f) or {}
            if not isinstance(data, dict):
                print(f"Settings file {self.config_file} must contain a JSON object, using defaults")
                data = {}
        except (json.JSONDecodeError, OSError) as e:
            print(f"Failed to load settings file: {e}")
            data = {}
        return _merge(DEFAULT_SETTINGS, data)

    def load(self) -> Settings:
        """Parse the settings file into a :class:`Settings` instance."""
        raw = self.load_raw()

        sup_raw = raw.get('supervisor') or {}
        try:
            max_attempts = int(sup_raw.get('max_restart_attempts', 5))
        except (TypeError, ValueError):
            max_attempts = 5
        supervisor = SupervisorSettings(
            settle_delay=_float_setting(sup_raw, 'settle_delay', 2.0),
            health_interval=_float_setting(sup_raw, 'health_interval', 30.0),
            health_timeout=_float_setting(sup_raw, 'health_timeout', 5.0),
            restart_backoff=_float_setting(sup_raw, 'restart_backoff', 1.0),
            restart_backoff_max=_float_setting(sup_raw, 'restart_backoff_max', 30.0),
            max_restart_attempts=max(0, max_attempts),
        )

        services: Dict[str, ServiceSpec] = {}
        for name, svc in (raw.get('services') or {}).items():
            if not isinstance(svc, dict):
                continue
            command = svc.get('command')
            if name == 'proxy' and not command:
                command = default_proxy_command(self.config_file)
                cwd = svc.get('cwd') or str(PROJECT_ROOT)
            else:
                cwd = svc.get('cwd')
            services[name] = ServiceSpec(
                name=name,
                command=[str(part) for part in (command or [])],
                cwd=cwd,
                env={str(k): str(v) for k, v in (svc.get('env') or {}).items()},
                health_path=svc.get('health_path') or '/ping',
                port_range=_parse_port_range(svc.get('port_range')),
                enabled=bool(svc.get('enabled', True)),
            )

        log_dir = raw.get('log_dir')
        return Settings(
            home=self.home,
            upstream_base_url=str(raw.get('upstream_base_url') or DEFAULT_SETTINGS['upstream_base_url']).rstrip('/'),
            transformer=str(raw.get('transformer') or 'logging'),
            transformer_options=dict(raw.get('transformer_options') or {}),
            proxy_url_env=str(raw.get('proxy_url_env') or DEFAULT_SETTINGS['proxy_url_env']),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
            supervisor=supervisor,
            services=services,
            config_file=self.config_file,
        )


def load_settings(config_file: Optional[Path] = None) -> Settings:
    """Convenience wrapper used by the CLI entry points."""
    if config_file is not None:
        config_file = Path(config_file).expanduser()
        return ConfigManager(home=default_home(), config_file=config_file).load()
    return ConfigManager().load()
