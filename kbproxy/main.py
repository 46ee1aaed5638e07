#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from kbproxy.config.settings import Settings, load_settings
from kbproxy.core.exchange_log import ExchangeLogger, read_records
from kbproxy.core.health import HealthProbe
from kbproxy.core.host import PROXY_SERVICE, ServiceHost, proxy_env_exports
from kbproxy.utils.log_setup import get_logger
from kbproxy.utils.platform_helper import is_process_running, kill_process, terminate_process


def _host_pid_file(settings: Settings) -> Path:
    return settings.run_dir / 'host.pid'


def _read_pid(pid_file: Path) -> Optional[int]:
    if not pid_file.exists():
        return None
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def _load_service_state(settings: Settings, name: str) -> dict:
    state_file = settings.run_dir / f'{name}.json'
    if not state_file.exists():
        return {}
    try:
        return json.loads(state_file.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError):
        return {}


def print_status(settings: Settings):
    """Display the runtime status of the host and every configured service"""
    print("=== kbproxy Service Status ===\n")

    host_pid = _read_pid(_host_pid_file(settings))
    host_running = is_process_running(host_pid)
    print("Host:")
    print(f"  Status: {'Running' if host_running else 'Stopped'}{f' (PID: {host_pid})' if host_running else ''}")
    print()

    for name, spec in settings.services.items():
        print(f"{name.capitalize()} service:")
        if not spec.enabled:
            print("  Status: Disabled")
            print()
            continue

        state = _load_service_state(settings, name)
        pid = state.get('pid')
        port = state.get('port')
        running = host_running and is_process_running(pid)
        if running and port:
            healthy = asyncio.run(HealthProbe(spec.health_path, timeout=settings.supervisor.health_timeout).check(port))
        else:
            healthy = False

        status_text = state.get('state', 'stopped').capitalize() if running else "Stopped"
        pid_text = f" (PID: {pid})" if running and pid else ""
        print(f"  Port: {port if running and port else '-'}")
        print(f"  Status: {status_text}{pid_text}")
        print(f"  Health: {'OK' if healthy else 'Not responding'} ({spec.health_path})")
        if running:
            print(f"  Restarts: {state.get('restart_count', 0)}")
        print()


def _status_printer(service_name: str, ok: bool, message: str):
    marker = 'OK' if ok else 'WARN'
    print(f"[{marker}] {service_name}: {message}", flush=True)


async def _run_host(settings: Settings) -> int:
    host = ServiceHost(settings, on_status=_status_printer)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop_event.set))

    async def report():
        results = await host.ensure_all()
        for name, ok in results.items():
            if not ok:
                print(f"{name} service failed to start; it will not be retried until the next run")
        proxy_url = host.proxy_url()
        if proxy_url:
            print(f"Proxy available at {proxy_url}")
        print("Press Ctrl+C to stop")

    report_task = asyncio.create_task(report())
    try:
        await stop_event.wait()
    finally:
        report_task.cancel()
        try:
            await report_task
        except asyncio.CancelledError:
            pass
        print("Stopping services...")
        await host.stop_all()
    return 0


def cmd_run(settings: Settings) -> int:
    pid_file = _host_pid_file(settings)
    existing = _read_pid(pid_file)
    if existing and existing != os.getpid() and is_process_running(existing):
        print(f"kbproxy is already running (PID: {existing})")
        return 1

    get_logger('kbproxy')
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    print("Starting services...")
    try:
        return asyncio.run(_run_host(settings))
    finally:
        if _read_pid(pid_file) == os.getpid():
            pid_file.unlink(missing_ok=True)
        print("All services stopped")


def cmd_stop(settings: Settings) -> int:
    pid_file = _host_pid_file(settings)
    pid = _read_pid(pid_file)
    if not is_process_running(pid):
        print("kbproxy is not running")
        pid_file.unlink(missing_ok=True)
        return 1

    # The host stops its own services on SIGTERM; force the whole tree only if it hangs
    if not terminate_process(pid, timeout=15.0):
        print("kbproxy did not exit in time, killing it and its services")
        kill_process(pid, force=True)
    pid_file.unlink(missing_ok=True)
    print(f"kbproxy stopped (PID: {pid})")
    return 0


def cmd_env(settings: Settings) -> int:
    state = _load_service_state(settings, PROXY_SERVICE)
    port = state.get('port')
    if not port or not is_process_running(state.get('pid')):
        print("Proxy is not running; start it with: kbproxy run", file=sys.stderr)
        return 1
    for line in proxy_env_exports(f"http://127.0.0.1:{port}", settings.proxy_url_env, windows=os.name == 'nt'):
        print(line)
    return 0


def cmd_logs(settings: Settings, date: Optional[str], limit: int) -> int:
    exchange_logger = ExchangeLogger(settings.log_dir)
    if date:
        try:
            when = datetime.strptime(date, '%Y-%m-%d')
        except ValueError:
            print(f"Invalid date {date!r}, expected YYYY-MM-DD")
            return 1
        log_file = exchange_logger.log_file_for(when)
    else:
        log_file = exchange_logger.current_log_file()

    records = read_records(log_file)
    if not records:
        print(f"No exchanges recorded in {log_file}")
        return 0

    for record in records[-limit:]:
        data = json.dumps(record.get('data'), ensure_ascii=False)
        if len(data) > 160:
            data = data[:157] + '...'
        print(f"{record.get('ts')}  {record.get('phase', '?'):<8}  {data}")
    return 0


def main():
    """Main entry point that processes CLI arguments"""
    parser = argparse.ArgumentParser(
        description='kbproxy - supervised local chat completion proxy',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  kbproxy run                   Supervise all configured services
  kbproxy stop                  Stop a running host
  kbproxy status                Display status for all services
  kbproxy env                   Print proxy environment variables
  kbproxy logs -n 20            Show the last 20 logged exchanges""",
        prog='kbproxy'
    )
    parser.add_argument('--config', type=Path, default=None,
                        help='Settings file (default: ~/.kbproxy/settings.json)')
    subparsers = parser.add_subparsers(
        dest='command',
        title='Commands',
        description='Use kbproxy <command> --help for detailed help',
        help='Command description'
    )

    subparsers.add_parser(
        'run',
        help='Supervise the configured services in the foreground',
        description='Start every enabled service, restart it when it fails, stop everything on Ctrl+C'
    )

    subparsers.add_parser(
        'stop',
        help='Stop a running host',
        description='Terminate the host recorded in ~/.kbproxy/run/host.pid together with its services'
    )

    subparsers.add_parser(
        'status',
        help='Show service status',
        description='Display runtime state, PID, port and live health for each service'
    )

    proxy_parser = subparsers.add_parser(
        'proxy',
        help='Run the proxy server (launched by the supervisor)',
        description='Serve the interception proxy on 127.0.0.1',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Example:
  kbproxy proxy --port 7001     Serve the proxy on port 7001"""
    )
    proxy_parser.add_argument('--port', type=int, default=None,
                              help='Listening port (defaults to $PORT)')
    proxy_parser.add_argument('--config', dest='proxy_config', type=Path, default=None,
                              help='Settings file')

    subparsers.add_parser(
        'env',
        help='Print proxy environment variables',
        description='Print shell lines pointing clients at the running proxy'
    )

    logs_parser = subparsers.add_parser(
        'logs',
        help='Show logged exchanges',
        description='Print recorded inbound/outbound exchanges for a day'
    )
    logs_parser.add_argument('--date', default=None, help='Day to show (YYYY-MM-DD, default today)')
    logs_parser.add_argument('-n', '--limit', type=int, default=20, help='Number of records to show')

    # Parse arguments
    args = parser.parse_args()

    if args.command == 'proxy':
        port = args.port or int(os.environ.get('PORT', '0') or 0)
        if not port:
            parser.error('proxy requires --port or the PORT environment variable')
        from kbproxy.proxy.server import run_server
        run_server(port, args.proxy_config or args.config)
        return

    settings = load_settings(args.config)
    if args.command == 'run':
        sys.exit(cmd_run(settings))
    elif args.command == 'stop':
        sys.exit(cmd_stop(settings))
    elif args.command == 'status':
        print_status(settings)
    elif args.command == 'env':
        sys.exit(cmd_env(settings))
    elif args.command == 'logs':
        sys.exit(cmd_logs(settings, args.date, args.limit))
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
