import asyncio
import sys
from pathlib import Path

from kbproxy.config.settings import ServiceSpec
from kbproxy.core.host import ServiceHost, check_proxy_environment, proxy_env_exports

URL = 'http://127.0.0.1:7001'
STUB = str(Path(__file__).parent / 'stub_service.py')


def test_all_variables_set_correctly_gives_no_warnings():
    environ = {'GH_COPILOT_OVERRIDE_PROXY_URL': URL, 'HTTP_PROXY': URL, 'HTTPS_PROXY': URL + '/'}
    assert check_proxy_environment(URL, 'GH_COPILOT_OVERRIDE_PROXY_URL', environ) == []


def test_missing_variables_are_reported():
    warnings = check_proxy_environment(URL, 'GH_COPILOT_OVERRIDE_PROXY_URL', {})
    assert len(warnings) == 2
    assert 'GH_COPILOT_OVERRIDE_PROXY_URL is not set' in warnings[0]
    assert f'HTTP_PROXY={URL}' in warnings[1]


def test_mismatched_variables_are_reported():
    environ = {
        'GH_COPILOT_OVERRIDE_PROXY_URL': 'http://127.0.0.1:7002',
        'http_proxy': URL,
        'HTTPS_PROXY': 'http://corp-proxy:3128',
    }
    warnings = check_proxy_environment(URL, 'GH_COPILOT_OVERRIDE_PROXY_URL', environ)
    assert len(warnings) == 2
    assert 'http://127.0.0.1:7002' in warnings[0]
    assert warnings[1].startswith('HTTPS_PROXY is set to http://corp-proxy:3128')


def test_env_exports():
    assert proxy_env_exports(URL, 'OVERRIDE') == [
        f'export OVERRIDE={URL}', f'export HTTP_PROXY={URL}', f'export HTTPS_PROXY={URL}',
    ]
    assert proxy_env_exports(URL, 'OVERRIDE', windows=True)[0] == f'set OVERRIDE={URL}'


def test_host_skips_disabled_and_commandless_services(settings):
    settings.services = {
        'proxy': ServiceSpec(name='proxy', command=['x']),
        'core': ServiceSpec(name='core', command=['y'], enabled=False),
        'extra': ServiceSpec(name='extra', command=[]),
    }
    host = ServiceHost(settings, on_status=lambda *args: None)
    assert list(host.supervisors) == ['proxy']
    assert host.proxy_url() is None


def test_host_reports_environment_warnings_after_proxy_starts(settings):
    events = []
    settings.services = {'proxy': ServiceSpec(name='proxy', command=[sys.executable, STUB])}
    host = ServiceHost(settings, on_status=lambda *event: events.append(event), environ={})

    async def scenario():
        stop_event = asyncio.Event()
        serve_task = asyncio.create_task(host.serve(stop_event))
        for _ in range(200):
            if host.proxy_url():
                break
            await asyncio.sleep(0.05)
        proxy_url = host.proxy_url()
        stop_event.set()
        results = await serve_task
        return proxy_url, results

    proxy_url, results = asyncio.run(scenario())
    assert results == {'proxy': True}
    assert proxy_url.startswith('http://127.0.0.1:')
    assert events[0][:2] == ('proxy', True)
    warnings = [message for name, ok, message in events if not ok]
    assert any(proxy_url in message for message in warnings)
    assert host.supervisors['proxy'].pid is None
