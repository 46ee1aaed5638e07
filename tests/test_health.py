import asyncio

import httpx

from kbproxy.core.health import HealthProbe


def _probe(handler, path='/ping'):
    return HealthProbe(path, timeout=1.0, transport=httpx.MockTransport(handler))


def test_healthy_service_answers_200():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={'status': 'ok'})

    assert asyncio.run(_probe(handler).check(7001)) is True
    assert seen == ['http://127.0.0.1:7001/ping']


def test_non_200_is_unhealthy():
    probe = _probe(lambda request: httpx.Response(503))
    assert asyncio.run(probe.check(7001)) is False


def test_transport_errors_are_unhealthy():
    def handler(request):
        raise httpx.ConnectError('refused', request=request)

    assert asyncio.run(_probe(handler).check(7001)) is False


def test_timeout_is_unhealthy():
    def handler(request):
        raise httpx.ReadTimeout('slow', request=request)

    assert asyncio.run(_probe(handler).check(7001)) is False


def test_no_port_skips_the_network():
    def handler(request):
        raise AssertionError('probe must not issue a request without a port')

    assert asyncio.run(_probe(handler).check(None)) is False


def test_path_is_normalised():
    probe = HealthProbe('control/health')
    assert probe.url_for(9000) == 'http://127.0.0.1:9000/control/health'
