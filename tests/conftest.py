import pytest

from kbproxy.config.settings import ServiceSpec, Settings, SupervisorSettings


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / 'kbproxy-home'
    monkeypatch.setenv('KBPROXY_HOME', str(home))
    return home


@pytest.fixture
def settings(tmp_path):
    return Settings(
        home=tmp_path / 'home',
        upstream_base_url='https://upstream.test',
        supervisor=SupervisorSettings(
            settle_delay=0.5,
            health_interval=30.0,
            health_timeout=2.0,
            restart_backoff=0.05,
            restart_backoff_max=0.2,
            max_restart_attempts=3,
        ),
        services={},
    )


@pytest.fixture
def make_spec():
    def _make(command, name='stub', health_path='/ping', **kwargs):
        return ServiceSpec(name=name, command=list(command), health_path=health_path, **kwargs)
    return _make
