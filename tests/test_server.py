import json

import pytest

from conftest import EMPLOYEES_URL, FakeResponse
from server.events import ResultBroadcaster
from server.server import WAITRESS_THREADS, create_app
from shared.models import SyncResult


@pytest.fixture
def broadcaster():
    return ResultBroadcaster()


@pytest.fixture
def app(service, broadcaster):
    app = create_app(service, broadcaster)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def http(app):
    return app.test_client()


def test_health(http):
    response = http.get('/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_start_requires_credentials(http):
    response = http.post('/api/sync/start', json={'sync_period': '5'})
    assert response.status_code == 400
    assert response.get_json()['error_type'] == 'ConfigError'


def test_start_status_stop(http, broadcaster):
    response = http.post('/api/sync/start', json={'sync_period': '10', 'username': 'admin', 'password': 'secret'})
    assert response.status_code == 200
    assert response.get_json()['success'] is True

    status = http.get('/api/sync/status').get_json()
    assert status['is_running'] is True
    assert status['sync_period'] == '10'
    assert status['last_sync_time'] is not None

    assert [entry['api'] for entry in broadcaster.recent()] == [
        'Login', 'Get All Employees', 'Get Devices', 'Device Logs', 'External API']

    assert http.post('/api/sync/stop').status_code == 200
    second = http.post('/api/sync/stop')
    assert second.status_code == 400
    assert second.get_json()['error_type'] == 'NoOpError'
    assert http.get('/api/sync/status').get_json()['is_running'] is False


def test_start_uses_saved_credentials(http, service):
    service.save_credentials('admin', 'secret')
    response = http.post('/api/sync/start', json={})
    assert response.status_code == 200


def test_start_with_bad_credentials_reports_login_failure(http, session):
    session.routes[('POST', 'http://biotime.local/jwt-api-token-auth/')] = FakeResponse(401)

    response = http.post('/api/sync/start', json={'username': 'admin', 'password': 'wrong'})

    body = response.get_json()
    assert response.status_code == 400
    assert body['error'].startswith('Login failed')
    assert http.get('/api/sync/status').get_json()['is_running'] is False


def test_recent_logs_limit(http, broadcaster):
    for i in range(3):
        broadcaster.publish(SyncResult(api='System', success=True, message=str(i)))

    logs = http.get('/api/sync/logs?limit=2').get_json()['logs']

    assert [entry['message'] for entry in logs] == ['1', '2']


def test_run_now_failure_is_bad_gateway(http, service, session):
    service.save_credentials('admin', 'secret')
    session.routes[('GET', EMPLOYEES_URL)] = FakeResponse(500)

    response = http.post('/api/sync/run')

    assert response.status_code == 502
    apis = [step['api'] for step in response.get_json()['data']]
    assert 'External API' not in apis


def test_sync_all_logs(http, service):
    service.save_credentials('admin', 'secret')
    service.api.login('admin', 'secret')

    body = http.post('/api/sync-all-logs').get_json()

    assert body['success'] is True
    assert body['raw_data']['count'] == 1


def test_settings_round_trip(http):
    assert http.post('/api/settings/credentials', json={'username': 'admin', 'password': 'pw'}).status_code == 200
    credentials = http.get('/api/settings/credentials').get_json()
    assert credentials['username'] == 'admin'
    assert credentials['has_credentials'] is True

    assert http.post('/api/settings/syncperiod', json={'sync_period': '30'}).status_code == 200
    assert http.get('/api/settings/syncperiod').get_json()['sync_period'] == '30'
    assert http.post('/api/settings/syncperiod', json={'sync_period': '1'}).status_code == 400

    assert http.post('/api/settings/server', json={'url': 'https://biotime.example/'}).status_code == 200
    assert http.get('/api/settings/server').get_json()['url'] == 'https://biotime.example'
    assert http.post('/api/settings/server', json={}).status_code == 400

    response = http.post('/api/settings/external', json={'url': 'https://ingest.example', 'key': 'k'})
    assert response.status_code == 200

    config = http.get('/api/settings/config').get_json()
    assert config['username'] == 'admin'
    assert config['external_url'] == 'https://ingest.example'
    assert 'external_key' not in config


def test_devices_and_company_override(http, service):
    # no token yet: the fetch logs in with the saved credentials
    service.save_credentials('admin', 'secret')

    devices = http.get('/api/devices').get_json()['data']
    assert [(d['id'], d['serial_number']) for d in devices] == [('1', 'SN-1')]

    response = http.post('/api/devices/1/company', json={'company_id': 'ACME'})
    assert response.status_code == 200
    assert response.get_json()['data'] == {'device_id': '1', 'company_id': 'ACME'}

    cached = http.get('/api/devices?cached=1').get_json()['data']
    assert cached[0]['company_id'] == 'ACME'

    assert http.get('/api/devices/1/company').get_json()['data'] == {'device_id': '1', 'company_id': 'ACME'}
    assert http.get('/api/devices/404/company').get_json()['data']['company_id'] is None

    assert http.post('/api/devices/1/company', json={}).status_code == 400


def test_unknown_route_is_json_404(http):
    response = http.get('/api/nope')
    assert response.status_code == 404
    assert response.get_json()['success'] is False


def test_event_stream_frames(broadcaster):
    subscriber = broadcaster.subscribe()
    frames = broadcaster.stream(subscriber, keepalive=0.01)

    assert next(frames) == 'retry: 3000\n: connected\n\n'
    assert next(frames) == ': keepalive\n\n'

    broadcaster.publish(SyncResult(api='Login', success=True, message='Authentication successful'))
    frame = next(frames)
    assert frame.startswith('event: log\ndata: ')
    assert json.loads(frame.split('data: ', 1)[1])['api'] == 'Login'

    frames.close()
    assert broadcaster.subscriber_count == 0


def test_event_stream_ends_after_its_lifetime(broadcaster):
    subscriber = broadcaster.subscribe()

    frames = list(broadcaster.stream(subscriber, keepalive=0.01, lifetime=0.05))

    assert frames[0].startswith('retry: ')
    assert set(frames[1:]) <= {': keepalive\n\n'}
    assert broadcaster.subscriber_count == 0


def test_subscriber_cap_frees_slot_on_unsubscribe():
    broadcaster = ResultBroadcaster(max_subscribers=1)
    first = broadcaster.subscribe()

    assert broadcaster.subscribe() is None

    broadcaster.unsubscribe(first)
    assert broadcaster.subscribe() is not None


def test_event_stream_refused_when_full(service):
    broadcaster = ResultBroadcaster(max_subscribers=1)
    broadcaster.subscribe()
    http = create_app(service, broadcaster).test_client()

    response = http.get('/api/sync/events')

    assert response.status_code == 503
    assert response.get_json()['error'] == 'Too many open event streams'


def test_default_stream_cap_leaves_workers_free(service):
    app = create_app(service)
    assert app.extensions['biosync.events'].max_subscribers == WAITRESS_THREADS - 2


def test_shutdown_without_running_server(http):
    response = http.post('/admin/shutdown')
    assert response.status_code == 400
