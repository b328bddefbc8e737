import threading
import time
from unittest import mock

import pytest

from client.api_client import BioTimeClient
from client.sync_service import SyncSchedule, SyncService
from conftest import EMPLOYEES_URL, LOGIN_URL, FakeResponse
from shared.models import ApiResponse, SyncResult
from shared.store import JsonStore

LONG_INTERVALS = {'5': 3600, '10': 3600, '30': 3600}


@pytest.fixture
def stub_api(store):
    api = mock.create_autospec(BioTimeClient, instance=True)
    api.store = store
    api.login.return_value = ApiResponse.ok(data={'token': 'jwt'}, message='Authentication successful')
    api.run_sync_sequence.return_value = [
        SyncResult(api='Get All Employees', success=True),
        SyncResult(api='Get Devices', success=True),
        SyncResult(api='Device Logs', success=True),
        SyncResult(api='External API', success=True),
    ]
    return api


@pytest.fixture
def stub_service(store, stub_api):
    service = SyncService(store, stub_api, intervals=LONG_INTERVALS)
    yield service
    service.shutdown()


def test_start_sync_runs_one_cycle_then_arms_timer(stub_service, stub_api, store):
    streamed = []

    def sink(result):
        # the timer is only armed after the immediate burst
        streamed.append((result.api, stub_service._schedule is not None))

    result = stub_service.start_sync('5', {'username': 'u', 'password': 'p'}, result_sink=sink)

    assert result.success
    assert store.get_config().sync_period == '5'
    assert store.get_config().is_running is True
    assert stub_service.is_running() is True
    stub_api.login.assert_called_once_with('u', 'p')
    stub_api.run_sync_sequence.assert_called_once()
    assert streamed == [
        ('Login', False),
        ('Get All Employees', False),
        ('Get Devices', False),
        ('Device Logs', False),
        ('External API', False),
    ]


def test_stop_after_start(stub_service):
    stub_service.start_sync('10', {'username': 'u', 'password': 'p'})

    result = stub_service.stop_sync()

    assert result.success
    assert result.message == 'Sync stopped'
    assert stub_service.is_running() is False
    assert stub_service.store.get_config().is_running is False


def test_second_stop_is_a_no_op_failure(stub_service):
    stub_service.start_sync('5', {'username': 'u', 'password': 'p'})
    stub_service.stop_sync()

    result = stub_service.stop_sync()

    assert not result.success
    assert result.error_type == 'NoOpError'
    assert result.message == 'No active sync to stop'


def test_login_failure_leaves_nothing_scheduled(stub_service, stub_api, store):
    stub_api.login.return_value = ApiResponse(False, error='Incorrect username or password',
                                              error_type='AuthError')
    streamed = []

    result = stub_service.start_sync('5', {'username': 'u', 'password': 'bad'}, result_sink=streamed.append)

    assert not result.success
    assert result.error == 'Login failed: Incorrect username or password'
    assert stub_service.is_running() is False
    assert store.get_config().is_running is False
    stub_api.run_sync_sequence.assert_not_called()
    assert [(r.api, r.success) for r in streamed] == [('Login', False)]


def test_missing_credentials_fail_without_login(stub_service, stub_api, store):
    result = stub_service.start_sync('5', {'username': 'u', 'password': ''})

    assert result.error_type == 'ConfigError'
    stub_api.login.assert_not_called()
    assert store.get_config().is_running is False


def test_unknown_period_falls_back_to_five(stub_service, store):
    stub_service.start_sync('7', {'username': 'u', 'password': 'p'})

    assert store.get_config().sync_period == '5'
    assert stub_service._schedule.interval == LONG_INTERVALS['5']


@pytest.mark.parametrize('period, expected', [(' 10 ', '10'), (30, '30'), (None, '5'), ('abc', '5')])
def test_period_is_parsed_to_a_known_value(stub_service, period, expected):
    assert stub_service._interval_for(period) == expected


def test_restart_keeps_a_single_timer(stub_service):
    stub_service.start_sync('5', {'username': 'u', 'password': 'p'})
    first = stub_service._schedule

    stub_service.start_sync('30', {'username': 'u', 'password': 'p'})

    assert first is not stub_service._schedule
    assert not first.active
    assert stub_service._schedule.active


def test_drift_in_persisted_flag_is_corrected(stub_service, store):
    store.update_sync_status(True)

    assert stub_service.is_running() is False
    assert store.get_config().is_running is False


def test_overlapping_cycle_is_skipped(stub_service, stub_api):
    release = threading.Event()
    entered = threading.Event()

    def slow_sequence():
        entered.set()
        release.wait(5)
        return [SyncResult(api='Get All Employees', success=True)]

    stub_api.run_sync_sequence.side_effect = slow_sequence
    worker = threading.Thread(target=stub_service.run_once)
    worker.start()
    entered.wait(5)

    skipped = stub_service.run_once()

    release.set()
    worker.join(5)
    assert not skipped.success
    assert 'already running' in skipped.error
    assert stub_api.run_sync_sequence.call_count == 1


def test_cycle_exception_becomes_system_result(stub_service, stub_api):
    stub_api.run_sync_sequence.side_effect = RuntimeError('boom')
    streamed = []
    stub_service.add_result_listener(streamed.append)

    result = stub_service.run_once()

    assert not result.success
    assert [(r.api, r.success) for r in streamed] == [('System', False)]


def test_broken_listener_does_not_stop_the_stream(stub_service):
    def broken(result):
        raise ValueError('listener bug')

    received = []
    stub_service.add_result_listener(broken)
    stub_service.add_result_listener(received.append)

    stub_service.run_once()

    assert len(received) == 4


def test_initialize_resumes_running_sync(store, stub_api):
    store.save_credentials('u', 'p')
    store.save_sync_period('10')
    store.update_sync_status(True)
    service = SyncService(store, stub_api, intervals=LONG_INTERVALS)

    try:
        result = service.initialize_from_store()
        assert result.success
        assert service.is_running() is True
        stub_api.login.assert_called_once_with('u', 'p')
    finally:
        service.shutdown()


def test_initialize_without_credentials_clears_flag(store, stub_api):
    store.update_sync_status(True)
    service = SyncService(store, stub_api, intervals=LONG_INTERVALS)

    result = service.initialize_from_store()

    assert result.error_type == 'ConfigError'
    assert store.get_config().is_running is False
    stub_api.login.assert_not_called()


def test_initialize_when_stopped_does_nothing(stub_service, stub_api):
    result = stub_service.initialize_from_store()
    assert result.success
    stub_api.login.assert_not_called()


def test_shutdown_keeps_persisted_flag(file_store, stub_api):
    service = SyncService(file_store, stub_api, intervals=LONG_INTERVALS)
    file_store.save_credentials('u', 'p')
    service.start_sync('5', {'username': 'u', 'password': 'p'})

    service.shutdown()

    assert JsonStore(file_store.path).get_config().is_running is True


def test_settings_validation(stub_service, store):
    assert stub_service.save_sync_period('15').error_type == 'ConfigError'
    assert stub_service.save_sync_period('30').success
    assert stub_service.save_server_url('ftp://x').error_type == 'ConfigError'
    assert stub_service.save_external_api('http://ingest.local', '').error_type == 'ConfigError'
    assert stub_service.save_credentials('u', '').error_type == 'ConfigError'
    assert store.get_config().sync_period == '30'


def test_config_snapshot_hides_external_key(stub_service):
    config = stub_service.get_config()
    assert 'external_key' not in config
    assert config['has_external_key'] is True
    assert config['is_running'] is False


def test_update_company_id_is_idempotent(stub_service, store):
    stub_service.update_device_company_id('1', 'ACME')
    once = store.get_data()

    result = stub_service.update_device_company_id('1', 'ACME')

    assert result.data == {'device_id': '1', 'company_id': 'ACME'}
    assert store.get_data() == once


def test_update_company_id_requires_device(stub_service):
    assert stub_service.update_device_company_id(' ', 'ACME').error_type == 'ConfigError'


def test_end_to_end_cycle_against_fake_server(service, session, credentials, store):
    streamed = []
    result = service.start_sync('5', credentials, result_sink=streamed.append)

    assert result.success
    assert [r.api for r in streamed] == [
        'Login', 'Get All Employees', 'Get Devices', 'Device Logs', 'External API']
    # the cycle reuses the token obtained at start
    assert len(session.calls_to(LOGIN_URL)) == 1
    assert store.get_config().last_sync_time is not None


def test_rejected_token_is_renewed_by_the_next_fetch(service, session, credentials, store):
    service.start_sync('5', credentials)
    session.routes[('GET', EMPLOYEES_URL)] = FakeResponse(401)

    response = service.run_once()

    steps = {r.api: r.success for r in response.data}
    assert steps == {'Get All Employees': False, 'Get Devices': True, 'Device Logs': True}
    assert len(session.calls_to(LOGIN_URL)) == 2
    assert store.get_auth_info().token == 'jwt-token'


def _slow_login(stub_api, started, release):
    def login(username, password):
        started.set()
        release.wait(5)
        return ApiResponse.ok(data={'token': 'jwt'}, message='Authentication successful')
    stub_api.login.side_effect = login


def test_status_answers_while_start_is_logging_in(stub_service, stub_api):
    started, release = threading.Event(), threading.Event()
    _slow_login(stub_api, started, release)
    outcome = {}
    worker = threading.Thread(
        target=lambda: outcome.update(result=stub_service.start_sync('5', {'username': 'u', 'password': 'p'})))
    worker.start()
    assert started.wait(5)

    begin = time.monotonic()
    running = stub_service.is_running()
    config = stub_service.get_config()
    elapsed = time.monotonic() - begin

    release.set()
    worker.join(5)
    assert elapsed < 0.5
    assert running is True
    assert config['is_running'] is True
    assert outcome['result'].success
    assert stub_service.is_running() is True


def test_stop_during_login_prevents_the_timer(stub_service, stub_api, store):
    started, release = threading.Event(), threading.Event()
    _slow_login(stub_api, started, release)
    outcome = {}
    worker = threading.Thread(
        target=lambda: outcome.update(result=stub_service.start_sync('5', {'username': 'u', 'password': 'p'})))
    worker.start()
    assert started.wait(5)

    stopped = stub_service.stop_sync()

    release.set()
    worker.join(5)
    assert stopped.success
    assert not outcome['result'].success
    assert outcome['result'].error_type == 'NoOpError'
    assert stub_service._schedule is None
    stub_api.run_sync_sequence.assert_not_called()
    assert stub_service.is_running() is False
    assert store.get_config().is_running is False


def test_schedule_ticks_and_cancels():
    ticks = threading.Event()
    schedule = SyncSchedule(0.01, ticks.set).start()
    try:
        assert ticks.wait(2)
    finally:
        schedule.cancel()
    assert not schedule.active
