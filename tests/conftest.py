import os
import tempfile

# Log files and the default store must never land in the real user data dir
os.environ.setdefault('BIOSYNC_DATA_DIR', tempfile.mkdtemp(prefix='biosync-tests-'))

import pytest  # noqa: E402
import requests  # noqa: E402

from client.api_client import BioTimeClient  # noqa: E402
from client.sync_service import SyncService  # noqa: E402
from shared.store import JsonStore  # noqa: E402

SERVER = 'http://biotime.local'
EXTERNAL = 'http://ingest.local/api/logs'

LOGIN_URL = f'{SERVER}/jwt-api-token-auth/'
EMPLOYEES_URL = f'{SERVER}/personnel/api/employees/'
TERMINALS_URL = f'{SERVER}/iclock/api/terminals/'
TRANSACTIONS_URL = f'{SERVER}/iclock/api/transactions/'


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ''

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON object could be decoded')
        return self._payload


class FakeSession:
    """Stands in for requests.Session; answers from a routing table.

    A route value may be a FakeResponse, an exception instance to raise, a
    callable taking the call kwargs, or a list of those consumed in order
    (the last one repeats).
    """

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = dict(routes or {})
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        key = (method, url.split('?')[0])
        if key not in self.routes:
            raise requests.exceptions.ConnectionError(f'no route for {key}')

        answer = self.routes[key]
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if isinstance(answer, Exception):
            raise answer
        if callable(answer) and not isinstance(answer, FakeResponse):
            return answer(**kwargs)
        return answer

    def calls_to(self, url):
        return [call for call in self.calls if call[1].split('?')[0] == url]


def page(data, next_url=None):
    return FakeResponse(200, {'count': len(data), 'next': next_url, 'previous': None, 'data': data})


def happy_routes(employees=None, terminals=None, transactions=None):
    """Routes for a vendor server and downstream endpoint that accept everything"""
    if employees is None:
        employees = [{'emp_code': '1001', 'first_name': 'Ada', 'last_name': 'Lovelace'}]
    if terminals is None:
        terminals = [{'id': 1, 'sn': 'SN-1', 'alias': 'Front Door', 'ip_address': '10.0.0.5'}]
    if transactions is None:
        transactions = [{
            'emp_code': '1001', 'punch_time': '2026-10-19 08:00:00', 'terminal_sn': 'SN-1',
            'terminal': 1, 'emp': 7, 'upload_time': '2026-10-19 08:00:05',
        }]
    return {
        ('POST', LOGIN_URL): FakeResponse(200, {'token': 'jwt-token'}),
        ('GET', EMPLOYEES_URL): page(employees),
        ('GET', TERMINALS_URL): page(terminals),
        ('GET', TRANSACTIONS_URL): page(transactions),
        ('POST', EXTERNAL): FakeResponse(200, {'received': True}),
    }


@pytest.fixture
def store():
    """In-memory store with the vendor and downstream endpoints configured"""
    store = JsonStore()
    store.save_server_url(SERVER)
    store.save_external_api(EXTERNAL, 'secret-key')
    return store


@pytest.fixture
def file_store(tmp_path):
    return JsonStore(tmp_path / 'biosync.json')


@pytest.fixture
def session():
    return FakeSession(happy_routes())


@pytest.fixture
def client(store, session):
    return BioTimeClient(store, session=session)


@pytest.fixture
def service(store, client):
    """Sync service with intervals long enough that no tick fires during a test"""
    service = SyncService(store, client, intervals={'5': 3600, '10': 3600, '30': 3600})
    yield service
    service.shutdown()


@pytest.fixture
def credentials():
    return {'username': 'admin', 'password': 'secret'}
