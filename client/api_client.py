"""
Remote API client for BioSync.

Talks to the vendor terminal API (JWT auth, employees, terminals,
transactions) and to the downstream ingestion endpoint. Owns the token
renewal policy and turns vendor records into the downstream format.
Public operations never raise: failures come back as ``ApiResponse``.
"""

from datetime import datetime
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin

import requests

from shared import __VERSION__
from shared.errors import (AuthError, ConfigError, NotFoundError,
                           RemoteConnectionError, RemoteError, SyncError)
from shared.logging_config import get_api_logger
from shared.models import (ApiResponse, AttendanceLog, AuthInfo, Device,
                           Employee, SyncResult, normalize_device_id)
from shared.reconcile import company_lookup
from shared.store import JsonStore
from shared.utils import (parse_datetime, today_str, utc_now, utc_now_iso,
                          validate_server_url)

logger = get_api_logger()

TOKEN_VALIDITY_DAYS = 7
TOKEN_RENEWAL_DAYS = 6  # renew a day before the token expires

TODAY_PAGE_SIZE = 1000
ALL_LOGS_PAGE_SIZE = 5000
MAX_PAGES = 500

# Step labels reported in sync results
STEP_LOGIN = 'Login'
STEP_EMPLOYEES = 'Get All Employees'
STEP_DEVICES = 'Get Devices'
STEP_LOGS = 'Device Logs'
STEP_EXTERNAL = 'External API'
STEP_SYSTEM = 'System'


def api_operation(name: str):
    """Convert raised SyncErrors (and anything unexpected) into failed ApiResponses"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except SyncError as e:
                logger.warning(f"{name} failed: {e}")
                return ApiResponse.failure(e)
            except Exception as e:
                logger.exception(f"{name} failed unexpectedly")
                return ApiResponse.failure(RemoteError(str(e)))
        return wrapper
    return decorator


def _as_dict(item: Any) -> Dict[str, Any]:
    return item.to_dict() if hasattr(item, 'to_dict') else dict(item)


def transform_employees(items: Iterable[Any]) -> List[Employee]:
    """Vendor employee records -> {user_id, username}"""
    return [Employee.from_api(item) for item in items if isinstance(item, dict)]


def transform_device_logs(items: Iterable[Any], devices: Iterable[Device]) -> List[AttendanceLog]:
    """Vendor transactions -> attendance logs.

    The company id comes from the owning device when one is assigned,
    otherwise from the transaction's ``emp`` field. The device is matched by
    terminal serial number, then by terminal id.
    """
    index = company_lookup(devices)
    logs = []
    for item in items:
        if not isinstance(item, dict):
            continue
        device = index.get(f"sn:{item.get('terminal_sn')}")
        if device is None and item.get('terminal') is not None:
            device = index.get(f"id:{normalize_device_id(item['terminal'])}")

        if device is not None and device.company_id not in (None, ''):
            company_id = device.company_id
        else:
            company_id = item.get('emp')

        logs.append(AttendanceLog(
            timestamp=item.get('punch_time'),
            device_serial=item.get('terminal_sn'),
            user_id=item.get('emp_code'),
            company_id=company_id,
            created_at=item.get('upload_time'),
        ))
    return logs


def should_renew_token(auth_info: Optional[AuthInfo], now: Optional[datetime] = None) -> bool:
    """True when no token age is recorded or the token is at least
    TOKEN_RENEWAL_DAYS old."""
    if auth_info is None or not auth_info.token_generated_at:
        return True

    generated = parse_datetime(auth_info.token_generated_at)
    if generated is None:
        return True

    elapsed_days = ((now or utc_now()) - generated).total_seconds() / 86400
    return elapsed_days >= TOKEN_RENEWAL_DAYS


class BioTimeClient:
    """Client for the vendor terminal API and the downstream ingestion API"""

    def __init__(self, store: JsonStore, session: Optional[requests.Session] = None):
        self.store = store
        self._session = session or requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': f'BioSync/{__VERSION__}'
        })

    # Transport

    @property
    def base_url(self) -> str:
        return (self.store.get_server_url() or '').strip().rstrip('/')

    @property
    def timeout(self) -> int:
        return self.store.get_config().request_timeout

    def _require_base_url(self) -> str:
        base_url = self.base_url
        if not validate_server_url(base_url):
            raise ConfigError('Invalid server URL. Please check your server settings.')
        return base_url

    def _auth_headers(self) -> Dict[str, str]:
        token = self.store.get_auth_info().token
        if not token:
            raise AuthError('Not authenticated: no API token available')
        return {'Authorization': f'JWT {token}'}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request and map transport and HTTP failures onto the error taxonomy"""
        kwargs.setdefault('timeout', self.timeout)
        try:
            response = self._session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise RemoteConnectionError(f"Request to {url} timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise RemoteConnectionError(f"Cannot connect to {url}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteError(f"Request to {url} failed: {e}") from e

        if response.status_code == 401:
            raise AuthError(f"Unauthorized (401) from {url}")
        if response.status_code == 404:
            raise NotFoundError(f"Not found (404): {url}")
        if response.status_code >= 400:
            raise RemoteError(f"HTTP error {response.status_code} from {url}")
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError('Invalid JSON in server response') from e

    def _get_paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a vendor list endpoint, following ``next`` links"""
        url = f"{self._require_base_url()}{path}"
        self._ensure_token()
        headers = self._auth_headers()
        items: List[Dict[str, Any]] = []
        pages = 0

        try:
            while url and pages < MAX_PAGES:
                payload = self._json(self._request('GET', url, params=params, headers=headers))
                if not isinstance(payload, dict):
                    raise RemoteError(f"Unexpected response format from {path}")

                data = payload.get('data')
                if isinstance(data, list):
                    items.extend(data)

                next_url = payload.get('next')
                url = urljoin(url, next_url) if next_url else None
                params = None  # the next link carries the query
                pages += 1
        except AuthError as e:
            # A rejected token is dropped so the next fetch logs in again
            self.store.clear_token()
            raise AuthError(f"Token rejected by server: {e}") from e

        if url:
            logger.warning(f"Stopped paging {path} after {MAX_PAGES} pages")
        logger.debug(f"Fetched {len(items)} records from {path} in {pages} page(s)")
        return items

    # Authentication

    def should_renew_token(self, auth_info: Optional[AuthInfo] = None, now: Optional[datetime] = None) -> bool:
        if auth_info is None:
            auth_info = self.store.get_auth_info()
        return should_renew_token(auth_info, now)

    @api_operation('Login')
    def login(self, username: str, password: str) -> ApiResponse:
        """Obtain a JWT and persist it with the credentials"""
        token = self._authenticate(username, password)
        return ApiResponse.ok(data={'token': token}, message='Authentication successful')

    def _ensure_token(self):
        """Log in again with the saved credentials when the token is missing
        or inside the renewal window"""
        auth = self.store.get_auth_info()
        if auth.token and not self.should_renew_token(auth):
            return
        if not auth.has_credentials():
            if auth.token:
                return
            raise AuthError('Not authenticated: no API token available')

        logger.info("Token missing or inside the renewal window, logging in again")
        self._authenticate(auth.username, auth.password)

    def _authenticate(self, username: str, password: str) -> str:
        if not username or not password:
            raise ConfigError('Username or password is missing')

        base_url = self._require_base_url()
        url = f"{base_url}/jwt-api-token-auth/"

        try:
            response = self._request('POST', url, json={'username': username, 'password': password})
        except RemoteConnectionError as e:
            raise RemoteConnectionError(
                f'Cannot connect to server at {base_url}. '
                'Please check your server settings and network connection.') from e
        except AuthError as e:
            raise AuthError('Incorrect username or password') from e
        except NotFoundError as e:
            raise NotFoundError(f'API endpoint not found at {url}. Please check your server URL.') from e

        try:
            payload = response.json()
        except ValueError:
            payload = None
        token = payload.get('token') if isinstance(payload, dict) else None
        if not token:
            raise AuthError('Invalid response from server (missing token)')

        self.store.save_auth_info(username, password, token)
        logger.info(f"Authenticated with {base_url} as {username}")
        return token

    # Vendor data

    @api_operation('Get All Employees')
    def get_all_employees(self) -> ApiResponse:
        items = self._get_paged('/personnel/api/employees/')
        return ApiResponse.ok(data=transform_employees(items))

    @api_operation('Get Devices')
    def get_devices(self) -> ApiResponse:
        """Fetch terminals and merge them into the stored device list"""
        items = self._get_paged('/iclock/api/terminals/')
        seen_at = utc_now_iso()
        remote = [Device.from_api(item, seen_at) for item in items
                  if isinstance(item, dict) and item.get('id') is not None]
        merged = self.store.save_devices(remote)
        logger.info(f"Fetched {len(remote)} terminals, {len(merged)} known devices")
        return ApiResponse.ok(data=merged)

    def _fetch_logs(self, params: Dict[str, Any]) -> ApiResponse:
        items = self._get_paged('/iclock/api/transactions/', params)
        logs = transform_device_logs(items, self.store.get_devices())
        return ApiResponse.ok(data=logs, raw_data={'count': len(items), 'data': items})

    @api_operation('Device Logs')
    def get_device_logs_of_today(self) -> ApiResponse:
        return self._fetch_logs({'page_size': TODAY_PAGE_SIZE, 'start_time': today_str()})

    @api_operation('All Device Logs')
    def get_device_logs_all(self) -> ApiResponse:
        return self._fetch_logs({'page_size': ALL_LOGS_PAGE_SIZE})

    # Downstream

    @api_operation('External API')
    def send_to_external_api(self, logs: Iterable[Any], employees: Iterable[Any]) -> ApiResponse:
        """Forward logs and employees to the downstream ingestion endpoint"""
        config = self.store.get_config()
        if not config.external_url or not config.external_key:
            raise ConfigError('Downstream API URL or key is not configured')

        payload = {
            'logs': [_as_dict(log) for log in logs],
            'users': [_as_dict(employee) for employee in employees],
            'key': config.external_key,
        }
        response = self._request('POST', config.external_url, json=payload)

        try:
            data = response.json()
        except ValueError:
            data = None

        logger.info(f"Forwarded {len(payload['logs'])} logs and {len(payload['users'])} users downstream")
        return ApiResponse.ok(data=data, message='Data sent successfully to external API')

    # Sequence

    def run_sync_sequence(self) -> List[SyncResult]:
        """Run one sync cycle and return one result per step.

        A failed token renewal aborts the cycle with a single Login result.
        The downstream forward only runs when employees and logs were fetched.
        """
        auth = self.store.get_auth_info()
        if self.should_renew_token(auth):
            logger.info("Token missing or inside the renewal window, logging in again")
            login = self.login(auth.username, auth.password)
            if not login.success:
                return [SyncResult(api=STEP_LOGIN, success=False,
                                   error=login.error or 'Token renewal failed')]

        timestamp = utc_now_iso()
        results: List[SyncResult] = []

        try:
            employees = self.get_all_employees()
            results.append(_step_result(STEP_EMPLOYEES, employees, timestamp))

            devices = self.get_devices()
            results.append(_step_result(STEP_DEVICES, devices, timestamp))

            logs = self.get_device_logs_of_today()
            results.append(_step_result(STEP_LOGS, logs, timestamp))

            if employees.success and logs.success:
                external = self.send_to_external_api(logs.data, employees.data)
                results.append(_step_result(STEP_EXTERNAL, external, timestamp))

                if all(result.success for result in results):
                    self.store.mark_synced(timestamp)
        except Exception as e:
            logger.exception("Sync sequence aborted")
            results.append(SyncResult(api=STEP_SYSTEM, success=False, timestamp=timestamp,
                                      error=f"Sync sequence aborted: {e}"))

        return results


def _step_result(api: str, response: ApiResponse, timestamp: str) -> SyncResult:
    data = None
    if response.success and isinstance(response.data, list):
        data = {'count': len(response.data)}
    return SyncResult(
        api=api,
        success=response.success,
        timestamp=timestamp,
        error=response.error,
        message=response.message,
        data=data,
    )
