"""
Persistent store for BioSync.

A single JSON document ``{auth, config, devices}`` read once at start-up and
rewritten on every change. Writes go to a temporary file that replaces the
document, so an interrupted write leaves the previous version intact. A store
created without a path keeps everything in memory.
"""

import copy
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.backup_utils import create_backup
from shared.logging_config import get_store_logger
from shared.models import (DEFAULT_REQUEST_TIMEOUT, DEFAULT_SYNC_PERIOD,
                           AuthInfo, Device, SyncConfig, SyncPeriod,
                           devices_from_dicts, normalize_device_id)
from shared.reconcile import dedupe_devices, find_device, merge_devices, update_company_id
from shared.utils import get_data_path, is_valid_timestamp, utc_now_iso

logger = get_store_logger()

STORE_FILE_NAME = 'biosync.json'

# Keys written by the earlier desktop release
LEGACY_KEYS = {
    'tokenGeneratedAt': 'token_generated_at',
    'lastLogin': 'last_login',
    'syncPeriod': 'sync_period',
    'serverUrl': 'server_url',
    'lastSyncTime': 'last_sync_time',
    'isRunning': 'is_running',
    'serialNumber': 'serial_number',
    'ipAddress': 'ip_address',
    'companyId': 'company_id',
    'lastSeen': 'last_seen',
}


def default_document() -> Dict[str, Any]:
    """Fresh store document"""
    return {
        'auth': AuthInfo().to_dict(),
        'config': SyncConfig().to_dict(),
        'devices': [],
    }


def _rename_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    return {LEGACY_KEYS.get(key, key): value for key, value in data.items()}


def normalize_document(raw: Any) -> Dict[str, Any]:
    """Fill defaults and reset invalid values in a loaded document."""
    if not isinstance(raw, dict):
        logger.warning("Store document is not an object, using defaults")
        return default_document()

    raw_auth = raw.get('auth') if isinstance(raw.get('auth'), dict) else {}
    raw_config = raw.get('config') if isinstance(raw.get('config'), dict) else {}
    raw_devices = raw.get('devices') if isinstance(raw.get('devices'), list) else []

    auth = AuthInfo.from_dict(_rename_legacy(raw_auth)).to_dict()
    config = SyncConfig.from_dict(_rename_legacy(raw_config)).to_dict()

    for section, key in (('auth', 'token_generated_at'), ('auth', 'last_login'),
                         ('config', 'last_sync_time')):
        target = auth if section == 'auth' else config
        if not is_valid_timestamp(target[key]):
            logger.warning(f"Invalid {key} {target[key]!r}, resetting to null")
            target[key] = None

    if not SyncPeriod.is_valid(config['sync_period']):
        logger.warning(f"Unknown sync period {config['sync_period']!r}, resetting to {DEFAULT_SYNC_PERIOD}")
        config['sync_period'] = DEFAULT_SYNC_PERIOD
    config['sync_period'] = str(config['sync_period'])
    config['is_running'] = bool(config['is_running'])

    try:
        timeout = int(config['request_timeout'])
    except (TypeError, ValueError):
        timeout = DEFAULT_REQUEST_TIMEOUT
    config['request_timeout'] = timeout if 1 <= timeout <= 120 else DEFAULT_REQUEST_TIMEOUT

    devices = devices_from_dicts([_rename_legacy(d) for d in raw_devices if isinstance(d, dict)])

    return {
        'auth': auth,
        'config': config,
        'devices': [d.to_dict() for d in devices],
    }


class JsonStore:
    """Durable key-value document shared by the API client and the orchestrator."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._data = self._load()

    @classmethod
    def open_default(cls) -> 'JsonStore':
        """Open the store in the per-user data directory"""
        return cls(get_data_path(STORE_FILE_NAME))

    # Persistence

    def _load(self) -> Dict[str, Any]:
        if self.path is None:
            return default_document()

        if not self.path.exists():
            logger.info(f"Creating new store at {self.path}")
            self._data = default_document()
            self._write()
            return self._data

        try:
            raw = json.loads(self.path.read_text(encoding='utf-8'))
        except (ValueError, UnicodeDecodeError) as e:
            backup = create_backup(self.path, label='corrupt')
            logger.error(f"Store document unreadable ({e}); saved a copy to {backup} and reset to defaults")
            raw = None

        data = normalize_document(raw)
        if data != raw:
            self._data = data
            self._write()
        return data

    def _write(self):
        if self.path is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix='.tmp',
                                        dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                json.dump(self._data, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @contextmanager
    def _transaction(self):
        """Read-modify-write; the in-memory document is rolled back if the write fails"""
        with self._lock:
            snapshot = copy.deepcopy(self._data)
            try:
                yield self._data
                self._write()
            except Exception:
                self._data = snapshot
                raise

    def get_data(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    # Authentication

    def get_auth_info(self) -> AuthInfo:
        with self._lock:
            return AuthInfo.from_dict(self._data['auth'])

    def save_auth_info(self, username: str, password: str, token: Optional[str]) -> AuthInfo:
        """Record a successful login"""
        now = utc_now_iso()
        with self._transaction() as data:
            data['auth'].update({
                'username': username,
                'password': password,
                'token': token,
                'token_generated_at': now,
                'last_login': now,
            })
            return AuthInfo.from_dict(data['auth'])

    def save_credentials(self, username: str, password: str) -> AuthInfo:
        """Update credentials; a change invalidates the current token"""
        with self._transaction() as data:
            auth = data['auth']
            if auth['username'] != username or auth['password'] != password:
                auth['token'] = None
                auth['token_generated_at'] = None
            auth['username'] = username
            auth['password'] = password
            return AuthInfo.from_dict(auth)

    def clear_token(self):
        with self._transaction() as data:
            data['auth']['token'] = None
            data['auth']['token_generated_at'] = None

    # Configuration

    def get_config(self) -> SyncConfig:
        with self._lock:
            return SyncConfig.from_dict(self._data['config'])

    def get_server_url(self) -> Optional[str]:
        return self.get_config().server_url

    def save_server_url(self, url: str) -> str:
        """Save the vendor server URL; a different server invalidates the token"""
        url = url.strip().rstrip('/')
        with self._transaction() as data:
            if data['config']['server_url'] != url:
                data['auth']['token'] = None
                data['auth']['token_generated_at'] = None
            data['config']['server_url'] = url
        return url

    def save_sync_period(self, period: str) -> SyncConfig:
        with self._transaction() as data:
            data['config']['sync_period'] = str(period)
            return SyncConfig.from_dict(data['config'])

    def update_sync_status(self, is_running: bool) -> SyncConfig:
        with self._transaction() as data:
            data['config']['is_running'] = bool(is_running)
            return SyncConfig.from_dict(data['config'])

    def mark_synced(self, when: Optional[str] = None) -> str:
        when = when or utc_now_iso()
        with self._transaction() as data:
            data['config']['last_sync_time'] = when
        return when

    def save_external_api(self, url: Optional[str], key: Optional[str]) -> SyncConfig:
        with self._transaction() as data:
            data['config']['external_url'] = url
            data['config']['external_key'] = key
            return SyncConfig.from_dict(data['config'])

    # Devices

    def get_devices(self) -> List[Device]:
        with self._lock:
            return devices_from_dicts(self._data['devices'])

    def save_devices(self, devices: List[Device]) -> List[Device]:
        """Merge devices into the stored list and persist the union"""
        with self._transaction() as data:
            merged = merge_devices(devices, devices_from_dicts(data['devices']))
            data['devices'] = [d.to_dict() for d in merged]
            return merged

    def update_device_company_id(self, device_id: Any, company_id: Any) -> List[Device]:
        with self._transaction() as data:
            updated = update_company_id(devices_from_dicts(data['devices']), device_id, company_id)
            data['devices'] = [d.to_dict() for d in updated]
            return updated

    def get_device_company_id(self, device_id: Any) -> Optional[Any]:
        device = find_device(self.get_devices(), normalize_device_id(device_id))
        return device.company_id if device else None

    # Maintenance

    def run_maintenance(self) -> Dict[str, Any]:
        """Collapse duplicate devices and backfill the token timestamp.

        The document is backed up first when it lives on disk.
        """
        backup_path = None
        if self.path is not None and self.path.exists():
            backup_path = create_backup(self.path, label='cleanup')

        with self._transaction() as data:
            devices = devices_from_dicts(data['devices'])
            original_count = len(devices)
            merged = dedupe_devices(devices)
            data['devices'] = [d.to_dict() for d in merged]

            auth = data['auth']
            backfilled = False
            if auth['token'] and not auth['token_generated_at']:
                auth['token_generated_at'] = auth['last_login'] or utc_now_iso()
                backfilled = True

        logger.info(f"Maintenance: {original_count} device records -> {len(merged)} unique")
        return {
            'original_count': original_count,
            'merged_count': len(merged),
            'token_backfilled': backfilled,
            'backup': str(backup_path) if backup_path else None,
        }
