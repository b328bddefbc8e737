"""
Shared data models for BioSync.
Used by the store, the API client, the orchestrator and the HTTP server.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.errors import SyncError
from shared.utils import utc_now_iso


class SyncPeriod(Enum):
    """Allowed sync periods, in minutes"""
    FIVE = "5"
    TEN = "10"
    THIRTY = "30"

    @property
    def interval_seconds(self) -> int:
        return int(self.value) * 60

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        return str(value) in {p.value for p in cls}

    @classmethod
    def parse(cls, value: Any) -> 'SyncPeriod':
        """Return the matching period, falling back to five minutes"""
        for period in cls:
            if period.value == str(value).strip():
                return period
        return cls.FIVE


DEFAULT_SYNC_PERIOD = SyncPeriod.FIVE.value
DEFAULT_REQUEST_TIMEOUT = 10  # seconds


def normalize_device_id(value: Any) -> str:
    """Device ids are compared and stored as strings"""
    return str(value).strip()


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class AuthInfo:
    """Vendor API credentials and the current JWT"""
    username: str = ""
    password: str = ""
    token: Optional[str] = None
    token_generated_at: Optional[str] = None  # ISO timestamp
    last_login: Optional[str] = None  # ISO timestamp

    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthInfo':
        return cls(**_known_fields(cls, data or {}))


@dataclass
class SyncConfig:
    """Sync configuration persisted alongside the credentials"""
    sync_period: str = DEFAULT_SYNC_PERIOD
    server_url: Optional[str] = None
    last_sync_time: Optional[str] = None  # ISO timestamp
    is_running: bool = False
    external_url: Optional[str] = None
    external_key: Optional[str] = None
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_public_dict(self) -> Dict[str, Any]:
        """Config snapshot without the downstream secret"""
        data = self.to_dict()
        data['has_external_key'] = bool(data.pop('external_key'))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfig':
        return cls(**_known_fields(cls, data or {}))


@dataclass
class Device:
    """Biometric terminal known to the vendor API, with the local company override"""
    id: str = ""
    serial_number: Optional[str] = None
    name: Optional[str] = None
    ip_address: Optional[str] = None
    company_id: Optional[str] = None
    last_seen: Optional[str] = None  # ISO timestamp

    def __post_init__(self):
        self.id = normalize_device_id(self.id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Device':
        return cls(**_known_fields(cls, data))

    @classmethod
    def from_api(cls, data: Dict[str, Any], seen_at: Optional[str] = None) -> 'Device':
        """Build a device from a vendor terminal record"""
        serial = data.get('sn')
        return cls(
            id=data.get('id'),
            serial_number=serial,
            name=data.get('alias') or serial,
            ip_address=data.get('ip_address'),
            company_id=None,
            last_seen=seen_at or utc_now_iso(),
        )


@dataclass
class Employee:
    """Employee as forwarded downstream"""
    user_id: Optional[str] = None
    username: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Employee':
        first_name = data.get('first_name') or ''
        last_name = data.get('last_name') or ''
        return cls(
            user_id=data.get('emp_code'),
            username=f"{first_name} {last_name}".strip(),
        )


@dataclass
class AttendanceLog:
    """Attendance transaction as forwarded downstream"""
    timestamp: Optional[str] = None
    device_serial: Optional[str] = None
    user_id: Optional[str] = None
    company_id: Optional[Any] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    """One pipeline step outcome, streamed to listeners and never persisted"""
    api: str
    success: bool
    timestamp: str = field(default_factory=utc_now_iso)
    error: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, dropping unset optional fields"""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ApiResponse:
    """Standard result wrapper returned by every public operation"""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    raw_data: Optional[Any] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None, raw_data: Any = None) -> 'ApiResponse':
        return cls(True, data=data, message=message, raw_data=raw_data)

    @classmethod
    def failure(cls, exc: SyncError) -> 'ApiResponse':
        return cls(False, error=str(exc), error_type=exc.error_type)

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if isinstance(data, list):
            data = [item.to_dict() if hasattr(item, 'to_dict') else item for item in data]
        elif hasattr(data, 'to_dict'):
            data = data.to_dict()
        result = {
            'success': self.success,
            'data': data,
            'error': self.error,
            'error_type': self.error_type,
            'message': self.message,
        }
        if self.raw_data is not None:
            result['raw_data'] = self.raw_data
        return result


def devices_from_dicts(items: List[Dict[str, Any]]) -> List[Device]:
    """Build devices from persisted records, skipping entries without an id"""
    devices = []
    for item in items or []:
        if isinstance(item, dict) and item.get('id') not in (None, ''):
            devices.append(Device.from_dict(item))
    return devices
