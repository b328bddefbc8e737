"""
Device reconciliation for BioSync.

Merges freshly fetched terminal lists with the locally persisted ones. Devices
are keyed by their string id; a device missing from the latest fetch is kept,
and a known company id is never replaced by an empty one.
"""

from dataclasses import fields, replace
from typing import Any, Dict, Iterable, List, Optional

from shared.models import Device, normalize_device_id

_DEVICE_FIELDS = [f.name for f in fields(Device) if f.name != 'id']


def _overlay(existing: Device, incoming: Device) -> Device:
    """Incoming values win, except that None never replaces a value"""
    updates = {}
    for name in _DEVICE_FIELDS:
        value = getattr(incoming, name)
        if value is not None:
            updates[name] = value
    return replace(existing, **updates)


def dedupe_devices(devices: Iterable[Device]) -> List[Device]:
    """Collapse duplicate ids, keeping first-seen order and non-null values"""
    by_id: Dict[str, Device] = {}
    for device in devices:
        key = normalize_device_id(device.id)
        if key in by_id:
            by_id[key] = _overlay(by_id[key], device)
        else:
            by_id[key] = replace(device, id=key)
    return list(by_id.values())


def merge_devices(remote: Iterable[Device], stored: Iterable[Device]) -> List[Device]:
    """Union of stored and remote devices keyed by id.

    Stored devices keep their position; new remote devices are appended in
    fetch order with whatever company id they carry (normally None).
    """
    merged = {device.id: device for device in dedupe_devices(stored)}
    for device in remote:
        key = normalize_device_id(device.id)
        if key in merged:
            merged[key] = _overlay(merged[key], device)
        else:
            merged[key] = replace(device, id=key)
    return list(merged.values())


def find_device(devices: Iterable[Device], device_id: Any) -> Optional[Device]:
    key = normalize_device_id(device_id)
    for device in devices:
        if device.id == key:
            return device
    return None


def update_company_id(devices: List[Device], device_id: Any, company_id: Any) -> List[Device]:
    """Set the company id of one device, inserting a minimal record if unknown"""
    key = normalize_device_id(device_id)
    updated = []
    found = False
    for device in dedupe_devices(devices):
        if device.id == key:
            device = replace(device, company_id=company_id)
            found = True
        updated.append(device)

    if not found:
        updated.append(Device(id=key, company_id=company_id))
    return updated


def company_lookup(devices: Iterable[Device]) -> Dict[str, Device]:
    """Index devices by serial number and by id for log transformation"""
    index: Dict[str, Device] = {}
    for device in devices:
        index.setdefault(f"id:{device.id}", device)
        if device.serial_number:
            index.setdefault(f"sn:{device.serial_number}", device)
    return index
