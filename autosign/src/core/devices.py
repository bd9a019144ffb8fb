import re
from typing import Iterable, List, Optional, Tuple

from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.models import Device, DeviceClass, DevicePlatform
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import DevPortalClient, DistributionType, Platform, TestDevice

console = get_console()

_INVALID_UDID_CHARS = re.compile(r"[^a-zA-Z0-9-]")

DEVICE_CLASSES_BY_PLATFORM = {
    Platform.IOS: (
        DeviceClass.APPLE_WATCH.value,
        DeviceClass.IPAD.value,
        DeviceClass.IPHONE.value,
        DeviceClass.IPOD.value,
    ),
    Platform.TVOS: (DeviceClass.APPLE_TV.value,),
}


def valid_device_udid(udid: str) -> str:
    return _INVALID_UDID_CHARS.sub("", udid)


def normalize_udid(udid: str) -> str:
    """Comparable form of a UDID: no separators, no casing"""
    return valid_device_udid(udid).replace("-", "").lower()


def is_equal_udid(a: str, b: str) -> bool:
    return normalize_udid(a) == normalize_udid(b)


def dedupe_test_devices(
    devices: List[TestDevice],
) -> Tuple[List[TestDevice], List[TestDevice]]:
    """Return (unique, duplicated) devices, the first device of each UDID wins"""
    seen = set()
    unique, duplicated = [], []
    for device in devices:
        key = normalize_udid(device.device_id)
        if key in seen:
            duplicated.append(device)
            continue
        seen.add(key)
        unique.append(device)
    return unique, duplicated


def _find_device(udid: str, devices: Iterable[Device]) -> Optional[Device]:
    for device in devices:
        if is_equal_udid(device.udid, udid):
            return device
    return None


def register_missing_test_devices(
    client: DevPortalClient, test_devices: List[TestDevice], devices: List[Device]
) -> List[Device]:
    registered: List[Device] = []
    for test_device in test_devices:
        console.print(f"checking if the device ({escape(test_device.device_id)}) is registered")
        if _find_device(test_device.device_id, [*devices, *registered]) is not None:
            console.print("device already registered")
            continue

        console.print("registering device")
        try:
            device = client.register_device(test_device)
        except CodesignError as e:
            if e.kind != ErrorKind.DEVICE_REGISTRATION:
                raise
            console.print(
                "[yellow]Failed to register device (can be caused by invalid UDID "
                f"or trying to register a Mac device): {escape(e.detail)}"
            )
            continue
        registered.append(device)
    return registered


def filter_devices(devices: List[Device], platform: Platform) -> List[Device]:
    classes = DEVICE_CLASSES_BY_PLATFORM.get(platform, ())
    return [d for d in devices if d.device_class in classes]


def ensure_test_devices(
    client: DevPortalClient, test_devices: List[TestDevice], platform: Platform
) -> List[Device]:
    """Register the missing test devices and return the portal devices usable on the platform"""
    console.print("[blue]Fetching Apple Developer Portal devices")
    # The IOS device platform covers watch, pad, phone, pod and TV classes
    devices = client.list_devices("", DevicePlatform.IOS)
    console.print(f"{len(devices)} devices are registered on the Apple Developer Portal")
    for device in devices:
        debug(f"- {device.name}, {device.device_class}, UDID ({device.udid}), ID ({device.id})")

    if test_devices:
        unique, duplicated = dedupe_test_devices(test_devices)
        for device in duplicated:
            console.print(
                f"[yellow]Ignoring duplicated test device: {escape(device.title)} ({escape(device.device_id)})"
            )

        console.print()
        console.print(
            f"[blue]Checking if {len(unique)} test device(s) are registered on Developer Portal"
        )
        for device in unique:
            debug(
                f"- {device.title}, {device.device_type}, UDID ({device.device_id}), "
                f"added at {device.updated_at}"
            )
        devices = devices + register_missing_test_devices(client, unique, devices)

    return filter_devices(devices, platform)


def distribution_type_requires_device_list(
    distribution_types: Iterable[DistributionType],
) -> bool:
    return any(
        d in (DistributionType.DEVELOPMENT, DistributionType.AD_HOC)
        for d in distribution_types
    )
