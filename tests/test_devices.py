from autosign.src.apple.models import Device, DeviceClass
from autosign.src.core.devices import (
    dedupe_test_devices,
    distribution_type_requires_device_list,
    ensure_test_devices,
    filter_devices,
    is_equal_udid,
    normalize_udid,
)
from autosign.src.core.models import DistributionType, Platform, TestDevice


def test_normalize_udid():
    assert normalize_udid("00008030-001A2B3C4D5E6F7A") == "00008030001a2b3c4d5e6f7a"
    assert normalize_udid(" 0000-abcd\n") == "0000abcd"
    assert is_equal_udid("00008030-001A", "00008030001a")


def test_dedupe_test_devices_keeps_first():
    first = TestDevice(device_id="00008030-001A", title="first")
    duplicate = TestDevice(device_id="00008030001a", title="duplicate")
    other = TestDevice(device_id="abcdef", title="other")

    unique, duplicated = dedupe_test_devices([first, duplicate, other])

    assert unique == [first, other]
    assert duplicated == [duplicate]


def test_filter_devices_by_platform():
    phone = Device(id="1", udid="a", device_class=DeviceClass.IPHONE.value)
    tv = Device(id="2", udid="b", device_class=DeviceClass.APPLE_TV.value)
    mac = Device(id="3", udid="c", device_class=DeviceClass.MAC.value)

    assert filter_devices([phone, tv, mac], Platform.IOS) == [phone]
    assert filter_devices([phone, tv, mac], Platform.TVOS) == [tv]


def test_only_missing_devices_are_registered(portal):
    portal.devices.append(
        Device(id="existing", udid="00008030001A", device_class=DeviceClass.IPHONE.value)
    )

    devices = ensure_test_devices(
        portal,
        [
            TestDevice(device_id="00008030-001a"),
            TestDevice(device_id="ffff-0001"),
            TestDevice(device_id="FFFF0001"),
        ],
        Platform.IOS,
    )

    assert portal.registered_devices == ["ffff-0001"]
    assert sorted(d.id for d in devices) == ["device-2", "existing"]


def test_registration_conflict_is_skipped(portal):
    portal.conflicting_udids.append("bad-udid")

    devices = ensure_test_devices(
        portal,
        [TestDevice(device_id="bad-udid"), TestDevice(device_id="good-udid")],
        Platform.IOS,
    )

    assert portal.registered_devices == ["good-udid"]
    assert [d.udid for d in devices] == ["good-udid"]


def test_device_list_is_needed_for_development_and_ad_hoc():
    assert distribution_type_requires_device_list([DistributionType.DEVELOPMENT])
    assert distribution_type_requires_device_list([DistributionType.APP_STORE, DistributionType.AD_HOC])
    assert not distribution_type_requires_device_list([DistributionType.APP_STORE])
    assert not distribution_type_requires_device_list([DistributionType.ENTERPRISE])
