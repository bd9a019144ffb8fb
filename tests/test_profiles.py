from datetime import datetime, timedelta, timezone

import pytest

from autosign.src.apple.models import CertificateType, ProfileState, ProfileType
from autosign.src.core.bundle_ids import ReconciliationState, app_id_name, ensure_bundle_id
from autosign.src.core.errors import CodesignError, ErrorKind, profiles_inconsistent
from autosign.src.core.models import AppLayout, DistributionType, Platform, PortalCertificate
from autosign.src.core.profiles import (
    ProfileManager,
    create_wildcard_bundle_id,
    ensure_profiles,
    is_profile_expired,
    profile_name,
)

from conftest import FakeProfile, make_certificate, no_sleep

CONTAINERS_KEY = "com.apple.developer.icloud-container-identifiers"
SERVICES_KEY = "com.apple.developer.icloud-services"
APP_CLIP_KEY = "com.apple.developer.parent-application-identifiers"


@pytest.fixture
def certs_by_type():
    return {
        CertificateType.IOS_DEVELOPMENT: [
            PortalCertificate(make_certificate("Apple Development: Jane Doe", 1), "cert-dev")
        ]
    }


def layout(targets, ui_tests=None):
    return AppLayout(
        platform=Platform.IOS,
        entitlements_by_archivable_target_bundle_id=targets,
        ui_test_target_bundle_ids=ui_tests or [],
    )


def test_profile_name():
    assert (
        profile_name(ProfileType.IOS_APP_DEVELOPMENT, "io.example.app")
        == "Bitrise iOS development - (io.example.app)"
    )
    assert (
        profile_name(ProfileType.TVOS_APP_STORE, "io.example.app")
        == "Bitrise tvOS app-store - (io.example.app)"
    )
    assert (
        profile_name(ProfileType.IOS_APP_DEVELOPMENT, "io.example.*")
        == "Wildcard Bitrise iOS development - (io.example)"
    )


def test_app_id_name():
    assert app_id_name("io.example.my-app") == "Bitrise io example my app"


def test_create_wildcard_bundle_id():
    assert create_wildcard_bundle_id("io.example.app.uitests") == "io.example.app.*"

    with pytest.raises(CodesignError) as excinfo:
        create_wildcard_bundle_id("uitests")
    assert excinfo.value.kind == ErrorKind.INVALID_INPUT


def test_profile_expiry_respects_min_days(portal):
    bundle_id = portal.add_bundle_id("io.example.app")
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    profile = FakeProfile(
        "name",
        ProfileType.IOS_APP_DEVELOPMENT,
        bundle_id,
        [],
        [],
        expiration_date=now + timedelta(days=10),
    )

    assert not is_profile_expired(profile, 9, now)
    assert is_profile_expired(profile, 11, now)
    assert not is_profile_expired(profile, 0, now)

    profile.attributes.expiration_date = None
    assert is_profile_expired(profile, 0, now)


def test_profiles_are_created_once(portal, certs_by_type):
    app = layout({"io.example.app": {"aps-environment": "development"}})

    first = ensure_profiles(
        portal, DistributionType.DEVELOPMENT, certs_by_type, app, [], [], 0, sleep=no_sleep
    )

    assert portal.created_bundle_ids == ["io.example.app"]
    assert portal.created_profiles == ["Bitrise iOS development - (io.example.app)"]
    assert first.certificate.serial == 1

    portal.created_profiles.clear()
    portal.created_bundle_ids.clear()
    second = ensure_profiles(
        portal, DistributionType.DEVELOPMENT, certs_by_type, app, [], [], 0, sleep=no_sleep
    )

    assert portal.created_profiles == []
    assert portal.deleted_profiles == []
    assert portal.created_bundle_ids == []
    assert (
        second.archivable_target_profiles_by_bundle_id["io.example.app"].id
        == first.archivable_target_profiles_by_bundle_id["io.example.app"].id
    )


def test_profile_without_new_device_is_regenerated(portal, certs_by_type):
    bundle_id = portal.add_bundle_id("io.example.app")
    name = "Bitrise iOS development - (io.example.app)"
    stale = FakeProfile(name, ProfileType.IOS_APP_DEVELOPMENT, bundle_id, ["cert-dev"], ["aaaa"])
    portal.profiles[name] = stale

    assets = ensure_profiles(
        portal,
        DistributionType.DEVELOPMENT,
        certs_by_type,
        layout({"io.example.app": {}}),
        ["device-1", "device-2"],
        ["AAAA", "bbbb"],
        0,
        sleep=no_sleep,
    )

    assert portal.deleted_profiles == [stale.id]
    assert portal.created_profiles == [name]
    assert assets.archivable_target_profiles_by_bundle_id["io.example.app"] is not stale


def test_profile_without_certificate_is_regenerated(portal, certs_by_type):
    bundle_id = portal.add_bundle_id("io.example.app")
    name = "Bitrise iOS development - (io.example.app)"
    stale = FakeProfile(name, ProfileType.IOS_APP_DEVELOPMENT, bundle_id, ["other-cert"], [])
    portal.profiles[name] = stale

    ensure_profiles(
        portal,
        DistributionType.DEVELOPMENT,
        certs_by_type,
        layout({"io.example.app": {}}),
        [],
        [],
        0,
        sleep=no_sleep,
    )

    assert portal.deleted_profiles == [stale.id]


def test_invalid_profile_is_regenerated(portal, certs_by_type):
    bundle_id = portal.add_bundle_id("io.example.app")
    name = "Bitrise iOS development - (io.example.app)"
    invalid = FakeProfile(
        name,
        ProfileType.IOS_APP_DEVELOPMENT,
        bundle_id,
        ["cert-dev"],
        [],
        state=ProfileState.INVALID.value,
    )
    portal.profiles[name] = invalid

    ensure_profiles(
        portal, DistributionType.DEVELOPMENT, certs_by_type, layout({"io.example.app": {}}), [], [], 0,
        sleep=no_sleep,
    )

    assert portal.deleted_profiles == [invalid.id]
    assert portal.created_profiles == [name]


def test_capabilities_are_synced_before_regeneration(portal, certs_by_type):
    portal.add_bundle_id("io.example.app")

    ensure_profiles(
        portal,
        DistributionType.DEVELOPMENT,
        certs_by_type,
        layout({"io.example.app": {"aps-environment": "development"}}),
        [],
        [],
        0,
        sleep=no_sleep,
    )

    assert portal.synced_bundle_ids == ["io.example.app"]
    assert [c.capability_type for c in portal.capabilities["bid-io.example.app"]] == [
        "PUSH_NOTIFICATIONS"
    ]


def test_ui_test_targets_get_wildcard_profiles(portal, certs_by_type):
    assets = ensure_profiles(
        portal,
        DistributionType.DEVELOPMENT,
        certs_by_type,
        layout({"io.example.app": {}}, ["io.example.app.uitests"]),
        [],
        [],
        0,
        sleep=no_sleep,
    )

    assert "Wildcard Bitrise iOS development - (io.example.app)" in portal.created_profiles
    assert "io.example.app.*" in portal.created_bundle_ids
    assert list(assets.ui_test_target_profiles_by_bundle_id) == ["io.example.app.uitests"]


def test_inconsistent_profiles_are_retried(portal, certs_by_type):
    failures = []
    find_profile = portal.find_profile

    def flaky_find_profile(name, profile_type):
        if len(failures) < 2:
            failures.append(name)
            raise profiles_inconsistent(Exception("404 Not Found"))
        return find_profile(name, profile_type)

    portal.find_profile = flaky_find_profile
    sleeps = []

    manager = ProfileManager(portal, ReconciliationState(), sleep=sleeps.append)
    profile = manager.ensure_profile_with_retry(
        ProfileType.IOS_APP_DEVELOPMENT, "io.example.app", {}, ["cert-dev"], [], [], 0
    )

    assert profile.attributes.name == "Bitrise iOS development - (io.example.app)"
    assert sleeps == [10, 10]


def test_inconsistent_profile_retries_are_bounded(portal):
    def always_inconsistent(name, profile_type):
        raise profiles_inconsistent(Exception("404 Not Found"))

    portal.find_profile = always_inconsistent
    sleeps = []

    manager = ProfileManager(portal, ReconciliationState(), sleep=sleeps.append)
    with pytest.raises(CodesignError) as excinfo:
        manager.ensure_profile_with_retry(
            ProfileType.IOS_APP_DEVELOPMENT, "io.example.app", {}, [], [], [], 0
        )

    assert excinfo.value.kind == ErrorKind.PROFILES_INCONSISTENT
    assert len(sleeps) == 4


def test_icloud_containers_are_reported_after_all_profiles(portal, certs_by_type):
    entitlements = {SERVICES_KEY: ["CloudKit"], CONTAINERS_KEY: ["iCloud.io.example.app"]}

    with pytest.raises(CodesignError) as excinfo:
        ensure_profiles(
            portal,
            DistributionType.DEVELOPMENT,
            certs_by_type,
            layout({"io.example.app": entitlements, "io.example.widget": {}}),
            [],
            [],
            0,
            sleep=no_sleep,
        )

    error = excinfo.value
    assert error.kind == ErrorKind.ICLOUD_CONTAINERS
    assert "- iCloud.io.example.app" in error.description
    assert len(portal.created_profiles) == 2


def test_app_clip_without_app_id(portal, certs_by_type):
    with pytest.raises(CodesignError) as excinfo:
        ensure_profiles(
            portal,
            DistributionType.DEVELOPMENT,
            certs_by_type,
            layout({"io.example.app.clip": {APP_CLIP_KEY: ["TEAM.io.example.app"]}}),
            [],
            [],
            0,
            sleep=no_sleep,
        )
    assert excinfo.value.kind == ErrorKind.APP_CLIP_APP_ID
    assert portal.created_profiles == []


def test_app_clip_with_sign_in_with_apple_mismatch(portal):
    portal.add_bundle_id("io.example.app.clip")
    entitlements = {
        APP_CLIP_KEY: ["TEAM.io.example.app"],
        "com.apple.developer.applesignin": ["Default"],
    }

    with pytest.raises(CodesignError) as excinfo:
        ensure_bundle_id(portal, ReconciliationState(), "io.example.app.clip", entitlements)
    assert excinfo.value.kind == ErrorKind.APP_CLIP_APP_ID_WITH_APPLE_SIGNING
    assert portal.synced_bundle_ids == []


def test_bundle_id_lookups_are_cached(portal):
    state = ReconciliationState()
    ensure_bundle_id(portal, state, "io.example.app", {})
    portal.bundle_ids.clear()

    bundle_id = ensure_bundle_id(portal, state, "io.example.app", {})

    assert bundle_id.identifier == "io.example.app"
    assert portal.created_bundle_ids == ["io.example.app"]
