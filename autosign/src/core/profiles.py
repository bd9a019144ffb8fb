import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from rich.markup import escape

from autosign.logger import get_console
from autosign.src.apple.models import CertificateType, ProfileState, ProfileType
from autosign.src.core.bundle_ids import (
    MANAGED_PREFIX,
    ReconciliationState,
    ensure_bundle_id,
    icloud_container_report,
)
from autosign.src.core.certificates import select_certificate
from autosign.src.core.devices import (
    distribution_type_requires_device_list,
    normalize_udid,
)
from autosign.src.core.entitlements import find_missing_containers, print_entitlements
from autosign.src.core.errors import (
    CodesignError,
    ErrorKind,
    nonmatching_profile,
    wrap,
)
from autosign.src.core.models import (
    CERTIFICATE_TYPE_BY_DISTRIBUTION,
    PLATFORM_TO_PROFILE_TYPE_BY_DISTRIBUTION,
    PROFILE_TYPE_TO_DISTRIBUTION,
    PROFILE_TYPE_TO_PLATFORM,
    AppCodesignAssets,
    AppLayout,
    DevPortalClient,
    DistributionType,
    Entitlements,
    PortalCertificate,
    Profile,
)

console = get_console()

RETRY_ATTEMPTS = 5
RETRY_WAIT = 10


def profile_name(profile_type: ProfileType, bundle_id: str) -> str:
    """Managed profile name: {Wildcard }Bitrise <platform> <distribution> - (<bundle id>)"""
    platform = PROFILE_TYPE_TO_PLATFORM[profile_type]
    distribution = PROFILE_TYPE_TO_DISTRIBUTION[profile_type]

    prefix = ""
    if bundle_id.endswith(".*"):
        # Profile names can not contain '*'
        bundle_id = bundle_id[: -len(".*")]
        prefix = "Wildcard "
    return f"{prefix}{MANAGED_PREFIX} {platform.value} {distribution.value} - ({bundle_id})"


def create_wildcard_bundle_id(identifier: str) -> str:
    """Replace the last component of a bundle identifier with '*'"""
    index = identifier.rfind(".")
    if index == -1:
        raise CodesignError(
            ErrorKind.INVALID_INPUT,
            f"invalid bundle id ({identifier}): does not contain *",
        )
    return identifier[:index] + ".*"


def is_profile_expired(
    profile: Profile, min_days: int, now: Optional[datetime] = None
) -> bool:
    """A profile expiring within min_days counts as expired"""
    relative_expiry = now or datetime.now(timezone.utc)
    if min_days > 0:
        relative_expiry += timedelta(days=min_days)
    expiration = profile.attributes.expiration_date
    return expiration is None or expiration < relative_expiry


def check_profile_entitlements(
    client: DevPortalClient, profile: Profile, entitlements: Entitlements
) -> None:
    missing = find_missing_containers(entitlements, profile.entitlements())
    if missing:
        raise nonmatching_profile(
            f"project uses containers that are missing from the provisioning profile: {missing}"
        )
    client.check_bundle_id_entitlements(profile.bundle_id(), entitlements)


def check_profile_certificates(
    profile_certificate_ids: List[str], certificate_ids: List[str]
) -> None:
    for certificate_id in certificate_ids:
        if certificate_id not in profile_certificate_ids:
            raise nonmatching_profile(
                f"certificate with ID ({certificate_id}) not included in the profile"
            )


def check_profile_devices(profile_udids: List[str], device_udids: List[str]) -> None:
    normalized = {normalize_udid(udid) for udid in profile_udids}
    for udid in device_udids:
        if normalize_udid(udid) not in normalized:
            raise nonmatching_profile(f"device with UDID ({udid}) not included in the profile")


def check_profile(
    client: DevPortalClient,
    profile: Profile,
    entitlements: Entitlements,
    device_udids: List[str],
    certificate_ids: List[str],
    min_days: int,
    now: Optional[datetime] = None,
) -> None:
    """Raise a nonmatching profile error unless the profile fits the project"""
    if is_profile_expired(profile, min_days, now):
        raise nonmatching_profile(
            f"profile expired, or will expire in less then {min_days} day(s)"
        )
    check_profile_entitlements(client, profile, entitlements)
    check_profile_certificates(profile.certificate_ids(), certificate_ids)
    check_profile_devices(profile.device_udids(), device_udids)


def _expiry(profile: Profile) -> str:
    expiration = profile.attributes.expiration_date
    return str(expiration) if expiration else "unknown"


class ProfileManager:
    """Keeps the managed profile of each bundle ID in sync with the project"""

    def __init__(
        self,
        client: DevPortalClient,
        state: Optional[ReconciliationState] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.state = state or ReconciliationState()
        self.sleep = sleep

    def ensure_profile(
        self,
        profile_type: ProfileType,
        identifier: str,
        entitlements: Optional[Entitlements],
        certificate_ids: List[str],
        device_ids: List[str],
        device_udids: List[str],
        min_days: int,
    ) -> Profile:
        entitlements = entitlements or {}
        console.print()
        console.print(f"[blue]  Checking bundle id: {escape(identifier)}")
        print_entitlements(entitlements)

        name = profile_name(profile_type, identifier)
        try:
            profile = self.client.find_profile(name, profile_type)
        except CodesignError as e:
            raise wrap(e, "failed to find profile") from e

        if profile is None:
            console.print("[yellow]  profile does not exist, generating...")
        else:
            attributes = profile.attributes
            console.print(
                f"  Bitrise managed profile found: {escape(attributes.name)} ID: {profile.id} "
                f"UUID: {attributes.uuid} Expiry: {_expiry(profile)}"
            )
            if attributes.profile_state == ProfileState.ACTIVE.value:
                try:
                    check_profile(
                        self.client,
                        profile,
                        entitlements,
                        device_udids,
                        certificate_ids,
                        min_days,
                    )
                except CodesignError as e:
                    if e.kind != ErrorKind.NONMATCHING_PROFILE:
                        raise wrap(e, "failed to check if profile is valid") from e
                    console.print(
                        "[yellow]  the profile is not in sync with the project requirements "
                        f"({escape(e.detail)}), regenerating ..."
                    )
                else:
                    console.print("[green]  profile is in sync with the project requirements")
                    return profile

            if attributes.profile_state == ProfileState.INVALID.value:
                # A profile turns invalid when its bundle ID is modified
                console.print("[yellow]  the profile state is invalid, regenerating ...")

            try:
                self.client.delete_profile(profile.id)
            except CodesignError as e:
                raise wrap(e, "failed to delete profile") from e

        try:
            bundle_id = ensure_bundle_id(self.client, self.state, identifier, entitlements)
        except CodesignError as e:
            raise wrap(e, f"failed to ensure application identifier for {identifier}") from e

        console.print()
        console.print(f"[blue]  Creating profile for bundle id: {escape(bundle_id.name)}")
        try:
            profile = self.client.create_profile(
                name, profile_type, bundle_id, certificate_ids, device_ids
            )
        except CodesignError as e:
            raise wrap(e, "failed to create profile") from e

        console.print(f"[green]  profile created: {escape(profile.attributes.name)}")
        return profile

    def ensure_profile_with_retry(
        self,
        profile_type: ProfileType,
        identifier: str,
        entitlements: Optional[Entitlements],
        certificate_ids: List[str],
        device_ids: List[str],
        device_udids: List[str],
        min_days: int,
    ) -> Profile:
        """Run ensure_profile, retrying when the portal state changed under us"""
        for attempt in range(RETRY_ATTEMPTS):
            if attempt > 0:
                console.print()
                console.print(f"  Retrying profile preparation (attempt {attempt})")
            try:
                return self.ensure_profile(
                    profile_type,
                    identifier,
                    entitlements,
                    certificate_ids,
                    device_ids,
                    device_udids,
                    min_days,
                )
            except CodesignError as e:
                if e.kind != ErrorKind.PROFILES_INCONSISTENT:
                    raise
                console.print(f"[yellow]  {escape(str(e))}")
                if attempt == RETRY_ATTEMPTS - 1:
                    raise
                self.sleep(RETRY_WAIT)


def ensure_profiles(
    client: DevPortalClient,
    distribution: DistributionType,
    certs_by_type: Dict[CertificateType, List[PortalCertificate]],
    layout: AppLayout,
    device_ids: List[str],
    device_udids: List[str],
    min_days: int,
    sleep: Callable[[float], None] = time.sleep,
) -> AppCodesignAssets:
    """Ensure a managed profile for every target of the layout"""
    manager = ProfileManager(client, ReconciliationState(), sleep=sleep)

    console.print()
    console.print(f"[blue]Checking {distribution.value} provisioning profiles")
    certificate = select_certificate(certs_by_type, distribution)
    assets = AppCodesignAssets(certificate=certificate.certificate_info)

    certificate_ids = [
        cert.id for cert in certs_by_type.get(CERTIFICATE_TYPE_BY_DISTRIBUTION[distribution]) or []
    ]

    profile_types = PLATFORM_TO_PROFILE_TYPE_BY_DISTRIBUTION.get(layout.platform)
    if profile_types is None:
        raise CodesignError(
            ErrorKind.INVALID_INPUT, f"no profiles for platform: {layout.platform.value}"
        )
    profile_type = profile_types[distribution]

    needs_devices = distribution_type_requires_device_list([distribution])
    for identifier, entitlements in layout.entitlements_by_archivable_target_bundle_id.items():
        profile = manager.ensure_profile_with_retry(
            profile_type,
            identifier,
            entitlements,
            certificate_ids,
            device_ids if needs_devices else [],
            device_udids if needs_devices else [],
            min_days,
        )
        assets.archivable_target_profiles_by_bundle_id[identifier] = profile

    if layout.ui_test_target_bundle_ids and distribution == DistributionType.DEVELOPMENT:
        # UI test targets get wildcard profiles without capabilities
        for identifier in layout.ui_test_target_bundle_ids:
            try:
                wildcard = create_wildcard_bundle_id(identifier)
            except CodesignError as e:
                raise wrap(e, "could not create wildcard bundle id") from e
            profile = manager.ensure_profile_with_retry(
                profile_type,
                wildcard,
                None,
                certificate_ids,
                device_ids,
                device_udids,
                min_days,
            )
            assets.ui_test_target_profiles_by_bundle_id[identifier] = profile

    report = icloud_container_report(manager.state)
    if report is not None:
        raise report
    return assets
