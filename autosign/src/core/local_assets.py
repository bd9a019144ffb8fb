from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.capability_mappings import ICLOUD_CONTAINER_IDENTIFIERS_KEY
from autosign.src.apple.models import BundleID, BundleIDPlatform, CertificateType, ProfileAttributes
from autosign.src.core.asset_writer import PROFILE_EXTENSIONS, default_profiles_dir
from autosign.src.core.certificates import select_certificate
from autosign.src.core.devices import normalize_udid
from autosign.src.core.entitlements import find_missing_containers
from autosign.src.core.errors import CodesignError, wrap
from autosign.src.core.models import (
    CERTIFICATE_TYPE_BY_DISTRIBUTION,
    AppCodesignAssets,
    AppLayout,
    DistributionType,
    Entitlements,
    Platform,
    PortalCertificate,
    Profile,
)
from autosign.src.core.profile_content import ProfileInfo, parse_profile_info
from autosign.src.core.profiles import create_wildcard_bundle_id

console = get_console()

PROFILE_TYPE_BY_PLATFORM = {
    Platform.IOS: "ios",
    Platform.TVOS: "tvos",
    Platform.MAC_OS: "osx",
}


class LocalProfile(Profile):
    """A provisioning profile installed on this machine"""

    def __init__(self, info: ProfileInfo, content: bytes):
        self.info = info
        platform = (
            BundleIDPlatform.MAC_OS if info.profile_type == "osx" else BundleIDPlatform.IOS
        )
        self._attributes = ProfileAttributes(
            name=info.name,
            uuid=info.uuid,
            platform=platform.value,
            profile_content=content,
            expiration_date=info.expiration_date,
        )

    @property
    def id(self) -> str:
        # Only portal profiles have an ID
        return ""

    @property
    def attributes(self) -> ProfileAttributes:
        return self._attributes

    def certificate_ids(self) -> List[str]:
        return []

    def device_udids(self) -> List[str]:
        return []

    def bundle_id(self) -> BundleID:
        return BundleID(id="", identifier=self.info.bundle_id, name=self.info.name)

    def entitlements(self) -> Entitlements:
        return self.info.entitlements


def is_active(info: ProfileInfo, min_days: int, now: datetime) -> bool:
    expiration = now
    if min_days > 0:
        expiration += timedelta(days=min_days)
    return info.expiration_date is not None and expiration < info.expiration_date


def contains_all_app_entitlements(info: ProfileInfo, entitlements: Entitlements) -> bool:
    for key, value in entitlements.items():
        if key == ICLOUD_CONTAINER_IDENTIFIERS_KEY:
            if find_missing_containers(entitlements, info.entitlements):
                return False
        elif info.entitlements.get(key) != value:
            return False
    return True


def provisions_devices(info: ProfileInfo, device_udids: List[str]) -> bool:
    if info.provisions_all_devices or not device_udids:
        return True
    provisioned = {normalize_udid(udid) for udid in info.provisioned_devices}
    return all(normalize_udid(udid) in provisioned for udid in device_udids)


def is_profile_matching(
    info: ProfileInfo,
    platform: Platform,
    distribution: DistributionType,
    bundle_id: str,
    entitlements: Entitlements,
    min_days: int,
    certificate_serials: List[int],
    device_udids: List[str],
    now: datetime,
) -> bool:
    return (
        is_active(info, min_days, now)
        and info.export_type == distribution
        and info.bundle_id == bundle_id
        and info.profile_type == PROFILE_TYPE_BY_PLATFORM.get(platform)
        and all(s in info.developer_certificate_serials for s in certificate_serials)
        and contains_all_app_entitlements(info, entitlements)
        and provisions_devices(info, device_udids)
        # Managed signing does not reuse Xcode managed profiles
        and not info.is_xcode_managed
    )


class LocalCodesignAssetManager:
    """Looks up still valid assets among the installed provisioning profiles"""

    def __init__(self, profiles_dir: Optional[Path] = None):
        self.profiles_dir = Path(profiles_dir or default_profiles_dir())

    def list_profiles(self) -> List[LocalProfile]:
        if not self.profiles_dir.is_dir():
            debug(f"No installed profiles directory at {self.profiles_dir}")
            return []

        profiles = []
        for path in sorted(self.profiles_dir.iterdir()):
            if path.suffix not in PROFILE_EXTENSIONS.values():
                continue
            content = path.read_bytes()
            try:
                info = parse_profile_info(content)
            except CodesignError as e:
                console.print(
                    f"[yellow]Skipping unreadable provisioning profile {escape(path.name)}: {escape(str(e))}"
                )
                continue
            profiles.append(LocalProfile(info, content))
        return profiles

    def find_codesign_assets(
        self,
        layout: AppLayout,
        distribution: DistributionType,
        certs_by_type: Dict[CertificateType, List[PortalCertificate]],
        device_udids: List[str],
        min_days: int,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[AppCodesignAssets], Optional[AppLayout]]:
        """Return (found assets or None, the layout still missing assets or None)"""
        now = now or datetime.now(timezone.utc)
        profiles = self.list_profiles()
        certificate_serials = [
            cert.certificate_info.serial
            for cert in certs_by_type.get(CERTIFICATE_TYPE_BY_DISTRIBUTION[distribution]) or []
        ]

        def find(bundle_id: str, entitlements: Entitlements) -> Optional[LocalProfile]:
            for profile in profiles:
                if is_profile_matching(
                    profile.info,
                    layout.platform,
                    distribution,
                    bundle_id,
                    entitlements,
                    min_days,
                    certificate_serials,
                    device_udids,
                    now,
                ):
                    return profile
            return None

        missing = AppLayout(
            platform=layout.platform,
            entitlements_by_archivable_target_bundle_id=dict(
                layout.entitlements_by_archivable_target_bundle_id
            ),
            ui_test_target_bundle_ids=list(layout.ui_test_target_bundle_ids),
        )
        archivable: Dict[str, Profile] = {}
        ui_test: Dict[str, Profile] = {}

        for bundle_id, entitlements in layout.entitlements_by_archivable_target_bundle_id.items():
            profile = find(bundle_id, entitlements or {})
            if profile is None:
                continue
            archivable[bundle_id] = profile
            del missing.entitlements_by_archivable_target_bundle_id[bundle_id]

        if distribution == DistributionType.DEVELOPMENT:
            still_missing = []
            for bundle_id in dict.fromkeys(layout.ui_test_target_bundle_ids):
                try:
                    wildcard = create_wildcard_bundle_id(bundle_id)
                except CodesignError as e:
                    raise wrap(e, "could not create wildcard bundle id") from e
                # UI test targets have no capabilities
                profile = find(wildcard, {})
                if profile is None:
                    still_missing.append(bundle_id)
                    continue
                ui_test[bundle_id] = profile
            missing.ui_test_target_bundle_ids = still_missing

        assets = None
        if archivable or ui_test:
            # Every matching profile requires a certificate, so one is always selectable here
            certificate = select_certificate(certs_by_type, distribution)
            assets = AppCodesignAssets(
                certificate=certificate.certificate_info,
                archivable_target_profiles_by_bundle_id=archivable,
                ui_test_target_profiles_by_bundle_id=ui_test,
            )

        if (
            not missing.entitlements_by_archivable_target_bundle_id
            and not missing.ui_test_target_bundle_ids
        ):
            return assets, None
        return assets, missing
