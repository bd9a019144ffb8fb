from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Optional

from autosign.src.apple.models import (
    BundleID,
    CertificateType,
    Device,
    ProfileAttributes,
    ProfileType,
)

Entitlements = Dict[str, Any]


class Platform(str, Enum):
    IOS = "iOS"
    TVOS = "tvOS"
    MAC_OS = "macOS"


class DistributionType(str, Enum):
    DEVELOPMENT = "development"
    APP_STORE = "app-store"
    AD_HOC = "ad-hoc"
    ENTERPRISE = "enterprise"


CERTIFICATE_TYPE_BY_DISTRIBUTION = MappingProxyType(
    {
        DistributionType.DEVELOPMENT: CertificateType.IOS_DEVELOPMENT,
        DistributionType.APP_STORE: CertificateType.IOS_DISTRIBUTION,
        DistributionType.AD_HOC: CertificateType.IOS_DISTRIBUTION,
        DistributionType.ENTERPRISE: CertificateType.IOS_DISTRIBUTION,
    }
)

PLATFORM_TO_PROFILE_TYPE_BY_DISTRIBUTION = MappingProxyType(
    {
        Platform.IOS: MappingProxyType(
            {
                DistributionType.DEVELOPMENT: ProfileType.IOS_APP_DEVELOPMENT,
                DistributionType.APP_STORE: ProfileType.IOS_APP_STORE,
                DistributionType.AD_HOC: ProfileType.IOS_APP_ADHOC,
                DistributionType.ENTERPRISE: ProfileType.IOS_APP_INHOUSE,
            }
        ),
        Platform.TVOS: MappingProxyType(
            {
                DistributionType.DEVELOPMENT: ProfileType.TVOS_APP_DEVELOPMENT,
                DistributionType.APP_STORE: ProfileType.TVOS_APP_STORE,
                DistributionType.AD_HOC: ProfileType.TVOS_APP_ADHOC,
                DistributionType.ENTERPRISE: ProfileType.TVOS_APP_INHOUSE,
            }
        ),
    }
)

PROFILE_TYPE_TO_PLATFORM = MappingProxyType(
    {
        profile_type: platform
        for platform, by_distribution in PLATFORM_TO_PROFILE_TYPE_BY_DISTRIBUTION.items()
        for profile_type in by_distribution.values()
    }
)

PROFILE_TYPE_TO_DISTRIBUTION = MappingProxyType(
    {
        profile_type: distribution
        for by_distribution in PLATFORM_TO_PROFILE_TYPE_BY_DISTRIBUTION.values()
        for distribution, profile_type in by_distribution.items()
    }
)


@dataclass
class CertificateInfo:
    """A signing certificate (with private key) provided by the user"""

    common_name: str
    serial: int
    not_before: datetime
    not_after: datetime
    team_id: str = ""
    team_name: str = ""
    sha1_fingerprint: str = ""
    p12_path: Optional[str] = None
    password: str = ""

    @property
    def serial_hex(self) -> str:
        return format(self.serial, "x")

    def is_valid(self, now: datetime) -> bool:
        return self.not_before <= now <= self.not_after

    def __str__(self) -> str:
        return (
            f"{self.common_name} [{self.serial_hex}] team: {self.team_name} ({self.team_id}) "
            f"expire: {self.not_after:%Y-%m-%d %H:%M:%S}"
        )


@dataclass
class PortalCertificate:
    """A local certificate matched to its Developer Portal resource ID"""

    certificate_info: CertificateInfo
    id: str


@dataclass
class TestDevice:
    """A device registered for testing outside of the Developer Portal"""

    __test__ = False

    device_id: str
    title: str = ""
    device_type: str = "ios"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_id: str = ""
    id: int = 0


class Profile(ABC):
    """A provisioning profile, backed by the portal or by a file on disk"""

    @property
    @abstractmethod
    def id(self) -> str: ...

    @property
    @abstractmethod
    def attributes(self) -> ProfileAttributes: ...

    @abstractmethod
    def certificate_ids(self) -> List[str]: ...

    @abstractmethod
    def device_udids(self) -> List[str]: ...

    @abstractmethod
    def bundle_id(self) -> BundleID: ...

    @abstractmethod
    def entitlements(self) -> Entitlements: ...


@dataclass
class AppLayout:
    platform: Platform
    entitlements_by_archivable_target_bundle_id: Dict[str, Entitlements] = field(
        default_factory=dict
    )
    ui_test_target_bundle_ids: List[str] = field(default_factory=list)


@dataclass
class AppCodesignAssets:
    certificate: CertificateInfo
    archivable_target_profiles_by_bundle_id: Dict[str, Profile] = field(
        default_factory=dict
    )
    ui_test_target_profiles_by_bundle_id: Dict[str, Profile] = field(
        default_factory=dict
    )


@dataclass
class CodesignAssetsOpts:
    distribution_type: DistributionType
    type_to_local_certificates: Dict[CertificateType, List[CertificateInfo]]
    test_devices: List[TestDevice] = field(default_factory=list)
    min_profile_validity_days: int = 0
    fallback_to_local_assets_on_api_failure: bool = False
    verbose_log: bool = False


class DevPortalClient(ABC):
    """Everything the reconcilers need from the Apple Developer Portal"""

    @abstractmethod
    def login(self) -> None: ...

    @abstractmethod
    def query_certificate_by_serial(self, serial: int) -> PortalCertificate: ...

    @abstractmethod
    def query_all_ios_certificates(
        self,
    ) -> Dict[CertificateType, List[PortalCertificate]]: ...

    @abstractmethod
    def list_devices(self, udid: str, platform: str) -> List[Device]: ...

    @abstractmethod
    def register_device(self, test_device: TestDevice) -> Device: ...

    @abstractmethod
    def find_profile(self, name: str, profile_type: ProfileType) -> Optional[Profile]: ...

    @abstractmethod
    def delete_profile(self, profile_id: str) -> None: ...

    @abstractmethod
    def create_profile(
        self,
        name: str,
        profile_type: ProfileType,
        bundle_id: BundleID,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> Profile: ...

    @abstractmethod
    def find_bundle_id(self, identifier: str) -> Optional[BundleID]: ...

    @abstractmethod
    def check_bundle_id_entitlements(
        self, bundle_id: BundleID, entitlements: Entitlements
    ) -> None: ...

    @abstractmethod
    def sync_bundle_id(self, bundle_id: BundleID, entitlements: Entitlements) -> None: ...

    @abstractmethod
    def create_bundle_id(self, identifier: str, app_id_name: str) -> BundleID: ...
