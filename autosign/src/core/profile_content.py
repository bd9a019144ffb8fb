import plistlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from asn1crypto.cms import ContentInfo
from cryptography import x509

from autosign.logger import debug
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import DistributionType, Entitlements

TEAM_ID_KEY = "com.apple.developer.team-identifier"
APPLICATION_IDENTIFIER_KEY = "application-identifier"
GET_TASK_ALLOW_KEY = "get-task-allow"


def parse_profile_plist(content: bytes) -> dict:
    """Read the plist embedded in a provisioning profile without the macOS security command"""
    try:
        content_info = ContentInfo.load(content)
        signed_data = content_info["content"]
        plist_data = signed_data["encap_content_info"]["content"].native
        return plistlib.loads(plist_data)
    except (ValueError, TypeError, KeyError, plistlib.InvalidFileException) as e:
        raise CodesignError(
            ErrorKind.API, f"failed to parse pkcs7 from profile content: {e}"
        ) from e


def is_xcode_managed(name: str) -> bool:
    return name.startswith("XC") or (
        name.startswith("iOS Team") and "Provisioning Profile" in name
    )


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _certificate_serials(der_certificates: List[bytes]) -> List[int]:
    serials = []
    for der in der_certificates:
        try:
            serials.append(x509.load_der_x509_certificate(der).serial_number)
        except ValueError as e:
            debug(f"Skipping unreadable developer certificate: {e}")
    return serials


@dataclass
class ProfileInfo:
    name: str
    uuid: str
    team_id: str
    bundle_id: str
    expiration_date: Optional[datetime]
    provisioned_devices: List[str] = field(default_factory=list)
    provisions_all_devices: bool = False
    entitlements: Entitlements = field(default_factory=dict)
    developer_certificate_serials: List[int] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)

    @property
    def export_type(self) -> DistributionType:
        if not self.provisioned_devices:
            if self.provisions_all_devices:
                return DistributionType.ENTERPRISE
            return DistributionType.APP_STORE
        if self.entitlements.get(GET_TASK_ALLOW_KEY):
            return DistributionType.DEVELOPMENT
        return DistributionType.AD_HOC

    @property
    def profile_type(self) -> str:
        """Platform family of the profile: ios, tvos or osx"""
        if "OSX" in self.platforms:
            return "osx"
        if "tvOS" in self.platforms and "iOS" not in self.platforms:
            return "tvos"
        return "ios"

    @property
    def is_xcode_managed(self) -> bool:
        return is_xcode_managed(self.name)


def _bundle_id(entitlements: Entitlements, team_id: str) -> str:
    app_id = entitlements.get(APPLICATION_IDENTIFIER_KEY) or ""
    prefix = team_id + "."
    if team_id and app_id.startswith(prefix):
        return app_id[len(prefix):]
    return app_id.split(".", 1)[1] if "." in app_id else app_id


def parse_profile_info(content: bytes) -> ProfileInfo:
    data = parse_profile_plist(content)
    entitlements = data.get("Entitlements") or {}
    team_id = entitlements.get(TEAM_ID_KEY) or ""
    if not team_id and data.get("TeamIdentifier"):
        team_id = data["TeamIdentifier"][0]

    return ProfileInfo(
        name=data.get("Name", ""),
        uuid=data.get("UUID", ""),
        team_id=team_id,
        bundle_id=_bundle_id(entitlements, team_id),
        expiration_date=_utc(data.get("ExpirationDate")),
        provisioned_devices=list(data.get("ProvisionedDevices") or []),
        provisions_all_devices=bool(data.get("ProvisionsAllDevices", False)),
        entitlements=entitlements,
        developer_certificate_serials=_certificate_serials(
            data.get("DeveloperCertificates") or []
        ),
        platforms=list(data.get("Platform") or []),
    )


def parse_device_udids(content: bytes) -> List[str]:
    return list(parse_profile_plist(content).get("ProvisionedDevices") or [])


def parse_entitlements(content: bytes) -> Entitlements:
    return parse_profile_plist(content).get("Entitlements") or {}
