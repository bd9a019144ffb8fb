import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class CertificateType(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    DISTRIBUTION = "DISTRIBUTION"
    IOS_DEVELOPMENT = "IOS_DEVELOPMENT"
    IOS_DISTRIBUTION = "IOS_DISTRIBUTION"
    MAC_APP_DISTRIBUTION = "MAC_APP_DISTRIBUTION"
    MAC_INSTALLER_DISTRIBUTION = "MAC_INSTALLER_DISTRIBUTION"
    MAC_APP_DEVELOPMENT = "MAC_APP_DEVELOPMENT"
    DEVELOPER_ID_KEXT = "DEVELOPER_ID_KEXT"
    DEVELOPER_ID_APPLICATION = "DEVELOPER_ID_APPLICATION"


class ProfileType(str, Enum):
    IOS_APP_DEVELOPMENT = "IOS_APP_DEVELOPMENT"
    IOS_APP_STORE = "IOS_APP_STORE"
    IOS_APP_ADHOC = "IOS_APP_ADHOC"
    IOS_APP_INHOUSE = "IOS_APP_INHOUSE"
    MAC_APP_DEVELOPMENT = "MAC_APP_DEVELOPMENT"
    MAC_APP_STORE = "MAC_APP_STORE"
    MAC_APP_DIRECT = "MAC_APP_DIRECT"
    TVOS_APP_DEVELOPMENT = "TVOS_APP_DEVELOPMENT"
    TVOS_APP_STORE = "TVOS_APP_STORE"
    TVOS_APP_ADHOC = "TVOS_APP_ADHOC"
    TVOS_APP_INHOUSE = "TVOS_APP_INHOUSE"

    def readable(self) -> str:
        """Human readable distribution name used in log and error messages"""
        return {
            ProfileType.IOS_APP_STORE: "app store",
            ProfileType.MAC_APP_STORE: "app store",
            ProfileType.TVOS_APP_STORE: "app store",
            ProfileType.IOS_APP_INHOUSE: "enterprise",
            ProfileType.TVOS_APP_INHOUSE: "enterprise",
            ProfileType.IOS_APP_ADHOC: "ad-hoc",
            ProfileType.TVOS_APP_ADHOC: "ad-hoc",
            ProfileType.IOS_APP_DEVELOPMENT: "development",
            ProfileType.MAC_APP_DEVELOPMENT: "development",
            ProfileType.TVOS_APP_DEVELOPMENT: "development",
            ProfileType.MAC_APP_DIRECT: "development ID",
        }[self]


class ProfileState(str, Enum):
    ACTIVE = "ACTIVE"
    INVALID = "INVALID"


class BundleIDPlatform(str, Enum):
    IOS = "IOS"
    MAC_OS = "MAC_OS"


class DevicePlatform(str, Enum):
    IOS = "IOS"
    MAC_OS = "MAC_OS"


class DeviceClass(str, Enum):
    APPLE_WATCH = "APPLE_WATCH"
    IPAD = "IPAD"
    IPHONE = "IPHONE"
    IPOD = "IPOD"
    APPLE_TV = "APPLE_TV"
    MAC = "MAC"


class DeviceStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


class CapabilityType(str, Enum):
    IGNORED = "-ignored-"
    PROFILE_ATTACHED = "-profile-attached-"
    ICLOUD = "ICLOUD"
    IN_APP_PURCHASE = "IN_APP_PURCHASE"
    GAME_CENTER = "GAME_CENTER"
    PUSH_NOTIFICATIONS = "PUSH_NOTIFICATIONS"
    WALLET = "WALLET"
    INTER_APP_AUDIO = "INTER_APP_AUDIO"
    MAPS = "MAPS"
    ASSOCIATED_DOMAINS = "ASSOCIATED_DOMAINS"
    PERSONAL_VPN = "PERSONAL_VPN"
    APP_GROUPS = "APP_GROUPS"
    HEALTHKIT = "HEALTHKIT"
    HOMEKIT = "HOMEKIT"
    WIRELESS_ACCESSORY_CONFIGURATION = "WIRELESS_ACCESSORY_CONFIGURATION"
    APPLE_PAY = "APPLE_PAY"
    DATA_PROTECTION = "DATA_PROTECTION"
    SIRIKIT = "SIRIKIT"
    NETWORK_EXTENSIONS = "NETWORK_EXTENSIONS"
    MULTIPATH = "MULTIPATH"
    HOT_SPOT = "HOT_SPOT"
    NFC_TAG_READING = "NFC_TAG_READING"
    CLASSKIT = "CLASSKIT"
    AUTOFILL_CREDENTIAL_PROVIDER = "AUTOFILL_CREDENTIAL_PROVIDER"
    ACCESS_WIFI_INFORMATION = "ACCESS_WIFI_INFORMATION"
    NETWORK_CUSTOM_PROTOCOL = "NETWORK_CUSTOM_PROTOCOL"
    COREMEDIA_HLS_LOW_LATENCY = "COREMEDIA_HLS_LOW_LATENCY"
    SYSTEM_EXTENSION_INSTALL = "SYSTEM_EXTENSION_INSTALL"
    USER_MANAGEMENT = "USER_MANAGEMENT"
    APPLE_ID_AUTH = "APPLE_ID_AUTH"
    ODIC_PARENT_BUNDLEID = "ODIC_PARENT_BUNDLEID"
    ON_DEMAND_INSTALL_CAPABLE = "ON_DEMAND_INSTALL_CAPABLE"


class CapabilitySettingKey(str, Enum):
    ICLOUD_VERSION = "ICLOUD_VERSION"
    DATA_PROTECTION_PERMISSION_LEVEL = "DATA_PROTECTION_PERMISSION_LEVEL"
    APPLE_ID_AUTH_APP_CONSENT = "APPLE_ID_AUTH_APP_CONSENT"
    APP_GROUP_IDENTIFIERS = "APP_GROUP_IDENTIFIERS"


class CapabilityOptionKey(str, Enum):
    XCODE_5 = "XCODE_5"
    XCODE_6 = "XCODE_6"
    COMPLETE_PROTECTION = "COMPLETE_PROTECTION"
    PROTECTED_UNLESS_OPEN = "PROTECTED_UNLESS_OPEN"
    PROTECTED_UNTIL_FIRST_USER_AUTH = "PROTECTED_UNTIL_FIRST_USER_AUTH"
    PRIMARY_APP_CONSENT = "PRIMARY_APP_CONSENT"


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as returned by the portal"""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _related(resource: dict, name: str) -> Optional[str]:
    relationship = resource.get("relationships", {}).get(name) or {}
    return relationship.get("links", {}).get("related")


@dataclass
class Certificate:
    id: str
    serial_number: str
    certificate_type: Optional[str]
    name: Optional[str] = None
    display_name: Optional[str] = None
    platform: Optional[str] = None
    expiration_date: Optional[datetime] = None
    certificate_content: bytes = b""

    @classmethod
    def from_json(cls, resource: dict) -> "Certificate":
        attrs = resource.get("attributes", {})
        content = attrs.get("certificateContent") or ""
        return cls(
            id=resource["id"],
            serial_number=attrs.get("serialNumber", ""),
            certificate_type=attrs.get("certificateType"),
            name=attrs.get("name"),
            display_name=attrs.get("displayName"),
            platform=attrs.get("platform"),
            expiration_date=parse_date(attrs.get("expirationDate")),
            certificate_content=base64.b64decode(content) if content else b"",
        )


@dataclass
class CapabilitySetting:
    key: str
    options: List[str] = field(default_factory=list)

    def to_json(self) -> dict:
        return {"key": self.key, "options": [{"key": o} for o in self.options]}

    @classmethod
    def from_json(cls, data: dict) -> "CapabilitySetting":
        return cls(
            key=data.get("key", ""),
            options=[o.get("key", "") for o in data.get("options") or []],
        )


@dataclass
class BundleIDCapability:
    capability_type: str
    settings: List[CapabilitySetting] = field(default_factory=list)
    id: Optional[str] = None

    @classmethod
    def from_json(cls, resource: dict) -> "BundleIDCapability":
        attrs = resource.get("attributes", {})
        return cls(
            id=resource.get("id"),
            capability_type=attrs.get("capabilityType", ""),
            settings=[
                CapabilitySetting.from_json(s) for s in attrs.get("settings") or []
            ],
        )


@dataclass
class BundleID:
    id: str
    identifier: str
    name: str
    platform: Optional[str] = None
    capabilities_url: Optional[str] = None
    profiles_url: Optional[str] = None

    @classmethod
    def from_json(cls, resource: dict) -> "BundleID":
        attrs = resource.get("attributes", {})
        return cls(
            id=resource["id"],
            identifier=attrs.get("identifier", ""),
            name=attrs.get("name", ""),
            platform=attrs.get("platform"),
            capabilities_url=_related(resource, "bundleIdCapabilities"),
            profiles_url=_related(resource, "profiles"),
        )


@dataclass
class Device:
    id: str
    udid: str
    name: str = ""
    platform: Optional[str] = None
    device_class: Optional[str] = None
    status: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def from_json(cls, resource: dict) -> "Device":
        attrs = resource.get("attributes", {})
        return cls(
            id=resource["id"],
            udid=attrs.get("udid", ""),
            name=attrs.get("name", ""),
            platform=attrs.get("platform"),
            device_class=attrs.get("deviceClass"),
            status=attrs.get("status"),
            model=attrs.get("model"),
        )


@dataclass
class ProfileAttributes:
    name: str
    uuid: str = ""
    platform: Optional[str] = None
    profile_content: bytes = b""
    created_date: Optional[datetime] = None
    profile_state: Optional[str] = None
    profile_type: Optional[str] = None
    expiration_date: Optional[datetime] = None

    @classmethod
    def from_json(cls, attrs: dict) -> "ProfileAttributes":
        content = attrs.get("profileContent") or ""
        return cls(
            name=attrs.get("name", ""),
            uuid=attrs.get("uuid", ""),
            platform=attrs.get("platform"),
            profile_content=base64.b64decode(content) if content else b"",
            created_date=parse_date(attrs.get("createdDate")),
            profile_state=attrs.get("profileState"),
            profile_type=attrs.get("profileType"),
            expiration_date=parse_date(attrs.get("expirationDate")),
        )


@dataclass
class PortalProfile:
    id: str
    attributes: ProfileAttributes
    bundle_id_url: Optional[str] = None
    certificates_url: Optional[str] = None
    devices_url: Optional[str] = None

    @classmethod
    def from_json(cls, resource: dict) -> "PortalProfile":
        return cls(
            id=resource["id"],
            attributes=ProfileAttributes.from_json(resource.get("attributes", {})),
            bundle_id_url=_related(resource, "bundleId"),
            certificates_url=_related(resource, "certificates"),
            devices_url=_related(resource, "devices"),
        )


@dataclass
class Page:
    """One page of a JSON:API list response"""

    data: List[dict]
    next_url: Optional[str]
    total: int

    @classmethod
    def from_json(cls, document: Optional[Dict]) -> "Page":
        document = document or {}
        paging = (document.get("meta") or {}).get("paging") or {}
        return cls(
            data=document.get("data") or [],
            next_url=(document.get("links") or {}).get("next") or None,
            total=paging.get("total") or 0,
        )
