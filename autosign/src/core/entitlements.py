from typing import Any, Dict, List, Optional, Tuple

from rich.markup import escape

from autosign.logger import get_console
from autosign.src.apple.capability_mappings import (
    DATA_PROTECTIONS,
    ICLOUD_CONTAINER_IDENTIFIERS_KEY,
    ICLOUD_SERVICES_KEY,
    MANUAL_SETUP_CAPABILITIES,
    PARENT_APPLICATION_IDENTIFIERS_KEY,
    SERVICE_TYPE_BY_KEY,
    SIGN_IN_WITH_APPLE_KEY,
    UBIQUITY_KVSTORE_IDENTIFIER_KEY,
    UNSUPPORTED_CAPABILITIES,
)
from autosign.src.apple.models import (
    BundleIDCapability,
    CapabilityOptionKey,
    CapabilitySetting,
    CapabilitySettingKey,
    CapabilityType,
)
from autosign.src.core.errors import CodesignError, ErrorKind, nonmatching_profile
from autosign.src.core.models import Entitlements

console = get_console()


def _unsupported(message: str) -> CodesignError:
    return CodesignError(ErrorKind.UNSUPPORTED_ENTITLEMENT, message)


def capability_for(key: str, value: Any) -> Optional[BundleIDCapability]:
    """Translate one entitlement into the capability to enable on the portal.

    Returns None for entitlements that have no capability counterpart.
    """
    capability_type = SERVICE_TYPE_BY_KEY.get(key)
    if capability_type is None:
        raise _unsupported(f"unknown entitlement key: {key}")
    if capability_type in (CapabilityType.IGNORED, CapabilityType.PROFILE_ATTACHED):
        return None

    settings = []
    if capability_type == CapabilityType.ICLOUD:
        settings.append(
            CapabilitySetting(
                CapabilitySettingKey.ICLOUD_VERSION.value,
                [CapabilityOptionKey.XCODE_6.value],
            )
        )
    elif capability_type == CapabilityType.DATA_PROTECTION:
        if not isinstance(value, str):
            raise _unsupported(f"no entitlements value for key: {key}")
        option = DATA_PROTECTIONS.get(value)
        if option is None:
            raise _unsupported(
                f"no data protection level found for entitlement value: {value}"
            )
        settings.append(
            CapabilitySetting(
                CapabilitySettingKey.DATA_PROTECTION_PERMISSION_LEVEL.value,
                [option.value],
            )
        )
    elif capability_type == CapabilityType.APPLE_ID_AUTH:
        settings.append(
            CapabilitySetting(
                CapabilitySettingKey.APPLE_ID_AUTH_APP_CONSENT.value,
                [CapabilityOptionKey.PRIMARY_APP_CONSENT.value],
            )
        )

    if capability_type in MANUAL_SETUP_CAPABILITIES:
        console.print(
            f'[yellow]This will enable the "{MANUAL_SETUP_CAPABILITIES[capability_type]}" capability '
            "but details will have to be configured manually using the Apple Developer Portal"
        )

    if capability_type in UNSUPPORTED_CAPABILITIES:
        raise _unsupported(
            "can not create an application identifier using the "
            f'"{UNSUPPORTED_CAPABILITIES[capability_type]}" capability, '
            "please add your Application Identifier manually using the Apple Developer Portal"
        )

    return BundleIDCapability(capability_type=capability_type.value, settings=settings)


def is_profile_attached(key: str) -> bool:
    """Entitlements Apple grants on request, only by a manually generated profile"""
    return SERVICE_TYPE_BY_KEY.get(key) == CapabilityType.PROFILE_ATTACHED


def appears_on_developer_portal(key: str) -> bool:
    capability_type = SERVICE_TYPE_BY_KEY.get(key)
    return capability_type is not None and capability_type not in (
        CapabilityType.IGNORED,
        CapabilityType.PROFILE_ATTACHED,
    )


def icloud_services(entitlements: Entitlements) -> Tuple[bool, bool, bool]:
    """Return (documents, cloudkit, key-value storage) usage flags"""
    kv_storage = bool(entitlements.get(UBIQUITY_KVSTORE_IDENTIFIER_KEY))
    services = entitlements.get(ICLOUD_SERVICES_KEY) or []
    return "CloudDocuments" in services, "CloudKit" in services, kv_storage


def icloud_containers(entitlements: Entitlements) -> List[str]:
    documents, cloudkit, _ = icloud_services(entitlements)
    if not documents and not cloudkit:
        return []
    return list(entitlements.get(ICLOUD_CONTAINER_IDENTIFIERS_KEY) or [])


def find_missing_containers(project: Entitlements, profile: Entitlements) -> List[str]:
    """Containers the project uses that the profile does not list"""
    if ICLOUD_CONTAINER_IDENTIFIERS_KEY not in project:
        return []
    project_containers = list(project.get(ICLOUD_CONTAINER_IDENTIFIERS_KEY) or [])
    if ICLOUD_CONTAINER_IDENTIFIERS_KEY not in profile:
        return project_containers

    profile_containers = set(profile.get(ICLOUD_CONTAINER_IDENTIFIERS_KEY) or [])
    return [c for c in project_containers if c not in profile_containers]


def _single_option(capability: BundleIDCapability, setting_key: str) -> Optional[str]:
    if len(capability.settings) != 1:
        return None
    setting = capability.settings[0]
    if setting.key != setting_key or len(setting.options) != 1:
        return None
    return setting.options[0]


def _icloud_equals(entitlements: Entitlements, capability: BundleIDCapability) -> bool:
    option = _single_option(capability, CapabilitySettingKey.ICLOUD_VERSION.value)
    if option is None:
        return False
    if any(icloud_services(entitlements)) and option != CapabilityOptionKey.XCODE_6.value:
        return False
    return True


def _data_protection_equals(value: Any, capability: BundleIDCapability) -> bool:
    expected = DATA_PROTECTIONS.get(value) if isinstance(value, str) else None
    if expected is None:
        raise _unsupported(f"no data protection level found for entitlement value: {value}")
    option = _single_option(
        capability, CapabilitySettingKey.DATA_PROTECTION_PERMISSION_LEVEL.value
    )
    return option == expected.value


def capability_matches(
    key: str,
    value: Any,
    capability: BundleIDCapability,
    all_entitlements: Entitlements,
) -> bool:
    """Whether an enabled capability satisfies the given entitlement"""
    capability_type = SERVICE_TYPE_BY_KEY.get(key)
    if capability_type is None:
        raise _unsupported(f"unknown entitlement key: {key}")
    if capability.capability_type != capability_type.value:
        return False

    if capability_type == CapabilityType.ICLOUD:
        return _icloud_equals(all_entitlements, capability)
    if capability_type == CapabilityType.DATA_PROTECTION:
        return _data_protection_equals(value, capability)
    return True


def check_bundle_id_entitlements(
    capabilities: List[BundleIDCapability], entitlements: Entitlements
) -> None:
    """Raise a nonmatching profile error if a required capability is not enabled"""
    for key, value in entitlements.items():
        if not appears_on_developer_portal(key):
            continue
        if any(
            capability_matches(key, value, capability, entitlements)
            for capability in capabilities
        ):
            continue
        raise nonmatching_profile(
            f"bundle ID missing Capability ({SERVICE_TYPE_BY_KEY[key].value}) "
            f"required by project Entitlement ({key})"
        )


def can_generate_profile_with_entitlements(
    entitlements_by_bundle_id: Dict[str, Entitlements],
) -> Tuple[bool, str, str]:
    """Return (ok, offending key, bundle ID) for profile attached entitlements"""
    for bundle_id, entitlements in entitlements_by_bundle_id.items():
        for key in entitlements:
            if is_profile_attached(key):
                return False, key, bundle_id
    return True, "", ""


def profile_attached_entitlement_error(key: str, bundle_id: str) -> CodesignError:
    return CodesignError(
        ErrorKind.PROFILE_ATTACHED_ENTITLEMENT,
        f"Can not create profile with unsupported entitlement ({key}) for the bundle ID {bundle_id}, "
        "due to App Store Connect API limitations.",
        recommendation="Please generate provisioning profile manually on Apple Developer Portal "
        "and use manual code signing with the generated profile.",
    )


def is_app_clip(entitlements: Optional[Entitlements]) -> bool:
    return PARENT_APPLICATION_IDENTIFIERS_KEY in (entitlements or {})


def has_sign_in_with_apple(entitlements: Optional[Entitlements]) -> bool:
    return SIGN_IN_WITH_APPLE_KEY in (entitlements or {})


def print_entitlements(entitlements: Optional[Entitlements]) -> None:
    console.print("  capabilities:")
    for key, value in (entitlements or {}).items():
        console.print(f"  - {escape(key)}: {escape(str(value))}")
