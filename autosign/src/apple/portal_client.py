from typing import Dict, List, Optional

from cryptography import x509
from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.apple_id_session import load_apple_id_session
from autosign.src.apple.models import (
    BundleID,
    BundleIDCapability,
    Certificate,
    CertificateType,
    Device,
    PortalProfile,
    ProfileAttributes,
    ProfileType,
)
from autosign.src.apple.resources import (
    BundleIDClient,
    CertificateClient,
    DeviceClient,
    Paginator,
    ProfileClient,
)
from autosign.src.apple.transport import (
    APIKeyTransport,
    PortalAPIError,
    PortalTransport,
    RequestTracker,
    SessionTransport,
)
from autosign.src.core.entitlements import capability_for, check_bundle_id_entitlements
from autosign.src.core.errors import CodesignError, ErrorKind, profiles_inconsistent, wrap
from autosign.src.core.local_certificates import certificate_info
from autosign.src.core.models import (
    DevPortalClient,
    Entitlements,
    PortalCertificate,
    Profile,
    TestDevice,
)
from autosign.src.core.profile_content import parse_device_udids, parse_entitlements
from autosign.src.utils.config_loader import (
    get_api_key_credentials,
    get_apple_id_settings,
    load_config,
)

console = get_console()

MULTIPLE_PROFILES_ERROR = "multiple profiles found with the name"
TEST_DEVICE_NAME = "autosign test device"
PORTAL_CERTIFICATE_TYPES = (
    CertificateType.DEVELOPMENT,
    CertificateType.IOS_DEVELOPMENT,
    CertificateType.DISTRIBUTION,
    CertificateType.IOS_DISTRIBUTION,
)


def _not_found_as_inconsistent(error: PortalAPIError) -> CodesignError:
    if error.status_code == 404:
        return profiles_inconsistent(error)
    return error


class APIProfile(Profile):
    """A provisioning profile stored on the Developer Portal"""

    def __init__(self, profile: PortalProfile, profiles: ProfileClient):
        self.profile = profile
        self.profiles = profiles

    @property
    def id(self) -> str:
        return self.profile.id

    @property
    def attributes(self) -> ProfileAttributes:
        return self.profile.attributes

    def certificate_ids(self) -> List[str]:
        try:
            return [c.id for c in self.profiles.certificates(self.profile)]
        except PortalAPIError as e:
            raise _not_found_as_inconsistent(e) from e

    def device_udids(self) -> List[str]:
        return parse_device_udids(self.profile.attributes.profile_content)

    def bundle_id(self) -> BundleID:
        try:
            return self.profiles.bundle_id(self.profile)
        except PortalAPIError as e:
            raise _not_found_as_inconsistent(e) from e

    def entitlements(self) -> Entitlements:
        return parse_entitlements(self.profile.attributes.profile_content)


class APIKeyPortalClient(DevPortalClient):
    """Developer Portal access through the App Store Connect API"""

    def __init__(self, transport: PortalTransport):
        self.transport = transport
        self.paginator = Paginator(transport)
        self.certificates = CertificateClient(transport, self.paginator)
        self.devices = DeviceClient(transport, self.paginator)
        self.bundle_ids = BundleIDClient(transport, self.paginator)
        self.profiles = ProfileClient(transport, self.paginator)

    def login(self) -> None:
        """Sign a token up front so a bad private key fails before any request"""
        if isinstance(self.transport, APIKeyTransport):
            self.transport.token.get()

    @staticmethod
    def _portal_certificate(certificate: Certificate) -> PortalCertificate:
        try:
            parsed = x509.load_der_x509_certificate(certificate.certificate_content)
        except ValueError as e:
            raise CodesignError(
                ErrorKind.API, f"failed to parse certificate: {e}"
            ) from e
        return PortalCertificate(certificate_info=certificate_info(parsed), id=certificate.id)

    def query_certificate_by_serial(self, serial: int) -> PortalCertificate:
        certificate = self.certificates.fetch_by_serial(format(serial, "x"))
        return self._portal_certificate(certificate)

    def query_all_ios_certificates(self) -> Dict[CertificateType, List[PortalCertificate]]:
        by_type = {}
        for certificate_type in PORTAL_CERTIFICATE_TYPES:
            by_type[certificate_type] = [
                self._portal_certificate(c)
                for c in self.certificates.list_by_type(certificate_type)
            ]
        return by_type

    def list_devices(self, udid: str, platform: str) -> List[Device]:
        return self.devices.list_devices(udid, platform)

    def register_device(self, test_device: TestDevice) -> Device:
        # The UDID is sent as provided, the portal matches it case insensitively
        return self.devices.register_device(test_device.device_id, TEST_DEVICE_NAME)

    def find_profile(self, name: str, profile_type: ProfileType) -> Optional[Profile]:
        profile = self.profiles.find(name, profile_type)
        if profile is None:
            return None
        return APIProfile(profile, self.profiles)

    def delete_profile(self, profile_id: str) -> None:
        self.profiles.delete(profile_id)

    def _create_profile(
        self,
        name: str,
        profile_type: ProfileType,
        bundle_id: BundleID,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> Profile:
        profile = self.profiles.create(
            name, profile_type, bundle_id.id, certificate_ids, device_ids
        )
        return APIProfile(profile, self.profiles)

    def _delete_expired_profile(self, bundle_id: BundleID, name: str) -> None:
        for profile in self.bundle_ids.profiles(bundle_id):
            if profile.attributes.name == name:
                self.delete_profile(profile.id)
                return
        raise CodesignError(ErrorKind.API, f"failed to find profile: {name}")

    def create_profile(
        self,
        name: str,
        profile_type: ProfileType,
        bundle_id: BundleID,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> Profile:
        context = (
            f"failed to create {profile_type.readable()} provisioning profile "
            f"for {bundle_id.identifier} bundle ID"
        )
        try:
            return self._create_profile(
                name, profile_type, bundle_id, certificate_ids, device_ids
            )
        except PortalAPIError as e:
            # Expired profiles are not listed by the profiles endpoint, only by
            # the profiles relationship of their bundle ID
            if not e.contains(MULTIPLE_PROFILES_ERROR):
                raise wrap(e, context) from e
            console.print("[yellow]  Profile already exists, but expired, cleaning up...")

        try:
            self._delete_expired_profile(bundle_id, name)
            return self._create_profile(
                name, profile_type, bundle_id, certificate_ids, device_ids
            )
        except CodesignError as e:
            raise wrap(e, context) from e

    def find_bundle_id(self, identifier: str) -> Optional[BundleID]:
        # The identifier filter is a contains search
        for bundle_id in self.bundle_ids.list_by_identifier(identifier):
            if bundle_id.identifier == identifier:
                return bundle_id
        return None

    def capabilities(self, bundle_id: BundleID) -> List[BundleIDCapability]:
        return self.bundle_ids.capabilities(bundle_id)

    def check_bundle_id_entitlements(
        self, bundle_id: BundleID, entitlements: Entitlements
    ) -> None:
        check_bundle_id_entitlements(self.capabilities(bundle_id), entitlements)

    def sync_bundle_id(self, bundle_id: BundleID, entitlements: Entitlements) -> None:
        for key, value in entitlements.items():
            capability = capability_for(key, value)
            if capability is None:
                continue
            self.bundle_ids.enable_capability(bundle_id, capability)

    def create_bundle_id(self, identifier: str, app_id_name: str) -> BundleID:
        try:
            return self.bundle_ids.create_bundle_id(identifier, app_id_name)
        except CodesignError as e:
            raise wrap(e, f"failed to register AppID for bundleID ({identifier})") from e


class AppleIDPortalClient(APIKeyPortalClient):
    """Developer Portal access through the web API of a logged in Apple ID"""

    CAPABILITIES_INCLUDE = "bundleIdCapabilities,bundleIdCapabilities.capability"

    def capabilities(self, bundle_id: BundleID) -> List[BundleIDCapability]:
        response = self.transport.request(
            "GET",
            f"bundleIds/{bundle_id.id}",
            params={"include": self.CAPABILITIES_INCLUDE},
        )
        capabilities = []
        for item in (response or {}).get("included") or []:
            if item.get("type") != "bundleIdCapabilities":
                continue
            capability = BundleIDCapability.from_json(item)
            if not capability.capability_type:
                relationship = (item.get("relationships") or {}).get("capability") or {}
                capability.capability_type = (relationship.get("data") or {}).get("id", "")
            capabilities.append(capability)
        return capabilities

    def sync_bundle_id(self, bundle_id: BundleID, entitlements: Entitlements) -> None:
        """Send the full capability list, which the web API requires"""
        wanted: Dict[str, BundleIDCapability] = {
            c.capability_type: c for c in self.capabilities(bundle_id)
        }
        for key, value in entitlements.items():
            capability = capability_for(key, value)
            if capability is None:
                continue
            wanted[capability.capability_type] = capability
        debug(f"Updating capabilities of {bundle_id.identifier}: {', '.join(wanted)}")
        self.bundle_ids.update_capabilities(bundle_id, list(wanted.values()))


def create_portal_client(
    auth_type: str,
    config: Optional[Dict] = None,
    tracker: Optional[RequestTracker] = None,
) -> DevPortalClient:
    """Create the Developer Portal client for the chosen authentication"""
    console.print()
    console.print("[blue]Initializing Developer Portal client")
    config = load_config() if config is None else config

    if auth_type == "api-key":
        credentials = get_api_key_credentials(config)
        if credentials is None:
            raise CodesignError(
                ErrorKind.AUTH,
                "App Store Connect API key not configured, set AUTOSIGN_API_KEY_ID, "
                "AUTOSIGN_API_ISSUER_ID and AUTOSIGN_API_PRIVATE_KEY_PATH",
            )
        transport = APIKeyTransport(
            credentials.key_id,
            credentials.issuer_id,
            credentials.private_key,
            enterprise=credentials.enterprise,
            tracker=tracker,
        )
        debug(f"App Store Connect API client created with base URL: {transport.base_url}")
        client = APIKeyPortalClient(transport)
    elif auth_type == "apple-id":
        settings = get_apple_id_settings(config)
        session = load_apple_id_session(
            settings.apple_id, settings.session_dir, settings.team_id
        )
        client = AppleIDPortalClient(SessionTransport(session, tracker=tracker))
        console.print("[green]Apple ID client created")
    else:
        raise CodesignError(
            ErrorKind.INVALID_INPUT, f"unknown authentication type: {escape(auth_type)}"
        )

    client.login()
    return client
