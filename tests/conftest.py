import json as jsonlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from autosign.src.apple.models import (
    BundleID,
    BundleIDCapability,
    CertificateType,
    Device,
    DeviceClass,
    ProfileAttributes,
    ProfileState,
    ProfileType,
)
from autosign.src.core.entitlements import capability_for, check_bundle_id_entitlements
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import (
    CertificateInfo,
    DevPortalClient,
    Entitlements,
    PortalCertificate,
    Profile,
    TestDevice,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, headers=None, body=None):
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        if body is not None:
            self.content = body
        else:
            self.content = b"" if json_data is None else jsonlib.dumps(json_data).encode()

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeSession:
    """requests.Session stand-in answering from a queue of responses"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: List[dict] = []

    def request(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeProfile(Profile):
    def __init__(
        self,
        name: str,
        profile_type: ProfileType,
        bundle_id: BundleID,
        certificate_ids: List[str],
        device_udids: List[str],
        entitlements: Optional[Entitlements] = None,
        expiration_date: Optional[datetime] = None,
        state: str = ProfileState.ACTIVE.value,
        profile_id: Optional[str] = None,
    ):
        self._id = profile_id or f"profile-{uuid.uuid4().hex[:8]}"
        self._attributes = ProfileAttributes(
            name=name,
            uuid=str(uuid.uuid4()).upper(),
            platform="IOS",
            profile_content=b"profile",
            profile_state=state,
            profile_type=profile_type.value,
            expiration_date=expiration_date or datetime.now(timezone.utc) + timedelta(days=365),
        )
        self._bundle_id = bundle_id
        self._certificate_ids = list(certificate_ids)
        self._device_udids = list(device_udids)
        self._entitlements = dict(entitlements or {})

    @property
    def id(self) -> str:
        return self._id

    @property
    def attributes(self) -> ProfileAttributes:
        return self._attributes

    def certificate_ids(self) -> List[str]:
        return self._certificate_ids

    def device_udids(self) -> List[str]:
        return self._device_udids

    def bundle_id(self) -> BundleID:
        return self._bundle_id

    def entitlements(self) -> Entitlements:
        return self._entitlements


class FakePortalClient(DevPortalClient):
    """In-memory Developer Portal recording every mutating call"""

    def __init__(self):
        self.certificates: Dict[int, PortalCertificate] = {}
        self.devices: List[Device] = []
        self.bundle_ids: Dict[str, BundleID] = {}
        self.capabilities: Dict[str, List[BundleIDCapability]] = {}
        self.entitlements_by_bundle_id: Dict[str, Entitlements] = {}
        self.profiles: Dict[str, FakeProfile] = {}

        self.created_profiles: List[str] = []
        self.deleted_profiles: List[str] = []
        self.created_bundle_ids: List[str] = []
        self.synced_bundle_ids: List[str] = []
        self.registered_devices: List[str] = []
        self.conflicting_udids: List[str] = []

    def add_certificate(self, info: CertificateInfo, certificate_id: str) -> PortalCertificate:
        portal = PortalCertificate(certificate_info=info, id=certificate_id)
        self.certificates[info.serial] = portal
        return portal

    def add_bundle_id(self, identifier: str, entitlements: Optional[Entitlements] = None) -> BundleID:
        bundle_id = BundleID(id=f"bid-{identifier}", identifier=identifier, name=identifier)
        self.bundle_ids[identifier] = bundle_id
        self._enable(bundle_id, entitlements or {})
        return bundle_id

    def _enable(self, bundle_id: BundleID, entitlements: Entitlements) -> None:
        capabilities = []
        for key, value in entitlements.items():
            capability = capability_for(key, value)
            if capability is not None:
                capabilities.append(capability)
        self.capabilities[bundle_id.id] = capabilities
        self.entitlements_by_bundle_id[bundle_id.id] = dict(entitlements)

    def login(self) -> None:
        pass

    def query_certificate_by_serial(self, serial: int) -> PortalCertificate:
        certificate = self.certificates.get(serial)
        if certificate is None:
            raise CodesignError(
                ErrorKind.CERTIFICATE_NOT_ON_PORTAL, f"no certificate found with serial {serial:x}"
            )
        return certificate

    def query_all_ios_certificates(self) -> Dict[CertificateType, List[PortalCertificate]]:
        return {CertificateType.IOS_DEVELOPMENT: list(self.certificates.values())}

    def list_devices(self, udid: str, platform: str) -> List[Device]:
        return list(self.devices)

    def register_device(self, test_device: TestDevice) -> Device:
        if test_device.device_id in self.conflicting_udids:
            raise CodesignError(ErrorKind.DEVICE_REGISTRATION, "409 ENTITY_ERROR")
        device = Device(
            id=f"device-{len(self.devices) + 1}",
            udid=test_device.device_id,
            device_class=DeviceClass.IPHONE.value,
        )
        self.devices.append(device)
        self.registered_devices.append(test_device.device_id)
        return device

    def find_profile(self, name: str, profile_type: ProfileType) -> Optional[Profile]:
        return self.profiles.get(name)

    def delete_profile(self, profile_id: str) -> None:
        self.deleted_profiles.append(profile_id)
        self.profiles = {n: p for n, p in self.profiles.items() if p.id != profile_id}

    def create_profile(
        self,
        name: str,
        profile_type: ProfileType,
        bundle_id: BundleID,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> Profile:
        udids = [d.udid for d in self.devices if d.id in device_ids]
        profile = FakeProfile(
            name,
            profile_type,
            bundle_id,
            certificate_ids,
            udids,
            entitlements=self.entitlements_by_bundle_id.get(bundle_id.id),
        )
        self.profiles[name] = profile
        self.created_profiles.append(name)
        return profile

    def find_bundle_id(self, identifier: str) -> Optional[BundleID]:
        return self.bundle_ids.get(identifier)

    def check_bundle_id_entitlements(self, bundle_id: BundleID, entitlements: Entitlements) -> None:
        check_bundle_id_entitlements(self.capabilities.get(bundle_id.id, []), entitlements)

    def sync_bundle_id(self, bundle_id: BundleID, entitlements: Entitlements) -> None:
        self.synced_bundle_ids.append(bundle_id.identifier)
        self._enable(bundle_id, entitlements)

    def create_bundle_id(self, identifier: str, app_id_name: str) -> BundleID:
        self.created_bundle_ids.append(identifier)
        bundle_id = BundleID(id=f"bid-{identifier}", identifier=identifier, name=app_id_name)
        self.bundle_ids[identifier] = bundle_id
        return bundle_id


class FakeAssetWriter:
    def __init__(self):
        self.certificates: List[CertificateInfo] = []
        self.profiles: List[Profile] = []

    def install_certificate(self, certificate: CertificateInfo) -> None:
        self.certificates.append(certificate)

    def install_profile(self, profile: Profile) -> None:
        self.profiles.append(profile)

    def write(self, assets_by_distribution) -> None:
        for assets in assets_by_distribution.values():
            self.install_certificate(assets.certificate)
            for profile in [
                *assets.archivable_target_profiles_by_bundle_id.values(),
                *assets.ui_test_target_profiles_by_bundle_id.values(),
            ]:
                self.install_profile(profile)


def make_certificate(
    common_name: str = "Apple Development: Jane Doe (ABCDE12345)",
    serial: int = 0x1A2B,
    not_before: datetime = NOW - timedelta(days=30),
    not_after: datetime = NOW + timedelta(days=300),
) -> CertificateInfo:
    return CertificateInfo(
        common_name=common_name,
        serial=serial,
        not_before=not_before,
        not_after=not_after,
        team_id="TEAM123456",
        team_name="Example Team",
        p12_path="/tmp/cert.p12",
    )


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def portal():
    return FakePortalClient()


@pytest.fixture
def asset_writer():
    return FakeAssetWriter()


def make_der_certificate(serial: int, common_name: str = "Apple Development: Jane Doe") -> bytes:
    """Self-signed DER certificate with the given serial number"""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "TEAM123456"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Team"),
        ]
    )
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(datetime.now(timezone.utc) - timedelta(days=1))
        .not_valid_after(datetime.now(timezone.utc) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.DER)


def make_profile_content(plist: dict) -> bytes:
    """CMS signed-data envelope around a provisioning profile plist"""
    import plistlib

    from asn1crypto import cms

    signed_data = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [],
            "encap_content_info": {
                "content_type": "data",
                "content": plistlib.dumps(plist),
            },
            "signer_infos": [],
        }
    )
    return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()


def make_ec_private_key() -> str:
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
