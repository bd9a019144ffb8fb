import base64

import pytest

from autosign.src.apple.models import BundleID, ProfileType
from autosign.src.apple.portal_client import (
    APIKeyPortalClient,
    AppleIDPortalClient,
    create_portal_client,
)
from autosign.src.apple.transport import ErrorEntry, PortalAPIError
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import TestDevice

from conftest import make_der_certificate, make_profile_content


class RoutingTransport:
    """Transport stand-in answering by (method, endpoint)"""

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.calls = []

    def request(self, method, endpoint, params=None, json_body=None):
        self.calls.append((method, endpoint, params, json_body))
        response = self.routes[(method, endpoint)].pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def profile_resource(profile_id, name, content=b""):
    return {
        "id": profile_id,
        "type": "profiles",
        "attributes": {
            "name": name,
            "uuid": f"UUID-{profile_id}",
            "platform": "IOS",
            "profileState": "ACTIVE",
            "profileType": "IOS_APP_DEVELOPMENT",
            "profileContent": base64.b64encode(content).decode(),
            "expirationDate": "2027-01-01T00:00:00.000+0000",
        },
        "relationships": {
            "certificates": {"links": {"related": f"profiles/{profile_id}/certificates"}},
            "bundleId": {"links": {"related": f"profiles/{profile_id}/bundleId"}},
        },
    }


def bundle_id_resource(identifier):
    return {
        "id": f"bid-{identifier}",
        "type": "bundleIds",
        "attributes": {"identifier": identifier, "name": identifier, "platform": "IOS"},
    }


def list_document(items):
    return {"data": items, "meta": {"paging": {"total": len(items)}}, "links": {}}


def test_find_bundle_id_requires_exact_match():
    transport = RoutingTransport(
        {
            ("GET", "bundleIds"): [
                list_document(
                    [bundle_id_resource("io.example.app.widget"), bundle_id_resource("io.example.app")]
                ),
                list_document([bundle_id_resource("io.example.app.widget")]),
            ]
        }
    )
    client = APIKeyPortalClient(transport)

    assert client.find_bundle_id("io.example.app").id == "bid-io.example.app"
    assert client.find_bundle_id("io.example") is None


def test_query_certificate_by_serial():
    der = make_der_certificate(0x1A2B, "Apple Development: Jane Doe")
    transport = RoutingTransport(
        {
            ("GET", "certificates"): [
                {
                    "data": [
                        {
                            "id": "cert-1",
                            "attributes": {
                                "serialNumber": "1A2B",
                                "certificateType": "IOS_DEVELOPMENT",
                                "certificateContent": base64.b64encode(der).decode(),
                            },
                        }
                    ]
                }
            ]
        }
    )

    certificate = APIKeyPortalClient(transport).query_certificate_by_serial(0x1A2B)

    assert certificate.id == "cert-1"
    assert certificate.certificate_info.serial == 0x1A2B
    assert certificate.certificate_info.common_name == "Apple Development: Jane Doe"
    assert transport.calls[0][2] == {"filter[serialNumber]": "1a2b"}


def test_register_device_passes_udid_through():
    transport = RoutingTransport(
        {
            ("POST", "devices"): [
                {"data": {"id": "d1", "attributes": {"udid": "00008030-001A", "deviceClass": "IPHONE"}}}
            ]
        }
    )

    device = APIKeyPortalClient(transport).register_device(TestDevice(device_id="00008030-001A"))

    assert device.id == "d1"
    assert transport.calls[0][3]["data"]["attributes"]["udid"] == "00008030-001A"


def test_api_profile_reads_content_and_relationships():
    content = make_profile_content(
        {
            "ProvisionedDevices": ["00008030-001A"],
            "Entitlements": {"aps-environment": "development"},
        }
    )
    transport = RoutingTransport(
        {
            ("GET", "profiles"): [{"data": [profile_resource("p1", "name", content)]}],
            ("GET", "profiles/p1/certificates"): [list_document([{"id": "cert-1"}])],
            ("GET", "profiles/p1/bundleId"): [{"data": bundle_id_resource("io.example.app")}],
        }
    )

    profile = APIKeyPortalClient(transport).find_profile("name", ProfileType.IOS_APP_DEVELOPMENT)

    assert profile.id == "p1"
    assert profile.device_udids() == ["00008030-001A"]
    assert profile.entitlements() == {"aps-environment": "development"}
    assert profile.certificate_ids() == ["cert-1"]
    assert profile.bundle_id().identifier == "io.example.app"


def test_missing_profile_relationship_is_inconsistent():
    transport = RoutingTransport(
        {
            ("GET", "profiles"): [{"data": [profile_resource("p1", "name")]}],
            ("GET", "profiles/p1/certificates"): [PortalAPIError("GET", "url", 404, [])],
        }
    )

    profile = APIKeyPortalClient(transport).find_profile("name", ProfileType.IOS_APP_DEVELOPMENT)

    with pytest.raises(CodesignError) as excinfo:
        profile.certificate_ids()
    assert excinfo.value.kind == ErrorKind.PROFILES_INCONSISTENT
    assert excinfo.value.retryable


def test_expired_profile_with_same_name_is_cleaned_up():
    name = "Bitrise iOS development - (io.example.app)"
    duplicate = PortalAPIError(
        "POST",
        "url",
        409,
        [ErrorEntry(code="ENTITY_ERROR", detail=f"multiple profiles found with the name '{name}'")],
    )
    transport = RoutingTransport(
        {
            ("POST", "profiles"): [duplicate, {"data": profile_resource("new", name)}],
            ("GET", "bundleIds/bid-io.example.app/profiles"): [
                list_document([profile_resource("other", "other"), profile_resource("expired", name)])
            ],
            ("DELETE", "profiles/expired"): [None],
        }
    )
    bundle_id = BundleID(id="bid-io.example.app", identifier="io.example.app", name="app")

    profile = APIKeyPortalClient(transport).create_profile(
        name, ProfileType.IOS_APP_DEVELOPMENT, bundle_id, ["cert-1"], []
    )

    assert profile.id == "new"
    assert ("DELETE", "profiles/expired", None, None) in transport.calls


def test_create_profile_error_names_the_bundle_id():
    transport = RoutingTransport(
        {("POST", "profiles"): [PortalAPIError("POST", "url", 409, [ErrorEntry(detail="invalid")])]}
    )
    bundle_id = BundleID(id="bid", identifier="io.example.app", name="app")

    with pytest.raises(CodesignError) as excinfo:
        APIKeyPortalClient(transport).create_profile(
            "name", ProfileType.IOS_APP_STORE, bundle_id, [], []
        )
    assert str(excinfo.value).startswith(
        "failed to create app store provisioning profile for io.example.app bundle ID"
    )


def test_api_key_client_enables_each_capability():
    transport = RoutingTransport({("POST", "bundleIdCapabilities"): [{"data": {}}, {"data": {}}]})
    bundle_id = BundleID(id="bid", identifier="io.example.app", name="app")

    APIKeyPortalClient(transport).sync_bundle_id(
        bundle_id,
        {
            "aps-environment": "development",
            "com.apple.developer.icloud-container-identifiers": [],
            "com.apple.InAppPurchase": True,
        },
    )

    types = [call[3]["data"]["attributes"]["capabilityType"] for call in transport.calls]
    assert types == ["PUSH_NOTIFICATIONS", "IN_APP_PURCHASE"]


def test_apple_id_client_sends_full_capability_list():
    transport = RoutingTransport(
        {
            ("GET", "bundleIds/bid"): [
                {
                    "data": bundle_id_resource("io.example.app"),
                    "included": [
                        {
                            "id": "bid_GAME_CENTER",
                            "type": "bundleIdCapabilities",
                            "attributes": {"settings": []},
                            "relationships": {"capability": {"data": {"id": "GAME_CENTER"}}},
                        }
                    ],
                }
            ],
            ("PATCH", "bundleIds/bid"): [{"data": {}}],
        }
    )
    bundle_id = BundleID(id="bid", identifier="io.example.app", name="app")

    AppleIDPortalClient(transport).sync_bundle_id(bundle_id, {"aps-environment": "development"})

    body = transport.calls[-1][3]
    capabilities = body["data"]["relationships"]["bundleIdCapabilities"]["data"]
    assert [c["relationships"]["capability"]["data"]["id"] for c in capabilities] == [
        "GAME_CENTER",
        "PUSH_NOTIFICATIONS",
    ]


def test_unknown_auth_type():
    with pytest.raises(CodesignError) as excinfo:
        create_portal_client("password", config={})
    assert excinfo.value.kind == ErrorKind.INVALID_INPUT


def test_api_key_auth_requires_credentials(monkeypatch):
    for name in ("AUTOSIGN_API_KEY_ID", "AUTOSIGN_API_ISSUER_ID", "AUTOSIGN_API_PRIVATE_KEY",
                 "AUTOSIGN_API_PRIVATE_KEY_PATH"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(CodesignError) as excinfo:
        create_portal_client("api-key", config={})
    assert excinfo.value.kind == ErrorKind.AUTH
