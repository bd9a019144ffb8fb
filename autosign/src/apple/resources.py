from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from autosign.logger import get_console
from autosign.src.apple.models import (
    BundleID,
    BundleIDCapability,
    BundleIDPlatform,
    Certificate,
    Device,
    DevicePlatform,
    DeviceStatus,
    Page,
    PortalProfile,
)
from autosign.src.apple.transport import PortalAPIError, PortalTransport
from autosign.src.core.errors import CodesignError, ErrorKind

console = get_console()

PAGE_LIMIT = 20
FALLBACK_LIMIT = 200


def _value(member) -> str:
    return str(getattr(member, "value", member))


def cursor_from_next_url(next_url: str) -> str:
    """Extract the cursor query parameter of a links.next URL"""
    values = parse_qs(urlparse(next_url).query).get("cursor")
    return values[0] if values else ""


class Paginator:
    """Walks cursor paged list endpoints, with a sorted fallback for bad cursors"""

    def __init__(self, transport: PortalTransport):
        self.transport = transport

    def _page(self, endpoint: str, params: Dict) -> Page:
        return Page.from_json(self.transport.request("GET", endpoint, params=params))

    def _walk(self, endpoint: str, params: Optional[Dict], label: str) -> List[dict]:
        items: List[dict] = []
        cursor = ""
        while True:
            page_params = dict(params or {})
            page_params["limit"] = PAGE_LIMIT
            if cursor:
                page_params["cursor"] = cursor

            page = self._page(endpoint, page_params)
            items.extend(page.data)

            if not page.data or not page.next_url:
                return items
            if len(items) >= page.total:
                console.print(
                    f"[yellow]All {label} fetched, but next page URL is not empty"
                )
                return items

            cursor = cursor_from_next_url(page.next_url)
            if not cursor:
                return items

    def list_all(
        self, endpoint: str, params: Optional[Dict] = None, label: str = "items"
    ) -> List[dict]:
        """Fetch every item of a list endpoint"""
        try:
            return self._walk(endpoint, params, label)
        except PortalAPIError as e:
            if not e.is_cursor_invalid():
                raise
            console.print(
                f"[yellow]Cursor is invalid, falling back to listing {label} with 400 limit"
            )
            return self._list_400(endpoint, params, label)

    def _list_400(self, endpoint: str, params: Optional[Dict], label: str) -> List[dict]:
        by_id: Dict[str, dict] = {}
        total = 0
        for sort in ("id", "-id"):
            page_params = dict(params or {})
            page_params["limit"] = FALLBACK_LIMIT
            page_params["sort"] = sort
            page = self._page(endpoint, page_params)
            for item in page.data:
                by_id.setdefault(item["id"], item)
            if total == 0:
                total = page.total

        if total > 400:
            console.print(f"[yellow]More than 400 {label} ({total}) found")
        return list(by_id.values())

    def list_related(self, url: str, label: str = "items") -> List[dict]:
        """Fetch every item behind a relationship URL"""
        try:
            return self._walk(url, None, label)
        except PortalAPIError as e:
            if not e.is_cursor_invalid():
                raise
            console.print(
                f"[yellow]Cursor is invalid, falling back to listing {label} with 200 limit"
            )

        page = self._page(url, {"limit": FALLBACK_LIMIT})
        if page.total > FALLBACK_LIMIT:
            console.print(f"[yellow]More than 200 {label} ({page.total}) found")
        return page.data


class CertificateClient:
    def __init__(self, transport: PortalTransport, paginator: Paginator):
        self.transport = transport
        self.paginator = paginator

    def fetch_by_serial(self, serial_hex: str) -> Certificate:
        response = self.transport.request(
            "GET", "certificates", params={"filter[serialNumber]": serial_hex}
        )
        data = (response or {}).get("data") or []
        if not data:
            raise CodesignError(
                ErrorKind.CERTIFICATE_NOT_ON_PORTAL,
                f"no certificate found with serial {serial_hex}",
            )
        if len(data) > 1:
            raise CodesignError(
                ErrorKind.API, f"multiple certificates found with serial {serial_hex}"
            )
        return Certificate.from_json(data[0])

    def list_by_type(self, certificate_type: str) -> List[Certificate]:
        items = self.paginator.list_all(
            "certificates",
            {"filter[certificateType]": _value(certificate_type)},
            "certificates",
        )
        return [Certificate.from_json(item) for item in items]


class DeviceClient:
    def __init__(self, transport: PortalTransport, paginator: Paginator):
        self.transport = transport
        self.paginator = paginator

    def list_devices(
        self, udid: str = "", platform: str = DevicePlatform.IOS
    ) -> List[Device]:
        params = {
            "filter[platform]": _value(platform),
            "filter[status]": DeviceStatus.ENABLED.value,
        }
        if udid:
            params["filter[udid]"] = udid
        items = self.paginator.list_all("devices", params, "devices")
        return [Device.from_json(item) for item in items]

    def register_device(
        self,
        udid: str,
        name: str = "autosign test device",
        platform: str = DevicePlatform.IOS,
    ) -> Device:
        body = {
            "data": {
                "type": "devices",
                "attributes": {
                    "name": name,
                    "platform": _value(platform),
                    "udid": udid,
                },
            }
        }
        try:
            response = self.transport.request("POST", "devices", json_body=body)
        except PortalAPIError as e:
            if e.status_code == 409:
                raise CodesignError(ErrorKind.DEVICE_REGISTRATION, str(e)) from e
            raise
        return Device.from_json(response["data"])


class BundleIDClient:
    def __init__(self, transport: PortalTransport, paginator: Paginator):
        self.transport = transport
        self.paginator = paginator

    def list_by_identifier(self, identifier: str) -> List[BundleID]:
        """List bundle IDs whose identifier contains the given one"""
        items = self.paginator.list_all(
            "bundleIds", {"filter[identifier]": identifier}, "bundleIDs"
        )
        return [BundleID.from_json(item) for item in items]

    def create_bundle_id(
        self, identifier: str, name: str, platform: str = BundleIDPlatform.IOS
    ) -> BundleID:
        body = {
            "data": {
                "type": "bundleIds",
                "attributes": {
                    "identifier": identifier,
                    "name": name,
                    "platform": _value(platform),
                },
            }
        }
        response = self.transport.request("POST", "bundleIds", json_body=body)
        return BundleID.from_json(response["data"])

    def capabilities(self, bundle_id: BundleID) -> List[BundleIDCapability]:
        url = bundle_id.capabilities_url or f"bundleIds/{bundle_id.id}/bundleIdCapabilities"
        response = self.transport.request("GET", url)
        return [
            BundleIDCapability.from_json(item)
            for item in (response or {}).get("data") or []
        ]

    def enable_capability(self, bundle_id: BundleID, capability: BundleIDCapability) -> None:
        body = {
            "data": {
                "type": "bundleIdCapabilities",
                "attributes": {
                    "capabilityType": capability.capability_type,
                    "settings": [s.to_json() for s in capability.settings],
                },
                "relationships": {
                    "bundleId": {"data": {"id": bundle_id.id, "type": "bundleIds"}}
                },
            }
        }
        self.transport.request("POST", "bundleIdCapabilities", json_body=body)

    def update_capabilities(
        self, bundle_id: BundleID, capabilities: List[BundleIDCapability]
    ) -> None:
        """Replace the enabled capability list of a bundle ID in one request"""
        body = {
            "data": {
                "type": "bundleIds",
                "id": bundle_id.id,
                "attributes": {
                    "identifier": bundle_id.identifier,
                    "name": bundle_id.name,
                    "permissions": {"edit": True, "delete": True},
                    "wildcard": bundle_id.identifier.endswith(".*"),
                },
                "relationships": {
                    "bundleIdCapabilities": {
                        "data": [
                            {
                                "type": "bundleIdCapabilities",
                                "attributes": {
                                    "enabled": True,
                                    "settings": [s.to_json() for s in cap.settings],
                                },
                                "relationships": {
                                    "capability": {
                                        "data": {
                                            "type": "capabilities",
                                            "id": cap.capability_type,
                                        }
                                    }
                                },
                            }
                            for cap in capabilities
                        ]
                    }
                },
            }
        }
        self.transport.request("PATCH", f"bundleIds/{bundle_id.id}", json_body=body)

    def profiles(self, bundle_id: BundleID) -> List[PortalProfile]:
        url = bundle_id.profiles_url or f"bundleIds/{bundle_id.id}/profiles"
        return [
            PortalProfile.from_json(item)
            for item in self.paginator.list_related(url, "profiles")
        ]


class ProfileClient:
    def __init__(self, transport: PortalTransport, paginator: Paginator):
        self.transport = transport
        self.paginator = paginator

    def find(self, name: str, profile_type: str) -> Optional[PortalProfile]:
        response = self.transport.request(
            "GET",
            "profiles",
            params={
                "limit": 1,
                "filter[profileType]": _value(profile_type),
                "filter[name]": name,
            },
        )
        data = (response or {}).get("data") or []
        if not data:
            return None
        return PortalProfile.from_json(data[0])

    def create(
        self,
        name: str,
        profile_type: str,
        bundle_id_id: str,
        certificate_ids: List[str],
        device_ids: List[str],
    ) -> PortalProfile:
        relationships = {
            "bundleId": {"data": {"id": bundle_id_id, "type": "bundleIds"}},
            "certificates": {
                "data": [{"id": cid, "type": "certificates"} for cid in certificate_ids]
            },
        }
        if device_ids:
            relationships["devices"] = {
                "data": [{"id": did, "type": "devices"} for did in device_ids]
            }

        body = {
            "data": {
                "type": "profiles",
                "attributes": {
                    "name": name,
                    "profileType": _value(profile_type),
                },
                "relationships": relationships,
            }
        }
        response = self.transport.request("POST", "profiles", json_body=body)
        return PortalProfile.from_json(response["data"])

    def delete(self, profile_id: str) -> None:
        try:
            self.transport.request("DELETE", f"profiles/{profile_id}")
        except PortalAPIError as e:
            if e.status_code != 404:
                raise

    def certificates(self, profile: PortalProfile) -> List[Certificate]:
        url = profile.certificates_url or f"profiles/{profile.id}/certificates"
        return [
            Certificate.from_json(item)
            for item in self.paginator.list_related(url, "certificates")
        ]

    def bundle_id(self, profile: PortalProfile) -> BundleID:
        url = profile.bundle_id_url or f"profiles/{profile.id}/bundleId"
        response = self.transport.request("GET", url)
        return BundleID.from_json(response["data"])
