from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rich.markup import escape

from autosign.logger import get_console
from autosign.src.apple.models import BundleID
from autosign.src.core.entitlements import (
    has_sign_in_with_apple,
    icloud_containers,
    is_app_clip,
)
from autosign.src.core.errors import (
    CodesignError,
    ErrorKind,
    app_clip_app_id,
    app_clip_app_id_with_apple_signing,
    wrap,
)
from autosign.src.core.models import DevPortalClient, Entitlements

console = get_console()

MANAGED_PREFIX = "Bitrise"


@dataclass
class ReconciliationState:
    """Lookups and findings collected during one profile reconciliation pass"""

    bundle_id_by_identifier: Dict[str, BundleID] = field(default_factory=dict)
    containers_by_bundle_id: Dict[str, List[str]] = field(default_factory=dict)


def app_id_name(identifier: str) -> str:
    prefix = "Wildcard " if identifier.endswith(".*") else ""
    name = identifier
    for char in "._-*":
        name = name.replace(char, " ")
    return f"{prefix}{MANAGED_PREFIX} {name}"


def ensure_bundle_id(
    client: DevPortalClient,
    state: ReconciliationState,
    identifier: str,
    entitlements: Optional[Entitlements],
) -> BundleID:
    """Find or create the app ID of a bundle identifier and sync its capabilities"""
    entitlements = entitlements or {}
    console.print()
    console.print(f"[blue]  Searching for app ID for bundle ID: {escape(identifier)}")

    bundle_id = state.bundle_id_by_identifier.get(identifier)
    if bundle_id is None:
        try:
            bundle_id = client.find_bundle_id(identifier)
        except CodesignError as e:
            raise wrap(e, "failed to find bundle ID") from e

    if bundle_id is None and is_app_clip(entitlements):
        raise app_clip_app_id()

    if bundle_id is not None:
        console.print(f"  app ID found: {escape(bundle_id.name)}")
        state.bundle_id_by_identifier[identifier] = bundle_id
        try:
            client.check_bundle_id_entitlements(bundle_id, entitlements)
        except CodesignError as e:
            if e.kind != ErrorKind.NONMATCHING_PROFILE:
                raise wrap(e, "failed to validate bundle ID") from e
            if is_app_clip(entitlements) and has_sign_in_with_apple(entitlements):
                raise app_clip_app_id_with_apple_signing() from e

            console.print(f"[yellow]  app ID capabilities invalid: {escape(e.detail)}")
            console.print(
                "[yellow]  app ID capabilities are not in sync with the project capabilities, synchronizing..."
            )
            client.sync_bundle_id(bundle_id, entitlements)
            return bundle_id

        console.print("  app ID capabilities are in sync with the project capabilities")
        return bundle_id

    console.print("[yellow]  app ID not found, generating...")
    bundle_id = client.create_bundle_id(identifier, app_id_name(identifier))

    containers = icloud_containers(entitlements)
    if containers:
        state.containers_by_bundle_id[identifier] = containers
        console.print(
            f"[red]  app ID created but couldn't add iCloud containers: {escape(str(containers))}"
        )

    client.sync_bundle_id(bundle_id, entitlements)
    state.bundle_id_by_identifier[identifier] = bundle_id
    return bundle_id


def icloud_container_report(state: ReconciliationState) -> Optional[CodesignError]:
    """The deferred list of containers that need to be assigned by hand"""
    if not state.containers_by_bundle_id:
        return None

    description = ""
    for bundle_id, containers in state.containers_by_bundle_id.items():
        description += f"{bundle_id}, containers:\n"
        for container in containers:
            description += f"- {container}\n"
        description += "\n"

    return CodesignError(
        ErrorKind.ICLOUD_CONTAINERS,
        title="Unable to automatically assign iCloud containers to the following app IDs:",
        description=description,
        recommendation="You have to manually add the listed containers to your app ID at: "
        "https://developer.apple.com/account/resources/identifiers/list.",
    )
