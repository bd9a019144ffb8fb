import time
from typing import Callable, Dict, List, Optional

from rich.markup import escape

from autosign.logger import get_console
from autosign.src.core.asset_writer import AssetWriter
from autosign.src.core.certificates import select_certificates_and_distribution_types
from autosign.src.core.devices import (
    distribution_type_requires_device_list,
    ensure_test_devices,
)
from autosign.src.core.entitlements import (
    can_generate_profile_with_entitlements,
    profile_attached_entitlement_error,
)
from autosign.src.core.errors import CodesignError, ErrorKind, wrap
from autosign.src.core.local_assets import LocalCodesignAssetManager
from autosign.src.core.models import (
    AppCodesignAssets,
    AppLayout,
    CodesignAssetsOpts,
    DevPortalClient,
    DistributionType,
    Profile,
)
from autosign.src.core.profiles import ensure_profiles

console = get_console()


def _print_profiles(profiles: Dict[str, Profile]) -> None:
    for bundle_id, profile in profiles.items():
        attributes = profile.attributes
        console.print(
            f"- {escape(bundle_id)}: {escape(attributes.name)} (ID: {profile.id} "
            f"UUID: {attributes.uuid} Expiry: {attributes.expiration_date})"
        )


def print_existing_codesign_assets(
    assets: Optional[AppCodesignAssets], distribution: DistributionType
) -> None:
    if assets is None:
        return
    certificate = assets.certificate
    console.print()
    console.print(f"[blue]Local code signing assets for {distribution.value} distribution:")
    console.print(
        f"Certificate: {escape(certificate.common_name)} "
        f"(team name: {escape(certificate.team_name)}, serial: {certificate.serial_hex})"
    )
    console.print(f"Archivable targets ({len(assets.archivable_target_profiles_by_bundle_id)})")
    _print_profiles(assets.archivable_target_profiles_by_bundle_id)
    console.print(f"UITest targets ({len(assets.ui_test_target_profiles_by_bundle_id)})")
    _print_profiles(assets.ui_test_target_profiles_by_bundle_id)


def print_missing_codesign_assets(missing: AppLayout) -> None:
    console.print()
    console.print("[blue]Local code signing assets not found for:")
    console.print(
        f"Archivable targets ({len(missing.entitlements_by_archivable_target_bundle_id)})"
    )
    for bundle_id in missing.entitlements_by_archivable_target_bundle_id:
        console.print(f"- {escape(bundle_id)}")
    console.print(f"UITest targets ({len(missing.ui_test_target_bundle_ids)})")
    for bundle_id in missing.ui_test_target_bundle_ids:
        console.print(f"- {escape(bundle_id)}")


def _merge_profiles(
    local: Dict[str, Profile], remote: Dict[str, Profile]
) -> Dict[str, Profile]:
    merged = dict(local)
    for bundle_id, profile in remote.items():
        existing = merged.get(bundle_id)
        if existing is not None and existing.attributes.uuid != profile.attributes.uuid:
            console.print(
                f"[yellow]Both a local and a generated profile found for {escape(bundle_id)}, "
                f"using the generated one ({escape(profile.attributes.name)})"
            )
        merged[bundle_id] = profile
    return merged


def merge_codesign_assets(
    local: Optional[AppCodesignAssets], remote: Optional[AppCodesignAssets]
) -> Optional[AppCodesignAssets]:
    """Combine local and freshly generated assets, generated profiles win"""
    if remote is None:
        return local
    if local is None:
        return remote
    return AppCodesignAssets(
        certificate=remote.certificate,
        archivable_target_profiles_by_bundle_id=_merge_profiles(
            local.archivable_target_profiles_by_bundle_id,
            remote.archivable_target_profiles_by_bundle_id,
        ),
        ui_test_target_profiles_by_bundle_id=_merge_profiles(
            local.ui_test_target_profiles_by_bundle_id,
            remote.ui_test_target_profiles_by_bundle_id,
        ),
    )


class CodesignAssetManager:
    """Makes sure every target of an app has a certificate and a matching profile"""

    def __init__(
        self,
        client: DevPortalClient,
        asset_writer: AssetWriter,
        local_asset_manager: LocalCodesignAssetManager,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.asset_writer = asset_writer
        self.local_asset_manager = local_asset_manager
        self.sleep = sleep

    def ensure_codesign_assets(
        self, layout: AppLayout, opts: CodesignAssetsOpts
    ) -> Dict[DistributionType, AppCodesignAssets]:
        ok, key, bundle_id = can_generate_profile_with_entitlements(
            layout.entitlements_by_archivable_target_bundle_id
        )
        if not ok:
            raise profile_attached_entitlement_error(key, bundle_id)

        certs_by_type, distribution_types = select_certificates_and_distribution_types(
            self.client,
            opts.type_to_local_certificates,
            opts.distribution_type,
            bool(layout.ui_test_target_bundle_ids),
            opts.verbose_log,
        )

        device_ids: List[str] = []
        device_udids: List[str] = []
        if distribution_type_requires_device_list(distribution_types):
            try:
                devices = ensure_test_devices(self.client, opts.test_devices, layout.platform)
            except CodesignError as e:
                raise wrap(e, "failed to ensure test devices") from e
            device_ids = [d.id for d in devices]
            device_udids = [d.udid for d in devices]

        assets_by_distribution: Dict[DistributionType, AppCodesignAssets] = {}
        for distribution in distribution_types:
            local_assets, missing = self.local_asset_manager.find_codesign_assets(
                layout,
                distribution,
                certs_by_type,
                device_udids,
                opts.min_profile_validity_days,
            )
            print_existing_codesign_assets(local_assets, distribution)

            if local_assets is not None:
                console.print()
                console.print("[blue]Installing certificate")
                console.print(f"certificate: {escape(local_assets.certificate.common_name)}")
                self.asset_writer.install_certificate(local_assets.certificate)

            final_assets = local_assets
            if missing is not None:
                print_missing_codesign_assets(missing)
                try:
                    new_assets = ensure_profiles(
                        self.client,
                        distribution,
                        certs_by_type,
                        missing,
                        device_ids,
                        device_udids,
                        opts.min_profile_validity_days,
                        sleep=self.sleep,
                    )
                except CodesignError as e:
                    self._warn_app_clip(e)
                    raise wrap(e, "failed to ensure profiles") from e

                console.print()
                console.print("[blue]Installing certificates and profiles")
                self.asset_writer.write({distribution: new_assets})
                final_assets = merge_codesign_assets(local_assets, new_assets)

            if final_assets is not None:
                assets_by_distribution[distribution] = final_assets

        return assets_by_distribution

    @staticmethod
    def _warn_app_clip(error: CodesignError) -> None:
        if error.kind == ErrorKind.APP_CLIP_APP_ID:
            console.print("[yellow]Can't create Application Identifier for App Clip targets.")
            console.print(
                "[yellow]Please generate the Application Identifier manually on Apple Developer Portal, "
                "after that the code signing preparation will continue working."
            )
        elif error.kind == ErrorKind.APP_CLIP_APP_ID_WITH_APPLE_SIGNING:
            console.print(
                "[yellow]Can't manage Application Identifier for App Clip target with "
                "'Sign In With Apple' capability."
            )
            console.print(
                "[yellow]Please configure Capabilities on Apple Developer Portal for App Clip target manually, "
                "after that the code signing preparation will continue working."
            )


def prepare_manual_assets(asset_writer: AssetWriter, opts: CodesignAssetsOpts) -> None:
    """Install every provided certificate as is"""
    for certificates in opts.type_to_local_certificates.values():
        for certificate in certificates:
            console.print(f"Installing certificate: {escape(certificate.common_name)}")
            asset_writer.install_certificate(certificate)


def prepare_codesigning(
    manager: CodesignAssetManager, layout: AppLayout, opts: CodesignAssetsOpts
) -> Optional[Dict[DistributionType, AppCodesignAssets]]:
    """Ensure assets, falling back to the provided certificates when asked to.

    Returns None when the fallback path was taken.
    """
    try:
        return manager.ensure_codesign_assets(layout, opts)
    except CodesignError as e:
        if not opts.fallback_to_local_assets_on_api_failure:
            raise
        console.print(f"[yellow]Error: {escape(str(e))}")
        console.print("Falling back to manually managed codesigning assets.")

    prepare_manual_assets(manager.asset_writer, opts)
    return None
