import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
from rich.markup import escape

from autosign.logger import get_console, set_verbose
from autosign.src.apple.portal_client import create_portal_client
from autosign.src.apple.transport import ConsoleTracker
from autosign.src.core.asset_writer import AssetWriter
from autosign.src.core.certificates import get_valid_local_certificates
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.local_assets import LocalCodesignAssetManager
from autosign.src.core.local_certificates import load_p12_certificates
from autosign.src.core.models import (
    AppCodesignAssets,
    AppLayout,
    CodesignAssetsOpts,
    DistributionType,
    Platform,
    TestDevice,
)
from autosign.src.core.orchestrator import CodesignAssetManager, prepare_codesigning
from autosign.src.utils.config_loader import get_signing_settings, load_config


def _load_toml(path: Path, what: str) -> Dict[str, Any]:
    try:
        return toml.load(path)
    except (OSError, toml.TomlDecodeError) as e:
        raise CodesignError(
            ErrorKind.INVALID_INPUT, f"failed to read {what} file {path}: {e}"
        ) from e


def parse_platform(value: str) -> Platform:
    for platform in Platform:
        if platform.value.lower() == str(value).lower():
            return platform
    raise CodesignError(
        ErrorKind.INVALID_INPUT,
        f"unknown platform: {value}, supported platforms: {', '.join(p.value for p in Platform)}",
    )


class LayoutProvider:
    """Reads the targets of an app and their entitlements from a TOML file.

    The file looks like::

        platform = "iOS"
        ui_test_targets = ["io.example.app.uitests"]

        [targets."io.example.app"]
        "aps-environment" = "development"
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def layout(self) -> AppLayout:
        data = _load_toml(self.path, "layout")
        targets = data.get("targets") or {}
        if not isinstance(targets, dict):
            raise CodesignError(
                ErrorKind.INVALID_INPUT, f"targets must be a table in {self.path}"
            )
        return AppLayout(
            platform=parse_platform(data.get("platform", Platform.IOS.value)),
            entitlements_by_archivable_target_bundle_id={
                bundle_id: dict(entitlements or {})
                for bundle_id, entitlements in targets.items()
            },
            ui_test_target_bundle_ids=list(data.get("ui_test_targets") or []),
        )


def load_test_devices(path: Optional[Path]) -> List[TestDevice]:
    if path is None:
        return []
    devices = []
    for entry in _load_toml(path, "test devices").get("devices") or []:
        udid = entry.get("udid") or entry.get("device_id")
        if not udid:
            raise CodesignError(
                ErrorKind.INVALID_INPUT, f"test device without udid in {path}: {entry}"
            )
        devices.append(
            TestDevice(
                device_id=udid,
                title=entry.get("title", ""),
                device_type=entry.get("device_type", "ios"),
            )
        )
    return devices


def print_summary(console, assets_by_distribution: Dict[DistributionType, AppCodesignAssets]) -> None:
    console.print("\n[bold blue]Code signing assets:[/]")
    for distribution, assets in assets_by_distribution.items():
        console.print(f"[cyan]{distribution.value}:[/] {escape(assets.certificate.common_name)}")
        profiles = {
            **assets.archivable_target_profiles_by_bundle_id,
            **assets.ui_test_target_profiles_by_bundle_id,
        }
        for bundle_id, profile in profiles.items():
            console.print(f"  • {escape(bundle_id)}: {escape(profile.attributes.name)}")


def main(args: argparse.Namespace) -> int:
    """Ensure code signing assets for the layout given on the command line."""
    console = get_console()

    config = load_config()
    settings = get_signing_settings(config)
    verbose = settings.verbose if args.verbose is None else args.verbose
    set_verbose(verbose)

    certificates_dir = args.certificates_dir or settings.certificates_dir
    if certificates_dir is None:
        console.print(
            "[red]Error:[/] No certificate directory given. "
            "Use --certificates-dir or set certificates_dir in the [signing] config section."
        )
        return 1

    layout = LayoutProvider(args.layout).layout()
    certificates = load_p12_certificates(certificates_dir)
    test_devices = (
        load_test_devices(args.test_devices) if settings.register_test_devices else []
    )

    opts = CodesignAssetsOpts(
        distribution_type=DistributionType(args.distribution),
        type_to_local_certificates=get_valid_local_certificates(certificates),
        test_devices=test_devices,
        min_profile_validity_days=(
            settings.min_profile_validity_days
            if args.min_profile_validity_days is None
            else args.min_profile_validity_days
        ),
        fallback_to_local_assets_on_api_failure=(
            settings.fallback_to_local_assets
            if args.fallback_to_local_assets is None
            else args.fallback_to_local_assets
        ),
        verbose_log=verbose,
    )
    if opts.min_profile_validity_days < 0:
        console.print("[red]Error:[/] --min-profile-validity-days can not be negative")
        return 1

    client = create_portal_client(
        args.auth, config, tracker=ConsoleTracker() if verbose else None
    )
    manager = CodesignAssetManager(
        client,
        AssetWriter(args.keychain, args.keychain_password),
        LocalCodesignAssetManager(),
    )

    assets_by_distribution = prepare_codesigning(manager, layout, opts)
    if assets_by_distribution is None:
        console.print("[yellow]Installed the provided certificates without profiles[/]")
        return 0

    print_summary(console, assets_by_distribution)
    console.print("\n[green]Code signing assets are ready[/]")
    return 0


def run_ensure_command(args: argparse.Namespace) -> int:
    """Entry point for the ensure command from CLI"""
    console = get_console()
    try:
        return main(args)
    except CodesignError as e:
        console.print(f"\n[red]Error:[/] {escape(str(e))}")
        return 1
    except ValueError as e:
        console.print(f"\n[red]Configuration error:[/] {escape(str(e))}")
        return 1


# For direct script execution - route through the CLI
if __name__ == "__main__":
    from autosign.cli import main as cli_main

    sys.exit(cli_main())
