import argparse
from pathlib import Path

from autosign.src.core.models import DistributionType

AUTH_TYPES = ("api-key", "apple-id")


def add_ensure_arguments(parser: argparse.ArgumentParser) -> None:
    """Add all asset reconciliation arguments to an existing parser."""
    parser.add_argument(
        "--layout",
        type=Path,
        required=True,
        help="TOML file describing the app targets and their entitlements",
    )

    parser.add_argument(
        "--distribution",
        choices=[d.value for d in DistributionType],
        default=DistributionType.DEVELOPMENT.value,
        help="Distribution type to prepare assets for [default: development]",
    )

    parser.add_argument(
        "--certificates-dir",
        type=Path,
        help="Directory of .p12 files with .pass or cert_pass.txt passwords [default: from config]",
    )

    parser.add_argument(
        "--test-devices",
        type=Path,
        help="TOML file with [[devices]] entries to register on the Developer Portal",
    )

    parser.add_argument(
        "--min-profile-validity-days",
        type=int,
        help="Regenerate profiles expiring within this many days [default: from config or 0]",
    )

    parser.add_argument(
        "--fallback-to-local-assets",
        action="store_true",
        default=None,
        help="Install the provided certificates as is when the Developer Portal fails [default: disabled]",
    )

    parser.add_argument(
        "--auth",
        choices=AUTH_TYPES,
        default="api-key",
        help="Developer Portal authentication [default: api-key]",
    )

    parser.add_argument(
        "--keychain",
        type=Path,
        help="Keychain to import certificates into [default: login keychain]",
    )

    parser.add_argument(
        "--keychain-password",
        default="",
        help="Password of the keychain, needed to allow codesign access to the keys",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=None,
        help="Print debug output [default: disabled]",
    )
