import subprocess
from pathlib import Path
from typing import Callable, Dict, Optional

from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.models import BundleIDPlatform
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import AppCodesignAssets, CertificateInfo, DistributionType, Profile

console = get_console()

PROFILE_EXTENSIONS = {
    BundleIDPlatform.IOS.value: ".mobileprovision",
    BundleIDPlatform.MAC_OS.value: ".provisionprofile",
}


def default_profiles_dir() -> Path:
    """Directory Xcode reads installed provisioning profiles from"""
    return Path.home() / "Library" / "MobileDevice" / "Provisioning Profiles"


def default_keychain_path() -> Path:
    return Path.home() / "Library" / "Keychains" / "login.keychain-db"


class AssetWriter:
    """Installs certificates into a keychain and profiles into the profiles directory"""

    def __init__(
        self,
        keychain_path: Optional[Path] = None,
        keychain_password: str = "",
        profiles_dir: Optional[Path] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.keychain_path = Path(keychain_path or default_keychain_path())
        self.keychain_password = keychain_password
        self.profiles_dir = Path(profiles_dir or default_profiles_dir())
        self.runner = runner

    def _security(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return self.runner(["security", *args], capture_output=True, text=True)
        except OSError as e:
            raise CodesignError(ErrorKind.INSTALL, f"failed to run security: {e}") from e

    def install_certificate(self, certificate: CertificateInfo) -> None:
        """Import the .p12 of a certificate into the keychain"""
        if not certificate.p12_path:
            raise CodesignError(
                ErrorKind.INSTALL,
                f"no .p12 file known for certificate {certificate.common_name}",
            )

        result = self._security(
            "import",
            str(certificate.p12_path),
            "-k",
            str(self.keychain_path),
            "-f",
            "pkcs12",
            "-A",
            "-T",
            "/usr/bin/codesign",
            "-T",
            "/usr/bin/security",
            "-P",
            certificate.password,
        )
        # Re-importing an identity that is already in the keychain is fine
        if result.returncode != 0 and "already exists" not in (result.stderr or ""):
            raise CodesignError(
                ErrorKind.INSTALL,
                f"failed to import certificate {certificate.common_name}: {result.stderr.strip()}",
            )

        if self.keychain_password:
            result = self._security(
                "set-key-partition-list",
                "-S",
                "apple-tool:,apple:",
                "-k",
                self.keychain_password,
                str(self.keychain_path),
            )
            if result.returncode != 0:
                raise CodesignError(
                    ErrorKind.INSTALL,
                    f"failed to set keychain partition list: {result.stderr.strip()}",
                )
        debug(f"Installed certificate {certificate.common_name} into {self.keychain_path}")

    def profile_path(self, profile: Profile) -> Path:
        platform = profile.attributes.platform
        extension = PROFILE_EXTENSIONS.get(platform)
        if extension is None:
            raise CodesignError(
                ErrorKind.INSTALL,
                f"failed to write profile to file, unsupported platform: ({platform}). "
                f"Supported platforms: {', '.join(PROFILE_EXTENSIONS)}",
            )
        return self.profiles_dir / f"{profile.attributes.uuid}{extension}"

    def install_profile(self, profile: Profile) -> Path:
        path = self.profile_path(profile)
        try:
            self.profiles_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(profile.attributes.profile_content)
            path.chmod(0o600)
        except OSError as e:
            raise CodesignError(
                ErrorKind.INSTALL, f"failed to write profile to file: {e}"
            ) from e
        return path

    def write(self, assets_by_distribution: Dict[DistributionType, AppCodesignAssets]) -> None:
        for index, assets in enumerate(assets_by_distribution.values()):
            if index > 0:
                console.print()
            console.print(f"certificate: {escape(assets.certificate.common_name)}")
            self.install_certificate(assets.certificate)

            console.print("profiles:")
            for profile in [
                *assets.archivable_target_profiles_by_bundle_id.values(),
                *assets.ui_test_target_profiles_by_bundle_id.values(),
            ]:
                console.print(f"- {escape(profile.attributes.name)}")
                self.install_profile(profile)
