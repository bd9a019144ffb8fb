from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from autosign.logger import get_console
from autosign.src.core.errors import CodesignError, ErrorKind
from autosign.src.core.models import CertificateInfo

console = get_console()

SHARED_PASSWORD_FILE = "cert_pass.txt"


def _name_attribute(name: x509.Name, oid) -> str:
    return " ".join(attr.value for attr in name.get_attributes_for_oid(oid))


def certificate_info(
    certificate: x509.Certificate, p12_path: Optional[str] = None, password: str = ""
) -> CertificateInfo:
    subject = certificate.subject
    return CertificateInfo(
        common_name=_name_attribute(subject, NameOID.COMMON_NAME),
        serial=certificate.serial_number,
        not_before=certificate.not_valid_before_utc,
        not_after=certificate.not_valid_after_utc,
        team_id=_name_attribute(subject, NameOID.ORGANIZATIONAL_UNIT_NAME),
        team_name=_name_attribute(subject, NameOID.ORGANIZATION_NAME),
        sha1_fingerprint=certificate.fingerprint(hashes.SHA1()).hex().upper(),
        p12_path=p12_path,
        password=password,
    )


def _password_for(p12: Path) -> str:
    sibling = p12.with_suffix(".pass")
    if sibling.exists():
        return sibling.read_text().strip()
    shared = p12.parent / SHARED_PASSWORD_FILE
    if shared.exists():
        return shared.read_text().strip()
    return ""


def load_p12(p12: Path, password: str) -> List[CertificateInfo]:
    """Read the signing certificates stored in one .p12 file"""
    try:
        _, certificate, _ = pkcs12.load_key_and_certificates(
            p12.read_bytes(), password.encode() if password else None
        )
    except (OSError, ValueError) as e:
        raise CodesignError(
            ErrorKind.INVALID_INPUT, f"failed to read certificate {p12}: {e}"
        ) from e

    # Only the certificate paired with the private key can sign
    if certificate is None:
        console.print(f"[yellow]No certificate with private key found in {p12}")
        return []
    return [certificate_info(certificate, str(p12), password)]


def load_p12_certificates(certificates_dir: Path) -> List[CertificateInfo]:
    """Load every .p12 in a directory, using sibling .pass files or cert_pass.txt"""
    certificates_dir = Path(certificates_dir)
    if not certificates_dir.is_dir():
        raise CodesignError(
            ErrorKind.INVALID_INPUT,
            f"Certificate directory not found: {certificates_dir}",
        )

    certificates = []
    for p12 in sorted(certificates_dir.glob("*.p12")):
        infos = load_p12(p12, _password_for(p12))
        for info in infos:
            console.print(f"[green]Loaded certificate:[/] {info.common_name} ({p12.name})")
        certificates.extend(infos)
    return certificates
