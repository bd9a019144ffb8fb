from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.models import CertificateType
from autosign.src.core.errors import CodesignError, ErrorKind, wrap
from autosign.src.core.models import (
    CERTIFICATE_TYPE_BY_DISTRIBUTION,
    CertificateInfo,
    DevPortalClient,
    DistributionType,
    PortalCertificate,
)

console = get_console()

LOCAL_CERTIFICATE_TYPES = (CertificateType.IOS_DEVELOPMENT, CertificateType.IOS_DISTRIBUTION)
DISTRIBUTION_PREFIXES = ("iphone distribution", "apple distribution")


def certs_to_string(certificates: List[CertificateInfo]) -> str:
    return "\n".join(f"- {cert}" for cert in certificates)


def is_distribution_certificate(certificate: CertificateInfo) -> bool:
    return certificate.common_name.lower().startswith(DISTRIBUTION_PREFIXES)


def filter_valid_certificates(
    certificates: List[CertificateInfo], now: Optional[datetime] = None
) -> Tuple[List[CertificateInfo], List[CertificateInfo], List[CertificateInfo]]:
    """Split certificates into (valid, invalid, duplicated).

    Certificates sharing a common name are duplicates of each other, the one
    expiring last is kept.
    """
    now = now or datetime.now(timezone.utc)
    invalid = []
    by_name: Dict[str, CertificateInfo] = {}
    duplicated = []

    for certificate in certificates:
        if not certificate.is_valid(now):
            invalid.append(certificate)
            continue
        active = by_name.get(certificate.common_name)
        if active is None:
            by_name[certificate.common_name] = certificate
        elif certificate.not_after > active.not_after:
            duplicated.append(active)
            by_name[certificate.common_name] = certificate
        else:
            duplicated.append(certificate)

    return list(by_name.values()), invalid, duplicated


def get_valid_local_certificates(
    certificates: List[CertificateInfo], now: Optional[datetime] = None
) -> Dict[CertificateType, List[CertificateInfo]]:
    """Group the valid, deduplicated certificates by development and distribution type"""
    valid, invalid, duplicated = filter_valid_certificates(certificates, now)
    if invalid:
        console.print(
            "[yellow]Ignoring expired or not yet valid certificates:\n"
            f"{escape(certs_to_string(invalid))}"
        )
    if duplicated:
        console.print(
            "[yellow]Ignoring duplicated certificates with the same name:\n"
            f"{escape(certs_to_string(duplicated))}"
        )
    debug(f"Valid and deduplicated certificates:\n{certs_to_string(valid)}")

    local_certificates = {
        CertificateType.IOS_DEVELOPMENT: [
            c for c in valid if not is_distribution_certificate(c)
        ],
        CertificateType.IOS_DISTRIBUTION: [
            c for c in valid if is_distribution_certificate(c)
        ],
    }
    for certificate_type, certs in local_certificates.items():
        debug(
            f"Valid certificates with type {certificate_type.value}:\n{certs_to_string(certs)}"
        )
    return local_certificates


def match_local_to_portal_certificates(
    client: DevPortalClient, certificates: List[CertificateInfo]
) -> List[PortalCertificate]:
    """Find the portal resource of each local certificate by serial number"""
    matching = []
    for local in certificates:
        try:
            certificate = client.query_certificate_by_serial(local.serial)
        except CodesignError as e:
            if e.kind not in (ErrorKind.CERTIFICATE_NOT_ON_PORTAL, ErrorKind.API):
                raise
            console.print(
                f"[yellow]Certificate ({escape(str(local))}) not found on Developer Portal: {escape(str(e))}"
            )
            continue
        matched = PortalCertificate(certificate_info=local, id=certificate.id)
        debug(f"Certificate ({local}) found with ID: {matched.id}")
        matching.append(matched)
    return matching


def log_all_portal_certificates(client: DevPortalClient) -> None:
    try:
        certificates = client.query_all_ios_certificates()
    except CodesignError as e:
        debug(f"Failed to log all Developer Portal certificates: {e}")
        return
    for certificate_type, certs in certificates.items():
        debug(f"Developer Portal {certificate_type.value} certificates:")
        for cert in certs:
            debug(f"- {cert.certificate_info}")


def _missing_certificate_error(certificate_type: CertificateType) -> CodesignError:
    name = certificate_type.value
    return CodesignError(
        ErrorKind.MISSING_CERTIFICATE,
        title=f"No valid {name} type certificates uploaded",
        description=f"Maybe you forgot to provide a(n) {name} type certificate.",
        recommendation=f"Upload a {name} type certificate (.p12) to the certificates directory "
        "and provide its password in a .pass file next to it.",
    )


def get_valid_certificates(
    client: DevPortalClient,
    local_by_type: Dict[CertificateType, List[CertificateInfo]],
    required_types: Dict[CertificateType, bool],
    verbose: bool = False,
) -> Dict[CertificateType, List[PortalCertificate]]:
    debug(
        f"Certificates required for Development: "
        f"{required_types.get(CertificateType.IOS_DEVELOPMENT, False)}; "
        f"Distribution: {required_types.get(CertificateType.IOS_DISTRIBUTION, False)}"
    )
    for certificate_type, required in required_types.items():
        if required and not local_by_type.get(certificate_type):
            raise _missing_certificate_error(certificate_type)

    if verbose:
        log_all_portal_certificates(client)

    valid = {}
    for certificate_type in LOCAL_CERTIFICATE_TYPES:
        local_certificates = local_by_type.get(certificate_type) or []
        matching = match_local_to_portal_certificates(client, local_certificates)
        if matching:
            debug(f"Certificates type {certificate_type.value} has matches on Developer Portal:")
            for cert in matching:
                debug(f"- {cert.certificate_info}")

        if required_types.get(certificate_type) and not matching:
            raise CodesignError(
                ErrorKind.CERTIFICATE_NOT_ON_PORTAL,
                f"not found any of the following {certificate_type.value} certificates "
                f"on Developer Portal:\n{certs_to_string(local_certificates)}",
            )
        if matching:
            valid[certificate_type] = matching
    return valid


def select_certificates_and_distribution_types(
    client: DevPortalClient,
    local_by_type: Dict[CertificateType, List[CertificateInfo]],
    distribution: DistributionType,
    sign_ui_tests: bool,
    verbose: bool = False,
) -> Tuple[Dict[CertificateType, List[PortalCertificate]], List[DistributionType]]:
    """Pick the portal certificates to sign with and the distribution types to prepare"""
    certificate_type = CERTIFICATE_TYPE_BY_DISTRIBUTION[distribution]
    distribution_types = [distribution]
    required_types = {certificate_type: True}

    if distribution != DistributionType.DEVELOPMENT:
        distribution_types.append(DistributionType.DEVELOPMENT)
        if sign_ui_tests:
            console.print(
                "[yellow]UITest target requires development code signing in addition "
                f"to the specified {distribution.value} code signing"
            )
        required_types[CertificateType.IOS_DEVELOPMENT] = sign_ui_tests

    try:
        certs_by_type = get_valid_certificates(client, local_by_type, required_types, verbose)
    except CodesignError as e:
        if e.kind in (ErrorKind.MISSING_CERTIFICATE, ErrorKind.CERTIFICATE_NOT_ON_PORTAL):
            raise
        raise wrap(e, "failed to get valid certificates") from e

    if len(certs_by_type) == 1 and distribution != DistributionType.DEVELOPMENT:
        # No development certificate was uploaded
        distribution_types = [distribution]

    console.print(
        "ensuring codesigning files for distribution types: "
        f"{', '.join(d.value for d in distribution_types)}"
    )
    return certs_by_type, distribution_types


def select_certificate(
    certs_by_type: Dict[CertificateType, List[PortalCertificate]],
    distribution: DistributionType,
) -> PortalCertificate:
    """Select the first certificate matching the distribution type"""
    certs = certs_by_type.get(CERTIFICATE_TYPE_BY_DISTRIBUTION[distribution]) or []
    if not certs:
        raise CodesignError(
            ErrorKind.MISSING_CERTIFICATE,
            f"no valid certificate provided for distribution type: {distribution.value}",
        )
    if len(certs) > 1:
        console.print(
            f"[yellow]Multiple certificates provided for distribution type: {distribution.value}"
        )
        for cert in certs:
            console.print(f"[yellow]- {escape(cert.certificate_info.common_name)}")

    selected = certs[0]
    console.print(
        f"[yellow]Using certificate for {distribution.value} distribution: "
        f"{escape(selected.certificate_info.common_name)}"
    )
    return selected
