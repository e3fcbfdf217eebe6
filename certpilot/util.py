import hashlib
import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

KEY_FILE_MODE = 0o600

_CERTIFICATE_RE = re.compile(r"-----BEGIN\sCERTIFICATE-----(.*?)-----END\sCERTIFICATE-----", re.DOTALL | re.IGNORECASE)


class CertificateBundle(typing.NamedTuple):
    """A leaf certificate and its full chain, both PEM encoded."""

    certificate: str
    """The first (leaf) certificate block."""
    certificate_full_chained: str
    """All certificate blocks in their original order, joined by newlines."""


def normalize_domains(domains: typing.Iterable[str]) -> typing.List[str]:
    """Trims, deduplicates and sorts the given domains.

    :param domains: The domains, possibly containing duplicates.
    :return: The sorted list of unique domains.
    """
    return sorted(set(domain.strip() for domain in domains if domain.strip()))


def fingerprint(domains: typing.Iterable[str]) -> str:
    """Returns the storage fingerprint of a domain set.

    The fingerprint is invariant under reordering and duplication of the input.

    :param domains: The domains of an order.
    :return: An 8 character hex string.
    """
    return hashlib.md5(",".join(normalize_domains(domains)).encode()).hexdigest()[11:19]


def common_name_for_csr(domains: typing.Iterable[str]) -> str:
    """Chooses the common name of a CSR.

    Domains are grouped by their number of labels, the lexicographically first name of the
    group with the fewest labels wins.

    :param domains: The domains requested in the CSR.
    :return: The chosen common name.
    """
    levels: typing.Dict[int, typing.List[str]] = {}
    for domain in domains:
        levels.setdefault(len(domain.split(".")), []).append(domain)

    if not levels:
        raise ValueError("Cannot choose a common name for an empty domain list")

    return sorted(levels[min(levels)])[0]


def extract_certificate(pem: str) -> typing.Optional[CertificateBundle]:
    """Splits the certificate chain returned by the CA.

    :param pem: The response body containing concatenated PEM certificate blocks.
    :return: The leaf certificate and full chain, or *None* if the body contains no certificate.
    """
    blocks = [match.group(0).strip() for match in _CERTIFICATE_RE.finditer(pem)]
    if not blocks:
        return None

    return CertificateBundle(blocks[0], "\n".join(blocks))


def certificate_validity(pem: str) -> typing.Tuple[int, int]:
    """Parses a PEM certificate and returns its validity window.

    :param pem: The PEM encoded certificate.
    :return: The *notBefore* and *notAfter* dates as unix timestamps.
    """
    cert = x509.load_pem_x509_certificate(pem.encode())
    return (
        int(cert.not_valid_before_utc.timestamp()),
        int(cert.not_valid_after_utc.timestamp()),
    )


def names_of(csr: x509.CertificateSigningRequest, lower: bool = False) -> typing.Set[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CRS whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: Set of the contained identifier strings.
    """
    names = [v.value for v in csr.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)]
    names.extend(
        csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value.get_values_for_type(x509.DNSName)
    )

    return set([name.lower() if lower else name for name in names])


def write_private(path: Path, data: bytes) -> None:
    """Writes key material, restricting the file to its owner.

    :param path: The destination path.
    :param data: The PEM encoded key.
    """
    if path.exists():
        path.chmod(KEY_FILE_MODE)
    else:
        path.touch(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(data)


def private_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_pem(private_key) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
