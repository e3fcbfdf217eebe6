import hashlib
import logging
import typing

import josepy
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

from certpilot.client.exceptions import KeyGenerationError
from certpilot.models import KeyAlgorithm

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 4096
EC_CURVE = ec.SECP256R1


def generate_key_pair(algorithm: KeyAlgorithm, rsa_key_size: int = RSA_KEY_SIZE):
    """Generates a private key of the given algorithm.

    :param algorithm: RSA or EC (*prime256v1*).
    :param rsa_key_size: The RSA key size in bits.
    :raises: :class:`KeyGenerationError` If the crypto backend rejects the parameters.
    :return: The generated private key. The public key is derived from it.
    """
    try:
        if KeyAlgorithm(algorithm) == KeyAlgorithm.RSA:
            return rsa.generate_private_key(public_exponent=65537, key_size=rsa_key_size)
        return ec.generate_private_key(EC_CURVE())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"Generate {algorithm} key pair failed: {e}") from e


def load_private_key(pem: bytes):
    return serialization.load_pem_private_key(pem, password=None)


def generate_csr(domains: typing.List[str], common_name: str, private_key) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param domains: The requested names, all of which are put into the SAN extension.
    :param common_name: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :return: The generated CSR.
    """
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=False,
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in domains]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )


def jwk_of(private_key) -> josepy.JWK:
    """Wraps a private key for use with josepy."""
    if isinstance(private_key, rsa.RSAPrivateKey):
        return josepy.JWKRSA(key=private_key)
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        return josepy.JWKEC(key=private_key)
    raise ValueError(f"Unsupported key type {type(private_key).__name__}")


def alg_of(private_key) -> josepy.JWASignature:
    """Returns the signature algorithm that matches the key.

    :param private_key: A private key, or a :class:`josepy.JWK` wrapping one.
    """
    if isinstance(private_key, josepy.JWK):
        private_key = private_key.key._wrapped
    if isinstance(private_key, rsa.RSAPrivateKey):
        return josepy.RS256
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        return {
            256: josepy.ES256,
            384: josepy.ES384,
            521: josepy.ES512,
        }[private_key.curve.key_size]
    raise ValueError(f"Unsupported key type {type(private_key).__name__}")


def thumbprint(account_key: josepy.JWK) -> str:
    """Computes the RFC 7638 thumbprint of the account key.

    The public JWK members are serialized in lexicographic order (*e*, *kty*, *n* for RSA)
    without whitespace and hashed with SHA-256.

    :param account_key: The account key.
    :return: The base64url encoded thumbprint.
    """
    return josepy.b64.b64encode(account_key.thumbprint(hash_function=hashes.SHA256)).decode()


def key_authorization(token: str, account_thumbprint: str) -> str:
    return f"{token}.{account_thumbprint}"


def dns01_txt_value(key_authorization: str) -> str:
    """Returns the TXT record value that proves the given key authorization."""
    return josepy.b64.b64encode(hashlib.sha256(key_authorization.encode()).digest()).decode()
