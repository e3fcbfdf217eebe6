"""Message types exchanged with the CA.

Responses are deserialized into a fixed schema per resource type. Fields the schema does not
declare are dropped by :meth:`josepy.JSONObjectWithFields.from_json`.
"""
import enum
import typing

import acme.jws
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from certpilot.models.account import AccountStatus
from certpilot.models.authorization import AuthorizationStatus
from certpilot.models.challenge import ChallengeStatus
from certpilot.models.order import OrderStatus


def _tuple_of(cls):
    def decode(value):
        return tuple(cls.from_json(item) for item in value)

    return decode


class Directory(josepy.JSONObjectWithFields):
    """The CA's directory object.

    `7.1.1. Directory <https://tools.ietf.org/html/rfc8555#section-7.1.1>`_
    """

    new_account: str = josepy.Field("newAccount")
    new_order: str = josepy.Field("newOrder")
    new_nonce: str = josepy.Field("newNonce")
    key_change: str = josepy.Field("keyChange")
    revoke_cert: str = josepy.Field("revokeCert")
    meta: dict = josepy.Field("meta", omitempty=True)


class Identifier(josepy.JSONObjectWithFields):
    type: str = josepy.Field("type")
    value: str = josepy.Field("value")


class Account(josepy.JSONObjectWithFields):
    """The account attributes the client keeps track of."""

    status: AccountStatus = josepy.Field("status", decoder=AccountStatus, omitempty=True)
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", decoder=tuple, omitempty=True)
    """The account's contact URIs."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    created_at: str = josepy.Field("createdAt", omitempty=True)
    initial_ip: str = josepy.Field("initialIp", omitempty=True)
    agreement: str = josepy.Field("agreement", omitempty=True)
    terms_of_service_agreed: bool = josepy.Field("termsOfServiceAgreed", omitempty=True)


class AccountUpdate(josepy.JSONObjectWithFields):
    """Payload of new-account, account lookup and account update requests."""

    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    terms_of_service_agreed: bool = josepy.Field("termsOfServiceAgreed", omitempty=True)
    only_return_existing: bool = josepy.Field("onlyReturnExisting", omitempty=True)
    status: AccountStatus = josepy.Field("status", omitempty=True)

    @classmethod
    def from_emails(cls, emails: typing.Iterable[str], **kwargs) -> "AccountUpdate":
        return cls(contact=tuple(f"mailto:{email}" for email in emails), **kwargs)


class Challenge(josepy.JSONObjectWithFields):
    """A challenge as listed inside an authorization.

    `8. Identifier Validation Challenges <https://tools.ietf.org/html/rfc8555#section-8>`_
    """

    type: str = josepy.Field("type")
    status: ChallengeStatus = josepy.Field("status", decoder=ChallengeStatus)
    url: str = josepy.Field("url")
    token: str = josepy.Field("token", omitempty=True)
    validated: str = josepy.Field("validated", omitempty=True)
    error: dict = josepy.Field("error", omitempty=True)


class Authorization(josepy.JSONObjectWithFields):
    identifier: Identifier = josepy.Field("identifier", decoder=Identifier.from_json)
    status: AuthorizationStatus = josepy.Field("status", decoder=AuthorizationStatus)
    expires: str = josepy.Field("expires", omitempty=True)
    challenges: typing.Tuple[Challenge] = josepy.Field(
        "challenges", decoder=_tuple_of(Challenge), omitempty=True, default=()
    )
    wildcard: bool = josepy.Field("wildcard", omitempty=True, default=False)


class Order(josepy.JSONObjectWithFields):
    status: OrderStatus = josepy.Field("status", decoder=OrderStatus)
    expires: str = josepy.Field("expires", omitempty=True)
    identifiers: typing.Tuple[Identifier] = josepy.Field(
        "identifiers", decoder=_tuple_of(Identifier), omitempty=True, default=()
    )
    authorizations: typing.Tuple[str] = josepy.Field(
        "authorizations", decoder=tuple, omitempty=True, default=()
    )
    finalize: str = josepy.Field("finalize", omitempty=True)
    certificate: str = josepy.Field("certificate", omitempty=True)
    error: dict = josepy.Field("error", omitempty=True)


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests.

    *notBefore* and *notAfter* are always sent, empty unless requested.
    """

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field("identifiers")
    not_before: str = josepy.Field("notBefore")
    not_after: str = josepy.Field("notAfter")

    @classmethod
    def from_domains(cls, domains: typing.Iterable[str], not_before: str = "", not_after: str = "") -> "NewOrder":
        return cls(
            identifiers=[dict(type="dns", value=domain) for domain in domains],
            not_before=not_before,
            not_after=not_after,
        )


class ChallengeResponse(josepy.JSONObjectWithFields):
    """Payload that asks the CA to validate a challenge."""

    key_authorization: str = josepy.Field("keyAuthorization")


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der):
    return x509.load_der_x509_csr(josepy.decode_b64jose(b64der))


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for order finalization requests."""

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field("csr", decoder=decode_csr, encoder=encode_csr)
    """The certificate signing request."""


def encode_cert(cert):
    return josepy.encode_b64jose(cert.public_bytes(encoding=serialization.Encoding.DER))


def decode_cert(b64der):
    return x509.load_der_x509_certificate(josepy.decode_b64jose(b64der))


class RevocationReason(enum.Enum):
    """Certificate revocation reasons.

    Defined in `5.3.1. Reason Code <https://tools.ietf.org/html/rfc5280#section-5.3.1>`_ of RFC 5280.
    """

    unspecified = 0
    keyCompromise = 1
    cACompromise = 2
    affiliationChanged = 3
    superseded = 4
    cessationOfOperation = 5
    certificateHold = 6
    # value 7 is unused
    removeFromCRL = 8
    privilegeWithdrawn = 9
    aACompromise = 10


class Revocation(josepy.JSONObjectWithFields):
    """Message type for certificate revocation requests."""

    certificate: "cryptography.x509.Certificate" = josepy.Field(
        "certificate", decoder=decode_cert, encoder=encode_cert
    )
    """The certificate to be revoked."""
    reason: RevocationReason = josepy.Field(
        "reason",
        decoder=RevocationReason,
        encoder=lambda reason: reason.value,
    )
    """The reason for the revocation."""


class KeyChange(josepy.JSONObjectWithFields):
    """Inner payload of an account key rollover.

    `7.3.5. Account Key Rollover <https://tools.ietf.org/html/rfc8555#section-7.3.5>`_
    """

    account: str = josepy.Field("account")
    old_key: josepy.JWK = josepy.Field("oldKey", decoder=josepy.JWK.from_json)


class SignedKeyChange(josepy.JSONObjectWithFields):
    """The inner JWS of a key rollover, signed with the new key and carrying no nonce."""

    protected = josepy.Field("protected")
    payload = josepy.Field("payload")
    signature = josepy.Field("signature")

    @classmethod
    def from_data(cls, kc: KeyChange, key: josepy.JWK, alg, **kwargs) -> "SignedKeyChange":
        data = acme.jws.JWS.sign(kc.json_dumps().encode(), key=key, alg=alg, nonce=None, **kwargs)

        signature = josepy.b64.b64encode(data.signature.signature).decode()
        payload = josepy.b64.b64encode(data.payload).decode()
        protected = josepy.b64.b64encode(data.signature.protected.encode()).decode()
        return cls(protected=protected, payload=payload, signature=signature)
