import asyncio
import datetime
import logging
import typing
from dataclasses import dataclass
from pathlib import Path

import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from certpilot import util
from certpilot.client.account import AccountManager
from certpilot.client.authorization import AuthorizationPoller
from certpilot.client.challenge import Challenge, Dns01Credential, Http01Credential
from certpilot.client.checks import LocalCheck
from certpilot.client.crypto import RSA_KEY_SIZE, dns01_txt_value, generate_csr, generate_key_pair, jwk_of, key_authorization
from certpilot.client.exceptions import AuthorizationError, OrderError, PreconditionError
from certpilot.client.polling import Deadline
from certpilot.client.session import AcmeResponse, AcmeSession
from certpilot.client.storage import OrderStorage
from certpilot.models import AuthorizationStatus, ChallengeStatus, ChallengeType, KeyAlgorithm, OrderStatus, messages

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class CertificateFiles:
    """Paths of an issued certificate's files and its validity window."""

    private_key: Path
    public_key: Path
    certificate: Path
    certificate_full_chained: Path
    valid_from_timestamp: int
    valid_to_timestamp: int


class OrderManager:
    """Drives one certificate order from creation to the downloaded certificate.

    An order is addressed locally by the fingerprint of its domain set and its key algorithm.
    Each namespace owns its key pair, CSR, certificate and order cache.
    """

    def __init__(
        self,
        session: AcmeSession,
        account: AccountManager,
        storage_path: typing.Union[str, Path],
        domains: typing.Mapping[typing.Union[ChallengeType, str], typing.Iterable[str]],
        algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        generate_new_order: bool = True,
        rsa_key_size: int = RSA_KEY_SIZE,
        local_checks: typing.Optional[typing.Mapping[ChallengeType, LocalCheck]] = None,
    ):
        """Creates an :class:`OrderManager` instance.

        :param session: The session of the CA.
        :param account: The account the order belongs to.
        :param storage_path: The root directory of all persisted artifacts.
        :param domains: Maps each challenge type to the domains that are validated with it.
            The mapping is fixed for the lifetime of the order.
        :param algorithm: The key algorithm of the certificate.
        :param generate_new_order: Whether to discard the cached artifacts and create a new order
            instead of resuming the cached one.
        :param rsa_key_size: The key size in bits of RSA certificate keys.
        :param local_checks: Overrides the local pre-check per challenge type.
        """
        self._session = session
        self._account = account
        self._rsa_key_size = rsa_key_size
        self._local_checks = local_checks

        self.challenge_types: typing.Dict[str, ChallengeType] = {}
        for challenge_type, domain_list in domains.items():
            for domain in domain_list:
                self.challenge_types[domain.strip()] = ChallengeType(challenge_type)

        self.domains = util.normalize_domains(self.challenge_types)
        if not self.domains:
            raise ValueError("An order needs at least one domain")

        self.algorithm = KeyAlgorithm(algorithm)
        self.generate_new_order = generate_new_order
        self._storage = OrderStorage(Path(storage_path), self.domains, self.algorithm)

        self.order_url: typing.Optional[str] = None
        self.order: typing.Optional[messages.Order] = None
        self.authorizations: typing.List[AuthorizationPoller] = []
        self._data: dict = {}

    @property
    def fingerprint(self) -> str:
        return self._storage.fingerprint

    @property
    def storage(self) -> OrderStorage:
        return self._storage

    @property
    def status(self) -> typing.Optional[OrderStatus]:
        return self.order.status if self.order else None

    async def init(self) -> messages.Order:
        """Creates a new order or resumes the cached one, depending on *generate_new_order*.

        Resuming without a cached order URL creates a new order instead.
        """
        if self.generate_new_order:
            self._storage.reset()
            order = await self.create_order()
        elif self._storage.read_order_info().get("orderUrl"):
            order = await self.get_order()
        else:
            logger.info("No cached order for %s (%s), creating a new one", self.domains, self.algorithm.value)
            order = await self.create_order()

        self._storage.write_domains()
        return order

    async def create_order(self) -> messages.Order:
        """Creates the order and resolves its authorizations.

        :raises: :class:`OrderError` If the CA does not answer with *201* and a *Location* header.
        """
        payload = messages.NewOrder.from_domains(self.domains)
        resp = await self._session.signed_request(
            self._session.directory.new_order, payload, self._account.key, kid=await self._account.get_account_url()
        )

        if resp.status != 201:
            raise OrderError(
                f"Create order failed, the domain list is: {', '.join(self.domains)}", resp.status, resp.headers, resp.body
            )

        if not resp.location:
            raise OrderError(
                f"Get order url failed during order creation, the domain list is: {', '.join(self.domains)}",
                resp.status,
                resp.headers,
                resp.body,
            )

        self.order_url = resp.location
        self._populate(resp)
        self._storage.update_order_info(orderUrl=self.order_url)
        logger.info("Created order %s for %s", self.order_url, ", ".join(self.domains))

        await self._resolve_authorizations()
        return self.order

    async def get_order(self, refresh_authorizations: bool = True) -> messages.Order:
        """Fetches the cached order.

        :param refresh_authorizations: Whether to re-resolve the order's authorizations.
        :raises:

            * :class:`PreconditionError` If there is no cached order URL.
            * :class:`OrderError` If the CA does not answer with *200*.
        """
        order_url = self.order_url or self._storage.read_order_info().get("orderUrl")
        if not order_url:
            raise PreconditionError(
                f"Get order info failed, the local order info file doesn't exist, "
                f"the order info file path is: {self._storage.order_info_path}"
            )

        resp = await self._session.fetch(order_url, self._account)
        if resp.status != 200:
            raise OrderError(f"Get order info failed, the order url is: {order_url}", resp.status, resp.headers, resp.body)

        self.order_url = order_url
        self._populate(resp)
        logger.debug("Order %s is %s", order_url, self.status.value)

        if refresh_authorizations:
            await self._resolve_authorizations()
        return self.order

    async def _resolve_authorizations(self) -> None:
        self.authorizations = list(
            await asyncio.gather(
                *[
                    AuthorizationPoller.fetch(self._session, self._account, url, self._local_checks)
                    for url in self.order.authorizations
                ]
            )
        )

    def get_pending_challenge_list(self) -> typing.List[Challenge]:
        """Returns the challenges whose credentials still have to be published.

        :raises: :class:`AuthorizationError` If the CA does not offer the challenge type configured for a domain.
        :return: One challenge per pending authorization, empty if every authorization is valid.
        """
        if self.is_all_authorization_valid():
            return []

        challenges = []
        account_thumbprint = self._account.thumbprint

        for authorization in self.authorizations:
            if authorization.status != AuthorizationStatus.PENDING:
                continue

            challenge_type = self.challenge_types.get(authorization.domain)
            if challenge_type is None:
                raise AuthorizationError(f"The order contains the unexpected authorization {authorization.domain}")

            challenge = authorization.get_challenge(challenge_type)
            if challenge is None:
                raise AuthorizationError(
                    f"The CA does not offer {challenge_type.value} for {authorization.domain}, "
                    f"offered: {', '.join(authorization.offered_challenge_types())}"
                )

            if challenge.status != ChallengeStatus.PENDING:
                continue

            key_auth = key_authorization(challenge.token, account_thumbprint)
            if challenge_type == ChallengeType.HTTP_01:
                credential = Http01Credential(
                    identifier=authorization.identifier,
                    file_name=challenge.token,
                    file_content=key_auth,
                )
            else:
                credential = Dns01Credential(
                    identifier=authorization.identifier,
                    dns_content=dns01_txt_value(key_auth),
                )

            challenges.append(Challenge(challenge_type, authorization, self, credential))

        return challenges

    async def get_certificate_file(
        self,
        csr: typing.Union[None, str, bytes, x509.CertificateSigningRequest] = None,
        timeout: typing.Optional[float] = None,
    ) -> CertificateFiles:
        """Finalizes the order and downloads the certificate.

        :param csr: A PEM encoded CSR or CSR object to finalize with. By default the order's own CSR is
            used, which is created on first use.
        :param timeout: Bound in seconds of each status wait, *None* waits forever.
        :raises:

            * :class:`PreconditionError` If not all authorizations are valid.
            * :class:`OrderError` If the CA rejects the finalization, the order becomes invalid or the
              certificate cannot be downloaded.

        :return: The paths of the certificate files and the certificate's validity window.
        """
        if not self.is_all_authorization_valid():
            raise PreconditionError("There are still some authorizations that are not valid.")

        if not self.is_order_finalized():
            await self.wait_status(OrderStatus.READY, timeout)
            await self._finalize(self._load_csr(csr) if csr is not None else self.get_csr())
        await self.wait_status(OrderStatus.VALID, timeout)

        resp = await self._session.fetch(self.order.certificate, self._account)
        if resp.status != 200:
            raise OrderError(
                f"Fetch certificate failed, the url is: {self.order.certificate}, "
                f"the domain list is: {', '.join(self.domains)}",
                resp.status,
                resp.headers,
                resp.body,
            )

        if (bundle := util.extract_certificate(resp.body if isinstance(resp.body, str) else "")) is None:
            raise OrderError("The certificate response contains no certificate", resp.status, resp.headers, resp.body)

        self._storage.save_certificate(bundle)
        valid_from, valid_to = util.certificate_validity(bundle.certificate)
        self._storage.update_order_info(
            validFromTimestamp=valid_from,
            validToTimestamp=valid_to,
            validFromTime=self._format_time(valid_from),
            validToTime=self._format_time(valid_to),
        )
        logger.info("Issued certificate for %s, valid until %s", ", ".join(self.domains), self._format_time(valid_to))

        return CertificateFiles(
            private_key=self._storage.private_key_path.resolve(),
            public_key=self._storage.public_key_path.resolve(),
            certificate=self._storage.certificate_path.resolve(),
            certificate_full_chained=self._storage.certificate_full_chained_path.resolve(),
            valid_from_timestamp=valid_from,
            valid_to_timestamp=valid_to,
        )

    async def revoke_certificate(
        self, reason: typing.Union[int, messages.RevocationReason] = messages.RevocationReason.unspecified
    ) -> bool:
        """Revokes the order's certificate.

        The request is signed with the certificate's own key.

        :param reason: The RFC 5280 revocation reason.
        :raises:

            * :class:`PreconditionError` If the order is not *valid* or the certificate file is missing.
            * :class:`OrderError` If the CA rejects the revocation.
        """
        if self.status != OrderStatus.VALID:
            raise PreconditionError(
                f"Revoke certificate failed because of invalid status({self.status.value if self.status else None})"
            )

        if not self._storage.certificate_path.is_file():
            raise PreconditionError(
                f"Revoke certificate failed because of certificate file missing({self._storage.certificate_path})"
            )

        certificate = x509.load_pem_x509_certificate(self._storage.certificate_path.read_bytes())
        payload = messages.Revocation(certificate=certificate, reason=messages.RevocationReason(reason))

        resp = await self._session.signed_request(
            self._session.directory.revoke_cert, payload, jwk_of(self.get_private_key())
        )
        if resp.status != 200:
            raise OrderError(
                f"Revoke certificate failed, the domain list is: {', '.join(self.domains)}",
                resp.status,
                resp.headers,
                resp.body,
            )

        logger.info("Revoked certificate for %s", ", ".join(self.domains))
        return True

    def is_all_authorization_valid(self) -> bool:
        return all(authorization.status == AuthorizationStatus.VALID for authorization in self.authorizations)

    def is_order_finalized(self) -> bool:
        return self.status in (OrderStatus.PROCESSING, OrderStatus.VALID)

    async def wait_status(self, status: OrderStatus, timeout: typing.Optional[float] = None) -> messages.Order:
        """Polls the order until it reaches the given status.

        :param status: The status to wait for.
        :param timeout: Bound in seconds, *None* or *0* waits forever.
        :raises: :class:`OrderError` If the order becomes *invalid* or the timeout expires.
        """
        clock = self._session.clock
        deadline = Deadline(timeout, clock)

        while self.status != status:
            if self.status == OrderStatus.INVALID:
                raise OrderError(f"The order {self.order_url} became invalid", body=self.order.error)

            if deadline.expired():
                raise OrderError(
                    f"The order {self.order_url} did not become {OrderStatus(status).value} within {timeout} seconds"
                )

            await clock.sleep(self._session.poll_interval)
            await self.get_order(refresh_authorizations=False)

        return self.order

    def get_private_key(self):
        """Returns the order's private key, generating and persisting the key pair on first use."""
        if not self._storage.has_key_pair():
            self._storage.save_key(generate_key_pair(self.algorithm, self._rsa_key_size))
            logger.debug("Generated %s key pair in %s", self.algorithm.value, self._storage.path)

        return self._storage.load_key()

    def get_csr(self) -> x509.CertificateSigningRequest:
        """Returns the order's CSR, generating and persisting it on first use."""
        if not self._storage.csr_path.is_file():
            domains = [identifier.value for identifier in self.order.identifiers] if self.order else self.domains
            csr = generate_csr(domains, util.common_name_for_csr(domains), self.get_private_key())
            self._storage.csr_path.write_bytes(csr.public_bytes(serialization.Encoding.PEM))

        return x509.load_pem_x509_csr(self._storage.csr_path.read_bytes())

    async def _finalize(self, csr: x509.CertificateSigningRequest) -> None:
        payload = messages.CertificateRequest(csr=csr)
        resp = await self._session.signed_request(
            self.order.finalize, payload, self._account.key, kid=await self._account.get_account_url()
        )

        if resp.status != 200:
            raise OrderError(
                f"Finalize order failed, the url is: {self.order.finalize}, the domain list is: {', '.join(self.domains)}",
                resp.status,
                resp.headers,
                resp.body,
            )

        self._populate(resp)
        logger.info("Finalized order %s", self.order_url)
        await self._resolve_authorizations()

    def _populate(self, resp: AcmeResponse) -> None:
        if isinstance(resp.body, dict):
            self._data.update(resp.body)

        try:
            self.order = messages.Order.from_json(self._data)
        except (josepy.errors.DeserializationError, ValueError, TypeError) as e:
            raise OrderError(f"Unexpected order object: {e}", resp.status, resp.headers, resp.body) from e

    @staticmethod
    def _load_csr(csr: typing.Union[str, bytes, x509.CertificateSigningRequest]) -> x509.CertificateSigningRequest:
        if isinstance(csr, x509.CertificateSigningRequest):
            return csr
        return x509.load_pem_x509_csr(csr.encode() if isinstance(csr, str) else csr)

    @staticmethod
    def _format_time(timestamp: int) -> str:
        return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).strftime(TIME_FORMAT)
