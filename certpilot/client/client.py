import asyncio
import logging
import typing
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from certpilot.client.account import AccountManager, normalize_contact
from certpilot.client.challenge_solver import ChallengeSolver, ManualSolver
from certpilot.client.checks import LocalCheck
from certpilot.client.crypto import RSA_KEY_SIZE
from certpilot.client.order import CertificateFiles, OrderManager
from certpilot.client.polling import Clock, RetryPolicy
from certpilot.client.session import AcmeSession
from certpilot.client.storage import AccountStorage
from certpilot.models import ChallengeType, KeyAlgorithm, messages
from certpilot.plugin_base import PluginRegistry
from certpilot.plugins.rfc2136_solver import RFC2136Client
from certpilot.plugins.webroot_solver import WebrootSolver

logger = logging.getLogger(__name__)

Domains = typing.Mapping[typing.Union[ChallengeType, str], typing.Iterable[str]]


async def _run_all(coros: typing.Iterable[typing.Awaitable]) -> list:
    """Runs the awaitables concurrently and fails fast.

    On the first failure the remaining ones are cancelled and awaited before the failure is re-raised.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class AcmeClient:
    """ACME client that obtains and manages certificates for one account."""

    class Config(BaseSettings, extra="forbid"):
        directory: typing.Optional[str] = None
        """Directory URL of the CA, overrides the staging/production choice"""
        staging: bool = False
        """Use the staging instead of the production directory"""
        storage_path: Path
        """Root directory of the account and order artifacts"""
        contact: list[str] = Field(default_factory=list)
        """Contact emails of the account"""
        rsa_key_size: int = RSA_KEY_SIZE
        """Size in bits of generated RSA keys"""
        post_as_get: bool = False
        """Fetch resources with signed POST-as-GET requests"""
        poll_interval: float = 3.0
        """Delay in seconds between polling attempts"""
        nonce_retry_delay: float = 60.0
        """Delay in seconds between nonce fetch attempts"""
        nonce_retry_attempts: typing.Optional[int] = 10
        """Maximum number of nonce fetch attempts, unbounded if null"""
        http01_port: int = 80
        """Port the local http-01 pre-check connects to"""
        server_cert: typing.Optional[Path] = None
        """Additional CA certificate to trust when connecting to the directory"""
        challenge_solver: typing.Optional[
            typing.Annotated[
                ManualSolver.Config | WebrootSolver.Config | RFC2136Client.Config,
                Field(discriminator="type"),
            ]
        ] = None
        """The challenge solver that publishes credentials in :meth:`AcmeClient.obtain_certificate`"""

        @field_validator("contact")
        @classmethod
        def _normalize_contact(cls, contact: list[str]) -> list[str]:
            return normalize_contact(contact)

    def __init__(
        self,
        cfg: Config,
        *,
        clock: typing.Optional[Clock] = None,
        local_checks: typing.Optional[typing.Mapping[ChallengeType, LocalCheck]] = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        :param cfg: The client configuration.
        :param clock: Time source of all polling loops.
        :param local_checks: Overrides the local pre-check per challenge type.
        """
        self.config = cfg
        self._local_checks = local_checks

        self.session = AcmeSession(
            staging=cfg.staging,
            directory_url=cfg.directory,
            post_as_get=cfg.post_as_get,
            poll_interval=cfg.poll_interval,
            nonce_retry_policy=RetryPolicy(cfg.nonce_retry_delay, cfg.nonce_retry_attempts),
            http01_port=cfg.http01_port,
            server_cert=str(cfg.server_cert) if cfg.server_cert else None,
            clock=clock,
        )
        self.account = AccountManager(
            self.session,
            AccountStorage(cfg.storage_path),
            cfg.contact,
            cfg.rsa_key_size,
        )

        self._challenge_solvers: typing.Dict[ChallengeType, ChallengeSolver] = dict()

        if cfg.challenge_solver is not None:
            solver_cls = PluginRegistry.get_registry(ChallengeSolver).get_plugin(cfg.challenge_solver.type)
            self.register_challenge_solver(solver_cls(cfg.challenge_solver))

    async def start(self) -> messages.Account:
        """Resolves the directory and creates or recovers the account.

        It is advised to register at least one :class:`ChallengeSolver` using
        :meth:`register_challenge_solver` before calling :meth:`obtain_certificate`.
        """
        await self.session.start()

        if not self._challenge_solvers.keys():
            logger.warning(
                "There is no challenge solver registered with the client. "
                "Challenges have to be completed by the caller."
            )

        return await self.account.init()

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        await self.session.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def order(
        self,
        domains: Domains,
        algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        generate_new_order: bool = True,
    ) -> OrderManager:
        """Creates or resumes the order for the given domains.

        :param domains: Maps each challenge type to the domains that are validated with it.
        :param algorithm: The key algorithm of the certificate.
        :param generate_new_order: Whether to create a new order instead of resuming the cached one.
        :return: The initialized order.
        """
        order = self._order_manager(domains, algorithm, generate_new_order)
        await order.init()
        return order

    def _order_manager(self, domains: Domains, algorithm: KeyAlgorithm, generate_new_order: bool) -> OrderManager:
        return OrderManager(
            self.session,
            self.account,
            self.config.storage_path,
            domains,
            algorithm,
            generate_new_order,
            self.config.rsa_key_size,
            self._local_checks,
        )

    async def obtain_certificate(
        self,
        domains: Domains,
        algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        *,
        generate_new_order: bool = True,
        local_timeout: typing.Optional[float] = 0,
        ca_timeout: typing.Optional[float] = 0,
        timeout: typing.Optional[float] = None,
    ) -> CertificateFiles:
        """Runs an order from creation to the downloaded certificate.

        The registered solvers publish the credentials of all pending challenges, which are then
        verified. If one verification fails, the others are cancelled. The credentials are removed again
        whether the verification succeeded or not, failed removals are logged.

        :param domains: Maps each challenge type to the domains that are validated with it.
        :param algorithm: The key algorithm of the certificate.
        :param generate_new_order: Whether to create a new order instead of resuming the cached one.
        :param local_timeout: Bound in seconds of each local pre-check, *0* waits forever.
        :param ca_timeout: Bound in seconds of each CA confirmation, *0* waits forever.
        :param timeout: Bound in seconds of each order status wait, *None* waits forever.
        :raises: :class:`ValueError` If no solver is registered for a pending challenge's type.
        :return: The paths of the certificate files and the certificate's validity window.
        """
        order = await self.order(domains, algorithm, generate_new_order)
        challenges = order.get_pending_challenge_list()

        solvers = []
        for challenge in challenges:
            if (solver := self._challenge_solvers.get(challenge.type)) is None:
                raise ValueError(f"There is no solver that is able to complete {challenge.type.value} challenges")
            solvers.append(solver)

        try:
            await _run_all([solver.complete_challenge(c) for solver, c in zip(solvers, challenges)])
            await _run_all([c.verify(local_timeout, ca_timeout) for c in challenges])
        finally:
            results = await asyncio.gather(
                *[solver.cleanup_challenge(c) for solver, c in zip(solvers, challenges)], return_exceptions=True
            )
            for challenge, result in zip(challenges, results):
                if isinstance(result, Exception):
                    logger.error("Could not clean up %r: %s", challenge, result)

        return await order.get_certificate_file(timeout=timeout)

    async def revoke_certificate(
        self,
        domains: Domains,
        algorithm: KeyAlgorithm = KeyAlgorithm.RSA,
        reason: messages.RevocationReason = messages.RevocationReason.unspecified,
    ) -> bool:
        """Revokes the certificate of the cached order for the given domains.

        :param domains: The domains of the order, mapped by challenge type.
        :param algorithm: The key algorithm of the certificate.
        :param reason: The RFC 5280 revocation reason.
        :raises: :class:`~certpilot.client.exceptions.PreconditionError` If there is no cached order, without
            contacting the CA.
        """
        order = self._order_manager(domains, algorithm, generate_new_order=False)
        await order.get_order(refresh_authorizations=False)
        return await order.revoke_certificate(reason)

    def register_challenge_solver(self, challenge_solver: ChallengeSolver):
        """Registers a challenge solver with the client.

        The challenge solver is used to complete challenges whose types it supports.

        :param challenge_solver: The challenge solver to register.
        :raises: :class:`ValueError` If a challenge solver is already registered that supports any of
            the challenge types that *challenge_solver* supports.
        """
        for challenge_type in challenge_solver.SUPPORTED_CHALLENGES:
            if self._challenge_solvers.get(challenge_type):
                raise ValueError(f"A challenge solver for type {challenge_type} is already registered")
            else:
                self._challenge_solvers[challenge_type] = challenge_solver
