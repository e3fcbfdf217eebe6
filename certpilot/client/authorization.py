import logging
import typing

import josepy

from certpilot.client.account import AccountManager
from certpilot.client.checks import LocalCheck, local_check_for
from certpilot.client.crypto import dns01_txt_value, key_authorization
from certpilot.client.exceptions import (
    AuthorizationError,
    CAVerificationTimeout,
    ChallengeFailed,
    LocalVerificationTimeout,
)
from certpilot.client.polling import Deadline
from certpilot.client.session import AcmeSession
from certpilot.models import AuthorizationStatus, ChallengeStatus, ChallengeType, messages

logger = logging.getLogger(__name__)


class AuthorizationPoller:
    """Tracks one authorization of an order and drives the validation of its challenges."""

    def __init__(
        self,
        session: AcmeSession,
        account: AccountManager,
        url: str,
        authorization: messages.Authorization,
        local_checks: typing.Optional[typing.Mapping[ChallengeType, LocalCheck]] = None,
    ):
        self._session = session
        self._account = account
        self._local_checks = dict(local_checks or {})

        self.url = url
        self.authorization = authorization

    @classmethod
    async def fetch(
        cls,
        session: AcmeSession,
        account: AccountManager,
        url: str,
        local_checks: typing.Optional[typing.Mapping[ChallengeType, LocalCheck]] = None,
    ) -> "AuthorizationPoller":
        """Creates a poller and populates it from the authorization URL."""
        return cls(session, account, url, await cls._get(session, account, url), local_checks)

    @staticmethod
    async def _get(session: AcmeSession, account: AccountManager, url: str) -> messages.Authorization:
        resp = await session.fetch(url, account)
        if resp.status != 200:
            raise AuthorizationError(f"Get authorization info failed, the url is: {url}", resp.status, resp.headers, resp.body)

        try:
            return messages.Authorization.from_json(resp.body)
        except (josepy.errors.DeserializationError, ValueError, TypeError) as e:
            raise AuthorizationError(
                f"Unexpected authorization object, the url is: {url}: {e}", resp.status, resp.headers, resp.body
            ) from e

    async def refresh(self) -> messages.Authorization:
        self.authorization = await self._get(self._session, self._account, self.url)
        logger.debug("Authorization %s of %s is %s", self.url, self.domain, self.status.value)
        return self.authorization

    @property
    def status(self) -> AuthorizationStatus:
        return self.authorization.status

    @property
    def identifier(self) -> str:
        return self.authorization.identifier.value

    @property
    def domain(self) -> str:
        """The identifier as requested in the order, i.e. with the *\\*.* prefix for wildcards."""
        return f"*.{self.identifier}" if self.authorization.wildcard else self.identifier

    def get_challenge(self, challenge_type: ChallengeType) -> typing.Optional[messages.Challenge]:
        for challenge in self.authorization.challenges:
            if challenge.type == ChallengeType(challenge_type).value:
                return challenge
        return None

    def offered_challenge_types(self) -> typing.List[str]:
        return [challenge.type for challenge in self.authorization.challenges]

    def _local_check(self, challenge_type: ChallengeType) -> LocalCheck:
        if challenge_type not in self._local_checks:
            self._local_checks[challenge_type] = local_check_for(challenge_type, self._session.http01_port)
        return self._local_checks[challenge_type]

    async def verify(
        self,
        challenge_type: ChallengeType,
        local_timeout: typing.Optional[float] = 0,
        ca_timeout: typing.Optional[float] = 0,
    ) -> bool:
        """Validates the challenge of the given type.

        First waits until the credential is observable locally, then asks the CA to validate the
        challenge and polls the authorization until the CA has decided.
        Nothing is done if the authorization or the challenge is not *pending* anymore.

        :param challenge_type: The type of the challenge whose credential has been published.
        :param local_timeout: Bound in seconds of the local pre-check, *0* waits forever.
        :param ca_timeout: Bound in seconds of the CA confirmation, *0* waits forever.
        :raises:

            * :class:`LocalVerificationTimeout` If the credential could not be observed in time.
            * :class:`AuthorizationError` If the CA rejects the validation request.
            * :class:`CAVerificationTimeout` If the authorization is still *pending* after *ca_timeout*.
            * :class:`ChallengeFailed` If the authorization did not become *valid*.

        :return: *True* once the authorization is valid.
        """
        challenge_type = ChallengeType(challenge_type)
        challenge = self.get_challenge(challenge_type)

        if challenge is None:
            raise AuthorizationError(
                f"The CA does not offer {challenge_type.value} for {self.domain}, "
                f"offered: {', '.join(self.offered_challenge_types())}"
            )

        if self.status != AuthorizationStatus.PENDING or challenge.status != ChallengeStatus.PENDING:
            return True

        key_auth = key_authorization(challenge.token, self._account.thumbprint)
        expected = key_auth if challenge_type == ChallengeType.HTTP_01 else dns01_txt_value(key_auth)

        await self._wait_published(challenge_type, challenge.token, expected, local_timeout)

        payload = messages.ChallengeResponse(key_authorization=key_auth)
        resp = await self._session.signed_request(
            challenge.url, payload, self._account.key, kid=await self._account.get_account_url()
        )
        if resp.status != 200:
            raise AuthorizationError(
                f"Verify {self.domain} via {challenge_type.value} failed", resp.status, resp.headers, resp.body
            )
        logger.info("Asked the CA to validate %s via %s", self.domain, challenge_type.value)

        await self._wait_validated(challenge_type, ca_timeout)
        return True

    async def _wait_published(self, challenge_type: ChallengeType, token: str, expected: str, timeout) -> None:
        clock = self._session.clock
        deadline = Deadline(timeout, clock)
        check = self._local_check(challenge_type)

        while True:
            if deadline.expired():
                raise LocalVerificationTimeout(self.domain, challenge_type.value, timeout)

            if await check.is_published(self.identifier, token, expected):
                logger.debug("Credential for %s is published", self.domain)
                return

            await clock.sleep(self._session.poll_interval)

    async def _wait_validated(self, challenge_type: ChallengeType, timeout) -> None:
        clock = self._session.clock
        deadline = Deadline(timeout, clock)

        while self.status == AuthorizationStatus.PENDING:
            if deadline.expired():
                raise CAVerificationTimeout(self.domain, challenge_type.value, timeout)

            await clock.sleep(self._session.poll_interval)
            await self.refresh()

        if self.status != AuthorizationStatus.VALID:
            raise ChallengeFailed(self.domain, challenge_type.value, self.status.value)
