import logging
import typing
from dataclasses import dataclass

from certpilot.models import ChallengeType

if typing.TYPE_CHECKING:
    from certpilot.client.authorization import AuthorizationPoller
    from certpilot.client.order import OrderManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Http01Credential:
    """The file that must be served at ``http://{identifier}/.well-known/acme-challenge/{file_name}``."""

    identifier: str
    file_name: str
    file_content: str


@dataclass(frozen=True)
class Dns01Credential:
    """The TXT record value that must be published at ``_acme-challenge.{identifier}``."""

    identifier: str
    dns_content: str


Credential = typing.Union[Http01Credential, Dns01Credential]


class Challenge:
    """A pending challenge together with the credential the caller has to publish.

    Pairs the challenge type with its authorization and forwards :meth:`verify` to it.
    """

    def __init__(
        self,
        challenge_type: ChallengeType,
        authorization: "AuthorizationPoller",
        order: "OrderManager",
        credential: Credential,
    ):
        self.type = ChallengeType(challenge_type)
        self.authorization = authorization
        self.credential = credential
        self._order = order

    @property
    def domain(self) -> str:
        return self.authorization.domain

    async def verify(self, local_timeout: typing.Optional[float] = 0, ca_timeout: typing.Optional[float] = 0) -> bool:
        """Asks the CA to validate the challenge and waits for its decision.

        Returns immediately if every authorization of the order is valid already.

        :param local_timeout: Bound in seconds of the local pre-check, *0* waits forever.
        :param ca_timeout: Bound in seconds of the CA confirmation, *0* waits forever.
        """
        if self._order.is_all_authorization_valid():
            logger.debug("All authorizations of the order are valid, skipping %s", self.domain)
            return True

        return await self.authorization.verify(self.type, local_timeout, ca_timeout)

    def __repr__(self):
        return f"<Challenge {self.type.value} {self.domain}>"
