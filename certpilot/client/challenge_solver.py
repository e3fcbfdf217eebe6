import abc
import logging
import typing

from pydantic_settings import BaseSettings

from certpilot.client.challenge import Challenge, Dns01Credential, Http01Credential
from certpilot.models import ChallengeType
from certpilot.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers.

    A solver publishes the credential of a challenge where the CA can observe it, and removes it
    again afterwards. All implementations must implement :meth:`complete_challenge` and
    :meth:`cleanup_challenge`. Implementations must also be registered with the plugin registry via
    :meth:`~certpilot.plugin_base.PluginRegistry.register_plugin`, so that the CLI knows which
    configuration option corresponds to which solver class.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    @abc.abstractmethod
    async def complete_challenge(self, challenge: Challenge):
        """Publishes the given challenge's credential.

        :param challenge: The challenge to be completed.
        :raises: :class:`~certpilot.client.exceptions.CouldNotCompleteChallenge`
            If the credential could not be published.
        """
        pass

    @abc.abstractmethod
    async def cleanup_challenge(self, challenge: Challenge):
        """Removes the given challenge's credential.

        Called after validation whether it succeeded or not, so it must silently return if there
        is nothing to clean up.

        :param challenge: The challenge to clean up after.
        """
        pass


@PluginRegistry.register_plugin("manual")
class ManualSolver(ChallengeSolver):
    """Logs the credentials so that an operator can publish them.

    Verification waits in the local pre-check until the credential is observable.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["manual"] = "manual"

    async def complete_challenge(self, challenge: Challenge):
        credential = challenge.credential
        if isinstance(credential, Http01Credential):
            logger.warning(
                "Serve http://%s/.well-known/acme-challenge/%s with the content %s",
                credential.identifier,
                credential.file_name,
                credential.file_content,
            )
        elif isinstance(credential, Dns01Credential):
            logger.warning(
                "Create the TXT record _acme-challenge.%s with the value %s",
                credential.identifier,
                credential.dns_content,
            )

    async def cleanup_challenge(self, challenge: Challenge):
        logger.info("The credential for %s (%s) may be removed now", challenge.domain, challenge.type.value)
