import logging
import typing
from pathlib import Path

from certpilot.client.challenge import Challenge, Http01Credential
from certpilot.client.challenge_solver import ChallengeSolver
from certpilot.client.exceptions import CouldNotCompleteChallenge
from certpilot.models import ChallengeType
from certpilot.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


@PluginRegistry.register_plugin("webroot")
class WebrootSolver(ChallengeSolver):
    """Solves HTTP-01 challenges by dropping the credential file into the document root of a web server.

    The web server must serve ``{path}/.well-known/acme-challenge/`` for every identifier of the order.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["webroot"] = "webroot"
        path: Path
        """The web server's document root."""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self.path = Path(cfg.path)

    def challenge_path(self, credential: Http01Credential) -> Path:
        return self.path / ".well-known" / "acme-challenge" / credential.file_name

    async def complete_challenge(self, challenge: Challenge):
        if not isinstance(credential := challenge.credential, Http01Credential):
            raise CouldNotCompleteChallenge(challenge, f"{type(self).__name__} only solves http-01 challenges")

        path = self.challenge_path(credential)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(credential.file_content)
        except OSError as e:
            raise CouldNotCompleteChallenge(challenge, str(e)) from e

        logger.debug("Wrote %s for %s", path, challenge.domain)

    async def cleanup_challenge(self, challenge: Challenge):
        if isinstance(credential := challenge.credential, Http01Credential):
            self.challenge_path(credential).unlink(missing_ok=True)
