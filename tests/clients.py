import asyncio
import logging
import typing

from certpilot.client import Challenge, ChallengeSolver, Clock, CouldNotCompleteChallenge
from certpilot.client.checks import LocalCheck
from certpilot.models import ChallengeType

log = logging.getLogger(__name__)


class FakeClock(Clock):
    """Advances instantly and records every sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: typing.List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class PublishedCheck(LocalCheck):
    """Reports a credential as published after *delay_polls* unsuccessful lookups."""

    def __init__(self, delay_polls: int = 0, published: bool = True):
        self.delay_polls = delay_polls
        self.published = published
        self.lookups: typing.List[typing.Tuple[str, str, str]] = []

    async def is_published(self, identifier: str, token: str, expected: str) -> bool:
        self.lookups.append((identifier, token, expected))
        if not self.published:
            return False
        return len(self.lookups) > self.delay_polls


class RecordingSolver(ChallengeSolver):
    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])

    def __init__(self):
        super().__init__(ChallengeSolver.Config())
        self.completed: typing.List[Challenge] = []
        self.cleaned: typing.List[Challenge] = []
        self.fail_cleanup = False

    async def complete_challenge(self, challenge: Challenge):
        log.debug("publishing %s", challenge.credential)
        self.completed.append(challenge)

    async def cleanup_challenge(self, challenge: Challenge):
        self.cleaned.append(challenge)
        if self.fail_cleanup:
            raise CouldNotCompleteChallenge(challenge, "record already gone")
