import abc
import asyncio
import contextlib
import logging
import typing

import aiohttp
import dns.asyncresolver
import dns.exception
import yarl

from certpilot.models import ChallengeType

logger = logging.getLogger(__name__)


class LocalCheck(abc.ABC):
    """Checks whether a published credential can be observed before the CA is asked to validate it.

    A check never raises for an unreachable or not yet updated record, it reports *False* so that the
    caller keeps polling.
    """

    SUPPORTED_CHALLENGE: ChallengeType

    @abc.abstractmethod
    async def is_published(self, identifier: str, token: str, expected: str) -> bool:
        """Looks for the credential.

        :param identifier: The authorization's identifier value, without wildcard prefix.
        :param token: The challenge token.
        :param expected: The value that must be served.
        :return: *True* if the credential is served exactly.
        """
        pass


class Http01LocalCheck(LocalCheck):
    DEFAULT_PORT: int = 80
    SUPPORTED_CHALLENGE = ChallengeType.HTTP_01

    def __init__(self, port: int = DEFAULT_PORT):
        self._port = port

    def url(self, identifier: str, token: str) -> yarl.URL:
        url = yarl.URL(f"http://{identifier}/.well-known/acme-challenge/{token}")
        if self._port != self.DEFAULT_PORT:
            url = url.with_port(self._port)
        return url

    async def is_published(self, identifier: str, token: str, expected: str) -> bool:
        url = self.url(identifier, token)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.debug("%s answered with %d", url, response.status)
                        return False
                    data = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Could not fetch %s: %s", url, e)
            return False

        return data.strip() == expected


class Dns01LocalCheck(LocalCheck):
    SUPPORTED_CHALLENGE = ChallengeType.DNS_01

    def __init__(self, resolver: typing.Optional[dns.asyncresolver.Resolver] = None):
        self._resolver = resolver

    async def query_txt(self, name: str) -> typing.Set[str]:
        """Queries the TXT record set of the given name.

        :return: The decoded strings of all TXT records, empty if the name does not resolve.
        """
        values = set()
        resolve = self._resolver.resolve if self._resolver else dns.asyncresolver.resolve

        with contextlib.suppress(dns.exception.DNSException):
            resp = await resolve(name, "TXT")
            for record in resp:
                values.add(b"".join(record.strings).decode())

        return values

    async def is_published(self, identifier: str, token: str, expected: str) -> bool:
        name = f"_acme-challenge.{identifier}"
        values = await self.query_txt(name)
        logger.debug("TXT %s: %s", name, values)
        return expected in values


def local_check_for(challenge_type: ChallengeType, http01_port: int = Http01LocalCheck.DEFAULT_PORT) -> LocalCheck:
    if ChallengeType(challenge_type) == ChallengeType.HTTP_01:
        return Http01LocalCheck(http01_port)
    return Dns01LocalCheck()
