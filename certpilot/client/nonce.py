import asyncio
import logging
import typing

import aiohttp

from certpilot.client.exceptions import NonceError

if typing.TYPE_CHECKING:
    from certpilot.client.session import AcmeSession

logger = logging.getLogger(__name__)


class NonceProvider:
    """Fetches single-use anti-replay nonces from the CA's new-nonce endpoint.

    Nonces are never cached or reused. Each signed request fetches its own immediately before
    the signature is built.
    """

    def __init__(self, session: "AcmeSession"):
        self._session = session

    async def fetch_nonce(self, new_nonce_url: str) -> str:
        """Fetches a fresh nonce.

        :param new_nonce_url: The CA's new-nonce endpoint.
        :raises: :class:`NonceError` If the endpoint is unreachable, does not answer with *200*
            or omits the *Replay-Nonce* header.
        :return: The nonce.
        """
        try:
            resp = await self._session.head(new_nonce_url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NonceError(f"Get new nonce failed, the url is: {new_nonce_url}: {e}") from e

        if resp.status != 200:
            raise NonceError(f"Get new nonce failed, the url is: {new_nonce_url}, the code is: {resp.status}")

        if not (nonce := resp.headers.get("Replay-Nonce", "").strip()):
            raise NonceError(
                f"Get new nonce failed, the header doesn't contain `Replay-Nonce`, the url is: {new_nonce_url}"
            )

        logger.debug("Fetched new nonce %s", nonce)
        return nonce
