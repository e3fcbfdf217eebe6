import asyncio
import logging
import typing

import aiohttp
import josepy

from certpilot.client.exceptions import DirectoryError
from certpilot.models import messages

if typing.TYPE_CHECKING:
    from certpilot.client.session import AcmeSession

logger = logging.getLogger(__name__)

PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"


class DirectoryResolver:
    """Discovers the CA's operation URLs from its directory document."""

    def __init__(self, session: "AcmeSession", directory_url: typing.Optional[str] = None):
        self._session = session
        self._directory_url = directory_url

    def directory_url(self, use_staging: bool) -> str:
        if self._directory_url:
            return self._directory_url
        return STAGING_DIRECTORY if use_staging else PRODUCTION_DIRECTORY

    async def resolve(self, use_staging: bool) -> messages.Directory:
        """Fetches the directory with a single unauthenticated GET.

        There is no retry, the session cannot proceed without the directory.

        :param use_staging: Whether to use the staging instead of the production CA.
        :raises: :class:`DirectoryError` If the response is not *200*, not JSON, or misses any of the
            operation URLs.
        :return: The resolved directory.
        """
        url = self.directory_url(use_staging)

        try:
            resp = await self._session.get(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DirectoryError(f"Get endpoint info failed, the url is: {url}: {e}") from e

        if resp.status != 200:
            raise DirectoryError(f"Get endpoint info failed, the url is: {url}, the code is: {resp.status}")

        if resp.content_type != "application/json" or not isinstance(resp.body, dict):
            raise DirectoryError(f"The body from the get endpoint is not valid, the url is: {url}")

        try:
            directory = messages.Directory.from_json(resp.body)
        except josepy.errors.DeserializationError as e:
            raise DirectoryError(f"The directory at {url} is incomplete: {e}") from e

        logger.info("Resolved directory %s", url)
        return directory
