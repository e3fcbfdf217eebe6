import logging
import ssl
import typing
from dataclasses import dataclass, field

import josepy
from aiohttp import ClientSession
from multidict import CIMultiDict

from certpilot.client.directory import DirectoryResolver
from certpilot.client.nonce import NonceProvider
from certpilot.client.polling import Clock, RetryPolicy
from certpilot.client.signing import JWSSigner, Payload
from certpilot.models import messages
from certpilot.version import __version__

if typing.TYPE_CHECKING:
    from certpilot.client.account import AccountManager

logger = logging.getLogger(__name__)

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


@dataclass
class AcmeResponse:
    """A response of the CA with its body already read."""

    status: int
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    content_type: str = ""
    body: typing.Any = None

    @property
    def location(self) -> typing.Optional[str]:
        return self.headers.get("Location") or None

    @property
    def is_bad_nonce(self) -> bool:
        return self.status == 400 and isinstance(self.body, dict) and self.body.get("type") == BAD_NONCE


class AcmeSession:
    """The context shared by all components that talk to one CA.

    Owns the HTTP session, the resolved directory, the nonce provider and the JWS signer.
    Components receive the session through their constructors instead of looking it up globally.
    """

    INVALID_NONCE_RETRIES = 5
    """The number of times a request is re-signed when the server returns the error *badNonce*."""

    def __init__(
        self,
        *,
        staging: bool = False,
        directory_url: typing.Optional[str] = None,
        post_as_get: bool = False,
        poll_interval: float = 3.0,
        nonce_retry_policy: typing.Optional[RetryPolicy] = None,
        http01_port: int = 80,
        server_cert: typing.Optional[str] = None,
        clock: typing.Optional[Clock] = None,
    ):
        """Creates an :class:`AcmeSession` instance.

        :param staging: Whether to use the staging CA.
        :param directory_url: Overrides the staging/production directory URL.
        :param post_as_get: Fetch resources with signed POST-as-GET requests instead of plain GET requests.
        :param poll_interval: The delay in seconds between polling attempts.
        :param nonce_retry_policy: Retry policy for nonce acquisition.
        :param http01_port: The port the local HTTP-01 pre-check connects to.
        :param server_cert: Path of an additional CA certificate to trust, e.g. for a test CA.
        :param clock: Time source of all polling loops.
        """
        self.staging = staging
        self.post_as_get = post_as_get
        self.poll_interval = poll_interval
        self.http01_port = http01_port
        self.clock = clock or Clock()

        self._ssl_context = ssl.create_default_context()
        if server_cert:
            self._ssl_context.load_verify_locations(cafile=server_cert)

        self._nonce_retry_policy = nonce_retry_policy or RetryPolicy()
        self._resolver = DirectoryResolver(self, directory_url)
        self._http: typing.Optional[ClientSession] = None

        self.directory: typing.Optional[messages.Directory] = None
        self.nonces = NonceProvider(self)
        self.signer: typing.Optional[JWSSigner] = None

    async def start(self) -> messages.Directory:
        """Opens the HTTP session and resolves the directory.

        :raises: :class:`~certpilot.client.exceptions.DirectoryError` If the directory cannot be resolved.
        """
        if self._http is None:
            self._http = ClientSession(headers={"User-Agent": f"certpilot/{__version__}"})

        self.directory = await self._resolver.resolve(self.staging)
        self.signer = JWSSigner(self.nonces, self.directory.new_nonce, self._nonce_retry_policy, self.clock)
        return self.directory

    async def close(self):
        """Closes the HTTP session.

        The session may not be used for requests anymore after it has been closed.
        """
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def request(self, method: str, url: str, **kwargs) -> AcmeResponse:
        if self._http is None:
            raise RuntimeError("The session has not been started")

        ssl_context = self._ssl_context if url.startswith("https") else None
        async with self._http.request(method, url, ssl=ssl_context, **kwargs) as resp:
            if resp.content_type in ("application/json", "application/problem+json"):
                body = await resp.json(content_type=None)
            elif method == "HEAD":
                body = None
            else:
                body = await resp.text()

            logger.debug("%s %s -> %d", method, url, resp.status)
            return AcmeResponse(
                status=resp.status,
                headers=CIMultiDict(resp.headers),
                content_type=resp.content_type,
                body=body,
            )

    async def get(self, url: str) -> AcmeResponse:
        return await self.request("GET", url)

    async def head(self, url: str) -> AcmeResponse:
        return await self.request("HEAD", url)

    async def post_jws(self, url: str, jws: str) -> AcmeResponse:
        return await self.request(
            "POST",
            url,
            data=jws,
            headers={"Content-Type": "application/jose+json", "Accept": "application/json"},
        )

    async def signed_request(
        self,
        url: str,
        payload: Payload,
        key: josepy.JWK,
        kid: typing.Optional[str] = None,
    ) -> AcmeResponse:
        """Signs the payload and posts it to the given URL.

        The JWK flavor is used if *kid* is *None*, the KID flavor otherwise. A *badNonce*
        rejection is answered with a new nonce and signature.

        :param url: The request target, which is also put into the protected header.
        :param payload: The request payload. *None* sends a POST-as-GET request.
        :param key: The key to sign with.
        :param kid: The account URL.
        :return: The CA's response.
        """
        tries = self.INVALID_NONCE_RETRIES
        while True:
            if kid is None:
                jws = await self.signer.sign_jwk(url, payload, key)
            else:
                jws = await self.signer.sign_kid(url, kid, payload, key)

            resp = await self.post_jws(url, jws)
            tries -= 1
            if resp.is_bad_nonce and tries > 0:
                logger.info("The CA rejected the nonce for %s, retrying with a fresh one", url)
                continue
            return resp

    async def fetch(self, url: str, account: "AccountManager") -> AcmeResponse:
        """Retrieves a resource, either with a plain GET or a signed POST-as-GET request.

        :param url: The resource URL.
        :param account: The account that signs POST-as-GET requests.
        """
        if not self.post_as_get:
            return await self.get(url)

        return await self.signed_request(url, None, account.key, kid=await account.get_account_url())
