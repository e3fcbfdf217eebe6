import json
import logging
import typing

import acme.jws
import josepy

from certpilot.client.crypto import alg_of
from certpilot.client.exceptions import NonceError
from certpilot.client.nonce import NonceProvider
from certpilot.client.polling import Clock, RetryPolicy

logger = logging.getLogger(__name__)

Payload = typing.Union[None, bytes, dict, josepy.JSONDeSerializable]


def encode_payload(payload: Payload) -> bytes:
    """Serializes a request payload.

    *None* yields the empty payload of a POST-as-GET request.
    """
    if payload is None:
        return b""
    elif isinstance(payload, bytes):
        return payload
    elif isinstance(payload, josepy.JSONDeSerializable):
        return payload.json_dumps().encode()
    return json.dumps(payload).encode()


class JWSSigner:
    """Builds the JWS envelopes that authenticate requests to the CA.

    Two flavors exist: the *JWK* flavor embeds the public key and is used for account creation,
    account lookup and certificate revocation. The *KID* flavor references the account URL and is
    used for every other request. Both fetch a fresh nonce right before signing.
    """

    def __init__(
        self,
        nonces: NonceProvider,
        new_nonce_url: str,
        retry_policy: RetryPolicy,
        clock: Clock,
    ):
        self._nonces = nonces
        self._new_nonce_url = new_nonce_url
        self._retry_policy = retry_policy
        self._clock = clock

    async def _fetch_nonce(self) -> str:
        return await self._retry_policy.call(
            self._nonces.fetch_nonce,
            self._new_nonce_url,
            retry_on=(NonceError,),
            clock=self._clock,
        )

    async def sign_jwk(self, url: str, payload: Payload, key: josepy.JWK) -> str:
        """Signs the payload with the public key embedded in the protected header.

        :param url: The exact URL the request is sent to.
        :param payload: The request payload.
        :param key: The private key to sign with.
        :return: The serialized JWS.
        """
        return self._sign(url, payload, key, await self._fetch_nonce(), kid=None)

    async def sign_kid(self, url: str, kid: str, payload: Payload, key: josepy.JWK) -> str:
        """Signs the payload with a reference to the account URL in the protected header.

        :param url: The exact URL the request is sent to.
        :param kid: The account URL.
        :param payload: The request payload.
        :param key: The account key.
        :return: The serialized JWS.
        """
        return self._sign(url, payload, key, await self._fetch_nonce(), kid=kid)

    def _sign(self, url, payload, key, nonce, kid=None) -> str:
        logger.debug("Signing request to %s (%s)", url, "kid" if kid else "jwk")
        return acme.jws.JWS.sign(
            encode_payload(payload),
            key=key,
            alg=alg_of(key),
            nonce=josepy.b64.b64decode(nonce),
            url=url,
            kid=kid,
        ).json_dumps()
