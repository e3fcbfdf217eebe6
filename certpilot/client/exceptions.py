import typing

import acme.messages
import josepy


class AcmeClientException(Exception):
    """General ACME client exception."""

    retryable: bool = False
    """Whether repeating the failed operation may succeed without changing any input."""


class DirectoryError(AcmeClientException):
    """Exception that is raised if the CA's directory could not be resolved.

    The session cannot proceed without the directory.
    """


class NonceError(AcmeClientException):
    """Exception that is raised if no fresh nonce could be fetched."""

    retryable = True


class KeyGenerationError(AcmeClientException):
    """Exception that is raised if the crypto backend rejects the key parameters."""


class PreconditionError(AcmeClientException):
    """Exception that is raised if an operation is requested before the order is ready for it."""


class AcmeResponseError(AcmeClientException):
    """Exception that is raised if the CA rejected a request or answered unexpectedly.

    The CA's response is attached verbatim.
    """

    def __init__(
        self,
        message: str,
        status: typing.Optional[int] = None,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        body: typing.Any = None,
    ):
        super().__init__(message)
        self.status = status
        """The HTTP status code of the response."""
        self.headers = dict(headers) if headers is not None else {}
        """The response headers."""
        self.body = body
        """The response body, decoded if it was JSON."""

    @property
    def problem(self) -> typing.Optional[acme.messages.Error]:
        """The RFC 7807 problem document the CA returned, if any."""
        if not isinstance(self.body, dict) or "type" not in self.body:
            return None
        try:
            return acme.messages.Error.from_json(self.body)
        except josepy.errors.DeserializationError:
            return None

    def __str__(self):
        message = super().__str__()
        if self.status is None:
            return message
        return f"{message}, the code is: {self.status}, the headers are: {self.headers}, the body is: {self.body}"


class AccountError(AcmeResponseError):
    """Exception that is raised if an account operation failed."""


class OrderError(AcmeResponseError):
    """Exception that is raised if an order operation failed."""


class AuthorizationError(AcmeResponseError):
    """Exception that is raised if an authorization or challenge operation failed."""


class VerificationTimeout(AcmeClientException):
    """Exception that is raised if a challenge was not confirmed within the given time."""

    retryable = True

    def __init__(self, domain: str, challenge_type: str, timeout: float):
        super().__init__(f"Verify `{domain}` via {challenge_type} timeout, the timeout setting is: {timeout} seconds")
        self.domain = domain
        self.challenge_type = challenge_type
        self.timeout = timeout


class LocalVerificationTimeout(VerificationTimeout):
    """The published credential could not be observed locally in time."""


class CAVerificationTimeout(VerificationTimeout):
    """The CA did not finish validating the challenge in time."""


class ChallengeFailed(AcmeClientException):
    """Exception that is raised if an authorization ended in a status other than *valid*.

    The authorization cannot recover, a new order has to be created.
    """

    def __init__(self, domain: str, challenge_type: str, status: str):
        super().__init__(f"Verify {domain} via {challenge_type} failed, the authorization status becomes {status}.")
        self.domain = domain
        self.challenge_type = challenge_type
        self.status = status


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if a challenge solver could not publish a credential."""

    def __init__(self, challenge, *args):
        super().__init__(*args)
        self.challenge = challenge
        """The challenge whose completion was unsuccessful."""

    def __str__(self):
        return f"Could not complete challenge: {self.challenge}"
