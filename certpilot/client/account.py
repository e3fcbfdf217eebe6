import asyncio
import logging
import typing

import josepy

from certpilot.client.crypto import RSA_KEY_SIZE, alg_of, generate_key_pair, jwk_of, thumbprint
from certpilot.client.exceptions import AccountError
from certpilot.client.session import AcmeResponse, AcmeSession
from certpilot.client.storage import AccountStorage
from certpilot.models import AccountStatus, KeyAlgorithm, messages

logger = logging.getLogger(__name__)


def normalize_contact(emails: typing.Optional[typing.Iterable[str]]) -> typing.List[str]:
    """Drops empty entries and duplicates from an email list and sorts it."""
    return sorted(set(email.strip() for email in emails or () if email and email.strip()))


class AccountManager:
    """Creates or recovers the CA account bound to the locally persisted key pair.

    Account keys are always RSA, so requests are signed with *RS256*.
    """

    def __init__(
        self,
        session: AcmeSession,
        storage: AccountStorage,
        contact: typing.Optional[typing.Iterable[str]] = None,
        rsa_key_size: int = RSA_KEY_SIZE,
    ):
        self._session = session
        self._storage = storage
        self._rsa_key_size = rsa_key_size
        self._key_lock = asyncio.Lock()

        self.emails = normalize_contact(contact)
        self.key: typing.Optional[josepy.JWK] = None
        """The account's private key."""
        self.account_url: typing.Optional[str] = None
        """The account URL assigned by the CA, also used as the *kid* of signed requests."""
        self.account: typing.Optional[messages.Account] = None
        self._data: dict = {}

    @property
    def thumbprint(self) -> str:
        return thumbprint(self.key)

    async def init(self) -> messages.Account:
        """Recovers the account of a persisted key pair or creates a new account.

        Partial key material (only one of the two key files) is discarded.
        """
        if self._storage.exists():
            self.key = jwk_of(self._storage.load_key())
            return await self.get_account()

        self._storage.remove()
        return await self.create_account()

    async def create_account(self) -> messages.Account:
        """Registers a new account with a freshly generated key pair.

        The key pair is persisted once the CA has accepted the registration.

        :raises: :class:`AccountError` If the CA does not answer with *201* and a *Location* header.
        :return: The new account.
        """
        private_key = generate_key_pair(KeyAlgorithm.RSA, self._rsa_key_size)
        key = jwk_of(private_key)

        payload = messages.AccountUpdate.from_emails(self.emails, terms_of_service_agreed=True)
        resp = await self._session.signed_request(self._session.directory.new_account, payload, key)

        if resp.status != 201:
            raise AccountError("Create account failed", resp.status, resp.headers, resp.body)

        if not resp.location:
            raise AccountError("Parse account url failed", resp.status, resp.headers, resp.body)

        self._storage.save(private_key)
        self.key = key
        self.account_url = resp.location
        logger.info("Created account %s", self.account_url)

        return self.populate(resp.body)

    async def get_account_url(self) -> str:
        """Returns the account URL, looking it up with the *onlyReturnExisting* probe if it is unknown.

        :raises: :class:`AccountError` If no account exists for the key.
        """
        if self.account_url:
            return self.account_url

        payload = messages.AccountUpdate(only_return_existing=True)
        resp = await self._session.signed_request(self._session.directory.new_account, payload, self.key)

        if resp.status != 200:
            raise AccountError("Get account url failed", resp.status, resp.headers, resp.body)

        if not resp.location:
            raise AccountError("Parse account url failed", resp.status, resp.headers, resp.body)

        self.account_url = resp.location
        logger.debug("Found account %s", self.account_url)
        return self.account_url

    async def get_account(self) -> messages.Account:
        """Fetches the account object.

        :raises: :class:`AccountError` If the CA does not answer with *200*.
        """
        account_url = await self.get_account_url()
        resp = await self._session.signed_request(account_url, None, self.key, kid=account_url)
        self._expect_ok(resp, "Get account info failed")

        return self.populate(resp.body)

    async def update_account_contact(self, emails: typing.Iterable[str]) -> messages.Account:
        """Replaces the account's contact information.

        :param emails: The new contact emails.
        :raises: :class:`AccountError` If the CA rejects the update.
        """
        emails = normalize_contact(emails)
        account_url = await self.get_account_url()

        payload = messages.AccountUpdate.from_emails(emails)
        resp = await self._session.signed_request(account_url, payload, self.key, kid=account_url)
        self._expect_ok(resp, "Update account contact info failed")

        self.emails = emails
        logger.info("Updated contact of account %s", account_url)
        return self.populate(resp.body)

    async def update_account_key(self) -> messages.Account:
        """Rolls the account over to a newly generated key.

        The inner JWS is signed with the new key and proves its possession, the outer JWS is signed
        with the current key. The persisted key pair is only replaced after the CA accepted the change.
        Concurrent rollovers are serialized.

        :raises: :class:`AccountError` If the CA rejects the key change.
        """
        async with self._key_lock:
            account_url = await self.get_account_url()
            key_change_url = self._session.directory.key_change

            private_key = generate_key_pair(KeyAlgorithm.RSA, self._rsa_key_size)
            new_key = jwk_of(private_key)

            key_change = messages.KeyChange(account=account_url, old_key=self.key.public_key())
            inner = messages.SignedKeyChange.from_data(key_change, new_key, alg_of(new_key), url=key_change_url)

            resp = await self._session.signed_request(key_change_url, inner, self.key, kid=account_url)
            self._expect_ok(resp, "Update account key failed")

            self._storage.save(private_key)
            self.key = new_key
            logger.info("Rolled over the key of account %s", account_url)

            return self.populate(resp.body)

    async def deactivate_account(self) -> messages.Account:
        """Deactivates the account and removes the persisted key pair.

        The account cannot be used locally anymore afterwards.

        :raises: :class:`AccountError` If the CA rejects the deactivation.
        """
        account_url = await self.get_account_url()

        payload = messages.AccountUpdate(status=AccountStatus.DEACTIVATED)
        resp = await self._session.signed_request(account_url, payload, self.key, kid=account_url)
        self._expect_ok(resp, "Deactivate account failed")

        account = self.populate(resp.body)
        self._storage.remove()
        logger.info("Deactivated account %s", account_url)

        return account

    def populate(self, body: typing.Any) -> messages.Account:
        """Merges a response body into the account object.

        Only fields declared by :class:`~certpilot.models.messages.Account` are kept.
        """
        if isinstance(body, dict):
            self._data.update(body)

        try:
            self.account = messages.Account.from_json(self._data)
        except josepy.errors.DeserializationError as e:
            raise AccountError(f"Unexpected account object: {e}", body=body) from e

        return self.account

    @staticmethod
    def _expect_ok(resp: AcmeResponse, message: str) -> None:
        if resp.status != 200:
            raise AccountError(message, resp.status, resp.headers, resp.body)
