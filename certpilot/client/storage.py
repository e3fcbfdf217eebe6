import json
import logging
import typing
from pathlib import Path

from certpilot import util
from certpilot.client.crypto import load_private_key
from certpilot.models import KeyAlgorithm

logger = logging.getLogger(__name__)


class AccountStorage:
    """Persists the account key pair at ``{storage}/account/{private,public}.pem``."""

    def __init__(self, storage_path: Path):
        self.path = Path(storage_path) / "account"
        self.private_key_path = self.path / "private.pem"
        self.public_key_path = self.path / "public.pem"

    def exists(self) -> bool:
        return self.private_key_path.is_file() and self.public_key_path.is_file()

    def load_key(self):
        return load_private_key(self.private_key_path.read_bytes())

    def save(self, private_key) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        util.write_private(self.private_key_path, util.private_pem(private_key))
        self.public_key_path.write_bytes(util.public_pem(private_key))
        logger.debug("Stored account key pair in %s", self.path)

    def remove(self) -> None:
        self.private_key_path.unlink(missing_ok=True)
        self.public_key_path.unlink(missing_ok=True)


class OrderStorage:
    """Persists the artifacts of one order.

    The namespace ``{storage}/{fingerprint}/{algorithm}/`` holds the order's key pair, CSR,
    certificate, full chain and the *ORDER* cache. The domain set of the fingerprint is listed in
    ``{storage}/{fingerprint}/DOMAIN``.
    """

    FILES = (
        "private.pem",
        "public.pem",
        "certificate.csr",
        "certificate.crt",
        "certificate-fullchained.crt",
        "ORDER",
    )

    def __init__(self, storage_path: Path, domains: typing.Iterable[str], algorithm: KeyAlgorithm):
        self.domains = util.normalize_domains(domains)
        self.fingerprint = util.fingerprint(self.domains)
        self.algorithm = KeyAlgorithm(algorithm)

        self.base_path = Path(storage_path) / self.fingerprint
        self.path = self.base_path / self.algorithm.value
        self.path.mkdir(parents=True, exist_ok=True)

        self.private_key_path = self.path / "private.pem"
        self.public_key_path = self.path / "public.pem"
        self.csr_path = self.path / "certificate.csr"
        self.certificate_path = self.path / "certificate.crt"
        self.certificate_full_chained_path = self.path / "certificate-fullchained.crt"
        self.order_info_path = self.path / "ORDER"
        self.domain_path = self.base_path / "DOMAIN"

    def reset(self) -> None:
        """Deletes every cached artifact of the namespace."""
        for name in self.FILES:
            (self.path / name).unlink(missing_ok=True)
        logger.debug("Removed cached order artifacts in %s", self.path)

    def write_domains(self) -> None:
        self.domain_path.write_text("\r\n".join(self.domains))

    def read_order_info(self) -> dict:
        if not self.order_info_path.is_file():
            return {}

        try:
            info = json.loads(self.order_info_path.read_text() or "{}")
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable order cache %s", self.order_info_path)
            return {}

        return info if isinstance(info, dict) else {}

    def update_order_info(self, **info) -> dict:
        """Merges the given values into the *ORDER* cache.

        :return: The merged cache contents.
        """
        merged = {**self.read_order_info(), **info}
        self.order_info_path.write_text(json.dumps(merged))
        return merged

    def has_key_pair(self) -> bool:
        return self.private_key_path.is_file() and self.public_key_path.is_file()

    def load_key(self):
        return load_private_key(self.private_key_path.read_bytes())

    def save_key(self, private_key) -> None:
        util.write_private(self.private_key_path, util.private_pem(private_key))
        self.public_key_path.write_bytes(util.public_pem(private_key))

    def save_certificate(self, bundle: util.CertificateBundle) -> None:
        self.certificate_path.write_text(bundle.certificate)
        self.certificate_full_chained_path.write_text(bundle.certificate_full_chained)
