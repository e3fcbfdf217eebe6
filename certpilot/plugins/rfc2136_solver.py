"""DNS-01 challenge solver using RFC 2136 dynamic updates signed with TSIG.

The zone of a record is looked up on the configured server with the TSIG credentials.
"""
import logging
import typing

import dns.asyncquery
import dns.asyncresolver
import dns.exception
import dns.name
import dns.tsigkeyring
import dns.update

from certpilot.client.challenge import Challenge, Dns01Credential
from certpilot.client.challenge_solver import ChallengeSolver
from certpilot.client.exceptions import CouldNotCompleteChallenge
from certpilot.models import ChallengeType
from certpilot.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


@PluginRegistry.register_plugin("rfc2136")
class RFC2136Client(ChallengeSolver):
    """Adds and removes the TXT records of DNS-01 challenges on a DNS server that accepts dynamic updates."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["rfc2136"] = "rfc2136"
        server: str
        """DNS server to use for TSIG updates"""
        keyid: str
        """TSIG key ID to use for TSIG updates"""
        alg: str
        """TSIG algorithm to use for TSIG updates"""
        secret: str
        """TSIG secret to use for TSIG updates"""
        ttl: int = 60
        """TTL of the created records"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self.ttl = cfg.ttl

        self.keyring = dns.tsigkeyring.from_text({cfg.keyid: (cfg.alg, cfg.secret)})
        self.resolver = dns.asyncresolver.Resolver(configure=False)
        self.resolver.nameservers = [cfg.server]
        self.resolver.use_tsig(self.keyring, keyname=cfg.keyid, algorithm=cfg.alg)

    async def _run_query(self, msg):
        await dns.asyncquery.tcp(q=msg, where=self.resolver.nameservers[0])

    async def _update(self, name: str):
        zone = await dns.asyncresolver.zone_for_name(name, resolver=self.resolver)
        name = dns.name.from_text(name).relativize(zone)

        update = dns.update.Update(zone, keyring=self.keyring)
        return name, update

    async def set_txt_record(self, name: str, text: str):
        logger.debug("Setting TXT record %s = %s, TTL %d", name, text, self.ttl)

        name, update = await self._update(name)
        update.add(name, self.ttl, "TXT", text)

        await self._run_query(update)

    async def delete_txt_record(self, name: str, text: str):
        logger.debug("Deleting TXT record %s = %s", name, text)

        name, update = await self._update(name)
        update.delete(name, "TXT", text)

        await self._run_query(update)

    async def complete_challenge(self, challenge: Challenge):
        if not isinstance(credential := challenge.credential, Dns01Credential):
            raise CouldNotCompleteChallenge(challenge, f"{type(self).__name__} only solves dns-01 challenges")

        name = f"_acme-challenge.{credential.identifier}"
        try:
            await self.set_txt_record(name, credential.dns_content)
        except (dns.exception.DNSException, OSError) as e:
            logger.exception("Could not set TXT record to solve challenge: %s = %s", name, credential.dns_content)
            raise CouldNotCompleteChallenge(challenge, str(e)) from e

    async def cleanup_challenge(self, challenge: Challenge):
        if isinstance(credential := challenge.credential, Dns01Credential):
            await self.delete_txt_record(f"_acme-challenge.{credential.identifier}", credential.dns_content)
