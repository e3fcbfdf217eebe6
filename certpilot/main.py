import asyncio
import logging
import logging.config
from typing import Any

import click
import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from certpilot.client import AcmeClient, CertificateFiles, ChallengeSolver
from certpilot.models import ChallengeType, KeyAlgorithm
from certpilot.models.messages import RevocationReason
from certpilot.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"plugins")
challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)


class OrderConfig(BaseSettings, extra="forbid"):
    domains: dict[ChallengeType, list[str]]
    """The domains of the certificate, grouped by the challenge type that validates them"""
    algorithms: list[KeyAlgorithm] = Field(default_factory=lambda: [KeyAlgorithm.RSA])
    """One certificate is issued per key algorithm"""
    generate_new_order: bool = True
    """Discard cached artifacts and create a new order instead of resuming the cached one"""
    local_timeout: float = 0
    """Bound in seconds of the local pre-check, 0 waits forever"""
    ca_timeout: float = 0
    """Bound in seconds of the CA confirmation, 0 waits forever"""


class Config(BaseSettings, extra="forbid"):
    client: AcmeClient.Config
    orders: list[OrderConfig] = Field(default_factory=list)
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


def setup(config_file: str) -> Config:
    config = load_config(config_file)
    if config.logging:
        logging.config.dictConfig(config.logging)
    return config


def echo_files(domains, algorithm: KeyAlgorithm, files: CertificateFiles):
    click.echo(f"{', '.join(domains)} ({algorithm.value}):")
    for name in ("private_key", "public_key", "certificate", "certificate_full_chained"):
        click.echo(f"  {name}: {getattr(files, name)}")
    click.echo(f"  valid: {files.valid_from_timestamp} - {files.valid_to_timestamp}")


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available challenge solvers and their respective config strings."""
    click.echo(
        f"Challenge solvers: "
        f"{', '.join([f'{solver.__name__} ({name})' for name, solver in challenge_solver_registry.config_mapping().items()])}"
    )


@main.command()
@click.option("--config-file", envvar="CERTPILOT_CONFIG_FILE", type=click.Path(exists=True), required=True)
def issue(config_file: str):
    """Obtains the certificates of all orders in the config file."""
    config = setup(config_file)

    async def run():
        async with AcmeClient(config.client) as client:
            for order in config.orders:
                domains = sorted({domain for domain_list in order.domains.values() for domain in domain_list})
                results = await asyncio.gather(
                    *[
                        client.obtain_certificate(
                            order.domains,
                            algorithm,
                            generate_new_order=order.generate_new_order,
                            local_timeout=order.local_timeout,
                            ca_timeout=order.ca_timeout,
                        )
                        for algorithm in order.algorithms
                    ]
                )
                for algorithm, files in zip(order.algorithms, results):
                    echo_files(domains, algorithm, files)

    asyncio.run(run())


@main.command()
@click.option("--config-file", envvar="CERTPILOT_CONFIG_FILE", type=click.Path(exists=True), required=True)
@click.option("--domain", "-d", "domains", multiple=True, required=True)
@click.option(
    "--algorithm",
    "-a",
    type=click.Choice([algorithm.value for algorithm in KeyAlgorithm], case_sensitive=False),
    default=KeyAlgorithm.RSA.value,
    show_default=True,
)
@click.option(
    "--reason",
    type=click.Choice([reason.name for reason in RevocationReason]),
    default=RevocationReason.unspecified.name,
    show_default=True,
)
def revoke(config_file: str, domains: tuple[str], algorithm: str, reason: str):
    """Revokes the issued certificate of the given domains."""
    config = setup(config_file)

    async def run():
        async with AcmeClient(config.client) as client:
            await client.revoke_certificate(
                {ChallengeType.HTTP_01: list(domains)},
                KeyAlgorithm(algorithm.lower()),
                RevocationReason[reason],
            )

    asyncio.run(run())
    click.echo(f"Revoked the {algorithm} certificate of {', '.join(domains)}")


@main.group()
def account():
    """Commands to manage the account."""
    pass


@account.command("update-contact")
@click.option("--config-file", envvar="CERTPILOT_CONFIG_FILE", type=click.Path(exists=True), required=True)
@click.option("--email", "-e", "emails", multiple=True, help="Defaults to the contact in the config file.")
def update_contact(config_file: str, emails: tuple[str]):
    """Replaces the account's contact emails."""
    config = setup(config_file)

    async def run():
        async with AcmeClient(config.client) as client:
            return await client.account.update_account_contact(emails or config.client.contact)

    account_obj = asyncio.run(run())
    click.echo(f"Contact: {', '.join(account_obj.contact or ())}")


@account.command()
@click.option("--config-file", envvar="CERTPILOT_CONFIG_FILE", type=click.Path(exists=True), required=True)
def rollover(config_file: str):
    """Replaces the account key with a newly generated one."""
    config = setup(config_file)

    async def run():
        async with AcmeClient(config.client) as client:
            await client.account.update_account_key()

    asyncio.run(run())
    click.echo("OK.")


@account.command()
@click.option("--config-file", envvar="CERTPILOT_CONFIG_FILE", type=click.Path(exists=True), required=True)
def deactivate(config_file: str):
    """Deactivates the account and deletes its key pair.

    The account cannot be used afterwards."""
    config = setup(config_file)

    if not click.confirm("Really deactivate the account?"):
        click.echo("Aborting...")
        return

    async def run():
        async with AcmeClient(config.client) as client:
            await client.account.deactivate_account()

    asyncio.run(run())
    click.echo("OK.")


if __name__ == "__main__":
    main()
