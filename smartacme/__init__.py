# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
smartacme is an asyncio ACME client that issues and renews wildcard certificates using the DNS-01 challenge. Every
certificate covers a domain and its wildcard (`example.com` and `*.example.com`). DNS records are published through
callables you supply, and issued certificates are kept in a store of your choice. Although this module is intended for
use with Let's Encrypt, it will support any CA utilizing the ACME v2 protocol.
"""
import asyncio
import logging
import os

import validators

from . import errors
from . import keys
from . import tools
from .accounts import AcmeAccount
from .certs import (
    CertificateCache,
    CertificateRecord,
    CertificateStatus,
    CertificateStore,
    CertMatcher,
    FileCertificateStore,
    MemoryCertificateStore,
)
from .challenges import ChallengeCoordinator, ExponentialBackoff
from .client import DEFAULT_USER_AGENT, AcmeWireClient
from .orders import OrderStateMachine
from .remote import CertRemoteClient

logger = logging.getLogger(__name__)

# Constants and Variables
LETSENCRYPT_PRODUCTION = 'https://acme-v02.api.letsencrypt.org/directory'
LETSENCRYPT_STAGING = 'https://acme-staging-v02.api.letsencrypt.org/directory'
ENVIRONMENTS = {'production': LETSENCRYPT_PRODUCTION, 'integration': LETSENCRYPT_STAGING}
DIRECTORY_ENV_VAR = 'SMARTACME_DIRECTORY'
DUPLICATE_MODES = ('wait', 'reject')
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
__all__ = [
    "SmartAcme",
    "AcmeAccount",
    "CertificateRecord",
    "CertificateStatus",
    "CertificateStore",
    "FileCertificateStore",
    "MemoryCertificateStore",
    "CertRemoteClient",
    "ExponentialBackoff",
    "LETSENCRYPT_PRODUCTION",
    "LETSENCRYPT_STAGING",
    "DIRECTORY_ENV_VAR",
    "errors",
    "keys",
    "tools",
]


class SmartAcme:
    """
    Issues, caches and renews wildcard certificates for domains using the ACME DNS-01 challenge.
    """
    # One object owns the whole issuance flow and its configuration.
    # pylint: disable=too-many-instance-attributes,too-many-arguments,too-many-locals

    def __init__(
            self,
            account_email: str,
            set_challenge,
            remove_challenge,
            store: CertificateStore,
            account_private_key: bytes = None,
            environment: str = 'integration',
            directory: str = None,
            nameservers: list = None,
            check_until_available=None,
            dns_max_cycles: int = 30,
            dns_interval_ms: int = 2000,
            backoff: ExponentialBackoff = None,
            concurrent_authorizations: bool = False,
            on_duplicate: str = 'wait',
            issuance_timeout: float = None,
            renew_before_days: int = 10,
            verify_ssl: bool = True,
            user_agent: str = DEFAULT_USER_AGENT,
            domain_key_bits: int = 2048
    ):
        """
        Args:
            account_email (str): An email address to use when registering the ACME account.
            set_challenge (callable): `set_challenge(dns_name, value)` publishes a TXT record. May be async.
            remove_challenge (callable): `remove_challenge(dns_name)` removes the TXT record again. May be async.
            store (smartacme.certs.CertificateStore): Where issued certificates are kept.
            account_private_key (bytes): A PEM encoded RSA account key. A new key is generated when omitted.
            environment (str): `production` or `integration` (Let's Encrypt staging).
            directory (str): An explicit ACME directory URL. Takes precedence over the `SMARTACME_DIRECTORY`
                environment variable and over `environment`.
            nameservers (list): A list of DNS server hosts to query when checking DNS propagation.
            check_until_available (callable): A replacement for `smartacme.tools.check_until_available`.
            dns_max_cycles (int): The maximum number of DNS propagation checks per challenge.
            dns_interval_ms (int): The pause (in milliseconds) between DNS propagation checks.
            backoff (smartacme.challenges.ExponentialBackoff): The polling policy for challenges and orders.
            concurrent_authorizations (bool): Satisfy the authorizations of an order at the same time.
            on_duplicate (str): `wait` for an in-flight issuance of the same domain, or `reject` the request.
            issuance_timeout (float): The total amount of time (in seconds) one issuance may take.
            renew_before_days (int): Renew stored certificates that expire within this many days.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            user_agent (str): The User-Agent header sent to the ACME server.
            domain_key_bits (int): The RSA modulus size of the generated certificate keys.

        Examples:
            >>> import smartacme
            >>> acme = smartacme.SmartAcme(
            ...     account_email="example@example.com",
            ...     set_challenge=dns_provider.set_txt_record,
            ...     remove_challenge=dns_provider.remove_txt_record,
            ...     store=smartacme.MemoryCertificateStore(),
            ...     environment="integration",
            ...     nameservers=["8.8.8.8", "1.1.1.1"]
            ... )
        """
        self.account_email = account_email
        self.set_challenge = set_challenge
        self.remove_challenge = remove_challenge
        self.environment = environment
        self.on_duplicate = on_duplicate
        self.issuance_timeout = issuance_timeout
        self.renew_before_days = renew_before_days
        self.domain_key_bits = domain_key_bits
        self.directory = directory or os.environ.get(DIRECTORY_ENV_VAR) or ENVIRONMENTS[self.environment]

        account_key = keys.load_account_key(account_private_key) if account_private_key \
            else keys.generate_account_key()
        self.client = AcmeWireClient(self.directory, account_key=account_key, verify_ssl=verify_ssl,
                                     user_agent=user_agent)
        self.account = AcmeAccount(self.client, self.account_email)
        self.coordinator = ChallengeCoordinator(
            self.client,
            set_challenge=self._set_challenge,
            remove_challenge=self._remove_challenge,
            check_until_available=check_until_available,
            dns_max_cycles=dns_max_cycles,
            dns_interval_ms=dns_interval_ms,
            nameservers=nameservers,
            backoff=backoff,
        )
        self.orders = OrderStateMachine(self.client, self.coordinator, backoff=backoff,
                                        concurrent=concurrent_authorizations)
        self.cache = CertificateCache(store)
        self.cert_matcher = CertMatcher()
        self._start_lock = None

    def _set_challenge(self, dns_name: str, value: str):
        return self.set_challenge(dns_name, value)

    def _remove_challenge(self, dns_name: str):
        return self.remove_challenge(dns_name)

    async def __aenter__(self) -> 'SmartAcme':
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def start(self) -> None:
        """
        Fetches the ACME directory and registers the account. Registering a known account key re-uses the existing
        account. By running this method, you are agreeing to the ACME server's terms of service.
        """
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()

        async with self._start_lock:
            if self.account.registered:
                return
            await self.client.fetch_directory()
            await self.account.register()
            logger.info('smartacme is ready on %s', self.directory)

    async def stop(self) -> None:
        """Closes the connection to the ACME server."""
        await self.client.close()

    async def get_certificate_for_domain(self, domain: str) -> CertificateRecord:
        """
        Returns a certificate covering `domain`. Stored certificates are returned as long as they are not due for
        renewal; otherwise a new certificate for the certificate domain and its wildcard is issued and stored.

        Args:
            domain (str): The domain name to get a certificate for, e.g. `example.com` or `sub.example.com`.

        Returns:
            smartacme.certs.CertificateRecord: The certificate record. Its `domain_name` is the certificate domain.

        Raises:
            smartacme.errors.InvalidDomain: When `domain` cannot be mapped to a certificate domain.
            smartacme.errors.DuplicateRequestError: When `on_duplicate` is `reject` and the domain is already being
                issued.
            smartacme.errors.SmartAcmeError: Any issuance failure. The pending state of the domain is cleared and
                nothing is stored.

        Examples:
            >>> record = await acme.get_certificate_for_domain("sub.example.com")
            >>> record.domain_name
            'example.com'
        """
        domain_name = self.cert_matcher.get_certificate_domain_name(domain)
        status = await self.cache.get_certificate_status(domain_name)

        if status == CertificateStatus.PENDING:
            return await self._handle_duplicate(domain_name)

        if status == CertificateStatus.EXISTING:
            record = await self.cache.retrieve_certificate(domain_name)
            if record is not None and not record.should_be_renewed(days=self.renew_before_days):
                logger.debug('Using stored certificate for %s', domain_name)
                return record
            logger.info('Certificate for %s expires %s, renewing', domain_name,
                        record.valid_until.isoformat() if record else 'unknown')

        try:
            await self.cache.announce_certificate(domain_name)
        except errors.DuplicateRequestError:
            # Another caller announced the domain while the store was being read
            return await self._handle_duplicate(domain_name)

        try:
            # Another issuance may have stored the record between the status check and the announcement
            stored = await self.cache.retrieve_certificate(domain_name)
            if stored is not None and not stored.should_be_renewed(days=self.renew_before_days):
                logger.debug('Using certificate for %s stored by a concurrent issuance', domain_name)
                self.cache.settle_certificate(stored)
                return stored

            if self.issuance_timeout:
                record = await asyncio.wait_for(self._issue_certificate(domain_name), self.issuance_timeout)
            else:
                record = await self._issue_certificate(domain_name)
            await self.cache.store_certificate(record)
        except asyncio.TimeoutError as error:
            timeout_error = errors.IssuanceTimeoutError(
                f"Issuing a certificate for '{domain_name}' took longer than {self.issuance_timeout} seconds."
            )
            self.cache.release_certificate(domain_name, timeout_error)
            raise timeout_error from error
        except BaseException as error:
            self.cache.release_certificate(domain_name, error)
            raise

        return record

    async def _handle_duplicate(self, domain_name: str) -> CertificateRecord:
        if self.on_duplicate == 'reject':
            raise errors.DuplicateRequestError(f"A certificate for '{domain_name}' is already being issued.")
        logger.info('Waiting for the pending certificate of %s', domain_name)
        record = await self.cache.wait_for_certificate(domain_name)
        if record is None:
            raise errors.InvalidCertificate(f"Pending certificate for '{domain_name}' was not stored.")
        return record

    async def _issue_certificate(self, domain_name: str) -> CertificateRecord:
        await self.start()

        wildcard = f"*.{domain_name}"
        order = await self.orders.create_order([domain_name, wildcard])
        await self.orders.satisfy_authorizations(order)

        key_pair = keys.generate_key_pair(self.domain_key_bits)
        csr = keys.create_csr(wildcard, [wildcard, domain_name], key_pair.private_key)
        order = await self.orders.finalize_order(order, csr)
        order = await self.orders.wait_for_valid_status(order)
        certificate = await self.orders.download_certificate(order)

        logger.info('Issued certificate for %s and %s', domain_name, wildcard)
        return CertificateRecord.from_certificate(
            domain_name=domain_name,
            private_key=key_pair.private_key.decode('utf-8'),
            public_key=key_pair.public_key.decode('utf-8'),
            csr=csr.decode('utf-8'),
            certificate=certificate,
        )

    async def delete_certificate(self, domain: str) -> None:
        """Deletes the stored certificate covering `domain`."""
        await self.cache.delete_certificate(self.cert_matcher.get_certificate_domain_name(domain))

    @property
    def account_email(self) -> str:
        """
        Getter for the `account_email` property.

        Raises:
            smartacme.errors.InvalidEmail: When `account_email` is not set.
        """
        if not self._account_email:
            raise errors.InvalidEmail('No account email found. You must set the account_email value first.')
        return self._account_email

    @account_email.setter
    def account_email(self, value: str) -> None:
        """
        Setter for the `account_email` property. This ensures an email address is valid before setting.

        Raises:
            smartacme.errors.InvalidEmail: When the `value` is not a valid email address
        """
        if not validators.email(value):
            raise errors.InvalidEmail(f"Value '{value}' is not a valid email address.")
        self._account_email = value

    @property
    def set_challenge(self):
        """The callable that publishes DNS challenge records."""
        return self._set_challenge_fn

    @set_challenge.setter
    def set_challenge(self, value) -> None:
        if not callable(value):
            raise errors.InvalidConfiguration(f"Value '{value}' for 'set_challenge' is not callable.")
        self._set_challenge_fn = value

    @property
    def remove_challenge(self):
        """The callable that removes DNS challenge records."""
        return self._remove_challenge_fn

    @remove_challenge.setter
    def remove_challenge(self, value) -> None:
        if not callable(value):
            raise errors.InvalidConfiguration(f"Value '{value}' for 'remove_challenge' is not callable.")
        self._remove_challenge_fn = value

    @property
    def environment(self) -> str:
        """The Let's Encrypt environment used when no directory URL is given."""
        return self._environment

    @environment.setter
    def environment(self, value: str) -> None:
        """
        Raises:
            smartacme.errors.InvalidConfiguration: When `value` is not one of `production` or `integration`.
        """
        if value not in ENVIRONMENTS:
            raise errors.InvalidConfiguration(f"Invalid environment '{value}'. Options {list(ENVIRONMENTS)}")
        self._environment = value

    @property
    def on_duplicate(self) -> str:
        """What happens when a certificate is requested while it is already being issued."""
        return self._on_duplicate

    @on_duplicate.setter
    def on_duplicate(self, value: str) -> None:
        """
        Raises:
            smartacme.errors.InvalidConfiguration: When `value` is not one of `wait` or `reject`.
        """
        if value not in DUPLICATE_MODES:
            raise errors.InvalidConfiguration(f"Invalid on_duplicate mode '{value}'. Options {list(DUPLICATE_MODES)}")
        self._on_duplicate = value
