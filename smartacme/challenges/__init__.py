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
Turns ACME authorizations into satisfied DNS-01 challenges. Each authorization runs through
SELECT -> PROVISION -> WAIT_PROPAGATION -> SUBMIT -> POLL_VALIDATION, and the challenge record is removed again no
matter how the authorization ends.
"""
import asyncio
import hashlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import josepy as jose

from .. import errors
from .. import tools
from ..client import AcmeWireClient

logger = logging.getLogger(__name__)

DNS_LABEL = '_acme-challenge'
DNS01 = 'dns-01'
TERMINAL_FAILURES = ('invalid', 'deactivated', 'expired', 'revoked')


def strip_wildcard(domain: str) -> str:
    """Strips the wildcard portion of a domain (*.) if present."""
    return domain[2:] if domain.startswith("*.") else domain


def key_authorization(token: str, account_key: jose.JWK) -> str:
    """
    Derives the key authorization of a challenge token (RFC 8555 section 8.1).

    Returns:
        str: `token + "." + base64url(SHA-256 JWK thumbprint of the account key)`
    """
    return f"{token}.{jose.b64encode(account_key.thumbprint()).decode()}"


def dns_key_hash(key_authz: str) -> str:
    """Derives the TXT record value for a key authorization: `base64url(sha256(key_authz))`."""
    return jose.b64encode(hashlib.sha256(key_authz.encode('utf-8')).digest()).decode()


async def maybe_await(value: Any) -> Any:
    """Awaits `value` if a collaborator returned an awaitable, so plain functions work as collaborators too."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class Challenge:
    """A challenge offered inside an authorization."""
    type: str
    url: str
    token: str
    status: str = 'pending'
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, jobj: dict) -> 'Challenge':
        return cls(
            type=jobj['type'],
            url=jobj.get('url') or jobj.get('uri'),
            token=jobj.get('token', ''),
            status=jobj.get('status', 'pending'),
            error=jobj.get('error'),
        )


@dataclass(frozen=True)
class ChosenChallenge:
    """The DNS-01 challenge picked for an authorization, with everything needed to publish and answer it."""
    challenge: Challenge
    key_authorization: str
    dns_key_hash: str
    domain_name: str
    domain_name_prefixed: str

    @property
    def url(self) -> str:
        return self.challenge.url

    @property
    def token(self) -> str:
        return self.challenge.token


@dataclass(frozen=True)
class Authorization:
    """An ACME authorization for a single identifier."""
    url: str
    identifier: str
    status: str
    challenges: tuple = ()
    wildcard: bool = False

    @property
    def domain(self) -> str:
        """The identifier without a wildcard label."""
        return strip_wildcard(self.identifier)

    @classmethod
    def from_json(cls, url: str, jobj: Any) -> 'Authorization':
        """
        Raises:
            smartacme.errors.ProtocolError: When the authorization body is not shaped as RFC 8555 describes.
        """
        try:
            return cls(
                url=url,
                identifier=jobj['identifier']['value'],
                status=jobj['status'],
                challenges=tuple(Challenge.from_json(chall) for chall in jobj.get('challenges', [])),
                wildcard=bool(jobj.get('wildcard', False)),
            )
        except (KeyError, TypeError) as error:
            raise errors.ProtocolError(f"Malformed authorization at '{url}': {error!r}") from error

    def find_challenge(self, token: str) -> Optional[Challenge]:
        for challenge in self.challenges:
            if challenge.token == token:
                return challenge
        return None


class ExponentialBackoff:
    """
    Polling policy for server-side validation. Polls happen at factors 1, 2, 4, ... `max_factor`; between two
    polls the policy waits `factor * base_delay_ms` and doubles the factor. An unfinished poll at `max_factor` aborts.
    """

    def __init__(self, base_delay_ms: int = 500, max_factor: int = 128, sleep: Callable[[float], Awaitable] = None):
        self.base_delay_ms = base_delay_ms
        self.max_factor = max_factor
        self.sleep = sleep or asyncio.sleep

    def delay_ms(self, factor: int) -> int:
        return factor * self.base_delay_ms

    @property
    def attempts(self) -> int:
        """The number of polls made before giving up."""
        return self.max_factor.bit_length()

    async def poll(self, fetch: Callable[[], Awaitable], is_done: Callable[[Any], bool], what: str) -> Any:
        """
        Calls `fetch` until `is_done` accepts its result. `is_done` raises to stop polling with an error.

        Raises:
            smartacme.errors.IssuanceTimeoutError: When the retry budget is exhausted.
        """
        factor = 1
        while factor <= self.max_factor:
            result = await fetch()
            if is_done(result):
                return result
            if factor * 2 > self.max_factor:
                break
            delay = self.delay_ms(factor)
            logger.debug('%s is not final yet, polling again in %d ms', what, delay)
            await self.sleep(delay / 1000)
            factor *= 2

        raise errors.IssuanceTimeoutError(f"{what} did not reach a final status after {self.attempts} polls.")


class ChallengeCoordinator:
    """Satisfies authorizations using the DNS-01 challenge and an external DNS collaborator."""

    def __init__(
            self,
            client: AcmeWireClient,
            set_challenge: Callable,
            remove_challenge: Callable,
            check_until_available: Callable = None,
            dns_max_cycles: int = 30,
            dns_interval_ms: int = 2000,
            nameservers: list = None,
            backoff: ExponentialBackoff = None
    ):
        """
        Args:
            client (smartacme.client.AcmeWireClient): The registered wire client.
            set_challenge (callable): `set_challenge(dns_name, value)` publishes the TXT record. May be async.
            remove_challenge (callable): `remove_challenge(dns_name)` removes the TXT record again. May be async.
            check_until_available (callable): `check_until_available(dns_name, record_type, value, max_cycles,
                interval_ms)` returns whether the record became visible. Defaults to
                `smartacme.tools.check_until_available` using `nameservers`.
            dns_max_cycles (int): The maximum number of DNS propagation checks.
            dns_interval_ms (int): The pause (in milliseconds) between DNS propagation checks.
            nameservers (list): DNS server hosts for the default propagation check.
            backoff (ExponentialBackoff): The validation polling policy.
        """
        self.client = client
        self.set_challenge = set_challenge
        self.remove_challenge = remove_challenge
        self.check_until_available = check_until_available or self._default_check
        self.dns_max_cycles = dns_max_cycles
        self.dns_interval_ms = dns_interval_ms
        self.nameservers = nameservers
        self.backoff = backoff or ExponentialBackoff()

    async def _default_check(self, dns_name, record_type, expected_value, max_cycles, interval_ms) -> bool:
        return await tools.check_until_available(
            dns_name, record_type, expected_value, max_cycles, interval_ms, nameservers=self.nameservers
        )

    async def fetch_authorization(self, url: str) -> Authorization:
        """Fetches an authorization with a POST-as-GET request."""
        response = await self.client.post_as_get(url)
        if not isinstance(response.body, dict):
            raise errors.ProtocolError(f"Authorization at '{url}' is not a JSON object.")
        return Authorization.from_json(url, response.body)

    def choose_challenge(self, authorization: Authorization) -> ChosenChallenge:
        """
        Picks the DNS-01 challenge of an authorization and derives its key authorization and TXT record.

        Raises:
            smartacme.errors.UnsupportedChallengeError: When the authorization offers no DNS-01 challenge.
        """
        for challenge in authorization.challenges:
            if challenge.type == DNS01:
                break
        else:
            offered = [challenge.type for challenge in authorization.challenges]
            raise errors.UnsupportedChallengeError(
                f"ACME server at '{self.client.directory_url}' does not offer the DNS-01 challenge for "
                f"'{authorization.identifier}' (offered: {offered})."
            )

        key_authz = key_authorization(challenge.token, self.client.account_key)
        return ChosenChallenge(
            challenge=challenge,
            key_authorization=key_authz,
            dns_key_hash=dns_key_hash(key_authz),
            domain_name=authorization.domain,
            domain_name_prefixed=f"{DNS_LABEL}.{authorization.domain}",
        )

    async def satisfy(self, authorization: Authorization) -> Authorization:
        """
        Drives one authorization to the `valid` status.

        Returns:
            Authorization: The final, valid authorization.

        Raises:
            smartacme.errors.UnsupportedChallengeError: When no DNS-01 challenge is offered.
            smartacme.errors.ProvisioningError: When the DNS collaborator fails to publish the record.
            smartacme.errors.DnsNotPropagatedError: When the record does not become visible in time.
            smartacme.errors.ValidationFailedError: When the ACME server marks the authorization invalid.
            smartacme.errors.IssuanceTimeoutError: When the validation polling budget is exhausted.
        """
        if authorization.status == 'valid':
            logger.info('Authorization for %s is already valid', authorization.identifier)
            return authorization

        chosen = self.choose_challenge(authorization)
        try:
            await self._provision(chosen)
            await self._wait_for_propagation(chosen)
            await self._submit(chosen)
            return await self._poll_validation(authorization, chosen)
        finally:
            await self._cleanup(chosen)

    async def _provision(self, chosen: ChosenChallenge) -> None:
        logger.info('Setting DNS challenge %s -> %s', chosen.domain_name_prefixed, chosen.dns_key_hash)
        try:
            await maybe_await(self.set_challenge(chosen.domain_name_prefixed, chosen.dns_key_hash))
        except errors.SmartAcmeError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise errors.ProvisioningError(
                f"Setting the DNS challenge for '{chosen.domain_name_prefixed}' failed: {error!r}"
            ) from error

    async def _wait_for_propagation(self, chosen: ChosenChallenge) -> None:
        available = await maybe_await(self.check_until_available(
            chosen.domain_name_prefixed, 'TXT', chosen.dns_key_hash, self.dns_max_cycles, self.dns_interval_ms
        ))
        if not available:
            raise errors.DnsNotPropagatedError(
                f"TXT record '{chosen.domain_name_prefixed}' did not show '{chosen.dns_key_hash}' "
                f"within {self.dns_max_cycles} checks."
            )
        logger.info('DNS is set for %s', chosen.domain_name_prefixed)

    async def _submit(self, chosen: ChosenChallenge) -> None:
        if self.client.is_legacy:
            payload = {'resource': 'challenge', 'keyAuthorization': chosen.key_authorization}
        else:
            payload = {}
        await self.client.signed_request(chosen.url, payload)

    async def _poll_validation(self, authorization: Authorization, chosen: ChosenChallenge) -> Authorization:
        def is_done(current: Authorization) -> bool:
            if current.status == 'valid':
                return True
            if current.status in TERMINAL_FAILURES:
                challenge = current.find_challenge(chosen.token)
                problem = (challenge.error or {}) if challenge else {}
                raise errors.ValidationFailedError(
                    f"Authorization for '{current.identifier}' is {current.status}: "
                    f"{problem.get('detail', 'no detail given')}"
                )
            return False

        result = await self.backoff.poll(
            lambda: self.fetch_authorization(authorization.url),
            is_done,
            f"Authorization for '{authorization.identifier}'"
        )
        logger.info('Authorization for %s is valid', authorization.identifier)
        return result

    async def _cleanup(self, chosen: ChosenChallenge) -> None:
        try:
            await maybe_await(self.remove_challenge(chosen.domain_name_prefixed))
        except Exception as error:  # pylint: disable=broad-except
            logger.warning('Removing the DNS challenge %s failed: %r', chosen.domain_name_prefixed, error)
