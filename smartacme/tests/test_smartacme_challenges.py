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
"""Tests the DNS-01 challenge coordinator of the smartacme package."""
import asyncio
import base64
import hashlib
import json
import unittest

from smartacme import errors, keys
from smartacme.accounts import AcmeAccount
from smartacme.challenges import (
    ChallengeCoordinator,
    ExponentialBackoff,
    dns_key_hash,
    key_authorization,
    strip_wildcard,
)
from smartacme.client import AcmeWireClient
from smartacme.tests import TEST_DIRECTORY, TEST_EMAIL
from smartacme.tests.tools import BASE_URL, FakeAcmeServer, FakeDnsProvider, FakeSleep

DNS_NAME = "_acme-challenge.example.com"


def b64url(data: bytes) -> str:
    """Encodes bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_int(value: int) -> str:
    """Encodes an integer as unpadded base64url of its minimal big-endian bytes."""
    return b64url(value.to_bytes((value.bit_length() + 7) // 8, "big"))


class TestKeyAuthorization(unittest.TestCase):
    """Checks the key authorization and TXT record derivation."""

    def test_matches_independent_computation(self):
        """Checks the derivation against a JWK thumbprint computed by hand (RFC 7638)."""
        account_key = keys.generate_account_key()
        numbers = account_key.key.public_key().public_numbers()
        canonical_jwk = json.dumps(
            {"e": b64url_int(numbers.e), "kty": "RSA", "n": b64url_int(numbers.n)},
            sort_keys=True,
            separators=(",", ":"),
        )
        thumbprint = b64url(hashlib.sha256(canonical_jwk.encode("utf-8")).digest())
        expected_key_authz = f"abc123.{thumbprint}"
        expected_txt = b64url(hashlib.sha256(expected_key_authz.encode("utf-8")).digest())

        self.assertEqual(key_authorization("abc123", account_key), expected_key_authz)
        self.assertEqual(dns_key_hash(expected_key_authz), expected_txt)
        self.assertNotIn("=", expected_txt)

    def test_strip_wildcard(self):
        """Checks that wildcard labels are removed."""
        self.assertEqual(strip_wildcard("*.example.com"), "example.com")
        self.assertEqual(strip_wildcard("example.com"), "example.com")


class TestExponentialBackoff(unittest.IsolatedAsyncioTestCase):
    """Checks the bounds of the validation polling policy."""

    async def test_bounds(self):
        """Checks that polls happen at factors 1 to 128 and the policy gives up afterwards."""
        sleep = FakeSleep()
        backoff = ExponentialBackoff(sleep=sleep)
        polls = []

        async def fetch():
            polls.append(len(polls))
            return "pending"

        with self.assertRaises(errors.IssuanceTimeoutError):
            await backoff.poll(fetch, lambda status: status == "valid", "Test resource")

        self.assertEqual(len(polls), 8)
        self.assertEqual(backoff.attempts, 8)
        self.assertEqual(sleep.delays, [0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0])
        self.assertEqual(backoff.delay_ms(64), 32000)

    async def test_stops_when_done(self):
        """Checks that polling stops at the first final result."""
        sleep = FakeSleep()
        statuses = iter(["pending", "processing", "valid", "pending"])

        async def fetch():
            return next(statuses)

        result = await ExponentialBackoff(sleep=sleep).poll(fetch, lambda status: status == "valid", "Test")
        self.assertEqual(result, "valid")
        self.assertEqual(sleep.delays, [0.5, 1.0])

    async def test_errors_stop_polling(self):
        """Checks that errors raised by the final status check end the polling."""
        sleep = FakeSleep()

        def is_done(status):
            raise errors.ValidationFailedError(f"status is {status}")

        async def fetch():
            return "invalid"

        with self.assertRaises(errors.ValidationFailedError):
            await ExponentialBackoff(sleep=sleep).poll(fetch, is_done, "Test")
        self.assertEqual(sleep.delays, [])


class TestChallengeCoordinator(unittest.IsolatedAsyncioTestCase):
    """Drives authorizations of the in-memory ACME server through the coordinator."""

    account_key = None

    @classmethod
    def setUpClass(cls):
        """Creates an account key shared by every test."""
        cls.account_key = keys.generate_account_key()

    async def asyncSetUp(self):
        """Registers an account and creates a coordinator using the fake DNS provider."""
        self.dns = FakeDnsProvider()
        self.server = FakeAcmeServer(dns=self.dns)
        self.client = AcmeWireClient(TEST_DIRECTORY, account_key=self.account_key)
        self.server.attach(self.client)
        await AcmeAccount(self.client, TEST_EMAIL).register()

        self.sleep = FakeSleep()
        self.coordinator = ChallengeCoordinator(
            self.client,
            set_challenge=self.dns.set_txt_record,
            remove_challenge=self.dns.remove_txt_record,
            check_until_available=self.dns.check_until_available,
            backoff=ExponentialBackoff(sleep=self.sleep),
        )

    async def asyncTearDown(self):
        """Closes the wire client."""
        await self.client.close()

    async def new_authorization(self, identifier: str = "example.com"):
        """Creates an order for one identifier and returns its authorization."""
        response = await self.client.signed_request(
            f"{BASE_URL}/new-order", {"identifiers": [{"type": "dns", "value": identifier}]}
        )
        return await self.coordinator.fetch_authorization(response.body["authorizations"][0])

    async def test_satisfy_wildcard(self):
        """Checks that a wildcard authorization is provisioned, validated and cleaned up."""
        authorization = await self.new_authorization("*.example.com")
        self.assertTrue(authorization.wildcard)
        self.assertEqual(authorization.domain, "example.com")

        chosen = self.coordinator.choose_challenge(authorization)
        self.assertEqual(chosen.challenge.type, "dns-01")
        self.assertEqual(chosen.domain_name_prefixed, DNS_NAME)

        result = await self.coordinator.satisfy(authorization)
        expected_value = self.server.expected_txt_value(chosen.token)

        self.assertEqual(result.status, "valid")
        self.assertEqual(self.dns.set_calls, [(DNS_NAME, expected_value)])
        self.assertEqual(self.dns.checks, [(DNS_NAME, "TXT", expected_value, 30, 2000)])
        self.assertEqual(self.server.challenge_submissions, [(chosen.url, {})])
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])
        self.assertEqual(self.dns.records, {})

    async def test_already_valid(self):
        """Checks that authorizations the server already considers valid are not provisioned again."""
        self.server.reuse_authorizations = True
        authorization = await self.new_authorization()
        result = await self.coordinator.satisfy(authorization)
        self.assertEqual(result.status, "valid")
        self.assertEqual(self.dns.set_calls, [])
        self.assertEqual(self.server.challenge_submissions, [])

    async def test_unsupported_challenge(self):
        """Checks that authorizations without a DNS-01 challenge are rejected."""
        self.server.challenge_types = ("http-01", "tls-alpn-01")
        authorization = await self.new_authorization()
        with self.assertRaises(errors.UnsupportedChallengeError):
            await self.coordinator.satisfy(authorization)
        self.assertEqual(self.dns.set_calls, [])

    async def test_provisioning_failure(self):
        """Checks that DNS provider failures become ProvisioningError and still trigger cleanup."""
        self.dns.fail_on_set = True
        authorization = await self.new_authorization()
        with self.assertRaises(errors.ProvisioningError):
            await self.coordinator.satisfy(authorization)
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])
        self.assertEqual(self.server.challenge_submissions, [])

    async def test_dns_not_propagated(self):
        """Checks that records that never become visible abort before the challenge is submitted."""
        self.dns.propagates = False
        authorization = await self.new_authorization()
        with self.assertRaises(errors.DnsNotPropagatedError):
            await self.coordinator.satisfy(authorization)
        self.assertEqual(self.server.challenge_submissions, [])
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])

    async def test_validation_failure(self):
        """Checks that invalid authorizations raise ValidationFailedError with the server's detail."""
        self.server.authorization_outcome = "invalid"
        authorization = await self.new_authorization()
        with self.assertRaises(errors.ValidationFailedError) as context:
            await self.coordinator.satisfy(authorization)
        self.assertIsInstance(context.exception, errors.OrderFailedError)
        self.assertIn("Incorrect TXT record", context.exception.message)
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])

    async def test_validation_polling(self):
        """Checks that pending authorizations are polled with growing delays."""
        self.server.pending_polls = 2
        authorization = await self.new_authorization()
        result = await self.coordinator.satisfy(authorization)
        self.assertEqual(result.status, "valid")
        self.assertEqual(self.sleep.delays, [0.5, 1.0])

    async def test_validation_timeout(self):
        """Checks that authorizations that stay pending exhaust the polling budget."""
        self.server.pending_polls = 100
        authorization = await self.new_authorization()
        with self.assertRaises(errors.IssuanceTimeoutError):
            await self.coordinator.satisfy(authorization)
        self.assertEqual(len(self.sleep.delays), 7)
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])

    async def test_cleanup_failure_is_logged(self):
        """Checks that failures while removing the record do not fail the authorization."""
        self.dns.fail_on_remove = True
        authorization = await self.new_authorization()
        with self.assertLogs("smartacme.challenges", level="WARNING") as logs:
            result = await self.coordinator.satisfy(authorization)
        self.assertEqual(result.status, "valid")
        self.assertIn(DNS_NAME, logs.output[0])

    async def test_cancellation_runs_cleanup(self):
        """Checks that the record is removed when the authorization task is cancelled."""
        started = asyncio.Event()

        async def hanging_set_challenge(dns_name, value):
            started.set()
            await asyncio.Event().wait()

        self.coordinator.set_challenge = hanging_set_challenge
        authorization = await self.new_authorization()
        task = asyncio.ensure_future(self.coordinator.satisfy(authorization))
        await started.wait()
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.dns.remove_calls, [DNS_NAME])

    async def test_sync_collaborators(self):
        """Checks that plain functions can be used as DNS collaborators."""
        published = {}
        removed = []
        self.server.dns = None
        self.coordinator.set_challenge = published.__setitem__
        self.coordinator.remove_challenge = removed.append
        self.coordinator.check_until_available = lambda name, rtype, value, cycles, interval: published[name] == value

        authorization = await self.new_authorization()
        result = await self.coordinator.satisfy(authorization)
        self.assertEqual(result.status, "valid")
        self.assertIn(DNS_NAME, published)
        self.assertEqual(removed, [DNS_NAME])

    async def test_legacy_submission(self):
        """Checks that legacy directories receive the key authorization in the challenge response."""
        self.server.legacy = True
        await self.client.fetch_directory(refresh=True)
        authorization = await self.new_authorization()
        chosen = self.coordinator.choose_challenge(authorization)

        await self.coordinator.satisfy(authorization)
        self.assertEqual(
            self.server.challenge_submissions,
            [(chosen.url, {"resource": "challenge", "keyAuthorization": chosen.key_authorization})],
        )


if __name__ == "__main__":
    unittest.main()
