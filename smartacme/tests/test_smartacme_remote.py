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
"""Tests fetching certificates from a remote smartacme instance."""
import unittest
from unittest import mock

from smartacme.remote import CertRemoteClient
from smartacme.tests.tools import FakeSleep, make_record

REMOTE_URL = "https://certs.example.com/getcert"


class TestCertRemoteClient(unittest.IsolatedAsyncioTestCase):
    """Checks the remote client with a mocked endpoint."""

    async def asyncSetUp(self):
        """Creates a remote client that does not really sleep."""
        self.sleep = FakeSleep()
        self.client = CertRemoteClient(REMOTE_URL, "s3cret", max_cycles=4, sleep=self.sleep)
        self.record = make_record("example.com")

    def patch_endpoint(self, *responses):
        """Replaces the HTTP request with canned JSON responses."""
        patcher = mock.patch.object(self.client, "_post_json", new_callable=mock.AsyncMock, side_effect=responses)
        self.addCleanup(patcher.stop)
        return patcher.start()

    async def test_existing_certificate(self):
        """Checks that existing remote certificates are returned after pending answers."""
        post_json = self.patch_endpoint(
            {"status": "pending"},
            {"status": "existing", "certificate": self.record.to_json()},
        )

        record = await self.client.get_certificate_for_domain("example.com")
        self.assertEqual(record, self.record)
        self.assertEqual(self.sleep.delays, [5.0])
        post_json.assert_awaited_with({"domainName": "example.com", "secret": "s3cret"})

    async def test_failed_certificate(self):
        """Checks that a failed remote issuance is logged and returns nothing."""
        self.patch_endpoint({"status": "failed"})
        with self.assertLogs("smartacme.remote", level="ERROR"):
            self.assertIsNone(await self.client.get_certificate_for_domain("example.com"))
        self.assertEqual(self.sleep.delays, [])

    async def test_pending_is_bounded(self):
        """Checks that the client stops asking once its cycles run out."""
        post_json = self.patch_endpoint(*[{"status": "pending"}] * 4)
        with self.assertLogs("smartacme.remote", level="ERROR"):
            self.assertIsNone(await self.client.get_certificate_for_domain("example.com"))
        self.assertEqual(post_json.await_count, 4)
        self.assertEqual(self.sleep.delays, [5.0, 5.0, 5.0])


if __name__ == "__main__":
    unittest.main()
