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
"""Fetches certificates from a remote smartacme instance instead of issuing them locally."""
import asyncio
import logging
from typing import Optional

import aiohttp

from .. import errors
from ..certs import CertificateRecord, CertificateStatus
from ..client import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


class CertRemoteClient:
    """
    Requests certificates from a remote endpoint that shares a secret with this client. The endpoint answers
    `{"status": ..., "certificate": ...}` where `status` is one of `pending`, `existing` or `failed`.
    """

    def __init__(
            self,
            remote_url: str,
            secret: str,
            pending_interval_ms: int = 5000,
            max_cycles: int = 60,
            timeout: int = DEFAULT_TIMEOUT,
            sleep=asyncio.sleep
    ):
        """
        Args:
            remote_url (str): The URL the certificate requests are POSTed to.
            secret (str): The shared secret sent with every request.
            pending_interval_ms (int): The pause (in milliseconds) before asking again for a pending certificate.
            max_cycles (int): The maximum number of requests made for one certificate.
            timeout (int): The total amount of time (in seconds) a single HTTP request may take.
            sleep (callable): The coroutine function used to pause between requests.
        """
        self.remote_url = remote_url
        self.secret = secret
        self.pending_interval_ms = pending_interval_ms
        self.max_cycles = max_cycles
        self.timeout = timeout
        self.sleep = sleep

    async def _post_json(self, payload: dict) -> dict:
        """
        Raises:
            smartacme.errors.TransportError: When the remote endpoint cannot be reached or does not answer with JSON.
        """
        try:
            async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    headers={'User-Agent': DEFAULT_USER_AGENT}
            ) as session:
                async with session.post(self.remote_url, json=payload) as response:
                    response.raise_for_status()
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            raise errors.TransportError(f"Requesting a certificate from {self.remote_url} failed: {error!r}") from error

    async def get_certificate_for_domain(self, domain_name: str) -> Optional[CertificateRecord]:
        """
        Requests the certificate of a domain, asking again while the remote issuance is pending.

        Returns:
            CertificateRecord: The remote certificate, or None when the remote end reports a failure or the
                certificate is still pending after `max_cycles` requests.
        """
        for cycle in range(1, self.max_cycles + 1):
            response = await self._post_json({'domainName': domain_name, 'secret': self.secret})
            status = response.get('status')

            if status == CertificateStatus.EXISTING:
                return CertificateRecord.from_json(response['certificate'])
            if status != CertificateStatus.PENDING:
                logger.error('Could not retrieve certificate for %s (status: %s)', domain_name, status)
                return None

            logger.debug('Certificate for %s is pending remotely (cycle %d/%d)', domain_name, cycle, self.max_cycles)
            if cycle < self.max_cycles:
                await self.sleep(self.pending_interval_ms / 1000)

        logger.error('Certificate for %s was still pending after %d requests', domain_name, self.max_cycles)
        return None
