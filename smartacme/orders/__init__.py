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
"""ACME order lifecycle: NEW -> PENDING -> READY -> PROCESSING -> VALID | INVALID."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import josepy as jose
from acme import messages

from .. import errors
from .. import keys
from ..challenges import ChallengeCoordinator, ExponentialBackoff
from ..client import PEM_CHAIN_CONTENT_TYPE, AcmeWireClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Order:
    """An ACME order as last seen on the server."""
    url: str
    status: str
    identifiers: tuple
    authorizations: tuple
    finalize: str
    certificate: Optional[str] = None
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, url: str, jobj: Any) -> 'Order':
        """
        Raises:
            smartacme.errors.ProtocolError: When the order body is not shaped as RFC 8555 describes.
        """
        try:
            return cls(
                url=url,
                status=jobj['status'],
                identifiers=tuple(identifier['value'] for identifier in jobj['identifiers']),
                authorizations=tuple(jobj['authorizations']),
                finalize=jobj['finalize'],
                certificate=jobj.get('certificate'),
                error=jobj.get('error'),
            )
        except (KeyError, TypeError) as error:
            raise errors.ProtocolError(f"Malformed order at '{url}': {error!r}") from error


class OrderStateMachine:
    """Creates an order, drives its authorizations, finalizes it and downloads the issued certificate chain."""

    def __init__(
            self,
            client: AcmeWireClient,
            coordinator: ChallengeCoordinator,
            backoff: ExponentialBackoff = None,
            concurrent: bool = False
    ):
        """
        Args:
            client (smartacme.client.AcmeWireClient): The registered wire client.
            coordinator (smartacme.challenges.ChallengeCoordinator): Satisfies single authorizations.
            backoff (smartacme.challenges.ExponentialBackoff): The order polling policy. Defaults to the
                coordinator's policy.
            concurrent (bool): Satisfy all authorizations of an order at once instead of one after another.
        """
        self.client = client
        self.coordinator = coordinator
        self.backoff = backoff or coordinator.backoff
        self.concurrent = concurrent

    async def create_order(self, identifiers: list) -> Order:
        """
        Creates a new order for the given DNS identifiers.

        Raises:
            smartacme.errors.ProtocolError: When the server does not return the order URL or a valid order body.
        """
        new_order = messages.NewOrder(identifiers=tuple(
            messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=identifier) for identifier in identifiers
        ))
        response = await self.client.signed_request(await self.client.resource_url('newOrder'), new_order)
        if not response.location:
            raise errors.ProtocolError('ACME server did not return the order URL in the Location header.')

        order = Order.from_json(response.location, response.body)
        logger.info('Created order %s for %s (%s)', order.url, ', '.join(order.identifiers), order.status)
        return order

    async def refresh_order(self, order: Order) -> Order:
        """Fetches the current state of an order with a POST-as-GET request."""
        response = await self.client.post_as_get(order.url)
        return Order.from_json(order.url, response.body)

    async def get_authorizations(self, order: Order) -> list:
        """Fetches every authorization of an order."""
        return [await self.coordinator.fetch_authorization(url) for url in order.authorizations]

    async def satisfy_authorizations(self, order: Order) -> list:
        """
        Satisfies every authorization of the order. The first failure aborts the order; challenge records of
        authorizations still in flight are removed before the error propagates.

        In concurrent mode, authorizations publishing the same TXT record (e.g. `example.com` and `*.example.com`)
        still run one after another. Only authorizations with distinct record names run at the same time.

        Returns:
            list: The valid authorizations, in the order of the order's authorization URLs.
        """
        authorizations = await self.get_authorizations(order)

        if not self.concurrent:
            return [await self.coordinator.satisfy(authorization) for authorization in authorizations]

        # Group by record name, keeping the position of each authorization
        groups = {}
        for index, authorization in enumerate(authorizations):
            groups.setdefault(authorization.domain, []).append((index, authorization))

        async def satisfy_group(group: list) -> list:
            return [(index, await self.coordinator.satisfy(authz)) for index, authz in group]

        tasks = [asyncio.ensure_future(satisfy_group(group)) for group in groups.values()]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return [authz for _, authz in sorted((item for group in results for item in group), key=lambda item: item[0])]

    async def finalize_order(self, order: Order, csr_pem: bytes) -> Order:
        """
        Submits the CSR to the order's finalize URL.

        Raises:
            smartacme.errors.OrderFailedError: When the order is invalid before it could be finalized.
        """
        current = await self.refresh_order(order)
        if current.status == 'invalid':
            raise errors.OrderFailedError(f"Order {order.url} became invalid: {_problem_detail(current.error)}")

        payload = {'csr': jose.encode_b64jose(keys.csr_to_der(csr_pem))}
        response = await self.client.signed_request(order.finalize, payload)
        finalized = Order.from_json(order.url, response.body) if isinstance(response.body, dict) else current
        logger.info('Finalized order %s (%s)', order.url, finalized.status)
        return finalized

    async def wait_for_valid_status(self, order: Order) -> Order:
        """
        Polls the order until the certificate is issued.

        Raises:
            smartacme.errors.OrderFailedError: When the order becomes invalid.
            smartacme.errors.IssuanceTimeoutError: When the polling budget is exhausted.
        """
        def is_done(current: Order) -> bool:
            if current.status == 'valid':
                return True
            if current.status == 'invalid':
                raise errors.OrderFailedError(f"Order {order.url} became invalid: {_problem_detail(current.error)}")
            return False

        if order.status == 'valid' and order.certificate:
            return order
        return await self.backoff.poll(lambda: self.refresh_order(order), is_done, f"Order {order.url}")

    async def download_certificate(self, order: Order) -> str:
        """
        Downloads the PEM encoded certificate chain of a valid order.

        Raises:
            smartacme.errors.ProtocolError: When the order has no certificate URL or the server returns anything
                but a PEM certificate chain.
        """
        if not order.certificate:
            raise errors.ProtocolError(f"Order {order.url} has no certificate URL.")

        response = await self.client.post_as_get(order.certificate, accept=PEM_CHAIN_CONTENT_TYPE)
        if response.content_type != PEM_CHAIN_CONTENT_TYPE:
            raise errors.ProtocolError(
                f"Expected '{PEM_CHAIN_CONTENT_TYPE}' from {order.certificate}, got '{response.content_type}'."
            )
        return response.body.decode('utf-8')


def _problem_detail(problem: Optional[dict]) -> str:
    return (problem or {}).get('detail', 'no detail given')
