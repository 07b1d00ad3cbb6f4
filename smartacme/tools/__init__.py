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
"""DNS tools to assist ACME verification."""
import asyncio
import logging

import dns.asyncresolver
import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)


class DNSQuery:
    """A basic class to make asynchronous DNS queries"""

    def __init__(
        self,
        domain: str,
        rtype: str = "A",
        nameservers: list = None,
        authoritative: bool = False,
        round_robin: bool = False
    ) -> None:
        """
        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `CNAME`, etc.).
            nameservers (list): Nameservers to query when making DNS requests. The system resolvers are used if empty.
            authoritative (bool): Use the authoritative nameserver for the domain.
            round_robin (bool): rotate between each nameserver instead of the default fail-over method.
        """
        self.round_robin = round_robin
        self.type = rtype.upper()
        self.domain = domain
        self.nameservers = list(nameservers) if nameservers else []
        self.authoritative = authoritative
        self.values = []
        self.last_nameserver = ""

    async def resolve(self) -> list:
        """
        Queries the nameservers with our configured object values. Missing records resolve to an empty list.

        Returns:
            list: A list of the record values found.
        """
        try:
            if self.authoritative and not self.last_nameserver:
                self.nameservers = await self._get_authoritative_nameservers()
            self.values = await DNSQuery._resolve(self.domain, rtype=self.type, nameservers=self.nameservers)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            self.values = []
        except dns.exception.DNSException as error:
            logger.debug("DNS query for %s %s failed: %r", self.type, self.domain, error)
            self.values = []

        # Rotate the nameservers if round robin mode is enabled
        self.last_nameserver = self.nameservers[0] if self.nameservers else "system"
        if self.round_robin and len(self.nameservers) > 1:
            self.nameservers = self.nameservers[1:] + [self.nameservers[0]]

        return self.values

    async def _get_authoritative_nameservers(self) -> list:
        """
        Checks the domain's SOA record for the authoritative nameserver of this domain.

        Returns:
            list: The addresses of the authoritative nameserver, or the configured nameservers if none was found.
        """
        domain_sections = self.domain.split(".")

        # Loop through each level of the subdomain to find the SOA for this FQDN.
        while domain_sections:
            domain = ".".join(domain_sections)
            try:
                soa = await DNSQuery._resolve(domain, rtype="SOA", nameservers=self.nameservers)
                primary = soa[0].split(" ")[0].rstrip(".")
                return await DNSQuery._resolve(primary, rtype="A", nameservers=self.nameservers)
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
                domain_sections.pop(0)

        return self.nameservers

    @staticmethod
    async def _resolve(domain: str, rtype: str = "A", nameservers: list = None) -> list:
        """
        Internal function-like DNS request method.

        Returns:
             list: A list of answer values from the request. TXT strings are joined and unquoted.
        """
        resolver = dns.asyncresolver.Resolver()
        if nameservers:
            resolver.nameservers = nameservers

        answer = await resolver.resolve(domain, rtype)
        values = []
        for rdata in answer:
            if rtype == "TXT":
                values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
            else:
                values.append(rdata.to_text())
        return list(filter(None, values))


async def check_until_available(
        dns_name: str,
        record_type: str,
        expected_value: str,
        max_cycles: int = 30,
        interval_ms: int = 2000,
        nameservers: list = None,
        authoritative: bool = False,
        sleep=asyncio.sleep
) -> bool:
    """
    Checks a DNS record until it contains the expected value or until the check cycles run out.

    Args:
        dns_name (str): The record name, e.g. `_acme-challenge.example.com`.
        record_type (str): The record type, e.g. `TXT`.
        expected_value (str): The value that must be present in the answer.
        max_cycles (int): The maximum number of queries.
        interval_ms (int): The pause (in milliseconds) between two queries.
        nameservers (list): DNS server hosts to query, rotated round robin.
        authoritative (bool): Query the authoritative nameserver of the record instead of `nameservers`.
        sleep (callable): The coroutine function used to pause between queries.

    Returns:
        bool: Whether the value was found before the cycles ran out.
    """
    query = DNSQuery(
        dns_name,
        rtype=record_type,
        nameservers=nameservers,
        authoritative=authoritative,
        round_robin=True
    )

    for cycle in range(1, max_cycles + 1):
        values = await query.resolve()
        found = expected_value in values
        action = 'found' if found else 'not found'
        logger.debug("Token '%s' for '%s' %s in %s via %s (cycle %d/%d)",
                     expected_value, dns_name, action, values, query.last_nameserver, cycle, max_cycles)
        if found:
            return True

        # Avoid flooding the DNS server(s) by briefly pausing between DNS checks
        if cycle < max_cycles:
            await sleep(interval_ms / 1000)

    return False
