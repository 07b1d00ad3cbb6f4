# Copyright 2025 Jared Hendrickson
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

import asyncio
import sys

import smartacme

# A real deployment would call its DNS provider's API here. This example prints the record and waits for it to be
# created by hand.
DNS_RECORDS = {}


async def set_challenge(dns_name, value):
    DNS_RECORDS[dns_name] = value
    print(f"Create the TXT record { dns_name } -> { value } and press enter")
    await asyncio.to_thread(sys.stdin.readline)


async def remove_challenge(dns_name):
    DNS_RECORDS.pop(dns_name, None)
    print(f"The TXT record { dns_name } can now be removed")


async def main():
    # Create a client object to interface with the ACME server. In this example, the Let's Encrypt staging environment.
    async with smartacme.SmartAcme(
        account_email="user@example.com",
        set_challenge=set_challenge,
        remove_challenge=remove_challenge,
        store=smartacme.MemoryCertificateStore(),
        environment="integration",
        nameservers=["8.8.8.8", "1.1.1.1"],  # Set the nameservers to query when checking DNS propagation
    ) as client:
        # Request a certificate covering example.com and *.example.com. Subdomains map to the same certificate.
        record = await client.get_certificate_for_domain("test.example.com")
        print(record.certificate)
        print(record.private_key)


if __name__ == "__main__":
    asyncio.run(main())
