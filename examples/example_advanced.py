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
import logging
import sys

import smartacme

verbose = True if "--verbose" in sys.argv else False
logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


async def set_challenge(dns_name, value):
    # [ !!! ADD YOUR CODE TO UPLOAD THE TOKEN TO YOUR DNS SERVER HERE !!! ]
    print(f"{dns_name} --> {value}")


async def remove_challenge(dns_name):
    # [ !!! ADD YOUR CODE TO REMOVE THE TOKEN FROM YOUR DNS SERVER HERE !!! ]
    print(f"{dns_name} removed")


async def main():
    # Load an existing account key if one was given, otherwise a new account key is generated.
    account_key = None
    if len(sys.argv) > 1 and not sys.argv[1].startswith("--"):
        with open(sys.argv[1], "rb") as account_key_file:
            account_key = account_key_file.read()

    # Certificates are kept as JSON files in ./certs and renewed 30 days before they expire
    client = smartacme.SmartAcme(
        account_email="user@jaredhendrickson.com",
        set_challenge=set_challenge,
        remove_challenge=remove_challenge,
        store=smartacme.FileCertificateStore("./certs"),
        account_private_key=account_key,
        environment="integration",
        nameservers=["8.8.8.8", "1.1.1.1"],
        dns_max_cycles=600,  # Keep checking DNS for 1200 seconds (20 minutes) before giving up
        concurrent_authorizations=False,
        issuance_timeout=1800,
        renew_before_days=30,
    )

    try:
        # Concurrent requests for the same certificate share a single ACME order
        records = await asyncio.gather(
            client.get_certificate_for_domain("test.jaredhendrickson.com"),
            client.get_certificate_for_domain("test2.jaredhendrickson.com"),
        )
        for record in records:
            print(f"{record.domain_name} is valid until {record.valid_until.isoformat()}")
    except smartacme.errors.SmartAcmeError as error:
        print(f"Failed to issue certificate: {error.message}")
        sys.exit(1)
    finally:
        await client.stop()

    # Keep the account key to reuse the account on the next run
    if account_key is None:
        with open("account.pem", "wb") as account_key_file:
            account_key_file.write(smartacme.keys.export_account_key(client.client.account_key))


if __name__ == "__main__":
    asyncio.run(main())
