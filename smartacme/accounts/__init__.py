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
"""ACME account registration, export and import."""
import json
import logging
import pathlib

import josepy as jose
import validators
from acme import messages

from .. import errors
from ..client import AcmeWireClient

logger = logging.getLogger(__name__)


class AcmeAccount:
    """
    An ACME account bound to one wire client. Registering the account sets the wire client's `kid` so every later
    request is signed on behalf of this account.
    """

    def __init__(self, client: AcmeWireClient, email: str):
        """
        Args:
            client (smartacme.client.AcmeWireClient): The wire client holding the account key.
            email (str): The contact email address used when registering the account.
        """
        self.client = client
        self.email = email
        self.uri = None
        self.body = {}
        self.account_path = None

    @property
    def email(self) -> str:
        """
        Getter for the `email` property.

        Raises:
            smartacme.errors.InvalidEmail: When `email` is not set.
        """
        if not self._email:
            raise errors.InvalidEmail('No account email found. You must set the email value first.')
        return self._email

    @email.setter
    def email(self, value: str) -> None:
        """
        Setter for the `email` property. This ensures an email address is valid before setting.

        Raises:
            smartacme.errors.InvalidEmail: When the `value` is not a valid email address
        """
        if not validators.email(value):
            raise errors.InvalidEmail(f"Value '{value}' is not a valid email address.")
        self._email = value

    @property
    def registered(self) -> bool:
        """Whether the account URL is known."""
        return self.uri is not None

    async def register(self) -> str:
        """
        Registers the account at the ACME server. By running this method, you are agreeing to the ACME server's terms
        of service. Registering an account key that is already known to the server returns the existing account.

        Returns:
            str: The account URL, which is also used as the `kid` of all later requests.

        Raises:
            smartacme.errors.ProtocolError: When the server does not return the account URL.
        """
        directory = await self.client.fetch_directory()
        terms_of_service = getattr(directory.meta, 'terms_of_service', None)
        if terms_of_service:
            logger.info('Agreeing to the terms of service at %s', terms_of_service)

        registration = messages.NewRegistration.from_data(email=self.email, terms_of_service_agreed=True)
        response = await self.client.signed_request(await self.client.resource_url('newAccount'), registration)
        if not response.location:
            raise errors.ProtocolError('ACME server did not return the account URL in the Location header.')

        self.uri = response.location
        self.body = response.body if isinstance(response.body, dict) else {}
        self.client.kid = self.uri
        logger.info('Using ACME account %s (%s)', self.uri, self.body.get('status', 'unknown'))
        return self.uri

    async def deactivate(self, delete: bool = True) -> None:
        """
        Deactivates the account registration. This action is irreversible.

        Args:
            delete (bool): Indicate whether the associated account file on the local system should also be
                deleted after deactivation.

        Raises:
            smartacme.errors.InvalidAccount: When the account has not been registered or loaded.
        """
        if not self.registered:
            raise errors.InvalidAccount('No account registration found. You must register or load an account first.')

        await self.client.signed_request(self.uri, {'status': 'deactivated'})
        logger.info('Deactivated ACME account %s', self.uri)

        # If this object contains a linked file path, and deletion is requested, delete the linked file
        if self.account_path and delete:
            pathlib.Path(self.account_path).unlink(missing_ok=True)

    def export_account(self) -> str:
        """
        Exports the account as a JSON string that can be re-imported with `load_account()`.

        Returns:
            str: The account encoded as a JSON string, including the private account key.
        """
        if not self.registered:
            raise errors.InvalidAccount('No account registration found. You must register or load an account first.')

        return json.dumps({
            'account_uri': self.uri,
            'email': self.email,
            'directory': self.client.directory_url,
            'verify_ssl': self.client.verify_ssl,
            'account_key': self.client.account_key.json_dumps(),
        })

    def export_account_to_file(self, path: str = '.', name: str = 'account.json') -> None:
        """
        Exports the account as a JSON file.

        Raises:
            smartacme.errors.InvalidPath: when the requested directory path does not exist.
        """
        dir_path = pathlib.Path(path).absolute()

        # Ensure our path is an existing directory, throw an error otherwise
        if not dir_path.is_dir():
            raise errors.InvalidPath(f"Directory at '{path}' does not exist.")

        with open(dir_path.joinpath(name), 'w', encoding='utf-8') as account_file:
            account_file.write(self.export_account())
        self.account_path = str(dir_path.joinpath(name))

    @staticmethod
    def load_account(json_data: str, client: AcmeWireClient = None) -> 'AcmeAccount':
        """
        Loads an account from a JSON data string created by `export_account()`.

        Args:
            json_data (str): The JSON account data string to import.
            client (smartacme.client.AcmeWireClient): An existing wire client to bind the account to. A new one is
                created for the exported directory when omitted.

        Returns:
            smartacme.accounts.AcmeAccount: The imported account. It is ready to sign requests.
        """
        acct_data = json.loads(json_data)
        account_key = jose.JWKRSA.json_loads(acct_data['account_key'])

        if client is None:
            client = AcmeWireClient(acct_data['directory'], verify_ssl=acct_data.get('verify_ssl', True))
        client.account_key = account_key

        account = AcmeAccount(client, acct_data['email'])
        account.uri = acct_data['account_uri']
        client.kid = account.uri
        return account

    @staticmethod
    def load_account_from_file(filepath: str, client: AcmeWireClient = None) -> 'AcmeAccount':
        """
        Loads an account from a JSON file created by `export_account_to_file()`.

        Raises:
            smartacme.errors.InvalidPath: When the JSON file path does not exist.
        """
        filepath = pathlib.Path(filepath).absolute()

        if not filepath.exists():
            raise errors.InvalidPath(f"No JSON account file found at '{filepath}'")

        with open(filepath, 'r', encoding='utf-8') as json_file:
            account = AcmeAccount.load_account(json_file.read(), client=client)
        account.account_path = str(filepath)
        return account
