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
The ACME wire client. Signs requests as JWS, keeps the replay nonce between requests and decodes every HTTP response
exactly once into an `Ok` or `Err` value before the rest of smartacme sees it.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Union

import aiohttp
import josepy as jose
from acme import jws
from acme import messages

from .. import errors

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = 'application/json'
JOSE_CONTENT_TYPE = 'application/jose+json'
PROBLEM_CONTENT_TYPE = 'application/problem+json'
PEM_CHAIN_CONTENT_TYPE = 'application/pem-certificate-chain'
REPLAY_NONCE_HEADER = 'replay-nonce'
DEFAULT_USER_AGENT = 'smartacme/1.0.0'
DEFAULT_TIMEOUT = 45

# Directory resources smartacme needs, with the names older servers publish them under
DIRECTORY_RESOURCES = {
    'newNonce': ('newNonce', 'new-nonce'),
    'newAccount': ('newAccount', 'new-account', 'new-reg'),
    'newOrder': ('newOrder', 'new-order'),
}
LEGACY_MARKERS = ('new-reg', 'new-authz', 'new-cert')


class RawResponse(NamedTuple):
    """An undecoded HTTP response. Header names are lower-cased."""
    status: int
    headers: dict
    body: bytes


@dataclass(frozen=True)
class Ok:
    """A successful (1xx-3xx) response with its body decoded as JSON when the server sent JSON."""
    status: int
    headers: dict = field(default_factory=dict)
    body: Any = None

    @property
    def location(self) -> Optional[str]:
        return self.headers.get('location')

    @property
    def content_type(self) -> str:
        return _media_type(self.headers)


@dataclass(frozen=True)
class Err:
    """A failed response. `kind` is either `transport` (retryable) or `protocol`."""
    kind: str
    status: int
    detail: str
    problem: Optional[messages.Error] = None

    def to_exception(self) -> errors.SmartAcmeError:
        """Converts this failure into the matching smartacme exception."""
        if self.kind == 'transport':
            return errors.TransportError(self.detail, status=self.status)
        typ = self.problem.typ if self.problem is not None else None
        return errors.ProtocolError(
            f"ACME server returned HTTP {self.status}: {self.detail}",
            typ=typ,
            detail=self.detail,
            status=self.status
        )


Response = Union[Ok, Err]


def _media_type(headers: dict) -> str:
    # Strip parameters from the media-type (rfc2616#section-3.7)
    return headers.get('content-type', '').split(';')[0].strip().lower()


def decode_response(raw: RawResponse) -> Response:
    """
    Decodes a raw HTTP response into an `Ok` or `Err` value.

    Args:
        raw (RawResponse): The response as received from the transport.

    Returns:
        Ok | Err: `Err(kind='transport')` for 5xx statuses, `Err(kind='protocol')` for 4xx statuses and for
            successful responses whose JSON body cannot be parsed, `Ok` otherwise.
    """
    media_type = _media_type(raw.headers)
    text = raw.body.decode('utf-8', errors='replace')

    if raw.status >= 500:
        return Err(kind='transport', status=raw.status, detail=text.strip() or f"HTTP {raw.status}")

    if raw.status >= 400:
        try:
            jobj = json.loads(text)
            # Problem documents are JSON objects, anything else is treated as an opaque body
            problem = messages.Error.from_json(jobj) if isinstance(jobj, dict) else None
        except (ValueError, TypeError, AttributeError, jose.DeserializationError):
            problem = None
        if problem is None:
            return Err(kind='protocol', status=raw.status, detail=text.strip() or f"HTTP {raw.status}")
        return Err(kind='protocol', status=raw.status, detail=problem.detail or problem.typ, problem=problem)

    if media_type.endswith('json') and raw.body:
        try:
            return Ok(status=raw.status, headers=raw.headers, body=json.loads(text))
        except ValueError:
            return Err(kind='protocol', status=raw.status, detail=f"Unparseable JSON body: {text[:200]!r}")

    return Ok(status=raw.status, headers=raw.headers, body=raw.body)


def unwrap(response: Response) -> Ok:
    """Returns the `Ok` value or raises the exception an `Err` value stands for."""
    if isinstance(response, Err):
        raise response.to_exception()
    return response


class AcmeWireClient:
    """
    Performs signed ACME requests against a single ACME directory on behalf of a single account key.
    """

    def __init__(
            self,
            directory_url: str,
            account_key: jose.JWKRSA = None,
            verify_ssl: bool = True,
            user_agent: str = DEFAULT_USER_AGENT,
            timeout: int = DEFAULT_TIMEOUT,
            transport_retries: int = 2
    ):
        """
        Args:
            directory_url (str): The ACME directory URL to interact with.
            account_key (josepy.JWKRSA): The account key every request is signed with.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            user_agent (str): The User-Agent header sent with each request.
            timeout (int): The total amount of time (in seconds) a single HTTP request may take.
            transport_retries (int): How many times an idempotent GET is repeated after a transport failure.
        """
        self.directory_url = directory_url
        self.account_key = account_key
        self.kid = None
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport_retries = transport_retries
        self._directory = None
        self._nonce = None
        self._lock = None
        self._session = None

    async def __aenter__(self) -> 'AcmeWireClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Closes the underlying HTTP session if one was opened."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def nonce(self) -> Optional[str]:
        """The replay nonce the next signed request will consume, if one is cached."""
        return self._nonce

    @property
    def is_legacy(self) -> bool:
        """Whether the fetched directory uses the pre-RFC 8555 resource names."""
        return self._directory is not None and any(
            marker in self._directory.to_partial_json() for marker in LEGACY_MARKERS
        )

    def _signing_lock(self) -> asyncio.Lock:
        # Created lazily so the lock belongs to the running event loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent}
            )
        return self._session

    async def _request(self, method: str, url: str, data: str = None, headers: dict = None) -> RawResponse:
        """
        Sends one HTTP request.

        Raises:
            smartacme.errors.TransportError: When the server cannot be reached or the request times out.
        """
        if method == 'POST':
            logger.debug('Sending POST request to %s:\n%s', url, data)
        else:
            logger.debug('Sending %s request to %s.', method, url)

        session = await self._get_session()
        try:
            async with session.request(method, url, data=data, headers=headers or {}) as response:
                body = await response.read()
                response_headers = {}
                for name, value in response.headers.items():
                    name = name.lower()
                    response_headers[name] = f"{response_headers[name]}, {value}" if name in response_headers else value
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise errors.TransportError(f"Requesting {method} {url} failed: {error!r}") from error

        logger.debug('Received response:\nHTTP %d\n%s', response.status, response_headers)
        return RawResponse(status=response.status, headers=response_headers, body=body)

    def _store_nonce(self, raw: RawResponse) -> None:
        nonce = raw.headers.get(REPLAY_NONCE_HEADER)
        if nonce:
            logger.debug('Storing nonce: %s', nonce)
            self._nonce = nonce

    async def get(self, url: str, accept: str = None) -> Ok:
        """
        Sends an unsigned GET request, repeating it after transport failures.

        Raises:
            smartacme.errors.TransportError: When every attempt failed at the transport level.
            smartacme.errors.ProtocolError: When the server answered with a problem document.
        """
        headers = {'Accept': accept} if accept else {}
        attempt = 0
        while True:
            try:
                raw = await self._request('GET', url, headers=headers)
                self._store_nonce(raw)
                return unwrap(decode_response(raw))
            except errors.TransportError as error:
                attempt += 1
                if attempt > self.transport_retries:
                    raise
                logger.info('Retrying GET %s after transport error (%d/%d): %s',
                            url, attempt, self.transport_retries, error.message)

    async def fetch_directory(self, refresh: bool = False) -> messages.Directory:
        """
        Fetches the ACME directory and caches it for the lifetime of this client.

        Args:
            refresh (bool): Fetch the directory again even if a cached copy exists.

        Returns:
            acme.messages.Directory: The decoded directory.

        Raises:
            smartacme.errors.ProtocolError: When the directory is not a JSON object or lacks a required resource.
        """
        if self._directory is not None and not refresh:
            return self._directory

        response = await self.get(self.directory_url)
        if not isinstance(response.body, dict):
            raise errors.ProtocolError(f"ACME directory at '{self.directory_url}' is not a JSON object.")

        for resource, names in DIRECTORY_RESOURCES.items():
            if not any(name in response.body for name in names):
                raise errors.ProtocolError(f"ACME directory at '{self.directory_url}' lacks the '{resource}' resource.")

        try:
            self._directory = messages.Directory.from_json(dict(response.body))
        except jose.DeserializationError as error:
            raise errors.ProtocolError(f"ACME directory at '{self.directory_url}' is malformed: {error}") from error
        return self._directory

    async def resource_url(self, resource: str) -> str:
        """Looks up a directory resource by its RFC 8555 name, falling back to the older names."""
        directory = (await self.fetch_directory()).to_partial_json()
        for name in DIRECTORY_RESOURCES.get(resource, (resource,)):
            if name in directory:
                return directory[name]
        raise errors.ProtocolError(f"ACME directory at '{self.directory_url}' lacks the '{resource}' resource.")

    async def new_nonce(self) -> str:
        """
        Requests a fresh replay nonce from the `newNonce` resource.

        Raises:
            smartacme.errors.ProtocolError: When the server response carries no Replay-Nonce header.
        """
        logger.debug('Requesting fresh nonce')
        raw = await self._request('HEAD', await self.resource_url('newNonce'))
        if raw.status >= 400:
            raise decode_response(raw).to_exception()
        nonce = raw.headers.get(REPLAY_NONCE_HEADER)
        if not nonce:
            raise errors.ProtocolError('ACME server did not return a Replay-Nonce header.')
        return nonce

    async def _take_nonce(self) -> str:
        nonce, self._nonce = self._nonce, None
        if nonce is None:
            nonce = await self.new_nonce()
        return nonce

    def _wrap_in_jws(self, payload: Any, nonce: str, url: str) -> str:
        if payload is None:
            jobj = b''
        elif isinstance(payload, bytes):
            jobj = payload
        elif isinstance(payload, jose.JSONDeSerializable):
            jobj = payload.json_dumps().encode()
        else:
            jobj = json.dumps(payload).encode()
        logger.debug('JWS payload:\n%s', jobj)

        try:
            decoded_nonce = jose.decode_b64jose(nonce)
        except jose.DeserializationError as error:
            raise errors.ProtocolError(f"ACME server sent an invalid nonce '{nonce}'.") from error

        kwargs = {'alg': jose.RS256, 'nonce': decoded_nonce, 'url': url}
        # newAccount must not carry a kid, every request after registration must
        if self.kid is not None:
            kwargs['kid'] = self.kid
        return jws.JWS.sign(jobj, key=self.account_key, **kwargs).json_dumps()

    async def _signed_request_once(self, url: str, payload: Any, accept: str = None) -> Ok:
        data = self._wrap_in_jws(payload, await self._take_nonce(), url)
        headers = {'Content-Type': JOSE_CONTENT_TYPE}
        if accept:
            headers['Accept'] = accept
        raw = await self._request('POST', url, data=data, headers=headers)
        self._store_nonce(raw)
        return unwrap(decode_response(raw))

    async def signed_request(self, url: str, payload: Any = None, accept: str = None) -> Ok:
        """
        Sends a JWS signed POST request. A `None` payload sends a POST-as-GET request.

        If the server rejects the nonce with a `badNonce` error, the request is retried once with a fresh nonce
        obtained from the `newNonce` resource.

        Args:
            url (str): The URL to POST to. It is also signed into the protected header.
            payload (dict | josepy.JSONDeSerializable | bytes | None): The request payload.
            accept (str): An optional Accept header value.

        Returns:
            Ok: The decoded response.

        Raises:
            smartacme.errors.InvalidAccount: When no account key is configured.
            smartacme.errors.ProtocolError: When the server answers with a problem document.
            smartacme.errors.TransportError: When the server cannot be reached or fails with a 5xx status.
        """
        if self.account_key is None:
            raise errors.InvalidAccount('No account key found. Signed requests need an account key.')

        async with self._signing_lock():
            try:
                return await self._signed_request_once(url, payload, accept)
            except errors.ProtocolError as error:
                if error.code != 'badNonce':
                    raise
                logger.debug('Retrying request after error:\n%s', error.message)
                self._nonce = None
                return await self._signed_request_once(url, payload, accept)

    async def post_as_get(self, url: str, accept: str = None) -> Ok:
        """Fetches an ACME resource with an empty signed payload (RFC 8555 section 6.3)."""
        return await self.signed_request(url, None, accept=accept)
