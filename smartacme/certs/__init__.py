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
Issued certificate records, the stores that keep them, and the cache that tracks which domains are being issued right
now.
"""
import asyncio
import json
import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import validators
from cryptography import x509
from cryptography.hazmat.backends import default_backend

from .. import errors

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CertificateStatus:
    """The states a certificate domain can be in."""
    PENDING = 'pending'
    EXISTING = 'existing'
    NONEXISTING = 'nonexisting'
    FAILED = 'failed'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_millis(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def _to_millis(value: datetime) -> int:
    return round((value - EPOCH) / timedelta(milliseconds=1))


@dataclass(frozen=True)
class CertificateRecord:
    """An issued certificate together with the key material it was issued for."""
    domain_name: str
    created: datetime
    private_key: str
    public_key: str
    csr: str
    certificate: str
    valid_until: datetime

    def __post_init__(self):
        # Timestamps are kept at the millisecond precision of the JSON form
        object.__setattr__(self, 'created', _from_millis(_to_millis(self.created)))
        object.__setattr__(self, 'valid_until', _from_millis(_to_millis(self.valid_until)))

    @classmethod
    def from_certificate(
            cls,
            domain_name: str,
            private_key: str,
            public_key: str,
            csr: str,
            certificate: str,
            created: datetime = None
    ) -> 'CertificateRecord':
        """
        Creates a record, reading `valid_until` from the leaf of the PEM certificate chain.

        Raises:
            smartacme.errors.InvalidCertificate: When `certificate` is not a PEM encoded certificate.
        """
        try:
            leaf = x509.load_pem_x509_certificate(certificate.encode('utf-8'), default_backend())
        except ValueError as error:
            raise errors.InvalidCertificate(f"Certificate for '{domain_name}' could not be read: {error}") from error

        return cls(
            domain_name=domain_name,
            created=created or _utcnow(),
            private_key=private_key,
            public_key=public_key,
            csr=csr,
            certificate=certificate,
            valid_until=leaf.not_valid_after_utc,
        )

    def is_still_valid(self, now: datetime = None) -> bool:
        """Whether the certificate has not expired yet."""
        return self.valid_until >= (now or _utcnow())

    def should_be_renewed(self, days: int = 10, now: datetime = None) -> bool:
        """Whether the certificate expires within the next `days` days."""
        return self.valid_until < (now or _utcnow()) + timedelta(days=days)

    def to_json(self) -> dict:
        """Serializes the record. Timestamps are milliseconds since the epoch."""
        return {
            'domainName': self.domain_name,
            'created': _to_millis(self.created),
            'privateKey': self.private_key,
            'publicKey': self.public_key,
            'csr': self.csr,
            'certificate': self.certificate,
            'validUntil': _to_millis(self.valid_until),
        }

    @classmethod
    def from_json(cls, jobj: dict) -> 'CertificateRecord':
        """
        Raises:
            smartacme.errors.InvalidCertificate: When required fields are missing.
        """
        try:
            return cls(
                domain_name=jobj['domainName'],
                created=_from_millis(jobj['created']),
                private_key=jobj['privateKey'],
                public_key=jobj['publicKey'],
                csr=jobj['csr'],
                certificate=jobj['certificate'],
                valid_until=_from_millis(jobj['validUntil']),
            )
        except (KeyError, TypeError) as error:
            raise errors.InvalidCertificate(f"Certificate record is incomplete: {error!r}") from error


class CertMatcher:
    """Maps requested domain names to the domain a certificate is issued for."""

    @staticmethod
    def get_certificate_domain_name(domain: str) -> str:
        """
        Returns the certificate domain of a name. `example.com`, `sub.example.com` and `*.example.com` all map to
        `example.com`, which is covered by a certificate for `example.com` and `*.example.com`.

        Raises:
            smartacme.errors.InvalidDomain: When the name is not a valid domain or is nested four or more levels deep.
        """
        name = domain[2:] if domain.startswith('*.') else domain
        if not validators.domain(name):
            raise errors.InvalidDomain(f"Value '{domain}' is not a valid domain.")

        labels = name.split('.')
        if len(labels) > 3:
            raise errors.InvalidDomain(f"Domain '{domain}' is nested too deep to be covered by a wildcard certificate.")
        return '.'.join(labels[-2:])


class CertificateStore:
    """
    The storage contract of the certificate cache. Implementations persist one record per domain name.
    """

    async def get(self, domain_name: str) -> Optional[CertificateRecord]:
        raise NotImplementedError

    async def upsert(self, record: CertificateRecord) -> None:
        raise NotImplementedError

    async def delete(self, domain_name: str) -> None:
        raise NotImplementedError


class MemoryCertificateStore(CertificateStore):
    """Keeps records in memory for the lifetime of the process."""

    def __init__(self):
        self.records = {}

    async def get(self, domain_name: str) -> Optional[CertificateRecord]:
        return self.records.get(domain_name)

    async def upsert(self, record: CertificateRecord) -> None:
        self.records[record.domain_name] = record

    async def delete(self, domain_name: str) -> None:
        self.records.pop(domain_name, None)


class FileCertificateStore(CertificateStore):
    """Keeps one `<domain>.json` file per record in an existing directory."""

    def __init__(self, path: str):
        """
        Raises:
            smartacme.errors.InvalidPath: When the directory does not exist.
        """
        self.path = pathlib.Path(path).absolute()
        if not self.path.is_dir():
            raise errors.InvalidPath(f"Directory at '{path}' does not exist.")

    def _file(self, domain_name: str) -> pathlib.Path:
        return self.path.joinpath(f"{domain_name}.json")

    def _read(self, domain_name: str) -> Optional[CertificateRecord]:
        filepath = self._file(domain_name)
        if not filepath.exists():
            return None
        with open(filepath, 'r', encoding='utf-8') as record_file:
            return CertificateRecord.from_json(json.load(record_file))

    def _write(self, record: CertificateRecord) -> None:
        with open(self._file(record.domain_name), 'w', encoding='utf-8') as record_file:
            json.dump(record.to_json(), record_file)

    async def get(self, domain_name: str) -> Optional[CertificateRecord]:
        return await asyncio.to_thread(self._read, domain_name)

    async def upsert(self, record: CertificateRecord) -> None:
        await asyncio.to_thread(self._write, record)

    async def delete(self, domain_name: str) -> None:
        await asyncio.to_thread(self._file(domain_name).unlink, missing_ok=True)


def _consume_exception(future: asyncio.Future) -> None:
    # Marks the exception as retrieved when nobody waits for a failed issuance
    if not future.cancelled():
        future.exception()


class CertificateCache:
    """
    Tracks certificate domains with an issuance in flight and reads and writes issued records through a store.
    """

    def __init__(self, store: CertificateStore):
        """
        Args:
            store (CertificateStore): Where issued records are kept.
        """
        self.store = store
        self._pending = {}
        self._lock = None

    def _pending_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def is_pending(self, domain_name: str) -> bool:
        return domain_name in self._pending

    async def get_certificate_status(self, domain_name: str) -> str:
        """
        Returns:
            str: `pending` while an issuance is in flight, `existing` when a record is stored, `nonexisting`
                otherwise.
        """
        if self.is_pending(domain_name):
            return CertificateStatus.PENDING
        if await self.store.get(domain_name) is not None:
            return CertificateStatus.EXISTING
        return CertificateStatus.NONEXISTING

    async def announce_certificate(self, domain_name: str) -> asyncio.Future:
        """
        Marks a domain as pending.

        Returns:
            asyncio.Future: Resolves with the issued record, or fails with the error that aborted the issuance.

        Raises:
            smartacme.errors.DuplicateRequestError: When an issuance for the domain is already in flight.
        """
        async with self._pending_lock():
            if domain_name in self._pending:
                raise errors.DuplicateRequestError(f"A certificate for '{domain_name}' is already being issued.")
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._pending[domain_name] = future
        logger.debug('Announced certificate for %s', domain_name)
        return future

    async def wait_for_certificate(self, domain_name: str) -> Optional[CertificateRecord]:
        """Waits for the in-flight issuance of a domain, or returns the stored record if there is none."""
        future = self._pending.get(domain_name)
        if future is None:
            return await self.retrieve_certificate(domain_name)
        return await asyncio.shield(future)

    async def retrieve_certificate(self, domain_name: str) -> Optional[CertificateRecord]:
        return await self.store.get(domain_name)

    async def store_certificate(self, record: CertificateRecord) -> None:
        """Stores a record and resolves the pending entry of its domain."""
        await self.store.upsert(record)
        self.settle_certificate(record)
        logger.info('Stored certificate for %s, valid until %s', record.domain_name, record.valid_until.isoformat())

    def settle_certificate(self, record: CertificateRecord) -> None:
        """Drops the pending entry of a domain whose record is already stored. Waiting callers receive `record`."""
        future = self._pending.pop(record.domain_name, None)
        if future is not None and not future.done():
            future.set_result(record)

    def release_certificate(self, domain_name: str, error: BaseException) -> None:
        """Drops the pending entry of a domain after its issuance failed. Waiting callers receive `error`."""
        future = self._pending.pop(domain_name, None)
        if future is None or future.done():
            return
        if not isinstance(error, Exception):
            error = errors.OrderFailedError(f"Issuance of '{domain_name}' was cancelled.")
        future.set_exception(error)
        logger.debug('Released pending certificate for %s', domain_name)

    async def delete_certificate(self, domain_name: str) -> None:
        await self.store.delete(domain_name)
        logger.info('Deleted certificate for %s', domain_name)
