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
"""Custom exception classes for smartacme."""
from acme.messages import ERROR_PREFIX

OLD_ERROR_PREFIX = "urn:acme:error:"


class SmartAcmeError(Exception):
    """Base class for every error raised by smartacme."""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(SmartAcmeError):
    """Error occurs when the ACME server cannot be reached or answers with a 5xx status. Retryable."""
    def __init__(self, message: str, status: int = None) -> None:
        super().__init__(message)
        self.status = status


class ProtocolError(SmartAcmeError):
    """Error occurs when the ACME server returns a problem document (4xx) or a body that cannot be parsed."""
    def __init__(self, message: str, typ: str = None, detail: str = None, status: int = None) -> None:
        super().__init__(message)
        self.typ = typ
        self.detail = detail
        self.status = status

    @property
    def code(self) -> str:
        """The short ACME error code (e.g. `badNonce`) if the problem type is an ACME URN, old style URNs included."""
        for prefix in (ERROR_PREFIX, OLD_ERROR_PREFIX):
            if self.typ and self.typ.startswith(prefix):
                return self.typ[len(prefix):]
        return None


class UnsupportedChallengeError(SmartAcmeError):
    """Error occurs when the requested ACME server does not offer the DNS-01 challenge"""


class ProvisioningError(SmartAcmeError):
    """Error occurs when the external DNS collaborator fails to publish the challenge record"""


class DnsNotPropagatedError(SmartAcmeError):
    """Error occurs when the challenge TXT record is not visible in DNS before the check cycles run out"""


class OrderFailedError(SmartAcmeError):
    """Error occurs when the ACME server marks an order as invalid"""


class ValidationFailedError(OrderFailedError):
    """Error occurs when the ACME server marks a challenge or authorization as invalid"""


class IssuanceTimeoutError(SmartAcmeError):
    """Error occurs when the max time has been exceeded waiting for an ACME server event"""


class DuplicateRequestError(SmartAcmeError):
    """Error occurs when a certificate is requested for a domain that is already being issued"""


class InvalidKeyType(SmartAcmeError):
    """Error occurs when the requested private key type is unsupported"""


class InvalidCertificate(SmartAcmeError):
    """Error occurs when the certificate is invalid or does not exist."""


class InvalidAccount(SmartAcmeError):
    """Error occurs when requests are made to the ACME server without registration"""


class InvalidEmail(SmartAcmeError):
    """Error occurs when an account action was requested but no valid email value exists"""


class InvalidDomain(SmartAcmeError):
    """Error occurs when a domain name is missing or not RFC2181 compliant"""


class InvalidPath(SmartAcmeError):
    """Error occurs when a requested file path does not exist"""


class InvalidConfiguration(SmartAcmeError):
    """Error occurs when a configuration value has the wrong type or an unknown option is requested"""
