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
"""Key pair and CSR generation used for ACME accounts and issued certificates."""
from typing import NamedTuple

import josepy as jose
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from cryptography.x509.oid import NameOID

from .. import errors

KEY_TYPES = ['ec256', 'ec384', 'rsa2048', 'rsa4096']


class KeyPair(NamedTuple):
    """A PEM encoded private/public key pair."""
    private_key: bytes
    public_key: bytes


def generate_private_key(key_type: str = 'rsa2048') -> bytes:
    """
    Generates a new RSA or EC private key.

    Args:
        key_type (str): The requested private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

    Returns:
        bytes: The PEM encoded private key data bytes-string.

    Raises:
        smartacme.errors.InvalidKeyType: When an unknown/unsupported `key_type` is requested.
    """
    # Generate a EC256 or EC384 private key
    if key_type in ('ec256', 'ec384'):
        curve = ec.SECP256R1() if key_type == 'ec256' else ec.SECP384R1()
        key = ec.generate_private_key(curve, default_backend())
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption()
        )
    # Generate a RSA2048 or RSA4096 private key
    if key_type in ('rsa2048', 'rsa4096'):
        return generate_key_pair(int(key_type[3:])).private_key

    # Otherwise, the requested key type is not supported. Throw an error
    raise errors.InvalidKeyType(f"Invalid private key type '{key_type}'. Options {KEY_TYPES}")


def generate_key_pair(bits: int = 2048) -> KeyPair:
    """
    Generates a fresh RSA key pair.

    Args:
        bits (int): The RSA modulus size.

    Returns:
        KeyPair: The PEM encoded private key (PKCS#8) and public key (SubjectPublicKeyInfo).
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits, backend=default_backend())
    return KeyPair(
        private_key=key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=NoEncryption()
        ),
        public_key=key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo),
    )


def public_key_from_private(private_key_pem: bytes) -> bytes:
    """Derives the PEM encoded public key of a PEM encoded private key."""
    key = load_pem_private_key(private_key_pem, password=None, backend=default_backend())
    return key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)


def create_csr(common_name: str, alt_names: list, private_key_pem: bytes) -> bytes:
    """
    Creates a CSR signed by the given private key.

    Args:
        common_name (str): The subject common name. It is always included in the subjectAltNames as well.
        alt_names (list): Additional DNS names to list in the subjectAltNames extension.
        private_key_pem (bytes): The PEM encoded private key that signs the request.

    Returns:
        bytes: The PEM encoded CSR.
    """
    key = load_pem_private_key(private_key_pem, password=None, backend=default_backend())
    names = [common_name] + [name for name in alt_names if name != common_name]
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    ).add_extension(
        x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
        critical=False
    )
    return builder.sign(key, hashes.SHA256(), default_backend()).public_bytes(Encoding.PEM)


def csr_to_der(csr_pem: bytes) -> bytes:
    """Converts a PEM encoded CSR to DER, the encoding the finalize request carries."""
    return x509.load_pem_x509_csr(csr_pem, default_backend()).public_bytes(Encoding.DER)


def generate_account_key(bits: int = 2048) -> jose.JWKRSA:
    """Generates a new RSA account key wrapped as a JWK."""
    rsa_key = rsa.generate_private_key(public_exponent=65537, key_size=bits, backend=default_backend())
    return jose.JWKRSA(key=rsa_key)


def load_account_key(private_key_pem: bytes) -> jose.JWKRSA:
    """
    Loads an existing RSA account key.

    Raises:
        smartacme.errors.InvalidKeyType: When the PEM data is not an RSA private key.
    """
    try:
        key = load_pem_private_key(private_key_pem, password=None, backend=default_backend())
    except ValueError as error:
        raise errors.InvalidKeyType(f"Account key could not be loaded: {error}") from error
    if not isinstance(key, rsa.RSAPrivateKey):
        raise errors.InvalidKeyType("Account keys must be RSA keys, the wire client signs with RS256.")
    return jose.JWKRSA(key=key)


def export_account_key(account_key: jose.JWKRSA) -> bytes:
    """Serializes an account JWK back to a PEM encoded private key."""
    return account_key.key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption()
    )
