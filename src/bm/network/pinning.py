"""TLS certificate and public key pinning.

Pins are checked right after the TLS handshake, before any request bytes are
written. The transports hook :class:`CertificatePinner` into their connection
setup; this module holds the transport-independent decision logic.
"""

from __future__ import annotations

import hashlib
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

logger = logging.getLogger(__name__)

HASH_PREFIX = "sha256/"


@dataclass(frozen=True)
class PinningPolicy:
    """Pinning configuration attached to a request descriptor.

    Hosts absent from ``pinned_hosts`` bypass pinning entirely. For pinned hosts the
    server certificate must either equal one of the certificates at
    ``pinned_certificate_paths`` (DER or PEM files) or have a public key whose
    ``sha256/<hex>`` hash is in ``pinned_public_key_hashes``. When neither matches,
    the connection is rejected unless ``allow_fallback`` is set.
    """

    pinned_hosts: FrozenSet[str] = frozenset()
    pinned_public_key_hashes: FrozenSet[str] = frozenset()
    pinned_certificate_paths: Tuple[str, ...] = ()
    allow_fallback: bool = False
    is_enabled: bool = True

    def __post_init__(self):
        object.__setattr__(self, "pinned_hosts", frozenset(h.lower() for h in self.pinned_hosts))
        object.__setattr__(self, "pinned_public_key_hashes", frozenset(self.pinned_public_key_hashes))
        object.__setattr__(self, "pinned_certificate_paths", tuple(str(p) for p in self.pinned_certificate_paths))

    @classmethod
    def from_dict(cls, data: dict) -> PinningPolicy:
        return cls(
            pinned_hosts=data.get("pinned_hosts", ()),
            pinned_public_key_hashes=data.get("pinned_public_key_hashes", ()),
            pinned_certificate_paths=[str(Path(p).expanduser()) for p in data.get("pinned_certificate_paths", ())],
            allow_fallback=data.get("allow_fallback", False),
            is_enabled=data.get("is_enabled", True),
        )

    def applies_to(self, host: Optional[str]) -> bool:
        return self.is_enabled and host is not None and host.lower() in self.pinned_hosts


class CertificatePinningError(ssl.SSLError):
    """The server certificate matched none of the pins for its host."""


def public_key_hash(der: bytes) -> str:
    """Return ``sha256/<hex>`` of the certificate's DER-encoded SubjectPublicKeyInfo."""
    certificate = x509.load_der_x509_certificate(der)
    spki = certificate.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return HASH_PREFIX + hashlib.sha256(spki).hexdigest()


def load_certificate_der(path: str) -> bytes:
    raw = Path(path).read_bytes()
    if raw.lstrip().startswith(b"-----BEGIN"):
        return ssl.PEM_cert_to_DER_cert(raw.decode("ascii"))
    return raw


def _load_certificates(paths: Iterable[str]) -> List[bytes]:
    certificates = []
    for path in paths:
        try:
            certificates.append(load_certificate_der(path))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load pinned certificate from {path}: {e}")
    return certificates


class CertificatePinner:
    def __init__(self, policy: PinningPolicy):
        self.policy = policy
        self._certificates = _load_certificates(policy.pinned_certificate_paths)

    def create_ssl_context(self) -> ssl.SSLContext:
        """SSL context trusting the system roots plus the pinned certificates."""
        context = ssl.create_default_context()
        for der in self._certificates:
            try:
                context.load_verify_locations(cadata=der)
            except ssl.SSLError as e:
                logger.warning(f"Could not trust pinned certificate: {e}")
        return context

    def is_trusted(self, host: Optional[str], der: Optional[bytes]) -> bool:
        if not self.policy.applies_to(host):
            return True
        if der:
            if any(der == pinned for pinned in self._certificates):
                return True
            try:
                key_hash = public_key_hash(der)
            except (ValueError, UnsupportedAlgorithm) as e:
                logger.warning(f"Public key validation failed for {host}: {e}")
            else:
                if key_hash in self.policy.pinned_public_key_hashes:
                    return True
                logger.warning(f"Server public key hash not pinned for {host}: {key_hash}")
        if self.policy.allow_fallback:
            logger.warning(f"Certificate pinning failed for {host}, falling back to default validation")
            return True
        return False

    def verify(self, host: Optional[str], der: Optional[bytes]) -> None:
        if not self.is_trusted(host, der):
            raise CertificatePinningError(f"Certificate for {host} does not match any pinned certificate or key")
