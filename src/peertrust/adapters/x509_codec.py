"""
X.509 codec adapter — certificate and key decoding plus signature linkage.

Adapter layer — turns raw bytes from the outside world into domain
Certificates using:
  - asn1crypto: PEM armor handling (bundles with mixed blocks) and
    PKCS#7 certs-only bundles (SignedData.certificates)
  - cryptography (PyCA): X.509 parsing, private keys, signature checks

Accepted certificate encodings:
  PEM (one or more CERTIFICATE / PKCS7 blocks)
    → asn1crypto.pem.unarmor → DER blocks
  DER certificate
    → cryptography: x509.load_der_x509_certificate()
  DER PKCS#7 (.p7b / .p7c)
    → asn1crypto: ContentInfo.load() → SignedData → certificates

The functions here raise on bad input; the stores wrap them in
Result.from_computation() with their own reason codes.
"""

from __future__ import annotations

import structlog
from asn1crypto import cms, pem
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.extensions import ExtensionNotFound

from peertrust.domain.models import Certificate

log = structlog.get_logger()

_CERTIFICATE_BLOCKS = frozenset({"CERTIFICATE", "X509 CERTIFICATE", "TRUSTED CERTIFICATE"})
_PKCS7_BLOCKS = frozenset({"PKCS7", "CMS"})


# ─────────────────────── X.509 Metadata Extraction ───────────────────────


def _extract_subject_alt_names(cert: x509.Certificate) -> tuple[str, ...]:
    """SANs as prefixed strings (DNS:, IP:, URI:, email:), or () if absent."""
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except (ExtensionNotFound, ValueError):
        return ()
    san = ext.value
    names: list[str] = []
    names.extend(f"DNS:{name}" for name in san.get_values_for_type(x509.DNSName))
    names.extend(f"IP:{addr}" for addr in san.get_values_for_type(x509.IPAddress))
    names.extend(f"URI:{uri}" for uri in san.get_values_for_type(x509.UniformResourceIdentifier))
    names.extend(f"email:{mail}" for mail in san.get_values_for_type(x509.RFC822Name))
    return tuple(names)


def _extract_is_ca(cert: x509.Certificate) -> bool:
    try:
        ext = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except (ExtensionNotFound, ValueError):
        return False
    return bool(ext.value.ca)


def to_certificate(cert: x509.Certificate) -> Certificate:
    """Build the domain Certificate from a parsed cryptography certificate."""
    return Certificate(
        der=cert.public_bytes(serialization.Encoding.DER),
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=cert.serial_number,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        subject_name_der=cert.subject.public_bytes(),
        issuer_name_der=cert.issuer.public_bytes(),
        subject_alt_names=_extract_subject_alt_names(cert),
        is_ca=_extract_is_ca(cert),
        x509=cert,
    )


def certificate_from_der(der_bytes: bytes) -> Certificate:
    return to_certificate(x509.load_der_x509_certificate(der_bytes))


# ─────────────────────── Bundle Unwrapping ───────────────────────


def _pkcs7_certificates(der_bytes: bytes) -> list[bytes]:
    """DER blocks from SignedData.certificates of a PKCS#7 certs-only bundle."""
    content_info = cms.ContentInfo.load(der_bytes, strict=True)
    content_type = content_info["content_type"].native
    if content_type != "signed_data":
        raise ValueError(f"Unsupported PKCS#7 content type: {content_type}")

    certs_set = content_info["content"]["certificates"]
    if certs_set is None:
        return []
    return [cert_choice.chosen.dump() for cert_choice in certs_set]


def _der_blocks(data: bytes) -> list[bytes]:
    """Split PEM or DER input into DER-encoded certificates."""
    if pem.detect(data):
        blocks: list[bytes] = []
        for object_type, _headers, der_bytes in pem.unarmor(data, multiple=True):
            if object_type in _CERTIFICATE_BLOCKS:
                blocks.append(der_bytes)
            elif object_type in _PKCS7_BLOCKS:
                blocks.extend(_pkcs7_certificates(der_bytes))
            else:
                log.debug("codec.skipped_pem_block", block=object_type)
        return blocks

    try:
        x509.load_der_x509_certificate(data)
    except ValueError:
        return _pkcs7_certificates(data)
    return [data]


def decode_certificates(data: bytes) -> list[Certificate]:
    """
    Decode every certificate found in `data`, preserving order.

    Raises ValueError when the input is empty or holds no certificate.
    """
    if not data or not data.strip():
        raise ValueError("No certificate data supplied")
    certificates = [certificate_from_der(block) for block in _der_blocks(data)]
    if not certificates:
        raise ValueError("Input contains no certificates")
    return certificates


def to_pem(certificate: Certificate) -> str:
    return pem.armor("CERTIFICATE", certificate.der).decode("ascii")


# ─────────────────────── Keys ───────────────────────


def decode_private_key(data: bytes, password: bytes | None = None) -> PrivateKeyTypes:
    """Load a PEM or DER private key, decrypting with `password` when given."""
    if not data or not data.strip():
        raise ValueError("No private key data supplied")
    if pem.detect(data):
        return serialization.load_pem_private_key(data, password=password)
    return serialization.load_der_private_key(data, password=password)


def _spki(public_key: object) -> bytes:
    return public_key.public_bytes(  # type: ignore[attr-defined]
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_matches_certificate(private_key: PrivateKeyTypes, certificate: Certificate) -> bool:
    """Compare the key's public half with the certificate's SubjectPublicKeyInfo."""
    if certificate.x509 is None:
        return False
    return _spki(private_key.public_key()) == _spki(certificate.x509.public_key())


# ─────────────────────── Signatures ───────────────────────


def is_issued_by(child: Certificate, issuer: Certificate) -> bool:
    """
    True when `child` names `issuer` as its issuer AND its signature verifies
    under the issuer's public key.
    """
    if child.issuer_name_der != issuer.subject_name_der:
        return False
    if child.x509 is None or issuer.x509 is None:
        return False
    try:
        child.x509.verify_directly_issued_by(issuer.x509)
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError):
        return False
    return True


def is_properly_self_signed(certificate: Certificate) -> bool:
    """Self-issued certificate whose signature verifies under its own key."""
    return certificate.is_self_issued and is_issued_by(certificate, certificate)
