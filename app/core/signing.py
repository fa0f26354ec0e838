from __future__ import annotations

import base64
import binascii
import logging
from functools import lru_cache

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from app.core.errors import MalformedMessageError, SignatureVerificationError, SigningKeyError
from app.core.settings import settings
from app.schemas.messages import Message
from app.services import message_codec

logger = logging.getLogger(__name__)

XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'


def _read_key(path: str) -> str:
    with open(path, "r", encoding="utf-8") as key_file:
        return key_file.read()


@lru_cache(maxsize=1)
def _load_private_key() -> rsa.RSAPrivateKey:
    pem = settings.fsp_private_key
    if not pem and settings.fsp_private_key_path:
        pem = _read_key(settings.fsp_private_key_path)
    if not pem:
        raise SigningKeyError("FSP private key not configured")
    password = settings.fsp_private_key_password
    try:
        key = serialization.load_pem_private_key(
            pem.encode("utf-8"), password=password.encode("utf-8") if password else None
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningKeyError(f"FSP private key could not be loaded: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningKeyError("FSP private key must be an RSA key")
    return key


def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """Accept either an X.509 certificate or a bare SubjectPublicKeyInfo PEM."""
    raw = pem.encode("utf-8")
    try:
        if b"CERTIFICATE" in raw:
            key = x509.load_pem_x509_certificate(raw).public_key()
        else:
            key = serialization.load_pem_public_key(raw)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningKeyError(f"Public key could not be loaded: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise SigningKeyError("Public key must be an RSA key")
    return key


@lru_cache(maxsize=1)
def _load_ess_public_key() -> rsa.RSAPublicKey:
    pem = settings.ess_public_key
    if not pem and settings.ess_public_certificate_path:
        pem = _read_key(settings.ess_public_certificate_path)
    if not pem:
        raise SigningKeyError("ESS public key not configured")
    return load_public_key(pem)


def clear_key_cache() -> None:
    _load_private_key.cache_clear()
    _load_ess_public_key.cache_clear()


def canonicalize(data: etree._Element) -> bytes:
    """Compact ``<Data>...</Data>`` bytes; what outbound signatures cover."""
    return etree.tostring(data, encoding="UTF-8", xml_declaration=False, with_tail=False)


def sign(data: etree._Element, private_key: rsa.RSAPrivateKey | None = None) -> str:
    key = private_key or _load_private_key()
    signature = key.sign(canonicalize(data), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def build_signed_document(
    message: Message, private_key: rsa.RSAPrivateKey | None = None
) -> bytes:
    data = message_codec.build_data_element(message)
    document = etree.Element("Document")
    document.append(data)
    etree.SubElement(document, "Signature").text = sign(data, private_key)
    return XML_DECLARATION + etree.tostring(document, encoding="UTF-8", xml_declaration=False)


def _signed_candidates(document: message_codec.DecodedDocument) -> list[bytes]:
    """The bytes as received, then the compact form for senders that reformat after signing."""
    candidates = [document.signed_bytes] if document.signed_bytes else []
    compact = canonicalize(document.data)
    if compact not in candidates:
        candidates.append(compact)
    return candidates


def _verify_document(document: message_codec.DecodedDocument, public_key: rsa.RSAPublicKey) -> bool:
    if not document.signature:
        return False
    try:
        raw = base64.b64decode(document.signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    for candidate in _signed_candidates(document):
        try:
            public_key.verify(raw, candidate, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, ValueError, TypeError):
            continue
        return True
    return False


def verify(document: bytes | str, public_key: rsa.RSAPublicKey | None = None) -> bool:
    """True only for a well-formed ``Document`` whose ``Signature`` covers its ``Data``.

    Never raises: unparsable XML, a missing signature and a missing key all
    count as a failed verification.
    """
    try:
        key = public_key or _load_ess_public_key()
        decoded = message_codec.decode_document(document)
    except (MalformedMessageError, SigningKeyError) as exc:
        logger.warning("Signature verification failed before checking: %s", exc)
        return False
    return _verify_document(decoded, key)


def require_valid_signature(
    document: message_codec.DecodedDocument,
    public_key: rsa.RSAPublicKey | None = None,
) -> None:
    if not settings.ess_signature_verification_enabled:
        logger.warning("ESS signature verification disabled; accepting unverified message")
        return
    try:
        key = public_key or _load_ess_public_key()
    except SigningKeyError:
        logger.exception("ESS public key unavailable; rejecting message")
        raise SignatureVerificationError("Signature could not be verified")
    if not _verify_document(document, key):
        raise SignatureVerificationError(
            "Invalid Signature" if document.signature else "Signature element missing"
        )
