"""
Webhook authenticity checks - verify incoming webhooks before they are trusted.

Strategies:
- HMAC-SHA256 over the raw body (hex or base64 digest, optional "sha256=" prefix)
- Bearer token in the Authorization header
- Client IP allowlist (addresses or CIDR ranges)
- none: accepted, recorded with trust_level="low"

Every failure raises an AuthError subclass; success returns the trust level.
"""
import base64
import hashlib
import hmac
import ipaddress
import logging
from typing import Optional

from syncgate.errors import (
    AuthError,
    InvalidSignatureError,
    IpNotAllowedError,
    MissingSignatureError,
    SecretNotConfiguredError,
)
from syncgate.services.source_registry import AuthStrategy, SourceDefinition

logger = logging.getLogger(__name__)


def compute_hmac_sha256(secret: str, body: bytes, encoding: str = "hex") -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    encoding: str = "hex",
    header_prefix: str = "",
) -> bool:
    """
    Validate an HMAC-SHA256 webhook signature in constant time.
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature.strip()
    if header_prefix and sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    expected = compute_hmac_sha256(secret, body, encoding)
    if encoding == "hex":
        sig = sig.lower()
    return hmac.compare_digest(expected.encode("ascii"), sig.encode("utf-8"))


def validate_bearer_token(expected: str, authorization: str) -> bool:
    if not expected or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), token.strip().encode("utf-8"))


def ip_in_allowlist(client_ip: Optional[str], allowlist: tuple[str, ...]) -> bool:
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed allowlist entry: %s", entry)
    return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()


def _missing_secret(definition: SourceDefinition) -> str:
    """
    Decide what to do when a signed source has no secret configured.
    Production rejects unless ALLOW_UNSIGNED_WEBHOOKS is set; other
    environments accept at low trust.
    """
    from syncgate.config import get_settings
    settings = get_settings()
    strict_prod = settings.app_env == "production" and not settings.allow_unsigned_webhooks

    if strict_prod:
        logger.error(
            "Missing %s in production for source '%s' - rejecting webhook",
            definition.secret_setting or "secret",
            definition.name,
        )
        raise SecretNotConfiguredError(
            f"No secret configured for source '{definition.name}'"
        )
    logger.warning(
        "%s not set - accepting %s webhook without verification at low trust. "
        "Configure the secret for production (ALLOW_UNSIGNED_WEBHOOKS defaults to false).",
        definition.secret_setting or "secret",
        definition.name,
    )
    return "low"


def verify_webhook(
    definition: SourceDefinition,
    headers,
    body: bytes,
    client_ip: Optional[str] = None,
) -> str:
    """
    Verify a delivery against its source's auth strategy.

    Returns the trust level ("high" or "low"). Raises an AuthError subclass
    when the delivery cannot be trusted.
    """
    if definition.auth == AuthStrategy.NONE:
        logger.warning(
            "Source '%s' has no auth configured - accepting unverified webhook at low trust",
            definition.name,
        )
        return "low"

    if definition.auth == AuthStrategy.IP_ALLOWLIST:
        if not ip_in_allowlist(client_ip, definition.ip_allowlist):
            raise IpNotAllowedError(f"Client IP {client_ip} not in allowlist for '{definition.name}'")
        return "high"

    if not definition.secret:
        return _missing_secret(definition)

    if definition.auth == AuthStrategy.BEARER:
        authorization = headers.get(definition.signature_header or "Authorization", "")
        if not authorization:
            raise MissingSignatureError(f"Missing bearer token for '{definition.name}'")
        if not validate_bearer_token(definition.secret, authorization):
            raise InvalidSignatureError(f"Invalid bearer token for '{definition.name}'")
        return "high"

    if definition.auth == AuthStrategy.HMAC:
        signature = headers.get(definition.signature_header, "")
        if not signature:
            raise MissingSignatureError(
                f"Missing {definition.signature_header} header for '{definition.name}'"
            )
        if not validate_hmac_sha256(
            definition.secret,
            signature,
            body,
            encoding=definition.signature_encoding,
            header_prefix=definition.signature_prefix,
        ):
            raise InvalidSignatureError(f"Invalid signature for '{definition.name}'")
        return "high"

    raise AuthError(f"Unsupported auth strategy {definition.auth} for '{definition.name}'")
