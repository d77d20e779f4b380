"""
Source registry - which webhook sources exist, how each one authenticates,
and where each one puts its event type and delivery id.

Built once at startup from environment settings merged with rows in
webhook_source_configs; lookups afterwards never touch the database.
"""
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.errors import UnsupportedSourceError

logger = logging.getLogger(__name__)


class AuthStrategy(str, Enum):
    HMAC = "hmac"
    BEARER = "bearer"
    IP_ALLOWLIST = "ip_allowlist"
    NONE = "none"


@dataclass(frozen=True)
class SourceDefinition:
    name: str
    auth: AuthStrategy
    signature_header: Optional[str] = None
    signature_encoding: str = "hex"  # hex, base64
    signature_prefix: str = ""
    # Event type comes from a header, a top-level field, or the first key with a suffix
    event_type_header: Optional[str] = None
    event_type_field: Optional[str] = None
    event_type_key_suffix: Optional[str] = None
    # Delivery id from a header or a dotted path into the payload
    event_id_header: Optional[str] = None
    event_id_field: Optional[str] = None
    # Prefix the id with the event type when one id spans several lifecycle events
    event_id_scoped_by_type: bool = False
    secret: str = ""
    secret_setting: str = ""
    ip_allowlist: tuple[str, ...] = ()
    is_enabled: bool = True
    sync_frequency_seconds: int = 0
    allowed_event_types: Optional[frozenset[str]] = None

    def allows_event_type(self, event_type: str) -> bool:
        return self.allowed_event_types is None or event_type in self.allowed_event_types

    def extract_event_type(self, headers, payload: dict) -> Optional[str]:
        if self.event_type_header:
            value = headers.get(self.event_type_header)
            if value:
                return value
        if self.event_type_field:
            value = payload.get(self.event_type_field)
            if isinstance(value, str) and value:
                return value
        if self.event_type_key_suffix:
            for key in payload:
                if key.endswith(self.event_type_key_suffix):
                    return key
        return None

    def extract_event_id(self, headers, payload: dict, event_type: Optional[str] = None) -> Optional[str]:
        value = None
        if self.event_id_header:
            value = headers.get(self.event_id_header) or None
        if value is None and self.event_id_field:
            value = _dig(payload, self.event_id_field)
        if value in (None, ""):
            return None
        if self.event_id_scoped_by_type and event_type:
            return f"{event_type}:{value}"
        return str(value)


def _dig(data, path: str):
    """Follow a dotted path through dicts and lists ("history_items.0.id")."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _parse_allowlist(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def default_source_definitions(settings) -> dict[str, SourceDefinition]:
    """Built-in source definitions, with secrets taken from settings."""
    definitions = [
        SourceDefinition(
            name="shopify",
            auth=AuthStrategy.HMAC,
            signature_header="X-Shopify-Hmac-Sha256",
            signature_encoding="base64",
            event_type_header="X-Shopify-Topic",
            event_id_header="X-Shopify-Webhook-Id",
            secret=settings.shopify_webhook_secret,
            secret_setting="SHOPIFY_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="kajabi",
            auth=AuthStrategy.HMAC,
            signature_header="X-Kajabi-Signature",
            event_type_field="event",
            event_id_field="id",
            secret=settings.kajabi_webhook_secret,
            secret_setting="KAJABI_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="facebook",
            auth=AuthStrategy.HMAC,
            signature_header="X-Hub-Signature-256",
            signature_prefix="sha256=",
            event_type_field="object",
            secret=settings.facebook_webhook_secret,
            secret_setting="FACEBOOK_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="instagram",
            auth=AuthStrategy.HMAC,
            signature_header="X-Hub-Signature-256",
            signature_prefix="sha256=",
            event_type_field="object",
            # Same Meta app secret unless overridden
            secret=settings.instagram_webhook_secret or settings.facebook_webhook_secret,
            secret_setting="INSTAGRAM_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="twitter",
            auth=AuthStrategy.HMAC,
            signature_header="x-twitter-webhooks-signature",
            signature_encoding="base64",
            signature_prefix="sha256=",
            event_type_key_suffix="_events",
            secret=settings.twitter_webhook_secret,
            secret_setting="TWITTER_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="clickup",
            auth=AuthStrategy.HMAC,
            signature_header="X-Signature",
            event_type_field="event",
            event_id_field="history_items.0.id",
            secret=settings.clickup_webhook_secret,
            secret_setting="CLICKUP_WEBHOOK_SECRET",
        ),
        SourceDefinition(
            name="n8n",
            auth=AuthStrategy.BEARER,
            signature_header="Authorization",
            event_type_field="event",
            event_id_field="execution_id",
            event_id_scoped_by_type=True,
            secret=settings.n8n_bearer_token,
            secret_setting="N8N_BEARER_TOKEN",
        ),
        SourceDefinition(
            name="internal",
            auth=_internal_auth(settings),
            signature_header="Authorization",
            event_type_field="event",
            event_id_field="id",
            secret=settings.internal_bearer_token,
            secret_setting="INTERNAL_BEARER_TOKEN",
            ip_allowlist=_parse_allowlist(settings.internal_ip_allowlist),
        ),
    ]
    return {d.name: d for d in definitions}


def _internal_auth(settings) -> AuthStrategy:
    if settings.internal_bearer_token:
        return AuthStrategy.BEARER
    if settings.internal_ip_allowlist:
        return AuthStrategy.IP_ALLOWLIST
    return AuthStrategy.NONE


def apply_overrides(definition: SourceDefinition, config) -> SourceDefinition:
    """Merge a WebhookSourceConfig row over a built-in definition."""
    changes = {
        "is_enabled": config.is_enabled,
        "sync_frequency_seconds": config.sync_frequency_seconds or 0,
    }
    if config.webhook_secret:
        changes["secret"] = config.webhook_secret
    if config.allowed_event_types is not None:
        changes["allowed_event_types"] = frozenset(config.allowed_event_types)
    return replace(definition, **changes)


class SourceRegistry:
    """Immutable lookup of source name -> SourceDefinition."""

    def __init__(self, definitions: dict[str, SourceDefinition]):
        self._definitions = dict(definitions)

    def get(self, source: str) -> SourceDefinition:
        """Return an enabled source definition or raise UnsupportedSourceError."""
        definition = self._definitions.get(source)
        if definition is None:
            raise UnsupportedSourceError(source)
        if not definition.is_enabled:
            raise UnsupportedSourceError(source, reason="source disabled")
        return definition

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, source: str) -> bool:
        return source in self._definitions


_registry: Optional[SourceRegistry] = None


def build_registry(settings, configs=()) -> SourceRegistry:
    definitions = default_source_definitions(settings)
    for config in configs:
        base = definitions.get(config.source)
        if base is None:
            logger.warning("Ignoring config row for unknown source '%s'", config.source)
            continue
        definitions[config.source] = apply_overrides(base, config)
    return SourceRegistry(definitions)


async def load_registry(db: AsyncSession) -> SourceRegistry:
    """Read per-source overrides and install the process-wide registry."""
    from syncgate.config import get_settings
    from syncgate.models.webhook_source_config import WebhookSourceConfig

    result = await db.execute(select(WebhookSourceConfig))
    configs = result.scalars().all()
    registry = build_registry(get_settings(), configs)
    set_registry(registry)
    logger.info(
        "Source registry loaded: %d sources, %d overrides",
        len(registry.names()), len(configs),
    )
    return registry


def set_registry(registry: Optional[SourceRegistry]) -> None:
    global _registry
    _registry = registry


def get_registry() -> SourceRegistry:
    """Process-wide registry; falls back to settings-only definitions."""
    global _registry
    if _registry is None:
        from syncgate.config import get_settings
        _registry = build_registry(get_settings())
    return _registry
