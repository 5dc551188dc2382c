"""
Business payload models and field classification.

The sync engine treats payloads as opaque JSON objects. Code that needs
business semantics converts at the boundary with ``parse_payload``, which
returns one member of the ``EntityPayload`` union depending on the entity
type. Unknown fields survive the round trip in ``extra``.

The conflict resolver only needs to know which fields are *critical*
(auto-merge forbidden) and which are *non-critical* (last-writer-wins or
text combination). That partition lives in ``FieldPolicy``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Union

# Fields owned by the sync engine, never part of a field-level diff
SYSTEM_FIELDS = frozenset(
    {
        "id",
        "version",
        "sync_status",
        "updated_at",
        "created_at",
        "last_synced_at",
        "device_id",
        "versionVector",
    }
)


@dataclass(frozen=True)
class FieldPolicy:
    """Critical/non-critical partition for one entity type.

    Attributes:
        critical: Fields where silent merge is unsafe (identity, status, money)
        non_critical: Fields that may be auto-merged
        text_fields: Non-critical free-text fields; concurrent additions are combined
        timestamp_suffixes: Non-critical fields ending with these take the later value
    """

    critical: frozenset[str]
    non_critical: frozenset[str]
    text_fields: frozenset[str] = frozenset()
    timestamp_suffixes: tuple[str, ...] = ("_at", "_date")

    def is_critical(self, name: str) -> bool:
        """Unknown fields are critical unless declared otherwise."""
        if name in self.non_critical or self.is_timestamp(name):
            return False
        return True

    def is_timestamp(self, name: str) -> bool:
        return name not in self.critical and name.endswith(self.timestamp_suffixes)

    def is_text(self, name: str) -> bool:
        return name in self.text_fields


QUOTE_POLICY = FieldPolicy(
    critical=frozenset(
        {
            "quote_number",
            "status",
            "user_id",
            "customer_name",
            "customer_email",
            "customer_phone",
            "customer_address",
            "jobs",
            "financials",
            "total_inc_gst",
            "deposit",
        }
    ),
    non_critical=frozenset({"notes", "location", "metadata", "display_name", "tags"}),
    text_fields=frozenset({"notes"}),
)

JOB_POLICY = FieldPolicy(
    critical=frozenset(
        {
            "quote_id",
            "job_type",
            "parameters",
            "materials",
            "labour",
            "calculations",
            "subtotal",
        }
    ),
    non_critical=frozenset({"notes", "order_index", "metadata"}),
    text_fields=frozenset({"notes"}),
)

DEFAULT_POLICY = FieldPolicy(
    critical=frozenset(),
    non_critical=frozenset({"notes", "metadata"}),
    text_fields=frozenset({"notes"}),
)

FIELD_POLICIES: dict[str, FieldPolicy] = {
    "quote": QUOTE_POLICY,
    "job": JOB_POLICY,
}


def get_field_policy(entity_type: str) -> FieldPolicy:
    """Field policy for an entity type (DEFAULT_POLICY if unregistered)."""
    return FIELD_POLICIES.get(entity_type, DEFAULT_POLICY)


def register_field_policy(entity_type: str, policy: FieldPolicy) -> None:
    """Register or replace the field policy for an entity type."""
    FIELD_POLICIES[entity_type] = policy


# =============================================================================
# Typed payloads
# =============================================================================


@dataclass
class QuotePayload:
    """Business view of a quote payload."""

    quote_number: str | None = None
    status: str = "draft"
    user_id: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    location: dict[str, Any] | None = None
    notes: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    jobs: list[dict[str, Any]] = field(default_factory=list)
    financials: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    entity_type = "quote"


@dataclass
class JobPayload:
    """Business view of a job payload."""

    quote_id: str | None = None
    job_type: str | None = None
    order_index: int = 0
    parameters: dict[str, Any] = field(default_factory=dict)
    materials: list[dict[str, Any]] = field(default_factory=list)
    labour: dict[str, Any] | None = None
    calculations: dict[str, Any] | None = None
    subtotal: float = 0.0
    notes: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    entity_type = "job"


@dataclass
class GenericPayload:
    """Payload of an entity type with no typed model."""

    entity_type: str
    data: dict[str, Any] = field(default_factory=dict)


EntityPayload = Union[QuotePayload, JobPayload, GenericPayload]

_PAYLOAD_MODELS: dict[str, type[QuotePayload] | type[JobPayload]] = {
    "quote": QuotePayload,
    "job": JobPayload,
}


def parse_payload(entity_type: str, data: dict[str, Any]) -> EntityPayload:
    """Convert an opaque payload into its typed model.

    Args:
        entity_type: Entity type tag
        data: Payload as stored by the engine

    Returns:
        QuotePayload, JobPayload, or GenericPayload for unregistered types
    """
    model = _PAYLOAD_MODELS.get(entity_type)
    if model is None:
        return GenericPayload(entity_type=entity_type, data=dict(data))

    known = {f.name for f in fields(model)} - {"extra"}
    kwargs = {k: v for k, v in data.items() if k in known}
    extra = {k: v for k, v in data.items() if k not in known}
    return model(**kwargs, extra=extra)


def payload_to_dict(payload: EntityPayload) -> dict[str, Any]:
    """Convert a typed payload back into the opaque form stored by the engine."""
    if isinstance(payload, GenericPayload):
        return dict(payload.data)

    result: dict[str, Any] = {}
    for f in fields(payload):
        if f.name == "extra":
            continue
        value = getattr(payload, f.name)
        if value is not None:
            result[f.name] = value
    result.update(payload.extra)
    return result
