"""
Field-level conflict resolution.

Compares a local entity that carries unsynced changes with the current
remote representation of the same entity:

- Fields changed on only one side take that side's value
- Non-critical fields changed on both sides are merged automatically:
  timestamp fields take the later value, free-text fields keep both
  additions where possible, everything else is last-writer-wins
- Critical fields changed on both sides (or a local delete racing a
  remote update) require manual resolution

The merge ancestor is ``Entity.base_payload``, the payload the server last
confirmed. Without it every differing field counts as changed on both sides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exceptions import ValidationError
from ..payloads import SYSTEM_FIELDS, FieldPolicy, get_field_policy
from ..protocol import ConflictRecord, Entity, RemoteEntity, SyncOperation
from ..utils import canonical_json, parse_timestamp

logger = logging.getLogger(__name__)

DELETE_MARKER = "_deleted"


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class MergeOutcome(Enum):
    """Result class of a comparison."""

    IDENTICAL = "identical"  # No field-level difference
    AUTO_MERGED = "auto_merged"  # Differences merged without user input
    MANUAL = "manual"  # Critical divergence; user must decide


class ResolutionChoice(Enum):
    """User decision for a manual conflict."""

    ACCEPT_LOCAL = "accept_local"
    ACCEPT_REMOTE = "accept_remote"
    MERGED = "merged"


@dataclass
class Resolution:
    """A user decision, with the merged payload for ``MERGED``."""

    choice: ResolutionChoice
    payload: dict[str, Any] | None = None

    @classmethod
    def accept_local(cls) -> Resolution:
        return cls(ResolutionChoice.ACCEPT_LOCAL)

    @classmethod
    def accept_remote(cls) -> Resolution:
        return cls(ResolutionChoice.ACCEPT_REMOTE)

    @classmethod
    def merged(cls, payload: dict[str, Any]) -> Resolution:
        return cls(ResolutionChoice.MERGED, payload)


@dataclass
class FieldDiff:
    """One top-level payload field that differs between local and remote."""

    name: str
    local: Any
    remote: Any
    base: Any
    critical: bool

    @property
    def local_changed(self) -> bool:
        return self.base is MISSING or not _same(self.local, self.base)

    @property
    def remote_changed(self) -> bool:
        return self.base is MISSING or not _same(self.remote, self.base)


@dataclass
class MergeResult:
    """Outcome of comparing a local entity with a remote entity."""

    outcome: MergeOutcome
    payload: dict[str, Any] | None = None
    conflicting_fields: list[str] = field(default_factory=list)
    merged_fields: list[str] = field(default_factory=list)

    @property
    def needs_manual_resolution(self) -> bool:
        return self.outcome == MergeOutcome.MANUAL


def _same(a: Any, b: Any) -> bool:
    if a is MISSING or b is MISSING:
        return a is b
    return canonical_json(a) == canonical_json(b)


class ConflictResolver:
    """Decides between auto-merge and manual resolution.

    Field classification comes from the ``FieldPolicy`` registered for the
    entity type (see ``fieldsync.payloads``).
    """

    def __init__(self, policies: dict[str, FieldPolicy] | None = None):
        """Initialize the resolver.

        Args:
            policies: Per-type overrides of the registered field policies
        """
        self.policies = policies or {}

    def policy_for(self, entity_type: str) -> FieldPolicy:
        return self.policies.get(entity_type) or get_field_policy(entity_type)

    def diff(self, local: Entity, remote: RemoteEntity) -> list[FieldDiff]:
        """Top-level payload fields whose values differ, system fields excluded."""
        policy = self.policy_for(local.entity_type)
        base = local.base_payload
        names = sorted((set(local.payload) | set(remote.payload)) - SYSTEM_FIELDS)

        diffs = []
        for name in names:
            local_value = local.payload.get(name, MISSING)
            remote_value = remote.payload.get(name, MISSING)
            if _same(local_value, remote_value):
                continue
            diffs.append(
                FieldDiff(
                    name=name,
                    local=local_value,
                    remote=remote_value,
                    base=MISSING if base is None else base.get(name, MISSING),
                    critical=policy.is_critical(name),
                )
            )
        return diffs

    def resolve(
        self,
        local: Entity,
        remote: RemoteEntity,
        local_operation: SyncOperation = SyncOperation.UPDATE,
    ) -> MergeResult:
        """Compare local and remote and merge what can be merged.

        Args:
            local: Local entity with unsynced changes
            remote: Current remote representation
            local_operation: Latest queued local operation for the entity

        Returns:
            MergeResult; ``payload`` is set unless the outcome is MANUAL
        """
        if local.deleted or local_operation == SyncOperation.DELETE:
            logger.info(
                f"Local delete of {local.entity_type}/{local.id} races remote "
                f"version {remote.version}"
            )
            return MergeResult(MergeOutcome.MANUAL, conflicting_fields=[DELETE_MARKER])

        diffs = self.diff(local, remote)
        if not diffs:
            return MergeResult(MergeOutcome.IDENTICAL, payload=dict(remote.payload))

        policy = self.policy_for(local.entity_type)
        merged = dict(remote.payload)
        conflicting: list[str] = []
        merged_fields: list[str] = []

        for d in diffs:
            if not d.local_changed:
                value = d.remote
            elif not d.remote_changed:
                value = d.local
            elif d.critical:
                conflicting.append(d.name)
                continue
            else:
                value = self._merge_field(policy, d, local, remote)
                merged_fields.append(d.name)

            if value is MISSING:
                merged.pop(d.name, None)
            else:
                merged[d.name] = value

        if conflicting:
            logger.info(
                f"Critical fields diverged for {local.entity_type}/{local.id}: "
                f"{', '.join(conflicting)}"
            )
            return MergeResult(
                MergeOutcome.MANUAL,
                conflicting_fields=conflicting,
                merged_fields=merged_fields,
            )

        logger.debug(
            f"Auto-merged {local.entity_type}/{local.id} "
            f"({len(diffs)} differing fields, {len(merged_fields)} merged)"
        )
        return MergeResult(MergeOutcome.AUTO_MERGED, payload=merged, merged_fields=merged_fields)

    def _merge_field(
        self, policy: FieldPolicy, d: FieldDiff, local: Entity, remote: RemoteEntity
    ) -> Any:
        """Merge a non-critical field changed on both sides."""
        if policy.is_timestamp(d.name):
            later = self._later_timestamp(d.local, d.remote)
            if later is not None:
                return later

        if policy.is_text(d.name) and isinstance(d.local, str) and isinstance(d.remote, str):
            combined = self._merge_text(d.local, d.remote, d.base)
            if combined is not None:
                return combined

        return self._last_writer(d.local, d.remote, local, remote)

    @staticmethod
    def _later_timestamp(local_value: Any, remote_value: Any) -> Any:
        try:
            local_ts = parse_timestamp(local_value) if local_value is not MISSING else None
            remote_ts = parse_timestamp(remote_value) if remote_value is not MISSING else None
        except (TypeError, ValueError):
            return None
        if local_ts is None:
            return remote_value
        if remote_ts is None:
            return local_value
        return local_value if local_ts >= remote_ts else remote_value

    @staticmethod
    def _merge_text(local_text: str, remote_text: str, base: Any) -> str | None:
        """Keep both edits of a free-text field when they can be combined.

        If one side contains the other, the superset wins. If both sides
        appended to the common ancestor, the remote addition comes first,
        then the local one. Returns None when neither applies.
        """
        if remote_text in local_text:
            return local_text
        if local_text in remote_text:
            return remote_text
        if isinstance(base, str) and local_text.startswith(base) and remote_text.startswith(base):
            return base + remote_text[len(base) :] + local_text[len(base) :]
        return None

    @staticmethod
    def _last_writer(local_value: Any, remote_value: Any, local: Entity, remote: RemoteEntity) -> Any:
        if local.updated_at > remote.updated_at:
            return local_value
        if remote.updated_at > local.updated_at:
            return remote_value
        # Same instant: pick deterministically so every device converges
        local_key = "" if local_value is MISSING else canonical_json(local_value)
        remote_key = "" if remote_value is MISSING else canonical_json(remote_value)
        return local_value if local_key <= remote_key else remote_value

    # =========================================================================
    # Manual resolution
    # =========================================================================

    def apply_resolution(
        self, conflict: ConflictRecord, resolution: Resolution
    ) -> dict[str, Any] | None:
        """Payload that results from a user decision.

        Returns None when accepting a local delete.

        Raises:
            ValidationError: If a merged resolution carries no payload
        """
        if resolution.choice == ResolutionChoice.ACCEPT_REMOTE:
            return dict(conflict.remote.payload)

        if resolution.choice == ResolutionChoice.ACCEPT_LOCAL:
            if conflict.local_operation == SyncOperation.DELETE:
                return None
            return dict(conflict.local_payload or {})

        if resolution.payload is None:
            raise ValidationError("payload", "merged resolution requires a payload")
        return dict(resolution.payload)
