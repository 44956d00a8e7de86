"""
Structural change detection.

The lock-based strategy asks the observed system which metadata objects
are currently held under an exclusive lock. Any structural mutation has
to take that lock, so nothing is missed however the command was issued
(dynamic SQL, functions, migrations tools). The pattern-based strategy
reads the text of running operations; it misses indirect invocations and
is only used when explicitly selected or as an opt-in fallback.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from pg_telemetry.context import TelemetryContext
from pg_telemetry.exceptions import UnsupportedEnvironmentError
from pg_telemetry.protocols import ObservedSystem
from pg_telemetry.schemas import ActiveOperation, ChangeDetectionStrategy, StructuralChange

logger = logging.getLogger(__name__)

# Metadata object category -> coarse kind of mutation
CATALOG_KINDS: Dict[str, str] = {
    "pg_class": "relation_ddl",
    "pg_attribute": "column_ddl",
    "pg_attrdef": "column_default_ddl",
    "pg_index": "index_ddl",
    "pg_constraint": "constraint_ddl",
    "pg_trigger": "trigger_ddl",
    "pg_namespace": "schema_ddl",
    "pg_proc": "function_ddl",
    "pg_type": "type_ddl",
    "pg_rewrite": "view_ddl",
    "pg_sequence": "sequence_ddl",
    "pg_policy": "policy_ddl",
    "pg_extension": "extension_ddl",
    "pg_depend": "dependency_ddl",
}

DEFAULT_KIND = "structural_change"

_DDL_PATTERN = re.compile(
    r"^\s*(?P<verb>CREATE|ALTER|DROP|TRUNCATE|REINDEX|CLUSTER|COMMENT\s+ON)\b"
    r"(?:\s+(?:OR\s+REPLACE|UNIQUE|TEMP|TEMPORARY|UNLOGGED|MATERIALIZED|IF\s+(?:NOT\s+)?EXISTS))*"
    r"\s*(?P<object>TABLE|INDEX|VIEW|SCHEMA|FUNCTION|PROCEDURE|TRIGGER|SEQUENCE|TYPE|"
    r"EXTENSION|POLICY|COLUMN|CONSTRAINT)?",
    re.IGNORECASE,
)


class LockBasedStrategy:
    """Zero-false-negative detection from exclusive metadata locks."""

    kind = ChangeDetectionStrategy.LOCK_BASED

    async def detect(
        self, observed: ObservedSystem, operations: Sequence[ActiveOperation]
    ) -> List[StructuralChange]:
        categories = await observed.read_structural_lock_events()
        return [
            StructuralChange(
                locked_object_category=category,
                approximate_kind=CATALOG_KINDS.get(category, DEFAULT_KIND),
                detected_by=self.kind,
                evidence=f"exclusive lock held on {category}",
            )
            for category in sorted(categories)
        ]


class PatternBasedStrategy:
    """Text heuristic over running operations; misses indirect invocations."""

    kind = ChangeDetectionStrategy.PATTERN_BASED

    async def detect(
        self, observed: ObservedSystem, operations: Sequence[ActiveOperation]
    ) -> List[StructuralChange]:
        changes = []
        for operation in operations:
            text = operation.text_preview or ""
            match = _DDL_PATTERN.match(text)
            if not match:
                continue
            verb = re.sub(r"\s+", "_", match.group("verb").lower())
            target = (match.group("object") or "object").lower()
            changes.append(
                StructuralChange(
                    locked_object_category=target,
                    approximate_kind=f"{target}_ddl" if match.group("object") else verb,
                    detected_by=self.kind,
                    evidence=f"unit {operation.unit_id}: {text[:80]}",
                )
            )
        return changes


class ChangeDetector:
    """Resolves the configured strategy on every call and runs it."""

    def __init__(self, context: TelemetryContext, observed: ObservedSystem):
        self.context = context
        self.observed = observed
        self._lock_based = LockBasedStrategy()
        self._pattern_based = PatternBasedStrategy()
        self._fallback_logged = False

    def strategy(self):
        """
        Strategy for the current settings.

        Raises:
            UnsupportedEnvironmentError: Lock-based detection was requested,
                the observed system cannot observe locks and fallback is off
        """
        settings = self.context.settings()
        if settings.change_detection == ChangeDetectionStrategy.PATTERN_BASED:
            return self._pattern_based

        if getattr(self.observed, "supports_lock_observation", False):
            return self._lock_based

        if not settings.change_detection_fallback:
            raise UnsupportedEnvironmentError(
                "Lock-based change detection requires lock observation, which the "
                "observed system does not support; enable change_detection_fallback "
                "or select the pattern strategy"
            )
        if not self._fallback_logged:
            logger.warning(
                "Observed system cannot report metadata locks, "
                "falling back to pattern-based change detection"
            )
            self._fallback_logged = True
        return self._pattern_based

    async def detect(
        self, operations: Optional[Sequence[ActiveOperation]] = None
    ) -> List[StructuralChange]:
        """
        Structural mutations in progress right now.

        Args:
            operations: Active operations already read in this sample, used
                by the pattern strategy
        """
        changes = await self.strategy().detect(self.observed, operations or [])
        if changes:
            logger.info(
                f"Structural change in progress: "
                f"{', '.join(c.approximate_kind for c in changes)}"
            )
        return changes
