"""
Reconciliation matcher and differencer.

Correlates a source entity with the current target entity set without a
shared key, then describes how the pair differs and scores the match.

The matcher is pure: callers fetch target candidates and associations and
hand them in. The executor selects the candidate first, fetches the
associations of the source and of the selected target, then asks for the
full match.

Scoring:
    The score depends only on the number of differences and is identical for
    every entity type:

    ===========  =====
    differences  score
    ===========  =====
    0            100
    1-2          90
    3-4          80
    5-6          70
    7+           60
    ===========  =====

    A source entity with no target candidate scores 0.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from ccmigrate.entities import Associations, EntityType, MappedEntity, SourceEntity, TargetEntity
from ccmigrate.mapping import UNKNOWN_SOURCE_CODE, map_entity
from ccmigrate.models import Difference, DifferenceSeverity, MatchResult, MatchStatus

logger = logging.getLogger(__name__)

NOT_FOUND_DESCRIPTION = "entity not found in target"

# Upper bound of difference count -> score
SCORE_TIERS: tuple[tuple[int, int], ...] = (
    (0, 100),
    (2, 90),
    (4, 80),
    (6, 70),
)
FLOOR_SCORE = 60

SCALAR_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.USER: ("name", "email", "status"),
    EntityType.QUEUE: ("name", "description", "status"),
    EntityType.FLOW: ("name", "description", "source_type", "status"),
    EntityType.SKILL: ("name", "status"),
    EntityType.BOT: ("name", "description", "status"),
}


def match_score(difference_count: int) -> int:
    """
    Score a matched pair from its number of differences.

    Args:
        difference_count: Number of differences (>= 0).

    Returns:
        Integer score between 60 and 100, non-increasing in the count.

    Example:
        >>> match_score(0), match_score(2), match_score(3), match_score(9)
        (100, 90, 80, 60)
    """
    if difference_count < 0:
        raise ValueError(f"difference_count must be >= 0, got {difference_count}")
    for upper_bound, score in SCORE_TIERS:
        if difference_count <= upper_bound:
            return score
    return FLOOR_SCORE


def _normalize(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.casefold()
    return value


def _folded(values: Iterable[str]) -> dict[str, str]:
    return {value.casefold(): value for value in values}


class ReconciliationMatcher:
    """
    Finds the target entity matching a source entity and diffs the pair.

    Candidate selection:
        1. Users only: exact case-insensitive email equality.
        2. Exact case-insensitive name equality.
        3. Otherwise the result is ``not_found``.

    Only candidates of the same entity type are considered.

    Example:
        >>> matcher = ReconciliationMatcher()
        >>> result = matcher.match(source_user, target_users)
        >>> result.status, result.match_percentage
        (<MatchStatus.IDENTICAL: 'identical'>, 100)
    """

    def select_candidate(
        self,
        source: SourceEntity,
        candidates: Sequence[TargetEntity],
    ) -> TargetEntity | None:
        """
        Pick the target candidate correlated with a source entity.

        Args:
            source: The source entity.
            candidates: Current target entities.

        Returns:
            The first candidate matching by email (users) or name, else None.
        """
        same_type = [c for c in candidates if c.entity_type == source.entity_type]

        if source.entity_type == EntityType.USER and source.email:
            email = source.email.casefold()
            for candidate in same_type:
                if candidate.email and candidate.email.casefold() == email:
                    return candidate

        if source.name:
            name = source.name.casefold()
            for candidate in same_type:
                if candidate.name and candidate.name.casefold() == name:
                    return candidate

        return None

    def diff(
        self,
        source: SourceEntity,
        target: TargetEntity,
        *,
        source_associations: Associations | None = None,
        target_associations: Associations | None = None,
    ) -> list[Difference]:
        """
        Compute the ordered differences between a source entity and its match.

        Scalar fields are compared on the mapped source representation.
        Associations are compared only when both sides are provided.

        Args:
            source: The source entity.
            target: The matched target entity.
            source_associations: Skills and queues of the source entity.
            target_associations: Skills and workstreams of the target entity.

        Returns:
            Differences in field order, associations last.
        """
        mapped = map_entity(source)
        differences = self._diff_scalars(mapped, target)

        if source_associations is not None and target_associations is not None:
            differences.extend(
                self._diff_sets("skills", source_associations.skills, target_associations.skills)
            )
            differences.extend(
                self._diff_sets("queues", source_associations.queues, target_associations.queues)
            )

        return differences

    def match(
        self,
        source: SourceEntity,
        candidates: Sequence[TargetEntity],
        *,
        source_associations: Associations | None = None,
        target_associations: Associations | None = None,
    ) -> MatchResult:
        """
        Match a source entity against the target entity set.

        Args:
            source: The source entity.
            candidates: Current target entities.
            source_associations: Skills and queues of the source entity.
            target_associations: Skills and workstreams of the selected target.

        Returns:
            MatchResult with the selected target, differences, score and status.
        """
        target = self.select_candidate(source, candidates)
        if target is None:
            return self.not_found(source)

        differences = self.diff(
            source,
            target,
            source_associations=source_associations,
            target_associations=target_associations,
        )
        logger.debug(
            "Matched %s %s to target %s with %d differences",
            source.entity_type.value,
            source.id,
            target.id,
            len(differences),
        )
        return MatchResult(
            source=source,
            matched_target=target,
            differences=tuple(differences),
            match_percentage=match_score(len(differences)),
            status=self.classify(differences),
        )

    @staticmethod
    def not_found(source: SourceEntity) -> MatchResult:
        """Result for a source entity with no target candidate."""
        return MatchResult(
            source=source,
            matched_target=None,
            differences=(
                Difference(
                    field="entity",
                    source_value=source.name,
                    target_value=None,
                    severity=DifferenceSeverity.CRITICAL,
                    description=NOT_FOUND_DESCRIPTION,
                ),
            ),
            match_percentage=0,
            status=MatchStatus.NOT_FOUND,
        )

    @staticmethod
    def classify(differences: Sequence[Difference]) -> MatchStatus:
        """identical when empty, similar when every difference is info, else different."""
        if not differences:
            return MatchStatus.IDENTICAL
        if all(d.severity == DifferenceSeverity.INFO for d in differences):
            return MatchStatus.SIMILAR
        return MatchStatus.DIFFERENT

    def _diff_scalars(self, mapped: MappedEntity, target: TargetEntity) -> list[Difference]:
        differences: list[Difference] = []
        for field_name in SCALAR_FIELDS[mapped.entity_type]:
            source_value = getattr(mapped, field_name)
            target_value = getattr(target, field_name)

            if field_name == "source_type":
                difference = self._diff_source_type(source_value, target_value)
                if difference is not None:
                    differences.append(difference)
                continue

            if _normalize(source_value) != _normalize(target_value):
                differences.append(
                    Difference(
                        field=field_name,
                        source_value=source_value,
                        target_value=target_value,
                        severity=DifferenceSeverity.WARNING,
                        description=(
                            f"{field_name} differs: source {source_value!r}, "
                            f"target {target_value!r}"
                        ),
                    )
                )
        return differences

    @staticmethod
    def _diff_source_type(source_code: int | None, target_code: int | None) -> Difference | None:
        source_known = source_code not in (None, UNKNOWN_SOURCE_CODE)
        target_known = target_code not in (None, UNKNOWN_SOURCE_CODE)

        if not source_known and not target_known:
            return None
        if source_known and source_code == target_code:
            return None

        if not source_known:
            # The source flow kind has no target taxonomy equivalent
            return Difference(
                field="source_type",
                source_value=source_code,
                target_value=target_code,
                severity=DifferenceSeverity.INFO,
                description=f"platform differs: source type has no target code, target {target_code}",
            )
        return Difference(
            field="source_type",
            source_value=source_code,
            target_value=target_code,
            severity=DifferenceSeverity.WARNING,
            description=f"source_type differs: source {source_code}, target {target_code}",
        )

    @staticmethod
    def _diff_sets(
        label: str,
        source_values: frozenset[str],
        target_values: frozenset[str],
    ) -> list[Difference]:
        source_folded = _folded(source_values)
        target_folded = _folded(target_values)
        only_source = sorted(source_folded[k] for k in source_folded.keys() - target_folded.keys())
        only_target = sorted(target_folded[k] for k in target_folded.keys() - source_folded.keys())

        differences: list[Difference] = []
        if only_source:
            differences.append(
                Difference(
                    field=label,
                    source_value=only_source,
                    target_value=None,
                    severity=DifferenceSeverity.WARNING,
                    description=f"{label} missing in target: {', '.join(only_source)}",
                )
            )
        if only_target:
            differences.append(
                Difference(
                    field=label,
                    source_value=None,
                    target_value=only_target,
                    severity=DifferenceSeverity.WARNING,
                    description=f"{label} only in target: {', '.join(only_target)}",
                )
            )
        if len(source_folded) != len(target_folded):
            differences.append(
                Difference(
                    field=f"{label}_count",
                    source_value=len(source_folded),
                    target_value=len(target_folded),
                    severity=DifferenceSeverity.WARNING,
                    description=(
                        f"{label} count mismatch: source {len(source_folded)}, "
                        f"target {len(target_folded)}"
                    ),
                )
            )
        return differences
