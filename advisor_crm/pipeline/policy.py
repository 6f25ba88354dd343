"""Stage-gated field requirements for sales funnels.

A gate rule says that every stage of a funnel whose ``order_position`` is at
or past a threshold requires a field (``proposal_value``). Lookups never
raise: an unknown funnel, an unknown stage or an empty stage list all mean
the rule does not apply.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from advisor_crm.core.config import Settings, get_settings


PROPOSAL_VALUE_FIELD = "proposal_value"


class StageLike(Protocol):
    @property
    def id(self) -> Any: ...

    @property
    def order_position(self) -> int: ...


@dataclass(frozen=True)
class StagePosition:
    id: Any
    order_position: int
    funnel_id: Any = None


@dataclass(frozen=True)
class GateRule:
    funnel_id: str
    threshold_position: int
    field: str = PROPOSAL_VALUE_FIELD


def _token(value: Any) -> str:
    return str(value)


class StagePolicyEvaluator:
    def __init__(self, thresholds: Mapping[Any, int], field: str = PROPOSAL_VALUE_FIELD) -> None:
        self.field = field
        self._thresholds = {_token(funnel_id): int(position) for funnel_id, position in thresholds.items()}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> StagePolicyEvaluator:
        resolved = settings or get_settings()
        return cls(resolved.proposal_value_gates, field=PROPOSAL_VALUE_FIELD)

    def threshold_for(self, funnel_id: Any) -> int | None:
        return self._thresholds.get(_token(funnel_id))

    def rules(self) -> list[GateRule]:
        return [
            GateRule(funnel_id=funnel_id, threshold_position=threshold, field=self.field)
            for funnel_id, threshold in sorted(self._thresholds.items())
        ]

    def requires_field_at_stage(self, stage_id: Any, funnel_id: Any, stages: Iterable[StageLike]) -> bool:
        """True when ``stage_id`` sits at or past the funnel's gate threshold.

        ``stages`` is not checked against ``funnel_id``; callers pass the
        funnel's own stages (or a superset containing the stage).
        """
        threshold = self.threshold_for(funnel_id)
        if threshold is None:
            return False

        wanted = _token(stage_id)
        for stage in stages:
            if _token(stage.id) == wanted:
                return stage.order_position >= threshold
        return False

    def applies_on_transition_to(self, to_stage_id: Any, funnel_id: Any, stages: Iterable[StageLike]) -> bool:
        return self.requires_field_at_stage(to_stage_id, funnel_id, stages)

    def is_currently_gated(self, current_stage_id: Any, funnel_id: Any, stages: Iterable[StageLike]) -> bool:
        return self.requires_field_at_stage(current_stage_id, funnel_id, stages)
