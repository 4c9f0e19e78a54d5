"""Percentage offsets on site requirements (Tool A: direct-service offset).

A direct-service offset shrinks every community's requirement by a
percentage, independent of the sites it actually has. One global percentage
is set per (program, year); individual communities may carry an override.
"""

import math
from collections.abc import Iterable
from decimal import Decimal

from pydantic import BaseModel, Field

from .requirements import required_sites
from .schemas import Community, Program, Rule, enum_value


def clamp_percentage(percentage: float | None) -> float:
    """Clamp a percentage into [0, 100]; None counts as no offset."""
    if percentage is None:
        return 0.0
    return max(0.0, min(100.0, float(percentage)))


def apply_offset(required: int, percentage: float) -> int:
    """Required sites after a percentage reduction.

    Rounds up and never reduces a positive requirement below one site.
    The percentage is expected in [0, 100]; callers clamp it.
    """
    if required == 0:
        return 0
    reduction = Decimal(required) * Decimal(str(percentage)) / 100
    return max(1, math.ceil(Decimal(required) - reduction))


class DirectServiceConfig(BaseModel):
    """Offset configuration for one program and year.

    ``version`` increases each time the global percentage is saved, so a
    calculation can state which configuration it used.
    """

    program: str
    year: int
    global_percentage: float = Field(default=0, ge=0, le=100)
    overrides: dict[str, float] = Field(
        default_factory=dict,
        description="Community id -> percentage replacing the global one.",
    )
    version: int = 1

    def percentage_for(self, community_id: str) -> float:
        return self.overrides.get(community_id, self.global_percentage)


class CommunityOffsetRow(BaseModel):
    """Tool A result for one community."""

    id: str
    name: str
    population: int
    required: int
    percentage_reduction: float
    is_override: bool
    new_required: int


def direct_service_offsets(
    communities: Iterable[Community],
    config: DirectServiceConfig,
    rules: Iterable[Rule] | None = None,
) -> list[CommunityOffsetRow]:
    """Recompute every community's requirement under a direct-service offset."""
    rules = list(rules or ())
    rows = []
    for community in communities:
        required = required_sites(community.population, config.program, rules)
        percentage = clamp_percentage(config.percentage_for(community.id))
        rows.append(CommunityOffsetRow(
            id=community.id,
            name=community.name,
            population=community.population,
            required=required,
            percentage_reduction=percentage,
            is_override=community.id in config.overrides,
            new_required=apply_offset(required, percentage),
        ))
    return rows


def adjusted_requirement(
    population: int,
    program: Program | str,
    percentage: float | None,
    rules: Iterable[Rule] | None = None,
) -> tuple[int, int]:
    """Base and offset requirement for a single population."""
    program = enum_value(program)
    required = required_sites(population, program, rules)
    return required, apply_offset(required, clamp_percentage(percentage))
