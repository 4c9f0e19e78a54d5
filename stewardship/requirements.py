"""Required collection sites per community and program.

Requirements are piecewise formulas over population bands:

| Program | Band | Formula |
|---|---|---|
| Paint | 5,000 - 500,000 | ceil(pop / 40,000) |
| Paint | > 500,000 | 13 + ceil((pop - 500,000) / 150,000) |
| Solvents, Pesticides | 10,000 - 500,000 | ceil(pop / 250,000) |
| Solvents, Pesticides | > 500,000 | 2 + ceil((pop - 500,000) / 300,000) |
| Lighting | 1,000 - 500,000 | ceil(pop / 15,000) |
| Lighting | > 500,000 | 34 + ceil((pop - 500,000) / 50,000) |

Below the lowest band, Paint/Solvents/Pesticides require one site from a
population of 1,000; Lighting requires none.

The table is held as the same rule records an administrator edits, so active
``site_calculation`` and ``minimum_requirement`` rules replace it band by
band. A built-in band applies only when no active rule matches.
"""

import logging
import math
from collections.abc import Iterable

from .schemas import Program, Rule, RuleParameters, RuleType, enum_value

logger = logging.getLogger(__name__)

# Upper bound of every first band; the second band starts just above it
BAND_BREAK = 500_000


def _band(min_population: int, max_population: int | None, per: int, base: int = 0) -> RuleParameters:
    if base:
        return RuleParameters(
            min_population=min_population,
            max_population=max_population,
            base_requirement=base,
            additional_per_population=per,
        )
    return RuleParameters(
        min_population=min_population,
        max_population=max_population,
        sites_per_population=per,
    )


def _minimum(min_population: int, sites: int) -> RuleParameters:
    return RuleParameters(min_population=min_population, minimum_sites=sites)


def _default_rules(program: Program, bands: list[RuleParameters], minimum: RuleParameters | None) -> list[Rule]:
    rules = [
        Rule(
            name=f"{program.value} sites ({params.min_population:,}+)",
            program=program.value,
            rule_type=RuleType.SITE_CALCULATION,
            parameters=params,
        )
        for params in bands
    ]
    if minimum is not None:
        rules.append(Rule(
            name=f"{program.value} minimum",
            program=program.value,
            rule_type=RuleType.MINIMUM_REQUIREMENT,
            parameters=minimum,
        ))
    return rules


DEFAULT_RULES: dict[str, list[Rule]] = {
    Program.PAINT.value: _default_rules(
        Program.PAINT,
        [_band(5_000, BAND_BREAK, 40_000), _band(BAND_BREAK + 1, None, 150_000, base=13)],
        _minimum(1_000, 1),
    ),
    Program.SOLVENTS.value: _default_rules(
        Program.SOLVENTS,
        [_band(10_000, BAND_BREAK, 250_000), _band(BAND_BREAK + 1, None, 300_000, base=2)],
        _minimum(1_000, 1),
    ),
    Program.PESTICIDES.value: _default_rules(
        Program.PESTICIDES,
        [_band(10_000, BAND_BREAK, 250_000), _band(BAND_BREAK + 1, None, 300_000, base=2)],
        _minimum(1_000, 1),
    ),
    Program.LIGHTING.value: _default_rules(
        Program.LIGHTING,
        [_band(1_000, BAND_BREAK, 15_000), _band(BAND_BREAK + 1, None, 50_000, base=34)],
        None,
    ),
}


def evaluate_band(population: int, params: RuleParameters) -> int:
    """Sites owed by a population inside one calculation band.

    With a base requirement the band only counts population above its own
    lower bound: ``base + ceil((pop - (min - 1)) / per)``.
    """
    divisor = params.additional_per_population or params.sites_per_population
    if not divisor:
        return params.base_requirement

    covered = params.min_population - 1 if params.base_requirement else 0
    portion = max(0, population - covered) / divisor
    sites = math.ceil(portion) if params.round_up_portion else math.floor(portion)
    return params.base_requirement + sites


def _match(population: int, rules: list[Rule]) -> int | None:
    bands = [
        r for r in rules
        if r.rule_type == RuleType.SITE_CALCULATION and r.parameters.contains(population)
    ]
    if bands:
        # Narrowest band wins when bands overlap
        band = max(bands, key=lambda r: r.parameters.min_population)
        return evaluate_band(population, band.parameters)

    minimums = [
        r for r in rules
        if r.rule_type == RuleType.MINIMUM_REQUIREMENT
        and r.parameters.minimum_sites is not None
        and population >= r.parameters.min_population
    ]
    if minimums:
        return max(r.parameters.minimum_sites for r in minimums)
    return None


def required_sites(population: int, program: Program | str, rules: Iterable[Rule] | None = None) -> int:
    """Number of collection sites a community must host for a program.

    Args:
        population: Census population. Negative values are not validated and
            fall below every band.
        program: Program name. Unknown programs require nothing.
        rules: Regulatory rules to consult before the built-in table. Only
            active rules that apply to the program are considered.

    Returns:
        Non-negative site count.
    """
    program = enum_value(program)
    if program not in DEFAULT_RULES:
        return 0

    if rules:
        configured = [r for r in rules if r.is_active and r.applies_to(program)]
        if configured:
            matched = _match(population, configured)
            if matched is not None:
                return max(0, matched)
            logger.debug(f"No active rule matches {program} population {population}; using defaults")

    return _match(population, DEFAULT_RULES[program]) or 0


def rule_percentage(rules: Iterable[Rule] | None, rule_type: RuleType, program: str, default: float) -> float:
    """Cap percentage from the first active offset rule of a type, else the default."""
    program = enum_value(program)
    for rule in rules or ():
        if (
            rule.is_active
            and rule.rule_type == rule_type
            and rule.applies_to(program)
            and rule.parameters.max_offset_percentage is not None
        ):
            return rule.parameters.max_offset_percentage
    return default
