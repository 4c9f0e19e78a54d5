import pytest

from stewardship.requirements import evaluate_band, required_sites, rule_percentage
from stewardship.schemas import Program, Rule, RuleParameters, RuleStatus, RuleType, enum_value


@pytest.mark.parametrize("population, expected", [
    (999, 0),
    (1_000, 1),
    (4_999, 1),
    (5_000, 1),
    (45_000, 2),
    (500_000, 13),
    (500_001, 14),
    (650_000, 14),
    (650_001, 15),
])
def test_paint_bands(population, expected):
    assert required_sites(population, Program.PAINT) == expected


@pytest.mark.parametrize("program", [Program.SOLVENTS, Program.PESTICIDES])
@pytest.mark.parametrize("population, expected", [
    (999, 0),
    (1_000, 1),
    (9_999, 1),
    (10_000, 1),
    (250_001, 2),
    (500_000, 2),
    (500_001, 3),
    (800_001, 4),
])
def test_solvents_and_pesticides_bands(program, population, expected):
    assert required_sites(population, program) == expected


@pytest.mark.parametrize("population, expected", [
    (0, 0),
    (999, 0),
    (1_000, 1),
    (15_000, 1),
    (15_001, 2),
    (500_000, 34),
    (500_001, 35),
])
def test_lighting_bands(population, expected):
    assert required_sites(population, Program.LIGHTING) == expected


def test_lighting_second_band_continues_from_first():
    assert required_sites(500_000, "Lighting") == 34
    assert required_sites(550_000, "Lighting") == 35


def test_plain_string_program_names_work():
    assert required_sites(45_000, "Paint") == required_sites(45_000, Program.PAINT)


def test_enum_value_strips_the_enum_type():
    assert type(enum_value(Program.PAINT)) is str
    assert enum_value(Program.PAINT) == "Paint"
    assert enum_value("Paint") == "Paint"


def test_unknown_program_requires_nothing():
    assert required_sites(1_000_000, "Batteries") == 0


def test_negative_population_requires_nothing():
    for program in Program:
        assert required_sites(-10, program) == 0


@pytest.mark.parametrize("program", list(Program))
def test_requirement_is_non_negative_and_monotonic(program):
    previous = 0
    for population in range(0, 2_000_000, 3_917):
        required = required_sites(population, program)
        assert required >= 0
        assert required >= previous
        previous = required


def test_band_with_base_counts_population_above_its_lower_bound():
    params = RuleParameters(min_population=500_001, base_requirement=13, additional_per_population=150_000)
    assert evaluate_band(500_001, params) == 14
    assert evaluate_band(650_000, params) == 14
    assert evaluate_band(650_001, params) == 15


def test_band_can_round_down():
    params = RuleParameters(min_population=0, sites_per_population=40_000, round_up_portion=False)
    assert evaluate_band(79_999, params) == 1


def test_parameters_accept_camel_case_keys():
    params = RuleParameters.model_validate({"minPopulation": 1000, "sitesPerPopulation": 20000})
    assert params.min_population == 1000
    assert params.sites_per_population == 20000


class TestConfiguredRules:
    def band(self, program="Paint", status=RuleStatus.ACTIVE, **parameters):
        return Rule(
            name="test band",
            program=program,
            rule_type=RuleType.SITE_CALCULATION,
            parameters=parameters,
            status=status,
        )

    def test_active_band_replaces_default(self):
        rules = [self.band(minPopulation=0, sitesPerPopulation=10_000)]
        assert required_sites(45_000, "Paint", rules) == 5

    def test_inactive_rule_is_ignored(self):
        rules = [self.band(status=RuleStatus.INACTIVE, minPopulation=0, sitesPerPopulation=10_000)]
        assert required_sites(45_000, "Paint", rules) == 2

    def test_rule_for_other_program_is_ignored(self):
        rules = [self.band(program="Lighting", minPopulation=0, sitesPerPopulation=10_000)]
        assert required_sites(45_000, "Paint", rules) == 2

    def test_all_programs_rule_applies(self):
        rules = [self.band(program="All", minPopulation=0, sitesPerPopulation=100_000)]
        assert required_sites(450_000, "Solvents", rules) == 5

    def test_narrowest_band_wins(self):
        rules = [
            self.band(minPopulation=0, sitesPerPopulation=10_000),
            self.band(minPopulation=40_000, maxPopulation=50_000, sitesPerPopulation=5_000),
        ]
        assert required_sites(45_000, "Paint", rules) == 9

    def test_unmatched_population_falls_back_to_defaults(self):
        rules = [self.band(minPopulation=100_000, sitesPerPopulation=10_000)]
        assert required_sites(45_000, "Paint", rules) == 2

    def test_minimum_rule_applies_below_bands(self):
        rules = [
            self.band(minPopulation=5_000, sitesPerPopulation=40_000),
            Rule(
                program="Paint",
                rule_type=RuleType.MINIMUM_REQUIREMENT,
                parameters={"minPopulation": 500, "minimumSites": 2},
            ),
        ]
        assert required_sites(800, "Paint", rules) == 2


def test_rule_percentage_reads_first_active_offset_rule():
    rules = [
        Rule(program="All", rule_type=RuleType.OFFSET_EVENT, parameters={"maxOffsetPercentage": 25}),
    ]
    assert rule_percentage(rules, RuleType.OFFSET_EVENT, "Paint", 35.0) == 25
    assert rule_percentage(rules, RuleType.OFFSET_ADJACENT, "Paint", 10.0) == 10.0
    assert rule_percentage(None, RuleType.OFFSET_EVENT, "Paint", 35.0) == 35.0
