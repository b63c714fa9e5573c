"""Tests for ecolysis.config — scenario loading, merging and validation."""

import dataclasses
from pathlib import Path

import pytest
import yaml

from ecolysis.config import (
    CatastropheSpec,
    DemographySection,
    RosterEntry,
    ScenarioConfig,
    deep_merge,
    default_config,
    load_config,
    scenario_from_dict,
    scenario_hash,
    scenario_to_dict,
    validate_config,
    with_overrides,
)
from ecolysis.errors import EcolysisError, InvalidParameter

CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"


def _two_stage(**demography):
    data = {
        'stage_names': ['young', 'old'],
        'survival': [0.5, 0.8],
        'survival_sd': [0.0, 0.0],
        'fecundity': [0.0, 1.0],
        'fecundity_sd': [0.0, 0.0],
        'successor': [1, 1],
        'advance_probability': [1.0, 1.0],
        'initial_abundance': [10, 10],
    }
    data.update(demography)
    return {'demography': data}


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_lists_replaced_wholesale(self):
        base = {'demography': {'survival': [0.1, 0.2, 0.3]}}
        result = deep_merge(base, {'demography': {'survival': [0.9]}})
        assert result['demography']['survival'] == [0.9]

    def test_modifies_base_in_place(self):
        base = {'a': {'b': 1}}
        deep_merge(base, {'a': {'c': 2}})
        assert base == {'a': {'b': 1, 'c': 2}}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        config = default_config()
        assert isinstance(config, ScenarioConfig)
        validate_config(config)

    def test_default_values(self):
        config = default_config()
        assert config.simulation.mode == "population"
        assert config.simulation.seed == 42
        assert config.n_stages == 3
        assert config.density.kind == "ceiling"
        assert config.catastrophes == ()

    def test_sections_are_frozen(self):
        config = default_config()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.simulation.horizon = 5


# ── scenario_from_dict tests ─────────────────────────────────────────

class TestScenarioFromDict:
    def test_lists_become_tuples(self):
        config = scenario_from_dict(_two_stage())
        assert config.demography.survival == (0.5, 0.8)
        assert isinstance(config.demography.stage_names, tuple)

    def test_unknown_keys_ignored(self):
        data = _two_stage()
        data['demography']['colour'] = 'green'
        data['reporting'] = {'format': 'csv'}
        config = scenario_from_dict(data)
        assert not hasattr(config.demography, 'colour')

    def test_catastrophes_parsed(self):
        data = _two_stage()
        data['catastrophes'] = [
            {'name': 'fire', 'probability': 0.1, 'severity_mean': 0.3},
        ]
        config = scenario_from_dict(data)
        assert config.catastrophes == (
            CatastropheSpec(name='fire', probability=0.1, severity_mean=0.3),
        )

    def test_roster_parsed(self):
        data = _two_stage()
        data['simulation'] = {'mode': 'individual'}
        data['genetics'] = {'n_loci': 2, 'n_founder_alleles': 3}
        data['individual'] = {'initial_roster': [
            {'stage': 1, 'sex': 0, 'genotype': [[0, 1], [2, 2]]},
            {'stage': 0, 'sex': 1},
        ]}
        config = scenario_from_dict(data)
        roster = config.individual.initial_roster
        assert len(roster) == 2
        assert roster[0].genotype == ((0, 1), (2, 2))
        assert roster[1] == RosterEntry(stage=0, sex=1)

    def test_non_mapping_section_rejected(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict({'simulation': [1, 2, 3]})
        assert exc.value.field == 'simulation'

    def test_round_trip_through_dict(self):
        config = default_config()
        assert scenario_from_dict(scenario_to_dict(config)) == config


# ── validation tests ─────────────────────────────────────────────────

class TestValidation:
    def test_survival_above_one(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(survival=[1.5, 0.8]))
        assert exc.value.field == 'demography.survival[0]'
        assert 'probability' in exc.value.constraint

    def test_invalid_parameter_is_value_error(self):
        with pytest.raises(ValueError):
            scenario_from_dict(_two_stage(survival=[0.5, -0.1]))

    def test_error_message_names_field(self):
        err = InvalidParameter('demography.survival[1]', "must be >= 0", -1)
        assert isinstance(err, EcolysisError)
        assert str(err) == "demography.survival[1]: must be >= 0 (got -1)"

    def test_stage_vector_length(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(fecundity=[0.0]))
        assert exc.value.field == 'demography.fecundity'

    def test_zero_stages(self):
        empty = {k: [] for k in _two_stage()['demography']}
        with pytest.raises(InvalidParameter):
            scenario_from_dict({'demography': empty})

    def test_negative_sd(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(fecundity_sd=[0.0, -0.2]))
        assert exc.value.field == 'demography.fecundity_sd[1]'

    def test_backward_successor(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(successor=[1, 0]))
        assert exc.value.field == 'demography.successor[1]'

    def test_unreachable_stage_warns(self):
        with pytest.warns(UserWarning, match="not reachable"):
            scenario_from_dict(_two_stage(successor=[0, 1]))

    def test_unknown_mode(self):
        data = _two_stage()
        data['simulation'] = {'mode': 'metapopulation'}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'simulation.mode'

    def test_quantiles_must_increase(self):
        data = _two_stage()
        data['simulation'] = {'quantiles': [0.5, 0.25]}
        with pytest.raises(InvalidParameter, match="increasing"):
            scenario_from_dict(data)

    def test_horizon_at_least_one(self):
        data = _two_stage()
        data['simulation'] = {'horizon': 0}
        with pytest.raises(InvalidParameter):
            scenario_from_dict(data)

    def test_carrying_capacity_positive(self):
        data = _two_stage()
        data['density'] = {'kind': 'ricker', 'carrying_capacity': 0}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'density.carrying_capacity'

    def test_carrying_capacity_ignored_without_density(self):
        data = _two_stage()
        data['density'] = {'kind': 'none', 'carrying_capacity': 0}
        scenario_from_dict(data)

    def test_catastrophe_probability(self):
        data = _two_stage()
        data['catastrophes'] = [{'name': 'flood', 'probability': 2.0}]
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'catastrophes[0].probability'

    def test_stage_weighted_needs_weights(self):
        data = _two_stage()
        data['simulation'] = {'mode': 'individual'}
        data['individual'] = {'culling_policy': 'stage_weighted'}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'individual.culling_weights'

    def test_genetics_checked_only_in_individual_mode(self):
        data = _two_stage()
        data['genetics'] = {'n_loci': 0}
        scenario_from_dict(data)
        data['simulation'] = {'mode': 'individual'}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'genetics.n_loci'

    def test_roster_allele_out_of_range(self):
        data = _two_stage()
        data['simulation'] = {'mode': 'individual'}
        data['genetics'] = {'n_loci': 1, 'n_founder_alleles': 2}
        data['individual'] = {'initial_roster': [
            {'stage': 0, 'sex': 0, 'genotype': [[0, 5]]},
        ]}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'individual.initial_roster[0].genotype'

    def test_roster_hermaphrodite_rejected_in_sexual_mode(self):
        data = _two_stage()
        data['simulation'] = {'mode': 'individual'}
        data['individual'] = {'sexual': True, 'initial_roster': [{'stage': 0}]}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'individual.initial_roster[0].sex'

    @pytest.mark.parametrize("field, value", [
        ('horizon', 5.5),
        ('horizon', 5.0),
        ('n_replicates', 2.5),
        ('seed', 1.5),
        ('parallel_workers', True),
        ('max_abundance', '1000'),
    ])
    def test_run_controls_must_be_integers(self, field, value):
        data = _two_stage()
        data['simulation'] = {field: value}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == f'simulation.{field}'
        assert exc.value.constraint == "must be an integer"

    @pytest.mark.parametrize("section, field, value", [
        ('genetics', 'n_loci', 3.5),
        ('genetics', 'n_founder_alleles', 4.0),
        ('individual', 'max_agents', 1e6),
    ])
    def test_individual_counts_must_be_integers(self, section, field, value):
        data = _two_stage()
        data['simulation'] = {'mode': 'individual'}
        data[section] = {field: value}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == f'{section}.{field}'

    def test_float_horizon_never_reaches_replicates(self):
        data = _two_stage()
        data['simulation'] = {'horizon': 5.5, 'n_replicates': 3}
        with pytest.raises(InvalidParameter):
            scenario_from_dict(data)

    def test_scalar_for_stage_vector(self):
        data = _two_stage()
        data['demography']['survival'] = 0.9
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'demography.survival'
        assert 'list' in exc.value.constraint

    def test_quoted_number_rejected(self):
        data = _two_stage()
        data['catastrophes'] = [{'name': 'flood', 'probability': '0.1'}]
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'catastrophes[0].probability'
        assert exc.value.constraint == "must be a number"

    def test_non_numeric_stage_entry(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(fecundity=[0.0, 'many']))
        assert exc.value.field == 'demography.fecundity[1]'

    def test_nan_rate_rejected(self):
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(_two_stage(survival_sd=[float('nan'), 0.0]))
        assert exc.value.field == 'demography.survival_sd[0]'

    def test_non_numeric_carrying_capacity(self):
        data = _two_stage()
        data['density'] = {'kind': 'ceiling', 'carrying_capacity': 'big'}
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == 'density.carrying_capacity'

    @pytest.mark.parametrize("key,value,field", [
        ('catastrophes', {'probability': 0.1}, 'catastrophes'),
        ('individual', {'initial_roster': 3}, 'individual.initial_roster'),
    ])
    def test_scalar_for_list_section(self, key, value, field):
        data = _two_stage()
        data[key] = value
        with pytest.raises(InvalidParameter) as exc:
            scenario_from_dict(data)
        assert exc.value.field == field

    def test_validate_false_skips_checks(self):
        config = scenario_from_dict(_two_stage(survival=[1.5, 0.8]), validate=False)
        assert config.demography.survival[0] == 1.5


# ── load_config tests ────────────────────────────────────────────────

class TestLoadConfig:
    def test_base_only(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump({'simulation': {'horizon': 12}}))
        config = load_config(base)
        assert config.simulation.horizon == 12
        assert config.demography == DemographySection()

    def test_scenario_overrides_base(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump({'simulation': {'horizon': 12, 'seed': 1}}))
        scen = tmp_path / "scenario.yaml"
        scen.write_text(yaml.safe_dump({'simulation': {'seed': 99}}))
        config = load_config(base, scen)
        assert config.simulation.horizon == 12
        assert config.simulation.seed == 99

    def test_programmatic_overrides_win(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump({'simulation': {'seed': 1}}))
        scen = tmp_path / "scenario.yaml"
        scen.write_text(yaml.safe_dump({'simulation': {'seed': 2}}))
        config = load_config(base, scen, overrides={'simulation': {'seed': 3}})
        assert config.simulation.seed == 3

    def test_empty_file_gives_defaults(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text("")
        assert load_config(base) == default_config()

    def test_missing_base(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_scenario(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text("{}")
        with pytest.raises(FileNotFoundError):
            load_config(base, tmp_path / "nope.yaml")

    def test_invalid_values_fail_on_load(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump(_two_stage(survival=[1.5, 0.5])))
        with pytest.raises(InvalidParameter):
            load_config(base)

    def test_shipped_configs_load(self):
        base = CONFIG_DIR / "default.yaml"
        assert load_config(base) == default_config()
        for scenario in sorted((CONFIG_DIR / "scenarios").glob("*.yaml")):
            config = load_config(base, scenario)
            assert isinstance(config, ScenarioConfig)

    def test_individual_scenario(self):
        config = load_config(CONFIG_DIR / "default.yaml",
                             CONFIG_DIR / "scenarios" / "individual_genetics.yaml")
        assert config.simulation.mode == "individual"
        assert config.individual.culling_weights == (2.0, 1.0, 0.5)


# ── hashing and overrides ────────────────────────────────────────────

class TestScenarioHash:
    def test_stable(self):
        assert scenario_hash(default_config()) == scenario_hash(default_config())

    def test_sensitive_to_values(self):
        other = with_overrides(default_config(), {'simulation': {'seed': 7}})
        assert scenario_hash(other) != scenario_hash(default_config())

    def test_with_overrides_leaves_original(self):
        config = default_config()
        other = with_overrides(config, {'density': {'kind': 'none'}})
        assert other.density.kind == "none"
        assert config.density.kind == "ceiling"

    def test_with_overrides_validates(self):
        with pytest.raises(InvalidParameter):
            with_overrides(default_config(), {'density': {'kind': 'logistic'}})
