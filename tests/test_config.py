"""Tests for metaepi.config — configuration loading and validation."""

import pytest
import yaml

from metaepi.config import (
    ExtendedSection,
    SEIRSection,
    SimulationConfig,
    SimulationSection,
    TransmissionSection,
    _merge_layer,
    deep_merge,
    default_config,
    load_config,
    validate_config,
)
from metaepi.errors import ConfigError


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}

    def test_schedule_key_not_special(self):
        base = {'schedule': {'transmission': {'value': 0.3}}}
        override = {'schedule': {'transmission': {'start_dates': ['2020-01-01']}}}
        result = deep_merge(base, override)
        assert result['schedule']['transmission'] == {
            'value': 0.3, 'start_dates': ['2020-01-01']}


class TestMergeLayer:
    def test_schedule_entries_replaced_not_merged(self):
        base = {'schedule': {'transmission': {'value': 0.3},
                             'movement': {'value': 0.1}}}
        layer = {'schedule': {'transmission': {
            'start_dates': ['2020-01-01'], 'end_dates': ['2020-12-31'],
            'values': [0.2]}}}
        result = _merge_layer(base, layer)
        assert 'value' not in result['schedule']['transmission']
        assert result['schedule']['movement'] == {'value': 0.1}

    def test_nested_schedule_key_merges_recursively(self):
        base = {'x': {'schedule': {'a': {'value': 1}, 'b': 2}}}
        layer = {'x': {'schedule': {'a': {'extra': 3}}}}
        result = _merge_layer(base, layer)
        assert result == {'x': {'schedule': {'a': {'value': 1, 'extra': 3}, 'b': 2}}}

    def test_other_sections_still_merge(self):
        base = {'simulation': {'n_days': 10, 'seed': 1},
                'schedule': {'movement': {'value': 0.1}}}
        result = _merge_layer(base, {'simulation': {'seed': 5}})
        assert result['simulation'] == {'n_days': 10, 'seed': 5}
        assert result['schedule'] == {'movement': {'value': 0.1}}

    def test_schedule_added_when_absent(self):
        result = _merge_layer({}, {'schedule': {'movement': {'value': 0.2}}})
        assert result == {'schedule': {'movement': {'value': 0.2}}}

    def test_layer_not_modified(self):
        layer = {'schedule': {'movement': {'value': 0.2}}, 'seir': {'birth_rate': 0.1}}
        _merge_layer({}, layer)
        assert 'schedule' in layer


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_returns_config(self):
        assert isinstance(default_config(), SimulationConfig)

    def test_defaults(self):
        cfg = default_config()
        assert cfg.simulation.model == 'seir'
        assert cfg.simulation.n_days == 365
        assert cfg.transmission.mode == 'frequency'
        assert cfg.transmission.input == 'beta'
        assert cfg.schedule.transmission == {'value': 0.3}

    def test_extended(self):
        assert default_config('extended').simulation.model == 'extended'

    def test_unknown_model(self):
        with pytest.raises(ConfigError, match="simulation.model"):
            default_config('sirs')

    def test_sections_independent(self):
        a, b = default_config(), default_config()
        a.schedule.movement['value'] = 0.5
        assert b.schedule.movement == {'value': 0.0}


# ── Validation ───────────────────────────────────────────────────────

class TestValidateConfig:
    def _cfg(self, **sections):
        cfg = SimulationConfig()
        for name, section in sections.items():
            setattr(cfg, name, section)
        return cfg

    def test_defaults_valid(self):
        validate_config(SimulationConfig())

    def test_bad_mode(self):
        with pytest.raises(ConfigError, match="mode"):
            validate_config(self._cfg(transmission=TransmissionSection(mode='mass')))

    def test_bad_input(self):
        with pytest.raises(ConfigError, match="input"):
            validate_config(self._cfg(transmission=TransmissionSection(input='R')))

    def test_negative_noise(self):
        with pytest.raises(ConfigError, match="stoch_sd"):
            validate_config(self._cfg(transmission=TransmissionSection(stoch_sd=-1)))

    def test_density_needs_positive_k(self):
        with pytest.raises(ConfigError, match="monod_k"):
            validate_config(self._cfg(
                transmission=TransmissionSection(mode='density', monod_k=0)))

    def test_r0_bracket(self):
        with pytest.raises(ConfigError, match="bracket"):
            validate_config(self._cfg(transmission=TransmissionSection(
                input='R0', beta_min=2.0, beta_max=1.0)))

    def test_horizon(self):
        with pytest.raises(ConfigError, match="n_days"):
            validate_config(self._cfg(simulation=SimulationSection(n_days=0)))

    def test_workers(self):
        with pytest.raises(ConfigError, match="parallel_workers"):
            validate_config(self._cfg(simulation=SimulationSection(parallel_workers=0)))

    def test_start_date(self):
        with pytest.raises(ConfigError, match="start_date"):
            validate_config(self._cfg(simulation=SimulationSection(start_date='soon')))

    def test_seir_needs_exit_from_i(self):
        with pytest.raises(ConfigError, match="recovery_rate"):
            validate_config(self._cfg(seir=SEIRSection(recovery_rate=0.0)))

    def test_seir_negative_rate(self):
        with pytest.raises(ConfigError, match="birth_rate"):
            validate_config(self._cfg(seir=SEIRSection(birth_rate=-0.1)))

    def test_extended_fraction(self):
        cfg = self._cfg(simulation=SimulationSection(model='extended'),
                        extended=ExtendedSection(frac_icu=1.5))
        with pytest.raises(ConfigError, match="frac_icu"):
            validate_config(cfg)

    def test_extended_rate_checked_only_for_extended(self):
        validate_config(self._cfg(extended=ExtendedSection(recov_hosp=0.0)))

    def test_schedule_entry_must_be_mapping(self):
        cfg = SimulationConfig()
        cfg.schedule.movement = 0.1
        with pytest.raises(ConfigError, match="schedule.movement"):
            validate_config(cfg)

    def test_missing_data_dir_warns(self, tmp_path):
        cfg = SimulationConfig()
        cfg.inputs.data_dir = str(tmp_path / "missing")
        with pytest.warns(UserWarning, match="data_dir"):
            validate_config(cfg)

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_config(self._cfg(simulation=SimulationSection(n_days=-5)))


# ── load_config tests ────────────────────────────────────────────────

class TestLoadConfig:
    def _write(self, path, data):
        path.write_text(yaml.safe_dump(data))
        return path

    def test_load_base(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {
            'simulation': {'n_days': 100, 'seed': 7},
            'transmission': {'stoch_sd': 0.1},
        })
        cfg = load_config(base)
        assert cfg.simulation.n_days == 100
        assert cfg.simulation.seed == 7
        assert cfg.transmission.stoch_sd == 0.1
        assert cfg.seir.recovery_rate == 0.143

    def test_scenario_and_overrides(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {
            'simulation': {'n_days': 100},
            'schedule': {'transmission': {'value': 0.3}},
        })
        scenario = self._write(tmp_path / "scenario.yaml", {
            'simulation': {'model': 'extended'},
            'schedule': {'hospitalization': {'value': 0.05}},
        })
        cfg = load_config(base, scenario, {'simulation': {'n_days': 50}})
        assert cfg.simulation.model == 'extended'
        assert cfg.simulation.n_days == 50
        assert cfg.schedule.transmission == {'value': 0.3}
        assert cfg.schedule.hospitalization == {'value': 0.05}

    def test_scenario_switches_schedule_form(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {
            'schedule': {'transmission': {'value': 0.3},
                         'movement': {'value': 0.1}},
        })
        scenario = self._write(tmp_path / "scenario.yaml", {
            'schedule': {'transmission': {
                'start_dates': ['2020-01-01'], 'end_dates': ['2020-12-31'],
                'values': [0.2]}},
        })
        cfg = load_config(base, scenario)
        assert 'value' not in cfg.schedule.transmission
        assert cfg.schedule.transmission['values'] == [0.2]
        assert cfg.schedule.movement == {'value': 0.1}

    def test_missing_scenario_ignored(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {})
        cfg = load_config(base, tmp_path / "nope.yaml")
        assert cfg.simulation.n_days == 365

    def test_missing_base(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unknown_keys_warn(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {'seir': {'gamma': 0.2}})
        with pytest.warns(UserWarning, match="gamma"):
            load_config(base)

    def test_invalid_values_raise(self, tmp_path):
        base = self._write(tmp_path / "base.yaml", {'transmission': {'mode': 'bogus'}})
        with pytest.raises(ConfigError):
            load_config(base)
