import orjson
import pytest

from trip_tracker.config import (FilterConfig, TrackerConfig, config_from_dict,
                                 load_config, replace_section)


def test_defaults():
    config = load_config()
    assert config == TrackerConfig()
    assert config.filter.max_accuracy_m == 50.0
    assert config.selector.base_interval_ms == 5000
    assert config.selector.passive_multiplier == 8
    assert config.classifier.window_size == 50
    assert config.classifier.interval_s == 5.0
    assert config.session.storage_dir is None


def test_load_partial_file(tmp_path):
    path = tmp_path / 'tracker.json'
    path.write_bytes(orjson.dumps({
        'filter': {'max_accuracy_m': 35.0},
        'classifier': {'driver_threshold': 0.75},
        'session': {'storage_dir': 'trips'},
    }))
    config = load_config(path)
    assert config.filter.max_accuracy_m == 35.0
    assert config.filter.min_distance_m == 10.0
    assert config.classifier.driver_threshold == 0.75
    assert config.session.storage_dir == 'trips'
    assert config.selector == TrackerConfig().selector


def test_unknown_key_rejected():
    with pytest.raises(ValueError, match='max_accuracy'):
        config_from_dict({'filter': {'max_accuracy': 10}})


def test_unknown_section_rejected():
    with pytest.raises(ValueError, match='sensors'):
        config_from_dict({'sensors': {}})


def test_replace_section_returns_copy():
    config = TrackerConfig()
    changed = replace_section(config, 'filter', min_distance_m=20.0)
    assert changed.filter.min_distance_m == 20.0
    assert config.filter == FilterConfig()
    assert changed.session is config.session


def test_acquisition_interval_only_in_selector():
    with pytest.raises(ValueError, match='base_interval_ms'):
        config_from_dict({'filter': {'base_interval_ms': 2000}})
    assert config_from_dict({'selector': {'base_interval_ms': 2000}}).selector.base_interval_ms == 2000
