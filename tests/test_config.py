import pytest

from stackbar import Alignment, Config, ConfigError, MultiProgress, SampleWindow, StackbarError


def test_defaults():
    config = Config()

    assert config.max_redraws_per_second == 15.0
    assert config.steady_tick_interval == 0.1
    assert config.sample_window_capacity == 16
    assert config.move_cursor is True
    assert config.alignment is Alignment.TOP
    assert config.max_write_failures == 3
    assert config.min_draw_interval == pytest.approx(1 / 15)


@pytest.mark.parametrize('kwargs', [
    {'max_redraws_per_second': 0},
    {'max_redraws_per_second': -2},
    {'steady_tick_interval': 0},
    {'sample_window_capacity': 1},
    {'sample_window_capacity': 2.5},
    {'alignment': 'top'},
    {'max_write_failures': 0},
])
def test_invalid_config_rejected(kwargs):
    with pytest.raises(ConfigError):
        Config(**kwargs)


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)
    assert issubclass(ConfigError, StackbarError)


def test_sample_window_rejects_small_capacity():
    with pytest.raises(ValueError):
        SampleWindow(capacity=1)


def test_coordinator_takes_settings_from_config(target, clock):
    config = Config(move_cursor=False, alignment=Alignment.BOTTOM, max_redraws_per_second=4)
    multi = MultiProgress(target=target, config=config, clock=clock)

    assert multi.config is config
    assert not multi.move_cursor
    assert multi.alignment is Alignment.BOTTOM
    assert multi.scheduler.min_interval == pytest.approx(0.25)
