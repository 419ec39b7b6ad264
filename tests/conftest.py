import pytest

from stackbar import Config, InMemoryTarget, ManualClock, MultiProgress


class TextStyle:
    """Deterministic style: '<prefix><position>/<length> <message>'"""

    def render(self, snapshot, width):
        length = '?' if snapshot.length is None else snapshot.length
        head, *rest = snapshot.message.split('\n')
        return [f'{snapshot.prefix}{snapshot.position}/{length} {head}'.rstrip()] + rest


@pytest.fixture
def clock():
    return ManualClock(start=100.0)


@pytest.fixture
def target():
    return InMemoryTarget(width=40)


@pytest.fixture
def make_multi(clock):
    def make(target=None, **config):
        config.setdefault('max_redraws_per_second', 10)
        return MultiProgress(
            target=target if target is not None else InMemoryTarget(width=40),
            config=Config(**config),
            clock=clock,
            default_style=TextStyle(),
        )
    return make


@pytest.fixture
def multi(make_multi, target):
    return make_multi(target)


@pytest.fixture
def text_style():
    return TextStyle()
