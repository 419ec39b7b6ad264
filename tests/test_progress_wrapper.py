import pytest

from stackbar import ProgressContext, Status, progress


def test_progress_wrapper_yields_items(multi):
    items = list(range(5))
    seen = []
    for item in progress(items, message="Test", multi=multi):
        seen.append(item)
    assert seen == items

    [counter] = multi.counters()
    assert counter.status is Status.FINISHED
    assert counter.position == 5
    assert counter.length == 5


def test_progress_wrapper_unknown_length(multi):
    seen = list(progress(iter('abc'), multi=multi))

    assert seen == ['a', 'b', 'c']
    [counter] = multi.counters()
    assert counter.length is None
    assert counter.position == 3


def test_progress_wrapper_abandons_on_early_exit(multi):
    generator = progress(range(10), multi=multi)
    next(generator)
    next(generator)
    generator.close()

    [counter] = multi.counters()
    assert counter.status is Status.ABANDONED
    assert counter.position == 1


def test_progress_wrapper_clear_removes_bar(multi, target):
    list(progress(range(3), message="gone", multi=multi, clear=True))

    assert len(multi) == 0
    assert target.lines() == []


def test_progress_context_abandons_on_error(multi, target):
    with pytest.raises(RuntimeError):
        with ProgressContext(length=4, message='ctx', multi=multi) as ctx:
            ctx.advance(2)
            raise RuntimeError('boom')

    assert ctx.counter.status is Status.ABANDONED
    assert target.lines() == ['2/4 ctx']


def test_group_smoke(multi, target):
    bar = multi.create_bar(length=3, message="Smoke")
    for _ in range(3):
        bar.advance()
        multi.display(force_clear=True)
    assert target.lines() == ['3/3 Smoke']
    multi.close()
