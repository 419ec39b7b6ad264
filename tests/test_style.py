from stackbar import (
    Colors,
    CounterWidget,
    ProgressSnapshot,
    Status,
    Style,
    Theme,
    format_duration,
)
from stackbar import _truncate


def make_snapshot(**overrides):
    values = dict(
        position=5,
        length=10,
        elapsed=0.0,
        per_second=0.0,
        eta=None,
        message='msg',
        prefix='',
        status=Status.IN_PROGRESS,
        tick=0,
    )
    values.update(overrides)
    return ProgressSnapshot(**values)


def test_plain_bar_line():
    [line] = Style.plain().render(make_snapshot(), 60)

    assert line == '[###########-----------] 50% 5/10 00:00:00 ETA --:--:-- msg'
    assert len(line) <= 60


def test_bar_line_fits_narrow_width():
    for width in (20, 30, 45):
        [line] = Style.plain().render(make_snapshot(), width)
        assert len(line) <= width


def test_indeterminate_counter_uses_spinner():
    snapshot = make_snapshot(length=None, position=7, tick=2, elapsed=3.0, message='working')

    assert Style.plain().render(snapshot, 60) == ['- 7 00:00:03 working']


def test_finished_spinner_shows_done_marker():
    snapshot = make_snapshot(length=None, status=Status.FINISHED, message='')

    [line] = Style.plain().render(snapshot, 60)
    assert line.startswith('* 5')


def test_extra_message_lines_render_below_bar():
    style = Style.plain(indent=2)
    lines = style.render(make_snapshot(message='first\nsecond'), 60)

    assert len(lines) == 2
    assert lines[0].startswith('  [')
    assert lines[0].endswith('first')
    assert lines[1] == '  second'


def test_exclude_widgets():
    style = Style(theme=Theme.minimal(), use_unicode=False, exclude_widgets={CounterWidget})
    [line] = style.render(make_snapshot(), 60)

    assert '5/10' not in line
    assert '50%' in line


def test_colored_theme_emits_escapes():
    style = Style(theme=Theme.default(), use_unicode=False)
    [line] = style.render(make_snapshot(), 60)

    assert '\033[' in line
    assert Colors.strip(line) == Style.plain().render(make_snapshot(), 60)[0]


def test_unknown_width_uses_default_layout():
    [line] = Style.plain().render(make_snapshot(), None)
    assert len(line) <= 80


def test_truncate_keeps_escape_sequences():
    text = f'{Colors.RED}hello{Colors.RESET} world'
    truncated = _truncate(text, 3)

    assert Colors.strip(truncated) == 'hel'
    assert truncated.startswith(Colors.RED)
    assert truncated.endswith(Colors.RESET)


def test_truncate_without_width_is_noop():
    assert _truncate('x' * 200, None) == 'x' * 200
    assert _truncate('short', 40) == 'short'


def test_format_duration():
    assert format_duration(0) == '00:00:00'
    assert format_duration(3725.9) == '01:02:05'
    assert format_duration(None) == '--:--:--'
