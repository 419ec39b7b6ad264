import threading

import pytest

from stackbar import (
    Alignment,
    DrawError,
    HiddenTarget,
    InMemoryTarget,
    MultiProgress,
    ProgressCounter,
    Status,
)


def test_insert_remove_and_reinsert_order(multi):
    a = multi.insert(ProgressCounter(message='A'))
    b = multi.insert(ProgressCounter(message='B'))
    c = multi.insert(ProgressCounter(message='C'))

    multi.remove(c)
    d = multi.insert_before(b, ProgressCounter(message='D'))

    assert [counter.message for counter in multi.counters()] == ['A', 'D', 'B']
    assert multi.handles() == [a, d, b]
    assert c not in multi
    assert not c.is_attached


def test_insert_after_and_insert_at(multi):
    a = multi.create_bar(message='a')
    multi.create_bar(message='b')
    multi.insert_after(a, ProgressCounter(message='after-a'))
    multi.insert_at(0, ProgressCounter(message='first'))
    multi.insert_at(99, ProgressCounter(message='last'))

    assert [counter.message for counter in multi.counters()] == ['first', 'a', 'after-a', 'b', 'last']


def test_handle_from_other_coordinator_is_rejected(multi, make_multi):
    other = make_multi()
    foreign = other.create_bar()

    with pytest.raises(ValueError):
        multi.insert_before(foreign, ProgressCounter())
    assert len(multi) == 0
    assert multi.remove(foreign) is None
    assert len(other) == 1


def test_counter_belongs_to_one_coordinator_at_a_time(multi, make_multi):
    other = make_multi()
    counter = ProgressCounter()
    handle = multi.insert(counter)

    with pytest.raises(ValueError):
        other.insert(counter)

    multi.remove(handle)
    other.insert(counter)
    assert other.counters() == [counter]


def test_handle_delegates_to_counter(multi):
    handle = multi.create_bar(length=10, message='job')
    handle.advance(3)

    assert handle.position == 3
    assert handle.counter.position == 3
    assert handle.message == 'job'


def test_first_draw_writes_every_line(multi, target):
    multi.create_bar(length=10, message='a')
    multi.create_bar(length=10, message='b')
    multi.display()

    assert target.lines() == ['0/10 a', '0/10 b']


def test_unchanged_frame_writes_nothing(multi, target):
    multi.create_bar(length=10, message='a')
    multi.display()
    target.reset_calls()

    multi.display()

    assert target.calls_named('write_line') == []


def test_only_changed_region_is_rewritten(multi, target, clock):
    multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b')
    multi.create_bar(length=10, message='c')
    multi.display()
    target.reset_calls()

    clock.advance(1.0)
    b.set_position(1)

    assert target.calls == [
        ('move_cursor_up', 2),
        ('write_line', '1/10 b'),
        ('write_line', '0/10 c'),
    ]
    assert target.lines() == ['0/10 a', '1/10 b', '0/10 c']


def test_growing_stack_appends_below(multi, target):
    multi.create_bar(length=10, message='a')
    multi.display()
    target.reset_calls()

    multi.create_bar(length=5, message='b')
    multi.display()

    assert target.calls == [('write_line', '0/5 b')]
    assert target.lines() == ['0/10 a', '0/5 b']


def test_finish_and_clear_erases_exactly_its_lines(multi, target, clock):
    a = multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b\nsecond line')
    multi.display()
    assert target.lines() == ['0/10 a', '0/10 b', 'second line']
    assert multi.slot(b).line_count == 2
    target.reset_calls()

    b.finish_and_clear()

    assert target.calls_named('clear_last') == [2]
    assert target.calls_named('write_line') == []
    assert target.lines() == ['0/10 a']
    assert b not in multi
    assert len(multi) == 1

    clock.advance(1.0)
    a.set_position(5)
    assert target.lines() == ['5/10 a']


def test_finish_and_clear_in_the_middle(multi, target):
    multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b\nb2')
    multi.create_bar(length=10, message='c')
    multi.display()

    b.finish_and_clear()

    assert target.lines() == ['0/10 a', '0/10 c']
    assert target.cursor == 2


def test_finish_twice_draws_one_final_frame(multi, target):
    bar = multi.create_bar(length=10, message='a')
    multi.display()
    target.reset_calls()

    bar.finish()
    bar.finish()

    assert target.calls_named('write_line') == ['10/10 a']
    assert bar.status is Status.FINISHED
    assert target.lines() == ['10/10 a']


def test_removed_bar_lines_are_cleared_once(multi, target, clock):
    multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b')
    multi.create_bar(length=10, message='c')
    multi.display()

    multi.remove(b)
    assert target.lines() == ['0/10 a', '0/10 c']

    target.reset_calls()
    clock.advance(1.0)
    b.counter.advance(4)
    assert target.calls == []
    assert multi.remove(b) is None


def test_width_change_forces_full_redraw(multi, target):
    multi.create_bar(length=10, message='a')
    multi.create_bar(length=10, message='b')
    multi.create_bar(length=10, message='c')
    multi.display()
    target.reset_calls()

    target.set_width(30)
    multi.display()

    assert target.calls[0] == ('clear_last', 3)
    assert target.calls_named('write_line') == ['0/10 a', '0/10 b', '0/10 c']
    assert target.lines() == ['0/10 a', '0/10 b', '0/10 c']


def test_lines_are_truncated_to_width(multi, target):
    multi.create_bar(length=10, message='x' * 60)
    multi.display()

    [line] = target.lines()
    assert len(line) == 40
    assert line.startswith('0/10 xxx')


def test_unknown_width_disables_truncation(multi, target):
    target.fail_width_queries(OSError('not a terminal'))
    multi.create_bar(length=10, message='x' * 60)
    multi.display()

    assert target.lines() == ['0/10 ' + 'x' * 60]


def test_bottom_alignment_keeps_stack_height(make_multi, target):
    multi = make_multi(target, alignment=Alignment.BOTTOM)
    a = multi.create_bar(length=10, message='a')
    multi.create_bar(length=10, message='b')
    multi.display()

    a.finish_and_clear()

    assert target.calls_named('clear_last') == []
    assert target.lines() == ['', '0/10 b']


def test_bottom_alignment_padding_stays_until_clear(make_multi, target):
    multi = make_multi(target, alignment=Alignment.BOTTOM)
    a = multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b')
    multi.display()

    a.finish_and_clear()
    b.finish_and_clear()

    assert len(multi) == 0
    assert multi.draw_state.lines == ['', '']
    assert target.lines() == []

    multi.clear()
    assert multi.draw_state.line_count == 0
    assert target.cursor == 0


def test_top_alignment_shrinks_stack(multi, target):
    a = multi.create_bar(length=10, message='a')
    multi.create_bar(length=10, message='b')
    multi.display()

    a.finish_and_clear()

    assert target.lines() == ['0/10 b']


def test_set_alignment_rejects_other_values(multi):
    with pytest.raises(ValueError):
        multi.set_alignment('bottom')
    multi.set_alignment(Alignment.BOTTOM)
    assert multi.alignment is Alignment.BOTTOM


def test_append_only_when_target_cannot_move_cursor(make_multi, clock):
    target = InMemoryTarget(width=40, supports_cursor_movement=False)
    multi = make_multi(target)
    a = multi.create_bar(length=10, message='a')
    b = multi.create_bar(length=10, message='b')

    clock.advance(1.0)
    assert target.lines() == ['0/10 a', '0/10 b']

    a.set_position(5)
    b.finish_and_clear()
    a.finish()

    assert target.lines() == ['0/10 a', '0/10 b', '5/10 a', '10/10 a']
    assert target.calls_named('move_cursor_up') == []
    assert target.calls_named('clear_last') == []


def test_disabling_cursor_movement_falls_back_to_append_only(multi, target, clock):
    bar = multi.create_bar(length=10, message='a')
    multi.set_move_cursor(False)
    target.reset_calls()

    clock.advance(1.0)
    bar.set_position(2)

    assert target.calls == [('write_line', '2/10 a')]
    assert target.lines() == ['0/10 a', '2/10 a']


def test_println_goes_above_the_stack(multi, target, clock):
    bar = multi.create_bar(length=10, message='a')
    multi.println('hello\nworld')
    assert target.lines() == ['hello', 'world', '0/10 a']

    clock.advance(1.0)
    bar.set_position(3)
    assert target.lines() == ['hello', 'world', '3/10 a']


def test_suspend_hides_stack_until_block_ends(multi, target, clock):
    bar = multi.create_bar(length=10, message='a')

    with multi.suspend():
        assert target.lines() == []
        clock.advance(1.0)
        bar.set_position(4)
        assert target.lines() == []

    assert target.lines() == ['4/10 a']


def test_clear_keeps_bars_registered(multi, target):
    multi.create_bar(length=10, message='a')
    multi.create_bar(length=10, message='b')
    multi.display()

    multi.clear()
    assert target.lines() == []
    assert len(multi) == 2

    multi.display()
    assert target.lines() == ['0/10 a', '0/10 b']


def test_display_force_clear_rewrites_everything(multi, target):
    multi.create_bar(length=10, message='a')
    multi.display()
    target.reset_calls()

    multi.display(force_clear=True)

    assert target.calls == [('clear_last', 1), ('write_line', '0/10 a')]


def test_write_failures_are_returned_and_degrade_output(make_multi, target, clock):
    multi = make_multi(target, max_write_failures=2)
    bar = multi.create_bar(length=10, message='a')

    target.fail_next(1)
    clock.advance(1.0)
    error = bar.set_position(1)
    assert isinstance(error, DrawError)
    assert isinstance(error.cause, BrokenPipeError)
    assert multi.last_error is error
    assert multi.move_cursor

    target.fail_next(1)
    clock.advance(1.0)
    assert isinstance(bar.set_position(2), DrawError)
    assert not multi.move_cursor
    assert not multi.is_hidden

    for position in (3, 4):
        target.fail_next(1)
        clock.advance(1.0)
        assert isinstance(bar.set_position(position), DrawError)
    assert multi.is_hidden

    clock.advance(1.0)
    assert bar.set_position(5) is None
    assert bar.finish() is None


def test_successful_draw_resets_failure_count(make_multi, target, clock):
    multi = make_multi(target, max_write_failures=2)
    bar = multi.create_bar(length=10, message='a')

    for position in (1, 3, 5):
        target.fail_next(1)
        clock.advance(1.0)
        assert isinstance(bar.set_position(position), DrawError)
        clock.advance(1.0)
        assert bar.set_position(position + 1) is None

    assert multi.move_cursor


def test_hidden_target_draws_nothing_but_tracks_bars(make_multi):
    multi = make_multi(HiddenTarget())
    a = multi.create_bar(length=10)
    b = multi.create_bar(length=10)

    assert multi.is_hidden
    assert multi.println('ignored') is None
    b.finish_and_clear()
    a.advance(5)

    assert multi.counters() == [a.counter]
    assert a.position == 5


def test_set_draw_target_moves_output(multi, target):
    multi.create_bar(length=10, message='a')
    multi.display()

    replacement = InMemoryTarget(width=40)
    multi.set_draw_target(replacement)
    multi.display()

    assert target.lines() == []
    assert replacement.lines() == ['0/10 a']


def test_style_failure_keeps_previous_lines(multi, target, clock):
    class Flaky:
        fail = False

        def render(self, snapshot, width):
            if self.fail:
                raise RuntimeError('bad template')
            return [f'pos {snapshot.position}']

    style = Flaky()
    bar = multi.create_bar(length=10, style=style)
    multi.display()

    style.fail = True
    clock.advance(1.0)
    assert bar.set_position(5) is None
    assert target.lines() == ['pos 0']


def test_close_draws_final_frame_and_stops_drawing(multi, target, clock):
    bar = multi.create_bar(length=10, message='a')
    clock.advance(0.01)
    bar.set_position(7)

    with multi:
        pass
    assert target.lines() == ['7/10 a']

    target.reset_calls()
    clock.advance(1.0)
    bar.finish()
    assert target.calls == []


def test_concurrent_workers_end_with_consistent_frame(text_style):
    target = InMemoryTarget(width=60)
    multi = MultiProgress(target=target, default_style=text_style)
    handles = [multi.create_bar(length=300, message=f'worker {i}') for i in range(4)]

    def work(handle):
        for _ in range(300):
            handle.advance(1)
        handle.finish()

    threads = [threading.Thread(target=work, args=(handle,)) for handle in handles]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert target.lines() == [f'300/300 worker {i}' for i in range(4)]
    assert target.cursor == 4
    multi.close()
