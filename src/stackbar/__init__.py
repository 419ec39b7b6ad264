# -*- coding: utf-8 -*-
"""
stackbar – Thread-safe progress counters and a stacked multi-bar renderer.
Licensed under the MIT License.
"""

import os
import re
import sys
import time
import itertools
import threading
import weakref
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
        Optional,
        Tuple,
        Set,
        List,
        Dict,
        Callable,
        Any,
        Iterable,
        Iterator,
        NamedTuple,
        TextIO,
)
from abc import ABC, abstractmethod
from enum import Enum
import logging

__all__ = [
    'progress',
    'ProgressContext',
    'ProgressCounter',
    'ProgressSnapshot',
    'SampleWindow',
    'Sample',
    'RateEstimator',
    'DrawScheduler',
    'DrawDecision',
    'SlotState',
    'MultiProgress',
    'BarHandle',
    'BarSlot',
    'DrawState',
    'DrawTarget',
    'TerminalTarget',
    'HiddenTarget',
    'InMemoryTarget',
    'Config',
    'Alignment',
    'Status',
    'FinishMode',
    'Clock',
    'MonotonicClock',
    'ManualClock',
    'StackbarError',
    'ConfigError',
    'DrawError',
    'Style',
    'Theme',
    'Colors',
    'Widget',
    'PrefixWidget',
    'MessageWidget',
    'BarWidget',
    'PercentageWidget',
    'CounterWidget',
    'SpinnerWidget',
    'RateWidget',
    'TimeWidget',
    'format_duration',
]

logger = logging.getLogger('stackbar')


U64_MAX = 2 ** 64 - 1
DEFAULT_MAX_REDRAWS_PER_SECOND = 15.0
DEFAULT_STEADY_TICK_INTERVAL = 0.1
DEFAULT_SAMPLE_WINDOW_CAPACITY = 16
DEFAULT_MAX_WRITE_FAILURES = 3
DEFAULT_LAYOUT_WIDTH = 80

_ANSI_ESCAPE_RE = re.compile(r'\x1b\[[0-9;?]*[ -/]*[@-~]')


# ============================================================================
# Errors
# ============================================================================

class StackbarError(Exception):
    """Base class for all stackbar errors"""


class ConfigError(StackbarError, ValueError):
    """Raised when a configuration value is rejected at construction time"""


class DrawError(StackbarError):
    """A draw target failed to accept output.

    Returned (not raised) from operations that triggered the draw; the
    coordinator keeps running and degrades its output mode on repeated
    failures.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
        self.__cause__ = cause


# ============================================================================
# Configuration
# ============================================================================

class Alignment(Enum):
    """Where the stack stays anchored when it loses lines.

    TOP lets the stack shrink upward and erases the freed rows. BOTTOM keeps
    the last line in place by padding the top with blank rows; those rows stay
    part of the stack, even once every bar is gone, until clear(), println()
    or a width change repaints the whole stack.
    """
    TOP = 'top'
    BOTTOM = 'bottom'


@dataclass
class Config:
    """
    Coordinator configuration.

    Args:
        max_redraws_per_second: Caps total terminal writes for non-forced draws
        steady_tick_interval: Default cadence of steady tickers, in seconds
        sample_window_capacity: Number of samples the rate estimator looks at
        move_cursor: Rewrite the stack in place using cursor movement
        alignment: Anchor of a shrinking stack
        max_write_failures: Consecutive target failures before degrading output
    """
    max_redraws_per_second: float = DEFAULT_MAX_REDRAWS_PER_SECOND
    steady_tick_interval: float = DEFAULT_STEADY_TICK_INTERVAL
    sample_window_capacity: int = DEFAULT_SAMPLE_WINDOW_CAPACITY
    move_cursor: bool = True
    alignment: Alignment = Alignment.TOP
    max_write_failures: int = DEFAULT_MAX_WRITE_FAILURES

    def __post_init__(self):
        if self.max_redraws_per_second <= 0:
            raise ConfigError("max_redraws_per_second must be positive")
        if self.steady_tick_interval <= 0:
            raise ConfigError("steady_tick_interval must be positive")
        _validate_window_capacity(self.sample_window_capacity)
        if not isinstance(self.alignment, Alignment):
            raise ConfigError(f"alignment must be an Alignment, got {self.alignment!r}")
        if self.max_write_failures < 1:
            raise ConfigError("max_write_failures must be at least 1")

    @property
    def min_draw_interval(self) -> float:
        """Minimum seconds between two non-forced draws"""
        return 1.0 / self.max_redraws_per_second


def _validate_window_capacity(capacity: int):
    if not isinstance(capacity, int) or capacity < 2:
        raise ConfigError("sample_window_capacity must be an integer >= 2")


# ============================================================================
# Clocks
# ============================================================================

class Clock(ABC):
    """Source of monotonic timestamps in seconds"""

    @abstractmethod
    def now(self) -> float:
        pass

    def timer(self, callback: Callable[[], Any]) -> '_ThreadTimer':
        """Re-armable one-shot timer calling the bound method `callback` at a deadline"""
        return _ThreadTimer(self, callback)


class MonotonicClock(Clock):
    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to. Used for deterministic tests.

    Timers made by this clock fire synchronously inside advance() and set().
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()
        self._timers: 'weakref.WeakSet[_ManualTimer]' = weakref.WeakSet()

    def now(self) -> float:
        return self._now

    def timer(self, callback: Callable[[], Any]) -> '_ManualTimer':
        timer = _ManualTimer(callback)
        with self._lock:
            self._timers.add(timer)
        return timer

    def advance(self, seconds: float):
        if seconds < 0:
            raise ValueError("a monotonic clock cannot go backward")
        with self._lock:
            self._now += seconds
        self._fire_timers()

    def set(self, timestamp: float):
        with self._lock:
            if timestamp < self._now:
                raise ValueError("a monotonic clock cannot go backward")
            self._now = timestamp
        self._fire_timers()

    def _fire_timers(self):
        with self._lock:
            timers = list(self._timers)
        for timer in timers:
            timer._fire_if_due(self._now)


class _ManualTimer:
    """Timer driven by a `ManualClock`"""

    def __init__(self, callback: Callable[[], Any]):
        self._callback_ref = weakref.WeakMethod(callback)
        self._deadline: Optional[float] = None
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def schedule(self, deadline: float):
        """Arm for `deadline`; an earlier pending deadline is kept"""
        with self._lock:
            if self._cancelled:
                return
            if self._deadline is None or deadline < self._deadline:
                self._deadline = deadline

    def cancel(self):
        with self._lock:
            self._cancelled = True
            self._deadline = None

    def _fire_if_due(self, now: float):
        with self._lock:
            if self._deadline is None or now < self._deadline:
                return
            self._deadline = None
        callback = self._callback_ref()
        if callback is not None:
            callback()


class _ThreadTimer:
    """Timer running its callback on a private daemon thread.

    The thread starts on the first schedule() and exits on cancel() or once
    the callback's owner has been garbage collected.
    """

    def __init__(self, clock: Clock, callback: Callable[[], Any]):
        self._clock = clock
        self._callback_ref = weakref.WeakMethod(callback)
        self._deadline: Optional[float] = None
        self._cancelled = False
        self._condition = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def schedule(self, deadline: float):
        """Arm for `deadline`; an earlier pending deadline is kept"""
        with self._condition:
            if self._cancelled:
                return
            if self._deadline is None or deadline < self._deadline:
                self._deadline = deadline
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name='stackbar-deferred-draw', daemon=True)
                self._thread.start()
            self._condition.notify()

    def cancel(self):
        with self._condition:
            self._cancelled = True
            self._deadline = None
            self._condition.notify()

    def _wait_until_due(self) -> bool:
        """Block until the deadline passes; False when the timer should stop"""
        with self._condition:
            while not self._cancelled:
                if self._callback_ref() is None:
                    return False
                if self._deadline is None:
                    self._condition.wait(1.0)
                    continue
                remaining = self._deadline - self._clock.now()
                if remaining <= 0:
                    self._deadline = None
                    return True
                self._condition.wait(min(remaining, 1.0))
            return False

    def _run(self):
        error_count = 0
        max_errors = 10

        while self._wait_until_due():
            callback = self._callback_ref()
            if callback is None:
                return

            try:
                callback()
                error_count = 0
            except Exception:
                error_count += 1
                if error_count <= max_errors:
                    logger.exception('Deferred draw failed (error %d/%d)', error_count, max_errors)
                elif error_count == max_errors + 1:
                    logger.error('Deferred draw: suppressing further errors')
                # Back off on errors
                time.sleep(1)
            finally:
                del callback


_DEFAULT_CLOCK = MonotonicClock()


# ============================================================================
# Terminal utilities
# ============================================================================

class TerminalCapability(Enum):
    """Terminal capability levels"""
    MINIMAL = 1  # No ANSI support
    BASIC = 2    # Basic ANSI colors
    ADVANCED = 3 # Full Unicode and colors


class Colors:
    """ANSI color codes and utilities"""
    RESET = '\033[0m'

    BLACK = '\033[30m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    BRIGHT_BLACK = '\033[90m'
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_WHITE = '\033[97m'

    BOLD = '\033[1m'
    DIM = '\033[2m'

    @staticmethod
    def rgb(r: int, g: int, b: int) -> str:
        """Create 24-bit RGB color"""
        return f'\033[38;2;{r};{g};{b}m'

    @staticmethod
    def gradient(progress: float, start_color: Tuple[int, int, int], end_color: Tuple[int, int, int]) -> str:
        """Generate gradient color based on progress (0.0 to 1.0)"""
        r = int(start_color[0] + (end_color[0] - start_color[0]) * progress)
        g = int(start_color[1] + (end_color[1] - start_color[1]) * progress)
        b = int(start_color[2] + (end_color[2] - start_color[2]) * progress)
        return Colors.rgb(r, g, b)

    @staticmethod
    def strip(text: str) -> str:
        """Remove ANSI escape sequences"""
        return _ANSI_ESCAPE_RE.sub('', text)


class Theme:
    """Color theme for the bundled widgets"""

    def __init__(self,
                 prefix_color: str = Colors.BOLD,
                 message_color: str = Colors.CYAN,
                 bar_complete_color: str = Colors.GREEN,
                 bar_incomplete_color: str = Colors.BRIGHT_BLACK,
                 bar_abandoned_color: str = Colors.RED,
                 percentage_color: str = Colors.BRIGHT_WHITE,
                 time_color: str = Colors.YELLOW,
                 counter_color: str = Colors.BLUE,
                 use_gradient: bool = False,
                 gradient_start: Tuple[int, int, int] = (255, 0, 0),  # Red
                 gradient_end: Tuple[int, int, int] = (0, 255, 0)):    # Green
        self.prefix_color = prefix_color
        self.message_color = message_color
        self.bar_complete_color = bar_complete_color
        self.bar_incomplete_color = bar_incomplete_color
        self.bar_abandoned_color = bar_abandoned_color
        self.percentage_color = percentage_color
        self.time_color = time_color
        self.counter_color = counter_color
        self.use_gradient = use_gradient
        self.gradient_start = gradient_start
        self.gradient_end = gradient_end

    @staticmethod
    def default():
        """Default color theme"""
        return Theme()

    @staticmethod
    def minimal():
        """Theme for minimal terminals (no colors)"""
        return Theme(
            prefix_color='',
            message_color='',
            bar_complete_color='',
            bar_incomplete_color='',
            bar_abandoned_color='',
            percentage_color='',
            time_color='',
            counter_color='',
            use_gradient=False
        )

    @staticmethod
    def fire():
        """Fire/heat theme with gradient"""
        return Theme(
            message_color=Colors.BRIGHT_YELLOW,
            bar_complete_color=Colors.RED,
            percentage_color=Colors.BRIGHT_RED,
            time_color=Colors.YELLOW,
            counter_color=Colors.BRIGHT_YELLOW,
            use_gradient=True,
            gradient_start=(255, 100, 0),   # Orange
            gradient_end=(255, 50, 50)      # Red
        )


def _detect_terminal_capability(stream: Optional[TextIO] = None) -> TerminalCapability:
    """Detect terminal capabilities"""
    stream = sys.stderr if stream is None else stream
    term = os.environ.get('TERM', '')
    colorterm = os.environ.get('COLORTERM', '')

    if not _is_tty(stream):
        return TerminalCapability.MINIMAL

    # Advanced terminals (kitty, alacritty, etc.)
    if any(x in term.lower() for x in ['kitty', 'alacritty', 'iterm', 'wezterm']):
        return TerminalCapability.ADVANCED
    if 'truecolor' in colorterm or '24bit' in colorterm:
        return TerminalCapability.ADVANCED

    if term and term != 'dumb':
        return TerminalCapability.BASIC

    return TerminalCapability.MINIMAL


def _is_tty(stream: Optional[TextIO]) -> bool:
    try:
        return bool(stream is not None and stream.isatty())
    except (AttributeError, ValueError):
        # Closed or exotic streams
        return False


def _get_terminal_width(stream: TextIO) -> Optional[int]:
    """Return the width of the terminal behind `stream`, or None when unknown."""
    try:
        columns = os.get_terminal_size(stream.fileno()).columns
    except (AttributeError, OSError, ValueError):
        # No TTY (cron, IDEs, CI, redirected output) or no file descriptor
        return None
    return columns if columns > 0 else None


def _visible_len(text: str) -> int:
    return len(Colors.strip(text))


def _truncate(text: str, width: Optional[int]) -> str:
    """Cut `text` to `width` visible columns, keeping escape sequences intact."""
    if width is None or _visible_len(text) <= width:
        return text

    parts = []
    visible = 0
    pos = 0
    has_escapes = False
    for match in _ANSI_ESCAPE_RE.finditer(text):
        chunk = text[pos:match.start()]
        take = min(len(chunk), width - visible)
        parts.append(chunk[:take])
        visible += take
        parts.append(match.group())
        has_escapes = True
        pos = match.end()
    if visible < width:
        parts.append(text[pos:pos + width - visible])
    if has_escapes:
        parts.append(Colors.RESET)
    return ''.join(parts)


def format_duration(seconds: Optional[float]) -> str:
    """Format a number of seconds as HH:MM:SS"""
    if seconds is None:
        return '--:--:--'
    hours, remainder = divmod(int(max(0.0, seconds)), 3600)
    minutes, seconds = divmod(remainder, 60)
    return '{:02d}:{:02d}:{:02d}'.format(hours, minutes, seconds)


# ============================================================================
# Atomic cells
# ============================================================================

class _AtomicCell:
    """A single value whose read-modify-write operations never interleave.

    The guarding lock is only ever held for the arithmetic itself, never while
    calling out to other objects, so it cannot take part in a deadlock.
    """
    __slots__ = ('_value', '_lock')

    def __init__(self, value: Any):
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> Any:
        return self._value

    def store(self, value: Any):
        with self._lock:
            self._value = value

    def swap(self, value: Any) -> Any:
        with self._lock:
            old = self._value
            self._value = value
            return old

    def fetch_add(self, delta: int, maximum: int = U64_MAX) -> int:
        """Add `delta` (saturating at `maximum`) and return the previous value"""
        with self._lock:
            old = self._value
            self._value = min(maximum, old + delta)
            return old

    def update(self, fn: Callable[[Any], Any]) -> Tuple[Any, Any]:
        """Replace the value with fn(value); return (old, new)"""
        with self._lock:
            old = self._value
            self._value = fn(old)
            return old, self._value


# ============================================================================
# Samples and rate estimation
# ============================================================================

class Sample(NamedTuple):
    timestamp: float
    position: int


class SampleWindow:
    """Fixed-capacity ring buffer of (timestamp, position) samples.

    Timestamps never decrease. `lock` is re-entrant so a counter can hold it
    around compound updates (position writes, finalization, reset) while the
    window methods take it again.
    """

    def __init__(self, capacity: int = DEFAULT_SAMPLE_WINDOW_CAPACITY):
        _validate_window_capacity(capacity)
        self._samples: deque = deque(maxlen=capacity)
        self.lock = threading.RLock()

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def __len__(self) -> int:
        return len(self._samples)

    def push(self, timestamp: float, position: int) -> bool:
        """Append a sample; return False when it was skipped as a no-op"""
        with self.lock:
            if self._samples:
                last = self._samples[-1]
                if last.position == position:
                    return False
                timestamp = max(timestamp, last.timestamp)
            self._samples.append(Sample(timestamp, position))
            return True

    def record(self, read_clock: Callable[[], float], read_position: Callable[[], int]) -> bool:
        """Sample the clock and a position together under the window lock"""
        with self.lock:
            return self.push(read_clock(), read_position())

    def clear(self, seed: Optional[Sample] = None):
        with self.lock:
            self._samples.clear()
            if seed is not None:
                self._samples.append(seed)

    def samples(self) -> List[Sample]:
        with self.lock:
            return list(self._samples)


class RateEstimator:
    """Bounded-window linear throughput estimator.

    The rate is the slope between the oldest and the newest sample in the
    window; the window capacity is the only smoothing.
    """
    MAX_RATE = float(U64_MAX)
    MIN_INTERVAL = 1e-9

    @staticmethod
    def per_second(samples: List[Sample]) -> float:
        if len(samples) < 2:
            return 0.0

        oldest, last = samples[0], samples[-1]
        interval = last.timestamp - oldest.timestamp
        if interval < RateEstimator.MIN_INTERVAL:
            return 0.0

        rate = (last.position - oldest.position) / interval
        return min(RateEstimator.MAX_RATE, max(0.0, rate))

    @staticmethod
    def eta(rate: float, position: int, length: Optional[int]) -> Optional[float]:
        """Seconds until `length` is reached, or None when unknown"""
        if length is None or rate <= 0.0:
            return None
        return max(0, length - position) / rate


# ============================================================================
# Progress Counter
# ============================================================================

class Status(Enum):
    IN_PROGRESS = 'in_progress'
    FINISHED = 'finished'
    ABANDONED = 'abandoned'


class FinishMode(Enum):
    """What leaving a counter's context does to an unfinished counter"""
    LEAVE = 'leave'
    CLEAR = 'clear'
    ABANDON = 'abandon'


@dataclass(frozen=True)
class ProgressSnapshot:
    """Plain-value view of a counter handed to styles"""
    position: int
    length: Optional[int]
    elapsed: float
    per_second: float
    eta: Optional[float]
    message: str
    prefix: str
    status: Status
    tick: int = 0

    @property
    def fraction(self) -> float:
        return _fraction(self.position, self.length)

    @property
    def is_finished(self) -> bool:
        return self.status is not Status.IN_PROGRESS

    @property
    def duration(self) -> Optional[float]:
        """Expected total time (elapsed plus ETA); 0 once finished or without a length"""
        if self.length is None or self.is_finished:
            return 0.0
        if self.eta is None:
            return None
        return self.elapsed + self.eta


def _fraction(position: int, length: Optional[int]) -> float:
    if length is None:
        return 0.0
    if length == 0:
        return 1.0
    return max(0.0, min(1.0, position / float(length)))


class ProgressCounter:
    """Position, length and status of one unit of work.

    Safe to mutate from any number of threads. A counter only draws once it
    has been inserted into a `MultiProgress`; mutators return the `DrawError`
    of the draw they triggered, if any.
    """

    def __init__(self,
                 length: Optional[int] = None,
                 message: str = '',
                 prefix: str = '',
                 clock: Optional[Clock] = None,
                 window_capacity: int = DEFAULT_SAMPLE_WINDOW_CAPACITY,
                 steady_tick_interval: float = DEFAULT_STEADY_TICK_INTERVAL,
                 on_finish: FinishMode = FinishMode.CLEAR):
        """
        Create a progress counter.

        Args:
            length: Total amount of work (None for indeterminate)
            message: Free-form message shown by styles
            prefix: Short label shown before the bar
            clock: Timestamp source
            window_capacity: Number of samples kept for rate estimation
            steady_tick_interval: Default interval of enable_steady_tick()
            on_finish: Behavior when the context manager exits unfinished
        """
        if length is not None and length < 0:
            raise ValueError("length must be non-negative")
        if steady_tick_interval <= 0:
            raise ConfigError("steady_tick_interval must be positive")

        self._clock = clock or _DEFAULT_CLOCK
        self._window = SampleWindow(window_capacity)
        self._steady_tick_interval = steady_tick_interval
        self.on_finish = on_finish

        now = self._clock.now()
        self._position = _AtomicCell(0)
        self._length = _AtomicCell(length)
        self._status = _AtomicCell((Status.IN_PROGRESS, False))
        self._message = _AtomicCell(message)
        self._prefix = _AtomicCell(prefix)
        self._tick = _AtomicCell(0)
        self._started_at = _AtomicCell(now)
        self._listener = _AtomicCell(None)
        self._ticker: Optional[_SteadyTicker] = None
        self._ticker_lock = threading.Lock()

        self._window.push(now, 0)

    def __repr__(self):
        return (f"{type(self).__name__}(position={self.position}, length={self.length}, "
                f"status={self.status.name})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.is_finished:
            return False

        if exc_type is not None or self.on_finish is FinishMode.ABANDON:
            self.abandon()
        elif self.on_finish is FinishMode.CLEAR:
            self.finish_and_clear()
        else:
            self.finish()
        return False

    # Read-only state

    @property
    def position(self) -> int:
        return self._position.load()

    @property
    def length(self) -> Optional[int]:
        return self._length.load()

    @property
    def status(self) -> Status:
        return self._status.load()[0]

    @property
    def message(self) -> str:
        return self._message.load()

    @property
    def prefix(self) -> str:
        return self._prefix.load()

    @property
    def started_at(self) -> float:
        return self._started_at.load()

    @property
    def tick_count(self) -> int:
        return self._tick.load()

    @property
    def is_finished(self) -> bool:
        return self.status is not Status.IN_PROGRESS

    @property
    def is_cleared(self) -> bool:
        """True once finish_and_clear() has hidden the counter"""
        return self._status.load()[1]

    @property
    def samples(self) -> List[Sample]:
        return self._window.samples()

    def elapsed(self) -> float:
        return max(0.0, self._clock.now() - self.started_at)

    def per_second(self) -> float:
        return self.snapshot().per_second

    def eta(self) -> Optional[float]:
        return self.snapshot().eta

    def duration(self) -> Optional[float]:
        return self.snapshot().duration

    def fraction(self) -> float:
        return _fraction(self.position, self.length)

    def snapshot(self) -> ProgressSnapshot:
        """Consistent plain-value copy of the counter"""
        with self._window.lock:
            position = self._position.load()
            samples = self._window.samples()
            now = self._clock.now()
            started_at = self._started_at.load()

        status = self.status
        length = self.length
        elapsed = max(0.0, now - started_at)

        if status is Status.IN_PROGRESS:
            rate = RateEstimator.per_second(samples)
            eta = RateEstimator.eta(rate, position, length)
        else:
            rate = position / elapsed if elapsed > 0 else 0.0
            eta = 0.0

        return ProgressSnapshot(
            position=position,
            length=length,
            elapsed=elapsed,
            per_second=rate,
            eta=eta,
            message=self.message,
            prefix=self.prefix,
            status=status,
            tick=self.tick_count,
        )

    # Mutators

    def set_length(self, length: Optional[int]) -> Optional[DrawError]:
        if length is not None and length < 0:
            raise ValueError("length must be non-negative")
        if self.is_finished:
            return None
        if self._length.swap(length) == length:
            return None
        return self._notify()

    def inc_length(self, delta: int) -> Optional[DrawError]:
        if delta < 0:
            raise ValueError("delta must be non-negative")
        if self.is_finished or delta == 0:
            return None
        self._length.update(lambda length: min(U64_MAX, (length or 0) + delta))
        return self._notify()

    def set_position(self, position: int) -> Optional[DrawError]:
        """Move to `position`. Of two racing calls either may win."""
        if position < 0:
            raise ValueError("position must be non-negative")
        position = min(U64_MAX, position)
        with self._window.lock:
            if self.is_finished:
                return None
            if self._position.swap(position) == position:
                return None
            self._record_sample()
        return self._notify()

    def advance(self, delta: int = 1) -> Optional[DrawError]:
        """Atomically add `delta` to the position"""
        if delta < 0:
            raise ValueError("delta must be non-negative")
        if delta == 0:
            return None

        with self._window.lock:
            if self.is_finished:
                return None
            self._position.fetch_add(delta)
            self._record_sample()
        return self._notify()

    inc = advance

    def set_message(self, message: str) -> Optional[DrawError]:
        if self.is_finished:
            return None
        if self._message.swap(message) == message:
            return None
        return self._notify()

    def set_prefix(self, prefix: str) -> Optional[DrawError]:
        if self.is_finished:
            return None
        if self._prefix.swap(prefix) == prefix:
            return None
        return self._notify()

    def tick(self) -> Optional[DrawError]:
        """Advance the spinner and redraw right away"""
        return self._tick_internal(forced=True)

    def _tick_internal(self, forced: bool) -> Optional[DrawError]:
        if self.is_finished:
            return None
        self._tick.fetch_add(1)
        return self._notify(forced=forced)

    def finish(self) -> Optional[DrawError]:
        """Mark the work done, filling the bar. Repeated calls do nothing."""
        return self._finalize(Status.FINISHED, fill=True, clear=False)

    def finish_with_message(self, message: str) -> Optional[DrawError]:
        return self._finalize(Status.FINISHED, fill=True, clear=False, message=message)

    def finish_and_clear(self) -> Optional[DrawError]:
        """Finish and erase the bar from the display on the next draw"""
        return self._finalize(Status.FINISHED, fill=True, clear=True)

    def abandon(self) -> Optional[DrawError]:
        """Stop tracking, keeping the current position on display"""
        return self._finalize(Status.ABANDONED, fill=False, clear=False)

    def abandon_with_message(self, message: str) -> Optional[DrawError]:
        return self._finalize(Status.ABANDONED, fill=False, clear=False, message=message)

    def _finalize(self, status: Status, fill: bool, clear: bool, message: Optional[str] = None) -> Optional[DrawError]:
        def transition(current):
            if current[0] is Status.IN_PROGRESS:
                return (status, clear)
            return current

        # Position writers check the status under the same lock, so none of
        # them can land after the fill
        with self._window.lock:
            old, _ = self._status.update(transition)
            if old[0] is not Status.IN_PROGRESS:
                return None

            if message is not None:
                self._message.store(message)

            length = self.length
            if fill and length is not None:
                self._position.store(length)
                self._record_sample()

        self._stop_ticker(wait=False)
        return self._notify(forced=True)

    def reset(self) -> Optional[DrawError]:
        """Start over: position, samples, clock and status. Length is kept."""
        with self._window.lock:
            now = self._clock.now()
            self._position.store(0)
            self._window.clear(seed=Sample(now, 0))
            self._started_at.store(now)
            self._tick.store(0)
            self._status.store((Status.IN_PROGRESS, False))
        return self._notify()

    def reset_eta(self) -> Optional[DrawError]:
        """Forget the samples collected so far"""
        with self._window.lock:
            self._window.clear(seed=Sample(self._clock.now(), self._position.load()))
        return self._notify()

    def reset_elapsed(self) -> Optional[DrawError]:
        self._started_at.store(self._clock.now())
        return self._notify()

    def _record_sample(self):
        self._window.record(self._clock.now, self._position.load)

    # Steady ticker

    def enable_steady_tick(self, interval: Optional[float] = None):
        """Tick from a background thread every `interval` seconds"""
        if interval is None:
            interval = self._steady_tick_interval
        if interval <= 0:
            raise ConfigError("steady tick interval must be positive")
        if self.is_finished:
            return

        with self._ticker_lock:
            if self._ticker is not None and self._ticker.is_alive():
                self._ticker.interval = interval
                return
            self._ticker = _SteadyTicker(self, interval)
            self._ticker.start()

        self._tick_internal(forced=False)

    def disable_steady_tick(self):
        self._stop_ticker(wait=True)

    @property
    def is_steady_ticking(self) -> bool:
        ticker = self._ticker
        return ticker is not None and ticker.is_alive()

    def _stop_ticker(self, wait: bool):
        with self._ticker_lock:
            ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel(wait=wait)

    # Iteration

    def wrap_iter(self, iterable: Iterable) -> Iterator:
        """Yield from `iterable`, advancing by one per item"""
        for item in iterable:
            yield item
            self.advance(1)

    # Coordinator relation

    def _attach(self, coordinator: 'MultiProgress', slot_id: int):
        listener = (weakref.ref(coordinator), slot_id)

        def attach(current):
            if current is not None and current[0]() is not None:
                return current
            return listener

        _, new = self._listener.update(attach)
        if new is not listener:
            raise ValueError("Counter is already attached to a coordinator")

    def _detach(self, slot_id: int):
        self._listener.update(lambda current: None if current is not None and current[1] == slot_id else current)

    def _notify(self, forced: bool = False) -> Optional[DrawError]:
        listener = self._listener.load()
        if listener is None:
            return None
        coordinator_ref, slot_id = listener
        coordinator = coordinator_ref()
        if coordinator is None:
            return None
        return coordinator._on_counter_update(slot_id, forced=forced)


class _SteadyTicker:
    """Background thread ticking one counter until it finishes or goes away"""

    def __init__(self, counter: ProgressCounter, interval: float):
        self._counter_ref = weakref.ref(counter)
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name='stackbar-steady-tick', daemon=True)

    def start(self):
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def cancel(self, wait: bool = True):
        self._stop.set()
        if wait and self._thread is not threading.current_thread() and self._thread.is_alive():
            self._thread.join()

    def _run(self):
        error_count = 0
        max_errors = 10

        while not self._stop.wait(self.interval):
            counter = self._counter_ref()
            if counter is None or counter.is_finished:
                return

            try:
                counter._tick_internal(forced=False)
                error_count = 0
            except Exception:
                error_count += 1
                if error_count <= max_errors:
                    logger.exception('Steady tick failed (error %d/%d)', error_count, max_errors)
                elif error_count == max_errors + 1:
                    logger.error('Steady tick: suppressing further errors')
                # Back off on errors
                self._stop.wait(1)
            finally:
                del counter


# ============================================================================
# Widget System
# ============================================================================

class Widget(ABC):
    """Base class for the pieces a `Style` assembles into a bar line"""
    _render_priority: int = 100

    def __init__(self, theme: Optional[Theme] = None):
        self.theme = theme or Theme.default()

    @property
    def render_priority(self) -> int:
        """Render priority for widget ordering (lower is rendered first)"""
        return self._render_priority

    @abstractmethod
    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        """Render the widget to a raw and styled string"""
        pass

    def _trim(self, text: str, width: int) -> str:
        """Trim text to fit within the specified width"""
        if width <= 0:
            return ''

        if len(text) <= width:
            return text

        text = text[:max(0, width-3)]
        return text + '.' * (width - len(text))

    @staticmethod
    def _paint(color: str, text: str) -> Tuple[str, str]:
        if not color or not text:
            return (text, text)
        return (text, f'{color}{text}{Colors.RESET}')


class PrefixWidget(Widget):
    _render_priority = 30

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        return self._paint(self.theme.prefix_color, self._trim(snapshot.prefix, width))


class MessageWidget(Widget):
    """First line of the counter's message; further lines go below the bar"""
    _render_priority = 60

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        first_line = snapshot.message.split('\n', 1)[0]
        return self._paint(self.theme.message_color, self._trim(first_line, width))


class BarWidget(Widget):
    """Widget displaying the actual progress bar"""
    _render_priority = 50

    def __init__(self,
                 use_unicode: Optional[bool] = None,
                 theme: Optional[Theme] = None,
                 char_start_bracket: Optional[str] = None,
                 char_end_bracket: Optional[str] = None,
                 char_complete: Optional[str] = None,
                 char_incomplete: Optional[str] = None,
                 block_fractions: Optional[List[str]] = None,
                 max_width: Optional[int] = 40):
        super().__init__(theme=theme)

        # Auto-detect unicode support if not specified
        if use_unicode is None:
            capability = _detect_terminal_capability()
            use_unicode = capability in [TerminalCapability.BASIC, TerminalCapability.ADVANCED]

        self.use_unicode = use_unicode
        self.max_width = max_width

        if use_unicode:
            self.char_start_bracket = '▕'
            self.char_end_bracket = '▏'
            self.char_complete = '█'
            self.char_incomplete = ' '
            self.block_fractions = ['', '▏', '▎', '▍', '▌', '▋', '▊', '▉', '█']
        else:
            self.char_start_bracket = '['
            self.char_end_bracket = ']'
            self.char_complete = '#'
            self.char_incomplete = '-'
            self.block_fractions = ['#']

        if char_start_bracket is not None:
            self.char_start_bracket = char_start_bracket
        if char_end_bracket is not None:
            self.char_end_bracket = char_end_bracket
        if char_complete is not None:
            self.char_complete = char_complete
        if char_incomplete is not None:
            self.char_incomplete = char_incomplete
        if block_fractions is not None:
            self.block_fractions = block_fractions

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        if self.max_width is not None:
            width = min(width, self.max_width)
        inner_width = width - len(self.char_start_bracket) - len(self.char_end_bracket)
        if inner_width <= 0:
            return ('', '')

        if snapshot.length is None:
            # Indeterminate progress
            content = self.char_start_bracket + self.char_incomplete * inner_width + self.char_end_bracket
            return self._paint(self.theme.bar_incomplete_color, content)

        progress_ratio = snapshot.fraction

        # Get color for the bar
        if snapshot.status is Status.ABANDONED:
            bar_color = self.theme.bar_abandoned_color
        elif self.theme.use_gradient:
            bar_color = Colors.gradient(progress_ratio,
                                        self.theme.gradient_start,
                                        self.theme.gradient_end)
        else:
            bar_color = self.theme.bar_complete_color

        filled_blocks = progress_ratio * inner_width
        full_blocks = int(filled_blocks)
        partial_char = ''
        if len(self.block_fractions) > 1:
            # Smooth progress with partial blocks
            partial_block_index = int((filled_blocks - full_blocks) * (len(self.block_fractions) - 1))
            if full_blocks < inner_width and partial_block_index > 0:
                partial_char = self.block_fractions[partial_block_index]
        incomplete_count = inner_width - full_blocks - len(partial_char)

        complete_part = self.char_complete * full_blocks + partial_char
        incomplete_part = self.char_incomplete * incomplete_count
        content = self.char_start_bracket + complete_part + incomplete_part + self.char_end_bracket

        rendered_complete_part = self._paint(bar_color, complete_part)[1]
        rendered_incomplete_part = self._paint(self.theme.bar_incomplete_color, incomplete_part)[1]
        rendered = f'{self.char_start_bracket}{rendered_complete_part}{rendered_incomplete_part}{self.char_end_bracket}'
        return (content, rendered)


class PercentageWidget(Widget):
    """Widget displaying percentage"""
    _render_priority = 10

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        if snapshot.length is None:
            return ('', '')
        prepared = self._trim('{:>3.0%}'.format(snapshot.fraction), width)
        return self._paint(self.theme.percentage_color, prepared)


class CounterWidget(Widget):
    """Widget displaying current/total count"""
    _render_priority = 20

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        if snapshot.length is not None:
            prepared = f'{snapshot.position}/{snapshot.length}'
        else:
            prepared = f'{snapshot.position}'
        return self._paint(self.theme.counter_color, self._trim(prepared, width))


class TimeWidget(Widget):
    """Widget displaying elapsed time and ETA"""
    _render_priority = 20

    def __init__(self, show_eta: bool = True, show_elapsed: bool = True, theme: Optional[Theme] = None):
        super().__init__(theme=theme)
        self.show_eta = show_eta
        self.show_elapsed = show_elapsed

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        parts = []

        if self.show_elapsed:
            parts.append(format_duration(snapshot.elapsed))

        if self.show_eta and snapshot.length is not None and not snapshot.is_finished:
            parts.append(f'ETA {format_duration(snapshot.eta)}')

        prepared = self._trim(' '.join(parts), width)
        return self._paint(self.theme.time_color, prepared)


class SpinnerWidget(Widget):
    """Animated spinner driven by the counter's tick count"""
    _render_priority = 20

    FRAMES_SNAKE = ['⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏']
    FRAMES_DOTS = ['⣷', '⣯', '⣟', '⡿', '⢿', '⣻', '⣽', '⣾']
    FRAMES_ARROWS = ['←', '↖', '↑', '↗', '→', '↘', '↓', '↙']
    FRAMES_SPINNER = ['|', '/', '-', '\\']

    def __init__(self,
                 style: str = 'dots',
                 use_unicode: Optional[bool] = None,
                 theme: Optional[Theme] = None):
        super().__init__(theme=theme)

        if use_unicode is None:
            capability = _detect_terminal_capability()
            use_unicode = capability in [TerminalCapability.BASIC, TerminalCapability.ADVANCED]

        if style == 'spinner' or not use_unicode:
            self.frames = self.FRAMES_SPINNER
        elif style == 'dots':
            self.frames = self.FRAMES_DOTS
        elif style == 'arrows':
            self.frames = self.FRAMES_ARROWS
        else:
            self.frames = self.FRAMES_SNAKE

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        if snapshot.is_finished:
            prepared = '*'
        else:
            prepared = self.frames[snapshot.tick % len(self.frames)]
        return self._paint(self.theme.bar_complete_color, self._trim(prepared, width))


class RateWidget(Widget):
    """Widget displaying processing rate"""
    _render_priority = 40

    def __init__(self, unit: str = 'it', theme: Optional[Theme] = None):
        super().__init__(theme=theme)
        self.unit = unit

    def render(self, snapshot: ProgressSnapshot, width: int) -> Tuple[str, str]:
        prepared = self._trim(f'{snapshot.per_second:.1f} {self.unit}/s', width)
        return self._paint(self.theme.counter_color, prepared)


# ============================================================================
# Style
# ============================================================================

class Style:
    """Turns a `ProgressSnapshot` into display lines with a list of widgets.

    Widgets are laid out left to right; width is handed out by render
    priority and whatever is left goes to the `BarWidget`. Message lines after
    the first are rendered below the bar.
    """

    def __init__(self,
                 widgets: Optional[List[Widget]] = None,
                 theme: Optional[Theme] = None,
                 use_unicode: Optional[bool] = None,
                 include_widgets: Optional[Set[type]] = None,
                 exclude_widgets: Optional[Set[type]] = None,
                 indent: int = 0):
        """
        Create a style.

        Args:
            widgets: List of widgets to display (default set if None)
            theme: Color theme
            use_unicode: Whether to use Unicode characters
            include_widgets: Set of widget types to include in the default set
            exclude_widgets: Set of widget types to exclude from the default set
            indent: Number of spaces before each line
        """
        if indent < 0:
            raise ValueError("indent must be non-negative")

        # Set theme based on terminal capability if not specified
        if theme is None:
            capability = _detect_terminal_capability()
            if capability == TerminalCapability.MINIMAL:
                self.theme = Theme.minimal()
            else:
                self.theme = Theme.default()
        else:
            self.theme = theme

        self.include_widgets = include_widgets or set()
        self.exclude_widgets = exclude_widgets or set()
        self.use_unicode = use_unicode
        self.indent = indent

        self._widgets = widgets
        self._bar_widgets: Optional[List[Widget]] = None
        self._spinner_widgets: Optional[List[Widget]] = None

    @staticmethod
    def plain(indent: int = 0) -> 'Style':
        """ASCII characters, no colors"""
        return Style(theme=Theme.minimal(), use_unicode=False, indent=indent)

    def _include(self, widget: Widget) -> bool:
        if type(widget) in self.exclude_widgets:
            return False
        if self.include_widgets and type(widget) not in self.include_widgets:
            return False
        return True

    def widgets_for(self, snapshot: ProgressSnapshot) -> List[Widget]:
        """Widget list used for `snapshot`"""
        if self._widgets is not None:
            return self._widgets

        if snapshot.length is not None:
            if self._bar_widgets is None:
                self._bar_widgets = list(filter(self._include, [
                    PrefixWidget(theme=self.theme),
                    BarWidget(theme=self.theme, use_unicode=self.use_unicode),
                    PercentageWidget(theme=self.theme),
                    CounterWidget(theme=self.theme),
                    TimeWidget(theme=self.theme),
                    MessageWidget(theme=self.theme),
                ]))
            return self._bar_widgets

        if self._spinner_widgets is None:
            self._spinner_widgets = list(filter(self._include, [
                PrefixWidget(theme=self.theme),
                SpinnerWidget(theme=self.theme, use_unicode=self.use_unicode),
                CounterWidget(theme=self.theme),
                TimeWidget(show_eta=False, theme=self.theme),
                MessageWidget(theme=self.theme),
            ]))
        return self._spinner_widgets

    def render(self, snapshot: ProgressSnapshot, width: Optional[int]) -> List[str]:
        if width is None:
            width = DEFAULT_LAYOUT_WIDTH

        widgets = self.widgets_for(snapshot)
        rendered_widgets = [('', '')] * len(widgets)
        available_width = max(0, width - self.indent - max(0, len(widgets) - 1))
        widgets_by_priority = sorted(enumerate(widgets), key=lambda x: x[1].render_priority)

        bar_widget_idx = None
        for idx, widget in widgets_by_priority:
            if isinstance(widget, BarWidget):
                bar_widget_idx = idx
                continue
            rendered = widget.render(snapshot, available_width)
            rendered_widgets[idx] = rendered
            available_width = max(0, available_width - len(rendered[0]))

        if bar_widget_idx is not None:
            rendered_widgets[bar_widget_idx] = widgets[bar_widget_idx].render(snapshot, available_width)

        indent_str = ' ' * self.indent
        parts = [styled for raw, styled in rendered_widgets if raw]
        lines = [indent_str + ' '.join(parts)]

        for extra in snapshot.message.split('\n')[1:]:
            lines.append(indent_str + self._paint_message(extra))
        return lines

    def _paint_message(self, text: str) -> str:
        return Widget._paint(self.theme.message_color, text)[1]


# ============================================================================
# Draw Targets
# ============================================================================

class DrawTarget(ABC):
    """A place lines can be written to and the cursor moved around in.

    After `write_line` the cursor sits at the start of the next line.
    `clear_last(n)` moves up `n` lines, blanking each, and leaves the cursor
    at the start of the topmost cleared line.
    """
    supports_cursor_movement: bool = False
    is_hidden: bool = False

    @abstractmethod
    def write_line(self, text: str):
        pass

    @abstractmethod
    def clear_last(self, n_lines: int):
        pass

    @abstractmethod
    def move_cursor_up(self, n: int):
        pass

    @abstractmethod
    def width(self) -> Optional[int]:
        pass

    @abstractmethod
    def flush(self):
        pass

    @staticmethod
    def stderr() -> 'TerminalTarget':
        return TerminalTarget(sys.stderr)

    @staticmethod
    def stdout() -> 'TerminalTarget':
        return TerminalTarget(sys.stdout)

    @staticmethod
    def term(stream: TextIO, supports_cursor_movement: Optional[bool] = None) -> 'TerminalTarget':
        return TerminalTarget(stream, supports_cursor_movement=supports_cursor_movement)

    @staticmethod
    def hidden() -> 'HiddenTarget':
        return HiddenTarget()

    @staticmethod
    def in_memory(width: Optional[int] = DEFAULT_LAYOUT_WIDTH, supports_cursor_movement: bool = True) -> 'InMemoryTarget':
        return InMemoryTarget(width=width, supports_cursor_movement=supports_cursor_movement)


class TerminalTarget(DrawTarget):
    """ANSI output to a text stream such as sys.stderr"""

    def __init__(self, stream: TextIO, supports_cursor_movement: Optional[bool] = None):
        self.stream = stream
        if supports_cursor_movement is None:
            supports_cursor_movement = _is_tty(stream) and os.environ.get('TERM', '') != 'dumb'
        self.supports_cursor_movement = supports_cursor_movement

    def write_line(self, text: str):
        if self.supports_cursor_movement:
            self.stream.write(f'\r\033[2K{text}\n')
        else:
            self.stream.write(f'{text}\n')

    def clear_last(self, n_lines: int):
        if self.supports_cursor_movement and n_lines > 0:
            # Move up one line and clear it, n times
            self.stream.write('\033[1A\r\033[2K' * n_lines)

    def move_cursor_up(self, n: int):
        if self.supports_cursor_movement and n > 0:
            self.stream.write(f'\033[{n}A\r')

    def width(self) -> Optional[int]:
        return _get_terminal_width(self.stream)

    def flush(self):
        self.stream.flush()


class HiddenTarget(DrawTarget):
    """Swallows everything"""
    is_hidden = True

    def write_line(self, text: str):
        pass

    def clear_last(self, n_lines: int):
        pass

    def move_cursor_up(self, n: int):
        pass

    def width(self) -> Optional[int]:
        return None

    def flush(self):
        pass


class InMemoryTarget(DrawTarget):
    """Virtual terminal keeping rows in memory.

    Every successful call is appended to `calls` so tests can compare the exact
    instruction stream as well as the resulting screen.
    """

    def __init__(self, width: Optional[int] = DEFAULT_LAYOUT_WIDTH, supports_cursor_movement: bool = True):
        self._width = width
        self.supports_cursor_movement = supports_cursor_movement
        self.rows: List[str] = []
        self.cursor = 0
        self.calls: List[Tuple[str, Any]] = []
        self.flush_count = 0
        self._failures: deque = deque()
        self._width_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def set_width(self, width: Optional[int]):
        self._width = width

    def fail_width_queries(self, error: Optional[Exception]):
        """Make width() raise `error` (None restores normal behavior)"""
        self._width_error = error

    def fail_next(self, count: int = 1, error: Optional[Exception] = None):
        """Make the next `count` output calls raise"""
        for _ in range(count):
            self._failures.append(error or BrokenPipeError('broken pipe'))

    def _maybe_fail(self):
        if self._failures:
            raise self._failures.popleft()

    def write_line(self, text: str):
        with self._lock:
            self._maybe_fail()
            self.calls.append(('write_line', text))
            while len(self.rows) <= self.cursor:
                self.rows.append('')
            self.rows[self.cursor] = text
            self.cursor += 1

    def clear_last(self, n_lines: int):
        with self._lock:
            self._maybe_fail()
            self.calls.append(('clear_last', n_lines))
            if not self.supports_cursor_movement:
                return
            for _ in range(n_lines):
                if self.cursor == 0:
                    break
                self.cursor -= 1
                if self.cursor < len(self.rows):
                    self.rows[self.cursor] = ''

    def move_cursor_up(self, n: int):
        with self._lock:
            self._maybe_fail()
            self.calls.append(('move_cursor_up', n))
            if self.supports_cursor_movement:
                self.cursor = max(0, self.cursor - n)

    def width(self) -> Optional[int]:
        if self._width_error is not None:
            raise self._width_error
        return self._width

    def flush(self):
        with self._lock:
            self._maybe_fail()
            self.flush_count += 1

    @property
    def write_count(self) -> int:
        return sum(1 for name, _ in self.calls if name == 'write_line')

    def calls_named(self, name: str) -> List[Any]:
        return [arg for call, arg in self.calls if call == name]

    def reset_calls(self):
        with self._lock:
            self.calls.clear()

    def lines(self, strip_ansi: bool = True) -> List[str]:
        """Screen rows, without trailing blank rows"""
        rows = [Colors.strip(row) if strip_ansi else row for row in self.rows]
        while rows and not rows[-1]:
            rows.pop()
        return rows

    def contents(self) -> str:
        return '\n'.join(self.lines())


# ============================================================================
# Draw Scheduler
# ============================================================================

class SlotState(Enum):
    IDLE = 'idle'
    PENDING_DRAW = 'pending_draw'
    DRAWN = 'drawn'


class DrawDecision(Enum):
    DRAW = 'draw'
    DEFER = 'defer'


class DrawScheduler:
    """Decides which updates become terminal writes.

    Non-forced requests draw only when at least `min_interval` seconds passed
    since the last draw that actually ran; others leave their slot pending so
    that a later draw picks up the latest state. Forced requests always draw.
    The time of a draw is recorded by whoever runs it, so a request that was
    granted but could not take the draw lock does not push the next one back.
    """

    def __init__(self, max_redraws_per_second: float = DEFAULT_MAX_REDRAWS_PER_SECOND):
        if max_redraws_per_second <= 0:
            raise ConfigError("max_redraws_per_second must be positive")
        self.min_interval = 1.0 / max_redraws_per_second
        self._lock = threading.Lock()
        self._states: Dict[int, SlotState] = {}
        self._pending: Dict[int, int] = {}
        self._generation = 0
        self._last_draw_time: Optional[float] = None

    @property
    def last_draw_time(self) -> Optional[float]:
        """Time of the most recent draw that ran"""
        return self._last_draw_time

    def register(self, slot_id: int):
        with self._lock:
            self._states[slot_id] = SlotState.IDLE

    def unregister(self, slot_id: int):
        with self._lock:
            self._states.pop(slot_id, None)
            self._pending.pop(slot_id, None)

    def state(self, slot_id: int) -> Optional[SlotState]:
        return self._states.get(slot_id)

    def has_pending(self) -> bool:
        return bool(self._pending)

    def decide(self, slot_id: Optional[int], now: float, forced: bool = False) -> DrawDecision:
        """Record an update to `slot_id` and decide whether to draw it now"""
        with self._lock:
            if slot_id is not None and slot_id in self._states:
                self._generation += 1
                self._states[slot_id] = SlotState.PENDING_DRAW
                self._pending[slot_id] = self._generation

            due = self._last_draw_time is None or now - self._last_draw_time >= self.min_interval
            if forced or due:
                return DrawDecision.DRAW
            return DrawDecision.DEFER

    def record_draw(self, now: float):
        """Note that a draw actually ran at `now`; later non-forced draws wait for it"""
        with self._lock:
            self._last_draw_time = now

    def next_draw_time(self) -> Optional[float]:
        """Earliest time a non-forced draw will be granted (None: right away)"""
        last = self._last_draw_time
        if last is None:
            return None
        return last + self.min_interval

    def begin_draw(self) -> int:
        """Settle slots drawn last time and return the generation being drawn"""
        with self._lock:
            for slot_id, state in self._states.items():
                if state is SlotState.DRAWN:
                    self._states[slot_id] = SlotState.IDLE
            return self._generation

    def finish_draw(self, generation: int):
        """Mark updates up to `generation` as painted"""
        with self._lock:
            for slot_id, pending_generation in list(self._pending.items()):
                if pending_generation <= generation:
                    del self._pending[slot_id]
                    if slot_id in self._states:
                        self._states[slot_id] = SlotState.DRAWN


# ============================================================================
# Render Coordinator
# ============================================================================

@dataclass
class BarSlot:
    """A counter's place in the stack and what it last looked like"""
    slot_id: int
    counter: ProgressCounter
    style: Any
    lines: List[str] = field(default_factory=list)
    content_hash: Optional[int] = None

    @property
    def line_count(self) -> int:
        return len(self.lines)


@dataclass
class DrawState:
    """What is on screen right now. Guarded by the coordinator lock."""
    lines: List[str] = field(default_factory=list)
    last_draw_time: Optional[float] = None
    last_width: Optional[int] = None
    orphan_lines: List[str] = field(default_factory=list)

    @property
    def line_count(self) -> int:
        return len(self.lines)


class BarHandle:
    """Caller-side reference to a bar in a `MultiProgress`.

    Keeps the counter alive but not the coordinator or the bar's place in it.
    Unknown attributes are looked up on the counter, so a handle can be used
    like one.
    """

    def __init__(self, coordinator: 'MultiProgress', slot_id: int, counter: ProgressCounter):
        self._coordinator_ref = weakref.ref(coordinator)
        self.slot_id = slot_id
        self.counter = counter

    @property
    def coordinator(self) -> Optional['MultiProgress']:
        return self._coordinator_ref()

    @property
    def is_attached(self) -> bool:
        coordinator = self.coordinator
        return coordinator is not None and coordinator._has_slot(self.slot_id)

    def remove(self) -> Optional[DrawError]:
        coordinator = self.coordinator
        if coordinator is None:
            return None
        return coordinator.remove(self)

    def __getattr__(self, name):
        if name == 'counter':
            raise AttributeError(name)
        return getattr(self.counter, name)

    def __eq__(self, other):
        if not isinstance(other, BarHandle):
            return NotImplemented
        return self.slot_id == other.slot_id and self.coordinator is other.coordinator

    def __hash__(self):
        return hash(self.slot_id)

    def __repr__(self):
        return f"{type(self).__name__}(slot_id={self.slot_id}, counter={self.counter!r})"


def _common_prefix(old: List[str], new: List[str]) -> int:
    count = 0
    for old_line, new_line in zip(old, new):
        if old_line != new_line:
            break
        count += 1
    return count


class MultiProgress:
    """Ordered stack of bars drawn together on one target.

    All drawing goes through one re-entrant lock that also guards the
    registry and the `DrawState`. Counter updates never wait for a non-forced
    draw: when another thread is painting, or the redraw rate is exhausted,
    they stay pending and a single trailing draw is armed for the moment the
    next draw is allowed. close() cancels it.
    """

    def __init__(self,
                 target: Optional[DrawTarget] = None,
                 config: Optional[Config] = None,
                 clock: Optional[Clock] = None,
                 default_style: Optional[Any] = None):
        """
        Create a coordinator.

        Args:
            target: Where to draw (stderr terminal if None)
            config: Rate limit, window size, cursor and alignment settings
            clock: Timestamp source shared with counters made by create_bar()
            default_style: Style for bars inserted without one
        """
        self._config = config if config is not None else Config()
        self._clock = clock or _DEFAULT_CLOCK
        self._target = target if target is not None else DrawTarget.stderr()
        self._default_style = default_style

        self._lock = threading.RLock()
        self._slots: Dict[int, BarSlot] = {}
        self._order: List[int] = []
        self._slot_ids = itertools.count(1)
        self._scheduler = DrawScheduler(self._config.max_redraws_per_second)
        self._state = DrawState()

        self._move_cursor = self._config.move_cursor
        self._alignment = self._config.alignment
        self._suspended = 0
        self._write_failures = 0
        self._closed = False
        self.last_error: Optional[DrawError] = None

        # Paints updates held back by rate limiting once a draw is due again
        self._deferred_draw = self._clock.timer(self._draw_deferred)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, handle: BarHandle) -> bool:
        return isinstance(handle, BarHandle) and handle.coordinator is self and self._has_slot(handle.slot_id)

    # Properties

    @property
    def config(self) -> Config:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def target(self) -> DrawTarget:
        return self._target

    @property
    def scheduler(self) -> DrawScheduler:
        return self._scheduler

    @property
    def draw_state(self) -> DrawState:
        return self._state

    @property
    def move_cursor(self) -> bool:
        return self._move_cursor

    @property
    def alignment(self) -> Alignment:
        return self._alignment

    @property
    def is_hidden(self) -> bool:
        return self._target.is_hidden

    def set_move_cursor(self, enabled: bool):
        """Enable or disable in-place rewriting"""
        with self._lock:
            if self._move_cursor and not enabled:
                # The painted frame stays behind as plain output
                self._state.lines = []
            self._move_cursor = bool(enabled)

    def set_alignment(self, alignment: Alignment):
        if not isinstance(alignment, Alignment):
            raise ValueError(f"alignment must be an Alignment, got {alignment!r}")
        with self._lock:
            self._alignment = alignment

    def set_draw_target(self, target: DrawTarget) -> Optional[DrawError]:
        """Clear the current output and continue on `target`"""
        with self._lock:
            error = self._clear_locked()
            self._target = target
            self._state = DrawState()
            self._write_failures = 0
            for slot in self._slots.values():
                slot.content_hash = None
            return error

    # Registry

    def _has_slot(self, slot_id: int) -> bool:
        return slot_id in self._slots

    def counters(self) -> List[ProgressCounter]:
        with self._lock:
            return [self._slots[slot_id].counter for slot_id in self._order]

    def handles(self) -> List[BarHandle]:
        with self._lock:
            return [BarHandle(self, slot_id, self._slots[slot_id].counter) for slot_id in self._order]

    def slot(self, handle: BarHandle) -> BarSlot:
        with self._lock:
            self._index_of(handle)
            return self._slots[handle.slot_id]

    def create_bar(self,
                   length: Optional[int] = None,
                   message: str = '',
                   prefix: str = '',
                   style: Optional[Any] = None,
                   steady_tick: bool = False) -> BarHandle:
        """Create a counter using this coordinator's clock and settings and append it"""
        counter = ProgressCounter(
            length=length,
            message=message,
            prefix=prefix,
            clock=self._clock,
            window_capacity=self._config.sample_window_capacity,
            steady_tick_interval=self._config.steady_tick_interval,
        )
        handle = self.insert(counter, style=style)
        if steady_tick:
            counter.enable_steady_tick()
        return handle

    def insert(self, counter: ProgressCounter, style: Optional[Any] = None) -> BarHandle:
        """Append `counter` to the bottom of the stack"""
        with self._lock:
            handle = self._insert_locked(len(self._order), counter, style)
        self._on_counter_update(handle.slot_id, forced=False)
        return handle

    def insert_at(self, index: int, counter: ProgressCounter, style: Optional[Any] = None) -> BarHandle:
        with self._lock:
            index = max(0, min(index, len(self._order)))
            handle = self._insert_locked(index, counter, style)
        self._on_counter_update(handle.slot_id, forced=False)
        return handle

    def insert_before(self, handle: BarHandle, counter: ProgressCounter, style: Optional[Any] = None) -> BarHandle:
        with self._lock:
            new_handle = self._insert_locked(self._index_of(handle), counter, style)
        self._on_counter_update(new_handle.slot_id, forced=False)
        return new_handle

    def insert_after(self, handle: BarHandle, counter: ProgressCounter, style: Optional[Any] = None) -> BarHandle:
        with self._lock:
            new_handle = self._insert_locked(self._index_of(handle) + 1, counter, style)
        self._on_counter_update(new_handle.slot_id, forced=False)
        return new_handle

    def _insert_locked(self, index: int, counter: ProgressCounter, style: Optional[Any]) -> BarHandle:
        slot_id = next(self._slot_ids)
        counter._attach(self, slot_id)

        if style is None:
            if self._default_style is None:
                self._default_style = Style()
            style = self._default_style

        self._slots[slot_id] = BarSlot(slot_id, counter, style)
        self._order.insert(index, slot_id)
        self._scheduler.register(slot_id)
        logger.debug('Inserted bar %d at index %d', slot_id, index)
        return BarHandle(self, slot_id, counter)

    def _index_of(self, handle: BarHandle) -> int:
        if handle.coordinator is not self or handle.slot_id not in self._slots:
            raise ValueError("Bar is not registered with this coordinator")
        return self._order.index(handle.slot_id)

    def remove(self, handle: BarHandle) -> Optional[DrawError]:
        """Take a bar out of the stack; its lines are cleared on the draw this triggers"""
        with self._lock:
            if handle.coordinator is not self or not self._drop_slot_locked(handle.slot_id):
                return None
            return self._draw_now()

    def _drop_slot_locked(self, slot_id: int) -> bool:
        slot = self._slots.pop(slot_id, None)
        if slot is None:
            return False
        self._order.remove(slot_id)
        self._scheduler.unregister(slot_id)
        slot.counter._detach(slot_id)
        logger.debug('Removed bar %d', slot_id)
        return True

    # Drawing

    def _on_counter_update(self, slot_id: int, forced: bool) -> Optional[DrawError]:
        if self._scheduler.decide(slot_id, self._clock.now(), forced=forced) is DrawDecision.DEFER:
            self._schedule_deferred_draw()
            return None

        # Forced draws wait their turn; others stay pending if someone is drawing
        if not self._lock.acquire(blocking=forced):
            self._schedule_deferred_draw()
            return None
        try:
            return self._draw_locked(self._clock.now())
        finally:
            self._lock.release()

    def _draw_now(self) -> Optional[DrawError]:
        return self._draw_locked(self._clock.now())

    def _schedule_deferred_draw(self):
        due_at = self._scheduler.next_draw_time()
        self._deferred_draw.schedule(due_at if due_at is not None else self._clock.now())

    def _draw_deferred(self):
        with self._lock:
            if self._closed or not self._scheduler.has_pending():
                return
            due_at = self._scheduler.next_draw_time()
            if due_at is not None and self._clock.now() < due_at:
                # Another draw ran since this one was armed
                self._deferred_draw.schedule(due_at)
                return
            self._draw_now()

    def display(self, force_clear: bool = False) -> Optional[DrawError]:
        """Draw right away, optionally wiping the previous frame first"""
        with self._lock:
            if force_clear:
                error = self._clear_locked()
                if error is not None:
                    return error
            return self._draw_now()

    def flush(self) -> Optional[DrawError]:
        """Paint updates that were held back by rate limiting"""
        with self._lock:
            if not self._scheduler.has_pending():
                return None
            return self._draw_now()

    def println(self, text: str) -> Optional[DrawError]:
        """Print `text` above the stack"""
        with self._lock:
            if self._target.is_hidden:
                return None
            self._state.orphan_lines.extend(text.split('\n'))
            return self._draw_now()

    @contextmanager
    def suspend(self):
        """Hide the stack while the block runs, then draw it again"""
        with self._lock:
            self._clear_locked()
            self._suspended += 1
            try:
                yield
            finally:
                self._suspended -= 1
                self._draw_now()

    def clear(self) -> Optional[DrawError]:
        """Erase the painted stack; bars stay registered"""
        with self._lock:
            return self._clear_locked()

    def close(self):
        """Stop tickers, draw the final frame and stop drawing"""
        if self._closed:
            return

        self._deferred_draw.cancel()
        with self._lock:
            if self._closed:
                return
            for slot in self._slots.values():
                slot.counter._stop_ticker(wait=False)
            self._draw_now()
            self._closed = True

    def _uses_cursor(self, target: DrawTarget) -> bool:
        return target.supports_cursor_movement and self._move_cursor

    def _query_width(self, target: DrawTarget) -> Optional[int]:
        try:
            width = target.width()
        except (OSError, ValueError) as exc:
            logger.debug('Width query failed, drawing without truncation: %s', exc)
            return None
        if width is None or width <= 0:
            return None
        return width

    def _clear_locked(self) -> Optional[DrawError]:
        target = self._target
        lines, self._state.lines = self._state.lines, []
        if not lines or not self._uses_cursor(target):
            return None
        try:
            target.clear_last(len(lines))
            target.flush()
        except (OSError, ValueError) as exc:
            return self._handle_write_error(exc)
        return None

    def _draw_locked(self, now: float) -> Optional[DrawError]:
        if self._suspended or self._closed:
            return None

        generation = self._scheduler.begin_draw()
        self._scheduler.record_draw(now)
        target = self._target
        cleared: List[int] = []
        try:
            if target.is_hidden:
                cleared = [slot_id for slot_id in self._order if self._slots[slot_id].counter.is_cleared]
                return None

            width = self._query_width(target)
            rendered, cleared = self._render_slots(width)
            try:
                if self._uses_cursor(target):
                    self._paint_in_place(target, rendered, width)
                else:
                    self._paint_append_only(target, rendered)
                target.flush()
            except (OSError, ValueError) as exc:
                return self._handle_write_error(exc)

            self._write_failures = 0
            self._state.last_draw_time = now
            return None
        finally:
            for slot_id in cleared:
                self._drop_slot_locked(slot_id)
            self._scheduler.finish_draw(generation)
            if self._scheduler.has_pending():
                # Updates that arrived while this frame was being painted
                self._schedule_deferred_draw()

    def _render_slots(self, width: Optional[int]) -> Tuple[List[Tuple[BarSlot, List[str]]], List[int]]:
        rendered = []
        cleared = []
        for slot_id in self._order:
            slot = self._slots[slot_id]
            if slot.counter.is_cleared:
                cleared.append(slot_id)
                continue

            snapshot = slot.counter.snapshot()
            try:
                lines = slot.style.render(snapshot, width)
            except Exception:
                logger.exception('Rendering bar %d failed', slot_id)
                lines = slot.lines
            else:
                lines = [_truncate(part, width) for line in lines for part in line.split('\n')]
            rendered.append((slot, lines))
        return rendered, cleared

    def _paint_in_place(self, target: DrawTarget, rendered: List[Tuple[BarSlot, List[str]]], width: Optional[int]):
        state = self._state
        old = state.lines
        new = [line for _, lines in rendered for line in lines]
        orphans, state.orphan_lines = state.orphan_lines, []

        # Anything below this point may fail half-way; the screen is then unknown
        state.lines = []

        if orphans or (old and width != state.last_width):
            # Full clear and redraw
            if old:
                target.clear_last(len(old))
            for line in orphans:
                target.write_line(line)
            for line in new:
                target.write_line(line)
        else:
            if self._alignment is Alignment.BOTTOM and len(new) < len(old):
                new = [''] * (len(old) - len(new)) + new

            if new != old:
                common = _common_prefix(old, new)
                trailing = len(old) - len(new)
                if trailing > 0:
                    target.clear_last(trailing)
                    up = len(new) - common
                else:
                    up = len(old) - common
                if up:
                    target.move_cursor_up(up)
                for line in new[common:]:
                    target.write_line(line)

        for slot, lines in rendered:
            slot.lines = lines
            slot.content_hash = hash(tuple(lines))
        state.lines = new
        state.last_width = width

    def _paint_append_only(self, target: DrawTarget, rendered: List[Tuple[BarSlot, List[str]]]):
        state = self._state
        orphans, state.orphan_lines = state.orphan_lines, []
        state.lines = []

        for line in orphans:
            target.write_line(line)

        for slot, lines in rendered:
            digest = hash(tuple(lines))
            if digest == slot.content_hash:
                continue
            for line in lines:
                target.write_line(line)
            slot.lines = lines
            slot.content_hash = digest

    def _handle_write_error(self, exc: Exception) -> DrawError:
        self._write_failures += 1
        error = DrawError(f'Draw target write failed: {exc}', cause=exc)
        self.last_error = error
        logger.warning('Draw target write failed (%d/%d): %s',
                       self._write_failures, self._config.max_write_failures, exc)

        # What reached the screen is unknown; start the next frame from scratch
        self._state.lines = []

        if self._write_failures >= self._config.max_write_failures:
            self._write_failures = 0
            if self._uses_cursor(self._target):
                logger.warning('Disabling cursor movement after repeated write failures')
                self._move_cursor = False
            elif not self._target.is_hidden:
                logger.warning('Hiding progress output after repeated write failures')
                self._target = HiddenTarget()
        return error


# ============================================================================
# Convenience Functions and Context Managers
# ============================================================================

class ProgressContext:
    """Context manager for one bar: finishes on success, abandons on error"""

    def __init__(self,
                 length: Optional[int] = None,
                 message: str = '',
                 prefix: str = '',
                 multi: Optional[MultiProgress] = None,
                 style: Optional[Any] = None,
                 counter: Optional[ProgressCounter] = None,
                 clear: bool = False):
        self._owns_multi = multi is None
        self.multi = multi if multi is not None else MultiProgress()
        self.clear = clear

        if counter is not None:
            if length is not None:
                counter.set_length(length)
            self.handle = self.multi.insert(counter, style=style)
        else:
            self.handle = self.multi.create_bar(length=length, message=message, prefix=prefix, style=style)
        self.counter = self.handle.counter

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.counter.abandon()
        elif self.clear:
            self.counter.finish_and_clear()
        else:
            self.counter.finish()

        if self._owns_multi:
            self.multi.close()
        return False

    def advance(self, delta: int = 1) -> Optional[DrawError]:
        """Advance progress and display"""
        return self.counter.advance(delta)

    def set_position(self, position: int) -> Optional[DrawError]:
        return self.counter.set_position(position)

    def set_message(self, message: str) -> Optional[DrawError]:
        return self.counter.set_message(message)


def progress(iterable,
             length: Optional[int] = None,
             message: str = '',
             prefix: str = '',
             multi: Optional[MultiProgress] = None,
             style: Optional[Any] = None,
             clear: bool = False) -> Iterator:
    """
    Wrap an iterable to display progress automatically.

    Example:
        for item in progress([1, 2, 3, 4, 5], message="Processing"):
            process(item)

    Args:
        iterable: The iterable to wrap
        length: Total items (auto-detected if possible)
        message: Message shown next to the bar
        prefix: Label shown before the bar
        multi: Coordinator to draw in (a private one on stderr if None)
        style: Style of the bar
        clear: Erase the bar once the iterable is exhausted
    """
    if length is None:
        try:
            length = len(iterable)
        except TypeError:
            pass

    with ProgressContext(length=length, message=message, prefix=prefix,
                         multi=multi, style=style, clear=clear) as ctx:
        for item in iterable:
            yield item
            ctx.advance(1)
