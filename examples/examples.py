"""Examples demonstrating stacked progress bars, spinners and rate limiting"""

import time
import random
import threading

from stackbar import (
    progress,
    ProgressContext,
    ProgressCounter,
    MultiProgress,
    Alignment,
    Config,
    DrawTarget,
    Style,
    Theme,
    PrefixWidget,
    BarWidget,
    PercentageWidget,
    CounterWidget,
    RateWidget,
    SpinnerWidget,
    TimeWidget,
    MessageWidget,
)


def example_0():
    print("=== Example 0: Worker threads sharing one stack ===")

    def worker(handle, delay):
        for _ in range(handle.length):
            time.sleep(delay)
            handle.advance()
        handle.finish_with_message(f"{handle.prefix} done")

    with MultiProgress() as multi:
        handles = [
            multi.create_bar(length=random.randint(40, 120), prefix=f"worker {i}", message="downloading")
            for i in range(1, 5 + 1)
        ]
        threads = [
            threading.Thread(target=worker, args=(handle, random.uniform(0.01, 0.05)))
            for handle in handles
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()


def example_1():
    print("=== Example 1: Simple iterable wrapper ===")

    for _ in progress(range(100), message="Processing"):
        time.sleep(0.02)


def example_2():
    print("=== Example 2: Themes ===")

    with MultiProgress() as multi:
        for name, theme in [("default", Theme.default()), ("fire", Theme.fire()), ("minimal", Theme.minimal())]:
            for _ in progress(range(60), message=name, multi=multi, style=Style(theme=theme)):
                time.sleep(0.01)


def example_3():
    print("=== Example 3: Spinner with a steady tick ===")

    with MultiProgress() as multi:
        handle = multi.create_bar(message="Waiting for the server", steady_tick=True)
        time.sleep(2)
        handle.set_message("Connected")
        time.sleep(0.5)
        handle.finish()


def example_4():
    print("=== Example 4: Printing above the bars ===")

    with MultiProgress() as multi:
        handle = multi.create_bar(length=10, message="Building")
        for i in range(1, 10 + 1):
            time.sleep(0.2)
            multi.println(f"compiled module_{i}.o")
            handle.advance()
        handle.finish()


def example_5():
    print("=== Example 5: Nested bars cleared when complete ===")

    with MultiProgress() as multi:
        outer = multi.create_bar(length=3, message="Epochs")
        for _ in range(3):
            inner = multi.insert_after(outer, ProgressCounter(length=50, message="Batches"),
                                       style=Style(indent=2))
            for _ in range(50):
                inner.advance()
                time.sleep(0.005)
            inner.finish_and_clear()
            outer.advance()
        outer.finish()


def example_6():
    print("=== Example 6: Custom widgets ===")

    widgets = [
        PrefixWidget(),
        SpinnerWidget(style="snake"),
        BarWidget(max_width=30),
        PercentageWidget(),
        RateWidget(unit="MB"),
        TimeWidget(show_elapsed=False),
        MessageWidget(),
    ]
    with ProgressContext(length=300, prefix="fetch", message="archive.tar", style=Style(widgets=widgets)) as ctx:
        for _ in range(300):
            ctx.advance(1)
            ctx.counter.tick()
            time.sleep(0.005)


def example_7():
    print("=== Example 7: Bottom alignment ===")

    with MultiProgress(config=Config(alignment=Alignment.BOTTOM)) as multi:
        handles = [multi.create_bar(length=20, message=f"job {i}") for i in range(1, 4 + 1)]
        for handle in handles:
            for _ in range(20):
                handle.advance()
                time.sleep(0.01)
            handle.finish_and_clear()


def example_8():
    print("=== Example 8: Output without cursor movement ===")

    with MultiProgress(config=Config(move_cursor=False, max_redraws_per_second=2)) as multi:
        handle = multi.create_bar(length=40, message="append only",
                                  style=Style(exclude_widgets={TimeWidget, CounterWidget}))
        for _ in range(40):
            handle.advance()
            time.sleep(0.05)
        handle.finish()


def example_9():
    print("=== Example 9: Suspending the display ===")

    with MultiProgress(target=DrawTarget.stdout()) as multi:
        handle = multi.create_bar(length=20, message="Working")
        for i in range(20):
            handle.advance()
            time.sleep(0.05)
            if i == 10:
                with multi.suspend():
                    print("The bars are hidden while this prints")
        handle.finish()


if __name__ == "__main__":
    import logging

    logging.basicConfig(level=logging.DEBUG)

    for i in range(0, 9 + 1):
        if i != 0:
            time.sleep(1)
        globals()[f"example_{i}"]()
