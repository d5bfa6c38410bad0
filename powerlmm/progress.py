"""
Progress callbacks for :func:`powerlmm.simulate`.

``simulate`` counts finished replications over every design of a run and
passes ``(done, total)`` to a callback. Any callable with that signature
works; the two reporters below cover the console and tqdm.
"""

import sys
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised by ``simulate`` when ``cancel_check`` returns True."""


class ProgressReporter:
    """Counts replications and forwards them to a ``(done, total)`` callback.

    Parallel chunks advance the count by several replications at once, so
    the callback fires whenever the count moves into a new block of
    ``update_every`` replications (about 200 updates per run by default).
    """

    def __init__(self, total: int, callback: Callable[[int, int], None], update_every: Optional[int] = None):
        self.total = total
        self.done = 0
        self.update_every = update_every or max(1, total // 200)
        self._callback = callback

    @classmethod
    def for_run(cls, nsim: int, n_designs: int, callback: Callable[[int, int], None]) -> "ProgressReporter":
        return cls(nsim * n_designs, callback)

    def start(self):
        self.done = 0
        self._callback(0, self.total)

    def advance(self, n: int = 1):
        block = self.done // self.update_every
        self.done = min(self.done + n, self.total)
        if self.done == self.total or self.done // self.update_every > block:
            self._callback(self.done, self.total)

    def finish(self):
        if self.done < self.total:
            self.done = self.total
            self._callback(self.total, self.total)


class PrintReporter:
    """Writes ``Progress:  45.2% (723/1600 replications)`` to stderr."""

    def __call__(self, done: int, total: int):
        if total <= 0:
            return
        end = "\n" if done >= total else ""
        sys.stderr.write(f"\rProgress: {100.0 * done / total:5.1f}% ({done}/{total} replications){end}")
        sys.stderr.flush()


class TqdmReporter:
    """A tqdm bar; keyword arguments go to ``tqdm``.

    ``simulate(design, nsim=1000, progress=TqdmReporter(desc="power"))``
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, done: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="rep", **self._tqdm_kwargs)
        if done > self._bar.n:
            self._bar.update(done - self._bar.n)
        if done >= total:
            self._bar.close()
            self._bar = None
