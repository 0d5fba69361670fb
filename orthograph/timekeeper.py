"""Elapsed time reporting for the pipeline steps.

Example:

    tk = TimeKeeper(KeeperMode.DIRECT)
    ...
    printv(f"Searched {group}. Took {tk.lap():.2f}s. Elapsed: {tk.differential():.2f}s", verbose)
"""
from enum import IntFlag, auto
from time import time


class KeeperBadMode(Exception):
    pass


class KeeperMode(IntFlag):
    SUM = auto()
    DIRECT = auto()


class TimeKeeper:
    def __init__(self, mode: KeeperMode):
        if not isinstance(mode, IntFlag) or mode not in KeeperMode:
            raise KeeperBadMode()
        self.mode = mode
        self._start = time()
        self._last = self._start
        self._laps = []

    def lap(self) -> float:
        now = time()
        taken = now - self._last
        self._last = now
        self._laps.append(taken)
        return taken

    def differential(self) -> float:
        if self.mode is KeeperMode.SUM:
            return sum(self._laps)
        return time() - self._start
