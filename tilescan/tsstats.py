import os
import threading
import collections

import psutil

import logging
log = logging.getLogger(__name__)


class StatsStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._data = {}  # dict[str, any]

    # Atomic increment
    def inc(self, key, amount=1):
        with self._lock:
            self._data[key] = self._data.get(key, 0) + amount
            return self._data[key]

    def inc_many(self, items):
        # items: dict[str, int]
        with self._lock:
            for k, a in items.items():
                self._data[k] = self._data.get(k, 0) + a

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def get(self, key, default=0):
        with self._lock:
            return self._data.get(key, default)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def snapshot(self):
        with self._lock:
            return dict(self._data)


STATS = StatsStore()


def set_stat(stat, value):
    STATS.set(stat, value)


def get_stat(stat):
    return STATS.get(stat, 0)


def inc_stat(stat, amount=1):
    return STATS.inc(stat, amount)


def inc_many(items: dict):
    STATS.inc_many(items)


def delete_stat(stat: str):
    STATS.delete(stat)


def snapshot():
    return STATS.snapshot()


def update_process_memory_stat():
    """Record this process's RSS in bytes as proc_mem_rss_bytes and return it."""
    try:
        rss = psutil.Process(os.getpid()).memory_info().rss
    except psutil.Error as err:
        log.debug(f"update_process_memory_stat: {err}")
        return None
    set_stat("proc_mem_rss_bytes", int(rss))
    return int(rss)


class StatTracker(object):
    """Rolling average of the last ``maxlen`` samples per key."""

    def __init__(self, maxlen=25):
        self.fetch_times = {}
        self.averages = {}
        self.maxlen = maxlen
        self._lock = threading.Lock()

    def set(self, key, value):
        with self._lock:
            times = self.fetch_times.setdefault(key, collections.deque(maxlen=self.maxlen))
            times.append(value)
            self.averages[key] = round(sum(times) / len(times), 3)

    def get(self, key, default=None):
        with self._lock:
            return self.averages.get(key, default)
