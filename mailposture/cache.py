# -*- coding: utf-8 -*-
"""Per-domain result cache"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Hashable

from expiringdict import ExpiringDict

from mailposture._constants import (
    RESULT_CACHE_MAX_AGE_SECONDS,
    RESULT_CACHE_MAX_LEN,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


class ResultCache(object):
    """
    A size-capped, time-limited cache of pipeline results

    Entries are evicted least recently used first once ``max_len`` is
    reached, and expire after ``max_age_seconds``. At most one computation
    runs per key at a time; concurrent callers for the same key wait for it
    and share its result. Callers always receive a deep copy.
    """

    def __init__(
        self,
        max_len: int = RESULT_CACHE_MAX_LEN,
        max_age_seconds: float = RESULT_CACHE_MAX_AGE_SECONDS,
    ):
        self._results = ExpiringDict(max_len=max_len, max_age_seconds=max_age_seconds)
        self._locks: dict[Hashable, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _key_lock(self, key: Hashable) -> threading.Lock:
        with self._locks_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Returns the cached result for ``key``, computing and storing it first
        if needed

        Args:
            key: A cache key, e.g. ``("example.com", "spf")``
            compute: A function that produces the result

        Returns:
            A deep copy of the result
        """
        result = self._results.get(key)
        if result is not None:
            return copy.deepcopy(result)
        lock = self._key_lock(key)
        with lock:
            result = self._results.get(key)
            if result is None:
                logging.debug(f"Result cache miss for {key}")
                result = compute()
                self._results[key] = copy.deepcopy(result)
        with self._locks_lock:
            if self._locks.get(key) is lock and not lock.locked():
                del self._locks[key]
        return copy.deepcopy(result)

    def clear(self):
        self._results.clear()

    def __len__(self):
        return len(self._results)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._results
