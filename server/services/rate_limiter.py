"""
Sliding-window message rate limiter with temporary bans.

One instance is shared by all connections and keyed by remote address, so a
client cannot flood the room with signaling requests by reconnecting.

Usage:
    limiter = RateLimiter()
    if not limiter.allow(ip):
        # close the connection
    limiter.forget(ip)  # on disconnect
"""
import time
from collections import defaultdict, deque
from typing import Deque, Dict

WINDOW_SECONDS: int = 5        # length of the sliding window in seconds
MAX_MSG_PER_WIN: int = 60      # max messages allowed within the window
BAN_SECONDS: int = 30          # ban duration in seconds once limit exceeded


class RateLimiter:
    """
    Per-key sliding window of message timestamps.

    A key that sends more than `max_messages` within `window` seconds is banned
    for `ban` seconds.
    """

    def __init__(self, window: float = WINDOW_SECONDS, max_messages: int = MAX_MSG_PER_WIN,
                 ban: float = BAN_SECONDS, clock=time.monotonic) -> None:
        self.window = window
        self.max_messages = max_messages
        self.ban = ban
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._banned_until: Dict[str, float] = {}

    def allow(self, key: str) -> bool:
        """
        Record one message for `key` and decide whether to accept it.

        Args:
            key (str): Identifier of the sender (usually the remote IP).

        Returns:
            bool: False while `key` is banned or once it exceeds the limit.
        """
        now = self._clock()

        ban_deadline = self._banned_until.get(key)
        if ban_deadline is not None:
            if now < ban_deadline:
                return False
            del self._banned_until[key]

        hits = self._hits[key]
        hits.append(now)
        while hits and now - hits[0] > self.window:
            hits.popleft()

        if len(hits) > self.max_messages:
            self._banned_until[key] = now + self.ban
            hits.clear()
            return False
        return True

    def is_banned(self, key: str) -> bool:
        return self._banned_until.get(key, 0) > self._clock()

    def forget(self, key: str) -> None:
        """Drop the message history of `key`; an active ban is kept."""
        self._hits.pop(key, None)
