"""Cooperative cancellation primitives shared by in-flight resolutions.

A resolution checks its :class:`CancellationToken` between download chunks and
between unwrap steps.  Subprocesses are never interrupted: a cancel requested
while ``hdiutil`` or ``unzip`` is running takes effect once that utility has
exited, after which the caller finalizes the workspace.
:class:`CancellationTokenGroup` lets the pipeline cancel every resolution it
started when it shuts down.
"""

from __future__ import annotations

import contextlib
import threading
from typing import Iterator, Optional

from .errors import ResolutionCancelled


class CancellationToken:
    """Thread-safe flag checked at resolution step boundaries.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("user closed the window")
        >>> token.reason
        'user closed the window'
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation; the first reason given is kept."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, where: str) -> None:
        """Raise :class:`ResolutionCancelled` if cancellation was requested."""

        if not self._event.is_set():
            return
        message = f"Cancelled before {where}"
        if self._reason:
            message = f"{message}: {self._reason}"
        raise ResolutionCancelled(message)


class CancellationTokenGroup:
    """Tokens of the resolutions currently running under one owner.

    Once :meth:`cancel_all` has run, tokens joining the group are cancelled
    immediately.
    """

    def __init__(self) -> None:
        self._tokens: set[CancellationToken] = set()
        self._lock = threading.Lock()
        self._closed_reason: Optional[str] = None
        self._closed = False

    def add_token(self, token: CancellationToken) -> None:
        with self._lock:
            self._tokens.add(token)
            closed, reason = self._closed, self._closed_reason
        if closed:
            token.cancel(reason)

    def create_token(self) -> CancellationToken:
        token = CancellationToken()
        self.add_token(token)
        return token

    def remove_token(self, token: CancellationToken) -> None:
        with self._lock:
            self._tokens.discard(token)

    @contextlib.contextmanager
    def track(self, token: Optional[CancellationToken] = None) -> Iterator[CancellationToken]:
        """Keep ``token`` (or a fresh one) in the group for the ``with`` block."""

        token = token or CancellationToken()
        self.add_token(token)
        try:
            yield token
        finally:
            self.remove_token(token)

    def cancel_all(self, reason: Optional[str] = None) -> None:
        """Cancel every member and every token added later."""
        with self._lock:
            self._closed = True
            self._closed_reason = reason
            members = list(self._tokens)
        for token in members:
            token.cancel(reason)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


__all__ = ["CancellationToken", "CancellationTokenGroup"]
