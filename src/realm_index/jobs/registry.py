"""Caller-owned registry handing run options to workers by token."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from realm_index.index.runner import RunnerOptions


class RunnerOptionsRegistry:
    """Map opaque tokens to the options of in-flight runs."""

    def __init__(self) -> None:
        self._options: dict[str, RunnerOptions] = {}

    def __len__(self) -> int:
        return len(self._options)

    def set_options(self, options: RunnerOptions) -> str:
        """Store options under a fresh token and return it."""
        token = uuid.uuid4().hex
        self._options[token] = options
        return token

    def get_options(self, token: str) -> RunnerOptions:
        """Return options for a token; raises KeyError for unknown or released tokens."""
        try:
            return self._options[token]
        except KeyError:
            raise KeyError(f"No runner options registered for token {token}") from None

    def remove_options(self, token: str) -> None:
        """Release a token."""
        self._options.pop(token, None)

    @contextmanager
    def lease(self, options: RunnerOptions) -> Iterator[str]:
        """Register options for the duration of a block, always releasing them."""
        token = self.set_options(options)
        try:
            yield token
        finally:
            self.remove_options(token)
