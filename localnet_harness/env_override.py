"""Scoped, nestable overrides of process environment variables.

Several harness operations shell out to the ``sui`` CLI and must point it at
an isolated config directory.  Those operations may overlap (two test
contexts publishing concurrently on one event loop), so restoring "the value
seen before my override" is wrong: whichever scope closes first would clobber
the other.  Instead every override gets a token and a per-key stack; closing a
scope removes exactly its own entry and the variable reflects the newest entry
still open, or the baseline captured before the first override.
"""

from __future__ import annotations

import contextlib
import inspect
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Mapping, MutableMapping, TypeVar

__all__ = ["EnvOverrideToken", "EnvironmentOverrideStack", "ENV_OVERRIDES"]

T = TypeVar("T")


class EnvOverrideToken:
    __slots__ = ("key",)

    def __init__(self, key: str) -> None:
        self.key = key

    def __repr__(self) -> str:
        return f"<EnvOverrideToken {self.key} at {id(self):#x}>"


@dataclass
class _OverrideState:
    baseline: str | None
    entries: list[tuple[EnvOverrideToken, str | None]] = field(default_factory=list)


class EnvironmentOverrideStack:
    """Token based override stacks keyed by environment variable name."""

    def __init__(self, environ: MutableMapping[str, str] | None = None) -> None:
        self.environ = os.environ if environ is None else environ
        self._stacks: dict[str, _OverrideState] = {}

    def _set(self, key: str, value: str | None) -> None:
        if value is None:
            self.environ.pop(key, None)
        else:
            self.environ[key] = value

    def apply(self, key: str, value: str | None) -> EnvOverrideToken:
        """Push ``value`` for ``key`` and make it live. ``None`` unsets the variable."""

        token = EnvOverrideToken(key)
        state = self._stacks.get(key)
        if state is None:
            state = _OverrideState(baseline=self.environ.get(key))
            self._stacks[key] = state
        state.entries.append((token, value))
        self._set(key, value)
        return token

    def release(self, key: str, token: EnvOverrideToken) -> None:
        """Drop the entry identified by ``token``; unknown tokens are ignored."""

        state = self._stacks.get(key)
        if state is None:
            return
        for index, (candidate, _value) in enumerate(state.entries):
            if candidate is token:
                del state.entries[index]
                break
        else:
            return

        if state.entries:
            self._set(key, state.entries[-1][1])
            return

        del self._stacks[key]
        self._set(key, state.baseline)

    def depth(self, key: str) -> int:
        state = self._stacks.get(key)
        return len(state.entries) if state else 0

    @contextlib.contextmanager
    def scoped(self, updates: Mapping[str, str | None]) -> Iterator[None]:
        applied = [(key, self.apply(key, value)) for key, value in updates.items()]
        try:
            yield
        finally:
            for key, token in reversed(applied):
                self.release(key, token)

    async def run(
        self,
        updates: Mapping[str, str | None],
        action: Callable[[], Awaitable[T] | T],
    ) -> T:
        """Apply ``updates``, run ``action`` (awaiting it when needed), then release."""

        with self.scoped(updates):
            result: Any = action()
            if inspect.isawaitable(result):
                result = await result
            return result


ENV_OVERRIDES = EnvironmentOverrideStack()
