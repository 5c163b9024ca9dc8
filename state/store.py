"""JSON file-backed state store.

One ``StateStore`` owns the live ``RootState`` for the whole process and is passed to
every component that needs it. All writes go through ``mutate``:

    store = StateStore("data")
    await store.load()
    await store.mutate(lambda s: s.guilds.setdefault("123", GuildState()))
    snapshot = store.get()

Mutations run one at a time in arrival order (``asyncio.Lock`` wakes waiters FIFO).
Each one rewrites the whole tree to a fresh ``<file>.*.tmp`` and renames it over the
canonical path, so the file on disk is always a complete document.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar, Union

from config.defaults import STATE_FILENAME
from state.schema import CorruptStateError
from state.schema import RootState
from state.schema import default_state


T = TypeVar("T")
Mutator = Callable[[RootState], Union[T, Awaitable[T]]]


class StateIOError(OSError):
    pass


def serialize_state(state: RootState) -> str:
    return json.dumps(state.to_dict(), indent=2, ensure_ascii=False)


def parse_state_text(text: str) -> RootState:
    try:
        raw = json.loads(text)
    except (ValueError, RecursionError) as exc:
        # JSONDecodeError, oversized int literals and deep nesting all land here
        raise CorruptStateError(f"invalid JSON: {exc}") from exc
    return RootState.from_dict(raw)


def _read_text_sync(path: Path) -> str | None:
    try:
        return path.read_bytes().decode("utf-8")
    except FileNotFoundError:
        return None


def _write_atomic_sync(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # unique temp name per write so two writers never share a file
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


class StateStore:
    def __init__(self, data_dir: str | Path, *, filename: str = STATE_FILENAME) -> None:
        self.data_dir = Path(data_dir)
        self._path = self.data_dir / filename
        self._lock = asyncio.Lock()
        self._state: RootState = default_state()
        self._snapshot: RootState = default_state()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> RootState:
        async with self._lock:
            try:
                await asyncio.to_thread(self.data_dir.mkdir, parents=True, exist_ok=True)
                text = await asyncio.to_thread(_read_text_sync, self._path)
            except UnicodeDecodeError:
                text = ""
            except OSError as exc:
                raise StateIOError(f"Failed to read state file {self._path}: {exc}") from exc

            if text is None:
                print(f"[State] no state file at {self._path}; starting fresh")
                state = default_state()
                needs_write = True
            else:
                try:
                    state = parse_state_text(text)
                    needs_write = False
                except CorruptStateError as exc:
                    print(f"[State] corrupt state file {self._path}: {exc}; resetting to defaults")
                    state = default_state()
                    needs_write = True

            self._state = state
            self._snapshot = copy.deepcopy(state)
            if needs_write:
                await self._write_locked()
            return copy.deepcopy(self._snapshot)

    def get(self) -> RootState:
        return copy.deepcopy(self._snapshot)

    async def save(self) -> None:
        async with self._lock:
            await self._write_locked()

    async def mutate(self, mutator: Mutator[T]) -> T:
        async with self._lock:
            result = mutator(self._state)
            if inspect.isawaitable(result):
                result = await result
            self._snapshot = copy.deepcopy(self._state)
            await self._write_locked()
            return result

    async def _write_locked(self) -> None:
        text = serialize_state(self._state)
        write = asyncio.ensure_future(asyncio.to_thread(_write_atomic_sync, self._path, text))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # hold the lock until the file write settles, then let the cancel through
            await asyncio.wait([write])
            raise
        except OSError as exc:
            raise StateIOError(f"Failed to write state file {self._path}: {exc}") from exc


def describe_state(state: RootState) -> dict[str, Any]:
    return {
        "guilds": len(state.guilds),
        "settlements": sum(len(g.settlements) for g in state.guilds.values()),
        "schedule_items": sum(len(g.schedule) for g in state.guilds.values()),
    }
