from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from state.schema import GuildState
from state.schema import RootState
from state.schema import ScheduleItem
from state.schema import Settlement
import state.store as store_module
from state.store import StateIOError
from state.store import StateStore
from state.store import parse_state_text
from state.store import serialize_state


def _sample_state() -> RootState:
    guild = GuildState()
    guild.config.timezone = "Europe/Berlin"
    guild.config.announcements_channel_id = "500"
    guild.settlements["s1"] = Settlement(
        id="s1",
        name="Oakfall",
        tier=3,
        mayor_role_id="900",
        mayor_user_id="42",
        created_at_ms=1_000,
        updated_at_ms=2_000,
    )
    guild.schedule["sched_1"] = ScheduleItem(
        id="sched_1",
        title="Siege practice",
        announce_channel_id="500",
        starts_at_ms=1_700_000_000_000,
        created_by_user_id="42",
        created_at_ms=1_000,
        reminder_offsets_minutes=[1440, 60, 15, 0],
        sent_offset_minutes=[1440],
    )
    return RootState(version=1, guilds={"123": guild})


class StateStoreLoadTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name) / "data"
        self.store = StateStore(self.data_dir)

    async def asyncTearDown(self):
        self.tmp.cleanup()

    async def test_missing_file_bootstraps_default_and_persists(self):
        state = await self.store.load()
        self.assertEqual(state, RootState(version=1, guilds={}))
        self.assertTrue(self.store.path.exists())
        on_disk = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk, {"version": 1, "guilds": {}})

    async def test_unparsable_file_resets_to_default_and_overwrites(self):
        self.data_dir.mkdir(parents=True)
        self.store.path.write_text("{not json", encoding="utf-8")
        state = await self.store.load()
        self.assertEqual(state.guilds, {})
        self.assertEqual(json.loads(self.store.path.read_text(encoding="utf-8")), {"version": 1, "guilds": {}})

    async def test_deeply_nested_file_resets_to_default(self):
        self.data_dir.mkdir(parents=True)
        self.store.path.write_text("[" * 100_000, encoding="utf-8")
        with mock.patch("builtins.print"):
            state = await self.store.load()
        self.assertEqual(state.guilds, {})
        self.assertEqual(json.loads(self.store.path.read_text(encoding="utf-8")), {"version": 1, "guilds": {}})

    async def test_oversized_integer_literal_resets_to_default(self):
        self.data_dir.mkdir(parents=True)
        text = '{"version": 1, "guilds": {}, "x": ' + "9" * 5000 + "}"
        self.store.path.write_text(text, encoding="utf-8")
        with mock.patch("builtins.print"):
            state = await self.store.load()
        self.assertEqual(state.guilds, {})
        self.assertEqual(json.loads(self.store.path.read_text(encoding="utf-8")), {"version": 1, "guilds": {}})

    async def test_schema_invalid_file_resets_to_default(self):
        self.data_dir.mkdir(parents=True)
        self.store.path.write_text(json.dumps({"version": 2, "guilds": {}}), encoding="utf-8")
        state = await self.store.load()
        self.assertEqual(state.version, 1)
        self.assertEqual(json.loads(self.store.path.read_text(encoding="utf-8"))["version"], 1)

    async def test_non_utf8_file_resets_to_default(self):
        self.data_dir.mkdir(parents=True)
        self.store.path.write_bytes(b"\xff\xfe\x00garbage")
        state = await self.store.load()
        self.assertEqual(state.guilds, {})

    async def test_valid_file_is_loaded_without_rewrite(self):
        self.data_dir.mkdir(parents=True)
        text = serialize_state(_sample_state())
        self.store.path.write_text(text, encoding="utf-8")
        before = self.store.path.stat().st_mtime_ns
        state = await self.store.load()
        self.assertEqual(state, _sample_state())
        self.assertEqual(self.store.path.stat().st_mtime_ns, before)

    async def test_load_twice_is_idempotent(self):
        self.data_dir.mkdir(parents=True)
        self.store.path.write_text(serialize_state(_sample_state()), encoding="utf-8")
        first = await self.store.load()
        second = await self.store.load()
        self.assertEqual(first, second)

    async def test_round_trip(self):
        await self.store.load()
        sample = _sample_state()

        def _replace(state: RootState) -> None:
            state.guilds.update(sample.guilds)

        await self.store.mutate(_replace)
        reloaded = await StateStore(self.data_dir).load()
        self.assertEqual(reloaded, sample)
        self.assertEqual(parse_state_text(serialize_state(sample)), sample)


class StateStoreMutateTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(self.tmp.name)
        await self.store.load()
        await self.store.mutate(lambda s: s.guilds.setdefault("1", GuildState()))

    async def asyncTearDown(self):
        self.tmp.cleanup()

    async def test_concurrent_mutations_run_in_arrival_order_without_lost_updates(self):
        order: list[int] = []

        def make(i: int):
            async def _mutate(state: RootState) -> None:
                config = state.guilds["1"].config
                current = dict(config.zone_mayor_channel_ids)
                await asyncio.sleep(0)
                current[f"z{i}"] = str(i)
                config.zone_mayor_channel_ids = current
                order.append(i)

            return _mutate

        await asyncio.gather(*(self.store.mutate(make(i)) for i in range(20)))

        self.assertEqual(order, list(range(20)))
        on_disk = json.loads(self.store.path.read_text(encoding="utf-8"))
        zones = on_disk["guilds"]["1"]["config"]["zoneMayorChannelIds"]
        self.assertEqual(zones, {f"z{i}": str(i) for i in range(20)})

    async def test_mutate_returns_mutator_result(self):
        result = await self.store.mutate(lambda s: len(s.guilds))
        self.assertEqual(result, 1)

    async def test_get_returns_detached_copy(self):
        snapshot = self.store.get()
        snapshot.guilds["2"] = GuildState()
        self.assertNotIn("2", self.store.get().guilds)

    async def test_failed_mutator_does_not_touch_file(self):
        before = self.store.path.read_text(encoding="utf-8")

        def _boom(state: RootState) -> None:
            state.guilds["1"].config.timezone = "Asia/Tokyo"
            raise RuntimeError("handler bug")

        with self.assertRaises(RuntimeError):
            await self.store.mutate(_boom)
        self.assertEqual(self.store.path.read_text(encoding="utf-8"), before)
        self.assertEqual(self.store.get().guilds["1"].config.timezone, "UTC")

        # partial edits stay in memory and reach disk with the next mutation
        await self.store.mutate(lambda s: None)
        on_disk = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["guilds"]["1"]["config"]["timezone"], "Asia/Tokyo")

    async def test_write_failure_surfaces_and_keeps_previous_file(self):
        before = self.store.path.read_text(encoding="utf-8")
        with mock.patch("state.store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StateIOError):
                await self.store.mutate(lambda s: s.guilds.setdefault("2", GuildState()))
        self.assertEqual(self.store.path.read_text(encoding="utf-8"), before)
        # memory is ahead of disk
        self.assertIn("2", self.store.get().guilds)

    async def test_no_temp_file_left_behind(self):
        await self.store.mutate(lambda s: s.guilds.setdefault("3", GuildState()))
        leftovers = [p.name for p in Path(self.tmp.name).iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    async def test_failed_rename_removes_temp_file(self):
        with mock.patch("state.store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StateIOError):
                await self.store.mutate(lambda s: None)
        leftovers = [p.name for p in Path(self.tmp.name).iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    async def test_each_write_uses_its_own_temp_file(self):
        sources: list[str] = []
        real_replace = os.replace

        def _record(src, dst):
            sources.append(str(src))
            real_replace(src, dst)

        with mock.patch("state.store.os.replace", side_effect=_record):
            await self.store.mutate(lambda s: None)
            await self.store.mutate(lambda s: None)
        self.assertEqual(len(set(sources)), 2)
        self.assertTrue(all(Path(src).parent == self.store.path.parent for src in sources))

    async def test_cancelled_mutation_keeps_lock_until_write_finishes(self):
        started = threading.Event()
        release = threading.Event()
        real_write = store_module._write_atomic_sync

        def _slow_write(path, text):
            started.set()
            release.wait(5)
            real_write(path, text)

        with mock.patch("state.store._write_atomic_sync", _slow_write):
            first = asyncio.create_task(self.store.mutate(lambda s: s.guilds.setdefault("a", GuildState())))
            await asyncio.to_thread(started.wait, 5)
            first.cancel()
            second = asyncio.create_task(self.store.mutate(lambda s: s.guilds.setdefault("b", GuildState())))
            await asyncio.sleep(0.05)
            # the cancelled write is still running, so the next mutation waits
            self.assertFalse(second.done())
            release.set()
            with self.assertRaises(asyncio.CancelledError):
                await first
            await second

        on_disk = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertEqual(set(on_disk["guilds"]), {"1", "a", "b"})


if __name__ == "__main__":
    unittest.main()
