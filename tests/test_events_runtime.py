from __future__ import annotations

import asyncio
import unittest
from types import SimpleNamespace
from unittest import mock

try:
    from misc.events_runtime import on_member_roles_changed
    from misc.events_runtime import register_runtime_events
    from misc.runtime_deps import RuntimeDeps
except ModuleNotFoundError:
    register_runtime_events = None


class _FakeBot:
    def __init__(self):
        self.user = "VerraVoice#0001"
        self.handlers = {}

    def event(self, coro):
        self.handlers[coro.__name__] = coro
        return coro


def _member(member_id: int, role_ids, guild_id: int = 1):
    return SimpleNamespace(id=member_id, guild=SimpleNamespace(id=guild_id), roles=[SimpleNamespace(id=r) for r in role_ids])


def _deps(loop_func=None):
    return RuntimeDeps(
        store=object(),
        settings=SimpleNamespace(reminder_tick_seconds=60),
        reminder_scheduler=object(),
        reminder_loop_func=loop_func or mock.AsyncMock(),
        mayor_aggregate_role_name="Mayor",
    )


@unittest.skipIf(register_runtime_events is None, "discord.py not installed")
class RuntimeEventsTests(unittest.IsolatedAsyncioTestCase):
    async def test_on_ready_starts_reminder_loop_once(self):
        bot = _FakeBot()
        started = asyncio.Event()

        async def _loop():
            started.set()
            await asyncio.sleep(3600)

        register_runtime_events(bot, deps=_deps(_loop))
        with mock.patch("builtins.print"):
            await bot.handlers["on_ready"]()
            first = bot._reminder_task
            await bot.handlers["on_ready"]()
        self.assertIs(bot._reminder_task, first)
        await asyncio.wait_for(started.wait(), timeout=1)
        first.cancel()

    async def test_unchanged_roles_skip_sync(self):
        with mock.patch("misc.events_runtime.handle_member_role_update", new=mock.AsyncMock()) as handler:
            out = await on_member_roles_changed(_deps(), _member(42, [101]), _member(42, [101]))
        self.assertIsNone(out)
        handler.assert_not_awaited()

    async def test_changed_roles_forward_previous_role_ids(self):
        deps = _deps()
        with mock.patch("misc.events_runtime.handle_member_role_update", new=mock.AsyncMock(return_value="added")) as handler:
            out = await on_member_roles_changed(deps, _member(42, [5]), _member(42, [5, 101]))
        self.assertEqual(out, "added")
        args = handler.await_args.args
        self.assertIs(args[0], deps.store)
        self.assertEqual(args[2], {"5"})
        self.assertTrue(args[3].has_role("101"))
        self.assertEqual(args[4], "Mayor")

    async def test_handler_errors_are_logged(self):
        failing = mock.AsyncMock(side_effect=RuntimeError("state gone"))
        with mock.patch("misc.events_runtime.handle_member_role_update", new=failing), mock.patch("builtins.print") as fake_print:
            out = await on_member_roles_changed(_deps(), _member(42, []), _member(42, [101]))
        self.assertIsNone(out)
        self.assertIn("[Events]", fake_print.call_args.args[0])


if __name__ == "__main__":
    unittest.main()
