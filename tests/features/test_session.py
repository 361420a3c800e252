"""Feature tests for the execution orchestrator."""

import asyncio

import pytest

from replbox.protocol.history import ErrorEntry, History, InputEntry, OutputEntry, OutputVariant
from replbox.session.config import SessionConfig
from replbox.session.manager import Session, SessionState
from tests.fixtures.sessions import create_session, entries_of


@pytest.mark.integration
class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_load_is_idempotent(self, config):
        session = Session(config=config)
        assert not session.loaded
        await session.load()
        sandbox = session.sandbox
        await session.load()
        assert session.sandbox is sandbox
        assert session.state == SessionState.IDLE
        await session.close()

    @pytest.mark.asyncio
    async def test_execute_before_load_is_noop(self, config):
        history = History()
        session = Session(history=history, config=config)
        await session.execute("1 + 1")
        assert history.entries == []

    @pytest.mark.asyncio
    async def test_context_manager(self):
        async with Session(config=SessionConfig(probe_on_load=False)) as session:
            assert session.loaded
            await session.execute("x = 1")
            assert session.context["x"] == 1

    @pytest.mark.asyncio
    async def test_probe_runs_on_load(self, monkeypatch):
        from replbox.sandbox.loader import ModuleLoader

        async def fake_probe(self):
            self.host = self.mirror_host
            return self.host

        monkeypatch.setattr(ModuleLoader, "probe", fake_probe)
        async with Session(config=SessionConfig()) as session:
            for _ in range(100):
                if session.sandbox.loader.host == SessionConfig().mirror_host:
                    break
                await asyncio.sleep(0.01)
            assert session.sandbox.loader.host == SessionConfig().mirror_host


@pytest.mark.integration
class TestSessionExecute:
    @pytest.mark.asyncio
    async def test_expression_result_is_shown(self, session):
        await session.execute("1 + 1")
        assert entries_of(session) == [("input", "1 + 1"), ("output", "2")]

    @pytest.mark.asyncio
    async def test_assignment_then_use(self, session):
        await session.execute("a = 10")
        await session.execute("a * 2")
        assert entries_of(session) == [("input", "a = 10"), ("input", "a * 2"), ("output", "20")]

    @pytest.mark.asyncio
    async def test_none_result_is_shown(self, session):
        await session.execute("None")
        assert entries_of(session)[-1] == ("output", "None")

    @pytest.mark.asyncio
    async def test_blank_input_is_ignored(self, session):
        await session.execute("   \n")
        assert entries_of(session) == []

    @pytest.mark.asyncio
    async def test_runtime_error_entry(self, session):
        await session.execute("1 / 0")
        assert entries_of(session) == [
            ("input", "1 / 0"),
            ("error", "ZeroDivisionError: division by zero"),
        ]
        assert session.state == SessionState.IDLE
        assert session.metrics["errors"] == 1

    @pytest.mark.asyncio
    async def test_syntax_error_entry(self, session):
        await session.execute("x = = 1")
        entry = session.history.entries[-1]
        assert isinstance(entry, ErrorEntry)
        assert entry.value.startswith("SyntaxError: ")

    @pytest.mark.asyncio
    async def test_console_output_is_captured(self, session):
        await session.execute("console.warn('careful')\nprint('a', 'b')\n3")
        assert session.history.entries[1:] == [
            OutputEntry(value="careful", variant=OutputVariant.WARN),
            OutputEntry(value="a b"),
            OutputEntry(value="3"),
        ]

    @pytest.mark.asyncio
    async def test_clear_empties_history(self, session):
        await session.execute("x = 1")
        await session.execute("clear()")
        assert entries_of(session) == []

    @pytest.mark.asyncio
    async def test_top_level_await(self, session):
        await session.execute("import asyncio\nawait asyncio.sleep(0.01)\n'slept'")
        assert entries_of(session)[-1] == ("output", "'slept'")

    @pytest.mark.asyncio
    async def test_execute_while_executing_is_noop(self, session):
        first = asyncio.create_task(session.execute("import asyncio\nawait asyncio.sleep(0.2)\n'first'"))
        await asyncio.sleep(0.05)
        assert session.state == SessionState.EXECUTING

        await session.execute("'second'")
        await first

        assert [value for kind, value in entries_of(session) if kind == "input"] == [
            "import asyncio\nawait asyncio.sleep(0.2)\n'first'"
        ]

    @pytest.mark.asyncio
    async def test_show_executing_latch(self):
        async with create_session(show_executing_delay=0.05) as session:
            task = asyncio.create_task(session.execute("import time\ntime.sleep(0.4)"))
            await asyncio.sleep(0.005)
            assert session.state == SessionState.EXECUTING
            assert not session.show_executing
            await asyncio.sleep(0.2)
            assert session.show_executing
            await task
            assert not session.show_executing
            assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_fast_execution_never_shows_executing(self):
        async with create_session(show_executing_delay=0.5) as session:
            await session.execute("1")
            await asyncio.sleep(0)
            assert not session.show_executing


@pytest.mark.integration
class TestMetaCommands:
    @pytest.mark.asyncio
    async def test_help(self, session):
        await session.execute(":help")
        assert entries_of(session)[0] == ("input", ":help")
        assert ":vars" in session.history.entries[1].value

    @pytest.mark.asyncio
    async def test_vars(self, session):
        await session.execute("x = 1\nname = 'a'")
        await session.execute(":vars")
        assert entries_of(session)[-1] == ("output", "x: int\nname: str")

    @pytest.mark.asyncio
    async def test_vars_empty(self, session):
        await session.execute(":vars")
        assert session.history.entries[-1] == OutputEntry(value="No bindings", variant=OutputVariant.INFO)

    @pytest.mark.asyncio
    async def test_type(self, session):
        await session.execute("from collections import OrderedDict\nd = OrderedDict()")
        await session.execute(":type d")
        assert entries_of(session)[-1] == ("output", "d: collections.OrderedDict")

    @pytest.mark.asyncio
    async def test_type_of_missing_name(self, session):
        await session.execute(":type Foo")
        assert entries_of(session)[-1] == ("error", "NameError: name 'Foo' is not defined")

    @pytest.mark.asyncio
    async def test_reset(self, session):
        await session.execute("x = 1")
        await session.execute(":reset")
        assert len(session.context) == 0
        await session.execute("x")
        assert entries_of(session)[-1] == ("error", "NameError: name 'x' is not defined")

    @pytest.mark.asyncio
    async def test_unknown_command(self, session):
        await session.execute(":frobnicate now")
        assert entries_of(session)[-1] == ("error", "UnknownCommandError: Unknown command: :frobnicate")

    @pytest.mark.asyncio
    async def test_commands_do_not_touch_engine(self, session):
        await session.execute(":vars")
        assert session.sandbox.stats["executions"] == 0
        assert isinstance(session.history.entries[0], InputEntry)
