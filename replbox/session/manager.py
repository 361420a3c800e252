from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any

import structlog

from ..protocol.history import (
    History,
    HistoryEntry,
    HistorySink,
    InputEntry,
    OutputVariant,
    RecoveredMark,
    is_repl_command,
    parse_entry,
    scan_history_block,
)
from ..sandbox.console import ConsoleCapture
from ..sandbox.constants import CANCELLED_OUTPUT, COMMAND_PREFIX
from ..sandbox.engine import AbortToken, ExecutionCancelled, ExecutionResult, Sandbox
from ..sandbox.loader import ModuleLoader
from ..sandbox.namespace import BindingContext
from ..sandbox.render import show
from .config import SessionConfig

logger = structlog.get_logger()


class SessionState(str, Enum):
    """Session lifecycle states."""

    IDLE = "idle"
    LOADING = "loading"
    EXECUTING = "executing"


class UnknownCommandError(Exception):
    """Raised for a ``:`` meta-command the session does not know."""


HELP_TEXT = "\n".join(
    [
        ":help         Show this help",
        ":vars         List bindings with their types",
        ":type <name>  Show the type of a binding",
        ":reset        Remove all bindings",
    ]
)


def _consume_result(task: asyncio.Task[Any]) -> None:
    # Retrieve the outcome of an abandoned task
    if not task.cancelled():
        task.exception()


class Session:
    """Orchestrates a REPL session: load, execute, abort and recover.

    A session owns one Sandbox and appends everything it does to a history
    sink. At most one submission is in flight; ``execute`` is a no-op while
    another one runs.
    """

    def __init__(
        self,
        history: HistorySink | None = None,
        session_id: str | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.history: HistorySink = history if history is not None else History()
        self._config = config or SessionConfig()
        self._state = SessionState.IDLE
        self._sandbox: Sandbox | None = None
        self._capture: ConsoleCapture | None = None
        self._token: AbortToken | None = None
        self._probe_task: asyncio.Task[str] | None = None
        self._show_executing = False
        self._commands: dict[str, Callable[[str], None]] = {
            "help": self._command_help,
            "vars": self._command_vars,
            "type": self._command_type,
            "reset": self._command_reset,
        }

        # Metrics collection
        self._metrics = {
            "executions": 0,
            "executions_cancelled": 0,
            "errors": 0,
        }

    @property
    def state(self) -> SessionState:
        """Get current session state."""
        return self._state

    @property
    def loaded(self) -> bool:
        return self._sandbox is not None

    @property
    def show_executing(self) -> bool:
        """True once a submission has been running longer than the configured delay."""
        return self._show_executing

    @property
    def sandbox(self) -> Sandbox:
        if self._sandbox is None:
            raise RuntimeError("Session is not loaded")
        return self._sandbox

    @property
    def context(self) -> BindingContext:
        return self.sandbox.context

    @property
    def metrics(self) -> dict[str, int]:
        return dict(self._metrics)

    # --- Lifecycle ----------------------------------------------------------------
    async def load(self) -> None:
        """Bootstrap the sandbox once; later calls are no-ops."""
        if self._sandbox is not None or self._state is SessionState.LOADING:
            return

        self._state = SessionState.LOADING
        try:
            loader = ModuleLoader(
                primary_host=self._config.primary_host,
                mirror_host=self._config.mirror_host,
                probe_timeout=self._config.probe_timeout,
                cache_dir=self._config.cache_dir,
            )
            sandbox = Sandbox(
                loader,
                session_id=self.session_id,
                cooperative_cancel=self._config.cooperative_cancel,
                cancel_check_interval=self._config.cancel_check_interval,
                linecache_max_size=self._config.linecache_max_size,
            )
            self._capture = ConsoleCapture(self.history)
            sandbox.add_console_listener(self._capture)
            self._sandbox = sandbox

            if self._config.probe_on_load:
                self._probe_task = asyncio.create_task(sandbox.probe())
                self._probe_task.add_done_callback(self._on_probe_done)
        finally:
            self._state = SessionState.IDLE

        logger.info("session_loaded", session_id=self.session_id, probe=self._config.probe_on_load)

    def _on_probe_done(self, task: asyncio.Task[str]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("cdn_probe_error", session_id=self.session_id, error=str(error))

    async def close(self) -> None:
        """Abort any running submission, release the loader and stop the execution thread."""
        self.abort()
        if self._probe_task is not None and not self._probe_task.done():
            self._probe_task.cancel()
        if self._sandbox is not None:
            await self._sandbox.aclose()
        logger.info("session_closed", session_id=self.session_id, metrics=self._metrics)

    async def __aenter__(self) -> Session:
        await self.load()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # --- Execution ----------------------------------------------------------------
    async def execute(self, code: str) -> None:
        """Execute one submission and append its input and outcome to history.

        No-op when ``code`` is blank, the session is not loaded, or another
        submission is running.
        """
        if not code.strip() or self._sandbox is None or self._state is not SessionState.IDLE:
            return

        if is_repl_command(code):
            self.history.append_input(code)
            self._run_command(code)
            return

        token = AbortToken()
        self._token = token
        self._state = SessionState.EXECUTING
        self._show_executing = False
        self._metrics["executions"] += 1
        self.history.append_input(code)

        execution_id = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        latch = loop.call_later(self._config.show_executing_delay, self._latch_executing, token)
        logger.debug("execute_start", session_id=self.session_id, execution_id=execution_id)

        try:
            result = await self._race(self._sandbox.execute(code, token), token)
            if result.has_value:
                self.history.append_output(show(result.value))
            logger.debug("execute_complete", session_id=self.session_id, execution_id=execution_id)
        except ExecutionCancelled:
            self._metrics["executions_cancelled"] += 1
            logger.info("execution_cancelled", session_id=self.session_id, execution_id=execution_id)
        except Exception as e:
            self._metrics["errors"] += 1
            logger.debug(
                "execute_error",
                session_id=self.session_id,
                execution_id=execution_id,
                error_type=type(e).__name__,
            )
            self.history.append_error(e)
        finally:
            latch.cancel()
            # A newer execution may already own the session after an abort
            if self._token is token:
                self._token = None
                self._state = SessionState.IDLE
                self._show_executing = False

    async def _race(self, execution: Awaitable[ExecutionResult], token: AbortToken) -> ExecutionResult:
        """Run ``execution`` until it finishes or ``token`` is cancelled.

        Raises:
            ExecutionCancelled: If the token was cancelled first
        """
        engine = asyncio.ensure_future(execution)
        abort_wait = asyncio.create_task(token.wait())
        try:
            done, _pending = await asyncio.wait({engine, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
            if engine in done and not token.cancelled:
                return engine.result()
            raise ExecutionCancelled()
        finally:
            abort_wait.cancel()
            if not engine.done():
                engine.cancel()
            engine.add_done_callback(_consume_result)

    def _latch_executing(self, token: AbortToken) -> None:
        if self._token is token and self._state is SessionState.EXECUTING:
            self._show_executing = True

    def abort(self) -> None:
        """Cancel the running submission, if any. Idempotent."""
        token = self._token
        if token is None:
            return
        token.cancel()
        if self._state is SessionState.EXECUTING:
            self._state = SessionState.IDLE
            self._show_executing = False
            self.history.append_output(CANCELLED_OUTPUT, OutputVariant.INFO)
            logger.info("execution_aborted", session_id=self.session_id)

    # --- Recovery -----------------------------------------------------------------
    async def recover(self, entries: Iterable[HistoryEntry | dict[str, Any]]) -> None:
        """Rebuild session state from a saved history.

        Each input block is re-executed unless it failed, was cancelled or is
        a meta-command; those blocks are appended verbatim. Recovered marks
        are dropped.
        """
        history = [parse_entry(entry) for entry in entries]
        replayed = 0
        index = 0
        while index < len(history):
            entry = history[index]
            if isinstance(entry, InputEntry):
                end, should_recover = scan_history_block(history, index)
                if should_recover:
                    await self.execute(entry.value)
                    replayed += 1
                else:
                    for kept in history[index:end]:
                        self.history.append_entry(kept)
                index = end
                continue
            if not isinstance(entry, RecoveredMark):
                self.history.append_entry(entry)
            index += 1

        logger.info("session_recovered", session_id=self.session_id, entries=len(history), replayed=replayed)

    def restore(self, entries: Iterable[HistoryEntry | dict[str, Any]]) -> None:
        """Show a saved history without re-executing it, followed by a recovered mark."""
        for entry in entries:
            self.history.append_entry(parse_entry(entry))
        self.history.append_entry(RecoveredMark())

    # --- Meta-commands ------------------------------------------------------------
    def _run_command(self, code: str) -> None:
        name, _, argument = code.strip()[len(COMMAND_PREFIX) :].partition(" ")
        handler = self._commands.get(name)
        logger.debug("repl_command", session_id=self.session_id, command=name)
        try:
            if handler is None:
                raise UnknownCommandError(f"Unknown command: {COMMAND_PREFIX}{name}")
            handler(argument.strip())
        except Exception as e:
            self.history.append_error(e)

    def _command_help(self, argument: str) -> None:
        self.history.append_output(HELP_TEXT)

    def _command_vars(self, argument: str) -> None:
        context = self.context
        if not context:
            self.history.append_output("No bindings", OutputVariant.INFO)
            return
        self.history.append_output(
            "\n".join(f"{name}: {type(value).__name__}" for name, value in context.items())
        )

    def _command_type(self, argument: str) -> None:
        if not argument:
            raise ValueError(f"Usage: {COMMAND_PREFIX}type <name>")
        if argument not in self.context:
            raise NameError(f"name {argument!r} is not defined")
        value = self.context[argument]
        self.history.append_output(f"{argument}: {type(value).__module__}.{type(value).__qualname__}")

    def _command_reset(self, argument: str) -> None:
        self.context.clear()
        self.history.append_output("Bindings cleared", OutputVariant.INFO)
