"""Execution engine for REPL submissions.

Each submission is compiled into a single synthesized function whose
parameters are the fixed helpers followed by every current binding. The body
is the submission's statements; a trailing expression is captured into
``__repl_result__`` and the function returns a snapshot of every binding the
submission introduced or could have reassigned.

Key behaviors:
- One execution thread per sandbox: every submission runs on a dedicated,
  persistent thread that owns its own event loop and ``contextvars.Context``,
  so thread-bound objects survive from one submission to the next. The
  caller's loop only awaits the outcome.
- Synchronous first: the plain ``def`` is called directly on the execution
  thread with a cooperative cancellation tracer.
- Asynchronous fallback: when the plain ``def`` does not compile (top-level
  ``await``, ``async for``, ``async with``), the same body is compiled as
  ``async def`` and awaited on the execution thread's loop. Errors raised by
  user code are never retried.
- Reconciliation: the returned snapshot, plus whatever user functions wrote
  through ``global``, is applied to the BindingContext in one step, skipping
  values that are the identical object already bound. A failed or cancelled
  submission never reaches this step.
- Virtual filenames registered in ``linecache`` with a bounded LRU for
  tracebacks.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import contextvars
import linecache
import re
import sys
import threading
from collections import OrderedDict
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from .classifier import GlobalAssignmentRewriter, Statement, StatementKind, classify
from .console import ConsoleListener, ConsoleProxy, make_print
from .constants import (
    BINDINGS_NAME,
    CANCELLED_MESSAGE,
    CLEAR_NAME,
    CONSOLE_NAME,
    ENGINE_HELPERS,
    EXEC_FUNCTION_NAME,
    IMPORT_NAMES_NAME,
    IMPORT_URL_NAME,
    LOCALS_NAME,
    PRINT_NAME,
    RESULT_NAME,
)
from .imports import RewriteMode, rewrite_imports
from .loader import ModuleLoader, import_names
from .namespace import RESERVED_NAMES, BindingContext

logger = structlog.get_logger()

_FUNCTION_EXTRA: dict[str, Any] = {"type_params": []} if sys.version_info >= (3, 12) else {}


class ExecutionCancelled(Exception):
    """Raised when an execution loses the race against its abort token."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ExecutionResult:
    """Optional value of a submission.

    ``has_value`` is only true when the last statement was a bare
    expression, so a submission that evaluates to ``None`` is distinguishable
    from one that produced no value.
    """

    value: Any = None
    has_value: bool = False

    @classmethod
    def some(cls, value: Any) -> ExecutionResult:
        return cls(value=value, has_value=True)


NO_RESULT = ExecutionResult()


class AbortToken:
    """Thread-safe, single-use cancellation handle for one execution."""

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Set the cancellation flag. Must be called on the loop that awaits :meth:`wait`."""
        with self._lock:
            self._cancelled = True
        self._event.set()

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    async def wait(self) -> None:
        await self._event.wait()


def _create_cancel_tracer(token: AbortToken, check_interval: int = 100) -> Callable[[Any, str, Any], Any]:
    """Create a trace function that stops user code once ``token`` is cancelled.

    Only frames compiled from REPL submissions are traced, so library code
    runs at full speed.
    """
    event_count = 0

    def tracer(frame: Any, event: str, arg: Any) -> Any:
        nonlocal event_count

        if event == "call":
            return tracer if frame.f_code.co_filename.startswith("<repl") else None

        if event == "line":
            event_count += 1
            if event_count >= check_interval:
                event_count = 0
                if token.cancelled:
                    # not caught by user ``except Exception`` blocks
                    raise KeyboardInterrupt(CANCELLED_MESSAGE)

        return tracer

    return tracer


class _StopRequested(Exception):
    """Carries ``KeyboardInterrupt`` or ``SystemExit`` from user code back to the caller.

    Raised as is, they would stop the execution thread's event loop.
    """

    def __init__(self, error: BaseException) -> None:
        super().__init__(repr(error))
        self.error = error


class BindingSnapshot:
    """Bindings returned by a synthesized function."""

    __slots__ = ("bindings", "result", "has_result")

    def __init__(self, scope: dict[str, Any], names: Sequence[str], *_returned: Any) -> None:
        self.bindings = {name: scope[name] for name in names if name in scope}
        self.has_result = RESULT_NAME in scope
        self.result = scope.get(RESULT_NAME)


def _is_scope_boundary(node: ast.AST) -> bool:
    return isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda))


def _walk_scope(node: ast.AST):
    """Walk ``node`` without entering nested function, lambda or class scopes."""
    yield node
    if _is_scope_boundary(node):
        return
    for child in ast.iter_child_nodes(node):
        yield from _walk_scope(child)


def _snapshot_call(names: Sequence[str], *extra: ast.expr) -> ast.Call:
    return ast.Call(
        func=ast.Name(id=BINDINGS_NAME, ctx=ast.Load()),
        args=[
            ast.Call(func=ast.Name(id=LOCALS_NAME, ctx=ast.Load()), args=[], keywords=[]),
            ast.Tuple(elts=[ast.Constant(value=name) for name in names], ctx=ast.Load()),
            *extra,
        ],
        keywords=[],
    )


class _ReturnRewriter(ast.NodeTransformer):
    """Makes a top-level ``return`` end the submission with its bindings."""

    def __init__(self, names: Sequence[str]) -> None:
        self._names = names

    def visit_Return(self, node: ast.Return) -> ast.AST:
        extra = [node.value] if node.value is not None else []
        return ast.copy_location(ast.Return(value=_snapshot_call(self._names, *extra)), node)

    def visit_FunctionDef(self, node: ast.AST) -> ast.AST:
        return node

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef
    visit_Lambda = visit_FunctionDef


class _VersionedImportScopes(ast.NodeVisitor):
    """Rejects versioned imports in scopes that cannot await the loader.

    Rewritten imports are ``await __import_url__(...)`` calls, which only
    compile at top level or inside an ``async def``.
    """

    def __init__(self, filename: str) -> None:
        self._filename = filename
        self._scopes: list[ast.AST] = []

    def _visit_scope(self, node: ast.AST) -> None:
        self._scopes.append(node)
        self.generic_visit(node)
        self._scopes.pop()

    visit_FunctionDef = _visit_scope
    visit_AsyncFunctionDef = _visit_scope
    visit_ClassDef = _visit_scope
    visit_Lambda = _visit_scope

    def visit_Await(self, node: ast.Await) -> None:
        call = node.value
        if (
            self._scopes
            and not isinstance(self._scopes[-1], ast.AsyncFunctionDef)
            and isinstance(call, ast.Call)
            and isinstance(call.func, ast.Name)
            and call.func.id == IMPORT_URL_NAME
        ):
            raise SyntaxError(
                "versioned imports are only supported at top level or inside async functions",
                (self._filename, node.lineno, node.col_offset + 1, None),
            )
        self.generic_visit(node)


class Sandbox:
    """Evaluates submissions against a persistent BindingContext."""

    def __init__(
        self,
        loader: ModuleLoader | None = None,
        *,
        session_id: str = "repl",
        cooperative_cancel: bool = True,
        cancel_check_interval: int = 100,
        linecache_max_size: int = 128,
    ) -> None:
        self.context = BindingContext()
        self.loader = loader or ModuleLoader()
        self.session_id = session_id
        self._cooperative_cancel = cooperative_cancel
        self._cancel_check_interval = cancel_check_interval
        self._listeners: list[ConsoleListener] = []
        self.console = ConsoleProxy(self._dispatch_console)
        self._print = make_print(self.console)
        self._seq = 0
        self._linecache_keys: OrderedDict[str, None] = OrderedDict()
        self._linecache_max_size = linecache_max_size
        self.stats = {"executions": 0, "async_fallbacks": 0}

        # Execution thread: every submission runs here, in one persistent context
        self._vars = contextvars.Context()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            name=f"replbox-{session_id}",
            daemon=True,
        )
        self._thread.start()

    # --- Console listeners ----------------------------------------------------
    def add_console_listener(self, listener: ConsoleListener) -> None:
        """Register a ``(method, *args)`` listener for console calls in user code."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_console_listener(self, listener: ConsoleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch_console(self, method: str, *args: Any) -> None:
        for listener in list(self._listeners):
            listener(method, *args)

    def helpers(self) -> dict[str, Any]:
        """Fixed leading arguments of every synthesized function, in parameter order."""
        helpers = {
            CONSOLE_NAME: self.console,
            CLEAR_NAME: self.console.clear,
            PRINT_NAME: self._print,
            IMPORT_URL_NAME: self.loader.import_url,
            IMPORT_NAMES_NAME: import_names,
            BINDINGS_NAME: BindingSnapshot,
            LOCALS_NAME: builtins.locals,
        }
        return {name: helpers[name] for name in ENGINE_HELPERS}

    # --- Execution ------------------------------------------------------------
    async def execute(self, code: str, token: AbortToken | None = None) -> ExecutionResult:
        """Execute one submission.

        Args:
            code: Python source of the submission
            token: Abort token of this execution, if any

        Returns:
            ``ExecutionResult.some(value)`` when the last statement is a bare
            expression, else ``NO_RESULT``

        Raises:
            SyntaxError: If the submission does not compile in either mode
            Exception: Any exception raised by user code is propagated
        """
        self.stats["executions"] += 1
        filename = self._make_filename()
        source = rewrite_imports(code, RewriteMode.EXECUTE, host=self.loader.host)
        statements = classify(source, filename)
        self._register_source(filename, code)

        # ``global`` writes made by user code since the last submission
        self.context.apply(*self.context.global_writes())

        params = self.context.names()
        returned = list(params)
        for statement in statements:
            for name in statement.names:
                if name not in RESERVED_NAMES and name not in returned:
                    returned.append(name)

        body = self._build_body(statements, returned, filename)
        func, is_async = self._compile(body, params, filename)
        args = [*self.helpers().values(), *(self.context[name] for name in params)]

        logger.debug(
            "execution_start",
            session_id=self.session_id,
            filename=filename,
            mode="async" if is_async else "sync",
            statements=[statement.kind.value for statement in statements],
        )

        try:
            try:
                snapshot = await self._submit(self._invoke(func, args, is_async, token))
            except _StopRequested as e:
                raise e.error from None
            if token is not None and token.cancelled:
                raise ExecutionCancelled()
        except BaseException:
            self.context.reset_globals()
            raise

        self._reconcile(snapshot, params)

        if snapshot.has_result:
            return ExecutionResult.some(snapshot.result)
        return NO_RESULT

    def _reconcile(self, snapshot: BindingSnapshot, params: Sequence[str]) -> None:
        """Apply the snapshot and the run's ``global`` writes in one step."""
        updates, unset = self.context.global_writes()
        for name, value in snapshot.bindings.items():
            # the submission's own rebinding wins over a ``global`` write
            if name not in self.context or self.context[name] is not value:
                updates[name] = value

        deleted = [name for name in params if name not in snapshot.bindings]
        deleted.extend(name for name in unset if name not in updates and name not in deleted)
        self.context.apply(updates, deleted)

    async def _submit(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run ``coro`` as a task on the execution thread and await its outcome.

        Cancelling the caller cancels the task on the execution thread.
        """
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[Any] = loop.create_future()
        started: list[asyncio.Task[Any]] = []

        def deliver(task: asyncio.Task[Any]) -> None:
            error = None if task.cancelled() else task.exception()
            if outcome.done():
                return
            if task.cancelled():
                outcome.cancel()
            elif error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(task.result())

        def settle(task: asyncio.Task[Any]) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(deliver, task)

        def start() -> None:
            task = self._loop.create_task(coro, context=self._vars)
            task.add_done_callback(settle)
            started.append(task)

        try:
            self._loop.call_soon_threadsafe(start)
        except RuntimeError:
            coro.close()
            raise

        try:
            return await outcome
        except asyncio.CancelledError:
            # callbacks run in order, so ``start`` has run before this
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._cancel_tasks, started)
            raise

    @staticmethod
    def _cancel_tasks(tasks: list[asyncio.Task[Any]]) -> None:
        for task in tasks:
            task.cancel()

    async def _invoke(
        self,
        func: Callable[..., Any],
        args: list[Any],
        is_async: bool,
        token: AbortToken | None,
    ) -> BindingSnapshot:
        # Runs on the execution thread
        try:
            if is_async:
                return await func(*args)
            return self._run_sync(func, args, token)
        except (KeyboardInterrupt, SystemExit) as e:
            raise _StopRequested(e) from None

    def _run_sync(self, func: Callable[..., BindingSnapshot], args: list[Any], token: AbortToken | None) -> BindingSnapshot:
        if token is None or not self._cooperative_cancel:
            return func(*args)

        previous = sys.gettrace()
        sys.settrace(_create_cancel_tracer(token, self._cancel_check_interval))
        try:
            return func(*args)
        except KeyboardInterrupt:
            if token.cancelled:
                raise ExecutionCancelled() from None
            raise
        finally:
            sys.settrace(previous)

    def _build_body(self, statements: list[Statement], names: Sequence[str], filename: str = "<repl>") -> list[ast.stmt]:
        """Assemble the synthesized function body from classified statements."""
        body: list[ast.stmt] = []
        for index, statement in enumerate(statements):
            if statement.is_type_only:
                continue
            node = statement.node
            for child in _walk_scope(node):
                if isinstance(child, (ast.Yield, ast.YieldFrom)):
                    raise SyntaxError(
                        "'yield' outside function",
                        (filename, child.lineno, child.col_offset + 1, None),
                    )
            _VersionedImportScopes(filename).visit(node)
            node = GlobalAssignmentRewriter().visit(node)
            node = _ReturnRewriter(names).visit(node)

            is_last = index == len(statements) - 1
            if is_last and statement.kind is StatementKind.EXPRESSION and isinstance(node, ast.Expr):
                node = ast.copy_location(
                    ast.Assign(targets=[ast.Name(id=RESULT_NAME, ctx=ast.Store())], value=node.value),
                    node,
                )
            body.append(node)

        last = statements[-1].node if statements else None
        ret = ast.Return(value=_snapshot_call(names))
        if last is not None:
            ast.copy_location(ret, last)
            ret.end_lineno = getattr(last, "end_lineno", ret.lineno)
            ret.end_col_offset = getattr(last, "end_col_offset", 0)
        body.append(ret)
        return body

    def _compile(self, body: list[ast.stmt], params: Sequence[str], filename: str) -> tuple[Callable[..., Any], bool]:
        """Compile ``body`` as a plain function, falling back to ``async def``."""
        try:
            return self._define(ast.FunctionDef, body, params, filename), False
        except SyntaxError as e:
            logger.debug("sync_compile_failed", filename=filename, error=str(e))

        self.stats["async_fallbacks"] += 1
        return self._define(ast.AsyncFunctionDef, body, params, filename), True

    def _define(self, node_type: type, body: list[ast.stmt], params: Sequence[str], filename: str) -> Callable[..., Any]:
        arguments = ast.arguments(
            posonlyargs=[],
            args=[ast.arg(arg=name) for name in (*ENGINE_HELPERS, *params)],
            vararg=None,
            kwonlyargs=[],
            kw_defaults=[],
            kwarg=None,
            defaults=[],
        )
        function = node_type(
            name=EXEC_FUNCTION_NAME,
            args=arguments,
            body=body,
            decorator_list=[],
            returns=None,
            lineno=1,
            col_offset=0,
            **_FUNCTION_EXTRA,
        )
        module = ast.Module(body=[function], type_ignores=[])
        ast.fix_missing_locations(module)
        code = compile(module, filename, "exec", dont_inherit=True)

        namespace: dict[str, Any] = {}
        exec(code, self.context.globals, namespace)
        return namespace[EXEC_FUNCTION_NAME]

    # --- Virtual filenames ------------------------------------------------------
    def _make_filename(self) -> str:
        """Create a unique, human-readable virtual filename for a submission."""
        self._seq += 1
        session = re.sub(r"[^A-Za-z0-9_-]", "_", str(self.session_id))[:20]
        return f"<repl:{session}:{self._seq}>"

    def _register_source(self, filename: str, code: str) -> None:
        """Register code in linecache and keep the per-sandbox LRU bounded."""
        linecache.cache[filename] = (len(code), None, code.splitlines(keepends=True), filename)
        self._linecache_keys[filename] = None
        self._linecache_keys.move_to_end(filename)
        while len(self._linecache_keys) > self._linecache_max_size:
            old, _ = self._linecache_keys.popitem(last=False)
            linecache.cache.pop(old, None)

    # --- Lifecycle ---------------------------------------------------------------
    async def probe(self) -> str:
        """Choose the loader host from the execution thread, where its HTTP session lives."""
        return await self._submit(self.loader.probe())

    async def aclose(self) -> None:
        """Close the loader on the execution thread, then :meth:`close`."""
        if not self._loop.is_closed():
            await self._submit(self.loader.close())
        self.close()

    def close(self, timeout: float = 1.0) -> None:
        """Stop the execution thread and drop registered sources from ``linecache``."""
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
            if self._thread.is_alive():
                # still running a submission that ignores cancellation
                logger.warning("execution_thread_busy", session_id=self.session_id)
            else:
                self._loop.close()

        for filename in self._linecache_keys:
            linecache.cache.pop(filename, None)
        self._linecache_keys.clear()
