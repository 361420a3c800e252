"""Constants shared across sandbox components.

This module provides centralized constants used by the classifier, the import
rewriter and the engine so the names injected into user code never drift
between the component that emits them and the one that binds them.
"""

import re

# Fixed helpers passed as the leading parameters of every synthesized function.
# Order matters: it is the positional order used when the function is called.
CONSOLE_NAME = "console"
CLEAR_NAME = "clear"
PRINT_NAME = "print"
IMPORT_URL_NAME = "__import_url__"
IMPORT_NAMES_NAME = "__import_names__"
BINDINGS_NAME = "__repl_bindings__"
# builtins.locals under a name user code cannot rebind
LOCALS_NAME = "__repl_locals__"

ENGINE_HELPERS = (
    CONSOLE_NAME,
    CLEAR_NAME,
    PRINT_NAME,
    IMPORT_URL_NAME,
    IMPORT_NAMES_NAME,
    BINDINGS_NAME,
    LOCALS_NAME,
)

# Name of the synthesized function and of the trailing-expression slot
EXEC_FUNCTION_NAME = "__repl_exec__"
RESULT_NAME = "__repl_result__"

# Cancellation sentinel, recognised by message
CANCELLED_MESSAGE = "REPL: Execution cancelled"
# Info output appended by the session when a running submission is aborted
CANCELLED_OUTPUT = "Execution cancelled"

# Meta-command prefix (":type Foo", ":vars")
COMMAND_PREFIX = ":"

# Package index hosts. The mirror is used when the primary host fails the
# reachability probe.
PRIMARY_HOST = "https://pypi.org"
MIRROR_HOST = "https://pypi.tuna.tsinghua.edu.cn"

# Package specifier grammar: dotted module path, optional "@version-or-tag".
# The first dotted component names the distribution on the package index.
PACKAGE_SPEC_RE = re.compile(
    r"^(?P<module>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)"
    r"(?:@(?P<version>[A-Za-z0-9][A-Za-z0-9.+!_-]*))?$"
)
