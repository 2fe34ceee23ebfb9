from .diagnostics import parse, parse_all, make_diagnostic
from .workspace import IOFailure, materialize, cleanup
from .launcher import SpawnFailure, kINTERRUPTED_EXIT_CODE
from .session import (
    configure, declare_sinks,
    start, cancel, shutdown, reset,
    pump, run_until_idle,
    status, is_running, current_diagnostics, last_session,
)
