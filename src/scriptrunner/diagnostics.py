"""
diagnostics - turn compiler error lines into structured diagnostics.

Recognized grammar (one line, as written to stderr by kotlinc and friends):

    <path>:<line>:<column>: error:<message>

The path is matched but not kept.  Everything else on stderr is ordinary
output and produces no diagnostic.
"""

import re


# =============================================================================
# CONSTANTS
# =============================================================================

kERROR_LINE = re.compile(
    r"^(?P<path>.+?):(?P<line>[^:]*):(?P<column>[^:]*): error:(?P<message>.*)$"
)

kDEFAULT_COLUMN = 1


# =============================================================================
# DIAGNOSTIC MODEL
# =============================================================================

def make_diagnostic(line, column, message, raw):
    """Create a diagnostic dict.  Treat the result as read-only."""
    return {
        "line": line,
        "column": column,
        "message": message,
        "raw": raw,
    }


def _positive_int(s):
    """Parse s as an integer >= 1.  Returns None if it isn't one."""
    s = s.strip()
    if not (s.isascii() and s.isdigit()):
        return None
    n = int(s)
    if n < 1:
        return None
    return n


# =============================================================================
# PARSING
# =============================================================================

def parse(line):
    """Map one raw stderr line to a diagnostic dict, or None.

    Never raises for str input; a line that doesn't fit the grammar, or
    whose line number isn't a positive integer, simply yields None.
    An unreadable column falls back to 1.
    """
    if not isinstance(line, str):
        return None

    raw = line.rstrip("\r\n")
    m = kERROR_LINE.match(raw)
    if m is None:
        return None

    lineno = _positive_int(m.group("line"))
    if lineno is None:
        return None

    column = _positive_int(m.group("column"))
    if column is None:
        column = kDEFAULT_COLUMN

    return make_diagnostic(lineno, column, m.group("message").strip(), raw)


def parse_all(lines):
    """Return the diagnostics found in lines, in order."""
    found = []
    for line in lines:
        d = parse(line)
        if d is not None:
            found.append(d)
    return found


def format_location(d):
    """Short "line:column" label for a diagnostic."""
    return f"{d['line']}:{d['column']}"
