import textwrap

from . import diagnostics
from . import session


LINE = "─" * 78


def _wrap(s, indent=4, width=74):
    pad = " " * indent
    return "\n".join(pad + line for line in textwrap.wrap(str(s), width))


def _kv(label, value, indent=2):
    pad = " " * indent
    return f"{pad}{label:14}: {value}"


def format_report(snapshot=None):
    """
    Returns a human-friendly string describing a retired run, as produced
    by session.last_session().
    """

    if snapshot is None:
        snapshot = session.last_session()

    if not snapshot or not isinstance(snapshot, dict):
        return "<< no run to report >>"

    out = []

    out.append("")
    out.append(LINE)
    out.append(" Script Run")
    out.append(LINE)

    out.append(_kv("session", snapshot.get("id", "?")))
    out.append(_kv("status", snapshot.get("status", "?")))

    if snapshot.get("reason"):
        out.append(_kv("reason", snapshot["reason"]))

    code = snapshot.get("exit_code")
    out.append(_kv("exit-code", "-" if code is None else code))

    started = snapshot.get("started_at")
    ended = snapshot.get("ended_at")
    if started is not None and ended is not None:
        out.append(_kv("elapsed", f"{ended - started:.2f}s"))

    if snapshot.get("detail"):
        out.append("")
        out.append("  detail:")
        out.extend(_wrap(snapshot["detail"], indent=4).splitlines())

    # -------------------------
    # DIAGNOSTICS
    # -------------------------

    found = snapshot.get("diagnostics") or []
    if found:
        out.append("")
        out.append(f" DIAGNOSTICS ({len(found)})")
        out.append(" " + "-" * 76)

        for d in found:
            out.append("")
            out.append(f"  {diagnostics.format_location(d)}")
            out.extend(_wrap(d["message"], indent=4).splitlines())

    out.append("")
    out.append(LINE)
    out.append("")

    return "\n".join(out)


def print_report(snapshot=None):
    """
    Pretty-prints a run report to stdout.
    """
    print(format_report(snapshot))
