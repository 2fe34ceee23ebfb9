# gui.py
# Script Runner window (tkinter view layer)

import threading
from pathlib import Path
import tkinter as tk
from tkinter import ttk, filedialog, messagebox

from . import diagnostics
from . import session


kPOLL_MS = 50
kHIGHLIGHT_DELAY_MS = 150
kSCRIPT_FILETYPES = [("Kotlin scripts", "*.kts"), ("All files", "*.*")]


g = {
    "running": False,
    "status_msg": "ready",
    "diagnostics": [],          # what the diagnostics list currently shows
    "diagnostics_visible": False,
    "file_path": None,          # script file last opened/saved
    "tokenizer": None,          # fn(text) -> [(tag, start_offset, end_offset)]
    "token_tags": set(),
    "highlight_job": None,
    "sync_scheduled": False,

    "ui": {}
}


def _request_sync_gui():
    if g["sync_scheduled"]:
        return
    root = g["ui"].get("root")
    if root is None:
        return
    g["sync_scheduled"] = True
    root.after_idle(_sync_gui)


def _on_main(fn, *args):
    """Run fn on the tk main loop; directly if we're already there."""
    if threading.current_thread() is threading.main_thread():
        fn(*args)
        return
    root = g["ui"].get("root")
    if root is not None:
        root.after(0, fn, *args)


def _set_var(varname, value):
    var = g["ui"][varname]
    if value is None:
        value = ""
    elif not isinstance(value, str):
        value = str(value)
    if var.get() != value:
        var.set(value)


def _sync_gui():
    g["sync_scheduled"] = False
    ui = g["ui"]

    _set_var("status_var", g["status_msg"])

    running = g["running"]
    for key, enabled in [
        ("btn_run", not running),
        ("btn_stop", running),
        ("btn_open", not running),
        ("btn_save", True),
    ]:
        w = ui.get(key)
        if w is not None:
            w.config(state="normal" if enabled else "disabled")

    frame = ui.get("diag_frame")
    if frame is not None:
        if g["diagnostics_visible"]:
            frame.grid()
        else:
            frame.grid_remove()


# =============================================================================
# EDITOR BUFFER
# =============================================================================

def get_text():
    t = g["ui"]["editor"]
    return t.get("1.0", "end-1c")


def set_text(s):
    t = g["ui"]["editor"]
    t.delete("1.0", "end")
    t.insert("1.0", s)
    t.edit_reset()
    _schedule_highlight()


def replace_text(start, end, s):
    """Replace characters [start, end) of the buffer with s."""
    t = g["ui"]["editor"]
    t.delete(f"1.0+{int(start)}c", f"1.0+{int(end)}c")
    t.insert(f"1.0+{int(start)}c", s)
    _schedule_highlight()


def move_caret_to_line(n):
    t = g["ui"]["editor"]
    index = f"{int(n)}.0"
    t.mark_set("insert", index)
    t.see(index)
    t.focus_set()


def set_tokenizer(fn):
    """Install a syntax tokenizer: fn(text) -> [(tag, start, end)] char offsets."""
    g["tokenizer"] = fn
    _schedule_highlight()


def _schedule_highlight():
    root = g["ui"].get("root")
    if root is None or g["tokenizer"] is None:
        return
    if g["highlight_job"] is not None:
        root.after_cancel(g["highlight_job"])
    g["highlight_job"] = root.after(kHIGHLIGHT_DELAY_MS, _do_highlight)


def _do_highlight():
    g["highlight_job"] = None
    fn = g["tokenizer"]
    if fn is None:
        return
    t = g["ui"]["editor"]
    for tag in g["token_tags"]:
        t.tag_remove(tag, "1.0", "end")
    for tag, start, end in fn(get_text()):
        t.tag_add(tag, f"1.0+{start}c", f"1.0+{end}c")
        g["token_tags"].add(tag)


def _on_editor_modified(evt=None):
    t = g["ui"]["editor"]
    if t.edit_modified():
        t.edit_modified(False)
        _schedule_highlight()


# =============================================================================
# SINKS (called by the session controller)
# =============================================================================

def _append_line(text, origin):
    t = g["ui"]["output"]
    t.config(state="normal")
    if origin == "stderr":
        t.insert("end", text + "\n", ("stderr",))
    else:
        t.insert("end", text + "\n")
    t.see("end")
    t.config(state="disabled")


def _clear_output():
    t = g["ui"]["output"]
    t.config(state="normal")
    t.delete("1.0", "end")
    t.config(state="disabled")


def _set_status(text):
    g["status_msg"] = text
    _request_sync_gui()


def _set_exit_code(code):
    _set_var("exit_code_var", "" if code is None else str(code))


def _set_running_state(is_running):
    g["running"] = bool(is_running)
    _request_sync_gui()


def _set_diagnostics(found, visible):
    g["diagnostics"] = list(found)
    g["diagnostics_visible"] = bool(visible)
    lb = g["ui"]["diag_list"]
    lb.delete(0, "end")
    for d in g["diagnostics"]:
        lb.insert("end", f"{diagnostics.format_location(d)}  {d['message']}")
    _request_sync_gui()


def declare_session_sinks():
    session.declare_sinks(
        append_line=lambda text, origin: _on_main(_append_line, text, origin),
        clear_output=lambda: _on_main(_clear_output),
        set_status=lambda text: _on_main(_set_status, text),
        set_exit_code=lambda code: _on_main(_set_exit_code, code),
        set_running_state=lambda running: _on_main(_set_running_state, running),
        set_diagnostics=lambda found, visible: _on_main(_set_diagnostics, found, visible),
    )


# =============================================================================
# COMMANDS
# =============================================================================

def run_script(evt=None):
    if g["running"]:
        return "break"
    session.start(get_text())
    return "break"


def stop_script(evt=None):
    session.cancel()
    return "break"


def open_file():
    if g["running"]:
        return
    path = filedialog.askopenfilename(filetypes=kSCRIPT_FILETYPES)
    if not path:
        return
    try:
        s = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        messagebox.showerror("Open", f"Could not read {path}:\n{e}")
        return
    set_text(s)
    g["file_path"] = Path(path)
    g["ui"]["root"].title(f"Script Runner - {Path(path).name}")


def save_file():
    path = g["file_path"]
    if path is None:
        chosen = filedialog.asksaveasfilename(defaultextension=".kts", filetypes=kSCRIPT_FILETYPES)
        if not chosen:
            return
        path = Path(chosen)
    try:
        path.write_text(get_text(), encoding="utf-8")
    except OSError as e:
        messagebox.showerror("Save", f"Could not write {path}:\n{e}")
        return
    g["file_path"] = path
    g["ui"]["root"].title(f"Script Runner - {path.name}")
    _set_status(f"saved {path.name}")


def _on_diagnostic_double_click(evt=None):
    lb = g["ui"]["diag_list"]
    sel = lb.curselection()
    if not sel:
        return
    idx = sel[0]
    if 0 <= idx < len(g["diagnostics"]):
        move_caret_to_line(g["diagnostics"][idx]["line"])


def _poll_session():
    session.pump()
    root = g["ui"]["root"]
    if root is not None:
        root.after(kPOLL_MS, _poll_session)


def _on_close():
    session.shutdown()
    root = g["ui"]["root"]
    g["ui"]["root"] = None
    root.destroy()


# =============================================================================
# LAYOUT
# =============================================================================

def _build_gui():
    root = tk.Tk()
    root.title("Script Runner")
    root.geometry("900x700")
    g["ui"]["root"] = root

    g["ui"]["status_var"] = tk.StringVar(value=g["status_msg"])
    g["ui"]["exit_code_var"] = tk.StringVar()

    outer = ttk.Frame(root, padding=8)
    outer.pack(fill="both", expand=True)
    outer.columnconfigure(0, weight=1)
    outer.rowconfigure(1, weight=1)

    # Toolbar
    bar = ttk.Frame(outer)
    bar.grid(row=0, column=0, sticky="ew", pady=(0, 6))

    b_open = ttk.Button(bar, text="Open…", command=open_file)
    b_save = ttk.Button(bar, text="Save…", command=save_file)
    b_run = ttk.Button(bar, text="Run", command=run_script)
    b_stop = ttk.Button(bar, text="Stop", command=stop_script, state="disabled")

    b_open.grid(row=0, column=0, padx=(0, 4))
    b_save.grid(row=0, column=1, padx=(0, 12))
    b_run.grid(row=0, column=2, padx=(0, 4))
    b_stop.grid(row=0, column=3)

    g["ui"]["btn_open"] = b_open
    g["ui"]["btn_save"] = b_save
    g["ui"]["btn_run"] = b_run
    g["ui"]["btn_stop"] = b_stop

    # Editor above, output below
    panes = ttk.PanedWindow(outer, orient="vertical")
    panes.grid(row=1, column=0, sticky="nsew")

    ed_frame = ttk.Frame(panes)
    ed_frame.rowconfigure(0, weight=1)
    ed_frame.columnconfigure(0, weight=1)
    t_ed = tk.Text(ed_frame, wrap="none", undo=True, font="TkFixedFont")
    t_ed.grid(row=0, column=0, sticky="nsew")
    ed_scroll = ttk.Scrollbar(ed_frame, orient="vertical", command=t_ed.yview)
    ed_scroll.grid(row=0, column=1, sticky="ns")
    t_ed.config(yscrollcommand=ed_scroll.set)
    t_ed.bind("<<Modified>>", _on_editor_modified)
    g["ui"]["editor"] = t_ed
    panes.add(ed_frame, weight=3)

    out_frame = ttk.Frame(panes)
    out_frame.rowconfigure(1, weight=1)
    out_frame.columnconfigure(0, weight=1)
    ttk.Label(out_frame, text="Output:").grid(row=0, column=0, sticky="w", pady=(6, 0))
    t_out = tk.Text(out_frame, height=10, wrap="none", state="disabled", font="TkFixedFont")
    t_out.grid(row=1, column=0, sticky="nsew")
    t_out.tag_configure("stderr", foreground="#b00020")
    out_scroll = ttk.Scrollbar(out_frame, orient="vertical", command=t_out.yview)
    out_scroll.grid(row=1, column=1, sticky="ns")
    t_out.config(yscrollcommand=out_scroll.set)
    g["ui"]["output"] = t_out
    panes.add(out_frame, weight=2)

    # Diagnostics (hidden until the first one arrives)
    diag = ttk.Frame(outer)
    diag.grid(row=2, column=0, sticky="ew", pady=(6, 0))
    diag.columnconfigure(0, weight=1)
    ttk.Label(diag, text="Diagnostics (double-click to jump):").grid(row=0, column=0, sticky="w")
    lb = tk.Listbox(diag, height=5)
    lb.grid(row=1, column=0, sticky="ew")
    lb.bind("<Double-1>", _on_diagnostic_double_click)
    g["ui"]["diag_frame"] = diag
    g["ui"]["diag_list"] = lb
    diag.grid_remove()

    # Status + exit code
    st = ttk.Frame(outer)
    st.grid(row=3, column=0, sticky="ew", pady=(6, 0))
    st.columnconfigure(1, weight=1)
    ttk.Label(st, text="Status:").grid(row=0, column=0, sticky="w")
    ttk.Label(st, textvariable=g["ui"]["status_var"]).grid(row=0, column=1, sticky="w", padx=(4, 0))
    ttk.Label(st, text="Exit Code:").grid(row=0, column=2, sticky="e")
    e_exit = ttk.Entry(st, textvariable=g["ui"]["exit_code_var"], state="readonly", width=8)
    e_exit.grid(row=0, column=3, sticky="e", padx=(4, 0))

    root.bind("<Control-Return>", run_script)
    root.bind("<Escape>", stop_script)
    root.protocol("WM_DELETE_WINDOW", _on_close)

    return root


def main(initial_text=""):
    """Open the window and run the tk main loop until it is closed."""
    root = _build_gui()
    declare_session_sinks()
    if initial_text:
        set_text(initial_text)

    root.after(kPOLL_MS, _poll_session)
    root.mainloop()
