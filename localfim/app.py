#!/usr/bin/env python3
"""
localfim: a Tkinter editor that streams code completions from a local
Ollama server into the buffer as a reviewable pending suggestion.
"""

import contextlib
import logging
import os
import queue
import sys
import threading
import tkinter as tk
import tkinter.font as tkfont
import webbrowser
from collections.abc import Callable, Iterable, Sequence
from tkinter import filedialog, messagebox, ttk

import requests

from .config import load_config
from .context import BackendSettings, ServiceContext
from .errors import RequestTimeoutError
from .inserter import GenerationRequest, StreamingInserter
from .supervisor import HostAdapter, Supervisor
from .types import InserterState
from .ui.menus import AppMenus
from .ui.tk_document import TkDocument

logger = logging.getLogger(__name__)

STATE_MESSAGES = {
    InserterState.GENERATING: "Generating code… (Alt+I to stop)",
    InserterState.COMPLETED: "Code has been generated. Alt+A to accept, Alt+D to discard.",
    InserterState.CANCELLED: "Stopped generating code. Alt+A to accept, Alt+D to discard.",
    InserterState.ACCEPTED: "Generated code was accepted.",
    InserterState.DISCARDED: "Generated code was denied and has been deleted.",
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class LocalFIM(tk.Tk):
    def __init__(self):
        super().__init__()
        self.title("localfim")
        self.geometry("1000x700")

        self.cfg = load_config()
        configure_logging(self.cfg.get("log_level", "INFO"))
        self.app_font = tkfont.Font(family=self.cfg["font_family"], size=self.cfg["font_size"])

        self.style = ttk.Style(self)
        with contextlib.suppress(tk.TclError):
            if "clam" in self.style.theme_names():
                self.style.theme_use("clam")

        self._path: str | None = None
        self._build_editor()
        self._build_statusbar()
        self._menus = AppMenus(self)
        self._menus.attach()
        self._register_shortcuts()

        self._result_queue = queue.Queue()
        self.after(60, self._poll_queue)

        settings = BackendSettings.from_config(self.cfg)
        self.context = ServiceContext(settings)
        self.supervisor = Supervisor(self.context, self._make_host_adapter())
        self.document = TkDocument(self.text, self.cfg["pending_fg"])
        self.inserter = StreamingInserter(
            eos_marker=settings.eos_marker,
            units=self.cfg["column_units"],
            on_state=self._on_inserter_state,
        )
        self._backend_ready = False
        self._generation = 0
        self._request: GenerationRequest | None = None
        self._progress_phase: str | None = None
        self._prev_autoseparators = None
        self._menus.set_generate_enabled(False)

        self._start_supervisor()
        self.protocol("WM_DELETE_WINDOW", self._on_close)

    # ---------- Layout ----------

    def _build_editor(self) -> None:
        frame = ttk.Frame(self)
        frame.pack(fill=tk.BOTH, expand=True)
        frame.grid_rowconfigure(0, weight=1)
        frame.grid_columnconfigure(0, weight=1)

        self.text = tk.Text(
            frame,
            undo=True,
            maxundo=-1,
            wrap=tk.NONE,
            font=self.app_font,
            fg=self.cfg["fg"],
            bg=self.cfg["bg"],
            insertbackground=self.cfg["fg"],
            highlightthickness=0,
            borderwidth=0,
            relief=tk.FLAT,
            padx=10,
            pady=10,
        )
        self.text.grid(row=0, column=0, sticky="nsew")
        scroll = ttk.Scrollbar(frame, orient=tk.VERTICAL, command=self.text.yview)
        scroll.grid(row=0, column=1, sticky="ns")
        self.text.configure(yscrollcommand=scroll.set)

    def _build_statusbar(self) -> None:
        bar = ttk.Frame(self, padding=(8, 2))
        bar.pack(fill=tk.X, side=tk.BOTTOM)
        self.status_var = tk.StringVar(value="Checking for Ollama…")
        ttk.Label(bar, textvariable=self.status_var, anchor="w").pack(
            side=tk.LEFT, fill=tk.X, expand=True
        )
        self.progress = ttk.Progressbar(bar, mode="determinate", maximum=100, length=180)
        self.progress.pack(side=tk.RIGHT)

    def _make_shortcut_handler(
        self, callback: Callable[[], None]
    ) -> Callable[[tk.Event], str]:
        def handler(_event: tk.Event | None = None) -> str:
            callback()
            return "break"

        return handler

    def _register_shortcuts(self) -> None:
        def add(sequence: str, callback: Callable[[], None]) -> None:
            self.bind_all(sequence, self._make_shortcut_handler(callback), add="+")

        add("<Control-o>", self.open_file)
        add("<Control-s>", self.save_file)
        add("<Control-Shift-S>", self.save_file_as)
        add("<Control-q>", self._on_close)
        add("<Alt-g>", self.generate)
        add("<Alt-i>", self.abort)
        add("<Alt-a>", self.accept)
        add("<Alt-d>", self.discard)

    def _set_status(self, message: str) -> None:
        self.status_var.set(message)

    def _show_error(self, title: str, message: str, detail: str | None = None) -> None:
        messagebox.showerror(title, message, detail=detail or "", parent=self)

    # ---------- Host bridge (worker threads -> main loop) ----------

    def _make_host_adapter(self) -> HostAdapter:
        def notify(message: str) -> None:
            self._result_queue.put({"ok": True, "kind": "notify", "message": message})

        def notify_error(message: str, detail: str | None) -> None:
            self._result_queue.put({"ok": False, "kind": "notify", "message": message, "error": detail})

        def report_progress(message: str, increment: int) -> None:
            self._result_queue.put(
                {"ok": True, "kind": "progress", "message": message, "increment": increment}
            )

        def confirm(message: str, action: str) -> bool:
            answered = threading.Event()
            holder: dict[str, bool] = {}
            self._result_queue.put(
                {
                    "ok": True,
                    "kind": "confirm",
                    "message": message,
                    "action": action,
                    "answer": holder,
                    "answered": answered,
                }
            )
            answered.wait()
            return holder.get("value", False)

        return HostAdapter(
            notify=notify,
            notify_error=notify_error,
            report_progress=report_progress,
            confirm=confirm,
            open_url=webbrowser.open,
        )

    def _start_supervisor(self) -> None:
        def worker():
            try:
                ok = self.supervisor.ensure_ready()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Backend setup failed")
                self._result_queue.put(
                    {"ok": False, "kind": "notify", "message": "Backend setup failed.", "error": str(exc)}
                )
                ok = False
            self._result_queue.put({"ok": True, "kind": "ready", "ready": ok})

        threading.Thread(target=worker, name="backend-setup", daemon=True).start()

    # ---------- Commands ----------

    def generate(self):
        if not self._backend_ready:
            self._set_status("The Ollama backend is not ready yet.")
            return

        self._generation += 1
        request = self.inserter.begin(
            self.document, timeout=self.context.settings.request_timeout
        )
        self._request = request
        self._begin_stream_undo_group()
        client = self.context.client

        def worker(gen_id: int, request: GenerationRequest):
            try:
                for piece in client.stream(request.prefix, request.suffix, request.stop_event):
                    self._result_queue.put(
                        {"ok": True, "kind": "stream_append", "gen": gen_id, "text": piece}
                    )
            except requests.Timeout as e:
                self._result_queue.put(
                    {"ok": False, "kind": "stream_error", "gen": gen_id, "error": RequestTimeoutError(str(e))}
                )
            except Exception as e:
                self._result_queue.put({"ok": False, "kind": "stream_error", "gen": gen_id, "error": e})
            finally:
                self._result_queue.put({"ok": True, "kind": "stream_done", "gen": gen_id})

        threading.Thread(
            target=worker, args=(self._generation, request), name="completion-stream", daemon=True
        ).start()

    def abort(self):
        if self.inserter.state is not InserterState.GENERATING:
            return
        self.inserter.abort()
        self._set_status("Stopping generation…")

    def accept(self):
        if self.inserter.accept() is None:
            self._set_status("There is no finished suggestion to accept.")

    def discard(self):
        if self.inserter.discard() is None:
            self._set_status("There is no suggestion to discard.")
        self._end_stream_undo_group()

    def _on_inserter_state(self, state: InserterState) -> None:
        message = STATE_MESSAGES.get(state)
        if message:
            self._set_status(message)

    def _begin_stream_undo_group(self):
        if self._prev_autoseparators is not None:
            return
        try:
            self._prev_autoseparators = self.text.cget("autoseparators")
            self.text.configure(autoseparators=False)
            self.text.edit_separator()
        except tk.TclError:
            self._prev_autoseparators = None

    def _end_stream_undo_group(self):
        with contextlib.suppress(tk.TclError):
            self.text.edit_separator()
        if self._prev_autoseparators is not None:
            with contextlib.suppress(tk.TclError):
                self.text.configure(autoseparators=self._prev_autoseparators)
        self._prev_autoseparators = None

    # ---------- Queue handling ----------

    def _handle_progress(self, message: str, increment: int) -> None:
        if message != self._progress_phase:
            self._progress_phase = message
            self.progress["value"] = 0
        self.progress["value"] = min(100.0, float(self.progress["value"]) + increment)
        self._set_status(message)

    def _handle_stream_item(self, item: dict) -> None:
        if item.get("gen") != self._generation:
            return
        kind = item["kind"]
        if kind == "stream_append":
            if not self.inserter.feed(item["text"]) and self._request is not None:
                self._request.stop_event.set()
        elif kind == "stream_error":
            error = item["error"]
            logger.warning("Completion stream failed: %s", error)
            generating = self.inserter.state is InserterState.GENERATING
            self.inserter.end(error)
            if generating and not isinstance(error, RequestTimeoutError):
                self._show_error(
                    "Generation Error",
                    "Generation failed during streaming. The partial suggestion was kept.",
                    detail=str(error),
                )
        elif kind == "stream_done":
            self.inserter.end()
            self._request = None
            self._end_stream_undo_group()

    def _poll_queue(self):
        try:
            while True:
                item = self._result_queue.get_nowait()
                kind = item.get("kind")
                try:
                    if kind in ("stream_append", "stream_error", "stream_done"):
                        self._handle_stream_item(item)
                    elif kind == "notify":
                        if item.get("ok"):
                            self._set_status(item["message"])
                        else:
                            self._show_error("localfim", item["message"], detail=item.get("error"))
                    elif kind == "progress":
                        self._handle_progress(item["message"], item["increment"])
                    elif kind == "confirm":
                        try:
                            item["answer"]["value"] = messagebox.askyesno(
                                item["action"], item["message"], parent=self
                            )
                        finally:
                            item["answered"].set()
                    elif kind == "ready":
                        self._backend_ready = bool(item["ready"])
                        self._menus.set_generate_enabled(self._backend_ready)
                        self.progress["value"] = 0
                        if self._backend_ready:
                            self._set_status("Ready. Alt+G to generate code at the cursor.")
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Failed to handle %s", kind)
                    self._show_error("Error", "Streaming update failed.", detail=str(exc))
        except queue.Empty:
            pass
        finally:
            self.after(60, self._poll_queue)

    # ---------- Files ----------

    def open_files(self, paths: Iterable[str]) -> None:
        path_list = [os.path.abspath(os.path.expanduser(p)) for p in paths if p]
        if not path_list:
            return
        if len(path_list) > 1:
            logger.info("Opening %s; ignoring %d more path(s)", path_list[0], len(path_list) - 1)
        self._load_file(path_list[0])

    def _load_file(self, path: str) -> bool:
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as exc:
            self._show_error("Open Error", f"Could not open {path}.", detail=str(exc))
            return False
        if self.inserter.pending:
            self.inserter.discard()
        self.text.delete("1.0", tk.END)
        self.text.insert("1.0", content)
        self.text.mark_set(tk.INSERT, "1.0")
        self.text.edit_reset()
        self._path = path
        self.title(f"localfim — {os.path.basename(path)}")
        return True

    def open_file(self):
        path = filedialog.askopenfilename(parent=self)
        if path:
            self._load_file(path)

    def save_file(self):
        if self._path is None:
            self.save_file_as()
            return
        try:
            with open(self._path, "w", encoding="utf-8") as f:
                f.write(self.text.get("1.0", "end-1c"))
        except OSError as exc:
            self._show_error("Save Error", f"Could not save {self._path}.", detail=str(exc))
            return
        self._set_status(f"Saved {self._path}")

    def save_file_as(self):
        path = filedialog.asksaveasfilename(parent=self)
        if path:
            self._path = path
            self.title(f"localfim — {os.path.basename(path)}")
            self.save_file()

    # ---------- Close / Quit ----------

    def _on_close(self):
        self.inserter.abort()
        self.supervisor.shutdown()
        self.destroy()


def main(
    argv: Sequence[str] | None = None,
    app_factory: Callable[[], LocalFIM] = LocalFIM,
) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    app = app_factory()
    if args:
        open_files = getattr(app, "open_files", None)
        if callable(open_files):
            open_files(args)
    app.mainloop()


if __name__ == "__main__":
    main()
