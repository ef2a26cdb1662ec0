import tkinter as tk


class AppMenus:
    def __init__(self, app):
        self.app = app
        self.menubar = tk.Menu(app)
        self.aimenu: tk.Menu | None = None
        self._build_menus()

    def _build_menus(self) -> None:
        app = self.app
        menubar = self.menubar

        filemenu = tk.Menu(menubar, tearoff=0)
        filemenu.add_command(label="Open…", accelerator="Ctrl+O", command=app.open_file)
        filemenu.add_command(label="Save", accelerator="Ctrl+S", command=app.save_file)
        filemenu.add_command(
            label="Save As…", accelerator="Ctrl+Shift+S", command=app.save_file_as
        )
        filemenu.add_separator()
        filemenu.add_command(label="Quit", accelerator="Ctrl+Q", command=app._on_close)
        menubar.add_cascade(label="File", menu=filemenu)

        editmenu = tk.Menu(menubar, tearoff=0)
        editmenu.add_command(
            label="Undo",
            accelerator="Ctrl+Z",
            command=lambda: app.text.event_generate("<<Undo>>"),
        )
        editmenu.add_command(
            label="Redo",
            accelerator="Ctrl+Shift+Z",
            command=lambda: app.text.event_generate("<<Redo>>"),
        )
        menubar.add_cascade(label="Edit", menu=editmenu)

        aimenu = tk.Menu(menubar, tearoff=0)
        aimenu.add_command(label="Generate", accelerator="Alt+G", command=app.generate)
        aimenu.add_command(label="Abort Generation", accelerator="Alt+I", command=app.abort)
        aimenu.add_separator()
        aimenu.add_command(label="Accept Suggestion", accelerator="Alt+A", command=app.accept)
        aimenu.add_command(label="Discard Suggestion", accelerator="Alt+D", command=app.discard)
        menubar.add_cascade(label="AI", menu=aimenu)
        self.aimenu = aimenu

    def set_generate_enabled(self, enabled: bool) -> None:
        if self.aimenu is not None:
            self.aimenu.entryconfigure("Generate", state=tk.NORMAL if enabled else tk.DISABLED)

    def attach(self) -> None:
        self.app.config(menu=self.menubar)
