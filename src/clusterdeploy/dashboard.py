"""TUI Dashboard for cluster-deploy."""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from typing import Callable

from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .command import Option, with_stderr, with_stdout
from .console import Console, NodeLogs
from .errors import describe_error
from .pipeline.phases import PhaseState
from .topology import Node
from .writers import NodeLogWriter, Sink

PHASE_COLORS = {
    PhaseState.PENDING: "dim",
    PhaseState.RUNNING: "yellow",
    PhaseState.SUCCEEDED: "green",
    PhaseState.FAILED: "red",
    PhaseState.SKIPPED: "dim",
}

# The work to show: receives the dashboard's console.
Job = Callable[[Console], Awaitable[object]]


@dataclass
class NodeOutput(Message):
    """Message for one line of node output."""

    node_name: str
    line: str
    is_stderr: bool = False


@dataclass
class ConsoleText(Message):
    """Message for a header or info line."""

    text: str
    is_header: bool = False


@dataclass
class PhaseChange(Message):
    """Message for a pipeline phase changing state."""

    phase: str
    state: PhaseState


class PanelSink:
    """Sink that posts each complete line of a node's output to the dashboard."""

    def __init__(self, app: App, node_name: str, is_stderr: bool = False) -> None:
        self.app = app
        self.node_name = node_name
        self.is_stderr = is_stderr
        self._pending = bytearray()

    def write(self, data: bytes) -> int:
        self._pending += data
        while b"\n" in self._pending:
            line, _, rest = bytes(self._pending).partition(b"\n")
            self._pending = bytearray(rest)
            text = line.decode(errors="replace").rstrip("\r")
            self.app.post_message(NodeOutput(self.node_name, text, self.is_stderr))
        return len(data)


class DashboardConsole:
    """Console that routes everything into the dashboard's widgets."""

    def __init__(self, app: App, logs: NodeLogs | None = None) -> None:
        self.app = app
        self.logs = logs

    def header(self, text: str) -> None:
        self.app.post_message(ConsoleText(text, is_header=True))

    def info(self, text: str) -> None:
        self.app.post_message(ConsoleText(text))

    def node_output(self, node: Node) -> Sequence[Option]:
        stdout: Sink = PanelSink(self.app, node.name)
        stderr: Sink = PanelSink(self.app, node.name, is_stderr=True)
        if self.logs is not None:
            log = self.logs.file_for(node)
            stdout = NodeLogWriter(stdout, log)
            stderr = NodeLogWriter(stderr, log)
        return (with_stdout(stdout), with_stderr(stderr))

    def phase_state(self, phase: str, state: PhaseState) -> None:
        self.app.post_message(PhaseChange(phase, state))


class NodePanel(Static):
    """A panel displaying output for a single node."""

    def __init__(self, node: Node, **kwargs) -> None:
        super().__init__(**kwargs)
        self.node = node

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self._key}")
        yield RichLog(id=f"log-{self._key}", highlight=True, markup=True, wrap=True, auto_scroll=True)

    @property
    def _key(self) -> str:
        return _widget_key(self.node.name)

    def _get_header(self) -> str:
        address = f" [dim]{self.node.remote}[/]" if self.node.remote else ""
        return f"[bold]{self.node.name}[/bold] ({self.node.kubename}){address}"

    def append_output(self, line: str, is_stderr: bool = False) -> None:
        """Append a line of output to this panel."""
        log = self.query_one(f"#log-{self._key}", RichLog)
        if is_stderr:
            log.write(f"[red]{_escape(line)}[/red]")
        else:
            log.write(_escape(line))


class StatusBar(Static):
    """Bottom status bar showing the current phase."""

    phase: reactive[str] = reactive("")
    state: reactive[str] = reactive("")
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Done"
        phase = f"Phase: {self.phase} ({self.state}) | " if self.phase else ""
        return f"{phase}{status} | Press 'q' to quit"


class Dashboard(App):
    """Shows one output panel per node while a job runs."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    NodePanel, #events {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    NodePanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    NodePanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self, nodes: Sequence[Node], job: Job, logs: NodeLogs | None = None, **kwargs
    ) -> None:
        super().__init__(**kwargs)
        self.nodes = list(nodes)
        self.job = job
        self.deploy_console = DashboardConsole(self, logs)
        self.panels: dict[str, NodePanel] = {}
        self.job_error: BaseException | None = None
        self.job_worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield RichLog(id="events", markup=True, wrap=True, auto_scroll=True)
        for node in self.nodes:
            panel = NodePanel(node, id=f"panel-{_widget_key(node.name)}")
            self.panels[node.name] = panel
            yield panel
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the job when the app mounts."""
        self.job_worker = self.run_worker(self.job(self.deploy_console), exclusive=True, exit_on_error=False)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle job completion."""
        if event.worker is not self.job_worker:
            return
        if event.state in (WorkerState.SUCCESS, WorkerState.ERROR, WorkerState.CANCELLED):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False
        if event.state == WorkerState.ERROR:
            self.job_error = event.worker.error
            events = self.query_one("#events", RichLog)
            events.write(f"[bold red]ERROR: {_escape(describe_error(self.job_error))}[/bold red]")

    def on_node_output(self, message: NodeOutput) -> None:
        if message.node_name in self.panels:
            self.panels[message.node_name].append_output(message.line, message.is_stderr)

    def on_console_text(self, message: ConsoleText) -> None:
        events = self.query_one("#events", RichLog)
        if message.is_header:
            events.write(f"[bold green]{_escape(message.text)}[/bold green]")
        else:
            events.write(_escape(message.text))

    def on_phase_change(self, message: PhaseChange) -> None:
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.phase = message.phase
        status_bar.state = message.state.value
        color = PHASE_COLORS[message.state]
        events = self.query_one("#events", RichLog)
        events.write(f"[{color}]{message.phase}: {message.state.value}[/]")

    async def action_quit(self) -> None:
        """Quit the application."""
        if self.job_worker and self.job_worker.is_running:
            self.job_worker.cancel()
        self.exit()


def _widget_key(name: str) -> str:
    """Turn a node name (possibly a hostname) into a valid widget id."""
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)


def _escape(text: str) -> str:
    return text.replace("[", r"\[")
