"""taskscope - Textual shell around the telemetry pipeline and chat controller."""

import asyncio
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from textual import work
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import DataTable, Footer, Input, Log, Static

from taskscope.bus import SubscriptionBus
from taskscope.chat import ChatBackend, ChatController
from taskscope.config import MonitorConfig, configure_logging
from taskscope.errors import ChatBusyError
from taskscope.local_backend import LocalModelServer
from taskscope.models import ChatMessage, ChatRole, RollingLog, SessionStatus, TelemetryRow
from taskscope.monitor import HostProcessSource, SnapshotSource
from taskscope.pipeline import TelemetryPipeline
from taskscope.prompt import FilterPolicy
from taskscope.remote import RemoteModelClient
from taskscope.scheduler import Scheduler
from taskscope.session import STATUS_LABELS, AiSessionManager, LocalModelBackend
from taskscope.storage import JsonFileStore, KeyValueStore, MemoryStore, load_credential
from taskscope.telemetry import RollingLogStore


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    NAME = "name"


class StatusBadge(Static):
    """Session status badge with the current notice."""

    DEFAULT_CSS = """
    StatusBadge {
        height: 1;
        padding: 0 1;
        background: $surface;
    }
    """

    def show(
        self,
        status: SessionStatus,
        backend: ChatBackend,
        notice: str | None,
        remote_model: str | None = None,
    ) -> None:
        if backend is ChatBackend.REMOTE:
            text = f"[b]Remote model[/b] {remote_model or ''}".rstrip()
        else:
            text = f"[b]{STATUS_LABELS[status]}[/b]"
        if notice:
            text += f"  {notice}"
        self.update(text)


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("Type", key="type", width=14)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("MEM MB", key="mem", width=9)
        table.add_column("NET KB/s", key="net", width=9)
        table.add_column("Name", key="name")

    def selected_pid(self) -> int | None:
        table = self.query_one("#process-table", DataTable)
        if table.row_count == 0:
            return None
        try:
            row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except Exception:
            return None
        return int(row_key.value) if row_key.value is not None else None

    def update_rows(self, log: RollingLog) -> None:
        """
        Update the table from a telemetry payload.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#process-table", DataTable)
        rows = self._sort_rows(list(log.rows))
        new_pids = {row.process_id for row in rows}

        for pid in self._current_pids - new_pids:
            try:
                table.remove_row(str(pid))
            except Exception:
                pass  # Row may not exist

        for row in rows:
            row_key = str(row.process_id)
            try:
                if row.process_id in self._current_pids:
                    table.update_cell(row_key, "type", row.type)
                    table.update_cell(row_key, "cpu", row.cpu)
                    table.update_cell(row_key, "mem", row.memory_mb)
                    table.update_cell(row_key, "net", row.network)
                    table.update_cell(row_key, "name", row.name[:50])
                else:
                    table.add_row(
                        row_key, row.type, row.cpu, row.memory_mb, row.network, row.name[:50],
                        key=row_key,
                    )
            except Exception:
                pass  # Row changed under us

        self._current_pids = new_pids

    def _sort_rows(self, rows: list[TelemetryRow]) -> list[TelemetryRow]:
        key_func: dict[SortKey, Callable[[TelemetryRow], Any]] = {
            SortKey.CPU: lambda r: r.cpu_percent,
            SortKey.MEM: lambda r: float(r.memory_mb),
            SortKey.PID: lambda r: r.process_id,
            SortKey.NAME: lambda r: r.name.lower(),
        }
        return sorted(rows, key=key_func[self._sort_key], reverse=self._sort_reverse)


class ChatPanel(Vertical):
    """Conversation log, raw prompt preview and input."""

    DEFAULT_CSS = """
    ChatPanel {
        width: 1fr;
        border: solid $secondary;
    }
    #chat-log {
        height: 1fr;
    }
    #raw-prompt {
        height: auto;
        max-height: 12;
        display: none;
        color: $text-muted;
    }
    #token-count {
        height: 1;
        color: $text-muted;
    }
    """

    def compose(self) -> ComposeResult:
        yield StatusBadge("Checking Availability", id="status-badge")
        yield Log(id="chat-log")
        yield Static("", id="raw-prompt")
        yield Static("0 tokens", id="token-count")
        yield Input(placeholder="Type your message...", id="chat-input")

    def show_history(self, history: tuple[ChatMessage, ...]) -> None:
        log = self.query_one("#chat-log", Log)
        log.clear()
        for message in history:
            log.write_line(f"{message.role.value}: {message.content}")


class TaskscopeApp(App):
    """Main taskscope application."""

    TITLE = "taskscope"
    SUB_TITLE = "Process Monitor with AI Diagnosis"

    CSS = """
    Screen {
        layout: vertical;
    }

    #main {
        height: 1fr;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("f2", "restart_session", "Restart Session"),
        ("f9", "terminate", "End Process"),
        ("f3", "toggle_raw", "Raw Prompt"),
        ("f4", "toggle_backend", "Backend"),
        ("f5", "cycle_model", "Remote Model"),
        ("f7", "step_temperature", "Temperature"),
        ("f8", "step_top_k", "Top-K"),
    ]

    def __init__(
        self,
        config: MonitorConfig | None = None,
        source: SnapshotSource | None = None,
        store: KeyValueStore | None = None,
        local_backend: LocalModelBackend | None = None,
        remote_client: RemoteModelClient | None = None,
    ) -> None:
        """Initialize the TaskscopeApp."""
        super().__init__()
        self.monitor_config = config or MonitorConfig()
        cfg = self.monitor_config
        if store is None:
            store = JsonFileStore(cfg.store_path) if cfg.store_path else MemoryStore()
        self._store = store
        self._source = source or HostProcessSource(poll_rate=cfg.capture_interval)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._show_raw = False
        self._shut_down = False

        self.scheduler = Scheduler()
        self.bus = SubscriptionBus()
        self.pipeline = TelemetryPipeline(
            self._source,
            RollingLogStore(store, max_rows=cfg.max_rows),
            self.scheduler,
            self.bus,
            capture_interval=cfg.capture_interval,
            compaction_interval=cfg.compaction_interval,
        )
        if local_backend is None:
            local_backend = LocalModelServer(cfg.local_base_url, cfg.local_model)
        self.sessions = AiSessionManager(
            local_backend,
            cfg.session_config(),
            status_listener=lambda status: self._on_loop(self._refresh_badge),
        )
        self.controller = ChatController(
            sessions=self.sessions,
            remote=remote_client or RemoteModelClient(cfg.remote_base_url, cfg.remote_model),
            backend=ChatBackend.REMOTE if cfg.use_remote else ChatBackend.LOCAL,
            instructions=cfg.system_prompt,
            credential=lambda: load_credential(self._store, cfg.credential_env),
            remote_model=cfg.remote_model,
            local_policy=FilterPolicy.top_by_cpu(cfg.prompt_top_n, cfg.prompt_cpu_threshold),
            truncate_chars=cfg.retry_truncate_chars,
        )

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        with Horizontal(id="main"):
            yield ProcessTable()
            yield ChatPanel()
        yield Footer()

    def on_mount(self) -> None:
        """Start the pipeline and acquire a session when the app is mounted."""
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self.scheduler.start()
        self.controller.attach(self.bus)
        self.bus.subscribe(self._on_telemetry)
        self.pipeline.start()
        if isinstance(self._source, HostProcessSource):
            self._source.start()
        self.controller.schedule_refresh(self.scheduler, self.monitor_config.session_refresh_interval)
        self._refresh_badge()
        self._check_session()

    def _on_loop(self, callback: Callable[[], None]) -> None:
        """Run callback on the app thread without waiting for it."""
        loop = self._loop
        if loop is None:
            return
        if threading.get_ident() == self._loop_thread:
            callback()
            return
        try:
            loop.call_soon_threadsafe(callback)
        except RuntimeError:
            pass  # Loop already closed

    def _on_telemetry(self, log: RollingLog) -> None:
        try:
            self.query_one(ProcessTable).update_rows(log)
        except Exception:
            pass  # Not mounted yet
        self._refresh_prompt_preview()

    def _refresh_badge(self) -> None:
        try:
            badge = self.query_one("#status-badge", StatusBadge)
        except Exception:
            return
        notice = self.controller.error or self.sessions.notice
        badge.show(
            self.sessions.status, self.controller.backend, notice, self.controller.remote_model
        )

    def _refresh_prompt_preview(self) -> None:
        try:
            draft = self.query_one("#chat-input", Input).value
            self.query_one("#token-count", Static).update(
                f"{self.controller.token_estimate(draft)} tokens"
            )
            if self._show_raw:
                self.query_one("#raw-prompt", Static).update(self.controller.raw_prompt(draft))
        except Exception:
            pass

    @work(exclusive=True, name="check-session")
    async def _check_session(self, restart: bool = False) -> None:
        check = self.sessions.restart if restart else self.sessions.check
        await asyncio.to_thread(check)
        self._refresh_badge()

    @work(exclusive=True, name="chat-turn")
    async def _send(self, text: str) -> None:
        panel = self.query_one(ChatPanel)
        await self.pipeline.refresh_async()
        try:
            await asyncio.to_thread(self.controller.submit, text)
        except ChatBusyError:
            self.notify("Still answering the previous message")
        panel.show_history(self.controller.history)
        self._refresh_badge()

    def on_input_changed(self, event: Input.Changed) -> None:
        self._refresh_prompt_preview()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value
        if not text.strip() or self.controller.is_busy:
            return
        event.input.value = ""
        self.query_one(ChatPanel).show_history(
            self.controller.history + (ChatMessage(role=ChatRole.USER, content=text),)
        )
        self._send(text)

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        try:
            new_sort_key = self.query_one(ProcessTable).cycle_sort()
            self.notify(f"Sort: {new_sort_key.value.upper()}")
        except Exception:
            pass

    def action_restart_session(self) -> None:
        self.controller.error = None
        self._check_session(restart=True)

    def action_terminate(self) -> None:
        pid = self.query_one(ProcessTable).selected_pid()
        if pid is None:
            return
        if self._source.terminate(pid):
            self.notify(f"Terminated process {pid}")
        else:
            self.notify(f"Cannot terminate process {pid}", severity="error")

    def action_toggle_raw(self) -> None:
        self._show_raw = not self._show_raw
        raw = self.query_one("#raw-prompt", Static)
        raw.display = self._show_raw
        self._refresh_prompt_preview()

    def action_toggle_backend(self) -> None:
        new = ChatBackend.LOCAL if self.controller.backend is ChatBackend.REMOTE else ChatBackend.REMOTE
        try:
            self.controller.set_backend(new)
        except ValueError as e:
            self.notify(str(e), severity="error")
            return
        self.notify(f"Backend: {new.value}")
        self._refresh_badge()
        self._refresh_prompt_preview()

    def action_cycle_model(self) -> None:
        """Select the next configured remote model."""
        models = self.monitor_config.remote_models
        if not models:
            return
        current = self.controller.remote_model
        index = models.index(current) + 1 if current in models else 0
        self.controller.remote_model = models[index % len(models)]
        self.notify(f"Remote model: {self.controller.remote_model}")
        self._refresh_badge()

    def action_step_temperature(self) -> None:
        """Raise temperature by 0.1, wrapping from 1.0 back to 0.0."""
        current = self.sessions.config.temperature
        value = 0.0 if current >= 1.0 else round(current + 0.1, 1)
        self.sessions.update_config(temperature=value)
        self.notify(f"Temperature: {value} (applies on session restart)")

    def action_step_top_k(self) -> None:
        """Raise top-K by one, wrapping from 8 back to 1."""
        value = self.sessions.config.top_k % 8 + 1
        self.sessions.update_config(top_k=value)
        self.notify(f"Top-K: {value} (applies on session restart)")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self.shutdown()
        self.exit()

    def on_unmount(self) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        """Stop polling, timers and the session. Safe to call twice."""
        if self._shut_down:
            return
        self._shut_down = True
        if isinstance(self._source, HostProcessSource):
            self._source.stop()
        self.pipeline.stop()
        self.controller.dispose()
        self.scheduler.stop()
        self.bus.close()


def main() -> None:
    """Entry point for the taskscope application."""
    config = MonitorConfig.from_env()
    configure_logging(config.log_level, config.log_file)
    app = TaskscopeApp(config)
    app.run()


if __name__ == "__main__":
    main()
