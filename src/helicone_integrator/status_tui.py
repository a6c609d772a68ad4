from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from helicone_integrator.models import IntegrationRecord, StatusEventRecord
from helicone_integrator.state import StateStore


_MESSAGE_MAX_CHARS = 60
_EVENT_ROW_LIMIT = 50


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 2;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        state: StateStore,
        refresh_seconds: int = 2,
        row_limit: int | None = 200,
    ) -> None:
        super().__init__()
        self._state = state
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._records: tuple[IntegrationRecord, ...] = ()
        self._selected_id: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Integrations", classes="panel-title")
            yield DataTable(id="integrations-table", cursor_type="row")
            yield Static("Status Events", classes="panel-title")
            yield DataTable(id="events-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        integrations = self.query_one("#integrations-table", DataTable)
        integrations.add_columns("Id", "Repo", "Status", "Phase", "Attempt", "Updated")
        events = self.query_one("#events-table", DataTable)
        events.add_columns("At", "Phase", "Message", "URL")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    @property
    def selected_integration_id(self) -> str | None:
        return self._selected_id

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "integrations-table":
            return
        if event.cursor_row < 0 or event.cursor_row >= len(self._records):
            return
        selected = self._records[event.cursor_row].integration_id
        if selected == self._selected_id:
            return
        self._selected_id = selected
        self._refresh_events_table()

    def refresh_data(self) -> None:
        self._records = self._state.list_integrations(limit=self._row_limit)
        if self._selected_id not in {record.integration_id for record in self._records}:
            self._selected_id = self._records[0].integration_id if self._records else None
        self.query_one("#summary", Static).update(_summary_text(self._records))
        self._refresh_integrations_table()
        self._refresh_events_table()

    def _refresh_integrations_table(self) -> None:
        table = self.query_one("#integrations-table", DataTable)
        cursor_row = table.cursor_row
        table.clear()
        if not self._records:
            table.add_row("-", "-", "-", "-", "-", "No integrations yet")
            return
        for record in self._records:
            table.add_row(
                record.integration_id,
                f"{record.repo_owner}/{record.repo_name}",
                record.status,
                record.phase or "-",
                str(record.attempt) if record.attempt else "-",
                record.updated_at,
            )
        if 0 <= cursor_row < table.row_count:
            table.move_cursor(row=cursor_row, animate=False)

    def _refresh_events_table(self) -> None:
        table = self.query_one("#events-table", DataTable)
        table.clear()
        if self._selected_id is None:
            return
        events = self._state.list_status_events(self._selected_id, limit=_EVENT_ROW_LIMIT)
        for row in _event_rows(events):
            table.add_row(*row)


def run_status_tui(*, state: StateStore, refresh_seconds: int) -> None:
    StatusApp(state=state, refresh_seconds=refresh_seconds).run()


def _summary_text(records: Sequence[IntegrationRecord]) -> str:
    if not records:
        return "integrations=0"
    counts = Counter(record.status for record in records)
    parts = [f"integrations={len(records)}"]
    for status in ("pending", "running", "waiting", "completed", "rejected", "failed"):
        if counts[status]:
            parts.append(f"{status}={counts[status]}")
    return " ".join(parts)


def _event_rows(events: Sequence[StatusEventRecord]) -> list[tuple[str, str, str, str]]:
    rows: list[tuple[str, str, str, str]] = []
    for event in reversed(events):
        rows.append(
            (
                event.created_at,
                event.status,
                _truncate(event.message, _MESSAGE_MAX_CHARS),
                event.pr_url or event.staging_url or "-",
            )
        )
    return rows


def _truncate(value: str, limit: int) -> str:
    collapsed = " ".join(value.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."
