"""pysage - terminal dashboard for the published intelligence state."""

import argparse
import logging
from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Static

from pysage.config import APP_NAME, DEFAULT_INTENSITY, BackgroundIntensity
from pysage.models import IntelligenceReport, ProcessUsage, Severity
from pysage.monitor import SystemMonitor
from pysage.scoring import performance_description

logger = logging.getLogger(__name__)


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    PID = "pid"
    NAME = "name"


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def _bar(percent: float, colour: str, width: int = 20) -> str:
    filled = max(0, min(width, int(percent / (100 / width))))
    return f"[{colour}]" + "█" * filled + f"[/{colour}]" + "[dim]" + "░" * (width - filled) + "[/dim]"


class HeaderStats(Static):
    """Header widget showing CPU, memory and battery statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._report: IntelligenceReport | None = None

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_mem_info(), id="mem-info"),
        )

    def update_stats(self, report: IntelligenceReport) -> None:
        self._report = report
        try:
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#mem-info", Static).update(self._get_mem_info())
        except NoMatches:
            pass  # Widget not mounted yet

    def _get_cpu_info(self) -> str:
        if self._report is None:
            return "Loading CPU info..."
        cpu = self._report.snapshot.cpu
        lines = [
            f"CPU{i:<2} \\[{_bar(usage, 'green')}] {usage:5.1f}%"
            for i, usage in enumerate(cpu.per_core)
        ]
        throttled = " [red]throttled[/red]" if cpu.is_throttled else ""
        lines.append(
            f"Load {cpu.load_percent:5.1f}%  Temp {cpu.temperature:.0f}°C "
            f"({cpu.temperature_source}){throttled}"
        )
        return "\n".join(lines)

    def _get_mem_info(self) -> str:
        if self._report is None:
            return "Loading memory info..."
        memory = self._report.snapshot.memory
        battery = self._report.snapshot.battery

        if memory.total == 0:
            lines = [f"Memory: unavailable  Pressure: {memory.pressure.value}"]
        else:
            swap = memory.swap_used / (1024**3)
            lines = [
                f"Mem\\[{_bar(memory.percent, 'cyan')}] "
                f"{memory.used / (1024**3):.1f}G/{memory.total / (1024**3):.1f}G",
                f"Swp {swap:.1f}G  Pressure: {memory.pressure.value}",
                f"App {format_bytes(memory.app)}  Wired {format_bytes(memory.wired)}  "
                f"Cached {format_bytes(memory.cached)}",
            ]
        if battery.present:
            lines.append(
                f"Bat\\[{_bar(battery.level, 'yellow')}] {battery.level:.0f}% "
                f"{battery.state.value}  {battery.power_usage:.1f}W  "
                f"{battery.time_remaining_label}"
            )
        else:
            lines.append("Battery: not present")
        return "\n".join(lines)


class IntelligencePanel(Static):
    """Workload, score, insights and anomalies."""

    DEFAULT_CSS = """
    IntelligencePanel {
        height: auto;
        min-height: 4;
        padding: 0 1;
        border: solid $secondary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__("Waiting for first analysis...", *args, **kwargs)

    def update_report(self, report: IntelligenceReport) -> None:
        self.update(self.render_report(report))

    @staticmethod
    def render_report(report: IntelligenceReport) -> str:
        lines = [
            f"Workload: [b]{report.workload.display_name}[/b] ({report.confidence:.0%})   "
            f"Score: [b]{report.score:.0f}[/b]/100 ({performance_description(report.score)})"
        ]
        for anomaly in report.top_anomalies():
            colour = "red" if anomaly.severity is Severity.CRITICAL else "yellow"
            lines.append(f"[{colour}]! {anomaly.title}[/{colour}] - {anomaly.description}")
        for insight in report.top_insights():
            lines.append(f"• {insight.title}: {insight.description}")
        for suggestion in report.top_suggestions(1):
            lines.append(f"→ {suggestion.title}: {suggestion.description}")
        return "\n".join(lines)


class ProcessTable(Container):
    """Container for the top-CPU process table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key is SortKey.CPU
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("Level", key="level", width=10)
        table.add_column("Name", key="name")

    def update_processes(self, processes: tuple[ProcessUsage, ...]) -> None:
        """Replace the table rows with the ranked processes, in sort order."""
        table = self.query_one("#process-table", DataTable)
        table.clear()
        for proc in self._sort_processes(processes):
            table.add_row(
                str(proc.pid),
                f"{proc.cpu_percent:5.1f}",
                proc.priority_level,
                proc.display_name[:50],
                key=str(proc.pid),
            )
        self._current_pids = {proc.pid for proc in processes}

    def _sort_processes(self, processes: tuple[ProcessUsage, ...]) -> list[ProcessUsage]:
        key_func = {
            SortKey.CPU: lambda p: p.cpu_percent,
            SortKey.PID: lambda p: p.pid,
            SortKey.NAME: lambda p: p.display_name.lower(),
        }
        # Duplicate pids would collide on row keys.
        unique = {proc.pid: proc for proc in processes}.values()
        return sorted(unique, key=key_func[self._sort_key], reverse=self._sort_reverse)


class PysageApp(App):
    """Main pysage application."""

    TITLE = APP_NAME
    SUB_TITLE = "System Intelligence Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #mem-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("i", "intensity", "Intensity"),
    ]

    def __init__(
        self,
        intensity: BackgroundIntensity = DEFAULT_INTENSITY,
        monitor: SystemMonitor | None = None,
    ) -> None:
        super().__init__()
        self._monitor = monitor or SystemMonitor(Queue(), intensity=intensity)
        self._update_queue = self._monitor.update_queue

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield IntelligencePanel(id="intelligence")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render the most recent report."""
        report = None
        while True:
            try:
                report = self._update_queue.get_nowait()
            except Empty:
                break
        if report is not None:
            self._update_ui(report)

    def _update_ui(self, report: IntelligenceReport) -> None:
        try:
            self.query_one("#header-stats", HeaderStats).update_stats(report)
            self.query_one("#intelligence", IntelligencePanel).update_report(report)
            self.query_one(ProcessTable).update_processes(report.snapshot.cpu.processes)
        except NoMatches:
            logger.debug("Dashboard not mounted, dropping report")

    def action_sort(self) -> None:
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_intensity(self) -> None:
        self._monitor.intensity = self._monitor.intensity.next()
        intensity = self._monitor.intensity
        self.notify(f"Intensity: {intensity.display_name} - {intensity.description}")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def configure_logging(log_file: str | None, level: str) -> None:
    """Log to a file when asked; otherwise stay silent so the UI is not overwritten."""
    package_logger = logging.getLogger("pysage")
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.setLevel(level.upper())
    else:
        handler = logging.NullHandler()
    package_logger.addHandler(handler)
    package_logger.propagate = False


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="System intelligence monitor")
    parser.add_argument(
        "--intensity",
        choices=[intensity.value for intensity in BackgroundIntensity],
        default=DEFAULT_INTENSITY.value,
        help="collection cadence (default: %(default)s)",
    )
    parser.add_argument("--log-file", help="write logs to this file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="log level when --log-file is given (default: %(default)s)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the pysage application."""
    args = parse_args(argv)
    configure_logging(args.log_file, args.log_level)
    app = PysageApp(intensity=BackgroundIntensity(args.intensity))
    app.run()


if __name__ == "__main__":
    main()
