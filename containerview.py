#!/usr/bin/env python3
"""
containerview - live containers/images table for terminal dashboards
MIT License - Copyright (c) 2026 c4ffein
Keeps an in-memory mirror of the runtime's containers or images, and renders a sortable,
scrollable table of it as markup text. Drawing that text is up to the caller.
"""

import argparse
import json
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable


# =============================================================================
# Configuration
# =============================================================================

REFRESH_INTERVAL = 2.0  # Seconds between two full listings
DOCKER_TIMEOUT = 10.0
MIN_COLUMN_WIDTH = 22
COLUMN_PADDING = 1
TABLE_START_POS = 3  # Screen rows used above the table header
DOWN_ARROW = "↓"
ID_LENGTH = 12


# =============================================================================
# Error Registry
# =============================================================================

_errors: list[dict] = []
_errors_lock = threading.Lock()  # The refresher thread logs too


def log_error(category: str, message: str, context: dict | None = None) -> None:
    """Log a non-fatal error to the global registry"""
    with _errors_lock:
        _errors.append({
            "ts": time.time(),
            "cat": category,
            "msg": message,
            "ctx": context or {},
        })


def get_errors() -> list[dict]:
    """Get all logged errors"""
    with _errors_lock:
        return list(_errors)


def get_errors_by_category() -> dict[str, list[dict]]:
    """Get errors grouped by category"""
    grouped: dict[str, list[dict]] = {}
    for err in get_errors():
        grouped.setdefault(err["cat"], []).append(err)
    return grouped


def clear_errors(category: str) -> int:
    """Clear all errors in a category, returns count cleared"""
    global _errors
    with _errors_lock:
        before = len(_errors)
        _errors = [e for e in _errors if e["cat"] != category]
        return before - len(_errors)


class DataSourceUnavailable(Exception):
    """The container runtime could not be listed"""


# =============================================================================
# Docker Data Models
# =============================================================================

VALID_ID_CHARS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_:"  # ':' for sha256: digests


def is_valid_id(id_str: str) -> bool:
    """Check if ID is non-empty and contains only valid characters (a-z, A-Z, 0-9, -, _, :)"""
    return bool(id_str) and all(c in VALID_ID_CHARS for c in id_str)


def _from_dict(cls: type, data: dict, required: list[str], category: str):
    """Build a record from one decoded docker JSON line, logging and returning None on bad input"""
    missing = [f for f in required if f not in data]
    if missing:
        log_error(category, f"Missing fields: {missing}", {"data": str(data)[:200]})
        return None
    if not is_valid_id(str(data["ID"])):
        log_error(category, f"Invalid ID: {data['ID']}", {"data": str(data)[:200]})
        return None
    return cls(**{k: str(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Container:
    """Docker container record (one line of docker ps)"""
    ID: str
    Names: str
    Image: str
    Status: str
    State: str = ""
    Command: str = ""
    CreatedAt: str = ""
    Ports: str = ""
    Size: str = ""
    RunningFor: str = ""
    Labels: str = ""
    Networks: str = ""
    Mounts: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Container | None":
        return _from_dict(cls, data, ["ID", "Names", "Image", "Status"], "docker.container_parse")


@dataclass(frozen=True)
class Image:
    """Docker image record (one line of docker images)"""
    ID: str
    Repository: str
    Tag: str
    Size: str = ""
    CreatedAt: str = ""
    CreatedSince: str = ""
    Digest: str = ""
    Containers: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Image | None":
        return _from_dict(cls, data, ["ID", "Repository", "Tag"], "docker.image_parse")


Entity = Container | Image


# =============================================================================
# Sort Modes
# =============================================================================

class SortMode(Enum):
    """Sort rules, as (compared field, descending)"""
    NONE = ("", False)
    ID = ("ID", False)
    NAME = ("Names", False)
    IMAGE = ("Image", False)
    STATUS = ("Status", False)
    REPOSITORY = ("Repository", False)
    CREATED = ("CreatedAt", True)
    SIZE = ("Size", True)

    @property
    def field(self) -> str:
        return self.value[0]

    @property
    def descending(self) -> bool:
        return self.value[1]


SIZE_UNITS = {"B": 1, "KB": 1000, "MB": 1000 ** 2, "GB": 1000 ** 3, "TB": 1000 ** 4, "PB": 1000 ** 5}
_SIZE_RE = re.compile(r"([\d.]+)\s*([kKMGTP]?)i?B")


def parse_size(value: str) -> float:
    """Convert a docker size ("1.2GB", "0B (virtual 3MB)") to bytes, 0 if unreadable"""
    match = _SIZE_RE.search(value)
    if not match:
        return 0.0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0.0
    return number * SIZE_UNITS[match.group(2).upper() + "B"]


def parse_created(value: str) -> float:
    """Convert a docker CreatedAt ("2024-05-01 12:34:56 +0200 CEST") to a timestamp, 0 if unreadable"""
    try:
        return datetime.strptime(value[:25], "%Y-%m-%d %H:%M:%S %z").timestamp()
    except ValueError:
        return 0.0


def sort_key(entity: Entity, mode: SortMode) -> float | str:
    """Comparison key of an entity for a sort mode"""
    value = getattr(entity, mode.field, "")
    if mode is SortMode.CREATED:
        return parse_created(value)
    if mode is SortMode.SIZE:
        return parse_size(value)
    return value.lower()


def sort_entities(entities: list[Entity], mode: SortMode) -> list[Entity]:
    """Sort entities in place by mode, ties broken by ID ascending; NONE keeps the given order"""
    if mode is SortMode.NONE:
        return entities
    entities.sort(key=lambda e: e.ID)
    # list.sort stays stable with reverse=True, so the ID order survives among equal keys
    entities.sort(key=lambda e: sort_key(e, mode), reverse=mode.descending)
    return entities


# =============================================================================
# Entity Store
# =============================================================================

class EntityStore:
    """In-memory index of runtime entities: lookup by ID, listing in arrival order

    The index and the ordered list always hold the same IDs. Every public method takes
    the lock once; it is reentrant so a filter predicate may read the store.
    """

    def __init__(self, fetch: Callable[[], list[Entity]]):
        self.fetch = fetch
        self._lock = threading.RLock()
        self._index: dict[str, Entity] = {}
        self._order: list[Entity] = []
        # DataSourceUnavailable propagates, no store is built
        self.sync(fetch())

    def get(self, entity_id: str) -> Entity | None:
        """Get an entity by ID, None if unknown"""
        with self._lock:
            return self._index.get(entity_id)

    def list(self) -> "list[Entity]":
        """Get all entities in arrival order (a copy)"""
        with self._lock:
            return list(self._order)

    def add(self, entity: Entity) -> None:
        """Insert an entity, or replace the one with the same ID keeping its position"""
        with self._lock:
            if entity.ID in self._index:
                for pos, current in enumerate(self._order):
                    if current.ID == entity.ID:
                        self._order[pos] = entity
                        break
            else:
                self._order.append(entity)
            self._index[entity.ID] = entity

    def remove(self, entity_id: str) -> None:
        """Remove an entity by ID, nothing happens if unknown"""
        with self._lock:
            if self._index.pop(entity_id, None) is None:
                return
            for pos, entity in enumerate(self._order):
                if entity.ID == entity_id:
                    del self._order[pos]
                    break

    def size(self) -> int:
        """Number of entities"""
        with self._lock:
            return len(self._order)

    def filter(self, predicate: Callable[[Entity], bool]) -> "list[Entity]":
        """Get entities matching predicate, in arrival order"""
        with self._lock:
            return [e for e in self._order if predicate(e)]

    def sort(self, mode: SortMode) -> "list[Entity]":
        """Get entities sorted by mode, the stored order is left untouched"""
        with self._lock:
            entities = list(self._order)
        return sort_entities(entities, mode)

    def sync(self, entities: "list[Entity]") -> None:
        """Apply a full listing: known IDs are replaced in place, new ones appended, missing ones dropped"""
        listed = {e.ID for e in entities}
        with self._lock:
            kept = [e for e in self._order if e.ID in listed]
            positions = {e.ID: pos for pos, e in enumerate(kept)}
            for entity in entities:
                pos = positions.get(entity.ID)
                if pos is None:
                    positions[entity.ID] = len(kept)
                    kept.append(entity)
                else:
                    kept[pos] = entity
            self._order = kept
            self._index = {e.ID: e for e in kept}

    def refresh(self) -> None:
        """Fetch a full listing (outside the lock) and apply it"""
        self.sync(self.fetch())


# =============================================================================
# Docker Backend
# =============================================================================

class Docker:
    """Docker CLI data source using subprocess"""

    @staticmethod
    def _run(args: list[str]) -> subprocess.CompletedProcess:
        """Run docker command"""
        cmd = ["docker"] + args
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=DOCKER_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log_error("docker.command", f"docker {' '.join(args)}", {"error": str(e)})
            raise DataSourceUnavailable(f"docker {' '.join(args)}: {e}") from e

    @staticmethod
    def _run_json(args: list[str]) -> list[dict]:
        """Run docker command and parse its JSON lines output"""
        result = Docker._run(args)
        if result.returncode != 0:
            stderr = result.stderr.strip() if result.stderr else ""
            log_error("docker.command", f"docker {' '.join(args)}", {
                "returncode": result.returncode,
                "stderr": stderr,
            })
            raise DataSourceUnavailable(stderr or f"docker {' '.join(args)} exited with {result.returncode}")

        items = []
        for line in result.stdout.strip().split('\n'):
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as e:
                log_error("docker.json_parse", str(e), {"line": line[:100]})
                continue
            if isinstance(item, dict):
                items.append(item)
            else:
                log_error("docker.json_parse", "Not a JSON object", {"line": line[:100]})
        return items

    @staticmethod
    def containers(all_containers: bool = True) -> list[Container]:
        """List containers"""
        args = ["ps", "--format", "{{json .}}"]
        if all_containers:
            args.insert(1, "-a")
        raw = Docker._run_json(args)
        return [c for c in (Container.from_dict(r) for r in raw) if c is not None]

    @staticmethod
    def images() -> list[Image]:
        """List images"""
        raw = Docker._run_json(["images", "--format", "{{json .}}"])
        return [i for i in (Image.from_dict(r) for r in raw) if i is not None]


# =============================================================================
# Background Store Refresher
# =============================================================================

class StoreRefresher:
    """Background thread that re-lists the data source into a store every N seconds"""

    def __init__(self, store: EntityStore, interval: float = REFRESH_INTERVAL):
        self.store = store
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start background refreshing"""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop background refreshing"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def refresh_once(self) -> bool:
        """Refresh the store, on failure log it and keep the last known state

        A listing that completes after stop() is dropped, so the store never changes once stopped.
        """
        try:
            entities = self.store.fetch()
        except DataSourceUnavailable as e:
            log_error("store.refresh", str(e), {"size": self.store.size()})
            return False
        if self._stop_event.is_set():
            return False
        self.store.sync(entities)
        return True

    def _run(self) -> None:
        """Background thread loop"""
        while not self._stop_event.is_set():
            self._stop_event.wait(self.interval)
            if not self._stop_event.is_set():
                self.refresh_once()


# =============================================================================
# Render Pipeline
# =============================================================================

MARKUP_COLORS = ("green", "red", "yellow", "blue", "cyan", "white", "grey")
HEADER_COLOR = "green"
SELECTED_COLOR = "white"
STATUS_COLORS = (
    ("up", "green"),
    ("running", "green"),
    ("exited", "red"),
    ("dead", "red"),
    ("created", "yellow"),
    ("paused", "yellow"),
    ("restarting", "yellow"),
)

# "<green>" opens a span, "</>" closes it; docker's "<none>" is plain text
_MARKUP_RE = re.compile(r"<(?:/|(" + "|".join(MARKUP_COLORS) + r"))>")


def truncate_id(value: str) -> str:
    """Short form of an object ID, without its digest algorithm prefix"""
    if ":" in value:
        value = value.split(":", 1)[1]
    return value[:ID_LENGTH]


def ellipsis(width: int) -> Callable[[str], str]:
    """Truncation cutting values longer than width with an ellipsis"""
    def trunc(value: str) -> str:
        if len(value) > width:
            return value[:width - 1] + "…"
        return value
    return trunc


@dataclass(frozen=True)
class Column:
    """Table column: entity field, header title, and the sort mode it activates (None if unsortable)"""
    field: str
    title: str
    mode: SortMode | None = None
    trunc: Callable[[str], str] | None = None
    colors: tuple[tuple[str, str], ...] = ()


CONTAINER_COLUMNS = (
    Column("ID", "CONTAINER ID", SortMode.ID, trunc=truncate_id),
    Column("Image", "IMAGE", SortMode.IMAGE, trunc=ellipsis(30)),
    Column("Command", "COMMAND", trunc=ellipsis(20)),
    Column("RunningFor", "CREATED", SortMode.CREATED),
    Column("Status", "STATUS", SortMode.STATUS, colors=STATUS_COLORS),
    Column("Ports", "PORTS", trunc=ellipsis(40)),
    Column("Names", "NAMES", SortMode.NAME),
)

IMAGE_COLUMNS = (
    Column("Repository", "REPOSITORY", SortMode.REPOSITORY),
    Column("Tag", "TAG"),
    Column("ID", "ID", SortMode.ID, trunc=truncate_id),
    Column("CreatedSince", "CREATED", SortMode.CREATED),
    Column("Size", "SIZE", SortMode.SIZE),
)


@dataclass(frozen=True)
class RenderSnapshot:
    """Entities, cursor and sort mode captured for one render cycle"""
    entities: tuple[Entity, ...] = ()
    cursor: int = 0
    sort_mode: SortMode = SortMode.NONE

    def __post_init__(self):
        object.__setattr__(self, "entities", tuple(self.entities))

    @classmethod
    def from_store(cls, store: EntityStore, cursor: int = 0, sort_mode: SortMode = SortMode.NONE) -> "RenderSnapshot":
        """Capture the store's entities sorted by sort_mode"""
        return cls(tuple(store.sort(sort_mode)), cursor, sort_mode)


def visible_window(total: int, cursor: int, lines: int) -> tuple[int, int]:
    """Range [start, end) of the rows to show so that the cursor stays on screen"""
    if lines < 0:
        return 0, 0
    if total <= lines:
        return 0, total
    if cursor > lines:
        return cursor + 1 - lines, cursor + 1
    if cursor == lines:
        # Starts at 1 although row 0 would fit
        return 1, lines + 1
    return 0, lines


def rows_to_show(entities: tuple[Entity, ...] | list[Entity], cursor: int, lines: int) -> tuple[Entity, ...]:
    """Entities visible on screen for the given cursor and number of free lines"""
    start, end = visible_window(len(entities), cursor, lines)
    return tuple(entities[start:end])


def visible_len(text: str) -> int:
    """Length of text once markup tags are stripped"""
    return len(_MARKUP_RE.sub("", text))


def tabulate(lines: list[list[str]], min_width: int = MIN_COLUMN_WIDTH, padding: int = COLUMN_PADDING) -> str:
    """Align cells on elastic tab stops, the last cell of a line is not part of a column"""
    widths: list[int] = []
    for cells in lines:
        for i, cell in enumerate(cells[:-1]):
            width = max(min_width, visible_len(cell) + padding)
            if i == len(widths):
                widths.append(width)
            else:
                widths[i] = max(widths[i], width)

    out = []
    for cells in lines:
        text = "".join(cell + " " * (widths[i] - visible_len(cell)) for i, cell in enumerate(cells[:-1]))
        if cells:
            text += cells[-1]
        out.append(text + "\n")
    return "".join(out)


def escape_markup(value: str) -> str:
    """Turn tag-shaped text ("</>", "<red>") into look-alikes the markup layer leaves alone"""
    return _MARKUP_RE.sub(lambda m: "‹" + m.group(0)[1:-1] + "›", value)


def format_cell(entity: Entity, column: Column) -> str:
    """Display value of an entity field"""
    value = str(getattr(entity, column.field, "")).replace("\t", " ").replace("\n", " ")
    value = escape_markup(value)
    if column.trunc:
        value = column.trunc(value)
    return value


def _colorize(cells: list[str], color: str) -> list[str]:
    """Wrap a whole line of cells in one color span"""
    if not cells:
        return cells
    cells = list(cells)
    cells[0] = f"<{color}>" + cells[0]
    cells[-1] = cells[-1] + "</>"
    return cells


class TableRenderer:
    """Renders the last prepared snapshot as a header and the rows that fit on screen"""

    def __init__(
        self,
        columns: tuple[Column, ...],
        table_start: int = TABLE_START_POS,
        min_width: int = MIN_COLUMN_WIDTH,
        padding: int = COLUMN_PADDING,
    ):
        self.columns = tuple(columns)
        self.table_start = table_start
        self.min_width = min_width
        self.padding = padding
        self._data = RenderSnapshot()
        self._render_lock = threading.Lock()

    def prepare_for_render(self, snapshot: RenderSnapshot) -> None:
        """Set the snapshot used by the next render calls"""
        with self._render_lock:
            self._data = snapshot

    def render(self, height: int) -> str:
        """Render the table for a screen of the given height"""
        with self._render_lock:
            data = self._data

        lines = height - self.table_start - 1
        rows = rows_to_show(data.entities, data.cursor, lines)
        selected = min(data.cursor, len(rows) - 1)

        table = [self.header(data.sort_mode)]
        for pos, entity in enumerate(rows):
            table.append(self.row(entity, pos == selected))
        return tabulate(table, self.min_width, self.padding)

    def header(self, sort_mode: SortMode) -> list[str]:
        """Header cells, the active sort column marked with an arrow"""
        titles = []
        for col in self.columns:
            if col.mode is not None and col.mode == sort_mode:
                titles.append(DOWN_ARROW + col.title)
            else:
                titles.append(col.title)
        return _colorize(titles, HEADER_COLOR)

    def row(self, entity: Entity, selected: bool) -> list[str]:
        """Cells of one entity row"""
        cells = [format_cell(entity, col) for col in self.columns]
        if selected:
            return _colorize(cells, SELECTED_COLOR)

        for i, col in enumerate(self.columns):
            status = cells[i].lower()
            for status_key, color in col.colors:
                if status_key in status:
                    cells[i] = f"<{color}>{cells[i]}</>"
                    break
        return cells


# =============================================================================
# Terminal Output
# =============================================================================

class Term:
    """ANSI escape codes for the markup emitted by the renderer"""

    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[1;37m"
    GRAY = "\033[90m"

    COLORS = {
        "green": GREEN,
        "red": RED,
        "yellow": YELLOW,
        "blue": BLUE,
        "cyan": CYAN,
        "white": WHITE,
        "grey": GRAY,
    }

    @staticmethod
    def size() -> tuple[int, int]:
        """Get terminal size (rows, cols), 24x80 when not attached to a terminal"""
        cols, rows = shutil.get_terminal_size()
        return rows, cols

    @staticmethod
    def render_markup(text: str) -> str:
        """Replace color tags with ANSI codes"""
        def replace(match: re.Match) -> str:
            color = match.group(1)
            return Term.COLORS[color] if color else Term.RESET
        return _MARKUP_RE.sub(replace, text)

    @staticmethod
    def strip_markup(text: str) -> str:
        """Remove color tags, for sinks without color support"""
        return _MARKUP_RE.sub("", text)


# =============================================================================
# CLI
# =============================================================================

VIEWS: dict[str, tuple[Callable[[], list[Entity]], tuple[Column, ...]]] = {
    "containers": (Docker.containers, CONTAINER_COLUMNS),
    "images": (Docker.images, IMAGE_COLUMNS),
}


def main() -> None:
    """Print the containers (or images) table once"""
    parser = argparse.ArgumentParser(
        description="containerview - live containers/images table",
    )
    parser.add_argument(
        "kind",
        nargs="?",
        default="containers",
        choices=tuple(VIEWS),
        help="What to list (default: containers)",
    )
    args = parser.parse_args()

    kind = args.kind
    fetch, columns = VIEWS[kind]
    try:
        store = EntityStore(fetch)
    except DataSourceUnavailable as e:
        print(f"Failed to list {kind}: {e}", file=sys.stderr)
        sys.exit(1)

    rows, _ = Term.size()
    renderer = TableRenderer(columns)
    renderer.prepare_for_render(RenderSnapshot.from_store(store))
    table = renderer.render(rows)
    if sys.stdout.isatty():
        sys.stdout.write(Term.render_markup(table))
    else:
        sys.stdout.write(Term.strip_markup(table))

    # Output errors to stderr as JSON if any
    errors = get_errors()
    if errors:
        sys.stderr.write(json.dumps({"errors": errors}, indent=2) + "\n")


if __name__ == "__main__":
    main()
