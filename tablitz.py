#!/usr/bin/env python3
r"""
tablitz.py

Recover OneTab tab groups from browser LevelDB stores and OneTab text exports,
and merge them into one canonical, deduplicated SQLite store.

Design goals:
- Never read a live browser store: the extractor is handed a copy (the command layer makes one).
- Partial recovery beats total failure: undecodable entries and malformed lines are skipped,
  counted, and written to errors.jsonl instead of aborting the run.
- Re-running any import is a no-op: ids are either native or derived from the file bytes,
  and every insert is INSERT OR IGNORE keyed on those ids.
- Timestamps are integer milliseconds since epoch everywhere (model, JSON, SQLite).

Typical usage:
    python tablitz.py recover --browser chrome --profile Default
    python tablitz.py import --from-export ~/Downloads/onetab.txt
    python tablitz.py dedup --strategy normalized-url --normalize-titles --dry-run

Reading LevelDB stores needs `ccl_chromium_reader` installed in the same environment.
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import datetime as _dt
import enum
import json
import os
import platform
import re
import shutil
import sqlite3
import sys
import tempfile
import time
import traceback
import unicodedata
import urllib.parse
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Hashable, Iterable, List, NamedTuple, Optional, Tuple, Union


SCHEMA_VERSION = 1

# -----------------------------
# Small utilities
# -----------------------------

_FATAL_OUT_DIR: Optional[Path] = None
_FATAL_ERRORS_PATH: Optional[Path] = None


def utc_now_iso() -> str:
    tz = getattr(_dt, "UTC", _dt.timezone.utc)
    return _dt.datetime.now(tz).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_iso(ms: int) -> str:
    tz = getattr(_dt, "UTC", _dt.timezone.utc)
    return _dt.datetime.fromtimestamp(ms / 1000, tz).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def safe_mkdir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, obj: Any) -> None:
    safe_mkdir(path.parent)
    with path.open("w", encoding="utf-8", errors="replace", newline="\n") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)
        f.write("\n")


_URI_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")


def is_absolute_uri(url: str) -> bool:
    """True when `url` has a scheme and something after it (https://x, about:blank, file:///p)."""
    if not url or any(ch.isspace() for ch in url):
        return False
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return False
    if not parts.scheme or not _URI_SCHEME.match(parts.scheme):
        return False
    return bool(parts.netloc or parts.path)


def _key_text(key: bytes) -> str:
    return bytes(key).decode("utf-8", errors="replace")


def build_self_check() -> Dict[str, Any]:
    info: Dict[str, Any] = {
        "python_version": sys.version,
        "sys.executable": sys.executable,
        "platform": platform.platform(),
        "tablitz_schema_version": SCHEMA_VERSION,
        "default_data_dir": str(default_data_dir()),
        "ccl_chromium_reader_version": None,
        "ccl_chromium_reader_module_path": None,
    }
    try:
        import importlib.metadata as md
        info["ccl_chromium_reader_version"] = md.version("ccl_chromium_reader")
    except Exception:
        pass
    try:
        import ccl_chromium_reader as ccl_module  # type: ignore
        info["ccl_chromium_reader_module_path"] = getattr(ccl_module, "__file__", None)
    except Exception:
        pass
    return info


def capture_fatal_exception(exc: BaseException, *, out_dir: Optional[Path], errors_path: Optional[Path]) -> int:
    exc_type = type(exc).__name__
    exc_msg = str(exc)
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    print(f"{exc_type}: {exc_msg}", file=sys.stderr, flush=True)
    print(tb, file=sys.stderr, flush=True)

    if out_dir is not None and out_dir.exists():
        fatal_path = out_dir / "fatal.txt"
    else:
        temp_dir = Path(os.getenv("TEMP") or os.getenv("TMPDIR") or tempfile.gettempdir())
        tz = getattr(_dt, "UTC", _dt.timezone.utc)
        timestamp = _dt.datetime.now(tz).strftime("%Y%m%d_%H%M%S")
        fatal_path = temp_dir / f"tablitz_fatal_{timestamp}.txt"
        print(f"fatal traceback written to: {fatal_path}", file=sys.stderr, flush=True)

    try:
        fatal_path.write_text(tb, encoding="utf-8", errors="replace")
    except OSError:
        pass

    if errors_path is not None:
        evt = {"ts_utc": utc_now_iso(), "stage": "fatal", "exc_type": exc_type, "exc": exc_msg, "traceback": tb}
        try:
            with errors_path.open("a", encoding="utf-8", errors="replace", newline="\n") as f:
                f.write(json.dumps(evt, ensure_ascii=False, default=str) + "\n")
        except OSError:
            pass

    return 2


# -----------------------------
# Errors
# -----------------------------

class TablitzError(Exception):
    """A whole input failed; no partial session is returned."""


class StoreUnavailable(TablitzError):
    """The LevelDB store path is missing, unreadable, or cannot be opened."""


class StoreLocked(StoreUnavailable):
    """The store's files are held by a running browser; read a copy instead."""


class UnrecognizedFormat(TablitzError):
    """Content matches none of the known grammars."""


class StorageWriteFailed(TablitzError):
    """The canonical store failed mid-call. Groups committed before the failure stay committed."""


class UnknownGroup(TablitzError):
    """A group id that is not in the store."""


DECODE_SKIPPED = "DecodeSkipped"
MALFORMED_LINE = "MalformedLine"
CONSTRAINT_VIOLATION = "ConstraintViolation"


@dataclass
class Diagnostic:
    """A per-entry, per-line or per-record problem that was skipped rather than raised."""

    kind: str
    stage: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_event(self) -> Dict[str, Any]:
        evt: Dict[str, Any] = {"ts_utc": utc_now_iso(), "stage": self.stage, "kind": self.kind, "message": self.message}
        evt.update(self.context)
        return evt


# -----------------------------
# Logging + error events
# -----------------------------

class Logger:
    """Run log: timestamped lines appended to a file and mirrored to stdout when verbose.

    Implements the info/warning/error subset of logging.Logger, so every function
    taking a `logger` accepts either this or a stdlib logger.
    """

    def __init__(self, log_path: Path, verbose: bool = True, warn_limit: int = 25):
        self.log_path = Path(log_path)
        safe_mkdir(self.log_path.parent)
        self.verbose = verbose
        self.warn_limit = int(warn_limit) if warn_limit is not None else 25
        self._warn_counts: Counter = Counter()
        self._append(f"[{utc_now_iso()}] start")

    def _append(self, line: str) -> None:
        with self.log_path.open("a", encoding="utf-8", errors="replace", newline="\n") as f:
            f.write(line + "\n")

    def info(self, msg: str) -> None:
        line = f"[{utc_now_iso()}] {msg}"
        self._append(line)
        if self.verbose:
            print(line, flush=True)

    def notice(self, msg: str) -> None:
        """Always print to console (and write to the run log), regardless of verbose."""
        line = f"[{utc_now_iso()}] {msg}"
        self._append(line)
        print(line, flush=True)

    def warning(self, msg: str) -> None:
        """Write to the run log; print to console at most `warn_limit` times per message.

        warn_limit -1 never suppresses, 0 suppresses all console warnings.
        """
        line = f"[{utc_now_iso()}] WARNING: {msg}"
        self._append(line)

        self._warn_counts[msg] += 1
        n = self._warn_counts[msg]
        if self.warn_limit == -1 or (self.warn_limit > 0 and n <= self.warn_limit):
            print(line, flush=True)
        elif self.warn_limit > 0 and n == self.warn_limit + 1:
            print(f"[{utc_now_iso()}] WARNING: (suppressed further repeats of this warning) {msg}", flush=True)

    def error(self, msg: str) -> None:
        line = f"[{utc_now_iso()}] ERROR: {msg}"
        self._append(line)
        print(line, file=sys.stderr, flush=True)


class SafeJsonlWriter:
    """Append-only errors.jsonl writer that never raises.

    When the primary file cannot be opened, events go to errors_fallback.jsonl next to it;
    if that fails as well the event is counted in `dropped`.
    """

    def __init__(self, out_dir: Path, name: str = "errors.jsonl", fallback_name: str = "errors_fallback.jsonl"):
        self.out_dir = Path(out_dir)
        self.primary_path = self.out_dir / name
        self.fallback_path = self.out_dir / fallback_name
        self.count = 0
        self.dropped = 0

    def write_event(self, evt: Dict[str, Any]) -> bool:
        line = json.dumps(evt, ensure_ascii=False, default=str) + "\n"
        for path in (self.primary_path, self.fallback_path):
            try:
                safe_mkdir(path.parent)
                with path.open("a", encoding="utf-8", errors="replace", newline="\n") as f:
                    f.write(line)
            except OSError:
                continue
            self.count += 1
            return True
        self.dropped += 1
        return False


def log_error_event(
    errors_writer: Optional[SafeJsonlWriter],
    logger: Any,
    *,
    stage: str,
    context: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """
    Write a structured error event to errors.jsonl (if a writer is given) and emit a one-line
    warning. Nothing recovered is ever dropped without one of these.
    """
    evt: Dict[str, Any] = {"ts_utc": utc_now_iso(), "stage": stage}
    if context:
        evt.update(context)
    if exc is not None:
        evt["exc_type"] = type(exc).__name__
        evt["exc"] = str(exc)

    if errors_writer is not None:
        errors_writer.write_event(evt)

    if logger is not None:
        msg = f"stage={stage}"
        if context and context.get("message"):
            msg += f" {context['message']}"
        if exc is not None:
            msg += f" err={type(exc).__name__}: {exc}"
        logger.warning(msg)


def report_diagnostics(diagnostics: Iterable[Diagnostic], *, logger: Any = None, errors_writer: Optional[SafeJsonlWriter] = None) -> None:
    for diag in diagnostics:
        context = {"kind": diag.kind, "message": diag.message}
        context.update(diag.context)
        log_error_event(errors_writer, logger, stage=diag.stage, context=context)


# -----------------------------
# Data model
# -----------------------------

WEBSTORE_ONETAB_EXTENSION_ID = "chphlpgkkbolifaimnlloiipkdnihall"
EDGE_ONETAB_EXTENSION_ID = "hoimpamkkoehapgenciaoajfkfkpgfop"


class Browser(enum.Enum):
    CHROME = "chrome"
    EDGE = "edge"
    BRAVE = "brave"
    COMET = "comet"

    @property
    def extension_id(self) -> str:
        # Chrome, Brave and Comet install OneTab from the Chrome Web Store.
        if self is Browser.EDGE:
            return EDGE_ONETAB_EXTENSION_ID
        return WEBSTORE_ONETAB_EXTENSION_ID

    @property
    def display_name(self) -> str:
        return _BROWSER_DISPLAY_NAMES[self]


_BROWSER_DISPLAY_NAMES = {
    Browser.CHROME: "Chrome",
    Browser.EDGE: "Edge",
    Browser.BRAVE: "Brave",
    Browser.COMET: "Comet (Perplexity)",
}


@dataclass(frozen=True)
class BrowserSource:
    browser: Browser
    profile: str = "Default"


@dataclass(frozen=True)
class ExportFileSource:
    """A OneTab pipe or markdown export file."""

    path: str


@dataclass(frozen=True)
class NativeFileSource:
    """A session previously written by save_session."""

    path: str


@dataclass(frozen=True)
class UnknownSource:
    pass


SessionSource = Union[BrowserSource, ExportFileSource, NativeFileSource, UnknownSource]


def source_to_json(source: SessionSource) -> Any:
    if isinstance(source, BrowserSource):
        return {source.browser.value: {"profile": source.profile}}
    if isinstance(source, ExportFileSource):
        return {"one_tab_export": {"path": source.path}}
    if isinstance(source, NativeFileSource):
        return {"tablitz_native": {"path": source.path}}
    if isinstance(source, UnknownSource):
        return "unknown"
    raise TypeError(f"unsupported session source: {source!r}")


def source_from_json(obj: Any) -> SessionSource:
    if obj == "unknown":
        return UnknownSource()
    if not isinstance(obj, dict) or len(obj) != 1:
        raise UnrecognizedFormat(f"session source must be \"unknown\" or a single-key object, got {obj!r}")
    (tag, body), = obj.items()
    if not isinstance(body, dict):
        raise UnrecognizedFormat(f"session source {tag!r} must carry an object")
    if tag == "one_tab_export":
        return ExportFileSource(str(body["path"]))
    if tag == "tablitz_native":
        return NativeFileSource(str(body["path"]))
    try:
        browser = Browser(tag)
    except ValueError:
        raise UnrecognizedFormat(f"unknown session source kind: {tag!r}") from None
    return BrowserSource(browser, str(body.get("profile", "Default")))


def source_columns(source: SessionSource) -> Tuple[str, Optional[str], Optional[str]]:
    """(source_type, source_profile, source_path) as stored on tab_groups rows."""
    if isinstance(source, BrowserSource):
        return source.browser.name.capitalize(), source.profile, None
    if isinstance(source, ExportFileSource):
        return "OneTabExport", None, source.path
    if isinstance(source, NativeFileSource):
        return "TablitzNative", None, source.path
    if isinstance(source, UnknownSource):
        return "Unknown", None, None
    raise TypeError(f"unsupported session source: {source!r}")


@dataclass
class Tab:
    id: str
    url: str
    title: str = ""
    favicon_url: Optional[str] = None
    added_at: int = 0
    position: int = 0


@dataclass
class TabGroup:
    id: str
    created_at: int
    label: Optional[str] = None
    pinned: bool = False
    locked: bool = False
    starred: bool = False
    tabs: List[Tab] = field(default_factory=list)


@dataclass
class TabSession:
    source: SessionSource
    groups: List[TabGroup] = field(default_factory=list)
    created_at: int = 0
    imported_at: int = 0
    version: int = SCHEMA_VERSION

    @classmethod
    def build(cls, source: SessionSource, groups: List[TabGroup], *, imported_at: Optional[int] = None) -> "TabSession":
        """A session whose created_at is its earliest group (or the import time when empty)."""
        imported = now_ms() if imported_at is None else int(imported_at)
        created = min((g.created_at for g in groups), default=imported)
        return cls(source=source, groups=groups, created_at=created, imported_at=imported)

    def tab_count(self) -> int:
        return sum(len(g.tabs) for g in self.groups)

    @staticmethod
    def merge(sessions: List["TabSession"]) -> "TabSession":
        if not sessions:
            return TabSession.build(UnknownSource(), [])
        merged = TabSession.build(UnknownSource(), [g for s in sessions for g in s.groups])
        merged.version = max(s.version for s in sessions)
        merged.created_at = min(s.created_at for s in sessions)
        return merged


# -----------------------------
# Native JSON interchange
# -----------------------------

def tab_to_json(tab: Tab) -> Dict[str, Any]:
    return {
        "id": tab.id,
        "url": tab.url,
        "title": tab.title,
        "favicon_url": tab.favicon_url,
        "added_at": tab.added_at,
        "position": tab.position,
    }


def group_to_json(group: TabGroup) -> Dict[str, Any]:
    return {
        "id": group.id,
        "label": group.label,
        "created_at": group.created_at,
        "pinned": group.pinned,
        "locked": group.locked,
        "starred": group.starred,
        "tabs": [tab_to_json(t) for t in group.tabs],
    }


def session_to_json(session: TabSession) -> Dict[str, Any]:
    return {
        "version": session.version,
        "source": source_to_json(session.source),
        "created_at": session.created_at,
        "imported_at": session.imported_at,
        "groups": [group_to_json(g) for g in session.groups],
    }


def _as_ms(value: Any, name: str) -> int:
    # bool is an int subclass; fractional timestamps are rejected outright.
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be integer milliseconds, got {value!r}")
    return value


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} must be a boolean, got {value!r}")
    return value


def _tab_from_json(obj: Dict[str, Any], index: int) -> Tab:
    return Tab(
        id=str(obj["id"]),
        url=str(obj["url"]),
        title=str(obj.get("title") or ""),
        favicon_url=obj.get("favicon_url"),
        added_at=_as_ms(obj["added_at"], "tab.added_at"),
        position=_as_ms(obj.get("position", index), "tab.position"),
    )


def _group_from_json(obj: Dict[str, Any]) -> TabGroup:
    return TabGroup(
        id=str(obj["id"]),
        label=obj.get("label"),
        created_at=_as_ms(obj["created_at"], "group.created_at"),
        pinned=_as_bool(obj.get("pinned", False), "group.pinned"),
        locked=_as_bool(obj.get("locked", False), "group.locked"),
        starred=_as_bool(obj.get("starred", False), "group.starred"),
        tabs=[_tab_from_json(t, i) for i, t in enumerate(obj.get("tabs") or [])],
    )


def session_from_json(obj: Any) -> TabSession:
    if not isinstance(obj, dict):
        raise UnrecognizedFormat("a native session must be a JSON object")
    try:
        return TabSession(
            version=_as_ms(obj["version"], "version"),
            source=source_from_json(obj["source"]),
            groups=[_group_from_json(g) for g in obj["groups"]],
            created_at=_as_ms(obj["created_at"], "created_at"),
            imported_at=_as_ms(obj["imported_at"], "imported_at"),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise UnrecognizedFormat(f"not a native tablitz session: {type(e).__name__}: {e}") from e


def save_session(session: TabSession, path: Path) -> None:
    write_json(Path(path), session_to_json(session))


def load_session(path: Path) -> TabSession:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        obj = json.loads(raw)
    except ValueError as e:
        raise UnrecognizedFormat(f"{path} is not JSON: {e}") from e
    return session_from_json(obj)


# -----------------------------
# Recovery results
# -----------------------------

class CreatedStamp(NamedTuple):
    """The numeric fields of a markdown `> Created M/D/YYYY, H:MM:SS AM` line, exactly as written.

    Month and day are ambiguous for day <= 12 under other locales; keep the raw fields so a
    later pass can reinterpret them.
    """

    month: int
    day: int
    year: int
    hour: int
    minute: int
    second: int
    meridiem: str

    def to_datetime(self) -> _dt.datetime:
        if not 1 <= self.hour <= 12:
            raise ValueError(f"hour {self.hour} is not on a 12-hour clock")
        hour24 = self.hour % 12 + (12 if self.meridiem == "PM" else 0)
        return _dt.datetime(self.year, self.month, self.day, hour24, self.minute, self.second)

    def to_ms(self) -> int:
        # Naive datetime: interpreted in the local timezone.
        return int(self.to_datetime().timestamp()) * 1000


@dataclass
class RecoveryResult:
    session: TabSession
    diagnostics: List[Diagnostic] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    format: Optional[str] = None
    timestamp_fields: Dict[str, CreatedStamp] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "groups": len(self.session.groups),
            "tabs": self.session.tab_count(),
            "skipped": len(self.diagnostics),
        }
        if self.format:
            out["format"] = self.format
        out.update(self.counts)
        return out


# -----------------------------
# LevelDB store extraction
# -----------------------------

ONETAB_MARKER = b"tabGroups"


def _load_leveldb_module():
    from ccl_chromium_reader.storage_formats import ccl_leveldb  # type: ignore
    return ccl_leveldb


def _is_deleted(rec: Any) -> bool:
    state = getattr(rec, "state", None)
    return getattr(state, "name", state) == "Deleted"


def read_store_entries(store_dir: Path, *, include_stale: bool = False) -> Tuple[List[Tuple[bytes, bytes]], List[Diagnostic]]:
    """
    Read (key, value) pairs from a LevelDB directory in key order.

    Both compacted .ldb run files and the .log write-ahead log are read (un-compacted logs
    hold data nowhere else). By default only the newest version of each key is returned and
    keys whose newest version is a deletion are dropped, like a normal LevelDB iterator.
    With include_stale=True every live version is returned, newest first within a key.
    """
    store_dir = Path(store_dir)
    if not store_dir.exists():
        raise StoreUnavailable(f"store path does not exist: {store_dir}")
    if not store_dir.is_dir():
        raise StoreUnavailable(f"store path is not a directory: {store_dir}")

    try:
        ccl_leveldb = _load_leveldb_module()
    except ImportError as e:
        raise StoreUnavailable(f"ccl_chromium_reader is not installed; cannot read {store_dir}") from e

    try:
        db = ccl_leveldb.RawLevelDb(store_dir)
    except PermissionError as e:
        raise StoreLocked(f"store files are held by another process (copy the directory first): {store_dir}") from e
    except Exception as e:
        raise StoreUnavailable(f"could not open LevelDB store at {store_dir}: {type(e).__name__}: {e}") from e

    diagnostics: List[Diagnostic] = []
    records: List[Any] = []
    try:
        for rec in db.iterate_records_raw():
            records.append(rec)
    except PermissionError as e:
        raise StoreLocked(f"store files are held by another process (copy the directory first): {store_dir}") from e
    except Exception as e:
        # A torn log tail or corrupt block: keep what was read before it.
        diagnostics.append(Diagnostic(
            DECODE_SKIPPED,
            "leveldb_iterate",
            f"iteration stopped early: {type(e).__name__}: {e}",
            {"store": str(store_dir), "records_read": len(records)},
        ))
    finally:
        close = getattr(db, "close", None)
        if close is not None:
            close()

    versions: Dict[bytes, List[Any]] = {}
    for rec in records:
        user_key = getattr(rec, "user_key", None)
        if user_key is None:
            user_key = rec.key
        versions.setdefault(bytes(user_key), []).append(rec)

    entries: List[Tuple[bytes, bytes]] = []
    for key in sorted(versions):
        recs = sorted(versions[key], key=lambda r: int(getattr(r, "seq", 0) or 0), reverse=True)
        if not include_stale:
            recs = recs[:1]
        for rec in recs:
            if not _is_deleted(rec):
                entries.append((key, bytes(rec.value or b"")))
    return entries, diagnostics


def unwrap_double_encoded(value: bytes) -> Dict[str, Any]:
    """
    Decode a chrome.storage value whose JSON string content is itself a JSON document.

    Pass one parses the raw bytes as a JSON string literal; pass two parses that string as the
    object carrying `tabGroups`. Raises ValueError when either pass fails.
    """
    try:
        outer = json.loads(bytes(value).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ValueError(f"value is not JSON: {e}") from e
    if not isinstance(outer, str):
        raise ValueError(f"value is a JSON {type(outer).__name__}, not a string literal")
    try:
        inner = json.loads(outer)
    except ValueError as e:
        raise ValueError(f"string content is not JSON: {e}") from e
    if not isinstance(inner, dict) or not isinstance(inner.get("tabGroups"), list):
        raise ValueError("decoded object has no tabGroups list")
    return inner


def _group_from_onetab(raw: Any, diagnostics: List[Diagnostic], key: str) -> Optional[TabGroup]:
    def skip(message: str, **extra: Any) -> None:
        context: Dict[str, Any] = {"key": key}
        context.update(extra)
        diagnostics.append(Diagnostic(DECODE_SKIPPED, "leveldb_group", message, context))

    if not isinstance(raw, dict):
        skip(f"tab group is a {type(raw).__name__}, not an object")
        return None
    group_id = raw.get("id")
    create_date = raw.get("createDate")
    if not isinstance(group_id, str) or not group_id:
        skip("tab group has no id")
        return None
    if isinstance(create_date, bool) or not isinstance(create_date, (int, float)):
        skip("tab group has no createDate", group_id=group_id)
        return None
    tabs_meta = raw.get("tabsMeta")
    if not isinstance(tabs_meta, list):
        skip("tab group has no tabsMeta list", group_id=group_id)
        return None

    created_at = int(create_date)
    tabs: List[Tab] = []
    seen_tab_ids = set()
    for meta in tabs_meta:
        if not isinstance(meta, dict):
            skip("tab entry is not an object", group_id=group_id)
            continue
        tab_id = meta.get("id")
        url = meta.get("url")
        if tab_id is None or tab_id == "":
            skip("tab has no id", group_id=group_id)
            continue
        if not isinstance(url, str) or not is_absolute_uri(url):
            skip(f"tab url does not parse: {url!r}", group_id=group_id, tab_id=str(tab_id))
            continue
        if str(tab_id) in seen_tab_ids:
            skip("duplicate tab id within group", group_id=group_id, tab_id=str(tab_id))
            continue
        seen_tab_ids.add(str(tab_id))
        title = meta.get("title")
        favicon = meta.get("favicon")
        tabs.append(Tab(
            id=str(tab_id),
            url=url,
            title=title if isinstance(title, str) else "",
            favicon_url=favicon if isinstance(favicon, str) and favicon else None,
            added_at=created_at,
            position=len(tabs),
        ))

    if not tabs:
        skip("tab group has no tabs", group_id=group_id)
        return None

    label = raw.get("title")
    return TabGroup(
        id=group_id,
        created_at=created_at,
        label=label if isinstance(label, str) and label else None,
        pinned=bool(raw.get("pinned") or False),
        locked=bool(raw.get("locked") or False),
        starred=bool(raw.get("starred") or False),
        tabs=tabs,
    )


def extract_from_leveldb(
    store_dir: Path,
    source: SessionSource,
    *,
    include_stale: bool = False,
    logger: Any = None,
    errors_writer: Optional[SafeJsonlWriter] = None,
) -> RecoveryResult:
    """
    Recover every distinct OneTab tab group from a copy of the extension's LevelDB directory.

    Raises StoreUnavailable/StoreLocked when the store cannot be read at all. Entries that do
    not decode are skipped and reported in the result's diagnostics. When several snapshots
    carry the same group id, the first one met in key order wins.
    """
    imported_at = now_ms()
    entries, diagnostics = read_store_entries(store_dir, include_stale=include_stale)
    counts = {"entries_scanned": len(entries), "candidate_entries": 0, "duplicate_groups": 0}

    seen = set()
    groups: List[TabGroup] = []
    for key, value in entries:
        if ONETAB_MARKER not in value:
            continue
        counts["candidate_entries"] += 1
        key_text = _key_text(key)
        try:
            root = unwrap_double_encoded(value)
        except ValueError as e:
            diagnostics.append(Diagnostic(DECODE_SKIPPED, "leveldb_decode", str(e), {"key": key_text, "value_len": len(value)}))
            continue
        for raw in root["tabGroups"]:
            group = _group_from_onetab(raw, diagnostics, key_text)
            if group is None:
                continue
            if group.id in seen:
                counts["duplicate_groups"] += 1
                continue
            seen.add(group.id)
            groups.append(group)

    result = RecoveryResult(TabSession.build(source, groups, imported_at=imported_at), diagnostics, counts)
    report_diagnostics(diagnostics, logger=logger, errors_writer=errors_writer)
    if logger is not None:
        s = result.summary()
        logger.info(
            f"[leveldb] store={store_dir} groups={s['groups']} tabs={s['tabs']} skipped={s['skipped']} "
            f"entries={s['entries_scanned']} candidates={s['candidate_entries']} duplicate_groups={s['duplicate_groups']}"
        )
    return result


# Vendor/browser directories: (vendor, browser) for Windows and macOS, then the Linux config dir.
_BROWSER_DIRS = {
    Browser.CHROME: ("Google", "Chrome", "google-chrome"),
    Browser.EDGE: ("Microsoft", "Edge", "microsoft-edge"),
    Browser.BRAVE: ("BraveSoftware", "Brave-Browser", "BraveSoftware/Brave-Browser"),
    Browser.COMET: ("Perplexity", "Comet", "perplexity-comet"),
}


def resolve_store_path(
    browser: Browser,
    profile: str = "Default",
    *,
    system: Optional[str] = None,
    home: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> Path:
    """
    Where a browser profile keeps OneTab's LevelDB store:

        Windows: %LOCALAPPDATA%\\<vendor>\\<browser>\\User Data\\<profile>\\Local Extension Settings\\<ext id>
        macOS:   ~/Library/Application Support/<vendor>/<browser>/<profile>/Local Extension Settings/<ext id>
        Linux:   ~/.config/<browser dir>/<profile>/Local Extension Settings/<ext id>
    """
    system = system or platform.system()
    home = Path(home) if home is not None else Path.home()
    env = os.environ if env is None else env
    vendor, name, linux_dir = _BROWSER_DIRS[browser]
    if system == "Windows":
        base = Path(env.get("LOCALAPPDATA") or home / "AppData" / "Local") / vendor / name / "User Data"
    elif system == "Darwin":
        base = home / "Library" / "Application Support" / vendor / name
    else:
        base = Path(env.get("XDG_CONFIG_HOME") or home / ".config") / linux_dir
    return base / profile / "Local Extension Settings" / browser.extension_id


def detect_stores(profiles: Iterable[str] = ("Default", "Profile 1"), **resolve_kwargs: Any) -> List[Tuple[Browser, str, Path]]:
    found: List[Tuple[Browser, str, Path]] = []
    for browser in Browser:
        for profile in profiles:
            path = resolve_store_path(browser, profile, **resolve_kwargs)
            if path.is_dir():
                found.append((browser, profile, path))
    return found


def copy_store(src: Path, dst_dir: Path) -> Path:
    """Copy a (possibly live) store directory into dst_dir and return the copy's path.

    The LOCK file is skipped: it is empty and a running browser may hold it exclusively.
    """
    src = Path(src)
    if not src.is_dir():
        raise StoreUnavailable(f"store path is not a directory: {src}")
    dst = Path(dst_dir) / src.name
    safe_mkdir(dst)
    for p in sorted(src.iterdir()):
        if not p.is_file() or p.name == "LOCK":
            continue
        try:
            shutil.copy2(p, dst / p.name)
        except PermissionError as e:
            raise StoreLocked(f"could not copy {p.name} from {src}: {e}") from e
    return dst


# -----------------------------
# OneTab text exports (pipe + markdown)
# -----------------------------

class ExportFormat(enum.Enum):
    PIPE = "pipe"
    MARKDOWN = "markdown"


FORMAT_SNIFF_LINES = 10

_PIPE_LINE = re.compile(r"^(?P<url>\S+) \|(?: (?P<title>.*))?$")
_MD_HEADER = re.compile(r"^## (?P<count>\d+) tabs?$")
_MD_CREATED = re.compile(
    r"^> Created (?P<month>\d{1,2})/(?P<day>\d{1,2})/(?P<year>\d{4}),[ \u00a0\u202f]"
    r"(?P<hour>\d{1,2}):(?P<minute>\d{2}):(?P<second>\d{2})[ \u00a0\u202f](?P<meridiem>AM|PM)$"
)
_MD_QUOTE = re.compile(r"^> ?(?P<text>.*)$")
_MD_TAB = re.compile(r"^\[(?P<title>.*)\]\((?P<url>\S*)\)$")


def detect_format(text: str) -> ExportFormat:
    lines = [line.strip() for line in text.splitlines()]
    if "---" in lines[:FORMAT_SNIFF_LINES] and any(_MD_HEADER.match(line) for line in lines):
        return ExportFormat.MARKDOWN
    if any(_PIPE_LINE.match(line) for line in lines):
        return ExportFormat.PIPE
    raise UnrecognizedFormat("content matches neither the pipe nor the markdown export grammar")


def _malformed(diagnostics: List[Diagnostic], stage: str, lineno: int, message: str, line: str) -> None:
    diagnostics.append(Diagnostic(MALFORMED_LINE, stage, message, {"line": lineno, "text": line[:200]}))


def _parse_pipe(lines: List[str], clock: int, diagnostics: List[Diagnostic]) -> List[TabGroup]:
    groups: List[TabGroup] = []
    current: List[Tab] = []

    def flush() -> None:
        if current:
            groups.append(TabGroup(id="", created_at=clock, tabs=list(current)))
            current.clear()

    for lineno, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line:
            flush()
            continue
        m = _PIPE_LINE.match(line)
        if not m:
            _malformed(diagnostics, "pipe_parse", lineno, "expected '<url> | <title>'", line)
            continue
        url = m.group("url")
        if not is_absolute_uri(url):
            _malformed(diagnostics, "pipe_parse", lineno, f"url does not parse: {url!r}", line)
            continue
        current.append(Tab(id="", url=url, title=m.group("title") or "", added_at=clock, position=len(current)))
    flush()
    return groups


@dataclass
class _MarkdownBlock:
    start_line: int
    phase: str = "header"  # header -> meta -> tabs -> done
    label: Optional[str] = None
    stamp: Optional[CreatedStamp] = None
    tabs: List[Tuple[str, str]] = field(default_factory=list)


def _parse_markdown(lines: List[str], clock: int, diagnostics: List[Diagnostic]) -> Tuple[List[TabGroup], Dict[int, CreatedStamp]]:
    groups: List[TabGroup] = []
    stamps: Dict[int, CreatedStamp] = {}
    block: Optional[_MarkdownBlock] = None

    def flush() -> None:
        if block is None:
            return
        if not block.tabs:
            _malformed(diagnostics, "markdown_parse", block.start_line, "group block has no tabs", "---")
            return
        created_at = clock
        if block.stamp is not None:
            created_at = block.stamp.to_ms()
            stamps[len(groups)] = block.stamp
        tabs = [
            Tab(id="", url=url, title=title, added_at=created_at, position=i)
            for i, (title, url) in enumerate(block.tabs)
        ]
        groups.append(TabGroup(id="", created_at=created_at, label=block.label, tabs=tabs))

    for lineno, raw in enumerate(lines, 1):
        line = raw.strip()
        if line == "---":
            flush()
            block = _MarkdownBlock(start_line=lineno)
            continue
        if block is None:
            if line:
                _malformed(diagnostics, "markdown_parse", lineno, "text before the first '---'", line)
            continue

        if block.phase == "header":
            if not line:
                continue
            if _MD_HEADER.match(line):
                block.phase = "meta"
            else:
                _malformed(diagnostics, "markdown_parse", lineno, "expected '## <N> tabs'", line)
            continue

        if block.phase == "meta":
            if not line:
                block.phase = "tabs"
                continue
            created = _MD_CREATED.match(line)
            if created and block.stamp is None and block.label is None:
                stamp = CreatedStamp(
                    int(created["month"]), int(created["day"]), int(created["year"]),
                    int(created["hour"]), int(created["minute"]), int(created["second"]),
                    created["meridiem"],
                )
                try:
                    stamp.to_datetime()
                except ValueError as e:
                    _malformed(diagnostics, "markdown_parse", lineno, f"invalid timestamp: {e}", line)
                else:
                    block.stamp = stamp
                continue
            if line.startswith("> Created ") and block.stamp is None and block.label is None:
                _malformed(diagnostics, "markdown_parse", lineno, "unparseable '> Created' timestamp", line)
                continue
            quote = _MD_QUOTE.match(line)
            if quote and block.label is None:
                block.label = quote["text"].strip() or None
                continue
            if not _MD_TAB.match(line):
                _malformed(diagnostics, "markdown_parse", lineno, "unexpected line in group header", line)
                continue
            # A tab line straight after the header, without the blank separator.
            block.phase = "tabs"

        if block.phase == "tabs":
            if not line:
                if block.tabs:
                    block.phase = "done"
                continue
            m = _MD_TAB.match(line)
            if not m:
                _malformed(diagnostics, "markdown_parse", lineno, "expected '[<title>](<url>)'", line)
                continue
            if not is_absolute_uri(m["url"]):
                _malformed(diagnostics, "markdown_parse", lineno, f"url does not parse: {m['url']!r}", line)
                continue
            block.tabs.append((m["title"], m["url"]))
            continue

        if line:
            _malformed(diagnostics, "markdown_parse", lineno, "text after the tab list", line)

    flush()
    return groups, stamps


def parse_export(
    content: bytes,
    *,
    path: Optional[Union[str, Path]] = None,
    now: Optional[int] = None,
    logger: Any = None,
    errors_writer: Optional[SafeJsonlWriter] = None,
) -> RecoveryResult:
    """
    Parse a OneTab text export (pipe or markdown; detected from the content) into a session.

    `now` is the clock reading (ms) used for groups without a timestamp; it is read once per
    file. Ids are derived from the content bytes, so re-parsing identical bytes gives identical
    ids. Raises UnrecognizedFormat when neither grammar matches.
    """
    clock = now_ms() if now is None else int(now)
    text = bytes(content).decode("utf-8", errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]

    fmt = detect_format(text)
    lines = text.splitlines()
    diagnostics: List[Diagnostic] = []
    stamps: Dict[int, CreatedStamp] = {}
    if fmt is ExportFormat.PIPE:
        groups = _parse_pipe(lines, clock, diagnostics)
    else:
        groups, stamps = _parse_markdown(lines, clock, diagnostics)

    assign_derived_ids(groups, content)
    source: SessionSource = ExportFileSource(str(path)) if path is not None else UnknownSource()
    result = RecoveryResult(
        session=TabSession.build(source, groups, imported_at=clock),
        diagnostics=diagnostics,
        counts={"lines": len(lines)},
        format=fmt.value,
        timestamp_fields={groups[i].id: stamp for i, stamp in stamps.items()},
    )
    report_diagnostics(diagnostics, logger=logger, errors_writer=errors_writer)
    if logger is not None:
        s = result.summary()
        logger.info(f"[export] path={path} format={fmt.value} groups={s['groups']} tabs={s['tabs']} skipped={s['skipped']}")
    return result


def parse_export_file(path: Path, **kwargs: Any) -> RecoveryResult:
    path = Path(path)
    return parse_export(path.read_bytes(), path=path, **kwargs)


# -----------------------------
# Content-addressed ids
# -----------------------------

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193


def fnv1a_32(data: bytes) -> int:
    h = FNV32_OFFSET_BASIS
    for b in bytes(data):
        h ^= b
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def derive_group_id(file_hash: int, index: int) -> str:
    return f"{file_hash:08x}-g{index}"


def derive_tab_id(group_id: str, position: int) -> str:
    return f"{group_id}-t{position}"


def assign_derived_ids(groups: List[TabGroup], content: bytes) -> int:
    """
    Fill empty group/tab ids from (hash of the whole file, structural position).

    Ids already present are kept. Any byte change to the file changes every derived id, so an
    edited export imports as a new session. Returns the file hash.
    """
    file_hash = fnv1a_32(content)
    for index, group in enumerate(groups):
        if not group.id:
            group.id = derive_group_id(file_hash, index)
        for position, tab in enumerate(group.tabs):
            tab.position = position
            if not tab.id:
                tab.id = derive_tab_id(group.id, position)
    return file_hash


# -----------------------------
# Canonical SQLite store
# -----------------------------

DEFAULT_DB_NAME = "tablitz.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tab_groups (
    id TEXT PRIMARY KEY,
    label TEXT,
    created_at INTEGER NOT NULL,
    pinned INTEGER NOT NULL DEFAULT 0,
    locked INTEGER NOT NULL DEFAULT 0,
    starred INTEGER NOT NULL DEFAULT 0,
    source_type TEXT NOT NULL,
    source_profile TEXT,
    source_path TEXT
);
CREATE TABLE IF NOT EXISTS tabs (
    group_id TEXT NOT NULL REFERENCES tab_groups(id) ON DELETE CASCADE,
    id TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    favicon_url TEXT,
    added_at INTEGER NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (group_id, id)
);
CREATE INDEX IF NOT EXISTS idx_tabs_url ON tabs(url);
CREATE INDEX IF NOT EXISTS idx_tab_groups_created_at ON tab_groups(created_at);
"""


def default_data_dir(env: Optional[Dict[str, str]] = None, *, system: Optional[str] = None, home: Optional[Path] = None) -> Path:
    """$TABLITZ_HOME, else ~/.local/share/tablitz, ~/Library/Application Support/tablitz or %LOCALAPPDATA%\\tablitz."""
    env = os.environ if env is None else env
    override = env.get("TABLITZ_HOME")
    if override:
        return Path(override).expanduser()
    system = system or platform.system()
    home = Path(home) if home is not None else Path.home()
    if system == "Windows":
        base = Path(env.get("LOCALAPPDATA") or home / "AppData" / "Local")
    elif system == "Darwin":
        base = home / "Library" / "Application Support"
    else:
        base = Path(env.get("XDG_DATA_HOME") or home / ".local" / "share")
    return base / "tablitz"


def connect_sqlite(db_path: Path) -> sqlite3.Connection:
    # Autocommit mode; every write path opens its own explicit transaction.
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@dataclass
class InsertStats:
    groups_inserted: int = 0
    groups_skipped: int = 0
    tabs_inserted: int = 0
    tabs_skipped: int = 0
    violations: List[Diagnostic] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "groups_inserted": self.groups_inserted,
            "groups_skipped": self.groups_skipped,
            "tabs_inserted": self.tabs_inserted,
            "tabs_skipped": self.tabs_skipped,
            "violations": len(self.violations),
        }


class TabStore:
    """
    Canonical store of tab groups and tabs, and the only writer of persistent state.

    - Group rows and tab rows are INSERT OR IGNORE keyed on group id and (group id, tab id),
      so importing the same session any number of times leaves the store unchanged.
    - replace_tabs_for_group swaps a group's tabs inside one IMMEDIATE transaction; readers
      never see the group half-rewritten.
    - One connection per store object; open a separate TabStore per thread or process.
      Do not run dedup and an import against the same store at the same time.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            safe_mkdir(self.db_path.parent)
        self.conn = connect_sqlite(self.db_path)
        self.conn.executescript(SCHEMA_SQL)

    @classmethod
    def open_default(cls) -> "TabStore":
        data_dir = default_data_dir()
        safe_mkdir(data_dir)
        return cls(data_dir / DEFAULT_DB_NAME)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextlib.contextmanager
    def _transaction(self, mode: str = "DEFERRED"):
        self.conn.execute(f"BEGIN {mode}")
        try:
            yield self.conn
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    def insert_group(self, group: TabGroup, source: SessionSource = UnknownSource()) -> bool:
        """Insert the group row only (no tabs). False when the id is already present."""
        source_type, source_profile, source_path = source_columns(source)
        cur = self.conn.execute(
            "INSERT OR IGNORE INTO tab_groups "
            "(id, label, created_at, pinned, locked, starred, source_type, source_profile, source_path) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                group.id,
                group.label,
                int(group.created_at),
                int(group.pinned),
                int(group.locked),
                int(group.starred),
                source_type,
                source_profile,
                source_path,
            ),
        )
        return cur.rowcount > 0

    def insert_tab(self, group_id: str, tab: Tab, position: Optional[int] = None, *, ignore_existing: bool = True) -> bool:
        """Insert one tab row. With ignore_existing=False a conflicting row raises IntegrityError."""
        conflict = "IGNORE" if ignore_existing else "ABORT"
        cur = self.conn.execute(
            f"INSERT OR {conflict} INTO tabs (group_id, id, url, title, favicon_url, added_at, position) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                group_id,
                tab.id,
                tab.url,
                tab.title or "",
                tab.favicon_url,
                int(tab.added_at),
                tab.position if position is None else position,
            ),
        )
        return cur.rowcount > 0

    def insert_session(self, session: TabSession, *, logger: Any = None, errors_writer: Optional[SafeJsonlWriter] = None) -> InsertStats:
        """
        Merge a session into the store; repeat calls with the same session are no-ops.

        Each group is committed with its tabs in its own transaction. Tabs are written only
        for newly inserted groups, so re-importing after a dedup does not bring removed tabs
        back. Records breaking a constraint (empty ids, NOT NULL) are reported in
        `violations` and skipped. Any other SQLite failure raises StorageWriteFailed; groups
        committed before it stay committed.
        """
        stats = InsertStats()

        def violation(message: str, **context: Any) -> None:
            stats.violations.append(Diagnostic(CONSTRAINT_VIOLATION, "store_insert", message, context))

        for group in session.groups:
            if not isinstance(group.id, str) or not group.id.strip():
                violation("tab group has an empty id", tabs=len(group.tabs))
                stats.groups_skipped += 1
                stats.tabs_skipped += len(group.tabs)
                continue
            try:
                with self._transaction():
                    if not self.insert_group(group, session.source):
                        stats.groups_skipped += 1
                        stats.tabs_skipped += len(group.tabs)
                        continue
                    stats.groups_inserted += 1
                    position = 0
                    for tab in group.tabs:
                        if not tab.id or not isinstance(tab.url, str) or not tab.url:
                            violation("tab has an empty id or url", group_id=group.id, tab_id=tab.id, url=tab.url)
                            stats.tabs_skipped += 1
                            continue
                        try:
                            inserted = self.insert_tab(group.id, tab, position)
                        except sqlite3.IntegrityError as e:
                            violation(f"tab rejected: {e}", group_id=group.id, tab_id=tab.id)
                            stats.tabs_skipped += 1
                            continue
                        if inserted:
                            stats.tabs_inserted += 1
                            position += 1
                        else:
                            stats.tabs_skipped += 1
            except sqlite3.IntegrityError as e:
                violation(f"tab group rejected: {e}", group_id=group.id)
                stats.groups_skipped += 1
            except sqlite3.Error as e:
                raise StorageWriteFailed(f"writing group {group.id!r} to {self.db_path} failed: {e}") from e

        report_diagnostics(stats.violations, logger=logger, errors_writer=errors_writer)
        if logger is not None:
            s = stats.summary()
            logger.info(
                f"[store] groups_inserted={s['groups_inserted']} groups_skipped={s['groups_skipped']} "
                f"tabs_inserted={s['tabs_inserted']} tabs_skipped={s['tabs_skipped']} violations={s['violations']}"
            )
        return stats

    def replace_tabs_for_group(self, group_id: str, tabs: List[Tab]) -> int:
        """Atomically replace every tab of `group_id`; positions are renumbered from 0."""
        try:
            with self._transaction("IMMEDIATE"):
                if self.conn.execute("SELECT 1 FROM tab_groups WHERE id = ?", (group_id,)).fetchone() is None:
                    raise UnknownGroup(f"no tab group with id {group_id!r} in {self.db_path}")
                self.conn.execute("DELETE FROM tabs WHERE group_id = ?", (group_id,))
                for position, tab in enumerate(tabs):
                    self.insert_tab(group_id, tab, position, ignore_existing=False)
        except sqlite3.Error as e:
            raise StorageWriteFailed(f"replacing tabs of group {group_id!r} failed: {e}") from e
        return len(tabs)

    def delete_group(self, group_id: str) -> bool:
        try:
            with self._transaction():
                cur = self.conn.execute("DELETE FROM tab_groups WHERE id = ?", (group_id,))
        except sqlite3.Error as e:
            raise StorageWriteFailed(f"deleting group {group_id!r} failed: {e}") from e
        return cur.rowcount > 0

    def _load_groups(self, where: str = "", params: Tuple[Any, ...] = ()) -> List[TabGroup]:
        tabs_by_group: Dict[str, List[Tab]] = {}
        with self._transaction():
            group_rows = self.conn.execute(
                "SELECT id, label, created_at, pinned, locked, starred FROM tab_groups "
                f"{where} ORDER BY created_at DESC, id",
                params,
            ).fetchall()
            tab_where = where.replace("WHERE id", "WHERE group_id")
            for row in self.conn.execute(
                "SELECT group_id, id, url, title, favicon_url, added_at, position FROM tabs "
                f"{tab_where} ORDER BY group_id, position",
                params,
            ):
                tabs_by_group.setdefault(row[0], []).append(
                    Tab(id=row[1], url=row[2], title=row[3], favicon_url=row[4], added_at=row[5], position=row[6])
                )
        return [
            TabGroup(
                id=row[0],
                label=row[1],
                created_at=row[2],
                pinned=bool(row[3]),
                locked=bool(row[4]),
                starred=bool(row[5]),
                tabs=tabs_by_group.get(row[0], []),
            )
            for row in group_rows
        ]

    def get_group(self, group_id: str) -> Optional[TabGroup]:
        groups = self._load_groups("WHERE id = ?", (group_id,))
        return groups[0] if groups else None

    def read_session(self) -> TabSession:
        """Every stored group (newest first) with its tabs in position order."""
        return TabSession.build(UnknownSource(), self._load_groups())

    def group_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM tab_groups").fetchone()[0]

    def tab_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM tabs").fetchone()[0]


# -----------------------------
# Deduplication
# -----------------------------

class DedupStrategy(enum.Enum):
    EXACT_URL = "exact-url"
    NORMALIZED_URL = "normalized-url"
    URL_AND_TITLE = "url-and-title"


TRACKING_PARAM_PREFIXES = ("utm_",)

TITLE_SEPARATORS = (" - ", " | ", " \u2014 ")

KNOWN_SITE_NAMES = frozenset(name.casefold() for name in (
    "GitHub",
    "YouTube",
    "Wikipedia",
    "Reddit",
    "Stack Overflow",
    "LinkedIn",
    "Medium",
    "Hacker News",
    "DEV Community",
    "daily.dev",
    "InfoWorld",
    "Product Hunt",
    "Google Search",
    "Twitter",
    "X",
    "Frontend Masters Blog",
))


def _is_tracking_param(segment: str) -> bool:
    name = urllib.parse.unquote_plus(segment.split("=", 1)[0]).lower()
    return name.startswith(TRACKING_PARAM_PREFIXES)


def normalize_url(url: str) -> str:
    """
    Comparison key for a URL: lower-cased scheme and host, tracking parameters (utm_*) dropped,
    one trailing slash stripped from the path. Other parameters stay verbatim and in order.
    """
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    userinfo, at, hostport = parts.netloc.rpartition("@")
    netloc = userinfo + at + hostport.lower()
    query = "&".join(seg for seg in parts.query.split("&") if not _is_tracking_param(seg)) if parts.query else ""
    path = parts.path[:-1] if parts.path.endswith("/") else parts.path
    return urllib.parse.urlunsplit((parts.scheme.lower(), netloc, path, query, parts.fragment))


def normalize_title(title: str) -> str:
    """NFC, whitespace runs collapsed, with one trailing ' - Site' / ' | Site' / em-dash Site removed when Site is a known site name."""
    text = " ".join(unicodedata.normalize("NFC", title or "").split())
    for sep in TITLE_SEPARATORS:
        head, found, tail = text.rpartition(sep)
        if found and head.strip() and tail.strip().casefold() in KNOWN_SITE_NAMES:
            text = head
            break
    return text.strip()


def dedup_key(tab: Tab, strategy: DedupStrategy, *, normalize_titles: bool = False) -> Hashable:
    if strategy is DedupStrategy.EXACT_URL:
        return tab.url
    if strategy is DedupStrategy.NORMALIZED_URL:
        return normalize_url(tab.url)
    if strategy is DedupStrategy.URL_AND_TITLE:
        title = normalize_title(tab.title) if normalize_titles else tab.title
        return (normalize_url(tab.url), title)
    raise ValueError(f"unsupported dedup strategy: {strategy!r}")


class TabRef(NamedTuple):
    group_id: str
    tab_id: str


@dataclass
class DedupResult:
    strategy: DedupStrategy
    original_count: int
    deduplicated_count: int
    removed: List[TabRef]
    session: TabSession
    affected_groups: List[str]

    def to_report(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "original_count": self.original_count,
            "deduplicated_count": self.deduplicated_count,
            "removed": [{"group_id": r.group_id, "tab_id": r.tab_id} for r in self.removed],
        }


def dedup_session(
    session: TabSession,
    strategy: DedupStrategy = DedupStrategy.NORMALIZED_URL,
    *,
    normalize_titles: bool = False,
) -> DedupResult:
    """
    Collapse tabs sharing a dedup key, keeping the one with the earliest added_at (ties go to
    the first in scan order: group order, then position). Groups are never dropped, only the
    duplicate tabs inside them. Returns a reduced copy; `session` is left untouched.
    """
    best: Dict[Hashable, Tuple[int, int]] = {}
    order = 0
    for group in session.groups:
        for tab in group.tabs:
            key = dedup_key(tab, strategy, normalize_titles=normalize_titles)
            candidate = (int(tab.added_at), order)
            if key not in best or candidate < best[key]:
                best[key] = candidate
            order += 1
    keep = {scan_index for _, scan_index in best.values()}

    removed: List[TabRef] = []
    affected: List[str] = []
    groups: List[TabGroup] = []
    order = 0
    for group in session.groups:
        kept: List[Tab] = []
        for tab in group.tabs:
            if order in keep:
                kept.append(dataclasses.replace(tab, position=len(kept)))
            else:
                removed.append(TabRef(group.id, tab.id))
            order += 1
        if len(kept) != len(group.tabs):
            affected.append(group.id)
        groups.append(dataclasses.replace(group, tabs=kept))

    reduced = dataclasses.replace(session, groups=groups)
    return DedupResult(
        strategy=strategy,
        original_count=session.tab_count(),
        deduplicated_count=reduced.tab_count(),
        removed=removed,
        session=reduced,
        affected_groups=affected,
    )


def apply_dedup(store: TabStore, result: DedupResult, *, logger: Any = None) -> int:
    """Persist a dedup result: rewrite the tabs of every group that lost tabs. Returns groups rewritten."""
    by_id = {g.id: g for g in result.session.groups}
    for group_id in result.affected_groups:
        store.replace_tabs_for_group(group_id, by_id[group_id].tabs)
    if logger is not None:
        logger.info(f"[dedup] rewrote {len(result.affected_groups)} group(s), removed {len(result.removed)} tab(s)")
    return len(result.affected_groups)


# -----------------------------
# Command layer
# -----------------------------

def _log_recovery_summary(result: RecoveryResult, logger: Logger, what: str) -> None:
    s = result.summary()
    logger.notice(f"{what}: recovered {s['groups']} groups, {s['tabs']} tabs ({s['skipped']} skipped entries)")


def _log_insert_summary(stats: InsertStats, logger: Logger) -> None:
    s = stats.summary()
    logger.notice(
        f"imported {s['groups_inserted']} groups, {s['tabs_inserted']} tabs "
        f"(skipped: {s['groups_skipped']} groups, {s['tabs_skipped']} tabs; {s['violations']} violations)"
    )


def _extract_copy(live_dir: Path, source: SessionSource, args: argparse.Namespace, logger: Logger, errors_writer: SafeJsonlWriter) -> RecoveryResult:
    with tempfile.TemporaryDirectory(prefix="tablitz_store_") as tmp:
        snapshot = copy_store(live_dir, Path(tmp))
        logger.info(f"copied {live_dir} -> {snapshot}")
        return extract_from_leveldb(
            snapshot,
            source,
            include_stale=args.include_stale,
            logger=logger,
            errors_writer=errors_writer,
        )


def cmd_recover(args: argparse.Namespace, store_path: Path, logger: Logger, errors_writer: SafeJsonlWriter) -> int:
    browser = Browser(args.browser)
    live_dir = Path(args.db_path).expanduser() if args.db_path else resolve_store_path(browser, args.profile)
    logger.info(f"recovering from {browser.display_name} profile '{args.profile}' at {live_dir}")

    result = _extract_copy(live_dir, BrowserSource(browser, args.profile), args, logger, errors_writer)
    _log_recovery_summary(result, logger, browser.display_name)

    if args.dry_run:
        logger.notice("(dry run: nothing imported)")
        return 0
    if args.out:
        out = Path(args.out).expanduser()
        save_session(result.session, out)
        logger.notice(f"saved to {out}")
        return 0
    with TabStore(store_path) as store:
        _log_insert_summary(store.insert_session(result.session, logger=logger, errors_writer=errors_writer), logger)
    return 0


def cmd_import(args: argparse.Namespace, store_path: Path, logger: Logger, errors_writer: SafeJsonlWriter) -> int:
    if args.from_export:
        path = Path(args.from_export).expanduser()
        result = parse_export_file(path, logger=logger, errors_writer=errors_writer)
        _log_recovery_summary(result, logger, f"{path.name} ({result.format})")
        session = result.session
    elif args.from_leveldb:
        path = Path(args.from_leveldb).expanduser()
        result = _extract_copy(path, BrowserSource(Browser(args.browser), args.profile), args, logger, errors_writer)
        _log_recovery_summary(result, logger, str(path))
        session = result.session
    else:
        path = Path(args.from_native).expanduser()
        session = load_session(path)
        logger.notice(f"{path.name}: loaded {len(session.groups)} groups, {session.tab_count()} tabs")

    with TabStore(store_path) as store:
        _log_insert_summary(store.insert_session(session, logger=logger, errors_writer=errors_writer), logger)
    return 0


def cmd_dedup(args: argparse.Namespace, store_path: Path, logger: Logger) -> int:
    with TabStore(store_path) as store:
        result = dedup_session(
            store.read_session(),
            DedupStrategy(args.strategy),
            normalize_titles=args.normalize_titles,
        )
        logger.notice(
            f"dedup ({result.strategy.value}): {result.original_count} -> {result.deduplicated_count} tabs "
            f"({len(result.removed)} removed)"
        )
        if args.dry_run:
            logger.notice("(dry run: nothing saved)")
            return 0
        rewritten = apply_dedup(store, result, logger=logger)
    logger.notice(f"persisted deduplicated tabs ({rewritten} groups updated)")
    return 0


def cmd_detect(logger: Logger) -> int:
    stores = detect_stores()
    if not stores:
        logger.notice("no OneTab stores found")
        return 0
    for browser, profile, path in stores:
        logger.notice(f"{browser.display_name:<20} {profile:<12} {path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tablitz", description="Recover OneTab tab groups into one deduplicated store.")
    ap.add_argument("--store", default="", help="SQLite store path (default: <data dir>/tablitz.db; data dir honours $TABLITZ_HOME).")
    ap.add_argument("--log-dir", default="", help="Directory for run_log.txt and errors.jsonl (default: <data dir>/logs).")
    ap.add_argument("--no-verbose", action="store_true", help="Disable console logging (still writes run_log.txt).")
    ap.add_argument("--self-check", action="store_true", help="Write <log dir>/self_check.json describing the environment.")

    browsers = [b.value for b in Browser]
    sub = ap.add_subparsers(dest="command")

    rec = sub.add_parser("recover", help="Recover from a browser's OneTab LevelDB store (read from a copy).")
    rec.add_argument("--browser", choices=browsers, default="chrome")
    rec.add_argument("--profile", default="Default")
    rec.add_argument("--db-path", default="", help="LevelDB directory (default: resolved from --browser/--profile).")
    rec.add_argument("--out", default="", help="Write the recovered session as native JSON instead of importing it.")
    rec.add_argument("--dry-run", action="store_true", help="Report what would be recovered; write nothing.")
    rec.add_argument("--include-stale", action="store_true", help="Also read superseded versions of each LevelDB key.")

    imp = sub.add_parser("import", help="Import a OneTab export, a LevelDB directory, or a native JSON session.")
    src = imp.add_mutually_exclusive_group(required=True)
    src.add_argument("--from-export", default="", help="OneTab pipe or markdown export file.")
    src.add_argument("--from-leveldb", default="", help="OneTab LevelDB directory (copied before reading).")
    src.add_argument("--from-native", default="", help="Session JSON written by 'recover --out'.")
    imp.add_argument("--browser", choices=browsers, default="chrome", help="Provenance for --from-leveldb.")
    imp.add_argument("--profile", default="Default", help="Provenance for --from-leveldb.")
    imp.add_argument("--include-stale", action="store_true")

    dd = sub.add_parser("dedup", help="Remove duplicate tabs across the store.")
    dd.add_argument("--strategy", choices=[s.value for s in DedupStrategy], default=DedupStrategy.NORMALIZED_URL.value)
    dd.add_argument("--normalize-titles", action="store_true", help="Compare titles without known site suffixes (url-and-title).")
    dd.add_argument("--dry-run", action="store_true", help="Report what would be removed; write nothing.")

    sub.add_parser("detect", help="List OneTab stores found for the default profiles.")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    data_dir = default_data_dir()
    log_dir = Path(args.log_dir).expanduser() if args.log_dir else data_dir / "logs"
    safe_mkdir(log_dir)
    global _FATAL_OUT_DIR, _FATAL_ERRORS_PATH
    _FATAL_OUT_DIR = log_dir

    if args.self_check:
        write_json(log_dir / "self_check.json", build_self_check())
        if not args.command:
            return 0
    elif not args.command:
        ap.print_usage(sys.stderr)
        return 2

    logger = Logger(log_dir / "run_log.txt", verbose=(not args.no_verbose))
    errors_writer = SafeJsonlWriter(log_dir)
    _FATAL_ERRORS_PATH = errors_writer.primary_path
    store_path = Path(args.store).expanduser() if args.store else data_dir / DEFAULT_DB_NAME

    try:
        if args.command == "recover":
            return cmd_recover(args, store_path, logger, errors_writer)
        if args.command == "import":
            return cmd_import(args, store_path, logger, errors_writer)
        if args.command == "dedup":
            return cmd_dedup(args, store_path, logger)
        return cmd_detect(logger)
    except TablitzError as e:
        log_error_event(errors_writer, None, stage=args.command, exc=e)
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        if errors_writer.count or errors_writer.dropped:
            logger.notice(f"{errors_writer.count} skipped-entry event(s) written to {errors_writer.primary_path}")


def run() -> None:
    try:
        exit_code = main()
    except Exception as exc:
        exit_code = capture_fatal_exception(exc, out_dir=_FATAL_OUT_DIR, errors_path=_FATAL_ERRORS_PATH)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    run()
