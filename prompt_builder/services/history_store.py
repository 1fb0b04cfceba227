"""Append-only prompt history with day-keyed archives and image attachments.

Layout under ``base_dir``::

    history.json                 active log (newest entries, capped)
    History.html                 active page, polls for new copies
    History_YYYYMMDD.json/.html  archives, one per day-key
    images/YYYY/MM/...           uploaded attachments

Every JSON write goes through :func:`atomic_write_json`, so an interrupted
write never leaves a truncated log behind.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import NotFoundError, StorageError, ValidationError
from .history_views import build_history_page
from .storage import atomic_write_bytes, atomic_write_json, atomic_write_text

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ACTIVE_ENTRIES = 300
MAX_IMAGE_BYTES = 20 * 1024 * 1024
ALLOWED_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

ACTIVE_LOG_NAME = "history.json"
ACTIVE_PAGE_NAME = "History.html"
IMAGES_DIR = "images"

_ID_STAMP_FORMAT = "%Y%m%d_%H%M%S"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"
_ID_PATTERN = re.compile(r"^(\d{8})_(\d{6})_(\d+)$")
_ARCHIVE_LOG_PATTERN = re.compile(r"^History_(\d{8})\.json$")

_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


class CorruptLogError(StorageError):
    """Raised when a log file exists but is not a JSON array."""


@dataclass
class HistoryEntry:
    id: str
    ts: str
    prompt: str
    images: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "ts": self.ts, "prompt": self.prompt, "images": list(self.images)}

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["HistoryEntry"]:
        """Normalize one decoded JSON value; ``None`` means drop it."""

        if not isinstance(raw, dict):
            return None
        entry_id = _clean_text(raw.get("id"))
        ts = _clean_text(raw.get("ts"))
        prompt = _clean_text(raw.get("prompt"))
        if not entry_id or not ts or not prompt:
            return None

        images: List[str] = []
        raw_images = raw.get("images")
        if isinstance(raw_images, list):
            images = [_clean_text(value) for value in raw_images if _clean_text(value)]
        # Single image per entry; legacy lists keep only the latest upload.
        return cls(id=entry_id, ts=ts, prompt=prompt, images=images[-1:])


class HistoryStore:
    def __init__(
        self,
        base_dir: Path | str,
        max_active_entries: int = DEFAULT_MAX_ACTIVE_ENTRIES,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.base_dir = Path(base_dir)
        self.max_active_entries = max_active_entries if max_active_entries > 0 else DEFAULT_MAX_ACTIVE_ENTRIES
        self.active_log_path = self.base_dir / ACTIVE_LOG_NAME
        self.active_page_path = self.base_dir / ACTIVE_PAGE_NAME
        self.images_root = self.base_dir / IMAGES_DIR
        self._clock = clock or datetime.now
        self._ensure_files()

    # public operations --------------------------------------------------

    def append(self, prompt: str) -> HistoryEntry:
        cleaned = (prompt or "").strip()
        if not cleaned:
            raise ValidationError("prompt is empty")

        entries = self._read_entries(self.active_log_path)
        now = self._clock()
        entry = HistoryEntry(
            id=self._next_entry_id(now, entries),
            ts=now.strftime(_TS_FORMAT),
            prompt=cleaned,
        )
        entries.append(entry)
        kept = self._rotate_if_needed(entries)
        self._write_entries(self.active_log_path, kept)
        LOGGER.debug("Appended history entry %s", entry.id)
        return entry

    def delete(self, history_id: str) -> bool:
        history_id = (history_id or "").strip()
        if not history_id:
            return False

        found = self._find_entry_container(history_id)
        if found is None:
            return False
        path, entries, _ = found
        self._write_entries(path, [entry for entry in entries if entry.id != history_id])
        LOGGER.debug("Deleted history entry %s from %s", history_id, path.name)
        return True

    def update_prompt(self, history_id: str, prompt: str) -> bool:
        cleaned = (prompt or "").strip()
        if not cleaned:
            raise ValidationError("prompt is empty")

        found = self._find_entry_container((history_id or "").strip())
        if found is None:
            return False
        path, entries, index = found
        entries[index].prompt = cleaned
        self._write_entries(path, entries)
        return True

    def append_image(self, history_id: str, source_name: str, data: bytes) -> str:
        """Store ``data`` as the single image of ``history_id``.

        Returns the POSIX style path relative to ``base_dir``. A previously
        attached file stays on disk; only the reference is replaced.
        """

        ext = PurePosixPath((source_name or "").replace("\\", "/")).suffix.lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS:
            raise ValidationError(f"unsupported file extension: {ext or '(none)'}")
        if len(data) > MAX_IMAGE_BYTES:
            raise ValidationError("file size exceeds 20MB")

        history_id = (history_id or "").strip()
        found = self._find_entry_container(history_id) if history_id else None
        if found is None:
            raise NotFoundError(f"history id not found: {history_id}")
        path, entries, index = found

        rel_path = self._next_image_rel_path(self._image_stamp(entries[index].id), ext)
        atomic_write_bytes(self.base_dir.joinpath(*rel_path.parts), data)

        entries[index].images = [rel_path.as_posix()]
        self._write_entries(path, entries)
        LOGGER.debug("Attached %s to history entry %s", rel_path, history_id)
        return rel_path.as_posix()

    def read_image(self, image_path: str) -> Tuple[bytes, str]:
        cleaned = (image_path or "").strip()
        if not cleaned:
            raise ValidationError("image path is empty")

        windows_path = PureWindowsPath(cleaned)
        if cleaned.startswith(("/", "\\")) or windows_path.drive or windows_path.is_absolute():
            raise ValidationError("absolute image path is not allowed")

        parts = cleaned.replace("\\", "/").split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ValidationError("invalid image path")
        if len(parts) < 2 or parts[0] != IMAGES_DIR:
            raise ValidationError("image path is out of scope")

        target = self.base_dir.joinpath(*parts)
        if not target.resolve().is_relative_to(self.images_root.resolve()):
            raise ValidationError("image path is out of scope")
        if not target.is_file():
            raise NotFoundError(f"image not found: {cleaned}")

        try:
            data = target.read_bytes()
        except OSError as exc:
            raise StorageError("failed to read image", target) from exc
        return data, image_content_type(target.name)

    def regenerate_views(self, server_port: int, *, confirm_delete: bool = True) -> None:
        """Rewrite ``History.html`` and one page per archive."""

        archive_keys = self.archive_date_keys()
        api_base = f"http://127.0.0.1:{server_port}"

        active_page = build_history_page(
            self._read_entries(self.active_log_path),
            title="Prompt History",
            api_base=api_base,
            archive_date_keys=archive_keys,
            confirm_delete=confirm_delete,
            poll_revision=True,
        )
        atomic_write_text(self.active_page_path, active_page)

        for date_key in archive_keys:
            archive_page = build_history_page(
                self._read_entries(self._archive_log_path(date_key)),
                title=f"Prompt History Archive {date_key}",
                    api_base=api_base,
                confirm_delete=confirm_delete,
            )
            atomic_write_text(self._archive_page_path(date_key), archive_page)

    # read helpers -------------------------------------------------------

    def entries(self) -> List[HistoryEntry]:
        return self._read_entries(self.active_log_path)

    def archive_entries(self, date_key: str) -> List[HistoryEntry]:
        path = self._archive_log_path(date_key)
        return self._read_entries(path) if path.exists() else []

    def find(self, history_id: str) -> Optional[HistoryEntry]:
        found = self._find_entry_container((history_id or "").strip())
        if found is None:
            return None
        _, entries, index = found
        return entries[index]

    def archive_date_keys(self) -> List[str]:
        """Archive day-keys, newest first."""

        keys = []
        for path in self._archive_log_paths():
            match = _ARCHIVE_LOG_PATTERN.match(path.name)
            if match:
                keys.append(match.group(1))
        return keys

    # internals ----------------------------------------------------------

    def _ensure_files(self) -> None:
        for directory in (self.base_dir, self.images_root):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError("failed to create directory", directory) from exc

        if not self.active_log_path.exists():
            self._write_entries(self.active_log_path, [])
            return

        try:
            entries = self._read_entries(self.active_log_path)
        except CorruptLogError:
            backup = self._broken_backup_path()
            LOGGER.warning(
                "History log %s is unreadable; moved it to %s and started a new log",
                self.active_log_path,
                backup.name,
            )
            try:
                self.active_log_path.rename(backup)
            except OSError as exc:
                raise StorageError("failed to back up broken history", self.active_log_path) from exc
            self._write_entries(self.active_log_path, [])
            return

        self._write_entries(self.active_log_path, entries)

    def _broken_backup_path(self) -> Path:
        stamp = self._clock().strftime(_ID_STAMP_FORMAT)
        candidate = self.base_dir / f"history.broken.{stamp}.json"
        counter = 2
        while candidate.exists():
            candidate = self.base_dir / f"history.broken.{stamp}_{counter}.json"
            counter += 1
        return candidate

    def _archive_log_path(self, date_key: str) -> Path:
        return self.base_dir / f"History_{date_key}.json"

    def _archive_page_path(self, date_key: str) -> Path:
        return self.base_dir / f"History_{date_key}.html"

    def _archive_log_paths(self) -> List[Path]:
        try:
            candidates = [path for path in self.base_dir.iterdir() if _ARCHIVE_LOG_PATTERN.match(path.name)]
        except OSError as exc:
            raise StorageError("failed to list history directory", self.base_dir) from exc
        return sorted(candidates, key=lambda path: path.name, reverse=True)

    def _rotate_if_needed(self, entries: List[HistoryEntry]) -> List[HistoryEntry]:
        overflow = len(entries) - self.max_active_entries
        if overflow <= 0:
            return entries

        moving, kept = entries[:overflow], entries[overflow:]
        grouped: Dict[str, List[HistoryEntry]] = {}
        for entry in moving:
            grouped.setdefault(self._date_key(entry), []).append(entry)

        for date_key in sorted(grouped):
            path = self._archive_log_path(date_key)
            merged = {entry.id: entry for entry in (self._read_entries(path) if path.exists() else [])}
            for entry in grouped[date_key]:
                merged[entry.id] = entry
            self._write_entries(path, [merged[entry_id] for entry_id in sorted(merged)])
            LOGGER.info("Archived %d history entries into %s", len(grouped[date_key]), path.name)

        return kept

    def _find_entry_container(self, history_id: str) -> Optional[Tuple[Path, List[HistoryEntry], int]]:
        if not history_id:
            return None
        for path in [self.active_log_path, *self._archive_log_paths()]:
            if not path.exists():
                continue
            entries = self._read_entries(path)
            for index, entry in enumerate(entries):
                if entry.id == history_id:
                    return path, entries, index
        return None

    def _date_key(self, entry: HistoryEntry) -> str:
        if len(entry.id) >= 8 and entry.id[:8].isdigit():
            return entry.id[:8]
        digits = "".join(ch for ch in entry.ts if ch.isdigit())
        if len(digits) >= 8:
            return digits[:8]
        return self._clock().strftime("%Y%m%d")

    def _next_entry_id(self, now: datetime, entries: List[HistoryEntry]) -> str:
        base = now.strftime(_ID_STAMP_FORMAT)
        # Entries rotated out during the same second live in today's archive.
        candidates = entries + self.archive_entries(base[:8])

        used = set()
        for entry in candidates:
            match = _ID_PATTERN.match(entry.id)
            if match and f"{match.group(1)}_{match.group(2)}" == base:
                used.add(int(match.group(3)))

        seq = 1
        while seq in used:
            seq += 1
        return f"{base}_{seq:04d}"

    def _image_stamp(self, history_id: str) -> datetime:
        match = _ID_PATTERN.match(history_id)
        if match:
            try:
                return datetime.strptime(f"{match.group(1)}_{match.group(2)}", _ID_STAMP_FORMAT)
            except ValueError:
                pass
        return self._clock()

    def _next_image_rel_path(self, stamp: datetime, ext: str) -> PurePosixPath:
        year, month = stamp.strftime("%Y"), stamp.strftime("%m")
        base = stamp.strftime(_ID_STAMP_FORMAT)
        month_dir = self.images_root / year / month
        seq = 1
        while (month_dir / f"{base}_{seq:02d}{ext}").exists():
            seq += 1
        return PurePosixPath(IMAGES_DIR, year, month, f"{base}_{seq:02d}{ext}")

    def _read_entries(self, path: Path) -> List[HistoryEntry]:
        try:
            raw_text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptLogError("history file is not UTF-8", path) from exc
        except OSError as exc:
            raise StorageError("failed to read history file", path) from exc

        try:
            raw = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise CorruptLogError(f"failed to parse JSON ({exc.msg})", path) from exc
        if not isinstance(raw, list):
            raise CorruptLogError("history file is not a JSON array", path)

        entries = []
        for item in raw:
            entry = HistoryEntry.from_raw(item)
            if entry is not None:
                entries.append(entry)
        return entries

    def _write_entries(self, path: Path, entries: List[HistoryEntry]) -> None:
        atomic_write_json(path, [entry.to_dict() for entry in entries])


def image_content_type(file_name: str) -> str:
    return _CONTENT_TYPES.get(PurePosixPath(file_name).suffix.lower(), "application/octet-stream")


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
