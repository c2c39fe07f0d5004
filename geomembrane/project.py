"""
Project model - groups, entries and the in-memory store that owns them.

The store is the single place where raw input (form fields, JSON files,
console prompts) enters the data model. Every numeric field is coerced there,
so the geometry code only ever sees clean floats.

Records are frozen dataclasses addressed by stable ids. `ProjectStore.snapshot()`
hands out an immutable view that can be aggregated, exported or sent for
analysis while the store keeps changing.
"""

import base64
import json
import logging
import math
import threading
import uuid
from dataclasses import dataclass, replace

from geomembrane.geometry import (
    DEFAULT_SLOPE_ENCODING,
    EntryCategory,
    SlopeEncoding,
    SurfaceProfile,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Creation defaults
# ---------------------------------------------------------------------------

DEFAULT_PROJECT_NAME = "New project"
DEFAULT_CLIENT = "Client"
DEFAULT_SURFACE_LABEL = "New surface"
DEFAULT_ANCHORAGE_LABEL = "New anchorage"
DEFAULT_SURFACE_PROFILE = SurfaceProfile.SLOPED
DEFAULT_SLOPE_MAGNITUDE = 2.0
DEFAULT_DEVELOPED_WIDTH = 0.5

SURFACE_FIELDS = ("profile", "projected_area", "slope_encoding", "slope_magnitude")
ANCHORAGE_FIELDS = ("run_length", "developed_width")


# ---------------------------------------------------------------------------
# Input coercion
# ---------------------------------------------------------------------------

def as_float(value, default: float = 0.0) -> float:
    """Coerce raw input to float; missing, blank or non-numeric gives `default`."""
    if value is None:
        return default
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
        if not value:
            return default
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def as_length(value, default: float = 0.0) -> float:
    """Like `as_float`, but negative measurements are clamped to zero."""
    return max(as_float(value, default), 0.0)


def as_enum(value, enum_cls, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def parse_category(value) -> EntryCategory:
    """Strict category parsing, used when a new entry is created."""
    if isinstance(value, EntryCategory):
        return value
    try:
        return EntryCategory(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown entry category: {value!r}") from None


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Attachment:
    """An evidentiary photo attached to an entry."""
    data: bytes
    mime_type: str = "image/jpeg"
    filename: str = ""


@dataclass(frozen=True)
class Entry:
    id: str
    category: EntryCategory
    label: str

    # --- Surface (category == surface) ---
    profile: SurfaceProfile | None = None
    projected_area: float = 0.0
    slope_encoding: SlopeEncoding | None = None
    slope_magnitude: float = 0.0

    # --- Anchorage (category == anchorage) ---
    run_length: float = 0.0
    developed_width: float = 0.0

    attachments: tuple[Attachment, ...] = ()

    @property
    def is_surface(self) -> bool:
        return self.category == EntryCategory.SURFACE

    @property
    def is_sloped(self) -> bool:
        return self.is_surface and self.profile == SurfaceProfile.SLOPED


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    entries: tuple[Entry, ...] = ()


@dataclass(frozen=True)
class ProjectSnapshot:
    name: str
    client: str
    groups: tuple[Group, ...] = ()

    def iter_entries(self):
        """Yield (group, entry) pairs in display order."""
        for group in self.groups:
            for entry in group.entries:
                yield group, entry


def new_surface(label: str | None = None, **fields) -> Entry:
    """Build a surface entry with creation defaults, coercing the given fields."""
    entry = Entry(
        id=_new_id(),
        category=EntryCategory.SURFACE,
        label=DEFAULT_SURFACE_LABEL,
        profile=DEFAULT_SURFACE_PROFILE,
        projected_area=0.0,
        slope_encoding=DEFAULT_SLOPE_ENCODING,
        slope_magnitude=DEFAULT_SLOPE_MAGNITUDE,
    )
    return apply_changes(entry, label=label, **fields)


def new_anchorage(label: str | None = None, **fields) -> Entry:
    """Build an anchorage entry with creation defaults, coercing the given fields."""
    entry = Entry(
        id=_new_id(),
        category=EntryCategory.ANCHORAGE,
        label=DEFAULT_ANCHORAGE_LABEL,
        run_length=0.0,
        developed_width=DEFAULT_DEVELOPED_WIDTH,
    )
    return apply_changes(entry, label=label, **fields)


def apply_changes(entry: Entry, **changes) -> Entry:
    """
    Return a copy of `entry` with sanitized changes applied.

    `None` values are skipped. Fields belonging to the other category are
    ignored, as are `id`, `category` and `attachments`.
    """
    allowed = SURFACE_FIELDS if entry.is_surface else ANCHORAGE_FIELDS
    clean = {}
    for key, value in changes.items():
        if value is None:
            continue
        if key == "label":
            clean["label"] = str(value)
        elif key not in allowed:
            if key in SURFACE_FIELDS or key in ANCHORAGE_FIELDS:
                logger.debug(f"Ignoring {key} on {entry.category.value} entry {entry.id}")
            continue
        elif key == "profile":
            clean[key] = as_enum(value, SurfaceProfile, entry.profile or DEFAULT_SURFACE_PROFILE)
        elif key == "slope_encoding":
            clean[key] = as_enum(value, SlopeEncoding, DEFAULT_SLOPE_ENCODING)
        elif key == "slope_magnitude":
            clean[key] = as_float(value)
        else:
            clean[key] = as_length(value)
    return replace(entry, **clean)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ProjectStore:
    """
    Session-scoped owner of one project's groups and entries.

    Every read and mutation holds the store lock, so concurrent web requests
    see either the state before a change or the state after it.
    """

    def __init__(self, name: str = DEFAULT_PROJECT_NAME, client: str = DEFAULT_CLIENT):
        self.name = name
        self.client = client
        self._groups: dict[str, Group] = {}
        self._order: list[str] = []
        self._lock = threading.RLock()

    # -- project info --

    def set_info(self, name: str | None = None, client: str | None = None) -> None:
        with self._lock:
            if name is not None:
                self.name = name
            if client is not None:
                self.client = client

    # -- groups --

    def get_group(self, group_id: str) -> Group:
        with self._lock:
            try:
                return self._groups[group_id]
            except KeyError:
                raise KeyError(f"Unknown group: {group_id}") from None

    def add_group(self, name: str | None = None) -> Group:
        with self._lock:
            group = Group(id=_new_id(), name=name or f"Group {len(self._order) + 1}")
            self._groups[group.id] = group
            self._order.append(group.id)
            return group

    def rename_group(self, group_id: str, name: str) -> Group:
        with self._lock:
            group = replace(self.get_group(group_id), name=name)
            self._groups[group_id] = group
            return group

    def remove_group(self, group_id: str) -> None:
        with self._lock:
            self.get_group(group_id)
            self._order.remove(group_id)
            del self._groups[group_id]

    def insert_group(self, group: Group) -> Group:
        """Add an already-built group (used when loading a saved project)."""
        with self._lock:
            if group.id in self._groups:
                raise ValueError(f"Duplicate group id: {group.id}")
            self._groups[group.id] = group
            self._order.append(group.id)
            return group

    # -- entries --

    def get_entry(self, group_id: str, entry_id: str) -> Entry:
        for entry in self.get_group(group_id).entries:
            if entry.id == entry_id:
                return entry
        raise KeyError(f"Unknown entry: {entry_id}")

    def add_entry(self, group_id: str, category, **fields) -> Entry:
        category = parse_category(category)
        if category == EntryCategory.SURFACE:
            entry = new_surface(**fields)
        else:
            entry = new_anchorage(**fields)
        with self._lock:
            group = self.get_group(group_id)
            self._groups[group_id] = replace(group, entries=group.entries + (entry,))
        return entry

    def update_entry(self, group_id: str, entry_id: str, **changes) -> Entry:
        with self._lock:
            updated = apply_changes(self.get_entry(group_id, entry_id), **changes)
            self._replace_entry(group_id, updated)
            return updated

    def remove_entry(self, group_id: str, entry_id: str) -> None:
        with self._lock:
            self.get_entry(group_id, entry_id)
            group = self._groups[group_id]
            entries = tuple(e for e in group.entries if e.id != entry_id)
            self._groups[group_id] = replace(group, entries=entries)

    def attach(self, group_id: str, entry_id: str, *attachments: Attachment) -> Entry:
        """Append one or more attachments to an entry in a single step."""
        with self._lock:
            entry = self.get_entry(group_id, entry_id)
            updated = replace(entry, attachments=entry.attachments + attachments)
            self._replace_entry(group_id, updated)
            return updated

    def _replace_entry(self, group_id: str, entry: Entry) -> None:
        group = self._groups[group_id]
        entries = tuple(entry if e.id == entry.id else e for e in group.entries)
        self._groups[group_id] = replace(group, entries=entries)

    # -- views --

    def snapshot(self) -> ProjectSnapshot:
        with self._lock:
            return ProjectSnapshot(
                name=self.name,
                client=self.client,
                groups=tuple(self._groups[gid] for gid in self._order),
            )

    @classmethod
    def from_snapshot(cls, snapshot: ProjectSnapshot) -> "ProjectStore":
        store = cls(name=snapshot.name, client=snapshot.client)
        for group in snapshot.groups:
            store.insert_group(group)
        return store


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_project(project: ProjectSnapshot) -> list[str]:
    """
    Validate a project and return a list of warning messages.
    Does not block anything, just flags suspicious values.
    """
    warnings = []

    if not project.groups:
        warnings.append("Project has no groups.")

    for group in project.groups:
        if not group.entries:
            warnings.append(f"Group '{group.name}' has no entries.")

        for entry in group.entries:
            where = f"'{group.name}' / '{entry.label}'"
            if entry.is_surface:
                if entry.projected_area <= 0:
                    warnings.append(f"{where}: projected area is zero.")
                if entry.is_sloped:
                    encoding = entry.slope_encoding or DEFAULT_SLOPE_ENCODING
                    if entry.slope_magnitude <= 0:
                        warnings.append(f"{where}: slope is zero or negative, surface counted as flat.")
                    elif encoding == SlopeEncoding.PERCENTAGE and entry.slope_magnitude > 100:
                        warnings.append(f"{where}: slope of {entry.slope_magnitude:g}% is steeper than 45°.")
                    elif encoding == SlopeEncoding.RATIO and entry.slope_magnitude < 1:
                        warnings.append(f"{where}: slope of {entry.slope_magnitude:g}:1 is steeper than 45°.")
            else:
                if entry.run_length <= 0:
                    warnings.append(f"{where}: anchorage run length is zero.")
                if entry.developed_width <= 0:
                    warnings.append(f"{where}: anchorage developed width is zero.")

    return warnings


# ---------------------------------------------------------------------------
# JSON import / export
# ---------------------------------------------------------------------------

def entry_to_dict(entry: Entry, include_attachments: bool = True) -> dict:
    data = {
        "id": entry.id,
        "category": entry.category.value,
        "label": entry.label,
    }
    if entry.is_surface:
        data.update({
            "profile": entry.profile.value if entry.profile else None,
            "projected_area": entry.projected_area,
            "slope_encoding": entry.slope_encoding.value if entry.slope_encoding else None,
            "slope_magnitude": entry.slope_magnitude,
        })
    else:
        data.update({
            "run_length": entry.run_length,
            "developed_width": entry.developed_width,
        })
    if include_attachments:
        data["attachments"] = [
            {
                "filename": a.filename,
                "mime_type": a.mime_type,
                "data": base64.b64encode(a.data).decode("ascii"),
            }
            for a in entry.attachments
        ]
    else:
        data["attachment_count"] = len(entry.attachments)
    return data


def project_to_dict(project: ProjectSnapshot, include_attachments: bool = True) -> dict:
    return {
        "name": project.name,
        "client": project.client,
        "groups": [
            {
                "id": group.id,
                "name": group.name,
                "entries": [entry_to_dict(e, include_attachments) for e in group.entries],
            }
            for group in project.groups
        ],
    }


def _entry_from_dict(data: dict, seen_ids: set[str]) -> Entry:
    category = parse_category(data.get("category", ""))
    fields = {k: data.get(k) for k in ("label",) + SURFACE_FIELDS + ANCHORAGE_FIELDS}
    if category == EntryCategory.SURFACE:
        entry = new_surface(**fields)
    else:
        entry = new_anchorage(**fields)

    attachments = []
    for raw in data.get("attachments", []) or []:
        try:
            payload = base64.b64decode(raw.get("data", ""), validate=True)
        except (ValueError, TypeError, AttributeError):
            logger.warning(f"Skipping unreadable attachment on entry '{entry.label}'")
            continue
        attachments.append(Attachment(
            data=payload,
            mime_type=raw.get("mime_type") or "image/jpeg",
            filename=raw.get("filename") or "",
        ))

    entry_id = str(data.get("id") or entry.id)
    if entry_id in seen_ids:
        logger.warning(f"Duplicate entry id '{entry_id}' on '{entry.label}', assigning a new one")
        entry_id = _new_id()
    seen_ids.add(entry_id)
    return replace(entry, id=entry_id, attachments=tuple(attachments))


def project_from_dict(data: dict) -> ProjectSnapshot:
    """Build a snapshot from parsed JSON, substituting defaults for missing fields."""
    groups = []
    seen: set[str] = set()
    entry_ids: set[str] = set()
    for index, raw_group in enumerate(data.get("groups", []) or [], start=1):
        entries = tuple(_entry_from_dict(e, entry_ids) for e in raw_group.get("entries", []) or [])
        group_id = str(raw_group.get("id") or _new_id())
        if group_id in seen:
            group_id = _new_id()
        seen.add(group_id)
        groups.append(Group(
            id=group_id,
            name=str(raw_group.get("name") or f"Group {index}"),
            entries=entries,
        ))
    return ProjectSnapshot(
        name=str(data.get("name") or DEFAULT_PROJECT_NAME),
        client=str(data.get("client") or DEFAULT_CLIENT),
        groups=tuple(groups),
    )


def load_project(json_path: str) -> ProjectSnapshot:
    """Load a project saved with `save_project`."""
    with open(json_path, "r", encoding="utf-8") as f:
        return project_from_dict(json.load(f))


def save_project(project: ProjectSnapshot, output_path: str) -> None:
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(project_to_dict(project), f, indent=2, ensure_ascii=False)
    logger.info(f"Project saved to: {output_path}")
