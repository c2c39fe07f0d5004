"""
Tests for the project store, input coercion, validation and JSON round trip.
"""

import sys
import threading
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from geomembrane.geometry import (
    DEFAULT_SLOPE_ENCODING,
    EntryCategory,
    SlopeEncoding,
    SurfaceProfile,
    aggregate,
)
from geomembrane.project import (
    Attachment,
    ProjectStore,
    as_float,
    as_length,
    load_project,
    new_anchorage,
    new_surface,
    project_from_dict,
    project_to_dict,
    save_project,
    validate_project,
)


@pytest.fixture
def store():
    s = ProjectStore(name="Reservoir A", client="Water Board")
    group = s.add_group("Basin")
    s.add_entry(group.id, "surface", label="Floor", profile="flat", projected_area=120)
    s.add_entry(group.id, "anchorage", label="Crest", run_length=44, developed_width=1.2)
    return s


class TestCoercion:
    """Tests for raw input coercion."""

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", [], "nan", "inf"])
    def test_bad_values_become_zero(self, raw):
        assert as_float(raw) == 0.0

    def test_numbers_and_strings(self):
        assert as_float("12.5") == 12.5
        assert as_float(" 3 ") == 3.0
        assert as_float("2,5") == 2.5
        assert as_float(7) == 7.0

    def test_custom_default(self):
        assert as_float("", default=0.5) == 0.5

    def test_lengths_are_clamped(self):
        assert as_length("-3") == 0.0
        assert as_length("3") == 3.0


class TestEntries:
    """Tests for entry creation and updates."""

    def test_surface_defaults(self):
        entry = new_surface()
        assert entry.category == EntryCategory.SURFACE
        assert entry.profile == SurfaceProfile.SLOPED
        assert entry.slope_encoding == DEFAULT_SLOPE_ENCODING == SlopeEncoding.RATIO
        assert entry.slope_magnitude == 2.0
        assert entry.projected_area == 0.0
        assert entry.attachments == ()

    def test_anchorage_defaults(self):
        entry = new_anchorage()
        assert entry.category == EntryCategory.ANCHORAGE
        assert entry.run_length == 0.0
        assert entry.developed_width == 0.5
        assert entry.profile is None

    def test_ids_are_unique(self):
        assert new_surface().id != new_surface().id

    def test_surface_ignores_anchorage_fields(self):
        entry = new_surface(projected_area=10, run_length=99, developed_width=3)
        assert entry.run_length == 0.0
        assert entry.developed_width == 0.0

    def test_anchorage_ignores_surface_fields(self):
        entry = new_anchorage(run_length=4, projected_area=50, profile="flat")
        assert entry.projected_area == 0.0
        assert entry.profile is None

    def test_unknown_enum_values_fall_back(self):
        entry = new_surface(slope_encoding="degrees", profile="curved")
        assert entry.slope_encoding == SlopeEncoding.RATIO
        assert entry.profile == SurfaceProfile.SLOPED

    def test_enum_values_are_case_insensitive(self):
        entry = new_surface(slope_encoding="PERCENTAGE", profile="Flat")
        assert entry.slope_encoding == SlopeEncoding.PERCENTAGE
        assert entry.profile == SurfaceProfile.FLAT


class TestProjectStore:
    """Tests for ProjectStore mutations and snapshots."""

    def test_default_group_names(self):
        s = ProjectStore()
        assert s.add_group().name == "Group 1"
        assert s.add_group().name == "Group 2"

    def test_snapshot_keeps_order(self, store):
        second = store.add_group("Ramp")
        names = [g.name for g in store.snapshot().groups]
        assert names == ["Basin", "Ramp"]
        assert store.snapshot().groups[1].id == second.id

    def test_snapshot_is_not_affected_by_later_changes(self, store):
        before = store.snapshot()
        group = before.groups[0]
        store.rename_group(group.id, "Renamed")
        store.add_entry(group.id, "surface")
        assert before.groups[0].name == "Basin"
        assert len(before.groups[0].entries) == 2
        assert len(store.snapshot().groups[0].entries) == 3

    def test_update_entry_sanitizes(self, store):
        group = store.snapshot().groups[0]
        floor = group.entries[0]
        updated = store.update_entry(group.id, floor.id, projected_area="", label="Floor B",
                                     run_length="12")
        assert updated.projected_area == 0.0
        assert updated.run_length == 0.0
        assert updated.label == "Floor B"
        assert updated.id == floor.id
        assert updated.category == EntryCategory.SURFACE

    def test_update_entry_cannot_change_identity(self, store):
        group = store.snapshot().groups[0]
        floor = group.entries[0]
        updated = store.update_entry(group.id, floor.id, id="other", category="anchorage")
        assert updated.id == floor.id
        assert updated.category == EntryCategory.SURFACE

    def test_remove_entry_and_group(self, store):
        group = store.snapshot().groups[0]
        store.remove_entry(group.id, group.entries[0].id)
        assert len(store.snapshot().groups[0].entries) == 1
        store.remove_group(group.id)
        assert store.snapshot().groups == ()

    def test_attach_appends(self, store):
        group = store.snapshot().groups[0]
        entry = group.entries[0]
        store.attach(group.id, entry.id, Attachment(b"one", "image/png", "a.png"))
        store.attach(group.id, entry.id, Attachment(b"two", "image/png", "b.png"))
        files = [a.filename for a in store.get_entry(group.id, entry.id).attachments]
        assert files == ["a.png", "b.png"]

    def test_unknown_ids_raise_key_error(self, store):
        group = store.snapshot().groups[0]
        with pytest.raises(KeyError):
            store.rename_group("nope", "x")
        with pytest.raises(KeyError):
            store.remove_group("nope")
        with pytest.raises(KeyError):
            store.update_entry(group.id, "nope", label="x")
        with pytest.raises(KeyError):
            store.remove_entry("nope", "nope")

    def test_unknown_category_raises_value_error(self, store):
        group = store.snapshot().groups[0]
        with pytest.raises(ValueError):
            store.add_entry(group.id, "element")

    def test_add_entry_accepts_category_members(self, store):
        group = store.snapshot().groups[0]
        surface = store.add_entry(group.id, EntryCategory.SURFACE, projected_area=5)
        anchorage = store.add_entry(group.id, EntryCategory.ANCHORAGE, run_length=3)
        assert surface.category == EntryCategory.SURFACE
        assert anchorage.category == EntryCategory.ANCHORAGE
        assert len(store.snapshot().groups[0].entries) == 4

    def test_attach_several_at_once(self, store):
        group = store.snapshot().groups[0]
        entry = group.entries[0]
        store.attach(group.id, entry.id,
                     Attachment(b"one", "image/png", "a.png"),
                     Attachment(b"two", "image/png", "b.png"))
        assert len(store.get_entry(group.id, entry.id).attachments) == 2

    def test_concurrent_adds_are_not_lost(self, store):
        group = store.snapshot().groups[0]

        def add_many():
            for _ in range(50):
                store.add_entry(group.id, "anchorage")

        workers = [threading.Thread(target=add_many) for _ in range(8)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()
        assert len(store.snapshot().groups[0].entries) == 2 + 8 * 50

    def test_snapshot_during_group_removal(self, store):
        ids = [store.add_group(f"G{i}").id for i in range(200)]
        errors = []

        def read():
            try:
                for _ in range(200):
                    store.snapshot()
            except KeyError as e:
                errors.append(e)

        reader = threading.Thread(target=read)
        reader.start()
        for gid in ids:
            store.remove_group(gid)
        reader.join()
        assert errors == []
        assert [g.name for g in store.snapshot().groups] == ["Basin"]

    def test_set_info(self, store):
        store.set_info(client="New client")
        snap = store.snapshot()
        assert snap.name == "Reservoir A"
        assert snap.client == "New client"

    def test_aggregate_snapshot(self, store):
        result = aggregate(store.snapshot().groups)
        assert result.total_surface_area == 120
        assert result.total_anchorage_area == pytest.approx(52.8)


class TestValidation:
    """Tests for validate_project warnings."""

    def test_empty_project(self):
        assert validate_project(ProjectStore().snapshot()) == ["Project has no groups."]

    def test_clean_project_has_no_warnings(self, store):
        assert validate_project(store.snapshot()) == []

    def test_suspicious_values(self):
        s = ProjectStore()
        g = s.add_group("G")
        s.add_group("Empty")
        s.add_entry(g.id, "surface", label="Zero", projected_area=0, profile="flat")
        s.add_entry(g.id, "surface", label="Flat slope", projected_area=5, slope_magnitude=0)
        s.add_entry(g.id, "surface", label="Steep pct", projected_area=5,
                    slope_encoding="percentage", slope_magnitude=150)
        s.add_entry(g.id, "surface", label="Steep ratio", projected_area=5, slope_magnitude=0.5)
        s.add_entry(g.id, "anchorage", label="Trench", run_length=0, developed_width=0)
        warnings = validate_project(s.snapshot())
        text = "\n".join(warnings)
        assert "Group 'Empty' has no entries." in warnings
        assert "'Zero': projected area is zero" in text
        assert "'Flat slope': slope is zero or negative" in text
        assert "150% is steeper" in text
        assert "0.5:1 is steeper" in text
        assert "'Trench': anchorage run length is zero" in text
        assert "'Trench': anchorage developed width is zero" in text


class TestJsonRoundTrip:
    """Tests for saving and loading projects."""

    def test_save_and_load(self, store, tmp_path):
        group = store.snapshot().groups[0]
        store.attach(group.id, group.entries[0].id, Attachment(b"\x89PNG data", "image/png", "p.png"))
        path = tmp_path / "project.json"
        save_project(store.snapshot(), str(path))

        loaded = load_project(str(path))
        assert loaded == store.snapshot()

    def test_missing_fields_get_defaults(self):
        snap = project_from_dict({
            "groups": [{"entries": [
                {"category": "surface", "projected_area": None},
                {"category": "anchorage"},
            ]}],
        })
        assert snap.name == "New project"
        assert snap.groups[0].name == "Group 1"
        surface, anchorage = snap.groups[0].entries
        assert surface.projected_area == 0.0
        assert surface.slope_encoding == SlopeEncoding.RATIO
        assert anchorage.developed_width == 0.5
        assert aggregate(snap.groups).grand_total == 0.0

    def test_duplicate_entry_ids_are_replaced(self):
        snap = project_from_dict({"groups": [{"id": "g", "entries": [
            {"id": "x", "category": "surface", "projected_area": 1},
            {"id": "x", "category": "surface", "projected_area": 2},
        ]}]})
        first, second = snap.groups[0].entries
        assert first.id == "x"
        assert second.id != "x"

        s = ProjectStore.from_snapshot(snap)
        s.update_entry("g", "x", projected_area=99)
        areas = [e.projected_area for e in s.snapshot().groups[0].entries]
        assert areas == [99.0, 2.0]

    def test_bad_attachment_is_skipped(self):
        snap = project_from_dict({"groups": [{"entries": [
            {"category": "surface", "attachments": [{"data": "!!not base64!!"}]},
        ]}]})
        assert snap.groups[0].entries[0].attachments == ()

    def test_to_dict_without_attachments(self, store):
        data = project_to_dict(store.snapshot(), include_attachments=False)
        entry = data["groups"][0]["entries"][0]
        assert entry["attachment_count"] == 0
        assert "run_length" not in entry
