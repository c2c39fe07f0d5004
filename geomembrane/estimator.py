"""
Membrane Estimator - console take-off for geomembrane projects.

Builds a project (interactively or from a saved JSON file), prints the
developed areas per entry, group and project, and optionally exports them
or asks Gemini for a consistency review.

Usage:
    python -m geomembrane.estimator
    python -m geomembrane.estimator project.json --csv takeoff.csv
    python -m geomembrane.estimator project.json --json report.json --analyze
    python -m geomembrane.estimator --save project.json
"""

import logging
import sys

from geomembrane.export import export_csv, export_json, print_summary
from geomembrane.geometry import EntryCategory, SlopeEncoding, SurfaceProfile, aggregate
from geomembrane.project import (
    DEFAULT_CLIENT,
    DEFAULT_PROJECT_NAME,
    ProjectSnapshot,
    ProjectStore,
    load_project,
    save_project,
)


# ---------------------------------------------------------------------------
# Interactive input
# ---------------------------------------------------------------------------

def _input_float(prompt: str, default: float | None = None) -> float:
    """Prompt for a float with optional default."""
    suffix = f" [{default}]" if default is not None else ""
    while True:
        raw = input(f"  {prompt}{suffix}: ").strip()
        if not raw and default is not None:
            return default
        try:
            return float(raw.replace(",", "."))
        except ValueError:
            print("    Please enter a number.")


def _input_choice(prompt: str, choices: list[str], default: str) -> str:
    """Prompt for one of `choices` (first letter is accepted)."""
    while True:
        raw = input(f"  {prompt} ({'/'.join(choices)}) [{default}]: ").strip().lower()
        if not raw:
            return default
        for choice in choices:
            if raw == choice or raw == choice[0]:
                return choice
        print(f"    Please answer one of: {', '.join(choices)}.")


def _input_text(prompt: str, default: str) -> str:
    raw = input(f"  {prompt} [{default}]: ").strip()
    return raw or default


def prompt_project() -> ProjectSnapshot:
    """Ask for project info, groups and entries on the console."""
    print("\nEnter the take-off measured on site or from plans.\n")

    print("[PROJECT]")
    store = ProjectStore(
        name=_input_text("Project name", DEFAULT_PROJECT_NAME),
        client=_input_text("Client", DEFAULT_CLIENT),
    )

    while True:
        print(f"\n[GROUP {len(store.snapshot().groups) + 1}]")
        group = store.add_group()
        store.rename_group(group.id, _input_text("Group name", group.name))

        while True:
            kind = _input_choice("Add entry", ["surface", "anchorage", "done"], "done")
            if kind == "done":
                break
            if kind == EntryCategory.SURFACE.value:
                label = _input_text("Label", "Surface")
                area = _input_float("Projected (2D) area (m²)")
                profile = _input_choice("Profile", [p.value for p in SurfaceProfile],
                                        SurfaceProfile.SLOPED.value)
                fields = {"label": label, "projected_area": area, "profile": profile}
                if profile == SurfaceProfile.SLOPED.value:
                    fields["slope_encoding"] = _input_choice(
                        "Slope encoding", [s.value for s in SlopeEncoding], SlopeEncoding.RATIO.value)
                    fields["slope_magnitude"] = _input_float("Slope value", default=2.0)
                store.add_entry(group.id, EntryCategory.SURFACE, **fields)
            else:
                store.add_entry(
                    group.id, EntryCategory.ANCHORAGE,
                    label=_input_text("Label", "Anchorage"),
                    run_length=_input_float("Run length (m)"),
                    developed_width=_input_float("Developed width (m)", default=0.5),
                )

        again = input("\n  Add another group? (y/N): ").strip().lower()
        if again != "y":
            break

    return store.snapshot()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _option(name: str) -> str | None:
    if name in sys.argv:
        idx = sys.argv.index(name)
        if idx + 1 < len(sys.argv):
            return sys.argv[idx + 1]
    return None


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    csv_output = _option("--csv")
    json_output = _option("--json")
    save_output = _option("--save")
    run_analysis = "--analyze" in sys.argv

    option_values = {csv_output, json_output, save_output}
    positional = [a for a in sys.argv[1:] if not a.startswith("--") and a not in option_values]

    print("=" * 60)
    print("  MEMBRANE ESTIMATOR - Geomembrane Quantity Take-off")
    print("=" * 60)

    if positional:
        print(f"\nLoading project from: {positional[0]}")
        project = load_project(positional[0])
    else:
        project = prompt_project()

    result = aggregate(project.groups)
    print()
    print_summary(project, result)

    if run_analysis:
        from geomembrane.ai_review import analyze_project

        print("\nRequesting AI review...\n")
        review = analyze_project(project, result)
        print(review.text)

    if csv_output:
        export_csv(project, csv_output)
        print(f"\nCSV export saved to: {csv_output}")
    if json_output:
        export_json(project, json_output, result)
        print(f"\nJSON report saved to: {json_output}")
    if save_output:
        save_project(project, save_output)
        print(f"\nProject saved to: {save_output}")


if __name__ == "__main__":
    main()
