"""
AI Review - asks Google Gemini for a technical consistency check of a take-off.

Sends a text summary of the project (groups, entries, computed totals) plus up
to MAX_ANALYSIS_IMAGES site photos to Gemini and returns its narrative review.

The call is a single attempt. Any failure (missing key, API error, empty
answer) comes back as AnalysisUnavailable and never touches the take-off
figures themselves.

Environment:
    GEMINI_API_KEY     -  Your Google Gemini API key
    GEOMEMBRANE_MODEL  -  Optional model override (default: gemini-3-flash-preview)
"""

import io
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime

from dotenv import load_dotenv
from google import genai
from google.genai import types
from PIL import Image, UnidentifiedImageError

from geomembrane.export import describe_entry
from geomembrane.geometry import AggregateResult, aggregate
from geomembrane.project import ProjectSnapshot

# Load .env file (GEMINI_API_KEY, etc.)
load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MODEL = os.environ.get("GEOMEMBRANE_MODEL", "gemini-3-flash-preview")
MAX_ANALYSIS_IMAGES = 10
MAX_IMAGE_SIDE = 1600  # px, longest side after downscaling
JPEG_QUALITY = 85

ANALYSIS_UNAVAILABLE_MESSAGE = "AI analysis unavailable."


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalysisSuccess:
    text: str


@dataclass(frozen=True)
class AnalysisUnavailable:
    reason: str = ""

    @property
    def text(self) -> str:
        return ANALYSIS_UNAVAILABLE_MESSAGE


AnalysisResult = AnalysisSuccess | AnalysisUnavailable


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

REVIEW_PROMPT = """You are a waterproofing geomembrane expert reviewing a grouped quantity take-off.

Project : {name}
Client  : {client}
Date    : {date}

Detail by group:
{groups}

Totals:
- Surfaces (developed)   : {surface:.2f} m²
- Anchorage trenches     : {anchorage:.2f} m²
- Total GEOMEMBRANE      : {total:.2f} m²
- Anchorage run per m² of surface : {run_ratio}

Review the technical consistency of these groups. Check that the anchorage
trenches match the surfaces they terminate (linear metres per m²), flag slopes
or dimensions that look implausible, and use the attached site photos where
they help. Answer in concise paragraphs."""


def _format_groups(project: ProjectSnapshot) -> str:
    blocks = []
    for group in project.groups:
        lines = [f"Group: {group.name}"]
        for entry in group.entries:
            kind = entry.category.value.upper()
            lines.append(f"    - [{kind}] {entry.label}: {describe_entry(entry)}")
        if not group.entries:
            lines.append("    (no entries)")
        blocks.append("\n".join(lines))
    return "\n".join(blocks) if blocks else "(no groups)"


def _run_ratio(project: ProjectSnapshot, result: AggregateResult) -> str:
    total_run = sum(e.run_length for _, e in project.iter_entries() if not e.is_surface)
    if result.total_surface_area <= 0:
        return "n/a"
    return f"{total_run / result.total_surface_area:.3f} m/m²"


def build_review_prompt(project: ProjectSnapshot, result: AggregateResult | None = None,
                        computed_at: datetime | None = None) -> str:
    """Text part of the review request."""
    if result is None:
        result = aggregate(project.groups)
    return REVIEW_PROMPT.format(
        name=project.name,
        client=project.client,
        date=(computed_at or datetime.now()).strftime("%Y-%m-%d %H:%M"),
        groups=_format_groups(project),
        surface=result.total_surface_area,
        anchorage=result.total_anchorage_area,
        total=result.grand_total,
        run_ratio=_run_ratio(project, result),
    )


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def _image_to_part(data: bytes) -> types.Part:
    """Re-encode an uploaded photo as a downscaled JPEG Gemini Part."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return types.Part.from_bytes(data=buf.getvalue(), mime_type="image/jpeg")


def collect_image_parts(project: ProjectSnapshot,
                        limit: int = MAX_ANALYSIS_IMAGES) -> list[types.Part]:
    """
    First `limit` readable attachments, in group / entry / upload order.

    Files Pillow cannot open, or refuses as decompression bombs, are skipped.
    """
    parts = []
    for group, entry in project.iter_entries():
        for attachment in entry.attachments:
            if len(parts) >= limit:
                return parts
            try:
                parts.append(_image_to_part(attachment.data))
            except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
                logger.warning(f"Skipping attachment '{attachment.filename}' on "
                               f"'{group.name}' / '{entry.label}': {e}")
    return parts


# ---------------------------------------------------------------------------
# Gemini call
# ---------------------------------------------------------------------------

def get_client(api_key: str | None = None) -> genai.Client | None:
    api_key = api_key or os.environ.get("GEMINI_API_KEY")
    if not api_key:
        return None
    return genai.Client(api_key=api_key)


def analyze_project(project: ProjectSnapshot,
                    result: AggregateResult | None = None,
                    client: genai.Client | None = None,
                    model: str = DEFAULT_MODEL) -> AnalysisResult:
    """
    Request a narrative consistency review of the take-off.

    Exactly one request is made. Returns AnalysisSuccess with the model's text,
    or AnalysisUnavailable when no client can be built, the call fails, or the
    model returns nothing.
    """
    if client is None:
        client = get_client()
    if client is None:
        logger.warning("[AI REVIEW] GEMINI_API_KEY not set, skipping analysis")
        return AnalysisUnavailable("GEMINI_API_KEY not set")

    if result is None:
        result = aggregate(project.groups)

    t0 = time.time()
    try:
        prompt = build_review_prompt(project, result)
        image_parts = collect_image_parts(project)
        logger.info(f"[AI REVIEW] Sending {len(project.groups)} group(s) and "
                    f"{len(image_parts)} image(s) to {model}...")
        response = client.models.generate_content(
            model=model,
            contents=[prompt, *image_parts],
        )
        text = (response.text or "").strip()
    except Exception as e:
        elapsed = time.time() - t0
        logger.error(f"[AI REVIEW] Review request failed after {elapsed:.1f}s: {type(e).__name__}: {e}",
                     exc_info=True)
        return AnalysisUnavailable(f"{type(e).__name__}: {e}")

    elapsed = time.time() - t0
    logger.info(f"[AI REVIEW] Gemini responded in {elapsed:.1f}s ({len(text)} chars)")
    if not text:
        return AnalysisUnavailable("empty response")
    return AnalysisSuccess(text)
