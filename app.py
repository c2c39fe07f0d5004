"""
Geomembrane Take-off - FastAPI Web Application

Run with: python app.py
Or:       uvicorn app:app --reload
Opens at: http://127.0.0.1:8000
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Ensure project directory is on sys.path for local module imports
_BASE_DIR = Path(__file__).resolve().parent
if str(_BASE_DIR) not in sys.path:
    sys.path.insert(0, str(_BASE_DIR))

from fastapi import FastAPI, Request, Form, UploadFile, File, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from dotenv import load_dotenv

from geomembrane.ai_review import ANALYSIS_UNAVAILABLE_MESSAGE, analyze_project
from geomembrane.export import build_report, csv_filename, describe_entry, export_csv_text
from geomembrane.geometry import SlopeEncoding, SurfaceProfile, aggregate, entry_area, slope_label
from geomembrane.project import Attachment, ProjectStore, validate_project

load_dotenv()

logger = logging.getLogger("geomembrane.app")
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

app = FastAPI(title="Geomembrane Take-off")

BASE_DIR = Path(__file__).resolve().parent
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

# One project per running server; the session is the process lifetime
app.state.store = ProjectStore()
app.state.analysis = None

MAX_UPLOAD_BYTES = 15 * 1024 * 1024


# Handle Chrome DevTools 404s
@app.get("/.well-known/appspecific/com.chrome.devtools.json")
def chrome_devtools_404():
    raise HTTPException(status_code=404)


# -- Jinja2 custom filters --

def area_filter(value):
    try:
        return f"{value:,.2f} m²"
    except (ValueError, TypeError):
        return str(value)


def number_filter(value):
    try:
        return f"{value:g}"
    except (ValueError, TypeError):
        return str(value)


templates.env.filters["area"] = area_filter
templates.env.filters["number"] = number_filter
templates.env.globals.update(
    entry_area=entry_area,
    describe_entry=describe_entry,
    slope_label=slope_label,
    slope_encodings=[s.value for s in SlopeEncoding],
    surface_profiles=[p.value for p in SurfaceProfile],
)


def _store(request: Request) -> ProjectStore:
    return request.app.state.store


def _home() -> RedirectResponse:
    return RedirectResponse("/", status_code=303)


def _render(request: Request, template: str, **context) -> HTMLResponse:
    project = _store(request).snapshot()
    results = aggregate(project.groups)
    return templates.TemplateResponse(request, template, {
        "project": project,
        "results": results,
        "warnings": validate_project(project),
        **context,
    })


# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------

@app.get("/", response_class=HTMLResponse)
def index(request: Request):
    return _render(request, "index.html", analysis=request.app.state.analysis)


@app.post("/project")
def update_project(request: Request, name: str = Form(""), client: str = Form("")):
    _store(request).set_info(name=name.strip() or None, client=client.strip() or None)
    return _home()


@app.post("/groups")
def add_group(request: Request, name: str = Form("")):
    _store(request).add_group(name.strip() or None)
    return _home()


@app.post("/groups/{group_id}/rename")
def rename_group(request: Request, group_id: str, name: str = Form(...)):
    try:
        _store(request).rename_group(group_id, name)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _home()


@app.post("/groups/{group_id}/delete")
def remove_group(request: Request, group_id: str):
    try:
        _store(request).remove_group(group_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _home()


@app.post("/groups/{group_id}/entries")
def add_entry(request: Request, group_id: str, category: str = Form(...)):
    try:
        _store(request).add_entry(group_id, category)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _home()


@app.post("/groups/{group_id}/entries/{entry_id}")
async def update_entry(request: Request, group_id: str, entry_id: str):
    form = await request.form()

    # Absent fields stay untouched; coercion to numbers happens in the store
    changes = {
        key: form.get(key)
        for key in ("label", "profile", "projected_area", "slope_encoding",
                    "slope_magnitude", "run_length", "developed_width")
        if key in form
    }
    try:
        _store(request).update_entry(group_id, entry_id, **changes)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _home()


@app.post("/groups/{group_id}/entries/{entry_id}/delete")
def remove_entry(request: Request, group_id: str, entry_id: str):
    try:
        _store(request).remove_entry(group_id, entry_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _home()


@app.post("/groups/{group_id}/entries/{entry_id}/images")
async def upload_images(request: Request, group_id: str, entry_id: str,
                        images: list[UploadFile] = File(...)):
    store = _store(request)
    try:
        store.get_entry(group_id, entry_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))

    # Whole batch is checked before anything is attached
    attachments = []
    for upload in images:
        data = await upload.read()
        if not data:
            continue
        if len(data) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=413, detail=f"{upload.filename} is too large")
        attachments.append(Attachment(
            data=data,
            mime_type=upload.content_type or "image/jpeg",
            filename=upload.filename or "",
        ))

    try:
        store.attach(group_id, entry_id, *attachments)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    for a in attachments:
        logger.info(f"Attached {a.filename} ({len(a.data)} bytes) to entry {entry_id}")
    return _home()


@app.get("/groups/{group_id}/entries/{entry_id}/images/{index}")
def get_image(request: Request, group_id: str, entry_id: str, index: int):
    if index < 0:
        raise HTTPException(status_code=404, detail="Image not found")
    try:
        entry = _store(request).get_entry(group_id, entry_id)
        attachment = entry.attachments[index]
    except (KeyError, IndexError):
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=attachment.data, media_type=attachment.mime_type)


# ---------------------------------------------------------------------------
# Results & exports
# ---------------------------------------------------------------------------

@app.get("/api/results")
def api_results(request: Request):
    project = _store(request).snapshot()
    return aggregate(project.groups).to_dict()


@app.get("/export.csv")
def export_csv(request: Request):
    project = _store(request).snapshot()
    return Response(
        content=export_csv_text(project),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{csv_filename(project)}"'},
    )


@app.get("/export.json")
def export_json(request: Request):
    project = _store(request).snapshot()
    return Response(
        content=json.dumps(build_report(project), indent=2, ensure_ascii=False),
        media_type="application/json",
    )


@app.get("/report", response_class=HTMLResponse)
def report(request: Request):
    return _render(request, "report.html", computed_at=datetime.now())


# ---------------------------------------------------------------------------
# AI review
# ---------------------------------------------------------------------------

@app.post("/analyze")
async def analyze(request: Request):
    project = _store(request).snapshot()
    if not project.groups:
        return _home()

    results = aggregate(project.groups)
    try:
        loop = asyncio.get_running_loop()
        review = await loop.run_in_executor(None, analyze_project, project, results)
        request.app.state.analysis = review.text
    except Exception as e:
        logger.error(f"/analyze FAILED: {type(e).__name__}: {e}", exc_info=True)
        request.app.state.analysis = ANALYSIS_UNAVAILABLE_MESSAGE
    return _home()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="127.0.0.1", port=8000, reload=True)
