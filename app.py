import hmac
import time
import sqlite3
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, Depends, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

import config
from config import APP_VERSION, APP_NAME, ALLOWED_ORIGINS, RATE_LIMIT_PER_MIN, ADMIN_PAGE_SIZE, configure_logging
from contacts import ContactStore
from routes import ROUTES
from website import build_index_html, build_admin_html, not_found_html

# Logging
log = logging.getLogger("uvicorn.error")


# ────────────────────────────────────────────────────────────────────────────
# App (lifespan)
# ────────────────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.contacts = ContactStore(config.CONTACTS_DB_PATH)
    app.state.pages_dir = Path(config.PAGES_DIR)
    app.state.admin = (config.ADMIN_USERNAME, config.ADMIN_PASSWORD)
    # Warn (don't crash) if critical envs are missing
    if not all(app.state.admin):
        log.warning("ADMIN_USERNAME/ADMIN_PASSWORD not set; admin endpoints will reject requests.")
    if not app.state.pages_dir.is_dir():
        log.warning("PAGES_DIR %s does not exist; page fragments will 404.", app.state.pages_dir)
    log.info("%s site v%s starting", APP_NAME, APP_VERSION)
    try:
        yield
    finally:
        app.state.contacts.close()

app = FastAPI(title="Blaze Restaurant Site", version=APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
# Compression
app.add_middleware(GZipMiddleware, minimum_size=500)


# ────────────────────────────────────────────────────────────────────────────
# Utilities: rate limiting, admin guard
# ────────────────────────────────────────────────────────────────────────────
_ip_hits: Dict[str, List[float]] = {}
MAX_IP_BUCKETS = 10_000

def rate_limit(request: Request):
    ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - 60.0

    if len(_ip_hits) > MAX_IP_BUCKETS and ip not in _ip_hits:
        # basic protection against memory bloat
        raise HTTPException(503, "Server busy")

    bucket = _ip_hits.setdefault(ip, [])
    while bucket and bucket[0] < window_start:
        bucket.pop(0)
    if len(bucket) >= RATE_LIMIT_PER_MIN:
        raise HTTPException(429, "Rate limit exceeded.")
    bucket.append(now)

_basic = HTTPBasic(auto_error=False)
_CHALLENGE = {"WWW-Authenticate": 'Basic realm="Admin Access"'}

def admin_guard(request: Request, creds: Optional[HTTPBasicCredentials] = Depends(_basic)):
    user, password = request.app.state.admin
    if not user or not password:
        raise HTTPException(500, "Server misconfigured: missing ADMIN_USERNAME/ADMIN_PASSWORD")
    if creds is None:
        raise HTTPException(401, "Unauthorized", headers=_CHALLENGE)
    ok_user = hmac.compare_digest(creds.username.encode("utf-8"), user.encode("utf-8"))
    ok_pass = hmac.compare_digest(creds.password.encode("utf-8"), password.encode("utf-8"))
    if not (ok_user and ok_pass):
        log.warning("admin: rejected credentials for user %r", creds.username)
        raise HTTPException(401, "Unauthorized", headers=_CHALLENGE)

def _parse_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if number.is_integer():
            return int(number)
    return None


class ContactPayload(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    inquiry: str = Field("", description="Inquiry type selected on the form")
    message: str = ""


# ────────────────────────────────────────────────────────────────────────────
# Site
# ────────────────────────────────────────────────────────────────────────────
@app.get("/", include_in_schema=False)
@app.get("/index.html", include_in_schema=False)
async def index():
    return HTMLResponse(build_index_html(APP_VERSION))

@app.get("/healthz", summary="Liveness probe")
async def healthz():
    return {"ok": True, "ts": time.time()}

@app.get("/version", summary="Current build version")
async def version():
    return {"version": APP_VERSION}

@app.get("/version.js", include_in_schema=False)
async def version_js():
    body = f"const APP_VERSION = '{APP_VERSION}';\nwindow.BLAZE_VERSION = APP_VERSION;\n"
    return Response(body, media_type="application/javascript", headers={"Cache-Control": "no-cache"})

@app.get("/manifest.json", include_in_schema=False)
async def manifest():
    return {
        "name": APP_NAME,
        "short_name": "Blaze",
        "start_url": "./#home",
        "display": "standalone",
        "theme_color": "#9D1C20",
        "background_color": "#000000",
    }

@app.get("/pages/{name}.html", summary="Page fragment for a route")
async def page_fragment(name: str, request: Request):
    if name not in ROUTES:
        return HTMLResponse(not_found_html(), status_code=404)
    path = request.app.state.pages_dir / f"{name}.html"
    try:
        html = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("pages: %s is a route but %s is missing", name, path)
        return HTMLResponse(not_found_html(), status_code=404)
    except OSError as e:
        log.error("pages: failed to read %s: %s", path, e)
        raise HTTPException(500, "Failed to read page")
    return HTMLResponse(html, headers={"Cache-Control": "no-cache"})


# ────────────────────────────────────────────────────────────────────────────
# Contact form
# ────────────────────────────────────────────────────────────────────────────
@app.post("/contact", summary="Contact form submission (always redirects back to #contact)")
async def contact_form(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    inquiry: str = Form(""),
    message: str = Form(""),
    _: None = Depends(rate_limit),
):
    try:
        request.app.state.contacts.add(
            name=name, email=email, phone=phone, inquiry_type=inquiry, message=message
        )
    except sqlite3.Error as e:
        log.error("contact: failed to store submission: %s", e)
    return RedirectResponse("/#contact", status_code=303)

@app.post("/api/contact", summary="Contact submission as JSON (used by offline sync)")
async def contact_api(
    payload: ContactPayload,
    request: Request,
    _: None = Depends(rate_limit),
):
    try:
        new_id = request.app.state.contacts.add(
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            inquiry_type=payload.inquiry,
            message=payload.message,
        )
    except sqlite3.Error as e:
        log.error("contact api: failed to store submission: %s", e)
        raise HTTPException(500, "Failed to store submission")
    return {"ok": True, "id": new_id}


# ────────────────────────────────────────────────────────────────────────────
# Admin
# ────────────────────────────────────────────────────────────────────────────
@app.get("/admin/submissions", summary="Contact submissions (HTML)")
async def admin_submissions(
    request: Request,
    page: int = Query(1, ge=1),
    _: None = Depends(admin_guard),
):
    rows, total = request.app.state.contacts.page(page, ADMIN_PAGE_SIZE)
    return HTMLResponse(build_admin_html(rows, total=total, page=page, per_page=ADMIN_PAGE_SIZE))

@app.get("/admin/api/submissions", summary="Contact submissions (JSON)")
async def admin_submissions_json(
    request: Request,
    page: int = Query(1, ge=1),
    _: None = Depends(admin_guard),
):
    rows, total = request.app.state.contacts.page(page, ADMIN_PAGE_SIZE)
    return {"total": total, "page": page, "per_page": ADMIN_PAGE_SIZE, "items": rows}

@app.post("/admin/submissions/delete", summary="Delete one contact submission")
async def admin_delete(request: Request, _: None = Depends(admin_guard)):
    try:
        data = await request.json()
    except ValueError:
        data = None
    contact_id = _parse_id(data.get("id")) if isinstance(data, dict) else None
    if contact_id is None:
        return JSONResponse({"success": False, "message": "Invalid ID provided"})

    contacts: ContactStore = request.app.state.contacts
    try:
        if not contacts.exists(contact_id):
            return JSONResponse({"success": False, "message": "Record not found"})
        deleted = contacts.delete(contact_id)
    except sqlite3.Error as e:
        log.error("Delete submission error: %s", e)
        return JSONResponse({"success": False, "message": str(e)})

    if deleted:
        log.info("admin: deleted contact submission id=%s", contact_id)
        return JSONResponse({"success": True, "message": "Record deleted successfully"})
    return JSONResponse({"success": False, "message": "Failed to delete record"})
