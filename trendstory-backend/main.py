import os
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database import Base, engine
from routers import jobs

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

app = FastAPI(
    title="TrendStory Generator",
    description="Generates short educational video packages (script, narration, scene images) from a topic.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

if config.STORAGE_BACKEND == "local":
    os.makedirs(config.MEDIA_DIR, exist_ok=True)
    app.mount(config.STORAGE_PUBLIC_BASE_URL, StaticFiles(directory=config.MEDIA_DIR), name="media")


@app.on_event("startup")
def create_tables():
    Base.metadata.create_all(bind=engine)


# --------------------------------------------------------------------------
# --- Error envelope ---
# --------------------------------------------------------------------------

def _envelope(error: str, hint: str = None) -> dict:
    body = {"error": error}
    if hint:
        body["hint"] = hint
    return body


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        body = _envelope(str(exc.detail.get("error") or "Request failed."), exc.detail.get("hint"))
    else:
        body = _envelope(str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request.")
    return JSONResponse(
        status_code=400,
        content=_envelope(f"{location}: {message}" if location else message, "Check the request body."),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logging.error(f"Database error on {request.url.path}: {exc}")
    text = str(exc).lower()
    hint = None
    if "no such table" in text or "does not exist" in text:
        hint = "Database tables are missing. Run init_db.py."
    return JSONResponse(status_code=500, content=_envelope("Database error.", hint))


# --------------------------------------------------------------------------
# --- API Endpoints ---
# --------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(jobs.router)
