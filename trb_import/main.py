import logging

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from trb_import import models  # noqa: F401  registers tables on Base.metadata
from trb_import.commit import commit_import
from trb_import.config import settings
from trb_import.database import Base, SessionLocal, engine
from trb_import.domain import parse_gate_policy
from trb_import.errors import (
    CommitAbortedError,
    CommitTimeoutError,
    FileFormatError,
    PersistenceError,
    SchemaError,
    UnknownImportTypeError,
)
from trb_import.preview import get_domain, preview_import
from trb_import.templates import build_import_template
from trb_import.workbook import ensure_workbook_upload

app = FastAPI(title="TRB Import Service")
logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@app.on_event("startup")
def ensure_import_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def parse_optional_int(value: str | None) -> int | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        return int(cleaned)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid integer value") from exc


def resolve_kind(kind: str) -> str:
    try:
        return get_domain(kind).kind
    except UnknownImportTypeError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def read_upload(workbook_file: UploadFile) -> bytes:
    payload = await workbook_file.read()
    try:
        ensure_workbook_upload(workbook_file.filename or "", payload)
    except FileFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return payload


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.get("/imports/{kind}/template")
def download_template(kind: str, db: Session = Depends(get_db)):
    resolved = resolve_kind(kind)
    content = build_import_template(db, resolved)
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{resolved}_import_template.xlsx"'},
    )


@app.post("/imports/{kind}/preview")
async def preview_workbook(
    kind: str,
    workbook_file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    resolved = resolve_kind(kind)
    payload = await read_upload(workbook_file)
    try:
        report = preview_import(db, resolved, payload)
    except (FileFormatError, SchemaError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return report.to_dict()


@app.post("/imports/{kind}/commit")
async def commit_workbook(
    kind: str,
    workbook_file: UploadFile = File(...),
    policy: str = Form(""),
    actor_user_id: str = Form(""),
    db: Session = Depends(get_db),
):
    resolved = resolve_kind(kind)
    actor = parse_optional_int(actor_user_id)
    try:
        gate = parse_gate_policy(policy)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    payload = await read_upload(workbook_file)
    try:
        result = commit_import(db, resolved, payload, policy=gate, actor_user_id=actor)
    except (FileFormatError, SchemaError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CommitAbortedError as exc:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "batch_id": exc.batch_id,
                "preview": exc.preview.to_dict(),
            },
        )
    except CommitTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Import commit for %s failed: %s", resolved, exc)
        raise HTTPException(status_code=500, detail="Unexpected import database error.") from exc
    return result.to_dict()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.log_level)
    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
