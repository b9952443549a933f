"""Export and import of a user's data.

``GET /export`` streams back a workbook or a zip of CSVs; ``POST /import``
takes the same files back and merges them into the caller's data.
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response
from sqlmodel import Session

from api.deps import get_current_user_id
from config import get_config
from database import get_db
from services.export import export_user_data
from services.importer import ImportService

router = APIRouter(tags=["data"])


@router.get("/export")
def export_data(
    format: str = Query("xlsx", description="xlsx (workbook) or zip (archive)"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Download every project, task, ended session, event, queue row and settings."""
    content, filename, media_type = export_user_data(db, user_id, format)
    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@router.post("/import")
def import_data(
    file: Optional[UploadFile] = File(None),
    mode: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Merge an export file into the caller's data.

    Returns ``{success, imported, skipped, warnings}``. Structural problems
    with the file are 400 errors whose ``code`` names the problem.
    """
    config = get_config().imports
    content = filename = None
    if file is not None:
        # One byte past the limit is enough for the size check to reject it
        content = file.file.read(config.max_upload_mb * 1024 * 1024 + 1)
        filename = file.filename
    service = ImportService(db, user_id, config=config)
    return service.run(mode, filename, content).to_dict()
