"""Admin-only housekeeping: manual file cleanup and upload session inspection."""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from coursecompass.auth import get_current_user_admin
from coursecompass.database import get_db
from coursecompass.models.upload_session import UploadSession, UploadSessionStatus
from coursecompass.models.user import User
from coursecompass.routers.upload import get_chunk_store
from coursecompass.services.chunk_store import TempChunkStore
from coursecompass.services.file_cleanup import run_cleanup
from coursecompass.services.upload_sessions import session_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/files/cleanup")
def cleanup_files(
    admin: User = Depends(get_current_user_admin),
    store: TempChunkStore = Depends(get_chunk_store),
    db: Session = Depends(get_db),
):
    """Delete expired temp chunks, stale upload sessions and stored files nothing references."""
    result = run_cleanup(db, store)
    logger.info(
        "Cleanup by %s: %d orphaned, %d temp files removed, %d bytes freed",
        admin.email,
        result["orphanedFiles"]["deletedFiles"],
        result["tempFiles"]["deletedFiles"],
        result["totalBytesFreed"],
    )
    return {"success": True, "message": "Cleanup completed", "data": result}


@router.get("/upload-sessions")
def list_upload_sessions(
    status: UploadSessionStatus | None = None,
    limit: int = Query(50, ge=1, le=500),
    admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    q = db.query(UploadSession)
    if status is not None:
        q = q.filter(UploadSession.status == status.value)
    sessions = q.order_by(UploadSession.updated_at.desc()).limit(limit).all()
    return {"success": True, "data": [session_to_dict(db, s) for s in sessions]}
