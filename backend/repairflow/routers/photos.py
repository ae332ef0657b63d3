# backend/repairflow/routers/photos.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..schemas import PhotoCreate, PhotoOut, PhotoVerifyIn
from ..services import photo_service, request_service

router = APIRouter(prefix="/maintenance", tags=["photos"])


@router.post("/requests/{request_id}/photos", response_model=PhotoOut, status_code=201)
def upload_photo(request_id: int, payload: PhotoCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return photo_service.upload_photo(
        db, p=p, request_id=request_id, kind=payload.kind, url=payload.url, caption=payload.caption
    )


@router.get("/requests/{request_id}/photos", response_model=list[PhotoOut])
def list_photos(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    req = request_service.get_request(db, p=p, request_id=request_id)
    return photo_service.list_photos(db, org_id=p.org_id, request_id=req.id)


@router.post("/photos/{photo_id}/verify", response_model=PhotoOut)
def verify_photo(photo_id: int, payload: PhotoVerifyIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return photo_service.verify_photo(db, p=p, photo_id=photo_id, status=payload.status, notes=payload.notes)
