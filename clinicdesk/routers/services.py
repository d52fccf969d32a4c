# clinicdesk/routers/services.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..crud import CRUDError
from ..database import get_db

router = APIRouter(
    prefix="/services",
    tags=["Services"],
)


@router.post("", response_model=schemas.ServiceResponse, status_code=status.HTTP_201_CREATED)
def create_service(service: schemas.ServiceCreate, db: Session = Depends(get_db)):
    try:
        return crud.create_service(db, service)
    except CRUDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=List[schemas.ServiceResponse])
def list_services(skip: int = 0, limit: int = 100, active_only: bool = True, db: Session = Depends(get_db)):
    return crud.get_services(db, skip=skip, limit=limit, active_only=active_only)
