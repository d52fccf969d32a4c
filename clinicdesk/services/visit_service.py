# clinicdesk/services/visit_service.py
from decimal import Decimal
from typing import Iterable, List, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..crud import CRUDError
from ..errors import EngineError, InvalidStateTransitionError, MissingReferenceError, NotFoundError
from ..models import VisitStatus
from .calendar_policy import normalize_timestamp
from .invoice_totals import ZERO, quantize

logger = structlog.get_logger(__name__)

ProcedureLike = Union[schemas.Procedure, dict]


def _as_procedure(procedure: ProcedureLike) -> schemas.Procedure:
    if isinstance(procedure, schemas.Procedure):
        return procedure
    return schemas.Procedure.model_validate(procedure)


def compute_procedures_total(db: Session, procedures: Iterable[ProcedureLike]) -> Decimal:
    """Sum of the referenced service prices. Unknown services raise MissingReference."""
    total = ZERO
    for index, procedure in enumerate(procedures):
        procedure = _as_procedure(procedure)
        service = crud.get_service(db, procedure.service_id)
        if service is None:
            raise MissingReferenceError(
                f"Service {procedure.service_id} referenced by procedure {index + 1} not found.",
                field=f"procedures[{index}].serviceId",
            )
        total += service.price
    return quantize(total)


def _ensure_not_invoiced(db: Session, visit: models.Visit, action: str) -> None:
    invoice = crud.get_invoice_by_visit(db, visit.id)
    if invoice is not None:
        raise InvalidStateTransitionError(
            f"Cannot {action} visit {visit.id}: invoice {invoice.invoice_number} was generated from it.",
            field="visit_id", invoice_id=invoice.id,
        )


def _load_for_update(db: Session, visit_id: str) -> models.Visit:
    visit = crud.get_visit(db, visit_id, for_update=True)
    if visit is None:
        raise NotFoundError(f"Visit {visit_id} not found.", field="visit_id")
    return visit


def create_visit(db: Session, data: schemas.VisitCreate, actor: Optional[str] = None) -> models.Visit:
    """Record a visit entered directly by clinical staff, optionally linked to an appointment."""
    try:
        if crud.get_patient(db, data.patient_id) is None:
            raise MissingReferenceError(f"Patient {data.patient_id} not found.", field="patient_id")
        if crud.get_doctor(db, data.doctor_id) is None:
            raise MissingReferenceError(f"Doctor {data.doctor_id} not found.", field="doctor_id")
        if data.appointment_id is not None:
            if crud.get_appointment(db, data.appointment_id) is None:
                raise MissingReferenceError(f"Appointment {data.appointment_id} not found.", field="appointment_id")
            if crud.get_visit_by_appointment(db, data.appointment_id) is not None:
                raise InvalidStateTransitionError(
                    f"Appointment {data.appointment_id} already has a visit.", field="appointment_id",
                )

        total = compute_procedures_total(db, data.procedures)
        visit = models.Visit(
            appointment_id=data.appointment_id,
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            chief_complaint=data.chief_complaint,
            diagnosis=data.diagnosis,
            doctor_notes=data.doctor_notes,
            procedures=[p.to_record() for p in data.procedures],
            status=VisitStatus.IN_PROGRESS,
            total_amount=total,
        )
        if data.visit_date is not None:
            visit.visit_date = normalize_timestamp(data.visit_date, get_settings())
        crud.add_visit(db, visit)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        if not crud.is_unique_violation(e, "visits", "appointment_id"):
            logger.error("visit_insert_failed", patient_id=data.patient_id, error=str(e.orig))
            raise CRUDError("A database error occurred while saving the visit.")
        logger.warning("visit_insert_rejected", appointment_id=data.appointment_id)
        raise InvalidStateTransitionError(f"Appointment {data.appointment_id} already has a visit.", field="appointment_id")

    db.refresh(visit)
    logger.info("visit_created", visit_id=visit.id, procedures=len(visit.procedures), total_amount=str(visit.total_amount))
    compliance_logger.log_event(
        user_id=actor, action='VISIT_CREATED', category='CLINICAL',
        resource_type='visit', resource_id=visit.id,
    )
    return visit


def update_visit(db: Session, visit_id: str, changes: schemas.VisitUpdate, actor: Optional[str] = None) -> models.Visit:
    """
    Edit clinical fields and procedures. The total is recomputed whenever the
    procedure list is replaced. Invoiced or cancelled visits are read-only.
    """
    try:
        visit = _load_for_update(db, visit_id)
        if visit.status == VisitStatus.CANCELLED:
            raise InvalidStateTransitionError(f"Visit {visit_id} is cancelled.", field="status")
        _ensure_not_invoiced(db, visit, "edit")

        update_data = changes.model_dump(exclude_unset=True, exclude={"procedures"})
        for key, value in update_data.items():
            setattr(visit, key, value)

        if changes.procedures is not None:
            visit.total_amount = compute_procedures_total(db, changes.procedures)
            # New list object so the JSON column is flagged dirty
            visit.procedures = [p.to_record() for p in changes.procedures]
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(visit)
    logger.info("visit_updated", visit_id=visit.id, fields=sorted(changes.model_fields_set))
    compliance_logger.log_event(
        user_id=actor, action='VISIT_UPDATED', category='CLINICAL',
        resource_type='visit', resource_id=visit.id,
    )
    return visit


def _finish(db: Session, visit_id: str, target: VisitStatus, actor: Optional[str]) -> models.Visit:
    try:
        visit = _load_for_update(db, visit_id)
        if visit.status != VisitStatus.IN_PROGRESS:
            raise InvalidStateTransitionError(
                f"Cannot move visit from {visit.status.value} to {target.value}.", field="status",
            )
        if target == VisitStatus.CANCELLED:
            _ensure_not_invoiced(db, visit, "cancel")
        visit.status = target
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(visit)
    logger.info("visit_status_changed", visit_id=visit.id, status=target.value)
    compliance_logger.log_event(
        user_id=actor, action=f'VISIT_{target.value}', category='CLINICAL',
        resource_type='visit', resource_id=visit.id,
    )
    return visit


def complete_visit(db: Session, visit_id: str, actor: Optional[str] = None) -> models.Visit:
    return _finish(db, visit_id, VisitStatus.COMPLETED, actor)


def cancel_visit(db: Session, visit_id: str, actor: Optional[str] = None) -> models.Visit:
    return _finish(db, visit_id, VisitStatus.CANCELLED, actor)


def get_visit(db: Session, visit_id: str) -> models.Visit:
    visit = crud.get_visit(db, visit_id)
    if visit is None:
        raise NotFoundError(f"Visit {visit_id} not found.", field="visit_id")
    return visit


def list_patient_visits(db: Session, patient_id: str, skip: int = 0, limit: int = 20) -> List[models.Visit]:
    return crud.get_visits_for_patient(db, patient_id, skip=skip, limit=limit)
