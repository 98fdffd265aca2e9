from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, Response
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db, User
from errors import ValidationError
from ledger import Attachment, ExpenseLedger
from schemas import (
    ExpenseCreate,
    ExpenseFilter,
    ExpenseOut,
    ExpenseUpdate,
    Forecast,
    Message,
)

router = APIRouter()


def get_ledger(request: Request, db: Session = Depends(get_db)) -> ExpenseLedger:
    state = request.app.state
    return ExpenseLedger(
        db,
        bus=state.bus,
        blobs=state.blobs,
        locks=state.locks,
        blob_timeout=state.settings.blob_timeout_seconds,
        max_attachment_bytes=state.settings.max_upload_size_bytes,
    )


def _schema_error_message(exc: SchemaError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return f"{field}: {first['msg']}" if field else first["msg"]


def _read_attachment(upload: Optional[UploadFile], limit: int) -> Optional[Attachment]:
    if upload is None or not upload.filename:
        return None
    # Read one byte past the limit so oversized files are detected without
    # pulling the whole upload into memory
    data = upload.file.read(limit + 1)
    if len(data) > limit:
        raise ValidationError("Attachment exceeds the upload size limit")
    return Attachment(filename=upload.filename, data=data)


@router.get("/expenses", response_model=List[ExpenseOut])
def get_expenses(
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return ledger.list(current_user.id)


@router.post("/expenses", response_model=ExpenseOut)
def create_expense(
    request: Request,
    title: str = Form(...),
    amount: Decimal = Form(...),
    category: str = Form(...),
    date: Optional[datetime] = Form(None),
    tags: Optional[str] = Form(None),
    note: Optional[str] = Form(None),
    currency: Optional[str] = Form(None),
    recurring: bool = Form(False),
    next_occurrence: Optional[datetime] = Form(None),
    attachment: Optional[UploadFile] = File(None),
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    try:
        fields = ExpenseCreate(
            title=title,
            amount=amount,
            category=category,
            date=date,
            tags=tags,
            note=note,
            currency=currency,
            recurring=recurring,
            next_occurrence=next_occurrence,
        )
    except SchemaError as exc:
        raise ValidationError(_schema_error_message(exc))

    upload = _read_attachment(
        attachment, request.app.state.settings.max_upload_size_bytes
    )
    return ledger.create(current_user.id, fields, attachment=upload)


# Static paths are registered before /expenses/{expense_id}


@router.get("/expenses/search", response_model=List[ExpenseOut])
def search_expenses(
    query: str = "",
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return ledger.search(current_user.id, query)


@router.get("/expenses/filter", response_model=List[ExpenseOut])
def filter_expenses(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    criteria = ExpenseFilter(start_date=start_date, end_date=end_date, category=category)
    return ledger.filter(current_user.id, criteria)


@router.get("/expenses/forecast", response_model=Forecast)
def forecast_expenses(
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return ledger.forecast(current_user.id)


@router.get("/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return ledger.get(current_user.id, expense_id)


@router.get("/expenses/{expense_id}/attachment")
def get_attachment(
    expense_id: int,
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return FileResponse(ledger.attachment_path(current_user.id, expense_id))


@router.put("/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    changes: ExpenseUpdate,
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return ledger.update(
        current_user.id, expense_id, changes.model_dump(exclude_unset=True)
    )


@router.delete("/expenses/{expense_id}", response_model=Message)
def delete_expense(
    expense_id: int,
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    ledger.delete(current_user.id, expense_id)
    return Message(message="Expense deleted")


@router.get("/report")
def export_report(
    ledger: ExpenseLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_user),
):
    return Response(
        content=ledger.report(current_user.id),
        media_type="text/csv",
        headers={
            "Content-Disposition": "attachment; filename=expenses-report.csv"
        },
    )
