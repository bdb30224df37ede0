"""
API endpoint приёма учёта RADIUS (radacct).
"""
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.api.dependencies import verify_accounting_token
from backend.api.schemas import AccountingRequest, AccountingResponse
from backend.services.accounting_service import record_accounting

router = APIRouter(prefix="/accounting", tags=["accounting"])


@router.post("", response_model=AccountingResponse, dependencies=[Depends(verify_accounting_token)])
async def ingest_accounting(
    packet: AccountingRequest,
    db: Session = Depends(get_db),
):
    """
    Принять пакет Acct-Status-Type Start/Interim-Update/Stop.
    Accounting-On/Off закрывают открытые записи NAS, ответ без тела.
    """
    try:
        record = record_accounting(db, **packet.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if record is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return AccountingResponse(
        radacct_id=record.radacct_id,
        acct_unique_id=record.acct_unique_id,
        status=packet.status_type,
    )
