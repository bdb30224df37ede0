"""
API endpoints для обслуживания VPN-хаба: сверка WireGuard и правил NAT.
"""
import asyncio

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.api.dependencies import get_console_service, get_current_admin, get_wireguard_store
from backend.api.schemas import NatRebuildResponse, PeerReconcileResponse
from backend.models.admin import Admin
from backend.services.audit_service import create_audit_log
from backend.services.console_port_service import ConsolePortService
from backend.services.wireguard_service import WireGuardPeerStore

router = APIRouter(prefix="/wireguard", tags=["wireguard"])


@router.post("/reconcile", response_model=PeerReconcileResponse)
async def reconcile_peers(
    db: Session = Depends(get_db),
    peer_store: WireGuardPeerStore = Depends(get_wireguard_store),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Свести конфигурацию WireGuard с таблицей устройств.
    """
    summary = await asyncio.to_thread(peer_store.reconcile_all, db)
    if summary["changes_detected"]:
        create_audit_log(
            db,
            action="wireguard_reconciled",
            entity_type="wireguard",
            admin_id=current_admin.id,
            details=summary,
        )
    return PeerReconcileResponse(**summary)


@router.post("/rebuild-nat", response_model=NatRebuildResponse)
async def rebuild_nat(
    db: Session = Depends(get_db),
    console: ConsolePortService = Depends(get_console_service),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Повторно применить правила проброса консоли всех устройств.
    """
    summary = await asyncio.to_thread(console.rebuild_all_rules, db)
    return NatRebuildResponse(**summary)
