from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
import uuid

from core.database import get_db
from core.exceptions import ChainAlreadyRunning, ConfigurationError
from core.notes import get_notes
from modules.hosts.service import HostProvisioningService
from modules.hosts.schemas import HostCreate, HostResponse, WorkflowStatusResponse
from modules.executions.schemas import ExecutionRecordResponse
from modules.executions.service import ExecutionRecordService
from api.dependencies import get_dispatcher, get_publisher

router = APIRouter()

def _get_host_or_404(service: HostProvisioningService, host_id: uuid.UUID):
    host = service.get_host_by_id(host_id)
    if not host:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Host not found"
        )
    return host

@router.get("/hosts", response_model=List[HostResponse])
async def get_hosts(
    status_filter: Optional[str] = None,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return HostProvisioningService(db, publisher=publisher).get_hosts(status_filter)

@router.post("/hosts", response_model=HostResponse, status_code=status.HTTP_201_CREATED)
async def register_host(
    host_data: HostCreate,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    try:
        return HostProvisioningService(db, publisher=publisher).register_host(host_data)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

@router.get("/hosts/{host_id}", response_model=HostResponse)
async def get_host(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    return _get_host_or_404(HostProvisioningService(db, publisher=publisher), host_id)

@router.post("/hosts/{host_id}/provision", status_code=status.HTTP_202_ACCEPTED)
def provision_host(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
    publisher=Depends(get_publisher)
):
    service = HostProvisioningService(db, dispatcher, publisher)
    host = _get_host_or_404(service, host_id)

    try:
        service.provision(host)
    except ChainAlreadyRunning as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {"message": "Server provisioning started", "host_id": str(host_id)}

@router.get("/hosts/{host_id}/status", response_model=WorkflowStatusResponse)
async def get_host_status(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    service = HostProvisioningService(db, publisher=publisher)
    host = _get_host_or_404(service, host_id)
    db.refresh(host)
    metadata = host.meta or {}
    return WorkflowStatusResponse(
        id=host.id,
        status=host.status,
        current_step=metadata.get("current_step"),
        metadata=metadata,
        workflow=service.workflow_state(host).to_dict(),
    )

@router.get("/hosts/{host_id}/workflow")
async def get_host_workflow(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    service = HostProvisioningService(db, publisher=publisher)
    host = _get_host_or_404(service, host_id)
    return service.workflow_state(host).to_dict()

@router.get("/hosts/{host_id}/notes")
async def get_host_notes(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    host = _get_host_or_404(HostProvisioningService(db, publisher=publisher), host_id)
    return {"notes": get_notes(host)}

@router.get("/hosts/{host_id}/executions", response_model=List[ExecutionRecordResponse])
async def get_host_executions(
    host_id: uuid.UUID,
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher)
):
    _get_host_or_404(HostProvisioningService(db, publisher=publisher), host_id)
    return ExecutionRecordService(db, publisher).list_for_host(host_id)
