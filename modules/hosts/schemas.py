from pydantic import BaseModel, validator
from typing import Optional, Dict, Any
from datetime import datetime
import ipaddress
import re
import uuid

HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9\-\.]{0,253}[A-Za-z0-9])?$")

class HostBase(BaseModel):
    name: str
    ip_address: str
    ssh_port: int = 22
    ssh_username: str = "root"

    @validator('name')
    def validate_name(cls, v):
        if len(v) < 1 or len(v) > 100:
            raise ValueError('Name must be between 1 and 100 characters')
        return v

    @validator('ip_address')
    def validate_ip_address(cls, v):
        try:
            ipaddress.ip_address(v)
            return v
        except ValueError:
            if HOSTNAME_PATTERN.match(v):
                return v
        raise ValueError('ip_address must be an IP address or hostname')

    @validator('ssh_port')
    def validate_ssh_port(cls, v):
        if v < 1 or v > 65535:
            raise ValueError('ssh_port must be between 1 and 65535')
        return v

class HostCreate(HostBase):
    ssh_password: str
    user_id: Optional[uuid.UUID] = None

class HostResponse(HostBase):
    id: uuid.UUID
    status: str
    provisioned_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    user_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class WorkflowStatusResponse(BaseModel):
    id: uuid.UUID
    status: str
    current_step: Optional[str] = None
    metadata: Dict[str, Any] = {}
    workflow: Dict[str, Any] = {}
