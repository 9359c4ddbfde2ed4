from sqlalchemy import Column, String, Text, Integer, JSON, DateTime, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID
from core.database import BaseModel

HOST_STATUSES = ("pending", "provisioning", "provisioned", "failed")

class Host(BaseModel):
    __tablename__ = "hosts"

    name = Column(String(100), nullable=False)
    ip_address = Column(String(255), nullable=False)
    ssh_port = Column(Integer, default=22)
    ssh_username = Column(String(100), nullable=False, default="root")
    ssh_password = Column(Text)  # Will be encrypted
    status = Column(String(50), default='pending')  # pending, provisioning, provisioned, failed
    provisioned_at = Column(DateTime)
    failed_at = Column(DateTime)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    meta = Column("metadata", JSON, default=dict)
    metadata_version = Column(Integer, default=0, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def workflow_channel(self) -> str:
        return f"host-updates.{self.id}"

    def __repr__(self):
        return f"<Host(name='{self.name}', ip_address='{self.ip_address}', status='{self.status}')>"
