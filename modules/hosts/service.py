from sqlalchemy.orm import Session
from typing import List, Optional
import uuid
import logging

from config.settings import settings
from core.exceptions import ConfigurationError
from core.notes import append_note
from modules.workflow.chain import Chain
from modules.workflow.dispatcher import ChainDispatcher
from modules.workflow.tracker import StepTracker
from modules.workflow.publisher import ChangePublisher, change_publisher
from utils.encryption import encryption_manager
from .models import Host
from .schemas import HostCreate
from .steps import (
    PROVISIONING_STEPS,
    InstallDockerStep,
    InstallPackagesStep,
    InstallTraefikStep,
    StartProvisioningStep,
    UpdateFirewallStep,
    UpdatePackagesStep,
)

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "server_provisioning"

def host_chain_key(host_id) -> str:
    return f"host:{host_id}"

class HostProvisioningService:
    def __init__(self, db: Session, dispatcher: Optional[ChainDispatcher] = None, publisher: Optional[ChangePublisher] = None):
        self.db = db
        self.dispatcher = dispatcher
        self.publisher = publisher or change_publisher
        self.tracker = StepTracker(db, self.publisher)

    def get_host_by_id(self, host_id: uuid.UUID) -> Optional[Host]:
        """Get host by ID"""
        return self.db.query(Host).filter(Host.id == host_id).first()

    def get_hosts(self, status: Optional[str] = None) -> List[Host]:
        """List hosts, optionally filtered by status"""
        query = self.db.query(Host)
        if status:
            query = query.filter(Host.status == status)
        return query.order_by(Host.created_at.desc()).all()

    def register_host(self, host_data: HostCreate) -> Host:
        """Register a new host in pending state"""
        existing = self.db.query(Host).filter(
            Host.ip_address == host_data.ip_address,
            Host.ssh_port == host_data.ssh_port
        ).first()
        if existing:
            raise ValueError("A host with this address is already registered")

        host = Host(
            name=host_data.name,
            ip_address=host_data.ip_address,
            ssh_port=host_data.ssh_port,
            ssh_username=host_data.ssh_username,
            ssh_password=encryption_manager.encrypt_data(host_data.ssh_password),
            user_id=host_data.user_id,
            status='pending',
            meta={},
        )

        self.db.add(host)
        self.db.commit()
        self.db.refresh(host)

        append_note(self.db, host, f"Host registered at {host.ip_address}")
        logger.info(f"Registered host {host.name} ({host.ip_address})")
        return host

    def build_chain(self, host: Host) -> Chain:
        cloudflare = settings.get_cloudflare_config()
        if not cloudflare["cloudflare_api_token"] or not cloudflare["cloudflare_domain"]:
            raise ConfigurationError("Cloudflare API token and domain must be configured to provision hosts")

        steps = [
            StartProvisioningStep(host.id),
            UpdatePackagesStep(host.id),
            InstallPackagesStep(host.id),
            InstallDockerStep(host.id),
            UpdateFirewallStep(host.id),
            InstallTraefikStep(host.id, cloudflare),
        ]
        return Chain(key=host_chain_key(host.id), steps=steps, name=f"provision {host.name}")

    def provision(self, host: Host):
        """Initialize the provisioning workflow and dispatch its chain"""
        if self.dispatcher is None:
            raise ConfigurationError("No chain dispatcher configured")

        chain = self.build_chain(host)
        # take the key before resetting metadata
        self.dispatcher.reserve(chain.key)
        try:
            self.tracker.initialize(host, PROVISIONING_STEPS, WORKFLOW_TYPE, "Server Provisioning")
            append_note(self.db, host, "Server provisioning queued")
        except Exception:
            self.dispatcher.release(chain.key)
            raise
        return self.dispatcher.dispatch(chain)

    def workflow_state(self, host: Host):
        return self.tracker.state(host)
