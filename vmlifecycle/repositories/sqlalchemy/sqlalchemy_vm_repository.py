from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vmlifecycle.database import models
from vmlifecycle.repositories.interfaces import IVMRepository
from vmlifecycle.schemas import VirtualMachine, VmSpecification, VmStatus
from vmlifecycle.services.exceptions import VmAlreadyExistsError, VmNameConflictError, VmNotFoundError


def _to_entity(row: models.VM) -> VirtualMachine:
    return VirtualMachine(
        id=row.id,
        order_id=row.order_id,
        user_id=row.user_id,
        remote_object_ref=row.remote_object_ref,
        name=row.name,
        hostname=row.hostname,
        status=VmStatus(row.status),
        specifications=VmSpecification.model_construct(
            cpu_count=row.cpu_count,
            memory_gb=row.memory_gb,
            disk_gb=row.disk_gb,
            bandwidth_gb=row.bandwidth_gb,
            operating_system=row.operating_system,
        ),
        data_center=row.data_center,
        ip_addresses=list(row.ip_addresses or []),
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_power_action=row.last_power_action,
        last_power_action_time=row.last_power_action_time,
        bandwidth_usage=row.bandwidth_usage or 0.0,
        notes=row.notes,
    )


def _apply(row: models.VM, vm: VirtualMachine) -> models.VM:
    row.order_id = vm.order_id
    row.user_id = vm.user_id
    row.remote_object_ref = vm.remote_object_ref
    row.name = vm.name
    row.hostname = vm.hostname
    row.status = vm.status.value
    row.cpu_count = vm.specifications.cpu_count
    row.memory_gb = vm.specifications.memory_gb
    row.disk_gb = vm.specifications.disk_gb
    row.bandwidth_gb = vm.specifications.bandwidth_gb
    row.operating_system = vm.specifications.operating_system
    row.data_center = vm.data_center
    row.ip_addresses = list(vm.ip_addresses)
    row.created_at = vm.created_at
    row.expires_at = vm.expires_at
    row.last_power_action = vm.last_power_action
    row.last_power_action_time = vm.last_power_action_time
    row.bandwidth_usage = vm.bandwidth_usage
    row.notes = vm.notes
    return row


class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, vm: VirtualMachine) -> VirtualMachine:
        row = _apply(models.VM(), vm)
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self.find_by_order_id(vm.order_id) is not None:
                raise VmAlreadyExistsError(f"A VM already exists for order '{vm.order_id}'.") from e
            if self.db.query(models.VM).filter(models.VM.name == vm.name).first() is not None:
                raise VmNameConflictError(f"VM name '{vm.name}' is already in use.") from e
            raise
        self.db.refresh(row)
        return _to_entity(row)

    def find_by_id(self, vm_id: int) -> Optional[VirtualMachine]:
        row = self.db.get(models.VM, vm_id)
        return _to_entity(row) if row else None

    def find_by_order_id(self, order_id: str) -> Optional[VirtualMachine]:
        row = self.db.query(models.VM).filter(models.VM.order_id == order_id).first()
        return _to_entity(row) if row else None

    def save(self, vm: VirtualMachine) -> VirtualMachine:
        row = self.db.get(models.VM, vm.id)
        if row is None:
            raise VmNotFoundError(f"VM {vm.id} not found.")
        _apply(row, vm)
        self.db.commit()
        self.db.refresh(row)
        return _to_entity(row)

    def delete(self, vm_id: int) -> bool:
        row = self.db.get(models.VM, vm_id)
        if row:
            self.db.delete(row)
            self.db.commit()
            return True
        return False

    def list_expired(self, now: datetime, exclude_statuses: Iterable[VmStatus] = ()) -> List[VirtualMachine]:
        query = self.db.query(models.VM).filter(
            models.VM.expires_at.isnot(None),
            models.VM.expires_at < now,
        )
        excluded = [status.value for status in exclude_statuses]
        if excluded:
            query = query.filter(models.VM.status.notin_(excluded))
        return [_to_entity(row) for row in query.order_by(models.VM.expires_at).all()]

    def list_by_user_id(self, user_id: Optional[int]) -> List[VirtualMachine]:
        query = self.db.query(models.VM)
        if user_id is not None:
            query = query.filter(models.VM.user_id == user_id)
        rows = query.order_by(models.VM.created_at.desc(), models.VM.id.desc()).all()
        return [_to_entity(row) for row in rows]
