from __future__ import annotations
"""Department flow engine for repair tickets.

Owns the stage state machine (waiting -> in_progress -> completed) and the two-way
coupling between ticket status and the active stage. All operations mutate the loaded
ticket in memory, append audit events and keep ``active_stage_index`` current; the
caller commits.
"""
from typing import Any, Optional
from repairdesk import get_db
from repairdesk.constants.permissions import ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT
from repairdesk.errors import NoActiveFlow, CurrentNotCompleted, ResourceNotFound, ValidationError
from repairdesk.models.authz import Department, User
from repairdesk.models.repair_ticket import RepairTicket, FlowStage
from repairdesk.services import audit, guard
from repairdesk.services.policy import Principal
from repairdesk.utils.clock import utcnow, iso
from repairdesk.utils.fsm import TransitionValidator
from repairdesk.utils.validation import validate_status

STAGE_FSM = TransitionValidator({
    FlowStage.STATUS_WAITING: {FlowStage.STATUS_IN_PROGRESS},
    FlowStage.STATUS_IN_PROGRESS: {FlowStage.STATUS_COMPLETED},
    FlowStage.STATUS_COMPLETED: set(),
}, field_name='stage status')

_CUSTOMER_WORDS = ('customer', 'client', 'owner')
_SHOP_WORDS = ('shop', 'store', 'workshop', 'branch')


def normalize_rejected_location(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = ' '.join(str(value).strip().lower().replace('_', ' ').split())
    if not text:
        return None
    if any(w in text for w in _CUSTOMER_WORDS):
        return RepairTicket.LOCATION_WITH_CUSTOMER
    if any(w in text for w in _SHOP_WORDS):
        return RepairTicket.LOCATION_IN_SHOP
    return None


class FlowEngine:
    def __init__(self, ticket: RepairTicket, principal: Optional[Principal] = None, actor_id: Optional[int] = None):
        self.ticket = ticket
        self.principal = principal
        self.actor_id = principal.user_id if principal else actor_id

    # --- internals ---
    def _touch(self):
        self.ticket.updated_at = utcnow()
        if self.actor_id:
            self.ticket.updated_by = self.actor_id

    def _reindex(self):
        stages = self.ticket.stages
        open_idx = [i for i, s in enumerate(stages) if s.status != FlowStage.STATUS_COMPLETED]
        if len(open_idx) > 1 or (open_idx and open_idx[0] != len(stages) - 1):
            raise RuntimeError(f'ticket {self.ticket.ticket_number}: more than one open stage or open stage not last')
        self.ticket.active_stage_index = open_idx[0] if open_idx else None

    def _require_principal(self) -> Principal:
        if self.principal is None:
            raise RuntimeError('guarded flow operation without a principal')
        return self.principal

    def _resolve_stage(self, stage_id: Optional[int]) -> FlowStage:
        stages = self.ticket.stages
        if not stages:
            raise NoActiveFlow('Ticket has no flow stages')
        if stage_id is not None:
            for s in stages:
                if s.id == stage_id:
                    return s
            raise ResourceNotFound('Stage not found')
        return self.ticket.active_stage or self.ticket.current_stage

    def _require_department(self, department_id: Optional[int]) -> int:
        if department_id is None:
            raise ValidationError('department_id required', error_code='MissingDepartment')
        if get_db().get(Department, department_id) is None:
            raise ValidationError('Unknown department')
        return department_id

    def _require_technician(self, technician_id: Optional[int]):
        if technician_id is None:
            return
        user = get_db().get(User, technician_id)
        if user is None or not user.is_active:
            raise ValidationError('Unknown technician')

    def _start_stage(self, stage: FlowStage, emit: bool = True):
        STAGE_FSM.assert_can_transition(stage.status, FlowStage.STATUS_IN_PROGRESS)
        stage.status = FlowStage.STATUS_IN_PROGRESS
        if stage.started_at is None:
            stage.started_at = utcnow()
        if emit:
            audit.append(self.ticket, audit.EVENT_FLOW_START, self.actor_id,
                         stage=stage.position, department_id=stage.department_id, technician_id=stage.technician_id)

    def _complete_stage(self, stage: FlowStage, price=None, notes=None, forced: bool = False):
        if stage.status == FlowStage.STATUS_WAITING:
            self._start_stage(stage, emit=not forced)
        STAGE_FSM.assert_can_transition(stage.status, FlowStage.STATUS_COMPLETED)
        stage.status = FlowStage.STATUS_COMPLETED
        stage.completed_at = utcnow()
        if stage.started_at is None:
            stage.started_at = stage.completed_at
        if price is not None:
            stage.price = price
        if notes is not None:
            stage.notes = notes
        audit.append(self.ticket, audit.EVENT_FLOW_COMPLETE, self.actor_id,
                     stage=stage.position, price=stage.price, notes=stage.notes or '', forced=forced)

    def _set_status(self, new_status: str) -> bool:
        old = self.ticket.status
        if old == new_status:
            return False
        self.ticket.status = new_status
        audit.append(self.ticket, audit.EVENT_STATUS_CHANGE, self.actor_id, from_status=old, status=new_status)
        return True

    def _append_stage(self, department_id: int, technician_id: Optional[int] = None) -> FlowStage:
        stage = FlowStage(department_id=department_id, technician_id=technician_id, status=FlowStage.STATUS_WAITING)
        self.ticket.stages.append(stage)
        self.ticket.current_department_id = department_id
        self._reindex()
        return stage

    # --- operations ---
    def start_intake(self, department_id: Optional[int] = None, technician_id: Optional[int] = None):
        """First stage at creation; with a technician it begins in progress."""
        if department_id is not None:
            self._require_department(department_id)
        self._require_technician(technician_id)
        audit.append(self.ticket, audit.EVENT_CREATE, self.actor_id, department_id=department_id, technician_id=technician_id)
        if department_id is None:
            self._reindex()
            return None
        stage = self._append_stage(department_id, technician_id)
        if technician_id is not None:
            self._start_stage(stage)
            self.ticket.status = RepairTicket.STATUS_IN_PROGRESS
            self.ticket.start_time = stage.started_at
        self._reindex()
        self._touch()
        return stage

    def assign_technician(self, technician_id: Optional[int], stage_id: Optional[int] = None) -> FlowStage:
        stage = self._resolve_stage(stage_id)
        guard.authorize(self._require_principal(), self.ticket, stage, ACTION_ASSIGN_TECHNICIAN, technician_id=technician_id)
        self._require_technician(technician_id)
        previous = stage.technician_id
        stage.technician_id = technician_id
        audit.append(self.ticket, audit.EVENT_ASSIGN_TECHNICIAN, self.actor_id,
                     stage=stage.position, technician_id=technician_id, previous_technician_id=previous)
        if stage.status == FlowStage.STATUS_WAITING and technician_id is not None:
            self._start_stage(stage)
            if self.ticket.start_time is None:
                self.ticket.start_time = stage.started_at
            self._set_status(RepairTicket.STATUS_IN_PROGRESS)
        self._reindex()
        self._touch()
        return stage

    def complete_step(self, price=None, notes: Optional[str] = None, stage_id: Optional[int] = None) -> FlowStage:
        stage = self._resolve_stage(stage_id)
        guard.authorize(self._require_principal(), self.ticket, stage, ACTION_COMPLETE_STEP)
        self._complete_stage(stage, price=price, notes=notes)
        self._reindex()
        self._touch()
        return stage

    def move_next(self, department_id: Optional[int]) -> FlowStage:
        self._require_department(department_id)
        current = self.ticket.current_stage
        if current is not None:
            if current.status != FlowStage.STATUS_COMPLETED:
                raise CurrentNotCompleted('Current step is not completed')
            guard.authorize(self._require_principal(), self.ticket, current, ACTION_MOVE_NEXT)
        from_department = self.ticket.current_department_id
        stage = self._append_stage(department_id)
        audit.append(self.ticket, audit.EVENT_MOVE_NEXT, self.actor_id,
                     stage=stage.position, department_id=department_id, from_department_id=from_department)
        self._set_status(RepairTicket.STATUS_PENDING)
        self._reindex()
        self._touch()
        return stage

    def apply_status(self, new_status: str, rejected_location: Any = None) -> bool:
        """Set ticket status and carry the change into the active stage."""
        validate_status(new_status, RepairTicket.ALL_STATUSES)
        t = self.ticket
        now = utcnow()
        stage = t.active_stage

        if new_status == RepairTicket.STATUS_IN_PROGRESS:
            if t.start_time is None:
                t.start_time = now
            if stage is not None and stage.status == FlowStage.STATUS_WAITING and stage.technician_id is not None:
                self._start_stage(stage)

        elif new_status in RepairTicket.TERMINAL_STATUSES:
            if new_status == RepairTicket.STATUS_COMPLETED and t.end_time is None:
                t.end_time = now
            if new_status == RepairTicket.STATUS_DELIVERED:
                t.delivery_date = now
                t.returned = False
                t.return_date = None
            if new_status == RepairTicket.STATUS_REJECTED:
                loc = normalize_rejected_location(rejected_location) or RepairTicket.LOCATION_IN_SHOP
                t.rejected_device_location = loc
                if loc == RepairTicket.LOCATION_WITH_CUSTOMER:
                    if t.delivery_date is None:
                        t.delivery_date = now
                else:
                    t.delivery_date = None
            if stage is not None and stage.status != FlowStage.STATUS_COMPLETED:
                self._complete_stage(stage, forced=True)

        elif new_status == RepairTicket.STATUS_RETURNED:
            t.returned = True
            t.return_date = now
            t.rejected_device_location = None
            last = t.current_stage
            if last is not None and last.status == FlowStage.STATUS_COMPLETED:
                # reopen in the same department instead of creating a new ticket
                reopened = self._append_stage(last.department_id)
                audit.append(t, audit.EVENT_MOVE_NEXT, self.actor_id,
                             stage=reopened.position, department_id=last.department_id, from_department_id=last.department_id)

        changed = self._set_status(new_status)
        self._reindex()
        self._touch()
        return changed


def flow_projection(ticket: RepairTicket) -> dict:
    """Stage list plus current department, the shape returned by the flow endpoints."""
    session = get_db()
    dept_ids = {s.department_id for s in ticket.stages}
    if ticket.current_department_id:
        dept_ids.add(ticket.current_department_id)
    tech_ids = {s.technician_id for s in ticket.stages if s.technician_id}
    depts = {d.id: d for d in session.query(Department).filter(Department.id.in_(dept_ids)).all()} if dept_ids else {}
    techs = {u.id: u for u in session.query(User).filter(User.id.in_(tech_ids)).all()} if tech_ids else {}

    def _stage(s: FlowStage):
        d = depts.get(s.department_id)
        u = techs.get(s.technician_id) if s.technician_id else None
        return {
            'id': s.id,
            'position': s.position,
            'department': {'id': s.department_id, 'name': d.name if d else None},
            'technician': {'id': u.id, 'name': u.display_name, 'username': u.username} if u else None,
            'status': s.status,
            'price': s.price or 0,
            'notes': s.notes,
            'started_at': iso(s.started_at),
            'completed_at': iso(s.completed_at),
        }

    cur = depts.get(ticket.current_department_id) if ticket.current_department_id else None
    return {
        'ticket_id': ticket.id,
        'current_department': {'id': cur.id, 'name': cur.name} if cur else None,
        'active_stage_index': ticket.active_stage_index,
        'status': ticket.status,
        'flows': [_stage(s) for s in ticket.stages],
    }


__all__ = ['FlowEngine', 'STAGE_FSM', 'normalize_rejected_location', 'flow_projection']
