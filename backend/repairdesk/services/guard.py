from __future__ import annotations
"""Authorization of flow-stage actions.

Every action first requires the targeted stage to be the one the action works on:
the active (non-completed) stage, or for move_next the last stage of the flow.
The OR-composed rules then decide:

    assign_technician  editor | department monitor | self-assign from the same home department
    complete_step      editor | department monitor | the stage's assigned technician
    move_next          editor | department monitor | the stage's assigned technician
    anything else      editor | department monitor
"""
from typing import Optional
from repairdesk.constants.permissions import ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT
from repairdesk.errors import AccessDenied, NotCurrentStep
from repairdesk.models.repair_ticket import RepairTicket, FlowStage
from repairdesk.services.policy import Principal, is_monitor_of

_DENIED = {
    ACTION_ASSIGN_TECHNICIAN: 'Assigning a technician requires an editor, the department monitor, or a self-assignment from the same department',
    ACTION_COMPLETE_STEP: 'Completing a step requires an editor, the department monitor, or the assigned technician',
    ACTION_MOVE_NEXT: 'Moving to the next department requires an editor, the department monitor, or the assigned technician',
}


def _expected_stage(ticket: RepairTicket, action: str) -> Optional[FlowStage]:
    if action == ACTION_MOVE_NEXT:
        return ticket.current_stage
    return ticket.active_stage


def _is_current(ticket: RepairTicket, stage: Optional[FlowStage], action: str) -> bool:
    current = _expected_stage(ticket, action)
    if stage is None or current is None:
        return False
    if stage.id is not None and current.id is not None:
        return stage.id == current.id
    return stage is current


def allows(principal: Principal, ticket: RepairTicket, stage: Optional[FlowStage], action: str, technician_id: Optional[int] = None) -> bool:
    if not _is_current(ticket, stage, action):
        return False
    if principal.can_edit_all:
        return True
    if is_monitor_of(principal.user_id, stage.department_id):
        return True
    if action == ACTION_ASSIGN_TECHNICIAN:
        self_assign = technician_id is not None and technician_id == principal.user_id
        return self_assign and principal.department_id is not None and principal.department_id == stage.department_id
    if action in (ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT):
        return stage.technician_id is not None and stage.technician_id == principal.user_id
    return False


def authorize(principal: Principal, ticket: RepairTicket, stage: Optional[FlowStage], action: str, technician_id: Optional[int] = None) -> bool:
    if not _is_current(ticket, stage, action):
        raise NotCurrentStep('This is not the current step')
    if not allows(principal, ticket, stage, action, technician_id=technician_id):
        raise AccessDenied(_DENIED.get(action, 'Forbidden'))
    return True


__all__ = ['allows', 'authorize']
