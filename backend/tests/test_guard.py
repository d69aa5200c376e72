import pytest
from repairdesk.constants.permissions import ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT
from repairdesk.errors import AccessDenied, NotCurrentStep
from repairdesk.models.authz import ROLE_TECHNICIAN
from repairdesk.models.repair_ticket import RepairTicket, FlowStage
from repairdesk.services.guard import allows, authorize
from repairdesk.services.policy import Principal, resolve_capabilities
from tests.test_utils_seed import unique, ensure_user, ensure_department


def _principal(user_id, department_id=None, **flags):
    return Principal(user_id=user_id, name=f'u{user_id}', department_id=department_id,
                     capabilities=resolve_capabilities(ROLE_TECHNICIAN, flags))


def _ticket(*stages):
    """In-memory ticket; the last non-completed stage is active."""
    t = RepairTicket(ticket_number=1, status=RepairTicket.STATUS_PENDING)
    for i, (department_id, technician_id, status) in enumerate(stages):
        t.stages.append(FlowStage(id=None, department_id=department_id, technician_id=technician_id, status=status))
    open_idx = [i for i, s in enumerate(t.stages) if s.status != FlowStage.STATUS_COMPLETED]
    t.active_stage_index = open_idx[0] if open_idx else None
    return t


@pytest.fixture()
def org(app_context):
    monitor = ensure_user(unique('guard-monitor'))
    d1 = ensure_department(unique('GuardA'))
    d2 = ensure_department(unique('GuardB'), monitor_id=monitor.id)
    return {'d1': d1.id, 'd2': d2.id, 'monitor': monitor.id}


def test_editor_allowed_everywhere_on_current_stage(org):
    t = _ticket((org['d1'], None, FlowStage.STATUS_WAITING))
    editor = _principal(500, editRepair=True)
    for action in (ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT):
        assert allows(editor, t, t.stages[0], action, technician_id=77)


def test_self_assign_same_department_only(org):
    t = _ticket((org['d1'], None, FlowStage.STATUS_WAITING))
    stage = t.active_stage
    same = _principal(501, department_id=org['d1'])
    other = _principal(502, department_id=org['d2'])
    homeless = _principal(503)
    assert allows(same, t, stage, ACTION_ASSIGN_TECHNICIAN, technician_id=501)
    # assigning someone else is not a self-assignment
    assert not allows(same, t, stage, ACTION_ASSIGN_TECHNICIAN, technician_id=999)
    assert not allows(other, t, stage, ACTION_ASSIGN_TECHNICIAN, technician_id=502)
    assert not allows(homeless, t, stage, ACTION_ASSIGN_TECHNICIAN, technician_id=503)


def test_assigned_technician_may_complete_and_advance(org):
    t = _ticket((org['d1'], 601, FlowStage.STATUS_IN_PROGRESS))
    tech = _principal(601)
    stranger = _principal(602, department_id=org['d1'])
    assert allows(tech, t, t.active_stage, ACTION_COMPLETE_STEP)
    assert not allows(stranger, t, t.active_stage, ACTION_COMPLETE_STEP)
    done = _ticket((org['d1'], 601, FlowStage.STATUS_COMPLETED))
    assert allows(tech, done, done.current_stage, ACTION_MOVE_NEXT)
    assert not allows(stranger, done, done.current_stage, ACTION_MOVE_NEXT)


def test_department_monitor_allowed(org):
    t = _ticket((org['d2'], 701, FlowStage.STATUS_IN_PROGRESS))
    monitor = _principal(org['monitor'])
    assert allows(monitor, t, t.active_stage, ACTION_COMPLETE_STEP)
    assert allows(monitor, t, t.active_stage, ACTION_ASSIGN_TECHNICIAN, technician_id=701)
    # monitoring one department gives nothing in another
    t1 = _ticket((org['d1'], 701, FlowStage.STATUS_IN_PROGRESS))
    assert not allows(monitor, t1, t1.active_stage, ACTION_COMPLETE_STEP)


def test_non_current_stage_rejected_even_for_editor(org):
    t = _ticket(
        (org['d1'], 801, FlowStage.STATUS_COMPLETED),
        (org['d2'], 802, FlowStage.STATUS_IN_PROGRESS),
    )
    editor = _principal(803, editRepair=True)
    old = t.stages[0]
    assert not allows(editor, t, old, ACTION_COMPLETE_STEP)
    with pytest.raises(NotCurrentStep):
        authorize(editor, t, old, ACTION_COMPLETE_STEP)


def test_completed_flow_has_no_stage_to_complete(org):
    t = _ticket((org['d1'], 901, FlowStage.STATUS_COMPLETED))
    with pytest.raises(NotCurrentStep):
        authorize(_principal(901), t, t.stages[0], ACTION_COMPLETE_STEP)


def test_stage_from_another_ticket_is_not_current(org):
    a = _ticket((org['d1'], 1001, FlowStage.STATUS_IN_PROGRESS))
    b = _ticket((org['d1'], 1001, FlowStage.STATUS_IN_PROGRESS))
    with pytest.raises(NotCurrentStep):
        authorize(_principal(1001), b, a.active_stage, ACTION_COMPLETE_STEP)


def test_authorize_raises_access_denied_with_reason(org):
    t = _ticket((org['d1'], 1101, FlowStage.STATUS_IN_PROGRESS))
    with pytest.raises(AccessDenied) as exc:
        authorize(_principal(1102), t, t.active_stage, ACTION_COMPLETE_STEP)
    assert 'assigned technician' in exc.value.description
    assert authorize(_principal(1101), t, t.active_stage, ACTION_COMPLETE_STEP) is True


def test_allows_is_pure(org):
    t = _ticket((org['d1'], None, FlowStage.STATUS_WAITING))
    before = (t.active_stage_index, [(s.status, s.technician_id) for s in t.stages])
    allows(_principal(1201, department_id=org['d1']), t, t.active_stage, ACTION_ASSIGN_TECHNICIAN, technician_id=1201)
    assert (t.active_stage_index, [(s.status, s.technician_id) for s in t.stages]) == before
