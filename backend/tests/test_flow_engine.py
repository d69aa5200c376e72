"""FlowEngine on in-memory tickets (never flushed); departments and users are real rows."""
import pytest
from repairdesk.errors import ValidationError, CurrentNotCompleted, InvalidTransition, NoActiveFlow, ResourceNotFound
from repairdesk.models.authz import ROLE_ADMIN
from repairdesk.models.repair_ticket import RepairTicket, FlowStage
from repairdesk.services.flow import FlowEngine, STAGE_FSM, normalize_rejected_location
from repairdesk.services.policy import principal_for_user
from tests.test_utils_seed import unique, ensure_user, ensure_department


@pytest.fixture()
def org(app_context):
    d1 = ensure_department(unique('EngineA'))
    d2 = ensure_department(unique('EngineB'))
    admin = ensure_user(unique('engine-admin'), role=ROLE_ADMIN)
    tech = ensure_user(unique('engine-tech'), department_id=d1.id)
    return {'d1': d1.id, 'd2': d2.id, 'admin': principal_for_user(admin), 'tech': tech.id}


def _ticket():
    return RepairTicket(ticket_number=424242, customer_name='C', device_type='Phone', status=RepairTicket.STATUS_PENDING)


def _types(t):
    return [e.type for e in t.events]


def _assert_single_open_stage(t):
    open_idx = [i for i, s in enumerate(t.stages) if s.status != FlowStage.STATUS_COMPLETED]
    assert len(open_idx) <= 1
    if open_idx:
        assert open_idx[0] == len(t.stages) - 1
    assert t.active_stage_index == (open_idx[0] if open_idx else None)


def test_intake_without_department_has_no_flow(org):
    t = _ticket()
    assert FlowEngine(t, org['admin']).start_intake() is None
    assert t.stages == []
    assert t.active_stage_index is None
    assert _types(t) == ['create']


def test_intake_with_technician_starts_work(org):
    t = _ticket()
    stage = FlowEngine(t, org['admin']).start_intake(org['d1'], org['tech'])
    assert stage.status == FlowStage.STATUS_IN_PROGRESS
    assert t.status == RepairTicket.STATUS_IN_PROGRESS
    assert t.start_time is not None
    assert t.current_department_id == org['d1']
    assert t.active_stage_index == 0
    assert _types(t) == ['create', 'flow_start']


def test_intake_unknown_department_or_technician(org):
    with pytest.raises(ValidationError):
        FlowEngine(_ticket(), org['admin']).start_intake(987654321)
    with pytest.raises(ValidationError):
        FlowEngine(_ticket(), org['admin']).start_intake(org['d1'], 987654321)


def test_delivered_completes_active_stage_once(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'], org['tech'])
    assert engine.apply_status(RepairTicket.STATUS_DELIVERED) is True
    assert t.stages[0].status == FlowStage.STATUS_COMPLETED
    assert t.active_stage_index is None
    assert t.delivery_date is not None
    assert _types(t).count('flow_complete') == 1
    assert _types(t).count('status_change') == 1
    forced = [e for e in t.events if e.type == 'flow_complete'][0]
    assert forced.payload['forced'] is True
    # same status again is a no-op
    assert engine.apply_status(RepairTicket.STATUS_DELIVERED) is False
    assert _types(t).count('flow_complete') == 1
    assert _types(t).count('status_change') == 1


def test_completed_status_on_waiting_stage_forces_completion(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    engine.apply_status(RepairTicket.STATUS_COMPLETED)
    stage = t.stages[0]
    assert stage.status == FlowStage.STATUS_COMPLETED
    assert stage.started_at is not None
    assert t.end_time is not None
    # forced completion of a waiting stage does not log a separate start
    assert 'flow_start' not in _types(t)


def test_in_progress_status_promotes_only_assigned_stage(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    engine.apply_status(RepairTicket.STATUS_IN_PROGRESS)
    assert t.stages[0].status == FlowStage.STATUS_WAITING
    assert t.start_time is not None

    t2 = _ticket()
    engine2 = FlowEngine(t2, org['admin'])
    engine2.start_intake(org['d1'])
    t2.stages[0].technician_id = org['tech']
    engine2.apply_status(RepairTicket.STATUS_IN_PROGRESS)
    assert t2.stages[0].status == FlowStage.STATUS_IN_PROGRESS


def test_assign_technician_starts_waiting_stage(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    stage = engine.assign_technician(org['tech'])
    assert stage.technician_id == org['tech']
    assert stage.status == FlowStage.STATUS_IN_PROGRESS
    assert t.status == RepairTicket.STATUS_IN_PROGRESS
    assert _types(t)[-3:] == ['assign_technician', 'flow_start', 'status_change']


def test_guarded_operation_without_flow(org):
    with pytest.raises(NoActiveFlow):
        FlowEngine(_ticket(), org['admin']).complete_step()


def test_unknown_stage_id(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    with pytest.raises(ResourceNotFound):
        engine.complete_step(stage_id=123456789)


def test_move_next_requires_department(org):
    t = _ticket()
    with pytest.raises(ValidationError) as exc:
        FlowEngine(t, org['admin']).move_next(None)
    assert exc.value.error_code == 'MissingDepartment'


def test_move_next_before_completion_conflicts(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'], org['tech'])
    with pytest.raises(CurrentNotCompleted):
        engine.move_next(org['d2'])


def test_complete_then_move_next(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'], org['tech'])
    engine.complete_step(price=150, notes='replaced screen')
    assert t.stages[0].price == 150
    assert t.active_stage_index is None
    stage = engine.move_next(org['d2'])
    assert stage.position == 1
    assert t.current_department_id == org['d2']
    assert t.status == RepairTicket.STATUS_PENDING
    assert t.active_stage_index == 1
    _assert_single_open_stage(t)
    move = [e for e in t.events if e.type == 'move_next'][0]
    assert move.payload == {'stage': 1, 'department_id': org['d2'], 'from_department_id': org['d1']}


def test_returned_reopens_stage_in_same_department(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'], org['tech'])
    engine.apply_status(RepairTicket.STATUS_DELIVERED)
    engine.apply_status(RepairTicket.STATUS_RETURNED)
    assert len(t.stages) == 2
    assert t.stages[1].department_id == org['d1']
    assert t.stages[1].status == FlowStage.STATUS_WAITING
    assert t.returned is True and t.return_date is not None
    assert t.status == RepairTicket.STATUS_RETURNED
    _assert_single_open_stage(t)


def test_returned_with_open_stage_adds_nothing(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    engine.apply_status(RepairTicket.STATUS_RETURNED)
    assert len(t.stages) == 1


def test_rejected_location_and_delivery_date(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    engine.apply_status(RepairTicket.STATUS_REJECTED, 'Returned to the customer')
    assert t.rejected_device_location == RepairTicket.LOCATION_WITH_CUSTOMER
    assert t.delivery_date is not None

    t2 = _ticket()
    engine2 = FlowEngine(t2, org['admin'])
    engine2.start_intake(org['d1'])
    engine2.apply_status(RepairTicket.STATUS_REJECTED, 'somewhere')
    assert t2.rejected_device_location == RepairTicket.LOCATION_IN_SHOP
    assert t2.delivery_date is None
    assert t2.stages[0].status == FlowStage.STATUS_COMPLETED


def test_returned_after_rejection_clears_location(org):
    t = _ticket()
    engine = FlowEngine(t, org['admin'])
    engine.start_intake(org['d1'])
    engine.apply_status(RepairTicket.STATUS_REJECTED, 'with customer')
    handed_back = t.delivery_date
    engine.apply_status(RepairTicket.STATUS_RETURNED)
    assert t.rejected_device_location is None
    assert t.delivery_date == handed_back
    assert t.returned is True
    assert t.stages[-1].status == FlowStage.STATUS_WAITING
    _assert_single_open_stage(t)


def test_invalid_status(org):
    with pytest.raises(ValidationError):
        FlowEngine(_ticket(), org['admin']).apply_status('lost')


@pytest.mark.parametrize('raw,expected', [
    ('with_customer', RepairTicket.LOCATION_WITH_CUSTOMER),
    ('Client picked it up', RepairTicket.LOCATION_WITH_CUSTOMER),
    ('OWNER', RepairTicket.LOCATION_WITH_CUSTOMER),
    ('in_shop', RepairTicket.LOCATION_IN_SHOP),
    ('  Workshop shelf ', RepairTicket.LOCATION_IN_SHOP),
    ('branch', RepairTicket.LOCATION_IN_SHOP),
    ('garage', None),
    ('', None),
    (None, None),
])
def test_normalize_rejected_location(raw, expected):
    assert normalize_rejected_location(raw) == expected


def test_stage_fsm_forbids_reopening():
    assert STAGE_FSM.can_transition(FlowStage.STATUS_WAITING, FlowStage.STATUS_IN_PROGRESS)
    assert not STAGE_FSM.can_transition(FlowStage.STATUS_WAITING, FlowStage.STATUS_COMPLETED)
    with pytest.raises(InvalidTransition):
        STAGE_FSM.assert_can_transition(FlowStage.STATUS_COMPLETED, FlowStage.STATUS_IN_PROGRESS)
