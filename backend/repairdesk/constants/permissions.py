"""Central definitions for capability names and the raw flag keys that feed them.
Raw flags arrive in two stored shapes (structured `permissions` and the older free-form
`legacy_perms`) and with camelCase or snake_case keys; everything downstream sees only
the capability names below.
"""
from __future__ import annotations
from typing import Dict, Tuple

CAP_VIEW_ALL = 'view_all'
CAP_CREATE_TICKET = 'create_ticket'
CAP_EDIT_ANY = 'edit_any'
CAP_DELETE = 'delete'
CAP_RECEIVE_INTAKE = 'receive_intake'
CAP_MANAGE_SETTINGS = 'manage_settings'
CAP_SUPER_OVERRIDE = 'super_override'
CAP_ACCESS_ACCOUNTS = 'access_accounts'

CAPABILITIES: Tuple[str, ...] = (
    CAP_VIEW_ALL,
    CAP_CREATE_TICKET,
    CAP_EDIT_ANY,
    CAP_DELETE,
    CAP_RECEIVE_INTAKE,
    CAP_MANAGE_SETTINGS,
    CAP_SUPER_OVERRIDE,
    CAP_ACCESS_ACCOUNTS,
)

# raw flag key -> capability
RAW_FLAG_ALIASES: Dict[str, str] = {
    'viewAll': CAP_VIEW_ALL,
    'view_all': CAP_VIEW_ALL,
    'addRepair': CAP_CREATE_TICKET,
    'add_repair': CAP_CREATE_TICKET,
    'create_ticket': CAP_CREATE_TICKET,
    'editRepair': CAP_EDIT_ANY,
    'edit_repair': CAP_EDIT_ANY,
    'edit_any': CAP_EDIT_ANY,
    'deleteRepair': CAP_DELETE,
    'delete_repair': CAP_DELETE,
    'delete': CAP_DELETE,
    'receiveDevice': CAP_RECEIVE_INTAKE,
    'receive_device': CAP_RECEIVE_INTAKE,
    'receive_intake': CAP_RECEIVE_INTAKE,
    'settings': CAP_MANAGE_SETTINGS,
    'manage_settings': CAP_MANAGE_SETTINGS,
    'adminOverride': CAP_SUPER_OVERRIDE,
    'admin_override': CAP_SUPER_OVERRIDE,
    'super_override': CAP_SUPER_OVERRIDE,
    'accessAccounts': CAP_ACCESS_ACCOUNTS,
    'access_accounts': CAP_ACCESS_ACCOUNTS,
}

TRUTHY_STRINGS = ('1', 'true', 'on', 'yes')

# Guarded flow actions
ACTION_ASSIGN_TECHNICIAN = 'assign_technician'
ACTION_COMPLETE_STEP = 'complete_step'
ACTION_MOVE_NEXT = 'move_next'
FLOW_ACTIONS = (ACTION_ASSIGN_TECHNICIAN, ACTION_COMPLETE_STEP, ACTION_MOVE_NEXT)

# Preset flag bundles used by the seed script and tests
ROLE_PRESETS: Dict[str, Dict[str, bool]] = {
    'Intake': {'receiveDevice': True},
    'Technician': {},
    'Editor': {'editRepair': True, 'addRepair': True},
    'Owner': {'adminOverride': True},
}
