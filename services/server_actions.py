"""
Admin server action rules
Which actions need a reason or a new owner, and which endpoint each action calls
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Any, Tuple, Union

POWER_ACTIONS = ('start', 'stop', 'restart', 'poweroff')
ACTIONS = POWER_ACTIONS + ('suspend', 'unsuspend', 'transfer', 'delete')
REASON_REQUIRED_ACTIONS = frozenset({'delete', 'suspend', 'transfer'})

ACTION_LABELS = {
    'start': 'Start',
    'stop': 'Stop',
    'restart': 'Restart',
    'poweroff': 'Force Power Off',
    'suspend': 'Suspend',
    'unsuspend': 'Unsuspend',
    'transfer': 'Transfer',
    'delete': 'Delete',
}

# Past tense used in success messages
ACTION_RESULTS = {
    'start': 'started',
    'stop': 'stopped',
    'restart': 'restarted',
    'poweroff': 'powered off',
    'suspend': 'suspended',
    'unsuspend': 'unsuspended',
    'transfer': 'transferred',
    'delete': 'deleted',
}


@dataclass(frozen=True)
class ActionRequest:
    method: str
    path: str
    body: Dict[str, Any] = field(default_factory=dict)


def requires_reason(action: str) -> bool:
    return action in REASON_REQUIRED_ACTIONS


def parse_owner_id(value: Union[str, int, None]) -> Optional[int]:
    """Numeric VirtFusion user id, or None when blank or not a positive integer"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value).strip()
    if not text.isdigit():
        return None
    number = int(text)
    return number if number > 0 else None


def validate_action(action: str, reason: Optional[str] = None,
                    new_owner_id: Union[str, int, None] = None) -> Tuple[bool, Optional[str]]:
    if action not in ACTIONS:
        return False, f"Unknown action: {action}"
    if requires_reason(action) and not (reason or '').strip():
        return False, "Please provide a reason for this action"
    if action == 'transfer' and parse_owner_id(new_owner_id) is None:
        return False, "Please enter a valid new owner ID"
    return True, None


def build_action_request(server_id: Union[int, str], action: str, reason: Optional[str] = None,
                         new_owner_id: Union[str, int, None] = None) -> ActionRequest:
    """
    Map an admin action to its HTTP call (path relative to the /api root)

    Raises ValueError when the action fails validation.
    """
    ok, error = validate_action(action, reason, new_owner_id)
    if not ok:
        raise ValueError(error)

    body: Dict[str, Any] = {}
    trimmed = (reason or '').strip()
    if trimmed:
        body['reason'] = trimmed

    base = f'/admin/vf/servers/{server_id}'
    if action == 'delete':
        return ActionRequest('DELETE', base, body)
    if action == 'transfer':
        body['newOwnerId'] = parse_owner_id(new_owner_id)
        return ActionRequest('POST', f'{base}/transfer', body)
    if action in ('suspend', 'unsuspend'):
        return ActionRequest('POST', f'{base}/{action}', body)
    return ActionRequest('POST', f'{base}/power/{action}', body)
