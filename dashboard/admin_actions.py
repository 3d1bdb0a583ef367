"""
Admin server-action dialog
Collects a reason (and a new owner for transfers), then calls the matching admin endpoint
"""

import logging
from typing import Any, Dict, Optional

from dashboard.api_client import ApiClient, ApiError
from dashboard.query_client import QueryClient
from dashboard.toasts import Toaster
from services.server_actions import (
    ACTION_LABELS,
    ACTION_RESULTS,
    build_action_request,
    requires_reason,
    validate_action,
)

logger = logging.getLogger(__name__)

INVALIDATE_ON_SUCCESS = (
    ('admin', 'vf', 'servers'),
    ('admin', 'vf', 'stats'),
    ('admin', 'audit-logs'),
)


class ServerActionDialog:
    def __init__(self, api: ApiClient, queries: QueryClient, toaster: Toaster):
        self.api = api
        self.queries = queries
        self.toaster = toaster
        self.server: Optional[Dict[str, Any]] = None
        self.action: Optional[str] = None
        self.reason = ''
        self.new_owner_id = ''
        self.pending = False

    @property
    def is_open(self) -> bool:
        return self.action is not None

    @property
    def title(self) -> str:
        if not self.is_open:
            return ''
        name = (self.server or {}).get('name') or f"Server {(self.server or {}).get('id')}"
        return f"{ACTION_LABELS[self.action]} {name}"

    @property
    def reason_required(self) -> bool:
        return self.is_open and requires_reason(self.action)

    @property
    def can_confirm(self) -> bool:
        if not self.is_open or self.pending:
            return False
        ok, _ = validate_action(self.action, self.reason, self.new_owner_id)
        return ok

    def open(self, server: Dict[str, Any], action: str) -> None:
        if action not in ACTION_LABELS:
            raise ValueError(f"Unknown action: {action}")
        self.server = server
        self.action = action
        self.reason = ''
        self.new_owner_id = ''

    def close(self) -> None:
        self.server = None
        self.action = None
        self.reason = ''
        self.new_owner_id = ''
        self.pending = False

    async def confirm(self) -> bool:
        """Run the action; True on success (dialog closes), False otherwise"""
        if not self.is_open or self.pending:
            return False

        ok, error = validate_action(self.action, self.reason, self.new_owner_id)
        if not ok:
            self.toaster.error("Error", error)
            return False

        request = build_action_request(self.server['id'], self.action, self.reason, self.new_owner_id)
        action = self.action
        self.pending = True
        try:
            await self.api.request(request.method, request.path, json=request.body)
        except ApiError as e:
            logger.warning(f"⚠️ Admin action {action} on server {self.server['id']} failed: {e.message}")
            self.toaster.error("Error", e.message)
            return False
        finally:
            self.pending = False

        for key in INVALIDATE_ON_SUCCESS:
            await self.queries.invalidate_queries(key)
        self.toaster.success("Success", f"Server {ACTION_RESULTS[action]} successfully")
        self.close()
        return True
