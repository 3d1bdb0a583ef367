"""Support ticket list, creation and conversation flow"""

import logging
from typing import Any, Dict, List, Optional

from dashboard.api_client import ApiClient, ApiError
from dashboard.query_client import QueryClient
from dashboard.toasts import Toaster

logger = logging.getLogger(__name__)

CATEGORIES = ('billing', 'server', 'network', 'panel', 'abuse', 'general')
PRIORITIES = ('low', 'normal', 'high', 'urgent')
TITLE_LENGTH = (5, 200)
DESCRIPTION_LENGTH = (10, 10000)

TICKETS_KEY = ('support', 'tickets')
COUNTS_KEY = ('support', 'counts')


def validate_ticket(title: str, description: str, category: str, priority: str) -> Optional[str]:
    title = (title or '').strip()
    description = (description or '').strip()
    if not TITLE_LENGTH[0] <= len(title) <= TITLE_LENGTH[1]:
        return f"Title must be between {TITLE_LENGTH[0]} and {TITLE_LENGTH[1]} characters"
    if not DESCRIPTION_LENGTH[0] <= len(description) <= DESCRIPTION_LENGTH[1]:
        return f"Description must be between {DESCRIPTION_LENGTH[0]} and {DESCRIPTION_LENGTH[1]} characters"
    if category not in CATEGORIES:
        return "Please choose a category"
    if priority not in PRIORITIES:
        return "Please choose a priority"
    return None


class SupportTickets:
    def __init__(self, api: ApiClient, queries: QueryClient, toaster: Toaster):
        self.api = api
        self.queries = queries
        self.toaster = toaster
        self.status_filter = 'all'
        self.tickets: List[Dict[str, Any]] = []
        self.ticket: Optional[Dict[str, Any]] = None
        self.messages: List[Dict[str, Any]] = []

    async def load(self, status_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        if status_filter is not None:
            self.status_filter = status_filter
        status = self.status_filter

        async def fetch():
            return (await self.api.get('/support/tickets', params={'status': status})).get('tickets') or []

        self.tickets = await self.queries.fetch_query(TICKETS_KEY + (status,), fetch)
        return self.tickets

    async def counts(self) -> Dict[str, int]:
        async def fetch():
            return (await self.api.get('/support/counts')).get('counts') or {}
        return await self.queries.fetch_query(COUNTS_KEY, fetch)

    async def _refresh_lists(self) -> None:
        await self.queries.invalidate_queries(TICKETS_KEY)
        await self.queries.invalidate_queries(COUNTS_KEY)

    async def create(self, title: str, description: str, category: str = 'general',
                     priority: str = 'normal', server_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        error = validate_ticket(title, description, category, priority)
        if error:
            self.toaster.error("Error", error)
            return None

        try:
            result = await self.api.post('/support/tickets', {
                'title': title.strip(),
                'description': description.strip(),
                'category': category,
                'priority': priority,
                'virtfusionServerId': server_id,
            })
        except ApiError as e:
            self.toaster.error("Error", e.message)
            return None

        await self._refresh_lists()
        self.toaster.success("Ticket created", "Our team will get back to you soon.")
        return result.get('ticket')

    async def open(self, ticket_id: int) -> Dict[str, Any]:
        result = await self.api.get(f'/support/tickets/{ticket_id}')
        self.ticket = result.get('ticket')
        self.messages = result.get('messages') or []
        return self.ticket

    async def reply(self, message: str) -> bool:
        if self.ticket is None:
            return False
        text = (message or '').strip()
        if not text:
            self.toaster.error("Error", "Message cannot be empty")
            return False

        try:
            result = await self.api.post(f"/support/tickets/{self.ticket['id']}/messages", {'message': text})
        except ApiError as e:
            self.toaster.error("Error", e.message)
            return False

        self.messages.append(result['message'])
        self.ticket['status'] = result.get('status', self.ticket['status'])
        await self._refresh_lists()
        return True

    async def _set_status(self, action: str) -> bool:
        if self.ticket is None:
            return False
        try:
            result = await self.api.post(f"/support/tickets/{self.ticket['id']}/{action}")
        except ApiError as e:
            self.toaster.error("Error", e.message)
            return False
        self.ticket['status'] = result.get('status')
        await self._refresh_lists()
        return True

    async def close(self) -> bool:
        if await self._set_status('close'):
            self.toaster.success("Ticket closed")
            return True
        return False

    async def reopen(self) -> bool:
        if await self._set_status('reopen'):
            self.toaster.success("Ticket reopened")
            return True
        return False
