"""
Support Ticket Routes
Customers open tickets and reply; admins see every ticket and reply as staff
"""
import logging
from typing import Dict, Any, List

from fastapi import APIRouter, Depends, Query

from api.middleware.authentication import get_current_user
from api.schemas.support import CreateTicketRequest, TicketMessageRequest
from api.utils.errors import BadRequestError, ConflictError, ResourceNotFoundError
from api.utils.responses import success_response
from database import (
    create_support_ticket,
    list_support_tickets,
    get_support_ticket,
    list_ticket_messages,
    add_ticket_message,
    set_support_ticket_status,
    get_support_ticket_counts,
)
from utils.content_filter import contains_blocked_content

logger = logging.getLogger(__name__)

router = APIRouter()

CLOSED_STATUSES = ('resolved', 'closed')
STATUS_FILTERS = ('all', 'open', 'closed')


def ticket_view(ticket: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": ticket["id"],
        "title": ticket["title"],
        "category": ticket["category"],
        "priority": ticket["priority"],
        "status": ticket["status"],
        "email": ticket.get("email"),
        "virtfusionServerId": ticket.get("virtfusion_server_id"),
        "createdAt": ticket.get("created_at"),
        "lastMessageAt": ticket.get("last_message_at"),
        "closedAt": ticket.get("closed_at"),
    }


def message_view(message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": message["id"],
        "authorEmail": message.get("author_email"),
        "isAdmin": bool(message.get("is_admin")),
        "message": message["message"],
        "createdAt": message.get("created_at"),
    }


def _reject_blocked_content(*texts: str):
    if any(contains_blocked_content(text) for text in texts):
        raise BadRequestError("Your message contains inappropriate content")


async def _visible_ticket(ticket_id: int, user: Dict[str, Any]) -> Dict[str, Any]:
    ticket = await get_support_ticket(ticket_id)
    if not ticket or (ticket["auth0_user_id"] != user["auth0_user_id"] and not user.get("is_admin")):
        raise ResourceNotFoundError("Ticket", str(ticket_id))
    return ticket


@router.get("/support/tickets")
async def list_tickets(status: str = Query("all"), user: dict = Depends(get_current_user)):
    if status not in STATUS_FILTERS:
        raise BadRequestError(f"status must be one of: {', '.join(STATUS_FILTERS)}")
    owner = None if user.get("is_admin") else user["auth0_user_id"]
    tickets: List[Dict[str, Any]] = await list_support_tickets(owner, status)
    return success_response({"tickets": [ticket_view(t) for t in tickets]})


@router.post("/support/tickets", status_code=201)
async def create_ticket(body: CreateTicketRequest, user: dict = Depends(get_current_user)):
    title = body.title.strip()
    description = body.description.strip()
    if len(title) < 5:
        raise BadRequestError("Title must be at least 5 characters")
    if len(description) < 10:
        raise BadRequestError("Description must be at least 10 characters")
    _reject_blocked_content(title, description)

    ticket = await create_support_ticket(user["auth0_user_id"], user["email"], title, body.category,
                                         body.priority, description, body.virtfusionServerId)
    return success_response({"ticket": ticket_view(ticket)})


@router.get("/support/tickets/{ticket_id}")
async def get_ticket(ticket_id: int, user: dict = Depends(get_current_user)):
    ticket = await _visible_ticket(ticket_id, user)
    messages = await list_ticket_messages(ticket_id)
    return success_response({
        "ticket": ticket_view(ticket),
        "messages": [message_view(m) for m in messages],
    })


@router.post("/support/tickets/{ticket_id}/messages", status_code=201)
async def reply_to_ticket(ticket_id: int, body: TicketMessageRequest, user: dict = Depends(get_current_user)):
    ticket = await _visible_ticket(ticket_id, user)
    if ticket["status"] in CLOSED_STATUSES:
        raise ConflictError("This ticket is closed. Reopen it to reply.")

    text = body.message.strip()
    if not text:
        raise BadRequestError("Message cannot be empty")
    _reject_blocked_content(text)

    # Staff replies wait on the customer and vice versa
    staff_reply = bool(user.get("is_admin")) and ticket["auth0_user_id"] != user["auth0_user_id"]
    new_status = 'waiting_user' if staff_reply else 'waiting_admin'
    message = await add_ticket_message(ticket_id, user["auth0_user_id"], user["email"], staff_reply,
                                       text, new_status)
    logger.info(f"💬 Reply on ticket #{ticket_id} by {user['email']} -> {new_status}")
    return success_response({"message": message_view(message), "status": new_status})


@router.post("/support/tickets/{ticket_id}/close")
async def close_ticket(ticket_id: int, user: dict = Depends(get_current_user)):
    ticket = await _visible_ticket(ticket_id, user)
    if ticket["status"] == 'closed':
        return success_response({"status": 'closed'})
    await set_support_ticket_status(ticket_id, 'closed')
    logger.info(f"🎫 Ticket #{ticket_id} closed by {user['email']}")
    return success_response({"status": 'closed'})


@router.post("/support/tickets/{ticket_id}/reopen")
async def reopen_ticket(ticket_id: int, user: dict = Depends(get_current_user)):
    ticket = await _visible_ticket(ticket_id, user)
    if ticket["status"] not in CLOSED_STATUSES:
        raise ConflictError("Ticket is already open")
    await set_support_ticket_status(ticket_id, 'open')
    return success_response({"status": 'open'})


@router.get("/support/counts")
async def ticket_counts(user: dict = Depends(get_current_user)):
    return success_response({"counts": await get_support_ticket_counts(user["auth0_user_id"])})
