"""
Agent API

Dashboard-facing endpoints, all behind the shared bearer token.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from typing import List, Optional

from routers.dependencies import (
    get_conversation_service, get_customer_service, get_messenger, get_settings_service,
)
from schemas import (
    AppSettings, BlockRequest, ClaimRequest, ConversationOut, MessageRecord, NotesRequest,
    SendRequest, StartConversationRequest,
)
from security import verify_api_token
from services.conversation_service import VIEWS, ConversationService
from services.customer_service import CustomerService
from services.outbound import AgentMessenger, OutboundResult
from services.settings_service import SettingsService

router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_token)])


def _send_response(result: OutboundResult):
    if not result.delivered:
        return JSONResponse(
            status_code=502,
            content={"error": result.error, "message_id": result.message.id},
        )
    return {
        "success": True,
        "conversation_id": result.conversation_id,
        "message_id": result.message.id,
        "provider_message_id": result.provider_message_id,
    }


def _found(conversation, conversation_id: str) -> ConversationOut:
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return ConversationOut.model_validate(conversation)


# --- CUSTOMERS ---

@router.post("/customers/block")
async def block_customer(request: Request, customers: CustomerService = Depends(get_customer_service)):
    try:
        body = BlockRequest.model_validate(await request.json())
    except ValueError:
        # Covers malformed JSON and pydantic validation errors
        raise HTTPException(status_code=400, detail="Invalid request body")

    customer = await customers.set_blocked(body.phone, body.is_blocked)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")

    action = "blocked" if body.is_blocked else "unblocked"
    return {"success": True, "message": f"Customer {action} successfully"}


# --- MESSAGES ---

@router.post("/send")
async def send_message(
    body: SendRequest,
    customers: CustomerService = Depends(get_customer_service),
    conversations: ConversationService = Depends(get_conversation_service),
    messenger: AgentMessenger = Depends(get_messenger),
):
    if not body.text and not body.attachment_url:
        raise HTTPException(status_code=400, detail="text or attachment_url is required")

    conversation = await conversations.get(body.conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    customer = await customers.get(conversation.customer_id)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")

    message = messenger.build_message(
        body.agent_id, body.text, body.attachment_url, body.mime_type, body.file_name
    )
    result = await messenger.send(conversation, customer, message)
    return _send_response(result)


@router.post("/conversations")
async def start_conversation(
    body: StartConversationRequest,
    messenger: AgentMessenger = Depends(get_messenger),
):
    result = await messenger.start_conversation(body.phone, body.agent_id, body.text)
    return _send_response(result)


# --- CONVERSATIONS ---

@router.get("/conversations", response_model=List[ConversationOut])
async def list_conversations(
    view: str = Query(default="all"),
    agent_id: Optional[str] = Query(default=None),
    conversations: ConversationService = Depends(get_conversation_service),
):
    if view not in VIEWS:
        raise HTTPException(status_code=400, detail=f"view must be one of {', '.join(VIEWS)}")
    if view == "mine" and not agent_id:
        raise HTTPException(status_code=400, detail="agent_id is required for the mine view")

    rows = await conversations.list_for_view(view, agent_id)
    return [ConversationOut.model_validate(row) for row in rows]


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageRecord])
async def list_messages(
    conversation_id: str,
    conversations: ConversationService = Depends(get_conversation_service),
):
    if await conversations.get(conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return await conversations.list_messages(conversation_id)


@router.post("/conversations/{conversation_id}/claim", response_model=ConversationOut)
async def claim_conversation(
    conversation_id: str,
    body: ClaimRequest,
    conversations: ConversationService = Depends(get_conversation_service),
):
    return _found(await conversations.claim(conversation_id, body.agent_id), conversation_id)


@router.post("/conversations/{conversation_id}/resolve", response_model=ConversationOut)
async def resolve_conversation(
    conversation_id: str,
    conversations: ConversationService = Depends(get_conversation_service),
):
    return _found(await conversations.resolve(conversation_id), conversation_id)


@router.post("/conversations/{conversation_id}/reopen", response_model=ConversationOut)
async def reopen_conversation(
    conversation_id: str,
    conversations: ConversationService = Depends(get_conversation_service),
):
    return _found(await conversations.reopen(conversation_id), conversation_id)


@router.post("/conversations/{conversation_id}/read", response_model=ConversationOut)
async def mark_conversation_read(
    conversation_id: str,
    conversations: ConversationService = Depends(get_conversation_service),
):
    return _found(await conversations.mark_read(conversation_id), conversation_id)


@router.patch("/conversations/{conversation_id}/notes", response_model=ConversationOut)
async def update_notes(
    conversation_id: str,
    body: NotesRequest,
    conversations: ConversationService = Depends(get_conversation_service),
):
    return _found(await conversations.update_notes(conversation_id, body.internal_notes), conversation_id)


# --- APP SETTINGS ---

@router.get("/settings")
async def read_settings(settings_service: SettingsService = Depends(get_settings_service)):
    settings = await settings_service.get()
    return settings.model_dump(by_alias=True)


@router.put("/settings")
async def write_settings(
    body: AppSettings,
    settings_service: SettingsService = Depends(get_settings_service),
):
    saved = await settings_service.save(body)
    return saved.model_dump(by_alias=True)
