"""
Inbound Pipeline

The webhook's business logic, free of HTTP concerns:

    extract -> classify -> resolve customer -> blocked gate -> dedup
    -> media (fetch + upload) -> resolve conversation -> append | create
    -> auto-responder (new conversations only)

StorageError / MediaFetchError propagate so the router answers 500 and the
provider retries; the message-id dedup makes that retry safe.
"""

import enum
import structlog
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from errors import (
    ConfigError, ConversationConflict, NoActiveConversation, SendError,
    StorageError, ValidationError,
)
from schemas import Attachment, MessageRecord
from services.attachments import AttachmentStore
from services.auto_responder import AutoResponder, AutoResponse
from services.classifier import ClassifiedMessage, Ignorable, classify
from services.conversation_service import ConversationService
from services.customer_service import CustomerService
from services.media import MediaFetcher
from services.whatsapp import WhatsAppClient

logger = structlog.get_logger("ingestion")


class Outcome(str, enum.Enum):
    IGNORED = "ignored"
    BLOCKED = "blocked"
    DUPLICATE = "duplicate"
    APPENDED = "appended"
    CREATED = "created"


@dataclass
class IngestResult:
    outcome: Outcome
    customer_id: Optional[str] = None
    conversation_id: Optional[str] = None
    auto_response: Optional[AutoResponse] = None
    reason: Optional[str] = None


def extract_first_message(payload: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """entry[0].changes[0].value.{messages[0], contacts[0]}"""
    try:
        value = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError) as e:
        raise ValidationError(f"Unrecognized envelope: {e!r}") from e

    if not isinstance(value, dict):
        raise ValidationError("Envelope value is not an object")

    messages = value.get("messages")
    if not isinstance(messages, list) or not messages:
        # Delivery/read status callbacks land here
        raise ValidationError("No message in payload")

    contacts = value.get("contacts")
    contact = contacts[0] if isinstance(contacts, list) and contacts else {}
    return messages[0], contact


class InboundPipeline:
    def __init__(
        self,
        customers: CustomerService,
        conversations: ConversationService,
        auto_responder: AutoResponder,
        sender: WhatsAppClient,
        media_fetcher: MediaFetcher,
        attachment_store: AttachmentStore,
        blocked_notice: str,
    ):
        self.customers = customers
        self.conversations = conversations
        self.auto_responder = auto_responder
        self.sender = sender
        self.media_fetcher = media_fetcher
        self.attachment_store = attachment_store
        self.blocked_notice = blocked_notice

    async def process(self, payload: Any) -> IngestResult:
        try:
            raw_message, contact = extract_first_message(payload)
        except ValidationError as e:
            logger.debug("Payload ignored", reason=str(e))
            return IngestResult(Outcome.IGNORED, reason=str(e))

        classified = classify(raw_message, contact)
        if isinstance(classified, Ignorable):
            logger.info("Message ignored", reason=classified.reason)
            return IngestResult(Outcome.IGNORED, reason=classified.reason)

        log = logger.bind(phone_suffix=classified.phone[-4:], message_id=classified.message.id)

        customer, customer_created = await self.customers.resolve(
            classified.phone, classified.display_name
        )
        customer_id = customer.id

        if customer.is_blocked:
            await self._notify_blocked(classified.phone)
            log.info("Message from blocked customer dropped")
            return IngestResult(Outcome.BLOCKED, customer_id=customer_id)

        if await self.conversations.message_exists(classified.message.id):
            log.info("Duplicate delivery")
            return IngestResult(Outcome.DUPLICATE, customer_id=customer_id)

        message = classified.message
        if classified.has_media:
            message = await self._attach_media(classified)

        try:
            conversation = await self.conversations.find_active(customer_id)
        except NoActiveConversation:
            conversation = None

        if conversation is not None:
            return await self._append(conversation, message, classified.preview, customer_id)

        try:
            conversation = await self.conversations.create_new(customer_id, message, classified.preview)
        except ConversationConflict:
            # A concurrent delivery opened the conversation first: join it
            log.warning("Lost conversation create race, appending instead")
            try:
                winner = await self.conversations.find_active(customer_id)
            except NoActiveConversation as e:
                raise StorageError("Conversation conflict but no open conversation found") from e
            return await self._append(winner, message, classified.preview, customer_id)

        if conversation is None:
            return IngestResult(Outcome.DUPLICATE, customer_id=customer_id)

        conversation_id = conversation.id
        log.info("New conversation opened", conversation_id=conversation_id)

        auto_response = await self.auto_responder.respond(customer, conversation, customer_created)
        return IngestResult(
            Outcome.CREATED,
            customer_id=customer_id,
            conversation_id=conversation_id,
            auto_response=auto_response,
        )

    async def _append(self, conversation, message: MessageRecord, preview: str, customer_id: str) -> IngestResult:
        conversation_id = conversation.id
        updated = await self.conversations.append_inbound(conversation, message, preview)
        if updated is None:
            return IngestResult(Outcome.DUPLICATE, customer_id=customer_id, conversation_id=conversation_id)
        return IngestResult(Outcome.APPENDED, customer_id=customer_id, conversation_id=conversation_id)

    async def _attach_media(self, classified: ClassifiedMessage) -> MessageRecord:
        fetched = await self.media_fetcher.fetch(classified.media_id, classified.file_name)
        url = await self.attachment_store.upload(fetched.content, fetched.file_name, fetched.mime_type)
        attachment = Attachment(url=url, file_name=fetched.file_name, mime_type=fetched.mime_type)
        return classified.message.model_copy(update={"attachment": attachment})

    async def _notify_blocked(self, phone: str):
        try:
            await self.sender.send_text(phone, self.blocked_notice)
        except (SendError, ConfigError) as e:
            logger.warning("Blocked notice failed", phone_suffix=phone[-4:], error=str(e))
