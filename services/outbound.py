"""
Agent Messenger

Dashboard-initiated sends. The message is persisted before transmission;
a failed transmission is reported back to the agent but the stored
message stays in the conversation.
"""

import uuid
import structlog
from dataclasses import dataclass
from typing import Optional

from errors import ConfigError, ConversationConflict, NoActiveConversation, SendError, StorageError
from models import Conversation, Customer, Sender, utcnow
from schemas import Attachment, MessageRecord
from services.conversation_service import ConversationService
from services.customer_service import CustomerService
from services.whatsapp import WhatsAppClient

logger = structlog.get_logger("outbound")


@dataclass
class OutboundResult:
    conversation_id: str
    message: MessageRecord
    provider_message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.error is None


def agent_preview(message: MessageRecord) -> str:
    if message.text:
        return message.text
    if message.attachment:
        return f"📎 {message.attachment.file_name}"
    return ""


class AgentMessenger:
    def __init__(
        self,
        customers: CustomerService,
        conversations: ConversationService,
        sender: WhatsAppClient,
    ):
        self.customers = customers
        self.conversations = conversations
        self.sender = sender

    def build_message(
        self,
        agent_id: str,
        text: str,
        attachment_url: Optional[str] = None,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> MessageRecord:
        attachment = None
        if attachment_url and mime_type:
            attachment = Attachment(
                url=attachment_url,
                mime_type=mime_type,
                file_name=file_name or attachment_url.rsplit("/", 1)[-1],
            )
        return MessageRecord(
            id=f"msg-{uuid.uuid4().hex}",
            text=text or "",
            sender=Sender.AGENT,
            agent_id=agent_id,
            timestamp=utcnow(),
            attachment=attachment,
        )

    async def send(
        self, conversation: Conversation, customer: Customer, message: MessageRecord
    ) -> OutboundResult:
        conversation_id = conversation.id
        phone = customer.phone

        stored = await self.conversations.append_outbound(conversation, message, agent_preview(message))
        if stored is None:
            raise StorageError(f"Message id collision for {message.id}")

        return await self._transmit(conversation_id, phone, message)

    async def start_conversation(self, phone: str, agent_id: str, text: str) -> OutboundResult:
        """
        Agent opens a thread with a phone number. Reuses the open conversation
        when there is one; otherwise creates it already claimed by the agent.
        """
        customer, _ = await self.customers.resolve(phone)
        customer_id = customer.id
        message = self.build_message(agent_id, text)

        try:
            conversation = await self.conversations.find_active(customer_id)
        except NoActiveConversation:
            conversation = None

        if conversation is None:
            try:
                conversation = await self.conversations.create_claimed(
                    customer_id, agent_id, message, agent_preview(message)
                )
            except ConversationConflict:
                conversation = await self.conversations.find_active(customer_id)
                return await self.send(conversation, await self._customer(customer_id), message)
            if conversation is None:
                raise StorageError(f"Message id collision for {message.id}")
            return await self._transmit(conversation.id, phone, message)

        return await self.send(conversation, customer, message)

    async def _customer(self, customer_id: str) -> Customer:
        customer = await self.customers.get(customer_id)
        if customer is None:
            raise StorageError(f"Customer {customer_id} disappeared")
        return customer

    async def _transmit(self, conversation_id: str, phone: str, message: MessageRecord) -> OutboundResult:
        result = OutboundResult(conversation_id=conversation_id, message=message)
        try:
            if message.attachment:
                result.provider_message_id = await self.sender.send_attachment(
                    phone,
                    message.attachment.url,
                    message.attachment.mime_type,
                    caption=message.text or None,
                    file_name=message.attachment.file_name,
                )
            else:
                result.provider_message_id = await self.sender.send_text(phone, message.text)
        except (SendError, ConfigError) as e:
            logger.error(
                "Agent message stored but not delivered",
                conversation_id=conversation_id,
                message_id=message.id,
                error=str(e),
            )
            result.error = str(e)
        return result
