"""
Auto-Responder

Runs once, right after a customer's message opened a new conversation.

1. Welcome  - customer row was just created and welcome messaging is on.
2. Away     - only if no welcome went out; outside business hours
              (UTC weekday not in days, or hour outside [start, end)).

Sending is best effort: failures are logged, never raised, because the
provider would redeliver the whole webhook on a non-2xx.
"""

import uuid
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from errors import ConfigError, InboxError, SendError
from models import Conversation, Customer, Sender, SYSTEM_AGENT_ID
from schemas import AppSettings, BusinessHours, MessageRecord
from services.conversation_service import ConversationService
from services.settings_service import SettingsService
from services.whatsapp import WhatsAppClient

logger = structlog.get_logger("auto_responder")


@dataclass
class AutoResponse:
    welcome_sent: bool = False
    away_sent: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def weekday_sunday_first(moment: datetime) -> int:
    """0 = Sunday ... 6 = Saturday (the dashboard's numbering)."""
    return (moment.weekday() + 1) % 7


def within_business_hours(hours: BusinessHours, moment: datetime) -> bool:
    # Hour granularity: minutes in start/end are not compared.
    if weekday_sunday_first(moment) not in hours.days:
        return False
    return hours.start_hour <= moment.hour < hours.end_hour


class AutoResponder:
    def __init__(
        self,
        settings_service: SettingsService,
        sender: WhatsAppClient,
        conversations: ConversationService,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings_service = settings_service
        self.sender = sender
        self.conversations = conversations
        self.clock = clock

    async def respond(
        self, customer: Customer, conversation: Conversation, customer_created: bool
    ) -> AutoResponse:
        result = AutoResponse()

        try:
            settings = await self.settings_service.get()
        except InboxError as e:
            logger.error("Auto-reply skipped, settings unavailable", error=str(e))
            return result

        if customer_created and settings.welcome_message.enabled:
            result.welcome_sent = await self._send_welcome(customer, conversation, settings)
            if result.welcome_sent:
                return result

        result.away_sent = await self._send_away(customer, conversation, settings)
        return result

    async def _send_welcome(
        self, customer: Customer, conversation: Conversation, settings: AppSettings
    ) -> bool:
        welcome = settings.welcome_message
        try:
            if welcome.template:
                await self.sender.send_template(
                    customer.phone, welcome.template.name, welcome.template.language
                )
            elif welcome.buttons and welcome.text:
                await self.sender.send_interactive(
                    customer.phone,
                    welcome.text,
                    [b.model_dump() for b in welcome.buttons],
                )
            elif welcome.text:
                await self.sender.send_text(customer.phone, welcome.text)
            else:
                logger.warning("Welcome enabled but nothing configured to send")
                return False
        except (SendError, ConfigError) as e:
            logger.error("Welcome message failed", phone_suffix=customer.phone[-4:], error=str(e))
            return False

        logger.info("Welcome message sent", phone_suffix=customer.phone[-4:])
        log_text = welcome.text or f"[template: {welcome.template.name}]"
        await self._log_system_message(conversation, log_text)
        return True

    async def _send_away(
        self, customer: Customer, conversation: Conversation, settings: AppSettings
    ) -> bool:
        away = settings.away_message
        if not away.enabled or not away.text:
            return False

        now = self.clock()
        if within_business_hours(settings.business_hours, now):
            return False

        try:
            await self.sender.send_text(customer.phone, away.text)
        except (SendError, ConfigError) as e:
            logger.error("Away message failed", phone_suffix=customer.phone[-4:], error=str(e))
            return False

        logger.info("Away message sent", phone_suffix=customer.phone[-4:], hour=now.hour)
        await self._log_system_message(conversation, away.text)
        return True

    async def _log_system_message(self, conversation: Conversation, text: str):
        """Record the automated reply in the conversation (independent insert)."""
        conversation_id = conversation.id
        message = MessageRecord(
            id=f"auto-{uuid.uuid4().hex}",
            text=text,
            sender=Sender.AGENT,
            agent_id=SYSTEM_AGENT_ID,
            timestamp=self.clock(),
        )
        try:
            await self.conversations.append_outbound(conversation, message, text)
        except InboxError as e:
            logger.error("Failed to log automated message", conversation_id=conversation_id, error=str(e))
