import asyncio
import hmac
import logging
import time
from typing import Any, Dict, Optional

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    LinkPreviewOptions,
    ReplyParameters,
    Update,
)
from telegram.constants import MessageLimit, ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from core import formatting
from core.config import Settings
from core.errors import ValidationError
from core.history import ChatHistory, StoredMessage
from core.intake import (
    CommandIntake,
    Conversation,
    parse_search_events,
    search_request,
    summarise_request,
)

log = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
WEBHOOK_PATH = "/telegram/webhook"


class TelegramAdapter:
    platform = "telegram"

    def __init__(self, bot):
        self.bot = bot

    def defer_ack(self, conversation: Conversation) -> None:
        # the webhook response already went out when the update was queued
        return None

    async def send_followup(
        self,
        conversation: Conversation,
        text: str,
        *,
        pay_url: Optional[str] = None,
        pay_label: Optional[str] = None,
    ) -> Optional[str]:
        text = text[: MessageLimit.MAX_TEXT_LENGTH]
        kwargs: Dict[str, Any] = {
            "chat_id": int(conversation.conversation_id),
            "link_preview_options": LinkPreviewOptions(is_disabled=True),
        }
        route = conversation.route
        if route.get("thread_id"):
            kwargs["message_thread_id"] = route["thread_id"]
        if route.get("reply_to"):
            kwargs["reply_parameters"] = ReplyParameters(
                message_id=int(route["reply_to"]), allow_sending_without_reply=True
            )
        if pay_url:
            kwargs["reply_markup"] = InlineKeyboardMarkup(
                [[InlineKeyboardButton(pay_label or "Pay", url=pay_url)]]
            )
        try:
            message = await self.bot.send_message(text=text, parse_mode=ParseMode.MARKDOWN, **kwargs)
        except BadRequest as exc:
            log.warning("telegram rejected markdown for chat %s (%s), sending plain", conversation.conversation_id, exc)
            message = await self.bot.send_message(text=text, **kwargs)
        return str(message.message_id)

    async def edit_message(self, conversation: Conversation, message_id: str, text: str) -> None:
        await self.bot.edit_message_text(
            text=text[: MessageLimit.MAX_TEXT_LENGTH],
            chat_id=int(conversation.conversation_id),
            message_id=int(message_id),
        )


class TelegramTransport:
    def __init__(
        self,
        intake: CommandIntake,
        history: ChatHistory,
        settings: Settings,
        *,
        application: Optional[Application] = None,
    ):
        self.intake = intake
        self.history = history
        self.settings = settings
        self.webhook = settings.telegram_webhook
        if application is None:
            builder = Application.builder().token(settings.telegram_token)
            if self.webhook:
                builder = builder.updater(None)
            application = builder.build()
        self.application = application
        self.adapter = TelegramAdapter(self.application.bot)
        self._register_handlers()
        self._stop_event = asyncio.Event()

    def _register_handlers(self):
        self.application.add_handler(CommandHandler(["start", "help"], self.help))
        self.application.add_handler(CommandHandler("summarise", self.summarise))
        self.application.add_handler(CommandHandler("search_events", self.search_events))
        self.application.add_handler(CommandHandler("more", self.more))
        self.application.add_handler(
            MessageHandler(filters.TEXT & (~filters.COMMAND), self.record_message)
        )
        self.application.add_error_handler(self.on_error)

    @staticmethod
    def conversation_for(update: Update) -> Optional[Conversation]:
        chat = update.effective_chat
        message = update.effective_message
        if not chat or not message:
            return None
        user = update.effective_user
        return Conversation(
            platform="telegram",
            conversation_id=str(chat.id),
            route={
                "thread_id": getattr(message, "message_thread_id", None),
                "reply_to": message.message_id,
                "username": user.username if user else None,
            },
        )

    async def record_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        chat = update.effective_chat
        user = update.effective_user
        if not message or not message.text or not chat:
            return
        reply = message.reply_to_message
        self.history.add(
            str(chat.id),
            StoredMessage(
                message_id=message.message_id,
                text=message.text,
                timestamp=message.date.timestamp() if message.date else time.time(),
                author_id=user.id if user else None,
                author_username=user.username if user else None,
                author_display=(user.full_name or user.username) if user else None,
                reply_to_message_id=reply.message_id if reply else None,
            ),
        )

    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_message:
            await update.effective_message.reply_text(formatting.HELP_TEXT)

    async def summarise(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        conversation = self.conversation_for(update)
        if conversation is None:
            return
        raw_minutes = context.args[0] if context.args else None
        try:
            request = summarise_request(conversation, raw_minutes, self.settings)
        except ValidationError as exc:
            await update.effective_message.reply_text(exc.user_message())
            return
        self.intake.begin(self.adapter, conversation, request)

    async def search_events(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        conversation = self.conversation_for(update)
        if conversation is None:
            return
        try:
            topic, location = parse_search_events("/search_events " + " ".join(context.args or []))
            request = search_request(conversation, topic, location)
        except ValidationError as exc:
            await update.effective_message.reply_text(exc.user_message())
            return
        self.intake.begin(self.adapter, conversation, request)

    async def more(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        message = update.effective_message
        if not chat or not message:
            return
        text = self.intake.next_page(str(chat.id))[: MessageLimit.MAX_TEXT_LENGTH]
        try:
            await message.reply_text(
                text,
                parse_mode=ParseMode.MARKDOWN,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except BadRequest as exc:
            log.warning("telegram rejected markdown for /more (%s), sending plain", exc)
            await message.reply_text(text)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        log.error("telegram handler error", exc_info=context.error)

    def verify_secret(self, header_value: Optional[str]) -> bool:
        expected = self.settings.telegram_webhook_secret
        if not expected or not header_value:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), header_value.encode("utf-8"))

    async def feed(self, payload: Dict[str, Any]) -> None:
        """Queue a raw webhook update; handlers run on the application's loop."""

        update = Update.de_json(payload, self.application.bot)
        if update is None:
            return
        await self.application.update_queue.put(update)

    async def _register_webhook(self) -> None:
        url = f"{self.settings.public_base_url}{WEBHOOK_PATH}"
        try:
            await self.application.bot.set_webhook(
                url=url,
                secret_token=self.settings.telegram_webhook_secret,
                allowed_updates=Update.ALL_TYPES,
            )
            log.info("telegram webhook set to %s", url)
        except TelegramError as exc:
            log.warning("failed to register telegram webhook %s: %s", url, exc)

    async def start(self):
        await self.application.initialize()
        await self.application.start()
        if self.webhook:
            await self._register_webhook()
        else:
            await self.application.updater.start_polling()
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()

    async def stop(self):
        self._stop_event.set()
