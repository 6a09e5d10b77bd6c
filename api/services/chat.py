import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from lib.config import DEFAULT_SYSTEM_PROMPT, Settings
from lib.database import Database
from lib.error_handler import AppError, ConfigurationMissing
from lib.openai_client import OpenAIClient
from api.services.storage import StorageService

logger = logging.getLogger(__name__)

SMS_FORMATTING_RULES = (
    "IMPORTANT SMS FORMATTING RULES:\n"
    "- Keep responses concise and helpful\n"
    "- Use simple language\n"
    "- Include specific steps when possible\n"
    "- Use bullet points (•) or numbers for lists\n"
    "- Focus on immediate actionable advice\n"
    "- If response is long, prioritize the most important information"
)

TITLE_PROMPT = (
    "Analyze the following message and generate a concise, meaningful title (maximum 6 words) "
    "that captures the essence of what the conversation will be about. "
    "Return only the title text, nothing else."
)

MAX_TITLE_LENGTH = 60


@dataclass
class HistoryEntry:
    """A stored message as the completion prompt sees it."""
    content: str
    is_bot: bool
    batch_index: Optional[int] = None
    is_error: bool = False


@dataclass
class AiConfig:
    api_key: str
    model: str
    max_tokens: Optional[int]
    system_prompt: str


class ChatService:
    def __init__(
        self,
        database: Database,
        settings: Settings,
        client_factory: Callable[..., OpenAIClient] = OpenAIClient
    ):
        self.database = database
        self.settings = settings
        self.client_factory = client_factory

    def load_config(self) -> AiConfig:
        """Read the stored completion settings"""
        with self.database.session_scope() as session:
            setting = StorageService(session).get_ai_settings()
            if setting is None or not setting.key:
                raise ConfigurationMissing("AI API key not configured")
            if not setting.chat_model:
                raise ConfigurationMissing("AI chat model not configured")
            return AiConfig(
                api_key=setting.key,
                model=setting.chat_model,
                max_tokens=setting.output_tokens,
                system_prompt=setting.system_prompt or DEFAULT_SYSTEM_PROMPT,
            )

    def _client(self, config: AiConfig) -> OpenAIClient:
        return self.client_factory(api_key=config.api_key, timeout=self.settings.openai_timeout)

    def _build_system_prompt(self, stored_prompt: str) -> str:
        """Build the SMS system prompt"""
        return f"{stored_prompt}\n\n{SMS_FORMATTING_RULES}"

    def build_messages(self, system_prompt: str, history: List[HistoryEntry], message: str) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self._build_system_prompt(system_prompt)}]
        for entry in history[-self.settings.history_window:]:
            if entry.is_error:
                continue
            role = "assistant" if entry.is_bot else "user"
            # Parts of one split reply go back to the model as a single turn
            if (
                entry.is_bot
                and entry.batch_index is not None
                and entry.batch_index > 1
                and messages[-1]["role"] == "assistant"
            ):
                messages[-1]["content"] += entry.content
                continue
            messages.append({"role": role, "content": entry.content})
        messages.append({"role": "user", "content": message})
        return messages

    async def generate(self, history: List[HistoryEntry], new_message: str) -> str:
        """Generate the assistant's reply to new_message given the conversation so far"""
        config = self.load_config()
        messages = self.build_messages(config.system_prompt, history, new_message)
        logger.info(f"Requesting completion with {len(messages) - 2} history messages")

        response = await self._client(config).generate_response(
            messages=messages,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=self.settings.chat_temperature
        )
        logger.info(f"Generated response: {response[:50]}...")
        return response

    async def generate_title(self, message: str) -> str:
        fallback = self.fallback_title(message)
        if not self.settings.generate_chat_titles:
            return fallback
        try:
            config = self.load_config()
            title = await self._client(config).generate_response(
                messages=[
                    {"role": "system", "content": TITLE_PROMPT},
                    {"role": "user", "content": message}
                ],
                model=config.model,
                max_tokens=20,
                temperature=self.settings.chat_temperature
            )
        except AppError as e:
            logger.warning(f"Error getting chat title, using message text: {str(e)}")
            return fallback
        return title.strip().strip('"')[:MAX_TITLE_LENGTH] or fallback

    @staticmethod
    def fallback_title(message: str) -> str:
        text = ' '.join(message.split())
        if len(text) <= MAX_TITLE_LENGTH:
            return text or "SMS conversation"
        return text[:MAX_TITLE_LENGTH - 3].rstrip() + "..."
