from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

DEFAULT_OPTIN_MESSAGE = (
    'Your Phone Number has been associated with a FixMyRV.ai service account. '
    'To confirm and Opt-In, please respond "YES" to this message. '
    'At any moment you can stop all messages from us, by texting back "STOP".'
)


class Settings(BaseSettings):
    # Database
    database_url: str = 'sqlite:///fixmyrv.db'

    # Logging
    log_level: str = 'INFO'

    # Timeouts (seconds)
    openai_timeout: float = 20.0
    twilio_timeout: float = 10.0

    # SMS delivery
    sms_send_delay: float = 0.5
    sms_segment_budget: int = 150
    sms_hard_limit: int = 160

    # Conversation behaviour
    history_window: int = 20
    conversation_inactivity_hours: float = 24
    implicit_opt_in: bool = True
    generate_chat_titles: bool = True
    chat_temperature: float = 0.7

    # Webhook security
    validate_twilio_signature: bool = False
    webhook_base_url: Optional[str] = None

    @property
    def inactivity_window(self) -> timedelta:
        return timedelta(hours=self.conversation_inactivity_hours)


def get_settings() -> Settings:
    return Settings()
