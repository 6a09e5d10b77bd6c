import os
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from api.services.storage import StorageService
from lib.config import DEFAULT_OPTIN_MESSAGE, DEFAULT_SYSTEM_PROMPT, get_settings
from lib.database import Database
from lib.models import AiSetting, TwilioSetting


def init_db():
    """Create the schema and seed the AI and Twilio settings rows from the environment"""
    try:
        settings = get_settings()
        database = Database(settings.database_url)
        database.create_all()
        print(f"Tables created on {database.engine.url.render_as_string(hide_password=True)}")

        with database.session_scope() as session:
            store = StorageService(session)
            if store.get_ai_settings() is None:
                print("Seeding AI settings...")
                session.add(AiSetting(
                    key=os.environ.get('OPENAI_API_KEY'),
                    chat_model=os.environ.get('OPENAI_CHAT_MODEL', 'gpt-4o-mini'),
                    output_tokens=int(os.environ.get('OPENAI_OUTPUT_TOKENS', 500)),
                    system_prompt=DEFAULT_SYSTEM_PROMPT,
                ))
            else:
                print("AI settings already exist.")

            if store.get_twilio_settings() is None:
                print("Seeding Twilio settings...")
                session.add(TwilioSetting(
                    account_sid=os.environ.get('TWILIO_ACCOUNT_SID'),
                    auth_token=os.environ.get('TWILIO_AUTH_TOKEN'),
                    phone_number=os.environ.get('TWILIO_PHONE_NUMBER'),
                    optin_message=DEFAULT_OPTIN_MESSAGE,
                ))
            else:
                print("Twilio settings already exist.")
        print("Database ready!")

    except Exception as e:
        print(f"Error initializing database: {str(e)}")
        raise


if __name__ == "__main__":
    init_db()
