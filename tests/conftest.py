import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from twilio.base.exceptions import TwilioRestException

from api.routes import create_app
from api.services.chat import ChatService
from api.services.sms import SMSService
from api.sms_handler import SMSHandler
from lib.config import Settings
from lib.database import Database
from lib.models import AiSetting, Member, TwilioSetting
from lib.openai_client import OpenAIClient

ACTIVE_PHONE = '+15551234567'
INVITED_PHONE = '+15557654321'
OPTED_OUT_PHONE = '+15559999999'
TWILIO_NUMBER = '+15550000000'
ACCOUNT_SID = 'ACtest00000000000000000000000000'

LONG_REPLY = (
    "Your water pump is short cycling, which usually means a small leak somewhere downstream "
    "or a failing check valve inside the pump head. "
    "Walk the lines with the pump on and every faucet closed, then listen for the pump kicking on."
)


class FakeCompletions:
    """Stands in for OpenAI().chat.completions"""

    def __init__(self):
        self.replies = []
        self.calls = []
        self.error = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0) if self.replies else "Check the 12V breaker panel first."
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeTwilioMessages:
    """Stands in for twilio Client().messages"""

    def __init__(self):
        self.sent = []
        self.fail_on = None
        self.error = None

    def create(self, body, from_, to):
        if self.fail_on is not None and len(self.sent) == self.fail_on:
            raise self.error or TwilioRestException(status=400, uri='/Messages', msg='Send failed', code=30001)
        self.sent.append({'body': body, 'from_': from_, 'to': to})
        return SimpleNamespace(sid=f"SMout{len(self.sent)}", status='queued')


@pytest.fixture
def settings():
    return Settings(
        database_url='sqlite://',
        sms_send_delay=0,
        generate_chat_titles=False,
        validate_twilio_signature=False,
        webhook_base_url=None,
    )


@pytest.fixture
def database():
    db = Database('sqlite://')
    db.create_all()
    yield db
    db.drop_all()


@pytest.fixture
def members(database):
    with database.session_scope() as session:
        session.add(AiSetting(key='sk-test', chat_model='gpt-test', output_tokens=300, system_prompt='You help RV owners.'))
        session.add(TwilioSetting(
            account_sid=ACCOUNT_SID,
            auth_token='test-token',
            phone_number=TWILIO_NUMBER,
            optin_message='Reply YES to chat with FixMyRV.ai',
        ))
        rows = {
            'active': Member(organization_id=1, first_name='Dana', last_name='Reyes', phone=ACTIVE_PHONE, status='active'),
            'invited': Member(organization_id=1, first_name='Sam', last_name='Lee', phone=INVITED_PHONE, status='invited'),
            'opted_out': Member(organization_id=1, first_name='Alex', last_name='Kim', phone=OPTED_OUT_PHONE, status='inactive'),
        }
        session.add_all(rows.values())
        session.flush()
        return {name: member.id for name, member in rows.items()}


@pytest.fixture
def completions():
    return FakeCompletions()


@pytest.fixture
def chat_service(database, settings, completions):
    openai_factory = MagicMock(return_value=SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    def client_factory(api_key, timeout):
        return OpenAIClient(api_key, timeout=timeout, client_factory=openai_factory)

    return ChatService(database, settings, client_factory=client_factory)


@pytest.fixture
def handler(database, chat_service, settings):
    return SMSHandler(database, chat_service, settings)


@pytest.fixture
def twilio_messages():
    return FakeTwilioMessages()


@pytest.fixture
def twilio_factory(twilio_messages):
    return MagicMock(return_value=SimpleNamespace(messages=twilio_messages))


@pytest.fixture
def sms_service(database, settings, twilio_factory):
    return SMSService(database, settings, client_factory=twilio_factory)


@pytest.fixture
def app(settings, database, chat_service, sms_service, members):
    app = create_app(settings=settings, database=database, chat_service=chat_service, sms_service=sms_service)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def test_client(app):
    return app.test_client()


def webhook_form(from_number=ACTIVE_PHONE, body='My water pump keeps cycling', sid='SM0001', **extra):
    form = {
        'From': from_number,
        'To': TWILIO_NUMBER,
        'Body': body,
        'MessageSid': sid,
        'AccountSid': ACCOUNT_SID,
        'NumMedia': '0',
    }
    form.update(extra)
    return form
