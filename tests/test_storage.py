import pytest
from datetime import datetime, timedelta

from sqlalchemy import select

from api.services.storage import StorageService, normalize_e164
from lib.error_handler import PersistenceError
from lib.models import Conversation, Message

from conftest import ACTIVE_PHONE

WINDOW = timedelta(hours=24)


def test_normalize_e164():
    assert normalize_e164('+1 (555) 123-4567') == '+15551234567'
    assert normalize_e164('15551234567') == '+15551234567'
    with pytest.raises(ValueError):
        normalize_e164('not a number')


def test_find_member_by_formatted_phone(database, members):
    with database.session_scope() as session:
        member = StorageService(session).find_member_by_phone('+1 (555) 123-4567')
        assert member.id == members['active']
        assert member.first_name == 'Dana'


def test_unknown_phone_returns_none(database, members):
    with database.session_scope() as session:
        assert StorageService(session).find_member_by_phone('+15550001111') is None


def test_conversation_reused_inside_window(database, members):
    now = datetime.utcnow()
    with database.session_scope() as session:
        store = StorageService(session)
        member = store.get_member(members['active'])
        first, created = store.find_or_create_conversation(member, WINDOW, 'Water pump', now=now - timedelta(hours=2))
        assert created
        store.append_message(first, 'pump cycles', is_bot=False, now=now - timedelta(hours=2))

        second, created = store.find_or_create_conversation(member, WINDOW, 'Other title', now=now)
        assert not created
        assert second.id == first.id
        assert second.title == 'Water pump'


def test_new_conversation_after_inactivity(database, members):
    now = datetime.utcnow()
    with database.session_scope() as session:
        store = StorageService(session)
        member = store.get_member(members['active'])
        old, _ = store.find_or_create_conversation(member, WINDOW, 'Old', now=now - timedelta(hours=25))

        fresh, created = store.find_or_create_conversation(member, WINDOW, 'New', now=now)
        assert created
        assert fresh.id != old.id
        assert store.latest_conversation(member).id == fresh.id
        assert fresh.organization_user_id == member.id
        assert fresh.user_id is None
        assert fresh.channel == 'sms'


def test_append_message_bumps_last_activity(database, members):
    start = datetime.utcnow() - timedelta(hours=1)
    later = start + timedelta(minutes=30)
    with database.session_scope() as session:
        store = StorageService(session)
        conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T', now=start)
        store.append_message(conversation, 'hello', is_bot=False, now=later)
        assert conversation.last_activity_at == later


def test_batch_fields_must_be_consistent(database, members):
    with pytest.raises(ValueError):
        with database.session_scope() as session:
            store = StorageService(session)
            conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T')
            store.append_message(conversation, 'part', is_bot=True, batch_index=3, batch_total=2)

    with pytest.raises(ValueError):
        with database.session_scope() as session:
            store = StorageService(session)
            conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T')
            store.append_message(conversation, 'part', is_bot=True, batch_index=1)

    # Nothing from the failed units of work was kept
    with database.session_scope() as session:
        assert session.execute(select(Conversation)).scalars().all() == []


def test_database_rejects_bad_batch_rows(database, members):
    with pytest.raises(PersistenceError):
        with database.session_scope() as session:
            store = StorageService(session)
            conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T')
            session.add(Message(chat_id=conversation.id, content='x', is_bot=True, sms_batch_index=2))


def test_recent_history_is_chronological_and_limited(database, members):
    start = datetime.utcnow() - timedelta(hours=1)
    with database.session_scope() as session:
        store = StorageService(session)
        conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T', now=start)
        for i in range(5):
            store.append_message(conversation, f"m{i}", is_bot=bool(i % 2), now=start + timedelta(minutes=i))

        history = store.recent_history(conversation, limit=3)
        assert [m.content for m in history] == ['m2', 'm3', 'm4']


def test_duplicate_delivery_detected_from_log_or_message(database, members):
    with database.session_scope() as session:
        store = StorageService(session)
        assert not store.is_duplicate_delivery('SM1')
        store.record_webhook('SM1', ACTIVE_PHONE, '+15550000000', 'hi', 'processed')
        assert store.is_duplicate_delivery('SM1')

        conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T')
        store.append_message(conversation, 'hi', is_bot=False, sms_message_sid='SM2')
        assert store.is_duplicate_delivery('SM2')


def test_message_sid_is_unique(database, members):
    with pytest.raises(PersistenceError):
        with database.session_scope() as session:
            store = StorageService(session)
            store.record_webhook('SM1', ACTIVE_PHONE, None, 'hi', 'processed')
            store.record_webhook('SM1', ACTIVE_PHONE, None, 'hi again', 'processed')


def test_record_delivery_sets_provider_sid(database, members):
    with database.session_scope() as session:
        store = StorageService(session)
        conversation, _ = store.find_or_create_conversation(store.get_member(members['active']), WINDOW, 'T')
        message_id = store.append_message(conversation, 'reply', is_bot=True).id

    with database.session_scope() as session:
        StorageService(session).record_delivery(message_id, 'SMout1')

    with database.session_scope() as session:
        assert session.get(Message, message_id).sms_message_sid == 'SMout1'


def test_list_webhook_logs_filters_and_counts(database, members):
    with database.session_scope() as session:
        store = StorageService(session)
        store.record_webhook('SM1', ACTIVE_PHONE, None, 'a', 'processed')
        store.record_webhook('SM2', ACTIVE_PHONE, None, 'b', 'failed')
        store.record_webhook('SM3', ACTIVE_PHONE, None, 'c', 'processed', is_test=True)

    with database.session_scope() as session:
        store = StorageService(session)
        logs, total = store.list_webhook_logs()
        assert total == 3
        assert len(logs) == 3

        logs, total = store.list_webhook_logs(status='processed', is_test=False)
        assert total == 1
        assert logs[0].message_sid == 'SM1'

        logs, total = store.list_webhook_logs(limit=1, offset=0)
        assert total == 3
        assert len(logs) == 1
