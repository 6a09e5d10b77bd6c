from flask import Blueprint, Flask, Response, current_app, jsonify, request
from typing import Optional
import asyncio
import logging
import sys
import uuid

from twilio.twiml.messaging_response import MessagingResponse

from api.services.chat import ChatService
from api.services.sms import SMSService
from api.services.storage import StorageService, normalize_e164
from api.sms_handler import SMSHandler
from lib.config import Settings, get_settings
from lib.database import Database
from lib.error_handler import (
    AppError,
    ConfigurationMissing,
    InvalidPayload,
    PersistenceError,
    WebhookRejected,
)
from lib.member_locks import MemberLocks
from lib.twilio_client import validate_signature

logger = logging.getLogger(__name__)

API_PREFIX = '/api/v1/twilio'

twilio_bp = Blueprint('twilio', __name__, url_prefix=API_PREFIX)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
        force=True  # Ensure our config takes precedence
    )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    chat_service: Optional[ChatService] = None,
    sms_service: Optional[SMSService] = None
) -> Flask:
    """Build the Flask app with every service wired in explicitly"""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    logger.info("Initializing services...")
    database = database or Database(settings.database_url)
    chat_service = chat_service or ChatService(database, settings)
    sms_service = sms_service or SMSService(database, settings)

    app = Flask(__name__)
    app.extensions['fixmyrv'] = {
        'settings': settings,
        'database': database,
        'handler': SMSHandler(database, chat_service, settings),
        'sms_service': sms_service,
        'member_locks': MemberLocks(),
    }
    app.register_blueprint(twilio_bp)

    @app.route('/health', methods=['GET'])
    def health():
        """Basic health check"""
        return jsonify({'status': 'healthy'})

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        logger.error(f"{type(error).__name__}: {error.message}")
        return jsonify({'success': False, 'error': error.message}), error.status_code

    logger.info("All services initialized successfully")
    return app


def _services() -> dict:
    return current_app.extensions['fixmyrv']


def empty_twiml() -> Response:
    """Twilio gets an empty <Response/>; replies go out through the REST API"""
    return Response(str(MessagingResponse()), mimetype='text/xml')


def _webhook_url(settings: Settings) -> str:
    if settings.webhook_base_url:
        return settings.webhook_base_url.rstrip('/') + request.path
    return request.url


def _verify_webhook(settings: Settings, database: Database, form: dict) -> None:
    """Reject webhooks that were not sent for our Twilio account"""
    with database.session_scope() as session:
        twilio_settings = StorageService(session).get_twilio_settings()
        account_sid = twilio_settings.account_sid if twilio_settings else None
        auth_token = twilio_settings.auth_token if twilio_settings else None

    if settings.validate_twilio_signature:
        if not auth_token:
            raise ConfigurationMissing("Twilio auth token not configured, cannot validate signature")
        signature = request.headers.get('X-Twilio-Signature', '')
        if not validate_signature(auth_token, _webhook_url(settings), form, signature):
            raise WebhookRejected("Invalid Twilio signature")

    incoming_sid = form.get('AccountSid')
    if account_sid and incoming_sid and incoming_sid != account_sid:
        raise WebhookRejected(f"Webhook AccountSid {incoming_sid} does not match configured account")


@twilio_bp.route('/webhook/sms', methods=['POST'])
def sms_webhook():
    """Handle incoming SMS webhooks from Twilio"""
    services = _services()
    settings = services['settings']
    form = request.form.to_dict()
    logger.info(f"Received webhook from Twilio: {form.get('MessageSid')}")

    try:
        _verify_webhook(settings, services['database'], form)
        lock_key = normalize_e164(form.get('From') or '')
    except WebhookRejected as e:
        logger.warning(f"Webhook rejected: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 403
    except ValueError:
        logger.error(f"Invalid webhook payload, bad From: {form.get('From')!r}")
        return jsonify({'success': False, 'error': 'From is not a phone number'}), 400

    try:
        with services['member_locks'].hold(lock_key):
            result = asyncio.run(
                services['handler'].handle_incoming_message(form, webhook_url=_webhook_url(settings))
            )
            # Delivery stays under the member lock so parts of consecutive replies never interleave
            _deliver(services['sms_service'], result)
    except InvalidPayload as e:
        logger.error(f"Invalid webhook payload: {e.message}")
        return jsonify({'success': False, 'error': e.message}), 400
    except PersistenceError as e:
        logger.error(f"Webhook not persisted, Twilio will retry: {e.message}", exc_info=True)
        return jsonify({'success': False, 'error': 'Internal error'}), 500

    logger.info(f"Webhook {result.message_sid} handled: {result.status}")
    return empty_twiml()


def _deliver(sms_service: SMSService, result) -> None:
    if not result.segments:
        return
    try:
        asyncio.run(sms_service.deliver(result))
    except ConfigurationMissing as e:
        logger.error(
            f"REPLY NOT SENT for {result.message_sid}: {e.message}. "
            f"{len(result.segments)} stored part(s) were not delivered"
        )
    except AppError as e:
        logger.error(f"REPLY DELIVERY FAILED for {result.message_sid}: {e.message}", exc_info=True)


@twilio_bp.route('/test/sms', methods=['POST'])
def test_sms():
    """Simulate an inbound SMS without sending anything back"""
    services = _services()
    data = request.get_json(silent=True) or request.form.to_dict()

    if 'From' in data or 'MessageSid' in data:
        webhook_data = dict(data)
    else:
        webhook_data = {
            'From': data.get('from') or data.get('phoneNumber'),
            'To': data.get('to'),
            'Body': data.get('body') or data.get('message'),
            'MessageSid': data.get('messageSid'),
        }
    if not webhook_data.get('MessageSid'):
        webhook_data['MessageSid'] = _test_message_sid()

    result = asyncio.run(
        services['handler'].handle_incoming_message(webhook_data, is_test=True, webhook_url=request.url)
    )
    return jsonify({'success': True, 'result': result.to_dict()})


def _test_message_sid() -> str:
    return f"SMtest{uuid.uuid4().hex}"


@twilio_bp.route('/webhook/status', methods=['GET'])
def webhook_status():
    """Configuration summary and the URLs to paste into the Twilio console"""
    services = _services()
    settings = services['settings']
    with services['database'].session_scope() as session:
        store = StorageService(session)
        twilio_settings = store.get_twilio_settings()
        ai_settings = store.get_ai_settings()
        status = {
            'twilioConfigured': bool(twilio_settings and twilio_settings.is_complete),
            'phoneNumber': twilio_settings.phone_number if twilio_settings else None,
            'aiConfigured': bool(ai_settings and ai_settings.key and ai_settings.chat_model),
            'chatModel': ai_settings.chat_model if ai_settings else None,
        }

    base_url = (settings.webhook_base_url or request.host_url).rstrip('/')
    status.update({
        'signatureValidation': settings.validate_twilio_signature,
        'implicitOptIn': settings.implicit_opt_in,
        'endpoints': {
            'webhook': f"{base_url}{API_PREFIX}/webhook/sms",
            'test': f"{base_url}{API_PREFIX}/test/sms",
            'logs': f"{base_url}{API_PREFIX}/logs",
        },
    })
    return jsonify({'success': True, 'status': status})


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value == '':
        return None
    return value.lower() in ('1', 'true', 'yes')


@twilio_bp.route('/logs', methods=['GET'])
def webhook_logs():
    """Paginated webhook log, newest first"""
    try:
        limit = min(max(int(request.args.get('limit', 50)), 1), 200)
        offset = max(int(request.args.get('offset', 0)), 0)
    except ValueError:
        return jsonify({'success': False, 'error': 'limit and offset must be integers'}), 400

    with _services()['database'].session_scope() as session:
        logs, total = StorageService(session).list_webhook_logs(
            limit=limit,
            offset=offset,
            is_test=_parse_bool(request.args.get('isTest')),
            status=request.args.get('status') or None,
        )
        items = [log.to_dict() for log in logs]

    return jsonify({
        'success': True,
        'logs': items,
        'pagination': {'total': total, 'limit': limit, 'offset': offset},
    })


@twilio_bp.route('/members/<int:member_id>/invite', methods=['POST'])
def invite_member(member_id: int):
    """Send the opt-in invitation to an organization user"""
    sent = asyncio.run(_services()['sms_service'].send_invite(member_id))
    return jsonify({'success': True, 'messageSid': sent.sid, 'status': sent.status})
