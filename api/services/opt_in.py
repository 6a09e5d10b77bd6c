"""
Opt-in / stop handling for SMS members.

A member's conversational state is derived from their stored status, and
every inbound body is classified against two fixed keyword sets. Both
functions are pure so the webhook handler can decide what to do before it
touches the database.
"""

from enum import Enum

STOP_TOKENS = frozenset({'stop', 'stopall', 'unsubscribe', 'cancel', 'end', 'quit'})
OPT_IN_TOKENS = frozenset({'yes', 'y', 'start', 'unstop', 'ok', 'okay', 'confirm', 'opt in', 'optin'})

ACTIVE_STATUS = 'active'
OPTED_OUT_STATUS = 'inactive'
INVITED_STATUS = 'invited'


class OptInState(str, Enum):
    AWAITING_OPT_IN = 'awaiting_opt_in'
    ACTIVE = 'active'
    OPTED_OUT = 'opted_out'


class Classification(str, Enum):
    STOP = 'stop'
    OPT_IN = 'opt_in'
    CONTENT = 'content'


def conversation_state(member_status: str) -> OptInState:
    if member_status == ACTIVE_STATUS:
        return OptInState.ACTIVE
    if member_status in ('inactive', 'suspended'):
        return OptInState.OPTED_OUT
    return OptInState.AWAITING_OPT_IN


def _normalize(body_text: str) -> str:
    return ' '.join((body_text or '').split()).lower()


def is_stop_message(body_text: str) -> bool:
    return _normalize(body_text) in STOP_TOKENS


def is_opt_in_response(body_text: str) -> bool:
    return _normalize(body_text) in OPT_IN_TOKENS


def classify(member_status: str, body_text: str) -> Classification:
    """Classify an inbound body as STOP, OPT_IN or CONTENT.

    STOP wins regardless of status. Affirmative keywords only count as an
    opt-in while the member is not active yet; an active member answering
    "yes" to the assistant is ordinary content.
    """
    if is_stop_message(body_text):
        return Classification.STOP
    if conversation_state(member_status) != OptInState.ACTIVE and is_opt_in_response(body_text):
        return Classification.OPT_IN
    return Classification.CONTENT


def welcome_message(first_name: str) -> str:
    name = f", {first_name}" if first_name else ""
    return (
        f"Welcome to FixMyRV.ai{name}! Ask me anything about RV maintenance, "
        f"repairs or troubleshooting. Text STOP to unsubscribe."
    )


STOP_CONFIRMATION = (
    "You have been unsubscribed from FixMyRV.ai SMS and will not receive further messages."
)
