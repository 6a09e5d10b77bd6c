import logging

logger = logging.getLogger(__name__)

UPSTREAM_FALLBACK_MESSAGE = (
    "I'm sorry, I encountered an error processing your request. Please try again later."
)
NOT_CONFIGURED_MESSAGE = (
    "Sorry, the FixMyRV.ai text assistant isn't available right now. Please try again later."
)


class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class InvalidPayload(AppError):
    """Malformed webhook body. Twilio is not expected to retry."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class WebhookRejected(AppError):
    """Webhook did not come from our Twilio account."""

    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class ConfigurationMissing(AppError):
    """Completion or send credentials are not stored."""

    def __init__(self, message: str):
        super().__init__(message, status_code=503)


class UpstreamUnavailable(AppError):
    """The completion provider failed or timed out."""

    def __init__(self, message: str):
        super().__init__(message, status_code=503)


class PersistenceError(AppError):
    """A database write failed; nothing from the turn was recorded."""

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class ErrorHandler:
    @staticmethod
    def handle_configuration_error(error: Exception) -> str:
        logger.error(f"Configuration missing: {str(error)}")
        return NOT_CONFIGURED_MESSAGE

    @staticmethod
    def handle_upstream_error(error: Exception) -> str:
        logger.error(f"Completion provider error: {str(error)}")
        return UPSTREAM_FALLBACK_MESSAGE
