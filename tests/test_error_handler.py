import pytest

from lib.error_handler import (
    NOT_CONFIGURED_MESSAGE,
    UPSTREAM_FALLBACK_MESSAGE,
    AppError,
    ConfigurationMissing,
    ErrorHandler,
    InvalidPayload,
    PersistenceError,
    UpstreamUnavailable,
    WebhookRejected,
)


@pytest.mark.parametrize("error_type,status_code", [
    (InvalidPayload, 400),
    (WebhookRejected, 403),
    (ConfigurationMissing, 503),
    (UpstreamUnavailable, 503),
    (PersistenceError, 500),
])
def test_error_status_codes(error_type, status_code):
    error = error_type("boom")

    assert isinstance(error, AppError)
    assert error.status_code == status_code
    assert error.message == "boom"
    assert str(error) == "boom"


def test_fallback_texts():
    assert ErrorHandler.handle_configuration_error(ConfigurationMissing("no key")) == NOT_CONFIGURED_MESSAGE
    assert ErrorHandler.handle_upstream_error(UpstreamUnavailable("timeout")) == UPSTREAM_FALLBACK_MESSAGE
    assert sorted(name for name in vars(ErrorHandler) if name.startswith('handle_')) == [
        'handle_configuration_error',
        'handle_upstream_error',
    ]
