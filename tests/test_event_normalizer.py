import pytest

from notification_gateway.config.redirects import RedirectPatterns
from notification_gateway.dispatch.models import NotificationChannel, NotificationPriority
from notification_gateway.errors import NormalizationError
from notification_gateway.messaging.models import EventEnvelope
from notification_gateway.messaging.normalizer import EventNormalizer


def _envelope(**payload_overrides) -> EventEnvelope:
    payload = {
        "notification": {
            "title": "New announcement",
            "body": "Read it",
            "type": "announcement",
            "priority": "high",
            "channels": ["push"],
            "target": {"users": ["u-9"]},
            "data": {"extra": 1},
        },
        "sourceService": "loaphuong",
        "contentId": "announcement-123",
        "sentBy": "admin-1",
    }
    payload.update(payload_overrides)
    return EventEnvelope.model_validate(
        {"eventType": "loaphuong.contentPublished", "payload": payload}
    )


def _normalizer(**patterns) -> EventNormalizer:
    base = {"DEFAULT": "/notifications/{contentId}", "LOAPHUONG": "/announcements/{contentId}"}
    base.update(patterns)
    return EventNormalizer(RedirectPatterns(base))


def test_service_pattern_resolves_redirect():
    request = _normalizer().normalize(_envelope())
    assert request.redirect_url == "/announcements/announcement-123"
    assert request.priority == NotificationPriority.HIGH
    assert request.channels == [NotificationChannel.PUSH]
    assert request.target.users == ["u-9"]
    assert request.data == {"extra": 1}
    assert request.sent_by == "admin-1"


def test_explicit_redirect_wins_over_pattern():
    request = _normalizer().normalize(_envelope(redirectUrl="https://app.example/x"))
    assert request.redirect_url == "https://app.example/x"


def test_default_pattern_for_unknown_service():
    request = _normalizer().normalize(_envelope(sourceService="billing-svc"))
    assert request.redirect_url == "/notifications/announcement-123"


def test_service_key_is_case_insensitive_and_placeholders_fill():
    normalizer = _normalizer(TASK="/tasks/{contentType}/{id}")
    request = normalizer.normalize(_envelope(sourceService="Task", contentType="chore"))
    assert request.redirect_url == "/tasks/chore/announcement-123"
    assert request.content_type == "chore"


def test_content_type_defaults_to_notification_type():
    request = _normalizer().normalize(_envelope())
    assert request.content_type == "announcement"


def test_missing_sent_by_raises():
    event = _envelope()
    payload = dict(event.payload)
    del payload["sentBy"]
    event = event.model_copy(update={"payload": payload})
    with pytest.raises(NormalizationError) as exc:
        _normalizer().normalize(event)
    assert "sentBy" in str(exc.value)


def test_degenerate_required_field_raises():
    event = _envelope(contentId="")
    with pytest.raises(NormalizationError):
        _normalizer().normalize(event)


def test_correlation_id_precedence():
    normalizer = _normalizer()
    event = _envelope().model_copy(update={"correlation_id": "corr-from-envelope"})
    assert normalizer.normalize(event, correlation_id="explicit").correlation_id == "explicit"
    assert normalizer.normalize(event).correlation_id == "corr-from-envelope"
    synthesized = normalizer.normalize(_envelope()).correlation_id
    assert synthesized.startswith("corr-")


def test_redirect_patterns_from_env_and_register():
    patterns = RedirectPatterns.from_env(
        {"NOTIFICATION_REDIRECT_BOOKING": "/b/{id}", "UNRELATED": "x"}
    )
    assert patterns.resolve("booking", "42") == "/b/42"
    # no DEFAULT configured
    assert patterns.resolve("other", "42") is None
    patterns.register("other", "/o/{contentId}")
    assert patterns.resolve("OTHER", "42") == "/o/42"
    assert patterns.resolve("booking", None) is None
