"""
Tests for the helpdesk config manager, template renderer and notification relay
"""
import json
from datetime import date, time

import httpx
import pytest

from helpdesk_sla.core import (
    BusinessHoursNotFoundException,
    ConfigurationException,
    NotifierException,
    TemplateRenderException,
)
from helpdesk_sla.sla.domain import NotificationMessage
from helpdesk_sla.sla.infrastructure import (
    CircuitBreaker,
    HelpdeskConfigManager,
    JinjaTemplateRenderer,
    WebhookNotifier,
)

CONFIG_YAML = """
app:
  business_hours_id: 1
  timezone: Asia/Kolkata
business_hours:
  - id: 1
    name: Default
    hours:
      Monday: {open: "09:00", close: "18:00"}
    holidays:
      - 2026-01-26
      - "2026-08-15"
"""


def test_load_yaml_config(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text(CONFIG_YAML)
    manager = HelpdeskConfigManager()

    manager.load(path)

    assert manager.get_by_prefix("app") == {"app.business_hours_id": 1, "app.timezone": "Asia/Kolkata"}
    business_hours = manager.get(1)
    assert business_hours.hours["Monday"].open == time(9)
    assert business_hours.hours["Monday"].close == time(18)
    assert business_hours.holidays == [date(2026, 1, 26), date(2026, 8, 15)]
    assert not business_hours.is_always_open


def test_unknown_business_hours(config_manager):
    with pytest.raises(BusinessHoursNotFoundException):
        config_manager.get(99)


def test_missing_file_loads_empty_config(tmp_path):
    manager = HelpdeskConfigManager()

    manager.load(tmp_path / "missing.yaml")

    assert manager.get_by_prefix("app") == {}


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text("app: [unclosed")

    with pytest.raises(ConfigurationException):
        HelpdeskConfigManager().load(path)


def test_invalid_day_raises():
    with pytest.raises(ConfigurationException):
        HelpdeskConfigManager().load_dict({"business_hours": [{"id": 1, "hours": {"Funday": {}}}]})


def test_reload_keeps_previous_config_on_error(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text(CONFIG_YAML)
    manager = HelpdeskConfigManager()
    manager.load(path)

    path.write_text("business_hours: [{id: 1, hours: {Monday: {open: 'late', close: '18:00'}}}]")
    assert manager.reload() is False
    assert manager.get(1).name == "Default"

    path.write_text("app:\n  timezone: UTC\n")
    assert manager.reload() is True
    assert manager.get_by_prefix("app") == {"app.timezone": "UTC"}


def test_builtin_templates_render():
    renderer = JinjaTemplateRenderer()
    data = {
        "sla": {"due_in": "", "overdue_by": "5 minutes", "metric": "First Response"},
        "conversation": {"reference_number": "100", "subject": "<b>Printer</b>", "priority": "", "uuid": "x"},
        "recipient": {"first_name": "Asha", "last_name": "Rao", "full_name": "Asha Rao", "email": "a@x"},
        "author": {"first_name": "", "last_name": "", "full_name": "", "email": ""},
    }

    content, subject = renderer.render("sla_breached", data)

    assert subject == "SLA breached: First Response for #100"
    assert "overdue by 5 minutes" in content
    assert "&lt;b&gt;Printer&lt;/b&gt;" in content


def test_template_directory_overrides_builtin(tmp_path):
    (tmp_path / "sla_breach_warning.subject").write_text("Heads up {{ recipient.first_name }}")
    renderer = JinjaTemplateRenderer(tmp_path)
    data = {
        "sla": {"due_in": "10 minutes", "overdue_by": "", "metric": "Resolution"},
        "conversation": {"reference_number": "7", "subject": "s", "priority": "", "uuid": "u"},
        "recipient": {"first_name": "Ben"},
    }

    content, subject = renderer.render("sla_breach_warning", data)

    assert subject == "Heads up Ben"
    assert "due in 10 minutes" in content


def test_render_error_is_wrapped():
    with pytest.raises(TemplateRenderException):
        JinjaTemplateRenderer().render("sla_breached", {})


def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert not breaker.allow_request()

    breaker.record_success()
    assert breaker.allow_request()


MESSAGE = NotificationMessage(recipient_emails=["asha@example.com"], subject="s", content="c")


async def test_webhook_notifier_posts_message():
    received = []

    def handler(request):
        received.append(request)
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://relay.example.com/notify", http_client=client)

    await notifier.send(MESSAGE)
    await notifier.close()

    assert len(received) == 1
    assert received[0].method == "POST"
    assert json.loads(received[0].content) == MESSAGE.to_dict()


async def test_webhook_notifier_retries_then_raises():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(503)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(
        "https://relay.example.com/notify", max_retries=3, backoff_base=0, http_client=client
    )

    with pytest.raises(NotifierException):
        await notifier.send(MESSAGE)
    assert len(attempts) == 3
    await notifier.close()


async def test_webhook_notifier_without_url_drops_message():
    def handler(request):
        raise AssertionError("no request expected")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(None, http_client=client)

    await notifier.send(MESSAGE)
    await notifier.close()


async def test_webhook_notifier_wraps_invalid_url():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.InvalidURL("bad host")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://relay.example.com/notify", backoff_base=0, http_client=client)

    with pytest.raises(NotifierException):
        await notifier.send(MESSAGE)
    assert len(attempts) == 1
    await notifier.close()
