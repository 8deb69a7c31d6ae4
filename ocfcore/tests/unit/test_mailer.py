from __future__ import annotations

import pytest

from ocfcore.core.errors import MailDeliveryError
from ocfcore.services.audit import sanitize_metadata
from ocfcore.services.notifications.mailer import (
    TEMPLATE_LICENSE_ASSIGNED,
    TEMPLATE_PASSWORD_RESET,
    OutboundEmail,
    render_template,
    send_template,
)
from ocfcore.tests.utils.fakes import RecordingMailer


class _FailingMailer:
    async def send(self, message: OutboundEmail) -> None:
        raise MailDeliveryError("smtp down")


def test_render_template_fills_placeholders_and_blanks_unknown() -> None:
    message = render_template(
        TEMPLATE_PASSWORD_RESET,
        "ada@example.test",
        {"name": "Ada", "link": "http://frontend.test/reset?token=abc"},
    )
    assert message.to == "ada@example.test"
    assert message.subject == "Reset your password"
    assert "Hello Ada" in message.html_body
    assert message.html_body.count("http://frontend.test/reset?token=abc") == 2
    # Missing variables render empty instead of leaking the placeholder.
    assert "{{" not in message.html_body


def test_render_template_rejects_unknown_template() -> None:
    with pytest.raises(KeyError):
        render_template("welcome", "ada@example.test", {})


@pytest.mark.asyncio
async def test_send_template_reports_delivery_failures() -> None:
    mailer = RecordingMailer()
    assert await send_template(
        mailer, template=TEMPLATE_LICENSE_ASSIGNED, to="ada@example.test", variables={"plan_name": "Pro"}
    )
    assert "Pro plan" in mailer.sent[0].html_body

    assert not await send_template(
        _FailingMailer(), template=TEMPLATE_LICENSE_ASSIGNED, to="ada@example.test", variables={}
    )


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "plan_id": "p1",
        "refresh_token": "abc",
        "nested": [{"Password": "x", "quantity": 2}],
    }
    assert sanitize_metadata(payload) == {
        "plan_id": "p1",
        "refresh_token": "[REDACTED]",
        "nested": [{"Password": "[REDACTED]", "quantity": 2}],
    }
