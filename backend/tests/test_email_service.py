"""
Notification mail bodies and the dev-mode mail port.
"""
import pytest

from services.email_service import EmailService, render_notification_email


def test_body_escapes_user_supplied_text():
    body = render_notification_email(
        "Query <script>alert(1)</script>",
        'Topic "Cells & <b>Tissues</b>"',
        base_url="",
    )

    assert "<script>" not in body
    assert "<h2>Query &lt;script&gt;alert(1)&lt;/script&gt;</h2>" in body
    assert "<p>Topic &quot;Cells &amp; &lt;b&gt;Tissues&lt;/b&gt;&quot;</p>" in body


def test_link_is_escaped_inside_the_attribute():
    body = render_notification_email("Order", "Ready", '/orders/ORD-1" onclick="x', base_url="https://portal.test")

    assert 'href="https://portal.test/orders/ORD-1&quot; onclick=&quot;x"' in body


def test_body_without_link():
    assert render_notification_email("Order", "Ready", base_url="") == "<h2>Order</h2><p>Ready</p>"


@pytest.mark.asyncio
async def test_dev_mode_logs_instead_of_sending():
    service = EmailService(server_token="")

    assert service.client is None
    assert await service.send("wes@example.com", "Hi", "<p>Hi</p>") is None
