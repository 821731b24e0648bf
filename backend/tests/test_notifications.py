"""
test_notifications.py — Email rendering and Resend delivery.

Tests cover:
  - Template rendering with HTML escaping
  - Per-recipient delivery over httpx.MockTransport, recipients deduplicated
  - A failing recipient does not block the others
  - No API key → every recipient reported undelivered, no HTTP traffic
"""

import json

import httpx
import pytest

from app.services.notifications import EmailNotifier, render


class TestRender:

    def test_invitation(self):
        subject, body = render({
            "template": "invitation", "project_name": "Kitchen Reno", "role": "foreman",
            "inviter_name": "Dana", "accept_url": "https://buildunion.test/accept/abc",
        })
        assert subject == 'You\'re Invited to Join "Kitchen Reno" on BuildUnion'
        assert "as a foreman" in body
        assert 'href="https://buildunion.test/accept/abc"' in body

    def test_values_are_escaped(self):
        _, body = render({"template": "pending_change", "item_name": "<b>Studs</b>",
                          "original_quantity": 10, "new_quantity": 12})
        assert "&lt;b&gt;Studs&lt;/b&gt;" in body
        assert "<b>Studs</b>" not in body

    def test_unknown_template_is_generic(self):
        subject, body = render({"template": "mystery", "project_name": "Deck", "message": "Hi"})
        assert subject == "Update on Deck"
        assert "<p>Hi</p>" in body


class TestSend:

    @pytest.mark.asyncio
    async def test_delivers_once_per_unique_recipient(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            seen.append(payload["to"][0])
            assert request.headers["Authorization"] == "Bearer re-test"
            return httpx.Response(200, json={"id": f"msg-{len(seen)}"})

        notifier = EmailNotifier(api_key="re-test", api_url="https://mail.test/emails",
                                 transport=httpx.MockTransport(handler))
        results = await notifier.send(["a@x.ca", "b@x.ca", "a@x.ca", ""], {"template": "generic"})
        assert [r.recipient for r in results] == ["a@x.ca", "b@x.ca"]
        assert all(r.delivered for r in results)
        assert sorted(seen) == ["a@x.ca", "b@x.ca"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["to"] == ["bad@x.ca"]:
                return httpx.Response(422, json={"message": "invalid"})
            return httpx.Response(200, json={"id": "msg-ok"})

        notifier = EmailNotifier(api_key="re-test", api_url="https://mail.test/emails",
                                 transport=httpx.MockTransport(handler))
        results = await notifier.send(["bad@x.ca", "good@x.ca"], {"template": "generic"})
        by_recipient = {r.recipient: r for r in results}
        assert by_recipient["bad@x.ca"].delivered is False
        assert by_recipient["bad@x.ca"].error
        assert by_recipient["good@x.ca"].message_id == "msg-ok"

    @pytest.mark.asyncio
    async def test_missing_key_reports_not_configured(self):
        def handler(request):
            raise AssertionError("no request expected")

        notifier = EmailNotifier(api_key="", transport=httpx.MockTransport(handler))
        results = await notifier.send(["a@x.ca"], {"template": "generic"})
        assert results[0].delivered is False
        assert results[0].error == "email not configured"

    @pytest.mark.asyncio
    async def test_no_recipients(self):
        assert await EmailNotifier(api_key="re-test").send([], {}) == []
