"""Tests for GmailClient — all HTTP goes through an httpx.MockTransport."""

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from src.google.errors import MissingCredential, UpstreamRejected, UpstreamUnreachable
from src.google.gmail_client import GmailClient, is_push_client_conflict
from src.google.types import Credential, ThreadHeader, ThreadSummary, WatchRegistration

_CONFLICT = (
    "Only one user push notification client allowed per developer "
    "(call /stop then try again)"
)


# ── Helpers ────────────────────────────────────────────────────────────────────


class Recorder:
    """MockTransport handler that records requests and replays queued responses."""

    def __init__(self, *responses: httpx.Response | Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        return response(request) if callable(response) else response


def ok(data: Any) -> httpx.Response:
    return httpx.Response(200, json=data)


def google_error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": status, "message": message}})


@pytest.fixture
def recorder() -> Recorder:
    return Recorder(ok({}))


@pytest.fixture
async def client(recorder: Recorder) -> GmailClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    yield GmailClient(http)
    await http.aclose()


# ── Credential gating ──────────────────────────────────────────────────────────


class TestCredentialGating:
    @pytest.mark.parametrize("bad", [None, Credential(None, "r"), Credential("a", None), Credential("", "")])
    @pytest.mark.parametrize(
        "call",
        [
            lambda c, cred: c.fetch_account_profile(cred),
            lambda c, cred: c.fetch_mailbox_profile(cred),
            lambda c, cred: c.fetch_label(cred, "INBOX"),
            lambda c, cred: c.fetch_history(cred, "1"),
            lambda c, cred: c.list_thread_headers(cred),
            lambda c, cred: c.fetch_thread(cred, "t1"),
            lambda c, cred: c.register_watch(cred, "projects/p/topics/gmail"),
        ],
    )
    async def test_no_request_without_valid_credential(
        self, client: GmailClient, recorder: Recorder, bad: Credential | None, call: Any
    ) -> None:
        with pytest.raises(MissingCredential):
            await call(client, bad)
        assert recorder.requests == []


# ── Request / error contract ───────────────────────────────────────────────────


class TestCallContract:
    async def test_sends_bearer_token(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        await client.fetch_mailbox_profile(credential)
        assert recorder.requests[0].headers["authorization"] == "Bearer access-1"

    async def test_non_200_raises_rejected_with_status(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [google_error(404, "Requested entity was not found.")]
        with pytest.raises(UpstreamRejected) as info:
            await client.fetch_label(credential, "Label_9")
        assert info.value.status == 404
        assert info.value.message == "Requested entity was not found."

    async def test_non_200_success_family_is_still_rejected(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [httpx.Response(204)]
        with pytest.raises(UpstreamRejected) as info:
            await client.fetch_mailbox_profile(credential)
        assert info.value.status == 204

    async def test_plain_text_error_uses_body_as_message(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [httpx.Response(502, text="Bad Gateway")]
        with pytest.raises(UpstreamRejected) as info:
            await client.fetch_mailbox_profile(credential)
        assert info.value.message == "Bad Gateway"

    async def test_transport_error_raises_unreachable(self, credential: Credential) -> None:
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(boom)) as http:
            with pytest.raises(UpstreamUnreachable):
                await GmailClient(http).fetch_thread(credential, "t1")

    async def test_html_body_on_200_is_rejected(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [
            httpx.Response(200, text="<html>captive portal</html>", headers={"content-type": "text/html"})
        ]
        with pytest.raises(UpstreamRejected) as info:
            await client.fetch_thread(credential, "t1")
        assert info.value.status == 200
        assert info.value.message == "Invalid JSON body"
        assert info.value.body == "<html>captive portal</html>"

    async def test_json_array_body_is_rejected(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok([1, 2, 3])]
        with pytest.raises(UpstreamRejected):
            await client.fetch_mailbox_profile(credential)


# ── Profiles, labels, history ──────────────────────────────────────────────────


class TestMetadata:
    async def test_account_profile(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({"id": "42", "email": "me@example.com", "name": "Me", "picture": "http://x/p.png"})]
        profile = await client.fetch_account_profile(credential)
        assert profile.email == "me@example.com"
        assert profile.picture == "http://x/p.png"
        assert recorder.requests[0].url.path == "/oauth2/v2/userinfo"

    async def test_mailbox_profile(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({
            "emailAddress": "me@example.com", "messagesTotal": 10, "threadsTotal": 4, "historyId": "777",
        })]
        profile = await client.fetch_mailbox_profile(credential)
        assert profile.history_id == "777"
        assert profile.threads_total == 4
        assert recorder.requests[0].url.path == "/gmail/v1/users/me/profile"

    async def test_label(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({"id": "INBOX", "name": "INBOX", "threadsUnread": 3, "messagesUnread": 5})]
        label = await client.fetch_label(credential, "INBOX")
        assert label.threads_unread == 3
        assert label.messages_unread == 5
        assert recorder.requests[0].url.path == "/gmail/v1/users/me/labels/INBOX"

    async def test_history(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({
            "historyId": "120",
            "history": [
                {"id": "101", "messages": [{"id": "m1", "threadId": "t1"}]},
                {"id": "110", "messages": [{"id": "m2"}, {"id": "m3"}]},
            ],
            "nextPageToken": "page-2",
        })]
        page = await client.fetch_history(credential, "100")
        assert page.history_id == "120"
        assert [r.id for r in page.records] == ["101", "110"]
        assert page.records[1].message_ids == ("m2", "m3")
        assert page.next_page_token == "page-2"
        params = recorder.requests[0].url.params
        assert params["startHistoryId"] == "100"
        assert "pageToken" not in params

    async def test_history_with_no_changes(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({"historyId": "100"})]
        page = await client.fetch_history(credential, "100")
        assert page.records == []

    async def test_history_with_null_fields(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({
            "historyId": "101",
            "history": [{"id": "101", "messages": None}, None],
            "nextPageToken": None,
        })]
        page = await client.fetch_history(credential, "100")
        assert [(r.id, r.message_ids) for r in page.records] == [("101", ())]
        assert page.next_page_token is None

    async def test_account_profile_null_picture(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({"id": 42, "email": "me@example.com", "name": None, "picture": None})]
        profile = await client.fetch_account_profile(credential)
        assert profile.id == "42"
        assert profile.name == ""
        assert profile.picture is None


# ── Threads ────────────────────────────────────────────────────────────────────


class TestThreads:
    async def test_list_preserves_provider_order(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({"threads": [
            {"id": "z", "historyId": "3", "snippet": "..."},
            {"id": "a", "historyId": "9"},
            {"id": "m", "historyId": "1"},
        ]})]
        headers = await client.list_thread_headers(credential)
        assert headers == [ThreadHeader("z", "3"), ThreadHeader("a", "9"), ThreadHeader("m", "1")]

    async def test_list_passes_filters(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({})]
        headers = await client.list_thread_headers(
            credential, query="is:unread", label_ids=["INBOX", "UNREAD"], limit=10
        )
        assert headers == []
        params = recorder.requests[0].url.params
        assert params["q"] == "is:unread"
        assert params.get_list("labelIds") == ["INBOX", "UNREAD"]
        assert params["maxResults"] == "10"

    async def test_list_default_limit_is_25(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({})]
        await client.list_thread_headers(credential)
        params = recorder.requests[0].url.params
        assert params["maxResults"] == "25"
        assert "q" not in params

    async def test_fetch_thread_summarises_latest_message(
        self,
        client: GmailClient,
        recorder: Recorder,
        credential: Credential,
        thread_payload: dict[str, Any],
    ) -> None:
        recorder._responses = [ok(thread_payload)]
        thread = await client.fetch_thread(credential, "thread_001")

        assert isinstance(thread, ThreadSummary)
        assert thread.id == "thread_001"
        assert thread.history_id == "9001"
        assert thread.message_count == 2
        latest = thread.latest_message
        assert latest is not None
        assert latest.id == "msg_002"
        assert latest.sender == "Alice <alice@example.com>"
        assert latest.recipient == "me@example.com"
        assert latest.subject == "Re: Q2 budget"
        assert latest.internal_date == 1772186400000
        assert latest.label_ids == ("INBOX", "UNREAD")

    async def test_fetch_thread_without_messages(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({"id": "t9", "historyId": "5"})]
        thread = await client.fetch_thread(credential, "t9")
        assert thread.latest_message is None
        assert thread.message_count == 0

    async def test_null_collections_read_as_empty(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({"id": "B", "historyId": "9", "messages": None})]
        thread = await client.fetch_thread(credential, "B")
        assert thread.history_id == "9"
        assert thread.latest_message is None

    async def test_null_message_fields_read_as_defaults(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({
            "id": "B",
            "historyId": "9",
            "snippet": None,
            "messages": [{
                "id": "m1",
                "historyId": "9",
                "internalDate": None,
                "labelIds": None,
                "payload": {"headers": None},
            }],
        })]
        thread = await client.fetch_thread(credential, "B")
        latest = thread.latest_message
        assert latest.id == "m1"
        assert latest.sender == ""
        assert latest.label_ids == ()
        assert latest.internal_date == 0
        assert thread.snippet == ""

    async def test_null_thread_list_is_empty(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [ok({"threads": None})]
        assert await client.list_thread_headers(credential) == []


# ── Watch registration ─────────────────────────────────────────────────────────


class TestRegisterWatch:
    async def test_success(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [ok({"historyId": "555", "expiration": "1772800000000"})]
        result = await client.register_watch(credential, "projects/p/topics/gmail", ["INBOX"])

        assert result == WatchRegistration(history_id="555", expiration=1772800000000)
        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"topicName": "projects/p/topics/gmail", "labelIds": ["INBOX"]}

    async def test_push_client_conflict_is_success_with_empty_data(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [google_error(400, _CONFLICT)]
        result = await client.register_watch(credential, "projects/p/topics/gmail")
        assert result == WatchRegistration(already_registered=True)
        assert result.history_id is None

    async def test_other_rejection_propagates(
        self, client: GmailClient, recorder: Recorder, credential: Credential
    ) -> None:
        recorder._responses = [google_error(400, "Invalid topicName does not match projects/...")]
        with pytest.raises(UpstreamRejected) as info:
            await client.register_watch(credential, "bad")
        assert info.value.status == 400

    async def test_forbidden_propagates(self, client: GmailClient, recorder: Recorder, credential: Credential) -> None:
        recorder._responses = [google_error(403, "Error sending test message to Cloud PubSub")]
        with pytest.raises(UpstreamRejected):
            await client.register_watch(credential, "projects/p/topics/gmail")


class TestPushClientConflictPredicate:
    def test_matches_prefix(self) -> None:
        assert is_push_client_conflict(_CONFLICT)

    def test_rejects_other_messages(self) -> None:
        assert not is_push_client_conflict("Rate limit exceeded")
        assert not is_push_client_conflict("Error: " + _CONFLICT)
        assert not is_push_client_conflict(None)
