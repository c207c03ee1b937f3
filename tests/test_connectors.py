"""
Wire-level tests for the provider adapters, using httpx.MockTransport.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from urllib.parse import parse_qsl, unquote

import httpx
import pytest

from connectors.active_campaign import ActiveCampaignConnector
from connectors.beehiiv import BeehiivConnector
from connectors.brevo import BrevoConnector
from connectors.campaign_monitor import CampaignMonitorConnector
from connectors.constant_contact import ConstantContactConnector
from connectors.customer_io import CustomerIoConnector
from connectors.email_octopus import EmailOctopusConnector
from connectors.errors import (
    CredentialInvalid,
    NetworkError,
    ProviderServerError,
    RateLimited,
    RemoteNotFound,
)
from connectors.ghost import GhostConnector, admin_token
from connectors.iterable import IterableConnector
from connectors.kit import KitConnector
from connectors.mailchimp import MailchimpConnector
from connectors.mailerlite import MailerLiteConnector
from connectors.omeda import OmedaConnector
from connectors.postup import PostUpConnector
from connectors.sailthru import SailthruConnector, signature
from connectors.sendgrid import SendGridConnector, next_page_token
from connectors.sparkpost import SparkPostConnector
from core.mapper import resolve_status
from utils.schemas import AuthMethod, Credential, SubscriberStatus as S


def _key(secret="key-123", method=AuthMethod.API_KEY) -> Credential:
    return Credential(secret=secret, auth_method=method)


def _transport(handler):
    seen = []

    def wrapped(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped), seen


class TestErrorTaxonomy:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [
            (401, CredentialInvalid),
            (403, CredentialInvalid),
            (404, RemoteNotFound),
            (429, RateLimited),
            (500, ProviderServerError),
            (503, ProviderServerError),
            (418, ProviderServerError),
        ],
    )
    async def test_status_codes_map_to_taxonomy(self, status, error):
        transport, _ = _transport(lambda request: httpx.Response(status, json={}))
        connector = MailerLiteConnector(transport=transport)
        with pytest.raises(error):
            await connector.fetch_lists(_key())

    @pytest.mark.asyncio
    async def test_retry_after_is_parsed(self):
        transport, _ = _transport(lambda r: httpx.Response(429, headers={"Retry-After": "30"}))
        with pytest.raises(RateLimited) as exc_info:
            await MailerLiteConnector(transport=transport).fetch_lists(_key())
        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_network_error_without_secret(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport, _ = _transport(handler)
        with pytest.raises(NetworkError) as exc_info:
            await EmailOctopusConnector(transport=transport).fetch_lists(_key("super-secret"))
        assert "super-secret" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_json_is_server_error(self):
        transport, _ = _transport(lambda r: httpx.Response(200, content=b"<html>"))
        with pytest.raises(ProviderServerError):
            await BrevoConnector(transport=transport).fetch_lists(_key())

    @pytest.mark.asyncio
    async def test_validate_returns_false_on_rejection(self):
        transport, _ = _transport(lambda r: httpx.Response(401, json={"message": "Unauthenticated."}))
        assert await MailerLiteConnector(transport=transport).validate_credential(_key()) is False

    @pytest.mark.asyncio
    async def test_validate_raises_on_server_error(self):
        transport, _ = _transport(lambda r: httpx.Response(502))
        with pytest.raises(ProviderServerError):
            await MailerLiteConnector(transport=transport).validate_credential(_key())

    @pytest.mark.asyncio
    async def test_validate_checks_target_list(self):
        def handler(request):
            if request.url.path.endswith("/groups/missing"):
                return httpx.Response(404, json={})
            return httpx.Response(200, json={"data": [{"id": "g1"}]})

        transport, _ = _transport(handler)
        connector = MailerLiteConnector(transport=transport)
        assert await connector.validate_credential(_key(), "g1") is True
        assert await connector.validate_credential(_key(), "missing") is False


class TestMailerLite:
    @pytest.mark.asyncio
    async def test_drains_cursor_pages(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer key-123"
            if "cursor" not in request.url.params:
                return httpx.Response(200, json={
                    "data": [{"id": "1", "email": "a@example.com", "status": "active"}],
                    "meta": {"next_cursor": "c2"},
                })
            return httpx.Response(200, json={
                "data": [
                    {"id": "2", "email": "b@example.com", "status": "unsubscribed"},
                    {"id": "3", "email": "c@example.com", "status": "junk"},
                ],
                "meta": {"next_cursor": None},
            })

        transport, seen = _transport(handler)
        rows = await MailerLiteConnector(transport=transport).fetch_subscribers(_key(), "g1")

        assert [r.external_id for r in rows] == ["1", "2", "3"]
        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.COMPLAINED]
        assert len(seen) == 2
        assert seen[1].url.params["cursor"] == "c2"

    @pytest.mark.asyncio
    async def test_mid_pagination_failure_aborts(self):
        def handler(request):
            if "cursor" not in request.url.params:
                return httpx.Response(200, json={"data": [{"id": "1", "email": "a@example.com"}], "meta": {"next_cursor": "c2"}})
            return httpx.Response(500)

        transport, _ = _transport(handler)
        with pytest.raises(ProviderServerError):
            await MailerLiteConnector(transport=transport).fetch_subscribers(_key(), "g1")

    @pytest.mark.asyncio
    async def test_subscriber_count(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={"data": {"id": "g1", "active_count": 17}}))
        assert await MailerLiteConnector(transport=transport).get_subscriber_count(_key(), "g1") == 17


class TestBrevo:
    @pytest.mark.asyncio
    async def test_flags_and_auth_header(self):
        def handler(request):
            assert request.headers["api-key"] == "key-123"
            return httpx.Response(200, json={"contacts": [
                {"id": 1, "email": "a@example.com", "emailBlacklisted": False, "listUnsubscribed": []},
                {"id": 2, "email": "b@example.com", "listUnsubscribed": [7]},
                {"id": 3, "email": "c@example.com", "hardBounced": True, "listUnsubscribed": [7]},
                {"id": 4, "email": "d@example.com", "attributes": {"FIRSTNAME": "Dee"}},
            ]})

        transport, _ = _transport(handler)
        rows = await BrevoConnector(transport=transport).fetch_subscribers(_key(), "7")

        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.BOUNCED, S.ACTIVE]
        assert rows[3].first_name == "Dee"

    @pytest.mark.asyncio
    async def test_offset_paging(self):
        def handler(request):
            offset = int(request.url.params["offset"])
            batch = [{"id": offset + i, "email": f"u{offset + i}@example.com"} for i in range(2 if offset == 0 else 1)]
            return httpx.Response(200, json={"contacts": batch})

        connector = BrevoConnector(transport=_transport(handler)[0])
        connector.contact_page_size = 2
        rows = await connector.fetch_subscribers(_key(), "7")
        assert [r.external_id for r in rows] == ["0", "1", "2"]


class TestEmailOctopus:
    @pytest.mark.asyncio
    async def test_key_in_query_and_page_paging(self):
        def handler(request):
            assert request.url.params["api_key"] == "key-123"
            assert "Authorization" not in request.headers
            page = int(request.url.params["page"])
            if page == 1:
                return httpx.Response(200, json={
                    "data": [{"id": "x1", "email_address": "a@example.com", "status": "PENDING"}],
                    "paging": {"next": "/api/1.6/lists/l/contacts?page=2"},
                })
            return httpx.Response(200, json={
                "data": [{"id": "x2", "email_address": "b@example.com", "status": "BOUNCED"}],
                "paging": {"next": None},
            })

        transport, _ = _transport(handler)
        rows = await EmailOctopusConnector(transport=transport).fetch_subscribers(_key(), "l")
        assert [resolve_status(r.flags) for r in rows] == [S.PENDING, S.BOUNCED]


class TestActiveCampaign:
    @pytest.mark.asyncio
    async def test_account_and_membership_status(self):
        def handler(request):
            assert request.url.host == "acme.api-us1.com"
            assert request.headers["Api-Token"] == "secret"
            return httpx.Response(200, json={
                "contacts": [
                    {"id": "1", "email": "a@example.com", "status": "1"},
                    {"id": "2", "email": "b@example.com", "status": "1"},
                    {"id": "3", "email": "c@example.com", "bounced_hard": "2"},
                ],
                "contactLists": [
                    {"contact": "1", "list": "5", "status": "1"},
                    {"contact": "2", "list": "5", "status": "2"},
                ],
            })

        transport, _ = _transport(handler)
        rows = await ActiveCampaignConnector(transport=transport).fetch_subscribers(_key("acme|secret"), "5")
        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.BOUNCED]

    @pytest.mark.asyncio
    async def test_malformed_secret(self):
        connector = ActiveCampaignConnector(transport=_transport(lambda r: httpx.Response(200, json={}))[0])
        with pytest.raises(CredentialInvalid):
            await connector.fetch_lists(_key("no-account-part"))
        assert await connector.validate_credential(_key("no-account-part")) is False


class TestKit:
    @pytest.mark.asyncio
    async def test_oauth_and_api_key_headers(self):
        headers = []

        def handler(request):
            headers.append(request.headers)
            return httpx.Response(200, json={"tags": [{"id": 9, "name": "Newsletter"}], "pagination": {"has_next_page": False}})

        connector = KitConnector(transport=_transport(handler)[0])
        await connector.fetch_lists(_key("tok", AuthMethod.OAUTH))
        await connector.fetch_lists(_key("kit_key"))

        assert headers[0]["Authorization"] == "Bearer tok"
        assert headers[1]["X-Kit-Api-Key"] == "kit_key"
        assert "Authorization" not in headers[1]

    @pytest.mark.asyncio
    async def test_cursor_pages(self):
        def handler(request):
            if "after" not in request.url.params:
                return httpx.Response(200, json={
                    "subscribers": [{"id": 1, "email_address": "a@example.com", "state": "active"}],
                    "pagination": {"has_next_page": True, "end_cursor": "abc"},
                })
            return httpx.Response(200, json={
                "subscribers": [{"id": 2, "email_address": "b@example.com", "state": "inactive"}],
                "pagination": {"has_next_page": False, "end_cursor": "def"},
            })

        rows = await KitConnector(transport=_transport(handler)[0]).fetch_subscribers(_key(), "9")
        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [("1", S.ACTIVE), ("2", S.PENDING)]

    @pytest.mark.asyncio
    async def test_count_covers_every_state(self):
        transport, seen = _transport(lambda r: httpx.Response(200, json={"subscribers": [], "pagination": {"total_count": 250}}))
        assert await KitConnector(transport=transport).get_subscriber_count(_key(), "9") == 250
        assert seen[0].url.params["status"] == "all"

    @pytest.mark.asyncio
    async def test_fetch_and_count_use_same_status_filter(self):
        transport, seen = _transport(lambda r: httpx.Response(200, json={"subscribers": [], "pagination": {"has_next_page": False, "total_count": 0}}))
        connector = KitConnector(transport=transport)
        await connector.fetch_subscribers(_key(), "9")
        await connector.get_subscriber_count(_key(), "9")
        assert seen[0].url.params["status"] == seen[1].url.params["status"]


def _basic(userinfo: str) -> str:
    return "Basic " + base64.b64encode(userinfo.encode()).decode()


class TestMailchimp:
    @pytest.mark.asyncio
    async def test_resolves_data_centre_then_pages(self):
        def handler(request):
            if request.url.host == "login.mailchimp.com":
                assert request.headers["Authorization"] == "OAuth tok"
                return httpx.Response(200, json={"dc": "us6", "api_endpoint": "https://us6.api.mailchimp.com"})
            assert request.url.host == "us6.api.mailchimp.com"
            assert request.headers["Authorization"] == "Bearer tok"
            if int(request.url.params["offset"]) == 0:
                members = [{"id": "m1", "email_address": "a@example.com", "status": "subscribed", "merge_fields": {"FNAME": "Ada"}}]
            else:
                members = [{"id": "m2", "email_address": "b@example.com", "status": "cleaned"}]
            return httpx.Response(200, json={"members": members, "total_items": 2})

        transport, seen = _transport(handler)
        rows = await MailchimpConnector(transport=transport).fetch_subscribers(_key("tok", AuthMethod.OAUTH), "aud1")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [("m1", S.ACTIVE), ("m2", S.BOUNCED)]
        assert rows[0].first_name == "Ada"
        assert seen[1].url.path == "/3.0/lists/aud1/members"
        assert seen[2].url.params["offset"] == "1"

    @pytest.mark.asyncio
    async def test_metadata_without_data_centre(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={}))
        with pytest.raises(ProviderServerError):
            await MailchimpConnector(transport=transport).fetch_lists(_key("tok", AuthMethod.OAUTH))

    def test_oauth_only(self):
        connector = MailchimpConnector()
        assert connector.supports(AuthMethod.OAUTH)
        assert not connector.supports(AuthMethod.API_KEY)


class TestCampaignMonitor:
    @pytest.mark.asyncio
    async def test_reads_every_segment_page_by_page(self):
        results = {
            ("active", 1): [{"EmailAddress": "a@example.com", "Name": "Ada Lovelace", "State": "Active", "Date": "2024-01-02 10:00:00"}],
            ("active", 2): [{"EmailAddress": "b@example.com", "Name": "", "State": "Active"}],
            ("unsubscribed", 1): [{"EmailAddress": "c@example.com", "State": "Unsubscribed", "Date": "2024-03-01 00:00:00"}],
        }
        pages = {"active": 2, "unsubscribed": 1, "bounced": 0}

        def handler(request):
            assert request.headers["Authorization"] == _basic("key-123:")
            segment = request.url.path.split("/")[-1].split(".")[0]
            page = int(request.url.params["page"])
            return httpx.Response(200, json={"Results": results.get((segment, page), []), "NumberOfPages": pages[segment]})

        transport, seen = _transport(handler)
        rows = await CampaignMonitorConnector(transport=transport).fetch_subscribers(_key(), "L1")

        assert [r.email for r in rows] == ["a@example.com", "b@example.com", "c@example.com"]
        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.ACTIVE, S.UNSUBSCRIBED]
        assert (rows[0].first_name, rows[0].last_name) == ("Ada", "Lovelace")
        assert rows[2].subscribed_at is None
        assert rows[2].unsubscribed_at == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert len(seen) == 4


class TestConstantContact:
    @pytest.mark.asyncio
    async def test_cursor_pages_and_permission(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer key-123"
            assert request.url.params["lists"] == "L1"
            if "cursor" not in request.url.params:
                return httpx.Response(200, json={
                    "contacts": [{"contact_id": "c1", "email_address": {"address": "a@example.com", "permission_to_send": "explicit"}}],
                    "cursor": {"next": "abc"},
                })
            return httpx.Response(200, json={"contacts": [
                {"contact_id": "c2", "email_address": {"address": "b@example.com", "permission_to_send": "unsubscribed"}},
                {"contact_id": "c3", "email_address": {"address": "c@example.com"}, "deleted_at": "2024-05-01T00:00:00Z"},
            ]})

        transport, seen = _transport(handler)
        rows = await ConstantContactConnector(transport=transport).fetch_subscribers(_key(), "L1")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("c1", S.ACTIVE),
            ("c2", S.UNSUBSCRIBED),
            ("c3", S.UNSUBSCRIBED),
        ]
        assert rows[2].unsubscribed_at == datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert seen[1].url.params["cursor"] == "abc"


class TestCustomerIo:
    @pytest.mark.asyncio
    async def test_membership_then_profiles_skipping_deleted(self):
        def handler(request):
            assert request.url.host == "api-eu.customer.io"
            assert request.headers["Authorization"] == "Bearer app-key"
            path = request.url.path
            if path == "/v1/segments/7/membership":
                if "start" not in request.url.params:
                    return httpx.Response(200, json={"ids": ["1", "2"], "next": "n2"})
                return httpx.Response(200, json={"ids": ["3"], "next": ""})
            if path == "/v1/customers/2/attributes":
                return httpx.Response(404, json={})
            if path == "/v1/customers/1/attributes":
                return httpx.Response(200, json={"customer": {"id": "1", "email": "a@example.com", "attributes": {
                    "first_name": "Ada", "unsubscribed": "true", "created_at": "1700000000",
                }}})
            return httpx.Response(200, json={"customer": {"id": "3", "email": "c@example.com", "attributes": {"email_bounced": True}}})

        transport, _ = _transport(handler)
        rows = await CustomerIoConnector(transport=transport).fetch_subscribers(_key("eu|app-key"), "7")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [("1", S.UNSUBSCRIBED), ("3", S.BOUNCED)]
        assert rows[0].first_name == "Ada"
        assert rows[0].subscribed_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_profile_server_error_aborts(self):
        def handler(request):
            if request.url.path.endswith("/membership"):
                return httpx.Response(200, json={"ids": ["1"]})
            return httpx.Response(500)

        transport, _ = _transport(handler)
        with pytest.raises(ProviderServerError):
            await CustomerIoConnector(transport=transport).fetch_subscribers(_key("app-key"), "7")


def _unb64(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


class TestGhost:
    def test_admin_token_is_signed_with_hex_secret(self):
        token = admin_token("abc123", "00ff", now=1000)
        header, payload, sig = token.split(".")

        assert json.loads(_unb64(header)) == {"alg": "HS256", "typ": "JWT", "kid": "abc123"}
        assert json.loads(_unb64(payload)) == {"iat": 1000, "exp": 1300, "aud": "/admin/"}
        expected = hmac.new(bytes.fromhex("00ff"), f"{header}.{payload}".encode(), hashlib.sha256).digest()
        assert _unb64(sig) == expected

    @pytest.mark.asyncio
    async def test_members_pages_and_suppressions(self):
        newsletter = [{"id": "n1"}]

        def handler(request):
            assert request.url.host == "blog.example.com"
            assert request.url.path == "/ghost/api/admin/members/"
            assert request.headers["Authorization"].startswith("Ghost ")
            if request.url.params["page"] == "1":
                return httpx.Response(200, json={
                    "members": [
                        {"id": "m1", "email": "a@example.com", "name": "Ada Lovelace", "subscribed": True, "newsletters": newsletter},
                        {"id": "m2", "email": "b@example.com", "subscribed": False},
                        {"id": "m3", "email": "c@example.com", "newsletters": newsletter,
                         "email_suppression": {"suppressed": True, "info": {"reason": "spam"}}},
                    ],
                    "meta": {"pagination": {"page": 1, "next": 2}},
                })
            return httpx.Response(200, json={
                "members": [
                    {"id": "m4", "email": "d@example.com", "newsletters": newsletter,
                     "email_suppression": {"suppressed": True, "info": {"reason": "fail"}}},
                ],
                "meta": {"pagination": {"page": 2, "next": None}},
            })

        transport, _ = _transport(handler)
        rows = await GhostConnector(transport=transport).fetch_subscribers(
            _key("https://blog.example.com/|abc123:00ff"), "https://blog.example.com/"
        )

        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.COMPLAINED, S.BOUNCED]
        assert (rows[0].first_name, rows[0].last_name) == ("Ada", "Lovelace")

    @pytest.mark.asyncio
    async def test_malformed_admin_key(self):
        transport, seen = _transport(lambda r: httpx.Response(200, json={}))
        connector = GhostConnector(transport=transport)
        assert await connector.validate_credential(_key("https://blog.example.com|not-hex")) is False
        with pytest.raises(CredentialInvalid):
            await connector.fetch_lists(_key("no-site-part"))
        assert seen == []


class TestIterable:
    @pytest.mark.asyncio
    async def test_text_member_list_and_profiles(self):
        profiles = {
            "a@example.com": {"email": "a@example.com", "userId": "u1", "dataFields": {"firstName": "Ada", "emailListIds": [5]}},
            "b+tag@example.com": {"email": "b+tag@example.com", "dataFields": {"unsubscribedChannelIds": [1]}},
        }

        def handler(request):
            assert request.headers["Api-Key"] == "key-123"
            if request.url.path == "/api/lists/getUsers":
                assert request.url.params["listId"] == "5"
                return httpx.Response(200, text="a@example.com\n\ngone@example.com\nb+tag@example.com\n")
            email = unquote(request.url.path.split("/")[-1])
            if email == "gone@example.com":
                return httpx.Response(404, json={})
            return httpx.Response(200, json={"user": profiles[email]})

        transport, _ = _transport(handler)
        rows = await IterableConnector(transport=transport).fetch_subscribers(_key(), "5")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("u1", S.ACTIVE),
            ("b+tag@example.com", S.UNSUBSCRIBED),
        ]
        assert rows[0].first_name == "Ada"

    @pytest.mark.asyncio
    async def test_json_member_list(self):
        def handler(request):
            if request.url.path == "/api/lists/getUsers":
                return httpx.Response(200, json={"users": [{"email": "a@example.com"}]})
            return httpx.Response(200, json={"user": {"email": "a@example.com", "dataFields": {"hardBounced": True}}})

        rows = await IterableConnector(transport=_transport(handler)[0]).fetch_subscribers(_key(), "5")
        assert [resolve_status(r.flags) for r in rows] == [S.BOUNCED]

    @pytest.mark.asyncio
    async def test_count_of_unknown_list(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={"lists": [{"id": 5, "name": "Main", "size": 12}]}))
        connector = IterableConnector(transport=transport)
        assert await connector.get_subscriber_count(_key(), "5") == 12
        with pytest.raises(RemoteNotFound):
            await connector.get_subscriber_count(_key(), "6")


class TestSendGrid:
    def test_next_page_token(self):
        assert next_page_token({"_metadata": {"next": "https://api.sendgrid.com/v3/marketing/lists?page_token=t2&page_size=100"}}) == "t2"
        assert next_page_token({"_metadata": {"next": "t3"}}) == "t3"
        assert next_page_token({"_metadata": {}}) is None

    @pytest.mark.asyncio
    async def test_search_pages_with_token(self):
        def handler(request):
            assert request.method == "POST"
            assert request.headers["Authorization"] == "Bearer key-123"
            body = json.loads(request.content)
            assert body["query"] == "CONTAINS(list_ids, 'L1')"
            if "page_token" not in body:
                return httpx.Response(200, json={
                    "result": [
                        {"id": "c1", "email": "a@example.com"},
                        {"id": "c2", "email": "b@example.com", "unsubscribed_at": "2024-01-01T00:00:00Z"},
                    ],
                    "_metadata": {"next": "https://api.sendgrid.com/v3/marketing/contacts/search?page_token=tok2"},
                })
            assert body["page_token"] == "tok2"
            return httpx.Response(200, json={"result": [{"id": "c3", "email": "c@example.com", "email_status": "spam_reported"}]})

        transport, seen = _transport(handler)
        rows = await SendGridConnector(transport=transport).fetch_subscribers(_key(), "L1")

        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.COMPLAINED]
        assert len(seen) == 2


class TestSparkPost:
    @pytest.mark.asyncio
    async def test_eu_key_and_recipient_flags(self):
        def handler(request):
            assert request.url.host == "api.eu.sparkpost.com"
            assert request.headers["Authorization"] == "raw-key"
            assert request.url.params["show_recipients"] == "true"
            return httpx.Response(200, json={"results": {"id": "L1", "recipients": [
                {"address": {"email": "a@example.com", "name": "Ada Lovelace"}, "substitution_data": {"plan": "pro"}},
                {"address": {"email": "b@example.com"}, "metadata": {"unsubscribed": True}},
                {"address": {"email": "c@example.com"}, "return_path": {"hard_bounce": True}},
            ]}})

        transport, _ = _transport(handler)
        rows = await SparkPostConnector(transport=transport).fetch_subscribers(_key("EU|raw-key"), "L1")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("a@example.com", S.ACTIVE),
            ("b@example.com", S.UNSUBSCRIBED),
            ("c@example.com", S.BOUNCED),
        ]
        assert rows[0].first_name == "Ada"
        assert rows[0].extra["substitution_data"] == {"plan": "pro"}

    @pytest.mark.asyncio
    async def test_count_skips_recipients(self):
        def handler(request):
            assert request.url.host == "api.sparkpost.com"
            assert request.url.params["show_recipients"] == "false"
            return httpx.Response(200, json={"results": {"id": "L1", "total_accepted_recipients": 42}})

        transport, _ = _transport(handler)
        assert await SparkPostConnector(transport=transport).get_subscriber_count(_key(), "L1") == 42


class TestSailthru:
    def test_signature_covers_nested_values_but_not_sig(self):
        assert signature("s", {"a": {"b": "2", "c": ["1"]}, "sig": "zzz"}) == hashlib.md5(b"s12").hexdigest()
        assert signature("s", {"api_key": "k", "format": "json"}) == hashlib.md5(b"sjsonk").hexdigest()

    @pytest.mark.asyncio
    async def test_export_job_is_polled_then_downloaded(self):
        polls = []

        def handler(request):
            if request.url.host == "exports.example.com":
                assert "sig" not in request.url.params
                return httpx.Response(200, text=(
                    '{"email": "a@example.com", "profile": {"name": "Ada Lovelace", "plan": "pro"}}\n'
                    "\n"
                    '{"email": "b@example.com", "optout_email": "all", "optout_time": 1700000000}\n'
                    '{"email": "c@example.com", "hardbounce_time": "2024-01-01"}\n'
                ))
            if request.method == "POST":
                form = dict(parse_qsl(request.content.decode()))
                assert form["job"] == "export_list_data"
                assert form["list"] == "Main"
                assert form["api_key"] == "k"
                assert form["sig"] == signature("s", form)
                return httpx.Response(200, json={"job_id": "j1"})
            assert request.url.path == "/job"
            assert request.url.params["job_id"] == "j1"
            assert request.url.params["sig"] == signature("s", dict(request.url.params))
            polls.append(request)
            if len(polls) < 2:
                return httpx.Response(200, json={"status": "pending"})
            return httpx.Response(200, json={"status": "completed", "export_url": "https://exports.example.com/j1.json"})

        connector = SailthruConnector(transport=_transport(handler)[0])
        connector.poll_interval_seconds = 0
        rows = await connector.fetch_subscribers(_key("k|s"), "Main")

        assert len(polls) == 2
        assert [resolve_status(r.flags) for r in rows] == [S.ACTIVE, S.UNSUBSCRIBED, S.BOUNCED]
        assert rows[0].first_name == "Ada"
        assert rows[0].extra == {"plan": "pro"}
        assert rows[1].unsubscribed_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_export_that_never_completes(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"job_id": "j1"})
            return httpx.Response(200, json={"status": "pending"})

        connector = SailthruConnector(transport=_transport(handler)[0])
        connector.poll_interval_seconds = 0
        connector.max_polls = 2
        with pytest.raises(ProviderServerError):
            await connector.fetch_subscribers(_key("k|s"), "Main")

    @pytest.mark.asyncio
    async def test_error_codes_in_bad_request_body(self):
        transport, _ = _transport(lambda r: httpx.Response(400, json={"error": 5, "errormsg": "Invalid API key"}))
        connector = SailthruConnector(transport=transport)
        assert await connector.validate_credential(_key("k|s")) is False

        transport, _ = _transport(lambda r: httpx.Response(400, json={"error": 99, "errormsg": "list not found"}))
        with pytest.raises(RemoteNotFound):
            await SailthruConnector(transport=transport).get_subscriber_count(_key("k|s"), "Gone")

    @pytest.mark.asyncio
    async def test_malformed_secret(self):
        connector = SailthruConnector(transport=_transport(lambda r: httpx.Response(200, json={}))[0])
        assert await connector.validate_credential(_key("no-secret-part")) is False


class TestOmeda:
    @pytest.mark.asyncio
    async def test_audience_query_pages_against_total(self):
        def handler(request):
            assert request.url.path == "/webservices/rest/brand1/audience/query/*"
            assert request.headers["x-omeda-appid"] == "app"
            assert request.headers["x-omeda-inputid"] == "inp"
            body = json.loads(request.content)
            assert body["ProductIds"] == [42]
            offset = body["Pagination"]["Offset"]
            if offset == 0:
                customers = [
                    {"CustomerId": 1, "Email": "a@example.com", "EmailStatus": "A"},
                    {"CustomerId": 2, "Email": "b@example.com", "EmailStatus": "O", "ChangeDate": "2024-02-01 00:00:00"},
                ]
            else:
                customers = [{"CustomerId": 3, "Email": "c@example.com", "EmailStatus": "B"}]
            return httpx.Response(200, json={"Customers": customers, "TotalCount": 3})

        transport, seen = _transport(handler)
        connector = OmedaConnector(transport=transport)
        connector.page_size = 2
        rows = await connector.fetch_subscribers(_key("brand1:app:inp"), "42")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("1", S.ACTIVE),
            ("2", S.UNSUBSCRIBED),
            ("3", S.BOUNCED),
        ]
        assert rows[1].unsubscribed_at == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_count_only_query(self):
        def handler(request):
            assert "x-omeda-inputid" not in request.headers
            assert json.loads(request.content) == {"ProductIds": [42], "CountOnly": True}
            return httpx.Response(200, json={"TotalCount": 1234})

        transport, _ = _transport(handler)
        assert await OmedaConnector(transport=transport).get_subscriber_count(_key("brand1:app"), "42") == 1234

    @pytest.mark.asyncio
    async def test_non_numeric_product(self):
        transport, seen = _transport(lambda r: httpx.Response(200, json={}))
        with pytest.raises(RemoteNotFound):
            await OmedaConnector(transport=transport).fetch_subscribers(_key("brand1:app"), "weekly")
        assert seen == []


class TestPostUp:
    @pytest.mark.asyncio
    async def test_offset_pages_and_status_codes(self):
        def handler(request):
            assert request.headers["Authorization"] == _basic("user:pa:ss")
            assert request.url.params["listId"] == "9"
            if request.url.params["offset"] == "0":
                return httpx.Response(200, json=[
                    {"recipientId": 1, "address": "a@example.com", "status": "A"},
                    {"recipientId": 2, "address": "b@example.com", "status": "C"},
                ])
            return httpx.Response(200, json=[
                {"recipientId": 3, "address": "c@example.com", "status": "H", "demographics": {"firstName": "Cy"}},
            ])

        connector = PostUpConnector(transport=_transport(handler)[0])
        connector.page_size = 2
        rows = await connector.fetch_subscribers(_key("user:pa:ss"), "9")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("1", S.ACTIVE),
            ("2", S.COMPLAINED),
            ("3", S.BOUNCED),
        ]
        assert rows[2].first_name == "Cy"
        assert rows[2].extra["demographics"] == {"firstName": "Cy"}

    @pytest.mark.asyncio
    async def test_malformed_secret(self):
        connector = PostUpConnector(transport=_transport(lambda r: httpx.Response(200, json=[]))[0])
        assert await connector.validate_credential(_key("no-colon")) is False


class TestBeehiiv:
    @pytest.mark.asyncio
    async def test_pages_until_total_pages(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer key-123"
            assert request.url.path == "/v2/publications/pub_1/subscriptions"
            if request.url.params["page"] == "1":
                return httpx.Response(200, json={"data": [
                    {"id": "sub_1", "email": "a@example.com", "status": "active", "created": 1700000000},
                    {"id": "sub_2", "email": "b@example.com", "status": "validating"},
                ], "page": 1, "total_pages": 2})
            return httpx.Response(200, json={"data": [
                {"id": "sub_3", "email": "c@example.com", "status": "spam"},
            ], "page": 2, "total_pages": 2})

        transport, seen = _transport(handler)
        rows = await BeehiivConnector(transport=transport).fetch_subscribers(_key(), "pub_1")

        assert [(r.external_id, resolve_status(r.flags)) for r in rows] == [
            ("sub_1", S.ACTIVE),
            ("sub_2", S.PENDING),
            ("sub_3", S.COMPLAINED),
        ]
        assert rows[0].subscribed_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_validate_checks_publication(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={"data": [{"id": "pub_1", "name": "Weekly"}]}))
        connector = BeehiivConnector(transport=transport)
        assert await connector.validate_credential(_key(), "pub_1") is True
        assert await connector.validate_credential(_key(), "pub_2") is False
