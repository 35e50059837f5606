"""
Tests for share links and local account sessions.
"""

from datetime import timedelta

import pytest

from portfolio.core import auth
from portfolio.core.dao import upsert_element
from portfolio.core.errors import PermissionDenied, Unauthenticated, ValidationFailed
from portfolio.core.links import build_share_url, parse_share_id
from portfolio.core.schema import utcnow
from portfolio.core.shares import (
    create_share_link,
    get_share_link,
    is_share_valid,
    list_share_links,
    open_shared_content,
    record_share_access,
    revoke_share_link,
)

OWNER = "owner-1"


@pytest.fixture
def shared_form():
    upsert_element(OWNER, "form", "contact", {"name": "Contact", "fields": []})
    return create_share_link(OWNER, "form", "contact", expires_in_days=7)


class TestShareLinks:
    def test_created_link_is_active_and_unused(self, shared_form):
        assert shared_form.share_id.startswith("share_")
        assert shared_form.is_active
        assert shared_form.access_count == 0
        assert shared_form.permissions == ["read"]
        assert is_share_valid(shared_form.share_id)

    def test_expiry_boundary(self, shared_form):
        """now == expires_at is already expired."""
        expires_at = shared_form.expires_at
        assert is_share_valid(shared_form.share_id, now=expires_at - timedelta(seconds=1))
        assert not is_share_valid(shared_form.share_id, now=expires_at)
        assert not is_share_valid(shared_form.share_id, now=expires_at + timedelta(seconds=1))

    def test_validity_check_does_not_record_access(self, shared_form):
        for _ in range(3):
            is_share_valid(shared_form.share_id)
        assert get_share_link(shared_form.share_id).access_count == 0

    def test_open_records_access_and_returns_value(self, shared_form):
        content = open_shared_content(shared_form.share_id)
        assert content["value"] == {"name": "Contact", "fields": []}
        assert content["share"].access_count == 1

        open_shared_content(shared_form.share_id)
        link = get_share_link(shared_form.share_id)
        assert link.access_count == 2
        assert link.last_accessed_at is not None

    def test_open_expired_link_is_denied(self, shared_form):
        with pytest.raises(PermissionDenied):
            open_shared_content(shared_form.share_id, now=shared_form.expires_at)
        assert get_share_link(shared_form.share_id).access_count == 0

    def test_unknown_link(self):
        assert not is_share_valid("share_missing")
        assert record_share_access("share_missing") == 0
        with pytest.raises(PermissionDenied):
            open_shared_content("share_missing")

    def test_password_protected_link(self):
        link = create_share_link(OWNER, "project", "loft", password="open sesame")
        assert link.requires_password

        with pytest.raises(PermissionDenied, match="password"):
            open_shared_content(link.share_id)
        with pytest.raises(PermissionDenied, match="password"):
            open_shared_content(link.share_id, password="wrong")

        content = open_shared_content(link.share_id, password="open sesame")
        assert content["value"] is None

    def test_revoke_is_owner_scoped(self, shared_form):
        assert not revoke_share_link("someone-else", shared_form.share_id)
        assert is_share_valid(shared_form.share_id)

        assert revoke_share_link(OWNER, shared_form.share_id)
        assert not is_share_valid(shared_form.share_id)

    def test_list_filters_by_target(self, shared_form):
        create_share_link(OWNER, "project", "loft")
        assert len(list_share_links(OWNER)) == 2
        assert [s.target_id for s in list_share_links(OWNER, target_id="contact")] == ["contact"]
        assert list_share_links("someone-else") == []

    def test_creation_validation(self):
        with pytest.raises(ValidationFailed) as exc_info:
            create_share_link(OWNER, "widget", "", expires_in_days=0, permissions=["admin"])
        assert len(exc_info.value.errors) == 4

    def test_only_read_permission_is_granted(self):
        with pytest.raises(ValidationFailed) as exc_info:
            create_share_link(OWNER, "form", "contact", permissions=["read", "submit"])
        assert exc_info.value.errors == ["Unknown permissions: ['submit']"]

    def test_default_expiry_is_thirty_days(self):
        link = create_share_link(OWNER, "form", "contact")
        remaining = link.expires_at - utcnow()
        assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)


class TestShareUrls:
    def test_build_and_parse(self):
        url = build_share_url("https://studio.example.com/", "/forms/", "share_abc-123")
        assert url == "https://studio.example.com/forms?share=share_abc-123"
        assert parse_share_id(url) == "share_abc-123"

    def test_parse_without_share(self):
        assert parse_share_id("https://studio.example.com/forms") is None


class TestAccounts:
    def test_derive_email(self):
        assert auth.derive_email(" Designer ") == "designer@portfolio.local"
        assert auth.derive_email("me@studio.com") == "me@studio.com"

    def test_login_with_username_or_email(self, owner):
        by_name = auth.authenticate("designer", "owner-password")
        by_email = auth.authenticate("designer@portfolio.local", "owner-password")
        assert by_name.principal.user_id == by_email.principal.user_id == owner.user_id
        assert auth.get_principal(by_name.token).is_owner

    def test_bad_credentials(self, owner):
        with pytest.raises(Unauthenticated, match="Invalid login credentials"):
            auth.authenticate("designer", "wrong-password")
        with pytest.raises(Unauthenticated):
            auth.authenticate("nobody", "owner-password")

    def test_expired_session_is_rejected_and_removed(self, owner, monkeypatch):
        session = auth.authenticate("designer", "owner-password")
        later = session.expires_at
        monkeypatch.setattr(auth, "utcnow", lambda: later)

        assert auth.get_principal(session.token) is None
        assert not auth.revoke_session(session.token)

    def test_logout_revokes_token(self, owner):
        session = auth.authenticate("designer", "owner-password")
        assert auth.revoke_session(session.token)
        assert auth.get_principal(session.token) is None

    def test_create_user_rejects_bad_input(self, owner):
        with pytest.raises(ValueError):
            auth.create_user("designer", "another-password")
        with pytest.raises(ValueError):
            auth.create_user("short", "1234")
        with pytest.raises(ValueError):
            auth.create_user("admin", "long-enough", role="admin")

    def test_ensure_owner_account_is_idempotent(self):
        first = auth.ensure_owner_account("studio", "studio-password")
        second = auth.ensure_owner_account("studio", "studio-password")
        assert first.user_id == second.user_id
        assert auth.get_portfolio_owner_id() == first.user_id
