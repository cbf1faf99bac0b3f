"""Unit tests for auth/service.py -- the credential/session state machine.

Every test drives AuthService through real stores on a throwaway SQLite file,
one Database.transaction() per operation, the way the API routes do.

Covers:
- register: validation, email normalization, duplicate email
- login: unknown email and wrong password fail identically; the check and
  session halves in separate transactions; concurrent logins at bcrypt cost 12
- refresh: rotation, reuse rejection, concurrent double refresh
- logout: every session of the user dies
- change_password: old-password check, unchanged password, forced logout
- admin directory: list, update, delete (revokes sessions)
"""

import threading

import pytest

from auth.errors import AuthError, ErrorKind
from auth.models import Role
from auth.service import build_auth_service
from auth.store import Database

ADA_PASSWORD = "longenough1"


def _run(db, fn, *args, **kwargs):
    with db.transaction() as conn:
        return fn(conn, *args, **kwargs)


@pytest.fixture
def ada(db, service):
    return _run(db, service.register, "Ada", "ada@x.com", ADA_PASSWORD, Role.PURCHASING)


def _kind(exc_info) -> ErrorKind:
    return exc_info.value.kind


# ---------------------------------------------------------------------------
# register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_returns_public_profile(self, ada):
        assert ada.name == "Ada"
        assert ada.email == "ada@x.com"
        assert ada.role is Role.PURCHASING
        assert not hasattr(ada, "password_hash")

    def test_password_is_stored_hashed(self, db, service, ada):
        stored = _run(db, service.users.find_by_id, ada.id)
        assert stored.password_hash != ADA_PASSWORD
        assert service.hasher.verify(ADA_PASSWORD, stored.password_hash)

    def test_email_is_normalized(self, db, service):
        profile = _run(db, service.register, "Grace", "  Grace@X.COM ", "longenough1", "Logistics")
        assert profile.email == "grace@x.com"
        assert profile.role is Role.LOGISTICS

    def test_duplicate_email_any_case(self, db, service, ada):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.register, "Ada Two", "ADA@x.com", "longenough1", Role.PPC)
        assert _kind(exc_info) is ErrorKind.DUPLICATE_EMAIL

    @pytest.mark.parametrize(
        "name, email, password, role",
        [
            ("A", "a@x.com", "longenough1", "PPC"),
            ("Ada", "not-an-email", "longenough1", "PPC"),
            ("Ada", "a@x.com", "short", "PPC"),
            ("Ada", "a@x.com", "x" * 73, "PPC"),
            ("Ada", "a@x.com", "longenough1", "Superuser"),
        ],
    )
    def test_invalid_input(self, db, service, name, email, password, role):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.register, name, email, password, role)
        assert _kind(exc_info) is ErrorKind.VALIDATION_FAILED
        assert exc_info.value.detail["errors"]

    def test_validation_detail_never_echoes_password(self, db, service):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.register, "Ada", "a@x.com", "short", "PPC")
        assert "short" not in repr(exc_info.value.detail)


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_pair_and_session(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        assert pair.user.id == ada.id
        assert service.codec.verify(pair.access_token, is_refresh=False).user_id == ada.id
        session = _run(db, service.sessions.find_by_token, pair.refresh_token)
        assert session is not None and session.user_id == ada.id

    def test_email_is_case_insensitive(self, db, service, ada):
        assert _run(db, service.login, "ADA@X.com", ADA_PASSWORD).user.id == ada.id

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, db, service, ada):
        with pytest.raises(AuthError) as unknown:
            _run(db, service.login, "nobody@x.com", ADA_PASSWORD)
        with pytest.raises(AuthError) as wrong:
            _run(db, service.login, "ada@x.com", "wrongpassword")
        assert _kind(unknown) is _kind(wrong) is ErrorKind.INVALID_CREDENTIALS
        assert unknown.value.message == wrong.value.message

    def test_each_login_opens_a_new_session(self, db, service, ada):
        _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        assert len(_run(db, service.sessions.find_by_user_id, ada.id)) == 2

    def test_account_changed_between_check_and_session(self, db, service, ada):
        with db.transaction(write=False) as conn:
            user = service.check_credentials(conn, "ada@x.com", ADA_PASSWORD)
        _run(db, service.change_password, ada.id, ADA_PASSWORD, "brandnewpass")
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.open_session, user)
        assert _kind(exc_info) is ErrorKind.INVALID_CREDENTIALS

    def test_account_deleted_between_check_and_session(self, db, service, ada):
        with db.transaction(write=False) as conn:
            user = service.check_credentials(conn, "ada@x.com", ADA_PASSWORD)
        _run(db, service.delete_user, ada.id)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.open_session, user)
        assert _kind(exc_info) is ErrorKind.INVALID_CREDENTIALS
        assert _run(db, service.sessions.find_by_user_id, ada.id) == []

    def test_concurrent_logins_at_production_cost(self, tmp_path, settings):
        """bcrypt runs outside the write lock, so logins never queue behind it."""
        db = Database(f"sqlite:///{tmp_path / 'busy.db'}", busy_timeout=1.0)
        service = build_auth_service(settings.model_copy(update={"bcrypt_rounds": 12}))
        ada = _run(db, service.register, "Ada", "ada@x.com", ADA_PASSWORD, Role.PURCHASING)

        workers = 12
        barrier = threading.Barrier(workers)
        results: list = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                with db.transaction(write=False) as conn:
                    user = service.check_credentials(conn, "ada@x.com", ADA_PASSWORD)
                with db.transaction() as conn:
                    service.open_session(conn, user)
                outcome = "ok"
            except AuthError as exc:
                outcome = exc.kind
            with lock:
                results.append(outcome)

        try:
            threads = [threading.Thread(target=worker) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

            assert results == ["ok"] * workers
            assert len(_run(db, service.sessions.find_by_user_id, ada.id)) == workers
        finally:
            db.close()


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation(self, db, service, ada):
        first = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        second = _run(db, service.refresh, first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert second.user.id == ada.id

        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, first.refresh_token)
        assert _kind(exc_info) is ErrorKind.TOKEN_INVALIDATED

        # The replacement still works.
        _run(db, service.refresh, second.refresh_token)

    def test_garbage_token(self, db, service):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, "garbage")
        assert _kind(exc_info) is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_access_token_is_not_a_refresh_token(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, pair.access_token)
        assert _kind(exc_info) is ErrorKind.INVALID_OR_EXPIRED_TOKEN

    def test_signed_but_never_persisted(self, db, service, ada):
        token = service.codec.issue_refresh_token(ada.id)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, token)
        assert _kind(exc_info) is ErrorKind.TOKEN_INVALIDATED

    def test_user_deleted_after_login(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.users.delete, ada.id)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, pair.refresh_token)
        assert _kind(exc_info) is ErrorKind.USER_NOT_FOUND

    def test_invalidate_failure_rolls_back(self, db, service, ada, monkeypatch):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)

        def broken_delete(conn, session_id):
            raise AuthError(ErrorKind.PERSISTENCE_ERROR, "disk full")

        monkeypatch.setattr(service.sessions, "delete", broken_delete)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, pair.refresh_token)
        assert _kind(exc_info) is ErrorKind.INVALIDATE_FAILURE
        assert _run(db, service.sessions.find_by_token, pair.refresh_token) is not None

    def test_failed_issue_restores_consumed_session(self, db, service, ada, monkeypatch):
        """The delete and the new insert commit together or not at all."""
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)

        def broken_create(conn, user_id, token):
            raise AuthError(ErrorKind.PERSISTENCE_ERROR, "disk full")

        monkeypatch.setattr(service.sessions, "create", broken_create)
        with pytest.raises(AuthError):
            _run(db, service.refresh, pair.refresh_token)
        monkeypatch.undo()

        assert _run(db, service.sessions.find_by_token, pair.refresh_token) is not None
        _run(db, service.refresh, pair.refresh_token)

    def test_concurrent_double_refresh_has_one_winner(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        barrier = threading.Barrier(2)
        results: list = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                outcome = _run(db, service.refresh, pair.refresh_token)
            except AuthError as exc:
                outcome = exc.kind
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        failures = [r for r in results if isinstance(r, ErrorKind)]
        successes = [r for r in results if not isinstance(r, ErrorKind)]
        assert len(successes) == 1
        assert failures == [ErrorKind.TOKEN_INVALIDATED]
        assert len(_run(db, service.sessions.find_by_user_id, ada.id)) == 1


# ---------------------------------------------------------------------------
# logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_kills_every_refresh_token(self, db, service, ada):
        phone = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        laptop = _run(db, service.login, "ada@x.com", ADA_PASSWORD)

        assert _run(db, service.logout, laptop.access_token) == 2

        for pair in (phone, laptop):
            with pytest.raises(AuthError) as exc_info:
                _run(db, service.refresh, pair.refresh_token)
            assert _kind(exc_info) is ErrorKind.TOKEN_INVALIDATED

    def test_rejects_refresh_token(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.logout, pair.refresh_token)
        assert _kind(exc_info) is ErrorKind.INVALID_ACCESS_TOKEN

    def test_no_sessions_is_fine(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.logout, pair.access_token)
        assert _run(db, service.logout, pair.access_token) == 0


# ---------------------------------------------------------------------------
# change_password
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_success_forces_logout(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.change_password, ada.id, ADA_PASSWORD, "brandnewpass")

        with pytest.raises(AuthError) as exc_info:
            _run(db, service.refresh, pair.refresh_token)
        assert _kind(exc_info) is ErrorKind.TOKEN_INVALIDATED

        with pytest.raises(AuthError):
            _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.login, "ada@x.com", "brandnewpass")

    def test_wrong_old_password(self, db, service, ada):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.change_password, ada.id, "notmypassword", "brandnewpass")
        assert _kind(exc_info) is ErrorKind.INCORRECT_OLD_PASSWORD

    def test_password_unchanged(self, db, service, ada):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.change_password, ada.id, ADA_PASSWORD, ADA_PASSWORD)
        assert _kind(exc_info) is ErrorKind.PASSWORD_UNCHANGED

    def test_unknown_user(self, db, service):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.change_password, "no-such-id", ADA_PASSWORD, "brandnewpass")
        assert _kind(exc_info) is ErrorKind.USER_NOT_FOUND

    def test_new_password_too_short(self, db, service, ada):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.change_password, ada.id, ADA_PASSWORD, "short")
        assert _kind(exc_info) is ErrorKind.VALIDATION_FAILED

    def test_stale_change_is_refused(self, db, service, ada):
        with db.transaction(write=False) as conn:
            first = service.prepare_password_change(conn, ada.id, ADA_PASSWORD, "firstnewpass")
            second = service.prepare_password_change(conn, ada.id, ADA_PASSWORD, "secondnewpass")
        _run(db, service.apply_password_change, first)

        with pytest.raises(AuthError) as exc_info:
            _run(db, service.apply_password_change, second)
        assert _kind(exc_info) is ErrorKind.INCORRECT_OLD_PASSWORD
        _run(db, service.login, "ada@x.com", "firstnewpass")

    def test_revocation_failure_keeps_new_password(self, db, service, ada, monkeypatch):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)

        def broken_revoke(conn, user_id):
            raise AuthError(ErrorKind.PERSISTENCE_ERROR, "disk full")

        monkeypatch.setattr(service.sessions, "delete_by_user_id", broken_revoke)
        _run(db, service.change_password, ada.id, ADA_PASSWORD, "brandnewpass")
        monkeypatch.undo()

        _run(db, service.login, "ada@x.com", "brandnewpass")
        assert _run(db, service.sessions.find_by_token, pair.refresh_token) is not None


# ---------------------------------------------------------------------------
# Admin directory and maintenance
# ---------------------------------------------------------------------------


class TestDirectory:
    def test_list_and_get(self, db, service, ada):
        _run(db, service.register, "Bob", "bob@x.com", "longenough1", Role.WAREHOUSE)
        page = _run(db, service.list_users)
        assert [p.name for p in page.items] == ["Ada", "Bob"]
        assert page.total_items == 2
        assert _run(db, service.get_user, ada.id) == ada

    def test_pagination(self, db, service):
        for name in ("Cy", "Di", "Ed", "Flo", "Gus"):
            _run(db, service.register, name, f"{name.lower()}@x.com", "longenough1", Role.PPC)

        page = _run(db, service.list_users, page=2, limit=2)
        assert [p.name for p in page.items] == ["Ed", "Flo"]
        assert page.total_pages == 3
        assert page.has_next and page.has_previous

        last = _run(db, service.list_users, page=3, limit=2)
        assert [p.name for p in last.items] == ["Gus"]
        assert not last.has_next

    def test_pagination_clamps_out_of_range(self, db, service, ada):
        page = _run(db, service.list_users, page=0, limit=500)
        assert page.page == 1
        assert page.limit == 20

    def test_get_missing(self, db, service):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.get_user, "no-such-id")
        assert _kind(exc_info) is ErrorKind.USER_NOT_FOUND

    def test_update_merges(self, db, service, ada):
        updated = _run(db, service.update_user, ada.id, role=Role.ADMIN)
        assert updated.role is Role.ADMIN
        assert updated.name == "Ada"
        assert updated.email == "ada@x.com"

    def test_update_to_taken_email(self, db, service, ada):
        _run(db, service.register, "Bob", "bob@x.com", "longenough1", Role.WAREHOUSE)
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.update_user, ada.id, email="Bob@x.com")
        assert _kind(exc_info) is ErrorKind.DUPLICATE_EMAIL

    def test_update_with_nothing(self, db, service, ada):
        with pytest.raises(AuthError) as exc_info:
            _run(db, service.update_user, ada.id)
        assert _kind(exc_info) is ErrorKind.VALIDATION_FAILED

    def test_delete_revokes_sessions(self, db, service, ada):
        pair = _run(db, service.login, "ada@x.com", ADA_PASSWORD)
        _run(db, service.delete_user, ada.id)
        assert _run(db, service.users.find_by_id, ada.id) is None
        assert _run(db, service.sessions.find_by_token, pair.refresh_token) is None

    def test_sweep(self, db, service, ada):
        assert _run(db, service.sweep_expired_sessions) == 0
