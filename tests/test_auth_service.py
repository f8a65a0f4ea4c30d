import pytest

from lending.errors import (
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidToken,
    UserNotFound,
    ValidationFailed,
)

PASSWORD = "Passw0rd!"


def test_register_creates_member_with_tokens(services):
    user, tokens = services.auth.register("New.Reader@Example.com", PASSWORD, "New", "Reader")

    assert user.email == "new.reader@example.com"
    assert user.role == "member"
    assert user.max_books_allowed == 10
    assert user.password_hash != PASSWORD
    assert services.tokens.verify(tokens.access_token).user_id == user.id


def test_librarian_gets_larger_allowance(librarian):
    assert librarian.is_librarian
    assert librarian.max_books_allowed == 50


def test_duplicate_email_is_case_insensitive(services, member):
    with pytest.raises(EmailAlreadyRegistered):
        services.auth.register("MEMBER@example.com", PASSWORD, "Dup", "User")


@pytest.mark.parametrize("password", ["short1", "allletters", "12345678", ""])
def test_register_rejects_weak_password(services, password):
    with pytest.raises(ValidationFailed):
        services.auth.register("weak@example.com", password, "Weak", "Password")


def test_register_rejects_bad_email_and_role(services):
    with pytest.raises(ValidationFailed):
        services.auth.register("not-an-email", PASSWORD, "Bad", "Email")
    with pytest.raises(ValidationFailed):
        services.auth.create_user("admin@example.com", PASSWORD, "Bad", "Role", role="admin")


def test_login(services, member):
    user, tokens = services.auth.login("Member@Example.com", PASSWORD)
    assert user.id == member.id
    assert services.auth.authenticate(tokens.access_token).id == member.id


@pytest.mark.parametrize("email,password", [
    ("member@example.com", "WrongPass1"),
    ("nobody@example.com", PASSWORD),
])
def test_login_failures(services, member, email, password):
    with pytest.raises(InvalidCredentials):
        services.auth.login(email, password)


def test_logout_single_session(services, member):
    _, first = services.auth.login(member.email, PASSWORD)
    _, second = services.auth.login(member.email, PASSWORD)

    services.auth.logout(member.id, first.refresh_token)

    with pytest.raises(InvalidToken):
        services.auth.refresh(first.refresh_token)
    assert services.auth.refresh(second.refresh_token)


def test_logout_ignores_another_users_refresh_token(services, member, other_member):
    _, theirs = services.auth.login(other_member.email, PASSWORD)

    assert services.auth.logout(member.id, theirs.refresh_token) == 0
    assert services.auth.refresh(theirs.refresh_token)


def test_logout_everywhere(services, member):
    _, first = services.auth.login(member.email, PASSWORD)
    _, second = services.auth.login(member.email, PASSWORD)

    assert services.auth.logout(member.id) == 2
    for pair in (first, second):
        with pytest.raises(InvalidToken):
            services.auth.refresh(pair.refresh_token)


def test_password_reset_flow(services, member):
    _, session = services.auth.login(member.email, PASSWORD)
    token = services.auth.forgot_password(member.email)
    assert token

    services.auth.reset_password(token, "BrandNew123")

    services.auth.login(member.email, "BrandNew123")
    with pytest.raises(InvalidCredentials):
        services.auth.login(member.email, PASSWORD)
    with pytest.raises(InvalidToken):
        services.auth.refresh(session.refresh_token)
    # reset tokens are single use
    with pytest.raises(InvalidToken):
        services.auth.reset_password(token, "Another123")


def test_forgot_password_unknown_email(services):
    assert services.auth.forgot_password("ghost@example.com") is None


def test_reset_password_rejects_bad_token(services, member):
    services.auth.forgot_password(member.email)
    with pytest.raises(InvalidToken):
        services.auth.reset_password("not-the-token", "BrandNew123")


def test_change_password(services, member):
    _, session = services.auth.login(member.email, PASSWORD)

    with pytest.raises(InvalidCredentials):
        services.auth.change_password(member.id, "WrongPass1", "BrandNew123")

    services.auth.change_password(member.id, PASSWORD, "BrandNew123")
    services.auth.login(member.email, "BrandNew123")
    with pytest.raises(InvalidToken):
        services.auth.refresh(session.refresh_token)


def test_get_user_missing(services):
    with pytest.raises(UserNotFound):
        services.auth.get_user(999)
