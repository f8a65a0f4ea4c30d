import pytest

from lending.errors import ValidationFailed
from lending.validators import (
    MAX_PAGE,
    ISBNValidator,
    PasswordValidator,
    TextValidator,
    clamp_pagination,
    like_pattern,
    normalize_email,
    page_count,
)


@pytest.mark.parametrize("isbn", ["9780132350884", "978-0-13-235088-4", "0306406152", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["9780132350885", "0306406153", "12345", "", None, "97801323508AB"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_clean_isbn():
    assert ISBNValidator.clean(" 978 0 13 235088 4 ") == "9780132350884"
    assert ISBNValidator.clean("ISBN-10: 0-306-40615-2") == "0306406152"
    assert ISBNValidator.clean("isbn 080442957x") == "080442957X"
    with pytest.raises(ValidationFailed):
        ISBNValidator.clean("not an isbn")


def test_text_validators():
    assert TextValidator.validate_title("Dune")
    assert not TextValidator.validate_title("   ")
    assert not TextValidator.validate_author("1984")
    assert not TextValidator.validate_author("   ")
    assert TextValidator.validate_author("50 Cent")
    assert TextValidator.sanitize_text("<script>x</script> Dune ") == "x Dune"


def test_password_policy():
    assert PasswordValidator.problems("Passw0rd!") == []
    assert len(PasswordValidator.problems("short")) == 2
    with pytest.raises(ValidationFailed):
        PasswordValidator.check("onlyletters")


def test_normalize_email():
    assert normalize_email("  Reader@Example.COM ") == "reader@example.com"
    with pytest.raises(ValidationFailed):
        normalize_email("reader@")


def test_pagination_is_clamped():
    assert clamp_pagination(1, None, 20, 100) == (1, 20, 0)
    assert clamp_pagination(3, 10, 20, 100) == (3, 10, 20)
    assert clamp_pagination(0, 500, 20, 100) == (1, 100, 0)
    assert clamp_pagination("x", "y", 20, 100) == (1, 20, 0)
    assert clamp_pagination(10**20, 10, 20, 100)[0] == MAX_PAGE
    assert page_count(0, 20) == 0
    assert page_count(41, 20) == 3


def test_like_pattern_escapes_wildcards():
    assert like_pattern("dune") == "%dune%"
    assert like_pattern("100%") == "%100\\%%"
    assert like_pattern("a_b", prefix=True) == "a\\_b%"
    assert like_pattern("back\\slash") == "%back\\\\slash%"
