import pytest

from circulation.errors import NotFound, ValidationError
from circulation.models import BookStatus, CopyStatus, PatronType
from utils.validators import IdentifierValidator, ISBNValidator


@pytest.fixture
def catalog(service):
    return service.catalog


def test_add_book_generates_accession_numbers(catalog):
    book = catalog.add_book("Ibong Adarna", "Anonymous", "978-971-0810-76-7", "PL6058.9 .I2", copies=2)
    assert book.isbn == "9789710810767"
    assert book.copies_total == 2
    assert book.status == BookStatus.AVAILABLE
    copies = catalog.list_copies(book.id)
    assert [c.accession_number for c in copies] == ["PL6058.9 .I2-C001", "PL6058.9 .I2-C002"]
    assert all(c.status == CopyStatus.AVAILABLE for c in copies)


def test_add_book_rejects_bad_input(catalog, books):
    with pytest.raises(ValidationError):
        catalog.add_book("Bad", "Author", "12345", "X1")
    with pytest.raises(ValidationError):
        catalog.add_book("Bad", "Author", "9781234567897", "   ")
    with pytest.raises(ValidationError):
        catalog.add_book("", "Author", "9781234567897", "X1")
    # Duplicate ISBN
    with pytest.raises(ValidationError):
        catalog.add_book("Copy", "Jose Rizal", "9789710810736", "X2")


def test_failed_registration_leaves_nothing_behind(catalog, books):
    with pytest.raises(ValidationError):
        catalog.add_book("Dup accession", "Someone", "9781234567897", "X3", accession_numbers=["ACC-001"])
    with pytest.raises(NotFound):
        catalog.find_book("9781234567897")


def test_add_copy_updates_aggregates(catalog, books):
    copy = catalog.add_copy("9789710810750", "ACC-202")
    assert copy.status == CopyStatus.AVAILABLE
    book = catalog.get_book(books["solo"].id)
    assert book.copies_total == 2
    assert book.copies_available == 2
    assert book.status == BookStatus.AVAILABLE
    with pytest.raises(ValidationError):
        catalog.add_copy("9789710810750", "ACC-202")


def test_find_book_by_every_identifier(catalog, books):
    noli = books["noli"]
    assert catalog.find_book("9789710810736").id == noli.id
    assert catalog.find_book("978-971-0810-73-6").id == noli.id
    assert catalog.find_book("PQ8897  .R5 N6").id == noli.id
    assert catalog.find_book(noli.id).id == noli.id
    assert catalog.find_book(str(noli.id)).id == noli.id
    with pytest.raises(NotFound):
        catalog.find_book("unknown")


def test_list_books_sorted_by_title(catalog, books):
    assert [b.title for b in catalog.list_books()] == [
        "El Filibusterismo",
        "Florante at Laura",
        "Noli Me Tangere",
    ]


def test_find_patron_prefers_school_id(catalog, patrons):
    assert catalog.find_patron("2021-0001").name == "Maria Clara"
    assert catalog.find_patron(patrons["p2"].id).name == "Crisostomo Ibarra"
    assert catalog.find_patron("F-0100").patron_type == PatronType.FACULTY
    with pytest.raises(NotFound):
        catalog.find_patron("nobody")


def test_digit_only_school_id_wins_over_row_id(catalog, patrons):
    guest = catalog.add_patron("1", "Basilio", PatronType.GUEST)
    assert catalog.find_patron("1").id == guest.id
    assert catalog.find_patron(1).id == patrons["p1"].id


def test_duplicate_patron(catalog, patrons):
    with pytest.raises(ValidationError):
        catalog.add_patron("2021-0001", "Someone Else")


def test_inactive_book_is_still_listed(catalog, books):
    book = catalog.set_book_active("9789710810743", False)
    assert not book.is_active
    assert catalog.find_book("9789710810743").is_active is False


def test_find_copy(catalog, books):
    assert catalog.find_copy("ACC-002").book_id == books["noli"].id
    with pytest.raises(NotFound):
        catalog.find_copy("ACC-404")


def test_isbn_validator():
    assert ISBNValidator.is_valid_isbn("0-306-40615-X")
    assert ISBNValidator.is_valid_isbn("9780306406157")
    assert not ISBNValidator.is_valid_isbn("97803064")
    assert not ISBNValidator.looks_like_isbn("PQ8897 .R5 N6")
    assert ISBNValidator.looks_like_isbn("978 0306 406157")


def test_identifier_validator():
    assert IdentifierValidator.normalize("  ACC   001 ") == "ACC 001"
    assert IdentifierValidator.as_row_id(" 12 ") == 12
    assert IdentifierValidator.as_row_id(True) is None
    assert IdentifierValidator.as_row_id("ACC-1") is None
