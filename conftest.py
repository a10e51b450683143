from datetime import datetime, timedelta

import pytest

from circulation.clock import FrozenClock
from circulation.locks import EntityLocks
from circulation.models import PatronType
from circulation.service import CirculationService

# Monday 09:00 in the library timezone
START = datetime(2025, 1, 6, 9, 0)


@pytest.fixture
def db_file(tmp_path, request):
    # A fresh database file for every test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def service(db_file, clock):
    return CirculationService(db_file, clock=clock, locks=EntityLocks(timeout=5))


@pytest.fixture
def books(service):
    """Three titles: plenty of copies, exactly two copies and a single copy."""
    catalog = service.catalog
    return {
        "noli": catalog.add_book(
            "Noli Me Tangere", "Jose Rizal", "9789710810736", "PQ8897 .R5 N6", copies=3,
            accession_numbers=["ACC-001", "ACC-002", "ACC-003"],
        ),
        "fili": catalog.add_book(
            "El Filibusterismo", "Jose Rizal", "9789710810743", "PQ8897 .R5 F5", copies=2,
            accession_numbers=["ACC-101", "ACC-102"],
        ),
        "solo": catalog.add_book(
            "Florante at Laura", "Francisco Balagtas", "9789710810750", "PL6058 .B3 F5", copies=1,
            accession_numbers=["ACC-201"],
        ),
    }


@pytest.fixture
def patrons(service):
    catalog = service.catalog
    return {
        "p1": catalog.add_patron("2021-0001", "Maria Clara", PatronType.STUDENT, "maria@example.edu"),
        "p2": catalog.add_patron("2021-0002", "Crisostomo Ibarra", PatronType.STUDENT, "ibarra@example.edu"),
        "p3": catalog.add_patron("G-0003", "Elias", PatronType.GUEST),
        "faculty": catalog.add_patron("F-0100", "Padre Damaso", PatronType.FACULTY, "damaso@example.edu"),
    }


@pytest.fixture
def due(clock):
    """Due date one week from the frozen start."""
    return clock.now() + timedelta(days=7)
