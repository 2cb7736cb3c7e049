"""Shared pytest fixtures for the geo-grid rank tracker tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure project root is on sys.path so 'geogrid' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)


@pytest.fixture(autouse=True)
def _reset_db_engine():
    """Autouse fixture: reset the global DB engine before and after every test.

    This prevents cross-test pollution when tests create their own in-memory
    databases.
    """
    from geogrid.database import reset_engine
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def test_db():
    """Provide an in-memory SQLite database with all tables created.

    Yields a database URL string. The engine is automatically torn down
    after the test by the autouse ``_reset_db_engine`` fixture.
    """
    from geogrid.database import reset_engine, init_db
    reset_engine()
    db_url = "sqlite:///:memory:"
    init_db(database_url=db_url, echo=False)
    yield db_url


def make_listing(title, rank, cid=None, rating=None, review_count=None):
    from geogrid.integrations.dataforseo import MapsListing
    return MapsListing(
        title=title,
        rank_absolute=rank,
        cid=cid,
        rating=rating,
        review_count=review_count,
    )


class FakeMapsProvider:
    """In-memory ranking provider returning a fixed listing set per keyword.

    ``fail_calls`` lists 1-based call numbers that raise instead of answering.
    ``on_call`` runs before every answer with the 1-based call number.
    """

    def __init__(self, listings_by_keyword=None, default=None, fail_calls=(), on_call=None):
        self.listings_by_keyword = listings_by_keyword or {}
        self.default = default or []
        self.fail_calls = set(fail_calls)
        self.on_call = on_call
        self.calls = []

    async def google_maps_search(self, keyword, coordinates, depth=20):
        self.calls.append((keyword, coordinates, depth))
        call_number = len(self.calls)
        if self.on_call is not None:
            self.on_call(call_number)
        if call_number in self.fail_calls:
            raise RuntimeError("provider unavailable (call " + str(call_number) + ")")
        return list(self.listings_by_keyword.get(keyword, self.default))


@pytest.fixture()
def dental_listings():
    """Listings for a dental market where the target ranks second."""
    return [
        make_listing("Smile Studio", 1, cid="111", rating=4.8, review_count=320),
        make_listing("Fielder Park Dental", 2, cid="222", rating=4.9, review_count=150),
        make_listing("Arlington Family Dentistry", 3, cid="333", rating=4.5, review_count=90),
        make_listing("Park Row Orthodontics", 12, cid="444"),
    ]


@pytest.fixture()
def fake_provider(dental_listings):
    """Return a FakeMapsProvider answering every keyword with dental_listings."""
    return FakeMapsProvider(default=dental_listings)


@pytest.fixture()
def mock_provider():
    """Return a mock RankedSearch whose search returns no listings."""
    provider = MagicMock()
    provider.google_maps_search = AsyncMock(return_value=[])
    return provider


@pytest.fixture()
def campaign(test_db):
    """Create a 3x3 campaign for Fielder Park Dental with two keywords."""
    from geogrid.modules.local_grid import repository
    return repository.create_campaign(
        business_name="Fielder Park Dental",
        center_lat=32.7357,
        center_lng=-97.1081,
        keywords=["dentist", "emergency dentist"],
        grid_size=3,
        grid_radius_miles=2.0,
        scan_frequency="weekly",
    )
