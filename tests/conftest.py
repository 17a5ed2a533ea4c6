import pytest

from tests.helpers import FakeRepository, make_block, make_package, make_rate


@pytest.fixture
def rate():
    return make_rate()


@pytest.fixture
def block():
    return make_block()


@pytest.fixture
def hotels():
    return [
        {'id': 10, 'name': 'Hotel Preluna', 'slug': 'hotel-preluna', 'active': True, 'available_rooms': 5},
        {'id': 11, 'name': 'Seaview Lodge', 'slug': 'seaview-lodge', 'active': True, 'available_rooms': 5},
    ]


@pytest.fixture
def repo(hotels):
    """One package with one flight block and two hotels, only the first one rated."""
    return FakeRepository(
        packages=[make_package(hotel_ids=[10, 11])],
        blocks=[make_block()],
        hotels=hotels,
        rates=[make_rate(hotel_id=10)],
    )


@pytest.fixture
def same_name_repo():
    """Two distinct hotels that share a name, rated differently."""
    return FakeRepository(
        packages=[make_package(hotel_ids=[10, 11])],
        blocks=[make_block()],
        hotels=[
            {'id': 10, 'name': 'Grand', 'slug': 'grand-sliema', 'active': True, 'available_rooms': 5},
            {'id': 11, 'name': 'Grand', 'slug': 'grand-valletta', 'active': True, 'available_rooms': 5},
        ],
        rates=[make_rate(hotel_id=10), make_rate(id=2, hotel_id=11, double_rate=30000)],
    )
