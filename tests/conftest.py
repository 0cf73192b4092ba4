import pytest

from helpers.builders import build_components, make_db


@pytest.fixture
def db():
    return make_db()


@pytest.fixture
def components():
    return build_components()
