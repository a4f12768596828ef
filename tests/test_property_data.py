"""
Tests for the postcode lookup and property data client.

HTTP is replaced by a mocked requests.Session.
"""

import pytest
from pathlib import Path
from unittest.mock import MagicMock
import sys

import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.property_data import (
    IDEAL_POSTCODES_URL,
    STREET_DATA_URL,
    PropertyDataAuthError,
    PropertyDataClient,
    PropertyDataError,
    PropertyDataRequestError,
    PropertyNotFoundError,
    clean_postcode,
    normalise_uk_postcode,
    validate_uk_postcode,
)


# =============================================================================
# Fixtures
# =============================================================================

def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    return response


@pytest.fixture
def session():
    mock = MagicMock(spec=requests.Session)
    mock.headers = {}
    return mock


@pytest.fixture
def client(session):
    return PropertyDataClient(
        street_api_key="street-key",
        ideal_postcodes_api_key="ideal-key",
        timeout=5,
        session=session,
    )


# =============================================================================
# Postcodes
# =============================================================================

class TestPostcodes:

    @pytest.mark.parametrize("postcode", ["SW1A 1AA", "sw1a1aa", "M1 1AE", "B33 8TH", "CR2 6XH", "DN55 1PT"])
    def test_valid(self, postcode):
        assert validate_uk_postcode(postcode)

    @pytest.mark.parametrize("postcode", ["", "12345", "SW1A", "ZZZ 999", "SW1A 1AAA"])
    def test_invalid(self, postcode):
        assert not validate_uk_postcode(postcode)

    def test_clean(self):
        assert clean_postcode(" sw1a  1aa ") == "SW1A1AA"

    def test_normalise(self):
        assert normalise_uk_postcode("sw1a1aa") == "SW1A 1AA"
        assert normalise_uk_postcode("m11ae") == "M1 1AE"


# =============================================================================
# Address Lookup
# =============================================================================

class TestAddressLookup:

    def test_returns_addresses(self, client, session):
        session.get.return_value = _response(payload={"result": [
            {"id": "paf_1", "line_1": "Flat 1", "line_2": "10 High Street",
             "postcode": "M1 1AE", "uprn": 100012345678, "post_town": "MANCHESTER"},
            {"id": "paf_2", "line_1": "12 High Street", "line_2": "",
             "postcode": "M1 1AE", "uprn": "", "building_number": 12},
        ]})
        addresses = client.addresses_for_postcode("m1 1ae")

        session.get.assert_called_once_with(
            IDEAL_POSTCODES_URL.format(postcode="M11AE"),
            params={"api_key": "ideal-key"},
            timeout=5,
        )
        first = addresses[0].to_dict()
        assert first["address"] == "Flat 1, 10 High Street"
        assert first["full_address"] == "Flat 1, 10 High Street, M1 1AE"
        assert first["uprn"] == "100012345678"
        assert addresses[1].address == "12 High Street"
        assert addresses[1].uprn is None
        assert addresses[1].building_number == "12"

    def test_missing_key(self, session):
        client = PropertyDataClient(ideal_postcodes_api_key="", session=session)
        with pytest.raises(PropertyDataError, match="API key not configured") as exc:
            client.addresses_for_postcode("M1 1AE")
        assert exc.value.status_code == 500
        session.get.assert_not_called()

    def test_invalid_postcode(self, client, session):
        with pytest.raises(PropertyDataRequestError) as exc:
            client.addresses_for_postcode("NOT A POSTCODE")
        assert exc.value.status_code == 400
        session.get.assert_not_called()

    def test_unknown_postcode(self, client, session):
        session.get.return_value = _response(404, text="not found")
        with pytest.raises(PropertyNotFoundError, match="Postcode not found"):
            client.addresses_for_postcode("M1 1AE")

    def test_upstream_failure(self, client, session):
        session.get.return_value = _response(503, text="unavailable")
        with pytest.raises(PropertyDataError, match="Failed to fetch addresses"):
            client.addresses_for_postcode("M1 1AE")

    def test_network_error(self, client, session):
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(PropertyDataError):
            client.addresses_for_postcode("M1 1AE")


# =============================================================================
# Property Fetch
# =============================================================================

class TestPropertyFetch:

    def test_posts_address(self, client, session):
        document = {"data": {"attributes": {"identities": {"ordnance_survey": {"uprn": "1"}}}}}
        session.post.return_value = _response(payload=document)

        assert client.fetch_property("10 High Street", "M1 1AE") == document
        session.post.assert_called_once_with(
            STREET_DATA_URL,
            params={"tier": "core"},
            headers={"x-api-key": "street-key"},
            json={"data": {"address": "10 High Street", "postcode": "M1 1AE"}},
            timeout=5,
        )

    @pytest.mark.parametrize("status, error, message", [
        (401, PropertyDataAuthError, "API authentication failed"),
        (404, PropertyNotFoundError, "Property not found"),
        (400, PropertyDataRequestError, "Invalid address or postcode format"),
        (502, PropertyDataError, "Failed to fetch property data"),
    ])
    def test_upstream_errors(self, client, session, status, error, message):
        session.post.return_value = _response(status)
        with pytest.raises(error, match=message) as exc:
            client.fetch_property("10 High Street", "M1 1AE")
        assert exc.value.status_code == (status if status != 502 else 500)

    def test_requires_address_and_postcode(self, client, session):
        with pytest.raises(PropertyDataRequestError):
            client.fetch_property("", "M1 1AE")
        session.post.assert_not_called()
