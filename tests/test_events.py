"""Message-channel event vocabulary: wire shape and closed-union decoding."""

import json

import pytest
from pydantic import ValidationError

from src.domain.enums import BookingStatus
from src.domain.events import (
    EVENT_TYPES,
    BookingAccept,
    BookingStatusUpdate,
    DriverAvailabilityChanged,
    LocationUpdate,
    parse_event,
)


class TestWireFormat:
    def test_camel_case_aliases(self):
        wire = json.loads(BookingAccept(booking_id="b-1", driver_id="d-1").to_wire())
        assert wire == {"event": "bookingAccept", "bookingId": "b-1", "driverId": "d-1"}

    def test_location_update_carries_timestamp(self):
        wire = json.loads(LocationUpdate(driver_id="d-1", lat=28.6, lng=77.2).to_wire())
        assert wire["event"] == "locationUpdate"
        assert wire["driverId"] == "d-1"
        assert "timestamp" in wire

    def test_every_event_type_is_registered(self):
        for name, model in EVENT_TYPES.items():
            assert model.model_fields["event"].default == name


class TestParse:
    def test_parses_each_variant_by_tag(self):
        raw = '{"event": "bookingStatusUpdate", "bookingId": "b-1", "status": "en_route"}'
        event = parse_event(raw)

        assert isinstance(event, BookingStatusUpdate)
        assert event.status == BookingStatus.EN_ROUTE

    def test_snake_case_input_is_accepted(self):
        event = parse_event('{"event": "driverAvailability", "driver_id": "d-1", "is_available": false}')
        assert isinstance(event, DriverAvailabilityChanged)
        assert event.is_available is False

    def test_unknown_event_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event('{"event": "surgePricing", "multiplier": 2}')

    def test_out_of_range_coordinates_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_event('{"event": "locationUpdate", "driverId": "d-1", "lat": 120, "lng": 0}')
